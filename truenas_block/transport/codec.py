#!/usr/bin/env python3
"""
WebSocket handshake and framing for the JSON-RPC transport.

Only the subset the middleware API needs is spoken: single unfragmented text
frames, masked from client to server and unmasked in the other direction.
Fragmentation, control frames and extensions are rejected as protocol errors.
"""

import base64
import hashlib
import os
import struct
from typing import Callable, Dict, Optional, Tuple

from websocket import ABNF

from truenas_block.errors import ProtocolError

WS_GUID = "258EAFA5-E914-47DA-95CA-C5AB0DC85B11"

FIN = 0x80
RSV_MASK = 0x70
OPCODE_MASK = 0x0F
MASK_BIT = 0x80
OPCODE_TEXT = ABNF.OPCODE_TEXT

MAX_INLINE_LENGTH = 125
MAX_16BIT_LENGTH = 0xFFFF
MAX_HANDSHAKE_BYTES = 16384


def new_handshake_key() -> str:
    """Random Sec-WebSocket-Key: base64 of 16 random bytes."""
    return base64.b64encode(os.urandom(16)).decode('ascii')


def accept_key(key: str) -> str:
    """The Sec-WebSocket-Accept value a server must answer for key."""
    digest = hashlib.sha1((key + WS_GUID).encode('ascii')).digest()
    return base64.b64encode(digest).decode('ascii')


def build_handshake_request(host: str, port: int, resource: str, key: str,
                            secure: bool = False) -> bytes:
    """HTTP/1.1 upgrade request for resource on host:port."""
    default = 443 if secure else 80
    host_header = host if port == default else f"{host}:{port}"
    if ':' in host and not host.startswith('['):
        host_header = f"[{host}]" if port == default else f"[{host}]:{port}"
    lines = [
        f"GET {resource} HTTP/1.1",
        f"Host: {host_header}",
        "Upgrade: websocket",
        "Connection: Upgrade",
        f"Sec-WebSocket-Key: {key}",
        "Sec-WebSocket-Version: 13",
        "",
        "",
    ]
    return "\r\n".join(lines).encode('ascii')


def parse_handshake_response(raw: bytes) -> Tuple[int, Dict[str, str]]:
    """
    Split a raw HTTP response head into (status, headers).

    Header names are lower-cased.
    """
    try:
        text = raw.decode('iso-8859-1')
    except UnicodeDecodeError as e:
        raise ProtocolError(f"Undecodable handshake response: {e}") from e

    lines = text.split("\r\n")
    parts = lines[0].split(' ', 2)
    if len(parts) < 2 or not parts[0].startswith('HTTP/'):
        raise ProtocolError(f"Malformed handshake status line: {lines[0]!r}")
    try:
        status = int(parts[1])
    except ValueError:
        raise ProtocolError(f"Malformed handshake status line: {lines[0]!r}") from None

    headers: Dict[str, str] = {}
    for line in lines[1:]:
        if not line:
            continue
        name, sep, value = line.partition(':')
        if sep:
            headers[name.strip().lower()] = value.strip()
    return status, headers


def check_handshake(status: int, headers: Dict[str, str], key: str) -> None:
    """
    Verify the server accepted our upgrade.

    Raises:
        ProtocolError: on any status other than 101 or an accept mismatch
    """
    if status != 101:
        raise ProtocolError(f"WebSocket handshake failed with HTTP status {status}", status=status)
    lowered = {k.lower(): v for k, v in headers.items()}
    expected = accept_key(key)
    received = lowered.get('sec-websocket-accept')
    if received != expected:
        raise ProtocolError(
            f"WebSocket handshake accept mismatch: expected {expected}, got {received}",
            status=status,
        )


def read_handshake_response(recv: Callable[[int], bytes]) -> bytes:
    """Read bytes up to and including the blank line ending the response head."""
    buf = b''
    while not buf.endswith(b"\r\n\r\n"):
        chunk = recv(1)
        if not chunk:
            raise ProtocolError("Connection closed during WebSocket handshake")
        buf += chunk
        if len(buf) > MAX_HANDSHAKE_BYTES:
            raise ProtocolError("WebSocket handshake response too large")
    return buf


def xor_mask(mask_key: bytes, data: bytes) -> bytes:
    """XOR data with the 4-byte mask, key byte i % 4 for byte i."""
    return ABNF.mask(mask_key, data)


def encode_text_frame(payload: str | bytes, mask_key: Optional[bytes] = None) -> bytes:
    """
    Encode payload as one masked FIN text frame.

    Lengths up to 125 bytes are inline, up to 65535 use the 16-bit extended
    field, anything larger uses the 64-bit field.
    """
    data = payload.encode('utf-8') if isinstance(payload, str) else bytes(payload)
    if mask_key is None:
        mask_key = os.urandom(4)
    if len(mask_key) != 4:
        raise ValueError("mask_key must be exactly 4 bytes")

    length = len(data)
    header = bytearray([FIN | OPCODE_TEXT])
    if length <= MAX_INLINE_LENGTH:
        header.append(MASK_BIT | length)
    elif length <= MAX_16BIT_LENGTH:
        header.append(MASK_BIT | 126)
        header += struct.pack('!H', length)
    else:
        header.append(MASK_BIT | 127)
        header += struct.pack('!Q', length)

    return bytes(header) + mask_key + xor_mask(mask_key, data)


def _parse_header(first: int, second: int, masked: bool) -> Tuple[bool, int]:
    if not first & FIN:
        raise ProtocolError("Fragmented WebSocket frames are not supported")
    if first & RSV_MASK:
        raise ProtocolError("WebSocket frame uses reserved bits (extensions are not supported)")
    opcode = first & OPCODE_MASK
    if opcode != OPCODE_TEXT:
        raise ProtocolError(f"Unsupported WebSocket opcode 0x{opcode:x}")
    has_mask = bool(second & MASK_BIT)
    if has_mask != masked:
        direction = "masked" if masked else "unmasked"
        raise ProtocolError(f"Expected {direction} WebSocket frame")
    return has_mask, second & 0x7F


def decode_frame(data: bytes, masked: bool = False) -> Tuple[bytes, int]:
    """
    Decode one frame from the start of data.

    Args:
        data: Buffer holding at least one complete frame
        masked: Whether the frame is expected to carry a mask (client frames)

    Returns:
        (payload, number of bytes consumed)
    """
    if len(data) < 2:
        raise ProtocolError("Truncated WebSocket frame header")
    has_mask, length = _parse_header(data[0], data[1], masked)
    offset = 2
    if length == 126:
        if len(data) < offset + 2:
            raise ProtocolError("Truncated WebSocket length field")
        (length,) = struct.unpack_from('!H', data, offset)
        offset += 2
    elif length == 127:
        if len(data) < offset + 8:
            raise ProtocolError("Truncated WebSocket length field")
        (length,) = struct.unpack_from('!Q', data, offset)
        offset += 8

    mask_key = b''
    if has_mask:
        mask_key = data[offset:offset + 4]
        offset += 4

    if len(data) < offset + length:
        raise ProtocolError(f"Truncated WebSocket payload: expected {length} bytes")
    payload = bytes(data[offset:offset + length])
    if has_mask:
        payload = xor_mask(mask_key, payload)
    return payload, offset + length


def read_frame(read_exact: Callable[[int], bytes], masked: bool = False) -> bytes:
    """Read one frame through read_exact(n) and return its payload."""
    first, second = read_exact(2)
    has_mask, length = _parse_header(first, second, masked)
    if length == 126:
        (length,) = struct.unpack('!H', read_exact(2))
    elif length == 127:
        (length,) = struct.unpack('!Q', read_exact(8))
    mask_key = read_exact(4) if has_mask else b''
    payload = read_exact(length) if length else b''
    return xor_mask(mask_key, payload) if has_mask else payload
