#!/usr/bin/env python3
"""
Unit tests for the WebSocket handshake and frame codec.
"""

import os
import struct
import sys
import unittest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../../../../')))

from truenas_block.errors import ProtocolError
from truenas_block.transport.codec import (
    accept_key, build_handshake_request, check_handshake, decode_frame, encode_text_frame,
    parse_handshake_response, read_frame, read_handshake_response, xor_mask
)

MASK = b'\x01\x02\x03\x04'


def server_frame(payload: bytes, first: int = 0x81) -> bytes:
    """Unmasked frame as the appliance sends it."""
    length = len(payload)
    if length <= 125:
        header = bytes([first, length])
    elif length <= 0xFFFF:
        header = bytes([first, 126]) + struct.pack('!H', length)
    else:
        header = bytes([first, 127]) + struct.pack('!Q', length)
    return header + payload


def reader(data: bytes):
    """read_exact(n) over an in-memory buffer."""
    buf = bytearray(data)

    def read_exact(n):
        chunk = bytes(buf[:n])
        del buf[:n]
        return chunk
    return read_exact


class TestHandshake(unittest.TestCase):
    """Upgrade request and response handling."""

    def test_accept_key_matches_rfc_example(self):
        self.assertEqual(accept_key("dGhlIHNhbXBsZSBub25jZQ=="), "s3pPLMBiTxaQ9kYGzzhZRbK+xOo=")

    def test_request_headers(self):
        raw = build_handshake_request('nas.local', 443, '/api/current', 'abc==', secure=True).decode()
        self.assertTrue(raw.startswith("GET /api/current HTTP/1.1\r\n"))
        self.assertIn("Host: nas.local\r\n", raw)
        self.assertIn("Upgrade: websocket\r\n", raw)
        self.assertIn("Sec-WebSocket-Key: abc==\r\n", raw)
        self.assertIn("Sec-WebSocket-Version: 13\r\n", raw)
        self.assertTrue(raw.endswith("\r\n\r\n"))

    def test_request_host_carries_non_default_port(self):
        raw = build_handshake_request('10.0.0.5', 8080, '/api/current', 'k', secure=False).decode()
        self.assertIn("Host: 10.0.0.5:8080\r\n", raw)

    def test_response_parsing_and_check(self):
        key = "dGhlIHNhbXBsZSBub25jZQ=="
        raw = (b"HTTP/1.1 101 Switching Protocols\r\n"
               b"Upgrade: websocket\r\nConnection: Upgrade\r\n"
               b"Sec-WebSocket-Accept: s3pPLMBiTxaQ9kYGzzhZRbK+xOo=\r\n\r\n")
        status, headers = parse_handshake_response(raw)
        self.assertEqual(status, 101)
        self.assertEqual(headers['upgrade'], 'websocket')
        check_handshake(status, headers, key)

    def test_non_101_status_is_rejected(self):
        status, headers = parse_handshake_response(b"HTTP/1.1 403 Forbidden\r\n\r\n")
        with self.assertRaises(ProtocolError):
            check_handshake(status, headers, "k")

    def test_accept_mismatch_is_rejected(self):
        with self.assertRaises(ProtocolError):
            check_handshake(101, {'sec-websocket-accept': 'wrong'}, "dGhlIHNhbXBsZSBub25jZQ==")

    def test_malformed_status_line(self):
        with self.assertRaises(ProtocolError):
            parse_handshake_response(b"garbage\r\n\r\n")

    def test_read_handshake_response_stops_at_blank_line(self):
        data = bytearray(b"HTTP/1.1 101 OK\r\nA: b\r\n\r\n\x81\x02hi")
        head = read_handshake_response(lambda n: bytes([data.pop(0)]) if data else b'')
        self.assertEqual(head, b"HTTP/1.1 101 OK\r\nA: b\r\n\r\n")
        self.assertEqual(bytes(data), b"\x81\x02hi")

    def test_read_handshake_response_detects_close(self):
        with self.assertRaises(ProtocolError):
            read_handshake_response(lambda n: b'')


class TestFrames(unittest.TestCase):
    """Text frame encoding and decoding."""

    def test_short_frame_layout(self):
        frame = encode_text_frame("hello", mask_key=MASK)
        self.assertEqual(frame[0], 0x81)
        self.assertEqual(frame[1], 0x85)
        self.assertEqual(frame[2:6], MASK)
        self.assertEqual(xor_mask(MASK, frame[6:]), b"hello")

    def test_16bit_length_frame(self):
        frame = encode_text_frame(b"x" * 130, mask_key=MASK)
        self.assertEqual(frame[1], 0xFE)
        self.assertEqual(struct.unpack('!H', frame[2:4])[0], 130)
        self.assertEqual(len(frame), 2 + 2 + 4 + 130)

    def test_64bit_length_frame(self):
        frame = encode_text_frame(b"y" * 70000, mask_key=MASK)
        self.assertEqual(frame[1], 0xFF)
        self.assertEqual(struct.unpack('!Q', frame[2:10])[0], 70000)

    def test_client_frame_decodes_with_mask(self):
        payload, consumed = decode_frame(encode_text_frame('{"id": 1}', mask_key=MASK), masked=True)
        self.assertEqual(payload, b'{"id": 1}')
        self.assertEqual(consumed, 2 + 4 + 9)

    def test_server_frames(self):
        for size in (0, 125, 126, 65535, 65536):
            payload = b"z" * size
            decoded, consumed = decode_frame(server_frame(payload) + b"trailing")
            self.assertEqual(decoded, payload)
            self.assertEqual(len(server_frame(payload)), consumed)
            self.assertEqual(read_frame(reader(server_frame(payload))), payload)

    def test_masked_server_frame_is_rejected(self):
        with self.assertRaises(ProtocolError):
            decode_frame(encode_text_frame("hi", mask_key=MASK), masked=False)

    def test_unsupported_frames_are_rejected(self):
        for first in (0x01, 0x82, 0x88, 0x89, 0xC1):
            with self.assertRaises(ProtocolError, msg=hex(first)):
                decode_frame(server_frame(b"hi", first=first))

    def test_truncated_frames(self):
        with self.assertRaises(ProtocolError):
            decode_frame(b"\x81")
        with self.assertRaises(ProtocolError):
            decode_frame(b"\x81\x05hi")
        with self.assertRaises(ProtocolError):
            decode_frame(b"\x81\x7e\x00")

    def test_mask_key_must_be_four_bytes(self):
        with self.assertRaises(ValueError):
            encode_text_frame("x", mask_key=b"\x00")


if __name__ == '__main__':
    unittest.main()
