#!/usr/bin/env python3
"""
JSON-RPC 2.0 over WebSocket transport for the TrueNAS middleware API.

websocket-client opens the TCP/TLS socket (the same way the middleware's own
client does); the upgrade handshake and the text framing on top of it are done
by truenas_block.transport.codec.
"""

import itertools
import json
import logging
import socket
import ssl
import threading
import time
from typing import Any, Dict, List, Optional

from websocket import WebSocketException
from websocket._http import connect, proxy_info
from websocket._socket import sock_opt

from truenas_block.errors import (
    AuthenticationError, ProtocolError, RemoteCallError, TransientNetworkError, TrueNASError
)
from truenas_block.transport.codec import (
    build_handshake_request, check_handshake, encode_text_frame, new_handshake_key,
    parse_handshake_response, read_frame, read_handshake_response
)

logger = logging.getLogger(__name__)

# Upper bound on unrelated messages (event notifications, late replies)
# skipped while waiting for one response.
MAX_SKIPPED_MESSAGES = 1000


class WebSocketTransport:
    """
    One authenticated WebSocket connection to the appliance.

    A connection carries one call at a time; concurrent callers on the same
    instance are serialised by an I/O lock.
    """

    name = 'ws'

    def __init__(self, host: str, port: int, api_key: str, scheme: str = 'wss',
                 path: str = '/api/current', timeout: float = 30.0, verify_ssl: bool = True) -> None:
        self.host = host
        self.port = port
        self.scheme = scheme
        self.path = path
        self.timeout = timeout
        self.verify_ssl = verify_ssl
        self._api_key = api_key
        self.sock: Optional[socket.socket] = None
        self._ids = itertools.count(1)
        self._io_lock = threading.Lock()
        self._broken = False

    @property
    def url(self) -> str:
        host = f"[{self.host}]" if ':' in self.host and not self.host.startswith('[') else self.host
        return f"{self.scheme}://{host}:{self.port}{self.path}"

    @property
    def connected(self) -> bool:
        return self.sock is not None and not self._broken

    def connect(self) -> 'WebSocketTransport':
        """Open the socket, upgrade it, and log in with the API key."""
        sslopt = None if self.verify_ssl else {"cert_reqs": ssl.CERT_NONE, "check_hostname": False}
        options = sock_opt(None, sslopt)
        options.timeout = self.timeout

        logger.debug(f"Connecting to {self.url}")
        try:
            self.sock, (hostname, port, resource) = connect(self.url, options, proxy_info(), None)
        except (OSError, WebSocketException) as e:
            raise TransientNetworkError(f"Cannot connect to {self.url}: {e}", url=self.url) from e

        try:
            key = new_handshake_key()
            self.sock.sendall(build_handshake_request(
                hostname, port, resource, key, secure=self.scheme == 'wss'
            ))
            status, headers = parse_handshake_response(read_handshake_response(self.sock.recv))
            check_handshake(status, headers, key)
        except OSError as e:
            self.close()
            raise TransientNetworkError(f"WebSocket handshake with {self.url} failed: {e}") from e
        except ProtocolError:
            self.close()
            raise

        try:
            self._authenticate()
        except TrueNASError:
            self.close()
            raise

        logger.info(f"Connected to {self.url}")
        return self

    def _authenticate(self) -> None:
        if not self.call('auth.login_with_api_key', [self._api_key]):
            raise AuthenticationError(
                f"API key rejected by {self.host}",
                host=self.host,
            )

    def _read_exact(self, n: int) -> bytes:
        chunks = []
        remaining = n
        while remaining:
            chunk = self.sock.recv(remaining)
            if not chunk:
                raise ProtocolError("Connection closed by peer")
            chunks.append(chunk)
            remaining -= len(chunk)
        return b''.join(chunks)

    def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        """
        Send one JSON-RPC request and return its result.

        Raises:
            RemoteCallError: the appliance answered with an error
            TransientNetworkError: the connection failed (it is then unusable)
        """
        with self._io_lock:
            if self.sock is None or self._broken:
                raise TransientNetworkError(f"WebSocket to {self.host} is not connected")

            call_id = next(self._ids)
            message = json.dumps({
                'jsonrpc': '2.0',
                'id': call_id,
                'method': method,
                'params': list(params or []),
            })
            try:
                self.sock.sendall(encode_text_frame(message))
                response = self._receive(call_id)
            except ProtocolError:
                self._broken = True
                raise
            except (OSError, ssl.SSLError) as e:
                self._broken = True
                raise TransientNetworkError(f"{method}: WebSocket I/O failed: {e}", method=method) from e

        if 'error' in response and response['error'] is not None:
            raise self._remote_error(method, response['error'])
        return response.get('result')

    def _receive(self, call_id: int) -> Dict[str, Any]:
        deadline = time.monotonic() + self.timeout
        for _ in range(MAX_SKIPPED_MESSAGES):
            raw = read_frame(self._read_exact)
            try:
                response = json.loads(raw.decode('utf-8'))
            except (UnicodeDecodeError, json.JSONDecodeError) as e:
                raise ProtocolError(f"Invalid JSON-RPC message: {e}") from e
            if isinstance(response, dict) and response.get('id') == call_id:
                return response
            logger.debug(f"Skipping unrelated message while waiting for id {call_id}")
            if time.monotonic() > deadline:
                break
        raise TransientNetworkError(f"No response for request {call_id} within {self.timeout}s")

    @staticmethod
    def _remote_error(method: str, error: Any) -> RemoteCallError:
        if not isinstance(error, dict):
            return RemoteCallError(str(error), method=method)
        data = error.get('data') if isinstance(error.get('data'), dict) else {}
        message = data.get('reason') or error.get('message') or 'Unknown error'
        return RemoteCallError(
            str(message).strip(),
            code=error.get('code'),
            errname=data.get('errname'),
            method=method,
            extra=data.get('extra'),
        )

    def is_alive(self) -> bool:
        """Cheap round trip used by the connection cache."""
        if not self.connected:
            return False
        try:
            return self.call('core.ping') == 'pong'
        except TrueNASError as e:
            logger.debug(f"Liveness probe to {self.host} failed: {e}")
            return False

    def close(self) -> None:
        sock, self.sock = self.sock, None
        self._broken = True
        if sock is None:
            return
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError as e:
            logger.debug(f"Socket shutdown for {self.host}: {e}")
        sock.close()

    def __repr__(self) -> str:
        return f"WebSocketTransport({self.url})"
