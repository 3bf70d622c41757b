#!/usr/bin/env python3
"""
Keyed reuse of live transport connections.
"""

import logging
import threading
import time
from typing import Callable, Dict, NamedTuple, Protocol, Tuple

logger = logging.getLogger(__name__)


class Connection(Protocol):
    def is_alive(self) -> bool: ...

    def close(self) -> None: ...


class ConnectionKey(NamedTuple):
    host: str
    port: int
    scheme: str

    def __str__(self) -> str:
        return f"{self.scheme}://{self.host}:{self.port}"


class ConnectionCache:
    """
    Cache of open connections keyed by (host, port, scheme).

    A cached connection is handed out again while it is younger than max_age
    and passes its liveness probe. The lock only covers the map: opening,
    probing and closing connections happen outside it.
    """

    def __init__(self, factory: Callable[[ConnectionKey], Connection], max_age: float = 3600.0,
                 clock: Callable[[], float] = time.monotonic) -> None:
        self._factory = factory
        self._max_age = max_age
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[ConnectionKey, Tuple[Connection, float]] = {}
        self.opened = 0

    def get(self, key: ConnectionKey) -> Connection:
        with self._lock:
            entry = self._entries.get(key)

        if entry is not None:
            conn, created = entry
            age = self._clock() - created
            if age < self._max_age and conn.is_alive():
                return conn
            reason = "stale" if age >= self._max_age else "dead"
            logger.info(f"Discarding {reason} connection to {key} (age {age:.0f}s)")
            self._discard(key, conn)

        new_conn = self._factory(key)
        created = self._clock()
        with self._lock:
            current = self._entries.get(key)
            if current is None:
                self._entries[key] = (new_conn, created)
                self.opened += 1
                return new_conn
            winner = current[0]

        # Another thread stored a connection for this key first
        self._close(new_conn)
        return winner

    def _discard(self, key: ConnectionKey, conn: Connection) -> None:
        with self._lock:
            current = self._entries.get(key)
            if current is not None and current[0] is conn:
                del self._entries[key]
        self._close(conn)

    def invalidate(self, key: ConnectionKey) -> None:
        """Drop and close the cached connection for key, if any."""
        with self._lock:
            entry = self._entries.pop(key, None)
        if entry is not None:
            logger.debug(f"Invalidated connection to {key}")
            self._close(entry[0])

    def close_all(self) -> None:
        with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
        for conn, _ in entries:
            self._close(conn)

    @staticmethod
    def _close(conn: Connection) -> None:
        try:
            conn.close()
        except OSError as e:
            logger.debug(f"Error closing connection: {e}")

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __enter__(self) -> 'ConnectionCache':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close_all()
