#!/usr/bin/env python3
"""
Call dispatcher: transport selection, REST fallback, and retry with backoff.
"""

import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

from truenas_block.errors import (
    ErrorKind, TransientNetworkError, TrueNASError, UnsupportedOperationError,
    classify, error_for_kind
)
from truenas_block.helpers import summarize
from truenas_block.transport.connections import ConnectionCache, ConnectionKey

logger = logging.getLogger(__name__)

# Answers that would be the same over REST, so no fallback
NO_FALLBACK_KINDS = (ErrorKind.NOT_FOUND, ErrorKind.VALIDATION)

RATE_LIMIT_MIN_DELAY = 2.0
JITTER = 0.2


@dataclass(frozen=True)
class RestRoute:
    """REST equivalent of a JSON-RPC method call."""
    verb: str
    path: str
    payload: Any = None
    params: Optional[Dict[str, Any]] = None


@dataclass
class AttemptRecord:
    method: str
    transport: str
    attempt: int
    attempts: int
    elapsed: float
    result: str


class Dispatcher:
    """
    Single entry point for remote calls.

    With the 'ws' transport a failed WebSocket call is retried over REST within
    the same attempt whenever the caller supplies a RestRoute. Transient and
    rate-limited failures are retried up to retry_max more times with
    exponential backoff and jitter; all other failures surface immediately.
    """

    def __init__(self, connections: ConnectionCache, ws_key: ConnectionKey, rest_key: ConnectionKey,
                 transport: str = 'ws', retry_max: int = 3, retry_delay: float = 1.0,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic,
                 rng: Optional[random.Random] = None) -> None:
        if transport not in ('ws', 'rest'):
            raise ValueError(f"Unknown transport {transport!r}")
        self.connections = connections
        self.ws_key = ws_key
        self.rest_key = rest_key
        self.transport = transport
        self.retry_max = retry_max
        self.retry_delay = retry_delay
        self._sleep = sleep
        self._clock = clock
        self._rng = rng or random.Random()
        self.history: List[AttemptRecord] = []

    @property
    def max_attempts(self) -> int:
        return self.retry_max + 1

    def call(self, method: str, params: Optional[List[Any]] = None, rest: Optional[RestRoute] = None,
             *, not_found_ok: bool = False) -> Any:
        """
        Invoke method and return its result.

        Args:
            method: JSON-RPC method name
            params: Positional JSON-RPC parameters
            rest: REST equivalent; required with the 'rest' transport
            not_found_ok: Return None instead of raising when the resource is absent

        Raises:
            TrueNASError: the classified failure of the last attempt
        """
        if self.transport == 'rest' and rest is None:
            raise UnsupportedOperationError(
                f"{method} has no REST equivalent; it requires api_transport 'ws'",
                method=method,
            )

        attempts = self.max_attempts
        for attempt in range(1, attempts + 1):
            start = self._clock()
            used = self.transport
            try:
                result, used = self._attempt(method, params, rest)
            except (TrueNASError, OSError, requests.RequestException) as e:
                kind = classify(e)
                self._record(method, used, attempt, attempts, start, kind.value)

                if kind is ErrorKind.NOT_FOUND and not_found_ok:
                    return None
                if not kind.retryable or attempt == attempts:
                    if isinstance(e, TrueNASError):
                        raise
                    raise error_for_kind(kind, f"{method}: {e}", method=method) from e

                delay = self.backoff(attempt, kind)
                logger.warning(f"{method} failed ({kind.value}: {e}); retrying in {delay:.2f}s")
                self._sleep(delay)
            else:
                self._record(method, used, attempt, attempts, start, 'ok')
                return result

        raise TransientNetworkError(f"{method}: no attempts made")

    def backoff(self, attempt: int, kind: ErrorKind = ErrorKind.TRANSIENT) -> float:
        """Delay before retry number attempt (1-based)."""
        delay = self.retry_delay * (2 ** (attempt - 1)) * (1 + self._rng.uniform(0, JITTER))
        if kind is ErrorKind.RATE_LIMITED:
            delay = max(delay * 2, RATE_LIMIT_MIN_DELAY)
        return delay

    def _attempt(self, method: str, params: Optional[List[Any]],
                 rest: Optional[RestRoute]) -> Tuple[Any, str]:
        if self.transport == 'rest':
            return self._call_rest(rest), 'rest'

        try:
            return self._call_ws(method, params), 'ws'
        except TrueNASError as e:
            kind = classify(e)
            if rest is None or kind in NO_FALLBACK_KINDS:
                raise
            logger.warning(f"{method}: WebSocket call failed ({kind.value}: {e}); falling back to REST")
            return self._call_rest(rest), 'ws->rest'

    def _call_ws(self, method: str, params: Optional[List[Any]]) -> Any:
        conn = self.connections.get(self.ws_key)
        try:
            return conn.call(method, params)
        except TransientNetworkError:
            self.connections.invalidate(self.ws_key)
            raise

    def _call_rest(self, route: RestRoute) -> Any:
        conn = self.connections.get(self.rest_key)
        return conn.request(route.verb, route.path, route.payload, route.params)

    def _record(self, method: str, transport: str, attempt: int, attempts: int,
                start: float, result: str) -> None:
        record = AttemptRecord(method, transport, attempt, attempts, self._clock() - start, result)
        self.history.append(record)
        del self.history[:-100]
        logger.info(summarize({
            'method': method,
            'transport': transport,
            'attempt': f"{attempt}/{attempts}",
            'elapsed': record.elapsed,
            'result': result,
        }))
