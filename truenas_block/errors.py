#!/usr/bin/env python3
"""
Error taxonomy for the TrueNAS block storage client.

Every failure raised by this package derives from TrueNASError and carries an
ErrorKind, which the dispatcher uses to decide whether to retry, fall back to
REST, or surface the error immediately.
"""

import errno
import socket
import ssl
from enum import Enum
from typing import Any, Dict, List, Optional

import requests


class ErrorKind(Enum):
    """Classification of a failed remote call."""
    TRANSIENT = "transient"
    RATE_LIMITED = "rate_limited"
    AUTH = "auth"
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    UNSUPPORTED = "unsupported"
    FATAL = "fatal"

    @property
    def retryable(self) -> bool:
        return self in (ErrorKind.TRANSIENT, ErrorKind.RATE_LIMITED)


class TrueNASError(Exception):
    """Base class for all errors raised by truenas_block."""

    kind: ErrorKind = ErrorKind.FATAL

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def __str__(self) -> str:
        return self.message


class TransientNetworkError(TrueNASError):
    """Timeout, connection reset, TLS failure or a gateway error."""
    kind = ErrorKind.TRANSIENT


class ProtocolError(TransientNetworkError):
    """The peer violated the WebSocket subset we speak."""


class RateLimitedError(TrueNASError):
    kind = ErrorKind.RATE_LIMITED


class AuthenticationError(TrueNASError):
    kind = ErrorKind.AUTH


class NotFoundError(TrueNASError):
    kind = ErrorKind.NOT_FOUND


class ValidationError(TrueNASError):
    """Bad input or a missing prerequisite, with a hint on how to fix it."""

    kind = ErrorKind.VALIDATION

    def __init__(self, message: str, remediation: Optional[str] = None, **details: Any) -> None:
        super().__init__(message, **details)
        self.remediation = remediation

    def __str__(self) -> str:
        if self.remediation:
            return f"{self.message} ({self.remediation})"
        return self.message


class ConfigError(ValidationError):
    """One or more configuration values are invalid."""

    def __init__(self, problems: List[str]) -> None:
        self.problems = list(problems)
        super().__init__("Invalid configuration: " + "; ".join(self.problems))


class PreflightFailure(ValidationError):
    """A single failed pre-flight check."""

    def __init__(self, check: str, message: str, remediation: Optional[str] = None, **details: Any) -> None:
        super().__init__(message, remediation, **details)
        self.check = check


class PreflightError(ValidationError):
    """Aggregate of every failed pre-flight check."""

    def __init__(self, failures: List[PreflightFailure]) -> None:
        self.failures = list(failures)
        lines = [f"[{f.check}] {f}" for f in self.failures]
        super().__init__(
            f"Pre-flight validation failed with {len(lines)} error(s):\n  " + "\n  ".join(lines)
        )


class UnsupportedOperationError(TrueNASError):
    kind = ErrorKind.UNSUPPORTED


class DeviceNotReadyError(TrueNASError):
    """The block device for a LUN did not appear within the wait window."""
    kind = ErrorKind.TRANSIENT


class RemoteCallError(TrueNASError):
    """
    Error reported by the appliance, over either transport.

    Carries whatever the appliance told us (HTTP status, JSON-RPC code,
    middleware errname) so classify() can sort it into an ErrorKind.
    """

    def __init__(self, message: str, status: Optional[int] = None, code: Optional[int] = None,
                 errname: Optional[str] = None, method: Optional[str] = None, **details: Any) -> None:
        super().__init__(message, **details)
        self.status = status
        self.code = code
        self.errname = errname
        self.method = method
        self.kind = classify_remote(message, status=status, code=code, errname=errname)

    def __str__(self) -> str:
        prefix = f"{self.method}: " if self.method else ""
        suffix = f" [HTTP {self.status}]" if self.status else ""
        return f"{prefix}{self.message}{suffix}"


class PartialProvisionError(TrueNASError):
    """
    A provisioning step failed and the cleanup of earlier steps failed too.

    Both the original failure and every cleanup failure are kept, so neither
    masks the other.
    """

    def __init__(self, original: BaseException, cleanup_errors: List[BaseException],
                 leftovers: Optional[List[str]] = None) -> None:
        self.original = original
        self.cleanup_errors = list(cleanup_errors)
        self.leftovers = list(leftovers or [])
        cleanup = "; ".join(str(e) for e in self.cleanup_errors)
        message = f"{original}; cleanup also failed: {cleanup}"
        if self.leftovers:
            message += f" (manual cleanup may be required for: {', '.join(self.leftovers)})"
        super().__init__(message)
        self.kind = getattr(original, 'kind', ErrorKind.FATAL)


_AUTH_MARKERS = ("not authenticated", "permission denied", "unauthorized", "forbidden",
                 "invalid api key", "authentication failed")
_RATE_MARKERS = ("rate limit", "too many requests")
_NOT_FOUND_MARKERS = ("does not exist", "not found", "no such", "instance not found",
                      "dataset not found")
_VALIDATION_MARKERS = ("validation", "invalid", "already exists", "already in use",
                       "must be", "eexist", "einval")
_TRANSIENT_MARKERS = ("timed out", "timeout", "connection reset", "connection refused",
                      "broken pipe", "temporarily unavailable", "ssl", "eof occurred")
_METHOD_NOT_FOUND = -32601


def classify_remote(message: str, status: Optional[int] = None, code: Optional[int] = None,
                    errname: Optional[str] = None) -> ErrorKind:
    """Sort an appliance error into an ErrorKind from its status, code and text."""
    text = (message or "").lower()
    name = (errname or "").upper()

    if status in (401, 403) or name in ("EACCES", "EPERM", "ENOTAUTHENTICATED"):
        return ErrorKind.AUTH
    if status == 429 or any(m in text for m in _RATE_MARKERS):
        return ErrorKind.RATE_LIMITED
    if any(m in text for m in _AUTH_MARKERS):
        return ErrorKind.AUTH
    if code == _METHOD_NOT_FOUND or "method not found" in text or "no such method" in text:
        return ErrorKind.UNSUPPORTED
    if status == 404 or name == "ENOENT" or any(m in text for m in _NOT_FOUND_MARKERS):
        return ErrorKind.NOT_FOUND
    if status in (400, 409, 422) or name in ("EINVAL", "EEXIST") or any(m in text for m in _VALIDATION_MARKERS):
        return ErrorKind.VALIDATION
    if status in (502, 503, 504) or name in ("ETIMEDOUT", "ECONNRESET") or any(m in text for m in _TRANSIENT_MARKERS):
        return ErrorKind.TRANSIENT
    return ErrorKind.FATAL


def classify(exc: BaseException) -> ErrorKind:
    """Return the ErrorKind for any exception raised during a call attempt."""
    if isinstance(exc, TrueNASError):
        return exc.kind
    if isinstance(exc, (requests.Timeout, requests.ConnectionError, socket.timeout,
                        TimeoutError, ConnectionError, ssl.SSLError)):
        return ErrorKind.TRANSIENT
    if isinstance(exc, OSError) and exc.errno in (errno.ECONNRESET, errno.ECONNREFUSED,
                                                  errno.EPIPE, errno.ETIMEDOUT, errno.EHOSTUNREACH):
        return ErrorKind.TRANSIENT
    return classify_remote(str(exc))


def error_for_kind(kind: ErrorKind, message: str, **details: Any) -> TrueNASError:
    """Build the canonical exception type for a kind."""
    cls = {
        ErrorKind.TRANSIENT: TransientNetworkError,
        ErrorKind.RATE_LIMITED: RateLimitedError,
        ErrorKind.AUTH: AuthenticationError,
        ErrorKind.NOT_FOUND: NotFoundError,
        ErrorKind.VALIDATION: ValidationError,
        ErrorKind.UNSUPPORTED: UnsupportedOperationError,
    }.get(kind, TrueNASError)
    return cls(message, **details)
