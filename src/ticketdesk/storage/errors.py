"""Database error taxonomy and classification."""

from __future__ import annotations

import errno
import socket
from enum import Enum


class DatabaseConnectionError(ConnectionError):
    """The database connection handle could not be built."""


class ErrorKind(Enum):
    TRANSIENT = "transient"
    MISSING_COLUMN = "missing_column"
    MISSING_TABLE = "missing_table"
    ALREADY_EXISTS = "already_exists"
    PERMANENT = "permanent"


# Error codes surfaced by the hosted driver for a dead session
_TRANSIENT_CODES = frozenset({
    "ERR_CONNECTION_ERROR",
    "ERR_CONNECTION_ENDED",
    "ERR_CONNECTION_CLOSED",
    "ERR_CONNECTION_TIMEOUT",
})

# Low-level socket failures, by symbolic name and by errno
_SOCKET_CODES = frozenset({"ECONNRESET", "ECONNREFUSED", "ETIMEDOUT", "ENOTFOUND", "EPIPE"})
_SOCKET_ERRNOS = frozenset({
    errno.ECONNRESET,
    errno.ECONNREFUSED,
    errno.ETIMEDOUT,
    errno.EPIPE,
})

# Stopgap phrase matching; neither driver exposes a structured kind for these
_TRANSIENT_PHRASES = (
    "connection closed",
    "connection ended",
    "connection reset",
    "connection refused",
    "connection timed out",
    "connection lost",
    "connection unavailable",
    "not connected",
    "socket hang up",
    "broken pipe",
    "closed database",
)
_MISSING_COLUMN_PHRASES = ("no such column", "has no column named")
_MISSING_TABLE_PHRASES = ("no such table",)
_ALREADY_EXISTS_PHRASES = ("already exists", "duplicate column", "duplicate name")


def _error_code(exc: BaseException) -> str | None:
    for attr in ("code", "errcode", "error_code"):
        value = getattr(exc, attr, None)
        if isinstance(value, str):
            return value.upper()
    return None


def _is_socket_error(exc: BaseException) -> bool:
    if isinstance(exc, socket.gaierror):
        return True
    if isinstance(exc, OSError) and exc.errno in _SOCKET_ERRNOS:
        return True
    return _error_code(exc) in _SOCKET_CODES


def _causes(exc: BaseException):
    """Yield the chain of underlying causes, stopping on cycles."""
    seen = {id(exc)}
    current = exc.__cause__ or exc.__context__
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


def is_transient_error(exc: BaseException) -> bool:
    """Return True if *exc* is a connection-level failure worth a retry."""
    if isinstance(exc, (DatabaseConnectionError, ConnectionError, TimeoutError)):
        return True
    if _error_code(exc) in _TRANSIENT_CODES or _is_socket_error(exc):
        return True
    message = str(exc).lower()
    if any(phrase in message for phrase in _TRANSIENT_PHRASES):
        return True
    return any(_is_socket_error(cause) for cause in _causes(exc))


def classify_error(exc: BaseException) -> ErrorKind:
    """Map a driver exception onto an ErrorKind."""
    if is_transient_error(exc):
        return ErrorKind.TRANSIENT
    message = str(exc).lower()
    if any(phrase in message for phrase in _MISSING_COLUMN_PHRASES):
        return ErrorKind.MISSING_COLUMN
    if any(phrase in message for phrase in _MISSING_TABLE_PHRASES):
        return ErrorKind.MISSING_TABLE
    if any(phrase in message for phrase in _ALREADY_EXISTS_PHRASES):
        return ErrorKind.ALREADY_EXISTS
    return ErrorKind.PERMANENT
