"""Parameterized statement execution with normalized results and retry."""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from ticketdesk.storage.connection import ConnectionManager
from ticketdesk.storage.errors import is_transient_error

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 2
DEFAULT_BACKOFF_SECONDS = 0.5

_CHANGE_KEYS = ("changes", "affectedRows", "rowcount")


class ResultKind(Enum):
    """What the caller expects back from a statement."""

    ROWS = "rows"
    CHANGES = "changes"


@dataclass(frozen=True)
class QueryResult:
    """Uniform result shape. Both fields are always populated."""

    kind: ResultKind
    rows: list[dict] = field(default_factory=list)
    changes: int = 0


def _rows_from_cursor(cursor: Any) -> list[dict]:
    if not cursor.description:
        return []
    columns = [col[0] for col in cursor.description]
    return [dict(zip(columns, row)) for row in cursor.fetchall()]


def _change_count(raw: Any) -> int | None:
    if isinstance(raw, Mapping):
        for key in _CHANGE_KEYS:
            value = raw.get(key)
            if isinstance(value, int) and not isinstance(value, bool):
                return value
        return None
    for key in _CHANGE_KEYS:
        value = getattr(raw, key, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None


def normalize_result(raw: Any, kind: ResultKind) -> QueryResult:
    """Coerce whatever the driver returned into a QueryResult.

    Cursors yield rows from ``description``/``fetchall`` and a change
    count from ``rowcount``. A plain sequence is a read result, a bare
    integer or an object carrying a change counter is a write result,
    and anything else is empty.
    """
    if hasattr(raw, "description") and hasattr(raw, "fetchall"):
        rows = _rows_from_cursor(raw)
        changes = raw.rowcount if isinstance(raw.rowcount, int) else 0
        return QueryResult(kind=kind, rows=rows, changes=max(changes, 0))
    if isinstance(raw, bool):
        return QueryResult(kind=kind)
    if isinstance(raw, int):
        return QueryResult(kind=kind, changes=max(raw, 0))
    if isinstance(raw, Sequence) and not isinstance(raw, (str, bytes)):
        return QueryResult(kind=kind, rows=[dict(row) for row in raw])
    changes = _change_count(raw)
    if changes is not None:
        return QueryResult(kind=kind, changes=max(changes, 0))
    return QueryResult(kind=kind)


class QueryExecutor:
    """Runs single statements against the managed connection.

    Connection-level failures reset the handle and resend the same
    statement with the same parameters, waiting ``backoff_seconds *
    (attempt + 1)`` between tries. Every other error propagates as-is.

    Resending after a lost acknowledgement can apply a non-idempotent
    write twice; callers that care must make the statement idempotent.
    """

    def __init__(
        self,
        connections: ConnectionManager,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.connections = connections
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    def _send(self, handle: Any, sql: str, params: Sequence[Any]) -> Any:
        cursor = handle.cursor()
        cursor.execute(sql, tuple(params))
        return cursor

    def execute(
        self,
        sql: str,
        params: Sequence[Any] = (),
        *,
        kind: ResultKind = ResultKind.CHANGES,
        attempt: int = 0,
    ) -> QueryResult:
        """Execute one statement with positional *params*."""
        while True:
            handle = None
            try:
                handle = self.connections.get()
                raw = self._send(handle, sql, params)
                return normalize_result(raw, kind)
            except Exception as exc:
                if not is_transient_error(exc) or attempt >= self.max_retries:
                    raise
                delay = self.backoff_seconds * (attempt + 1)
                logger.warning(
                    "Connection error (attempt %d/%d), retrying in %.1fs: %s",
                    attempt + 1, self.max_retries + 1, delay, exc,
                )
                if handle is not None:
                    self.connections.reset(handle)
                self._sleep(delay)
                attempt += 1

    def query_rows(self, sql: str, params: Sequence[Any] = ()) -> list[dict]:
        return self.execute(sql, params, kind=ResultKind.ROWS).rows

    def query_row(self, sql: str, params: Sequence[Any] = ()) -> dict | None:
        rows = self.query_rows(sql, params)
        return rows[0] if rows else None

    def execute_write(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Execute a mutating statement and return the affected row count."""
        return self.execute(sql, params, kind=ResultKind.CHANGES).changes
