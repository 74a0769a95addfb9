"""Database connection management — one shared handle per process."""

from __future__ import annotations

import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any, Callable

from ticketdesk.storage.errors import DatabaseConnectionError

logger = logging.getLogger(__name__)

CLOUD_SCHEME = "sqlitecloud://"
_LOCAL_SCHEME = "sqlite:///"


def _local_path(url: str) -> str:
    if url.startswith(_LOCAL_SCHEME):
        return url[len(_LOCAL_SCHEME):]
    return url


def open_connection(url: str) -> Any:
    """Open a DB-API connection for *url*.

    ``sqlitecloud://`` URLs go to the hosted service through the optional
    ``sqlitecloud`` driver. Anything else is treated as a local SQLite file,
    opened in autocommit mode with WAL and foreign keys enabled.
    """
    if url.startswith(CLOUD_SCHEME):
        import sqlitecloud  # optional extra: ticketdesk[cloud]

        return sqlitecloud.connect(url)

    path = _local_path(url)
    if path != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, check_same_thread=False, isolation_level=None)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def describe_url(url: str) -> str:
    """Return *url* without its query string, safe to log."""
    return url.split("?", 1)[0]


class ConnectionManager:
    """Owns the single database handle, building it lazily.

    A handle is either fully built or absent. ``reset()`` discards it
    wholesale and the next ``get()`` rebuilds it.
    """

    def __init__(self, url: str, *, factory: Callable[[str], Any] = open_connection) -> None:
        self._url = url
        self._factory = factory
        self._handle: Any = None
        self._lock = threading.Lock()

    @property
    def is_connected(self) -> bool:
        return self._handle is not None

    def get(self) -> Any:
        """Return the live handle, building it on first use."""
        handle = self._handle
        if handle is not None:
            return handle
        with self._lock:
            # another thread may have built it while we waited
            if self._handle is None:
                try:
                    self._handle = self._factory(self._url)
                except Exception as exc:
                    logger.error("Could not connect to %s: %s", describe_url(self._url), exc)
                    raise DatabaseConnectionError(
                        f"Could not connect to {describe_url(self._url)}"
                    ) from exc
                logger.info("Connected to %s", describe_url(self._url))
            return self._handle

    def reset(self, failed: Any = None) -> None:
        """Close the current handle, ignoring close errors, and forget it.

        With *failed*, only discard the handle if it is still the current
        one; a handle rebuilt by another caller in the meantime is kept.
        """
        with self._lock:
            if failed is not None and self._handle is not failed:
                return
            handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            handle.close()
        except Exception as exc:
            logger.debug("Ignoring error while closing connection: %s", exc)

    def close(self) -> None:
        """Shut the handle down at process exit."""
        was_connected = self.is_connected
        self.reset()
        if was_connected:
            logger.info("Database connection closed")
