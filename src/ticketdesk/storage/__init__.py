"""Storage layer — connection lifecycle, retrying execution, and schema management."""

from ticketdesk.storage.connection import ConnectionManager, open_connection
from ticketdesk.storage.errors import DatabaseConnectionError, ErrorKind, classify_error
from ticketdesk.storage.executor import QueryExecutor, QueryResult, ResultKind
from ticketdesk.storage.schema import initialize_schema

__all__ = [
    "ConnectionManager",
    "DatabaseConnectionError",
    "ErrorKind",
    "QueryExecutor",
    "QueryResult",
    "ResultKind",
    "classify_error",
    "initialize_schema",
    "open_connection",
]
