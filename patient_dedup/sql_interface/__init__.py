"""SQL Server access: connection wrapper and SQL-backed review ledger."""

from .db_interface import SQLInterface
from .exceptions import DatabaseConnectionError, QueryExecutionError
from .ledger_store import SqlMatchLedger

__all__ = [
    'SQLInterface',
    'SqlMatchLedger',
    'DatabaseConnectionError',
    'QueryExecutionError',
]
