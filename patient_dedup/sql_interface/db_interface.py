"""Database interface module for SQL Server connections."""

import html
import os
import re
import time
from typing import Any, Dict, Iterator, List, Optional, Tuple

try:
    import pyodbc
except ImportError:
    # Allow module to be imported for testing without pyodbc / unixODBC
    pyodbc = None

from ..config import DEFAULT_FETCH_BATCH_SIZE, DEFAULT_SQL_DRIVER
from ..secure_logging import get_secure_logger

logger = get_secure_logger(__name__)


class SQLInterface:
    """Handles database connection, query execution, and result fetching."""

    @staticmethod
    def _clean_field_value(value: Any) -> Any:
        """
        Unescape HTML entities and strip surrounding whitespace from string values.

        Legacy registry exports store names such as 'M&uuml;ller'; comparing the
        escaped form would distort the edit distance.
        """
        if not isinstance(value, str):
            return value
        text = html.unescape(value)
        text = re.sub(r"\s+", " ", text)
        return text.strip()

    def __init__(self, debug: bool = False):
        """Initializes connection parameters from environment variables."""
        self.server: Optional[str] = os.getenv("SQL_SERVER")
        self.database: Optional[str] = os.getenv("DATABASE")
        self.username_sql: Optional[str] = os.getenv("USERNAME_SQL")
        self.password: Optional[str] = os.getenv("PASSWORD")
        self.driver: str = os.getenv("SQL_DRIVER", DEFAULT_SQL_DRIVER)
        self.connection = None
        self.cursor = None
        self.debug = debug

    def __enter__(self):
        """Context manager entry point: establishes connection."""
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit point: closes connection."""
        self.close_connection()
        return False

    def connect(self) -> bool:
        """
        Establishes a database connection using parameters from environment variables.

        Returns:
            bool: True if connection is successful, False otherwise.
        """
        if pyodbc is None:
            logger.error("pyodbc not available. Cannot establish database connection.")
            return False

        if self.connection is not None:
            logger.warning("Connection object already exists. Close before reconnecting if needed.")
            return True

        if not all([self.server, self.database, self.username_sql, self.password, self.driver]):
            logger.error(
                "Database connection details incomplete. Check your .env file "
                "(SQL_SERVER, DATABASE, USERNAME_SQL, PASSWORD, SQL_DRIVER).",
            )
            return False

        start_time = time.time()
        try:
            connection_string = (
                f"DRIVER={self.driver};"
                f"SERVER={self.server};"
                f"DATABASE={self.database};"
                f"UID={self.username_sql};"
                f"PWD={self.password};"
            )
            logger.debug(f"Attempting database connection to server: {self.server or 'Unknown'}")

            # Explicit transactions: ledger buckets are committed or rolled back as a whole
            self.connection = pyodbc.connect(connection_string, autocommit=False)
            self.cursor = self.connection.cursor()

            duration_ms = (time.time() - start_time) * 1000
            logger.log_authentication_event("DB_CONNECT", self.username_sql, success=True)
            logger.log_database_operation("CONNECT", success=True, duration_ms=duration_ms)
            return True
        except pyodbc.Error as ex:
            duration_ms = (time.time() - start_time) * 1000
            # Only the SQLSTATE; driver messages can echo the connection string
            sqlstate = ex.args[0] if ex.args else "unknown"
            logger.log_authentication_event("DB_CONNECT", self.username_sql, success=False,
                                            details=f"SQLSTATE {sqlstate}")
            logger.error(f"Database connection failed: SQLSTATE {sqlstate}")
            logger.log_database_operation("CONNECT", success=False, duration_ms=duration_ms)
            self.connection = None
            self.cursor = None
            return False

    def execute_query(self, query: str, params: Tuple = ()) -> bool:
        """
        Executes a SQL query using parameters to prevent SQL injection.

        Rolls the open transaction back on error. DML needs an explicit commit().

        Args:
            query (str): The SQL query string with '?' placeholders for parameters.
            params (Tuple): A tuple of parameter values corresponding to the placeholders.

        Returns:
            bool: True if execution was successful, False on error.
        """
        if not self.connection or not self.cursor:
            logger.error("Not connected to the database. Cannot execute query.")
            return False

        start_time = time.time()
        try:
            self.cursor.execute(query, params)
            duration_ms = (time.time() - start_time) * 1000
            logger.log_sql_execution(query, params, success=True, duration_ms=duration_ms)
            return True
        except Exception as ex:
            duration_ms = (time.time() - start_time) * 1000
            logger.log_sql_execution(query, params, success=False, duration_ms=duration_ms)
            if pyodbc is not None and isinstance(ex, pyodbc.Error) and ex.args:
                logger.error(f"SQL execution failed: SQLSTATE {ex.args[0]}")
            else:
                logger.error(f"SQL execution failed: {type(ex).__name__}")
            self.rollback()
            return False

    @property
    def rowcount(self) -> int:
        """Rows affected by the last DML statement (-1 when unknown)."""
        if not self.cursor:
            return -1
        return self.cursor.rowcount

    def _columns(self) -> Optional[List[str]]:
        if self.cursor is None or self.cursor.description is None:
            return None
        return [column[0] for column in self.cursor.description]

    def fetch_results(self) -> Optional[List[Dict[str, Any]]]:
        """
        Fetches all rows of the last executed query as dictionaries keyed by column name.

        Returns:
            Optional[List[Dict[str, Any]]]: The rows, an empty list if the
            statement returned no result set, or None if fetching failed.
        """
        if not self.cursor:
            logger.error("No cursor available to fetch results.")
            return None

        try:
            columns = self._columns()
            if columns is None:
                return []
            start_time = time.time()
            rows = self.cursor.fetchall()
            duration_ms = (time.time() - start_time) * 1000
            logger.log_database_operation("FETCH", success=True, duration_ms=duration_ms, row_count=len(rows))
            return [
                {col: self._clean_field_value(val) for col, val in zip(columns, row)}
                for row in rows
            ]
        except Exception as ex:
            logger.error(f"Error fetching results from cursor: {type(ex).__name__}")
            return None

    def iter_results(self, batch_size: int = DEFAULT_FETCH_BATCH_SIZE) -> Iterator[Dict[str, Any]]:
        """
        Lazily yield the rows of the last executed query in fetchmany() batches.

        Keeps memory flat for full-population reads.
        """
        if not self.cursor:
            logger.error("No cursor available to fetch results.")
            return
        columns = self._columns()
        if columns is None:
            return
        total = 0
        while True:
            rows = self.cursor.fetchmany(batch_size)
            if not rows:
                break
            total += len(rows)
            for row in rows:
                yield {col: self._clean_field_value(val) for col, val in zip(columns, row)}
        logger.log_database_operation("FETCH_STREAM", success=True, row_count=total)

    def commit(self) -> bool:
        """
        Commits the current transaction to the database.

        Returns:
            bool: True if commit was successful, False otherwise.
        """
        if not self.connection:
            logger.error("Cannot commit, no active connection.")
            return False
        try:
            self.connection.commit()
            return True
        except Exception as ex:
            logger.error(f"Error committing transaction: {type(ex).__name__}")
            self.rollback()
            return False

    def rollback(self) -> None:
        """Roll back the current transaction, if there is a connection."""
        if self.connection:
            try:
                self.connection.rollback()
                logger.info("Transaction rolled back due to error or explicit request.")
            except Exception as rollback_ex:
                logger.critical(f"Error during transaction rollback: {type(rollback_ex).__name__}")

    def close_connection(self) -> None:
        """Closes the database cursor and connection if they are open."""
        if self.debug:
            logger.debug("Closing database connection and cursor...")
        if self.cursor:
            try:
                self.cursor.close()
            except Exception as ex:
                logger.warning(f"Error closing cursor: {ex}")
            finally:
                self.cursor = None

        if self.connection:
            try:
                self.connection.close()
                logger.info("Connection closed.")
            except Exception as ex:
                logger.warning(f"Error closing connection: {ex}")
            finally:
                self.connection = None
