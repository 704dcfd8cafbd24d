"""Custom exceptions for the SQL interface."""


class DatabaseConnectionError(Exception):
    """Raised when unable to connect to the database."""
    pass


class QueryExecutionError(Exception):
    """Raised when a query fails to execute."""
    pass
