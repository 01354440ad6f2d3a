"""
Exception classes for contract building, binding and execution.
"""
import re
import sqlite3

import psycopg

RETRYABLE_PATTERNS = [
    # SSL/TLS errors
    r'ssl',
    r'tls',
    # Connection drops
    r'connection.*(closed|reset|refused|lost|terminated|broken)',
    r'server closed',
    r'eof detected',
    r'broken pipe',
    # Timeouts
    r'timeout',
    r'timed out',
    # Network issues
    r'could not connect',
    r'no route to host',
    r'network.*(unreachable|error)',
    # Database unavailable
    r'database.*(unavailable|is locked)',
    r'too many connections',
]

_RETRYABLE_REGEX = re.compile('|'.join(RETRYABLE_PATTERNS), re.IGNORECASE)


def is_retryable_error(exc: BaseException) -> bool:
    """Check if an exception represents a transient error worth retrying.

    Syntax errors, constraint violations and binding mistakes will fail
    again; dropped connections, timeouts and locked databases may not.

    :param exc: The exception to check.
    :returns: True if the error is likely transient and worth retrying.
    """
    error_msg = str(exc).lower()
    return bool(_RETRYABLE_REGEX.search(error_msg))


class DatabaseError(Exception):
    """Base class for all dbcontract errors.
    """


class ConnectionFailure(DatabaseError):
    """Error establishing or maintaining database connection.
    """


class TemplateError(DatabaseError):
    """Malformed bind marker or quoted literal in a SQL template.
    """

    def __init__(self, message: str, template: str | None = None,
                 position: int | None = None) -> None:
        super().__init__(message)
        self.template = template
        self.position = position


class BindingError(DatabaseError):
    """An argument could not be bound to the statement.

    Raised for template names left without a value, batch arguments of
    unequal length and, in strict mode, bind names the template never uses.
    """


class ConfigurationError(DatabaseError):
    """Invalid contract declaration, detected when the contract is built.
    """


class ExecutionError(DatabaseError):
    """Statement execution failed in the underlying driver.

    The driver's own exception is available as ``__cause__``.
    """

    def __init__(self, message: str, sql: str | None = None) -> None:
        super().__init__(message)
        self.sql = sql

    @property
    def is_retryable(self) -> bool:
        cause = self.__cause__
        return cause is not None and is_retryable_error(cause)


class ResultShapeError(DatabaseError):
    """Row count does not fit the declared return shape.
    """


NativeDatabaseError = (
    psycopg.Error,
    sqlite3.Error,
    )

DbConnectionError = (
    psycopg.OperationalError,
    psycopg.InterfaceError,
    sqlite3.OperationalError,
    sqlite3.InterfaceError,
    ConnectionFailure,
    )
