"""
Handle: a live database connection that prepares and runs statements.

The Handle wraps a SQLAlchemy connection and its raw DB-API connection:
1. Prepares Statements and Queries from SQL templates
2. Commits after each statement unless a transaction is active
3. Tracks query execution counts and timing
4. Tracks open result iterators and closes them with the connection
5. Supports the context manager protocol for explicit resource management
"""
import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, Self, TypeVar

import sqlalchemy as sa
from dbcontract.statement import Query, ResultIterator, Statement
from dbcontract.template import ParsedTemplate, parse
from dbcontract.transaction import Transaction
from dbcontract.types import TypeConverter

from libb import attrdict

if TYPE_CHECKING:
    from dbcontract.options import DatabaseOptions

__all__ = ['Handle']

logger = logging.getLogger(__name__)

C = TypeVar('C')


class Handle:
    """A database connection with statement, query and transaction methods.

    Examples
        with database.open() as h:
            h.execute('insert into something (id, name) values (?, ?)', 1, 'Brian')
            name = h.create_query('select name from something where id = :id') \\
                .bind('id', 1).map(lambda row: row.name).first()
    """

    def __init__(self, sa_connection: sa.engine.Connection,
                 options: 'DatabaseOptions | None' = None) -> None:
        self.sa_connection = sa_connection
        self.dbapi_connection = sa_connection.connection
        self.options = options
        self._dialect = str(sa_connection.dialect.name).lower()
        self._iterators: set[ResultIterator] = set()
        self.calls = 0
        self.time = 0.0
        self.in_transaction = False
        self.closed = False

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None,
                 exc_tb: Any | None) -> None:
        self.close()

    @property
    def dialect(self) -> str:
        """Return the dialect name ('postgresql' or 'sqlite')."""
        return self._dialect

    def cursor(self) -> Any:
        """Raw DB-API cursor on this handle's connection."""
        return self.dbapi_connection.cursor()

    def addcall(self, elapsed: float) -> None:
        """Track execution statistics
        """
        self.time += elapsed
        self.calls += 1

    def track(self, iterator: ResultIterator) -> None:
        self._iterators.add(iterator)

    def untrack(self, iterator: ResultIterator) -> None:
        self._iterators.discard(iterator)

    def prepare(self, template: ParsedTemplate | str) -> Statement:
        """Prepare a statement for binding and execution."""
        if isinstance(template, str):
            template = parse(template)
        return Statement(self, template)

    def create_query(self, template: ParsedTemplate | str) -> Query:
        """Prepare a query; rows map to attribute dictionaries unless a mapper is set."""
        if isinstance(template, str):
            template = parse(template)
        query = Query(self, template)
        query.result_type = attrdict
        return query

    @staticmethod
    def _bind_args(statement: Statement, args: tuple, kwargs: dict) -> None:
        template = statement.template
        args = TypeConverter.convert_params(args)
        kwargs = TypeConverter.convert_params(kwargs)
        if len(args) == 1 and isinstance(args[0], Mapping) and not template.is_positional:
            kwargs = {**args[0], **kwargs}
            args = ()
        if template.is_positional:
            keys = range(len(args))
        else:
            keys = template.names[:len(args)]
        for key, value in zip(keys, args):
            statement.bind(key, value)
        for key, value in kwargs.items():
            statement.bind(key, value)

    def execute(self, sql: str, *args: Any, **kwargs: Any) -> int:
        """Execute a SQL template and return the affected row count.

        Positional arguments fill ``?`` sites, or ``:name`` sites in order
        of first appearance; a single mapping or keyword arguments bind by
        name.
        """
        statement = self.prepare(sql)
        self._bind_args(statement, args, kwargs)
        return statement.execute_update()

    def select(self, sql: str, *args: Any, **kwargs: Any) -> list[attrdict]:
        """Execute a query and return all rows as attribute dictionaries."""
        query = self.create_query(sql)
        self._bind_args(query, args, kwargs)
        return query.list()

    def attach(self, contract: type[C], **kw: Any) -> C:
        """Build a contract instance running on this handle; the caller keeps ownership."""
        from dbcontract.lifecycle import attach
        return attach(self, contract, **kw)

    def transaction(self) -> Transaction:
        """Context manager committing on success and rolling back on error."""
        return Transaction(self)

    def begin(self) -> None:
        """Start a transaction; statements stop committing individually."""
        if self.in_transaction:
            raise RuntimeError('Transaction already in progress on this handle')
        self.in_transaction = True
        logger.debug(f'Began transaction on handle {id(self)}')

    def commit(self) -> None:
        """Commit the current transaction"""
        try:
            self.dbapi_connection.commit()
        finally:
            self.in_transaction = False

    def rollback(self) -> None:
        """Roll back the current transaction"""
        try:
            self.dbapi_connection.rollback()
        finally:
            self.in_transaction = False

    def after_statement(self) -> None:
        """Commit a standalone statement."""
        if not self.in_transaction:
            self.dbapi_connection.commit()

    def after_failure(self) -> None:
        """Roll back a failed standalone statement."""
        if self.in_transaction:
            return
        try:
            self.dbapi_connection.rollback()
        except Exception as e:
            logger.debug(f'Could not roll back after failure: {e}')

    def close(self) -> None:
        """Close open iterators and the connection; safe to call twice.
        """
        if self.closed:
            return
        self.closed = True
        try:
            for iterator in list(self._iterators):
                iterator.close()
            if self.in_transaction:
                logger.warning('Handle closed with a transaction in progress, rolling back')
                self.rollback()
        finally:
            self.sa_connection.close()
            logger.debug(f'Handle closed: {self.calls} statements in {self.time:.2f}s '
                         f'(avg: {self.time/max(1, self.calls):.3f}s per statement)')
