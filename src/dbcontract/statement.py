"""
Statements, deferred queries and lazy result iterators.

A Statement pairs a parsed template with a Handle and collects bound
values until execution. Query adds read-side shaping (mapper selection,
first/list/iterator). ResultIterator is the forward-only, cursor-backed
sequence returned for lazily produced results; it must be exhausted or
closed to release its cursor.
"""
import logging
import time
from collections import deque
from collections.abc import Callable, Iterator
from functools import wraps
from typing import TYPE_CHECKING, Any, Generic, Self, TypeVar

import pandas as pd
from dbcontract.exceptions import ConfigurationError, ExecutionError
from dbcontract.exceptions import NativeDatabaseError
from dbcontract.mappers import DictMapper, RowMapper, as_mapper, default_mapper
from dbcontract.template import ParsedTemplate
from dbcontract.types import type_name

from libb import attrdict

if TYPE_CHECKING:
    from dbcontract.handle import Handle

__all__ = [
    'Binding',
    'Statement',
    'Query',
    'ResultIterator',
]

logger = logging.getLogger(__name__)

T = TypeVar('T')

DEFAULT_FETCH_SIZE = 1000

_END = object()


class Binding:
    """Named and positional values bound for one execution (or one batch row)."""

    __slots__ = ('named', 'positional')

    def __init__(self) -> None:
        self.named: dict[str, Any] = {}
        self.positional: dict[int, Any] = {}

    def bind(self, key: str | int, value: Any) -> Self:
        if isinstance(key, int):
            self.positional[key] = value
        else:
            self.named[key] = value
        return self

    def arguments(self, template: ParsedTemplate) -> tuple:
        return template.arguments(self.named, self.positional)

    def check(self, template: ParsedTemplate) -> None:
        """Raise BindingError unless every bind site of the template has a value."""
        template.arguments(self.named, self.positional)

    def __repr__(self) -> str:
        parts = [f'{k}={v!r}' for k, v in self.named.items()]
        parts.extend(f'?{k}={v!r}' for k, v in sorted(self.positional.items()))
        return f"Binding({', '.join(parts)})"


def dumpsql(func):
    """Decorator for logging statement SQL, arguments and timing."""
    @wraps(func)
    def wrapper(self: 'Statement', *args: Any, **kwargs: Any):
        start = time.time()
        logger.debug(f'SQL:\n{self.sql}\nargs: {self.binding!r}')
        try:
            return func(self, *args, **kwargs)
        except Exception:
            logger.error(f'Error with statement:\nSQL:\n{self.sql}\nargs: {self.binding!r}')
            raise
        finally:
            elapsed = time.time() - start
            self.handle.addcall(elapsed)
            logger.debug(f'Statement time: {elapsed:.4f}s')
    return wrapper


def dumpsql_batch(func):
    """Decorator for logging batch executions."""
    @wraps(func)
    def wrapper(self: 'Statement', *args: Any, **kwargs: Any):
        start = time.time()
        logger.debug(f'SQL:\n{self.sql}\nbatch: {len(self._batch)} rows')
        try:
            return func(self, *args, **kwargs)
        except Exception:
            logger.error(f'Error with batch:\nSQL:\n{self.sql}')
            raise
        finally:
            elapsed = time.time() - start
            self.handle.addcall(elapsed)
            logger.debug(f'Batch time: {elapsed:.4f}s')
    return wrapper


class ResultIterator(Generic[T]):
    """Forward-only sequence of mapped rows backed by an open cursor.

    Rows are fetched on demand in ``fetch_size`` chunks. The iterator is
    not restartable. It closes its cursor when exhausted, on ``close()``,
    or when the owning Handle closes.
    """

    def __init__(self, cursor: Any, mapper: RowMapper[T], handle: 'Handle | None' = None,
                 fetch_size: int | None = None, max_field_size: int | None = None) -> None:
        self.cursor = cursor
        self.mapper = mapper
        self.handle = handle
        self.fetch_size = fetch_size or DEFAULT_FETCH_SIZE
        self.max_field_size = max_field_size
        self.columns = [d[0] for d in (cursor.description or [])]
        self.closed = False
        self._buffer: deque = deque()
        self._peeked: Any = _END
        self._callbacks: list[Callable[[], None]] = []
        if handle is not None:
            handle.track(self)

    def __iter__(self) -> Self:
        return self

    def __next__(self) -> T:
        if self._peeked is not _END:
            value, self._peeked = self._peeked, _END
            return value
        row = self._fetch()
        if row is _END:
            self.close()
            raise StopIteration
        return self.mapper.map(row)

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None,
                 exc_tb: Any | None) -> None:
        self.close()

    def has_next(self) -> bool:
        """Check for a further row without consuming it."""
        if self._peeked is not _END:
            return True
        try:
            self._peeked = next(self)
        except StopIteration:
            return False
        return True

    def add_close_callback(self, callback: Callable[[], None]) -> None:
        """Run callback once, when this iterator is closed."""
        if self.closed:
            callback()
        else:
            self._callbacks.append(callback)

    def _fetch(self) -> Any:
        if self.closed:
            return _END
        if not self._buffer:
            try:
                chunk = self.cursor.fetchmany(self.fetch_size)
            except NativeDatabaseError as err:
                self.close()
                raise ExecutionError(f'Fetching rows failed: {err}') from err
            if not chunk:
                return _END
            self._buffer.extend(chunk)
        return self._make_row(self._buffer.popleft())

    def _make_row(self, values: Any) -> attrdict:
        values = tuple(values)
        if self.max_field_size:
            size = self.max_field_size
            values = tuple(v[:size] if isinstance(v, str | bytes | bytearray) else v
                           for v in values)
        return attrdict(zip(self.columns, values))

    def close(self) -> None:
        """Release the cursor and run close callbacks; safe to call twice."""
        if self.closed:
            return
        self.closed = True
        self._buffer.clear()
        try:
            self.cursor.close()
        finally:
            if self.handle is not None:
                self.handle.untrack(self)
            callbacks, self._callbacks = self._callbacks, []
            for callback in callbacks:
                callback()
            logger.debug('Result iterator closed')


class Statement:
    """A parsed template bound to a Handle, ready for execution.

    Customizers configure the statement before execution through the
    ``set_*`` and mapper methods.
    """

    def __init__(self, handle: 'Handle', template: ParsedTemplate) -> None:
        self.handle = handle
        self.template = template
        self.binding = Binding()
        self.mapper: RowMapper | None = None
        self.result_type: Any = Any
        self.max_field_size: int | None = None
        self.fetch_size: int | None = getattr(handle.options, 'default_fetch_size', None)
        self.batch_chunk_size: int | None = None
        self._mappers: list[RowMapper] = []
        self._batch: list[Binding] = []
        self._callbacks: list[Callable[[], None]] = []

    @property
    def sql(self) -> str:
        return self.template.render(self.handle.dialect)

    def bind(self, key: str | int, value: Any) -> Self:
        """Bind a value by name or by positional index."""
        self.binding.bind(key, value)
        return self

    def set_max_field_size(self, size: int) -> Self:
        """Truncate character and binary column values to size."""
        self.max_field_size = size
        return self

    def set_fetch_size(self, size: int) -> Self:
        """Number of rows fetched from the cursor per round trip."""
        self.fetch_size = size
        return self

    def set_batch_chunk_size(self, size: int) -> Self:
        self.batch_chunk_size = size
        return self

    def register_mapper(self, mapper: Any) -> Self:
        """Make a mapper available for result types it accepts."""
        self._mappers.append(as_mapper(mapper))
        return self

    def map(self, mapper: Any) -> Self:
        """Use this mapper for every row, whatever the result type."""
        self.mapper = as_mapper(mapper)
        return self

    def resolve_mapper(self) -> RowMapper:
        if self.mapper is not None:
            return self.mapper
        for mapper in reversed(self._mappers):
            if mapper.accepts(self.result_type):
                return mapper
        mapper = default_mapper(self.result_type)
        if mapper is None:
            raise ConfigurationError(f'No mapper registered for {type_name(self.result_type)}')
        return mapper

    def add_close_callback(self, callback: Callable[[], None]) -> None:
        self._callbacks.append(callback)

    def close(self) -> None:
        """Run close callbacks; releases an on-demand handle held for this statement."""
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def _execute(self, cursor: Any, args: tuple) -> None:
        try:
            cursor.execute(self.sql, args)
        except NativeDatabaseError as err:
            self.handle.after_failure()
            raise ExecutionError(f'Statement execution failed: {err}', sql=self.sql) from err

    @dumpsql
    def execute_update(self) -> int:
        """Execute and return the affected-row count."""
        args = self.binding.arguments(self.template)
        cursor = self.handle.cursor()
        try:
            self._execute(cursor, args)
            rowcount = cursor.rowcount
        finally:
            cursor.close()
        self.handle.after_statement()
        logger.debug(f'Statement affected {rowcount} rows')
        return rowcount

    @dumpsql
    def execute_query(self, mapper: RowMapper | None = None) -> ResultIterator:
        """Execute and return a lazy iterator over mapped rows."""
        args = self.binding.arguments(self.template)
        mapper = mapper or self.resolve_mapper()
        cursor = self.handle.cursor()
        if self.fetch_size:
            cursor.arraysize = self.fetch_size
        try:
            self._execute(cursor, args)
        except Exception:
            cursor.close()
            raise
        return ResultIterator(cursor, mapper, handle=self.handle, fetch_size=self.fetch_size,
                              max_field_size=self.max_field_size)

    def add_batch(self, binding: Binding | None = None) -> Self:
        """Queue a row for batch execution.

        With no argument the statement's current binding is queued and a
        fresh one started.
        """
        if binding is None:
            binding, self.binding = self.binding, Binding()
        binding.check(self.template)
        self._batch.append(binding)
        return self

    def _execute_many(self, cursor: Any, rows: list[tuple]) -> list[int]:
        """Run rows in one executemany call and read each row's count from its result set."""
        try:
            cursor.executemany(self.sql, rows, returning=True)
        except NativeDatabaseError as err:
            self.handle.after_failure()
            raise ExecutionError(f'Batch execution failed: {err}', sql=self.sql) from err
        counts = [cursor.rowcount]
        for _ in rows[1:]:
            if not cursor.nextset():
                break
            counts.append(cursor.rowcount)
        return counts

    @dumpsql_batch
    def execute_batch(self) -> list[int]:
        """Execute queued rows as one chunk and return per-row counts.

        PostgreSQL runs the chunk in a single executemany call. sqlite3
        only reports an aggregate count for executemany, so its rows run
        one by one on a shared cursor.
        """
        rows = [binding.arguments(self.template) for binding in self._batch]
        self._batch = []
        if not rows:
            return []
        cursor = self.handle.cursor()
        try:
            if self.handle.dialect == 'postgresql':
                counts = self._execute_many(cursor, rows)
            else:
                counts = []
                for args in rows:
                    self._execute(cursor, args)
                    counts.append(cursor.rowcount)
        finally:
            cursor.close()
        self.handle.after_statement()
        return counts


class Query(Statement, Generic[T]):
    """A not-yet-executed query the caller may configure before running.

    Terminal operations: ``first()``, ``list()``, ``iterator()``,
    ``dataframe()`` and iteration.
    """

    def _finish(self) -> None:
        self.close()

    def iterator(self) -> ResultIterator[T]:
        try:
            result = self.execute_query()
        except Exception:
            self._finish()
            raise
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            result.add_close_callback(callback)
        return result

    def __iter__(self) -> Iterator[T]:
        return self.iterator()

    def first(self) -> T | None:
        """Return the first mapped row, or None when there are no rows."""
        try:
            with self.execute_query() as rows:
                return next(rows, None)
        finally:
            self._finish()

    def list(self) -> list[T]:
        try:
            with self.execute_query() as rows:
                return list(rows)
        finally:
            self._finish()

    def dataframe(self) -> pd.DataFrame:
        """Materialize all rows into a DataFrame, keeping columns for empty results."""
        try:
            with self.execute_query(mapper=DictMapper()) as rows:
                columns = rows.columns
                data = list(rows)
        finally:
            self._finish()
        if not data:
            return pd.DataFrame(columns=columns)
        return pd.DataFrame.from_records(data, columns=columns)
