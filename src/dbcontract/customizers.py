"""
Statement customizers applied before execution.

Each customizer is also a decorator. On a method it customizes that
method's statements; on a contract class it customizes every method it
applies to::

    @register_mapper(SomethingMapper)
    class AnotherQuery:
        @sql_batch('insert into something (id, name) values (:id, :name)')
        @batch_chunk_size(2)
        def insert(self, *somethings: Annotated[Something, BindObject()]) -> None: ...

Contract-level customizers run before method-level ones, and stacked
decorators run in the order they appear in the source. Customizers are
shared by every invocation and keep no per-call state.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any

from dbcontract.contract import OperationKind
from dbcontract.exceptions import ConfigurationError
from dbcontract.mappers import as_mapper
from dbcontract.statement import Statement

__all__ = [
    'Customizer',
    'MapperCustomizer',
    'MaxFieldSizeCustomizer',
    'FetchSizeCustomizer',
    'BatchChunkSizeCustomizer',
    'register_mapper',
    'use_mapper',
    'max_field_size',
    'fetch_size',
    'batch_chunk_size',
]

logger = logging.getLogger(__name__)


class Customizer(ABC):
    """Configures a Statement before execution.

    ``kinds`` lists the operation kinds the customizer is valid for. On a
    method of any other kind it is a configuration error; declared on a
    contract class it is simply skipped for such methods.
    """

    kinds: frozenset[OperationKind] = frozenset(OperationKind)

    @abstractmethod
    def apply(self, statement: Statement) -> None:
        ...

    def applies_to(self, kind: OperationKind) -> bool:
        return kind in self.kinds

    def validate(self, kind: OperationKind, method_name: str) -> None:
        """Raise ConfigurationError if this customizer cannot apply to the method."""
        if not self.applies_to(kind):
            raise ConfigurationError(
                f'{self!r} cannot be used on {kind.name.lower()} method {method_name}')

    def provides_mapper(self, tp: Any) -> bool:
        return False

    def __call__(self, target: Any) -> Any:
        """Attach to a contract method or class, keeping source order."""
        if isinstance(target, type):
            existing = target.__dict__.get('__sql_customizers__', ())
        elif callable(target):
            existing = getattr(target, '__sql_customizers__', ())
        else:
            raise TypeError(f'{self!r} must decorate a contract class or method')
        target.__sql_customizers__ = (self, *existing)
        return target


class _SizeCustomizer(Customizer):

    def __init__(self, size: int) -> None:
        if not isinstance(size, int) or isinstance(size, bool) or size <= 0:
            raise ConfigurationError(f'{type(self).__name__} requires a positive integer, got {size!r}')
        self.size = size

    def __repr__(self) -> str:
        return f'{type(self).__name__}({self.size})'


class MapperCustomizer(Customizer):
    """Selects the row mapper for query results.

    With ``explicit=True`` the mapper is used for every row; otherwise it
    is registered for the result types it accepts.
    """

    kinds = frozenset({OperationKind.QUERY})

    def __init__(self, mapper: Any, explicit: bool = False) -> None:
        self.mapper = as_mapper(mapper)
        self.explicit = explicit

    def apply(self, statement: Statement) -> None:
        if self.explicit:
            statement.map(self.mapper)
        else:
            statement.register_mapper(self.mapper)

    def provides_mapper(self, tp: Any) -> bool:
        return self.explicit or self.mapper.accepts(tp)

    def __repr__(self) -> str:
        return f'{type(self).__name__}({self.mapper!r}, explicit={self.explicit})'


class MaxFieldSizeCustomizer(_SizeCustomizer):
    """Truncates character and binary column values."""

    kinds = frozenset({OperationKind.QUERY})

    def apply(self, statement: Statement) -> None:
        statement.set_max_field_size(self.size)


class FetchSizeCustomizer(_SizeCustomizer):
    """Rows fetched per cursor round trip."""

    kinds = frozenset({OperationKind.QUERY})

    def apply(self, statement: Statement) -> None:
        statement.set_fetch_size(self.size)


class BatchChunkSizeCustomizer(_SizeCustomizer):
    """Maximum rows per batch round trip."""

    kinds = frozenset({OperationKind.BATCH})

    def apply(self, statement: Statement) -> None:
        statement.set_batch_chunk_size(self.size)


def register_mapper(mapper: Any) -> MapperCustomizer:
    """Register a mapper for the result types it accepts."""
    return MapperCustomizer(mapper)


def use_mapper(mapper: Any) -> MapperCustomizer:
    """Map every row of the decorated query with this mapper."""
    return MapperCustomizer(mapper, explicit=True)


def max_field_size(size: int) -> MaxFieldSizeCustomizer:
    return MaxFieldSizeCustomizer(size)


def fetch_size(size: int) -> FetchSizeCustomizer:
    return FetchSizeCustomizer(size)


def batch_chunk_size(size: int) -> BatchChunkSizeCustomizer:
    """Split batch rows into chunks of at most size rows."""
    return BatchChunkSizeCustomizer(size)
