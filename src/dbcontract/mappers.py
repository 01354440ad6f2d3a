"""
Row mappers turning result rows into declared result types.

Rows reach mappers as ``libb.attrdict`` objects keyed by column name, in
select-list order. A mapper advertises the result type it produces with
``result_type`` (or by overriding ``accepts``) so that a contract-level
``register_mapper`` can pick it for methods returning that type.
"""
import dataclasses
import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any, Generic, TypeVar

from dbcontract.exceptions import ResultShapeError
from dbcontract.types import is_scalar_type, type_name

from libb import attrdict

__all__ = [
    'RowMapper',
    'FirstColumnMapper',
    'DictMapper',
    'TupleMapper',
    'DataclassMapper',
    'as_mapper',
    'default_mapper',
]

logger = logging.getLogger(__name__)

T = TypeVar('T')


class RowMapper(ABC, Generic[T]):
    """Maps one result row to a value."""

    result_type: Any = None

    @abstractmethod
    def map(self, row: attrdict) -> T:
        ...

    def accepts(self, tp: Any) -> bool:
        """Whether this mapper produces values of the declared type."""
        return self.result_type is not None and tp is self.result_type


class FirstColumnMapper(RowMapper[Any]):
    """Returns the first column of each row."""

    def map(self, row: attrdict) -> Any:
        for value in row.values():
            return value
        raise ResultShapeError('Row has no columns')

    def accepts(self, tp: Any) -> bool:
        return is_scalar_type(tp)


class DictMapper(RowMapper[attrdict]):
    """Returns each row as an attribute dictionary."""

    result_type = attrdict

    def map(self, row: attrdict) -> attrdict:
        return attrdict(row)

    def accepts(self, tp: Any) -> bool:
        return isinstance(tp, type) and issubclass(tp, Mapping)


class TupleMapper(RowMapper[tuple]):
    """Returns each row as a tuple of column values."""

    result_type = tuple

    def map(self, row: attrdict) -> tuple:
        return tuple(row.values())


class DataclassMapper(RowMapper[T]):
    """Builds a dataclass from the columns matching its field names.

    Column names are matched case-insensitively; unmatched columns are
    ignored and unmatched fields fall back to their defaults.
    """

    def __init__(self, cls: type[T]) -> None:
        self.result_type = cls
        self._fields = {f.name.lower(): f.name for f in dataclasses.fields(cls) if f.init}

    def map(self, row: attrdict) -> T:
        kwargs = {}
        for column, value in row.items():
            name = self._fields.get(str(column).lower())
            if name is not None:
                kwargs[name] = value
        return self.result_type(**kwargs)


def as_mapper(mapper: Any) -> RowMapper:
    """Instantiate a mapper class, or pass a mapper instance through.

    A plain callable taking the row is wrapped so that ``use_mapper`` also
    accepts functions.
    """
    if isinstance(mapper, RowMapper):
        return mapper
    if isinstance(mapper, type) and issubclass(mapper, RowMapper):
        return mapper()
    if callable(mapper):
        return _CallableMapper(mapper)
    raise TypeError(f'Not a row mapper: {mapper!r}')


class _CallableMapper(RowMapper[Any]):

    def __init__(self, func) -> None:
        self.func = func

    def map(self, row: attrdict) -> Any:
        return self.func(row)

    def __repr__(self) -> str:
        return f'{type(self).__name__}({self.func!r})'


_DEFAULT_MAPPERS: list[RowMapper] = [FirstColumnMapper(), DictMapper(), TupleMapper()]


def default_mapper(tp: Any) -> RowMapper | None:
    """Built-in mapper for a declared result type, or None."""
    for mapper in _DEFAULT_MAPPERS:
        if mapper.accepts(tp):
            return mapper
    if isinstance(tp, type) and dataclasses.is_dataclass(tp):
        return DataclassMapper(tp)
    logger.debug(f'No default mapper for {type_name(tp)}')
    return None
