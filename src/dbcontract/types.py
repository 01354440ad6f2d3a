"""
Type handling for bind values and declared annotations.

This module provides:
- TypeConverter: Convert Python values to database-compatible formats
- Annotation helpers used to classify declared parameter and return types
"""
import collections.abc
import datetime
import decimal
import logging
import math
import types
import typing
import uuid
from typing import Any

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

NUMPY_FLOAT_TYPES = (np.floating,)
NUMPY_INT_TYPES = (np.integer, np.unsignedinteger)

SCALAR_TYPES: tuple[type, ...] = (
    str, bytes, bytearray, int, float, bool, complex,
    decimal.Decimal, datetime.date, datetime.datetime, datetime.time,
    datetime.timedelta, uuid.UUID,
    )

ITERABLE_ORIGINS: tuple[type, ...] = (
    list, tuple, set, frozenset,
    collections.abc.Iterable, collections.abc.Iterator,
    collections.abc.Sequence, collections.abc.Collection,
    collections.abc.Set, collections.abc.MutableSequence,
    )


def _convert_numpy_value(val: Any) -> float | int | datetime.datetime | None:
    """Convert NumPy value to Python type."""
    if isinstance(val, np.floating) and np.isnan(val):
        return None

    if isinstance(val, np.datetime64):
        if np.isnat(val):
            return None
        return pd.Timestamp(val).to_pydatetime()

    return val.item()


class TypeConverter:
    """Universal type conversion for bind values.

    Handles NumPy and Pandas scalars; everything else passes through.
    """

    @staticmethod
    def convert_value(value: Any) -> Any:
        """Convert a single value to a database-compatible format."""
        if value is None:
            return None

        if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
            return None

        if isinstance(value, (*NUMPY_FLOAT_TYPES, *NUMPY_INT_TYPES, np.bool_, np.datetime64)):
            return _convert_numpy_value(value)

        if value is pd.NaT or value is pd.NA:
            return None

        if isinstance(value, pd.Timestamp):
            return value.to_pydatetime()

        return value

    @staticmethod
    def convert_params(params: Any) -> Any:
        """Convert a collection of parameters for database operations."""
        if params is None:
            return None

        if isinstance(params, dict):
            return {k: TypeConverter.convert_value(v) for k, v in params.items()}

        if isinstance(params, list | tuple):
            return type(params)(TypeConverter.convert_value(v) for v in params)

        return TypeConverter.convert_value(params)


def strip_annotated(tp: Any) -> tuple[Any, tuple]:
    """Split ``Annotated[T, *extras]`` into ``(T, extras)``."""
    if typing.get_origin(tp) is typing.Annotated:
        base, *extras = typing.get_args(tp)
        return base, tuple(extras)
    return tp, ()


def unwrap_optional(tp: Any) -> tuple[Any, bool]:
    """Return ``(T, True)`` for ``T | None`` / ``Optional[T]``, else ``(tp, False)``."""
    origin = typing.get_origin(tp)
    if origin is typing.Union or origin is types.UnionType:
        args = [a for a in typing.get_args(tp) if a is not type(None)]
        if len(args) == 1 and len(typing.get_args(tp)) == 2:
            return args[0], True
    return tp, False


def element_type(tp: Any) -> Any:
    """First type argument of a generic alias, or Any."""
    args = typing.get_args(tp)
    return args[0] if args else Any


def is_iterable_type(tp: Any) -> bool:
    """True for declared collection types such as ``list[int]`` or ``Iterator[str]``.

    Strings, bytes and mappings are scalars for binding purposes.
    """
    tp, _ = strip_annotated(tp)
    tp, _ = unwrap_optional(tp)
    origin = typing.get_origin(tp) or tp
    if not isinstance(origin, type):
        return False
    if issubclass(origin, str | bytes | bytearray | collections.abc.Mapping):
        return False
    return issubclass(origin, ITERABLE_ORIGINS)


def is_scalar_type(tp: Any) -> bool:
    """True for types read from the first column of a row."""
    if tp is Any or tp is object:
        return True
    return isinstance(tp, type) and issubclass(tp, SCALAR_TYPES)


def type_name(tp: Any) -> str:
    return getattr(tp, '__name__', None) or repr(tp)
