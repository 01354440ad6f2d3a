"""
Contract declarations and their descriptors.

A contract is a plain class whose methods carry SQL decorators::

    class MyDAO:
        @sql_update('insert into something (id, name) values (:id, :name)')
        def insert(self, id: int, name: str) -> None: ...

        @sql_query('select name from something where id = :id')
        def find_name_by_id(self, id: int) -> str: ...

        def close(self) -> None: ...

`describe()` turns a contract class into an immutable ContractDescriptor,
validating templates, binding markers, customizers and return types.
Descriptors are built once per class and cached for the process lifetime.
"""
import collections.abc
import inspect
import itertools
import logging
import types
import typing
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any

import pandas as pd
from dbcontract.binding import Bind, Binder, BindObject, DefaultObjectBinder
from dbcontract.binding import Positional, is_binding_marker, resolve
from dbcontract.cache import Cache
from dbcontract.exceptions import BindingError, ConfigurationError
from dbcontract.mappers import default_mapper
from dbcontract.statement import Query, ResultIterator
from dbcontract.template import ParsedTemplate, parse
from dbcontract.types import element_type, is_iterable_type, strip_annotated
from dbcontract.types import type_name, unwrap_optional

from libb import attrdict

__all__ = [
    'OperationKind',
    'ReturnShape',
    'SqlOperation',
    'BindSpec',
    'MethodDescriptor',
    'ContractDescriptor',
    'Transactional',
    'sql_query',
    'sql_update',
    'sql_batch',
    'describe',
]

logger = logging.getLogger(__name__)

_MISSING = inspect.Parameter.empty

CLOSE_METHOD = 'close'


class OperationKind(Enum):
    QUERY = auto()
    UPDATE = auto()
    BATCH = auto()
    CLOSE = auto()


class ReturnShape(Enum):
    """How a method's result is materialized."""
    SINGLE = auto()         # first row; zero rows is an error
    OPTIONAL = auto()       # first row or None
    LIST = auto()           # all rows, eagerly
    ITERATOR = auto()       # lazy ResultIterator
    QUERY = auto()          # deferred Query, not yet executed
    DATAFRAME = auto()      # pandas DataFrame
    COUNT = auto()          # affected-row count
    COUNTS = auto()         # per-row affected counts of a batch
    VOID = auto()


@dataclass(frozen=True)
class SqlOperation:
    """Metadata attached to a contract method by a SQL decorator."""
    kind: OperationKind
    template: str
    exactly_one: bool = False


class Transactional(ABC):
    """Mixin giving contract instances transaction control over their Handle.

    The generated implementation supplies these methods, so only
    instances returned by `build()` and its wrappers are usable.
    """

    @abstractmethod
    def begin(self) -> None: ...

    @abstractmethod
    def commit(self) -> None: ...

    @abstractmethod
    def rollback(self) -> None: ...

    @abstractmethod
    def in_transaction(self, callback: typing.Callable[[Any], Any]) -> Any: ...


TRANSACTIONAL_METHODS = frozenset({'begin', 'commit', 'rollback', 'in_transaction'})


def _operation(kind: OperationKind, template: str, **kw: Any):
    def decorator(func):
        if getattr(func, '__sql_operation__', None) is not None:
            raise ConfigurationError(f'{func.__qualname__} declares more than one SQL operation')
        func.__sql_operation__ = SqlOperation(kind, template, **kw)
        return func
    return decorator


def sql_query(template: str, *, exactly_one: bool = False):
    """Declare a read; the return annotation selects the result shape.

    With ``exactly_one=True`` a single-result method also rejects results
    of more than one row.
    """
    return _operation(OperationKind.QUERY, template, exactly_one=exactly_one)


def sql_update(template: str):
    """Declare a write returning the affected-row count."""
    return _operation(OperationKind.UPDATE, template)


def sql_batch(template: str):
    """Declare a bulk write over iterable arguments returning per-row counts."""
    return _operation(OperationKind.BATCH, template)


@dataclass(frozen=True)
class BindSpec:
    """How one method parameter is bound."""
    position: int
    param_name: str
    marker: Any
    binder: Binder
    key: str | int
    iterable: bool
    declared: bool
    var_positional: bool = False

    @property
    def is_static(self) -> bool:
        """Binds exactly its own key, so template coverage is known up front."""
        return type(self.binder) is DefaultObjectBinder or isinstance(self.marker, Positional)


@dataclass(frozen=True, eq=False)
class MethodDescriptor:
    """Everything needed to dispatch one contract method."""
    name: str
    qualname: str
    kind: OperationKind
    template: ParsedTemplate | None
    signature: inspect.Signature
    bind_specs: tuple[BindSpec, ...]
    shape: ReturnShape
    element_type: Any
    customizers: tuple
    exactly_one: bool = False
    unused_bindings: tuple[str | int, ...] = ()


@dataclass(frozen=True, eq=False)
class ContractDescriptor:
    contract: type
    methods: Mapping[str, MethodDescriptor]
    transactional: bool

    def method(self, name: str) -> MethodDescriptor:
        return self.methods[name]


def describe(contract: type) -> ContractDescriptor:
    """Build (once) and return the descriptor of a contract class.

    Raises
        ConfigurationError, TemplateError, BindingError: for declaration mistakes
    """
    if not isinstance(contract, type):
        raise ConfigurationError(f'Contract must be a class, got {contract!r}')
    return Cache.get_instance().get_or_create('contracts', contract, lambda: _describe(contract))


def _contract_customizers(contract: type) -> tuple:
    customizers = []
    for klass in reversed(contract.__mro__):
        customizers.extend(klass.__dict__.get('__sql_customizers__', ()))
    return tuple(customizers)


def _describe(contract: type) -> ContractDescriptor:
    contract_customizers = _contract_customizers(contract)
    transactional = issubclass(contract, Transactional)
    methods: dict[str, MethodDescriptor] = {}

    for name in dir(contract):
        if name.startswith('__') or (transactional and name in TRANSACTIONAL_METHODS):
            continue
        func = inspect.getattr_static(contract, name)
        if not inspect.isfunction(func):
            continue
        operation = getattr(func, '__sql_operation__', None)
        if operation is not None:
            methods[name] = _describe_method(func, operation, contract_customizers)
        elif name == CLOSE_METHOD:
            methods[name] = _describe_close(func)
        elif getattr(func, '__sql_customizers__', None):
            raise ConfigurationError(f'{func.__qualname__} has customizers but no SQL operation')
        elif getattr(func, '__isabstractmethod__', False):
            raise ConfigurationError(f'{func.__qualname__} declares no SQL operation')

    logger.debug(f'Described contract {contract.__qualname__} with {len(methods)} methods')
    return ContractDescriptor(contract=contract, methods=types.MappingProxyType(methods),
                              transactional=transactional)


def _describe_close(func) -> MethodDescriptor:
    signature = inspect.signature(func)
    params = list(signature.parameters.values())[1:]
    if any(p.default is _MISSING and p.kind not in {p.VAR_POSITIONAL, p.VAR_KEYWORD} for p in params):
        raise ConfigurationError(f'{func.__qualname__} must take no arguments')
    return MethodDescriptor(name=func.__name__, qualname=func.__qualname__,
                            kind=OperationKind.CLOSE, template=None, signature=signature,
                            bind_specs=(), shape=ReturnShape.VOID, element_type=None,
                            customizers=())


def _type_hints(func) -> dict[str, Any]:
    try:
        return typing.get_type_hints(func, include_extras=True)
    except Exception as e:
        raise ConfigurationError(f'Cannot resolve annotations of {func.__qualname__}: {e}') from e


def _describe_method(func, operation: SqlOperation, contract_customizers: tuple) -> MethodDescriptor:
    kind = operation.kind
    qualname = func.__qualname__
    hints = _type_hints(func)
    signature = inspect.signature(func)
    params = list(signature.parameters.values())[1:]
    template = parse(operation.template)

    bind_specs = _bind_specs(qualname, kind, params, hints, template)
    shape, elem = _classify_return(qualname, kind, hints.get('return', _MISSING))

    if operation.exactly_one and shape not in {ReturnShape.SINGLE, ReturnShape.OPTIONAL}:
        raise ConfigurationError(f'{qualname}: exactly_one requires a single-result return type')

    method_customizers = tuple(getattr(func, '__sql_customizers__', ()))
    for customizer in method_customizers:
        customizer.validate(kind, qualname)
    customizers = tuple(c for c in contract_customizers if c.applies_to(kind)) + method_customizers

    if kind is OperationKind.QUERY and shape is not ReturnShape.DATAFRAME:
        if not any(c.provides_mapper(elem) for c in customizers) and default_mapper(elem) is None:
            raise ConfigurationError(f'{qualname}: no mapper registered for {type_name(elem)}')

    unused = _check_coverage(qualname, template, bind_specs)

    return MethodDescriptor(name=func.__name__, qualname=qualname, kind=kind, template=template,
                            signature=signature, bind_specs=bind_specs, shape=shape,
                            element_type=elem, customizers=customizers,
                            exactly_one=operation.exactly_one, unused_bindings=unused)


def _bind_specs(qualname: str, kind: OperationKind, params: list[inspect.Parameter],
                hints: dict[str, Any], template: ParsedTemplate) -> tuple[BindSpec, ...]:
    marked = [_marker(qualname, kind, param, hints, template) for param in params]
    indexes = _positional_indexes(qualname, marked)

    specs = []
    for position, (param, marker, base) in enumerate(marked):
        var_positional = param.kind is param.VAR_POSITIONAL
        binder = resolve(marker).build(marker)

        if isinstance(marker, Positional):
            key = indexes[position]
        elif isinstance(marker, Bind):
            key = marker.name or param.name
        elif isinstance(marker, BindObject):
            key = marker.prefix or param.name
        else:
            key = getattr(marker, 'name', None) or param.name

        declared = base is not _MISSING
        iterable = var_positional or (declared and is_iterable_type(base))
        specs.append(BindSpec(position=position, param_name=param.name, marker=marker,
                              binder=binder, key=key, iterable=iterable, declared=declared,
                              var_positional=var_positional))
    return tuple(specs)


def _marker(qualname: str, kind: OperationKind, param: inspect.Parameter,
            hints: dict[str, Any], template: ParsedTemplate) -> tuple[inspect.Parameter, Any, Any]:
    if param.kind is param.VAR_KEYWORD:
        raise ConfigurationError(f'{qualname}: **{param.name} cannot be bound')
    if param.kind is param.VAR_POSITIONAL and kind is not OperationKind.BATCH:
        raise ConfigurationError(f'{qualname}: *{param.name} is only supported on batch methods')

    annotation = hints.get(param.name, _MISSING)
    base, extras = strip_annotated(annotation) if annotation is not _MISSING else (_MISSING, ())
    markers = [e for e in extras if is_binding_marker(e)]
    if len(markers) > 1:
        raise ConfigurationError(f'{qualname}: parameter {param.name} has more than one binding marker')
    if markers:
        return param, markers[0], base
    return param, Positional() if template.is_positional else Bind(), base


def _positional_indexes(qualname: str, marked: list) -> dict[int, int]:
    """Map parameter positions to `?` indexes.

    Explicit indexes are taken first. Parameters without one get the
    lowest indexes left, in declaration order.
    """
    indexes, owners = {}, {}
    for position, (param, marker, _) in enumerate(marked):
        if isinstance(marker, Positional) and marker.index is not None:
            if marker.index in owners:
                raise ConfigurationError(
                    f'{qualname}: parameters {owners[marker.index]} and {param.name} '
                    f'both bind ?{marker.index}')
            owners[marker.index] = param.name
            indexes[position] = marker.index

    free = (i for i in itertools.count() if i not in owners)
    for position, (_, marker, _) in enumerate(marked):
        if isinstance(marker, Positional) and marker.index is None:
            indexes[position] = next(free)
    return indexes


def _check_coverage(qualname: str, template: ParsedTemplate,
                    specs: tuple[BindSpec, ...]) -> tuple[str | int, ...]:
    """Return bind keys the template never uses; fail on template sites no parameter can fill."""
    named = set(template.names)
    positions = {t.index for t in template.tokens if t.name is None}
    unused = tuple(s.key for s in specs if s.is_static and s.key not in named | positions)

    if all(s.is_static for s in specs):
        keys = {s.key for s in specs}
        missing = [f':{n}' for n in template.names if n not in keys]
        missing += [f'?{i}' for i in sorted(positions) if i not in keys]
        if missing:
            raise BindingError(f"{qualname}: no parameter binds {', '.join(missing)}")
    return unused


_SEQUENCE_ORIGINS = (list, collections.abc.Sequence, collections.abc.MutableSequence)
_ITERATOR_ORIGINS = (collections.abc.Iterator, collections.abc.Iterable, collections.abc.Generator)


def _classify_return(qualname: str, kind: OperationKind, annotation: Any) -> tuple[ReturnShape, Any]:
    missing = annotation is _MISSING
    base = None if missing else strip_annotated(annotation)[0]
    is_void = not missing and base in {None, type(None)}

    if kind is OperationKind.UPDATE:
        if missing or base is int:
            return ReturnShape.COUNT, int
        if is_void:
            return ReturnShape.VOID, None
        raise ConfigurationError(f'{qualname}: update methods return int or None, not {type_name(base)}')

    if kind is OperationKind.BATCH:
        if missing:
            return ReturnShape.COUNTS, int
        if is_void:
            return ReturnShape.VOID, None
        origin = typing.get_origin(base) or base
        if origin in _SEQUENCE_ORIGINS and element_type(base) in {int, Any}:
            return ReturnShape.COUNTS, int
        raise ConfigurationError(f'{qualname}: batch methods return list[int] or None, not {type_name(base)}')

    if missing:
        return ReturnShape.LIST, attrdict
    if is_void:
        raise ConfigurationError(f'{qualname}: query methods must return a value')

    inner, optional = unwrap_optional(base)
    if optional:
        return ReturnShape.OPTIONAL, inner
    if base is pd.DataFrame:
        return ReturnShape.DATAFRAME, attrdict

    origin = typing.get_origin(base) or base
    elem = element_type(base) if typing.get_args(base) else attrdict
    if origin in _SEQUENCE_ORIGINS:
        return ReturnShape.LIST, elem
    if origin in _ITERATOR_ORIGINS or origin is ResultIterator:
        return ReturnShape.ITERATOR, elem
    if origin is Query:
        return ReturnShape.QUERY, elem
    return ReturnShape.SINGLE, base
