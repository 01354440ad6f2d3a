"""
Binding markers, binders and the binder-factory registry.

A contract method parameter carries at most one binding marker, attached
with ``typing.Annotated``::

    def insert(self, id: Annotated[int, Bind('id')], s: Annotated[Something, BindObject('s')])

The marker type selects a BinderFactory from the registry; the factory
builds the Binder once, when the contract is built. New marker types are
made pluggable with `register_binder_factory`.
"""
import dataclasses
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from dbcontract.exceptions import ConfigurationError
from dbcontract.types import TypeConverter

__all__ = [
    'Bind',
    'BindObject',
    'Positional',
    'Binder',
    'BinderFactory',
    'DefaultObjectBinder',
    'PositionalBinder',
    'ObjectPropertyBinder',
    'register_binder_factory',
    'resolve',
    'is_binding_marker',
    'readable_properties',
]

logger = logging.getLogger(__name__)

# Registry of marker type -> binder factory class
_BINDER_REGISTRY: dict[type, type['BinderFactory']] = {}


class BindTarget(Protocol):
    """Anything values can be bound into: a Statement or a batch row Binding."""

    def bind(self, key: str | int, value: Any) -> Any:
        ...


class Binder(ABC):
    """Writes one argument into a bind target.

    Binders are stateless; one instance serves every invocation of its
    method. ``key`` is the bind name, or the positional index for
    positional binders.
    """

    @abstractmethod
    def bind(self, target: BindTarget, key: str | int, value: Any) -> None:
        ...


class BinderFactory(ABC):
    """Builds the Binder for a marker."""

    @abstractmethod
    def build(self, marker: Any) -> Binder:
        ...


@dataclass(frozen=True)
class Bind:
    """Bind the argument under a name; defaults to the parameter's name.

    ``binder`` may name a Binder subclass or a zero-argument factory
    returning a Binder, replacing the default value binder.
    """
    name: str | None = None
    binder: type[Binder] | Callable[[], Binder] | Binder | None = None


@dataclass(frozen=True)
class BindObject:
    """Bind each readable property of the argument as ``<prefix>.<property>``.

    The prefix defaults to the parameter's name. Without an explicit prefix
    the bare property names are bound too, so ``:id`` and ``:s.id`` both
    resolve for a parameter named ``s``.
    """
    prefix: str | None = None


@dataclass(frozen=True)
class Positional:
    """Bind the argument to a ``?`` site; defaults to the parameter's order."""
    index: int | None = None


def register_binder_factory(marker_type: type):
    """Decorator to register a binder factory for a marker type.

    Usage:
        @register_binder_factory(BindSomething)
        class SomethingBinderFactory(BinderFactory):
            ...
    """
    def decorator(cls: type[BinderFactory]) -> type[BinderFactory]:
        _BINDER_REGISTRY[marker_type] = cls
        logger.debug(f'Registered binder factory {cls.__name__} for {marker_type.__name__}')
        return cls
    return decorator


def _lookup(marker: Any) -> type[BinderFactory] | None:
    for klass in type(marker).__mro__:
        if klass in _BINDER_REGISTRY:
            return _BINDER_REGISTRY[klass]
    return None


def is_binding_marker(obj: Any) -> bool:
    """Check if an ``Annotated`` extra is a registered binding marker."""
    return _lookup(obj) is not None


def resolve(marker: Any) -> BinderFactory:
    """Get the binder factory for a marker instance."""
    factory_cls = _lookup(marker)
    if factory_cls is None:
        available = [k.__name__ for k in _BINDER_REGISTRY]
        raise ConfigurationError(
            f'No binder factory registered for {type(marker).__name__}. Available: {available}')
    return factory_cls()


def readable_properties(obj: Any) -> Iterator[tuple[str, Any]]:
    """Yield ``(name, value)`` for each readable property of an object.

    Mappings yield their string keys, dataclasses and namedtuples their
    fields, other objects their public attributes and properties.
    Properties that raise AttributeError are skipped.
    """
    if obj is None:
        return

    if isinstance(obj, Mapping):
        yield from ((k, v) for k, v in obj.items() if isinstance(k, str))
        return

    if dataclasses.is_dataclass(obj):
        names = [f.name for f in dataclasses.fields(obj)]
    elif hasattr(obj, '_asdict') and hasattr(obj, '_fields'):
        names = list(obj._fields)
    else:
        names = [k for k in getattr(obj, '__dict__', {}) if not k.startswith('_')]
        for klass in type(obj).__mro__:
            for k, v in vars(klass).items():
                if k.startswith('_') or k in names:
                    continue
                if isinstance(v, property) or k in getattr(klass, '__slots__', ()):
                    names.append(k)

    for name in names:
        try:
            value = getattr(obj, name)
        except AttributeError:
            continue
        yield name, value


class DefaultObjectBinder(Binder):
    """Binds the converted argument value under one key."""

    def bind(self, target: BindTarget, key: str | int, value: Any) -> None:
        target.bind(key, TypeConverter.convert_value(value))


class PositionalBinder(DefaultObjectBinder):
    """Binds the converted argument value at a ``?`` index."""


class ObjectPropertyBinder(Binder):
    """Binds the readable properties of the argument under ``<key>.<property>``."""

    def __init__(self, bare: bool = False) -> None:
        self.bare = bare

    def bind(self, target: BindTarget, key: str | int, value: Any) -> None:
        for prop, prop_value in readable_properties(value):
            converted = TypeConverter.convert_value(prop_value)
            target.bind(f'{key}.{prop}', converted)
            if self.bare:
                target.bind(prop, converted)


@register_binder_factory(Bind)
class BindFactory(BinderFactory):

    def build(self, marker: Bind) -> Binder:
        custom = marker.binder
        if custom is None:
            return DefaultObjectBinder()
        if isinstance(custom, Binder):
            return custom
        binder = custom()
        if not isinstance(binder, Binder):
            raise ConfigurationError(
                f'Custom binder factory {custom!r} returned {type(binder).__name__}, not a Binder')
        return binder


@register_binder_factory(BindObject)
class BindObjectFactory(BinderFactory):

    def build(self, marker: BindObject) -> Binder:
        return ObjectPropertyBinder(bare=marker.prefix is None)


@register_binder_factory(Positional)
class PositionalFactory(BinderFactory):

    def build(self, marker: Positional) -> Binder:
        return PositionalBinder()
