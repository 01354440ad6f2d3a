"""
Handle sources for contract instances.

A contract instance draws Handles from one source, chosen when it is built:

- attach: runs on a caller-owned Handle that is never closed here
- open: opens one Handle up front, released by the instance's ``close()``
- on-demand: opens a Handle per call and closes it before the call returns

Examples
    dao = attach(handle, MyDAO)           # caller closes handle
    with open_contract(database, MyDAO) as dao:
        dao.insert(1, 'Brian')
    dao = on_demand(database, MyDAO)      # safe to share across threads
"""
import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from enum import Enum, auto
from typing import TYPE_CHECKING, Any, Self, TypeVar

from dbcontract.dispatch import build
from dbcontract.exceptions import ConnectionFailure

if TYPE_CHECKING:
    from dbcontract.connection import Database
    from dbcontract.handle import Handle

__all__ = [
    'AttachMode',
    'Lease',
    'HandleSource',
    'AttachedSource',
    'OpenSource',
    'OnDemandSource',
    'attach',
    'open_contract',
    'on_demand',
]

logger = logging.getLogger(__name__)

C = TypeVar('C')


def _noop() -> None:
    pass


class AttachMode(Enum):
    ATTACH = auto()
    OPEN = auto()
    ON_DEMAND = auto()


class Lease:
    """A Handle borrowed for one call.

    Leaving the ``with`` block runs the release callback unless it was
    handed off with `detach()` to a result that outlives the call.
    """

    def __init__(self, handle: 'Handle', release: Callable[[], None] | None = None) -> None:
        self.handle = handle
        self._release = release

    def detach(self) -> Callable[[], None]:
        """Take over responsibility for releasing the handle."""
        release, self._release = self._release, None
        return release or _noop

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None,
                 exc_tb: Any | None) -> None:
        release, self._release = self._release, None
        if release is not None:
            release()


def _strict(options: Any) -> bool:
    return bool(getattr(options, 'strict_bindings', False))


class HandleSource(ABC):
    """Where a contract instance gets its Handles."""

    mode: AttachMode

    @property
    @abstractmethod
    def strict_bindings(self) -> bool:
        ...

    @abstractmethod
    def acquire(self) -> Lease:
        ...

    def close(self) -> None:
        """Release anything held between calls."""

    @abstractmethod
    def begin(self) -> None:
        ...

    @abstractmethod
    def commit(self) -> None:
        ...

    @abstractmethod
    def rollback(self) -> None:
        ...

    @abstractmethod
    def in_transaction(self, contract: type[C], callback: Callable[[C], Any]) -> Any:
        ...


class _HeldHandleSource(HandleSource):
    """Source over a single Handle kept for the instance's lifetime."""

    def __init__(self, handle: 'Handle') -> None:
        self.handle = handle

    @property
    def strict_bindings(self) -> bool:
        return _strict(self.handle.options)

    def acquire(self) -> Lease:
        if self.handle.closed:
            raise ConnectionFailure('Contract instance handle is closed')
        return Lease(self.handle)

    def begin(self) -> None:
        self.handle.begin()

    def commit(self) -> None:
        self.handle.commit()

    def rollback(self) -> None:
        self.handle.rollback()

    def in_transaction(self, contract: type[C], callback: Callable[[C], Any]) -> Any:
        with self.handle.transaction() as handle:
            return callback(attach(handle, contract))


class AttachedSource(_HeldHandleSource):
    """Caller-owned Handle; ``close()`` leaves it open."""

    mode = AttachMode.ATTACH


class OpenSource(_HeldHandleSource):
    """Handle opened at build time and released by ``close()``."""

    mode = AttachMode.OPEN

    def __init__(self, database: 'Database') -> None:
        super().__init__(database.open())

    def close(self) -> None:
        if not self.handle.closed:
            logger.debug('Releasing handle of open contract instance')
        self.handle.close()


class OnDemandSource(HandleSource):
    """A fresh Handle per call, closed when the call returns or raises.

    `begin()` pins one Handle to the calling thread so that the calls
    up to `commit()` or `rollback()` share its transaction.
    """

    mode = AttachMode.ON_DEMAND

    def __init__(self, database: 'Database') -> None:
        self.database = database
        self._local = threading.local()

    @property
    def strict_bindings(self) -> bool:
        return self.database.strict_bindings

    def _pinned(self) -> 'Handle | None':
        return getattr(self._local, 'handle', None)

    def acquire(self) -> Lease:
        pinned = self._pinned()
        if pinned is not None:
            return Lease(pinned)
        handle = self.database.open()
        return Lease(handle, handle.close)

    def begin(self) -> None:
        if self._pinned() is not None:
            raise RuntimeError('Transaction already in progress on this thread')
        handle = self.database.open()
        try:
            handle.begin()
        except Exception:
            handle.close()
            raise
        self._local.handle = handle
        logger.debug(f'Pinned handle {id(handle)} to thread {threading.get_ident()}')

    def _finish(self, action: str) -> None:
        handle = self._pinned()
        if handle is None:
            raise RuntimeError(f'No transaction in progress to {action}')
        try:
            getattr(handle, action)()
        finally:
            self._local.handle = None
            handle.close()

    def commit(self) -> None:
        self._finish('commit')

    def rollback(self) -> None:
        self._finish('rollback')

    def in_transaction(self, contract: type[C], callback: Callable[[C], Any]) -> Any:
        return self.database.in_transaction(lambda handle: callback(attach(handle, contract)))


def attach(handle: 'Handle', contract: type[C], *, strict_bindings: bool | None = None) -> C:
    """Build contract on a caller-owned Handle."""
    return build(contract, AttachedSource(handle), strict_bindings)


def open_contract(database: 'Database', contract: type[C], *,
                  strict_bindings: bool | None = None) -> C:
    """Build contract on a Handle it owns until ``close()``."""
    source = OpenSource(database)
    try:
        return build(contract, source, strict_bindings)
    except Exception:
        source.close()
        raise


def on_demand(database: 'Database', contract: type[C], *,
              strict_bindings: bool | None = None) -> C:
    """Build contract opening a Handle for each call."""
    return build(contract, OnDemandSource(database), strict_bindings)
