"""
Transaction handling delegated to a Handle.
"""
import logging
import threading
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from dbcontract.handle import Handle

logger = logging.getLogger(__name__)


_local = threading.local()


class Transaction:
    """Context manager for running multiple statements in a transaction.

    Uses thread-local storage to track transaction state. Nested
    transactions on the same handle within one thread are not supported.

    Examples
        with handle.transaction():
            handle.execute('delete from ...', *args)
            handle.execute('update ...', *args)
    """

    def __init__(self, handle: 'Handle') -> None:
        self.handle = handle

        if not hasattr(_local, 'active_transactions'):
            _local.active_transactions = set()

        if id(handle) in _local.active_transactions or handle.in_transaction:
            raise RuntimeError('Nested transactions are not supported')

    def __enter__(self) -> 'Handle':
        _local.active_transactions.add(id(self.handle))
        self.handle.begin()
        logger.debug(f'Started transaction for handle {id(self.handle)}')
        return self.handle

    def __exit__(self, exc_type: type | None, value: Exception | None, traceback: Any | None) -> None:
        try:
            if exc_type is not None:
                self.handle.rollback()
                logger.warning('Rolling back the current transaction')
            else:
                self.handle.commit()
                logger.debug(f'Committed transaction for handle {id(self.handle)}')
        finally:
            _local.active_transactions.discard(id(self.handle))
            logger.debug(f'Transaction cleanup complete for handle {id(self.handle)}')
