"""
Database entry point with SQLAlchemy engine management.

This module provides:
1. The `connect()` function for creating a Database from options
2. The `Database` class that opens Handles and builds contract instances
3. Engine creation and management through a thread-safe registry
4. The `check_connection` retry decorator for transient connection errors
"""
import atexit
import logging
import sqlite3
import threading
import time
from collections.abc import Callable
from dataclasses import fields
from functools import wraps
from typing import Any, TypeVar

import sqlalchemy as sa
from dbcontract.exceptions import DbConnectionError
from dbcontract.handle import Handle
from dbcontract.options import DatabaseOptions
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool, StaticPool

from libb import load_options

__all__ = [
    'Database',
    'connect',
    'check_connection',
    'create_url_from_options',
    'get_engine_for_options',
    'dispose_all_engines',
]

logger = logging.getLogger(__name__)

T = TypeVar('T')
C = TypeVar('C')
_engine_registry: dict[str, Engine] = {}
_engine_registry_lock = threading.RLock()

CONNECT_ERRORS = (*DbConnectionError, sa.exc.OperationalError, sa.exc.InterfaceError)


def create_url_from_options(options: DatabaseOptions,
                            url_creator: Callable[..., sa.URL] = sa.URL.create) -> sa.URL:
    """Convert DatabaseOptions to SQLAlchemy URL.
    """
    if options.drivername == 'sqlite':
        return url_creator(
            drivername='sqlite',
            database=options.database
        )

    elif options.drivername == 'postgresql':
        query = {}
        if options.timeout:
            query['connect_timeout'] = str(options.timeout)
        if options.appname:
            query['application_name'] = options.appname

        return url_creator(
            drivername='postgresql+psycopg',
            username=options.username,
            password=options.password,
            host=options.hostname,
            port=options.port or None,
            database=options.database,
            query=query
        )

    raise ValueError(f'Unsupported database type: {options.drivername}')


def check_connection(func: Callable[..., T] | None = None, *, max_retries: int = 3,
                     retry_delay: float = 1, retry_errors: type | tuple[type, ...] | None = None,
                     retry_backoff: float = 1.5,
                     sleep_func: Callable[[float], None] = time.sleep) -> Callable[..., T]:
    """Connection retry decorator with backoff.

    Retries the decorated operation on connection errors, multiplying the
    delay by ``retry_backoff`` after each attempt.

    Supports both @check_connection and @check_connection() syntax.
    """
    def decorator(f: Callable[..., T]) -> Callable[..., T]:
        @wraps(f)
        def inner(*args: Any, **kwargs: Any) -> T:
            error_types = retry_errors if retry_errors is not None else CONNECT_ERRORS

            tries = 0
            delay = retry_delay
            while True:
                try:
                    return f(*args, **kwargs)
                except error_types as err:
                    tries += 1
                    if tries >= max_retries:
                        logger.error(f'Maximum retries ({max_retries}) exceeded: {err}')
                        raise
                    logger.warning(f'Connection error (attempt {tries}/{max_retries}): {err}')
                    sleep_func(delay)
                    delay *= retry_backoff

        return inner

    if func is None:
        return decorator
    return decorator(func)


def get_engine_for_options(options: DatabaseOptions,
                           engine_factory: Callable[..., Engine] = sa.create_engine,
                           **kwargs: Any) -> Engine:
    """Get or create a SQLAlchemy engine for the given options.
    """
    key = str(options)

    with _engine_registry_lock:
        if key in _engine_registry:
            logger.debug(f'Using existing engine for {options.drivername}')
            return _engine_registry[key]

        url = create_url_from_options(options)

        engine_kwargs: dict[str, Any] = {'echo': False}

        if options.drivername == 'sqlite':
            engine_kwargs['connect_args'] = {
                'detect_types': sqlite3.PARSE_DECLTYPES | sqlite3.PARSE_COLNAMES
            }

        if options.drivername == 'sqlite' and options.database == ':memory:':
            # every handle must see the same in-memory database
            engine_kwargs['poolclass'] = StaticPool
            engine_kwargs['connect_args']['check_same_thread'] = False
        elif not options.use_pool:
            engine_kwargs['poolclass'] = NullPool
        else:
            engine_kwargs['pool_size'] = options.pool_max_connections
            engine_kwargs['pool_recycle'] = options.pool_max_idle_time
            engine_kwargs['pool_timeout'] = options.pool_wait_timeout
            engine_kwargs['max_overflow'] = 10
            engine_kwargs['pool_pre_ping'] = True
            engine_kwargs['pool_reset_on_return'] = 'rollback'

        engine_kwargs.update(kwargs)

        engine = engine_factory(url, **engine_kwargs)

        _engine_registry[key] = engine
        logger.debug(f'Created new engine for {options.drivername}')

        return engine


def dispose_all_engines() -> None:
    """Dispose all engines in the registry.
    """
    with _engine_registry_lock:
        for engine in list(_engine_registry.values()):
            engine.dispose()
        _engine_registry.clear()
        logger.debug('All database engines disposed')


atexit.register(dispose_all_engines)


class Database:
    """Opens Handles and builds contract instances on them.

    Examples
        db = connect({'drivername': 'sqlite', 'database': ':memory:'})
        dao = db.on_demand(MyDAO)
        dao.insert(1, 'Brian')
    """

    def __init__(self, engine: Engine, options: DatabaseOptions | None = None) -> None:
        self.engine = engine
        self.options = options

    @property
    def strict_bindings(self) -> bool:
        return bool(self.options and self.options.strict_bindings)

    @check_connection
    def open(self) -> Handle:
        """Open a new Handle; the caller must close it.
        """
        sa_connection = self.engine.connect()
        logger.debug(f'Opened handle on {self.engine.dialect.name}')
        return Handle(sa_connection, self.options)

    def with_handle(self, callback: Callable[[Handle], T]) -> T:
        """Run callback with a fresh Handle, closed afterwards."""
        with self.open() as handle:
            return callback(handle)

    def in_transaction(self, callback: Callable[[Handle], T]) -> T:
        """Run callback with a fresh Handle inside a transaction."""
        with self.open() as handle, handle.transaction():
            return callback(handle)

    def open_contract(self, contract: type[C], **kw: Any) -> C:
        """Build a contract instance holding its own Handle until ``close()``."""
        from dbcontract.lifecycle import open_contract
        return open_contract(self, contract, **kw)

    def on_demand(self, contract: type[C], **kw: Any) -> C:
        """Build a contract instance that opens a Handle per call."""
        from dbcontract.lifecycle import on_demand
        return on_demand(self, contract, **kw)

    def dispose(self) -> None:
        self.engine.dispose()


@load_options(cls=DatabaseOptions)
def connect(options: DatabaseOptions | dict[str, Any] | str,
            config: Any | None = None, **kw: Any) -> Database:
    """Create a Database for the given options

    Args:
        options: Can be:
                - DatabaseOptions object
                - String path to configuration
                - Dictionary of options
                - Options specified as keyword arguments
        config: Configuration object (for loading from config files)
        **kw: Additional keyword arguments to override options

    Returns
        Database object for opening handles and building contracts
    """
    if isinstance(options, DatabaseOptions):
        for field in fields(options):
            kw.pop(field.name, None)
    else:
        options_func = load_options(cls=DatabaseOptions)(lambda o, c: o)
        options = options_func(options, config, **kw)

    engine = get_engine_for_options(options)
    return Database(engine, options)
