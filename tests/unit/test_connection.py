"""Unit tests for engine creation and the connection retry decorator."""

from unittest.mock import MagicMock

import pytest
from dbcontract.connection import check_connection, create_url_from_options
from dbcontract.connection import get_engine_for_options
from dbcontract.exceptions import ConnectionFailure
from dbcontract.options import DatabaseOptions
from sqlalchemy.pool import NullPool, StaticPool


def _postgres_options(**kw):
    return DatabaseOptions(drivername='postgresql', hostname='dbhost', username='u',
                           password='p', database='db', port=5433, timeout=5,
                           appname='tests', **kw)


class TestUrls:
    """Test class for SQLAlchemy URL creation."""

    def test_sqlite_url(self):
        url = create_url_from_options(DatabaseOptions(database='test.db'))
        assert url.drivername == 'sqlite'
        assert url.database == 'test.db'

    def test_postgres_url(self):
        url = create_url_from_options(_postgres_options())
        assert url.drivername == 'postgresql+psycopg'
        assert url.host == 'dbhost'
        assert url.port == 5433
        assert url.query['connect_timeout'] == '5'
        assert url.query['application_name'] == 'tests'


class TestEngines:
    """Test class for engine registry and pool selection."""

    def test_memory_sqlite_uses_static_pool(self):
        factory = MagicMock()
        get_engine_for_options(DatabaseOptions(database=':memory:'), engine_factory=factory)

        kwargs = factory.call_args.kwargs
        assert kwargs['poolclass'] is StaticPool
        assert kwargs['connect_args']['check_same_thread'] is False

    def test_no_pool_by_default(self):
        factory = MagicMock()
        get_engine_for_options(_postgres_options(), engine_factory=factory)
        assert factory.call_args.kwargs['poolclass'] is NullPool

    def test_pool_settings(self):
        factory = MagicMock()
        get_engine_for_options(_postgres_options(use_pool=True, pool_max_connections=7),
                               engine_factory=factory)

        kwargs = factory.call_args.kwargs
        assert kwargs['pool_size'] == 7
        assert kwargs['pool_pre_ping'] is True

    def test_engines_are_reused(self):
        factory = MagicMock()
        options = DatabaseOptions(database='reuse.db')

        first = get_engine_for_options(options, engine_factory=factory)
        second = get_engine_for_options(options, engine_factory=factory)

        assert first is second
        factory.assert_called_once()


class TestCheckConnection:
    """Test class for the retry decorator."""

    def test_retries_then_succeeds(self):
        sleeps = []
        attempts = MagicMock(side_effect=[ConnectionFailure('down'), 'ok'])

        @check_connection(sleep_func=sleeps.append, retry_delay=1, retry_backoff=2)
        def open_handle():
            return attempts()

        assert open_handle() == 'ok'
        assert sleeps == [1]

    def test_gives_up(self):
        sleeps = []

        @check_connection(max_retries=3, sleep_func=sleeps.append, retry_delay=1, retry_backoff=2)
        def open_handle():
            raise ConnectionFailure('down')

        with pytest.raises(ConnectionFailure):
            open_handle()
        assert sleeps == [1, 2]

    def test_other_errors_propagate(self):

        @check_connection(sleep_func=lambda s: pytest.fail('should not retry'))
        def open_handle():
            raise ValueError('bad')

        with pytest.raises(ValueError):
            open_handle()


class TestRetryable:
    """Test class for transient error classification."""

    @pytest.mark.parametrize(('message', 'expected'), [
        ('database is locked', True),
        ('server closed the connection unexpectedly', True),
        ('UNIQUE constraint failed: something.id', False),
        ('no such table: nowhere', False),
    ])
    def test_execution_error_is_retryable(self, message, expected):
        import sqlite3

        from dbcontract.exceptions import ExecutionError

        try:
            try:
                raise sqlite3.OperationalError(message)
            except sqlite3.Error as err:
                raise ExecutionError('failed', sql='select 1') from err
        except ExecutionError as exc:
            assert exc.is_retryable is expected

    def test_no_cause_is_not_retryable(self):
        from dbcontract.exceptions import ExecutionError
        assert ExecutionError('failed').is_retryable is False
