"""Transactions for handles and contract instances against SQLite."""

import pytest
from dbcontract import ExecutionError, Transactional, sql_query, sql_update


class Accounts(Transactional):

    @sql_update('insert into something (id, name) values (:id, :name)')
    def insert(self, id: int, name: str) -> int: ...

    @sql_query('select count(*) from something')
    def count(self) -> int: ...


def _count(database):
    with database.open() as handle:
        return handle.select('select count(*) as n from something')[0].n


def test_handle_transaction_commits(sqlite_db):
    with sqlite_db.open() as handle:
        with handle.transaction():
            handle.execute('insert into something (id, name) values (?, ?)', 1, 'Brian')
            handle.execute('insert into something (id, name) values (?, ?)', 2, 'Keith')
    assert _count(sqlite_db) == 2


def test_handle_transaction_rolls_back(sqlite_db):
    with sqlite_db.open() as handle:
        with pytest.raises(ExecutionError), handle.transaction():
            handle.execute('insert into something (id, name) values (?, ?)', 1, 'Brian')
            handle.execute('insert into something (id, name) values (?, ?)', 1, 'Again')
    assert _count(sqlite_db) == 0


def test_nested_transaction_rejected(sqlite_handle):
    with sqlite_handle.transaction(), pytest.raises(RuntimeError):
        sqlite_handle.transaction()


def test_on_demand_begin_commit(sqlite_db):
    dao = sqlite_db.on_demand(Accounts)

    dao.begin()
    dao.insert(1, 'Brian')
    dao.insert(2, 'Keith')
    assert dao.count() == 2
    dao.commit()

    assert _count(sqlite_db) == 2


def test_on_demand_rollback(sqlite_db):
    dao = sqlite_db.on_demand(Accounts)

    dao.begin()
    dao.insert(1, 'Brian')
    dao.rollback()

    assert _count(sqlite_db) == 0


def test_in_transaction_callback(sqlite_db):
    dao = sqlite_db.on_demand(Accounts)

    def work(tx):
        tx.insert(1, 'Brian')
        tx.insert(2, 'Keith')
        return tx.count()

    assert dao.in_transaction(work) == 2
    assert _count(sqlite_db) == 2


def test_in_transaction_rolls_back_on_error(sqlite_db):
    dao = sqlite_db.on_demand(Accounts)

    def work(tx):
        tx.insert(1, 'Brian')
        raise ValueError('abort')

    with pytest.raises(ValueError):
        dao.in_transaction(work)
    assert _count(sqlite_db) == 0


def test_batch_failure_keeps_earlier_chunks(sqlite_db):
    from dbcontract import batch_chunk_size, sql_batch

    class Loader:
        @sql_batch('insert into something (id, name) values (:id, :name)')
        @batch_chunk_size(2)
        def load(self, id: list[int], name: list[str]) -> list[int]: ...

    dao = sqlite_db.on_demand(Loader)
    with pytest.raises(ExecutionError):
        dao.load([1, 2, 3, 1], ['A', 'B', 'C', 'dup'])

    assert _count(sqlite_db) == 2
