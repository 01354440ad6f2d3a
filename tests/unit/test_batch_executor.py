"""Unit tests for batch planning and chunked execution."""

from dataclasses import dataclass
from typing import Annotated
from unittest.mock import patch

import pytest
from dbcontract.batch import plan_batch
from dbcontract.binding import BindObject
from dbcontract.contract import describe, sql_batch
from dbcontract.customizers import batch_chunk_size
from dbcontract.exceptions import BindingError, ExecutionError
from dbcontract.lifecycle import attach
from dbcontract.statement import Statement


@dataclass
class Something:
    id: int
    name: str


class Dao:

    @sql_batch('insert into something (id, name) values (:id, :name)')
    @batch_chunk_size(2)
    def insert(self, id: list[int], name: list[str]) -> list[int]: ...

    @sql_batch('insert into something (id, name) values (:id, :name)')
    def insert_named(self, id: list[int], name: str) -> list[int]: ...

    @sql_batch('insert into something (id, name) values (:id, :name)')
    @batch_chunk_size(2)
    def insert_objects(self, *somethings: Annotated[Something, BindObject()]) -> None: ...

    @sql_batch('insert into something (id, name) values (:id, :name)')
    def insert_untyped(self, id, name) -> list[int]: ...


def _bound(method_name, *args):
    method = describe(Dao).method(method_name)
    bound = method.signature.bind(None, *args)
    bound.apply_defaults()
    return method, bound


def _record_chunks():
    """Patch Statement.execute_batch to record each chunk's rows."""
    chunks = []

    def fake_execute_batch(self):
        chunks.append([binding.named for binding in self._batch])
        return [1] * len(self._batch)

    return chunks, patch.object(Statement, 'execute_batch', autospec=True,
                                side_effect=fake_execute_batch)


class TestPlan:
    """Test class for batch row planning."""

    def test_rows_in_order(self):
        plan = plan_batch(*_bound('insert', [1, 2, 3], ['A', 'B', 'C']))
        assert [row.named for row in plan.rows] == [
            {'id': 1, 'name': 'A'}, {'id': 2, 'name': 'B'}, {'id': 3, 'name': 'C'}]

    def test_scalars_broadcast(self):
        plan = plan_batch(*_bound('insert_named', [1, 2], 'same'))
        assert [row.named['name'] for row in plan.rows] == ['same', 'same']

    def test_unequal_lengths(self):
        with pytest.raises(BindingError, match='differ in length'):
            plan_batch(*_bound('insert', [1, 2, 3], ['A', 'B']))

    def test_generators_are_materialized(self):
        plan = plan_batch(*_bound('insert', (i for i in range(3)), iter('ABC')))
        assert len(plan) == 3

    def test_undeclared_runtime_iterables(self):
        plan = plan_batch(*_bound('insert_untyped', [1, 2], 'AB'))
        assert [row.named for row in plan.rows] == [
            {'id': 1, 'name': 'AB'}, {'id': 2, 'name': 'AB'}]

    def test_var_positional_objects(self):
        plan = plan_batch(*_bound('insert_objects', Something(1, 'A'), Something(2, 'B')))
        assert [row.named['id'] for row in plan.rows] == [1, 2]
        assert plan.rows[0].named['somethings.name'] == 'A'

    def test_none_for_iterable_argument(self):
        with pytest.raises(BindingError):
            plan_batch(*_bound('insert', None, ['A']))

    @pytest.mark.parametrize(('rows', 'size', 'expected'), [
        (5, 2, [2, 2, 1]),
        (4, 2, [2, 2]),
        (3, None, [3]),
        (1, 10, [1]),
    ])
    def test_chunks(self, rows, size, expected):
        plan = plan_batch(*_bound('insert', list(range(rows)), ['x'] * rows))
        assert [len(chunk) for chunk in plan.chunks(size)] == expected


class TestExecute:
    """Test class for chunked execution through a contract instance."""

    def test_chunk_count_and_order(self, stub_handle):
        dao = attach(stub_handle(), Dao)
        chunks, patcher = _record_chunks()
        with patcher:
            counts = dao.insert([1, 2, 3], ['A', 'B', 'C'])

        assert counts == [1, 1, 1]
        assert [[row['id'] for row in chunk] for chunk in chunks] == [[1, 2], [3]]

    def test_unbounded_chunk(self, stub_handle):
        dao = attach(stub_handle(), Dao)
        chunks, patcher = _record_chunks()
        with patcher:
            dao.insert_named([1, 2, 3, 4, 5], 'same')

        assert len(chunks) == 1

    def test_length_mismatch_executes_nothing(self, stub_handle):
        handle = stub_handle()
        dao = attach(handle, Dao)

        with pytest.raises(BindingError):
            dao.insert([1, 2, 3], ['A', 'B'])
        handle.cursor.return_value.execute.assert_not_called()

    def test_empty_batch_executes_nothing(self, stub_handle):
        handle = stub_handle()
        dao = attach(handle, Dao)

        assert dao.insert([], []) == []
        handle.cursor.assert_not_called()

    def test_per_row_counts_from_cursor(self, stub_handle):
        handle = stub_handle(rowcount=1)
        dao = attach(handle, Dao)

        assert dao.insert([1, 2, 3], ['A', 'B', 'C']) == [1, 1, 1]
        assert handle.cursor.return_value.execute.call_count == 3
        assert handle.after_statement.call_count == 2

    def test_void_batch(self, stub_handle):
        dao = attach(stub_handle(), Dao)
        assert dao.insert_objects(Something(1, 'A')) is None

    def test_chunk_failure_stops_batch(self, stub_handle):
        import sqlite3

        handle = stub_handle()
        calls = []

        def execute(sql, args):
            calls.append(args)
            if len(calls) == 3:
                raise sqlite3.IntegrityError('UNIQUE constraint failed')

        handle.cursor.return_value.execute.side_effect = execute
        dao = attach(handle, Dao)

        with pytest.raises(ExecutionError) as exc:
            dao.insert([1, 2, 3, 4, 5], list('ABCDE'))

        assert isinstance(exc.value.__cause__, sqlite3.IntegrityError)
        assert len(calls) == 3
        assert handle.after_statement.call_count == 1


class TestExecuteMany:
    """Test class for one executemany call per chunk on PostgreSQL."""

    def test_one_executemany_per_chunk(self, stub_handle):
        handle = stub_handle(dialect='postgresql')
        dao = attach(handle, Dao)

        assert dao.insert([1, 2, 3, 4], list('ABCD')) == [1, 1, 1, 1]

        cursor = handle.cursor.return_value
        assert cursor.executemany.call_count == 2
        cursor.execute.assert_not_called()
        assert handle.after_statement.call_count == 2

    def test_chunk_rows_and_returning(self, stub_handle):
        handle = stub_handle(dialect='postgresql')
        dao = attach(handle, Dao)

        dao.insert([1, 2, 3], list('ABC'))

        calls = handle.cursor.return_value.executemany.call_args_list
        assert [call.args[1] for call in calls] == [[(1, 'A'), (2, 'B')], [(3, 'C')]]
        assert all(call.kwargs == {'returning': True} for call in calls)
        assert calls[0].args[0] == 'insert into something (id, name) values (%s, %s)'

    def test_counts_follow_result_sets(self, stub_handle):
        handle = stub_handle(dialect='postgresql')
        cursor = handle.cursor.return_value
        counts = iter([1, 0])
        type(cursor).rowcount = property(lambda self: next(counts))
        dao = attach(handle, Dao)

        assert dao.insert([1, 2], ['A', 'B']) == [1, 0]
        assert cursor.nextset.call_count == 1

    def test_chunk_failure_rolls_back(self, stub_handle):
        import psycopg

        handle = stub_handle(dialect='postgresql')
        handle.cursor.return_value.executemany.side_effect = [None, psycopg.IntegrityError('duplicate key')]
        dao = attach(handle, Dao)

        with pytest.raises(ExecutionError):
            dao.insert([1, 2, 3, 4], list('ABCD'))

        assert handle.after_statement.call_count == 1
        handle.after_failure.assert_called_once()
