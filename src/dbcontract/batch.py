"""
Chunked batch execution for ``@sql_batch`` methods.

Iterable arguments supply one value per row and scalar arguments are
broadcast to every row::

    @sql_batch('insert into something (id, name) values (:id, :name)')
    @batch_chunk_size(2)
    def insert(self, id: list[int], name: list[str]) -> list[int]: ...

    dao.insert([1, 2, 3], ['A', 'B', 'C'])   # two round trips, returns [1, 1, 1]

All rows are bound and checked before the first chunk runs, so a
malformed batch executes nothing. A failing chunk stops the batch; rows
of earlier chunks stay applied unless the caller's transaction rolls
them back.
"""
import inspect
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from dbcontract.exceptions import BindingError
from dbcontract.statement import Binding, Statement

if TYPE_CHECKING:
    from dbcontract.contract import BindSpec, MethodDescriptor
    from dbcontract.handle import Handle

__all__ = ['BatchPlan', 'plan_batch', 'execute_batch']

logger = logging.getLogger(__name__)


@dataclass
class BatchPlan:
    """Bound rows of one batch call, in call order."""
    rows: list[Binding] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.rows)

    def chunks(self, size: int | None) -> list[list[Binding]]:
        """Split rows into consecutive chunks of at most size rows."""
        if not self.rows:
            return []
        size = size or len(self.rows)
        return [self.rows[i:i + size] for i in range(0, len(self.rows), size)]


def _is_runtime_iterable(value: Any) -> bool:
    return isinstance(value, Iterable) and not isinstance(value, str | bytes | bytearray | Mapping)


def _row_source(spec: 'BindSpec', value: Any) -> list | None:
    """Materialized per-row values of an iterable argument, or None for a scalar."""
    if spec.iterable:
        if value is None:
            raise BindingError(f'Batch argument {spec.param_name} is None, expected an iterable')
        if not isinstance(value, Iterable) or isinstance(value, str | bytes):
            raise BindingError(
                f'Batch argument {spec.param_name} must be iterable, got {type(value).__name__}')
        return list(value)
    if not spec.declared and _is_runtime_iterable(value):
        return list(value)
    return None


def plan_batch(method: 'MethodDescriptor', bound: inspect.BoundArguments) -> BatchPlan:
    """Bind every row of a batch call.

    Raises
        BindingError: iterable arguments of unequal length, or a row
        leaving a template site unbound
    """
    columns: dict[str, list] = {}
    for spec in method.bind_specs:
        values = _row_source(spec, bound.arguments.get(spec.param_name))
        if values is not None:
            columns[spec.param_name] = values

    lengths = {name: len(values) for name, values in columns.items()}
    if len(set(lengths.values())) > 1:
        detail = ', '.join(f'{name}={n}' for name, n in lengths.items())
        raise BindingError(f'{method.qualname}: batch arguments differ in length ({detail})')
    row_count = next(iter(lengths.values())) if lengths else 1

    plan = BatchPlan()
    for i in range(row_count):
        binding = Binding()
        for spec in method.bind_specs:
            if spec.param_name in columns:
                value = columns[spec.param_name][i]
            else:
                value = bound.arguments.get(spec.param_name)
            spec.binder.bind(binding, spec.key, value)
        binding.check(method.template)
        plan.rows.append(binding)
    return plan


def _prepare(method: 'MethodDescriptor', handle: 'Handle') -> Statement:
    statement = handle.prepare(method.template)
    for customizer in method.customizers:
        customizer.apply(statement)
    return statement


def execute_batch(method: 'MethodDescriptor', handle: 'Handle',
                  bound: inspect.BoundArguments) -> list[int]:
    """Execute a batch method call and return per-row affected counts in row order."""
    plan = plan_batch(method, bound)
    if not plan:
        logger.debug(f'{method.qualname}: empty batch, nothing executed')
        return []

    statement = _prepare(method, handle)
    chunks = plan.chunks(statement.batch_chunk_size)
    logger.debug(f'{method.qualname}: {len(plan)} rows in {len(chunks)} chunks')

    counts: list[int] = []
    for number, chunk in enumerate(chunks):
        if number:
            statement = _prepare(method, handle)
        for binding in chunk:
            statement.add_batch(binding)
        counts.extend(statement.execute_batch())
    return counts
