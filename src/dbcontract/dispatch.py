"""
Generated contract implementations.

`build()` subclasses the contract with one dispatching function per
described method. Each call binds its arguments against the method's
signature, leases a Handle from the instance's source, runs the
statement and shapes the result per the declared return type.
"""
import functools
import logging
from typing import TYPE_CHECKING, Any, TypeVar

from dbcontract.batch import execute_batch
from dbcontract.cache import Cache
from dbcontract.contract import ContractDescriptor, MethodDescriptor
from dbcontract.contract import OperationKind, ReturnShape, describe
from dbcontract.exceptions import BindingError, ResultShapeError
from dbcontract.statement import Query, Statement

if TYPE_CHECKING:
    from dbcontract.lifecycle import HandleSource, Lease

__all__ = ['build', 'check_strict_bindings', 'implementation']

logger = logging.getLogger(__name__)

C = TypeVar('C')

_NO_ROW = object()


def check_strict_bindings(descriptor: ContractDescriptor) -> None:
    """Raise BindingError for bind names the templates never reference."""
    problems = [f"{m.qualname} ({', '.join(map(str, m.unused_bindings))})"
                for m in descriptor.methods.values() if m.unused_bindings]
    if problems:
        raise BindingError(f"Unused bindings: {'; '.join(problems)}")


def build(contract: type[C], source: 'HandleSource', strict_bindings: bool | None = None) -> C:
    """Build an instance of contract whose methods run on handles from source.

    Raises
        ConfigurationError, TemplateError, BindingError: for declaration mistakes
    """
    descriptor = describe(contract)
    if strict_bindings is None:
        strict_bindings = source.strict_bindings
    if strict_bindings:
        check_strict_bindings(descriptor)
    impl = implementation(contract)
    instance = impl.__new__(impl)
    instance._dbcontract_source = source
    logger.debug(f'Built {impl.__name__} in {source.mode.name.lower()} mode')
    return instance


def implementation(contract: type) -> type:
    """Generated subclass of contract, built once per contract type."""
    return Cache.get_instance().get_or_create(
        'implementations', contract, lambda: _generate(describe(contract)))


def _generate(descriptor: ContractDescriptor) -> type:
    contract = descriptor.contract
    namespace: dict[str, Any] = {
        '__module__': contract.__module__,
        '__qualname__': f'{contract.__qualname__}Impl',
        '__dbcontract_descriptor__': descriptor,
    }
    for name, method in descriptor.methods.items():
        namespace[name] = _make_invoker(contract, method)

    if 'close' not in namespace:
        namespace['close'] = _close
    if not hasattr(contract, '__enter__'):
        namespace['__enter__'] = _enter
        namespace['__exit__'] = _exit
    if descriptor.transactional:
        namespace.update(begin=_begin, commit=_commit, rollback=_rollback,
                         in_transaction=_in_transaction)

    return type(contract)(f'{contract.__name__}Impl', (contract,), namespace)


def _make_invoker(contract: type, method: MethodDescriptor):
    original = getattr(contract, method.name)

    if method.kind is OperationKind.CLOSE:
        @functools.wraps(original)
        def invoke(self, *args, **kwargs):
            self._dbcontract_source.close()
    else:
        run = _RUNNERS[method.kind]

        @functools.wraps(original)
        def invoke(self, *args, **kwargs):
            bound = method.signature.bind(self, *args, **kwargs)
            bound.apply_defaults()
            with self._dbcontract_source.acquire() as lease:
                return run(method, lease, bound)

    invoke.__isabstractmethod__ = False
    return invoke


def _bind(method: MethodDescriptor, statement: Statement, bound) -> None:
    for spec in method.bind_specs:
        spec.binder.bind(statement, spec.key, bound.arguments.get(spec.param_name))


def _customize(method: MethodDescriptor, statement: Statement) -> None:
    for customizer in method.customizers:
        customizer.apply(statement)


def _run_query(method: MethodDescriptor, lease: 'Lease', bound) -> Any:
    query = Query(lease.handle, method.template)
    query.result_type = method.element_type
    _bind(method, query, bound)
    _customize(method, query)

    shape = method.shape
    if shape is ReturnShape.QUERY:
        query.add_close_callback(lease.detach())
        return query
    if shape is ReturnShape.ITERATOR:
        rows = query.execute_query()
        rows.add_close_callback(lease.detach())
        return rows
    if shape is ReturnShape.LIST:
        return query.list()
    if shape is ReturnShape.DATAFRAME:
        return query.dataframe()

    with query.execute_query() as rows:
        first = next(rows, _NO_ROW)
        if first is _NO_ROW:
            if shape is ReturnShape.OPTIONAL:
                return None
            raise ResultShapeError(f'{method.qualname} expected a row, query returned none')
        if method.exactly_one and rows.has_next():
            raise ResultShapeError(f'{method.qualname} expected exactly one row, query returned more')
        return first


def _run_update(method: MethodDescriptor, lease: 'Lease', bound) -> int | None:
    statement = lease.handle.prepare(method.template)
    _bind(method, statement, bound)
    _customize(method, statement)
    count = statement.execute_update()
    return None if method.shape is ReturnShape.VOID else count


def _run_batch(method: MethodDescriptor, lease: 'Lease', bound) -> list[int] | None:
    counts = execute_batch(method, lease.handle, bound)
    return None if method.shape is ReturnShape.VOID else counts


_RUNNERS = {
    OperationKind.QUERY: _run_query,
    OperationKind.UPDATE: _run_update,
    OperationKind.BATCH: _run_batch,
}


def _close(self) -> None:
    """Release the handle held by this instance, if it owns one."""
    self._dbcontract_source.close()


def _enter(self):
    return self


def _exit(self, exc_type, exc_val, exc_tb) -> None:
    self.close()


def _begin(self) -> None:
    self._dbcontract_source.begin()


def _commit(self) -> None:
    self._dbcontract_source.commit()


def _rollback(self) -> None:
    self._dbcontract_source.rollback()


def _in_transaction(self, callback):
    """Run callback with an instance bound to a transaction; commit unless it raises."""
    contract = type(self).__dbcontract_descriptor__.contract
    return self._dbcontract_source.in_transaction(contract, callback)
