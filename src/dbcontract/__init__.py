"""
Declarative SQL contracts for PostgreSQL and SQLite.

Declare data access as a class of decorated methods and let a generated
implementation bind arguments, run the SQL and shape the results::

    class MyDAO:
        @sql_update('insert into something (id, name) values (:id, :name)')
        def insert(self, id: int, name: str) -> None: ...

        @sql_query('select name from something where id = :id')
        def find_name_by_id(self, id: int) -> str: ...

        def close(self) -> None: ...

    db = connect({'drivername': 'sqlite', 'database': ':memory:'})
    dao = db.on_demand(MyDAO)
"""
__version__ = '0.1.0'

from dbcontract.binding import Bind, Binder, BinderFactory, BindObject
from dbcontract.binding import Positional, register_binder_factory
from dbcontract.connection import Database, connect
from dbcontract.contract import Transactional, describe, sql_batch
from dbcontract.contract import sql_query, sql_update
from dbcontract.customizers import Customizer, batch_chunk_size, fetch_size
from dbcontract.customizers import max_field_size, register_mapper, use_mapper
from dbcontract.dispatch import build
from dbcontract.exceptions import BindingError, ConfigurationError
from dbcontract.exceptions import ConnectionFailure, DatabaseError
from dbcontract.exceptions import ExecutionError, ResultShapeError
from dbcontract.exceptions import TemplateError
from dbcontract.handle import Handle
from dbcontract.lifecycle import attach, on_demand, open_contract
from dbcontract.mappers import DataclassMapper, RowMapper
from dbcontract.options import DatabaseOptions
from dbcontract.statement import Query, ResultIterator, Statement
from dbcontract.template import parse
from dbcontract.transaction import Transaction as transaction

__all__ = [
    'Bind',
    'BindObject',
    'Binder',
    'BinderFactory',
    'BindingError',
    'ConfigurationError',
    'ConnectionFailure',
    'Customizer',
    'Database',
    'DatabaseError',
    'DatabaseOptions',
    'DataclassMapper',
    'ExecutionError',
    'Handle',
    'Positional',
    'Query',
    'ResultIterator',
    'ResultShapeError',
    'RowMapper',
    'Statement',
    'TemplateError',
    'Transactional',
    'attach',
    'batch_chunk_size',
    'build',
    'connect',
    'describe',
    'fetch_size',
    'max_field_size',
    'on_demand',
    'open_contract',
    'parse',
    'register_binder_factory',
    'register_mapper',
    'sql_batch',
    'sql_query',
    'sql_update',
    'transaction',
    'use_mapper',
]
