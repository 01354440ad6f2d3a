"""
Fixtures for SQLite integration tests.
"""
import pytest


@pytest.fixture
def seeded_db(sqlite_db):
    """`sqlite_db` with three rows in ``something``."""
    with sqlite_db.open() as handle:
        for id, name in [(1, 'Brian'), (2, 'Keith'), (3, 'Eric')]:
            handle.execute('insert into something (id, name) values (?, ?)', id, name)
    return sqlite_db
