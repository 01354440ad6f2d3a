from dataclasses import dataclass

from libb import ConfigOptions, scriptname

__all__ = [
    'DatabaseOptions',
    'SUPPORTED_DRIVERS',
]

SUPPORTED_DRIVERS = ('postgresql', 'sqlite')


@dataclass
class DatabaseOptions(ConfigOptions):
    """Options

    supported driver names: `postgresql`, `sqlite`

    Connection pooling options:
    - use_pool: Whether to use connection pooling (default: False)
    - pool_max_connections: Maximum connections in pool (default: 5)
    - pool_max_idle_time: Maximum seconds a connection can be idle (default: 300)
    - pool_wait_timeout: Maximum seconds to wait for a connection (default: 30)

    Contract options:
    - strict_bindings: Fail contract builds whose bind names are unused by
      their templates (default: False, unused bind names are tolerated)
    - default_fetch_size: Rows fetched per cursor round trip for queries
    """
    drivername: str = 'sqlite'
    hostname: str = None
    username: str = None
    password: str = None
    database: str = None
    port: int = 0
    timeout: int = 0
    appname: str = None
    # Connection pooling parameters
    use_pool: bool = False
    pool_max_connections: int = 5
    pool_max_idle_time: int = 300
    pool_wait_timeout: int = 30
    # Contract parameters
    strict_bindings: bool = False
    default_fetch_size: int | None = None

    def __post_init__(self):
        if self.drivername not in SUPPORTED_DRIVERS:
            raise ValueError(f'drivername must be one of: {list(SUPPORTED_DRIVERS)}')
        if not self.database:
            raise ValueError('database is required')
        if self.drivername == 'postgresql' and not self.hostname:
            raise ValueError('hostname is required for postgresql')
        if self.default_fetch_size is not None and self.default_fetch_size <= 0:
            raise ValueError('default_fetch_size must be positive')
        self.appname = self.appname or scriptname() or 'python_console'
