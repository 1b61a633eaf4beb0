"""
PostgreSQL connection factory utilities for the read-replica benchmark.

Provides centralized management of psycopg connections and pools keyed by
connection URL. The PoolManager singleton ensures pools are cleaned up on
application exit.

Includes retry logic for transient connection failures using tenacity.
"""

from __future__ import annotations

import atexit
import threading
from typing import Any, Callable, Dict, Optional

import psycopg
from psycopg import Connection
from psycopg_pool import ConnectionPool
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from rr_bench.utils.logging import get_logger

log = get_logger(__name__)


class PoolManager:
    """
    Thread-safe singleton for managing connection pools, one per URL.

    Handles lifecycle management with automatic cleanup via atexit hook.
    """

    _instance: Optional["PoolManager"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "PoolManager":
        """Create or return the singleton instance."""
        with cls._lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._pools: Dict[str, ConnectionPool] = {}
                atexit.register(cls._instance.close_all)
            return cls._instance

    def get_pool(
        self,
        conninfo: str,
        min_size: int = 1,
        max_size: int = 10,
        configure: Optional[Callable[[Connection], None]] = None,
        timeout: float = 30.0,
    ) -> ConnectionPool:
        """
        Get or create the pool for `conninfo` and wait until it is usable.

        Parameters
        ----------
        conninfo : str
            libpq connection string or `postgresql://` URL.
        min_size : int
            Minimum number of idle connections to keep.
        max_size : int
            Maximum total connections in the pool.
        configure : callable, optional
            Called on every new connection (session settings).
        timeout : float
            Seconds to wait for the first `min_size` connections, and the
            default checkout timeout.

        Raises
        ------
        psycopg_pool.PoolTimeout
            If the pool cannot fill within `timeout`.
        """
        with self._lock:
            pool = self._pools.get(conninfo)
            if pool is None:
                pool = ConnectionPool(
                    conninfo=conninfo,
                    min_size=min_size,
                    max_size=max_size,
                    kwargs={"autocommit": True},
                    configure=configure,
                    timeout=timeout,
                    open=False,
                    name="rr-bench-primary",
                )
                try:
                    pool.open(wait=True, timeout=timeout)
                except Exception:
                    pool.close()
                    raise
                self._pools[conninfo] = pool
            return pool

    def close_pool(self, conninfo: str) -> None:
        with self._lock:
            pool = self._pools.pop(conninfo, None)
        if pool is not None:
            _close_quietly(pool)

    def close_all(self) -> None:
        """
        Close all managed pools and release resources.

        This is called automatically on exit via atexit hook.
        """
        with self._lock:
            pools = list(self._pools.values())
            self._pools.clear()
        for pool in pools:
            _close_quietly(pool)


def _close_quietly(pool: ConnectionPool) -> None:
    try:
        pool.close()
    except psycopg.Error as exc:
        log.debug("Pool close failed", extra={"pool": pool.name, "error": str(exc)})


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((psycopg.OperationalError, psycopg.InterfaceError)),
    reraise=True,
)
def get_sync_connection(conninfo: str, **kwargs: Any) -> Connection:
    """
    Acquire a dedicated synchronous connection with automatic retry.

    Retries up to 3 times with exponential backoff for transient connection errors.
    Extra keyword arguments are passed to `psycopg.connect` (e.g. `autocommit`).

    Raises
    ------
    psycopg.OperationalError
        If connection fails after all retry attempts.
    """
    return psycopg.connect(conninfo, **kwargs)


def get_sync_pool(
    conninfo: str,
    min_size: int = 1,
    max_size: int = 10,
    configure: Optional[Callable[[Connection], None]] = None,
    timeout: float = 30.0,
) -> ConnectionPool:
    """Get or create a connection pool via PoolManager."""
    return PoolManager().get_pool(
        conninfo, min_size=min_size, max_size=max_size, configure=configure, timeout=timeout
    )


__all__ = [
    "PoolManager",
    "get_sync_connection",
    "get_sync_pool",
]
