"""
Error taxonomy for the read-replica benchmark.

Startup failures (`ConfigError`, `BackendConnectionError`) abort the run before
any worker starts. Per-call failures (`OperationError`, `CallTimeoutError`) are
recorded as failed samples and never escape a worker loop. A
`BackendConnectionError` raised mid-run is a fatal worker failure.
"""

from __future__ import annotations


class BenchError(Exception):
    """Base class for all benchmark errors."""


class ConfigError(BenchError):
    """Invalid flags, URLs or settings."""


class BackendConnectionError(BenchError):
    """A required connection could not be opened or was lost."""


class OperationError(BenchError):
    """A single read or write statement failed."""


class CallTimeoutError(BenchError):
    """A single read or write call exceeded its per-call timeout."""


class EmptyRegistryError(BenchError, LookupError):
    """No visible id is available for the requested entity kind."""


__all__ = [
    "BenchError",
    "ConfigError",
    "BackendConnectionError",
    "OperationError",
    "CallTimeoutError",
    "EmptyRegistryError",
]
