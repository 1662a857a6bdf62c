"""
Interchangeable parallel-execution backends.

Every backend maps a function over an iterable and returns the results in
input order, so the same analysis code can run serially, on local worker
processes, on a dask cluster or as batch jobs on a cluster scheduler.
"""

from .backends import (
    BACKENDS,
    BatchJobBackend,
    DistributedBackend,
    MulticoreBackend,
    ParallelBackend,
    SerialBackend,
    get_backend,
)
from .distributed import BatchJobTaskManager, DistributedTaskManager, TaskFailedError
from .equivalence import BackendMismatchError, check_equivalent

__all__ = [
    "BACKENDS",
    "BatchJobBackend",
    "BatchJobTaskManager",
    "BackendMismatchError",
    "DistributedBackend",
    "DistributedTaskManager",
    "MulticoreBackend",
    "ParallelBackend",
    "SerialBackend",
    "TaskFailedError",
    "check_equivalent",
    "get_backend",
]
