import abc
import logging
import multiprocessing
import os
import shutil
import tempfile
from concurrent.futures import ProcessPoolExecutor
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Type, Union

from dask.distributed import Client, LocalCluster

from .distributed import DEFAULT_JOB_TEMPLATE, BatchJobTaskManager

logger = logging.getLogger(__name__)

# Longer than the default job walltime plus queueing
DEFAULT_BATCH_TIMEOUT = 24 * 3600.0


def _default_workers() -> int:
    return max(1, (os.cpu_count() or 2) - 1)


class ParallelBackend(abc.ABC):
    """Maps a function over inputs; results come back in input order."""

    name = "base"

    @abc.abstractmethod
    def map(self, func: Callable, iterable: Iterable) -> List[Any]:
        pass

    def close(self) -> None:
        """Release workers; the backend can still be reused afterwards."""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __repr__(self):
        return f"{type(self).__name__}()"


class SerialBackend(ParallelBackend):
    name = "serial"

    def map(self, func: Callable, iterable: Iterable) -> List[Any]:
        return [func(item) for item in iterable]


class MulticoreBackend(ParallelBackend):
    """
    Worker processes on the local machine.

    Workers come from a fork server where the platform has one: steps run
    in threads, and forking a multithreaded process can copy held locks
    into the child.
    """

    name = "multicore"

    def __init__(self, workers: Optional[int] = None):
        self.workers = workers or _default_workers()
        self._executor: Optional[ProcessPoolExecutor] = None

    def _get_executor(self) -> ProcessPoolExecutor:
        if self._executor is None:
            start_methods = multiprocessing.get_all_start_methods()
            context = multiprocessing.get_context("forkserver") if "forkserver" in start_methods else None
            self._executor = ProcessPoolExecutor(max_workers=self.workers, mp_context=context)
            logger.info(f"Started {self.workers} worker processes")
        return self._executor

    def map(self, func: Callable, iterable: Iterable) -> List[Any]:
        return list(self._get_executor().map(func, iterable))

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def __repr__(self):
        return f"MulticoreBackend(workers={self.workers})"


class DistributedBackend(ParallelBackend):
    """
    dask.distributed execution.

    Without an address a LocalCluster of single-threaded worker processes
    is started on first use and shut down by close(). With an address (or
    a Client) the backend attaches to an existing scheduler and leaves it
    running.
    """

    name = "distributed"

    def __init__(self, workers: Optional[int] = None, address: Optional[Union[str, Client]] = None,
                 processes: bool = True):
        self.workers = workers or _default_workers()
        self.address = address
        self.processes = processes
        self._client: Optional[Client] = None
        self._cluster: Optional[LocalCluster] = None

    @property
    def client(self) -> Client:
        if self._client is None:
            if isinstance(self.address, Client):
                self._client = self.address
            elif self.address is None or str(self.address).lower() == "local":
                self._cluster = LocalCluster(
                    n_workers=self.workers,
                    threads_per_worker=1,
                    processes=self.processes,
                    dashboard_address=None,
                )
                self._client = Client(self._cluster)
                logger.info(f"Started local dask cluster with {self.workers} workers")
            else:
                self._client = Client(self.address)
                logger.info(f"Connected to dask scheduler at {self.address}")
        return self._client

    def map(self, func: Callable, iterable: Iterable) -> List[Any]:
        items = list(iterable)
        if not items:
            return []
        futures = self.client.map(func, items, pure=False)
        return self.client.gather(futures)

    def close(self) -> None:
        if self._client is not None and not isinstance(self.address, Client):
            self._client.close()
        if self._cluster is not None:
            self._cluster.close()
            logger.info("Shut down local dask cluster")
        self._client = None
        self._cluster = None

    def __repr__(self):
        return f"DistributedBackend(workers={self.workers}, address={self.address!r})"


class BatchJobBackend(ParallelBackend):
    """
    One batch job per input, submitted to a cluster scheduler.

    Without `work_dir` the backend keeps its task files in a temporary
    directory of its own, removed by close().

    Args:
        submit_command: Command that takes a job script path (e.g. "sbatch",
            "qsub", or "bash" to run jobs in-process)
        template: Job script template; see DEFAULT_JOB_TEMPLATE for fields
        work_dir: Directory for task, script and result files
        poll_interval: Seconds between result-file checks
        timeout: Seconds to wait for all jobs of a map() call; None waits forever
        resources: Values for the template's resource fields
    """

    name = "batchjobs"

    def __init__(
        self,
        submit_command: str = "sbatch",
        template: str = DEFAULT_JOB_TEMPLATE,
        work_dir: Optional[Union[str, Path]] = None,
        poll_interval: float = 1.0,
        timeout: Optional[float] = DEFAULT_BATCH_TIMEOUT,
        cancel_command: Optional[str] = "scancel",
        resources: Optional[Dict[str, Any]] = None,
    ):
        self._owns_work_dir = work_dir is None
        self.work_dir = Path(tempfile.mkdtemp(prefix="scvignettes-jobs-")) if work_dir is None else Path(work_dir)
        self.manager = BatchJobTaskManager(
            self.work_dir, submit_command=submit_command, cancel_command=cancel_command, template=template
        )
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.resources = resources or {}

    def map(self, func: Callable, iterable: Iterable) -> List[Any]:
        self.manager.work_dir.mkdir(parents=True, exist_ok=True)
        task_ids = [
            self.manager.submit_task({"func": func, "args": (item,), "kwargs": {}}, self.resources)
            for item in iterable
        ]
        self.manager.wait(task_ids, timeout=self.timeout, poll_interval=self.poll_interval)
        return [self.manager.get_task_result(task_id) for task_id in task_ids]

    def close(self) -> None:
        if self._owns_work_dir and self.work_dir.exists():
            shutil.rmtree(self.work_dir)
            self.manager.tasks.clear()
            logger.debug(f"Removed job directory {self.work_dir}")

    def __repr__(self):
        return f"BatchJobBackend(submit_command={self.manager.submit_command!r}, work_dir='{self.work_dir}')"


BACKENDS: Dict[str, Type[ParallelBackend]] = {
    SerialBackend.name: SerialBackend,
    MulticoreBackend.name: MulticoreBackend,
    DistributedBackend.name: DistributedBackend,
    BatchJobBackend.name: BatchJobBackend,
}


def get_backend(name: str, **kwargs) -> ParallelBackend:
    """
    Create a backend by name.

    Args:
        name: One of "serial", "multicore", "distributed", "batchjobs"
        **kwargs: Passed to the backend's constructor

    Returns:
        A ParallelBackend instance
    """
    if name not in BACKENDS:
        raise ValueError(f"Unknown backend: {name}. Available: {sorted(BACKENDS)}")
    backend = BACKENDS[name](**kwargs)
    logger.debug(f"Created backend {backend!r}")
    return backend
