import math
import multiprocessing
import operator
import sys
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from .backends import (
    DEFAULT_BATCH_TIMEOUT,
    BatchJobBackend,
    DistributedBackend,
    MulticoreBackend,
    SerialBackend,
    get_backend,
)
from .distributed import BatchJobTaskManager, TaskFailedError
from .equivalence import check_equivalent


def square(x):
    return x * x


def column_sums(seed):
    rng = np.random.default_rng(seed)
    return rng.poisson(2.0, size=(50, 10)).sum(axis=0)


class BreaksOnLoad:
    """Pickles fine; raises ZeroDivisionError when a worker unpickles it"""

    def __reduce__(self):
        return operator.truediv, (1, 0)


def test_serial_backend_preserves_order():
    assert SerialBackend().map(square, [3, 1, 2]) == [9, 1, 4]


def test_multicore_backend_matches_serial():
    with MulticoreBackend(workers=2) as backend:
        parallel = backend.map(column_sums, range(6))
    serial = SerialBackend().map(column_sums, range(6))
    assert check_equivalent(serial, parallel)


def test_multicore_backend_reusable_after_close():
    backend = MulticoreBackend(workers=2)
    assert backend.map(square, [1, 2]) == [1, 4]
    backend.close()
    assert backend.map(square, [3]) == [9]
    backend.close()


@pytest.mark.skipif("forkserver" not in multiprocessing.get_all_start_methods(), reason="no fork server")
def test_multicore_backend_from_a_thread_uses_forkserver():
    with MulticoreBackend(workers=2) as backend:
        with ThreadPoolExecutor(max_workers=1) as threads:
            assert threads.submit(backend.map, square, [1, 2, 3]).result(timeout=120) == [1, 4, 9]
        assert backend._executor._mp_context.get_start_method() == "forkserver"


def test_distributed_backend_matches_serial():
    with DistributedBackend(workers=2, processes=False) as backend:
        parallel = backend.map(column_sums, range(4))
        assert backend.map(square, []) == []
    assert check_equivalent(SerialBackend().map(column_sums, range(4)), parallel)


def test_get_backend():
    assert isinstance(get_backend("serial"), SerialBackend)
    backend = get_backend("multicore", workers=3)
    assert backend.workers == 3
    with pytest.raises(ValueError, match="Unknown backend"):
        get_backend("spark")


def test_batchjob_backend_runs_jobs_with_bash(tmp_path):
    backend = BatchJobBackend(submit_command="bash", work_dir=tmp_path, poll_interval=0.1, timeout=60)
    assert backend.map(math.factorial, [3, 5, 0]) == [6, 120, 1]

    scripts = sorted(tmp_path.glob("*/job.sh"))
    assert len(scripts) == 3
    content = scripts[0].read_text()
    assert "#SBATCH --cpus-per-task=1" in content
    assert "-m scvignettes.core.parallel.worker" in content


def test_batchjob_backend_reports_task_failure(tmp_path):
    backend = BatchJobBackend(submit_command="bash", work_dir=tmp_path, poll_interval=0.1, timeout=60)
    with pytest.raises(TaskFailedError, match="ValueError"):
        backend.map(math.sqrt, [4, -1])


def test_batchjob_timeout_cancels_pending(tmp_path):
    # "true" accepts the script without running it, so no result ever appears
    manager = BatchJobTaskManager(tmp_path, submit_command="true", cancel_command=None)
    task_id = manager.submit_task({"func": abs, "args": (-1,)})
    assert manager.get_task_status(task_id)["status"] == "PENDING"

    with pytest.raises(TimeoutError):
        manager.wait([task_id], timeout=0.2, poll_interval=0.05)
    assert manager.get_task_status(task_id)["status"] == "CANCELLED"


def test_batchjob_manager_status_and_result(tmp_path):
    manager = BatchJobTaskManager(tmp_path, submit_command="bash")
    task_id = manager.submit_task({"func": abs, "args": (-7,)}, {"memory": "1G"})
    assert "--mem=1G" in (tmp_path / task_id / "job.sh").read_text()

    statuses = manager.get_task_statuses([task_id])
    assert statuses[task_id]["status"] == "COMPLETED"
    assert manager.get_task_result(task_id) == 7
    assert manager.cancel_task(task_id) is False

    with pytest.raises(KeyError):
        manager.get_task_status("missing")
    with pytest.raises(ValueError):
        manager.submit_task({"args": (1,)})


def test_batchjob_submission_failure(tmp_path):
    manager = BatchJobTaskManager(tmp_path, submit_command="false")
    with pytest.raises(RuntimeError, match="submission failed"):
        manager.submit_task({"func": abs, "args": (1,)})


def test_batchjob_uses_configured_python(tmp_path):
    manager = BatchJobTaskManager(tmp_path, submit_command="true", python=sys.executable)
    task_id = manager.submit_task({"func": abs, "args": (1,)})
    assert sys.executable in (tmp_path / task_id / "job.sh").read_text()


def test_batchjob_task_that_cannot_be_loaded_fails_the_map(tmp_path):
    # the submitter returns at once and the job runs in the background
    backend = BatchJobBackend(submit_command="sh -c 'bash \"$0\" &'", work_dir=tmp_path,
                              poll_interval=0.1, timeout=60)
    with pytest.raises(TaskFailedError, match="ZeroDivisionError"):
        backend.map(square, [BreaksOnLoad()])


def test_batchjob_backend_removes_its_own_work_dir():
    with BatchJobBackend(submit_command="bash", poll_interval=0.1) as backend:
        work_dir = backend.work_dir
        assert backend.map(square, [2, 3]) == [4, 9]
        assert any(work_dir.glob("*/result.pkl"))
    assert not work_dir.exists()


def test_batchjob_backend_keeps_given_work_dir(tmp_path):
    with BatchJobBackend(submit_command="bash", work_dir=tmp_path, poll_interval=0.1) as backend:
        backend.map(square, [2])
    assert any(tmp_path.glob("*/result.pkl"))


def test_batchjob_backend_waits_a_finite_time_by_default():
    backend = BatchJobBackend(submit_command="true", work_dir=None)
    try:
        assert backend.timeout == DEFAULT_BATCH_TIMEOUT
        assert 0 < backend.timeout < float("inf")
    finally:
        backend.close()


if __name__ == "__main__":
    pytest.main(["-xvs", __file__])
