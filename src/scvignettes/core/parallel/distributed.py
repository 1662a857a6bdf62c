import abc
import logging
import os
import pickle
import re
import shlex
import subprocess
import sys
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

DEFAULT_JOB_TEMPLATE = """#!/bin/bash
#SBATCH --job-name={job_name}
#SBATCH --cpus-per-task={cpus}
#SBATCH --mem={memory}
#SBATCH --time={walltime}
#SBATCH --output={log}
{python} -m scvignettes.core.parallel.worker {task} {result}
"""

DEFAULT_RESOURCES = {"cpus": 1, "memory": "2G", "walltime": "01:00:00"}

_JOB_ID = re.compile(r"(\d+)")


class TaskFailedError(RuntimeError):
    """A task raised inside its worker; carries the remote traceback."""

    def __init__(self, task_id: str, message: str, remote_traceback: str = ""):
        super().__init__(f"Task {task_id} failed: {message}")
        self.task_id = task_id
        self.remote_traceback = remote_traceback


class DistributedTaskManager(abc.ABC):
    """Abstract base class for a distributed task manager."""

    @abc.abstractmethod
    def submit_task(self, task_payload: Dict[str, Any], resource_requirements: Optional[Dict[str, Any]] = None) -> str:
        """Submit a task for distributed execution."""
        pass

    @abc.abstractmethod
    def get_task_status(self, task_id: str) -> Dict[str, Any]:
        """Get the status of a distributed task."""
        pass

    def get_task_statuses(self, task_ids: List[str]) -> Dict[str, Dict[str, Any]]:
        """Get statuses for multiple tasks."""
        return {task_id: self.get_task_status(task_id) for task_id in task_ids}

    @abc.abstractmethod
    def get_task_result(self, task_id: str) -> Any:
        """Get the result of a completed distributed task."""
        pass

    @abc.abstractmethod
    def cancel_task(self, task_id: str) -> bool:
        """Cancel a distributed task."""
        pass


class BatchJobTaskManager(DistributedTaskManager):
    """
    Runs tasks as batch jobs on a cluster scheduler.

    Each task payload (a dict with `func`, `args` and `kwargs`) is pickled
    into its own directory under `work_dir`, a job script is rendered from
    `template` and handed to `submit_command`. The job runs the worker entry
    point, which writes the pickled outcome next to the task. Status is
    read from the presence and content of that result file, so nothing is
    required of the scheduler beyond running the script.
    """

    def __init__(
        self,
        work_dir: Union[str, Path],
        submit_command: str = "sbatch",
        cancel_command: Optional[str] = "scancel",
        template: str = DEFAULT_JOB_TEMPLATE,
        python: str = sys.executable,
    ):
        self.work_dir = Path(work_dir)
        self.work_dir.mkdir(parents=True, exist_ok=True)
        self.submit_command = submit_command
        self.cancel_command = cancel_command
        self.template = template
        self.python = python
        self.tasks: Dict[str, Dict[str, Any]] = {}

    def submit_task(self, task_payload: Dict[str, Any], resource_requirements: Optional[Dict[str, Any]] = None) -> str:
        if not callable(task_payload.get("func")):
            raise ValueError("task_payload must contain a callable 'func'")

        task_id = uuid.uuid4().hex[:12]
        task_dir = self.work_dir / task_id
        task_dir.mkdir()
        task_file = task_dir / "task.pkl"
        result_file = task_dir / "result.pkl"
        script_file = task_dir / "job.sh"

        with open(task_file, "wb") as f:
            pickle.dump(task_payload, f)

        resources = {**DEFAULT_RESOURCES, **(resource_requirements or {})}
        script_file.write_text(
            self.template.format(
                job_name=f"scv-{task_id}",
                python=shlex.quote(self.python),
                task=shlex.quote(str(task_file)),
                result=shlex.quote(str(result_file)),
                log=shlex.quote(str(task_dir / "job.log")),
                **resources,
            )
        )
        script_file.chmod(0o755)

        command = shlex.split(self.submit_command) + [str(script_file)]
        logger.debug(f"Submitting task {task_id}: {' '.join(command)}")
        completed = subprocess.run(command, capture_output=True, text=True, check=False)
        # Synchronous submitters (e.g. bash) return the job exit code; a written
        # result file means the job ran
        if completed.returncode != 0 and not result_file.exists():
            raise RuntimeError(
                f"Job submission failed for task {task_id} (exit {completed.returncode}): {completed.stderr.strip()}"
            )

        match = _JOB_ID.search(completed.stdout or "")
        self.tasks[task_id] = {
            "task_dir": task_dir,
            "result_file": result_file,
            "job_id": match.group(1) if match else None,
            "submitted_at": datetime.now().isoformat(),
            "cancelled": False,
        }
        logger.info(f"Submitted task {task_id} (job {self.tasks[task_id]['job_id']})")
        return task_id

    def _task(self, task_id: str) -> Dict[str, Any]:
        if task_id not in self.tasks:
            raise KeyError(f"Unknown task: {task_id}")
        return self.tasks[task_id]

    def _read_outcome(self, task_id: str) -> Optional[Dict[str, Any]]:
        result_file = self._task(task_id)["result_file"]
        if not result_file.exists():
            return None
        with open(result_file, "rb") as f:
            return pickle.load(f)

    def get_task_status(self, task_id: str) -> Dict[str, Any]:
        task = self._task(task_id)
        outcome = self._read_outcome(task_id)
        if task["cancelled"]:
            status = "CANCELLED"
        elif outcome is None:
            status = "PENDING"
        else:
            status = "COMPLETED" if outcome["ok"] else "FAILED"
        return {"task_id": task_id, "job_id": task["job_id"], "status": status, "submitted_at": task["submitted_at"]}

    def get_task_result(self, task_id: str) -> Any:
        outcome = self._read_outcome(task_id)
        if outcome is None:
            raise RuntimeError(f"Task {task_id} has not finished")
        if not outcome["ok"]:
            raise TaskFailedError(task_id, outcome["error"], outcome.get("traceback", ""))
        return outcome["value"]

    def cancel_task(self, task_id: str) -> bool:
        task = self._task(task_id)
        if self._read_outcome(task_id) is not None:
            return False
        task["cancelled"] = True
        if self.cancel_command and task["job_id"]:
            command = shlex.split(self.cancel_command) + [task["job_id"]]
            completed = subprocess.run(command, capture_output=True, text=True, check=False)
            if completed.returncode != 0:
                logger.warning(f"Cancel command failed for job {task['job_id']}: {completed.stderr.strip()}")
                return False
        logger.info(f"Cancelled task {task_id}")
        return True

    def wait(self, task_ids: List[str], timeout: Optional[float] = None, poll_interval: float = 1.0) -> None:
        """
        Block until every task has a result.

        Raises:
            TimeoutError: if `timeout` seconds pass first; unfinished tasks
                are cancelled
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        pending = list(task_ids)
        while pending:
            statuses = self.get_task_statuses(pending)
            pending = [t for t, s in statuses.items() if s["status"] == "PENDING"]
            if not pending:
                return
            if deadline is not None and time.monotonic() > deadline:
                for task_id in pending:
                    self.cancel_task(task_id)
                raise TimeoutError(f"{len(pending)} task(s) did not finish within {timeout}s")
            time.sleep(poll_interval)


def write_outcome(result_file: Union[str, Path], outcome: Dict[str, Any]) -> None:
    """Write a task outcome so readers never see a partial file."""
    result_file = Path(result_file)
    partial = result_file.with_suffix(".partial")
    with open(partial, "wb") as f:
        pickle.dump(outcome, f)
    os.replace(partial, result_file)
