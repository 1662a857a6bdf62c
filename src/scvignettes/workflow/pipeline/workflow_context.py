import os
import time
from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum, auto
from typing import Any, Dict, List, Optional

import anndata as ad
import numpy as np
import pandas as pd
import psutil

MEMORY_HISTORY = 60
_TIMES = ("start_time", "end_time")
_SUMMARIZED = ("parameters", "results", "metadata")


class StepStatus(Enum):
    """Status of a workflow step"""

    PENDING = auto()
    RUNNING = auto()
    COMPLETED = auto()
    FAILED = auto()
    TIMEOUT = auto()
    SKIPPED = auto()


class ExecutionMode(Enum):
    """How the runner schedules steps whose dependencies are satisfied"""

    SEQUENTIAL = auto()
    PARALLEL = auto()  # one asyncio.gather per generation


def stamp(message: str, level: Optional[str] = None) -> str:
    prefix = f"{level}: " if level else ""
    return f"[{datetime.now().isoformat()}] {prefix}{message}"


def summarize_value(value: Any) -> Any:
    """JSON-friendly stand-in for a result value"""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, dict):
        return {str(k): summarize_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [summarize_value(v) for v in value]
    if isinstance(value, ad.AnnData):
        return f"AnnData with {value.n_obs} cells x {value.n_vars} genes"
    if isinstance(value, pd.DataFrame):
        return f"DataFrame with {value.shape[0]} rows x {value.shape[1]} columns"
    if isinstance(value, (np.ndarray, pd.Series)):
        return f"{type(value).__name__} of shape {value.shape}"
    return f"<{type(value).__name__}>"


@dataclass
class WorkflowContext:
    """
    State shared by the steps of one vignette run.

    Steps hand objects to later steps through `results` (the runner also
    stores every step's return value under the step id) and register
    files they write in `artifacts`. Everything else is the run record
    rendered on the vignette page and dumped as JSON.
    """

    workflow_id: str
    run_id: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    results: Dict[str, Any] = field(default_factory=dict)
    artifacts: Dict[str, str] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    logs: List[str] = field(default_factory=list)
    status: str = "PENDING"
    error: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    step_statuses: Dict[str, StepStatus] = field(default_factory=dict)
    step_times: Dict[str, Dict[str, float]] = field(default_factory=dict)
    resource_usage: Dict[str, List[float]] = field(default_factory=lambda: {"memory_mb": [], "timestamp": []})
    warning_logs: List[str] = field(default_factory=list)
    error_logs: List[str] = field(default_factory=list)

    def add_result(self, key: str, value: Any) -> None:
        self.results[key] = value

    def add_artifact(self, key: str, path: str) -> None:
        self.artifacts[key] = str(path)

    def get_result(self, key: str, default: Any = None) -> Any:
        return self.results.get(key, default)

    def require_result(self, key: str) -> Any:
        """Get a result that an earlier step must have produced"""
        if key not in self.results:
            raise KeyError(f"Result '{key}' not available; has the step producing it run?")
        return self.results[key]

    def get_artifact(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self.artifacts.get(key, default)

    def add_log(self, message: str) -> None:
        self.logs.append(stamp(message))

    def add_warning(self, message: str) -> None:
        line = stamp(message, "WARNING")
        self.warning_logs.append(line)
        self.logs.append(line)

    def add_error(self, message: str) -> None:
        line = stamp(message, "ERROR")
        self.error_logs.append(line)
        self.logs.append(line)

    def update_resource_usage(self) -> None:
        """Record the resident memory of this process; the last MEMORY_HISTORY samples are kept"""
        rss_mb = psutil.Process(os.getpid()).memory_info().rss / (1024 * 1024)
        for key, value in (("memory_mb", rss_mb), ("timestamp", time.time())):
            self.resource_usage[key] = (self.resource_usage[key] + [value])[-MEMORY_HISTORY:]

    @property
    def peak_memory_mb(self) -> Optional[float]:
        samples = self.resource_usage["memory_mb"]
        return max(samples) if samples else None

    @property
    def duration(self) -> Optional[float]:
        if self.start_time and self.end_time:
            return (self.end_time - self.start_time).total_seconds()
        return None

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly run record; AnnData objects, frames and arrays are summarized"""
        record = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name in _TIMES:
                value = value.isoformat() if value else None
            elif f.name == "step_statuses":
                value = {step_id: status.name for step_id, status in value.items()}
            elif f.name in _SUMMARIZED:
                value = summarize_value(value)
            record[f.name] = value
        record["duration"] = self.duration
        record["peak_memory_mb"] = self.peak_memory_mb
        return record

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowContext":
        """Rebuild a context from to_dict() output; summarized values stay summaries"""
        kwargs = {f.name: data[f.name] for f in fields(cls) if data.get(f.name) is not None}
        for name in _TIMES:
            if name in kwargs:
                kwargs[name] = datetime.fromisoformat(kwargs[name])
        kwargs["step_statuses"] = {
            step_id: StepStatus.__members__.get(name, StepStatus.FAILED)
            for step_id, name in kwargs.get("step_statuses", {}).items()
        }
        return cls(**kwargs)
