import traceback
from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .workflow_context import StepStatus, stamp, summarize_value

# Run state cleared by reset(); everything else describes the step itself
_RUN_STATE = {
    "status": StepStatus.PENDING,
    "result": None,
    "error": None,
    "error_type": None,
    "error_traceback": None,
    "started_at": None,
    "completed_at": None,
    "current_retry": 0,
}
_TIMESTAMPS = ("started_at", "completed_at")


@dataclass
class WorkflowStep:
    """
    One step of a vignette: a function plus the prose that explains it.

    `description` is rendered above the step's code on the vignette page;
    `result` is whatever the function returned, by convention a dict with
    optional `summary`, `table` and `figures` entries.
    """

    id: str
    name: str
    description: str
    function: Optional[Callable]
    parameters: Dict[str, Any] = field(default_factory=dict)
    dependencies: List[str] = field(default_factory=list)
    timeout_seconds: Optional[float] = None
    retry_count: int = 0
    retry_delay_seconds: float = 60
    status: StepStatus = StepStatus.PENDING
    result: Any = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    error_traceback: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    current_retry: int = 0
    logs: List[str] = field(default_factory=list)

    def add_log(self, message: str) -> None:
        self.logs.append(stamp(message))

    def get_duration(self) -> Optional[float]:
        """Seconds between start and completion, None while unfinished"""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def reset(self) -> None:
        """Clear run state so the step can run again"""
        for name, value in _RUN_STATE.items():
            setattr(self, name, value)
        self.logs = []

    def mark_started(self) -> None:
        self.status = StepStatus.RUNNING
        self.started_at = datetime.now()
        self.completed_at = None
        self.add_log(f"Started (attempt {self.current_retry + 1} of {self.retry_count + 1})")

    def mark_completed(self, result: Any = None) -> None:
        self.status = StepStatus.COMPLETED
        self.completed_at = datetime.now()
        self.result = result
        self.error = None
        duration = self.get_duration()
        self.add_log(f"Completed in {duration:.2f}s" if duration is not None else "Completed")

    def mark_failed(self, error: BaseException, status: StepStatus = StepStatus.FAILED) -> None:
        """Record a failure with its type and traceback"""
        self.status = status
        self.completed_at = datetime.now()
        self.error = str(error) or type(error).__name__
        self.error_type = type(error).__name__
        self.error_traceback = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        self.add_log(f"{status.name}: {self.error_type}: {self.error}")

    def mark_skipped(self, reason: str) -> None:
        self.status = StepStatus.SKIPPED
        self.error = reason
        self.add_log(f"Skipped: {reason}")

    def to_dict(self) -> Dict[str, Any]:
        """
        JSON-friendly view of the step. The function is not serialized;
        parameters and result are summarized.
        """
        data = {}
        for f in fields(self):
            if f.name == "function":
                continue
            value = getattr(self, f.name)
            if f.name in _TIMESTAMPS:
                value = value.isoformat() if value else None
            elif f.name == "status":
                value = value.name
            elif f.name in ("parameters", "result"):
                value = summarize_value(value)
            data[f.name] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], function: Optional[Callable] = None) -> "WorkflowStep":
        """Rebuild a step from to_dict() output; the function is supplied separately"""
        known = {f.name for f in fields(cls)} - {"function"}
        kwargs = {k: v for k, v in data.items() if k in known}
        kwargs["status"] = StepStatus.__members__.get(data.get("status", "PENDING"), StepStatus.PENDING)
        for name in _TIMESTAMPS:
            kwargs[name] = datetime.fromisoformat(data[name]) if data.get(name) else None
        kwargs.setdefault("description", "")
        return cls(function=function, **kwargs)
