"""
Workflow definitions and execution.
"""

from .runner import WorkflowExecutionError, WorkflowRunner
from .workflow_context import ExecutionMode, StepStatus, WorkflowContext
from .workflow_factory import WorkflowFactory
from .workflow_step import WorkflowStep
from .workflow_utils import build_workflow_graph, visualize_workflow, workflow_step

__all__ = [
    "ExecutionMode",
    "StepStatus",
    "WorkflowContext",
    "WorkflowExecutionError",
    "WorkflowFactory",
    "WorkflowRunner",
    "WorkflowStep",
    "build_workflow_graph",
    "visualize_workflow",
    "workflow_step",
]
