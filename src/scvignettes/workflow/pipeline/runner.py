import asyncio
import inspect
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from .workflow_context import ExecutionMode, StepStatus, WorkflowContext
from .workflow_step import WorkflowStep
from .workflow_utils import build_workflow_graph, execution_generations

logger = logging.getLogger(__name__)

FAILED_STATES = (StepStatus.FAILED, StepStatus.TIMEOUT)


class WorkflowExecutionError(RuntimeError):
    """A step failed in a run that halts on errors."""

    def __init__(self, message: str, step_id: str, context: WorkflowContext):
        super().__init__(message)
        self.step_id = step_id
        self.context = context


class WorkflowRunner:
    """
    Executes a workflow's steps in dependency order.

    Steps are grouped into topological generations. In PARALLEL mode the
    steps of a generation run concurrently with asyncio.gather; in
    SEQUENTIAL mode they run one after another in definition order.
    Synchronous step functions run in a worker thread so the event loop
    stays responsive. Each function is called with the context and those
    keyword arguments its signature accepts, taken from the step's own
    parameters first and the run parameters second.

    A timeout marks the step TIMEOUT but cannot stop a synchronous step's
    thread, which runs on in the background; timed-out steps are therefore
    not retried.
    """

    def __init__(self, execution_mode: Optional[str] = None, halt_on_error: bool = True):
        if execution_mode is not None and execution_mode not in ExecutionMode.__members__:
            raise ValueError(f"Unknown execution mode: {execution_mode}")
        self.execution_mode = execution_mode
        self.halt_on_error = halt_on_error

    async def run(self, workflow: Dict[str, Any], parameters: Optional[Dict[str, Any]] = None,
                  run_id: Optional[str] = None) -> WorkflowContext:
        """
        Run a workflow

        Args:
            workflow: Workflow created by WorkflowFactory
            parameters: Run parameters overriding the workflow defaults
            run_id: Optional ID for this run

        Returns:
            The WorkflowContext recording the run

        Raises:
            WorkflowExecutionError: if a step fails and halt_on_error is set
        """
        steps: List[WorkflowStep] = workflow["steps"]
        graph = build_workflow_graph(steps)
        mode = self.execution_mode or workflow.get("execution_mode", "SEQUENTIAL")

        context = WorkflowContext(
            workflow_id=workflow["id"],
            run_id=run_id or f"run_{uuid.uuid4().hex[:8]}",
            parameters={**workflow.get("parameters", {}), **(parameters or {})},
        )
        context.metadata.update({"name": workflow["name"], "version": workflow.get("version"), "execution_mode": mode})
        for step in steps:
            step.reset()
            context.step_statuses[step.id] = StepStatus.PENDING

        context.status = "RUNNING"
        context.start_time = datetime.now()
        context.add_log(f"Starting workflow {workflow['name']} ({len(steps)} steps, {mode})")
        logger.info(f"Running workflow {workflow['name']} ({context.run_id}) in {mode} mode")

        for generation in execution_generations(graph):
            runnable = []
            for step in generation:
                blocked = [d for d in step.dependencies if context.step_statuses[d] != StepStatus.COMPLETED]
                if blocked:
                    step.mark_skipped(f"dependencies did not complete: {', '.join(blocked)}")
                    context.step_statuses[step.id] = StepStatus.SKIPPED
                    context.add_warning(f"Skipping step {step.id}: dependencies {blocked} did not complete")
                    continue
                runnable.append(step)

            if mode == ExecutionMode.PARALLEL.name:
                await asyncio.gather(*(self._execute_step(step, context) for step in runnable))
            else:
                for step in runnable:
                    await self._execute_step(step, context)
                    if self.halt_on_error and step.status in FAILED_STATES:
                        break

            failed = [step for step in runnable if step.status in FAILED_STATES]
            if failed and self.halt_on_error:
                self._finish(context, steps, status="FAILED", error=f"{failed[0].id}: {failed[0].error}")
                raise WorkflowExecutionError(
                    f"Step '{failed[0].name}' of workflow '{workflow['name']}' failed: "
                    f"{failed[0].error_type}: {failed[0].error}",
                    step_id=failed[0].id,
                    context=context,
                )

        failed_ids = [step.id for step in steps if step.status in FAILED_STATES]
        self._finish(
            context,
            steps,
            status="FAILED" if failed_ids else "COMPLETED",
            error=f"Failed steps: {failed_ids}" if failed_ids else None,
        )
        return context

    def run_sync(self, workflow: Dict[str, Any], parameters: Optional[Dict[str, Any]] = None) -> WorkflowContext:
        """Blocking wrapper around run() for callers without an event loop"""
        return asyncio.run(self.run(workflow, parameters))

    def _finish(self, context: WorkflowContext, steps: List[WorkflowStep], status: str, error: Optional[str]) -> None:
        for step in steps:
            if step.status == StepStatus.PENDING:
                step.mark_skipped("workflow halted")
                context.step_statuses[step.id] = StepStatus.SKIPPED
        context.status = status
        context.error = error
        context.end_time = datetime.now()
        context.update_resource_usage()
        log = context.add_error if error else context.add_log
        log(f"Workflow finished with status {status} in {context.duration:.2f}s")
        logger.info(f"Workflow {context.workflow_id} finished with status {status} in {context.duration:.2f}s")

    @staticmethod
    def _step_kwargs(step: WorkflowStep, context: WorkflowContext) -> Dict[str, Any]:
        signature = inspect.signature(step.function)
        accepts_any = any(p.kind == inspect.Parameter.VAR_KEYWORD for p in signature.parameters.values())
        kwargs = {}
        for key, value in {**context.parameters, **step.parameters}.items():
            if key == "context":
                continue
            if accepts_any or key in signature.parameters:
                kwargs[key] = value
        return kwargs

    async def _call(self, step: WorkflowStep, context: WorkflowContext, kwargs: Dict[str, Any]) -> Any:
        if inspect.iscoroutinefunction(step.function):
            return await step.function(context, **kwargs)
        return await asyncio.to_thread(step.function, context, **kwargs)

    async def _execute_step(self, step: WorkflowStep, context: WorkflowContext) -> None:
        kwargs = self._step_kwargs(step, context)

        for attempt in range(step.retry_count + 1):
            step.current_retry = attempt
            step.mark_started()
            context.step_statuses[step.id] = StepStatus.RUNNING
            context.add_log(f"Starting step {step.id}" + (f" (retry {attempt})" if attempt else ""))
            logger.info(f"Running step {step.name}")

            try:
                result = await asyncio.wait_for(self._call(step, context, kwargs), timeout=step.timeout_seconds)
            except Exception as e:
                if isinstance(e, asyncio.TimeoutError) and step.timeout_seconds is not None:
                    step.mark_failed(e, status=StepStatus.TIMEOUT)
                    step.error = f"timed out after {step.timeout_seconds}s"
                else:
                    step.mark_failed(e)
                context.add_error(f"Step {step.id} failed: {step.error_type}: {step.error}")
                logger.error(f"Step {step.name} failed: {step.error_type}: {step.error}")
            else:
                step.mark_completed(result)
                context.add_result(step.id, result)
                context.step_statuses[step.id] = StepStatus.COMPLETED
                context.step_times[step.id] = {
                    "start": step.started_at.timestamp(),
                    "end": step.completed_at.timestamp(),
                    "duration": step.get_duration(),
                }
                context.update_resource_usage()
                logger.info(f"Step {step.name} completed in {step.get_duration():.2f}s")
                return

            if step.status == StepStatus.TIMEOUT:
                break
            if attempt < step.retry_count:
                context.add_warning(f"Retrying step {step.id} in {step.retry_delay_seconds}s")
                await asyncio.sleep(step.retry_delay_seconds)

        context.step_statuses[step.id] = step.status
