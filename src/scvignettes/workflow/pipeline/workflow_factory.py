import json
import logging
import uuid
from collections import Counter
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import yaml

from .workflow_context import ExecutionMode
from .workflow_step import WorkflowStep
from .workflow_utils import build_workflow_graph, discover_workflow_functions, load_workflow_definition

logger = logging.getLogger(__name__)

StepDefinition = Union[Callable, Dict[str, Any]]

# Step fields written to definition files besides id and function
_DEFINITION_FIELDS = (
    "name",
    "description",
    "parameters",
    "dependencies",
    "timeout_seconds",
    "retry_count",
    "retry_delay_seconds",
)

# Definition key -> (decorator attribute, default)
_DECORATOR_DEFAULTS = {
    "dependencies": ("step_dependencies", []),
    "timeout_seconds": ("timeout_seconds", None),
    "retry_count": ("retry_count", 0),
    "retry_delay_seconds": ("retry_delay_seconds", 60),
}


def function_id(function: Callable) -> str:
    """Registry key of a step function: its dotted module path"""
    return f"{function.__module__}.{function.__name__}"


class WorkflowFactory:
    """
    Turns step functions into workflow definitions.

    A workflow is a plain dict (id, name, description, version,
    execution_mode, parameters) holding a list of WorkflowStep objects.
    Steps come from functions decorated with `workflow_step`, optionally
    overridden by a definition dict; definitions loaded from JSON or YAML
    refer to functions by the dotted ids in `functions_registry`.
    """

    def __init__(self, functions_registry: Optional[Dict[str, Callable]] = None):
        self.functions_registry = dict(functions_registry or {})

    def load_functions_from_package(self, package_name: str) -> None:
        """Register every decorated step function found in a package"""
        functions = discover_workflow_functions(package_name)
        self.functions_registry.update(functions)
        logger.info(f"Registered {len(functions)} step functions from {package_name}")

    def _resolve_function(self, function: Union[Callable, str]) -> Callable:
        if callable(function):
            return function
        if function not in self.functions_registry:
            raise ValueError(f"Function {function} not found in registry")
        return self.functions_registry[function]

    def _make_step(self, step_def: StepDefinition) -> WorkflowStep:
        if callable(step_def):
            step_def = {"function": step_def}
        if not step_def.get("function"):
            raise ValueError(f"Step {step_def.get('id', '<unnamed>')} has no function defined")
        function = self._resolve_function(step_def["function"])

        options = {
            key: step_def[key] if key in step_def else getattr(function, attr, default)
            for key, (attr, default) in _DECORATOR_DEFAULTS.items()
        }
        options["dependencies"] = list(options["dependencies"])
        return WorkflowStep(
            id=step_def.get("id") or getattr(function, "step_id", function.__name__),
            name=step_def.get("name") or getattr(function, "step_name", function.__name__),
            description=step_def.get("description") or getattr(function, "step_description", function.__doc__ or ""),
            function=function,
            parameters=dict(step_def.get("parameters") or {}),
            **options,
        )

    def create_workflow_from_functions(
        self,
        name: str,
        steps: List[StepDefinition],
        workflow_id: Optional[str] = None,
        description: str = "",
        version: str = "1.0.0",
        execution_mode: str = "SEQUENTIAL",
        parameters: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Create a workflow from decorated functions or step definition dicts

        Args:
            name: Title of the workflow
            steps: Steps in the order they appear on the page
            workflow_id: Identifier; a random one when omitted
            description: Introduction shown above the first step
            version: Workflow version
            execution_mode: SEQUENTIAL or PARALLEL
            parameters: Default run parameters

        Returns:
            Workflow definition

        Raises:
            ValueError: on an unknown execution mode, duplicate step ids,
                dependencies on unknown steps or dependency cycles
        """
        if execution_mode not in ExecutionMode.__members__:
            raise ValueError(f"Unknown execution mode: {execution_mode}")

        workflow_steps = [self._make_step(step_def) for step_def in steps]
        duplicates = sorted(step_id for step_id, n in Counter(s.id for s in workflow_steps).items() if n > 1)
        if duplicates:
            raise ValueError(f"Duplicate step IDs found: {duplicates}")
        try:
            build_workflow_graph(workflow_steps)
        except ValueError as e:
            raise ValueError(f"Invalid workflow {name}: {e}") from e

        return {
            "id": workflow_id or f"wf_{uuid.uuid4().hex[:8]}",
            "name": name,
            "description": description,
            "version": version,
            "execution_mode": execution_mode,
            "steps": workflow_steps,
            "parameters": dict(parameters or {}),
        }

    def create_linear_workflow(self, name: str, functions: List[Union[Callable, str]], **kwargs) -> Dict[str, Any]:
        """Chain functions so that each step depends on the one before it"""
        steps = []
        for i, function in enumerate(functions):
            function = self._resolve_function(function)
            steps.append({
                "id": getattr(function, "step_id", None) or f"step_{i + 1}",
                "function": function,
                "dependencies": [steps[-1]["id"]] if steps else [],
            })
        kwargs["execution_mode"] = "SEQUENTIAL"
        return self.create_workflow_from_functions(name=name, steps=steps, **kwargs)

    def create_workflow_from_definition(
        self, definition: Union[Dict[str, Any], str, Path], workflow_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Create a workflow from a definition dict or a JSON/YAML file"""
        if isinstance(definition, (str, Path)):
            definition = load_workflow_definition(definition)

        return self.create_workflow_from_functions(
            name=definition.get("name", "Unnamed Workflow"),
            steps=definition.get("steps", []),
            workflow_id=workflow_id or definition.get("id"),
            description=definition.get("description", ""),
            version=definition.get("version", "1.0.0"),
            execution_mode=definition.get("execution_mode", "SEQUENTIAL"),
            parameters=definition.get("parameters", {}),
        )

    def save_workflow_definition(self, workflow: Dict[str, Any], output_path: Union[str, Path]) -> str:
        """
        Write a workflow as JSON, or YAML for a .yml/.yaml path. Functions
        are stored by their dotted id, so reloading needs them registered.
        """
        definition = {key: workflow[key] for key in ("id", "name", "description", "version", "execution_mode", "parameters")}
        definition["steps"] = [
            {
                "id": step.id,
                "function": function_id(step.function) if callable(step.function) else str(step.function),
                **{key: getattr(step, key) for key in _DEFINITION_FIELDS},
            }
            for step in workflow["steps"]
        ]

        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with open(output_path, "w") as f:
            if output_path.suffix.lower() in (".yml", ".yaml"):
                yaml.safe_dump(definition, f, sort_keys=False)
            else:
                json.dump(definition, f, indent=2)
        logger.debug(f"Saved workflow {definition['id']} to {output_path}")
        return str(output_path)
