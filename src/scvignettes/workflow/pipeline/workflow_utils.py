import importlib
import inspect
import json
import logging
import pkgutil
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import networkx as nx
import yaml
from matplotlib.figure import Figure

from .workflow_context import StepStatus
from .workflow_step import WorkflowStep

logger = logging.getLogger(__name__)

STATUS_COLORS = {
    StepStatus.PENDING: "white",
    StepStatus.RUNNING: "lightblue",
    StepStatus.COMPLETED: "lightgreen",
    StepStatus.FAILED: "salmon",
    StepStatus.TIMEOUT: "orange",
    StepStatus.SKIPPED: "lightgray",
}


def workflow_step(
    *,
    id: Optional[str] = None,
    name: Optional[str] = None,
    description: Optional[str] = None,
    dependencies: Optional[List[str]] = None,
    timeout_seconds: Optional[float] = None,
    retry_count: int = 0,
    retry_delay_seconds: float = 60,
):
    """
    Mark a function as a workflow step.

    The function is returned unchanged apart from a few `step_*`
    attributes read by WorkflowFactory. Without a description the
    docstring becomes the prose shown above the step; without a name the
    function name is turned into a sentence ("load_counts" -> "Load counts").

    Args:
        id: Step id, the function name by default
        name: Display name
        description: Prose for the vignette page
        dependencies: Ids of steps that must complete first
        timeout_seconds: Time limit for one attempt
        retry_count: Extra attempts after a failure
        retry_delay_seconds: Pause between attempts
    """

    def decorator(func):
        func.is_workflow_step = True
        func.step_id = id or func.__name__
        func.step_name = name or func.__name__.replace("_", " ").capitalize()
        func.step_description = inspect.cleandoc(description or func.__doc__ or "")
        func.step_dependencies = list(dependencies or [])
        func.timeout_seconds = timeout_seconds
        func.retry_count = retry_count
        func.retry_delay_seconds = retry_delay_seconds
        return func

    return decorator


def _is_step_of(module_name: str, obj: Any) -> bool:
    return inspect.isfunction(obj) and getattr(obj, "is_workflow_step", False) and obj.__module__ == module_name


def discover_workflow_functions(package_name: str) -> Dict[str, Callable]:
    """Find the decorated step functions of a package, keyed by dotted id; test modules are skipped"""
    package = importlib.import_module(package_name)
    if not hasattr(package, "__path__"):
        raise ValueError(f"{package_name} is not a package")

    functions = {}
    for info in pkgutil.walk_packages(package.__path__, f"{package_name}."):
        if info.ispkg or info.name.rsplit(".", 1)[-1].startswith("test_"):
            continue
        module = importlib.import_module(info.name)
        found = {f"{info.name}.{attr}": obj for attr, obj in vars(module).items() if _is_step_of(info.name, obj)}
        logger.debug(f"{info.name}: {len(found)} step functions")
        functions.update(found)
    return functions


def load_workflow_definition(path: Union[str, Path]) -> Dict[str, Any]:
    """Read a workflow definition saved as JSON or YAML"""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Workflow definition file not found: {path}")

    suffix = path.suffix.lower()
    if suffix not in (".json", ".yaml", ".yml"):
        raise ValueError(f"Unsupported file format: {path.suffix}")
    with open(path) as f:
        return json.load(f) if suffix == ".json" else yaml.safe_load(f)


def build_workflow_graph(steps: List[WorkflowStep]) -> nx.DiGraph:
    """
    Dependency graph of the steps, with edges from a dependency to the
    steps that need it. Nodes carry the step and its position in the list.

    Raises:
        ValueError: on dependencies on unknown steps or on cycles
    """
    graph = nx.DiGraph()
    graph.add_nodes_from((step.id, {"step": step, "order": i}) for i, step in enumerate(steps))

    for step in steps:
        missing = [dep for dep in step.dependencies if dep not in graph]
        if missing:
            raise ValueError(f"Step {step.id} depends on unknown step {', '.join(missing)}")
        graph.add_edges_from((dep, step.id) for dep in step.dependencies)

    if not nx.is_directed_acyclic_graph(graph):
        raise ValueError(f"Workflow contains cycles: {list(nx.simple_cycles(graph))}")
    return graph


def execution_generations(graph: nx.DiGraph) -> List[List[WorkflowStep]]:
    """Groups of steps whose dependencies are all in earlier groups, in definition order"""
    position = nx.get_node_attributes(graph, "order")
    return [
        [graph.nodes[n]["step"] for n in sorted(generation, key=position.get)]
        for generation in nx.topological_generations(graph)
    ]


def visualize_workflow(graph: nx.DiGraph, output_path: Union[str, Path]) -> str:
    """
    Draw the workflow left to right, one column per execution generation,
    with nodes coloured by step status. Returns the path of the PNG.
    """
    layers = {node: i for i, generation in enumerate(nx.topological_generations(graph)) for node in generation}
    nx.set_node_attributes(graph, layers, "layer")
    pos = nx.multipartite_layout(graph, subset_key="layer")

    steps = nx.get_node_attributes(graph, "step")
    fig = Figure(figsize=(max(6, 2.5 * (max(layers.values(), default=0) + 1)), 4))
    ax = fig.subplots()
    nx.draw_networkx_nodes(graph, pos, node_size=2000, edgecolors="gray", ax=ax,
                           node_color=[STATUS_COLORS[steps[n].status] for n in graph])
    nx.draw_networkx_edges(graph, pos, width=1.5, arrowsize=20, ax=ax)
    nx.draw_networkx_labels(graph, pos, labels={n: step.name for n, step in steps.items()}, font_size=8, ax=ax)
    ax.axis("off")
    fig.tight_layout()

    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(output_path)
    return str(output_path)
