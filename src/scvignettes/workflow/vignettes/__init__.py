"""
Tutorial vignettes.

Each vignette module defines its steps as decorated functions, a TITLE
and a `create_workflow()` returning a workflow for the WorkflowRunner.
`build_vignettes` runs them and renders an HTML page per vignette plus
an index.
"""

import json
import logging
from collections import OrderedDict
from pathlib import Path
from types import ModuleType
from typing import Any, Dict, Optional, Sequence, Union

from ...core.transcriptomics.sc_rna_processor import ScRNAParameters
from ..pipeline.runner import WorkflowExecutionError, WorkflowRunner
from ..pipeline.workflow_context import WorkflowContext
from ..pipeline.workflow_utils import build_workflow_graph, visualize_workflow
from ..report import render_index_html, render_vignette_html
from . import dimensionality_reduction, doublet_detection, feature_selection, normalization, quality_control, scaling

logger = logging.getLogger(__name__)

VIGNETTES: "OrderedDict[str, ModuleType]" = OrderedDict(
    [
        ("quality_control", quality_control),
        ("normalization", normalization),
        ("feature_selection", feature_selection),
        ("dimensionality_reduction", dimensionality_reduction),
        ("doublet_detection", doublet_detection),
        ("scaling", scaling),
    ]
)


def get_vignette(name: str) -> ModuleType:
    if name not in VIGNETTES:
        raise ValueError(f"Unknown vignette: {name}. Available: {list(VIGNETTES)}")
    return VIGNETTES[name]


def _summary_line(module: ModuleType) -> str:
    paragraphs = [p for p in (module.__doc__ or "").strip().split("\n\n") if p.strip()]
    return " ".join(paragraphs[1].split()) if len(paragraphs) > 1 else ""


def build_vignettes(
    names: Optional[Sequence[str]] = None,
    output_dir: Union[str, Path] = "site",
    parameters: Optional[Dict[str, Any]] = None,
    halt_on_error: bool = True,
) -> Dict[str, Dict[str, Any]]:
    """
    Run vignettes and render them as HTML

    Every vignette gets its own figure and work directories under
    `output_dir`; the page, a JSON record of the run and the index are
    written even when a vignette fails.

    Args:
        names: Vignettes to build, in order (all when None)
        output_dir: Directory for pages, figures and intermediate files
        parameters: Run parameters shared by all vignettes, e.g. `params`
            (ScRNAParameters), `dataset`, `dataset_kwargs`, `backend`,
            `workers`, `submit_command`
        halt_on_error: Re-raise the first failure instead of moving on to
            the next vignette

    Returns:
        Mapping of vignette name to its `page` path, `title` and `status`

    Raises:
        WorkflowExecutionError: if a vignette fails and halt_on_error is set
    """
    names = list(names or VIGNETTES)
    modules = [(name, get_vignette(name)) for name in names]
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    parameters = dict(parameters or {})
    parameters.setdefault("params", ScRNAParameters())

    built: Dict[str, Dict[str, Any]] = {}
    failure: Optional[WorkflowExecutionError] = None

    for name, module in modules:
        workflow = module.create_workflow()
        run_parameters = {
            **parameters,
            "figure_dir": str(output_dir / "figures" / name),
            "work_dir": str(output_dir / "work" / name),
        }
        Path(run_parameters["work_dir"]).mkdir(parents=True, exist_ok=True)
        logger.info(f"Building vignette {name}")

        runner = WorkflowRunner(halt_on_error=True)
        try:
            context = runner.run_sync(workflow, run_parameters)
        except WorkflowExecutionError as e:
            logger.error(f"Vignette {name} failed: {e}")
            context = e.context
            failure = failure or e

        built[name] = _write_vignette(name, module, workflow, context, output_dir)
        if failure is not None and halt_on_error:
            break

    entries = [
        {"title": entry["title"], "page": Path(entry["page"]).name, "description": entry["description"],
         "status": entry["status"]}
        for entry in built.values()
    ]
    (output_dir / "index.html").write_text(render_index_html(entries))
    logger.info(f"Wrote index of {len(entries)} vignettes to {output_dir / 'index.html'}")

    if failure is not None and halt_on_error:
        raise failure
    return built


def _write_vignette(name: str, module: ModuleType, workflow: Dict[str, Any], context: WorkflowContext,
                    output_dir: Path) -> Dict[str, Any]:
    figure_dir = output_dir / "figures" / name
    graph_path = figure_dir / "workflow.png"
    # a broken diagram must not hide the results of the run
    try:
        visualize_workflow(build_workflow_graph(workflow["steps"]), str(graph_path))
        context.add_artifact("workflow_graph", str(graph_path))
    except (OSError, ValueError, RuntimeError) as e:
        logger.warning(f"Could not draw the workflow diagram for {name}: {e}")

    page = output_dir / f"{name}.html"
    page.write_text(render_vignette_html(workflow, context, page_dir=output_dir))
    record = output_dir / f"{name}.json"
    record.write_text(json.dumps(context.to_dict(), indent=2, default=str))
    logger.info(f"Wrote vignette {name} ({context.status}) to {page}")

    return {
        "page": str(page),
        "record": str(record),
        "title": getattr(module, "TITLE", name),
        "description": _summary_line(module),
        "status": context.status,
    }


__all__ = ["VIGNETTES", "build_vignettes", "get_vignette"]
