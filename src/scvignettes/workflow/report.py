"""
HTML rendering of vignette runs.

A vignette page shows the introduction, then for every step its prose,
the code that ran, a status line, a results table and any figures.
All text coming from steps is escaped.
"""

import html
import inspect
import logging
import os
import textwrap
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import numpy as np
import pandas as pd

from .pipeline.workflow_context import StepStatus, WorkflowContext
from .pipeline.workflow_step import WorkflowStep

logger = logging.getLogger(__name__)

STYLE = """
body{font-family:Arial,sans-serif;margin:40px;max-width:1100px;color:#222}
h1,h2{color:#333} table{border-collapse:collapse;margin-bottom:20px}
th,td{text-align:left;padding:6px 10px;border:1px solid #ddd}
tr:nth-child(even){background-color:#f2f2f2} th{background-color:#4CAF50;color:white}
pre{background:#f6f8fa;padding:12px;overflow-x:auto;font-size:13px}
.status{font-size:13px;color:#555} .COMPLETED{color:#2e7d32} .FAILED,.TIMEOUT{color:#c62828}
.SKIPPED{color:#888} img{max-width:100%;margin:10px 0} .error{background:#fdecea}
"""


def _page(title: str, body: str) -> str:
    return (
        "<!DOCTYPE html>\n<html><head><meta charset=\"utf-8\">"
        f"<title>{html.escape(title)}</title><style>{STYLE}</style></head>"
        f"<body>{body}</body></html>\n"
    )


def _paragraphs(text: str) -> str:
    blocks = [b.strip() for b in inspect.cleandoc(text or "").split("\n\n") if b.strip()]
    return "".join(f"<p>{html.escape(' '.join(b.split()))}</p>" for b in blocks)


def _format_value(value: Any) -> str:
    if isinstance(value, (float, np.floating)):
        return f"{value:.4g}"
    if isinstance(value, (list, tuple)) and len(value) > 10:
        shown = ", ".join(str(v) for v in value[:10])
        return f"{shown}, ... ({len(value)} items)"
    return str(value)


def _summary_table(summary: Dict[str, Any]) -> str:
    rows = "".join(
        f"<tr><td>{html.escape(str(k))}</td><td>{html.escape(_format_value(v))}</td></tr>"
        for k, v in summary.items()
    )
    return f"<table><tr><th>Result</th><th>Value</th></tr>{rows}</table>" if rows else ""


def step_source(step: WorkflowStep) -> str:
    """Source of the step's function without its decorator"""
    try:
        source = textwrap.dedent(inspect.getsource(step.function))
    except (OSError, TypeError):
        return ""
    lines = source.splitlines()
    start = next((i for i, line in enumerate(lines) if line.lstrip().startswith(("def ", "async def "))), 0)
    return "\n".join(lines[start:])


def _relative(path: Union[str, Path], page_dir: Optional[Path]) -> str:
    if page_dir is None:
        return Path(path).as_posix()
    return Path(os.path.relpath(Path(path).resolve(), page_dir.resolve())).as_posix()


def render_step_html(step: WorkflowStep, page_dir: Optional[Path] = None) -> str:
    parts = [f"<section id=\"{html.escape(step.id)}\"><h2>{html.escape(step.name)}</h2>", _paragraphs(step.description)]

    source = step_source(step)
    if source:
        parts.append(f"<pre><code>{html.escape(source)}</code></pre>")

    duration = step.get_duration()
    timing = f" in {duration:.2f}s" if duration is not None and step.status == StepStatus.COMPLETED else ""
    parts.append(f"<p class=\"status {step.status.name}\">Status: {step.status.name}{timing}</p>")

    if step.status in (StepStatus.FAILED, StepStatus.TIMEOUT, StepStatus.SKIPPED) and step.error:
        details = step.error_traceback or step.error
        parts.append(f"<pre class=\"error\">{html.escape(details)}</pre>")

    result = step.result if isinstance(step.result, dict) else {}
    summary = result.get("summary")
    if summary is None:
        summary = {k: v for k, v in result.items() if k not in ("table", "figures") and not isinstance(v, (dict, pd.DataFrame))}
    parts.append(_summary_table(summary))

    table = result.get("table")
    if isinstance(table, pd.DataFrame):
        parts.append(table.head(50).to_html(float_format=lambda x: f"{x:.4g}", border=0))

    for figure in result.get("figures", []):
        name = Path(figure).stem.replace("_", " ")
        parts.append(f"<img src=\"{html.escape(_relative(figure, page_dir))}\" alt=\"{html.escape(name)}\">")

    parts.append("</section>")
    return "".join(parts)


def render_vignette_html(workflow: Dict[str, Any], context: WorkflowContext, page_dir: Optional[Path] = None) -> str:
    """
    Render one vignette run as an HTML page

    Args:
        workflow: The workflow that ran
        context: Its WorkflowContext
        page_dir: Directory the page will be written to; figure links are
            made relative to it

    Returns:
        The HTML document
    """
    page_dir = Path(page_dir) if page_dir is not None else None
    body = [f"<h1>{html.escape(workflow['name'])}</h1>", _paragraphs(workflow.get("description", ""))]

    diagram = context.get_artifact("workflow_graph")
    if diagram:
        body.append(f"<img src=\"{html.escape(_relative(diagram, page_dir))}\" alt=\"workflow\">")

    duration = context.duration
    body.append(
        f"<p class=\"status {html.escape(context.status)}\">Run {html.escape(context.run_id)}: {html.escape(context.status)}"
        + (f" in {duration:.1f}s" if duration is not None else "")
        + "</p>"
    )

    for step in workflow["steps"]:
        body.append(render_step_html(step, page_dir))

    if context.parameters:
        body.append("<h2>Parameters</h2>")
        body.append(_summary_table(context.parameters))

    body.append(f"<p class=\"status\">Generated at {datetime.now().isoformat(timespec='seconds')}</p>")
    return _page(workflow["name"], "".join(body))


def render_index_html(entries: List[Dict[str, Any]], title: str = "Single-cell RNA-seq vignettes") -> str:
    """
    Index page linking every vignette

    Args:
        entries: Dicts with `title`, `page`, `description` and `status`
        title: Page title

    Returns:
        The HTML document
    """
    rows = "".join(
        "<tr>"
        f"<td><a href=\"{html.escape(str(e['page']))}\">{html.escape(e['title'])}</a></td>"
        f"<td>{html.escape(e.get('description', ''))}</td>"
        f"<td class=\"{html.escape(e.get('status', ''))}\">{html.escape(e.get('status', ''))}</td>"
        "</tr>"
        for e in entries
    )
    body = (
        f"<h1>{html.escape(title)}</h1>"
        "<table><tr><th>Vignette</th><th>Description</th><th>Status</th></tr>"
        f"{rows}</table>"
    )
    return _page(title, body)
