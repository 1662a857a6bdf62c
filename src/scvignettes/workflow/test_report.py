import pandas as pd
import pytest

from .pipeline.runner import WorkflowExecutionError, WorkflowRunner
from .pipeline.workflow_factory import WorkflowFactory
from .pipeline.workflow_utils import workflow_step
from .report import render_index_html, render_step_html, render_vignette_html, step_source


@workflow_step(name="Make a table")
def make_table(context, figure_path: str = ""):
    """
    Counts <b>cells</b> per group.

    A second paragraph.
    """
    table = pd.DataFrame({"n_cells": [3, 5]}, index=["a", "b"])
    return {"summary": {"groups": 2, "ratio": 0.123456}, "table": table, "figures": [figure_path] if figure_path else []}


@workflow_step(dependencies=["make_table"])
def fail_loudly(context):
    raise ValueError("bad <input>")


@workflow_step(dependencies=["fail_loudly"])
def never_runs(context):
    return {}


def run(steps, **parameters):
    workflow = WorkflowFactory().create_workflow_from_functions(name="Report test", steps=steps,
                                                                description="Intro paragraph.")
    try:
        context = WorkflowRunner().run_sync(workflow, parameters)
    except WorkflowExecutionError as e:
        context = e.context
    return workflow, context


def test_step_source_strips_decorator():
    workflow, _ = run([make_table])
    source = step_source(workflow["steps"][0])
    assert source.startswith("def make_table(")
    assert "@workflow_step" not in source


def test_completed_step_html(tmp_path):
    figure = tmp_path / "figures" / "group_sizes.png"
    workflow, context = run([make_table], figure_path=str(figure))
    html = render_step_html(workflow["steps"][0], page_dir=tmp_path)

    assert "Make a table" in html
    assert "&lt;b&gt;cells&lt;/b&gt;" in html
    assert html.count("<p>") == 2
    assert "Status: COMPLETED" in html
    assert "0.1235" in html
    assert "n_cells" in html
    assert 'src="figures/group_sizes.png"' in html


def test_failed_vignette_page():
    workflow, context = run([make_table, fail_loudly, never_runs])
    page = render_vignette_html(workflow, context)

    assert page.startswith("<!DOCTYPE html>")
    assert "<h1>Report test</h1>" in page
    assert "Intro paragraph." in page
    assert "Status: FAILED" in page
    assert "bad &lt;input&gt;" in page
    assert "Status: SKIPPED" in page
    assert "FAILED" in context.status


def test_index_page():
    page = render_index_html(
        [
            {"title": "Quality control", "page": "quality_control.html", "description": "QC & filtering", "status": "COMPLETED"},
            {"title": "Scaling", "page": "scaling.html", "description": "", "status": "FAILED"},
        ]
    )
    assert 'href="quality_control.html"' in page
    assert "QC &amp; filtering" in page
    assert '<td class="FAILED">FAILED</td>' in page


if __name__ == "__main__":
    pytest.main(["-xvs", __file__])
