import pytest
import yaml

from . import cli
from .core.utils.cache import CacheConfig
from .workflow.pipeline.runner import WorkflowExecutionError


def test_list(capsys):
    assert cli.main(["list"]) == 0
    out = capsys.readouterr().out
    assert "quality_control" in out
    assert "Scaling to large datasets" in out


def test_params_writes_defaults(tmp_path):
    path = tmp_path / "params.yaml"
    assert cli.main(["params", "--output", str(path)]) == 0
    values = yaml.safe_load(path.read_text())
    assert values["normalization_method"] == "deconvolution"
    assert values["nmads"] == 3.0


def test_build_rejects_unknown_vignette(tmp_path):
    assert cli.main(["build", "trajectories", "--output-dir", str(tmp_path)]) == 2


def test_build_missing_params_file(tmp_path):
    assert cli.main(["build", "--params", str(tmp_path / "missing.yaml"), "--output-dir", str(tmp_path)]) == 1


def test_build_passes_options(tmp_path, monkeypatch):
    calls = {}

    def fake_build(names, output_dir, parameters, halt_on_error):
        calls.update(names=names, output_dir=output_dir, parameters=parameters, halt_on_error=halt_on_error)
        return {"scaling": {"status": "COMPLETED", "page": str(tmp_path / "scaling.html")}}

    params = tmp_path / "params.yaml"
    params.write_text("n_hvgs: 150\n")
    monkeypatch.setattr(cli, "build_vignettes", fake_build)

    code = cli.main(["build", "scaling", "--output-dir", str(tmp_path), "--backend", "distributed",
                     "--workers", "3", "--n-cells", "400", "--params", str(params), "--keep-going"])

    assert code == 0
    assert calls["names"] == ["scaling"]
    assert calls["halt_on_error"] is False
    assert calls["parameters"]["backend"] == "distributed"
    assert calls["parameters"]["workers"] == 3
    assert calls["parameters"]["dataset_kwargs"] == {"n_cells": 400}
    assert calls["parameters"]["params"].n_hvgs == 150


def test_build_exit_code_on_failure(tmp_path, monkeypatch):
    def failing_build(names, output_dir, parameters, halt_on_error):
        raise WorkflowExecutionError("backends disagree", step_id="check_backend_equivalence", context=None)

    monkeypatch.setattr(cli, "build_vignettes", failing_build)
    assert cli.main(["build", "scaling", "--output-dir", str(tmp_path)]) == 1

    monkeypatch.setattr(cli, "build_vignettes",
                        lambda names, output_dir, parameters, halt_on_error: {"scaling": {"status": "FAILED", "page": "x"}})
    assert cli.main(["build", "--keep-going", "--output-dir", str(tmp_path)]) == 1


def test_build_quality_control_end_to_end(tmp_path, monkeypatch):
    monkeypatch.setattr(CacheConfig, "CACHE_ENABLED", False)
    code = cli.main(["build", "quality_control", "--output-dir", str(tmp_path), "--n-cells", "200",
                     "--backend", "serial"])
    assert code == 0
    assert (tmp_path / "quality_control.html").exists()
    assert (tmp_path / "index.html").exists()


if __name__ == "__main__":
    pytest.main(["-xvs", __file__])
