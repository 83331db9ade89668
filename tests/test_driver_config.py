"""
Case loading and driver smoke tests.

Tests:
1. config_from_dict fills defaults; retained bandwidths follow the DQ ones
2. Unknown keys and invalid values are rejected
3. run_case solves a small case and writes the summary/solution files
4. Dry run and broken case files map to exit codes
5. Linear forcing options are validated; the shipped case converges
6. A diverging fixed-point run reports non-convergence instead of raising
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml

from driver.run_bbd_case import (
    EXIT_CONFIG_ERROR,
    EXIT_NOT_CONVERGED,
    EXIT_OK,
    config_from_dict,
    main,
    run_case,
)


def _write_case(tmp_path: Path, raw: dict) -> Path:
    path = tmp_path / "case.yaml"
    path.write_text(yaml.safe_dump(raw), encoding="utf-8")
    return path


def _small_case() -> dict:
    return {
        "case": {"id": "bratu_small"},
        "problem": {"kind": "bratu_1d", "n": 30, "lam": 1.5},
        "precond": {"type": "bbd", "mudq": 1, "mldq": 1},
        "linear": {"method": "gmres", "rtol": 1.0e-8, "restart": 30},
        "nonlinear": {"method": "newton", "max_iter": 20, "tol": 1.0e-9},
        "output": {"summary_json": "out/summary.json", "solution_csv": "out/u.csv"},
    }


def test_config_defaults(tmp_path):
    cfg = config_from_dict({"case": {"id": "x"}, "precond": {"mudq": 2, "mldq": 3}}, base=tmp_path)
    assert cfg.problem.kind == "bratu_1d"
    assert cfg.precond.type == "bbd"
    assert (cfg.precond.mu, cfg.precond.ml) == (2, 3)
    assert cfg.linear.method == "gmres"
    assert cfg.nonlinear.method == "newton"
    assert cfg.output.summary_json is None


def test_config_resolves_output_paths(tmp_path):
    cfg = config_from_dict(_small_case(), base=tmp_path)
    assert Path(cfg.output.summary_json) == (tmp_path / "out" / "summary.json").resolve()


@pytest.mark.parametrize(
    "patch",
    [
        {"precond": {"bandwidth": 3}},
        {"precond": {"type": "ilu"}},
        {"precond": {"mudq": -1}},
        {"problem": {"kind": "heat"}},
        {"nonlinear": {"tol": 0.0}},
        {"case": {"title": "no id"}},
    ],
)
def test_config_rejects_bad_input(patch):
    raw = _small_case()
    raw.update(patch)
    with pytest.raises(ValueError):
        config_from_dict(raw)


def test_config_rejects_non_mapping_section():
    raw = _small_case()
    raw["linear"] = ["gmres"]
    with pytest.raises(TypeError):
        config_from_dict(raw)


def test_run_case_writes_outputs(tmp_path):
    path = _write_case(tmp_path, _small_case())
    assert run_case(str(path)) == EXIT_OK

    summary = json.loads((tmp_path / "out" / "summary.json").read_text(encoding="utf-8"))
    assert summary["case_id"] == "bratu_small"
    assert summary["converged"] is True
    assert summary["status"] == "SUCCESS"
    assert summary["extra"]["nge"] > 0

    lines = (tmp_path / "out" / "u.csv").read_text(encoding="utf-8").strip().splitlines()
    assert lines[0] == "i,x,u"
    assert len(lines) == 1 + 30


def test_run_case_fixed_point_override(tmp_path):
    raw = _small_case()
    raw["output"] = {}
    path = _write_case(tmp_path, raw)
    assert run_case(str(path), method="fixed_point", max_iter=200) == EXIT_OK


def test_run_case_not_converged(tmp_path):
    raw = _small_case()
    raw["output"] = {}
    path = _write_case(tmp_path, raw)
    assert run_case(str(path), method="fixed_point", max_iter=2) == EXIT_NOT_CONVERGED


def test_dry_run_and_bad_case(tmp_path):
    path = _write_case(tmp_path, _small_case())
    assert main([str(path), "--dry_run"]) == EXIT_OK
    assert not (tmp_path / "out").exists()

    bad = _write_case(tmp_path, {"case": {"id": "bad"}, "precond": {"type": "ilu"}})
    assert run_case(str(bad)) == EXIT_CONFIG_ERROR
    assert run_case(str(tmp_path / "missing.yaml")) == EXIT_CONFIG_ERROR


def test_linear_forcing_config(tmp_path):
    cfg = config_from_dict({"case": {"id": "x"}}, base=tmp_path)
    assert cfg.linear.forcing == "ew"
    assert cfg.linear.eta_min == pytest.approx(1.0e-4)

    raw = _small_case()
    raw["linear"] = {"method": "gmres", "forcing": "Constant", "rtol": 1.0e-6}
    assert config_from_dict(raw).linear.forcing == "constant"

    for bad in ({"forcing": "bogus"}, {"eta_min": -1.0}, {"rtol": 0.0}):
        raw = _small_case()
        raw["linear"] = dict(raw["linear"], **bad)
        with pytest.raises(ValueError):
            config_from_dict(raw)


def test_shipped_case_converges(tmp_path):
    shipped = Path(__file__).resolve().parents[1] / "cases" / "bratu_1d.yaml"
    path = tmp_path / "bratu_1d.yaml"
    path.write_text(shipped.read_text(encoding="utf-8"), encoding="utf-8")
    assert run_case(str(path)) == EXIT_OK

    summary = json.loads((tmp_path / "out" / "bratu_1d_summary.json").read_text(encoding="utf-8"))
    assert summary["converged"] is True
    assert summary["extra"]["final_residual_flag"] == 0


def test_run_case_fixed_point_blowup(tmp_path):
    raw = _small_case()
    raw["problem"]["lam"] = 50.0
    raw["output"] = {}
    path = _write_case(tmp_path, raw)
    assert run_case(str(path), method="fixed_point", max_iter=20) == EXIT_NOT_CONVERGED
