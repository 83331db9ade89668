"""
Driver: run a BBD-preconditioned nonlinear solve from a YAML case file.

Responsibilities:
- Load CaseConfig from YAML.
- Build the model problem context and initial guess.
- Run the nonlinear solver stack and log a summary.
- Optionally write a JSON summary and the solution as CSV.
"""

from __future__ import annotations

import argparse
import csv
import json
import logging
import sys
import traceback
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

import numpy as np
import yaml

from assembly.bratu_1d import build_bratu_context
from core.logging_utils import get_log_level_from_env, get_rank, setup_logging
from core.types import (
    CaseConfig,
    CaseLinear,
    CaseMeta,
    CaseNonlinear,
    CaseOutput,
    CasePrecond,
    CaseProblem,
)
from solvers.bbd_precond import BBDAllocationError, BBDConfigurationError
from solvers.nonlinear_types import NonlinearSolveResult
from solvers.solver_nonlinear import solve_nonlinear

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_NOT_CONVERGED = 1
EXIT_CONFIG_ERROR = 2
EXIT_UNHANDLED = 99


# -----------------------------------------------------------------------------
# YAML loader
# -----------------------------------------------------------------------------
def _read_yaml_text(cfg_file: Path) -> str:
    try:
        return cfg_file.read_text(encoding="utf-8-sig")
    except UnicodeDecodeError:
        return cfg_file.read_text()


def _resolve_path(base: Path, value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    path = Path(value)
    return str(path if path.is_absolute() else (base / path).resolve())


def _section(raw: Dict[str, Any], name: str, allowed: Sequence[str]) -> Dict[str, Any]:
    sec = raw.get(name, {}) or {}
    if not isinstance(sec, dict):
        raise TypeError(f"{name}: expected mapping, got {type(sec).__name__}")
    unknown = set(sec.keys()) - set(allowed)
    if unknown:
        raise ValueError(f"Unsupported keys in {name}: {sorted(unknown)}")
    return sec


def config_from_dict(raw: Dict[str, Any], *, base: Optional[Path] = None) -> CaseConfig:
    """Build CaseConfig from an already-parsed YAML mapping."""
    if raw is None or not isinstance(raw, dict):
        raise TypeError("case file must contain a mapping at top level")
    base = base or Path.cwd()

    case_raw = raw.get("case", None)
    if not isinstance(case_raw, dict) or "id" not in case_raw:
        raise ValueError("case.id is required")
    case_cfg = CaseMeta(**case_raw)

    prob_raw = _section(raw, "problem", ("kind", "n", "lam", "left", "right", "u0"))
    problem_cfg = CaseProblem(
        kind=str(prob_raw.get("kind", "bratu_1d")),
        n=int(prob_raw.get("n", 64)),
        lam=float(prob_raw.get("lam", 1.0)),
        left=float(prob_raw.get("left", 0.0)),
        right=float(prob_raw.get("right", 0.0)),
        u0=float(prob_raw.get("u0", 0.0)),
    )

    pc_raw = _section(raw, "precond", ("type", "mudq", "mldq", "mu", "ml", "dq_rel_u"))
    mudq = int(pc_raw.get("mudq", 1))
    mldq = int(pc_raw.get("mldq", 1))
    precond_cfg = CasePrecond(
        type=str(pc_raw.get("type", "bbd")).strip().lower(),
        mudq=mudq,
        mldq=mldq,
        # Retained bandwidths default to the DQ bandwidths.
        mu=int(pc_raw.get("mu", mudq)),
        ml=int(pc_raw.get("ml", mldq)),
        dq_rel_u=float(pc_raw.get("dq_rel_u", 0.0)),
    )

    lin_raw = _section(raw, "linear", ("method", "rtol", "maxiter", "restart", "forcing", "eta_min"))
    linear_cfg = CaseLinear(
        method=str(lin_raw.get("method", "gmres")).strip().lower(),
        rtol=float(lin_raw.get("rtol", 1.0e-4)),
        maxiter=int(lin_raw.get("maxiter", 50)),
        restart=int(lin_raw.get("restart", 20)),
        forcing=str(lin_raw.get("forcing", "ew")).strip().lower(),
        eta_min=float(lin_raw.get("eta_min", 1.0e-4)),
    )

    nl_raw = _section(
        raw,
        "nonlinear",
        ("method", "max_iter", "tol", "use_scaled_unknowns", "verbose", "log_every"),
    )
    nonlinear_cfg = CaseNonlinear(
        method=str(nl_raw.get("method", "newton")).strip().lower(),
        max_iter=int(nl_raw.get("max_iter", 20)),
        tol=float(nl_raw.get("tol", 1.0e-8)),
        use_scaled_unknowns=bool(nl_raw.get("use_scaled_unknowns", True)),
        verbose=bool(nl_raw.get("verbose", False)),
        log_every=int(nl_raw.get("log_every", 1)),
    )

    out_raw = _section(raw, "output", ("summary_json", "solution_csv"))
    output_cfg = CaseOutput(
        summary_json=_resolve_path(base, out_raw.get("summary_json")),
        solution_csv=_resolve_path(base, out_raw.get("solution_csv")),
    )

    return CaseConfig(
        case=case_cfg,
        problem=problem_cfg,
        precond=precond_cfg,
        linear=linear_cfg,
        nonlinear=nonlinear_cfg,
        output=output_cfg,
    )


def _load_case_config(cfg_path: str) -> CaseConfig:
    """Load YAML file into CaseConfig with nested dataclasses."""
    cfg_file = Path(cfg_path).expanduser().resolve()
    raw = yaml.safe_load(_read_yaml_text(cfg_file))
    return config_from_dict(raw, base=cfg_file.parent)


# -----------------------------------------------------------------------------
# Output
# -----------------------------------------------------------------------------
def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, np.ndarray):
        return value.tolist()
    return value


def build_summary(cfg: CaseConfig, result: NonlinearSolveResult) -> Dict[str, Any]:
    d = result.diag
    return _jsonable(
        {
            "case_id": cfg.case.id,
            "converged": d.converged,
            "status": d.status.name,
            "method": d.method,
            "n_iter": d.n_iter,
            "res_norm_2": d.res_norm_2,
            "res_norm_inf": d.res_norm_inf,
            "history_delta_wrms": list(d.history_delta_wrms),
            "message": d.message,
            "extra": dict(d.extra),
        }
    )


def _write_outputs(cfg: CaseConfig, result: NonlinearSolveResult) -> None:
    out = cfg.output
    if out.summary_json:
        path = Path(out.summary_json)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(build_summary(cfg, result), indent=2), encoding="utf-8")
        logger.info("Wrote summary to %s", path)
    if out.solution_csv:
        path = Path(out.solution_csv)
        path.parent.mkdir(parents=True, exist_ok=True)
        n = result.u.size
        h = 1.0 / (n + 1)
        with path.open("w", newline="", encoding="utf-8") as fh:
            writer = csv.writer(fh)
            writer.writerow(["i", "x", "u"])
            for i, ui in enumerate(result.u):
                writer.writerow([i, (i + 1) * h, float(ui)])
        logger.info("Wrote solution to %s", path)


# -----------------------------------------------------------------------------
# Run
# -----------------------------------------------------------------------------
def run_case(
    cfg_path: str,
    *,
    method: Optional[str] = None,
    precond: Optional[str] = None,
    max_iter: Optional[int] = None,
    dry_run: bool = False,
) -> int:
    rank = get_rank()
    setup_logging(rank, level=get_log_level_from_env("INFO"))

    try:
        cfg = _load_case_config(cfg_path)
        if method is not None:
            cfg.nonlinear.method = str(method)
        if precond is not None:
            cfg.precond.type = str(precond)
        if max_iter is not None:
            cfg.nonlinear.max_iter = int(max_iter)
    except (OSError, ValueError, TypeError, yaml.YAMLError) as exc:
        logger.error("Failed to load case %s: %s", cfg_path, exc)
        return EXIT_CONFIG_ERROR

    logger.info(
        "Case %s: problem=%s n=%d method=%s precond=%s (mudq=%d mldq=%d mu=%d ml=%d)",
        cfg.case.id,
        cfg.problem.kind,
        cfg.problem.n,
        cfg.nonlinear.method,
        cfg.precond.type,
        cfg.precond.mudq,
        cfg.precond.mldq,
        cfg.precond.mu,
        cfg.precond.ml,
    )

    try:
        ctx, u0 = build_bratu_context(cfg)
        if dry_run:
            logger.info("Dry run: configuration and problem built; skipping solve.")
            return EXIT_OK
        result = solve_nonlinear(ctx, u0)
    except (BBDConfigurationError, BBDAllocationError, ValueError) as exc:
        logger.error("Solver setup failed: %s", exc)
        return EXIT_CONFIG_ERROR
    except Exception:
        logger.error("Unhandled exception:\n%s", traceback.format_exc())
        return EXIT_UNHANDLED

    d = result.diag
    logger.info(
        "Finished: converged=%s status=%s iters=%d ||F||_inf=%.3e extra=%s",
        d.converged,
        d.status.name,
        d.n_iter,
        d.res_norm_inf,
        d.extra,
    )
    _write_outputs(cfg, result)
    return EXIT_OK if d.converged else EXIT_NOT_CONVERGED


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a BBD-preconditioned nonlinear solve.")
    parser.add_argument("case_yaml", help="Path to case YAML file.")
    parser.add_argument(
        "--method",
        choices=("newton", "fixed_point"),
        default=None,
        help="Override nonlinear method (default: use YAML).",
    )
    parser.add_argument(
        "--precond",
        choices=("bbd", "none"),
        default=None,
        help="Override preconditioner type (default: use YAML).",
    )
    parser.add_argument(
        "--max_iter",
        type=int,
        default=None,
        help="Override nonlinear max_iter (default: use YAML).",
    )
    parser.add_argument(
        "--dry_run",
        action="store_true",
        help="Load config and build the problem only; skip the solve.",
    )
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    return run_case(
        args.case_yaml,
        method=args.method,
        precond=args.precond,
        max_iter=args.max_iter,
        dry_run=args.dry_run,
    )


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
