"""
1-D Bratu problem -u'' = lam * exp(u) on (0, 1), u(0)=left, u(1)=right.

Second-order central differences on n interior points give a tridiagonal
Jacobian, so a BBD block with mu = ml = 1 is exact up to DQ error.

Callbacks follow the solver-stack conventions (status: 0 ok, >0 recoverable,
<0 fatal):
    bratu_residual(u, F_out, problem)          full residual (scaled by h^2)
    bratu_gcomm(n_local, u, problem)           fills the halo (boundary) values
    bratu_gloc(n_local, u, g_out, problem)     local residual using the halo
    bratu_fixed_point_map(u, G_out, problem)   Picard map for the stationary solver
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import numpy as np

from core.band_matrix import BandMatrix, alloc_pivots, band_backsolve, band_factor
from core.types import CaseConfig
from solvers.nonlinear_context import NonlinearContext

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class BratuProblem:
    n: int
    lam: float = 1.0
    left: float = 0.0
    right: float = 0.0

    # Neighbor values used by gloc; written by bratu_gcomm.
    halo: np.ndarray = field(default_factory=lambda: np.zeros(2, dtype=np.float64))
    n_comm: int = 0
    n_residual: int = 0
    n_gloc: int = 0
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def h(self) -> float:
        return 1.0 / (self.n + 1)


def _stencil(u: np.ndarray, left: float, right: float, lam: float, h: float, out: np.ndarray) -> int:
    with np.errstate(over="ignore", invalid="ignore"):
        out[:] = 2.0 * u - lam * h * h * np.exp(u)
        out[1:] -= u[:-1]
        out[:-1] -= u[1:]
        out[0] -= left
        out[-1] -= right
    if not np.all(np.isfinite(out)):
        return 1
    return 0


def bratu_residual(u: np.ndarray, F_out: np.ndarray, problem: BratuProblem) -> int:
    problem.n_residual += 1
    return _stencil(u, problem.left, problem.right, problem.lam, problem.h, F_out)


def bratu_gcomm(n_local: int, u: np.ndarray, problem: BratuProblem) -> int:
    # Single block: the neighbors of the end points are the boundary values.
    problem.halo[0] = problem.left
    problem.halo[1] = problem.right
    problem.n_comm += 1
    return 0


def bratu_gloc(n_local: int, u: np.ndarray, g_out: np.ndarray, problem: BratuProblem) -> int:
    problem.n_gloc += 1
    return _stencil(u, problem.halo[0], problem.halo[1], problem.lam, problem.h, g_out)


def _laplacian_factor(problem: BratuProblem):
    cached = problem.meta.get("laplacian_lu")
    if cached is not None:
        return cached
    n = problem.n
    A = BandMatrix(n, 1, 1)
    for j in range(n):
        A.set(j, j, 2.0)
        if j > 0:
            A.set(j - 1, j, -1.0)
        if j < n - 1:
            A.set(j + 1, j, -1.0)
    piv = alloc_pivots(n)
    ier = band_factor(A, piv)
    if ier != 0:  # pragma: no cover
        raise RuntimeError(f"discrete Laplacian is singular at row {ier}")
    problem.meta["laplacian_lu"] = (A, piv)
    return A, piv


def bratu_fixed_point_map(u: np.ndarray, G_out: np.ndarray, problem: BratuProblem) -> int:
    """G(u) = L^{-1} (lam h^2 exp(u) + boundary terms), L = tridiag(-1, 2, -1)."""
    A, piv = _laplacian_factor(problem)
    h = problem.h
    with np.errstate(over="ignore"):
        G_out[:] = problem.lam * h * h * np.exp(u)
    if not np.all(np.isfinite(G_out)):
        return 1
    G_out[0] += problem.left
    G_out[-1] += problem.right
    band_backsolve(A, piv, G_out)
    problem.n_residual += 1
    return 0


def build_bratu_context(cfg: CaseConfig, *, problem: Optional[BratuProblem] = None) -> tuple[NonlinearContext, np.ndarray]:
    """Build the solve context and the initial guess u0 for a Bratu case."""
    pcfg = cfg.problem
    if problem is None:
        problem = BratuProblem(n=int(pcfg.n), lam=float(pcfg.lam), left=float(pcfg.left), right=float(pcfg.right))
    ctx = NonlinearContext(
        cfg=cfg,
        n_local=problem.n,
        residual=bratu_residual,
        gloc=bratu_gloc,
        gcomm=bratu_gcomm,
        fixed_point_map=bratu_fixed_point_map,
        user_data=problem,
    )
    u0 = np.full(problem.n, float(pcfg.u0), dtype=np.float64)
    logger.debug("bratu context: n=%d lam=%.4g h=%.4e", problem.n, problem.lam, problem.h)
    return ctx, u0
