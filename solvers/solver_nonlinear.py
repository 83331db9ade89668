"""
Nonlinear solve dispatcher: builds the solver stack from cfg and runs it.

Stack for method="newton":
    NewtonSolver --lsetup/lsolve--> KrylovLinearSolver --psetup/psolve--> BBD block
Stack for method="fixed_point":
    FixedPointSolver on ctx.fixed_point_map (no linear layer)
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Tuple

import numpy as np

from solvers.bbd_precond import (
    bbd_alloc,
    bbd_free,
    bbd_get_num_gloc_evals,
    bbd_get_workspace,
    bbd_setup,
    bbd_solve,
)
from solvers.fixed_point import FixedPointSolver
from solvers.krylov_linear import KrylovLinearSolver
from solvers.linear_types import PrecondType, _coerce_enum
from solvers.newton import NewtonSolver
from solvers.nonlinear_context import NonlinearContext
from solvers.nonlinear_interface import (
    check_nonlinear_solver,
    nls_free,
    nls_get_num_iters,
    nls_get_type,
    nls_initialize,
    nls_set_lsetup_fn,
    nls_set_lsolve_fn,
    nls_set_max_iters,
    nls_set_sys_fn,
    nls_solve,
)
from solvers.nonlinear_types import (
    NLSStatus,
    NonlinearDiagnostics,
    NonlinearMethod,
    NonlinearSolveResult,
)

logger = logging.getLogger(__name__)


def _build_newton_stack(ctx: NonlinearContext, u0: np.ndarray) -> Tuple[NewtonSolver, KrylovLinearSolver, Any]:
    cfg = ctx.cfg
    lin_cfg = cfg.linear
    pc_cfg = cfg.precond

    nls = NewtonSolver(u0, max_iters=int(cfg.nonlinear.max_iter))
    ls = KrylovLinearSolver(
        ctx.residual,
        u0,
        uscale=ctx.scale_u,
        method=lin_cfg.method,
        rtol=float(lin_cfg.rtol),
        maxiter=int(lin_cfg.maxiter),
        restart=int(lin_cfg.restart),
        forcing=lin_cfg.forcing,
        eta_min=float(lin_cfg.eta_min),
    )

    pdata = None
    pc_type = _coerce_enum(PrecondType, pc_cfg.type, "precond.type")
    if pc_type == PrecondType.BBD:
        if ctx.gloc is None:
            raise ValueError("precond.type='bbd' requires a local function (ctx.gloc)")
        pdata = bbd_alloc(
            ctx.n_local,
            int(pc_cfg.mudq),
            int(pc_cfg.mldq),
            int(pc_cfg.mu),
            int(pc_cfg.ml),
            float(pc_cfg.dq_rel_u),
            ctx.gloc,
            ctx.gcomm,
            ctx.user_data,
            ls,
        )
        ls.set_preconditioner(bbd_setup, bbd_solve, pdata)

    nls_set_sys_fn(nls, ctx.residual)
    nls_set_lsetup_fn(nls, ls.lsetup)
    nls_set_lsolve_fn(nls, ls.lsolve)
    return nls, ls, pdata


def solve_nonlinear(ctx: NonlinearContext, u0: np.ndarray) -> NonlinearSolveResult:
    """Solve F(u)=0 (or u=G(u)) according to cfg.nonlinear.method."""
    cfg = ctx.cfg
    nl = cfg.nonlinear
    method = _coerce_enum(NonlinearMethod, nl.method, "nonlinear.method")
    u0 = np.asarray(u0, dtype=np.float64)
    if u0.shape != (ctx.n_local,):
        raise ValueError(f"u0 shape {u0.shape} does not match n_local={ctx.n_local}")

    ls = None
    pdata = None
    if method == NonlinearMethod.NEWTON:
        nls, ls, pdata = _build_newton_stack(ctx, u0)
    else:
        if ctx.fixed_point_map is None:
            raise ValueError("nonlinear.method='fixed_point' requires ctx.fixed_point_map")
        nls = FixedPointSolver(u0, max_iters=int(nl.max_iter))
        nls_set_sys_fn(nls, ctx.fixed_point_map)
        # No linear layer; these are no-ops for a stationary solver.
        nls_set_lsetup_fn(nls, None)
        nls_set_lsolve_fn(nls, None)

    check_nonlinear_solver(nls)
    nls_initialize(nls, u0)
    nls_set_max_iters(nls, int(nl.max_iter))

    w = ctx.weights()
    u = u0.copy()
    try:
        status = nls_solve(nls, u0, u, w, float(nl.tol), True, ctx.user_data)
        n_iter = nls_get_num_iters(nls)
        history = list(getattr(nls, "history", []))

        extra: Dict[str, Any] = {"solver_type": nls_get_type(nls).value}
        if ls is not None:
            c = ls.counters
            extra.update(
                {
                    "npe": c.npe,
                    "nps": c.nps,
                    "nli": c.nli,
                    "ncfl": c.ncfl,
                    "njve": c.njve,
                    "nfe_linear": c.nfe,
                    "last_eta": c.last_eta,
                    "ls_workspace": ls.get_workspace(),
                }
            )
        if pdata is not None:
            extra["nge"] = bbd_get_num_gloc_evals(pdata)
            extra["bbd_workspace"] = bbd_get_workspace(pdata)
            extra["bbd_last_setup_flag"] = pdata.last_setup_flag
    finally:
        nls_free(nls)
        bbd_free(pdata)

    converged = status == NLSStatus.SUCCESS
    msg: Optional[str] = None
    if not converged:
        msg = f"{method.value} returned {status.name}"
        logger.warning("nonlinear solve did not converge: %s after %d iterations", msg, n_iter)

    res_flag, res_final = ctx.eval_residual(u)
    if res_flag == 0:
        res_norm_2 = float(np.linalg.norm(res_final))
        res_norm_inf = float(np.linalg.norm(res_final, ord=np.inf))
    else:
        res_norm_2 = res_norm_inf = float("nan")
        note = f"residual at final iterate failed with flag={res_flag}"
        msg = note if msg is None else f"{msg}; {note}"
        logger.warning("%s", note)
    extra["final_residual_flag"] = res_flag

    if nl.verbose:
        every = max(1, int(nl.log_every))
        for k, d in enumerate(history, start=1):
            if k % every == 0 or k == len(history):
                logger.info("nonlinear iter=%d ||delta||_wrms=%.3e", k, d)
    logger.info(
        "nonlinear solve: method=%s status=%s iters=%d res_inf=%.3e",
        method.value,
        status.name,
        n_iter,
        res_norm_inf,
    )

    diag = NonlinearDiagnostics(
        converged=converged,
        method=method.value,
        n_iter=n_iter,
        res_norm_2=res_norm_2,
        res_norm_inf=res_norm_inf,
        status=status,
        history_delta_wrms=history,
        message=msg,
        extra=extra,
    )
    return NonlinearSolveResult(u=u, diag=diag)
