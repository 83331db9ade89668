"""
Krylov (GMRES / LGMRES) linear layer for the Newton iteration.

Design goals:
- Matrix-free: J v is a forward difference of the full residual, with the
  increment scaled by uscale.
- Inexact Newton: the linear tolerance is a forcing term eta relative to
  ||F||, either constant or Eisenstat-Walker (the update scipy's
  newton_krylov uses), floored at eta_min above the J v noise level.
- A Krylov solve that stops short of eta but reduced the residual is
  accepted as a step (counted in ncfl).
- Optional preconditioner plugged in through setup/solve slots with the
  signatures of solvers.bbd_precond (bbd_setup / bbd_solve).
- Exposes lsetup/lsolve in the nonlinear solver callback form.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional, Tuple

import numpy as np
import scipy.sparse.linalg as spla

from solvers.linear_types import (
    ForcingType,
    KrylovCounters,
    KrylovMethod,
    LinearSolveResult,
    _coerce_enum,
)
from solvers.nonlinear_interface import SysFn
from solvers.nonlinear_types import NLSStatus

logger = logging.getLogger(__name__)

PSetupFn = Callable[..., int]
PSolveFn = Callable[..., int]

# Eisenstat-Walker parameters
EW_GAMMA = 0.9
EW_ETA_MAX = 0.9999
EW_SAFEGUARD = 0.1


class _CallbackFailure(Exception):
    """A residual or preconditioner callback failed inside the Krylov iteration."""

    def __init__(self, where: str, flag: int) -> None:
        super().__init__(f"{where} failed with flag={flag}")
        self.where = where
        self.flag = int(flag)


class KrylovLinearSolver:
    """
    Preconditioned Krylov solve of J(y) x = b.

    func(y, F_out, mem) -> int is the full residual. The preconditioner is
    applied on the left: scipy's M operator receives psolve.
    """

    def __init__(
        self,
        func: SysFn,
        template: np.ndarray,
        *,
        uscale: Optional[np.ndarray] = None,
        fscale: Optional[np.ndarray] = None,
        method: str | KrylovMethod = KrylovMethod.GMRES,
        rtol: float = 1.0e-4,
        maxiter: int = 50,
        restart: int = 20,
        forcing: str | ForcingType = ForcingType.EW,
        eta_min: float = 1.0e-4,
        uround: float = float(np.finfo(np.float64).eps),
    ) -> None:
        template = np.asarray(template, dtype=np.float64)
        if template.ndim != 1:
            raise ValueError(f"template must be 1-D, got shape {template.shape}")
        n = template.shape[0]
        self.func = func
        self.template = template
        self.n = n
        self.uscale = np.ones(n) if uscale is None else np.asarray(uscale, dtype=np.float64)
        self.fscale = np.ones(n) if fscale is None else np.asarray(fscale, dtype=np.float64)
        if self.uscale.shape != (n,) or self.fscale.shape != (n,):
            raise ValueError("uscale/fscale must match the template length")
        self.method = _coerce_enum(KrylovMethod, method, "linear.method")
        self.forcing = _coerce_enum(ForcingType, forcing, "linear.forcing")
        self.rtol = float(rtol)
        self.eta_min = float(eta_min)
        if self.rtol <= 0.0 or self.eta_min < 0.0:
            raise ValueError(f"linear tolerances must be positive, got rtol={rtol} eta_min={eta_min}")
        self.maxiter = int(maxiter)
        self.restart = int(restart)
        self.uround = float(uround)
        self.sqrt_uround = float(np.sqrt(self.uround))

        self.psetup: Optional[PSetupFn] = None
        self.psolve: Optional[PSolveFn] = None
        self.pdata: Any = None
        self._prec_current = False

        self.counters = KrylovCounters()
        self.last_result: Optional[LinearSolveResult] = None
        self._eta: Optional[float] = None
        self._fnorm_prev: Optional[float] = None
        self._f0 = np.zeros(n, dtype=np.float64)
        self._ftmp = np.zeros(n, dtype=np.float64)
        self._vtemp1 = np.zeros(n, dtype=np.float64)
        self._vtemp2 = np.zeros(n, dtype=np.float64)

    def set_preconditioner(self, psetup: Optional[PSetupFn], psolve: Optional[PSolveFn], pdata: Any) -> None:
        self.psetup = psetup
        self.psolve = psolve
        self.pdata = pdata
        self._prec_current = False

    # ---- forcing --------------------------------------------------------
    def reset_forcing(self) -> None:
        self._eta = None
        self._fnorm_prev = None

    def forcing_term(self, fnorm: float) -> float:
        """
        Relative linear tolerance for the next solve given ||fscale*F||.

        EW update: eta_A = gamma * (fnorm / fnorm_prev)^2; when gamma * eta^2
        is above the safeguard the previous eta keeps it from dropping too fast.
        """
        if self.forcing == ForcingType.CONSTANT:
            return self.rtol
        if self._eta is None or self._fnorm_prev is None or self._fnorm_prev == 0.0:
            eta = min(EW_ETA_MAX, max(self.rtol, self.eta_min))
        else:
            eta_a = EW_GAMMA * (fnorm / self._fnorm_prev) ** 2
            if EW_GAMMA * self._eta**2 < EW_SAFEGUARD:
                eta = min(EW_ETA_MAX, eta_a)
            else:
                eta = min(EW_ETA_MAX, max(eta_a, EW_GAMMA * self._eta**2))
            eta = max(eta, self.eta_min)
        self._eta = eta
        self._fnorm_prev = fnorm
        return eta

    # ---- nonlinear-solver slots ----------------------------------------
    def lsetup(self, y: np.ndarray, F: np.ndarray, jbad: bool, mem: Any) -> int:
        """Linear setup slot: rebuild the preconditioner at y; restarts the forcing sequence."""
        self.reset_forcing()
        if self.psetup is None:
            self._prec_current = True
            return 0
        flag = self.psetup(
            y,
            self.uscale,
            F,
            self.fscale,
            self._vtemp1,
            self._vtemp2,
            self.func,
            self.uround,
            self.counters,
            self.pdata,
        )
        self.counters.npe += 1
        self.counters.last_flag = int(flag)
        self._prec_current = int(flag) == 0
        if flag != 0:
            logger.info("preconditioner setup returned flag=%d (jbad=%s)", int(flag), bool(jbad))
        return int(flag)

    def lsolve(self, y: np.ndarray, b: np.ndarray, mem: Any) -> int:
        """Linear solve slot: b <- J(y)^{-1} b."""
        if self.psolve is not None and not self._prec_current:
            # No valid factorization; let the Newton driver run setup first.
            return int(NLSStatus.LSOLVE_RECOVERABLE)

        flag = self.func(y, self._f0, mem)
        self.counters.nfe += 1
        if flag:
            return int(flag)

        eta = self.forcing_term(float(np.linalg.norm(self.fscale * b)))
        self.counters.last_eta = eta
        try:
            result = self._krylov_solve(y, b, eta, mem)
        except _CallbackFailure as exc:
            self.counters.last_flag = exc.flag
            logger.warning("Krylov solve aborted: %s", exc)
            return exc.flag

        self.last_result = result
        if result.diag["info"] < 0:
            self.counters.last_flag = int(NLSStatus.LSOLVE_FAIL)
            logger.error("Krylov solve failed: %s", result.message)
            return int(NLSStatus.LSOLVE_FAIL)
        if result.converged:
            b[:] = result.x
            self.counters.last_flag = 0
            return 0

        self.counters.ncfl += 1
        if result.rel_residual < 1.0:
            # Residual reduced but above eta: usable inexact step.
            b[:] = result.x
            self.counters.last_flag = 0
            logger.debug(
                "Krylov solve stopped at rel=%.3e > eta=%.3e; residual reduced, step accepted",
                result.rel_residual,
                eta,
            )
            return 0
        self.counters.last_flag = int(NLSStatus.LSOLVE_RECOVERABLE)
        logger.warning(
            "Krylov solve not converged: method=%s iters=%d rel=%.3e eta=%.3e",
            result.method,
            result.n_iter,
            result.rel_residual,
            eta,
        )
        return int(NLSStatus.LSOLVE_RECOVERABLE)

    # ---- operators ------------------------------------------------------
    def jtimes(self, y: np.ndarray, v: np.ndarray, mem: Any) -> np.ndarray:
        """
        Forward-difference J(y) v using the residual stored at y.

        sigma = sign(s) * sqrt(uround) * max(|s|, ||Du v||_1) / ||Du v||_2^2,
        s = (Du y).(Du v), Du = diag(uscale).
        """
        self.counters.njve += 1
        sv = self.uscale * v
        vtv = float(np.dot(sv, sv))
        if vtv == 0.0:
            return np.zeros_like(v)
        sutsv = float(np.dot(self.uscale * y, sv))
        sq1norm = float(np.sum(np.abs(sv)))
        sign = 1.0 if sutsv >= 0.0 else -1.0
        sigma = sign * self.sqrt_uround * max(abs(sutsv), sq1norm) / vtv
        flag = self.func(y + sigma * v, self._ftmp, mem)
        self.counters.nfe += 1
        if flag:
            raise _CallbackFailure("residual evaluation", int(flag))
        return (self._ftmp - self._f0) / sigma

    def _operators(self, y: np.ndarray, mem: Any) -> Tuple[spla.LinearOperator, Optional[spla.LinearOperator]]:
        n = self.n

        def _matvec(v):
            return self.jtimes(y, np.asarray(v, dtype=np.float64).ravel(), mem)

        A = spla.LinearOperator((n, n), matvec=_matvec, dtype=np.float64)
        if self.psolve is None:
            return A, None

        def _precvec(v):
            z = np.array(v, dtype=np.float64).ravel()
            flag = self.psolve(y, self.uscale, self._f0, self.fscale, z, self.pdata)
            self.counters.nps += 1
            if flag:
                raise _CallbackFailure("preconditioner solve", int(flag))
            return z

        M = spla.LinearOperator((n, n), matvec=_precvec, dtype=np.float64)
        return A, M

    def _krylov_solve(self, y: np.ndarray, b: np.ndarray, eta: float, mem: Any) -> LinearSolveResult:
        A, M = self._operators(y, mem)
        rhs = np.array(b, dtype=np.float64)
        n_iter = 0

        def _count(_arg):
            nonlocal n_iter
            n_iter += 1

        if self.method == KrylovMethod.GMRES:
            x, info = spla.gmres(
                A,
                rhs,
                rtol=eta,
                atol=0.0,
                restart=self.restart,
                maxiter=self.maxiter,
                M=M,
                callback=_count,
                callback_type="pr_norm",
            )
        else:
            x, info = spla.lgmres(
                A,
                rhs,
                rtol=eta,
                atol=0.0,
                maxiter=self.maxiter,
                M=M,
                callback=_count,
            )
        self.counters.nli += n_iter

        if info < 0:
            return LinearSolveResult(
                x=rhs,
                converged=False,
                n_iter=n_iter,
                residual_norm=float("nan"),
                rel_residual=float("nan"),
                method=self.method.value,
                message=f"illegal input or breakdown (info={info})",
                diag={"info": int(info), "eta": eta},
            )

        r = rhs - self.jtimes(y, x, mem)
        res_norm = float(np.linalg.norm(r))
        b_norm = float(np.linalg.norm(rhs))
        rel = res_norm / (b_norm + 1e-30)
        converged = info == 0 or rel <= eta
        return LinearSolveResult(
            x=np.asarray(x, dtype=np.float64),
            converged=bool(converged),
            n_iter=n_iter,
            residual_norm=res_norm,
            rel_residual=rel,
            method=self.method.value,
            message=None if converged else f"info={info}",
            diag={"info": int(info), "eta": eta},
        )

    def get_workspace(self) -> Tuple[int, int]:
        """(real words, integer words); Krylov basis counted at restart length."""
        krylov_dim = self.restart if self.method == KrylovMethod.GMRES else self.restart + 3
        lenrw = self.n * (krylov_dim + 6) + krylov_dim * (krylov_dim + 4)
        return int(lenrw), 0
