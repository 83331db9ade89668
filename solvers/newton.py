"""
Full Newton iteration satisfying the nonlinear solver contract (root-finding).

Each iteration:
  F = F(y)                     via sys_fn
  lsetup(y, F) when requested  (fresh Jacobian / preconditioner)
  solve J delta = -F           via lsolve_fn, in place
  y += delta
  ctest(m, ||delta||_wrms, tol)

A recoverable failure with a stale linear system triggers one more setup and
a restart from y0; otherwise the recoverable status is returned to the caller.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional

import numpy as np

from solvers.nonlinear_interface import ConvTestFn, LSetupFn, LSolveFn, SysFn, wrms_norm
from solvers.nonlinear_types import NLSStatus, NonlinearSolverType, as_status, conv_test_status

logger = logging.getLogger(__name__)


def default_conv_test(m: int, delnrm: float, tol: float, mem: Any, *, prev: Optional[float] = None) -> NLSStatus:
    """Converged when delnrm <= tol; diverging if the update grew more than 2x."""
    if delnrm <= tol:
        return NLSStatus.SUCCESS
    if m > 0 and prev is not None and delnrm > 2.0 * prev:
        return NLSStatus.NONCONVERGENCE_RECOVERABLE
    return NLSStatus.CONTINUE


class NewtonSolver:
    """Newton's method with user-supplied linear setup/solve slots."""

    def __init__(self, template: Optional[np.ndarray] = None, *, max_iters: int = 10) -> None:
        self.sys_fn: Optional[SysFn] = None
        self.lsetup_fn: Optional[LSetupFn] = None
        self.lsolve_fn: Optional[LSolveFn] = None
        self.ctest_fn: Optional[ConvTestFn] = None
        self.max_iters = int(max_iters)
        self.niters = 0
        self.total_iters = 0
        self.nsetups = 0
        self.nconvfails = 0
        self.history: List[float] = []
        self.delta: Optional[np.ndarray] = None
        self.fval: Optional[np.ndarray] = None
        self._prev_delnrm: Optional[float] = None
        if template is not None:
            self.initialize(template)

    # ---- contract -------------------------------------------------------
    def get_type(self) -> NonlinearSolverType:
        return NonlinearSolverType.ROOTFIND

    def initialize(self, template: np.ndarray) -> NLSStatus:
        template = np.asarray(template, dtype=np.float64)
        if template.ndim != 1:
            return NLSStatus.ILL_INPUT
        # Reuse work vectors for an unchanged template shape.
        if self.delta is None or self.delta.shape != template.shape:
            self.delta = np.zeros_like(template)
            self.fval = np.zeros_like(template)
        self.niters = 0
        self.total_iters = 0
        self.nsetups = 0
        self.nconvfails = 0
        return NLSStatus.SUCCESS

    def setup(self, y: np.ndarray, mem: Any) -> NLSStatus:
        if self.lsetup_fn is None:
            return NLSStatus.SUCCESS
        if self.sys_fn is None or self.fval is None:
            return NLSStatus.MEM_NULL
        st = as_status(self.sys_fn(y, self.fval, mem),
                       recoverable=NLSStatus.SYS_RECOVERABLE, fatal=NLSStatus.SYS_FAIL)
        if st != NLSStatus.SUCCESS:
            return st
        return self._lsetup(y, True, mem)

    def solve(
        self,
        y0: np.ndarray,
        y: np.ndarray,
        w: np.ndarray,
        tol: float,
        call_setup: bool,
        mem: Any,
    ) -> NLSStatus:
        if self.sys_fn is None or self.lsolve_fn is None:
            return NLSStatus.MEM_NULL
        if self.delta is None or self.delta.shape != np.shape(y0):
            st = self.initialize(y0)
            if st != NLSStatus.SUCCESS:
                return st
        if tol <= 0.0:
            return NLSStatus.ILL_INPUT

        jbad = False
        jcur = False
        do_setup = bool(call_setup) and self.lsetup_fn is not None
        self.history = []

        while True:
            np.copyto(y, y0)
            self.niters = 0
            self._prev_delnrm = None
            status = self._iterate(y, w, tol, do_setup, jbad, mem)
            jcur = jcur or do_setup
            if status == NLSStatus.SUCCESS or status.failed:
                return status
            # Recoverable: retry once with a fresh linear system.
            if not jcur and self.lsetup_fn is not None:
                logger.debug("newton: recoverable failure %s with stale Jacobian; retrying", status.name)
                do_setup = True
                jbad = True
                continue
            self.nconvfails += 1
            return status

    def free(self) -> NLSStatus:
        self.delta = None
        self.fval = None
        self.sys_fn = None
        self.lsetup_fn = None
        self.lsolve_fn = None
        self.ctest_fn = None
        return NLSStatus.SUCCESS

    def set_sys_fn(self, sys_fn: SysFn) -> NLSStatus:
        if sys_fn is None:
            return NLSStatus.ILL_INPUT
        self.sys_fn = sys_fn
        return NLSStatus.SUCCESS

    def set_lsetup_fn(self, lsetup_fn: Optional[LSetupFn]) -> NLSStatus:
        self.lsetup_fn = lsetup_fn
        return NLSStatus.SUCCESS

    def set_lsolve_fn(self, lsolve_fn: LSolveFn) -> NLSStatus:
        if lsolve_fn is None:
            return NLSStatus.ILL_INPUT
        self.lsolve_fn = lsolve_fn
        return NLSStatus.SUCCESS

    def set_conv_test_fn(self, ctest_fn: Optional[ConvTestFn]) -> NLSStatus:
        self.ctest_fn = ctest_fn
        return NLSStatus.SUCCESS

    def set_max_iters(self, max_iters: int) -> NLSStatus:
        if max_iters < 1:
            return NLSStatus.ILL_INPUT
        self.max_iters = int(max_iters)
        return NLSStatus.SUCCESS

    def get_num_iters(self) -> int:
        return int(self.total_iters)

    # ---- internals ------------------------------------------------------
    def _lsetup(self, y: np.ndarray, jbad: bool, mem: Any) -> NLSStatus:
        flag = self.lsetup_fn(y, self.fval, jbad, mem)
        self.nsetups += 1
        return as_status(flag, recoverable=NLSStatus.LSETUP_RECOVERABLE, fatal=NLSStatus.LSETUP_FAIL)

    def _ctest(self, m: int, delnrm: float, tol: float, mem: Any) -> NLSStatus:
        if self.ctest_fn is not None:
            return conv_test_status(self.ctest_fn(m, delnrm, tol, mem))
        st = default_conv_test(m, delnrm, tol, mem, prev=self._prev_delnrm)
        self._prev_delnrm = delnrm
        return st

    def _iterate(
        self,
        y: np.ndarray,
        w: np.ndarray,
        tol: float,
        do_setup: bool,
        jbad: bool,
        mem: Any,
    ) -> NLSStatus:
        delta = self.delta
        fval = self.fval
        for m in range(self.max_iters):
            st = as_status(self.sys_fn(y, fval, mem),
                           recoverable=NLSStatus.SYS_RECOVERABLE, fatal=NLSStatus.SYS_FAIL)
            if st != NLSStatus.SUCCESS:
                return st

            if m == 0 and do_setup:
                st = self._lsetup(y, jbad, mem)
                if st != NLSStatus.SUCCESS:
                    return st

            np.negative(fval, out=delta)
            st = as_status(self.lsolve_fn(y, delta, mem),
                           recoverable=NLSStatus.LSOLVE_RECOVERABLE, fatal=NLSStatus.LSOLVE_FAIL)
            if st != NLSStatus.SUCCESS:
                return st

            y += delta
            self.niters += 1
            self.total_iters += 1
            delnrm = wrms_norm(delta, w)
            self.history.append(delnrm)
            logger.debug("newton iter=%d ||delta||_wrms=%.3e tol=%.3e", m + 1, delnrm, tol)

            st = self._ctest(m, delnrm, tol, mem)
            if st == NLSStatus.CONTINUE:
                continue
            return st

        return NLSStatus.NONCONVERGENCE_RECOVERABLE
