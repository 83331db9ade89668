"""
Fixed-point iteration y_{k+1} = G(y_k) (stationary solver).

No linear system is involved, so the linear setup/solve setters are not part
of this solver; nls_set_lsetup_fn / nls_set_lsolve_fn are no-ops for it.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional

import numpy as np

from solvers.newton import default_conv_test
from solvers.nonlinear_interface import ConvTestFn, SysFn, wrms_norm
from solvers.nonlinear_types import NLSStatus, NonlinearSolverType, as_status, conv_test_status

logger = logging.getLogger(__name__)


class FixedPointSolver:
    def __init__(self, template: Optional[np.ndarray] = None, *, max_iters: int = 50) -> None:
        self.sys_fn: Optional[SysFn] = None
        self.ctest_fn: Optional[ConvTestFn] = None
        self.max_iters = int(max_iters)
        self.niters = 0
        self.total_iters = 0
        self.nconvfails = 0
        self.history: List[float] = []
        self.gval: Optional[np.ndarray] = None
        self.delta: Optional[np.ndarray] = None
        if template is not None:
            self.initialize(template)

    def get_type(self) -> NonlinearSolverType:
        return NonlinearSolverType.STATIONARY

    def initialize(self, template: np.ndarray) -> NLSStatus:
        template = np.asarray(template, dtype=np.float64)
        if template.ndim != 1:
            return NLSStatus.ILL_INPUT
        if self.gval is None or self.gval.shape != template.shape:
            self.gval = np.zeros_like(template)
            self.delta = np.zeros_like(template)
        self.niters = 0
        self.total_iters = 0
        self.nconvfails = 0
        return NLSStatus.SUCCESS

    def solve(
        self,
        y0: np.ndarray,
        y: np.ndarray,
        w: np.ndarray,
        tol: float,
        call_setup: bool,
        mem: Any,
    ) -> NLSStatus:
        if self.sys_fn is None:
            return NLSStatus.MEM_NULL
        if self.gval is None or self.gval.shape != np.shape(y0):
            st = self.initialize(y0)
            if st != NLSStatus.SUCCESS:
                return st
        if tol <= 0.0:
            return NLSStatus.ILL_INPUT

        np.copyto(y, y0)
        self.niters = 0
        self.history = []
        prev: Optional[float] = None
        for m in range(self.max_iters):
            st = as_status(self.sys_fn(y, self.gval, mem),
                           recoverable=NLSStatus.SYS_RECOVERABLE, fatal=NLSStatus.SYS_FAIL)
            if st != NLSStatus.SUCCESS:
                return st

            np.subtract(self.gval, y, out=self.delta)
            np.copyto(y, self.gval)
            self.niters += 1
            self.total_iters += 1
            delnrm = wrms_norm(self.delta, w)
            self.history.append(delnrm)

            if self.ctest_fn is not None:
                st = conv_test_status(self.ctest_fn(m, delnrm, tol, mem))
            else:
                st = default_conv_test(m, delnrm, tol, mem, prev=prev)
                prev = delnrm
            if st == NLSStatus.CONTINUE:
                continue
            if st != NLSStatus.SUCCESS:
                self.nconvfails += 1
            return st

        self.nconvfails += 1
        logger.debug("fixed point: no convergence in %d iterations", self.max_iters)
        return NLSStatus.NONCONVERGENCE_RECOVERABLE

    def free(self) -> NLSStatus:
        self.gval = None
        self.delta = None
        self.sys_fn = None
        self.ctest_fn = None
        return NLSStatus.SUCCESS

    def set_sys_fn(self, sys_fn: SysFn) -> NLSStatus:
        if sys_fn is None:
            return NLSStatus.ILL_INPUT
        self.sys_fn = sys_fn
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
