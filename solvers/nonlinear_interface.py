"""
Capability contract shared by every nonlinear solver implementation.

A solver is any object exposing the required operations below; it is picked
at construction time (Newton, fixed point, ...) and carries its own state.
Optional operations may be missing entirely: the nls_* dispatch helpers
treat an absent optional operation as a no-op returning SUCCESS.

Callback slots:
    sys_fn(y, F_out, mem) -> int
        F(y) for root-finding solvers, the fixed-point map G(y) for
        stationary solvers.
    lsetup_fn(y, F, jbad, mem) -> int
        Rebuild cached linear-system state (e.g. preconditioner setup).
    lsolve_fn(y, b_inout, mem) -> int
        Solve J x = b in place.
    ctest_fn(m, delnrm, tol, mem) -> int
        SUCCESS when converged, CONTINUE to iterate again; any other NLSStatus
        value is returned by solve as-is, unknown ints map by sign.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional, Protocol, runtime_checkable

import numpy as np

from solvers.nonlinear_types import NLSStatus, NonlinearSolverType

logger = logging.getLogger(__name__)

SysFn = Callable[[np.ndarray, np.ndarray, Any], Optional[int]]
LSetupFn = Callable[[np.ndarray, np.ndarray, bool, Any], Optional[int]]
LSolveFn = Callable[[np.ndarray, np.ndarray, Any], Optional[int]]
ConvTestFn = Callable[[int, float, float, Any], Optional[int]]

REQUIRED_OPS = ("get_type", "initialize", "solve", "free", "set_sys_fn")
OPTIONAL_OPS = (
    "setup",
    "set_lsetup_fn",
    "set_lsolve_fn",
    "set_conv_test_fn",
    "set_max_iters",
    "get_num_iters",
)


@runtime_checkable
class NonlinearSolver(Protocol):
    """Required part of the nonlinear solver contract."""

    def get_type(self) -> NonlinearSolverType:
        ...

    def initialize(self, template: np.ndarray) -> NLSStatus:
        ...

    def solve(
        self,
        y0: np.ndarray,
        y: np.ndarray,
        w: np.ndarray,
        tol: float,
        call_setup: bool,
        mem: Any,
    ) -> NLSStatus:
        ...

    def free(self) -> NLSStatus:
        ...

    def set_sys_fn(self, sys_fn: SysFn) -> NLSStatus:
        ...


def wrms_norm(x: np.ndarray, w: np.ndarray) -> float:
    """Weighted root-mean-square norm sqrt(mean((x*w)^2))."""
    x = np.asarray(x, dtype=np.float64)
    if x.size == 0:
        return 0.0
    return float(np.sqrt(np.mean((x * w) ** 2)))


def check_nonlinear_solver(nls: Any) -> None:
    """Raise TypeError when a required operation is missing."""
    if nls is None:
        raise TypeError("nonlinear solver is None")
    missing = [name for name in REQUIRED_OPS if not callable(getattr(nls, name, None))]
    if missing:
        raise TypeError(f"{type(nls).__name__} lacks required operations: {missing}")


def _optional(nls: Any, name: str) -> Optional[Callable[..., Any]]:
    op = getattr(nls, name, None)
    return op if callable(op) else None


def nls_get_type(nls: Any) -> NonlinearSolverType:
    return NonlinearSolverType(nls.get_type())


def nls_initialize(nls: Any, template: np.ndarray) -> NLSStatus:
    if nls is None:
        return NLSStatus.MEM_NULL
    return NLSStatus(nls.initialize(template))


def nls_setup(nls: Any, y: np.ndarray, mem: Any) -> NLSStatus:
    if nls is None:
        return NLSStatus.MEM_NULL
    op = _optional(nls, "setup")
    if op is None:
        return NLSStatus.SUCCESS
    return NLSStatus(op(y, mem))


def nls_solve(
    nls: Any,
    y0: np.ndarray,
    y: np.ndarray,
    w: np.ndarray,
    tol: float,
    call_setup: bool,
    mem: Any,
) -> NLSStatus:
    if nls is None:
        return NLSStatus.MEM_NULL
    return NLSStatus(nls.solve(y0, y, w, tol, call_setup, mem))


def nls_free(nls: Any) -> NLSStatus:
    if nls is None:
        return NLSStatus.SUCCESS
    return NLSStatus(nls.free())


def nls_set_sys_fn(nls: Any, sys_fn: SysFn) -> NLSStatus:
    if nls is None:
        return NLSStatus.MEM_NULL
    return NLSStatus(nls.set_sys_fn(sys_fn))


def nls_set_lsetup_fn(nls: Any, lsetup_fn: LSetupFn) -> NLSStatus:
    if nls is None:
        return NLSStatus.MEM_NULL
    op = _optional(nls, "set_lsetup_fn")
    if op is None:
        return NLSStatus.SUCCESS
    return NLSStatus(op(lsetup_fn))


def nls_set_lsolve_fn(nls: Any, lsolve_fn: LSolveFn) -> NLSStatus:
    if nls is None:
        return NLSStatus.MEM_NULL
    op = _optional(nls, "set_lsolve_fn")
    if op is None:
        return NLSStatus.SUCCESS
    return NLSStatus(op(lsolve_fn))


def nls_set_conv_test_fn(nls: Any, ctest_fn: ConvTestFn) -> NLSStatus:
    if nls is None:
        return NLSStatus.MEM_NULL
    op = _optional(nls, "set_conv_test_fn")
    if op is None:
        return NLSStatus.SUCCESS
    return NLSStatus(op(ctest_fn))


def nls_set_max_iters(nls: Any, max_iters: int) -> NLSStatus:
    if nls is None:
        return NLSStatus.MEM_NULL
    op = _optional(nls, "set_max_iters")
    if op is None:
        return NLSStatus.SUCCESS
    return NLSStatus(op(int(max_iters)))


def nls_get_num_iters(nls: Any) -> int:
    if nls is None:
        return 0
    op = _optional(nls, "get_num_iters")
    if op is None:
        return 0
    return int(op())
