"""
Shared nonlinear solver types: type tag, status codes and result containers.

Goal:
- One status enumeration for every solver/linear-solver/preconditioner pairing.
- Positive codes are recoverable (caller may retry with a smaller step or a
  perturbed point), negative codes abort the solve attempt.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional

import numpy as np


class NonlinearSolverType(str, Enum):
    ROOTFIND = "rootfind"
    STATIONARY = "stationary"


class NonlinearMethod(str, Enum):
    NEWTON = "newton"
    FIXED_POINT = "fixed_point"


class NLSStatus(IntEnum):
    SUCCESS = 0

    SYS_RECOVERABLE = 1
    LSETUP_RECOVERABLE = 2
    LSOLVE_RECOVERABLE = 3
    NONCONVERGENCE_RECOVERABLE = 4

    # Convergence-test answer: keep iterating.
    CONTINUE = 901

    MEM_NULL = -1
    ILL_INPUT = -2
    MEM_FAIL = -3
    LSETUP_FAIL = -6
    LSOLVE_FAIL = -7
    SYS_FAIL = -8
    VECTOR_OP_ERROR = -28

    @property
    def recoverable(self) -> bool:
        return 0 < int(self) < int(NLSStatus.CONTINUE)

    @property
    def failed(self) -> bool:
        return int(self) < 0


def as_status(flag: Any, *, recoverable: NLSStatus, fatal: NLSStatus) -> NLSStatus:
    """
    Map a raw callback flag (None/0 success, >0 recoverable, <0 fatal) onto
    the status pair of the slot that produced it.
    """
    if flag is None:
        return NLSStatus.SUCCESS
    flag = int(flag)
    if flag == 0:
        return NLSStatus.SUCCESS
    return recoverable if flag > 0 else fatal


_STATUS_VALUES = frozenset(int(s) for s in NLSStatus)


def conv_test_status(flag: Any) -> NLSStatus:
    """
    Status of a user convergence test: NLSStatus members (CONTINUE included)
    pass through unchanged; other ints map by sign.
    """
    if flag is None:
        return NLSStatus.SUCCESS
    flag = int(flag)
    if flag in _STATUS_VALUES:
        return NLSStatus(flag)
    return as_status(flag, recoverable=NLSStatus.NONCONVERGENCE_RECOVERABLE, fatal=NLSStatus.SYS_FAIL)


@dataclass(slots=True)
class NonlinearDiagnostics:
    converged: bool
    method: str
    n_iter: int
    res_norm_2: float
    res_norm_inf: float
    status: NLSStatus = NLSStatus.SUCCESS
    history_delta_wrms: List[float] = field(default_factory=list)
    message: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class NonlinearSolveResult:
    u: np.ndarray
    diag: NonlinearDiagnostics
