"""
Shared linear solver result / option types.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

import numpy as np


@dataclass
class LinearSolveResult:
    x: np.ndarray
    converged: bool
    n_iter: int
    residual_norm: float
    rel_residual: float
    method: str
    message: Optional[str] = None
    diag: Optional[Dict[str, Any]] = None


class KrylovMethod(str, Enum):
    GMRES = "gmres"
    LGMRES = "lgmres"


class ForcingType(str, Enum):
    """Linear tolerance policy of the inexact Newton iteration."""

    CONSTANT = "constant"
    EW = "ew"  # Eisenstat-Walker


class PrecondType(str, Enum):
    NONE = "none"
    BBD = "bbd"


@dataclass(slots=True)
class KrylovCounters:
    """Cumulative Krylov-layer statistics."""

    npe: int = 0  # preconditioner setups
    nps: int = 0  # preconditioner solves
    nli: int = 0  # linear iterations
    ncfl: int = 0  # linear convergence failures
    njve: int = 0  # Jacobian-vector products
    nfe: int = 0  # residual evaluations made by the linear layer
    last_flag: int = 0
    last_eta: float = 0.0  # forcing term of the latest solve


def _coerce_enum(enum_cls: type[Enum], value: Any, where: str) -> Enum:
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        try:
            return enum_cls(value.strip().lower())
        except Exception:
            allowed = [e.value for e in enum_cls]
            raise ValueError(f"{where}: invalid value {value!r}, allowed={allowed}")
    raise TypeError(f"{where}: expected str or {enum_cls.__name__}, got {type(value).__name__}")
