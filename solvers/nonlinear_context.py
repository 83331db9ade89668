"""
Nonlinear solve context.

Packages everything the solver stack needs from a problem so the solvers
only depend on this object: the full residual, the cheap local residual and
communication callbacks for the preconditioner, an optional fixed-point map,
and the unknown scaling.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

import numpy as np

from assembly.band_dq_jacobian import CommFn, LocalFn
from core.types import CaseConfig
from solvers.nonlinear_interface import SysFn


@dataclass(slots=True)
class NonlinearContext:
    """
    Responsibilities:
      - hold configuration and the problem callbacks
      - keep unknown scales for Jacobian increments and norms
      - carry problem-owned user data passed back to every callback
    """

    cfg: CaseConfig
    n_local: int

    # F(u) for Newton; G(u) for fixed point
    residual: SysFn
    gloc: Optional[LocalFn] = None
    gcomm: Optional[CommFn] = None
    fixed_point_map: Optional[SysFn] = None
    user_data: Any = None

    scale_u: Optional[np.ndarray] = None

    # Extension point for diagnostics/counters
    meta: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.scale_u is None:
            self.scale_u = np.ones(self.n_local, dtype=np.float64)
        self.scale_u = np.asarray(self.scale_u, dtype=np.float64)
        if self.scale_u.shape != (self.n_local,):
            raise ValueError(f"scale_u shape {self.scale_u.shape} does not match n_local={self.n_local}")
        if np.any(self.scale_u <= 0.0):
            raise ValueError("scale_u entries must be positive")

    def weights(self) -> np.ndarray:
        """Weights for the WRMS norm of Newton updates."""
        if getattr(self.cfg.nonlinear, "use_scaled_unknowns", True):
            return self.scale_u.copy()
        return np.ones(self.n_local, dtype=np.float64)

    def eval_residual(self, u: np.ndarray) -> Tuple[int, np.ndarray]:
        """(flag, F(u)); F is only meaningful when flag == 0."""
        F = np.empty(self.n_local, dtype=np.float64)
        flag = self.residual(np.asarray(u, dtype=np.float64), F, self.user_data)
        return (0 if flag is None else int(flag)), F
