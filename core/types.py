"""
Typed containers for case configuration.

Conventions:
- n_local: number of unknowns owned by this process (the BBD block size).
- mu/ml: half-bandwidths retained in the preconditioner block.
- mudq/mldq: half-bandwidths sampled by the grouped difference quotients.
- dq_rel_u <= 0 selects the default increment sqrt(unit roundoff).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional


@dataclass(slots=True)
class CaseMeta:
    """Metadata for the case block."""

    id: str
    title: str = ""
    version: int = 1
    notes: Optional[str] = None


@dataclass(slots=True)
class CaseProblem:
    """Model problem definition."""

    kind: str = "bratu_1d"
    n: int = 64
    lam: float = 1.0
    left: float = 0.0
    right: float = 0.0
    u0: float = 0.0

    def __post_init__(self) -> None:
        if self.kind != "bratu_1d":
            raise ValueError(f"problem.kind: unsupported {self.kind!r}, allowed=['bratu_1d']")
        if int(self.n) < 1:
            raise ValueError(f"problem.n must be >= 1, got {self.n}")


@dataclass(slots=True)
class CasePrecond:
    """Band-block-diagonal preconditioner options."""

    type: str = "bbd"
    mudq: int = 1
    mldq: int = 1
    mu: int = 1
    ml: int = 1
    dq_rel_u: float = 0.0

    def __post_init__(self) -> None:
        if self.type not in ("bbd", "none"):
            raise ValueError(f"precond.type: invalid value {self.type!r}, allowed=['bbd', 'none']")
        for name in ("mudq", "mldq", "mu", "ml"):
            v = getattr(self, name)
            if int(v) < 0:
                raise ValueError(f"precond.{name} must be >= 0, got {v}")


@dataclass(slots=True)
class CaseLinear:
    """Krylov solver options."""

    method: str = "gmres"
    rtol: float = 1.0e-4  # constant forcing term, or the initial one for "ew"
    maxiter: int = 50
    restart: int = 20
    forcing: str = "ew"
    eta_min: float = 1.0e-4

    def __post_init__(self) -> None:
        if self.forcing not in ("ew", "constant"):
            raise ValueError(f"linear.forcing: invalid value {self.forcing!r}, allowed=['ew', 'constant']")
        if float(self.rtol) <= 0.0:
            raise ValueError(f"linear.rtol must be positive, got {self.rtol}")
        if float(self.eta_min) < 0.0:
            raise ValueError(f"linear.eta_min must be >= 0, got {self.eta_min}")


@dataclass(slots=True)
class CaseNonlinear:
    """Nonlinear solver options."""

    method: str = "newton"
    max_iter: int = 20
    tol: float = 1.0e-8
    use_scaled_unknowns: bool = True
    verbose: bool = False
    log_every: int = 1

    def __post_init__(self) -> None:
        if int(self.max_iter) < 1:
            raise ValueError(f"nonlinear.max_iter must be >= 1, got {self.max_iter}")
        if float(self.tol) <= 0.0:
            raise ValueError(f"nonlinear.tol must be positive, got {self.tol}")


@dataclass(slots=True)
class CaseOutput:
    """Optional result files."""

    summary_json: Optional[str] = None
    solution_csv: Optional[str] = None


@dataclass(slots=True)
class CaseConfig:
    """Top-level case configuration container."""

    case: CaseMeta
    problem: CaseProblem = field(default_factory=CaseProblem)
    precond: CasePrecond = field(default_factory=CasePrecond)
    linear: CaseLinear = field(default_factory=CaseLinear)
    nonlinear: CaseNonlinear = field(default_factory=CaseNonlinear)
    output: CaseOutput = field(default_factory=CaseOutput)

    def __post_init__(self) -> None:
        if not isinstance(self.problem, CaseProblem):
            raise TypeError("problem must be CaseProblem (loader must build dataclass).")
        if not isinstance(self.precond, CasePrecond):
            raise TypeError("precond must be CasePrecond (loader must build dataclass).")
        if not isinstance(self.linear, CaseLinear):
            raise TypeError("linear must be CaseLinear (loader must build dataclass).")
        if not isinstance(self.nonlinear, CaseNonlinear):
            raise TypeError("nonlinear must be CaseNonlinear (loader must build dataclass).")
        if not isinstance(self.output, CaseOutput):
            raise TypeError("output must be CaseOutput (loader must build dataclass).")
