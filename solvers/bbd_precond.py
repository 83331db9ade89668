"""
Band-block-diagonal (BBD) preconditioner for Newton-Krylov solves.

Each process approximates its diagonal block of the Jacobian by a band
matrix built from grouped difference quotients of a cheap local residual
Gloc, LU-factors it once per setup and back-substitutes once per Krylov
iteration. No inter-process data is touched after the communication
callback has run, so factor and solve are purely local.

Lifecycle:
    pdata = bbd_alloc(...)            # storage, parameters, counters
    bbd_reinit(pdata, ...)            # new mudq/mldq/dq_rel_u, same storage
    bbd_setup(..., pdata) -> int      # gcomm + DQ Jacobian + band LU
    bbd_solve(..., pdata) -> int      # in-place back-substitution
    bbd_free(pdata)

Return conventions of setup: 0 success; >0 recoverable (1-based index of the
first zero pivot, or the positive flag of gloc/gcomm); <0 unrecoverable
(the negative flag of gloc/gcomm, passed through unchanged).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

import numpy as np

from assembly.band_dq_jacobian import CommFn, LocalFn, build_band_dq_jacobian
from core.band_matrix import BandMatrix, alloc_pivots, band_backsolve, band_factor

logger = logging.getLogger(__name__)

UROUND = float(np.finfo(np.float64).eps)


class BBDConfigurationError(ValueError):
    """Invalid owner, vector backend or bandwidth parameters at allocation."""


class BBDAllocationError(MemoryError):
    """Preconditioner storage could not be obtained."""


@dataclass(slots=True)
class BBDPrecData:
    n_local: int
    mudq: int
    mldq: int
    mu: int
    ml: int
    dq_rel_u: float

    gloc: LocalFn
    gcomm: Optional[CommFn]
    user_data: Any

    PP: Optional[BandMatrix]
    pivots: Optional[np.ndarray]
    gu: Optional[np.ndarray]
    gtemp: Optional[np.ndarray]
    utemp: Optional[np.ndarray]

    rpwsize: int = 0
    ipwsize: int = 0
    nge: int = 0

    # Status of the most recent setup; solve requires it to be 0.
    last_setup_flag: Optional[int] = None
    meta: Dict[str, Any] = field(default_factory=dict)


def _clamp_bandwidth(value: int, n_local: int, name: str) -> int:
    value = int(value)
    if value < 0:
        raise BBDConfigurationError(f"{name} must be >= 0, got {value}")
    return min(value, n_local - 1)


def _resolve_dq_rel_u(dq_rel_u: Optional[float], uround: float) -> float:
    # dq_rel_u <= 0 (or None) selects the default sqrt(unit roundoff).
    if dq_rel_u is not None and float(dq_rel_u) > 0.0:
        return float(dq_rel_u)
    return float(np.sqrt(uround))


def _check_vector_backend(template: Any, n_local: int) -> None:
    """
    The DQ loop needs fancy indexing, in-place elementwise updates and
    np.abs/np.maximum on the iterate, i.e. a real 1-D numpy array.
    """
    if template is None:
        return
    if not isinstance(template, np.ndarray):
        raise BBDConfigurationError(
            f"incompatible vector backend {type(template).__name__}: numpy.ndarray required"
        )
    if template.ndim != 1 or not np.issubdtype(template.dtype, np.floating):
        raise BBDConfigurationError(
            f"incompatible vector backend: need 1-D floating array, got ndim={template.ndim} "
            f"dtype={template.dtype}"
        )
    if template.shape[0] != n_local:
        raise BBDConfigurationError(
            f"template vector length {template.shape[0]} does not match n_local={n_local}"
        )


def bbd_alloc(
    n_local: int,
    mudq: int,
    mldq: int,
    mu: int,
    ml: int,
    dq_rel_u: Optional[float],
    gloc: LocalFn,
    gcomm: Optional[CommFn],
    user_data: Any,
    owner: Any,
) -> BBDPrecData:
    """
    Allocate and initialize the preconditioner data.

    owner is the solver object the preconditioner is attached to; its
    optional ``template`` (local iterate) is used to validate the vector
    backend and its optional ``uround`` to default dq_rel_u.
    """
    if owner is None:
        raise BBDConfigurationError("owner solver memory is None")
    n_local = int(n_local)
    if n_local <= 0:
        raise BBDConfigurationError(f"n_local must be positive, got {n_local}")
    if gloc is None or not callable(gloc):
        raise BBDConfigurationError("gloc must be callable")
    if gcomm is not None and not callable(gcomm):
        raise BBDConfigurationError("gcomm must be callable or None")

    _check_vector_backend(getattr(owner, "template", None), n_local)

    mudq = _clamp_bandwidth(mudq, n_local, "mudq")
    mldq = _clamp_bandwidth(mldq, n_local, "mldq")
    mu = _clamp_bandwidth(mu, n_local, "mu")
    ml = _clamp_bandwidth(ml, n_local, "ml")

    uround = float(getattr(owner, "uround", UROUND))
    rel_u = _resolve_dq_rel_u(dq_rel_u, uround)

    # Storage upper bandwidth includes room for LU fill-in.
    smu = min(n_local - 1, mu + ml)
    try:
        PP = BandMatrix(n_local, mu, ml, smu)
        pivots = alloc_pivots(n_local)
        gu = np.zeros(n_local, dtype=np.float64)
        gtemp = np.zeros(n_local, dtype=np.float64)
        utemp = np.zeros(n_local, dtype=np.float64)
    except MemoryError as exc:
        raise BBDAllocationError(
            f"cannot allocate BBD storage for n_local={n_local} mu={mu} ml={ml}"
        ) from exc

    pdata = BBDPrecData(
        n_local=n_local,
        mudq=mudq,
        mldq=mldq,
        mu=mu,
        ml=ml,
        dq_rel_u=rel_u,
        gloc=gloc,
        gcomm=gcomm,
        user_data=user_data,
        PP=PP,
        pivots=pivots,
        gu=gu,
        gtemp=gtemp,
        utemp=utemp,
        rpwsize=int(PP.data.size) + 3 * n_local,
        ipwsize=n_local,
        nge=0,
    )
    logger.debug(
        "bbd_alloc: n_local=%d mudq=%d mldq=%d mu=%d ml=%d smu=%d dq_rel_u=%.3e",
        n_local,
        mudq,
        mldq,
        mu,
        ml,
        smu,
        rel_u,
    )
    return pdata


def bbd_reinit(
    pdata: BBDPrecData,
    n_local: int,
    mudq: int,
    mldq: int,
    dq_rel_u: Optional[float],
    *,
    uround: float = UROUND,
) -> BBDPrecData:
    """Change the DQ bandwidths/increment; matrix and work storage are kept."""
    if pdata is None or pdata.PP is None:
        raise BBDConfigurationError("bbd_reinit called on freed or missing preconditioner data")
    n_local = int(n_local)
    if n_local != pdata.n_local:
        raise BBDConfigurationError(
            f"bbd_reinit cannot change n_local ({pdata.n_local} -> {n_local}); allocate anew"
        )
    pdata.mudq = _clamp_bandwidth(mudq, n_local, "mudq")
    pdata.mldq = _clamp_bandwidth(mldq, n_local, "mldq")
    pdata.dq_rel_u = _resolve_dq_rel_u(dq_rel_u, uround)
    pdata.nge = 0
    pdata.last_setup_flag = None
    return pdata


def bbd_setup(
    u: np.ndarray,
    uscale: Optional[np.ndarray],
    fval: Optional[np.ndarray],
    fscale: Optional[np.ndarray],
    vtemp1: Optional[np.ndarray],
    vtemp2: Optional[np.ndarray],
    func: Any,
    uround: float,
    counters: Any,
    pdata: BBDPrecData,
) -> int:
    """
    Preconditioner setup slot.

    fval/fscale/vtemp1/vtemp2/func/uround/counters belong to the slot
    signature; the band block only needs u, uscale and its own scratch.
    Gloc evaluations are accumulated in pdata.nge.
    """
    PP = pdata.PP
    if PP is None:
        raise BBDConfigurationError("bbd_setup called after bbd_free")
    n = pdata.n_local
    u = np.asarray(u, dtype=np.float64)
    if uscale is None:
        uscale = np.ones(n, dtype=np.float64)

    PP.zero()
    flag, stats = build_band_dq_jacobian(
        PP,
        u,
        uscale,
        mudq=pdata.mudq,
        mldq=pdata.mldq,
        dq_rel_u=pdata.dq_rel_u,
        gloc=pdata.gloc,
        gcomm=pdata.gcomm,
        user_data=pdata.user_data,
        gu=pdata.gu,
        gtemp=pdata.gtemp,
        utemp=pdata.utemp,
    )
    pdata.nge += int(stats["n_gloc_calls"])
    pdata.meta["last_dq_stats"] = stats
    if flag != 0:
        pdata.last_setup_flag = flag
        return flag

    ier = band_factor(PP, pdata.pivots)
    pdata.last_setup_flag = ier
    if ier > 0:
        logger.info("bbd_setup: zero pivot in band LU at row %d (recoverable)", ier)
    return ier


def bbd_solve(
    u: np.ndarray,
    uscale: Optional[np.ndarray],
    fval: Optional[np.ndarray],
    fscale: Optional[np.ndarray],
    v: np.ndarray,
    pdata: BBDPrecData,
) -> int:
    """Preconditioner solve slot: v <- P^{-1} v in place."""
    band_backsolve(pdata.PP, pdata.pivots, v)
    return 0


def bbd_free(pdata: Optional[BBDPrecData]) -> None:
    if pdata is None:
        return
    pdata.PP = None
    pdata.pivots = None
    pdata.gu = None
    pdata.gtemp = None
    pdata.utemp = None
    pdata.last_setup_flag = None


def bbd_get_workspace(pdata: BBDPrecData) -> Tuple[int, int]:
    """(real words, integer words) held by the local preconditioner."""
    return int(pdata.rpwsize), int(pdata.ipwsize)


def bbd_get_num_gloc_evals(pdata: BBDPrecData) -> int:
    return int(pdata.nge)
