"""
Banded difference-quotient Jacobian of the local approximate residual Gloc.

Columns are grouped by index modulo width = mudq + mldq + 1: two columns of
one group are more than the difference-quotient bandwidth apart, so their
perturbations never reach a common output row and one Gloc call serves the
whole group. Total Gloc calls per build: 1 + min(width, n_local).
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np

from core.band_matrix import BandMatrix

logger = logging.getLogger(__name__)

LocalFn = Callable[[int, np.ndarray, np.ndarray, Any], Optional[int]]
CommFn = Callable[[int, np.ndarray, Any], Optional[int]]


def band_column_groups(n_local: int, mudq: int, mldq: int) -> List[np.ndarray]:
    """Column index groups used by the grouped difference quotients."""
    width = int(mudq) + int(mldq) + 1
    ngroups = min(width, int(n_local))
    return [np.arange(g, n_local, width, dtype=np.int64) for g in range(ngroups)]


def _call_status(fn: Callable[..., Optional[int]], *args) -> int:
    flag = fn(*args)
    if flag is None:
        return 0
    return int(flag)


def build_band_dq_jacobian(
    J: BandMatrix,
    u: np.ndarray,
    uscale: np.ndarray,
    *,
    mudq: int,
    mldq: int,
    dq_rel_u: float,
    gloc: LocalFn,
    gcomm: Optional[CommFn] = None,
    user_data: Any = None,
    gu: Optional[np.ndarray] = None,
    gtemp: Optional[np.ndarray] = None,
    utemp: Optional[np.ndarray] = None,
) -> Tuple[int, Dict[str, Any]]:
    """
    Fill J with difference quotients of gloc around u.

    Only rows [max(0, j-J.mu), min(n-1, j+J.ml)] of each column j are stored;
    quotients outside the retained band are discarded. gu/gtemp/utemp are
    optional scratch arrays of length n_local, reused when given.

    Returns (flag, stats). flag is 0 on success or the first nonzero status
    returned by gcomm/gloc, passed through unchanged.
    """
    n = J.N
    u = np.asarray(u, dtype=np.float64)
    uscale = np.asarray(uscale, dtype=np.float64)
    if u.shape != (n,):
        raise ValueError(f"u shape {u.shape} does not match n_local={n}")
    if uscale.shape != (n,):
        raise ValueError(f"uscale shape {uscale.shape} does not match n_local={n}")
    if dq_rel_u <= 0.0:
        raise ValueError(f"dq_rel_u must be positive, got {dq_rel_u}")

    if gu is None:
        gu = np.empty(n, dtype=np.float64)
    if gtemp is None:
        gtemp = np.empty(n, dtype=np.float64)
    if utemp is None:
        utemp = np.empty(n, dtype=np.float64)
    np.copyto(utemp, u)

    width = int(mudq) + int(mldq) + 1
    groups = band_column_groups(n, mudq, mldq)
    stats: Dict[str, Any] = {
        "width": width,
        "ngroups": len(groups),
        "n_gloc_calls": 0,
    }

    if gcomm is not None:
        flag = _call_status(gcomm, n, u, user_data)
        if flag != 0:
            logger.warning("communication callback failed with flag=%d", flag)
            return flag, stats

    flag = _call_status(gloc, n, utemp, gu, user_data)
    stats["n_gloc_calls"] += 1
    if flag != 0:
        logger.warning("local function failed at base point with flag=%d", flag)
        return flag, stats

    mu = J.mu
    ml = J.ml
    for group, cols in enumerate(groups):
        inc = dq_rel_u * np.maximum(np.abs(u[cols]), 1.0 / uscale[cols])
        utemp[cols] += inc

        flag = _call_status(gloc, n, utemp, gtemp, user_data)
        stats["n_gloc_calls"] += 1
        utemp[cols] = u[cols]
        if flag != 0:
            logger.warning("local function failed in group %d with flag=%d", group, flag)
            return flag, stats

        inc_inv = 1.0 / inc
        for j, inv in zip(cols, inc_inv):
            j = int(j)
            i1 = max(0, j - mu)
            i2 = min(n - 1, j + ml)
            J.set_column_rows(j, i1, i2, inv * (gtemp[i1 : i2 + 1] - gu[i1 : i2 + 1]))

    logger.debug(
        "band DQ Jacobian: n=%d width=%d ngroups=%d gloc_calls=%d",
        n,
        width,
        stats["ngroups"],
        stats["n_gloc_calls"],
    )
    return 0, stats
