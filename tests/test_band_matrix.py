"""
Band storage and band LU tests.

Tests:
1. Dense round trip through the band storage
2. Out-of-band writes are rejected
3. factor + backsolve reproduce a dense reference solve (with pivoting)
4. Zero pivot is reported with its 1-based row index
"""

from __future__ import annotations

import numpy as np
import pytest

from core.band_matrix import BandMatrix, alloc_pivots, band_backsolve, band_factor


def _random_band(N: int, mu: int, ml: int, seed: int = 0, diag_shift: float = 0.0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    A = rng.standard_normal((N, N))
    i, j = np.indices((N, N))
    A[(i - j > ml) | (j - i > mu)] = 0.0
    A += diag_shift * np.eye(N)
    return A


def test_from_dense_to_dense_keeps_band():
    A = _random_band(8, 2, 1, seed=1)
    M = BandMatrix.from_dense(A, mu=2, ml=1)
    np.testing.assert_array_equal(M.to_dense(), A)
    assert M.get(0, 2) == A[0, 2]
    assert M.get(0, 5) == 0.0


def test_out_of_band_write_rejected():
    M = BandMatrix(6, 1, 1)
    M.set(2, 3, 4.0)
    assert M.get(2, 3) == 4.0
    with pytest.raises(IndexError):
        M.set(0, 3, 1.0)
    with pytest.raises(IndexError):
        M.set(5, 3, 1.0)
    with pytest.raises(IndexError):
        M.set_column_rows(3, 1, 4, np.ones(4))


def test_storage_bandwidth_includes_fill_in():
    M = BandMatrix(10, 2, 3)
    assert M.smu == 5
    assert M.ldim == 5 + 3 + 1
    assert M.data.size == 10 * M.ldim
    small = BandMatrix(3, 2, 2)
    assert small.smu == 2


@pytest.mark.parametrize("N,mu,ml", [(1, 0, 0), (5, 0, 0), (12, 2, 3), (12, 3, 1), (9, 1, 1), (7, 6, 6)])
def test_factor_backsolve_matches_dense(N, mu, ml):
    A = _random_band(N, mu, ml, seed=N + 7 * mu + 13 * ml, diag_shift=0.1)
    x_true = np.linspace(-1.0, 2.0, N)
    b = A @ x_true

    M = BandMatrix.from_dense(A, mu, ml)
    piv = alloc_pivots(N)
    assert band_factor(M, piv) == 0

    rhs = b.copy()
    band_backsolve(M, piv, rhs)
    ref = np.linalg.solve(A, b)
    np.testing.assert_allclose(rhs, ref, rtol=1e-8, atol=1e-10)


def test_factor_requires_pivoting():
    # Tiny diagonal forces row interchanges inside the band.
    N = 6
    A = np.zeros((N, N))
    for k in range(N):
        A[k, k] = 1.0e-12
        if k + 1 < N:
            A[k + 1, k] = 1.0
            A[k, k + 1] = 2.0
    M = BandMatrix.from_dense(A, 1, 1)
    piv = alloc_pivots(N)
    assert band_factor(M, piv) == 0
    assert np.any(piv[:-1] != np.arange(N - 1))

    b = np.arange(1.0, N + 1.0)
    x = b.copy()
    band_backsolve(M, piv, x)
    np.testing.assert_allclose(A @ x, b, rtol=1e-9, atol=1e-9)


def test_zero_pivot_reports_row():
    M = BandMatrix(4, 1, 1)
    for k, d in enumerate([1.0, 2.0, 0.0, 4.0]):
        M.set(k, k, d)
    piv = alloc_pivots(4)
    assert band_factor(M, piv) == 3


def test_zero_last_pivot_reports_n():
    M = BandMatrix(3, 1, 1)
    M.set(0, 0, 1.0)
    M.set(1, 1, 1.0)
    piv = alloc_pivots(3)
    assert band_factor(M, piv) == 3
