"""
Band matrix storage with LU factor / back-substitution primitives.

Storage conventions:
- Logical shape (N, N); entry (i, j) is kept only for -smu <= i - j <= ml.
- mu/ml are the user half-bandwidths; smu >= mu is the storage upper
  half-bandwidth, the extra smu - mu super-diagonals receive LU fill-in
  produced by row interchanges (smu = min(N-1, mu+ml) for factoring).
- One flat float64 buffer, column-major: column j occupies
  data[j*ldim : (j+1)*ldim] and row i of that column sits at offset
  i - j + smu, so every column is contiguous.
"""

from __future__ import annotations

from typing import Optional

import numpy as np


class BandMatrix:
    """N x N banded matrix backed by a flat column-major array."""

    __slots__ = ("N", "mu", "ml", "smu", "ldim", "data")

    def __init__(self, N: int, mu: int, ml: int, smu: Optional[int] = None) -> None:
        N = int(N)
        mu = int(mu)
        ml = int(ml)
        if N <= 0:
            raise ValueError(f"BandMatrix: N must be positive, got {N}")
        if mu < 0 or ml < 0:
            raise ValueError(f"BandMatrix: half-bandwidths must be >= 0, got mu={mu} ml={ml}")
        mu = min(mu, N - 1)
        ml = min(ml, N - 1)
        if smu is None:
            smu = min(N - 1, mu + ml)
        smu = int(smu)
        if smu < mu:
            raise ValueError(f"BandMatrix: storage upper bandwidth smu={smu} < mu={mu}")

        self.N = N
        self.mu = mu
        self.ml = ml
        self.smu = smu
        self.ldim = smu + ml + 1
        self.data = np.zeros(N * self.ldim, dtype=np.float64)

    def column(self, j: int) -> np.ndarray:
        """Writable view of stored column j (length ldim)."""
        start = j * self.ldim
        return self.data[start : start + self.ldim]

    def in_band(self, i: int, j: int) -> bool:
        return 0 <= i < self.N and 0 <= j < self.N and -self.mu <= i - j <= self.ml

    def get(self, i: int, j: int) -> float:
        """Entry (i, j); zero outside the stored band."""
        if not (0 <= i < self.N and 0 <= j < self.N):
            raise IndexError(f"BandMatrix index ({i}, {j}) outside {self.N}x{self.N}")
        d = i - j
        if d < -self.smu or d > self.ml:
            return 0.0
        return float(self.data[j * self.ldim + d + self.smu])

    def set(self, i: int, j: int, value: float) -> None:
        """Write entry (i, j); positions outside [j-mu, j+ml] are rejected."""
        if not self.in_band(i, j):
            raise IndexError(
                f"BandMatrix write ({i}, {j}) outside band mu={self.mu} ml={self.ml} N={self.N}"
            )
        self.data[j * self.ldim + i - j + self.smu] = value

    def set_column_rows(self, j: int, i1: int, i2: int, values: np.ndarray) -> None:
        """Write rows i1..i2 (inclusive) of column j in one slice."""
        if i1 > i2:
            return
        if i1 < max(0, j - self.mu) or i2 > min(self.N - 1, j + self.ml):
            raise IndexError(
                f"BandMatrix column write rows [{i1}, {i2}] of column {j} outside band "
                f"mu={self.mu} ml={self.ml}"
            )
        base = j * self.ldim + self.smu - j
        self.data[base + i1 : base + i2 + 1] = values

    def zero(self) -> None:
        self.data.fill(0.0)

    def to_dense(self) -> np.ndarray:
        """Expand the stored band (including fill-in rows) into a dense array."""
        out = np.zeros((self.N, self.N), dtype=np.float64)
        for j in range(self.N):
            i1 = max(0, j - self.smu)
            i2 = min(self.N - 1, j + self.ml)
            col = self.column(j)
            out[i1 : i2 + 1, j] = col[i1 - j + self.smu : i2 - j + self.smu + 1]
        return out

    @classmethod
    def from_dense(cls, A: np.ndarray, mu: int, ml: int, smu: Optional[int] = None) -> "BandMatrix":
        """Build from a dense array, keeping only the [j-mu, j+ml] band."""
        A = np.asarray(A, dtype=np.float64)
        if A.ndim != 2 or A.shape[0] != A.shape[1]:
            raise ValueError(f"from_dense expects a square 2D array, got shape {A.shape}")
        M = cls(A.shape[0], mu, ml, smu)
        for j in range(M.N):
            i1 = max(0, j - mu)
            i2 = min(M.N - 1, j + ml)
            M.set_column_rows(j, i1, i2, A[i1 : i2 + 1, j])
        return M

    def __repr__(self) -> str:
        return f"BandMatrix(N={self.N}, mu={self.mu}, ml={self.ml}, smu={self.smu})"


def alloc_pivots(N: int) -> np.ndarray:
    return np.zeros(int(N), dtype=np.int64)


def band_factor(A: BandMatrix, pivots: np.ndarray) -> int:
    """
    LU-factor A in place with partial pivoting inside the band.

    Returns 0 on success, or k (1-based) if the k-th pivot is exactly zero;
    elimination stops at that column and A holds a partial factorization.
    """
    n = A.N
    smu = A.smu
    ml = A.ml
    ldim = A.ldim
    a = A.data
    if pivots.shape[0] != n:
        raise ValueError(f"pivots length {pivots.shape[0]} does not match N={n}")

    # Fill-in rows above the user band start from zero.
    n_fill = smu - A.mu
    if n_fill > 0:
        for c in range(n):
            a[c * ldim : c * ldim + n_fill] = 0.0

    for k in range(n - 1):
        ck = k * ldim
        last_row_k = min(n - 1, k + ml)
        # Rows k..last_row_k of column k sit at ck+smu .. ck+smu+(last_row_k-k).
        sub = a[ck + smu : ck + smu + last_row_k - k + 1]
        l = k + int(np.argmax(np.abs(sub)))
        pivots[k] = l

        storage_l = ck + l - k + smu
        if a[storage_l] == 0.0:
            return k + 1

        if l != k:
            a[storage_l], a[ck + smu] = a[ck + smu], a[storage_l]

        # Multipliers below the diagonal.
        mult = -1.0 / a[ck + smu]
        nsub = last_row_k - k
        if nsub > 0:
            a[ck + smu + 1 : ck + smu + 1 + nsub] *= mult

        last_col_k = min(k + smu, n - 1)
        for j in range(k + 1, last_col_k + 1):
            cj = j * ldim
            s_l = cj + l - j + smu
            s_k = cj + k - j + smu
            a_kj = a[s_l]
            if l != k:
                a[s_l] = a[s_k]
                a[s_k] = a_kj
            if a_kj != 0.0 and nsub > 0:
                lo = cj + k + 1 - j + smu
                a[lo : lo + nsub] += a_kj * a[ck + smu + 1 : ck + smu + 1 + nsub]

    pivots[n - 1] = n - 1
    if a[(n - 1) * ldim + smu] == 0.0:
        return n
    return 0


def band_backsolve(A: BandMatrix, pivots: np.ndarray, b: np.ndarray) -> None:
    """Solve A x = b in place using factors from band_factor."""
    n = A.N
    smu = A.smu
    ml = A.ml
    ldim = A.ldim
    a = A.data
    if b.shape[0] != n:
        raise ValueError(f"rhs length {b.shape[0]} does not match N={n}")

    # L y = P b
    for k in range(n - 1):
        l = int(pivots[k])
        mult = b[l]
        if l != k:
            b[l] = b[k]
            b[k] = mult
        last_row_k = min(n - 1, k + ml)
        nsub = last_row_k - k
        if nsub > 0:
            ck = k * ldim + smu
            b[k + 1 : last_row_k + 1] += mult * a[ck + 1 : ck + 1 + nsub]

    # U x = y
    for k in range(n - 1, -1, -1):
        ck = k * ldim + smu
        first_row_k = max(0, k - smu)
        b[k] /= a[ck]
        mult = -b[k]
        nsup = k - first_row_k
        if nsup > 0:
            b[first_row_k:k] += mult * a[ck - nsup : ck]
