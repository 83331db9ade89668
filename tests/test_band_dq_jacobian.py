"""
Grouped difference-quotient Jacobian tests.

Tests:
1. Column groups cover every column exactly once; ngroups = min(width, L)
2. Identity Gloc gives the identity band
3. Linear Gloc: the assembled band is independent of the increment
4. Gloc is called exactly 1 + ngroups times
5. Retained band narrower than the DQ band keeps only the in-band quotients
6. No write outside [j-mu, j+ml]
"""

from __future__ import annotations

import numpy as np
import pytest

from assembly.band_dq_jacobian import band_column_groups, build_band_dq_jacobian
from core.band_matrix import BandMatrix


def _banded_operator(L: int, mu: int, ml: int, seed: int = 3) -> np.ndarray:
    rng = np.random.default_rng(seed)
    A = rng.uniform(-1.0, 1.0, size=(L, L))
    i, j = np.indices((L, L))
    A[(i - j > ml) | (j - i > mu)] = 0.0
    A += (mu + ml + 2) * np.eye(L)
    return A


def _linear_gloc(A: np.ndarray, calls: list | None = None):
    def gloc(n_local, u, g_out, user_data):
        if calls is not None:
            calls.append(u.copy())
        g_out[:] = A @ u
        return 0

    return gloc


@pytest.mark.parametrize("L,mudq,mldq", [(10, 1, 1), (10, 0, 0), (7, 2, 4), (20, 3, 2), (5, 4, 4), (3, 5, 1)])
def test_groups_cover_each_column_once(L, mudq, mldq):
    groups = band_column_groups(L, mudq, mldq)
    assert len(groups) == min(mudq + mldq + 1, L)
    cols = np.concatenate(groups)
    assert sorted(cols.tolist()) == list(range(L))
    width = mudq + mldq + 1
    for g in groups:
        assert np.all(np.diff(g) == width)


def test_identity_gloc_gives_identity_band():
    L = 10
    J = BandMatrix(L, 1, 1)
    rng = np.random.default_rng(0)
    u = rng.uniform(-3.0, 3.0, size=L)
    u[4] = 0.0
    uscale = rng.uniform(0.1, 10.0, size=L)

    def gloc(n_local, uu, g_out, user_data):
        g_out[:] = uu

    for rel in (1.0e-8, 1.0e-4, 0.3):
        J.zero()
        flag, stats = build_band_dq_jacobian(J, u, uscale, mudq=1, mldq=1, dq_rel_u=rel, gloc=gloc)
        assert flag == 0
        D = J.to_dense()
        np.testing.assert_allclose(np.diag(D), np.ones(L), atol=1e-6)
        off = D - np.diag(np.diag(D))
        assert np.all(off == 0.0)


def test_linear_gloc_increment_independent():
    L, mu, ml = 15, 2, 2
    A = _banded_operator(L, mu, ml)
    u = np.linspace(-1.0, 1.0, L)
    uscale = np.ones(L)
    gloc = _linear_gloc(A)

    J1 = BandMatrix(L, mu, ml)
    J2 = BandMatrix(L, mu, ml)
    build_band_dq_jacobian(J1, u, uscale, mudq=mu, mldq=ml, dq_rel_u=1.0e-6, gloc=gloc)
    build_band_dq_jacobian(J2, u, uscale, mudq=mu, mldq=ml, dq_rel_u=2.0e-6, gloc=gloc)

    np.testing.assert_allclose(J1.to_dense(), J2.to_dense(), rtol=1e-6, atol=1e-7)
    np.testing.assert_allclose(J1.to_dense(), A, rtol=1e-6, atol=1e-7)


@pytest.mark.parametrize("L,mudq,mldq", [(10, 1, 1), (30, 2, 3), (4, 3, 3)])
def test_gloc_call_count(L, mudq, mldq):
    A = _banded_operator(L, mudq, mldq)
    calls: list = []
    comm_calls: list = []

    def gcomm(n_local, u, user_data):
        comm_calls.append(n_local)
        return 0

    J = BandMatrix(L, mudq, mldq)
    flag, stats = build_band_dq_jacobian(
        J, np.ones(L), np.ones(L), mudq=mudq, mldq=mldq, dq_rel_u=1e-7, gloc=_linear_gloc(A, calls), gcomm=gcomm
    )
    assert flag == 0
    expected = 1 + min(mudq + mldq + 1, L)
    assert len(calls) == expected
    assert stats["n_gloc_calls"] == expected
    assert comm_calls == [L]


def test_narrow_retained_band_discards_outer_quotients():
    L = 12
    A = _banded_operator(L, 2, 2, seed=11)
    J = BandMatrix(L, 1, 1, smu=2)
    flag, _ = build_band_dq_jacobian(
        J, np.zeros(L), np.ones(L), mudq=2, mldq=2, dq_rel_u=1e-6, gloc=_linear_gloc(A)
    )
    assert flag == 0
    D = J.to_dense()
    i, j = np.indices((L, L))
    tri = np.abs(i - j) <= 1
    np.testing.assert_allclose(D[tri], A[tri], rtol=1e-6, atol=1e-7)
    assert np.all(D[~tri] == 0.0)


def test_no_write_outside_retained_band(monkeypatch):
    L, mu, ml = 9, 1, 2
    writes = []
    orig = BandMatrix.set_column_rows

    def recorder(self, j, i1, i2, values):
        writes.append((j, i1, i2))
        return orig(self, j, i1, i2, values)

    monkeypatch.setattr(BandMatrix, "set_column_rows", recorder)
    A = _banded_operator(L, 3, 3)
    J = BandMatrix(L, mu, ml)
    build_band_dq_jacobian(J, np.ones(L), np.ones(L), mudq=3, mldq=3, dq_rel_u=1e-6, gloc=_linear_gloc(A))

    assert sorted(w[0] for w in writes) == list(range(L))
    for j, i1, i2 in writes:
        assert i1 == max(0, j - mu)
        assert i2 == min(L - 1, j + ml)


def test_zero_iterate_uses_scale_floor():
    L = 5
    seen = []

    def gloc(n_local, u, g_out, user_data):
        seen.append(u.copy())
        g_out[:] = 3.0 * u

    J = BandMatrix(L, 0, 0)
    uscale = np.full(L, 4.0)
    build_band_dq_jacobian(J, np.zeros(L), uscale, mudq=0, mldq=0, dq_rel_u=1e-3, gloc=gloc)
    # One group of width 1 perturbs every column by rel * 1/uscale.
    np.testing.assert_allclose(seen[1], np.full(L, 1e-3 / 4.0))
    np.testing.assert_allclose(np.diag(J.to_dense()), np.full(L, 3.0), rtol=1e-9)


def test_callback_failures_pass_through():
    L = 6
    J = BandMatrix(L, 1, 1)
    calls = {"n": 0}

    def gloc(n_local, u, g_out, user_data):
        calls["n"] += 1
        g_out[:] = u
        return -4 if calls["n"] == 2 else 0

    flag, stats = build_band_dq_jacobian(J, np.ones(L), np.ones(L), mudq=1, mldq=1, dq_rel_u=1e-6, gloc=gloc)
    assert flag == -4
    assert stats["n_gloc_calls"] == 2

    flag, stats = build_band_dq_jacobian(
        J, np.ones(L), np.ones(L), mudq=1, mldq=1, dq_rel_u=1e-6, gloc=gloc, gcomm=lambda n, u, d: 2
    )
    assert flag == 2
    assert stats["n_gloc_calls"] == 0
