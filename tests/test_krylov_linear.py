"""
Krylov linear layer tests.

Tests:
1. Forcing term: constant, Eisenstat-Walker update, safeguard and floor
2. Linear setup restarts the forcing sequence
3. J v difference quotient is accurate for badly scaled unknowns
4. A failing preconditioner solve aborts lsolve with its own flag
5. Residual-reduced Krylov results are accepted; non-reducing ones are not
"""

from __future__ import annotations

import numpy as np
import pytest

from solvers.krylov_linear import KrylovLinearSolver
from solvers.linear_types import LinearSolveResult
from solvers.nonlinear_types import NLSStatus


def _tridiag(n: int) -> np.ndarray:
    return 3.0 * np.eye(n) + np.diag(-1.0 * np.ones(n - 1), 1) + np.diag(-1.0 * np.ones(n - 1), -1)


def _linear_func(A: np.ndarray, b: np.ndarray):
    def func(y, F, mem):
        F[:] = A @ y - b
        return 0

    return func


def _solver(n: int = 8, **kwargs) -> KrylovLinearSolver:
    A = _tridiag(n)
    return KrylovLinearSolver(_linear_func(A, np.ones(n)), np.zeros(n), **kwargs)


def test_constant_forcing_uses_rtol():
    ls = _solver(forcing="constant", rtol=1e-7)
    assert ls.forcing_term(1.0) == 1e-7
    assert ls.forcing_term(1e-6) == 1e-7


def test_eisenstat_walker_sequence():
    ls = _solver(rtol=1e-3, eta_min=1e-4)
    assert ls.forcing_term(1.0) == pytest.approx(1e-3)
    # ||F|| dropped 10x: eta = 0.9 * 0.1^2
    assert ls.forcing_term(0.1) == pytest.approx(9e-3)
    # a 1000x drop would give 9e-7; floored at eta_min
    assert ls.forcing_term(1e-4) == pytest.approx(1e-4)


def test_eisenstat_walker_safeguard():
    ls = _solver(rtol=0.5, eta_min=0.0)
    assert ls.forcing_term(1.0) == pytest.approx(0.5)
    # gamma * eta_prev^2 = 0.225 > 0.1 keeps eta from falling to 9e-3
    assert ls.forcing_term(0.1) == pytest.approx(0.225)


def test_first_eta_is_floored():
    ls = _solver(rtol=1e-10, eta_min=1e-4)
    assert ls.forcing_term(1.0) == pytest.approx(1e-4)


def test_lsetup_restarts_forcing():
    ls = _solver(rtol=1e-3, eta_min=0.0)
    ls.forcing_term(1.0)
    ls.forcing_term(0.1)
    assert ls.lsetup(np.zeros(8), np.zeros(8), False, None) == 0
    assert ls.forcing_term(0.01) == pytest.approx(1e-3)


@pytest.mark.parametrize("scale", [1.0e-4, 1.0, 1.0e4])
def test_jtimes_with_unknown_scaling(scale):
    n = 10
    A = _tridiag(n)
    ls = KrylovLinearSolver(_linear_func(A, np.zeros(n)), np.zeros(n), uscale=np.full(n, scale))
    y = np.linspace(-2.0, 3.0, n) / scale
    v = np.cos(np.arange(n, dtype=float))
    ls.func(y, ls._f0, None)
    Jv = ls.jtimes(y, v, None)
    np.testing.assert_allclose(Jv, A @ v, rtol=1e-5, atol=1e-6)
    assert ls.counters.njve == 1
    assert np.all(ls.jtimes(y, np.zeros(n), None) == 0.0)


def test_psolve_failure_propagates():
    n = 8
    for code in (2, -3):
        ls = _solver(n)
        ls.set_preconditioner(lambda *args: 0, lambda u, us, f, fs, v, pdata: code, None)
        assert ls.lsetup(np.zeros(n), np.zeros(n), False, None) == 0
        b = -np.ones(n)
        b_before = b.copy()
        assert ls.lsolve(np.zeros(n), b, None) == code
        assert ls.counters.last_flag == code
        assert ls.counters.nps >= 1
        np.testing.assert_array_equal(b, b_before)


def test_stale_preconditioner_refuses_solve():
    n = 8
    ls = _solver(n)
    ls.set_preconditioner(lambda *args: 1, lambda *args: 0, None)
    assert ls.lsetup(np.zeros(n), np.zeros(n), False, None) == 1
    assert ls.lsolve(np.zeros(n), np.ones(n), None) == NLSStatus.LSOLVE_RECOVERABLE


def _fixed_result(n: int, rel: float) -> LinearSolveResult:
    return LinearSolveResult(
        x=np.full(n, 7.0),
        converged=False,
        n_iter=3,
        residual_norm=rel,
        rel_residual=rel,
        method="gmres",
        message="info=3",
        diag={"info": 3},
    )


def test_residual_reduced_step_accepted(monkeypatch):
    n = 8
    ls = _solver(n)
    monkeypatch.setattr(ls, "_krylov_solve", lambda y, b, eta, mem: _fixed_result(n, 0.5))
    b = np.ones(n)
    assert ls.lsolve(np.zeros(n), b, None) == 0
    np.testing.assert_array_equal(b, np.full(n, 7.0))
    assert ls.counters.ncfl == 1

    monkeypatch.setattr(ls, "_krylov_solve", lambda y, b, eta, mem: _fixed_result(n, 1.5))
    b = np.ones(n)
    assert ls.lsolve(np.zeros(n), b, None) == NLSStatus.LSOLVE_RECOVERABLE
    np.testing.assert_array_equal(b, np.ones(n))
    assert ls.counters.ncfl == 2


def test_lsolve_solves_linear_system():
    n = 12
    A = _tridiag(n)
    ls = KrylovLinearSolver(_linear_func(A, np.ones(n)), np.zeros(n), forcing="constant", rtol=1e-8, restart=n)
    b = np.arange(1.0, n + 1.0)
    x = b.copy()
    assert ls.lsolve(np.zeros(n), x, None) == 0
    np.testing.assert_allclose(A @ x, b, rtol=1e-5)
