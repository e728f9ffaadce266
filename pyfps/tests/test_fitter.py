"""
Unit tests for the coefficient solvers.

Tests cover:
  - Objective values against hand-computed formulas
  - Analytic gradients against finite differences
  - NNLS prefilter (zero-weight removal, forced phases, all-zero fallback)
  - Recovery of known coefficients with every solver
  - Non-negativity of bounded solvers
  - Diagnostics records
"""

import numpy as np
import pytest

from pyfps.core.fitter import (
    OBJECTIVES,
    SOLVERS,
    make_objective,
    nnls_prefilter,
    objective_value,
    rwp,
    solve,
)


def _gauss(x, mu, sigma):
    return np.exp(-0.5 * ((x - mu) / sigma) ** 2)


def _problem(c_true=(2.0, 0.5, 0.0), noise=0.0, seed=0):
    """Three overlapping reference patterns and a sample built from them."""
    x = np.linspace(10.0, 60.0, 500)
    X = np.column_stack([
        _gauss(x, 26.6, 0.2) + 0.5 * _gauss(x, 20.9, 0.2) + 0.05,
        _gauss(x, 29.4, 0.3) + 0.3 * _gauss(x, 39.4, 0.3) + 0.05,
        _gauss(x, 12.3, 0.2) + 0.4 * _gauss(x, 24.9, 0.2) + 0.05,
    ])
    y = X @ np.asarray(c_true, dtype=float)
    if noise:
        rng = np.random.default_rng(seed)
        y = y + rng.normal(0.0, noise * y)
    return X, y


def _numeric_grad(f, c, h=1e-6):
    g = np.zeros_like(c)
    for i in range(len(c)):
        e = np.zeros_like(c)
        e[i] = h
        g[i] = (f(c + e) - f(c - e)) / (2 * h)
    return g


class TestObjectives:
    def test_delta(self):
        y = np.array([1.0, 2.0, 3.0])
        yf = np.array([1.5, 2.0, 2.0])
        assert objective_value(y, yf, "Delta") == pytest.approx(0.25 + 0 + 1.0)

    def test_r(self):
        y = np.array([1.0, 2.0, 3.0])
        yf = np.array([1.5, 2.0, 2.0])
        assert objective_value(y, yf, "R") == pytest.approx(np.sqrt(1.25 / 14.0))

    def test_rwp(self):
        y = np.array([1.0, 2.0, 4.0])
        yf = np.array([2.0, 2.0, 2.0])
        expected = np.sqrt((1.0 / 1 + 0 + 4.0 / 4) / (1 + 2 + 4))
        assert rwp(y, yf) == pytest.approx(expected)
        assert objective_value(y, yf, "Rwp") == pytest.approx(expected)

    def test_perfect_fit_is_zero(self):
        X, y = _problem()
        for obj in OBJECTIVES:
            f, _ = make_objective(X, y, obj)
            assert f(np.array([2.0, 0.5, 0.0])) == pytest.approx(0.0, abs=1e-12)

    def test_unknown_objective_raises(self):
        X, y = _problem()
        with pytest.raises(ValueError):
            make_objective(X, y, "chi2")
        with pytest.raises(ValueError):
            objective_value(y, y, "chi2")

    def test_rwp_requires_positive_counts(self):
        X, y = _problem()
        y[10] = 0.0
        with pytest.raises(ValueError):
            make_objective(X, y, "Rwp")

    @pytest.mark.parametrize("obj", OBJECTIVES)
    def test_gradient_matches_finite_difference(self, obj):
        X, y = _problem(noise=0.01)
        f, g = make_objective(X, y, obj)
        c = np.array([1.5, 0.8, 0.2])
        np.testing.assert_allclose(g(c), _numeric_grad(f, c), rtol=1e-4, atol=1e-6)


class TestNNLSPrefilter:
    def test_zero_weight_phase_dropped(self):
        # The unconstrained optimum of C is negative, so NNLS pins it at 0
        X, y = _problem(c_true=(2.0, 0.5, -0.1))
        res = nnls_prefilter(X, y, ["A", "B", "C"])
        assert res.dropped == ["C"]
        assert list(res.keep) == [True, True, False]
        assert res.x[2] == 0.0
        assert np.all(res.x >= 0.0)

    def test_forced_phase_kept(self):
        X, y = _problem(c_true=(2.0, 0.5, -0.1))
        res = nnls_prefilter(X, y, ["A", "B", "C"], force=["C"])
        assert res.dropped == []
        assert res.keep.all()

    def test_all_zero_keeps_largest_column(self):
        X, _ = _problem()
        y = -X[:, 0]
        res = nnls_prefilter(X, y, ["A", "B", "C"])
        assert res.keep.sum() == 1
        assert res.keep[int(np.argmax(X.sum(axis=0)))]


class TestSolve:
    @pytest.mark.parametrize("solver", SOLVERS)
    def test_recovers_coefficients(self, solver):
        X, y = _problem(c_true=(2.0, 0.5, 0.3), noise=0.005)
        x0 = np.array([1.0, 1.0, 1.0])
        res = solve(X, y, solver, "Rwp", x0=x0)
        np.testing.assert_allclose(res.x, [2.0, 0.5, 0.3], rtol=0.05, atol=0.02)

    def test_lbfgsb_nonnegative(self):
        X, y = _problem(c_true=(2.0, 0.5, 0.0))
        # A third column anti-correlated with the residual pulls it negative
        y = y - 0.2 * X[:, 2]
        y = np.clip(y, 1e-3, None)
        res = solve(X, y, "L-BFGS-B", "Delta")
        assert np.all(res.x >= 0.0)

    def test_nnls_nonnegative(self):
        X, y = _problem(c_true=(2.0, 0.5, 0.0))
        y = np.clip(y - 0.2 * X[:, 2], 1e-3, None)
        res = solve(X, y, "NNLS", "Delta")
        assert np.all(res.x >= 0.0)

    def test_unknown_solver_raises(self):
        X, y = _problem()
        with pytest.raises(ValueError):
            solve(X, y, "Powell", "Rwp")

    def test_bad_start_shape_raises(self):
        X, y = _problem()
        with pytest.raises(ValueError):
            solve(X, y, "BFGS", "Rwp", x0=np.ones(2))

    def test_diagnostics(self):
        X, y = _problem(noise=0.01)
        res = solve(X, y, "BFGS", "Delta", x0=np.ones(3), stage="initial")
        d = res.diagnostics
        assert d.stage == "initial"
        assert d.solver == "BFGS"
        assert d.objective == "Delta"
        assert d.n_phases == 3
        assert d.nfev > 0
        assert set(d.to_dict()) == {
            'stage', 'solver', 'objective', 'n_phases', 'success',
            'message', 'value', 'nfev', 'nit',
        }
