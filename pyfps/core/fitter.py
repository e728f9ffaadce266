"""
Coefficient solvers for full pattern summation.

The fitted pattern is ŷ = X·c, where column j of X is the j-th reference
pattern and c the vector of phase coefficients.  Two kinds of solve are
available:

* **NNLS** — ``scipy.optimize.nnls`` (Lawson-Hanson) on min‖X·c − y‖², c ≥ 0.
  Used as a fast prefilter: phases given exactly zero weight are dropped
  before the slower general optimisation.
* **General minimisation** — ``scipy.optimize.minimize`` of a scalar
  objective with one of the methods in ``SOLVERS``.  Only L-BFGS-B enforces
  c ≥ 0 natively; the other methods rely on the pruning loop to remove
  negative coefficients.

Objectives (Chipera & Bish, 2002; Bish & Post, 1989)
----------------------------------------------------
* ``Delta`` — Σ (y − ŷ)²
* ``R``     — √[ Σ (y − ŷ)² / Σ y² ]
* ``Rwp``   — √[ Σ w (y − ŷ)² / Σ w y² ],  w = 1/y

Analytic gradients are passed to the gradient-based methods.  Convergence
flags reported by the optimiser are recorded but never change the outcome:
the returned optimum is always used.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
from scipy.optimize import minimize, nnls

log = logging.getLogger(__name__)


# ===========================================================================
# Constants
# ===========================================================================

SOLVERS    = ("BFGS", "Nelder-Mead", "CG", "L-BFGS-B", "NNLS")
OBJECTIVES = ("Delta", "R", "Rwp")

# Solvers that accept an analytic gradient
_GRADIENT_SOLVERS = frozenset({"BFGS", "CG", "L-BFGS-B"})


# ===========================================================================
# Result records
# ===========================================================================

@dataclass(frozen=True)
class SolveDiagnostics:
    """Outcome of a single coefficient solve."""
    stage: str
    solver: str
    objective: str
    n_phases: int
    success: bool
    message: str
    value: float
    nfev: int = 0
    nit: int = 0

    def to_dict(self) -> Dict:
        return {
            'stage':     self.stage,
            'solver':    self.solver,
            'objective': self.objective,
            'n_phases':  self.n_phases,
            'success':   self.success,
            'message':   self.message,
            'value':     self.value,
            'nfev':      self.nfev,
            'nit':       self.nit,
        }


@dataclass
class SolveResult:
    """Coefficients and diagnostics returned by ``solve``."""
    x: np.ndarray
    diagnostics: SolveDiagnostics


@dataclass
class NNLSResult:
    """Outcome of ``nnls_prefilter``."""
    x: np.ndarray
    keep: np.ndarray
    dropped: List[str] = field(default_factory=list)
    residual_norm: float = 0.0


# ===========================================================================
# Objective functions
# ===========================================================================

def fitted_pattern(X: np.ndarray, x: np.ndarray) -> np.ndarray:
    return X @ np.asarray(x, dtype=float)


def rwp(y: np.ndarray, y_fit: np.ndarray) -> float:
    """Weighted profile residual with weights 1/y."""
    y = np.asarray(y, dtype=float)
    w = 1.0 / y
    return float(np.sqrt(np.sum(w * (y - y_fit) ** 2) / np.sum(w * y ** 2)))


def objective_value(y: np.ndarray, y_fit: np.ndarray, obj: str) -> float:
    """Evaluate objective *obj* for a fitted pattern."""
    y = np.asarray(y, dtype=float)
    r = y - np.asarray(y_fit, dtype=float)
    if obj == "Delta":
        return float(r @ r)
    if obj == "R":
        return float(np.sqrt((r @ r) / (y @ y)))
    if obj == "Rwp":
        return rwp(y, y_fit)
    raise ValueError(f"Unknown objective: {obj!r}. Must be one of {OBJECTIVES}")


def make_objective(
    X: np.ndarray,
    y: np.ndarray,
    obj: str,
) -> Tuple[Callable[[np.ndarray], float], Callable[[np.ndarray], np.ndarray]]:
    """
    Build the objective ``f(c)`` and its gradient ``g(c)`` for matrix *X* and
    sample *y*.

    Raises
    ------
    ValueError
        For an unknown objective name, or non-positive *y* with ``Rwp``.
    """
    X = np.asarray(X, dtype=float)
    y = np.asarray(y, dtype=float)

    if obj == "Delta":
        def f(c):
            r = y - X @ c
            return float(r @ r)

        def g(c):
            r = y - X @ c
            return -2.0 * (X.T @ r)

    elif obj == "R":
        syy = float(y @ y)

        def f(c):
            r = y - X @ c
            return float(np.sqrt((r @ r) / syy))

        def g(c):
            r = y - X @ c
            val = np.sqrt((r @ r) / syy)
            if val <= 0:
                return np.zeros(X.shape[1])
            return -(X.T @ r) / (val * syy)

    elif obj == "Rwp":
        if np.any(y <= 0):
            raise ValueError(
                "The Rwp objective requires strictly positive sample intensities."
            )
        w = 1.0 / y
        swyy = float(np.sum(w * y ** 2))

        def f(c):
            r = y - X @ c
            return float(np.sqrt(np.sum(w * r ** 2) / swyy))

        def g(c):
            r = y - X @ c
            val = np.sqrt(np.sum(w * r ** 2) / swyy)
            if val <= 0:
                return np.zeros(X.shape[1])
            return -(X.T @ (w * r)) / (val * swyy)

    else:
        raise ValueError(f"Unknown objective: {obj!r}. Must be one of {OBJECTIVES}")

    return f, g


# ===========================================================================
# Solvers
# ===========================================================================

def nnls_solve(X: np.ndarray, y: np.ndarray) -> Tuple[np.ndarray, float]:
    """Non-negative least squares; returns (coefficients, residual norm)."""
    X = np.asarray(X, dtype=float)
    x, rnorm = nnls(X, np.asarray(y, dtype=float), maxiter=50 * max(X.shape[1], 1))
    return x, float(rnorm)


def nnls_prefilter(
    X: np.ndarray,
    y: np.ndarray,
    phase_ids: Sequence[str],
    force: Sequence[str] = (),
) -> NNLSResult:
    """
    Run NNLS over the full library and mark zero-weight phases for removal.

    Phases in *force* are always kept.  If every phase receives zero weight,
    the one with the largest column sum is kept so that the fit can proceed.
    """
    x, rnorm = nnls_solve(X, y)
    forced = set(force)
    keep = np.array([(xi > 0) or (pid in forced) for xi, pid in zip(x, phase_ids)],
                    dtype=bool)
    if not keep.any():
        keep[int(np.argmax(np.asarray(X).sum(axis=0)))] = True
    dropped = [pid for pid, k in zip(phase_ids, keep) if not k]
    log.debug(f"NNLS prefilter: kept {int(keep.sum())} of {len(keep)} phases, "
              f"residual norm {rnorm:.4g}")
    return NNLSResult(x=x, keep=keep, dropped=dropped, residual_norm=rnorm)


def solve(
    X: np.ndarray,
    y: np.ndarray,
    solver: str,
    obj: str,
    x0: Optional[np.ndarray] = None,
    stage: str = "fit",
) -> SolveResult:
    """
    Solve for the phase coefficients.

    Parameters
    ----------
    X : ndarray, shape (M, N)
        Reference patterns on the sample grid.
    y : ndarray, shape (M,)
        Sample intensities.
    solver : str
        One of ``SOLVERS``.
    obj : str
        One of ``OBJECTIVES``.  Ignored for ``"NNLS"`` except for the
        reported objective value.
    x0 : ndarray, optional
        Starting coefficients (zero vector when omitted).
    stage : str
        Label recorded in the diagnostics.
    """
    if solver not in SOLVERS:
        raise ValueError(f"Unknown solver: {solver!r}. Must be one of {SOLVERS}")
    X = np.asarray(X, dtype=float)
    y = np.asarray(y, dtype=float)
    n = X.shape[1]
    f, g = make_objective(X, y, obj)

    if solver == "NNLS":
        x, rnorm = nnls_solve(X, y)
        diag = SolveDiagnostics(
            stage=stage, solver=solver, objective=obj, n_phases=n,
            success=True, message="NNLS solution", value=float(f(x)),
        )
        return SolveResult(x=x, diagnostics=diag)

    x0 = np.zeros(n) if x0 is None else np.asarray(x0, dtype=float).copy()
    if x0.shape != (n,):
        raise ValueError(f"x0 has shape {x0.shape}, expected ({n},)")

    kwargs = {}
    if solver in _GRADIENT_SOLVERS:
        kwargs['jac'] = g
    if solver == "L-BFGS-B":
        kwargs['bounds'] = [(0.0, None)] * n
        x0 = np.clip(x0, 0.0, None)

    res = minimize(f, x0, method=solver, **kwargs)
    success = bool(res.success)
    message = str(res.message)
    if not success:
        log.warning(f"{solver} did not report convergence at stage '{stage}' "
                    f"({n} phases): {message}. Using the returned coefficients.")

    diag = SolveDiagnostics(
        stage=stage, solver=solver, objective=obj, n_phases=n,
        success=success, message=message, value=float(res.fun),
        nfev=int(getattr(res, 'nfev', 0) or 0),
        nit=int(getattr(res, 'nit', 0) or 0),
    )
    log.debug(f"[{stage}] {solver}/{obj}: value={diag.value:.6g}, "
              f"nfev={diag.nfev}, success={success}")
    return SolveResult(x=np.asarray(res.x, dtype=float), diagnostics=diag)
