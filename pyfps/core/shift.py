"""
Per-phase 2θ shift refinement.

Small residual misalignments between individual reference patterns and the
sample (sample displacement, slightly different cell parameters) degrade the
fit.  ``shift_search`` corrects them with a coarse grid search run
independently for each phase: with every other phase held at its current
coefficient and position, the phase's pattern is moved through
``2 × shift_res + 1`` candidate offsets in ``[−max_shift, +max_shift]`` and the
offset giving the lowest global objective is kept.

This is a one-pass coordinate search, not a joint optimisation over all
shifts; its cost grows linearly with the number of phases.

Once every phase has its offset, the fit window is cut down to the angles
covered by all shifted patterns, the matrix is rebuilt and the coefficients
are refitted from zero.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

import numpy as np

from pyfps.core.fitstate import FitState
from pyfps.core.fitter import SolveDiagnostics, objective_value
from pyfps.core.harmonise import interpolate

log = logging.getLogger(__name__)


@dataclass
class ShiftResult:
    """Outcome of ``shift_search``."""
    shifts: Dict[str, float] = field(default_factory=dict)
    candidates: np.ndarray = field(default_factory=lambda: np.zeros(0))
    n_points_before: int = 0
    n_points_after: int = 0
    diagnostics: Optional[SolveDiagnostics] = None


def shift_candidates(max_shift: float, shift_res: int) -> np.ndarray:
    """Candidate offsets, ordered by increasing magnitude (0 first)."""
    grid = np.linspace(-float(max_shift), float(max_shift), 2 * int(shift_res) + 1)
    return grid[np.argsort(np.abs(grid), kind='mergesort')]


def shift_search(
    state: FitState,
    max_shift: float,
    shift_res: int,
    stage: str = "shift",
) -> ShiftResult:
    """
    Find a 2θ offset for every phase in *state* and refit.

    Raises
    ------
    ValueError
        If the harmonised data range cannot accommodate *max_shift* on both
        sides of the fit window.
    """
    if max_shift <= 0:
        raise ValueError("max_shift must be greater than 0 for the shift search.")
    if shift_res < 1:
        raise ValueError("shift_res must be at least 1.")

    cand = shift_candidates(max_shift, shift_res)
    src_tth = state.source_tth
    lo, hi = src_tth[0] + max_shift, src_tth[-1] - max_shift

    # Points that every candidate of every phase can reach
    common = (state.tth >= lo) & (state.tth <= hi)
    if common.sum() < 2:
        raise ValueError(
            f"Shift of ±{max_shift} leaves fewer than 2 points inside the data "
            f"range [{src_tth[0]:.3f}, {src_tth[-1]:.3f}]."
        )
    tth_c = state.tth[common]
    y_c = state.counts[common]
    fit_c = state.fitted()[common]

    result = ShiftResult(candidates=cand, n_points_before=len(state.tth))
    log.info(f"-Shifting {state.n_phases} phases over {len(cand)} offsets "
             f"in [-{max_shift}, {max_shift}]")

    for j, pid in enumerate(state.phase_ids):
        xj = float(state.x[j])
        base = fit_c - xj * state.xrd[common, j]
        best_shift, best_val = 0.0, np.inf
        for d in cand:
            curve = interpolate(src_tth + d, state.source_xrd[pid], tth_c)
            val = objective_value(y_c, base + xj * curve, state.obj)
            if val < best_val:
                best_shift, best_val = float(d), val
        result.shifts[pid] = best_shift
        log.debug(f"[{stage}] {pid}: shift={best_shift:+.4f}, {state.obj}={best_val:.6g}")

    # Window covered by every shifted pattern
    lo = max(src_tth[0] + s for s in result.shifts.values())
    hi = min(src_tth[-1] + s for s in result.shifts.values())
    keep = (state.tth >= lo) & (state.tth <= hi)
    new_tth = state.tth[keep]
    new_counts = state.counts[keep]
    new_xrd = np.column_stack([
        interpolate(src_tth + result.shifts[pid], state.source_xrd[pid], new_tth)
        for pid in state.phase_ids
    ])
    state.replace_data(new_tth, new_xrd, new_counts)
    for pid, s in result.shifts.items():
        state.shifts[pid] = s
    result.n_points_after = len(new_tth)

    result.diagnostics = state.refit(stage, x0=np.zeros(state.n_phases))
    return result
