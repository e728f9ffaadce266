"""
Resampling of XRPD patterns onto a common 2θ grid.

The library and the sample are usually measured with different step sizes and
ranges.  ``harmonise`` puts both on a single grid spanning the intersection of
their ranges, sampled at the coarser of the two native steps so that no
resolution is invented.  Interpolation is piecewise linear.
"""

from __future__ import annotations

import logging
from typing import Tuple

import numpy as np

from pyfps.core.library import ReferenceLibrary, Sample

log = logging.getLogger(__name__)

# Relative tolerance used when comparing grids and bounds
_GRID_RTOL = 1e-9


def grid_step(x: np.ndarray) -> float:
    """Mean step of a monotonic axis."""
    x = np.asarray(x, dtype=float)
    if len(x) < 2:
        raise ValueError("An axis needs at least 2 points to define a step.")
    return float((x[-1] - x[0]) / (len(x) - 1))


def common_grid(x1: np.ndarray, x2: np.ndarray) -> np.ndarray:
    """
    Grid covering the overlap of *x1* and *x2* at the coarser step.

    The grid starts at the larger of the two minima and never exceeds the
    smaller of the two maxima.  Rebuilding the grid from its own output gives
    the same points, so harmonisation is idempotent.
    """
    lo = max(float(x1[0]), float(x2[0]))
    hi = min(float(x1[-1]), float(x2[-1]))
    if hi <= lo:
        raise ValueError(
            f"2θ ranges do not overlap: [{x1[0]:.3f}, {x1[-1]:.3f}] vs "
            f"[{x2[0]:.3f}, {x2[-1]:.3f}]"
        )
    step = max(grid_step(x1), grid_step(x2))
    n = int(np.floor((hi - lo) / step * (1.0 + _GRID_RTOL))) + 1
    if n < 2:
        raise ValueError("2θ overlap is shorter than one grid step.")
    return lo + np.arange(n) * step


def interpolate(x: np.ndarray, y: np.ndarray, xout: np.ndarray) -> np.ndarray:
    """
    Linear interpolation of (x, y) at *xout*.

    *xout* must lie inside ``[x[0], x[-1]]`` (within floating tolerance);
    extrapolation is never performed.
    """
    x = np.asarray(x, dtype=float)
    xout = np.asarray(xout, dtype=float)
    tol = _GRID_RTOL * max(1.0, abs(float(x[-1])))
    if len(xout) and (xout[0] < x[0] - tol or xout[-1] > x[-1] + tol):
        raise ValueError(
            f"Interpolation outside the source domain: requested "
            f"[{xout[0]:.4f}, {xout[-1]:.4f}], available [{x[0]:.4f}, {x[-1]:.4f}]"
        )
    y = np.asarray(y, dtype=float)
    if y.ndim == 1:
        return np.interp(xout, x, y)
    return np.column_stack([np.interp(xout, x, y[:, j]) for j in range(y.shape[1])])


def harmonise(lib: ReferenceLibrary, smpl: Sample) -> Tuple[ReferenceLibrary, Sample]:
    """
    Resample *lib* and *smpl* onto their common grid.

    Returns new objects; the inputs are not modified.
    """
    grid = common_grid(lib.tth, smpl.tth)
    log.debug(f"Harmonising onto {len(grid)} points, "
              f"[{grid[0]:.3f}, {grid[-1]:.3f}] step {grid_step(grid):.4f}")
    new_lib = ReferenceLibrary(
        grid,
        interpolate(lib.tth, lib.xrd, grid),
        list(lib.phase_ids),
        list(lib.phase_names),
        lib.rir.copy(),
    )
    new_smpl = Sample(grid.copy(), interpolate(smpl.tth, smpl.counts, grid), label=smpl.label)
    return new_lib, new_smpl


def same_axis(x1: np.ndarray, x2: np.ndarray) -> bool:
    """True when two axes have the same length and matching values."""
    x1 = np.asarray(x1, dtype=float)
    x2 = np.asarray(x2, dtype=float)
    if x1.shape != x2.shape:
        return False
    return bool(np.allclose(x1, x2, rtol=_GRID_RTOL, atol=1e-9))


def shifted_curve(
    x: np.ndarray,
    y: np.ndarray,
    shift: float,
    xout: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Shift a curve along 2θ by *shift* and resample it at *xout*.

    Only the points of *xout* that fall inside the shifted domain
    ``[x[0] + shift, x[-1] + shift]`` are evaluated.

    Returns
    -------
    (mask, values)
        Boolean mask over *xout* of the evaluated points, and the resampled
        intensities at those points.
    """
    x = np.asarray(x, dtype=float) + float(shift)
    xout = np.asarray(xout, dtype=float)
    mask = (xout >= x[0]) & (xout <= x[-1])
    return mask, np.interp(xout[mask], x, np.asarray(y, dtype=float))
