"""
2θ alignment of a sample to an internal standard.

The sample is shifted along 2θ by a constant offset δ and compared with the
pure pattern of the standard inside an alignment window.  In automatic mode δ
is found by bounded scalar minimisation of ``1 − r``, where *r* is the Pearson
correlation between the standard and the shifted sample.  In manual mode δ is
applied as given.

The aligned sample keeps its own grid points: the shifted curve is
re-evaluated on the original angles that still lie inside the shifted
domain, so up to ⌈|δ|/step⌉ points are lost at one edge.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
from scipy.optimize import minimize_scalar

from pyfps.core.harmonise import shifted_curve
from pyfps.core.library import Sample

log = logging.getLogger(__name__)

#: Fraction of the shift bound above which an alignment is flagged as suspect
SATURATION_FRACTION = 0.95


@dataclass(frozen=True)
class AlignmentResult:
    """Outcome of ``align_sample``."""
    shift: float
    sample: Sample
    suspect: bool
    manual: bool
    correlation: Optional[float] = None


def _correlation(a: np.ndarray, b: np.ndarray) -> float:
    if len(a) < 3:
        return 0.0
    sa, sb = float(np.std(a)), float(np.std(b))
    if sa <= 0 or sb <= 0:
        return 0.0
    return float(np.mean((a - a.mean()) * (b - b.mean())) / (sa * sb))


def shift_objective(
    shift: float,
    smpl_tth: np.ndarray,
    smpl_counts: np.ndarray,
    std_tth: np.ndarray,
    std_counts: np.ndarray,
) -> float:
    """
    Dissimilarity ``1 − r`` between the standard and the sample shifted by *shift*.

    The shifted sample is evaluated on the standard's points that fall inside
    the shifted sample domain.  Returns 2.0 (worst value) when fewer than 3
    points overlap.
    """
    mask, y = shifted_curve(smpl_tth, smpl_counts, shift, std_tth)
    if mask.sum() < 3:
        return 2.0
    return 1.0 - _correlation(std_counts[mask], y)


def align_sample(
    smpl: Sample,
    std_tth: np.ndarray,
    std_counts: np.ndarray,
    max_shift: float,
    xmin: Optional[float] = None,
    xmax: Optional[float] = None,
    manual: bool = False,
) -> AlignmentResult:
    """
    Align *smpl* to the pattern of the internal standard.

    Parameters
    ----------
    smpl : Sample
        Measured pattern.
    std_tth, std_counts : array_like
        Pure pattern of the internal standard.
    max_shift : float
        Search bound [degrees 2θ] in automatic mode, or the shift itself in
        manual mode.
    xmin, xmax : float, optional
        Alignment window.  Defaults to the full sample range.
    manual : bool
        Apply *max_shift* directly instead of searching.

    Returns
    -------
    AlignmentResult
        ``shift`` always satisfies ``|shift| <= |max_shift|``; ``suspect`` is
        set when an automatic search ended within 5 % of its bound.
    """
    std_tth = np.asarray(std_tth, dtype=float)
    std_counts = np.asarray(std_counts, dtype=float)
    xmin = float(smpl.tth[0]) if xmin is None else float(xmin)
    xmax = float(smpl.tth[-1]) if xmax is None else float(xmax)
    if xmax <= xmin:
        raise ValueError(f"Alignment window is empty: [{xmin}, {xmax}]")

    correlation = None
    if manual:
        shift = float(max_shift)
    else:
        if max_shift <= 0:
            raise ValueError("The maximum alignment shift must be greater than 0.")
        sw = (smpl.tth >= xmin) & (smpl.tth <= xmax)
        rw = (std_tth >= xmin) & (std_tth <= xmax)
        if sw.sum() < 3 or rw.sum() < 3:
            raise ValueError(
                f"Alignment window [{xmin}, {xmax}] contains too few points."
            )
        s_tth, s_counts = smpl.tth[sw], smpl.counts[sw]
        r_tth, r_counts = std_tth[rw], std_counts[rw]
        res = minimize_scalar(
            shift_objective,
            bounds=(-float(max_shift), float(max_shift)),
            args=(s_tth, s_counts, r_tth, r_counts),
            method='bounded',
        )
        shift = float(np.clip(res.x, -max_shift, max_shift))
        correlation = 1.0 - float(res.fun)
        log.debug(f"Alignment search: shift={shift:.4f}, r={correlation:.4f}, "
                  f"nfev={res.nfev}")

    suspect = (not manual) and abs(shift) >= SATURATION_FRACTION * abs(max_shift)
    aligned = apply_shift(smpl, shift)
    return AlignmentResult(shift=shift, sample=aligned, suspect=suspect,
                           manual=manual, correlation=correlation)


def apply_shift(smpl: Sample, shift: float) -> Sample:
    """
    Shift *smpl* by *shift* and re-evaluate it on its own grid points.

    The output has at most as many points as the input.
    """
    if shift == 0:
        return smpl.copy()
    mask, y = shifted_curve(smpl.tth, smpl.counts, shift, smpl.tth)
    return Sample(smpl.tth[mask], y, label=smpl.label)


def window_bounds(tth_window: Optional[Tuple[float, float]], x: np.ndarray) -> Tuple[float, float]:
    """Resolve an optional (min, max) window against an axis."""
    if tth_window is None:
        return float(x[0]), float(x[-1])
    lo, hi = float(tth_window[0]), float(tth_window[1])
    return min(lo, hi), max(lo, hi)
