"""
Phase pruning stages of the automated fitting pipeline.

Negative coefficients
---------------------
``remove_negatives`` repeatedly removes every phase with a negative
coefficient (all of them in one batch) and refits with the survivors,
until no coefficient is negative or a single phase is left.  The number of
phases strictly decreases at every iteration, so the loop runs at most
N − 1 times for N phases.

Detection limits
----------------
The limit of detection (LOD) of the internal standard, ``lod`` in wt%, is
translated to every other phase through the reference intensity ratios.  A
phase is taken to be detectable at the same fitted intensity as the standard
at its own LOD, so

    lod_p = lod × RIR_std / RIR_p

Phases whose concentration falls below their ``lod_p`` are removed.
Amorphous phases are exempt from this test and are instead compared with the
separate ``amorphous_lod`` threshold by ``remove_amorphous``.

Phases listed in ``force`` are never removed by any stage.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np

from pyfps.core.concentrations import phase_concentrations
from pyfps.core.fitstate import FitState

log = logging.getLogger(__name__)


@dataclass
class PruneResult:
    """Outcome of ``remove_negatives``."""
    removed: List[str] = field(default_factory=list)
    iterations: int = 0
    phase_counts: List[int] = field(default_factory=list)
    clamped: List[str] = field(default_factory=list)


@dataclass
class LODResult:
    """Outcome of ``remove_below_lod`` / ``remove_amorphous``."""
    removed: List[str] = field(default_factory=list)
    thresholds: Dict[str, float] = field(default_factory=dict)
    refitted: bool = False


# ===========================================================================
# Negative coefficients
# ===========================================================================

def remove_negatives(
    state: FitState,
    force: Sequence[str] = (),
    stage: str = "remove_negatives",
) -> PruneResult:
    """
    Remove negative-coefficient phases and refit until none remain.

    Forced phases are kept even when negative.  If the only negative phases
    left are forced (or a single phase remains with a negative value), their
    coefficients are clamped to zero and reported in ``clamped``.
    """
    forced = set(force)
    result = PruneResult(phase_counts=[state.n_phases])

    while state.n_phases > 1:
        negative = [pid for pid, v in zip(state.phase_ids, state.x) if v < 0]
        if not negative:
            break
        removable = [pid for pid in negative if pid not in forced]
        if not removable:
            break
        if len(removable) == state.n_phases:
            # Every phase is negative and none is forced: keep the best one
            best = state.phase_ids[int(np.argmax(state.x))]
            removable = [pid for pid in removable if pid != best]

        log.info(f"-Reoptimising to remove {len(removable)} negative "
                 f"coefficient(s)...")
        result.removed.extend(state.drop(removable, stage))
        state.refit(stage)
        result.iterations += 1
        result.phase_counts.append(state.n_phases)

    still_negative = [pid for pid, v in zip(state.phase_ids, state.x) if v < 0]
    if still_negative:
        log.warning(f"Clamping negative coefficients of {still_negative} to zero "
                    f"(forced or last remaining phase).")
        state.x = np.clip(state.x, 0.0, None)
        result.clamped = still_negative

    return result


# ===========================================================================
# Detection limits
# ===========================================================================

def estimate_lod(rir: np.ndarray, std_rir: float, lod: float) -> np.ndarray:
    """Per-phase detection limits [wt%] from the standard's limit *lod*."""
    return float(lod) * float(std_rir) / np.asarray(rir, dtype=float)


def _concentrations(state: FitState, std: Optional[str], std_conc: Optional[float]):
    return phase_concentrations(
        state.x, state.phase_ids, state.phase_names, state.rir,
        std=std, std_conc=std_conc,
    )


def remove_below_lod(
    state: FitState,
    std: str,
    std_rir: float,
    lod: float,
    std_conc: Optional[float] = None,
    amorphous: Sequence[str] = (),
    force: Sequence[str] = (),
    stage: str = "lod",
) -> LODResult:
    """
    Remove crystalline phases whose concentration is below their estimated LOD.

    Concentrations are computed in the active mode (sum-to-100 when
    *std_conc* is None, otherwise absolute).  One refit follows only if at
    least one phase was removed.
    """
    df = _concentrations(state, std, std_conc)
    thresholds = estimate_lod(state.rir, std_rir, lod)
    skip = set(amorphous) | set(force)

    result = LODResult(thresholds=dict(zip(state.phase_ids, thresholds.tolist())))
    below = [
        pid for pid, pct, thr in zip(df['phase_id'], df['phase_percent'], thresholds)
        if pid not in skip and pct < thr
    ]
    if len(below) == state.n_phases:
        keep = str(df['phase_id'].iloc[int(np.argmax(df['phase_percent'].to_numpy()))])
        below = [pid for pid in below if pid != keep]
    if not below:
        log.info("-No phases below the estimated detection limits")
        return result

    log.info(f"-Removing {len(below)} phase(s) below detection limit: {below}")
    result.removed = state.drop(below, stage)
    state.refit(stage)
    result.refitted = True
    return result


def remove_amorphous(
    state: FitState,
    amorphous: Sequence[str],
    amorphous_lod: float,
    std: Optional[str] = None,
    std_conc: Optional[float] = None,
    force: Sequence[str] = (),
    stage: str = "amorphous",
) -> LODResult:
    """
    Remove amorphous phases whose concentration is below *amorphous_lod*.

    One refit follows only if at least one phase was removed.
    """
    result = LODResult()
    candidates = [pid for pid in state.phase_ids
                  if pid in set(amorphous) and pid not in set(force)]
    if not candidates:
        return result

    df = _concentrations(state, std, std_conc)
    pct = dict(zip(df['phase_id'], df['phase_percent']))
    result.thresholds = {pid: float(amorphous_lod) for pid in candidates}
    below = [pid for pid in candidates if pct[pid] < amorphous_lod]
    if len(below) == state.n_phases:
        below = below[:-1]
    if not below:
        return result

    log.info(f"-Removing {len(below)} amorphous phase(s) below "
             f"{amorphous_lod} wt%: {below}")
    result.removed = state.drop(below, stage)
    state.refit(stage)
    result.refitted = True
    return result
