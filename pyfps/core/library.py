"""
Reference library and sample containers for full pattern summation.

A ``ReferenceLibrary`` holds pure-phase XRPD patterns measured on one shared
2θ axis, together with the phase metadata needed for quantification:

* ``phase_id``   — unique identifier of the reference pattern (e.g. ``"QUA.1"``)
* ``phase_name`` — mineral name, used to group several references of the same
  mineral (e.g. two quartz patterns) in the summary table
* ``rir``        — reference intensity ratio relative to corundum

A ``Sample`` is the measured (2θ, counts) pattern to be quantified.

Both objects are treated as read-only inputs by the fitting pipeline, which
always works on copies.
"""

from __future__ import annotations

import copy
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd


class ReferenceLibrary:
    """
    Library of pure reference patterns on a common 2θ axis.

    Parameters
    ----------
    tth : array_like
        Strictly increasing 2θ axis [degrees], length M.
    xrd : array_like
        Intensity matrix of shape (M, N); column j is the pattern of
        ``phase_ids[j]``.  A 1-D array is accepted for a single phase.
    phase_ids : sequence of str
        Unique identifiers, one per column of *xrd*.
    phase_names : sequence of str
        Mineral names (non-unique), one per phase id.
    rir : sequence of float
        Reference intensity ratios (> 0), one per phase id.

    Raises
    ------
    ValueError
        If the axis, matrix and metadata are inconsistent.
    """

    def __init__(
        self,
        tth: np.ndarray,
        xrd: np.ndarray,
        phase_ids: Sequence[str],
        phase_names: Sequence[str],
        rir: Sequence[float],
    ):
        tth = np.asarray(tth, dtype=float)
        xrd = np.asarray(xrd, dtype=float)
        if xrd.ndim == 1:
            xrd = xrd[:, np.newaxis]
        phase_ids = [str(p) for p in phase_ids]
        phase_names = [str(p) for p in phase_names]
        rir = np.asarray(rir, dtype=float)

        if tth.ndim != 1 or len(tth) < 2:
            raise ValueError("Library tth must be a 1-D array with at least 2 points.")
        if np.any(np.diff(tth) <= 0):
            raise ValueError("Library tth must be strictly increasing.")
        if xrd.ndim != 2 or xrd.shape[0] != len(tth):
            raise ValueError(
                f"Library xrd has {xrd.shape[0]} rows but tth has {len(tth)} points."
            )
        if len(set(phase_ids)) != len(phase_ids):
            raise ValueError("Library phase ids must be unique.")
        if not (xrd.shape[1] == len(phase_ids) == len(phase_names) == len(rir)):
            raise ValueError(
                "Library metadata does not match the intensity matrix: "
                f"{xrd.shape[1]} columns, {len(phase_ids)} ids, "
                f"{len(phase_names)} names, {len(rir)} RIRs."
            )
        if np.any(~np.isfinite(rir)) or np.any(rir <= 0):
            raise ValueError("Reference intensity ratios must be positive.")

        self.tth = tth
        self.xrd = xrd
        self.phase_ids: List[str] = phase_ids
        self.phase_names: List[str] = phase_names
        self.rir = rir

    # ── Accessors ─────────────────────────────────────────────────────────────

    @property
    def n_phases(self) -> int:
        return len(self.phase_ids)

    def __len__(self) -> int:
        return self.n_phases

    def __contains__(self, phase_id) -> bool:
        return phase_id in self.phase_ids

    def index(self, phase_id: str) -> int:
        try:
            return self.phase_ids.index(phase_id)
        except ValueError:
            raise KeyError(f"Phase '{phase_id}' is not in the reference library.") from None

    def pattern(self, phase_id: str) -> np.ndarray:
        """Return the intensity column of *phase_id*."""
        return self.xrd[:, self.index(phase_id)]

    def rir_of(self, phase_id: str) -> float:
        return float(self.rir[self.index(phase_id)])

    def phase_table(self) -> pd.DataFrame:
        """Phase metadata as a DataFrame with columns phase_id, phase_name, rir."""
        return pd.DataFrame({
            'phase_id':   self.phase_ids,
            'phase_name': self.phase_names,
            'rir':        self.rir,
        })

    # ── Derived libraries ─────────────────────────────────────────────────────

    def subset(self, phase_ids: Iterable[str]) -> 'ReferenceLibrary':
        """Return a new library restricted to *phase_ids* (library order kept)."""
        wanted = set(phase_ids)
        missing = wanted.difference(self.phase_ids)
        if missing:
            raise ValueError(
                f"Phases not in the reference library: {sorted(missing)}"
            )
        idx = [i for i, p in enumerate(self.phase_ids) if p in wanted]
        return ReferenceLibrary(
            self.tth.copy(),
            self.xrd[:, idx].copy(),
            [self.phase_ids[i] for i in idx],
            [self.phase_names[i] for i in idx],
            self.rir[idx].copy(),
        )

    def copy(self) -> 'ReferenceLibrary':
        return copy.deepcopy(self)

    def to_dict(self) -> Dict:
        return {
            'tth':         self.tth,
            'xrd':         self.xrd,
            'phase_ids':   list(self.phase_ids),
            'phase_names': list(self.phase_names),
            'rir':         self.rir,
        }

    def __repr__(self) -> str:
        return (f"ReferenceLibrary(n_phases={self.n_phases}, "
                f"tth=[{self.tth[0]:.3f}, {self.tth[-1]:.3f}], n_points={len(self.tth)})")


class Sample:
    """
    Measured XRPD pattern.

    The points are sorted by 2θ and duplicate angles are dropped on
    construction, so callers may pass data in any order.
    """

    def __init__(self, tth: np.ndarray, counts: np.ndarray, label: Optional[str] = None):
        tth = np.asarray(tth, dtype=float)
        counts = np.asarray(counts, dtype=float)
        if tth.ndim != 1 or tth.shape != counts.shape:
            raise ValueError("Sample tth and counts must be 1-D arrays of equal length.")
        if len(tth) < 2:
            raise ValueError("Sample must contain at least 2 points.")
        mask = np.isfinite(tth) & np.isfinite(counts)
        tth, counts = tth[mask], counts[mask]
        order = np.argsort(tth, kind='mergesort')
        tth, counts = tth[order], counts[order]
        tth, idx = np.unique(tth, return_index=True)
        self.tth = tth
        self.counts = counts[idx]
        self.label = label

    def __len__(self) -> int:
        return len(self.tth)

    def copy(self) -> 'Sample':
        return Sample(self.tth.copy(), self.counts.copy(), label=self.label)

    def __repr__(self) -> str:
        return (f"Sample(label={self.label!r}, n_points={len(self)}, "
                f"tth=[{self.tth[0]:.3f}, {self.tth[-1]:.3f}])")
