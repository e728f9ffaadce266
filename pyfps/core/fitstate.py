"""
Working state threaded through the fitting pipeline.

``FitState`` owns private copies of the harmonised library and the sample
window.  Every stage mutates it in place; nothing outside the pipeline holds a
reference to it.  Invariants maintained by every method:

* ``len(tth) == xrd.shape[0] == len(counts)``
* ``xrd.shape[1] == len(phase_ids) == len(x)``
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence

import numpy as np

from pyfps.core.fitter import SolveDiagnostics, solve
from pyfps.core.library import ReferenceLibrary, Sample

log = logging.getLogger(__name__)


class FitState:
    """
    Mutable working copy of the library, sample window and coefficients.

    Parameters
    ----------
    lib : ReferenceLibrary
        Harmonised library, already on the sample grid.  Its full (uncropped)
        patterns are kept as the source for per-phase shifting.
    smpl : Sample
        Harmonised sample.
    xmin, xmax : float
        Fit window.
    solver, obj : str
        Solver and objective used by ``refit``.
    """

    def __init__(
        self,
        lib: ReferenceLibrary,
        smpl: Sample,
        xmin: float,
        xmax: float,
        solver: str,
        obj: str,
    ):
        self.solver = solver
        self.obj = obj

        # Source patterns for shifting (full harmonised range)
        self.source_tth = lib.tth.copy()
        self.source_xrd: Dict[str, np.ndarray] = {
            pid: lib.xrd[:, j].copy() for j, pid in enumerate(lib.phase_ids)
        }
        self.source_smpl = smpl.copy()

        m = (lib.tth >= xmin) & (lib.tth <= xmax)
        if m.sum() < 2:
            raise ValueError(
                f"Fit window [{xmin}, {xmax}] contains fewer than 2 points of the "
                f"harmonised data [{lib.tth[0]:.3f}, {lib.tth[-1]:.3f}]."
            )
        self.tth = lib.tth[m].copy()
        self.counts = smpl.counts[m].copy()
        self.xrd = lib.xrd[m, :].copy()
        self.phase_ids: List[str] = list(lib.phase_ids)
        self.phase_names: List[str] = list(lib.phase_names)
        self.rir = lib.rir.copy()
        self.x = np.zeros(len(self.phase_ids))
        self.shifts: Dict[str, float] = {pid: 0.0 for pid in self.phase_ids}
        self.diagnostics: List[SolveDiagnostics] = []
        self.removed: Dict[str, List[str]] = {}

    # ── Accessors ─────────────────────────────────────────────────────────────

    @property
    def n_phases(self) -> int:
        return len(self.phase_ids)

    def coefficients(self) -> Dict[str, float]:
        return {pid: float(v) for pid, v in zip(self.phase_ids, self.x)}

    def fitted(self) -> np.ndarray:
        return self.xrd @ self.x

    def rir_of(self, phase_id: str) -> float:
        return float(self.rir[self.phase_ids.index(phase_id)])

    def check(self) -> None:
        """Raise RuntimeError if the shape invariants are broken."""
        if not (len(self.tth) == self.xrd.shape[0] == len(self.counts)):
            raise RuntimeError(
                f"FitState rows out of sync: tth={len(self.tth)}, "
                f"xrd={self.xrd.shape[0]}, counts={len(self.counts)}"
            )
        if not (self.xrd.shape[1] == len(self.phase_ids) == len(self.x)
                == len(self.phase_names) == len(self.rir)):
            raise RuntimeError(
                f"FitState columns out of sync: xrd={self.xrd.shape[1]}, "
                f"ids={len(self.phase_ids)}, x={len(self.x)}"
            )

    # ── Mutation ──────────────────────────────────────────────────────────────

    def drop(self, phase_ids: Sequence[str], stage: str) -> List[str]:
        """Remove *phase_ids* from the matrix and coefficient vector."""
        gone = set(phase_ids)
        if not gone:
            return []
        keep = [i for i, pid in enumerate(self.phase_ids) if pid not in gone]
        removed = [pid for pid in self.phase_ids if pid in gone]
        self.xrd = self.xrd[:, keep]
        self.x = self.x[keep]
        self.phase_ids = [self.phase_ids[i] for i in keep]
        self.phase_names = [self.phase_names[i] for i in keep]
        self.rir = self.rir[keep]
        self.removed.setdefault(stage, []).extend(removed)
        log.debug(f"[{stage}] removed {removed}; {self.n_phases} phases remain")
        return removed

    def refit(self, stage: str, x0: Optional[np.ndarray] = None) -> SolveDiagnostics:
        """
        Re-solve the coefficients on the current matrix.

        The current coefficients are the warm start unless *x0* is given.
        """
        start = self.x if x0 is None else x0
        res = solve(self.xrd, self.counts, self.solver, self.obj, x0=start, stage=stage)
        self.x = res.x
        self.diagnostics.append(res.diagnostics)
        return res.diagnostics

    def replace_data(self, tth: np.ndarray, xrd: np.ndarray, counts: np.ndarray) -> None:
        """Swap in a new window and matrix (same phase order)."""
        self.tth = np.asarray(tth, dtype=float)
        self.xrd = np.asarray(xrd, dtype=float)
        self.counts = np.asarray(counts, dtype=float)
        self.check()
