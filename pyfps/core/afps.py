"""
Automated full pattern summation (AFPS).

Quantifies the mineralogy of an XRPD sample by modelling the measured pattern
as a non-negative sum of pure reference patterns and converting the fitted
coefficients to weight percent with reference intensity ratios.

Pipeline
--------
 1. Optional restriction of the library to ``refs``.
 2. Alignment of the sample to the internal standard (automatic or manual).
 3. Harmonisation of library and sample onto a common 2θ grid.
 4. Cropping to the fit window ``tth_fps``.
 5. NNLS prefilter: phases with zero weight are dropped.
 6. General optimisation of the chosen objective.
 7. Removal of negative coefficients, refitting until none remain.
 8. Optional per-phase shift grid search, refit, and negative removal.
 9. Removal of phases below their estimated limit of detection.
10. Removal of amorphous phases below ``amorphous_lod``.
11. Final negative-coefficient pass.
12. Weight-percent concentrations, grouped by phase name.

Usage example
-------------
>>> from pyfps import afps, FitConfig
>>> cfg = FitConfig(std="QUA.1", align=0.2, lod=0.1)
>>> result = afps(lib, smpl, cfg)
>>> print(result.phases_summary)
>>> print(f"Rwp = {result.rwp:.4f}")

References
----------
Chipera, S.J., Bish, D.L., 2002. FULLPAT: a full-pattern quantitative analysis
program for X-ray powder diffraction using measured and calculated patterns.
J. Appl. Crystallogr. 35, 744-749.

Chipera, S.J., Bish, D.L., 2013. Fitting full X-ray diffraction patterns for
quantitative analysis: a method for readily quantifying crystalline and
disordered phases. Adv. Mater. Phys. Chem. 03, 47-53.

Eberl, D.D., 2003. User's guide to RockJock - a program for determining
quantitative mineralogy from powder X-ray diffraction data. USGS.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field, fields
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from pyfps.core.align import align_sample, window_bounds
from pyfps.core.concentrations import omit_standard, phase_concentrations, summarise_phases
from pyfps.core.fitstate import FitState
from pyfps.core.fitter import OBJECTIVES, SOLVERS, SolveDiagnostics, nnls_prefilter, rwp
from pyfps.core.harmonise import harmonise, same_axis
from pyfps.core.library import ReferenceLibrary, Sample
from pyfps.core.pruning import remove_amorphous, remove_below_lod, remove_negatives
from pyfps.core.shift import shift_search

log = logging.getLogger(__name__)

#: Alignment bounds above this value [degrees 2θ] trigger a warning
LARGE_ALIGN = 0.5


# ===========================================================================
# Configuration
# ===========================================================================

@dataclass
class FitConfig:
    """
    Options of the AFPS pipeline.

    Attributes
    ----------
    solver : str
        One of ``SOLVERS``: ``'BFGS'``, ``'Nelder-Mead'``, ``'CG'``,
        ``'L-BFGS-B'`` or ``'NNLS'``.
    obj : str
        Objective minimised by the general solvers: ``'Delta'``, ``'R'`` or
        ``'Rwp'``.
    std : str or None
        Phase id of the internal standard.  ``None`` or ``'none'`` disables
        alignment, detection limits and absolute calibration.
    std_conc : float or None
        Known concentration of the standard [wt%], in (0, 100).  When None the
        phase concentrations are normalised to 100 wt%.
    omit_std : bool
        Remove the standard from the output tables and rescale the others to
        the unspiked sample.  Requires ``std_conc``.
    align : float
        Maximum alignment shift [degrees 2θ] (automatic mode) or the shift to
        apply (``manual_align=True``).
    manual_align : bool
        Apply ``align`` directly instead of searching for it.
    shift : float
        Maximum per-phase shift for the grid search; 0 disables it.
    shift_res : int
        Grid search half-resolution: ``2 × shift_res + 1`` candidates.
    lod : float
        Limit of detection of the standard [wt%]; 0 disables LOD removal.
    amorphous : tuple of str
        Phase ids treated as amorphous.
    amorphous_lod : float
        Removal threshold for amorphous phases [wt%].
    force : tuple of str
        Phase ids that are never removed.
    refs : tuple of str or None
        Restrict the library to these phase ids.
    tth_align, tth_fps : (float, float) or None
        2θ windows for alignment and for fitting.  Default: full range.
    harmonise : bool
        Resample library and sample onto a common grid.  When False both must
        already share the same 2θ axis.
    """

    solver: str = "BFGS"
    obj: str = "Rwp"
    std: Optional[str] = None
    std_conc: Optional[float] = None
    omit_std: bool = False
    align: float = 0.1
    manual_align: bool = False
    shift: float = 0.0
    shift_res: int = 4
    lod: float = 0.0
    amorphous: Tuple[str, ...] = ()
    amorphous_lod: float = 0.0
    force: Tuple[str, ...] = ()
    refs: Optional[Tuple[str, ...]] = None
    tth_align: Optional[Tuple[float, float]] = None
    tth_fps: Optional[Tuple[float, float]] = None
    harmonise: bool = True

    def __post_init__(self):
        if self.solver not in SOLVERS:
            raise ValueError(f"Unknown solver {self.solver!r}. Must be one of {SOLVERS}")
        if self.obj not in OBJECTIVES:
            raise ValueError(f"Unknown objective {self.obj!r}. Must be one of {OBJECTIVES}")

        if isinstance(self.std, str) and self.std.strip().lower() == 'none':
            self.std = None
        self.amorphous = tuple(self.amorphous or ())
        self.force = tuple(self.force or ())
        if self.refs is not None:
            self.refs = tuple(self.refs)
        if self.tth_align is not None:
            self.tth_align = (float(self.tth_align[0]), float(self.tth_align[1]))
        if self.tth_fps is not None:
            self.tth_fps = (float(self.tth_fps[0]), float(self.tth_fps[1]))

        if self.std_conc is not None:
            self.std_conc = float(self.std_conc)
            if not 0.0 < self.std_conc < 100.0:
                raise ValueError("std_conc must be greater than 0 and less than 100.")
            if self.std is None:
                raise ValueError("std_conc requires an internal standard (std).")
        if self.omit_std and self.std_conc is None:
            raise ValueError("omit_std requires std_conc to be defined.")
        if not self.manual_align and self.std is not None and self.align <= 0:
            raise ValueError("The align argument must be greater than 0.")
        if self.shift < 0:
            raise ValueError("The shift argument must be 0 or greater.")
        if int(self.shift_res) < 1:
            raise ValueError("The shift_res argument must be at least 1.")
        self.shift_res = int(self.shift_res)
        if self.lod < 0:
            raise ValueError("The lod argument must be 0 or greater.")
        if self.amorphous_lod < 0:
            raise ValueError("The amorphous_lod argument must be 0 or greater.")

    @property
    def forced(self) -> Tuple[str, ...]:
        """Phases exempt from pruning (the standard is added when calibrating)."""
        if self.std is not None and self.std_conc is not None and self.std not in self.force:
            return self.force + (self.std,)
        return self.force

    def validate(self, lib: ReferenceLibrary) -> None:
        """Check that every referenced phase id exists in *lib*."""
        if self.std is not None and self.std not in lib:
            raise ValueError(
                f"The internal standard '{self.std}' is not in the reference library."
            )
        for name, ids in (('amorphous', self.amorphous), ('force', self.force),
                          ('refs', self.refs or ())):
            missing = [p for p in ids if p not in lib]
            if missing:
                raise ValueError(
                    f"Phases given in '{name}' are not in the reference library: {missing}"
                )
        if self.refs is not None:
            needed = [p for p in (self.std,) + self.force + self.amorphous
                      if p is not None and p not in self.refs]
            if needed:
                raise ValueError(
                    f"Phases {needed} are referenced by std/force/amorphous but "
                    f"excluded by 'refs'."
                )

    def to_dict(self) -> Dict:
        d = {}
        for f in fields(self):
            v = getattr(self, f.name)
            d[f.name] = list(v) if isinstance(v, tuple) else v
        return d

    @classmethod
    def from_dict(cls, d: Dict) -> 'FitConfig':
        """Build a config from a dict, ignoring unknown keys."""
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in d.items() if k in names})


# ===========================================================================
# Result
# ===========================================================================

@dataclass(frozen=True)
class FitResult:
    """
    Output of ``afps``.  Never modified after construction.

    Attributes
    ----------
    tth, measured, fitted, residuals : ndarray
        2θ axis of the fit window, aligned sample, fitted pattern and
        ``measured − fitted``.
    phases : DataFrame
        Per phase id: ``phase_id``, ``phase_name``, ``rir``, ``coefficient``,
        ``phase_percent``.
    phases_summary : DataFrame
        ``phase_percent`` summed by ``phase_name``.
    rwp : float
        Weighted profile residual of the final fit.
    weighted_pure_patterns : DataFrame
        Reference patterns multiplied by their coefficients, one column per
        phase id.
    coefficients : dict
        Final coefficient per phase id.
    config : dict
        The ``FitConfig`` used.
    shift : float
        Alignment shift applied to the sample.
    phase_shifts : dict
        Per-phase offsets from the shift grid search (0 when disabled).
    removed : dict
        Phase ids removed at each stage.
    diagnostics : list of dict
        One record per coefficient solve.
    """

    tth: np.ndarray
    fitted: np.ndarray
    measured: np.ndarray
    residuals: np.ndarray
    phases: pd.DataFrame
    phases_summary: pd.DataFrame
    rwp: float
    weighted_pure_patterns: pd.DataFrame
    coefficients: Dict[str, float]
    config: Dict
    shift: float = 0.0
    phase_shifts: Dict[str, float] = field(default_factory=dict)
    removed: Dict[str, List[str]] = field(default_factory=dict)
    diagnostics: List[Dict] = field(default_factory=list)

    @property
    def converged(self) -> bool:
        """True when every general-optimiser solve reported success."""
        return all(d['success'] for d in self.diagnostics)

    def to_dict(self) -> Dict:
        return {
            'tth':                    self.tth,
            'fitted':                 self.fitted,
            'measured':               self.measured,
            'residuals':              self.residuals,
            'phases':                 self.phases,
            'phases_summary':         self.phases_summary,
            'rwp':                    self.rwp,
            'weighted_pure_patterns': self.weighted_pure_patterns,
            'coefficients':           dict(self.coefficients),
            'config':                 dict(self.config),
            'shift':                  self.shift,
            'phase_shifts':           dict(self.phase_shifts),
            'removed':                {k: list(v) for k, v in self.removed.items()},
            'diagnostics':            list(self.diagnostics),
        }


# ===========================================================================
# Pipeline
# ===========================================================================

def _prepare(
    lib: ReferenceLibrary,
    smpl: Sample,
    cfg: FitConfig,
) -> Tuple[ReferenceLibrary, Sample, float]:
    """Subset, align and harmonise.  Returns private copies."""
    lib = lib.subset(cfg.refs) if cfg.refs is not None else lib.copy()
    smpl = smpl.copy()

    shift = 0.0
    if cfg.std is not None:
        if not cfg.manual_align and cfg.align > LARGE_ALIGN:
            warnings.warn(
                "Be cautious of large 2theta shifts. These can cause issues in "
                "sample alignment.", UserWarning, stacklevel=3,
            )
        xmin, xmax = window_bounds(cfg.tth_align, smpl.tth)
        log.info("-Aligning sample to the internal standard")
        al = align_sample(
            smpl, lib.tth, lib.pattern(cfg.std), cfg.align,
            xmin=xmin, xmax=xmax, manual=cfg.manual_align,
        )
        if al.suspect:
            warnings.warn(
                f"The optimised alignment shift ({al.shift:.4f}) is within 5% of "
                f"the maximum shift ({cfg.align}). Visual inspection of the "
                f"alignment is advised.", UserWarning, stacklevel=3,
            )
        shift = al.shift
        smpl = al.sample
        log.debug(f"Alignment shift = {shift:+.4f}")

    if cfg.harmonise:
        log.info("-Harmonising library to the same 2theta scale as the sample")
        lib, smpl = harmonise(lib, smpl)
    else:
        if cfg.std is not None and shift != 0:
            # Alignment drops edge points; keep the library rows that remain
            m = np.isin(np.round(lib.tth, 9), np.round(smpl.tth, 9))
            lib = ReferenceLibrary(lib.tth[m], lib.xrd[m, :], lib.phase_ids,
                                   lib.phase_names, lib.rir)
        if not same_axis(lib.tth, smpl.tth):
            raise ValueError(
                "The library and sample are on different 2theta scales; "
                "use harmonise=True."
            )
    return lib, smpl, shift


def afps(
    lib: ReferenceLibrary,
    smpl: Sample,
    config: Optional[FitConfig] = None,
    **kwargs,
) -> FitResult:
    """
    Automated full pattern summation.

    Parameters
    ----------
    lib : ReferenceLibrary
        Reference patterns with RIRs.  Not modified.
    smpl : Sample
        Measured pattern.  Not modified.
    config : FitConfig, optional
        Pipeline options.  Keyword arguments are accepted instead of, or on
        top of, a config object (e.g. ``afps(lib, smpl, std="QUA.1")``).

    Returns
    -------
    FitResult

    Raises
    ------
    ValueError
        On any precondition violation (unknown phase ids, invalid options,
        non-positive intensities in the fit window, mismatched 2θ scales).
    """
    if config is None:
        cfg = FitConfig(**kwargs)
    elif kwargs:
        cfg = FitConfig.from_dict({**config.to_dict(), **kwargs})
    else:
        cfg = config
    cfg.validate(lib)
    forced = cfg.forced

    lib_h, smpl_h, align_shift = _prepare(lib, smpl, cfg)
    xmin, xmax = window_bounds(cfg.tth_fps, smpl_h.tth)
    state = FitState(lib_h, smpl_h, xmin, xmax, cfg.solver, cfg.obj)
    if np.any(state.counts <= 0):
        raise ValueError(
            "The sample contains zero or negative intensities inside the fit "
            "window; these cannot be weighted."
        )
    std_rir = lib.rir_of(cfg.std) if cfg.std is not None else 1.0

    # ── Initial fit ──────────────────────────────────────────────────────────
    log.info("-Applying non-negative least squares")
    pre = nnls_prefilter(state.xrd, state.counts, state.phase_ids, force=forced)
    state.x = pre.x
    state.drop(pre.dropped, "nnls")

    if cfg.solver != "NNLS":
        log.info("-Optimising...")
    # Warm start from the NNLS solution rather than from zero.
    state.refit("initial")

    remove_negatives(state, force=forced, stage="negatives")

    # ── Per-phase shifting ──────────────────────────────────────────────────
    if cfg.shift > 0:
        shift_search(state, cfg.shift, cfg.shift_res, stage="shift")
        remove_negatives(state, force=forced, stage="negatives_shift")

    # ── Detection limits ─────────────────────────────────────────────────────
    if cfg.lod > 0:
        if cfg.std is None:
            log.info("-No internal standard defined; skipping detection limits")
        else:
            log.info("-Removing phases below the estimated detection limits")
            remove_below_lod(state, cfg.std, std_rir, cfg.lod,
                             std_conc=cfg.std_conc, amorphous=cfg.amorphous,
                             force=forced, stage="lod")

    if cfg.amorphous:
        remove_amorphous(state, cfg.amorphous, cfg.amorphous_lod,
                         std=cfg.std, std_conc=cfg.std_conc, force=forced,
                         stage="amorphous")

    remove_negatives(state, force=forced, stage="negatives_final")
    state.check()

    # ── Output ───────────────────────────────────────────────────────────────
    log.info("-Computing phase concentrations")
    return _build_result(state, cfg, align_shift)


def _build_result(state: FitState, cfg: FitConfig, align_shift: float) -> FitResult:
    fitted = state.fitted()
    measured = state.counts.copy()

    phases = phase_concentrations(
        state.x, state.phase_ids, state.phase_names, state.rir,
        std=cfg.std, std_conc=cfg.std_conc,
    )
    if cfg.omit_std:
        phases = omit_standard(phases, cfg.std, cfg.std_conc)
    summary = summarise_phases(phases)

    weighted = pd.DataFrame(state.xrd * state.x[np.newaxis, :], columns=state.phase_ids)
    weighted.insert(0, 'tth', state.tth)

    diagnostics: List[SolveDiagnostics] = state.diagnostics
    stat = rwp(measured, fitted)
    log.info(f"-Automated full pattern summation complete: Rwp = {stat:.4f}, "
             f"{state.n_phases} phases")

    return FitResult(
        tth=state.tth.copy(),
        fitted=fitted,
        measured=measured,
        residuals=measured - fitted,
        phases=phases,
        phases_summary=summary,
        rwp=stat,
        weighted_pure_patterns=weighted,
        coefficients=state.coefficients(),
        config=cfg.to_dict(),
        shift=float(align_shift),
        phase_shifts={pid: state.shifts[pid] for pid in state.phase_ids},
        removed={k: list(v) for k, v in state.removed.items()},
        diagnostics=[d.to_dict() for d in diagnostics],
    )
