"""
Conversion of fitted coefficients to weight-percent phase concentrations.

For phase p with coefficient x_p and reference intensity ratio RIR_p, the
RIR-corrected weight is  x_p · RIR_std / RIR_p.

* Standard concentration unknown: weights are normalised to sum to 100 wt%.
* Standard concentration known (internal standard spiked at ``std_conc`` wt%):
  w_p = x_p · RIR_std / RIR_p × std_conc / x_std.  The total is free to differ
  from 100, the shortfall being amorphous or unidentified material.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

import numpy as np
import pandas as pd

log = logging.getLogger(__name__)


def phase_concentrations(
    x: np.ndarray,
    phase_ids: Sequence[str],
    phase_names: Sequence[str],
    rir: np.ndarray,
    std: Optional[str] = None,
    std_conc: Optional[float] = None,
) -> pd.DataFrame:
    """
    Per-phase concentrations.

    Parameters
    ----------
    x : array_like
        Fitted coefficients, one per phase id.
    phase_ids, phase_names : sequence of str
        Identifiers and mineral names of the fitted phases.
    rir : array_like
        Reference intensity ratios of the fitted phases.
    std : str, optional
        Internal standard phase id.  Required when *std_conc* is given.
    std_conc : float, optional
        Known weight percent of the standard.

    Returns
    -------
    pandas.DataFrame
        Columns ``phase_id``, ``phase_name``, ``rir``, ``coefficient``,
        ``phase_percent``.
    """
    x = np.asarray(x, dtype=float)
    rir = np.asarray(rir, dtype=float)
    phase_ids = list(phase_ids)

    if std is not None and std in phase_ids:
        std_rir = float(rir[phase_ids.index(std)])
    else:
        std_rir = 1.0

    scaled = x * std_rir / rir

    if std_conc is None:
        total = float(scaled.sum())
        if total > 0:
            pct = scaled / total * 100.0
        else:
            log.warning("All fitted coefficients are zero; concentrations set to 0.")
            pct = np.zeros_like(scaled)
    else:
        if std is None or std not in phase_ids:
            raise ValueError(
                "The internal standard must be among the fitted phases when "
                "std_conc is given."
            )
        x_std = float(x[phase_ids.index(std)])
        if x_std <= 0:
            raise ValueError(
                f"The internal standard '{std}' has a non-positive coefficient "
                f"({x_std:.4g}); absolute concentrations cannot be computed."
            )
        pct = scaled * float(std_conc) / x_std

    return pd.DataFrame({
        'phase_id':      phase_ids,
        'phase_name':    list(phase_names),
        'rir':           rir,
        'coefficient':   x,
        'phase_percent': pct,
    })


def summarise_phases(phases: pd.DataFrame) -> pd.DataFrame:
    """Sum ``phase_percent`` by ``phase_name`` (order of first appearance)."""
    return (phases.groupby('phase_name', sort=False, as_index=False)['phase_percent']
            .sum())


def omit_standard(phases: pd.DataFrame, std: str, std_conc: float) -> pd.DataFrame:
    """
    Drop the internal standard row and rescale to the unspiked sample.

    A sample spiked with ``std_conc`` wt% standard contains the original
    material at (100 − std_conc) wt%, so the remaining concentrations are
    multiplied by 100 / (100 − std_conc).
    """
    out = phases[phases['phase_id'] != std].reset_index(drop=True).copy()
    out['phase_percent'] = out['phase_percent'] * 100.0 / (100.0 - float(std_conc))
    return out
