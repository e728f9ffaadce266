"""
pyfps.batch — headless fitting API for scripting and automation.

Typical usage
-------------
Single file:
    from pyfps.batch import fit_afps
    result = fit_afps("sample.xy", "library.h5", "pyfps_config.json")
    if result:
        print(result['fit'].phases_summary)

Batch over many files:
    results = [fit_afps(f, "library.h5", cfg) for f in data_files]
    results = [r for r in results if r is not None]  # filter failures

Config file layout
------------------
::

    {
      "_pyfps_config": {"version": "0.1.0"},
      "afps": {"solver": "BFGS", "obj": "Rwp", "std": "QUA.1", "align": 0.2, ...}
    }

The ``afps`` section holds the keyword arguments of :class:`FitConfig`;
unknown keys (e.g. ``schema_version``) are ignored.
"""

from __future__ import annotations

import json
import traceback
from pathlib import Path
from typing import Dict, Optional, Union

from pyfps import __version__
from pyfps.core.afps import FitConfig, afps
from pyfps.core.library import ReferenceLibrary, Sample

# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _load_config(config_file: Union[str, Path]) -> Optional[Dict]:
    """Load and validate a pyfps JSON config file.  Returns None on failure."""
    config_file = Path(config_file)
    try:
        with open(config_file, 'r') as f:
            config = json.load(f)
    except (OSError, ValueError) as e:
        print(f"[pyfps.batch] Cannot read config file '{config_file}': {e}")
        return None

    if '_pyfps_config' not in config:
        print(f"[pyfps.batch] '{config_file}' is not a pyfps configuration file "
              f"(missing '_pyfps_config' header).")
        return None

    return config


def _load_sample(data_file: Union[str, Path]) -> Optional[Sample]:
    """Load a two-column XRPD pattern.  Returns None on failure."""
    from pyfps.io.readers import read_xy

    data_file = Path(data_file)
    if not data_file.exists():
        print(f"[pyfps.batch] Data file not found: '{data_file}'")
        return None

    try:
        return read_xy(data_file)
    except (OSError, ValueError) as e:
        print(f"[pyfps.batch] Error reading '{data_file}': {e}")
        return None


def _load_library(library_file: Union[str, Path]) -> Optional[ReferenceLibrary]:
    """Load a reference library from HDF5.  Returns None on failure."""
    from pyfps.io.library_h5 import load_library

    library_file = Path(library_file)
    if not library_file.exists():
        print(f"[pyfps.batch] Library file not found: '{library_file}'")
        return None

    try:
        return load_library(library_file)
    except (KeyError, OSError, ValueError) as e:
        print(f"[pyfps.batch] Error reading library '{library_file}': {e}")
        return None


def write_config(config_file: Union[str, Path], config: FitConfig) -> Path:
    """Write *config* as a pyfps JSON config file that ``fit_afps`` accepts."""
    config_file = Path(config_file)
    payload = {
        '_pyfps_config': {'version': __version__},
        'afps': config.to_dict(),
    }
    with open(config_file, 'w') as f:
        json.dump(payload, f, indent=2)
    return config_file


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def fit_afps(
    data_file: Union[str, Path],
    library_file: Union[str, Path, ReferenceLibrary],
    config_file: Union[str, Path],
    save_results: bool = True,
) -> Optional[Dict]:
    """Quantify one XRPD pattern with options from a pyfps config file.

    Parameters
    ----------
    data_file : str or Path
        Two-column text pattern (.xy, .xye, .txt, .csv, .dat).
    library_file : str, Path or ReferenceLibrary
        HDF5 file written by :func:`pyfps.io.save_library`, or an already
        loaded library (avoids re-reading it for every file of a batch).
    config_file : str or Path
        JSON configuration with a ``_pyfps_config`` header and an ``afps``
        section.
    save_results : bool, optional
        If True (default), store the fit in ``<data stem>_afps.h5`` next to
        the data file.

    Returns
    -------
    dict or None
        On success, a dictionary with:

        ``'success'``      bool — True if every optimiser solve converged.
        ``'fit'``          FitResult — the full pipeline output.
        ``'phases'``       DataFrame — concentrations per phase name.
        ``'rwp'``          float
        ``'input_file'``   Path
        ``'library_file'`` Path or None
        ``'config_file'``  Path
        ``'output_file'``  Path or None — HDF5 output (if save_results).
        ``'message'``      str — human-readable summary.

        Returns None if loading, configuration, or fitting fails.
    """
    data_file = Path(data_file)
    config_file = Path(config_file)

    # --- Load config ---
    try:
        config = _load_config(config_file)
        if config is None:
            return None

        if 'afps' not in config:
            print(f"[pyfps.batch] Config file '{config_file}' has no 'afps' group.")
            return None

        fit_config = FitConfig.from_dict(config['afps'])
    except Exception:
        print(f"[pyfps.batch] Error building FitConfig from config:\n{traceback.format_exc()}")
        return None

    # --- Load data ---
    smpl = _load_sample(data_file)
    if smpl is None:
        return None

    if isinstance(library_file, ReferenceLibrary):
        lib = library_file
        library_path = None
    else:
        library_path = Path(library_file)
        lib = _load_library(library_path)
        if lib is None:
            return None

    # --- Run fit ---
    print(f"[pyfps.batch] Fitting '{data_file.name}' with {lib.n_phases} reference phases ...")
    try:
        fit = afps(lib, smpl, fit_config)
    except Exception:
        print(f"[pyfps.batch] Fitting failed for '{data_file}':\n{traceback.format_exc()}")
        return None

    result = {
        'success': fit.converged,
        'fit': fit,
        'phases': fit.phases_summary,
        'rwp': fit.rwp,
        'input_file': data_file,
        'library_file': library_path,
        'config_file': config_file,
        'output_file': None,
        'message': (
            f"AFPS: {len(fit.coefficients)} phase(s), "
            f"Rwp={fit.rwp:.4g}, "
            f"converged={fit.converged}"
        ),
    }

    # --- Save results ---
    if save_results:
        from pyfps.io.nxafps import save_afps_results
        output_path = data_file.with_name(f"{data_file.stem}_afps.h5")
        try:
            save_afps_results(output_path, fit)
            result['output_file'] = output_path
        except Exception:
            print(f"[pyfps.batch] Warning: could not save results file:\n"
                  f"{traceback.format_exc()}")
            # Non-fatal: return result without output_file

    from pyfps.io.nxafps import print_afps_results
    print_afps_results(fit.to_dict())
    print(f"[pyfps.batch] {result['message']}")
    return result
