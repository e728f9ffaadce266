"""
High-level results loader for pyfps.

Provides :func:`load_result` — a single importable entry point that loads
stored full pattern summation results from an HDF5 file and returns them as a
fully documented dictionary.

Usage
-----
::

    from pyfps import load_result

    r = load_result("sample_afps.h5")
    if r["found"]:
        print(f"Rwp = {r['rwp']:.4f}")
        print(r["phases_summary"])

    # Non-existent results return an empty structure — no exception raised
    r = load_result("empty.h5")
    print(r["found"])    # False
    print(r["phases"])   # None
"""

from __future__ import annotations

from pathlib import Path
from typing import Union


def load_result(filepath: Union[str, Path]) -> dict:
    """
    Load stored AFPS results from an HDF5 file.

    If the file does not exist, cannot be read, or holds no ``afps_results``
    group, the dictionary is still returned with every key present, values
    set to ``None`` (``{}`` / ``[]`` for containers) and ``found`` False.

    Returns
    -------
    dict
        Administrative
            ``found`` *(bool)*, ``timestamp``, ``program``.
        Arrays (``None`` when not found)
            ``tth``, ``measured``, ``fitted``, ``residuals``.
        Tables (``None`` when not found)
            ``phases`` — per phase id: ``phase_id``, ``phase_name``, ``rir``,
            ``coefficient``, ``phase_percent``.
            ``phases_summary`` — ``phase_percent`` summed by ``phase_name``.
            ``weighted_pure_patterns`` — ``tth`` plus one column per phase id.
        Scalars (``None`` when not found)
            ``rwp``, ``shift``.
        Containers
            ``coefficients``, ``phase_shifts``, ``config``, ``removed``,
            ``diagnostics``.
    """
    from pyfps.io.nxafps import load_afps_results

    result = _empty_afps()
    filepath = Path(filepath)

    if not filepath.exists():
        return result

    try:
        raw = load_afps_results(filepath)
    except (KeyError, OSError, ValueError):
        # Group not present or not readable as AFPS results
        return result

    result['found'] = True
    for key in result:
        if key == 'found':
            continue
        if key in raw:
            result[key] = raw[key]

    return result


def _empty_afps() -> dict:
    """Return the canonical empty structure for an AFPS result."""
    return {
        # Administrative
        'found':     False,
        'timestamp': None,
        'program':   None,
        # Arrays
        'tth':       None,
        'measured':  None,
        'fitted':    None,
        'residuals': None,
        # Tables
        'phases':                 None,
        'phases_summary':         None,
        'weighted_pure_patterns': None,
        # Scalars
        'rwp':   None,
        'shift': None,
        # Containers
        'coefficients': {},
        'phase_shifts': {},
        'config':       {},
        'removed':      {},
        'diagnostics':  [],
    }
