"""
HDF5 I/O for automated full pattern summation results.

Results are stored next to any other content of the file under:

    entry/afps_results   (NXprocess group)

Datasets stored
---------------
tth                     — 2θ axis of the fit window [degrees]
measured                — aligned sample intensities [counts]
fitted                  — fitted pattern [counts]
residuals               — measured - fitted [counts]
weighted_pure_patterns  — reference patterns × coefficients, shape (M, N);
                          attribute ``phase_id`` lists the column order
phases/                 — phase_id, phase_name, rir, coefficient,
                          phase_percent, phase_shift  (one row per phase id)
phases_summary/         — phase_name, phase_percent

Group attributes
----------------
rwp, shift, n_phases, solver, obj, std, std_conc, lod,
config (JSON), removed (JSON), diagnostics (JSON),
timestamp, program
"""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path

import h5py
import numpy as np
import pandas as pd

_GROUP = 'entry/afps_results'
_PROGRAM = 'pyfps.core.afps'

_SCALAR_CONFIG_KEYS = ('solver', 'obj', 'std', 'std_conc', 'lod')


def _str_dataset(grp, name, values) -> None:
    grp.create_dataset(
        name,
        data=np.array([str(v) for v in values], dtype=object),
        dtype=h5py.string_dtype(encoding='utf-8'),
    )


def _read_str(ds) -> list:
    return [v.decode('utf-8') if isinstance(v, bytes) else str(v) for v in ds[()]]


def save_afps_results(filepath: Path, result) -> None:
    """
    Save a ``FitResult`` to an HDF5 file.

    The file is created if it does not exist.  If an ``afps_results`` group is
    already present it is deleted and recreated.

    Args:
        filepath: Output HDF5 file.
        result:   ``FitResult`` returned by ``afps``.
    """
    filepath = Path(filepath)
    timestamp = datetime.now().isoformat()

    mode = 'a' if filepath.exists() else 'w'
    with h5py.File(filepath, mode) as f:
        if _GROUP in f:
            del f[_GROUP]

        grp = f.require_group(_GROUP)
        grp.attrs['NX_class']  = 'NXprocess'
        grp.attrs['program']   = _PROGRAM
        grp.attrs['timestamp'] = timestamp

        grp.attrs['rwp']      = float(result.rwp)
        grp.attrs['shift']    = float(result.shift)
        grp.attrs['n_phases'] = len(result.coefficients)
        for k in _SCALAR_CONFIG_KEYS:
            v = result.config.get(k)
            if v is not None:
                grp.attrs[k] = v
        grp.attrs['config']      = json.dumps(result.config)
        grp.attrs['removed']     = json.dumps(result.removed)
        grp.attrs['diagnostics'] = json.dumps(result.diagnostics)

        # Arrays
        grp.create_dataset('tth',       data=np.asarray(result.tth, 'f8'),       compression='gzip')
        grp.create_dataset('measured',  data=np.asarray(result.measured, 'f8'),  compression='gzip')
        grp.create_dataset('fitted',    data=np.asarray(result.fitted, 'f8'),    compression='gzip')
        grp.create_dataset('residuals', data=np.asarray(result.residuals, 'f8'), compression='gzip')

        wpp = result.weighted_pure_patterns.drop(columns='tth')
        ds = grp.create_dataset('weighted_pure_patterns',
                                data=wpp.to_numpy(dtype='f8'), compression='gzip')
        ds.attrs['phase_id'] = json.dumps([str(c) for c in wpp.columns])

        # Phase tables
        ph = result.phases
        pg = grp.create_group('phases')
        _str_dataset(pg, 'phase_id', ph['phase_id'])
        _str_dataset(pg, 'phase_name', ph['phase_name'])
        pg.create_dataset('rir',           data=ph['rir'].to_numpy(dtype='f8'))
        pg.create_dataset('coefficient',   data=ph['coefficient'].to_numpy(dtype='f8'))
        pg.create_dataset('phase_percent', data=ph['phase_percent'].to_numpy(dtype='f8'))
        pg.create_dataset('phase_shift',
                          data=np.array([result.phase_shifts.get(p, 0.0) for p in ph['phase_id']], 'f8'))

        sm = result.phases_summary
        sg = grp.create_group('phases_summary')
        _str_dataset(sg, 'phase_name', sm['phase_name'])
        sg.create_dataset('phase_percent', data=sm['phase_percent'].to_numpy(dtype='f8'))

        # Units annotations
        grp['tth'].attrs['units']      = 'degrees'
        grp['measured'].attrs['units'] = 'counts'
        grp['fitted'].attrs['units']   = 'counts'
        pg['phase_percent'].attrs['units'] = 'wt%'
        pg['phase_shift'].attrs['units']   = 'degrees'


def load_afps_results(filepath: Path) -> dict:
    """
    Load AFPS results from an HDF5 file.

    Returns:
        dict with keys ``tth``, ``measured``, ``fitted``, ``residuals``
        (ndarrays), ``weighted_pure_patterns``, ``phases``,
        ``phases_summary`` (DataFrames), ``coefficients``, ``phase_shifts``,
        ``config``, ``removed`` (dicts), ``diagnostics`` (list), ``rwp``,
        ``shift``, ``timestamp`` and ``program``.

    Raises:
        KeyError: if the file does not contain an ``afps_results`` group.
        OSError:  if the file cannot be opened.
    """
    filepath = Path(filepath)
    with h5py.File(filepath, 'r') as f:
        if _GROUP not in f:
            raise KeyError(
                f"No afps_results group found in {filepath.name}. "
                "Run the full pattern summation first."
            )
        grp = f[_GROUP]

        result: dict = {}
        result['tth']       = grp['tth'][:]
        result['measured']  = grp['measured'][:]
        result['fitted']    = grp['fitted'][:]
        result['residuals'] = grp['residuals'][:]

        ids = json.loads(grp['weighted_pure_patterns'].attrs['phase_id'])
        wpp = pd.DataFrame(grp['weighted_pure_patterns'][:], columns=ids)
        wpp.insert(0, 'tth', result['tth'])
        result['weighted_pure_patterns'] = wpp

        pg = grp['phases']
        phases = pd.DataFrame({
            'phase_id':      _read_str(pg['phase_id']),
            'phase_name':    _read_str(pg['phase_name']),
            'rir':           pg['rir'][:],
            'coefficient':   pg['coefficient'][:],
            'phase_percent': pg['phase_percent'][:],
        })
        result['phases'] = phases
        result['coefficients'] = dict(zip(phases['phase_id'], phases['coefficient'].astype(float)))
        result['phase_shifts'] = dict(zip(phases['phase_id'], pg['phase_shift'][:].astype(float)))

        sg = grp['phases_summary']
        result['phases_summary'] = pd.DataFrame({
            'phase_name':    _read_str(sg['phase_name']),
            'phase_percent': sg['phase_percent'][:],
        })

        result['rwp']         = float(grp.attrs['rwp'])
        result['shift']       = float(grp.attrs['shift'])
        result['config']      = json.loads(grp.attrs['config'])
        result['removed']     = json.loads(grp.attrs['removed'])
        result['diagnostics'] = json.loads(grp.attrs['diagnostics'])
        result['timestamp']   = grp.attrs.get('timestamp')
        result['program']     = grp.attrs.get('program')

    return result


def print_afps_results(results: dict) -> None:
    """Pretty-print AFPS results to the console."""
    cfg = results.get('config') or {}
    print("=" * 60)
    print("  Full Pattern Summation Results")
    print("=" * 60)
    print(f"  Solver:          {cfg.get('solver', 'N/A')} ({cfg.get('obj', 'N/A')})")
    print(f"  Standard:        {cfg.get('std') or 'none'}")
    print(f"  Rwp:             {results.get('rwp', float('nan')):.4f}")
    print(f"  Alignment shift: {results.get('shift', 0.0):+.4f} deg")
    summary = results.get('phases_summary')
    if summary is not None:
        for name, pct in zip(summary['phase_name'], summary['phase_percent']):
            print(f"    {name:<24s} {pct:8.2f} wt%")
    print(f"  Timestamp:       {results.get('timestamp', 'N/A')}")
    print("=" * 60)
