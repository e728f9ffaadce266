"""
HDF5 storage of reference libraries.

A library is stored under ``entry/library`` (NXcollection group):

Datasets stored
---------------
tth         — 2θ axis [degrees], shape (M,)
xrd         — reference intensities, shape (M, N)
phase_id    — unique phase identifiers, shape (N,)
phase_name  — mineral names, shape (N,)
rir         — reference intensity ratios, shape (N,)

Group attributes
----------------
n_phases, timestamp, program, plus any user metadata passed to
``save_library`` (e.g. ``wavelength``, ``description``)
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Optional

import h5py
import numpy as np

from pyfps.core.library import ReferenceLibrary

_GROUP = 'entry/library'
_PROGRAM = 'pyfps.io.library_h5'


def save_library(
    filepath: Path,
    lib: ReferenceLibrary,
    metadata: Optional[dict] = None,
) -> None:
    """
    Save a reference library to an HDF5 file.

    The file is created if needed; an existing ``library`` group is replaced.

    Args:
        filepath: Output HDF5 file.
        lib:      Library to store.
        metadata: Optional scalar attributes stored on the group.
    """
    filepath = Path(filepath)
    mode = 'a' if filepath.exists() else 'w'
    str_dt = h5py.string_dtype(encoding='utf-8')

    with h5py.File(filepath, mode) as f:
        if _GROUP in f:
            del f[_GROUP]

        grp = f.require_group(_GROUP)
        grp.attrs['NX_class']  = 'NXcollection'
        grp.attrs['program']   = _PROGRAM
        grp.attrs['timestamp'] = datetime.now().isoformat()
        grp.attrs['n_phases']  = lib.n_phases
        for k, v in (metadata or {}).items():
            if v is not None:
                grp.attrs[k] = v

        grp.create_dataset('tth', data=lib.tth.astype('f8'), compression='gzip')
        grp.create_dataset('xrd', data=lib.xrd.astype('f8'), compression='gzip')
        grp.create_dataset('phase_id',   data=np.array(lib.phase_ids, dtype=object),   dtype=str_dt)
        grp.create_dataset('phase_name', data=np.array(lib.phase_names, dtype=object), dtype=str_dt)
        grp.create_dataset('rir', data=lib.rir.astype('f8'))

        grp['tth'].attrs['units'] = 'degrees'


def _as_str_list(ds) -> list:
    return [v.decode('utf-8') if isinstance(v, bytes) else str(v) for v in ds[()]]


def load_library(filepath: Path) -> ReferenceLibrary:
    """
    Load a reference library from an HDF5 file.

    Raises:
        KeyError:   if the file has no ``library`` group.
        ValueError: if the stored arrays are inconsistent.
        OSError:    if the file cannot be opened.
    """
    filepath = Path(filepath)
    with h5py.File(filepath, 'r') as f:
        if _GROUP not in f:
            raise KeyError(f"No library group found in {filepath.name}.")
        grp = f[_GROUP]
        return ReferenceLibrary(
            tth=grp['tth'][:],
            xrd=grp['xrd'][:],
            phase_ids=_as_str_list(grp['phase_id']),
            phase_names=_as_str_list(grp['phase_name']),
            rir=grp['rir'][:],
        )
