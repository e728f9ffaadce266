"""
Text readers for XRPD patterns.

``read_xy`` accepts the usual two-column ASCII exports (.xy, .xye, .txt, .csv,
.dat): comment and header lines are skipped, columns may be separated by
whitespace, commas or semicolons, and any further columns (e.g. errors in
.xye) are ignored.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Tuple, Union

import numpy as np

from pyfps.core.library import Sample

COMMENT_PREFIXES = ("#", ";", "!", "*", "//")

_SPLIT = re.compile(r"[,\s;]+")


def _is_number(s: str) -> bool:
    try:
        float(s)
        return True
    except ValueError:
        return False


def read_xy_columns(path: Union[str, Path]) -> Tuple[np.ndarray, np.ndarray]:
    """
    Read the first two numeric columns of a text file.

    Returns (tth, counts) sorted by 2θ with duplicate angles removed.

    Raises
    ------
    ValueError
        If the file contains no numeric two-column rows.
    """
    xs, ys = [], []
    with open(path, "r", encoding="utf-8", errors="ignore") as f:
        for line in f:
            s = line.strip()
            if not s or s.startswith(COMMENT_PREFIXES):
                continue
            parts = _SPLIT.split(s)
            if len(parts) < 2:
                continue
            if not (_is_number(parts[0]) and _is_number(parts[1])):
                continue
            xs.append(float(parts[0]))
            ys.append(float(parts[1]))
    if not xs:
        raise ValueError(f"No numeric two-column rows in '{path}'")
    x = np.asarray(xs, float)
    y = np.asarray(ys, float)
    o = np.argsort(x, kind='mergesort')
    x, y = x[o], y[o]
    x, idx = np.unique(x, return_index=True)
    return x, y[idx]


def read_xy(path: Union[str, Path]) -> Sample:
    """Read a two-column XRPD file into a ``Sample`` labelled with the file stem."""
    x, y = read_xy_columns(path)
    return Sample(x, y, label=Path(path).stem)
