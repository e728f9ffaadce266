"""
Data input/output utilities for pyfps.

Functions:
    read_xy: Read a two-column XRPD pattern into a Sample
    save_library / load_library: HDF5 storage of reference libraries
    save_afps_results / load_afps_results: HDF5 storage of fit results
    load_result: Load stored fit results, never raising for missing data
"""

from pyfps.io.readers import read_xy, read_xy_columns
from pyfps.io.library_h5 import save_library, load_library
from pyfps.io.nxafps import save_afps_results, load_afps_results, print_afps_results
from pyfps.io.results import load_result

__all__ = [
    "read_xy",
    "read_xy_columns",
    "save_library",
    "load_library",
    "save_afps_results",
    "load_afps_results",
    "print_afps_results",
    "load_result",
]
