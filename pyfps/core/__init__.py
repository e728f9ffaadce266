"""
Core analysis modules for pyfps.

This module contains the full pattern summation machinery:
- Reference library and sample containers
- 2θ alignment and harmonisation
- NNLS and general-purpose coefficient solvers
- Phase pruning (negative coefficients, detection limits, amorphous phases)
- Per-phase shift refinement
- Weight-percent concentrations

Classes:
    ReferenceLibrary: Pure reference patterns with phase metadata and RIRs
    Sample: Measured XRPD pattern
    FitConfig: Options of the automated pipeline
    FitResult: Output of the automated pipeline
"""

from pyfps.core.library import ReferenceLibrary, Sample
from pyfps.core.afps import FitConfig, FitResult, afps

__all__ = ["ReferenceLibrary", "Sample", "FitConfig", "FitResult", "afps"]
