"""
pyfps: quantitative XRPD phase analysis by full pattern summation

An observed X-ray powder diffraction pattern is modelled as a non-negative
sum of pure reference patterns; the fitted coefficients are converted to
weight-percent concentrations with reference intensity ratios (RIRs).

Modules:
    core: Library/sample containers, alignment, solvers, pruning, concentrations
    io: Text and HDF5 input/output for samples, libraries and fit results
    batch: Headless fitting of files

Example:
    >>> from pyfps import ReferenceLibrary, Sample, afps
    >>> lib = ReferenceLibrary(tth, xrd, ["QUA.1", "ORG.1"], ["Quartz", "Organic"], [4.3, 1.0])
    >>> smpl = Sample(tth_smpl, counts)
    >>> result = afps(lib, smpl, std="QUA.1", align=0.2)
    >>> print(result.phases_summary)

Loading stored results example:
    >>> from pyfps import load_result
    >>> r = load_result("sample_afps.h5")
    >>> if r["found"]:
    ...     print(f"Rwp = {r['rwp']:.4f}")

References:
    Chipera, S.J., Bish, D.L. (2002). J. Appl. Cryst. 35, 744-749
    Chipera, S.J., Bish, D.L. (2013). Adv. Mater. Phys. Chem. 03, 47-53
"""

__version__ = "0.1.0"

from pyfps.core.library import ReferenceLibrary, Sample
from pyfps.core.afps import FitConfig, FitResult, afps
from pyfps.batch import fit_afps
from pyfps.io.results import load_result

__all__ = [
    "ReferenceLibrary",
    "Sample",
    "FitConfig",
    "FitResult",
    "afps",
    "fit_afps",
    "load_result",
]
