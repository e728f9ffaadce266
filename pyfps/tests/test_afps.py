"""
Tests for the automated full pattern summation pipeline.

Tests cover:
  - Recovery of a 70/30 quartz/organic mixture
  - Single-phase degenerate case
  - Absolute concentrations with a spiked standard and omit_std
  - Non-negativity, sum-to-100 and LOD monotonicity
  - Per-phase shifting and every solver
  - Precondition errors and warnings
  - Inputs are not modified
"""

import warnings

import numpy as np
import pytest

from pyfps.core.afps import FitConfig, FitResult, afps
from pyfps.core.fitter import SOLVERS
from pyfps.core.library import ReferenceLibrary, Sample

QUARTZ_PEAKS = (
    (20.86, 0.22), (26.64, 1.00), (36.54, 0.08), (39.46, 0.08), (40.29, 0.04),
    (42.45, 0.06), (45.79, 0.04), (50.14, 0.14), (54.87, 0.04), (59.96, 0.09),
)
CALCITE_PEAKS = ((29.40, 1.00), (39.40, 0.18), (43.15, 0.18), (47.50, 0.17), (48.50, 0.17))

RIR = {"QUARTZ": 4.3, "ORGANIC": 1.0, "CALCITE": 3.2}


def _peaks(tth, peaks, sigma=0.06):
    y = np.zeros_like(tth)
    for pos, h in peaks:
        y += h * np.exp(-0.5 * ((tth - pos) / sigma) ** 2)
    return y


def _library(with_calcite=False):
    tth = np.arange(5.0, 65.0, 0.02)
    cols = [
        _peaks(tth, QUARTZ_PEAKS) + 0.005,
        0.25 * np.exp(-0.5 * ((tth - 21.0) / 4.0) ** 2) + 0.02,
    ]
    ids = ["QUARTZ", "ORGANIC"]
    names = ["Quartz", "Organic matter"]
    if with_calcite:
        cols.append(_peaks(tth, CALCITE_PEAKS) + 0.005)
        ids.append("CALCITE")
        names.append("Calcite")
    return ReferenceLibrary(tth, np.column_stack(cols), ids, names, [RIR[p] for p in ids])


def _sample(lib, wt=None, scale=2000.0, noise=0.003, seed=1):
    """
    Sample mixing the library phases at the given weight fractions.

    A phase at w wt% with RIR r contributes w / r of its reference pattern
    (the standard being QUARTZ).
    """
    wt = wt or {"QUARTZ": 70.0, "ORGANIC": 30.0}
    coef = np.zeros(lib.n_phases)
    for pid, w in wt.items():
        coef[lib.index(pid)] = w / 100.0 * lib.rir_of(pid) / RIR["QUARTZ"]
    tth = np.arange(10.0, 60.0, 0.02)
    pure = np.column_stack([np.interp(tth, lib.tth, lib.xrd[:, j]) for j in range(lib.n_phases)])
    y = scale * (pure @ coef)
    rng = np.random.default_rng(seed)
    y = y + rng.normal(0.0, noise * y)
    return Sample(tth, y, label="mix")


def _pct(result: FitResult, name: str) -> float:
    s = result.phases_summary.set_index('phase_name')['phase_percent']
    return float(s.get(name, 0.0))


# ──────────────────────────────────────────────────────────────────────────────
# Scenarios
# ──────────────────────────────────────────────────────────────────────────────

class TestQuartzOrganic:
    def test_recovers_mixture(self):
        lib = _library()
        res = afps(lib, _sample(lib), std="QUARTZ", align=0.1)
        assert _pct(res, "Quartz") == pytest.approx(70.0, abs=5.0)
        assert _pct(res, "Organic matter") == pytest.approx(30.0, abs=5.0)

    def test_sum_to_100(self):
        lib = _library()
        res = afps(lib, _sample(lib), std="QUARTZ")
        assert res.phases['phase_percent'].sum() == pytest.approx(100.0)

    def test_nonnegative_coefficients(self):
        lib = _library(with_calcite=True)
        res = afps(lib, _sample(lib), std="QUARTZ")
        assert all(v >= 0.0 for v in res.coefficients.values())

    def test_absent_phase_negligible(self):
        lib = _library(with_calcite=True)
        res = afps(lib, _sample(lib), std="QUARTZ", lod=0.5)
        assert _pct(res, "Calcite") < 1.0

    def test_result_shapes(self):
        lib = _library()
        res = afps(lib, _sample(lib), std="QUARTZ")
        n = len(res.tth)
        assert res.fitted.shape == res.measured.shape == res.residuals.shape == (n,)
        np.testing.assert_allclose(res.residuals, res.measured - res.fitted)
        assert list(res.weighted_pure_patterns.columns) == ['tth'] + list(res.coefficients)
        assert 0.0 <= res.rwp < 0.1
        assert abs(res.shift) <= 0.1

    def test_to_dict(self):
        lib = _library()
        d = afps(lib, _sample(lib), std="QUARTZ").to_dict()
        assert d['config']['std'] == "QUARTZ"
        assert {'tth', 'fitted', 'phases', 'rwp', 'removed', 'diagnostics'} <= set(d)


class TestSinglePhase:
    def test_single_phase_is_100(self):
        lib = _library().subset(["QUARTZ"])
        smpl = _sample(_library(), wt={"QUARTZ": 100.0})
        res = afps(lib, smpl, std="QUARTZ")
        assert list(res.coefficients) == ["QUARTZ"]
        assert _pct(res, "Quartz") == pytest.approx(100.0)
        assert [d['stage'] for d in res.diagnostics] == ['initial']
        assert res.removed == {}

    def test_no_standard(self):
        lib = _library().subset(["QUARTZ"])
        smpl = _sample(_library(), wt={"QUARTZ": 100.0})
        res = afps(lib, smpl, std=None)
        assert res.shift == 0.0
        assert _pct(res, "Quartz") == pytest.approx(100.0)


class TestAbsolute:
    def test_known_standard_concentration(self):
        lib = _library()
        res = afps(lib, _sample(lib), std="QUARTZ", std_conc=70.0)
        assert _pct(res, "Quartz") == pytest.approx(70.0)
        assert _pct(res, "Organic matter") == pytest.approx(30.0, abs=5.0)

    def test_omit_standard(self):
        lib = _library()
        res = afps(lib, _sample(lib), std="QUARTZ", std_conc=70.0, omit_std=True)
        assert "QUARTZ" not in list(res.phases['phase_id'])
        assert _pct(res, "Organic matter") == pytest.approx(100.0, abs=17.0)


class TestOptions:
    @pytest.mark.parametrize("solver", SOLVERS)
    def test_every_solver(self, solver):
        lib = _library()
        res = afps(lib, _sample(lib), std="QUARTZ", solver=solver)
        assert _pct(res, "Quartz") == pytest.approx(70.0, abs=5.0)

    @pytest.mark.parametrize("obj", ["Delta", "R", "Rwp"])
    def test_every_objective(self, obj):
        lib = _library()
        res = afps(lib, _sample(lib), std="QUARTZ", obj=obj)
        assert _pct(res, "Quartz") == pytest.approx(70.0, abs=5.0)

    def test_per_phase_shift(self):
        lib = _library()
        res = afps(lib, _sample(lib), std="QUARTZ", shift=0.04, shift_res=2)
        assert set(res.phase_shifts) == set(res.coefficients)
        assert all(abs(s) <= 0.04 + 1e-12 for s in res.phase_shifts.values())
        assert _pct(res, "Quartz") == pytest.approx(70.0, abs=5.0)

    def test_fit_window(self):
        lib = _library()
        res = afps(lib, _sample(lib), std="QUARTZ", tth_fps=(15.0, 45.0))
        assert res.tth[0] >= 15.0 - 1e-9
        assert res.tth[-1] <= 45.0 + 1e-9

    def test_manual_alignment(self):
        lib = _library()
        res = afps(lib, _sample(lib), std="QUARTZ", align=0.02, manual_align=True)
        assert res.shift == 0.02

    def test_refs_subset(self):
        lib = _library(with_calcite=True)
        res = afps(lib, _sample(lib), std="QUARTZ", refs=["QUARTZ", "ORGANIC"])
        assert "CALCITE" not in res.coefficients

    def test_lod_monotonic(self):
        lib = _library(with_calcite=True)
        smpl = _sample(lib, wt={"QUARTZ": 69.0, "ORGANIC": 30.0, "CALCITE": 1.0})
        counts = []
        for lod in (0.0, 0.5, 5.0):
            res = afps(lib, smpl, std="QUARTZ", lod=lod)
            counts.append(len(res.coefficients))
        assert counts[0] >= counts[1] >= counts[2]

    def test_forced_phase_retained(self):
        lib = _library(with_calcite=True)
        res = afps(lib, _sample(lib), std="QUARTZ", force=["CALCITE"], lod=5.0)
        assert "CALCITE" in res.coefficients
        assert res.coefficients["CALCITE"] >= 0.0

    def test_amorphous_removal(self):
        lib = _library()
        smpl = _sample(lib, wt={"QUARTZ": 99.7, "ORGANIC": 0.3})
        res = afps(lib, smpl, std="QUARTZ", amorphous=["ORGANIC"], amorphous_lod=2.0)
        assert "ORGANIC" not in res.coefficients

    def test_config_object_and_overrides(self):
        lib = _library()
        cfg = FitConfig(std="QUARTZ", solver="NNLS")
        res = afps(lib, _sample(lib), cfg, obj="Delta")
        assert res.config['solver'] == "NNLS"
        assert res.config['obj'] == "Delta"

    def test_diagnostics_recorded(self):
        lib = _library()
        res = afps(lib, _sample(lib), std="QUARTZ")
        stages = [d['stage'] for d in res.diagnostics]
        assert "initial" in stages
        assert isinstance(res.converged, bool)


class TestInputsUnchanged:
    def test_library_and_sample_unchanged(self):
        lib = _library(with_calcite=True)
        smpl = _sample(lib)
        tth0, xrd0, ids0 = lib.tth.copy(), lib.xrd.copy(), list(lib.phase_ids)
        s_tth0, s_counts0 = smpl.tth.copy(), smpl.counts.copy()
        afps(lib, smpl, std="QUARTZ", shift=0.04, lod=0.5)
        np.testing.assert_array_equal(lib.tth, tth0)
        np.testing.assert_array_equal(lib.xrd, xrd0)
        assert lib.phase_ids == ids0
        np.testing.assert_array_equal(smpl.tth, s_tth0)
        np.testing.assert_array_equal(smpl.counts, s_counts0)


# ──────────────────────────────────────────────────────────────────────────────
# Errors and warnings
# ──────────────────────────────────────────────────────────────────────────────

class TestPreconditions:
    @pytest.mark.parametrize("kwargs", [
        {"solver": "Powell"},
        {"obj": "chi2"},
        {"std": "QUARTZ", "std_conc": 0.0},
        {"std": "QUARTZ", "std_conc": 100.0},
        {"std_conc": 20.0},
        {"std": "QUARTZ", "omit_std": True},
        {"std": "QUARTZ", "align": 0.0},
        {"lod": -1.0},
        {"amorphous_lod": -0.1},
        {"shift": -0.1},
        {"shift_res": 0},
    ])
    def test_invalid_config(self, kwargs):
        with pytest.raises(ValueError):
            FitConfig(**kwargs)

    def test_std_none_string(self):
        assert FitConfig(std="none").std is None

    @pytest.mark.parametrize("kwargs", [
        {"std": "RUTILE"},
        {"std": "QUARTZ", "force": ["RUTILE"]},
        {"std": "QUARTZ", "amorphous": ["RUTILE"]},
        {"std": "QUARTZ", "refs": ["ORGANIC"]},
    ])
    def test_unknown_phase(self, kwargs):
        lib = _library()
        with pytest.raises(ValueError):
            afps(lib, _sample(lib), **kwargs)

    def test_nonpositive_counts(self):
        lib = _library()
        smpl = _sample(lib)
        counts = smpl.counts.copy()
        counts[100] = -50.0
        with pytest.raises(ValueError):
            afps(lib, Sample(smpl.tth, counts), std="QUARTZ")

    def test_mismatched_axes_without_harmonise(self):
        lib = _library()
        with pytest.raises(ValueError):
            afps(lib, _sample(lib), std=None, harmonise=False)

    def test_same_axes_without_harmonise(self):
        lib = _library()
        smpl = _sample(lib)
        lib_same = ReferenceLibrary(
            smpl.tth,
            np.column_stack([np.interp(smpl.tth, lib.tth, lib.xrd[:, j]) for j in range(2)]),
            lib.phase_ids, lib.phase_names, lib.rir,
        )
        res = afps(lib_same, smpl, std=None, harmonise=False)
        assert _pct(res, "Quartz") == pytest.approx(70.0, abs=5.0)


class TestWarnings:
    def test_large_alignment_bound(self):
        lib = _library()
        with pytest.warns(UserWarning, match="large 2theta shifts"):
            afps(lib, _sample(lib), std="QUARTZ", align=0.6)

    def test_saturated_alignment(self):
        lib = _library()
        smpl = _sample(lib)
        displaced = Sample(smpl.tth + 0.3, smpl.counts)
        with pytest.warns(UserWarning, match="within 5%"):
            afps(lib, displaced, std="QUARTZ", align=0.05)

    def test_no_warning_for_clean_alignment(self):
        lib = _library()
        with warnings.catch_warnings():
            warnings.simplefilter("error", UserWarning)
            afps(lib, _sample(lib), std="QUARTZ", align=0.1)
