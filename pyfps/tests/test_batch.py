"""
Tests for the headless batch API.
"""

import json

import numpy as np
import pytest

from pyfps.batch import fit_afps, write_config
from pyfps.core.afps import FitConfig
from pyfps.core.library import ReferenceLibrary
from pyfps.io import load_result, save_library


def _gauss(x, mu, sigma=0.06):
    return np.exp(-0.5 * ((x - mu) / sigma) ** 2)


@pytest.fixture
def files(tmp_path):
    tth = np.arange(10.0, 60.0, 0.02)
    xrd = np.column_stack([
        _gauss(tth, 26.64) + 0.2 * _gauss(tth, 20.86) + 0.005,
        0.25 * np.exp(-0.5 * ((tth - 21.0) / 4.0) ** 2) + 0.02,
    ])
    lib = ReferenceLibrary(tth, xrd, ["QUA.1", "ORG.1"], ["Quartz", "Organic"], [4.3, 1.0])
    library_file = tmp_path / "library.h5"
    save_library(library_file, lib)

    counts = 2000.0 * (xrd @ np.array([0.7, 0.3 / 4.3]))
    data_file = tmp_path / "mix.xy"
    np.savetxt(data_file, np.column_stack([tth, counts]), header="2theta counts")

    config_file = write_config(tmp_path / "pyfps_config.json", FitConfig(std="QUA.1"))
    return data_file, library_file, config_file, lib


class TestFitAfps:
    def test_success(self, files):
        data_file, library_file, config_file, _ = files
        result = fit_afps(data_file, library_file, config_file)
        assert result is not None
        pct = result['phases'].set_index('phase_name')['phase_percent']
        assert pct['Quartz'] == pytest.approx(70.0, abs=5.0)
        assert result['output_file'] == data_file.with_name("mix_afps.h5")
        assert load_result(result['output_file'])['found']

    def test_no_save(self, files):
        data_file, library_file, config_file, _ = files
        result = fit_afps(data_file, library_file, config_file, save_results=False)
        assert result['output_file'] is None
        assert not data_file.with_name("mix_afps.h5").exists()

    def test_library_object(self, files):
        data_file, _, config_file, lib = files
        result = fit_afps(data_file, lib, config_file, save_results=False)
        assert result is not None
        assert result['library_file'] is None

    def test_missing_header(self, files, tmp_path):
        data_file, library_file, _, _ = files
        bad = tmp_path / "bad.json"
        bad.write_text(json.dumps({"afps": {"std": "QUA.1"}}))
        assert fit_afps(data_file, library_file, bad) is None

    def test_missing_section(self, files, tmp_path):
        data_file, library_file, _, _ = files
        bad = tmp_path / "bad.json"
        bad.write_text(json.dumps({"_pyfps_config": {}}))
        assert fit_afps(data_file, library_file, bad) is None

    def test_invalid_options(self, files, tmp_path):
        data_file, library_file, _, _ = files
        bad = tmp_path / "bad.json"
        bad.write_text(json.dumps({"_pyfps_config": {}, "afps": {"solver": "Powell"}}))
        assert fit_afps(data_file, library_file, bad) is None

    def test_missing_data_file(self, files, tmp_path):
        _, library_file, config_file, _ = files
        assert fit_afps(tmp_path / "nope.xy", library_file, config_file) is None

    def test_unknown_standard(self, files, tmp_path):
        data_file, library_file, _, _ = files
        cfg = write_config(tmp_path / "cfg.json", FitConfig(std="RUT.1"))
        assert fit_afps(data_file, library_file, cfg) is None

    def test_prints_summary(self, files, capsys):
        data_file, library_file, config_file, _ = files
        fit_afps(data_file, library_file, config_file, save_results=False)
        out = capsys.readouterr().out
        assert "Full Pattern Summation Results" in out
        assert "Quartz" in out
        assert "[pyfps.batch] AFPS:" in out
