"""
Tests for cli.py: the hdx-kinetics entry point.
"""

import numpy as np
import pandas as pd
import pytest

from hdx_kinetics.cli import main


def _write_long_csv(path, n_features=6, seed=7):
    rng = np.random.default_rng(seed)
    rows = []
    for i in range(n_features):
        b = rng.uniform(0.005, 0.02)
        for cond in ["WT", "KO"]:
            b_c = b * 2 if (cond == "KO" and i == 0) else b
            for rep in [1, 2]:
                for t in [10.0, 30.0, 60.0, 300.0, 900.0, 3600.0]:
                    rows.append({
                        "feature": f"PEP{i}", "time": t, "condition": cond, "replicate": rep,
                        "response": 4.0 * (1 - np.exp(-b_c * t)) + rng.normal(0, 0.05),
                    })
    pd.DataFrame(rows).to_csv(path, index=False)


class TestCli:

    def test_writes_results(self, tmp_path, capsys):
        data = tmp_path / "uptake.csv"
        out = tmp_path / "out"
        _write_long_csv(data)
        code = main([
            "--input", str(data), "--output-dir", str(out),
            "--fix", "d=0", "--by-condition", "b", "--start", "b=0.01",
        ])
        assert code == 0
        results = pd.read_csv(out / "results.csv", index_col=0)
        assert len(results) == 6
        assert (out / "diagnostics.csv").exists()
        assert "Tested" in capsys.readouterr().out

    def test_unmoderated_chi2(self, tmp_path):
        data = tmp_path / "uptake.csv"
        _write_long_csv(data, n_features=3)
        code = main([
            "--input", str(data), "--output-dir", str(tmp_path / "out"),
            "--fix", "d=0", "--no-moderation", "--reference", "chi2",
        ])
        assert code == 0

    def test_moderation_error_reported(self, tmp_path, capsys):
        data = tmp_path / "uptake.csv"
        _write_long_csv(data, n_features=1)
        code = main(["--input", str(data), "--output-dir", str(tmp_path / "out"), "--fix", "d=0"])
        assert code == 1
        assert "unmoderated" in capsys.readouterr().err

    def test_bad_fix_value(self, tmp_path, capsys):
        data = tmp_path / "uptake.csv"
        _write_long_csv(data, n_features=2)
        code = main(["--input", str(data), "--fix", "d=zero"])
        assert code == 1
        assert "error" in capsys.readouterr().err

    def test_unknown_form_rejected(self, tmp_path):
        data = tmp_path / "uptake.csv"
        _write_long_csv(data, n_features=2)
        with pytest.raises(SystemExit):
            main(["--input", str(data), "--form", "logistic"])
