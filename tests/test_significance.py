"""
Unit tests for significance.py: adjust_pvalues and significance_table.
"""

from dataclasses import replace

import numpy as np
import pandas as pd
import pytest
from scipy import stats

from hdx_kinetics import ConfigurationError, FailureReason
from hdx_kinetics.batch import run_batch
from hdx_kinetics.formulas import KineticFormula
from hdx_kinetics.moderation import moderate
from hdx_kinetics.series import split_features
from hdx_kinetics.significance import NOT_TESTED, TESTED, adjust_pvalues, significance_table
from hdx_kinetics.units import UnitFailure


TIMES = [10.0, 30.0, 60.0, 300.0, 900.0, 3600.0]
NULL = KineticFormula(fixed={"d": 0.0})
ALT = NULL.condition_specific(["b"])


def _make_long(n_features=12, n_diff=4, seed=3, noise=0.05):
    rng = np.random.default_rng(seed)
    rows = []
    for i in range(n_features):
        a = rng.uniform(3, 8)
        b = rng.uniform(0.005, 0.02)
        for cond in ["A", "B"]:
            b_c = b * 2 if (cond == "B" and i < n_diff) else b
            for rep in [1, 2, 3]:
                for t in TIMES:
                    rows.append({
                        "feature": f"PEP{i}", "time": t, "condition": cond, "replicate": rep,
                        "response": a * (1 - np.exp(-b_c * t)) + rng.normal(0, noise),
                    })
    return pd.DataFrame(rows)


@pytest.fixture(scope="module")
def batch():
    lookup = split_features(_make_long())
    features = list(lookup) + ["MISSING"]
    return run_batch(features, lookup, NULL, ALT, start={"b": 0.01})


class TestAdjustPvalues:

    def test_known_bh_values(self):
        adj = adjust_pvalues(np.array([0.01, 0.04, 0.03]))
        np.testing.assert_allclose(adj, [0.03, 0.04, 0.04])

    def test_monotone_in_raw_order(self):
        rng = np.random.default_rng(0)
        p = rng.uniform(size=200) ** 2
        adj = adjust_pvalues(p)
        order = np.argsort(p)
        assert np.all(np.diff(adj[order]) >= 0)
        assert np.all(adj >= p)
        assert np.all(adj <= 1)

    def test_nan_ignored(self):
        adj = adjust_pvalues(np.array([0.01, np.nan, 0.02]))
        assert np.isnan(adj[1])
        np.testing.assert_allclose(adj[[0, 2]], [0.02, 0.02])

    def test_all_nan(self):
        assert np.all(np.isnan(adjust_pvalues(np.array([np.nan, np.nan]))))

    def test_bonferroni(self):
        adj = adjust_pvalues(np.array([0.01, 0.2]), method="bonferroni")
        np.testing.assert_allclose(adj, [0.02, 0.4])


class TestSignificanceTable:

    def test_one_row_per_feature(self, batch):
        table = significance_table(batch)
        assert len(table) == len(batch.features)
        assert list(table.index) == list(batch.features)

    def test_untested_row(self, batch):
        table = significance_table(batch)
        row = table.loc["MISSING"]
        assert row["status"] == NOT_TESTED
        assert row["reason"] == FailureReason.INVALID_INPUT.value
        assert np.isnan(row["p_value"])
        assert np.isnan(row["p_adjusted"])

    def test_correction_over_tested_only(self, batch):
        table = significance_table(batch)
        tested = table[table["status"] == TESTED]
        np.testing.assert_allclose(tested["p_adjusted"], adjust_pvalues(tested["p_value"].to_numpy()))

    def test_unmoderated_f_statistic(self, batch):
        table = significance_table(batch)
        unit = batch.unit("PEP5")
        row = table.loc["PEP5"]
        expected_f = (unit.null.rss - unit.alt.rss) / unit.df_diff / unit.alt.sigma2
        assert row["f_statistic"] == pytest.approx(expected_f)
        assert row["df_denominator"] == unit.alt.df_residual
        assert row["p_value"] == pytest.approx(stats.f.sf(expected_f, unit.df_diff, unit.alt.df_residual))

    def test_lr_statistic(self, batch):
        table = significance_table(batch)
        unit = batch.unit("PEP0")
        assert table.loc["PEP0", "lr_statistic"] == pytest.approx(
            2 * (unit.loglik_alt - unit.loglik_null)
        )

    def test_chi2_reference(self, batch):
        table = significance_table(batch, reference="chi2")
        unit = batch.unit("PEP2")
        assert table.loc["PEP2", "p_value"] == pytest.approx(
            stats.chi2.sf(unit.lr_statistic, unit.df_diff)
        )

    def test_differential_features_rank_first(self, batch):
        table = significance_table(batch)
        tested = table[table["status"] == TESTED]
        top = set(tested["p_value"].nsmallest(4).index)
        assert top == {"PEP0", "PEP1", "PEP2", "PEP3"}

    def test_effect_columns(self, batch):
        table = significance_table(batch)
        for col in ["b[B-A]", "b[B-A] lower", "b[B-A] upper"]:
            assert col in table.columns
        row = table.loc["PEP0"]
        assert row["b[B-A] lower"] < row["b[B-A]"] < row["b[B-A] upper"]
        assert row["b[B-A]"] > 0

    def test_moderated(self, batch):
        moderation = moderate(batch)
        table = significance_table(batch, moderation=moderation)
        tested = table[table["status"] == TESTED]
        np.testing.assert_allclose(
            tested["df_denominator"],
            moderation.table.loc[tested.index, "moderated_df"],
        )
        assert np.all(np.isfinite(tested["p_value"]))
        assert ((tested["p_value"] >= 0) & (tested["p_value"] <= 1)).all()

    def test_infinite_prior_df_uses_chi2(self, batch):
        moderation = moderate({u.feature_id: (0.3, 10) for u in batch.tested_units()})
        assert np.isinf(moderation.prior_df)
        table = significance_table(batch, moderation=moderation)
        tested = table[table["status"] == TESTED]
        assert np.isinf(tested["df_denominator"]).all()
        np.testing.assert_allclose(
            tested["p_value"],
            stats.chi2.sf(tested["f_statistic"] * tested["df_diff"], tested["df_diff"]),
        )
        assert np.all(np.isfinite(tested["p_value"]))

    def test_zero_residual_variance_gives_infinite_f(self, batch):
        unit = batch.unit("PEP0")
        exact = replace(unit, alt=replace(unit.alt, rss=0.0))
        table = significance_table([exact])
        assert np.isinf(table.loc["PEP0", "f_statistic"])
        assert table.loc["PEP0", "p_value"] == 0.0

    def test_moderated_rejects_chi2(self, batch):
        with pytest.raises(ConfigurationError):
            significance_table(batch, moderation=moderate(batch), reference="chi2")

    def test_bad_reference(self, batch):
        with pytest.raises(ConfigurationError):
            significance_table(batch, reference="t")

    def test_nothing_tested(self):
        failures = [
            UnitFailure("P1", FailureReason.INSUFFICIENT_DATA, "too few"),
            UnitFailure("P2", FailureReason.SINGULAR_JACOBIAN, "rank"),
        ]
        table = significance_table(failures)
        assert list(table.index) == ["P1", "P2"]
        assert (table["status"] == NOT_TESTED).all()
        assert table["p_adjusted"].isna().all()
        assert list(table["reason"]) == ["insufficient-data", "singular-jacobian"]

    def test_reproducible(self, batch):
        pd.testing.assert_frame_equal(significance_table(batch), significance_table(batch))
