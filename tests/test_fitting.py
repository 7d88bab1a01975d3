"""
Unit tests for fitting.py: fit_model and KineticModel.
"""

from dataclasses import replace

import numpy as np
import pandas as pd
import pytest

from hdx_kinetics import ConfigurationError, FailureReason
from hdx_kinetics.fitting import FitControl, FitStatus, fit_model
from hdx_kinetics.formulas import KineticFormula
from hdx_kinetics.series import FeatureSeries


TIMES = [10.0, 30.0, 60.0, 300.0, 900.0, 3600.0]


def _make_series(
    rates=None,
    a=5.0,
    times=TIMES,
    n_rep=2,
    noise=0.02,
    seed=0,
    feature="PEP1",
):
    """Weibull (p=1, d=0) uptake with Gaussian noise for each condition."""
    rates = rates or {"A": 0.01}
    rng = np.random.default_rng(seed)
    rows = []
    for cond, b in rates.items():
        for rep in range(1, n_rep + 1):
            for t in times:
                rows.append({
                    "time": t, "condition": cond, "replicate": rep,
                    "response": a * (1 - np.exp(-b * t)) + rng.normal(0, noise),
                })
    return FeatureSeries.from_frame(pd.DataFrame(rows), feature_id=feature)


NULL = KineticFormula(fixed={"d": 0.0})


class TestFitConverges:

    def test_recovers_parameters(self):
        model = fit_model(_make_series(), NULL, start={"b": 0.01})
        assert model.converged
        assert model.status is FitStatus.CONVERGED
        coef = model.coefficients
        assert coef["a"] == pytest.approx(5.0, rel=0.05)
        assert coef["b"] == pytest.approx(0.01, rel=0.1)
        assert coef["p"] == pytest.approx(1.0, rel=0.1)

    def test_heuristic_start(self):
        model = fit_model(_make_series(), NULL)
        assert model.converged
        assert model.coefficients["a"] == pytest.approx(5.0, rel=0.05)

    def test_diagnostics_consistent(self):
        series = _make_series()
        model = fit_model(series, NULL, start={"b": 0.01})
        n = len(series)
        assert model.n_obs == n
        assert model.df_residual == n - 3
        assert model.rss == pytest.approx(np.sum(model.residuals ** 2))
        assert model.deviance == model.rss
        assert model.sigma2 == pytest.approx(model.rss / (n - 3))
        expected_ll = -0.5 * n * (np.log(2 * np.pi) + np.log(model.rss / n) + 1)
        assert model.log_likelihood == pytest.approx(expected_ll)
        np.testing.assert_allclose(model.fitted + model.residuals, series.responses)

    def test_covariance_symmetric_positive(self):
        model = fit_model(_make_series(), NULL, start={"b": 0.01})
        cov = model.vcov.to_numpy()
        assert cov.shape == (3, 3)
        np.testing.assert_allclose(cov, cov.T, atol=1e-12)
        assert np.all(np.diag(cov) > 0)

    def test_summary_table(self):
        model = fit_model(_make_series(), NULL, start={"b": 0.01})
        summary = model.summary()
        assert list(summary.columns) == ["estimate", "std_error", "t_value", "p_value"]
        assert list(summary.index) == ["a", "b", "p"]
        assert summary.loc["a", "p_value"] < 1e-6

    def test_lm_solver(self):
        model = fit_model(_make_series(), NULL, start={"b": 0.01}, control=FitControl(method="lm"))
        assert model.converged
        assert model.coefficients["b"] == pytest.approx(0.01, rel=0.1)


class TestPrediction:

    def test_round_trip_reproduces_fitted(self):
        series = _make_series(rates={"A": 0.01, "B": 0.02})
        alt = NULL.condition_specific(["b"])
        model = fit_model(series, alt, start={"b": 0.01})
        assert model.converged
        np.testing.assert_array_equal(model.predict(series.times, series.conditions), model.fitted)

    def test_predict_single_condition_label(self):
        series = _make_series(rates={"A": 0.01, "B": 0.02})
        model = fit_model(series, NULL.condition_specific(["b"]), start={"b": 0.01})
        grid = np.linspace(0, 3600, 50)
        curve_a = model.predict(grid, "A")
        curve_b = model.predict(grid, "B")
        assert curve_a.shape == (50,)
        # Faster exchange in B
        assert curve_b[5] > curve_a[5]

    def test_curve_parameters(self):
        series = _make_series(rates={"A": 0.01, "B": 0.02})
        model = fit_model(series, NULL.condition_specific(["b"]), start={"b": 0.01})
        params = model.curve_parameters("B")
        assert set(params) == {"a", "b", "p", "d"}
        assert params["d"] == 0.0
        assert params["b"] == pytest.approx(0.02, rel=0.15)
        with pytest.raises(ConfigurationError):
            model.curve_parameters()

    def test_predict_on_failed_model_raises(self):
        series = _make_series(times=[10.0], n_rep=2)
        model = fit_model(series, NULL)
        with pytest.raises(ValueError):
            model.predict([1.0])


class TestFitFailures:

    def test_two_observations_three_parameters(self):
        series = _make_series(times=[10.0, 60.0], n_rep=1)
        assert len(series) == 2
        model = fit_model(series, KineticFormula(form="exponential"))
        assert model.status is FitStatus.FAILED
        assert model.reason is FailureReason.INSUFFICIENT_DATA
        assert model.estimates is None

    def test_too_few_distinct_times(self):
        series = _make_series(times=[10.0, 60.0], n_rep=4)
        model = fit_model(series, NULL)
        assert model.reason is FailureReason.INSUFFICIENT_DATA

    def test_iteration_budget_exhausted(self):
        model = fit_model(_make_series(), NULL, control=FitControl(max_nfev=1))
        assert model.reason is FailureReason.MAX_ITERATIONS

    def test_non_finite_start_diverges(self):
        model = fit_model(_make_series(), NULL, start={"b": np.inf})
        assert model.reason is FailureReason.SOLVER_DIVERGENCE

    def test_flat_data_singular_jacobian(self):
        df = pd.DataFrame({
            "time": TIMES,
            "condition": "A",
            "replicate": 1,
            "response": 1.0,
        })
        series = FeatureSeries.from_frame(df, feature_id="FLAT")
        model = fit_model(series, KineticFormula(form="exponential"), control=FitControl(method="lm"))
        assert model.reason is FailureReason.SINGULAR_JACOBIAN

    def test_exact_fit_has_no_residual_variance(self):
        formula = KineticFormula(form="exponential")
        theta = np.array([5.0, 0.01, 0.0])
        series = _make_series()
        exact = formula.evaluate(theta, series.condition_levels, series.times, series.conditions)
        series = replace(series, responses=exact)
        model = fit_model(series, formula, x0=theta)
        assert model.reason is FailureReason.INSUFFICIENT_DATA
        assert "residual variance is zero" in model.message
        assert np.isnan(model.log_likelihood)

    def test_unknown_start_parameter_raises(self):
        with pytest.raises(ConfigurationError):
            fit_model(_make_series(), NULL, start={"k": 1.0})

    def test_invalid_control(self):
        with pytest.raises(ConfigurationError):
            FitControl(method="newton")
