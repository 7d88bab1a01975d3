"""
hdx_kinetics: Functional kinetics modeling and empirical-Bayes testing for
differential hydrogen-deuterium exchange (HDX) uptake.

Public API
----------
differential_uptake(observations, features=None, form="weibull", ...)
    Full pipeline: fit null/alternative → moderate variances → test → FDR.

fit_model(series, formula, start=None, control=None)
    Nonlinear least-squares fit of one kinetic formula to one feature.

build_test_unit(series, null_formula, alt_formula, start=None, control=None)
    Paired null/alternative fit for one feature.

run_batch(features, series_lookup, null_formula, alt_formula, ...)
    Per-feature fitting across a batch, failures recorded not raised.

moderate(unit_variances)
    Empirical-Bayes squeezing of residual variances.

significance_table(units, moderation=None, reference="F", method="fdr_bh")
    Likelihood-ratio / F tests and multiple-testing correction.
"""

from .errors import ConfigurationError, FailureReason, ModerationError
from .series import FeatureSeries, parse_design, split_features, wide_to_long
from .formulas import FORMS, KineticFormula, check_nested, default_start, weibull_formula
from .fitting import FitControl, FitStatus, KineticModel, fit_model
from .units import FeatureTestUnit, UnitFailure, build_test_unit
from .batch import BatchResult, run_batch
from .moderation import ModerationState, fit_f_dist, moderate, squeeze_var, trigamma_inverse
from .significance import adjust_pvalues, significance_table
from .pipeline import differential_uptake

__all__ = [
    "ConfigurationError",
    "FailureReason",
    "ModerationError",
    "FeatureSeries",
    "parse_design",
    "split_features",
    "wide_to_long",
    "FORMS",
    "KineticFormula",
    "check_nested",
    "default_start",
    "weibull_formula",
    "FitControl",
    "FitStatus",
    "KineticModel",
    "fit_model",
    "FeatureTestUnit",
    "UnitFailure",
    "build_test_unit",
    "BatchResult",
    "run_batch",
    "ModerationState",
    "fit_f_dist",
    "moderate",
    "squeeze_var",
    "trigamma_inverse",
    "adjust_pvalues",
    "significance_table",
    "differential_uptake",
]

__version__ = "0.1.0"
