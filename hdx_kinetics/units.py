"""
Null vs. alternative model comparison for a single feature.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional, Union

import numpy as np
import pandas as pd
from scipy import stats

from .errors import FailureReason
from .fitting import FitControl, KineticModel, fit_model
from .formulas import KineticFormula, check_nested, condition_param
from .series import FeatureSeries

# Relative slack allowed when checking logLik_alt >= logLik_null.
_LOGLIK_RTOL = 1e-8


@dataclass(frozen=True)
class UnitFailure:
    """A feature that could not be tested, and why."""

    feature_id: str
    reason: FailureReason
    message: str = ""
    stage: str = "input"  # "input", "null" or "alternative"

    @property
    def tested(self) -> bool:
        return False


@dataclass(frozen=True)
class FeatureTestUnit:
    """Null and alternative fits of one feature on the same observations."""

    feature_id: str
    series: FeatureSeries
    null: KineticModel
    alt: KineticModel

    @property
    def tested(self) -> bool:
        return True

    @property
    def n_obs(self) -> int:
        return len(self.series)

    @property
    def df_diff(self) -> int:
        return self.alt.n_params - self.null.n_params

    @property
    def loglik_null(self) -> float:
        return self.null.log_likelihood

    @property
    def loglik_alt(self) -> float:
        return self.alt.log_likelihood

    @property
    def lr_statistic(self) -> float:
        """``2 * (logLik_alt - logLik_null)``, clipped at zero."""
        return max(0.0, 2.0 * (self.loglik_alt - self.loglik_null))

    def condition_differences(self, conf_level: float = 0.95) -> pd.DataFrame:
        """
        Condition-specific parameters of the alternative model relative to the
        reference (first) condition.

        Returns
        -------
        DataFrame with one row per (parameter, condition) pair and columns
        'parameter', 'condition', 'reference', 'estimate', 'std_error',
        'lower', 'upper'. Bounds use the t quantile on the alternative
        residual df.
        """
        alt = self.alt
        levels = alt.condition_levels
        ref = levels[0]
        index = {name: i for i, name in enumerate(alt.parameter_names)}
        q = stats.t.ppf(0.5 + conf_level / 2.0, alt.df_residual)

        rows = []
        for name in alt.formula.by_condition:
            i_ref = index[condition_param(name, ref)]
            for lvl in levels[1:]:
                i = index[condition_param(name, lvl)]
                est = alt.estimates[i] - alt.estimates[i_ref]
                var = (
                    alt.covariance[i, i]
                    + alt.covariance[i_ref, i_ref]
                    - 2 * alt.covariance[i, i_ref]
                )
                se = float(np.sqrt(max(var, 0.0)))
                rows.append({
                    "parameter": name,
                    "condition": lvl,
                    "reference": ref,
                    "estimate": float(est),
                    "std_error": se,
                    "lower": float(est - q * se),
                    "upper": float(est + q * se),
                })
        return pd.DataFrame(
            rows,
            columns=["parameter", "condition", "reference", "estimate", "std_error", "lower", "upper"],
        )


UnitOutcome = Union[FeatureTestUnit, UnitFailure]


def _alt_start_from_null(null: KineticModel, alt_formula: KineticFormula) -> np.ndarray:
    """Null estimates replicated across conditions for each condition-specific parameter."""
    coef = dict(zip(null.parameter_names, null.estimates))
    x0 = []
    for name in alt_formula.free:
        if name in alt_formula.by_condition:
            x0.extend(
                coef.get(condition_param(name, lvl), coef.get(name))
                for lvl in null.condition_levels
            )
        else:
            x0.append(coef[name])
    return np.array(x0, dtype=float)


def _alt_not_worse(null: KineticModel, alt: KineticModel) -> bool:
    slack = _LOGLIK_RTOL * max(1.0, abs(null.log_likelihood))
    return alt.log_likelihood >= null.log_likelihood - slack


def build_test_unit(
    series: FeatureSeries,
    null_formula: KineticFormula,
    alt_formula: KineticFormula,
    start: Optional[Mapping[str, Optional[float]]] = None,
    control: Optional[FitControl] = None,
) -> UnitOutcome:
    """
    Fit the null and alternative formulas to ``series``.

    Raises ConfigurationError if the formulas are not nested or ``start``
    names unknown parameters. Fit problems are returned as UnitFailure.
    """
    check_nested(null_formula, alt_formula)
    fid = series.feature_id

    if series.n_conditions < 2:
        return UnitFailure(
            fid, FailureReason.INSUFFICIENT_DATA,
            f"only condition {series.condition_levels[0]!r} observed", stage="input",
        )

    null = fit_model(series, null_formula, start=start, control=control)
    if not null.converged:
        return UnitFailure(fid, null.reason, null.message, stage="null")

    alt = fit_model(series, alt_formula, start=start, control=control)
    if not (alt.converged and _alt_not_worse(null, alt)):
        refit = fit_model(
            series, alt_formula, control=control,
            x0=_alt_start_from_null(null, alt_formula),
        )
        if refit.converged and (not alt.converged or refit.log_likelihood > alt.log_likelihood):
            alt = refit
    if not alt.converged:
        return UnitFailure(fid, alt.reason, alt.message, stage="alternative")
    if not _alt_not_worse(null, alt):
        return UnitFailure(
            fid, FailureReason.SOLVER_DIVERGENCE,
            f"alternative logLik {alt.log_likelihood:.6g} below null "
            f"logLik {null.log_likelihood:.6g}",
            stage="alternative",
        )

    return FeatureTestUnit(feature_id=fid, series=series, null=null, alt=alt)
