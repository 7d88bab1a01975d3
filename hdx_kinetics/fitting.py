"""
Nonlinear least-squares fitting of kinetic uptake models to one feature.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Mapping, Optional, Tuple

import numpy as np
import pandas as pd
from scipy import stats
from scipy.optimize import least_squares

from .errors import ConfigurationError, FailureReason
from .formulas import KineticFormula, condition_param, default_start
from .series import FeatureSeries

logger = logging.getLogger(__name__)


class FitStatus(str, Enum):
    CONVERGED = "converged"
    FAILED = "failed"


@dataclass(frozen=True)
class FitControl:
    """
    Solver settings shared by every fit in a batch.

    Parameters
    ----------
    method : str
        ``least_squares`` method: 'trf' (bounded) or 'lm' (Levenberg-Marquardt,
        parameter bounds ignored).
    max_nfev : int
        Maximum number of residual evaluations per fit.
    ftol, xtol, gtol : float
        Convergence tolerances on cost, parameters and gradient.
    singular_rtol : float
        Singular values of the Jacobian below ``singular_rtol`` times the
        largest one count as rank deficiency.
    """

    method: str = "trf"
    max_nfev: int = 1000
    ftol: float = 1e-8
    xtol: float = 1e-8
    gtol: float = 1e-8
    singular_rtol: float = 1e-10

    def __post_init__(self):
        if self.method not in ("trf", "lm", "dogbox"):
            raise ConfigurationError(f"Unsupported solver method {self.method!r}")
        if self.max_nfev < 1:
            raise ConfigurationError("max_nfev must be positive")


@dataclass(frozen=True)
class KineticModel:
    """
    A kinetic formula fitted to one feature series.

    Failed fits carry ``status=FitStatus.FAILED`` plus a ``reason`` and
    ``message``; their numeric fields are None.
    """

    feature_id: str
    formula: KineticFormula
    condition_levels: Tuple[str, ...]
    parameter_names: Tuple[str, ...]
    status: FitStatus
    n_obs: int
    reason: Optional[FailureReason] = None
    message: str = ""
    estimates: Optional[np.ndarray] = None
    covariance: Optional[np.ndarray] = None
    times: Optional[np.ndarray] = None
    conditions: Optional[np.ndarray] = None
    fitted: Optional[np.ndarray] = None
    residuals: Optional[np.ndarray] = None
    rss: float = np.nan
    df_residual: int = 0
    log_likelihood: float = np.nan
    nfev: int = 0

    @property
    def converged(self) -> bool:
        return self.status is FitStatus.CONVERGED

    @property
    def n_params(self) -> int:
        return len(self.parameter_names)

    @property
    def deviance(self) -> float:
        return self.rss

    @property
    def sigma2(self) -> float:
        """Residual variance RSS / df."""
        if not self.converged or self.df_residual <= 0:
            return np.nan
        return self.rss / self.df_residual

    @property
    def coefficients(self) -> pd.Series:
        return pd.Series(self.estimates, index=list(self.parameter_names), name="estimate")

    @property
    def vcov(self) -> pd.DataFrame:
        names = list(self.parameter_names)
        return pd.DataFrame(self.covariance, index=names, columns=names)

    def curve_parameters(self, condition: Optional[str] = None) -> Dict[str, float]:
        """Form parameters (fixed ones included) of the curve for one condition."""
        self._require_converged()
        coef = dict(zip(self.parameter_names, self.estimates))
        out = {}
        for name in self.formula.free:
            if name in self.formula.by_condition:
                if condition is None:
                    raise ConfigurationError(
                        f"Parameter {name!r} is condition-specific; pass a condition"
                    )
                out[name] = float(coef[condition_param(name, condition)])
            else:
                out[name] = float(coef[name])
        out.update(self.formula.fixed)
        return out

    def predict(self, times, conditions=None) -> np.ndarray:
        """
        Predicted uptake at ``times``.

        ``conditions`` is a label or an array of labels aligned with ``times``;
        it is needed only when the model has condition-specific parameters.
        """
        self._require_converged()
        times = np.atleast_1d(np.asarray(times, dtype=float))
        if conditions is not None and np.ndim(conditions) == 0:
            conditions = np.full(times.shape, conditions, dtype=object)
        return self.formula.evaluate(self.estimates, self.condition_levels, times, conditions)

    def summary(self) -> pd.DataFrame:
        """Coefficient table with standard errors and Wald t tests."""
        self._require_converged()
        se = np.sqrt(np.clip(np.diag(self.covariance), 0, None))
        with np.errstate(divide="ignore", invalid="ignore"):
            t_value = self.estimates / se
        p_value = 2 * stats.t.sf(np.abs(t_value), self.df_residual)
        return pd.DataFrame({
            "estimate": self.estimates,
            "std_error": se,
            "t_value": t_value,
            "p_value": p_value,
        }, index=list(self.parameter_names))

    def _require_converged(self):
        if not self.converged:
            raise ValueError(
                f"Model for feature {self.feature_id!r} did not converge "
                f"({self.reason.value}: {self.message})"
            )


def _failed(series, formula, names, reason, message, nfev=0) -> KineticModel:
    logger.debug(f"Fit failed for {series.feature_id}: {reason.value} ({message})")
    return KineticModel(
        feature_id=series.feature_id,
        formula=formula,
        condition_levels=series.condition_levels,
        parameter_names=tuple(names),
        status=FitStatus.FAILED,
        n_obs=len(series),
        reason=reason,
        message=message,
        nfev=nfev,
    )


def initial_vector(
    formula: KineticFormula,
    series: FeatureSeries,
    start: Optional[Mapping[str, Optional[float]]] = None,
) -> np.ndarray:
    """Starting vector ordered as ``formula.parameter_names(levels)``."""
    base = default_start(formula, series.responses, start)
    x0 = []
    for name in formula.free:
        if name in formula.by_condition:
            x0.extend(
                base.get(condition_param(name, lvl), base[name])
                for lvl in series.condition_levels
            )
        else:
            x0.append(base[name])
    lower, upper = formula.bounds(series.condition_levels)
    return np.clip(np.array(x0, dtype=float), lower, upper)


def fit_model(
    series: FeatureSeries,
    formula: KineticFormula,
    start: Optional[Mapping[str, Optional[float]]] = None,
    control: Optional[FitControl] = None,
    x0: Optional[np.ndarray] = None,
) -> KineticModel:
    """
    Fit ``formula`` to ``series`` by nonlinear least squares.

    Parameters
    ----------
    series : FeatureSeries
        Observations of one feature.
    formula : KineticFormula
        Model to fit.
    start : mapping or None
        Starting value per parameter; None entries use the built-in heuristic.
    control : FitControl or None
        Solver settings.
    x0 : ndarray or None
        Full starting vector, overriding ``start``.

    Returns
    -------
    KineticModel
        Converged with diagnostics, or failed with a FailureReason. Solver
        problems are never raised. Invalid ``start`` names raise
        ConfigurationError.
    """
    control = control or FitControl()
    levels = series.condition_levels
    names = formula.parameter_names(levels)
    n, k = len(series), len(names)

    if n <= k:
        return _failed(
            series, formula, names, FailureReason.INSUFFICIENT_DATA,
            f"{n} observations for {k} free parameters",
        )
    if series.n_timepoints < len(formula.free):
        return _failed(
            series, formula, names, FailureReason.INSUFFICIENT_DATA,
            f"{series.n_timepoints} distinct time points for "
            f"{len(formula.free)} free curve parameters",
        )

    if x0 is None:
        x0 = initial_vector(formula, series, start)
    else:
        lower, upper = formula.bounds(levels)
        x0 = np.clip(np.asarray(x0, dtype=float), lower, upper)
    if not np.all(np.isfinite(x0)):
        return _failed(
            series, formula, names, FailureReason.SOLVER_DIVERGENCE,
            "non-finite starting values",
        )

    times, conditions, y = series.times, series.conditions, series.responses

    def residuals(theta):
        return formula.evaluate(theta, levels, times, conditions) - y

    kwargs = dict(
        method=control.method,
        max_nfev=control.max_nfev,
        ftol=control.ftol,
        xtol=control.xtol,
        gtol=control.gtol,
    )
    if control.method != "lm":
        kwargs["bounds"] = formula.bounds(levels)

    with np.errstate(all="ignore"):
        try:
            result = least_squares(residuals, x0, **kwargs)
        except (ValueError, FloatingPointError, np.linalg.LinAlgError) as e:
            return _failed(series, formula, names, FailureReason.SOLVER_DIVERGENCE, str(e))

    if result.status == 0:
        return _failed(
            series, formula, names, FailureReason.MAX_ITERATIONS,
            f"no convergence after {result.nfev} evaluations", nfev=result.nfev,
        )
    if result.status < 0 or not np.all(np.isfinite(result.x)) or not np.isfinite(result.cost):
        return _failed(
            series, formula, names, FailureReason.SOLVER_DIVERGENCE,
            result.message, nfev=result.nfev,
        )

    jac = np.asarray(result.jac, dtype=float)
    if not np.all(np.isfinite(jac)):
        return _failed(
            series, formula, names, FailureReason.SOLVER_DIVERGENCE,
            "non-finite Jacobian at solution", nfev=result.nfev,
        )
    _, sv, vt = np.linalg.svd(jac, full_matrices=False)
    if sv[0] <= 0 or np.sum(sv > control.singular_rtol * sv[0]) < k:
        return _failed(
            series, formula, names, FailureReason.SINGULAR_JACOBIAN,
            "Jacobian is rank deficient at solution", nfev=result.nfev,
        )

    theta = result.x
    fitted = formula.evaluate(theta, levels, times, conditions)
    resid = y - fitted
    rss = float(np.sum(resid ** 2))
    if rss == 0.0:
        return _failed(
            series, formula, names, FailureReason.INSUFFICIENT_DATA,
            "exact fit, residual variance is zero", nfev=result.nfev,
        )
    df_residual = n - k
    sigma2 = rss / df_residual
    covariance = sigma2 * (vt.T / sv ** 2) @ vt
    log_likelihood = -0.5 * n * (np.log(2 * np.pi) + np.log(rss / n) + 1.0)

    return KineticModel(
        feature_id=series.feature_id,
        formula=formula,
        condition_levels=levels,
        parameter_names=tuple(names),
        status=FitStatus.CONVERGED,
        n_obs=n,
        estimates=theta,
        covariance=covariance,
        times=times,
        conditions=conditions,
        fitted=fitted,
        residuals=resid,
        rss=rss,
        df_residual=df_residual,
        log_likelihood=float(log_likelihood),
        nfev=result.nfev,
    )
