"""
Apply the null/alternative comparison to every requested feature.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

import pandas as pd
from joblib import Parallel, delayed

from .errors import ConfigurationError, FailureReason
from .fitting import FitControl
from .formulas import KineticFormula, check_nested, default_start
from .series import FeatureSeries
from .units import FeatureTestUnit, UnitFailure, UnitOutcome, build_test_unit

logger = logging.getLogger(__name__)

SeriesLike = Union[FeatureSeries, pd.DataFrame]

DIAGNOSTIC_COLS = ["feature", "stage", "reason", "message"]


@dataclass(frozen=True)
class BatchResult:
    """Outcome of a batch, one entry per requested feature in request order."""

    features: Tuple[str, ...]
    outcomes: Tuple[UnitOutcome, ...]
    null_formula: KineticFormula
    alt_formula: KineticFormula

    def __len__(self) -> int:
        return len(self.outcomes)

    @property
    def n_tested(self) -> int:
        return sum(o.tested for o in self.outcomes)

    def tested_units(self) -> List[FeatureTestUnit]:
        return [o for o in self.outcomes if o.tested]

    def failures(self) -> List[UnitFailure]:
        return [o for o in self.outcomes if not o.tested]

    @property
    def diagnostics(self) -> pd.DataFrame:
        """One row per failed feature: feature, stage, reason, message."""
        rows = [
            {
                "feature": f.feature_id,
                "stage": f.stage,
                "reason": f.reason.value,
                "message": f.message,
            }
            for f in self.failures()
        ]
        return pd.DataFrame(rows, columns=DIAGNOSTIC_COLS)

    def residual_variances(self) -> Dict[str, Tuple[float, int]]:
        """Alternative-model residual variance and df for every tested feature."""
        return {
            u.feature_id: (u.alt.sigma2, u.alt.df_residual)
            for u in self.tested_units()
        }

    def unit(self, feature_id: str) -> UnitOutcome:
        return self.outcomes[self.features.index(feature_id)]

    def summary(self) -> pd.DataFrame:
        """Per-feature fit diagnostics for tested features."""
        rows = []
        for u in self.tested_units():
            rows.append({
                "feature": u.feature_id,
                "n_obs": u.n_obs,
                "logLik_null": u.loglik_null,
                "logLik_alt": u.loglik_alt,
                "deviance_null": u.null.deviance,
                "deviance_alt": u.alt.deviance,
                "df_null": u.null.df_residual,
                "df_alt": u.alt.df_residual,
                "lr_statistic": u.lr_statistic,
            })
        return pd.DataFrame(rows).set_index("feature") if rows else pd.DataFrame()


def _run_one(
    feature_id: str,
    data: Optional[SeriesLike],
    null_formula: KineticFormula,
    alt_formula: KineticFormula,
    start,
    control: FitControl,
) -> UnitOutcome:
    if data is None:
        return UnitFailure(feature_id, FailureReason.INVALID_INPUT, "no observations supplied")
    try:
        if isinstance(data, FeatureSeries):
            series = data
        else:
            series = FeatureSeries.from_frame(data, feature_id=feature_id)
        return build_test_unit(series, null_formula, alt_formula, start=start, control=control)
    except ConfigurationError as e:
        return UnitFailure(feature_id, FailureReason.INVALID_INPUT, str(e))


def run_batch(
    features: Sequence[str],
    series_lookup: Mapping[str, SeriesLike],
    null_formula: KineticFormula,
    alt_formula: KineticFormula,
    start: Optional[Mapping[str, Optional[float]]] = None,
    control: Optional[FitControl] = None,
    n_jobs: int = 1,
) -> BatchResult:
    """
    Fit null and alternative models for every feature.

    Parameters
    ----------
    features : sequence of str
        Feature identifiers, in the order results should be reported.
    series_lookup : mapping
        Feature identifier → FeatureSeries or long-format observation
        DataFrame. Missing features are recorded as failures.
    null_formula, alt_formula : KineticFormula
        Nested pooled and condition-specific formulas.
    start : mapping or None
        Starting values shared by all features.
    control : FitControl or None
        Solver settings.
    n_jobs : int
        Number of joblib workers; 1 runs sequentially.

    Returns
    -------
    BatchResult with exactly one outcome per requested feature.

    Raises
    ------
    ConfigurationError
        Before any fitting, if the formulas are not nested, ``start`` names
        an unknown parameter, or ``features`` contains duplicates. Problems
        with one feature's data are recorded as failures instead.
    """
    check_nested(null_formula, alt_formula)
    default_start(alt_formula, [0.0], start)
    control = control or FitControl()
    features = [str(f) for f in features]
    if len(set(features)) != len(features):
        raise ConfigurationError("Feature identifiers must be unique")

    logger.info(f"Fitting {len(features):,} features ({null_formula.form}, n_jobs={n_jobs})...")

    tasks = (
        delayed(_run_one)(fid, series_lookup.get(fid), null_formula, alt_formula, start, control)
        for fid in features
    )
    if n_jobs == 1:
        outcomes = [fn(*args, **kwargs) for fn, args, kwargs in tasks]
    else:
        outcomes = Parallel(n_jobs=n_jobs)(tasks)

    result = BatchResult(
        features=tuple(features),
        outcomes=tuple(outcomes),
        null_formula=null_formula,
        alt_formula=alt_formula,
    )
    n_failed = len(result) - result.n_tested
    logger.info(f"Batch complete: {result.n_tested:,} tested, {n_failed:,} not tested")
    if n_failed:
        counts = result.diagnostics["reason"].value_counts().to_dict()
        logger.warning(f"{n_failed:,} features could not be tested: {counts}")
    return result
