"""
Main differential-uptake testing pipeline for HDX kinetics.
"""

from __future__ import annotations

import logging
from typing import Dict, Mapping, Optional, Sequence, Tuple, Union

import pandas as pd

from .batch import BatchResult, run_batch
from .fitting import FitControl
from .formulas import KineticFormula
from .moderation import ModerationState, moderate
from .series import FeatureSeries, split_features
from .significance import significance_table

logger = logging.getLogger(__name__)


def differential_uptake(
    observations: Union[pd.DataFrame, Mapping[str, Union[FeatureSeries, pd.DataFrame]]],
    features: Optional[Sequence[str]] = None,
    form: str = "weibull",
    by_condition: Optional[Sequence[str]] = None,
    fixed: Optional[Mapping[str, float]] = None,
    start: Optional[Mapping[str, Optional[float]]] = None,
    control: Optional[FitControl] = None,
    moderated: bool = True,
    reference: str = "F",
    method: str = "fdr_bh",
    conf_level: float = 0.95,
    n_jobs: int = 1,
) -> Tuple[pd.DataFrame, BatchResult, Optional[ModerationState]]:
    """
    Full differential HDX kinetics pipeline.

    Fits a pooled (null) and a condition-specific (alternative) kinetic model
    to every feature, optionally moderates the residual variances across
    features, and tests each feature for a condition effect with
    false-discovery-rate control.

    Parameters
    ----------
    observations : DataFrame or mapping
        Long-format table with columns 'feature', 'time', 'condition',
        'replicate', 'response', or a mapping feature → FeatureSeries /
        per-feature DataFrame.
    features : sequence of str or None
        Features to test, in output order. Defaults to every feature in
        ``observations``.
    form : str
        Functional form, a key of ``FORMS`` (e.g. 'weibull').
    by_condition : sequence of str or None
        Parameters estimated per condition in the alternative model. Defaults
        to every free parameter.
    fixed : mapping or None
        Parameters held at constant values in both models.
    start : mapping or None
        Starting values; None entries use the data-driven heuristic.
    control : FitControl or None
        Solver settings.
    moderated : bool
        Apply empirical-Bayes variance moderation.
    reference : {'F', 'chi2'}
        Reference distribution for unmoderated tests.
    method : str
        ``statsmodels`` multiple-testing method.
    conf_level : float
        Confidence level for condition-difference bounds.
    n_jobs : int
        joblib workers for per-feature fitting.

    Returns
    -------
    results : DataFrame
        One row per requested feature (see ``significance_table``).
    batch : BatchResult
        Fitted models and per-feature diagnostics.
    moderation : ModerationState or None
        None when ``moderated`` is False or nothing could be tested.
    """
    if isinstance(observations, pd.DataFrame):
        lookup: Dict = split_features(observations)
    else:
        lookup = dict(observations)
    if features is None:
        features = list(lookup)

    null_formula = KineticFormula(form=form, fixed=dict(fixed or {}))
    alt_formula = null_formula.condition_specific(by_condition)

    batch = run_batch(
        features, lookup, null_formula, alt_formula,
        start=start, control=control, n_jobs=n_jobs,
    )

    moderation = None
    if moderated and batch.n_tested > 0:
        moderation = moderate(batch)

    results = significance_table(
        batch, moderation=moderation, reference=reference,
        method=method, conf_level=conf_level,
    )
    return results, batch, moderation
