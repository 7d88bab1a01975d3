"""
Likelihood-ratio / F testing of null vs. alternative fits and
multiple-testing correction.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence, Union

import numpy as np
import pandas as pd
from scipy import stats
from statsmodels.stats.multitest import multipletests

from .batch import BatchResult
from .errors import ConfigurationError
from .moderation import ModerationState
from .units import FeatureTestUnit, UnitOutcome

logger = logging.getLogger(__name__)

TESTED = "tested"
NOT_TESTED = "not tested"

RESULT_COLS = [
    "status", "reason", "n_obs",
    "logLik_null", "logLik_alt", "rss_null", "rss_alt",
    "df_null", "df_alt", "df_diff",
    "lr_statistic", "f_statistic", "df_denominator",
    "p_value", "p_adjusted",
]


def adjust_pvalues(pvalues: np.ndarray, method: str = "fdr_bh") -> np.ndarray:
    """
    Multiple-testing adjustment ignoring NaN entries.

    ``method`` is any ``statsmodels.stats.multitest.multipletests`` method;
    'fdr_bh' is Benjamini-Hochberg.
    """
    pvalues = np.asarray(pvalues, dtype=float)
    adjusted = np.full_like(pvalues, np.nan)
    valid = ~np.isnan(pvalues)
    if valid.any():
        _, adjusted[valid], _, _ = multipletests(pvalues[valid], method=method)
    return adjusted


def _test_one(
    unit: FeatureTestUnit,
    moderation: Optional[ModerationState],
    reference: str,
) -> dict:
    null, alt = unit.null, unit.alt
    df_diff = unit.df_diff

    if moderation is not None:
        if unit.feature_id not in moderation:
            raise ConfigurationError(
                f"Feature {unit.feature_id!r} is missing from the moderation state"
            )
        s2, df_den = moderation.moderated(unit.feature_id)
    else:
        s2, df_den = alt.sigma2, float(alt.df_residual)

    with np.errstate(divide="ignore", invalid="ignore"):
        f_stat = np.float64(max(null.rss - alt.rss, 0.0)) / df_diff / np.float64(s2)
        if moderation is None and reference == "chi2":
            p = stats.chi2.sf(unit.lr_statistic, df_diff)
        elif np.isinf(df_den):
            p = stats.chi2.sf(f_stat * df_diff, df_diff)
        else:
            p = stats.f.sf(f_stat, df_diff, df_den)

    return {
        "status": TESTED,
        "reason": None,
        "n_obs": unit.n_obs,
        "logLik_null": null.log_likelihood,
        "logLik_alt": alt.log_likelihood,
        "rss_null": null.rss,
        "rss_alt": alt.rss,
        "df_null": null.df_residual,
        "df_alt": alt.df_residual,
        "df_diff": df_diff,
        "lr_statistic": unit.lr_statistic,
        "f_statistic": float(f_stat),
        "df_denominator": float(df_den),
        "p_value": float(p),
    }


def _effects(unit: FeatureTestUnit, conf_level: float) -> dict:
    out = {}
    for row in unit.condition_differences(conf_level).itertuples(index=False):
        label = f"{row.parameter}[{row.condition}-{row.reference}]"
        out[label] = row.estimate
        out[f"{label} lower"] = row.lower
        out[f"{label} upper"] = row.upper
    return out


def significance_table(
    units: Union[BatchResult, Sequence[UnitOutcome]],
    moderation: Optional[ModerationState] = None,
    reference: str = "F",
    method: str = "fdr_bh",
    conf_level: float = 0.95,
) -> pd.DataFrame:
    """
    Test every feature and correct for multiple testing.

    Parameters
    ----------
    units : BatchResult or sequence of FeatureTestUnit / UnitFailure
        One entry per requested feature.
    moderation : ModerationState or None
        Moderated variances; None tests each feature on its own residual
        variance.
    reference : {'F', 'chi2'}
        Reference distribution for unmoderated tests. Moderated tests always
        use the F distribution on the moderated df.
    method : str
        ``multipletests`` correction method.
    conf_level : float
        Confidence level of the condition-difference bounds.

    Returns
    -------
    DataFrame indexed by feature, one row per entry of ``units``, with the
    columns listed in ``RESULT_COLS`` followed by condition-difference
    estimates and bounds. Features that were not tested keep NaN statistics
    and are left out of the correction.
    """
    if reference not in ("F", "chi2"):
        raise ConfigurationError(f"reference must be 'F' or 'chi2', got {reference!r}")
    if reference == "chi2" and moderation is not None:
        raise ConfigurationError("Moderated tests use the F reference distribution")

    outcomes = units.outcomes if isinstance(units, BatchResult) else tuple(units)

    rows, index = [], []
    for outcome in outcomes:
        index.append(outcome.feature_id)
        if outcome.tested:
            row = _test_one(outcome, moderation, reference)
            row.update(_effects(outcome, conf_level))
        else:
            row = {
                "status": NOT_TESTED,
                "reason": outcome.reason.value,
                "n_obs": np.nan,
            }
        rows.append(row)

    table = pd.DataFrame(rows, index=pd.Index(index, name="feature"))
    table = table.reindex(columns=RESULT_COLS + [c for c in table.columns if c not in RESULT_COLS])

    tested = (table["status"] == TESTED).to_numpy()
    if not tested.any():
        logger.warning("No features could be tested; all rows are marked 'not tested'")
        return table

    table["p_adjusted"] = adjust_pvalues(
        table["p_value"].where(table["status"] == TESTED).to_numpy(dtype=float),
        method=method,
    )
    logger.info(
        f"Tested {int(tested.sum()):,} of {len(table):,} features "
        f"({'moderated' if moderation is not None else 'unmoderated'}, {method})"
    )
    return table
