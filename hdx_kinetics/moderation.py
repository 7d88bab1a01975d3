"""
Empirical-Bayes moderation of per-feature residual variances.

A scaled inverse-chi-squared prior is fitted to the residual variances of
all tested features by the method of moments on log variances (Smyth, 2004),
and each variance is squeezed toward the prior:

    s2_post = (d0 * s0^2 + df * s2) / (d0 + df),    df_post = d0 + df

Variances that are non-finite, non-positive, or below ``min_rel_variance``
times the median positive variance are left out of the prior fit (they would
dominate the log-scale moments) but are still moderated.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping, Tuple, Union

import numpy as np
import pandas as pd
from scipy.special import digamma, polygamma

from .batch import BatchResult
from .errors import ModerationError

logger = logging.getLogger(__name__)

MODERATION_COLS = ["variance", "df", "moderated_variance", "moderated_df", "in_prior"]


def trigamma_inverse(x: float, tol: float = 1e-8, max_iter: int = 50) -> float:
    """
    Solve ``trigamma(y) = x`` for y.

    Newton iteration on 1/trigamma, starting from ``0.5 + 1/x``.
    """
    if not np.isfinite(x) or x <= 0:
        return np.inf
    if x > 1e7:
        return 1.0 / np.sqrt(x)
    if x < 1e-6:
        return 1.0 / x

    y = 0.5 + 1.0 / x
    for _ in range(max_iter):
        tri = polygamma(1, y)
        dif = tri * (1.0 - tri / x) / polygamma(2, y)
        y += dif
        if -dif / y < tol:
            break
    return float(y)


def fit_f_dist(variances: np.ndarray, df: np.ndarray) -> Tuple[float, float]:
    """
    Method-of-moments estimate of the prior df ``d0`` and scale ``s0^2``.

    Parameters
    ----------
    variances : ndarray
        Positive residual variances.
    df : ndarray
        Residual degrees of freedom, one per variance.

    Returns
    -------
    (d0, s0_sq)
        ``d0`` is ``np.inf`` when the spread of the log variances is no
        larger than sampling error alone explains.
    """
    variances = np.asarray(variances, dtype=float)
    df = np.broadcast_to(np.asarray(df, dtype=float), variances.shape)
    if variances.size < 2:
        raise ModerationError("At least two variances are needed to fit the prior")

    half = df / 2.0
    e = np.log(variances) - digamma(half) + np.log(half)
    emean = float(np.mean(e))
    evar = float(np.var(e, ddof=1) - np.mean(polygamma(1, half)))

    if evar <= 0:
        return np.inf, float(np.exp(emean))

    d0 = 2.0 * trigamma_inverse(evar)
    if not np.isfinite(d0) or d0 > 1e10:
        return np.inf, float(np.exp(emean))
    s0_sq = float(np.exp(emean + digamma(d0 / 2.0) - np.log(d0 / 2.0)))
    return float(d0), s0_sq


def squeeze_var(
    variances: np.ndarray,
    df: np.ndarray,
    d0: float,
    s0_sq: float,
) -> Tuple[np.ndarray, np.ndarray]:
    """Posterior variances and degrees of freedom under the fitted prior."""
    variances = np.asarray(variances, dtype=float)
    df = np.asarray(df, dtype=float)
    if np.isinf(d0):
        return np.full_like(variances, s0_sq), np.full_like(df, np.inf)
    return (d0 * s0_sq + df * variances) / (d0 + df), d0 + df


@dataclass(frozen=True)
class ModerationState:
    """
    Prior and moderated variances for one batch.

    ``table`` is indexed by feature id with columns 'variance', 'df',
    'moderated_variance', 'moderated_df' and 'in_prior'.
    """

    prior_df: float
    prior_variance: float
    table: pd.DataFrame

    def __contains__(self, feature_id: str) -> bool:
        return feature_id in self.table.index

    def moderated(self, feature_id: str) -> Tuple[float, float]:
        row = self.table.loc[feature_id]
        return float(row["moderated_variance"]), float(row["moderated_df"])


def moderate(
    unit_variances: Union[BatchResult, Mapping[str, Tuple[float, float]]],
    min_rel_variance: float = 1e-5,
) -> ModerationState:
    """
    Squeeze per-feature residual variances toward a batch-wide prior.

    Parameters
    ----------
    unit_variances : BatchResult or mapping
        Feature → (residual variance, residual df). A BatchResult contributes
        the alternative-model variance of each tested feature.
    min_rel_variance : float
        Variances below this fraction of the median positive variance are
        excluded from the prior fit.

    Raises
    ------
    ModerationError
        If every variance is zero or fewer than two features are eligible
        for the prior fit.
    """
    if isinstance(unit_variances, BatchResult):
        unit_variances = unit_variances.residual_variances()

    keys = list(unit_variances)
    variances = np.array([unit_variances[k][0] for k in keys], dtype=float)
    df = np.array([unit_variances[k][1] for k in keys], dtype=float)

    finite = np.isfinite(variances) & np.isfinite(df) & (df > 0)
    positive = finite & (variances > 0)
    if finite.any() and not positive.any():
        raise ModerationError("All residual variances are zero")

    eligible = positive.copy()
    if positive.any():
        floor = min_rel_variance * np.median(variances[positive])
        eligible &= variances > floor
    if eligible.sum() < 2:
        raise ModerationError(
            f"{int(eligible.sum())} feature(s) eligible for the prior fit, at least 2 required"
        )

    # Fixed key order so the prior does not depend on mapping order.
    order = sorted(np.flatnonzero(eligible), key=lambda i: str(keys[i]))
    d0, s0_sq = fit_f_dist(variances[order], df[order])

    n_excluded = int(finite.sum() - eligible.sum())
    if n_excluded:
        logger.warning(f"{n_excluded} degenerate variance(s) excluded from the prior fit")
    logger.info(f"Variance prior: d0={d0:.4g}, s0^2={s0_sq:.4g} from {int(eligible.sum())} features")

    post_var, post_df = squeeze_var(variances, df, d0, s0_sq)
    table = pd.DataFrame({
        "variance": variances,
        "df": df,
        "moderated_variance": post_var,
        "moderated_df": post_df,
        "in_prior": eligible,
    }, index=pd.Index([str(k) for k in keys], name="feature"))
    return ModerationState(prior_df=d0, prior_variance=s0_sq, table=table[MODERATION_COLS])
