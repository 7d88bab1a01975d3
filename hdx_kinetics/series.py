"""
Per-feature uptake time series and the design that maps samples to
(time, replicate, condition).
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Tuple

import numpy as np
import pandas as pd

from .errors import ConfigurationError


FEATURE_COL = "feature"
TIME_COL = "time"
CONDITION_COL = "condition"
REPLICATE_COL = "replicate"
RESPONSE_COL = "response"

_OBS_COLS = [TIME_COL, CONDITION_COL, REPLICATE_COL, RESPONSE_COL]

# Matches sample names such as "X30_rep1_condWT" or "30_rep2_mutant".
DEFAULT_DESIGN_PATTERN = (
    r"^X?(?P<time>\d+(?:\.\d+)?)_rep(?P<replicate>\d+)_(?:cond)?(?P<condition>.+)$"
)


@dataclass(frozen=True)
class FeatureSeries:
    """
    All observations of one feature, stored column-wise.

    ``condition_levels`` keeps the order in which conditions first appear;
    the first level is the reference for condition differences.
    """

    feature_id: str
    times: np.ndarray
    conditions: np.ndarray
    replicates: np.ndarray
    responses: np.ndarray
    condition_levels: Tuple[str, ...]

    def __len__(self) -> int:
        return len(self.responses)

    @property
    def n_conditions(self) -> int:
        return len(self.condition_levels)

    @property
    def n_timepoints(self) -> int:
        return len(np.unique(self.times))

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame({
            TIME_COL: self.times,
            CONDITION_COL: self.conditions,
            REPLICATE_COL: self.replicates,
            RESPONSE_COL: self.responses,
        })

    @classmethod
    def from_frame(
        cls,
        df: pd.DataFrame,
        feature_id: Optional[str] = None,
    ) -> "FeatureSeries":
        """
        Build a series from a long-format table of observations.

        Parameters
        ----------
        df : DataFrame with columns 'time', 'condition', 'replicate', 'response'.
            A 'feature' column, if present, supplies ``feature_id``.
        feature_id : str or None
            Identifier of the feature; overrides the 'feature' column.

        Non-numeric or missing times, replicates and responses are dropped.
        Raises ConfigurationError if nothing is left, if times are negative,
        replicates are below 1, or a (condition, replicate, time) triple is
        duplicated.
        """
        missing = [c for c in _OBS_COLS if c not in df.columns]
        if missing:
            raise ConfigurationError(f"Observation table is missing columns: {missing}")

        if feature_id is None:
            if FEATURE_COL in df.columns and df[FEATURE_COL].nunique() == 1:
                feature_id = str(df[FEATURE_COL].iloc[0])
            else:
                raise ConfigurationError("A single feature_id is required")

        obs = pd.DataFrame({
            TIME_COL: pd.to_numeric(df[TIME_COL], errors="coerce"),
            CONDITION_COL: df[CONDITION_COL],
            REPLICATE_COL: pd.to_numeric(df[REPLICATE_COL], errors="coerce"),
            RESPONSE_COL: pd.to_numeric(df[RESPONSE_COL], errors="coerce"),
        })
        obs = obs.dropna()
        if obs.empty:
            raise ConfigurationError(f"Feature {feature_id!r} has no numeric observations")

        if (obs[TIME_COL] < 0).any():
            raise ConfigurationError(f"Feature {feature_id!r} has negative exposure times")
        if (obs[REPLICATE_COL] < 1).any():
            raise ConfigurationError(f"Feature {feature_id!r} has replicate indices below 1")

        obs[CONDITION_COL] = obs[CONDITION_COL].astype(str)
        obs[REPLICATE_COL] = obs[REPLICATE_COL].astype(int)

        dup = obs.duplicated(subset=[CONDITION_COL, REPLICATE_COL, TIME_COL])
        if dup.any():
            first = obs.loc[dup].iloc[0]
            raise ConfigurationError(
                f"Feature {feature_id!r} has duplicated observation for "
                f"condition={first[CONDITION_COL]!r}, replicate={first[REPLICATE_COL]}, "
                f"time={first[TIME_COL]}"
            )

        levels = tuple(pd.unique(obs[CONDITION_COL]))
        return cls(
            feature_id=str(feature_id),
            times=obs[TIME_COL].to_numpy(dtype=float),
            conditions=obs[CONDITION_COL].to_numpy(dtype=object),
            replicates=obs[REPLICATE_COL].to_numpy(dtype=int),
            responses=obs[RESPONSE_COL].to_numpy(dtype=float),
            condition_levels=levels,
        )


def parse_design(
    columns: Iterable[str],
    pattern: str = DEFAULT_DESIGN_PATTERN,
) -> pd.DataFrame:
    """
    Resolve sample column names to (time, replicate, condition).

    Parameters
    ----------
    columns : iterable of str
        Sample column names, e.g. ``"X30_rep1_condWT"``.
    pattern : str
        Regular expression with named groups 'time', 'replicate' and
        'condition'.

    Returns
    -------
    DataFrame indexed by column name with columns 'time', 'replicate',
    'condition'.
    """
    regex = re.compile(pattern)
    rows = {}
    for col in columns:
        m = regex.match(str(col))
        if m is None:
            raise ConfigurationError(f"Column {col!r} does not match design pattern")
        rows[col] = {
            TIME_COL: float(m.group("time")),
            REPLICATE_COL: int(m.group("replicate")),
            CONDITION_COL: m.group("condition"),
        }
    return pd.DataFrame.from_dict(rows, orient="index")[
        [TIME_COL, REPLICATE_COL, CONDITION_COL]
    ]


def wide_to_long(df: pd.DataFrame, design: Optional[pd.DataFrame] = None) -> pd.DataFrame:
    """
    Reshape a wide feature table (rows = features, columns = samples) to one
    row per observation.

    Parameters
    ----------
    df : DataFrame indexed by feature identifier.
    design : DataFrame indexed by sample column with 'time', 'replicate',
        'condition', or None to parse it from the column names.
    """
    if design is None:
        design = parse_design(df.columns)

    missing = [c for c in design.index if c not in df.columns]
    if missing:
        raise ConfigurationError(f"Design refers to columns not in the table: {missing}")

    wide = df[list(design.index)].copy()
    wide.index = wide.index.astype(str)
    wide.index.name = FEATURE_COL

    long = wide.reset_index().melt(
        id_vars=FEATURE_COL, var_name="sample", value_name=RESPONSE_COL
    )
    long = long.join(design, on="sample")
    # Within a feature, rows keep the design order so condition levels
    # follow the column order.
    long = long.assign(
        _order=pd.Categorical(long[FEATURE_COL], categories=list(wide.index), ordered=True),
        _sample=pd.Categorical(long["sample"], categories=list(design.index), ordered=True),
    ).sort_values(["_order", "_sample"], kind="stable")
    return long[[FEATURE_COL] + _OBS_COLS].reset_index(drop=True)


def split_features(long_df: pd.DataFrame) -> Dict[str, pd.DataFrame]:
    """Group a long observation table into an ordered feature → DataFrame mapping."""
    if FEATURE_COL not in long_df.columns:
        raise ConfigurationError(f"Observation table needs a {FEATURE_COL!r} column")
    keys = long_df[FEATURE_COL].astype(str)
    return {fid: group for fid, group in long_df.groupby(keys, sort=False)}
