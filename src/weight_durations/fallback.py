"""
Echo report fallback for ICU stays without charted weights.

Echo weights are only used for stays that end up with no primary intervals at
all; stays with any charted coverage never reach this module.

Two strategies are available:
- "sequence": echo readings are turned into intervals exactly like charted
  readings, then backfilled to intime - 2h.
- "median": the median echo weight is imputed for the whole padded stay.
"""
from typing import List

import pandas as pd

from .common import WeightInterval, get_stay_window
from .intervals import backfill_leading_gap, build_stay_intervals

SEQUENCE = "sequence"
MEDIAN = "median"
ECHO_STRATEGIES = [SEQUENCE, MEDIAN]
DEFAULT_ECHO_STRATEGY = SEQUENCE


def build_fallback_intervals(
    icustay_id: int,
    echo_observations: pd.DataFrame,
    intime: pd.Timestamp,
    outtime: pd.Timestamp,
    strategy: str = DEFAULT_ECHO_STRATEGY,
) -> List[WeightInterval]:
    """
    Build a stay's intervals from its echo report weights.

    Args:
        icustay_id (int): ICU stay identifier
        echo_observations (pd.DataFrame): The stay's collapsed echo observations
        intime (pd.Timestamp): ICU admission time
        outtime (pd.Timestamp): ICU discharge time
        strategy (str): One of ECHO_STRATEGIES

    Returns:
        List[WeightInterval]: The stay's fallback intervals; empty without echo data

    Raises:
        ValueError: If the strategy is unknown
    """
    if strategy not in ECHO_STRATEGIES:
        raise ValueError(f"Unknown echo strategy '{strategy}', expected one of {ECHO_STRATEGIES}")
    if echo_observations.empty:
        return []

    if strategy == MEDIAN:
        window_start, window_end = get_stay_window(intime, outtime)
        weight = float(echo_observations["weight"].median())
        return [WeightInterval(icustay_id, window_start, window_end, weight)]

    intervals = build_stay_intervals(icustay_id, echo_observations, intime, outtime)
    return backfill_leading_gap(intervals, intime)
