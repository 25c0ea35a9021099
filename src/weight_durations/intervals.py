"""
Weight Interval Construction for a Single ICU Stay

Turns the point-in-time weight observations of one ICU stay into a sequence
of contiguous, non-overlapping [starttime, endtime) intervals.

Rules:
- Observations are scanned in time order; each reading is in force until the
  next reading of either weight type, the last one until outtime + 2h.
- An admission weight that is the stay's first observation is considered valid
  from intime - 2h.
- When an admit and a daily reading share a start time, the daily reading wins.
- Start times are clamped into the stay window [intime - 2h, outtime + 2h) and
  intervals left empty by clamping are dropped. A stay whose readings were all
  charted after the window takes the earliest of them for the whole window.
- A leading gap between intime - 2h and the first interval is backfilled with
  the first known weight.

All functions here are pure and operate on one stay at a time.
"""
from typing import List

import pandas as pd

from .common import ADMIT, FUZZINESS, WEIGHT_TYPE_ORDER, WeightInterval, get_stay_window


def _order_observations(observations: pd.DataFrame) -> pd.DataFrame:
    """Sort by time, admit before daily at equal times."""
    type_rank = observations["weight_type"].map(WEIGHT_TYPE_ORDER)
    return (
        observations.assign(_type_rank=type_rank)
        .sort_values(["charttime", "_type_rank"], kind="mergesort")
        .drop(columns="_type_rank")
    )


def get_interval_starts(observations: pd.DataFrame, intime: pd.Timestamp) -> List[tuple]:
    """
    Compute the (starttime, weight) pairs of a stay's intervals.

    Args:
        observations (pd.DataFrame): One stay's collapsed observations
        intime (pd.Timestamp): ICU admission time

    Returns:
        List[tuple]: (starttime, weight) sorted by start time. Readings sharing a
            start time keep their scan order, so the later one ends up in force.
    """
    starts = []
    for i, obs in enumerate(_order_observations(observations).itertuples(index=False)):
        starttime = obs.charttime
        if i == 0 and obs.weight_type == ADMIT:
            starttime = intime - FUZZINESS
        starts.append((starttime, obs.weight))

    return sorted(starts, key=lambda start: start[0])


def build_stay_intervals(
    icustay_id: int,
    observations: pd.DataFrame,
    intime: pd.Timestamp,
    outtime: pd.Timestamp,
) -> List[WeightInterval]:
    """
    Build the weight intervals of one ICU stay from its observations.

    Each observation is paired with its successor: the interval runs from the
    observation's start time up to (excluding) the next start time, the last
    one up to outtime + 2h. Start times are first clamped into the stay window.

    Args:
        icustay_id (int): ICU stay identifier
        observations (pd.DataFrame): The stay's collapsed observations of one source class
        intime (pd.Timestamp): ICU admission time
        outtime (pd.Timestamp): ICU discharge time

    Returns:
        List[WeightInterval]: Contiguous, non-overlapping intervals in time order.
            Empty only when there are no observations.

    Example:
        Stay 2015-01-01 00:00 to 2015-01-03 00:00, admit 80kg at 01:00 and
        daily 78kg at 2015-01-02 09:00 gives
        [2014-12-31 22:00, 2015-01-02 09:00) 80kg and
        [2015-01-02 09:00, 2015-01-03 02:00) 78kg.
    """
    window_start, window_end = get_stay_window(intime, outtime)
    starts = [
        (min(max(starttime, window_start), window_end), weight)
        for starttime, weight in get_interval_starts(observations, intime)
    ]

    intervals = []
    for i, (starttime, weight) in enumerate(starts):
        endtime = starts[i + 1][0] if i + 1 < len(starts) else window_end
        if starttime >= endtime:
            continue
        intervals.append(WeightInterval(icustay_id, starttime, endtime, weight))

    # every reading was charted after the window: the earliest one covers the stay
    if starts and not intervals:
        intervals.append(WeightInterval(icustay_id, window_start, window_end, starts[0][1]))

    return intervals


def backfill_leading_gap(intervals: List[WeightInterval], intime: pd.Timestamp) -> List[WeightInterval]:
    """
    Extend the first known weight back to the padded start of the stay.

    Only a genuine leading gap is filled; existing coverage is never changed and
    nothing is added when the stay has no intervals at all.

    Args:
        intervals (List[WeightInterval]): One stay's intervals in time order
        intime (pd.Timestamp): ICU admission time

    Returns:
        List[WeightInterval]: The intervals, preceded by a backfill interval when needed
    """
    if not intervals:
        return intervals

    window_start = intime - FUZZINESS
    first = intervals[0]
    if first.starttime <= window_start:
        return intervals

    backfill = WeightInterval(first.icustay_id, window_start, first.starttime, first.weight)
    return [backfill] + intervals
