"""
Weight Duration Reconciliation and Assembly

This module combines the per-stay stages into the final weight durations table:

1. Primary (chart, neonatal, birth weight) observations are built into
   intervals and backfilled for every stay that has them.
2. The stays left without any primary interval are routed to the echo
   fallback. A stay is therefore covered by exactly one source class.
3. All intervals are unioned and ordered by (icustay_id, starttime, endtime).

It also provides validation of the assembled table and a coverage summary.
"""
from typing import Dict, List

import numpy as np
import pandas as pd
from tqdm import tqdm

from .common import DURATION_COLUMNS, ECHO, FUZZINESS, PRIMARY, get_hour_difference, to_duration_frame
from .fallback import DEFAULT_ECHO_STRATEGY, build_fallback_intervals
from .intervals import backfill_leading_gap, build_stay_intervals
from .logging_utils import logger

DURATION_SORT_COLUMNS = ["icustay_id", "starttime", "endtime"]


class WeightDurationError(ValueError):
    """Raised when an assembled weight durations table breaks its invariants."""


def _group_by_stay(observations: pd.DataFrame) -> Dict[int, pd.DataFrame]:
    return {icustay_id: group for icustay_id, group in observations.groupby("icustay_id", sort=False)}


def reconcile_weight_durations(
    stays: pd.DataFrame,
    observations: pd.DataFrame,
    echo_strategy: str = DEFAULT_ECHO_STRATEGY,
    progress: bool = False,
) -> pd.DataFrame:
    """
    Reconcile collapsed observations into one interval set per ICU stay.

    Args:
        stays (pd.DataFrame): Stay registry (icustay_id, hadm_id, intime, outtime)
        observations (pd.DataFrame): Collapsed observations of all source classes
        echo_strategy (str): Fallback strategy, see fallback.ECHO_STRATEGIES
        progress (bool): Show a progress bar over stays

    Returns:
        pd.DataFrame: Weight durations (DURATION_COLUMNS) ordered by
            icustay_id, starttime, endtime
    """
    logger.log_start("reconcile_weight_durations")

    primary_by_stay = _group_by_stay(observations[observations["source_class"] == PRIMARY])
    echo_by_stay = _group_by_stay(observations[observations["source_class"] == ECHO])

    primary_intervals: List = []
    fallback_intervals: List = []
    stay_rows = stays.itertuples(index=False)
    for stay in tqdm(stay_rows, total=len(stays), desc="Reconciling stays", disable=not progress):
        intervals = []
        if stay.icustay_id in primary_by_stay:
            intervals = build_stay_intervals(
                stay.icustay_id, primary_by_stay[stay.icustay_id], stay.intime, stay.outtime
            )
            intervals = backfill_leading_gap(intervals, stay.intime)

        if intervals:
            primary_intervals.extend(intervals)
        elif stay.icustay_id in echo_by_stay:
            fallback_intervals.extend(build_fallback_intervals(
                stay.icustay_id, echo_by_stay[stay.icustay_id], stay.intime, stay.outtime, echo_strategy
            ))

    durations = assemble_weight_durations(primary_intervals, fallback_intervals)

    logger.log_end("reconcile_weight_durations")
    return durations


def assemble_weight_durations(primary_intervals: List, fallback_intervals: List) -> pd.DataFrame:
    """
    Union primary and fallback intervals into the ordered output table.

    Args:
        primary_intervals (List): WeightInterval records from charted sources
        fallback_intervals (List): WeightInterval records from echo reports

    Returns:
        pd.DataFrame: Weight durations ordered by icustay_id, starttime, endtime
    """
    logger.log_start("assemble_weight_durations")

    durations = to_duration_frame(primary_intervals + fallback_intervals)
    durations = durations.sort_values(DURATION_SORT_COLUMNS, kind="mergesort").reset_index(drop=True)

    logger.log_info(
        f"{len(primary_intervals)} primary and {len(fallback_intervals)} fallback intervals "
        f"across {durations['icustay_id'].nunique()} stays"
    )
    logger.log_end("assemble_weight_durations")
    return durations


def validate_weight_durations(durations: pd.DataFrame, stays: pd.DataFrame) -> None:
    """
    Check the invariants of an assembled weight durations table.

    Checked per stay:
        - every interval has starttime < endtime and a positive weight
        - intervals are contiguous: each starts where the previous one ended
        - the first interval starts at intime - 2h

    Args:
        durations (pd.DataFrame): Output of reconcile_weight_durations
        stays (pd.DataFrame): Stay registry used to build it

    Raises:
        WeightDurationError: Listing the offending stays for each broken invariant
    """
    logger.log_start("validate_weight_durations")

    df = durations.sort_values(DURATION_SORT_COLUMNS, kind="mergesort")
    problems = {}

    not_positive = df["starttime"] >= df["endtime"]
    problems["empty or inverted interval"] = df.loc[not_positive, "icustay_id"]
    problems["non-positive weight"] = df.loc[~(df["weight"] > 0), "icustay_id"]

    previous_end = df.groupby("icustay_id")["endtime"].shift(1)
    broken_chain = previous_end.notna() & (previous_end != df["starttime"])
    problems["gap or overlap between intervals"] = df.loc[broken_chain, "icustay_id"]

    first_start = df.groupby("icustay_id", as_index=False)["starttime"].min()
    first_start = first_start.merge(stays[["icustay_id", "intime"]], on="icustay_id", how="left")
    late_start = first_start["starttime"] != first_start["intime"] - FUZZINESS
    problems["coverage not starting at intime - 2h"] = first_start.loc[late_start, "icustay_id"]

    messages = [
        f"{name}: icustay_id {sorted(set(ids.tolist()))[:10]}"
        for name, ids in problems.items()
        if len(ids) > 0
    ]

    logger.log_end("validate_weight_durations")
    if messages:
        raise WeightDurationError("Invalid weight durations - " + "; ".join(messages))


def summarize_weight_durations(durations: pd.DataFrame, stays: pd.DataFrame) -> Dict[str, float]:
    """
    Summarize how well the ICU stays are covered by weight intervals.

    Args:
        durations (pd.DataFrame): Output of reconcile_weight_durations
        stays (pd.DataFrame): Stay registry used to build it

    Returns:
        Dict[str, float]: Counts of stays with/without coverage, interval rows,
            and the median number of covered hours per covered stay
    """
    covered_hours = get_hour_difference(durations["endtime"], durations["starttime"])
    hours_per_stay = covered_hours.groupby(durations["icustay_id"]).sum()
    stays_with_coverage = int(hours_per_stay.size)

    return {
        "stays": int(len(stays)),
        "stays_with_coverage": stays_with_coverage,
        "stays_without_coverage": int(len(stays)) - stays_with_coverage,
        "intervals": int(len(durations)),
        "median_covered_hours": float(hours_per_stay.median()) if stays_with_coverage else np.nan,
    }
