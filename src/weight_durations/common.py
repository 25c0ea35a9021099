"""
Shared constants, record types and time helpers for the weight durations pipeline.

This module defines the fuzziness margin applied at ICU stay boundaries, the
column layouts of the intermediate and final tables, and small helpers for
time calculations used across the pipeline.
"""
from typing import NamedTuple

import pandas as pd

# Padding applied at stay boundaries to absorb clock skew between the nominal
# admission/discharge times and the first/last charted observation
FUZZINESS_HOURS = 2
FUZZINESS = pd.Timedelta(hours=FUZZINESS_HOURS)

# Weight types
ADMIT = "admit"
DAILY = "daily"

# Source classes: chart/neonatal/birth readings vs. echo report fallback
PRIMARY = "primary"
ECHO = "echo"

# Ordering used when an admit and a daily reading share a timestamp:
# the later entry in this order wins
WEIGHT_TYPE_ORDER = {ADMIT: 0, DAILY: 1}

STAY_COLUMNS = ["icustay_id", "hadm_id", "intime", "outtime"]
OBSERVATION_COLUMNS = ["icustay_id", "charttime", "weight_type", "source_class", "channel", "weight"]
DURATION_COLUMNS = ["icustay_id", "starttime", "endtime", "weight"]


class WeightInterval(NamedTuple):
    """A weight value in force for an ICU stay over [starttime, endtime)."""
    icustay_id: int
    starttime: pd.Timestamp
    endtime: pd.Timestamp
    weight: float


def get_stay_window(intime: pd.Timestamp, outtime: pd.Timestamp) -> tuple:
    """
    Get the padded window an ICU stay's weight intervals must cover.

    Args:
        intime (pd.Timestamp): ICU admission time
        outtime (pd.Timestamp): ICU discharge time

    Returns:
        tuple: (intime - FUZZINESS, outtime + FUZZINESS)
    """
    return intime - FUZZINESS, outtime + FUZZINESS


def get_hour_difference(end: pd.Series, start: pd.Series) -> pd.Series:
    """
    Calculate the difference between two datetime series in hours.

    Args:
        end (pd.Series): Later datetime series (minuend)
        start (pd.Series): Earlier datetime series (subtrahend)

    Returns:
        pd.Series: Time difference in hours as float values

    Example:
        >>> import pandas as pd
        >>> time1 = pd.Series([pd.Timestamp('2015-01-02 12:30:00')])
        >>> time2 = pd.Series([pd.Timestamp('2015-01-01 12:00:00')])
        >>> get_hour_difference(time1, time2)
        0    24.5
        dtype: float64
    """
    return (end - start) / pd.Timedelta(hours=1)


def empty_observations() -> pd.DataFrame:
    """Return an empty observation table with the expected dtypes."""
    return pd.DataFrame({
        "icustay_id": pd.Series(dtype="int64"),
        "charttime": pd.Series(dtype="datetime64[ns]"),
        "weight_type": pd.Series(dtype="object"),
        "source_class": pd.Series(dtype="object"),
        "channel": pd.Series(dtype="object"),
        "weight": pd.Series(dtype="float64"),
    })


def to_duration_frame(intervals: list) -> pd.DataFrame:
    """
    Build a weight durations table from a list of WeightInterval records.

    Args:
        intervals (list): WeightInterval records in any order

    Returns:
        pd.DataFrame: Table with DURATION_COLUMNS and stable dtypes, even when empty
    """
    df = pd.DataFrame(intervals, columns=DURATION_COLUMNS)
    return df.astype({
        "icustay_id": "int64",
        "starttime": "datetime64[ns]",
        "endtime": "datetime64[ns]",
        "weight": "float64",
    })
