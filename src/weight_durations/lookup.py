"""
Downstream lookups against the weight durations table.

Consumers such as severity scores and dose normalizations need the weight in
force for a stay at a given time, or the weights over a time range. These can
be answered from the in-memory table or from the persisted DuckDB table.
"""
from typing import Optional

import duckdb
import pandas as pd

from .pipeline import OUTPUT_TABLE

WEIGHTS_IN_RANGE_SQL = """
    SELECT w.icustay_id, w.starttime, w.endtime, w.weight
    FROM {table_name} w
    WHERE w.icustay_id = ?
      AND w.starttime < ?
      AND w.endtime > ?
    ORDER BY w.starttime, w.endtime
    """


def get_weight_at(durations: pd.DataFrame, icustay_id: int, charttime: pd.Timestamp) -> Optional[float]:
    """
    Get the weight in force for a stay at a point in time.

    Args:
        durations (pd.DataFrame): Weight durations table
        icustay_id (int): ICU stay identifier
        charttime (pd.Timestamp): Time of interest

    Returns:
        Optional[float]: Weight in kg where starttime <= charttime < endtime, else None
    """
    charttime = pd.Timestamp(charttime)
    match = durations[
        (durations["icustay_id"] == icustay_id)
        & (durations["starttime"] <= charttime)
        & (durations["endtime"] > charttime)
    ]
    if match.empty:
        return None
    return float(match["weight"].iloc[0])


def get_weights_in_range(
    durations: pd.DataFrame,
    icustay_id: int,
    starttime: pd.Timestamp,
    endtime: pd.Timestamp,
) -> pd.DataFrame:
    """Get the intervals of a stay overlapping [starttime, endtime)."""
    match = durations[
        (durations["icustay_id"] == icustay_id)
        & (durations["starttime"] < pd.Timestamp(endtime))
        & (durations["endtime"] > pd.Timestamp(starttime))
    ]
    return match.sort_values(["starttime", "endtime"]).reset_index(drop=True)


def query_weight_durations(
    con: duckdb.DuckDBPyConnection,
    icustay_id: int,
    starttime: pd.Timestamp,
    endtime: pd.Timestamp,
    table_name: str = OUTPUT_TABLE,
) -> pd.DataFrame:
    """
    Query the persisted table for a stay's intervals overlapping [starttime, endtime).

    Args:
        con (duckdb.DuckDBPyConnection): Connection holding the persisted table
        icustay_id (int): ICU stay identifier
        starttime (pd.Timestamp): Range start
        endtime (pd.Timestamp): Range end (exclusive)
        table_name (str): Name of the persisted weight durations table

    Returns:
        pd.DataFrame: Matching rows ordered by starttime
    """
    sql = WEIGHTS_IN_RANGE_SQL.format(table_name=table_name)
    params = [int(icustay_id), pd.Timestamp(endtime).to_pydatetime(), pd.Timestamp(starttime).to_pydatetime()]
    return con.execute(sql, params).fetchdf()
