"""
Weight Durations Pipeline

This module provides the main entry points for building the weight durations
table from a MIMIC-III DuckDB database.

The pipeline runs these stages in order:
1. Load the ICU stay registry
2. Fetch raw chart and echo weight records linked to those stays
3. Normalize every source into kg observations
4. Collapse simultaneous observations
5. Reconcile observations into one interval set per stay
6. Validate the assembled table

Every run recomputes the table from scratch; persisting replaces any previous
table in a single statement.
"""
from typing import List, Optional

import duckdb
import pandas as pd

from .assembler import reconcile_weight_durations, summarize_weight_durations, validate_weight_durations
from .collapse import collapse_observations
from .fallback import DEFAULT_ECHO_STRATEGY
from .logging_utils import logger
from .sources import get_raw_chart_weights, get_raw_echo_weights, normalize_observations
from .stays import get_stays

# Path to the MIMIC-III DuckDB database file
DUCKDB_PATH = "mimiciii.duckdb"

# Name of the persisted output table
OUTPUT_TABLE = "weightdurations"


def get_weight_durations(
    con: duckdb.DuckDBPyConnection,
    icustay_ids: Optional[List[int]] = None,
    echo_strategy: str = DEFAULT_ECHO_STRATEGY,
    validate: bool = True,
    progress: bool = False,
) -> pd.DataFrame:
    """
    Build the weight durations table for the ICU stays in the database.

    Args:
        con (duckdb.DuckDBPyConnection): Active DuckDB connection to MIMIC-III database
        icustay_ids (Optional[List[int]]): Restrict to these stays; all stays when None
        echo_strategy (str): Fallback strategy for stays without charted weights
        validate (bool): Check the output invariants before returning
        progress (bool): Show a progress bar while reconciling stays

    Returns:
        pd.DataFrame: Columns icustay_id, starttime, endtime, weight (kg), ordered by
            icustay_id, starttime, endtime

    Raises:
        WeightDurationError: If validation is enabled and an invariant is broken
    """
    logger.log_start("get_weight_durations")

    try:
        stays = get_stays(con, icustay_ids)
        raw_chart = get_raw_chart_weights(con)
        raw_echo = get_raw_echo_weights(con)

        observations = collapse_observations(normalize_observations(raw_chart, raw_echo))
        durations = reconcile_weight_durations(stays, observations, echo_strategy=echo_strategy, progress=progress)

        if validate:
            validate_weight_durations(durations, stays)

        for key, value in summarize_weight_durations(durations, stays).items():
            logger.log_info(f"{key}: {value}")
    finally:
        logger.log_end("get_weight_durations")

    return durations


def save_weight_durations(
    con: duckdb.DuckDBPyConnection,
    durations: pd.DataFrame,
    table_name: str = OUTPUT_TABLE,
) -> None:
    """
    Persist the weight durations table, replacing any previous version.

    Args:
        con (duckdb.DuckDBPyConnection): Writable DuckDB connection
        durations (pd.DataFrame): Output of get_weight_durations
        table_name (str): Name of the table to create or replace
    """
    logger.log_start("save_weight_durations")

    con.register("tmp_weightdurations", durations)
    con.execute(f"""
        CREATE OR REPLACE TABLE {table_name} AS
        SELECT icustay_id::INTEGER AS icustay_id,
               starttime::TIMESTAMP AS starttime,
               endtime::TIMESTAMP AS endtime,
               weight::DOUBLE AS weight
        FROM tmp_weightdurations
        ORDER BY icustay_id, starttime, endtime
        """)
    con.unregister("tmp_weightdurations")

    logger.log_info(f"Wrote {len(durations)} rows to {table_name}")
    logger.log_end("save_weight_durations")


def extract_weight_durations(
    duckdb_path: str = DUCKDB_PATH,
    table_name: Optional[str] = OUTPUT_TABLE,
    **kwargs,
) -> pd.DataFrame:
    """
    Build (and optionally persist) the weight durations table for a database file.

    This function manages the database connection lifecycle, opening it at the
    start and closing it once the table is built and saved.

    Args:
        duckdb_path (str): Path to the MIMIC-III DuckDB database file
        table_name (Optional[str]): Output table name; nothing is persisted when None
        **kwargs: Forwarded to get_weight_durations

    Returns:
        pd.DataFrame: The weight durations table
    """
    logger.log_start("extract_weight_durations")

    con = duckdb.connect(duckdb_path)
    try:
        durations = get_weight_durations(con, **kwargs)
        if table_name is not None:
            save_weight_durations(con, durations, table_name)
    finally:
        con.close()

    logger.log_end("extract_weight_durations")
    return durations
