"""
ICU stay registry.

Reads the ICU stays that bound every weight interval. The registry is also
registered back into DuckDB as `tmp_stays` so that the source queries only
return observations linked to a known stay.
"""
from typing import List, Optional

import duckdb
import pandas as pd

from .common import STAY_COLUMNS
from .logging_utils import logger

STAYS_SQL = """
    SELECT ie.icustay_id::INTEGER AS icustay_id,
           ie.hadm_id::INTEGER AS hadm_id,
           ie.intime::TIMESTAMP AS intime,
           ie.outtime::TIMESTAMP AS outtime
    FROM icustays ie
    WHERE ie.icustay_id IS NOT NULL
      AND ie.intime IS NOT NULL
      AND ie.outtime IS NOT NULL
    ORDER BY ie.icustay_id
    """


def get_stays(con: duckdb.DuckDBPyConnection, icustay_ids: Optional[List[int]] = None) -> pd.DataFrame:
    """
    Load the ICU stay registry, optionally restricted to a subset of stays.

    Stays without an outtime cannot be bounded and are left out.

    Args:
        con (duckdb.DuckDBPyConnection): Active DuckDB connection to MIMIC-III database
        icustay_ids (Optional[List[int]]): Stays to keep; all stays when None

    Returns:
        pd.DataFrame: One row per stay with columns icustay_id, hadm_id, intime, outtime
    """
    logger.log_start("get_stays")

    stays = con.execute(STAYS_SQL).fetchdf()
    if icustay_ids is not None:
        stays = stays[stays["icustay_id"].isin(icustay_ids)].reset_index(drop=True)
    stays = stays[STAY_COLUMNS].astype({"intime": "datetime64[ns]", "outtime": "datetime64[ns]"})

    # Source queries join against this table
    con.register("tmp_stays", stays)

    logger.log_info(f"{len(stays)} ICU stays")
    logger.log_end("get_stays")
    return stays
