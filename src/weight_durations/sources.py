"""
Weight Source Extraction and Normalization

This module reads the raw weight records from the MIMIC-III database and turns
each heterogeneous source into a common observation layout:

    icustay_id, charttime, weight_type, source_class, channel, weight (kg)

Four source kinds are handled:
1. Chart admission/daily weights (CareVue and MetaVision item IDs)
2. Neonatal scale readings split across kg, lb and oz channels
3. Birth weights, either free text (grams or kg) or structured kg
4. Echocardiogram report weights (pounds), used only as a fallback source

Records failing their validity rules are dropped; these reflect measurement
quality issues in the source data, so only their counts are logged.
"""
import duckdb
import numpy as np
import pandas as pd

from .common import ADMIT, DAILY, ECHO, OBSERVATION_COLUMNS, PRIMARY, empty_observations
from .logging_utils import logger

# MIMIC-III item IDs for charted admission and daily weights (kg)
ADMIT_WEIGHT_ITEMIDS = {762: "carevue_admit", 226512: "metavision_admit"}
DAILY_WEIGHT_ITEMIDS = {763: "carevue_daily", 224639: "metavision_daily"}

# Neonatal "present weight" recorded as separate scale components (CareVue)
NEONATE_KG_ITEMID = 3580
NEONATE_LB_ITEMID = 3581
NEONATE_OZ_ITEMID = 3582
NEONATE_ITEMIDS = [NEONATE_KG_ITEMID, NEONATE_LB_ITEMID, NEONATE_OZ_ITEMID]
NEONATE_CHANNEL = "neonate_scale"

# Birth weight: 3723 is numeric kg, 4183 is free text mixing grams and kg
BIRTH_WEIGHT_KG_ITEMID = 3723
BIRTH_WEIGHT_TEXT_ITEMID = 4183
BIRTH_WEIGHT_CHANNELS = {BIRTH_WEIGHT_KG_ITEMID: "birth_weight", BIRTH_WEIGHT_TEXT_ITEMID: "birth_weight_text"}

ECHO_CHANNEL = "echo"

CHART_WEIGHT_ITEMIDS = (
    list(ADMIT_WEIGHT_ITEMIDS) + list(DAILY_WEIGHT_ITEMIDS) + NEONATE_ITEMIDS + list(BIRTH_WEIGHT_CHANNELS)
)

# Unit conversion factors
LB_TO_KG_FACTOR = 0.45359237
OZ_TO_KG_FACTOR = 0.0283495231
ECHO_LB_TO_KG_FACTOR = 0.453592

# Free-text birth weight parsing
NON_NUMERIC_REGEX = r"[^0-9.]"
BIRTH_WEIGHT_GRAMS_THRESHOLD = 100   # above: grams
BIRTH_WEIGHT_KG_THRESHOLD = 10       # below: kg (largest recorded newborn is just under 10kg)
GRAMS_PER_KG = 1000

RAW_CHART_WEIGHT_SQL = """
    SELECT c.icustay_id::INTEGER AS icustay_id,
           c.charttime::TIMESTAMP AS charttime,
           c.itemid::INTEGER AS itemid,
           c.value::VARCHAR AS value,
           c.valuenum::DOUBLE AS valuenum,
           c.error::INTEGER AS error
    FROM chartevents c
    JOIN tmp_stays s ON c.icustay_id = s.icustay_id
    WHERE c.itemid::INTEGER IN (SELECT itemid FROM tmp_chart_weight_itemids)
      AND c.charttime IS NOT NULL
    """

# Echo reports are linked to the admission, so every ICU stay of that
# admission receives the report
RAW_ECHO_WEIGHT_SQL = """
    SELECT s.icustay_id::INTEGER AS icustay_id,
           ec.charttime::TIMESTAMP AS charttime,
           ec.weight::DOUBLE AS weight
    FROM echodata ec
    JOIN tmp_stays s ON ec.hadm_id = s.hadm_id
    WHERE ec.weight IS NOT NULL
      AND ec.charttime IS NOT NULL
    """


def get_raw_chart_weights(con: duckdb.DuckDBPyConnection) -> pd.DataFrame:
    """
    Fetch all charted weight-related events for the registered ICU stays.

    Requires `tmp_stays` to be registered (see stays.get_stays).

    Args:
        con (duckdb.DuckDBPyConnection): Active DuckDB connection to MIMIC-III database

    Returns:
        pd.DataFrame: Raw events with columns icustay_id, charttime, itemid, value, valuenum, error
    """
    logger.log_start("get_raw_chart_weights")
    con.register("tmp_chart_weight_itemids", pd.DataFrame({"itemid": CHART_WEIGHT_ITEMIDS}))
    df = con.execute(RAW_CHART_WEIGHT_SQL).fetchdf()
    df = df.astype({"charttime": "datetime64[ns]", "valuenum": "float64", "error": "float64"})
    logger.log_info(f"{len(df)} raw chart weight events")
    logger.log_end("get_raw_chart_weights")
    return df


def get_raw_echo_weights(con: duckdb.DuckDBPyConnection) -> pd.DataFrame:
    """
    Fetch echocardiogram report weights (pounds) for the registered ICU stays.

    Args:
        con (duckdb.DuckDBPyConnection): Active DuckDB connection to MIMIC-III database

    Returns:
        pd.DataFrame: Raw reports with columns icustay_id, charttime, weight
    """
    logger.log_start("get_raw_echo_weights")
    df = con.execute(RAW_ECHO_WEIGHT_SQL).fetchdf()
    df = df.astype({"charttime": "datetime64[ns]", "weight": "float64"})
    logger.log_info(f"{len(df)} raw echo weight reports")
    logger.log_end("get_raw_echo_weights")
    return df


def _is_error_free(error: pd.Series) -> pd.Series:
    """Rows whose error flag is missing or zero."""
    return pd.to_numeric(error, errors="coerce").fillna(0) == 0


def _finalize(df: pd.DataFrame, weight_type, source_class: str, channel) -> pd.DataFrame:
    """Attach tags, drop unusable weights and return the observation layout."""
    if df.empty:
        return empty_observations()
    out = df[["icustay_id", "charttime", "weight"]].copy()
    out["weight_type"] = weight_type
    out["source_class"] = source_class
    out["channel"] = channel
    out = out[out["weight"].notna() & (out["weight"] > 0)]
    return out[OBSERVATION_COLUMNS].reset_index(drop=True)


def normalize_chart_weights(raw: pd.DataFrame) -> pd.DataFrame:
    """
    Normalize charted admission and daily weights.

    Only positive, non error-flagged values are kept. Weight type follows the
    item category (admission weight item IDs -> admit, daily weight item IDs -> daily).

    Args:
        raw (pd.DataFrame): Raw chart events (see get_raw_chart_weights)

    Returns:
        pd.DataFrame: Observations in OBSERVATION_COLUMNS layout
    """
    channels = {**ADMIT_WEIGHT_ITEMIDS, **DAILY_WEIGHT_ITEMIDS}
    df = raw[raw["itemid"].isin(list(channels))]
    df = df[df["valuenum"].notna() & (df["valuenum"] > 0) & _is_error_free(df["error"])]
    if df.empty:
        return empty_observations()

    weight_type = np.where(df["itemid"].isin(list(ADMIT_WEIGHT_ITEMIDS)), ADMIT, DAILY)
    df = df.assign(weight=df["valuenum"])
    return _finalize(df, weight_type, PRIMARY, df["itemid"].map(channels).values)


def combine_neonate_components(wt_kg: pd.Series, wt_lb: pd.Series, wt_oz: pd.Series) -> pd.Series:
    """
    Combine neonatal scale components into a single weight in kg.

    The kg channel wins when present; otherwise both pounds and ounces must be
    present. Any other combination yields NaN.

    Example:
        >>> combine_neonate_components(pd.Series([np.nan]), pd.Series([7.0]), pd.Series([5.0]))
        0    3.316894
        dtype: float64
    """
    from_imperial = wt_lb * LB_TO_KG_FACTOR + wt_oz * OZ_TO_KG_FACTOR
    return wt_kg.where(wt_kg.notna(), from_imperial)


def normalize_neonate_weights(raw: pd.DataFrame) -> pd.DataFrame:
    """
    Normalize neonatal weights recorded as separate kg/lb/oz components.

    Components charted at the same stay and time are pivoted into one row.
    A component of zero is only ever recorded in error, so each component must
    be positive and not error-flagged to take part.

    Args:
        raw (pd.DataFrame): Raw chart events (see get_raw_chart_weights)

    Returns:
        pd.DataFrame: Daily-type observations in OBSERVATION_COLUMNS layout
    """
    df = raw[raw["itemid"].isin(NEONATE_ITEMIDS)]
    df = df[(df["valuenum"] > 0) & _is_error_free(df["error"])]
    if df.empty:
        return empty_observations()

    components = (
        df.pivot_table(index=["icustay_id", "charttime"], columns="itemid", values="valuenum", aggfunc="max")
        .reindex(columns=NEONATE_ITEMIDS)
        .reset_index()
    )
    components["weight"] = combine_neonate_components(
        components[NEONATE_KG_ITEMID], components[NEONATE_LB_ITEMID], components[NEONATE_OZ_ITEMID]
    )
    return _finalize(components, DAILY, PRIMARY, NEONATE_CHANNEL)


def parse_birth_weight(text: pd.Series) -> pd.Series:
    """
    Parse free-text birth weights into kg.

    Rules:
        - any character other than digits or '.' -> rejected
        - numeric value > 100 -> grams, divided by 1000
        - numeric value < 10 -> already kg
        - anything in [10, 100] -> rejected as ambiguous

    Args:
        text (pd.Series): Free-text values (may contain None)

    Returns:
        pd.Series: Weight in kg, NaN where rejected

    Example:
        >>> parse_birth_weight(pd.Series(["3200", "3.2", "50", "3.2kg"])).tolist()
        [3.2, 3.2, nan, nan]
    """
    text = text.where(text.notna(), "").astype(str)
    invalid = text.str.contains(NON_NUMERIC_REGEX, regex=True)
    numeric = pd.to_numeric(text.where(~invalid, ""), errors="coerce").astype("float64")
    weight = np.select(
        [numeric > BIRTH_WEIGHT_GRAMS_THRESHOLD, numeric < BIRTH_WEIGHT_KG_THRESHOLD],
        [numeric / GRAMS_PER_KG, numeric],
        default=np.nan,
    )
    return pd.Series(weight, index=text.index, dtype="float64")


def normalize_birth_weights(raw: pd.DataFrame) -> pd.DataFrame:
    """
    Normalize birth weights, which are treated as admission weights.

    The free-text channel is parsed with parse_birth_weight; the structured kg
    channel is accepted as is when below the newborn plausibility threshold.

    Args:
        raw (pd.DataFrame): Raw chart events (see get_raw_chart_weights)

    Returns:
        pd.DataFrame: Admit-type observations in OBSERVATION_COLUMNS layout
    """
    df = raw[raw["itemid"].isin(list(BIRTH_WEIGHT_CHANNELS)) & _is_error_free(raw["error"])]
    if df.empty:
        return empty_observations()

    is_text = df["itemid"] == BIRTH_WEIGHT_TEXT_ITEMID
    structured = df["valuenum"].where(df["valuenum"] < BIRTH_WEIGHT_KG_THRESHOLD)
    df = df.assign(weight=parse_birth_weight(df["value"]).where(is_text, structured))
    return _finalize(df, ADMIT, PRIMARY, df["itemid"].map(BIRTH_WEIGHT_CHANNELS).values)


def normalize_echo_weights(raw_echo: pd.DataFrame) -> pd.DataFrame:
    """
    Normalize echocardiogram report weights (pounds -> kg).

    Args:
        raw_echo (pd.DataFrame): Raw echo reports (see get_raw_echo_weights)

    Returns:
        pd.DataFrame: Echo-class observations in OBSERVATION_COLUMNS layout
    """
    df = raw_echo.assign(weight=raw_echo["weight"] * ECHO_LB_TO_KG_FACTOR)
    return _finalize(df, DAILY, ECHO, ECHO_CHANNEL)


def normalize_observations(raw_chart: pd.DataFrame, raw_echo: pd.DataFrame) -> pd.DataFrame:
    """
    Normalize all raw weight sources into a single observation table.

    Args:
        raw_chart (pd.DataFrame): Raw chart events (see get_raw_chart_weights)
        raw_echo (pd.DataFrame): Raw echo reports (see get_raw_echo_weights)

    Returns:
        pd.DataFrame: Observations from every source in OBSERVATION_COLUMNS layout
    """
    logger.log_start("normalize_observations")

    parts = [
        normalize_chart_weights(raw_chart),
        normalize_neonate_weights(raw_chart),
        normalize_birth_weights(raw_chart),
        normalize_echo_weights(raw_echo),
    ]
    observations = pd.concat(parts, ignore_index=True)
    observations = observations.astype({"icustay_id": "int64", "charttime": "datetime64[ns]", "weight": "float64"})

    dropped = len(raw_chart) + len(raw_echo) - len(observations)
    logger.log_info(f"{len(observations)} observations")
    logger.log_debug(f"{dropped} raw records dropped or merged during normalization")

    logger.log_end("normalize_observations")
    return observations
