"""
Collapse simultaneous weight observations.

Several channels can record the same concept at the same moment (e.g. the
CareVue and MetaVision admission weight items, or the structured and free-text
birth weight items). This module reduces them to one observation per
(icustay_id, charttime, weight_type, source_class).
"""
import pandas as pd

from .common import OBSERVATION_COLUMNS
from .logging_utils import logger

# Channels in order of preference when several report at the same time
CHANNEL_PRECEDENCE = [
    "metavision_admit",
    "carevue_admit",
    "birth_weight",
    "birth_weight_text",
    "metavision_daily",
    "carevue_daily",
    "neonate_scale",
    "echo",
]
CHANNEL_RANK = {channel: rank for rank, channel in enumerate(CHANNEL_PRECEDENCE)}

COLLAPSE_KEY = ["icustay_id", "charttime", "weight_type", "source_class"]


def collapse_observations(observations: pd.DataFrame) -> pd.DataFrame:
    """
    Keep at most one observation per stay, time, weight type and source class.

    Repeated readings from a single channel are first reduced to their median;
    across channels the one ranked highest in CHANNEL_PRECEDENCE is kept.

    Args:
        observations (pd.DataFrame): Normalized observations (OBSERVATION_COLUMNS)

    Returns:
        pd.DataFrame: Collapsed observations sorted by COLLAPSE_KEY
    """
    logger.log_start("collapse_observations")

    if observations.empty:
        logger.log_end("collapse_observations")
        return observations[OBSERVATION_COLUMNS].reset_index(drop=True)

    per_channel = (
        observations.groupby(COLLAPSE_KEY + ["channel"], as_index=False, sort=False)["weight"]
        .median()
    )
    per_channel["rank"] = per_channel["channel"].map(CHANNEL_RANK).fillna(len(CHANNEL_RANK))

    collapsed = (
        per_channel.sort_values(COLLAPSE_KEY + ["rank"], kind="mergesort")
        .drop_duplicates(COLLAPSE_KEY, keep="first")
        .reset_index(drop=True)
    )[OBSERVATION_COLUMNS]

    logger.log_debug(f"{len(observations) - len(collapsed)} simultaneous observations collapsed")
    logger.log_end("collapse_observations")
    return collapsed
