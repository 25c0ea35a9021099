"""
Unit tests for the weight durations stages.

Covers each stage in isolation:
- Source normalization (chart, neonatal components, birth weight, echo)
- Collapsing of simultaneous observations
- Per-stay interval construction and leading-gap backfill
- Echo fallback strategies
- Reconciliation, validation, summary and lookups
"""
from typing import List

import numpy as np
import pandas as pd
import pytest

from weight_durations.assembler import (
    WeightDurationError,
    reconcile_weight_durations,
    summarize_weight_durations,
    validate_weight_durations,
)
from weight_durations.collapse import collapse_observations
from weight_durations.common import (
    ADMIT,
    DAILY,
    ECHO,
    OBSERVATION_COLUMNS,
    PRIMARY,
    WeightInterval,
    to_duration_frame,
)
from weight_durations.fallback import MEDIAN, SEQUENCE, build_fallback_intervals
from weight_durations.intervals import backfill_leading_gap, build_stay_intervals
from weight_durations.lookup import get_weight_at, get_weights_in_range
from weight_durations.sources import (
    ECHO_LB_TO_KG_FACTOR,
    LB_TO_KG_FACTOR,
    OZ_TO_KG_FACTOR,
    combine_neonate_components,
    normalize_birth_weights,
    normalize_chart_weights,
    normalize_echo_weights,
    normalize_neonate_weights,
    parse_birth_weight,
)


def _ts(s: str) -> pd.Timestamp:
    """Helper to create timestamps."""
    return pd.Timestamp(s)


def _raw_chart(rows: List[tuple]) -> pd.DataFrame:
    """Helper to build raw chart events: (icustay_id, charttime, itemid, value, valuenum, error)."""
    return pd.DataFrame(rows, columns=["icustay_id", "charttime", "itemid", "value", "valuenum", "error"]).astype(
        {"charttime": "datetime64[ns]", "valuenum": "float64"}
    )


def _obs(rows: List[tuple]) -> pd.DataFrame:
    """Helper to build observations: (icustay_id, charttime, weight_type, source_class, channel, weight)."""
    return pd.DataFrame(rows, columns=OBSERVATION_COLUMNS).astype(
        {"icustay_id": "int64", "charttime": "datetime64[ns]", "weight": "float64"}
    )


INTIME = _ts("2015-01-01 00:00")
OUTTIME = _ts("2015-01-03 00:00")
WINDOW_START = _ts("2014-12-31 22:00")
WINDOW_END = _ts("2015-01-03 02:00")


class TestSourceNormalization:
    """Validity rules and unit conversions of each raw source."""

    def test_birth_weight_text_parsing(self):
        parsed = parse_birth_weight(pd.Series(["3200", "3.2", "50", "3.2kg", None, "", "100", "9.5", " 3200", "3200 "]))

        assert parsed.iloc[0] == pytest.approx(3.2)
        assert parsed.iloc[1] == pytest.approx(3.2)
        assert np.isnan(parsed.iloc[2])   # ambiguous band
        assert np.isnan(parsed.iloc[3])   # non-numeric characters
        assert np.isnan(parsed.iloc[4])
        assert np.isnan(parsed.iloc[5])
        assert np.isnan(parsed.iloc[6])   # 100 is neither grams nor kg
        assert parsed.iloc[7] == pytest.approx(9.5)
        assert np.isnan(parsed.iloc[8])   # whitespace is not numeric
        assert np.isnan(parsed.iloc[9])

    def test_neonate_pounds_and_ounces(self):
        weight = combine_neonate_components(pd.Series([np.nan]), pd.Series([7.0]), pd.Series([5.0]))

        assert weight.iloc[0] == pytest.approx(7 * 0.45359237 + 5 * 0.0283495231)
        assert weight.iloc[0] == pytest.approx(3.317, abs=1e-3)

    def test_neonate_ounces_without_pounds_are_rejected(self):
        weight = combine_neonate_components(pd.Series([np.nan]), pd.Series([np.nan]), pd.Series([5.0]))
        assert np.isnan(weight.iloc[0])

        raw = _raw_chart([(1, _ts("2015-01-01 03:00"), 3582, None, 5.0, 0)])
        assert normalize_neonate_weights(raw).empty

    def test_neonate_components_are_combined_per_charttime(self):
        t1, t2, t3 = _ts("2015-01-01 03:00"), _ts("2015-01-01 09:00"), _ts("2015-01-01 15:00")
        raw = _raw_chart([
            (1, t1, 3581, None, 7.0, 0),
            (1, t1, 3582, None, 5.0, 0),
            (1, t2, 3580, None, 3.4, 0),
            (1, t2, 3581, None, 9.0, 0),
            (1, t3, 3581, None, 7.0, 0),   # ounces missing
        ])

        obs = normalize_neonate_weights(raw).sort_values("charttime").reset_index(drop=True)

        assert obs["charttime"].tolist() == [t1, t2]
        assert obs.loc[0, "weight"] == pytest.approx(7 * LB_TO_KG_FACTOR + 5 * OZ_TO_KG_FACTOR)
        assert obs.loc[1, "weight"] == pytest.approx(3.4)   # kg channel wins
        assert set(obs["weight_type"]) == {DAILY}
        assert set(obs["channel"]) == {"neonate_scale"}

    def test_neonate_zero_or_error_components_are_ignored(self):
        t = _ts("2015-01-01 03:00")
        raw = _raw_chart([
            (1, t, 3580, None, 0.0, 0),
            (1, t, 3581, None, 7.0, 1),
            (1, t, 3582, None, 5.0, 0),
        ])

        assert normalize_neonate_weights(raw).empty

    def test_chart_weights_are_tagged_and_filtered(self):
        t = _ts("2015-01-01 03:00")
        raw = _raw_chart([
            (1, t, 762, "80", 80.0, 0),
            (1, t, 224639, "78", 78.0, None),
            (1, t, 763, "0", 0.0, 0),
            (1, t, 226512, "81", 81.0, 1),
            (1, t, 763, None, None, 0),
            (1, t, 3580, None, 3.1, 0),   # neonatal item, not a chart weight
        ])

        obs = normalize_chart_weights(raw).sort_values("weight").reset_index(drop=True)

        assert obs["weight"].tolist() == [78.0, 80.0]
        assert obs["weight_type"].tolist() == [DAILY, ADMIT]
        assert obs["channel"].tolist() == ["metavision_daily", "carevue_admit"]
        assert set(obs["source_class"]) == {PRIMARY}

    def test_birth_weights_are_admission_weights(self):
        t = _ts("2015-01-01 01:00")
        raw = _raw_chart([
            (1, t, 4183, "3200", None, 0),
            (2, t, 4183, "50", None, 0),
            (3, t, 4183, "3.2 kg", None, 0),
            (4, t, 3723, "3.5", 3.5, 0),
            (5, t, 3723, "12", 12.0, 0),
            (6, t, 4183, "0", None, 0),
            (7, t, 4183, "2900", None, 1),
        ])

        obs = normalize_birth_weights(raw).sort_values("icustay_id").reset_index(drop=True)

        assert obs["icustay_id"].tolist() == [1, 4]
        assert obs["weight"].tolist() == pytest.approx([3.2, 3.5])
        assert set(obs["weight_type"]) == {ADMIT}

    def test_echo_weights_are_converted_from_pounds(self):
        raw_echo = pd.DataFrame({
            "icustay_id": [1, 1, 2],
            "charttime": [_ts("2015-01-01 10:00"), _ts("2015-01-02 10:00"), _ts("2015-01-01 10:00")],
            "weight": [180.0, -5.0, np.nan],
        })

        obs = normalize_echo_weights(raw_echo)

        assert len(obs) == 1
        assert obs.loc[0, "weight"] == pytest.approx(180 * ECHO_LB_TO_KG_FACTOR)
        assert obs.loc[0, "source_class"] == ECHO


class TestCollapse:
    """At most one observation per stay, time, weight type and source class."""

    def test_channel_precedence(self):
        t = _ts("2015-01-01 01:00")
        obs = _obs([
            (1, t, ADMIT, PRIMARY, "carevue_admit", 80.0),
            (1, t, ADMIT, PRIMARY, "metavision_admit", 81.0),
        ])

        collapsed = collapse_observations(obs)

        assert len(collapsed) == 1
        assert collapsed.loc[0, "weight"] == 81.0

    def test_structured_birth_weight_beats_free_text(self):
        t = _ts("2015-01-01 01:00")
        raw = _raw_chart([
            (1, t, 4183, "3400", None, 0),
            (1, t, 3723, "3.5", 3.5, 0),
        ])

        collapsed = collapse_observations(normalize_birth_weights(raw))

        assert len(collapsed) == 1
        assert collapsed.loc[0, "weight"] == pytest.approx(3.5)
        assert collapsed.loc[0, "weight_type"] == ADMIT

    def test_same_channel_readings_use_median(self):
        t = _ts("2015-01-01 01:00")
        obs = _obs([
            (1, t, DAILY, PRIMARY, "carevue_daily", 78.0),
            (1, t, DAILY, PRIMARY, "carevue_daily", 80.0),
        ])

        collapsed = collapse_observations(obs)

        assert collapsed["weight"].tolist() == [79.0]

    def test_types_and_source_classes_are_kept_apart(self):
        t = _ts("2015-01-01 01:00")
        obs = _obs([
            (1, t, ADMIT, PRIMARY, "carevue_admit", 80.0),
            (1, t, DAILY, PRIMARY, "carevue_daily", 79.0),
            (1, t, DAILY, ECHO, "echo", 82.0),
            (2, t, DAILY, PRIMARY, "carevue_daily", 60.0),
        ])

        collapsed = collapse_observations(obs)

        assert len(collapsed) == 4
        assert not collapsed.duplicated(["icustay_id", "charttime", "weight_type", "source_class"]).any()

    def test_empty(self):
        assert collapse_observations(_obs([])).empty


class TestIntervalBuilder:
    """Interval construction and backfill for a single stay."""

    def _build(self, rows: List[tuple]) -> List[WeightInterval]:
        obs = _obs([(1, _ts(t), wt, PRIMARY, "chart", w) for t, wt, w in rows])
        return backfill_leading_gap(build_stay_intervals(1, obs, INTIME, OUTTIME), INTIME)

    def test_admit_then_daily(self):
        intervals = self._build([
            ("2015-01-01 01:00", ADMIT, 80.0),
            ("2015-01-02 09:00", DAILY, 78.0),
        ])

        assert intervals == [
            WeightInterval(1, WINDOW_START, _ts("2015-01-02 09:00"), 80.0),
            WeightInterval(1, _ts("2015-01-02 09:00"), WINDOW_END, 78.0),
        ]

    def test_daily_only_is_backfilled(self):
        intervals = self._build([("2015-01-01 06:00", DAILY, 75.0)])

        assert intervals == [
            WeightInterval(1, WINDOW_START, _ts("2015-01-01 06:00"), 75.0),
            WeightInterval(1, _ts("2015-01-01 06:00"), WINDOW_END, 75.0),
        ]

    def test_backfill_inside_fuzziness_margin(self):
        intervals = self._build([("2014-12-31 23:00", DAILY, 75.0)])

        assert intervals[0] == WeightInterval(1, WINDOW_START, _ts("2014-12-31 23:00"), 75.0)

    def test_admit_not_first_keeps_its_charttime(self):
        intervals = self._build([
            ("2015-01-01 03:00", DAILY, 77.0),
            ("2015-01-01 10:00", ADMIT, 80.0),
        ])

        assert intervals == [
            WeightInterval(1, WINDOW_START, _ts("2015-01-01 03:00"), 77.0),
            WeightInterval(1, _ts("2015-01-01 03:00"), _ts("2015-01-01 10:00"), 77.0),
            WeightInterval(1, _ts("2015-01-01 10:00"), WINDOW_END, 80.0),
        ]

    def test_daily_overrides_admit_at_same_time(self):
        intervals = self._build([
            ("2015-01-01 03:00", DAILY, 77.0),
            ("2015-01-01 05:00", ADMIT, 80.0),
            ("2015-01-01 05:00", DAILY, 79.0),
        ])

        assert [i.weight for i in intervals] == [77.0, 77.0, 79.0]
        assert intervals[-1].starttime == _ts("2015-01-01 05:00")

    def test_observations_outside_the_window_are_clipped(self):
        intervals = self._build([
            ("2014-12-31 12:00", DAILY, 70.0),
            ("2015-01-01 12:00", DAILY, 72.0),
            ("2015-01-03 05:00", DAILY, 74.0),
        ])

        assert intervals == [
            WeightInterval(1, WINDOW_START, _ts("2015-01-01 12:00"), 70.0),
            WeightInterval(1, _ts("2015-01-01 12:00"), WINDOW_END, 72.0),
        ]

    def test_only_reading_charted_after_the_window(self):
        intervals = self._build([("2015-01-03 05:00", DAILY, 70.0)])

        assert intervals == [WeightInterval(1, WINDOW_START, WINDOW_END, 70.0)]

    def test_earliest_late_reading_covers_the_stay(self):
        intervals = self._build([
            ("2015-01-04 08:00", DAILY, 71.0),
            ("2015-01-03 05:00", DAILY, 70.0),
        ])

        assert intervals == [WeightInterval(1, WINDOW_START, WINDOW_END, 70.0)]

    def test_intervals_are_contiguous(self):
        intervals = self._build([
            ("2015-01-01 04:00", DAILY, 70.0),
            ("2015-01-01 01:00", ADMIT, 71.0),
            ("2015-01-02 04:00", DAILY, 69.0),
            ("2015-01-02 20:00", DAILY, 68.0),
        ])

        assert intervals[0].starttime == WINDOW_START
        assert intervals[-1].endtime == WINDOW_END
        for previous, current in zip(intervals, intervals[1:]):
            assert previous.endtime == current.starttime
            assert current.starttime < current.endtime

    def test_no_observations(self):
        assert self._build([]) == []
        assert backfill_leading_gap([], INTIME) == []


class TestFallback:
    """Echo fallback strategies."""

    def setup_method(self):
        self.echo = _obs([
            (1, _ts("2015-01-01 10:00"), DAILY, ECHO, "echo", 81.0),
            (1, _ts("2015-01-02 10:00"), DAILY, ECHO, "echo", 79.0),
        ])

    def test_sequence(self):
        intervals = build_fallback_intervals(1, self.echo, INTIME, OUTTIME, SEQUENCE)

        assert intervals == [
            WeightInterval(1, WINDOW_START, _ts("2015-01-01 10:00"), 81.0),
            WeightInterval(1, _ts("2015-01-01 10:00"), _ts("2015-01-02 10:00"), 81.0),
            WeightInterval(1, _ts("2015-01-02 10:00"), WINDOW_END, 79.0),
        ]

    def test_median(self):
        intervals = build_fallback_intervals(1, self.echo, INTIME, OUTTIME, MEDIAN)

        assert intervals == [WeightInterval(1, WINDOW_START, WINDOW_END, 80.0)]

    def test_no_echo(self):
        assert build_fallback_intervals(1, self.echo.iloc[0:0], INTIME, OUTTIME) == []

    def test_unknown_strategy(self):
        with pytest.raises(ValueError):
            build_fallback_intervals(1, self.echo, INTIME, OUTTIME, "mean")


class TestReconciliation:
    """Partition into primary and fallback stays, validation and lookups."""

    def setup_method(self):
        self.stays = pd.DataFrame({
            "icustay_id": [1, 2, 3],
            "hadm_id": [10, 20, 30],
            "intime": [INTIME] * 3,
            "outtime": [OUTTIME] * 3,
        })
        self.observations = _obs([
            (1, _ts("2015-01-01 01:00"), ADMIT, PRIMARY, "carevue_admit", 80.0),
            (1, _ts("2015-01-02 09:00"), DAILY, PRIMARY, "carevue_daily", 78.0),
            (1, _ts("2015-01-01 12:00"), DAILY, ECHO, "echo", 90.0),
            (2, _ts("2015-01-01 12:00"), DAILY, ECHO, "echo", 60.0),
        ])

    def test_primary_takes_precedence_over_echo(self):
        durations = reconcile_weight_durations(self.stays, self.observations)

        stay1 = durations[durations["icustay_id"] == 1]
        assert stay1["weight"].tolist() == [80.0, 78.0]
        stay2 = durations[durations["icustay_id"] == 2]
        assert stay2["weight"].tolist() == [60.0, 60.0]
        assert stay2["starttime"].iloc[0] == WINDOW_START

    def test_late_primary_reading_beats_echo(self):
        observations = _obs([
            (2, _ts("2015-01-03 05:00"), DAILY, PRIMARY, "carevue_daily", 70.0),
            (2, _ts("2015-01-01 12:00"), DAILY, ECHO, "echo", 90.0),
        ])

        durations = reconcile_weight_durations(self.stays, observations)

        assert durations["icustay_id"].tolist() == [2]
        assert durations["weight"].tolist() == [70.0]
        assert durations.loc[0, "starttime"] == WINDOW_START
        assert durations.loc[0, "endtime"] == WINDOW_END
        validate_weight_durations(durations, self.stays)

    def test_stay_without_usable_observations_has_no_rows(self):
        durations = reconcile_weight_durations(self.stays, self.observations)

        assert 3 not in set(durations["icustay_id"])

    def test_output_is_ordered_and_valid(self):
        durations = reconcile_weight_durations(self.stays, self.observations)

        assert list(durations.columns) == ["icustay_id", "starttime", "endtime", "weight"]
        expected = durations.sort_values(["icustay_id", "starttime", "endtime"]).reset_index(drop=True)
        pd.testing.assert_frame_equal(durations, expected)
        validate_weight_durations(durations, self.stays)

    def test_reconciliation_is_idempotent(self):
        first = reconcile_weight_durations(self.stays, self.observations)
        second = reconcile_weight_durations(self.stays, self.observations)

        pd.testing.assert_frame_equal(first, second)

    def test_validation_rejects_inverted_interval(self):
        durations = to_duration_frame([
            WeightInterval(1, WINDOW_START, _ts("2015-01-01 10:00"), 80.0),
            WeightInterval(1, _ts("2015-01-01 10:00"), _ts("2015-01-01 09:00"), 80.0),
        ])

        with pytest.raises(WeightDurationError, match="inverted"):
            validate_weight_durations(durations, self.stays)

    def test_validation_rejects_gaps_and_late_starts(self):
        durations = to_duration_frame([
            WeightInterval(1, _ts("2015-01-01 00:00"), _ts("2015-01-01 10:00"), 80.0),
            WeightInterval(1, _ts("2015-01-01 11:00"), WINDOW_END, 80.0),
        ])

        with pytest.raises(WeightDurationError) as excinfo:
            validate_weight_durations(durations, self.stays)
        assert "gap or overlap" in str(excinfo.value)
        assert "intime - 2h" in str(excinfo.value)

    def test_summary(self):
        durations = reconcile_weight_durations(self.stays, self.observations)

        summary = summarize_weight_durations(durations, self.stays)

        assert summary["stays"] == 3
        assert summary["stays_with_coverage"] == 2
        assert summary["stays_without_coverage"] == 1
        assert summary["intervals"] == len(durations)
        assert summary["median_covered_hours"] == pytest.approx(52.0)

    def test_lookups(self):
        durations = reconcile_weight_durations(self.stays, self.observations)

        assert get_weight_at(durations, 1, _ts("2015-01-01 00:00")) == 80.0
        assert get_weight_at(durations, 1, _ts("2015-01-02 09:00")) == 78.0
        assert get_weight_at(durations, 1, _ts("2015-01-04 00:00")) is None
        assert get_weight_at(durations, 3, _ts("2015-01-01 12:00")) is None

        in_range = get_weights_in_range(durations, 1, _ts("2015-01-02 00:00"), _ts("2015-01-02 12:00"))
        assert in_range["weight"].tolist() == [80.0, 78.0]
