import pandas as pd
import pytest
import duckdb  # type: ignore

from weight_durations.assembler import WeightDurationError
from weight_durations.logging_utils import logger
from weight_durations.lookup import query_weight_durations
from weight_durations.pipeline import get_weight_durations, save_weight_durations
from weight_durations.run_weight_durations import main
from weight_durations.sources import ECHO_LB_TO_KG_FACTOR, LB_TO_KG_FACTOR, OZ_TO_KG_FACTOR


def _ts(s: str) -> pd.Timestamp:

    return pd.Timestamp(s)


def seed_mimic(con) -> None:
    """Create the tables read by the pipeline and seed four ICU stays."""

    con.execute(
        """
        CREATE TABLE icustays (
            icustay_id INTEGER,
            hadm_id INTEGER,
            intime TIMESTAMP,
            outtime TIMESTAMP
        );
        """
    )

    con.execute(
        """
        CREATE TABLE chartevents (
            icustay_id INTEGER,
            charttime TIMESTAMP,
            itemid INTEGER,
            value VARCHAR,
            valuenum DOUBLE,
            error INTEGER
        );
        """
    )

    con.execute(
        """
        CREATE TABLE echodata (
            hadm_id INTEGER,
            charttime TIMESTAMP,
            weight DOUBLE
        );
        """
    )

    icustays = pd.DataFrame([
        # Stay 1: adult with admission and daily chart weights (plus an ignored echo)
        {"icustay_id": 1, "hadm_id": 10, "intime": _ts("2015-01-01 00:00"), "outtime": _ts("2015-01-03 00:00")},
        # Stay 2: neonate with free-text birth weight and scale components
        {"icustay_id": 2, "hadm_id": 20, "intime": _ts("2015-02-01 00:00"), "outtime": _ts("2015-02-05 00:00")},
        # Stay 3: only an error-flagged chart weight, echo weight available
        {"icustay_id": 3, "hadm_id": 30, "intime": _ts("2015-03-01 00:00"), "outtime": _ts("2015-03-03 00:00")},
        # Stay 4: only an ambiguous birth weight
        {"icustay_id": 4, "hadm_id": 40, "intime": _ts("2015-04-01 00:00"), "outtime": _ts("2015-04-02 00:00")},
    ])
    con.register("icustays_df", icustays)
    con.execute("INSERT INTO icustays SELECT * FROM icustays_df")

    chartevents = pd.DataFrame([
        {"icustay_id": 1, "charttime": _ts("2015-01-01 01:00"), "itemid": 762, "value": "80", "valuenum": 80.0, "error": 0},
        {"icustay_id": 1, "charttime": _ts("2015-01-02 09:00"), "itemid": 224639, "value": "78", "valuenum": 78.0, "error": None},
        {"icustay_id": 2, "charttime": _ts("2015-02-01 01:00"), "itemid": 4183, "value": "3200", "valuenum": None, "error": 0},
        {"icustay_id": 2, "charttime": _ts("2015-02-01 03:00"), "itemid": 3581, "value": "7", "valuenum": 7.0, "error": 0},
        {"icustay_id": 2, "charttime": _ts("2015-02-01 03:00"), "itemid": 3582, "value": "5", "valuenum": 5.0, "error": 0},
        {"icustay_id": 3, "charttime": _ts("2015-03-01 05:00"), "itemid": 762, "value": "90", "valuenum": 90.0, "error": 1},
        {"icustay_id": 4, "charttime": _ts("2015-04-01 01:00"), "itemid": 4183, "value": "50", "valuenum": 50.0, "error": 0},
        # Not linked to any ICU stay in the registry
        {"icustay_id": 99, "charttime": _ts("2015-05-01 01:00"), "itemid": 762, "value": "70", "valuenum": 70.0, "error": 0},
    ]).astype({"error": "Int64"})
    con.register("chartevents_df", chartevents)
    con.execute("INSERT INTO chartevents SELECT * FROM chartevents_df")

    echodata = pd.DataFrame([
        {"hadm_id": 10, "charttime": _ts("2015-01-01 12:00"), "weight": 200.0},
        {"hadm_id": 30, "charttime": _ts("2015-03-01 10:00"), "weight": 180.0},
    ])
    con.register("echodata_df", echodata)
    con.execute("INSERT INTO echodata SELECT * FROM echodata_df")


class TestWeightDurationsEndToEnd:
    """Full pipeline against an in-memory MIMIC-III subset."""

    def setup_method(self):
        self.con = duckdb.connect(database=":memory:")
        seed_mimic(self.con)

    def teardown_method(self):
        self.con.close()

    def test_weight_durations(self):
        df = get_weight_durations(self.con)

        assert list(df.columns) == ["icustay_id", "starttime", "endtime", "weight"]
        assert df["icustay_id"].tolist() == [1, 1, 2, 2, 3, 3]

        stay1 = df[df["icustay_id"] == 1].reset_index(drop=True)
        assert stay1["starttime"].tolist() == [_ts("2014-12-31 22:00"), _ts("2015-01-02 09:00")]
        assert stay1["endtime"].tolist() == [_ts("2015-01-02 09:00"), _ts("2015-01-03 02:00")]
        assert stay1["weight"].tolist() == [80.0, 78.0]

        stay2 = df[df["icustay_id"] == 2].reset_index(drop=True)
        assert stay2["starttime"].tolist() == [_ts("2015-01-31 22:00"), _ts("2015-02-01 03:00")]
        assert stay2["endtime"].tolist() == [_ts("2015-02-01 03:00"), _ts("2015-02-05 02:00")]
        assert stay2["weight"].tolist() == pytest.approx([3.2, 7 * LB_TO_KG_FACTOR + 5 * OZ_TO_KG_FACTOR])

        stay3 = df[df["icustay_id"] == 3].reset_index(drop=True)
        assert stay3["starttime"].tolist() == [_ts("2015-02-28 22:00"), _ts("2015-03-01 10:00")]
        assert stay3["endtime"].tolist() == [_ts("2015-03-01 10:00"), _ts("2015-03-03 02:00")]
        assert stay3["weight"].tolist() == pytest.approx([180 * ECHO_LB_TO_KG_FACTOR] * 2)

    def test_median_echo_strategy(self):
        df = get_weight_durations(self.con, echo_strategy="median")

        stay3 = df[df["icustay_id"] == 3].reset_index(drop=True)
        assert len(stay3) == 1
        assert stay3.loc[0, "starttime"] == _ts("2015-02-28 22:00")
        assert stay3.loc[0, "endtime"] == _ts("2015-03-03 02:00")

    def test_subset_of_stays(self):
        df = get_weight_durations(self.con, icustay_ids=[3, 4])

        assert set(df["icustay_id"]) == {3}

    def test_rerun_is_identical(self):
        first = get_weight_durations(self.con)
        second = get_weight_durations(self.con)

        pd.testing.assert_frame_equal(first, second)

    def test_save_replaces_previous_table(self):
        df = get_weight_durations(self.con)
        save_weight_durations(self.con, df)
        save_weight_durations(self.con, df)

        count = self.con.execute("SELECT COUNT(*) FROM weightdurations").fetchone()[0]
        assert count == len(df)

        rows = query_weight_durations(self.con, 1, _ts("2015-01-02 00:00"), _ts("2015-01-02 12:00"))
        assert rows["weight"].tolist() == [80.0, 78.0]

    def test_failed_validation_restores_log_nesting(self):
        # Discharge recorded a day before admission
        self.con.execute("INSERT INTO icustays VALUES (5, 50, '2015-06-02 00:00', '2015-06-01 00:00')")
        self.con.execute("INSERT INTO chartevents VALUES (5, '2015-06-02 01:00', 224639, '70', 70.0, 0)")
        nesting_level = logger._nesting_level

        with pytest.raises(WeightDurationError, match="inverted"):
            get_weight_durations(self.con)

        assert logger._nesting_level == nesting_level
        assert 5 in set(get_weight_durations(self.con, validate=False)["icustay_id"])


def test_command_line_run(tmp_path):
    db_path = tmp_path / "mimiciii.duckdb"
    con = duckdb.connect(str(db_path))
    seed_mimic(con)
    con.close()

    csv_path = tmp_path / "out" / "weightdurations.csv"
    df = main(["--duckdb_path", str(db_path), "--output_csv", str(csv_path)])

    assert len(df) == 6
    assert csv_path.exists()
    assert len(pd.read_csv(csv_path)) == 6

    con = duckdb.connect(str(db_path))
    count = con.execute("SELECT COUNT(*) FROM weightdurations").fetchone()[0]
    con.close()
    assert count == 6
