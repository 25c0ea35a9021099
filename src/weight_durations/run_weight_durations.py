"""
Command line entry point: recompute the weight durations table.

Example:
    weight-durations --duckdb_path mimiciii.duckdb --output_csv data/weightdurations.csv
"""
import argparse
import logging
from pathlib import Path
from typing import List, Optional

import pandas as pd

from .fallback import DEFAULT_ECHO_STRATEGY, ECHO_STRATEGIES
from .logging_utils import LOGGER_NAME, logger
from .pipeline import DUCKDB_PATH, OUTPUT_TABLE, extract_weight_durations

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def load_icustay_ids(csv_path: str) -> List[int]:
    """
    Load ICU stay IDs from a CSV file.

    Args:
        csv_path (str): Path to CSV file with an 'icustay_id' column

    Returns:
        List[int]: ICU stay IDs
    """
    logger.log_start("load_icustay_ids")
    df = pd.read_csv(csv_path, dtype={"icustay_id": "int64"})
    icustay_ids = df["icustay_id"].tolist()
    logger.log_end("load_icustay_ids")
    return icustay_ids


def save_csv(durations: pd.DataFrame, csv_path: str) -> None:
    """Write the weight durations table to CSV, creating the directory if needed."""
    logger.log_start("save_csv")
    path = Path(csv_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    durations.to_csv(path, index=False)
    logger.log_end("save_csv")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='Build the MIMIC-III ICU weight durations table')
    parser.add_argument('--duckdb_path', type=str, default=DUCKDB_PATH,
                        help='MIMIC-III DuckDB database file')
    parser.add_argument('--output_table', type=str, default=OUTPUT_TABLE,
                        help='Table to create or replace in the database')
    parser.add_argument('--no_table', action='store_true',
                        help='Do not write the output table to the database')
    parser.add_argument('--output_csv', type=str, default=None,
                        help='Also write the table to this CSV file')
    parser.add_argument('--icustay_ids_csv', type=str, default=None,
                        help="CSV with an 'icustay_id' column restricting the stays processed")
    parser.add_argument('--echo_strategy', type=str, choices=ECHO_STRATEGIES, default=DEFAULT_ECHO_STRATEGY,
                        help='How echo report weights fill stays without charted weights')
    parser.add_argument('--skip_validation', action='store_true',
                        help='Skip the output invariant checks')
    parser.add_argument('--progress', action='store_true',
                        help='Show a progress bar over ICU stays')
    parser.add_argument('--verbose', action='store_true',
                        help='Log debug messages')
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> pd.DataFrame:
    """Recompute the weight durations table and report its coverage."""
    args = parse_args(argv)

    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    logging.getLogger(LOGGER_NAME).setLevel(logging.DEBUG if args.verbose else logging.INFO)

    logger.log_start("main")

    icustay_ids = load_icustay_ids(args.icustay_ids_csv) if args.icustay_ids_csv else None
    durations = extract_weight_durations(
        duckdb_path=args.duckdb_path,
        table_name=None if args.no_table else args.output_table,
        icustay_ids=icustay_ids,
        echo_strategy=args.echo_strategy,
        validate=not args.skip_validation,
        progress=args.progress,
    )

    if args.output_csv:
        save_csv(durations, args.output_csv)

    logger.log_end("main")
    return durations


if __name__ == "__main__":
    main()
