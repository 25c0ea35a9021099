"""
Weight Durations for MIMIC-III ICU Stays

This module reconstructs, for every ICU stay, the patient's weight over time as
a sequence of contiguous [starttime, endtime) intervals, each carrying a single
weight in kg. Weights come from several partially overlapping and noisy sources.

The module is organized into several components:
- ICU stay registry (stay boundaries)
- Source extraction and normalization (chart, neonatal, birth weight, echo)
- Collapsing of simultaneous readings
- Per-stay interval construction and leading-gap backfill
- Echo fallback for stays without charted weights
- Assembly, validation and persistence of the output table
- Lookups for downstream consumers

Main workflow:
1. Load ICU stays and the raw weight records linked to them
2. Normalize each source to kg observations and collapse duplicates
3. Build intervals per stay, backfilling the start of the stay
4. Fill stays without charted weights from echo reports
5. Validate and persist the ordered table, replacing the previous run
"""
