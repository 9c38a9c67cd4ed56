"""
Shared test data and helpers for the relayout tests.

Usage:
    from tests.fixtures import (
        SOURCE,
        TARGET,
        PARTITION_SIZES,
        RecordingJobRepository,
        fast_config_dict,
        make_rows,
        wait_for_unit_state,
    )
"""

from tests.fixtures.data import PARTITION_SIZES, SOURCE, TARGET, fast_config_dict, make_rows
from tests.fixtures.stores import RecordingJobRepository, wait_for_unit_state

__all__ = [
    "SOURCE",
    "TARGET",
    "PARTITION_SIZES",
    "make_rows",
    "fast_config_dict",
    "RecordingJobRepository",
    "wait_for_unit_state",
]
