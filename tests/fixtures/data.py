"""
Test data for the relayout tests.

The fixture source dataset has five partitions of different sizes, so the
enumeration order (largest first) is p2, p4, p1, p5, p3.
"""

from typing import Any

SOURCE = "db.events"
TARGET = "db.events_v2"

PARTITION_SIZES = {"p1": 3, "p2": 5, "p3": 1, "p4": 4, "p5": 2}


def make_rows(sizes: dict[str, int] | None = None) -> list[dict[str, Any]]:
    """
    Build source rows.

    Args:
        sizes: Partition key to row count (defaults to PARTITION_SIZES)

    Returns:
        Row dictionaries with ``day``, ``id`` and ``value`` columns
    """
    rows: list[dict[str, Any]] = []
    next_id = 1
    for day, count in (sizes or PARTITION_SIZES).items():
        for _ in range(count):
            rows.append({"day": day, "id": next_id, "value": f"v{next_id}"})
            next_id += 1
    return rows


def fast_config_dict(**overrides: Any) -> dict[str, Any]:
    """Job configuration with millisecond backoffs, in JobSpec.config form."""
    data: dict[str, Any] = {
        "parallelism": 2,
        "max_attempts": 5,
        "poll_interval_seconds": 0.01,
        "auto_cutover": False,
        "gate_backoff": {"base_delay_ms": 1.0, "max_delay_ms": 5.0, "jitter_factor": 0.0},
        "retry_backoff": {"base_delay_ms": 1.0, "max_delay_ms": 5.0, "jitter_factor": 0.0},
    }
    data.update(overrides)
    return data
