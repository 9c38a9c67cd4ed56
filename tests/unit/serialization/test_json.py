"""
Unit tests for the JSON serialization module.

Tests for:
- RelayoutJSONEncoder class
- json_dumps convenience function
- Serializing status reports end to end
"""

import json
from datetime import UTC, datetime
from uuid import uuid4

import pytest

from relayout.models import JobStatus, JobStatusReport, MigrationJob, MigrationUnit, UnitState
from relayout.serialization import RelayoutJSONEncoder, json_dumps


class TestRelayoutJSONEncoder:
    """Tests for RelayoutJSONEncoder."""

    def test_encodes_uuid(self):
        """Test encoding UUID to string."""
        test_uuid = uuid4()
        result = json_dumps({"id": test_uuid})
        assert str(test_uuid) in result

    def test_encodes_datetime(self):
        """Test encoding datetime to ISO format string."""
        now = datetime.now(UTC)
        result = json_dumps({"timestamp": now})
        assert now.isoformat() in result

    def test_encodes_datetime_with_microseconds(self):
        test_dt = datetime(2024, 1, 15, 10, 30, 45, 123456, tzinfo=UTC)
        result = json_dumps({"timestamp": test_dt})
        assert "123456" in result

    def test_encodes_enum_value(self):
        """Test that enum members are written as their value."""
        result = json.loads(json_dumps({"status": JobStatus.CUTOVER_DONE}))
        assert result == {"status": "cutover_done"}

    def test_regular_types_unchanged(self):
        data = {"string": "hello", "number": 42, "boolean": True, "missing": None}
        assert json.loads(json_dumps(data)) == data

    def test_encode_nested_structure(self):
        """Test encoding nested structures with UUID and datetime."""
        job_id = uuid4()
        test_dt = datetime(2024, 1, 15, 10, 30, 45, tzinfo=UTC)

        data = {
            "job": {
                "id": job_id,
                "created_at": test_dt,
                "units": [{"job_id": job_id, "state": UnitState.IN_FLIGHT}],
            }
        }

        parsed = json.loads(json.dumps(data, cls=RelayoutJSONEncoder))

        assert parsed["job"]["id"] == str(job_id)
        assert parsed["job"]["created_at"] == "2024-01-15T10:30:45+00:00"
        assert parsed["job"]["units"][0]["state"] == "in_flight"

    def test_encode_unsupported_type_raises(self):
        """Test that unsupported types raise TypeError."""

        class CustomClass:
            pass

        with pytest.raises(TypeError):
            json.dumps({"custom": CustomClass()}, cls=RelayoutJSONEncoder)


class TestJsonDumps:
    """Tests for json_dumps function."""

    def test_compact_by_default(self):
        assert "\n" not in json_dumps({"a": 1, "b": [1, 2]})

    def test_indent(self):
        result = json_dumps({"a": 1}, indent=2)
        assert result == '{\n  "a": 1\n}'

    def test_list_of_uuids(self):
        ids = [uuid4(), uuid4()]
        assert json.loads(json_dumps(ids)) == [str(i) for i in ids]


class TestStatusReportSerialization:
    """Status reports must serialize without custom handling."""

    def test_report_round_trips_to_plain_json(self):
        job_id = uuid4()
        job = MigrationJob(
            id=job_id,
            source="db.events",
            target="db.events_v2",
            status=JobStatus.FAILED,
            last_error="Unit 202402 failed 5 attempts: Code: 241. Memory limit exceeded",
        )
        units = (
            MigrationUnit(
                job_id=job_id,
                unit_id="202401",
                position=0,
                partition_value="202401",
                state=UnitState.DONE,
                attempt_count=1,
            ),
            MigrationUnit(
                job_id=job_id,
                unit_id="202402",
                position=1,
                partition_value="202402",
                state=UnitState.FAILED,
                attempt_count=5,
                last_error="Code: 241. Memory limit exceeded",
                last_attempt_at=datetime(2024, 3, 1, 12, 0, tzinfo=UTC),
            ),
        )

        parsed = json.loads(json_dumps(JobStatusReport(job=job, units=units).to_dict()))

        assert parsed["job"]["status"] == "failed"
        assert parsed["progress"]["units_done"] == 1
        assert parsed["progress"]["percent"] == 50.0
        assert parsed["failing_units"] == [
            {
                "unit_id": "202402",
                "attempt_count": 5,
                "last_error": "Code: 241. Memory limit exceeded",
            }
        ]
        assert parsed["cutover"] is None
