"""
JSON serialization utilities for relayout types.

Status reports and job records carry UUIDs, datetimes and enums that the
standard encoder rejects.

Example:
    >>> from relayout.serialization import json_dumps
    >>> json_dumps({"job_id": job.id, "created_at": job.created_at})
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID


class RelayoutJSONEncoder(json.JSONEncoder):
    """
    JSON encoder that handles UUID, datetime and Enum values.

    - UUID objects: Converted to string representation
    - datetime objects: Converted to ISO 8601 format string
    - Enum members: Converted to their value
    """

    def default(self, obj: Any) -> Any:
        if isinstance(obj, UUID):
            return str(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, Enum):
            return obj.value
        return super().default(obj)


def json_dumps(obj: Any, *, indent: int | None = None) -> str:
    """
    Serialize object to JSON string with UUID, datetime and Enum support.

    Args:
        obj: Object to serialize
        indent: Optional indentation for human-readable output

    Returns:
        JSON string representation
    """
    return json.dumps(obj, cls=RelayoutJSONEncoder, indent=indent)


__all__ = [
    "RelayoutJSONEncoder",
    "json_dumps",
]
