"""JSON serialization helpers for relayout status output."""

from relayout.serialization.json import RelayoutJSONEncoder, json_dumps

__all__ = [
    "RelayoutJSONEncoder",
    "json_dumps",
]
