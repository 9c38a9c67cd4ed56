"""Value conversion shared by the SQLite stores."""

from datetime import datetime

MAX_ERROR_LENGTH = 1000


def to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def from_iso(value: str | datetime | None) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def truncate_error(error: str | None) -> str | None:
    if error is None:
        return None
    return error[:MAX_ERROR_LENGTH]
