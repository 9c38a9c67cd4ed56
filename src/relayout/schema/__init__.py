"""
SQL schema templates for relayout's durable state.

Tables:
    - relayout_jobs: Migration jobs, one active job per target
    - relayout_units: Progress ledger, one row per (job, partition)
    - relayout_cutovers: Cutover records

Supported backends:
    - postgresql (default)
    - sqlite

Usage:
    from relayout.schema import get_schema, get_statements

    # SQLite: executescript accepts the whole script
    await db.executescript(get_schema("sqlite"))

    # PostgreSQL: drivers using prepared statements need one at a time
    async with engine.begin() as conn:
        for statement in get_statements("postgresql"):
            await conn.execute(text(statement))
"""

from pathlib import Path
from typing import Literal

BackendName = Literal["postgresql", "sqlite"]

_TEMPLATES_DIR = Path(__file__).parent / "templates"


def get_schema(backend: BackendName = "postgresql") -> str:
    """
    Get the full schema script for a backend.

    Args:
        backend: The database backend (postgresql, sqlite)

    Returns:
        SQL script creating every relayout table and index

    Raises:
        ValueError: If the backend is not supported
    """
    path = _TEMPLATES_DIR / f"{backend}.sql"
    if not path.is_file():
        raise ValueError(f"Unsupported backend: {backend!r}. Use 'postgresql' or 'sqlite'.")
    return path.read_text(encoding="utf-8")


def get_statements(backend: BackendName = "postgresql") -> list[str]:
    """
    Split the schema script into single statements.

    Comment lines are dropped; the templates contain no semicolons inside
    string literals.

    Args:
        backend: The database backend (postgresql, sqlite)

    Returns:
        Individual SQL statements without trailing semicolons
    """
    lines = [
        line for line in get_schema(backend).splitlines() if not line.lstrip().startswith("--")
    ]
    return [statement.strip() for statement in "\n".join(lines).split(";") if statement.strip()]


__all__ = [
    "BackendName",
    "get_schema",
    "get_statements",
]
