"""
Durable state stores.

Two stores make up a migration's durable state: the job repository (jobs
and cutover records) and the progress ledger (per-unit states). Each comes
in three backends sharing one Protocol.

Example:
    >>> async with aiosqlite.connect("relayout.db") as db:
    ...     await db.executescript(get_schema("sqlite"))
    ...     jobs = SQLiteJobRepository(db)
    ...     ledger = SQLiteProgressLedger(db)
"""

from relayout.repositories.jobs import (
    InMemoryJobRepository,
    JobRepository,
    PostgreSQLJobRepository,
    SQLiteJobRepository,
)
from relayout.repositories.ledger import (
    InMemoryProgressLedger,
    PostgreSQLProgressLedger,
    ProgressLedger,
    SQLiteProgressLedger,
)

__all__ = [
    "JobRepository",
    "InMemoryJobRepository",
    "SQLiteJobRepository",
    "PostgreSQLJobRepository",
    "ProgressLedger",
    "InMemoryProgressLedger",
    "SQLiteProgressLedger",
    "PostgreSQLProgressLedger",
]
