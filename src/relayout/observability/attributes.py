"""
Standard span attributes for relayout.

Attribute keys shared by every component so spans from the controller,
executor and stores can be correlated. Database keys follow OpenTelemetry
semantic conventions.
"""

# =============================================================================
# Job Attributes
# =============================================================================

ATTR_JOB_ID = "relayout.job.id"
"""Migration job identifier (UUID string)."""

ATTR_JOB_STATUS = "relayout.job.status"
"""Job status value (e.g., 'running', 'paused')."""

ATTR_SOURCE = "relayout.job.source"
"""Source dataset name ('database.table')."""

ATTR_TARGET = "relayout.job.target"
"""Shadow target dataset name ('database.table')."""

# =============================================================================
# Unit Attributes
# =============================================================================

ATTR_UNIT_ID = "relayout.unit.id"
"""Partition id of the migration unit (string)."""

ATTR_UNIT_STATE = "relayout.unit.state"
"""Unit state value (e.g., 'in_flight')."""

ATTR_UNIT_ATTEMPT = "relayout.unit.attempt"
"""Attempt number of a unit execution (integer)."""

ATTR_UNIT_COUNT = "relayout.unit.count"
"""Number of units in an operation (integer)."""

ATTR_ROWS = "relayout.rows"
"""Row count observed by an operation (integer)."""

# =============================================================================
# Health Gate Attributes
# =============================================================================

ATTR_GATE_OK = "relayout.gate.ok"
"""Whether the health gate allowed the dispatch (boolean)."""

ATTR_GATE_REASON = "relayout.gate.reason"
"""First failing health condition (string)."""

# =============================================================================
# Database Attributes (OpenTelemetry Semantic Conventions)
# =============================================================================

ATTR_DB_SYSTEM = "db.system"
"""Database system identifier (e.g., 'sqlite', 'postgresql', 'clickhouse')."""

ATTR_DB_OPERATION = "db.operation"
"""Database operation type (e.g., 'INSERT', 'EXCHANGE')."""

# =============================================================================
# Lock Attributes
# =============================================================================

ATTR_LOCK_KEY = "relayout.lock.key"
"""Lock key string."""

ATTR_LOCK_ACQUIRED = "relayout.lock.acquired"
"""Whether the lock was acquired (boolean)."""

# =============================================================================
# Error Attributes
# =============================================================================

ATTR_ERROR_TYPE = "relayout.error.type"
"""Exception class name (string)."""
