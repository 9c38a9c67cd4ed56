"""
Health gate.

Decides whether it is currently safe to dispatch migration work, from live
storage engine signals. Four conditions are evaluated in order and the
check stops at the first failing one:

1. outstanding mutations on source/target at or below the ceiling
2. free space on every touched volume at or above the floor
3. merge queue depth and active part count below their ceilings
4. replica lag below its ceiling and no read-only replica (if replicated)

The result is advisory: the controller pauses and re-polls on a negative
reading and never fails a job because of one. The gate has no side effects.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from relayout.engine.interface import StorageEngine
from relayout.exceptions import EngineError
from relayout.models import HealthCheckResult, HealthSnapshot, MigrationConfig
from relayout.observability import (
    ATTR_GATE_OK,
    ATTR_GATE_REASON,
    ATTR_SOURCE,
    ATTR_TARGET,
    Tracer,
    create_tracer,
)

logger = logging.getLogger(__name__)


class HealthGate:
    """
    Evaluates storage engine health before each dispatch.

    Example:
        >>> gate = HealthGate(engine, ["db.events", "db.events_v2"], config)
        >>> result = await gate.check()
        >>> ok, reasons = result

    Args:
        engine: Read-only handle to the engine's introspection surface.
        datasets: Source and target datasets whose health matters.
        config: Thresholds.
        tracer: Optional custom Tracer instance.
        enable_tracing: Emit spans when OpenTelemetry is available.
    """

    def __init__(
        self,
        engine: StorageEngine,
        datasets: Sequence[str],
        config: MigrationConfig | None = None,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._engine = engine
        self._datasets = list(datasets)
        self._config = config or MigrationConfig()
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

    async def check(self) -> HealthCheckResult:
        """
        Read the engine signals and decide.

        Engine errors while reading a signal count as a negative reading.

        Returns:
            HealthCheckResult with ``ok``, the failing reason and the
            signals read so far.
        """
        attributes: dict[str, str] = {}
        if self._enable_tracing and self._datasets:
            attributes = {ATTR_SOURCE: self._datasets[0], ATTR_TARGET: self._datasets[-1]}

        with self._tracer.span("relayout.health_gate.check", attributes) as span:
            try:
                result = await self._evaluate()
            except EngineError as e:
                result = HealthCheckResult(
                    ok=False, reasons=(f"health signals unavailable: {e}",)
                )

            if not result.ok:
                logger.warning("Health gate negative: %s", "; ".join(result.reasons))
            else:
                logger.debug("Health gate ok for %s", ", ".join(self._datasets))

            if span:
                span.set_attribute(ATTR_GATE_OK, result.ok)
                if result.reasons:
                    span.set_attribute(ATTR_GATE_REASON, result.reasons[0])
            return result

    async def _evaluate(self) -> HealthCheckResult:
        config = self._config
        datasets = self._datasets

        mutations = await self._engine.count_outstanding_mutations(datasets)
        snapshot = HealthSnapshot(mutation_queue_depth=mutations)
        if mutations > config.max_outstanding_mutations:
            return self._fail(
                snapshot,
                f"{mutations} outstanding mutations "
                f"(ceiling {config.max_outstanding_mutations})",
            )

        volumes = tuple(await self._engine.get_volume_space(datasets))
        snapshot = HealthSnapshot(mutation_queue_depth=mutations, volumes=volumes)
        low = [v for v in volumes if v.free_fraction < config.min_free_disk_fraction]
        if low:
            detail = ", ".join(f"{v.name} {v.free_fraction:.1%} free" for v in low)
            return self._fail(
                snapshot,
                f"low disk space: {detail} (floor {config.min_free_disk_fraction:.0%})",
            )

        pressure = await self._engine.get_merge_pressure(datasets)
        saturated = (
            pressure.queue_depth > config.max_merge_queue_depth
            or pressure.max_active_parts > config.max_active_parts
        )
        snapshot = HealthSnapshot(
            mutation_queue_depth=mutations,
            volumes=volumes,
            merge_queue_depth=pressure.queue_depth,
            max_active_parts=pressure.max_active_parts,
            merge_saturated=saturated,
        )
        if pressure.queue_depth > config.max_merge_queue_depth:
            return self._fail(
                snapshot,
                f"merge queue depth {pressure.queue_depth} "
                f"(ceiling {config.max_merge_queue_depth})",
            )
        if pressure.max_active_parts > config.max_active_parts:
            return self._fail(
                snapshot,
                f"{pressure.max_active_parts} active parts "
                f"(ceiling {config.max_active_parts})",
            )

        replicas = await self._engine.get_replica_status(datasets)
        if replicas is None:
            return HealthCheckResult(ok=True, snapshot=snapshot)

        snapshot = HealthSnapshot(
            mutation_queue_depth=mutations,
            volumes=volumes,
            merge_queue_depth=pressure.queue_depth,
            max_active_parts=pressure.max_active_parts,
            merge_saturated=saturated,
            replica_lag_seconds=replicas.max_lag_seconds,
            readonly_replicas=replicas.readonly_replicas,
        )
        if replicas.readonly_replicas:
            return self._fail(snapshot, f"{replicas.readonly_replicas} read-only replicas")
        if replicas.max_lag_seconds > config.max_replica_lag_seconds:
            return self._fail(
                snapshot,
                f"replica lag {replicas.max_lag_seconds:.0f}s "
                f"(ceiling {config.max_replica_lag_seconds:.0f}s)",
            )
        return HealthCheckResult(ok=True, snapshot=snapshot)

    @staticmethod
    def _fail(snapshot: HealthSnapshot, reason: str) -> HealthCheckResult:
        return HealthCheckResult(ok=False, reasons=(reason,), snapshot=snapshot)


__all__ = ["HealthGate"]
