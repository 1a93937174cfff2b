"""Application state shared by every request handler."""

import time
from dataclasses import dataclass
from typing import Callable, Optional

from gas_relayer.config import Settings
from gas_relayer.db import Database
from gas_relayer.obs.health import ComponentHealth, HealthAggregator
from gas_relayer.obs.metrics import MetricRegistry


def database_probe(db: Database, metrics: MetricRegistry, slow_threshold_ms: float) -> Callable:
    async def check_database() -> ComponentHealth:
        start = time.monotonic()
        await db.ping()
        elapsed_ms = round((time.monotonic() - start) * 1000.0, 3)

        if elapsed_ms > slow_threshold_ms:
            health = ComponentHealth.degraded(
                f"Database ping took {elapsed_ms:.0f}ms (threshold {slow_threshold_ms:.0f}ms)"
            )
        else:
            health = ComponentHealth.healthy("Database connection active")
        health.with_response_time(elapsed_ms)

        pool = db.pool_status()
        for key, value in pool.items():
            health.with_detail(f"pool_{key}", value)
        if "checkedout" in pool:
            metrics.db_connections_active.set(pool["checkedout"])
            health.with_detail("active_connections", pool["checkedout"])
        return health

    return check_database


def metrics_probe(metrics: MetricRegistry) -> Callable:
    def check_metrics() -> ComponentHealth:
        body = metrics.export()
        return (
            ComponentHealth.healthy("Metric registry exportable")
            .with_detail("instruments", len(metrics.instruments()))
            .with_detail("export_bytes", len(body.encode("utf-8")))
        )

    return check_metrics


@dataclass
class ApplicationState:
    settings: Settings
    db: Database
    metrics: MetricRegistry
    health: HealthAggregator

    @classmethod
    def create(
        cls,
        settings: Settings,
        db: Database,
        metrics: MetricRegistry,
        started_at: Optional[float] = None,
    ) -> "ApplicationState":
        health = HealthAggregator(
            timeout_seconds=settings.HEALTH_PROBE_TIMEOUT_SECONDS,
            started_at=started_at,
        )
        health.register_check("database", database_probe(db, metrics, settings.DB_SLOW_THRESHOLD_MS))
        health.register_check("metrics", metrics_probe(metrics))
        return cls(settings=settings, db=db, metrics=metrics, health=health)
