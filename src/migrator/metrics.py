"""Prometheus metrics for monitoring migration operations."""

from typing import Optional

import structlog
from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    start_http_server,
)

from utils.logging import get_logger


class MigratorMetrics:
    """Prometheus metrics for the migrator."""

    def __init__(
        self,
        logger: Optional[structlog.BoundLogger] = None,
        registry: Optional[CollectorRegistry] = None,
    ) -> None:
        """Initialize metrics.

        Args:
            logger: Optional logger instance
            registry: Optional Prometheus registry (defaults to global REGISTRY)
        """
        self.logger = logger or get_logger("metrics")
        self.registry = registry or REGISTRY

        self.runs_total = Counter(
            "migrator_runs_total",
            "Total number of migration runs",
            ["strategy", "status"],  # status: success, failure, dry_run
            registry=self.registry,
        )
        self.users_total = Counter(
            "migrator_users_total",
            "Per-user transfer outcomes",
            ["outcome"],  # success, failed, skipped
            registry=self.registry,
        )
        self.backups_total = Counter(
            "migrator_backups_total",
            "Backups and snapshots created",
            ["kind"],  # full, snapshot
            registry=self.registry,
        )
        self.rollbacks_total = Counter(
            "migrator_rollbacks_total",
            "Rollbacks performed",
            ["kind", "outcome"],  # kind: full, partial
            registry=self.registry,
        )
        self.sync_items_total = Counter(
            "migrator_sync_items_total",
            "Sync queue item outcomes",
            ["outcome"],  # succeeded, retried, failed
            registry=self.registry,
        )
        self.sync_queue_size = Gauge(
            "migrator_sync_queue_size",
            "Items waiting in the hybrid sync queue",
            registry=self.registry,
        )
        self.validation_score = Gauge(
            "migrator_validation_score",
            "Quality score of the most recently validated dataset",
            registry=self.registry,
        )
        self.progress_percent = Gauge(
            "migrator_progress_percent",
            "Progress of the current migration run",
            registry=self.registry,
        )
        self.step_duration_seconds = Histogram(
            "migrator_step_duration_seconds",
            "Duration of migration steps in seconds",
            ["step"],
            buckets=[0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 300.0],
            registry=self.registry,
        )

    def record_run(self, strategy: str, status: str) -> None:
        self.runs_total.labels(strategy=strategy, status=status).inc()

    def record_user(self, outcome: str) -> None:
        self.users_total.labels(outcome=outcome).inc()

    def record_backup(self, kind: str) -> None:
        self.backups_total.labels(kind=kind).inc()

    def record_rollback(self, kind: str, outcome: str) -> None:
        self.rollbacks_total.labels(kind=kind, outcome=outcome).inc()

    def record_sync_item(self, outcome: str) -> None:
        self.sync_items_total.labels(outcome=outcome).inc()

    def set_sync_queue_size(self, size: int) -> None:
        self.sync_queue_size.set(size)

    def set_validation_score(self, score: int) -> None:
        self.validation_score.set(score)

    def set_progress(self, percent: float) -> None:
        self.progress_percent.set(percent)

    def observe_step(self, step: str, seconds: float) -> None:
        self.step_duration_seconds.labels(step=step).observe(seconds)

    def get_metrics(self) -> bytes:
        """Get metrics in Prometheus text format."""
        return generate_latest(self.registry)

    def start_metrics_server(self, port: int = 8000) -> None:
        """Expose metrics over HTTP.

        Args:
            port: Port to listen on
        """
        start_http_server(port, registry=self.registry)
        self.logger.info("Metrics server started", port=port)
