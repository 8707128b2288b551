"""Pre-flight health check of the data, the remote store and the backup system."""

from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

import structlog

from migrator.exceptions import MigratorError
from migrator.extractor import Extractor
from migrator.validator import PRIORITY_ORDER, DatasetValidator
from recovery.recovery_manager import RecoveryManager
from utils.logging import get_logger

HealthProgressCallback = Callable[[str, int], None]
ConnectionProbe = Callable[[], Awaitable[bool]]

# Validation score below which data quality is flagged
DATA_QUALITY_THRESHOLD = 80


class HealthReport:
    """Represents the outcome of a health check."""

    def __init__(
        self,
        overall: str,
        components: dict[str, dict[str, Any]],
        recommendations: list[dict[str, Any]],
        timestamp: Optional[datetime] = None,
    ) -> None:
        """Initialize health report.

        Args:
            overall: Overall status (healthy, issues, critical)
            components: Result of each checked component
            recommendations: Ranked recommendations, most urgent first
            timestamp: Timestamp of health check
        """
        self.overall = overall
        self.components = components
        self.recommendations = recommendations
        self.timestamp = timestamp or datetime.now(timezone.utc)

    @property
    def healthy(self) -> bool:
        return self.overall == "healthy"

    def to_dict(self) -> dict[str, Any]:
        return {
            "overall": self.overall,
            "healthy": self.healthy,
            "timestamp": self.timestamp.isoformat(),
            "components": self.components,
            "recommendations": self.recommendations,
        }


class HealthChecker:
    """Runs scan, extraction, validation, connectivity and backup checks in order."""

    def __init__(
        self,
        extractor: Extractor,
        validator: DatasetValidator,
        recovery: RecoveryManager,
        connection_probe: Optional[ConnectionProbe] = None,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize health checker.

        Args:
            extractor: Local store extractor
            validator: Dataset validator
            recovery: Recovery manager used for the backup self-test
            connection_probe: Coroutine returning whether the remote store answers
            logger: Optional logger instance
        """
        self.extractor = extractor
        self.validator = validator
        self.recovery = recovery
        self.connection_probe = connection_probe
        self.logger = logger or get_logger("health_check")

    async def check_health(
        self,
        progress_callback: Optional[HealthProgressCallback] = None,
    ) -> HealthReport:
        """Perform comprehensive health check.

        Args:
            progress_callback: Called with (step, percent) as the check advances

        Returns:
            HealthReport object
        """

        def progress(step: str, percent: int) -> None:
            if progress_callback:
                progress_callback(step, percent)

        components: dict[str, dict[str, Any]] = {}
        recommendations: list[dict[str, Any]] = []

        progress("scanning", 10)
        scan = self.extractor.scan()
        statistics = scan["statistics"]
        components["data_scanning"] = {
            "status": "healthy" if statistics["total_users"] > 0 else "no_data",
            "details": statistics,
            "health": scan["health"],
        }

        if statistics["total_users"] > 0:
            progress("extraction", 30)
            components.update(self._check_data(recommendations, progress))

        progress("connectivity", 70)
        components["connectivity"] = await self._check_connectivity()
        if components["connectivity"]["status"] != "healthy":
            recommendations.append(
                {
                    "priority": "high",
                    "type": "connectivity",
                    "message": (
                        "No connection to the remote store; "
                        "remote writes will be queued until it is restored"
                    ),
                }
            )

        progress("backup", 90)
        components["backup_system"] = self._check_backup_system()
        if components["backup_system"]["status"] != "healthy":
            recommendations.append(
                {
                    "priority": "high",
                    "type": "backup",
                    "message": (
                        "Backup system is not functioning; "
                        "migrating without a backup is risky"
                    ),
                }
            )

        statuses = {component["status"] for component in components.values()}
        if "error" in statuses:
            overall = "critical"
        elif statuses & {"issues_found", "offline"}:
            overall = "issues"
        else:
            overall = "healthy"

        progress("complete", 100)
        report = HealthReport(
            overall=overall,
            components=components,
            recommendations=sorted(
                recommendations, key=lambda r: PRIORITY_ORDER[r["priority"]]
            ),
        )
        self.logger.info(
            "Health check completed",
            overall=overall,
            recommendations=len(recommendations),
        )
        return report

    def _check_data(
        self,
        recommendations: list[dict[str, Any]],
        progress: HealthProgressCallback,
    ) -> dict[str, dict[str, Any]]:
        try:
            dataset = self.extractor.extract_all()
        except MigratorError as e:
            return {"data_extraction": {"status": "error", "error": e.message}}

        checks: dict[str, dict[str, Any]] = {
            "data_extraction": {
                "status": "healthy",
                "details": dataset.metadata.get("statistics", {}),
            }
        }

        progress("validation", 50)
        result = self.validator.validate_dataset(dataset)
        checks["data_validation"] = {
            "status": "healthy" if result.is_valid else "issues_found",
            "score": result.score,
            "details": {"errors": len(result.errors), "warnings": len(result.warnings)},
        }
        if result.score < DATA_QUALITY_THRESHOLD:
            recommendations.append(
                {
                    "priority": "medium",
                    "type": "data_quality",
                    "message": "Data quality issues detected; review them before migrating",
                }
            )
        return checks

    async def _check_connectivity(self) -> dict[str, Any]:
        if self.connection_probe is None:
            return {"status": "offline", "details": {"configured": False}}
        try:
            start_time = datetime.now(timezone.utc)
            connected = await self.connection_probe()
            duration = (datetime.now(timezone.utc) - start_time).total_seconds()
        except Exception as e:
            return {"status": "offline", "details": {"configured": True}, "error": str(e)}
        return {
            "status": "healthy" if connected else "offline",
            "details": {"configured": True, "connected": connected},
            "response_time_seconds": duration,
        }

    def _check_backup_system(self) -> dict[str, Any]:
        """Build and validate a snapshot without storing it."""
        try:
            snapshot = self.recovery.create_snapshot(
                "health_check", "Health check snapshot", persist=False
            )
            validation = self.recovery.validate_backup(snapshot)
        except MigratorError as e:
            return {"status": "error", "error": e.message}
        if not validation["valid"]:
            return {"status": "error", "error": "; ".join(validation["errors"])}
        return {"status": "healthy"}
