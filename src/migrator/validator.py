"""Multi-pass dataset validation with quality scoring."""

import json
import re
import time
from datetime import date, datetime, timedelta, timezone
from typing import Any, Optional, Union

import structlog

from migrator.models import COMPATIBLE_DATA_VERSIONS, EntityType, ExportDataset, parse_timestamp
from utils.logging import get_logger

_ISO8601_RE = re.compile(
    r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}(:\d{2}(\.\d{1,6})?)?(Z|[+-]\d{2}:?\d{2})?$"
)
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_TIME_RE = re.compile(r"^([0-1]?[0-9]|2[0-3]):[0-5][0-9]$")
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

SESSION_STATUSES = ("scheduled", "active", "completed", "stopped", "paused")
MEETING_STATUSES = ("scheduled", "in_progress", "completed", "cancelled", "postponed")

# Field constraints per entity type
SCHEMAS: dict[EntityType, dict[str, Any]] = {
    EntityType.USER: {
        "required": ("id", "email"),
        "fields": {
            "id": {"type": "string", "min_length": 1, "max_length": 50},
            "email": {"type": "string", "format": "email", "max_length": 255},
            "displayName": {"type": "string", "max_length": 100},
            "password": {"type": "string", "min_length": 4},
            "createdAt": {"type": "string", "format": "iso8601"},
            "lastLogin": {"type": "string", "format": "iso8601", "allow_null": True},
        },
    },
    EntityType.SESSION: {
        "required": ("id", "duration", "startTime"),
        "fields": {
            "id": {"type": "string", "min_length": 1},
            "title": {"type": "string", "max_length": 255},
            "duration": {"type": "number", "min": 1, "max": 240},
            "startTime": {"type": "string", "format": "iso8601"},
            "endTime": {"type": "string", "format": "iso8601"},
            "completedAt": {"type": "string", "format": "iso8601", "allow_null": True},
            "stoppedAt": {"type": "string", "format": "iso8601", "allow_null": True},
            "status": {"type": "string", "enum": SESSION_STATUSES},
            "tags": {"type": "string", "max_length": 500},
            "location": {"type": "string", "max_length": 100},
        },
    },
    EntityType.MEETING: {
        "required": ("title", "date", "time"),
        "fields": {
            "title": {"type": "string", "min_length": 1, "max_length": 255},
            "date": {"type": "string", "format": "date"},
            "time": {"type": "string", "format": "time"},
            "duration": {"type": "number", "min": 1, "max": 1440},
            "status": {"type": "string", "enum": MEETING_STATUSES},
            "location": {"type": "string", "max_length": 255},
        },
    },
    EntityType.STATS: {
        "required": ("userId",),
        "fields": {
            "userId": {"type": "string", "min_length": 1},
            "totalSessions": {"type": "integer", "min": 0},
            "completedSessions": {"type": "integer", "min": 0},
            "totalMinutes": {"type": "number", "min": 0},
            "completedMinutes": {"type": "number", "min": 0},
            "streakDays": {"type": "integer", "min": 0},
            "longestStreak": {"type": "integer", "min": 0},
            "completionRate": {"type": "number", "min": 0, "max": 100},
            "lastSessionDate": {"type": "string", "format": "date", "allow_null": True},
        },
    },
}

REQUIRED_TOP_LEVEL = ("timestamp", "version", "users", "sessions", "stats", "meetings")
OBJECT_SECTIONS = ("users", "sessions", "stats", "meetings", "metadata")

STRUCTURE_PENALTY = 30
INTEGRITY_PENALTY = 5
MEETING_MAX_AGE = timedelta(days=730)

PRIORITY_ORDER = {"critical": 0, "high": 1, "medium": 2, "low": 3, "info": 4}


def _check_format(fmt: str, value: str) -> bool:
    if fmt == "iso8601":
        return bool(_ISO8601_RE.match(value)) and parse_timestamp(value) is not None
    if fmt == "date":
        if not _DATE_RE.match(value):
            return False
        try:
            date.fromisoformat(value)
        except ValueError:
            return False
        return True
    if fmt == "time":
        return bool(_TIME_RE.match(value))
    if fmt == "email":
        return bool(_EMAIL_RE.match(value))
    raise ValueError(f"Unknown format: {fmt}")


def _check_type(expected: str, value: Any) -> bool:
    if expected == "string":
        return isinstance(value, str)
    if expected == "integer":
        return isinstance(value, int) and not isinstance(value, bool)
    if expected == "number":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if expected == "boolean":
        return isinstance(value, bool)
    raise ValueError(f"Unknown type: {expected}")


def check_field(name: str, value: Any, rule: dict[str, Any]) -> Optional[str]:
    """Check one field value against its constraint.

    Returns:
        Error message, or None when the value satisfies the rule
    """
    if value is None:
        return None if rule.get("allow_null") else f"{name} must not be null"
    if not _check_type(rule["type"], value):
        return f"{name} must be of type {rule['type']}"

    if isinstance(value, str):
        if "min_length" in rule and len(value) < rule["min_length"]:
            return f"{name} must be at least {rule['min_length']} characters"
        if "max_length" in rule and len(value) > rule["max_length"]:
            return f"{name} must be at most {rule['max_length']} characters"
        if "format" in rule and not _check_format(rule["format"], value):
            return f"{name} has invalid {rule['format']} format"
    else:
        if "min" in rule and value < rule["min"]:
            return f"{name} must be >= {rule['min']}"
        if "max" in rule and value > rule["max"]:
            return f"{name} must be <= {rule['max']}"

    if "enum" in rule and value not in rule["enum"]:
        return f"{name} must be one of {', '.join(rule['enum'])}"
    return None


class ValidationResult:
    """Outcome of validating one dataset."""

    def __init__(
        self,
        is_valid: bool,
        score: int,
        summary: dict[str, int],
        results: dict[str, Any],
        errors: list[dict[str, Any]],
        warnings: list[dict[str, Any]],
        recommendations: list[dict[str, Any]],
        performance: Optional[dict[str, float]] = None,
    ) -> None:
        """Initialize validation result.

        Args:
            is_valid: Whether the dataset may be migrated
            score: Quality score, 0-100
            summary: Per-entity totals and valid/invalid counts
            results: Per-pass details (structure, per-record results, business rules, integrity)
            errors: Categorized errors
            warnings: Categorized warnings
            recommendations: Ranked recommendations
            performance: Seconds spent per pass
        """
        self.is_valid = is_valid
        self.score = score
        self.summary = summary
        self.results = results
        self.errors = errors
        self.warnings = warnings
        self.recommendations = recommendations
        self.performance = performance or {}

    @property
    def integrity_errors(self) -> list[dict[str, Any]]:
        return [i for i in self.results.get("integrity", []) if i["severity"] == "error"]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "is_valid": self.is_valid,
            "score": self.score,
            "summary": self.summary,
            "results": self.results,
            "errors": self.errors,
            "warnings": self.warnings,
            "recommendations": self.recommendations,
            "performance": self.performance,
        }

    def to_string(self) -> str:
        """Generate human-readable report."""
        status = "VALID" if self.is_valid else "INVALID"
        lines = [f"Validation Report: {status} (score {self.score}/100)", "=" * 60]
        for entity in ("users", "sessions", "meetings", "stats"):
            total = self.summary.get(f"total_{entity}", 0)
            valid = self.summary.get(f"valid_{entity}", 0)
            lines.append(f"  {entity}: {valid}/{total} valid")

        if self.errors:
            lines.append(f"\nErrors ({len(self.errors)}, first 10):")
            for error in self.errors[:10]:
                lines.append(f"  [{error['category']}] {error['message']}")
        if self.warnings:
            lines.append(f"\nWarnings ({len(self.warnings)}, first 10):")
            for warning in self.warnings[:10]:
                lines.append(f"  [{warning['category']}] {warning['message']}")
        if self.recommendations:
            lines.append("\nRecommendations:")
            for rec in self.recommendations:
                lines.append(f"  [{rec['priority']}] {rec['message']}")
        return "\n".join(lines)


class DatasetValidator:
    """Validates export datasets in five passes.

    1. structure, 2. per-record schema, 3. business rules, 4. referential
    integrity, 5. scoring and recommendations. Records are processed in
    batches; once an entity type accumulates ``max_errors`` invalid records
    its remaining records are skipped.
    """

    def __init__(
        self,
        batch_size: int = 100,
        max_errors: int = 1000,
        large_dataset_bytes: int = 5 * 1024 * 1024,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize validator.

        Args:
            batch_size: Records validated per batch
            max_errors: Invalid records per entity type before validation of that type stops
            large_dataset_bytes: Dataset size above which batching is recommended
            logger: Optional logger instance
        """
        self.batch_size = batch_size
        self.max_errors = max_errors
        self.large_dataset_bytes = large_dataset_bytes
        self.logger = logger or get_logger("validator")

    # Per-record checks

    def _schema_errors(self, entity: EntityType, record: Any) -> list[str]:
        if not isinstance(record, dict):
            return [f"{entity} record must be an object"]
        schema = SCHEMAS[entity]
        errors = [
            f"Missing required field: {name}"
            for name in schema["required"]
            if record.get(name) in (None, "")
        ]
        for name, rule in schema["fields"].items():
            if name in schema["required"] and record.get(name) in (None, ""):
                continue
            if name not in record:
                continue
            message = check_field(name, record[name], rule)
            if message:
                errors.append(message)
        return errors

    @staticmethod
    def _record_result(
        entity: EntityType,
        record_id: Optional[str],
        owner_id: Optional[str],
        errors: list[str],
        rule_issues: list[dict[str, Any]],
    ) -> dict[str, Any]:
        rule_errors = [i for i in rule_issues if i["severity"] == "error"]
        return {
            "entity": str(entity),
            "id": record_id,
            "owner_id": owner_id,
            "valid": not errors and not rule_errors,
            "errors": errors + [i["message"] for i in rule_errors],
            "rules": rule_issues,
        }

    def validate_user(
        self,
        user_id: str,
        user: Any,
        seen_emails: Optional[dict[str, str]] = None,
        seen_ids: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        """Validate one user profile.

        Args:
            user_id: Key of the profile in the user index
            user: Profile record
            seen_emails: Lower-cased emails already claimed, mapped to their user key
            seen_ids: Profile ids already claimed, mapped to their user key

        Returns:
            Record result with 'valid', 'errors' and triggered 'rules'
        """
        errors = self._schema_errors(EntityType.USER, user)
        rules: list[dict[str, Any]] = []
        if isinstance(user, dict):
            email = user.get("email")
            if seen_emails is not None and isinstance(email, str) and email:
                owner = seen_emails.setdefault(email.lower(), user_id)
                if owner != user_id:
                    rules.append(
                        {
                            "rule": "unique_email",
                            "severity": "error",
                            "message": f"Email {email} is already used by user {owner}",
                        }
                    )
            profile_id = user.get("id")
            if seen_ids is not None and isinstance(profile_id, str) and profile_id:
                owner = seen_ids.setdefault(profile_id, user_id)
                if owner != user_id:
                    rules.append(
                        {
                            "rule": "unique_id",
                            "severity": "error",
                            "message": f"User id {profile_id} is already used by user {owner}",
                        }
                    )
        return self._record_result(EntityType.USER, user_id, user_id, errors, rules)

    def validate_session(self, owner_id: str, session: Any) -> dict[str, Any]:
        """Validate one pomodoro session."""
        errors = self._schema_errors(EntityType.SESSION, session)
        rules: list[dict[str, Any]] = []
        record_id = None
        if isinstance(session, dict):
            record_id = session.get("id")
            start = parse_timestamp(session.get("startTime"))
            end = parse_timestamp(session.get("endTime"))
            if start and end and end <= start:
                rules.append(
                    {
                        "rule": "valid_time_range",
                        "severity": "error",
                        "message": f"Session {record_id}: endTime must be after startTime",
                    }
                )
            status = session.get("status")
            if status == "completed" and not session.get("completedAt"):
                rules.append(
                    {
                        "rule": "consistent_completion",
                        "severity": "error",
                        "message": f"Session {record_id}: completed session has no completedAt",
                    }
                )
            if status == "stopped" and not session.get("stoppedAt"):
                rules.append(
                    {
                        "rule": "consistent_completion",
                        "severity": "error",
                        "message": f"Session {record_id}: stopped session has no stoppedAt",
                    }
                )
        return self._record_result(EntityType.SESSION, record_id, owner_id, errors, rules)

    def validate_meeting(self, owner_id: str, meeting: Any) -> dict[str, Any]:
        """Validate one meeting. Meetings older than two years only warn."""
        errors = self._schema_errors(EntityType.MEETING, meeting)
        rules: list[dict[str, Any]] = []
        record_id = None
        if isinstance(meeting, dict):
            record_id = meeting.get("id")
            raw_date = meeting.get("date")
            if isinstance(raw_date, str) and _DATE_RE.match(raw_date):
                try:
                    meeting_date = date.fromisoformat(raw_date)
                except ValueError:
                    meeting_date = None
                cutoff = (datetime.now(timezone.utc) - MEETING_MAX_AGE).date()
                if meeting_date and meeting_date < cutoff:
                    rules.append(
                        {
                            "rule": "future_or_recent_date",
                            "severity": "warning",
                            "message": f"Meeting {record_id} is more than two years old",
                        }
                    )
        return self._record_result(EntityType.MEETING, record_id, owner_id, errors, rules)

    def validate_stats(self, owner_id: str, stats: Any) -> dict[str, Any]:
        """Validate one statistics record."""
        errors = self._schema_errors(EntityType.STATS, stats)
        rules: list[dict[str, Any]] = []
        if isinstance(stats, dict):

            def counter(name: str) -> Union[int, float]:
                value = stats.get(name)
                if isinstance(value, bool) or not isinstance(value, (int, float)):
                    return 0
                return value

            if counter("completedSessions") > counter("totalSessions"):
                rules.append(
                    {
                        "rule": "logical_counters",
                        "severity": "error",
                        "message": f"Stats of {owner_id}: completedSessions exceeds totalSessions",
                    }
                )
            if counter("completedMinutes") > counter("totalMinutes"):
                rules.append(
                    {
                        "rule": "logical_counters",
                        "severity": "error",
                        "message": f"Stats of {owner_id}: completedMinutes exceeds totalMinutes",
                    }
                )
            if counter("longestStreak") < counter("streakDays"):
                rules.append(
                    {
                        "rule": "streak_consistency",
                        "severity": "error",
                        "message": f"Stats of {owner_id}: longestStreak is below streakDays",
                    }
                )
        return self._record_result(EntityType.STATS, owner_id, owner_id, errors, rules)

    # Passes

    def validate_structure(self, data: dict[str, Any]) -> dict[str, Any]:
        """Check required top-level fields and section types."""
        errors: list[str] = []
        warnings: list[str] = []
        for name in REQUIRED_TOP_LEVEL:
            if name not in data:
                errors.append(f"Missing required field: {name}")
        for name in OBJECT_SECTIONS:
            if name in data and not isinstance(data[name], dict):
                errors.append(f"Field {name} must be an object")
        version = data.get("version")
        if version is not None and version not in COMPATIBLE_DATA_VERSIONS:
            warnings.append(f"Data version {version} may not be compatible")
        return {"valid": not errors, "errors": errors, "warnings": warnings}

    def _run_batches(
        self,
        entity: EntityType,
        items: list[tuple[str, Any]],
        check: Any,
        warnings: list[dict[str, Any]],
    ) -> tuple[list[dict[str, Any]], int]:
        """Validate (owner_id, record) pairs in batches, honouring max_errors.

        Returns:
            Tuple of (record results, number of records skipped)
        """
        results: list[dict[str, Any]] = []
        invalid = 0
        for start in range(0, len(items), self.batch_size):
            for owner_id, record in items[start : start + self.batch_size]:
                result = check(owner_id, record)
                results.append(result)
                if not result["valid"]:
                    invalid += 1
                if invalid >= self.max_errors:
                    skipped = len(items) - len(results)
                    if skipped:
                        warnings.append(
                            {
                                "category": "schema",
                                "entity": str(entity),
                                "message": (
                                    f"Stopped validating {entity} records after {invalid} "
                                    f"errors; {skipped} records skipped"
                                ),
                            }
                        )
                        self.logger.warning(
                            "Max errors reached, skipping remaining records",
                            entity=str(entity),
                            skipped=skipped,
                        )
                    return results, skipped
        return results, 0

    def check_integrity(self, data: dict[str, Any]) -> list[dict[str, Any]]:
        """Referential checks: orphans are errors, count drift is a warning."""
        users = data.get("users") or {}
        issues: list[dict[str, Any]] = []
        for section, issue_type in (
            ("sessions", "orphaned_sessions"),
            ("stats", "orphaned_stats"),
            ("meetings", "orphaned_meetings"),
        ):
            for owner_id, value in (data.get(section) or {}).items():
                if owner_id in users:
                    continue
                count = len(value) if isinstance(value, list) else 1
                issues.append(
                    {
                        "type": issue_type,
                        "severity": "error",
                        "owner_id": owner_id,
                        "count": count,
                        "message": f"{count} {section} record(s) reference missing user {owner_id}",
                    }
                )

        for owner_id, stats in (data.get("stats") or {}).items():
            if owner_id not in users or not isinstance(stats, dict):
                continue
            if stats.get("userId") not in (None, owner_id):
                issues.append(
                    {
                        "type": "stats_owner_mismatch",
                        "severity": "warning",
                        "owner_id": owner_id,
                        "message": f"Stats stored for {owner_id} name user {stats.get('userId')}",
                    }
                )
            sessions = (data.get("sessions") or {}).get(owner_id, [])
            total = stats.get("totalSessions")
            if isinstance(total, int) and isinstance(sessions, list) and total != len(sessions):
                issues.append(
                    {
                        "type": "inconsistent_session_count",
                        "severity": "warning",
                        "owner_id": owner_id,
                        "message": (
                            f"Stats of {owner_id} report {total} sessions, "
                            f"found {len(sessions)}"
                        ),
                    }
                )
        return issues

    def validate_dataset(
        self,
        dataset: Union[ExportDataset, dict[str, Any]],
    ) -> ValidationResult:
        """Validate a dataset.

        Args:
            dataset: ExportDataset or its dictionary form

        Returns:
            ValidationResult
        """
        data = dataset.to_dict() if isinstance(dataset, ExportDataset) else dataset
        timings: dict[str, float] = {}
        errors: list[dict[str, Any]] = []
        warnings: list[dict[str, Any]] = []
        results: dict[str, Any] = {"business_rules": []}

        started = time.perf_counter()
        structure = self.validate_structure(data if isinstance(data, dict) else {})
        results["structure"] = structure
        errors.extend({"category": "structure", "message": m} for m in structure["errors"])
        warnings.extend({"category": "structure", "message": m} for m in structure["warnings"])
        timings["structure"] = time.perf_counter() - started

        def section(name: str) -> dict[str, Any]:
            value = data.get(name) if isinstance(data, dict) else None
            return value if isinstance(value, dict) else {}

        users, sessions, stats, meetings = (
            section("users"),
            section("sessions"),
            section("stats"),
            section("meetings"),
        )

        started = time.perf_counter()
        seen_emails: dict[str, str] = {}
        seen_ids: dict[str, str] = {}
        plans: list[tuple[str, EntityType, list[tuple[str, Any]], Any]] = [
            (
                "users",
                EntityType.USER,
                list(users.items()),
                lambda uid, user: self.validate_user(uid, user, seen_emails, seen_ids),
            ),
            (
                "sessions",
                EntityType.SESSION,
                [
                    (owner, record)
                    for owner, records in sessions.items()
                    for record in (records if isinstance(records, list) else [records])
                ],
                self.validate_session,
            ),
            (
                "meetings",
                EntityType.MEETING,
                [
                    (owner, record)
                    for owner, records in meetings.items()
                    for record in (records if isinstance(records, list) else [records])
                ],
                self.validate_meeting,
            ),
            ("stats", EntityType.STATS, list(stats.items()), self.validate_stats),
        ]

        summary: dict[str, int] = {}
        for name, entity, items, check in plans:
            record_results, skipped = self._run_batches(entity, items, check, warnings)
            valid = sum(1 for r in record_results if r["valid"])
            summary[f"total_{name}"] = len(items)
            summary[f"valid_{name}"] = valid
            summary[f"invalid_{name}"] = len(record_results) - valid
            summary[f"skipped_{name}"] = skipped
            results[name] = record_results

            for result in record_results:
                for rule in result["rules"]:
                    results["business_rules"].append(
                        {
                            "entity": str(entity),
                            "id": result["id"],
                            "owner_id": result["owner_id"],
                            **rule,
                        }
                    )
                    if rule["severity"] == "warning":
                        warnings.append(
                            {
                                "category": "business_rule",
                                "entity": str(entity),
                                "message": rule["message"],
                            }
                        )
                if not result["valid"]:
                    for message in result["errors"]:
                        errors.append(
                            {
                                "category": "schema",
                                "entity": str(entity),
                                "id": result["id"],
                                "owner_id": result["owner_id"],
                                "message": message,
                            }
                        )
        timings["records"] = time.perf_counter() - started

        started = time.perf_counter()
        integrity = self.check_integrity(
            {"users": users, "sessions": sessions, "stats": stats, "meetings": meetings}
        )
        results["integrity"] = integrity
        for issue in integrity:
            target = errors if issue["severity"] == "error" else warnings
            target.append(
                {"category": "integrity", "type": issue["type"], "message": issue["message"]}
            )
        timings["integrity"] = time.perf_counter() - started

        integrity_errors = sum(1 for i in integrity if i["severity"] == "error")
        user_rule_errors = any(
            r["severity"] == "error"
            for r in results["business_rules"]
            if r["entity"] == EntityType.USER
        )
        is_valid = (
            structure["valid"]
            and summary["invalid_users"] == 0
            and summary["skipped_users"] == 0
            and not user_rule_errors
            and integrity_errors == 0
        )

        score = self.calculate_score(structure["valid"], summary, integrity_errors)
        data_size = self._dataset_size(data)
        recommendations = self.build_recommendations(
            score=score,
            structure_valid=structure["valid"],
            integrity_errors=integrity_errors,
            data_size=data_size,
        )
        timings["total"] = sum(timings.values())

        self.logger.info(
            "Dataset validation completed",
            is_valid=is_valid,
            score=score,
            errors=len(errors),
            warnings=len(warnings),
        )

        return ValidationResult(
            is_valid=is_valid,
            score=score,
            summary=summary,
            results=results,
            errors=errors,
            warnings=warnings,
            recommendations=recommendations,
            performance=timings,
        )

    # Scoring

    @staticmethod
    def calculate_score(
        structure_valid: bool,
        summary: dict[str, int],
        integrity_errors: int,
    ) -> int:
        """Quality score in [0, 100].

        Starts at 100, loses a fixed penalty for structural failure, is capped by
        the percentage of valid records, then loses a fixed penalty per
        integrity error.
        """
        score = 100.0
        if not structure_valid:
            score -= STRUCTURE_PENALTY

        entities = ("users", "sessions", "meetings", "stats")
        total = sum(summary.get(f"total_{name}", 0) for name in entities)
        valid = sum(summary.get(f"valid_{name}", 0) for name in entities)
        if total > 0:
            score = min(score, valid / total * 100)

        score -= INTEGRITY_PENALTY * integrity_errors
        return int(round(max(0.0, min(100.0, score))))

    def build_recommendations(
        self,
        score: int,
        structure_valid: bool,
        integrity_errors: int,
        data_size: int,
    ) -> list[dict[str, Any]]:
        """Ranked recommendations, most urgent first."""
        recs: list[dict[str, Any]] = []
        if not structure_valid:
            recs.append(
                {
                    "priority": "critical",
                    "type": "structure",
                    "message": "Dataset structure is invalid; re-export the data before migrating",
                }
            )
        if score < 50:
            recs.append(
                {
                    "priority": "critical",
                    "type": "data_quality",
                    "message": (
                        f"Data quality is critically low (score {score}); "
                        "stop and repair the data"
                    ),
                }
            )
        elif score < 80:
            recs.append(
                {
                    "priority": "high",
                    "type": "data_quality",
                    "message": (
                        f"Data quality issues found (score {score}); "
                        "review errors before migrating"
                    ),
                }
            )
        if data_size > self.large_dataset_bytes:
            recs.append(
                {
                    "priority": "medium",
                    "type": "batching",
                    "message": "Large dataset detected; migrate in smaller batches",
                }
            )
        if structure_valid and integrity_errors == 0:
            recs.append(
                {
                    "priority": "info",
                    "type": "ready",
                    "message": "Dataset is ready for migration",
                }
            )
        return sorted(recs, key=lambda r: PRIORITY_ORDER[r["priority"]])

    @staticmethod
    def _dataset_size(data: Any) -> int:
        """Size recorded at extraction time, else the length of the JSON form."""
        metadata = data.get("metadata") if isinstance(data, dict) else None
        if isinstance(metadata, dict):
            size = (metadata.get("statistics") or {}).get("data_size")
            if isinstance(size, int):
                return size
        try:
            return len(json.dumps(data, default=str))
        except (TypeError, ValueError):
            return 0
