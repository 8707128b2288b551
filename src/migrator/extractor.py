"""Reads and normalizes application records from the local key-value store."""

from datetime import datetime, timezone
from typing import Any, Optional

import structlog

from migrator.exceptions import StoreError
from migrator.local_store import (
    APP_KEYS,
    CURRENT_USER_KEY,
    ENGINE_STATE_KEYS,
    USER_SESSIONS_KEY,
    USERS_KEY,
    LocalStore,
    parse_section_key,
    section_key,
)
from migrator.models import DATA_VERSION, ExportDataset, parse_timestamp
from utils.logging import get_logger

# Sections stored as JSON arrays; the rest are objects
LIST_SECTIONS = ("sessions", "meetings")
PROFILE_FIELDS = ("id", "email", "displayName")


class Extractor:
    """Builds export datasets and diagnostics from the local store."""

    def __init__(
        self,
        store: LocalStore,
        large_dataset_bytes: int = 5 * 1024 * 1024,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize extractor.

        Args:
            store: Local key-value store to read
            large_dataset_bytes: Size above which batching is recommended
            logger: Optional logger instance
        """
        self.store = store
        self.large_dataset_bytes = large_dataset_bytes
        self.logger = logger or get_logger("extractor")

    def _read(self, key: str, warnings: list[str]) -> Any:
        """Read one key, turning store failures into a recorded warning."""
        try:
            return self.store.get_json(key)
        except StoreError as e:
            warnings.append(f"Unreadable key {key}: {e.message}")
            self.logger.warning("Skipping unreadable key", key=key, error=str(e))
            return None

    def _read_users(self, warnings: list[str]) -> dict[str, dict[str, Any]]:
        users = self._read(USERS_KEY, warnings)
        if users is None:
            return {}
        if not isinstance(users, dict):
            warnings.append(f"User index {USERS_KEY} is not an object")
            self.logger.warning("User index is corrupt, treating as empty", key=USERS_KEY)
            return {}
        return users

    def scan(self) -> dict[str, Any]:
        """Classify store keys and collect statistics without building a dataset.

        Missing or corrupt keys are reported in ``health``; nothing here raises.

        Returns:
            Dictionary with 'keys', 'users', 'statistics' and 'health'
        """
        health: dict[str, list[str]] = {"corrupted_keys": [], "missing_data": [], "warnings": []}
        warnings = health["warnings"]
        keys: dict[str, dict[str, Any]] = {}
        users_info: dict[str, dict[str, Any]] = {}
        stats = {
            "total_keys": 0,
            "app_keys": 0,
            "total_users": 0,
            "total_sessions": 0,
            "total_meetings": 0,
            "total_stats": 0,
            "active_sessions": 0,
            "storage_bytes": 0,
        }

        all_keys = self.store.keys()
        stats["total_keys"] = len(all_keys)

        if USERS_KEY not in all_keys:
            health["missing_data"].append(USERS_KEY)
        users = self._read_users(warnings)
        if USERS_KEY in all_keys and not users and self.store.get(USERS_KEY) not in (None, "{}"):
            health["corrupted_keys"].append(USERS_KEY)

        for user_id, profile in users.items():
            info = {"sections": [], "incomplete": False}
            if not isinstance(profile, dict):
                health["corrupted_keys"].append(f"{USERS_KEY}[{user_id}]")
                info["incomplete"] = True
            else:
                for required in ("id", "email"):
                    if not profile.get(required):
                        health["missing_data"].append(f"{USERS_KEY}[{user_id}].{required}")
                        info["incomplete"] = True
            users_info[user_id] = info
        stats["total_users"] = len(users)

        for key in all_keys:
            parsed = parse_section_key(key)
            if key in APP_KEYS:
                kind = "system" if key != USERS_KEY else "index"
            elif key in ENGINE_STATE_KEYS:
                kind = "engine"
            elif parsed is not None:
                kind = parsed[0]
            else:
                kind = "foreign"

            size = self.store.size_bytes(key)
            keys[key] = {"kind": kind, "size_bytes": size}
            if kind == "foreign":
                continue

            stats["app_keys"] += 1
            stats["storage_bytes"] += size
            if parsed is None:
                continue

            section, owner = parsed
            value = self._read(key, warnings)
            if owner not in users:
                warnings.append(f"Orphaned key {key}: user {owner} is not registered")
            else:
                users_info[owner]["sections"].append(section)

            if section in LIST_SECTIONS:
                if not isinstance(value, list):
                    health["corrupted_keys"].append(key)
                    continue
                stats["total_sessions" if section == "sessions" else "total_meetings"] += len(value)
            elif section == "stats":
                if not isinstance(value, dict):
                    health["corrupted_keys"].append(key)
                    continue
                stats["total_stats"] += 1
            elif value:
                stats["active_sessions"] += 1

        self.logger.info(
            "Store scan completed",
            users=stats["total_users"],
            sessions=stats["total_sessions"],
            corrupted=len(health["corrupted_keys"]),
        )

        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "keys": keys,
            "users": users_info,
            "statistics": stats,
            "health": health,
        }

    def read_namespace(self) -> dict[str, Any]:
        """Read every application section of every registered user.

        Unreadable entries are skipped and listed under 'warnings'.

        Returns:
            Dictionary with 'users', 'sessions', 'stats', 'meetings',
            'active_sessions', 'system' and 'warnings'
        """
        warnings: list[str] = []
        users = self._read_users(warnings)
        namespace: dict[str, Any] = {
            "users": users,
            "sessions": {},
            "stats": {},
            "meetings": {},
            "active_sessions": {},
            "system": {},
            "warnings": warnings,
        }

        for user_id in users:
            for section in ("sessions", "stats", "meetings", "active_session"):
                key = section_key(section, user_id)
                value = self._read(key, warnings)
                if value is None:
                    continue
                expected = list if section in LIST_SECTIONS else dict
                if not isinstance(value, expected):
                    warnings.append(f"Skipping {key}: expected {expected.__name__}")
                    self.logger.warning("Skipping malformed section", key=key, section=section)
                    continue
                target = "active_sessions" if section == "active_session" else section
                namespace[target][user_id] = value

        for name, key in (("current_user", CURRENT_USER_KEY), ("user_sessions", USER_SESSIONS_KEY)):
            value = self._read(key, warnings)
            if value is not None:
                namespace["system"][name] = value

        return namespace

    def extract_all(self) -> ExportDataset:
        """Build a complete export dataset.

        Returns:
            ExportDataset with extraction statistics in its metadata
        """
        started = datetime.now(timezone.utc)
        namespace = self.read_namespace()

        dataset = ExportDataset(
            users=namespace["users"],
            sessions=namespace["sessions"],
            stats=namespace["stats"],
            meetings=namespace["meetings"],
            source="localStorage",
            version=DATA_VERSION,
        )
        counts = dataset.counts()
        dataset.metadata = {
            "statistics": {
                "total_users": counts["users"],
                "total_sessions": counts["sessions"],
                "total_meetings": counts["meetings"],
                "total_stats": counts["stats"],
                "active_sessions_count": len(namespace["active_sessions"]),
                "data_size": self.calculate_storage_size(),
            },
            "system": {**namespace["system"], "active_sessions": namespace["active_sessions"]},
            "warnings": namespace["warnings"],
            "extraction_seconds": (datetime.now(timezone.utc) - started).total_seconds(),
        }

        self.logger.info(
            "Extraction completed",
            users=counts["users"],
            sessions=counts["sessions"],
            meetings=counts["meetings"],
            skipped=len(namespace["warnings"]),
        )
        return dataset

    def analyze(self, dataset: ExportDataset) -> dict[str, Any]:
        """Inspect a dataset for incomplete profiles and count drift.

        Drift between a user's stats and their session list is a warning only.

        Args:
            dataset: Dataset to inspect

        Returns:
            Dictionary with 'summary', 'users', 'issues' and 'recommendations'
        """
        issues: list[dict[str, Any]] = []
        per_user: dict[str, dict[str, Any]] = {}

        for user_id, profile in dataset.users.items():
            sessions = dataset.sessions.get(user_id, [])
            stats = dataset.stats.get(user_id)
            entry: dict[str, Any] = {
                "session_count": len(sessions),
                "meeting_count": len(dataset.meetings.get(user_id, [])),
                "has_stats": stats is not None,
                "date_range": self._session_date_range(sessions),
            }

            if not isinstance(profile, dict):
                issues.append(
                    {
                        "severity": "error",
                        "type": "invalid_profile",
                        "user_id": user_id,
                        "message": f"Profile of user {user_id} is not an object",
                    }
                )
            else:
                missing = [name for name in PROFILE_FIELDS if not profile.get(name)]
                entry["missing_fields"] = missing
                if missing:
                    issues.append(
                        {
                            "severity": "warning",
                            "type": "incomplete_profile",
                            "user_id": user_id,
                            "message": f"User {user_id} is missing {', '.join(missing)}",
                        }
                    )

            if isinstance(stats, dict) and "totalSessions" in stats:
                if stats.get("totalSessions") != len(sessions):
                    issues.append(
                        {
                            "severity": "warning",
                            "type": "session_count_mismatch",
                            "user_id": user_id,
                            "message": (
                                f"Stats report {stats.get('totalSessions')} sessions, "
                                f"found {len(sessions)}"
                            ),
                        }
                    )
            per_user[user_id] = entry

        data_size = int(dataset.metadata.get("statistics", {}).get("data_size", 0))
        recommendations: list[dict[str, Any]] = []
        if data_size > self.large_dataset_bytes:
            recommendations.append(
                {
                    "priority": "medium",
                    "type": "batching",
                    "message": "Large dataset detected, migrate in batches",
                }
            )
        if any(i["type"] in ("incomplete_profile", "invalid_profile") for i in issues):
            recommendations.append(
                {
                    "priority": "high",
                    "type": "data_quality",
                    "message": "Fix incomplete user profiles before migration",
                }
            )
        if not any(i["severity"] == "error" for i in issues):
            recommendations.append(
                {
                    "priority": "info",
                    "type": "ready",
                    "message": "Data structure is ready for migration",
                }
            )

        return {
            "summary": {**dataset.counts(), "data_size": data_size},
            "users": per_user,
            "issues": issues,
            "recommendations": recommendations,
        }

    def calculate_storage_size(self) -> int:
        """Approximate bytes used by application keys (engine state excluded)."""
        total = 0
        for key in self.store.keys():
            if key in APP_KEYS or parse_section_key(key) is not None:
                total += self.store.size_bytes(key)
        return total

    @staticmethod
    def _session_date_range(sessions: list[Any]) -> Optional[dict[str, str]]:
        starts = [
            parsed
            for parsed in (
                parse_timestamp(s.get("startTime")) for s in sessions if isinstance(s, dict)
            )
            if parsed is not None
        ]
        if not starts:
            return None
        return {"earliest": min(starts).isoformat(), "latest": max(starts).isoformat()}
