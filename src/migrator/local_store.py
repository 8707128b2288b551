"""Local key-value store access and the per-user key scheme."""

import json
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

import structlog

from migrator.exceptions import StoreError
from utils.logging import get_logger

USERS_KEY = "registeredUsers"
CURRENT_USER_KEY = "currentUser"
USER_SESSIONS_KEY = "userSessions"

# Per-user sections, keyed "<prefix><user_id>"
SECTION_PREFIXES: dict[str, str] = {
    "sessions": "pomodoroSessions_",
    "stats": "userStats_",
    "meetings": "meetings_",
    "active_session": "activePomodoroSession_",
}

MIGRATION_STATUS_KEY = "pomodoroMigrationStatus"
MIGRATION_LOG_KEY = "pomodoroMigrationLog"
RECOVERY_BACKUP_KEY = "pomodoroRecoveryBackup"
RECOVERY_METADATA_KEY = "pomodoroRecoveryMetadata"
RECOVERY_SNAPSHOTS_KEY = "pomodoroRecoverySnapshots"
USER_MIGRATION_STATUS_KEY = "userMigrationStatus"
HYBRID_STATUS_KEY = "hybridMigrationStatus"
SYNC_QUEUE_KEY = "hybridSyncQueue"
SYNC_FAILURES_KEY = "hybridSyncFailures"

ENGINE_STATE_KEYS = frozenset(
    {
        MIGRATION_STATUS_KEY,
        MIGRATION_LOG_KEY,
        RECOVERY_BACKUP_KEY,
        RECOVERY_METADATA_KEY,
        RECOVERY_SNAPSHOTS_KEY,
        USER_MIGRATION_STATUS_KEY,
        HYBRID_STATUS_KEY,
        SYNC_QUEUE_KEY,
        SYNC_FAILURES_KEY,
    }
)
APP_KEYS = frozenset({USERS_KEY, CURRENT_USER_KEY, USER_SESSIONS_KEY})


def section_key(section: str, user_id: str) -> str:
    """Build the store key of one user's section.

    Args:
        section: One of sessions, stats, meetings, active_session
        user_id: Local user id

    Raises:
        KeyError: If the section is unknown
    """
    return f"{SECTION_PREFIXES[section]}{user_id}"


def parse_section_key(key: str) -> Optional[tuple[str, str]]:
    """Split a per-user key into (section, user_id), or None for other keys."""
    for section, prefix in SECTION_PREFIXES.items():
        if key.startswith(prefix) and len(key) > len(prefix):
            return section, key[len(prefix) :]
    return None


def is_app_key(key: str) -> bool:
    """Whether a key belongs to the application namespace (data or engine state)."""
    return key in APP_KEYS or key in ENGINE_STATE_KEYS or parse_section_key(key) is not None


class LocalStore(ABC):
    """Single-namespace string key-value store (browser storage semantics)."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the raw value stored under key, or None."""

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store a raw string value."""

    @abstractmethod
    def remove(self, key: str) -> None:
        """Remove a key. Missing keys are ignored."""

    @abstractmethod
    def keys(self) -> list[str]:
        """Enumerate all keys."""

    def get_json(self, key: str, default: Any = None) -> Any:
        """Read a value, parsing JSON and falling back to the raw string.

        Args:
            key: Store key
            default: Returned when the key is absent

        Returns:
            Parsed document, raw string, or default
        """
        raw = self.get(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            return raw

    def set_json(self, key: str, value: Any) -> None:
        """Write a value; strings are stored raw, anything else as JSON."""
        if isinstance(value, str):
            self.set(key, value)
        else:
            self.set(key, json.dumps(value, default=str))

    def size_bytes(self, key: str) -> int:
        """Approximate storage footprint of one entry (UTF-16 code units, like browsers)."""
        raw = self.get(key) or ""
        return (len(key) + len(raw)) * 2

    def total_size_bytes(self) -> int:
        """Approximate footprint of the whole store."""
        return sum(self.size_bytes(key) for key in self.keys())


class MemoryLocalStore(LocalStore):
    """In-memory store."""

    def __init__(self, initial: Optional[dict[str, str]] = None) -> None:
        self._data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise StoreError("Local store values must be strings", context={"key": key})
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data.keys())

    def dump(self) -> dict[str, str]:
        """Return a copy of the raw contents."""
        return dict(self._data)


class FileLocalStore(LocalStore):
    """Store persisted as one JSON object on disk, rewritten atomically on change."""

    def __init__(
        self,
        path: Path,
        create_if_missing: bool = False,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize file-backed store.

        Args:
            path: JSON file path
            create_if_missing: Start empty instead of failing when the file is absent
            logger: Optional logger instance

        Raises:
            StoreError: If the file is missing (and not allowed to be) or unreadable
        """
        self.path = Path(path)
        self.logger = logger or get_logger("local_store")
        self._data: dict[str, str] = {}

        if not self.path.exists():
            if not create_if_missing:
                raise StoreError(
                    f"Local store file not found: {self.path}",
                    context={"path": str(self.path)},
                )
            self.logger.info("Creating empty local store", path=str(self.path))
            return

        try:
            loaded = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except (OSError, json.JSONDecodeError) as e:
            raise StoreError(
                f"Failed to read local store: {e}",
                context={"path": str(self.path)},
            ) from e

        if not isinstance(loaded, dict):
            raise StoreError(
                "Local store file must contain a JSON object",
                context={"path": str(self.path)},
            )

        # Non-string values are normalized to their JSON text
        self._data = {
            str(k): v if isinstance(v, str) else json.dumps(v) for k, v in loaded.items()
        }
        self.logger.debug("Local store loaded", path=str(self.path), keys=len(self._data))

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise StoreError("Local store values must be strings", context={"key": key})
        self._data[key] = value
        self._flush()

    def remove(self, key: str) -> None:
        if key in self._data:
            del self._data[key]
            self._flush()

    def keys(self) -> list[str]:
        return list(self._data.keys())

    def _flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self._data, f, indent=2)
            os.replace(tmp_name, self.path)
        except OSError as e:
            raise StoreError(
                f"Failed to write local store: {e}",
                context={"path": str(self.path)},
            ) from e
