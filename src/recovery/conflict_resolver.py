"""Conflict resolution between local values and backup values."""

from enum import StrEnum
from typing import Any, Optional

import structlog

from migrator.exceptions import ConflictError
from migrator.models import Conflict, parse_timestamp
from utils.logging import get_logger


class ConflictStrategy(StrEnum):
    """How a rollback treats a key whose local value differs from the backup."""

    PRESERVE_LOCAL = "preserve-local"
    PREFER_BACKUP = "prefer-backup"
    MERGE = "merge"
    ASK_USER = "ask-user"


class ConflictReport:
    """Summary of the conflicts met during one restore."""

    def __init__(self, strategy: ConflictStrategy) -> None:
        self.strategy = strategy
        self.conflicts: list[Conflict] = []

    @property
    def total_conflicts(self) -> int:
        return len(self.conflicts)

    @property
    def has_conflicts(self) -> bool:
        return self.total_conflicts > 0

    def add(self, conflict: Conflict) -> None:
        self.conflicts.append(conflict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary (values omitted, keys only)."""
        return {
            "strategy": str(self.strategy),
            "total_conflicts": self.total_conflicts,
            "conflicts": [
                {"key": c.key, "resolution": c.resolution} for c in self.conflicts
            ],
        }

    def to_string(self) -> str:
        """Generate human-readable report."""
        lines = [
            f"Conflict Report: {self.total_conflicts} conflict(s), strategy {self.strategy}",
            "=" * 60,
        ]
        for i, conflict in enumerate(self.conflicts[:10], 1):
            lines.append(f"  {i}. {conflict.key}: {conflict.resolution}")
        if self.total_conflicts > 10:
            lines.append(f"\n... and {self.total_conflicts - 10} more conflicts")
        return "\n".join(lines)


class ConflictResolver:
    """Decides the value to keep when local data and backup data disagree."""

    def __init__(
        self,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        self.logger = logger or get_logger("conflict_resolver")

    @staticmethod
    def detect(key: str, local_value: Any, backup_value: Any) -> Optional[Conflict]:
        """Return a Conflict when a local value exists and differs from the backup."""
        if local_value is None or local_value == backup_value:
            return None
        return Conflict(key=key, local_value=local_value, backup_value=backup_value)

    def resolve(self, conflict: Conflict, strategy: ConflictStrategy) -> Any:
        """Resolve one conflict.

        Args:
            conflict: Conflict to resolve
            strategy: Resolution strategy

        Returns:
            Value that should be stored under the conflicting key

        Raises:
            ConflictError: For ask-user, which needs an interactive caller
        """
        strategy = ConflictStrategy(strategy)
        if strategy == ConflictStrategy.PRESERVE_LOCAL:
            resolved = conflict.local_value
        elif strategy == ConflictStrategy.PREFER_BACKUP:
            resolved = conflict.backup_value
        elif strategy == ConflictStrategy.MERGE:
            resolved = self.merge_values(conflict.local_value, conflict.backup_value)
        else:
            raise ConflictError(
                "Conflict requires user input but no interactive resolver is available",
                context={"key": conflict.key, "strategy": str(strategy)},
            )

        conflict.resolution = str(strategy)
        self.logger.debug("Conflict resolved", key=conflict.key, strategy=str(strategy))
        return resolved

    def merge_values(self, local: Any, backup: Any) -> Any:
        """Merge two values.

        Objects are unioned with local precedence, unless both carry
        ``updatedAt`` in which case the more recent side takes precedence.
        Lists of records are unioned by ``id``. Anything else keeps the local
        value.
        """
        if isinstance(local, dict) and isinstance(backup, dict):
            local_time = parse_timestamp(local.get("updatedAt"))
            backup_time = parse_timestamp(backup.get("updatedAt"))
            if local_time and backup_time and backup_time > local_time:
                return {**local, **backup}
            return {**backup, **local}

        if isinstance(local, list) and isinstance(backup, list):
            return self._merge_lists(local, backup)

        return local

    def _merge_lists(self, local: list[Any], backup: list[Any]) -> list[Any]:
        local_by_id = {
            item["id"]: item for item in local if isinstance(item, dict) and "id" in item
        }
        merged: list[Any] = []
        seen: set[Any] = set()
        for item in backup:
            item_id = item.get("id") if isinstance(item, dict) else None
            if item_id is not None and item_id in local_by_id:
                merged.append(self.merge_values(local_by_id[item_id], item))
                seen.add(item_id)
            elif item not in merged:
                merged.append(item)
        for item in local:
            item_id = item.get("id") if isinstance(item, dict) else None
            if item_id is not None:
                if item_id not in seen:
                    merged.append(item)
                    seen.add(item_id)
            elif item not in merged:
                merged.append(item)
        return merged
