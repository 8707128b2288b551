"""Remote PostgreSQL store access using asyncpg."""

import json
import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Callable, Optional

import asyncpg
from structlog import BoundLogger

from migrator.config import RemoteConfig
from migrator.exceptions import ConfigurationError, RemoteStoreError
from utils import safe_identifier
from utils.logging import get_logger
from utils.retry import RetryConfig, retry_async

# Tables that make up one user's remote footprint
MIGRATED_TABLES = (
    "users",
    "user_preferences",
    "user_stats",
    "pomodoro_sessions",
    "meetings",
    "auth_sessions",
)

ChangeCallback = Callable[[str, dict[str, Any]], Any]


def to_jsonable(value: Any) -> Any:
    """Convert asyncpg values (UUID, datetime, Decimal, ...) to JSON-friendly ones."""
    if isinstance(value, dict):
        return {k: to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    return value


class RemoteStore:
    """Client for the relational store that receives migrated data."""

    def __init__(
        self,
        config: RemoteConfig,
        logger: Optional[BoundLogger] = None,
    ) -> None:
        """Initialize remote store.

        Args:
            config: Remote database configuration
            logger: Optional logger instance
        """
        self.config = config
        self.logger = logger or get_logger("remote_store")
        self.pool: Optional[asyncpg.Pool] = None
        self._listener: Optional[asyncpg.Connection] = None
        self._subscriptions: dict[str, Callable[..., None]] = {}
        self._dsn: Optional[str] = None

    @property
    def dsn(self) -> str:
        """Get database connection DSN."""
        if self._dsn is None:
            try:
                password = self.config.get_password()
            except ValueError as e:
                raise ConfigurationError(str(e), context={"database": self.config.name}) from e
            self._dsn = (
                f"postgresql://{self.config.user}:{password}@"
                f"{self.config.host}:{self.config.port}/{self.config.name}"
            )
        return self._dsn

    @property
    def connected(self) -> bool:
        return self.pool is not None

    async def connect(self) -> None:
        """Create the connection pool, retrying with backoff.

        Raises:
            RemoteStoreError: If every attempt fails
        """
        dsn = self.dsn
        retry_config = RetryConfig(
            max_attempts=self.config.connect_attempts,
            initial_delay=1.0,
            max_delay=10.0,
            retryable_exceptions=(OSError, asyncpg.PostgresError),
        )
        try:
            self.pool = await retry_async(
                asyncpg.create_pool,
                dsn,
                min_size=1,
                max_size=self.config.pool_size,
                command_timeout=self.config.command_timeout,
                server_settings={"application_name": "pomodoro_migrator"},
                config=retry_config,
                logger=self.logger,
            )
        except Exception as e:
            raise RemoteStoreError(
                f"Failed to create connection pool: {e}",
                context={"database": self.config.name, "host": self.config.host},
            ) from e

        self.logger.debug(
            "Remote connection pool created",
            database=self.config.name,
            host=self.config.host,
            pool_size=self.config.pool_size,
        )

    async def disconnect(self) -> None:
        """Close listener connection and pool."""
        if self._listener is not None:
            await self._listener.close()
            self._listener = None
            self._subscriptions.clear()
        if self.pool:
            self.logger.debug("Closing connection pool", database=self.config.name)
            await self.pool.close()
            self.pool = None

    async def test_connection(self) -> bool:
        """Connectivity probe; never raises."""
        if not self.pool:
            return False
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except Exception as e:
            self.logger.warning("Remote connectivity check failed", error=str(e))
            return False

    @asynccontextmanager
    async def acquire_connection(self) -> AsyncGenerator[asyncpg.Connection, None]:
        """Acquire a connection from the pool.

        Raises:
            RemoteStoreError: If the pool is not initialized
        """
        if not self.pool:
            raise RemoteStoreError(
                "Connection pool not initialized. Call connect() first.",
                context={"database": self.config.name},
            )
        async with self.pool.acquire() as conn:
            yield conn

    async def execute(self, query: str, *args: Any) -> str:
        """Execute a statement that returns no rows."""
        try:
            async with self.acquire_connection() as conn:
                return await conn.execute(query, *args)
        except RemoteStoreError:
            raise
        except Exception as e:
            raise RemoteStoreError(
                f"Query execution failed: {e}",
                context={"database": self.config.name, "query": query[:100]},
            ) from e

    async def fetch(self, query: str, *args: Any) -> list[dict[str, Any]]:
        """Execute a query and return all rows as dictionaries."""
        try:
            async with self.acquire_connection() as conn:
                rows = await conn.fetch(query, *args)
        except RemoteStoreError:
            raise
        except Exception as e:
            raise RemoteStoreError(
                f"Query execution failed: {e}",
                context={"database": self.config.name, "query": query[:100]},
            ) from e
        return [to_jsonable(dict(row)) for row in rows]

    async def fetchrow(self, query: str, *args: Any) -> Optional[dict[str, Any]]:
        """Execute a query and return the first row, if any."""
        rows = await self.fetch(query, *args)
        return rows[0] if rows else None

    async def fetchval(self, query: str, *args: Any) -> Any:
        """Execute a query and return a single value."""
        try:
            async with self.acquire_connection() as conn:
                value = await conn.fetchval(query, *args)
        except RemoteStoreError:
            raise
        except Exception as e:
            raise RemoteStoreError(
                f"Query execution failed: {e}",
                context={"database": self.config.name, "query": query[:100]},
            ) from e
        return to_jsonable(value)

    # Legacy migration procedures

    async def get_user_id(self, username: str) -> Optional[str]:
        """Remote id of the user whose username is the local user id."""
        return await self.fetchval("SELECT id FROM public.users WHERE username = $1", username)

    async def migrate_user(self, user_data: dict[str, Any]) -> str:
        """Create a remote user from a local profile.

        Returns:
            Remote user id
        """
        user_id = await self.fetchval(
            "SELECT migrate_user_from_localstorage($1::jsonb)",
            json.dumps(user_data),
        )
        if not user_id:
            raise RemoteStoreError(
                "User migration returned no id",
                context={"username": user_data.get("id")},
            )
        return str(user_id)

    async def upsert_preferences(self, remote_user_id: str, preferences: dict[str, Any]) -> None:
        """Create or replace a user's preference record."""
        await self.execute(
            """
            INSERT INTO public.user_preferences (
                user_id, default_pomodoro_length, break_length, long_break_length,
                weekly_goal, theme, sound_enabled, notifications_enabled,
                auto_start_break, auto_start_pomodoro
            ) VALUES (
                $1::uuid,
                COALESCE(($2::jsonb->>'defaultPomodoroLength')::INTEGER, 25),
                COALESCE(($2::jsonb->>'breakLength')::INTEGER, 5),
                COALESCE(($2::jsonb->>'longBreakLength')::INTEGER, 15),
                COALESCE(($2::jsonb->>'weeklyGoal')::INTEGER, 140),
                COALESCE($2::jsonb->>'theme', 'default'),
                COALESCE(($2::jsonb->>'soundEnabled')::BOOLEAN, TRUE),
                COALESCE(($2::jsonb->>'notificationsEnabled')::BOOLEAN, TRUE),
                COALESCE(($2::jsonb->>'autoStartBreak')::BOOLEAN, FALSE),
                COALESCE(($2::jsonb->>'autoStartPomodoro')::BOOLEAN, FALSE)
            )
            ON CONFLICT (user_id) DO UPDATE SET
                default_pomodoro_length = EXCLUDED.default_pomodoro_length,
                break_length = EXCLUDED.break_length,
                long_break_length = EXCLUDED.long_break_length,
                weekly_goal = EXCLUDED.weekly_goal,
                theme = EXCLUDED.theme,
                sound_enabled = EXCLUDED.sound_enabled,
                notifications_enabled = EXCLUDED.notifications_enabled,
                auto_start_break = EXCLUDED.auto_start_break,
                auto_start_pomodoro = EXCLUDED.auto_start_pomodoro,
                updated_at = NOW()
            """,
            remote_user_id,
            json.dumps(preferences),
        )

    async def migrate_user_stats(self, remote_user_id: str, stats: dict[str, Any]) -> None:
        await self.execute(
            "SELECT migrate_user_stats_from_localstorage($1::uuid, $2::jsonb)",
            remote_user_id,
            json.dumps(stats),
        )

    async def migrate_sessions(self, remote_user_id: str, sessions: list[dict[str, Any]]) -> None:
        await self.execute(
            "SELECT migrate_pomodoro_sessions_from_localstorage($1::uuid, $2::jsonb)",
            remote_user_id,
            json.dumps(sessions),
        )

    async def migrate_meetings(self, remote_user_id: str, meetings: list[dict[str, Any]]) -> None:
        await self.execute(
            "SELECT migrate_meetings_from_localstorage($1::uuid, $2::jsonb)",
            remote_user_id,
            json.dumps(meetings),
        )

    async def validate_migration(self) -> list[dict[str, Any]]:
        """Row counts per table: table_name, record_count, validation_status."""
        return await self.fetch("SELECT * FROM validate_migration()")

    async def check_referential_integrity(self) -> list[dict[str, Any]]:
        """Integrity checks: check_name, status (OK or VIOLATION), details."""
        return await self.fetch("SELECT * FROM check_referential_integrity()")

    async def post_migration_optimization(self) -> None:
        await self.execute("SELECT post_migration_optimization()")

    async def fetch_table(self, table: str) -> list[dict[str, Any]]:
        """All rows of one table."""
        return await self.fetch(f"SELECT * FROM {safe_identifier('public.' + table)}")

    async def export_tables(self) -> dict[str, list[dict[str, Any]]]:
        """Rows of every migrated table, for verification backups."""
        return {table: await self.fetch_table(table) for table in MIGRATED_TABLES}

    # Live operations mirrored by hybrid mode

    async def create_session(self, remote_user_id: str, session: dict[str, Any]) -> str:
        """Start a remote session mirroring a local one.

        Returns:
            Remote session id
        """
        session_id = await self.fetchval(
            "SELECT start_pomodoro_session($1::uuid, $2, $3, $4, $5, $6, $7::timestamptz)",
            remote_user_id,
            session.get("title") or "Pomodoro Session",
            session.get("goal") or "",
            session.get("tags") or "",
            session.get("location") or "",
            int(session.get("duration") or 25),
            session.get("startTime"),
        )
        return str(session_id)

    async def complete_session(self, remote_user_id: str, remote_session_id: str) -> bool:
        return bool(
            await self.fetchval(
                "SELECT complete_pomodoro_session($1::uuid, $2::uuid)",
                remote_user_id,
                remote_session_id,
            )
        )

    async def stop_session(self, remote_user_id: str, remote_session_id: str) -> bool:
        return bool(
            await self.fetchval(
                "SELECT stop_pomodoro_session($1::uuid, $2::uuid)",
                remote_user_id,
                remote_session_id,
            )
        )

    async def save_meeting(self, remote_user_id: str, meeting: dict[str, Any]) -> None:
        await self.migrate_meetings(remote_user_id, [meeting])

    async def get_user_stats(self, remote_user_id: str) -> Optional[dict[str, Any]]:
        """Remote statistics row in the local camelCase layout."""
        row = await self.fetchrow(
            "SELECT * FROM public.user_stats WHERE user_id = $1::uuid",
            remote_user_id,
        )
        if row is None:
            return None
        return {
            "totalSessions": row.get("total_sessions", 0),
            "completedSessions": row.get("completed_sessions", 0),
            "totalMinutes": row.get("total_minutes", 0),
            "completedMinutes": row.get("completed_minutes", 0),
            "streakDays": row.get("streak_days", 0),
            "longestStreak": row.get("longest_streak", 0),
            "lastSessionDate": row.get("last_session_date"),
            "updatedAt": row.get("updated_at"),
        }

    # Change notifications

    async def subscribe(self, table: str, callback: ChangeCallback) -> None:
        """Receive NOTIFY payloads published on the ``<table>_changes`` channel.

        Args:
            table: One of the migrated tables
            callback: Called with (table, decoded payload)
        """
        if table not in MIGRATED_TABLES:
            raise ValueError(f"Unknown table: {table}")
        if self._listener is None:
            try:
                self._listener = await asyncpg.connect(self.dsn)
            except Exception as e:
                raise RemoteStoreError(f"Failed to open listener connection: {e}") from e

        def handler(_conn: Any, _pid: int, _channel: str, payload: str) -> None:
            try:
                data = json.loads(payload) if payload else {}
            except json.JSONDecodeError:
                data = {"raw": payload}
            callback(table, data)

        channel = f"{table}_changes"
        await self._listener.add_listener(channel, handler)
        self._subscriptions[table] = handler
        self.logger.debug("Subscribed to table changes", table=table, channel=channel)

    async def unsubscribe(self, table: str) -> None:
        handler = self._subscriptions.pop(table, None)
        if handler is not None and self._listener is not None:
            await self._listener.remove_listener(f"{table}_changes", handler)
