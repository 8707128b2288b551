"""Local-side user operations that hybrid mode wraps."""

from datetime import date, datetime, timedelta, timezone
from typing import Any, Optional

import structlog

from migrator.local_store import CURRENT_USER_KEY, USERS_KEY, LocalStore, section_key
from migrator.models import generate_id, iso_now, parse_timestamp
from utils.logging import get_logger

DEFAULT_PREFERENCES: dict[str, Any] = {
    "defaultPomodoroLength": 25,
    "breakLength": 5,
    "longBreakLength": 15,
    "weeklyGoal": 140,
    "theme": "default",
}


def _today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


def update_streak(stats: dict[str, Any], today: str) -> None:
    """Advance the streak counters for a session on ``today`` (YYYY-MM-DD)."""
    last = stats.get("lastSessionDate")
    if not last:
        stats["streakDays"] = 1
    else:
        try:
            gap = (date.fromisoformat(today) - date.fromisoformat(last[:10])).days
        except ValueError:
            gap = None
        if gap == 0:
            pass
        elif gap == 1:
            stats["streakDays"] = stats.get("streakDays", 0) + 1
        else:
            stats["streakDays"] = 1
    stats["longestStreak"] = max(stats.get("longestStreak", 0), stats["streakDays"])


class LocalUserRepository:
    """Users, sessions, stats and meetings in the local key-value store."""

    def __init__(
        self,
        store: LocalStore,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        self.store = store
        self.logger = logger or get_logger("local_users")

    # Users

    def get_all_users(self) -> dict[str, dict[str, Any]]:
        users = self.store.get_json(USERS_KEY, {})
        return users if isinstance(users, dict) else {}

    def get_user(self, user_id: str) -> Optional[dict[str, Any]]:
        return self.get_all_users().get(user_id)

    def register_user(
        self,
        user_id: str,
        user_data: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """Create a user with fresh stats. Registering an existing id returns it unchanged.

        Raises:
            ValueError: If user_id is empty
        """
        if not user_id or not isinstance(user_id, str):
            raise ValueError("A non-empty user id is required")

        users = self.get_all_users()
        if user_id in users:
            return users[user_id]

        user_data = user_data or {}
        now = iso_now()
        user = {
            "id": user_id,
            "displayName": user_data.get("displayName") or user_id,
            "email": user_data.get("email", ""),
            "createdAt": now,
            "lastLogin": now,
            "preferences": {**DEFAULT_PREFERENCES, **(user_data.get("preferences") or {})},
        }
        if user_data.get("password"):
            user["password"] = user_data["password"]

        users[user_id] = user
        self.store.set_json(USERS_KEY, users)
        self._initialize_stats(user_id)
        self.logger.info("Local user registered", user_id=user_id)
        return user

    def _initialize_stats(self, user_id: str) -> dict[str, Any]:
        now = iso_now()
        stats = {
            "userId": user_id,
            "totalSessions": 0,
            "completedSessions": 0,
            "totalMinutes": 0,
            "completedMinutes": 0,
            "streakDays": 0,
            "longestStreak": 0,
            "lastSessionDate": None,
            "weeklyGoal": 140,
            "monthlyStats": {},
            "dailyStats": {},
            "tags": {},
            "locations": {},
            "completionRate": 0,
            "averageSessionLength": 0,
            "createdAt": now,
            "updatedAt": now,
        }
        self.store.set_json(section_key("stats", user_id), stats)
        if self.store.get(section_key("sessions", user_id)) is None:
            self.store.set_json(section_key("sessions", user_id), [])
        return stats

    def login_user(
        self,
        user_id: str,
        user_data: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """Mark a user as logged in, registering unknown ids."""
        users = self.get_all_users()
        if user_id not in users:
            user = self.register_user(user_id, user_data)
        else:
            users[user_id]["lastLogin"] = iso_now()
            self.store.set_json(USERS_KEY, users)
            user = users[user_id]
        self.store.set(CURRENT_USER_KEY, user_id)
        return user

    def get_current_user(self) -> Optional[dict[str, Any]]:
        user_id = self.store.get(CURRENT_USER_KEY)
        if not user_id:
            return None
        return self.get_user(user_id)

    # Sections

    def get_sessions(self, user_id: str) -> list[dict[str, Any]]:
        sessions = self.store.get_json(section_key("sessions", user_id), [])
        return sessions if isinstance(sessions, list) else []

    def _save_sessions(self, user_id: str, sessions: list[dict[str, Any]]) -> None:
        self.store.set_json(section_key("sessions", user_id), sessions)

    def get_active_session(self, user_id: str) -> Optional[dict[str, Any]]:
        active = self.store.get_json(section_key("active_session", user_id))
        return active if isinstance(active, dict) else None

    def get_stats(self, user_id: str) -> dict[str, Any]:
        """Stats of a user, initializing them on first access."""
        stats = self.store.get_json(section_key("stats", user_id))
        if not isinstance(stats, dict):
            return self._initialize_stats(user_id)
        return stats

    def get_meetings(self, user_id: str) -> list[dict[str, Any]]:
        meetings = self.store.get_json(section_key("meetings", user_id), [])
        return meetings if isinstance(meetings, list) else []

    def update_stats(self, user_id: str, updates: dict[str, Any]) -> dict[str, Any]:
        """Apply counter updates and recompute derived rates."""
        stats = {**self.get_stats(user_id), **updates, "updatedAt": iso_now()}
        if stats.get("totalSessions", 0) > 0:
            stats["completionRate"] = round(
                stats.get("completedSessions", 0) / stats["totalSessions"] * 100
            )
        if stats.get("completedSessions", 0) > 0:
            stats["averageSessionLength"] = round(
                stats.get("completedMinutes", 0) / stats["completedSessions"]
            )
        self.store.set_json(section_key("stats", user_id), stats)
        return stats

    # Sessions

    def create_session(self, user_id: str, session_data: dict[str, Any]) -> dict[str, Any]:
        """Start a session now (or at a future scheduled time).

        The session becomes the user's active session and is appended to the
        history with status 'scheduled'.
        """
        now = datetime.now(timezone.utc)
        start = now
        scheduled = parse_timestamp(session_data.get("scheduledTime"))
        if scheduled is not None and scheduled > now:
            start = scheduled

        duration = int(session_data.get("duration") or 25)
        session = {
            "id": generate_id("session"),
            "title": session_data.get("title") or "Pomodoro Session",
            "goal": session_data.get("goal", ""),
            "tags": session_data.get("tags", ""),
            "location": session_data.get("location", ""),
            "duration": duration,
            "startTime": start.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "endTime": (start + timedelta(minutes=duration))
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
            "user": user_id,
            "status": "active",
            "createdAt": iso_now(),
        }

        self.store.set_json(section_key("active_session", user_id), session)
        sessions = self.get_sessions(user_id)
        sessions.append({**session, "status": "scheduled"})
        self._save_sessions(user_id, sessions)
        self._record_new_session(user_id, session)
        return session

    def _record_new_session(self, user_id: str, session: dict[str, Any]) -> None:
        stats = self.get_stats(user_id)
        duration = session["duration"]
        today = _today()

        daily = stats.setdefault("dailyStats", {})
        day = daily.setdefault(today, {"sessions": 0, "minutes": 0, "completed": 0})
        day["sessions"] += 1
        day["minutes"] += duration

        monthly = stats.setdefault("monthlyStats", {})
        month = monthly.setdefault(today[:7], {"sessions": 0, "minutes": 0, "completed": 0})
        month["sessions"] += 1
        month["minutes"] += duration

        for tag in (t.strip() for t in (session.get("tags") or "").split(",")):
            if tag:
                entry = stats.setdefault("tags", {}).setdefault(tag, {"count": 0, "minutes": 0})
                entry["count"] += 1
                entry["minutes"] += duration

        location = session.get("location")
        if location:
            entry = stats.setdefault("locations", {}).setdefault(
                location, {"count": 0, "minutes": 0}
            )
            entry["count"] += 1
            entry["minutes"] += duration

        update_streak(stats, today)
        self.update_stats(
            user_id,
            {
                **stats,
                "totalSessions": stats.get("totalSessions", 0) + 1,
                "totalMinutes": stats.get("totalMinutes", 0) + duration,
                "lastSessionDate": today,
            },
        )

    def _finish_session(self, user_id: str, session_id: str, status: str) -> Optional[dict]:
        sessions = self.get_sessions(user_id)
        for session in sessions:
            if session.get("id") == session_id:
                session["status"] = status
                session["completedAt" if status == "completed" else "stoppedAt"] = iso_now()
                self._save_sessions(user_id, sessions)
                return session
        return None

    def complete_session(self, user_id: str, session_id: str) -> Optional[dict[str, Any]]:
        """Complete the user's active session.

        Returns:
            The updated history record, or None if session_id is not active
        """
        active = self.get_active_session(user_id)
        if active is None or active.get("id") != session_id:
            return None

        self.store.remove(section_key("active_session", user_id))
        record = self._finish_session(user_id, session_id, "completed")

        stats = self.get_stats(user_id)
        today = _today()
        for bucket, key in (("dailyStats", today), ("monthlyStats", today[:7])):
            if key in stats.get(bucket, {}):
                stats[bucket][key]["completed"] += 1
        self.update_stats(
            user_id,
            {
                **stats,
                "completedSessions": stats.get("completedSessions", 0) + 1,
                "completedMinutes": stats.get("completedMinutes", 0) + active["duration"],
            },
        )
        return record

    def stop_session(self, user_id: str, session_id: str) -> Optional[dict[str, Any]]:
        """Stop a session without counting it as completed."""
        active = self.get_active_session(user_id)
        if active is not None and active.get("id") == session_id:
            self.store.remove(section_key("active_session", user_id))
        return self._finish_session(user_id, session_id, "stopped")

    def set_session_remote_id(self, user_id: str, session_id: str, remote_id: str) -> None:
        """Remember the remote id of a mirrored session."""
        sessions = self.get_sessions(user_id)
        for session in sessions:
            if session.get("id") == session_id:
                session["remoteId"] = remote_id
                self._save_sessions(user_id, sessions)
                return

    def get_session(self, user_id: str, session_id: str) -> Optional[dict[str, Any]]:
        for session in self.get_sessions(user_id):
            if session.get("id") == session_id:
                return session
        return None

    # Meetings

    def save_meeting(self, user_id: str, meeting: dict[str, Any]) -> dict[str, Any]:
        now = iso_now()
        record = {"id": generate_id("meeting"), **meeting, "createdAt": now, "updatedAt": now}
        meetings = self.get_meetings(user_id)
        meetings.append(record)
        self.store.set_json(section_key("meetings", user_id), meetings)
        return record
