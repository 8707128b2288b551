"""Pomodoro data migrator - backups, snapshots and rollback."""
