"""Pomodoro data migrator - moves local key-value data into PostgreSQL."""

__version__ = "1.0.0"
