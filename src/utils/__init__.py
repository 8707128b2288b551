"""Pomodoro data migrator - Shared utilities."""

import re

_IDENTIFIER_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


def safe_identifier(name: str) -> str:
    """Quote a PostgreSQL identifier after checking it is a plain name.

    Schema-qualified names (``public.users``) are quoted part by part.

    Args:
        name: Table, column or schema name

    Returns:
        Double-quoted identifier, e.g. '"public"."users"'

    Raises:
        ValueError: If any part contains characters other than letters, digits
            and underscores
    """
    parts = name.split(".")
    if len(parts) > 2:
        raise ValueError(f"Invalid SQL identifier: {name!r}. At most one schema qualifier allowed.")

    quoted = []
    for part in parts:
        if not _IDENTIFIER_RE.match(part):
            raise ValueError(
                f"Invalid SQL identifier: {name!r}. "
                "Only letters, digits, and underscores are allowed."
            )
        quoted.append(f'"{part}"')
    return ".".join(quoted)
