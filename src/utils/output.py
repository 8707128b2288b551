"""Utility functions for formatted CLI output."""

from typing import Any

import click

_PRIORITY_COLORS = {
    "critical": "red",
    "high": "yellow",
    "medium": "cyan",
    "low": "white",
    "info": "green",
}


def print_header(title: str, width: int = 70, color: str = "cyan") -> None:
    """Print a formatted header.

    Args:
        title: Header title
        width: Header width
        color: Header color
    """
    click.echo()
    click.echo(click.style("=" * width, fg=color))
    click.echo(click.style(title, fg=color, bold=True))
    click.echo(click.style("=" * width, fg=color))
    click.echo()


def print_section(title: str, color: str = "yellow") -> None:
    """Print a section title."""
    click.echo(click.style(f"\n{title}:", fg=color, bold=True))


def print_key_value(
    key: str, value: Any, key_color: str = "white", value_color: str = "cyan"
) -> None:
    """Print an indented key-value pair."""
    click.echo(
        click.style(f"  {key}: ", fg=key_color) + click.style(str(value), fg=value_color, bold=True)
    )


def print_success(message: str) -> None:
    """Print a success message."""
    click.echo(click.style(f"✓ {message}", fg="green", bold=True))


def print_error(message: str) -> None:
    """Print an error message."""
    click.echo(click.style(f"✗ {message}", fg="red", bold=True), err=True)


def print_warning(message: str) -> None:
    """Print a warning message."""
    click.echo(click.style(f"⚠ {message}", fg="yellow", bold=True))


def print_info(message: str) -> None:
    """Print an info message."""
    click.echo(click.style(f"ℹ {message}", fg="blue"))


def print_table(headers: list[str], rows: list[list[Any]], header_color: str = "cyan") -> None:
    """Print a simple aligned table.

    Args:
        headers: Table headers
        rows: Table rows
        header_color: Header color
    """
    if not rows:
        return

    col_widths = [len(str(h)) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            col_widths[i] = max(col_widths[i], len(str(cell)))

    header_row = " | ".join(str(h).ljust(col_widths[i]) for i, h in enumerate(headers))
    click.echo(click.style(header_row, fg=header_color, bold=True))
    click.echo(click.style("-" * len(header_row), dim=True))

    for row in rows:
        click.echo(" | ".join(str(cell).ljust(col_widths[i]) for i, cell in enumerate(row)))


def print_recommendations(recommendations: list[dict[str, Any]]) -> None:
    """Print ranked recommendations coloured by priority.

    Args:
        recommendations: Dictionaries with 'priority' and 'message' keys
    """
    if not recommendations:
        return

    print_section("Recommendations")
    for rec in recommendations:
        priority = str(rec.get("priority", "info"))
        color = _PRIORITY_COLORS.get(priority, "white")
        label = click.style(f"  [{priority.upper()}] ", fg=color, bold=True)
        click.echo(label + str(rec.get("message", "")))
