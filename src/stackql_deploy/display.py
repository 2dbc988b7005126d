"""Operator-facing banners."""

from __future__ import annotations

import click


def print_box(message: str, color: str = "blue") -> None:
    """Print a message framed in a box."""
    width = len(message) + 2
    click.secho(f"┌{'─' * width}┐", fg=color)
    click.secho(f"│ {message} │", fg=color)
    click.secho(f"└{'─' * width}┘", fg=color)
