"""
CLI utility helpers — output formatting and connection management.
"""

from __future__ import annotations

import json
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from anybase.core.adapters import Database, get_adapter
from anybase.core.errors import AnybaseError
from anybase.core.ids import json_default
from anybase.core.logging import configure_logging
from anybase.core.settings import load_settings

console = Console()
err_console = Console(stderr=True)


# ── Connection helper ────────────────────────────────────────────────────


@contextmanager
def connected(uri: str | None = None) -> Iterator[Database]:
    """Connect to the configured database (or ``uri``) for one command.

    Any anybase error is reported on stderr and ends the command with
    exit code 1.
    """
    try:
        overrides: dict[str, Any] = {}
        if uri:
            overrides["database"] = {"uri": uri}
        settings = load_settings(**overrides)
        # command output owns stdout
        configure_logging(
            level="DEBUG" if settings.debug else "WARNING",
            json_format=settings.log_json,
            stream=sys.stderr,
        )
        database = get_adapter(settings.database)
        database.connect()
    except AnybaseError as exc:
        fail(exc)
    try:
        yield database
    except AnybaseError as exc:
        fail(exc)
    finally:
        database.close()


def fail(error: AnybaseError) -> None:
    """Print ``error`` and exit with status 1."""
    err_console.print(f"[bold red]Error[/bold red] ({type(error).__name__}): {error.message}")
    raise typer.Exit(code=1)


# ── Output helpers ───────────────────────────────────────────────────────


def _to_dict(obj: Any) -> dict[str, Any]:
    """Convert dataclass / pydantic model / dict to plain dict."""
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    if hasattr(obj, "model_dump"):
        return obj.model_dump()
    if hasattr(obj, "__dataclass_fields__"):
        return asdict(obj)
    if isinstance(obj, dict):
        return obj
    return {"value": str(obj)}


def output_result(data: Any, *, as_json: bool = False, title: str = "") -> None:
    """Render a command result to the terminal."""
    if as_json:
        payload = [_to_dict(d) for d in data] if isinstance(data, (list, tuple)) else _to_dict(data)
        console.print_json(json.dumps(payload, default=json_default))
        return

    if isinstance(data, list):
        if not data:
            console.print("[dim]No items.[/dim]")
            return
        _print_table(data, title=title)
    else:
        _print_dict(_to_dict(data), title=title)


# ── Private helpers ──────────────────────────────────────────────────────


def _print_table(items: list, *, title: str = "") -> None:
    """Render a list of dataclasses/dicts as a Rich table."""
    first = _to_dict(items[0])
    table = Table(title=title or None, show_lines=False, pad_edge=False)
    for col in first:
        table.add_column(col, overflow="fold")
    for item in items:
        d = _to_dict(item)
        table.add_row(*(str(d.get(col, "")) for col in first))
    console.print(table)


def _print_dict(data: dict[str, Any], *, title: str = "") -> None:
    """Render a single dict as key-value pairs."""
    if title:
        console.print(f"[bold]{title}[/bold]")
    for k, v in data.items():
        console.print(f"  [cyan]{k}[/cyan]: {v}")
