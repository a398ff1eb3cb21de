"""
CLI: ``anybase db`` — database management commands.
"""

from __future__ import annotations

import time

import typer

from anybase.cli.utils import connected, output_result

app = typer.Typer(no_args_is_help=True)


@app.command()
def ping(
    uri: str | None = typer.Option(None, "--uri", "-u", help="Connection URI (overrides ANYBASE_DATABASE__URI)"),
    json_out: bool = typer.Option(False, "--json", help="JSON output"),
) -> None:
    """Check that the database answers."""
    with connected(uri) as db:
        started = time.perf_counter()
        db.ping()
        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
        output_result(
            {"backend": db.type.value, "status": "ok", "latency_ms": elapsed_ms},
            as_json=json_out,
            title="Database Ping",
        )


@app.command()
def init(
    uri: str | None = typer.Option(None, "--uri", "-u"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Provision the system collections and their default indexes."""
    with connected(uri) as db:
        created = db.ensure_system_indexes()
        output_result(
            {"backend": db.type.value, "indexes": created},
            as_json=json_out,
            title="Database Init",
        )


@app.command()
def collections(
    uri: str | None = typer.Option(None, "--uri", "-u"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List collections."""
    with connected(uri) as db:
        names = db.list_collections()
        output_result([{"name": name} for name in names], as_json=json_out, title="Collections")


@app.command()
def indexes(
    collection: str = typer.Argument(..., help="Collection name"),
    uri: str | None = typer.Option(None, "--uri", "-u"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List the indexes of a collection."""
    with connected(uri) as db:
        found = db.collection(collection).list_indexes()
        output_result(found, as_json=json_out, title=f"Indexes: {collection}")
