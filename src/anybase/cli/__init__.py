"""
CLI layer for anybase.

Provides a Typer application for operating the database layer from a
terminal: connectivity checks, provisioning of the system collections and
their default indexes, and catalog listings. This package handles only
terminal transport; every command delegates to ``anybase.core``.

Entry point::

    anybase --help
"""

from anybase.cli.app import app

__all__ = ["app"]
