"""Typer command line interface for LabTaxa.

Example:
    $ labtaxa snapshot --dir ./labtaxa-data --no-cache
    $ labtaxa cache-info
    $ labtaxa checksum ncss_labdata.gpkg
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from LabTaxa import __version__
from LabTaxa.archives import format_bytes
from LabTaxa.checksums import calculate_checksum, write_snapshot_metadata
from LabTaxa.errors import LabTaxaError
from LabTaxa.logging_utils import setup_logging
from LabTaxa.settings import SnapshotSettings
from LabTaxa.snapshot import get_ldm_snapshot

app = typer.Typer(
    name="labtaxa",
    help="Acquire, patch, and cache KSSL Lab Data Mart snapshots",
    no_args_is_help=True,
)

_console = Console()


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"labtaxa {__version__}")
        raise typer.Exit(0)


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    """LabTaxa - KSSL Lab Data Mart snapshot utility."""


@app.command()
def snapshot(
    dirname: Optional[Path] = typer.Option(None, "--dir", "-d", help="Target data directory"),
    no_cache: bool = typer.Option(False, "--no-cache", help="Force a fresh download and rebuild"),
    keep_zip: bool = typer.Option(False, "--keep-zip", help="Keep downloaded archives"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only report warnings and errors"),
    port: Optional[int] = typer.Option(None, "--port", help="Browser driver port"),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Download timeout (seconds)"),
    log_dir: Optional[Path] = typer.Option(None, "--log-dir", help="Directory for JSON logs"),
) -> None:
    """Download (or load from cache) the Lab Data Mart snapshot."""

    setup_logging(verbose=not quiet, log_dir=log_dir)
    overrides = {"cache": not no_cache, "keep_zip": keep_zip, "verbose": not quiet}
    if dirname is not None:
        overrides["dirname"] = dirname
    if port is not None:
        overrides["port"] = port
    if timeout is not None:
        overrides["timeout"] = timeout

    try:
        collection = get_ldm_snapshot(**overrides)
    except LabTaxaError as exc:
        _console.print(f"[red]✗ {exc}[/red]")
        raise typer.Exit(1)

    _console.print(
        f"[green]✓[/green] {len(collection)} profiles, {collection.n_horizons} horizons"
    )


@app.command()
def checksum(
    paths: List[Path] = typer.Argument(..., help="Files to hash"),
) -> None:
    """Print the SHA-256 digest of each file."""

    status = 0
    for path in paths:
        try:
            digest = calculate_checksum(path)
        except FileNotFoundError as exc:
            _console.print(f"[red]{exc}[/red]")
            status = 1
            continue
        typer.echo(f"{digest}  {path}")
    if status:
        raise typer.Exit(status)


@app.command()
def metadata(
    paths: List[Path] = typer.Argument(..., help="Data files to record"),
    dirname: Path = typer.Option(Path("."), "--dir", "-d", help="Directory for the manifest"),
    filename: str = typer.Option("snapshot-metadata.json", "--output", "-o"),
) -> None:
    """Write a snapshot metadata manifest for ``paths``."""

    record = write_snapshot_metadata(dirname, paths, filename)
    typer.echo(json.dumps(record, indent=2))


@app.command("cache-info")
def cache_info(
    dirname: Optional[Path] = typer.Option(None, "--dir", "-d", help="Target data directory"),
) -> None:
    """Show which snapshot artefacts exist in the data directory."""

    settings = SnapshotSettings() if dirname is None else SnapshotSettings(dirname=dirname)
    table = Table(title=f"LabTaxa data directory: {settings.dirname}")
    table.add_column("Artefact")
    table.add_column("File")
    table.add_column("Size", justify="right")
    rows = (
        ("primary cache", settings.cache_path),
        ("companion cache", settings.companion_cache_path),
        ("primary database", settings.db_path),
        ("companion database", settings.companion_db_path),
        ("metadata", settings.dirname / settings.metadata_file),
    )
    for label, path in rows:
        size = format_bytes(path.stat().st_size) if path.exists() else "missing"
        table.add_row(label, path.name, size)
    _console.print(table)


if __name__ == "__main__":  # pragma: no cover
    app()
