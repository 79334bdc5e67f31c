"""Checksum helpers and the snapshot metadata manifest.

Every successful acquisition records a small JSON manifest next to the
downloaded databases so that analyses can be traced back to the exact
snapshot they were built from.  Digests are computed by streaming the file in
fixed-size chunks so that multi-gigabyte GeoPackages never need to fit in
memory.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import platform
import tempfile
from datetime import datetime
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

__all__ = [
    "NOT_FOUND",
    "calculate_checksum",
    "verify_checksum",
    "package_version",
    "build_snapshot_metadata",
    "write_json_atomic",
    "write_snapshot_metadata",
]

logger = logging.getLogger(__name__)

NOT_FOUND = "NOT_FOUND"
_CHUNK_SIZE = 1 << 20

PathLike = Union[str, os.PathLike]


def calculate_checksum(path: PathLike) -> str:
    """Compute the SHA-256 digest for ``path``.

    Raises:
        FileNotFoundError: If ``path`` does not exist.
    """

    resolved = Path(path)
    if not resolved.is_file():
        raise FileNotFoundError(f"File not found: {resolved}")
    hasher = hashlib.sha256()
    with resolved.open("rb") as stream:
        for chunk in iter(lambda: stream.read(_CHUNK_SIZE), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def verify_checksum(path: PathLike, expected: str, verbose: bool = True) -> bool:
    """Return ``True`` when ``path`` hashes to ``expected``.

    Missing files and mismatches are reported as warnings and yield ``False``.
    """

    resolved = Path(path)
    if not resolved.is_file():
        logger.warning(
            "File not found for checksum verification: %s",
            resolved,
            extra={"stage": "checksum", "path": resolved},
        )
        return False

    actual = calculate_checksum(resolved)
    if actual == expected.strip().lower():
        if verbose:
            logger.info("Checksum verified for %s", resolved.name, extra={"stage": "checksum"})
        return True

    logger.warning(
        "Checksum mismatch for %s\n  Expected: %s\n  Actual: %s",
        resolved,
        expected,
        actual,
        extra={"stage": "checksum", "path": resolved},
    )
    return False


def package_version() -> str:
    """Return the installed ``labtaxa`` distribution version."""

    try:
        return version("labtaxa")
    except PackageNotFoundError:
        from . import __version__

        return __version__


def _checksum_entry(path: Path) -> Dict[str, Any]:
    if path.is_file():
        return {
            "file": path.name,
            "sha256": calculate_checksum(path),
            "size_bytes": path.stat().st_size,
        }
    return {"file": path.name, "sha256": NOT_FOUND, "size_bytes": None}


def build_snapshot_metadata(
    data_files: Sequence[PathLike],
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Assemble the metadata record for ``data_files`` without writing it."""

    timestamp = now or datetime.now().astimezone()
    checksums: List[Dict[str, Any]] = [_checksum_entry(Path(item)) for item in data_files]
    return {
        "snapshot_date": timestamp.date().isoformat(),
        "download_timestamp": timestamp.isoformat(timespec="seconds"),
        "tool_version": platform.python_version(),
        "package_version": package_version(),
        "checksums": checksums,
    }


def write_json_atomic(path: Path, payload: object) -> Path:
    """Atomically persist ``payload`` as JSON to ``path``."""

    resolved = path.expanduser()
    resolved.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        "w", encoding="utf-8", dir=str(resolved.parent), delete=False
    ) as handle:
        json.dump(payload, handle, indent=2)
        handle.flush()
        try:
            os.fsync(handle.fileno())
        except (AttributeError, OSError):
            pass
        temp_name = handle.name
    Path(temp_name).replace(resolved)
    return resolved


def write_snapshot_metadata(
    dirname: PathLike,
    data_files: Sequence[PathLike],
    metadata_file: str = "snapshot-metadata.json",
) -> Dict[str, Any]:
    """Write the snapshot manifest for ``data_files`` into ``dirname``.

    Files that do not exist are recorded with a ``"NOT_FOUND"`` digest and a
    null size so that the manifest always has one entry per requested file.

    Returns:
        The metadata record that was written.
    """

    metadata = build_snapshot_metadata(data_files)
    metadata_path = write_json_atomic(Path(dirname) / metadata_file, metadata)
    logger.info("Metadata written to: %s", metadata_path, extra={"stage": "metadata"})
    return metadata
