"""Archive extraction and post-download file housekeeping."""

from __future__ import annotations

import logging
import zipfile
from pathlib import Path, PurePosixPath
from typing import Dict, Iterable, List, Optional

__all__ = [
    "LEGACY_COMPANION_NAMES",
    "SMALL_ARCHIVE_BYTES",
    "extract_archive",
    "extract_archives",
    "format_bytes",
    "remove_archives",
    "rename_legacy_companion",
]

logger = logging.getLogger(__name__)

SMALL_ARCHIVE_BYTES = 100_000

# Internal file names the companion archive has shipped under.
LEGACY_COMPANION_NAMES = ("NASIS_Morphological_09142021.sqlite",)


def format_bytes(num: int) -> str:
    """Return a human-readable representation for ``num`` bytes."""

    value = float(num)
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if value < 1024.0 or unit == "TB":
            return f"{value:.2f} {unit}"
        value /= 1024.0
    return f"{value:.2f} TB"


def _validate_member_path(member_name: str) -> Path:
    """Reject absolute or parent-relative archive member paths."""

    relative = PurePosixPath(member_name.replace("\\", "/"))
    if relative.is_absolute() or not relative.parts:
        raise ValueError(f"Unsafe path detected in archive: {member_name}")
    if any(part in {"", ".", ".."} for part in relative.parts):
        raise ValueError(f"Unsafe path detected in archive: {member_name}")
    return Path(*relative.parts)


def extract_archive(archive: Path, target_dir: Path) -> List[Path]:
    """Extract ``archive`` into ``target_dir`` and return the extracted file paths.

    Raises:
        zipfile.BadZipFile: If ``archive`` is not a valid zip file.
        ValueError: If a member would be written outside ``target_dir``.
    """

    extracted: List[Path] = []
    with zipfile.ZipFile(archive) as bundle:
        members = [info for info in bundle.infolist() if not info.is_dir()]
        for info in members:
            _validate_member_path(info.filename)
        for info in members:
            extracted.append(Path(bundle.extract(info, path=target_dir)))
    return extracted


def extract_archives(
    target_dir: Path,
    *,
    verbose: bool = True,
    archives: Optional[Iterable[Path]] = None,
) -> Dict[Path, List[Path]]:
    """Extract every ``*.zip`` in ``target_dir``; failures are logged, not raised."""

    candidates = sorted(archives) if archives is not None else sorted(target_dir.glob("*.zip"))
    results: Dict[Path, List[Path]] = {}
    for archive in candidates:
        size = archive.stat().st_size if archive.exists() else 0
        if verbose:
            logger.info(
                "Extracting %s (%s)...",
                archive.name,
                format_bytes(size),
                extra={"stage": "extract", "path": archive, "size_bytes": size},
            )
        if size < SMALL_ARCHIVE_BYTES:
            logger.warning(
                "Zip file %s is suspiciously small (%s) - may be invalid",
                archive.name,
                format_bytes(size),
                extra={"stage": "extract", "path": archive},
            )
        try:
            files = extract_archive(archive, target_dir)
        except (zipfile.BadZipFile, ValueError, OSError) as exc:
            logger.warning(
                "Failed to extract %s: %s",
                archive.name,
                exc,
                extra={"stage": "extract", "path": archive},
            )
            continue
        if files:
            if verbose:
                logger.info(
                    "Successfully extracted %d file(s) from %s",
                    len(files),
                    archive.name,
                    extra={"stage": "extract"},
                )
        else:
            logger.warning(
                "No files extracted from %s - zip may be empty or invalid",
                archive.name,
                extra={"stage": "extract", "path": archive},
            )
        results[archive] = files
    return results


def rename_legacy_companion(
    target_dir: Path,
    companiondbname: str,
    *,
    verbose: bool = True,
) -> Optional[Path]:
    """Rename a companion database extracted under a legacy name, if present."""

    destination = target_dir / companiondbname
    for legacy in LEGACY_COMPANION_NAMES:
        source = target_dir / legacy
        if source.exists():
            if verbose:
                logger.info(
                    "Renaming %s to %s", legacy, companiondbname, extra={"stage": "extract"}
                )
            source.replace(destination)
            return destination
    return None


def remove_archives(archives: Iterable[Path]) -> int:
    """Delete ``archives`` and return how many were removed."""

    removed = 0
    for archive in archives:
        if archive.exists():
            archive.unlink()
            removed += 1
    return removed
