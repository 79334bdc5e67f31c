# === NAVMAP v1 ===
# {
#   "module": "LabTaxa.snapshot",
#   "purpose": "Top-level orchestration of snapshot acquisition, patching, loading, and caching",
#   "sections": [
#     {"id": "urls", "name": "Portal URL Accessors", "anchor": "URL", "kind": "api"},
#     {"id": "outcome", "name": "SnapshotOutcome", "anchor": "OUT", "kind": "class"},
#     {"id": "orchestrator", "name": "SnapshotOrchestrator", "anchor": "ORC", "kind": "class"},
#     {"id": "entry", "name": "get_ldm_snapshot", "anchor": "GET", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Get a Lab Data Mart snapshot as an analysis-ready profile collection.

:func:`get_ldm_snapshot` is the entry point.  With caching enabled and a
cache file present it returns the cached collection without touching the
network or any database.  Otherwise it fetches the snapshot through the
browser-driven fetcher (only when the database is missing or caching is
disabled), patches the databases, loads the primary Lab Data Mart collection
and, when available, the companion morphologic collection, and writes both
to the cache.

Failure policy:

* Fetch failures raise :class:`~LabTaxa.errors.AcquisitionError`.
* Primary load failures raise :class:`~LabTaxa.errors.LoadError`.
* Patch failures and every companion problem are logged as warnings and the
  run continues with whatever could be loaded.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from .archives import format_bytes
from .browser import fetch_ldm_snapshot
from .errors import AcquisitionError, LoadError, PatchError
from .patching import PatchReport, patch_ldm_snapshot, patch_morph_snapshot, validate_sqlite
from .profiles import ProfileCollection, load_ldm, load_nasis
from .settings import COMPANION_DOWNLOAD_URL, LDM_DOWNLOAD_URL, SnapshotSettings
from .storage import LOAD_FAILED, load, save

__all__ = [
    "SnapshotOrchestrator",
    "SnapshotOutcome",
    "companion_download_url",
    "get_ldm_snapshot",
    "ldm_db_download_url",
]

logger = logging.getLogger(__name__)

Fetcher = Callable[[SnapshotSettings], Any]
Loader = Callable[..., ProfileCollection]


def ldm_db_download_url() -> str:
    """Return the Lab Data Mart database download portal URL."""

    return LDM_DOWNLOAD_URL


def companion_download_url() -> str:
    """Return the direct download URL of the companion morphologic archive."""

    return COMPANION_DOWNLOAD_URL


@dataclass
class SnapshotOutcome:
    """Everything one orchestrator run produced."""

    primary: ProfileCollection
    companion: Optional[ProfileCollection] = None
    cache_hit: bool = False
    fetched: bool = False
    ldm_patch: Optional[PatchReport] = None
    morph_patch: Optional[PatchReport] = None
    cache_paths: Dict[str, Path] = field(default_factory=dict)


class SnapshotOrchestrator:
    """Run the acquisition workflow for one :class:`SnapshotSettings` request."""

    def __init__(
        self,
        settings: SnapshotSettings,
        *,
        fetcher: Fetcher = fetch_ldm_snapshot,
        ldm_loader: Loader = load_ldm,
        morph_loader: Loader = load_nasis,
        loader_options: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.settings = settings
        self.fetcher = fetcher
        self.ldm_loader = ldm_loader
        self.morph_loader = morph_loader
        self.loader_options = dict(loader_options or {})

    def _log(self, message: str, *args: object) -> None:
        if self.settings.verbose:
            logger.info(message, *args, extra={"stage": "snapshot"})

    def run(self) -> SnapshotOutcome:
        settings = self.settings

        if settings.cache and settings.cache_path.exists():
            cached = load(settings.dirname, settings.cachename, silent=True)
            if cached is not LOAD_FAILED:
                self._log("Loaded cached snapshot from %s", settings.cache_path)
                return SnapshotOutcome(primary=cached, cache_hit=True)
            logger.warning(
                "Cached snapshot %s could not be read; rebuilding",
                settings.cache_path,
                extra={"stage": "cache", "path": settings.cache_path},
            )

        fetched = False
        if not settings.cache or not settings.db_path.exists():
            self._log("Downloading KSSL Lab Data Mart snapshot...")
            self.acquire()
            fetched = True
        else:
            self._log("Using existing database: %s", settings.db_path)

        ldm_patch = self.patch_primary()
        companion_ok, morph_patch = self.prepare_companion()

        primary = self.load_primary()
        companion = self.load_companion() if companion_ok else None

        outcome = SnapshotOutcome(
            primary=primary,
            companion=companion,
            fetched=fetched,
            ldm_patch=ldm_patch,
            morph_patch=morph_patch,
        )
        if settings.cache:
            self._log("Caching results...")
            outcome.cache_paths["primary"] = save(primary, settings.dirname, settings.cachename)
            if companion is not None:
                outcome.cache_paths["companion"] = save(
                    companion, settings.dirname, settings.companioncachename
                )
            elif settings.companion_cache_path.exists():
                logger.warning(
                    "Removing companion cache %s from an earlier snapshot",
                    settings.companion_cache_path,
                    extra={"stage": "cache", "path": settings.companion_cache_path},
                )
                settings.companion_cache_path.unlink()
        return outcome

    def acquire(self) -> Any:
        """Invoke the fetcher; any failure aborts the run."""

        try:
            return self.fetcher(self.settings)
        except Exception as exc:
            raise AcquisitionError(
                f"Failed to download snapshot: {exc}\n"
                "Please check your internet connection and try again."
            ) from exc

    def patch_primary(self) -> Optional[PatchReport]:
        self._log("Patching Lab Data Mart database...")
        try:
            return patch_ldm_snapshot(self.settings.db_path)
        except (PatchError, sqlite3.Error, OSError) as exc:
            logger.warning(
                "Error patching LDM database: %s\nDatabase may not be fully compatible.",
                exc,
                extra={"stage": "patch", "path": self.settings.db_path},
            )
            return None

    def prepare_companion(self) -> Tuple[bool, Optional[PatchReport]]:
        """Validate the companion database and patch it only when it is valid."""

        path = self.settings.companion_db_path
        if not path.exists():
            self._log("Morphologic database not found: %s", path)
            return False, None

        self._log("Validating morphologic database: %s", path)
        if not validate_sqlite(path, verbose=self.settings.verbose):
            logger.warning(
                "Skipping morphologic database - validation failed",
                extra={"stage": "validate", "path": path},
            )
            return False, None

        self._log("Patching morphologic database...")
        try:
            report = patch_morph_snapshot(path)
        except (PatchError, sqlite3.Error, OSError) as exc:
            logger.warning(
                "Error patching morphologic database: %s\nMorphologic data may not be available.",
                exc,
                extra={"stage": "patch", "path": path},
            )
            report = None
        return True, report

    def load_primary(self) -> ProfileCollection:
        path = self.settings.db_path
        size = path.stat().st_size if path.exists() else 0
        self._log("Loading Lab Data Mart data from %s (%s)...", path, format_bytes(size))
        try:
            primary = self.ldm_loader(path, **self.loader_options)
        except Exception as exc:
            raise LoadError(
                f"Failed to load Lab Data Mart data: {exc}\nPlease ensure the database is valid."
            ) from exc
        self._log("Loaded %d soil profiles", len(primary))
        return primary

    def load_companion(self) -> Optional[ProfileCollection]:
        path = self.settings.companion_db_path
        self._log(
            "Loading morphologic data from %s (%s)...", path, format_bytes(path.stat().st_size)
        )
        try:
            companion = self.morph_loader(path, uncode=False)
        except Exception as exc:
            logger.warning(
                "Failed to load morphologic data: %s\nContinuing with LDM data only.",
                exc,
                extra={"stage": "load", "path": path},
            )
            return None
        self._log("Loaded %d morphologic profiles", len(companion))
        return companion


def get_ldm_snapshot(
    settings: Optional[SnapshotSettings] = None,
    *,
    fetcher: Fetcher = fetch_ldm_snapshot,
    ldm_loader: Loader = load_ldm,
    morph_loader: Loader = load_nasis,
    loader_options: Optional[Mapping[str, Any]] = None,
    **overrides: Any,
) -> ProfileCollection:
    """Return the Lab Data Mart snapshot as a :class:`ProfileCollection`.

    Args:
        settings: Base request settings; defaults are read from the
            environment when omitted.
        fetcher: Callable that downloads and extracts the snapshot.
        ldm_loader: Loader for the primary database.
        morph_loader: Loader for the companion database.
        loader_options: Extra keyword arguments for ``ldm_loader``.
        **overrides: Individual :class:`SnapshotSettings` fields, for example
            ``cache=False`` or ``dirname=...``.

    Returns:
        The primary collection.  The companion collection, when loaded, is
        cached under ``companioncachename`` and can be read back with
        :func:`LabTaxa.storage.load_labmorph`.

    Raises:
        AcquisitionError: If the snapshot could not be fetched.
        LoadError: If the primary database could not be loaded.
    """

    base = settings if settings is not None else SnapshotSettings()
    request = base.with_overrides(**overrides)
    orchestrator = SnapshotOrchestrator(
        request,
        fetcher=fetcher,
        ldm_loader=ldm_loader,
        morph_loader=morph_loader,
        loader_options=loader_options,
    )
    return orchestrator.run().primary
