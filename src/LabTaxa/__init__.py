# === NAVMAP v1 ===
# {
#   "module": "LabTaxa",
#   "purpose": "Package initialization and lazy public API for LabTaxa",
#   "sections": [
#     {"id": "getattr", "name": "__getattr__", "anchor": "function-getattr", "kind": "function"},
#     {"id": "dir", "name": "__dir__", "anchor": "function-dir", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Public API for acquiring and caching KSSL Lab Data Mart snapshots.

The facade resolves names lazily so that ``import LabTaxa`` stays cheap and
does not pull in the browser automation stack until it is needed.
"""

from __future__ import annotations

from importlib import import_module
from typing import Any, Dict, Tuple

__version__ = "0.4.0"

_EXPORTS: Dict[str, Tuple[str, str]] = {
    "AcquisitionError": ("LabTaxa.errors", "AcquisitionError"),
    "BrowserStartupError": ("LabTaxa.errors", "BrowserStartupError"),
    "DownloadError": ("LabTaxa.errors", "DownloadError"),
    "LabTaxaError": ("LabTaxa.errors", "LabTaxaError"),
    "LoadError": ("LabTaxa.errors", "LoadError"),
    "LOAD_FAILED": ("LabTaxa.storage", "LOAD_FAILED"),
    "ProfileCollection": ("LabTaxa.profiles", "ProfileCollection"),
    "SnapshotSettings": ("LabTaxa.settings", "SnapshotSettings"),
    "cache_labtaxa": ("LabTaxa.storage", "cache_labtaxa"),
    "calculate_checksum": ("LabTaxa.checksums", "calculate_checksum"),
    "download_with_retry": ("LabTaxa.net", "download_with_retry"),
    "fetch_ldm_snapshot": ("LabTaxa.browser", "fetch_ldm_snapshot"),
    "get_ldm_snapshot": ("LabTaxa.snapshot", "get_ldm_snapshot"),
    "ldm_data_dir": ("LabTaxa.storage", "ldm_data_dir"),
    "ldm_db_download_url": ("LabTaxa.snapshot", "ldm_db_download_url"),
    "load_labmorph": ("LabTaxa.storage", "load_labmorph"),
    "load_labtaxa": ("LabTaxa.storage", "load_labtaxa"),
    "load_ldm": ("LabTaxa.profiles", "load_ldm"),
    "load_nasis": ("LabTaxa.profiles", "load_nasis"),
    "patch_ldm_snapshot": ("LabTaxa.patching", "patch_ldm_snapshot"),
    "patch_morph_snapshot": ("LabTaxa.patching", "patch_morph_snapshot"),
    "setup_logging": ("LabTaxa.logging_utils", "setup_logging"),
    "verify_checksum": ("LabTaxa.checksums", "verify_checksum"),
    "write_snapshot_metadata": ("LabTaxa.checksums", "write_snapshot_metadata"),
}

__all__ = ["__version__", *sorted(_EXPORTS)]


def __getattr__(name: str) -> Any:
    """Import public attributes on first access."""

    target = _EXPORTS.get(name)
    if target is None:
        raise AttributeError(f"module '{__name__}' has no attribute '{name}'")
    module_name, attribute = target
    value = getattr(import_module(module_name), attribute)
    globals()[name] = value
    return value


def __dir__() -> list[str]:
    """Expose lazily-populated attributes in ``dir()`` results."""

    return sorted(set(globals()) | set(__all__))
