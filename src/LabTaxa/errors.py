"""Exception hierarchy shared across snapshot acquisition, patching, and loading.

The snapshot workflow spans browser automation, HTTP retrieval, archive
extraction, schema patching, and database loading.  Fatal conditions are
raised as subclasses of :class:`LabTaxaError` so callers can react to a
high-level category while still inspecting the specific failure.  Degraded
conditions (missing page elements, individual patch failures, companion
database problems) are logged by the component that encounters them and are
never raised through this hierarchy.
"""

from __future__ import annotations

from typing import Optional

__all__ = [
    "LabTaxaError",
    "DownloadError",
    "BrowserStartupError",
    "AcquisitionError",
    "LoadError",
    "PatchError",
]


class LabTaxaError(RuntimeError):
    """Base exception for snapshot acquisition, patching, or loading failures."""


class DownloadError(LabTaxaError):
    """Raised when an HTTP download exhausts its retry budget."""

    def __init__(self, message: str, *, url: str, attempts: int) -> None:
        super().__init__(message)
        self.url = url
        self.attempts = attempts


class BrowserStartupError(LabTaxaError):
    """Raised when the headless browser session cannot be started."""

    def __init__(self, message: str, *, port: Optional[int] = None) -> None:
        super().__init__(message)
        self.port = port


class AcquisitionError(LabTaxaError):
    """Raised when the snapshot could not be fetched from the portal."""


class LoadError(LabTaxaError):
    """Raised when the primary database cannot be loaded into a collection."""


class PatchError(LabTaxaError):
    """Raised when a database cannot be opened for patching at all."""
