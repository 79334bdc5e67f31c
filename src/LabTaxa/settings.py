# === NAVMAP v1 ===
# {
#   "module": "LabTaxa.settings",
#   "purpose": "Snapshot request settings, portal URLs, and default directories",
#   "sections": [
#     {"id": "urls", "name": "Portal URLs", "anchor": "URL", "kind": "constants"},
#     {"id": "dirs", "name": "Default Directories", "anchor": "DIR", "kind": "helpers"},
#     {"id": "settings", "name": "SnapshotSettings", "anchor": "SET", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Configuration for a single snapshot acquisition.

:class:`SnapshotSettings` bundles every knob of the acquisition workflow:
where artefacts live, how they are named, how the browser driver is reached,
and whether caching is enabled.  Values come from keyword arguments first and
``LABTAXA_*`` environment variables second, falling back to the defaults
below.  Instances are frozen; use :meth:`SnapshotSettings.with_overrides` to
derive a modified copy.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import platformdirs
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

__all__ = [
    "APP_NAME",
    "LDM_DOWNLOAD_URL",
    "COMPANION_DOWNLOAD_URL",
    "SnapshotSettings",
    "default_data_dir",
]

APP_NAME = "labtaxa"

LDM_DOWNLOAD_URL = "https://ncsslabdatamart.sc.egov.usda.gov/database_download.aspx"
COMPANION_DOWNLOAD_URL = "https://new.cloudvault.usda.gov/index.php/s/tdnrQzzJ7ty39gs/download"


def default_data_dir() -> Path:
    """Return the platform-specific user data directory for cached snapshots."""

    return Path(platformdirs.user_data_dir(APP_NAME))


class SnapshotSettings(BaseSettings):
    """Immutable configuration bundle for one snapshot request."""

    dirname: Path = Field(default_factory=default_data_dir, description="Target data directory")
    dlname: str = Field(default="ncss_labdatagpkg.zip", description="Primary archive file name")
    dbname: str = Field(default="ncss_labdata.gpkg", description="Primary database file name")
    cachename: str = Field(default="cached-LDM-SPC.pkl", description="Primary cache file name")
    companiondlname: str = Field(default="ncss_morphologic.zip")
    companiondbname: str = Field(default="ncss_morphologic.sqlite")
    companioncachename: str = Field(default="cached-morph-SPC.pkl")
    metadata_file: str = Field(default="snapshot-metadata.json")
    port: int = Field(default=4567, gt=0, lt=65536, description="Browser driver port")
    timeout: float = Field(default=1e5, gt=0, description="Download polling timeout (seconds)")
    baseurl: str = Field(default=LDM_DOWNLOAD_URL, description="Lab Data Mart portal URL")
    companion_url: str = Field(default=COMPANION_DOWNLOAD_URL)
    companion_max_attempts: int = Field(default=5, ge=1)
    companion_timeout: float = Field(default=3600, gt=0, description="Per-attempt HTTP timeout")
    default_dir: Path = Field(
        default=Path("~/Downloads"), description="Browser download staging directory"
    )
    cache: bool = True
    verbose: bool = True
    keep_zip: bool = False

    model_config = SettingsConfigDict(
        env_prefix="LABTAXA_",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    @field_validator("dirname", "default_dir", mode="after")
    @classmethod
    def _expand_user(cls, value: Path) -> Path:
        return value.expanduser()

    @property
    def cache_path(self) -> Path:
        return self.dirname / self.cachename

    @property
    def companion_cache_path(self) -> Path:
        return self.dirname / self.companioncachename

    @property
    def db_path(self) -> Path:
        return self.dirname / self.dbname

    @property
    def companion_db_path(self) -> Path:
        return self.dirname / self.companiondbname

    @property
    def archive_path(self) -> Path:
        return self.dirname / self.dlname

    @property
    def companion_archive_path(self) -> Path:
        return self.dirname / self.companiondlname

    def with_overrides(self, **overrides: Any) -> "SnapshotSettings":
        """Return a validated copy with ``overrides`` applied.

        Raises:
            TypeError: If an override does not name a known setting.
        """

        unknown = sorted(set(overrides) - set(type(self).model_fields))
        if unknown:
            raise TypeError(f"Unknown snapshot setting(s): {', '.join(unknown)}")
        if not overrides:
            return self
        payload = self.model_dump()
        payload.update(overrides)
        return type(self)(**payload)
