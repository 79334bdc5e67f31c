# === NAVMAP v1 ===
# {
#   "module": "LabTaxa.browser",
#   "purpose": "Drive a headless browser to export the Lab Data Mart snapshot",
#   "sections": [
#     {"id": "selectors", "name": "Portal Selectors", "anchor": "SEL", "kind": "constants"},
#     {"id": "driver", "name": "Driver Construction", "anchor": "DRV", "kind": "helpers"},
#     {"id": "polling", "name": "Download Polling", "anchor": "POL", "kind": "helpers"},
#     {"id": "fetcher", "name": "BrowserFetcher", "anchor": "FET", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Browser-driven acquisition of the Lab Data Mart GeoPackage snapshot.

The Lab Data Mart portal only exposes the GeoPackage export behind a
JavaScript-rendered page, so the archive is obtained by steering a headless
Firefox session: open the portal, select the spatial downloads tab, click the
GeoPackage export button, and then watch the download directory until the
archive has been fully written.  Everything that depends on the portal's
markup lives in this module so the rest of the pipeline is insulated from
redesigns of the source site.

Once the browser part is done the fetcher downloads the directly linked
companion archive, extracts both archives, and records a checksum manifest.
The browser session is closed on every exit path.
"""

from __future__ import annotations

import logging
import shutil
import time
import zipfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from selenium import webdriver
from selenium.common.exceptions import WebDriverException
from selenium.webdriver.common.by import By
from selenium.webdriver.firefox.options import Options as FirefoxOptions
from selenium.webdriver.firefox.service import Service as FirefoxService
from selenium.webdriver.support import expected_conditions as EC
from selenium.webdriver.support.ui import WebDriverWait

from .archives import extract_archives, format_bytes, remove_archives, rename_legacy_companion
from .checksums import write_snapshot_metadata
from .errors import BrowserStartupError, DownloadError
from .net import download_with_retry
from .settings import SnapshotSettings

__all__ = [
    "DOWNLOAD_BUTTON",
    "SPATIAL_TAB",
    "MIN_ARCHIVE_BYTES",
    "BrowserFetcher",
    "DownloadProgress",
    "FetchResult",
    "FetchState",
    "build_firefox_options",
    "fetch_ldm_snapshot",
    "start_firefox",
    "wait_for_download",
]

logger = logging.getLogger(__name__)

Locator = Tuple[str, str]
DriverFactory = Callable[[Path, int], Any]
Downloader = Callable[..., bool]

SPATIAL_TAB: Locator = (By.NAME, "tabularSpatial")
DOWNLOAD_BUTTON: Locator = (By.ID, "btnDownloadSpatialGeoPackageFile")
DOWNLOAD_MIME_TYPES = "application/zip,application/octet-stream"
PARTIAL_SUFFIX = ".part"
MIN_ARCHIVE_BYTES = 1_000_000
PROGRESS_EVERY = 10


class FetchState(str, Enum):
    """Lifecycle of a browser fetch."""

    IDLE = "idle"
    DRIVER_STARTED = "driver_started"
    NAVIGATED = "navigated"
    DOWNLOAD_TRIGGERED = "download_triggered"
    POLLING = "polling"
    COMPLETE = "complete"
    TIMED_OUT = "timed_out"
    CLOSED = "closed"


@dataclass(frozen=True)
class DownloadProgress:
    """Outcome of :func:`wait_for_download`."""

    complete: bool
    size_bytes: int
    elapsed: float


@dataclass
class FetchResult:
    """Artefacts produced by one :class:`BrowserFetcher` run."""

    archive_path: Path
    archive_ok: bool
    progress: Optional[DownloadProgress] = None
    companion_archive: Optional[Path] = None
    extracted: Dict[Path, List[Path]] = field(default_factory=dict)
    metadata: Optional[Dict[str, Any]] = None
    states: List[FetchState] = field(default_factory=list)


def build_firefox_options(download_dir: Path) -> FirefoxOptions:
    """Return headless Firefox options that save archives straight to ``download_dir``."""

    options = FirefoxOptions()
    options.add_argument("-headless")
    options.set_preference("browser.download.dir", str(download_dir.resolve()))
    options.set_preference("browser.download.folderList", 2)
    options.set_preference("browser.download.useDownloadDir", True)
    options.set_preference("browser.helperApps.neverAsk.saveToDisk", DOWNLOAD_MIME_TYPES)
    options.set_preference("browser.download.manager.showAlertOnComplete", False)
    options.set_preference("browser.download.manager.showWhenStarting", False)
    options.set_preference("pdfjs.disabled", True)
    options.set_preference("plugin.scan.plg.state", 0)
    return options


def start_firefox(download_dir: Path, port: int) -> webdriver.Firefox:
    """Start a headless Firefox session whose geckodriver listens on ``port``."""

    service = FirefoxService(port=port)
    return webdriver.Firefox(service=service, options=build_firefox_options(download_dir))


def _matching_files(directory: Path, filename: str) -> List[Path]:
    if not directory.is_dir():
        return []
    return [path for path in directory.iterdir() if path.name == filename and path.is_file()]


def _partial_files(directory: Path) -> List[Path]:
    if not directory.is_dir():
        return []
    return [path for path in directory.glob(f"*{PARTIAL_SUFFIX}") if path.is_file()]


def _observed_size(directory: Path, filename: str) -> Tuple[int, bool, bool]:
    """Return ``(size, has_partial, has_final)`` for ``filename`` in ``directory``."""

    partial = _partial_files(directory)
    final = _matching_files(directory, filename)
    if partial:
        size = partial[0].stat().st_size
    elif final:
        size = final[0].stat().st_size
    else:
        size = 0
    return size, bool(partial), bool(final)


def wait_for_download(
    directories: Sequence[Path],
    filename: str,
    *,
    timeout: float,
    poll_interval: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
    verbose: bool = True,
) -> DownloadProgress:
    """Poll ``directories`` until ``filename`` is completely written or ``timeout`` elapses.

    A download counts as complete once no ``*.part`` fragment remains in any
    watched directory and the final file exists with a nonzero size.  Timing
    out is reported as a warning; downstream size checks catch the result.
    """

    cycles = 0
    while True:
        observations = [_observed_size(directory, filename) for directory in directories]
        current_size = max((size for size, _, _ in observations), default=0)
        any_partial = any(partial for _, partial, _ in observations)
        any_final = any(final for _, _, final in observations)
        elapsed = cycles * poll_interval

        if not any_partial and any_final and current_size > 0:
            if verbose:
                logger.info(
                    "Download complete: %s",
                    format_bytes(current_size),
                    extra={"stage": "poll", "size_bytes": current_size},
                )
            return DownloadProgress(True, current_size, elapsed)

        if verbose and cycles % PROGRESS_EVERY == 0:
            logger.info(
                "Elapsed time %d seconds - current size: %s",
                int(elapsed),
                format_bytes(current_size),
                extra={"stage": "poll", "size_bytes": current_size},
            )

        if elapsed >= timeout:
            logger.warning(
                "Download timeout after %d seconds - file may be incomplete",
                int(timeout),
                extra={"stage": "poll"},
            )
            return DownloadProgress(False, current_size, elapsed)

        sleep(poll_interval)
        cycles += 1


class BrowserFetcher:
    """Acquire the primary and companion archives for a snapshot request."""

    def __init__(
        self,
        settings: SnapshotSettings,
        *,
        driver_factory: DriverFactory = start_firefox,
        downloader: Downloader = download_with_retry,
        sleep: Callable[[float], None] = time.sleep,
        element_wait: float = 10.0,
        overwrite: bool = False,
    ) -> None:
        self.settings = settings
        self.driver_factory = driver_factory
        self.downloader = downloader
        self.sleep = sleep
        self.element_wait = element_wait
        self.overwrite = overwrite
        self.driver: Any = None
        self.state = FetchState.IDLE
        self.history: List[FetchState] = [FetchState.IDLE]

    @property
    def target_dir(self) -> Path:
        return self.settings.dirname

    @property
    def staging_dir(self) -> Path:
        return self.settings.default_dir

    def _log(self, message: str, *args: object) -> None:
        if self.settings.verbose:
            logger.info(message, *args, extra={"stage": "fetch"})

    def _transition(self, state: FetchState) -> None:
        self.state = state
        self.history.append(state)

    def run(self) -> FetchResult:
        """Execute the full acquisition and return what was produced.

        Raises:
            BrowserStartupError: If the browser session cannot be started.
        """

        if not self.target_dir.exists():
            self._log("Creating data directory: %s", self.target_dir)
        self.target_dir.mkdir(parents=True, exist_ok=True)

        try:
            self.start_driver()
            progress: Optional[DownloadProgress] = None
            staged_before = self._staged_archives()
            if self.overwrite or not self.settings.archive_path.exists():
                self.navigate()
                self.trigger_download()
                progress = self.poll()
            self.collect_staged_archives(staged_before)
            archive_ok = self.check_archive()
            companion = self.download_companion()
            extracted = self.extract()
            metadata = write_snapshot_metadata(
                self.target_dir,
                [self.settings.db_path, self.settings.companion_db_path],
                self.settings.metadata_file,
            )
        finally:
            self.close()

        return FetchResult(
            archive_path=self.settings.archive_path,
            archive_ok=archive_ok,
            progress=progress,
            companion_archive=companion,
            extracted=extracted,
            metadata=metadata,
            states=list(self.history),
        )

    def start_driver(self) -> None:
        self._log("Starting Selenium WebDriver (Firefox)...")
        port = self.settings.port
        try:
            self.driver = self.driver_factory(self.target_dir, port)
        except (WebDriverException, OSError) as exc:
            raise BrowserStartupError(
                "Failed to start Selenium WebDriver. This typically means:\n"
                "1. Firefox is not installed (install with: apt-get install firefox)\n"
                "2. geckodriver is not available on PATH\n"
                f"3. Port {port} is already in use\n"
                f"Technical error: {exc}",
                port=port,
            ) from exc
        self._transition(FetchState.DRIVER_STARTED)

    def navigate(self) -> None:
        self.driver.get(self.settings.baseurl)
        self._log("Navigated to %s", self.settings.baseurl)
        self._transition(FetchState.NAVIGATED)
        self.sleep(2)

    def _click(self, locator: Locator, label: str) -> bool:
        """Click the element at ``locator``; a missing element is only a warning."""

        self._log("Clicking %s...", label)
        try:
            element = WebDriverWait(self.driver, self.element_wait).until(
                EC.element_to_be_clickable(locator)
            )
            element.click()
        except WebDriverException as exc:
            logger.warning(
                "Could not find/click %s: %s",
                label,
                getattr(exc, "msg", None) or exc.__class__.__name__,
                extra={"stage": "navigate"},
            )
            return False
        return True

    def trigger_download(self) -> None:
        if self._click(SPATIAL_TAB, "spatial data tab"):
            self.sleep(1)
        if self._click(DOWNLOAD_BUTTON, "GeoPackage download button"):
            self.sleep(2)
        self._log("Download initiated")
        self._transition(FetchState.DOWNLOAD_TRIGGERED)

    def poll(self) -> DownloadProgress:
        self._log("Waiting for LDM database download to complete...")
        self._transition(FetchState.POLLING)
        progress = wait_for_download(
            [self.target_dir, self.staging_dir],
            self.settings.dlname,
            timeout=self.settings.timeout,
            sleep=self.sleep,
            verbose=self.settings.verbose,
        )
        self._transition(FetchState.COMPLETE if progress.complete else FetchState.TIMED_OUT)
        return progress

    def _staged_archives(self) -> Set[Path]:
        return set(_matching_files(self.staging_dir, self.settings.dlname))

    def collect_staged_archives(self, staged_before: Iterable[Path]) -> List[Path]:
        """Move archives the browser saved to the staging directory into the target."""

        before = set(staged_before)
        new_files = [path for path in self._staged_archives() if path not in before]
        if not new_files:
            return []
        self._log("Found file(s) in %s:", self.staging_dir)
        valid: List[Path] = []
        for path in new_files:
            size = path.stat().st_size
            self._log("  %s: %s", path.name, format_bytes(size))
            if size > 0:
                valid.append(path)
        if not valid:
            logger.warning(
                "Found files in %s but all are 0 bytes - download may have failed",
                self.staging_dir,
                extra={"stage": "fetch"},
            )
            return []
        self._log("Moving %d file(s) to target directory", len(valid))
        moved = [Path(shutil.move(str(path), str(self.target_dir / path.name))) for path in valid]
        return moved

    def check_archive(self) -> bool:
        archive = self.settings.archive_path
        size = archive.stat().st_size if archive.exists() else 0
        if size < MIN_ARCHIVE_BYTES:
            logger.warning(
                "LDM database file %s is missing or suspiciously small (%d bytes). "
                "The browser download may have failed; this can happen in headless "
                "or container environments. Continuing with available data, but "
                "results may be incomplete.",
                self.settings.dlname,
                size,
                extra={"stage": "fetch", "path": archive, "size_bytes": size},
            )
            return False
        return True

    def download_companion(self) -> Optional[Path]:
        destination = self.settings.companion_archive_path
        if destination.exists():
            if zipfile.is_zipfile(destination):
                return destination
            logger.warning(
                "Existing companion archive %s is not a readable zip; downloading again",
                destination.name,
                extra={"stage": "fetch", "path": destination},
            )
            destination.unlink()
        self._log("Downloading companion morphologic database...")
        try:
            self.downloader(
                self.settings.companion_url,
                destination,
                max_attempts=self.settings.companion_max_attempts,
                verbose=self.settings.verbose,
                timeout=self.settings.companion_timeout,
            )
        except DownloadError as exc:
            logger.warning(
                "Could not download companion morphologic database. %s "
                "You can continue with LDM data only.",
                exc,
                extra={"stage": "fetch", "url": self.settings.companion_url},
            )
            return None
        return destination

    def extract(self) -> Dict[Path, List[Path]]:
        archives = sorted(self.target_dir.glob("*.zip"))
        extracted = extract_archives(
            self.target_dir, verbose=self.settings.verbose, archives=archives
        )
        rename_legacy_companion(
            self.target_dir, self.settings.companiondbname, verbose=self.settings.verbose
        )
        for expected in (self.settings.db_path, self.settings.companion_db_path):
            if expected.exists():
                size = expected.stat().st_size
                self._log("Confirmed: %s (%s)", expected.name, format_bytes(size))
            else:
                logger.warning(
                    "Expected file not found after extraction: %s",
                    expected.name,
                    extra={"stage": "extract", "path": expected},
                )
        if not self.settings.keep_zip:
            remove_archives(archives)
        return extracted

    def close(self) -> None:
        """Close the browser session; failures are reported but never raised."""

        if self.driver is None:
            self._transition(FetchState.CLOSED)
            return
        self._log("Closing browser session...")
        try:
            self.driver.quit()
        except WebDriverException as exc:
            logger.warning("Browser close failed: %s", exc, extra={"stage": "fetch"})
        else:
            self._log("Browser session closed")
        finally:
            self.driver = None
            self._transition(FetchState.CLOSED)


def fetch_ldm_snapshot(
    settings: SnapshotSettings,
    *,
    driver_factory: DriverFactory = start_firefox,
    downloader: Downloader = download_with_retry,
    sleep: Callable[[float], None] = time.sleep,
    overwrite: bool = False,
) -> FetchResult:
    """Download and extract the LDM snapshot and companion database into ``settings.dirname``."""

    fetcher = BrowserFetcher(
        settings,
        driver_factory=driver_factory,
        downloader=downloader,
        sleep=sleep,
        overwrite=overwrite,
    )
    return fetcher.run()
