"""Shared fixtures for the LabTaxa suite.

Provides builders for miniature Lab Data Mart and NASIS morphologic SQLite
databases, a scriptable stand-in for the Selenium driver, and a fake
``requests`` session so that no test touches the network or a real browser.
"""

from __future__ import annotations

import logging
import sqlite3
import zipfile
from contextlib import closing
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import pytest
import requests
from selenium.common.exceptions import NoSuchElementException, WebDriverException

from LabTaxa.logging_utils import LOGGER_NAME
from LabTaxa.settings import SnapshotSettings


@pytest.fixture(autouse=True)
def _reset_labtaxa_logger():
    """Undo ``setup_logging`` side effects so ``caplog`` keeps seeing records."""

    yield
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        if getattr(handler, "_labtaxa_managed", False):
            logger.removeHandler(handler)
            handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


def build_ldm_db(
    path: Path,
    *,
    profiles: int = 3,
    with_view: bool = True,
    orphan: bool = False,
) -> Path:
    """Write a small Lab Data Mart style database to ``path``."""

    path.parent.mkdir(parents=True, exist_ok=True)
    with closing(sqlite3.connect(path)) as con:
        con.execute(
            "CREATE TABLE lab_combine_nasis_ncss "
            "(pedon_key INTEGER, upedonid TEXT, latitude_decimal_degrees REAL)"
        )
        con.execute(
            "CREATE TABLE lab_layer (layer_key INTEGER, pedon_key INTEGER, labsampnum TEXT, "
            "hzn_top REAL, hzn_bot REAL, hzn_desgn TEXT, layer_type TEXT)"
        )
        con.execute("CREATE TABLE lab_physical_properties (labsampnum TEXT, clay_total REAL)")
        layer_key = 0
        for pedon in range(1, profiles + 1):
            con.execute(
                "INSERT INTO lab_combine_nasis_ncss VALUES (?, ?, ?)",
                (pedon, f"S2020XX{pedon:03d}", 40.0 + pedon),
            )
            # Inserted bottom-up so the loader has to sort them.
            for top, bottom, name in ((50, 100, "Bt"), (0, 20, "A"), (20, 50, "Bw")):
                layer_key += 1
                sample = f"{pedon}-{layer_key}"
                con.execute(
                    "INSERT INTO lab_layer VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (layer_key, pedon, sample, top, bottom, name, "horizon"),
                )
                con.execute(
                    "INSERT INTO lab_physical_properties VALUES (?, ?)", (sample, 10.0 + top / 10)
                )
        layer_key += 1
        con.execute(
            "INSERT INTO lab_layer VALUES (?, ?, ?, ?, ?, ?, ?)",
            (layer_key, 1, "1-x", 0, 5, "bulk", "layer"),
        )
        if orphan:
            con.execute(
                "INSERT INTO lab_layer VALUES (?, ?, ?, ?, ?, ?, ?)",
                (999, 999, "999-1", 0, 10, "A", "horizon"),
            )
        if with_view:
            con.execute(
                "CREATE VIEW lab_site_vw AS "
                "SELECT pedon_key, upedonid FROM lab_combine_nasis_ncss"
            )
        con.commit()
    return path


def build_nasis_db(
    path: Path,
    *,
    profiles: int = 2,
    legacy_schema: bool = True,
    with_metadata: bool = False,
) -> Path:
    """Write a small NASIS morphologic style database to ``path``.

    With ``legacy_schema`` the ``site`` and ``siteecositehistory`` tables lack
    the columns and lookup tables added by the companion patch.
    """

    path.parent.mkdir(parents=True, exist_ok=True)
    with closing(sqlite3.connect(path)) as con:
        site_columns = "siteiid INTEGER, usiteid TEXT, drainagecl INTEGER"
        if not legacy_schema:
            site_columns += ", stateareaiidref INTEGER, countyareaiidref INTEGER"
            site_columns += ", mlraareaiidref INTEGER"
        con.execute(f"CREATE TABLE site ({site_columns})")
        history = "siteecositehistoryiid INTEGER, siteiidref INTEGER"
        if not legacy_schema:
            history += ", recwlupdated TIMESTAMP"
        con.execute(f"CREATE TABLE siteecositehistory ({history})")
        con.execute("CREATE TABLE siteobs (siteobsiid INTEGER, siteiidref INTEGER)")
        con.execute("CREATE TABLE pedon (peiid INTEGER, siteobsiidref INTEGER, upedonid TEXT)")
        con.execute(
            "CREATE TABLE phorizon "
            "(phiid INTEGER, peiidref INTEGER, hzname TEXT, hzdept INTEGER, hzdepb INTEGER)"
        )
        for index in range(1, profiles + 1):
            site_values: Tuple = (index, f"site-{index}", 3)
            if not legacy_schema:
                site_values += (0, 0, 0)
            placeholders = ", ".join("?" for _ in site_values)
            con.execute(f"INSERT INTO site VALUES ({placeholders})", site_values)
            con.execute("INSERT INTO siteobs VALUES (?, ?)", (100 + index, index))
            con.execute(
                "INSERT INTO pedon VALUES (?, ?, ?)", (1000 + index, 100 + index, f"p{index}")
            )
            con.execute(
                "INSERT INTO phorizon VALUES (?, ?, ?, ?, ?)",
                (index * 10 + 2, 1000 + index, "Bw", 15, 40),
            )
            con.execute(
                "INSERT INTO phorizon VALUES (?, ?, ?, ?, ?)",
                (index * 10 + 1, 1000 + index, "A", 0, 15),
            )
        if not legacy_schema:
            for table in ("othvegclass", "geomorfeattype", "geomorfeat"):
                con.execute(f"CREATE TABLE {table} (id INTEGER)")
        if with_metadata:
            con.execute(
                "CREATE TABLE metadatatablecolumn (ColumnPhysicalName TEXT, DomainID INTEGER)"
            )
            con.execute(
                "CREATE TABLE metadatadomaindetail "
                "(DomainID INTEGER, ChoiceValue INTEGER, ChoiceName TEXT)"
            )
            con.execute("INSERT INTO metadatatablecolumn VALUES ('drainagecl', 7)")
            con.executemany(
                "INSERT INTO metadatadomaindetail VALUES (?, ?, ?)",
                [(7, 3, "well"), (7, 4, "moderately well")],
            )
        con.commit()
    return path


def zip_file(archive: Path, source: Path, arcname: Optional[str] = None) -> Path:
    """Zip ``source`` into ``archive`` under ``arcname``."""

    with zipfile.ZipFile(archive, "w") as bundle:
        bundle.write(source, arcname or source.name)
    return archive


@pytest.fixture
def ldm_builder() -> Callable[..., Path]:
    return build_ldm_db


@pytest.fixture
def nasis_builder() -> Callable[..., Path]:
    return build_nasis_db


@pytest.fixture
def zipper() -> Callable[..., Path]:
    return zip_file


@pytest.fixture
def settings_factory(tmp_path: Path) -> Callable[..., SnapshotSettings]:
    """Build settings rooted in a temporary directory."""

    def _factory(**overrides) -> SnapshotSettings:
        values = {
            "dirname": tmp_path / "data",
            "default_dir": tmp_path / "Downloads",
            "timeout": 5,
        }
        values.update(overrides)
        return SnapshotSettings(**values)

    return _factory


class FakeElement:
    """Clickable element that runs ``on_click`` when clicked."""

    def __init__(self, on_click: Optional[Callable[[], None]] = None) -> None:
        self.on_click = on_click
        self.clicks = 0

    def is_displayed(self) -> bool:
        return True

    def is_enabled(self) -> bool:
        return True

    def click(self) -> None:
        self.clicks += 1
        if self.on_click is not None:
            self.on_click()


class FakeDriver:
    """Minimal stand-in for a Selenium WebDriver."""

    def __init__(
        self,
        elements: Optional[Dict[Tuple[str, str], FakeElement]] = None,
        *,
        fail_quit: bool = False,
    ) -> None:
        self.elements = dict(elements or {})
        self.fail_quit = fail_quit
        self.visited: List[str] = []
        self.quit_calls = 0

    def get(self, url: str) -> None:
        self.visited.append(url)

    def find_element(self, by: str, value: str) -> FakeElement:
        try:
            return self.elements[(by, value)]
        except KeyError:
            raise NoSuchElementException(f"Unable to locate element: {value}") from None

    def quit(self) -> None:
        self.quit_calls += 1
        if self.fail_quit:
            raise WebDriverException("session already gone")


@pytest.fixture
def fake_driver_cls():
    return FakeDriver


@pytest.fixture
def fake_element_cls():
    return FakeElement


class FakeResponse:
    def __init__(self, chunks: Sequence[bytes], status_code: int = 200) -> None:
        self.chunks = list(chunks)
        self.status_code = status_code

    def __enter__(self) -> "FakeResponse":
        return self

    def __exit__(self, *exc_info) -> None:
        return None

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Server Error")

    def iter_content(self, chunk_size: int):
        yield from self.chunks


class FakeSession:
    """Session whose first ``failures`` GETs raise before a response is returned."""

    def __init__(self, payload: bytes = b"payload", *, failures: int = 0, status_code: int = 200):
        self.payload = payload
        self.failures = failures
        self.status_code = status_code
        self.calls = 0
        self.closed = False

    def get(self, url: str, **kwargs) -> FakeResponse:
        self.calls += 1
        if self.calls <= self.failures:
            raise requests.ConnectionError(f"connection reset on attempt {self.calls}")
        half = len(self.payload) // 2
        return FakeResponse([self.payload[:half], b"", self.payload[half:]], self.status_code)

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_session_cls():
    return FakeSession
