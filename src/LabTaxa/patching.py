"""Schema patches applied to freshly downloaded snapshot databases.

Two kinds of patches are applied:

* **View normalisation** for the Lab Data Mart GeoPackage.  Objects named
  ``<table>_vw`` are materialised as plain tables named ``<table>``.  Every
  view is first copied into a staging table; only then are the ``_vw``
  objects dropped and the staging tables swapped in, in a single
  transaction.  A view whose copy failed is left in place together with
  every ``_vw`` object it reads from, so a rerun can still recover it.
* **Schema augmentation** for the companion NASIS morphologic database.  The
  upstream schema has drifted between releases; the columns and lookup tables
  the profile loaders expect are listed in :data:`COLUMN_FIXES` and
  :data:`LOOKUP_SCHEMAS` and are only added when missing.  Lookup tables are
  created empty: their rows are NASIS domain data that only a NASIS export
  can supply.

Each object-level patch is independent: a failure is recorded in the
returned :class:`PatchReport` and logged as a warning, and the remaining
patches still run.  Running either patch twice is a no-op the second time.
"""

from __future__ import annotations

import logging
import os
import re
import sqlite3
from contextlib import closing, contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Mapping, Set, Tuple, Union

from .errors import PatchError

__all__ = [
    "COLUMN_FIXES",
    "FIXES_REVISION",
    "LOOKUP_SCHEMAS",
    "LOOKUP_TABLES",
    "STAGING_SUFFIX",
    "VIEW_SUFFIX",
    "ColumnFix",
    "PatchReport",
    "list_objects",
    "patch_ldm_snapshot",
    "patch_morph_snapshot",
    "validate_sqlite",
]

logger = logging.getLogger(__name__)

PathLike = Union[str, os.PathLike]

VIEW_SUFFIX = "_vw"
STAGING_SUFFIX = "__labtaxa_staging"

_IDENTIFIER = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


@dataclass(frozen=True)
class ColumnFix:
    """A column the companion schema must expose, with the default used to add it."""

    table: str
    column: str
    sql_type: str
    default: str

    @property
    def key(self) -> str:
        return f"{self.table}.{self.column}"


# Bump FIXES_REVISION whenever COLUMN_FIXES or LOOKUP_SCHEMAS change.
FIXES_REVISION = 2

COLUMN_FIXES: Tuple[ColumnFix, ...] = (
    ColumnFix("siteecositehistory", "recwlupdated", "TIMESTAMP", "'1970-01-01 00:00:00'"),
    ColumnFix("site", "stateareaiidref", "INTEGER", "0"),
    ColumnFix("site", "countyareaiidref", "INTEGER", "0"),
    ColumnFix("site", "mlraareaiidref", "INTEGER", "0"),
)

# NASIS lookup tables joined by the site loaders: (column, SQL type) pairs.
LOOKUP_SCHEMAS: Mapping[str, Tuple[Tuple[str, str], ...]] = {
    "othvegclass": (
        ("ovegcliid", "INTEGER"),
        ("ovegclid", "TEXT"),
        ("ovegclname", "TEXT"),
        ("ovegcldesc", "TEXT"),
    ),
    "geomorfeattype": (
        ("geomftiid", "INTEGER"),
        ("geomftname", "TEXT"),
        ("geomftdesc", "TEXT"),
    ),
    "geomorfeat": (
        ("geomfiid", "INTEGER"),
        ("geomftiidref", "INTEGER"),
        ("geomfname", "TEXT"),
        ("geomfdesc", "TEXT"),
    ),
}

LOOKUP_TABLES: Tuple[str, ...] = tuple(LOOKUP_SCHEMAS)


@dataclass
class PatchReport:
    """Outcome of a patch run, one entry per database object."""

    dsn: Path
    applied: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed

    def record_failure(self, key: str, exc: BaseException) -> None:
        self.failed[key] = str(exc)
        logger.warning(
            "Failed to patch %s in %s: %s",
            key,
            self.dsn.name,
            exc,
            extra={"stage": "patch", "table": key, "path": self.dsn},
        )


def _quote(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


@contextmanager
def _connect(dsn: Path, *, read_only: bool = False) -> Iterator[sqlite3.Connection]:
    """Open ``dsn`` in autocommit mode, refusing to create a missing database."""

    if not dsn.is_file():
        raise PatchError(f"Database not found: {dsn}")
    uri = dsn.resolve().as_uri() + ("?mode=ro" if read_only else "?mode=rw")
    with closing(sqlite3.connect(uri, uri=True, isolation_level=None)) as con:
        yield con


@contextmanager
def _transaction(con: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    con.execute("BEGIN")
    try:
        yield con
    except BaseException:
        if con.in_transaction:
            con.execute("ROLLBACK")
        raise
    con.execute("COMMIT")


def list_objects(con: sqlite3.Connection) -> Dict[str, str]:
    """Return ``{name: type}`` for every table and view in the schema."""

    rows = con.execute(
        "SELECT name, type FROM sqlite_master "
        "WHERE type IN ('table', 'view') AND name NOT LIKE 'sqlite_%'"
    ).fetchall()
    return {name: kind for name, kind in rows}


def _column_names(con: sqlite3.Connection, table: str) -> List[str]:
    return [row[1] for row in con.execute(f"PRAGMA table_info({_quote(table)})")]


def _drop(con: sqlite3.Connection, name: str, kind: str) -> None:
    keyword = "VIEW" if kind == "view" else "TABLE"
    con.execute(f"DROP {keyword} IF EXISTS {_quote(name)}")


def validate_sqlite(dsn: PathLike, verbose: bool = True) -> bool:
    """Return ``True`` when ``dsn`` is a readable SQLite database with at least one table."""

    path = Path(dsn)
    try:
        with _connect(path, read_only=True) as con:
            objects = list_objects(con)
    except (sqlite3.Error, PatchError) as exc:
        logger.warning(
            "Failed to validate database %s: %s",
            path,
            exc,
            extra={"stage": "validate", "path": path},
        )
        return False
    if verbose:
        logger.info(
            "Database contains %d tables", len(objects), extra={"stage": "validate", "path": path}
        )
    return len(objects) > 0


def _target_name(view: str) -> str:
    return view[: -len(VIEW_SUFFIX)]


def _staging_name(view: str) -> str:
    return _target_name(view) + STAGING_SUFFIX


def _view_dependencies(
    con: sqlite3.Connection, objects: Mapping[str, str]
) -> Dict[str, Set[str]]:
    """Return ``{view: schema objects named in its definition}``."""

    rows = con.execute("SELECT name, sql FROM sqlite_master WHERE type = 'view'").fetchall()
    dependencies: Dict[str, Set[str]] = {}
    for name, sql in rows:
        tokens = set(_IDENTIFIER.findall(sql or ""))
        dependencies[name] = {token for token in tokens if token in objects and token != name}
    return dependencies


def _pinned_by(failed: Iterable[str], dependencies: Mapping[str, Set[str]]) -> Set[str]:
    """Return every object the ``failed`` views read from, transitively."""

    pinned: Set[str] = set()
    stack = list(failed)
    while stack:
        for dependency in dependencies.get(stack.pop(), ()):
            if dependency not in pinned:
                pinned.add(dependency)
                stack.append(dependency)
    return pinned


def _discard_staging(con: sqlite3.Connection, staging_tables: Iterable[str]) -> None:
    for staging in staging_tables:
        try:
            con.execute(f"DROP TABLE IF EXISTS {_quote(staging)}")
        except sqlite3.Error as exc:
            logger.warning(
                "Could not remove staging table %s: %s",
                staging,
                exc,
                extra={"stage": "patch", "table": staging},
            )


def patch_ldm_snapshot(dsn: PathLike) -> PatchReport:
    """Materialise every ``*_vw`` object in ``dsn`` as a plain table without the suffix.

    Raises:
        PatchError: If ``dsn`` does not exist.
    """

    path = Path(dsn)
    report = PatchReport(path)
    with _connect(path) as con:
        objects = list_objects(con)
        views = [
            name for name in sorted(objects) if name.endswith(VIEW_SUFFIX) and name != VIEW_SUFFIX
        ]
        if not views:
            return report

        staged: Dict[str, str] = {}
        for name in views:
            staging = _staging_name(name)
            try:
                with _transaction(con):
                    con.execute(f"DROP TABLE IF EXISTS {_quote(staging)}")
                    con.execute(f"CREATE TABLE {_quote(staging)} AS SELECT * FROM {_quote(name)}")
            except sqlite3.Error as exc:
                report.record_failure(name, exc)
                continue
            staged[name] = staging

        pinned = _pinned_by(report.failed, _view_dependencies(con, objects))
        kept = [name for name in staged if name in pinned or _target_name(name) in pinned]
        for name in sorted(kept):
            logger.warning(
                "Keeping %s: a view that could not be copied reads from it",
                name,
                extra={"stage": "patch", "table": name},
            )
            report.skipped.append(name)
            _discard_staging(con, [staged.pop(name)])
        if not staged:
            return report

        try:
            with _transaction(con):
                for name in staged:
                    _drop(con, name, objects[name])
                for name, staging in staged.items():
                    target = _target_name(name)
                    if target in objects:
                        _drop(con, target, objects[target])
                    con.execute(
                        f"CREATE TABLE {_quote(target)} AS SELECT * FROM {_quote(staging)}"
                    )
                    con.execute(f"DROP TABLE {_quote(staging)}")
        except sqlite3.Error as exc:
            for name in staged:
                report.record_failure(name, exc)
            _discard_staging(con, staged.values())
            return report

        for name in staged:
            report.applied.append(f"{name} -> {_target_name(name)}")
            logger.debug(
                "Materialised %s as %s", name, _target_name(name), extra={"stage": "patch"}
            )
    return report


def _apply_column_fix(con: sqlite3.Connection, fix: ColumnFix, report: PatchReport) -> None:
    columns = _column_names(con, fix.table)
    if not columns:
        raise sqlite3.OperationalError(f"no such table: {fix.table}")
    if fix.column in columns:
        report.skipped.append(fix.key)
        return
    con.execute(
        f"ALTER TABLE {_quote(fix.table)} ADD COLUMN {_quote(fix.column)} "
        f"{fix.sql_type} DEFAULT {fix.default}"
    )
    report.applied.append(fix.key)


def _create_lookup_table(con: sqlite3.Connection, table: str) -> None:
    columns = ", ".join(f"{_quote(name)} {sql_type}" for name, sql_type in LOOKUP_SCHEMAS[table])
    con.execute(f"CREATE TABLE {_quote(table)} ({columns})")


def patch_morph_snapshot(dsn: PathLike) -> PatchReport:
    """Add columns and (empty) lookup tables the companion database may be missing.

    Raises:
        PatchError: If ``dsn`` does not exist.
    """

    path = Path(dsn)
    report = PatchReport(path)
    with _connect(path) as con:
        for fix in COLUMN_FIXES:
            try:
                _apply_column_fix(con, fix, report)
            except sqlite3.Error as exc:
                report.record_failure(fix.key, exc)

        present = list_objects(con)
        for table in LOOKUP_TABLES:
            if table in present:
                report.skipped.append(table)
                continue
            try:
                _create_lookup_table(con, table)
            except sqlite3.Error as exc:
                report.record_failure(table, exc)
                continue
            report.applied.append(table)
    return report
