"""Soil profile collections and the loaders that build them from snapshot databases.

A :class:`ProfileCollection` pairs a site table (one row per profile) with a
horizon table (depth-ordered rows per profile) linked by a profile
identifier column.  Two loaders are provided:

* :func:`load_ldm` reads the patched Lab Data Mart GeoPackage.
* :func:`load_nasis` reads the companion NASIS morphologic database.

Both loaders guarantee that every horizon references exactly one profile:
horizons whose identifier is missing from the site table are dropped with a
warning, and duplicate site rows are collapsed to the first occurrence.
"""

from __future__ import annotations

import logging
import os
import sqlite3
from contextlib import closing
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import pandas as pd

__all__ = [
    "LDM_DEPTHS",
    "LDM_ID",
    "LDM_LAYER_TABLE",
    "LDM_PROPERTY_TABLES",
    "LDM_SITE_TABLE",
    "NASIS_DEPTHS",
    "NASIS_ID",
    "ProfileCollection",
    "load_ldm",
    "load_nasis",
]

logger = logging.getLogger(__name__)

PathLike = Union[str, os.PathLike]

LDM_SITE_TABLE = "lab_combine_nasis_ncss"
LDM_LAYER_TABLE = "lab_layer"
LDM_PROPERTY_TABLES: Tuple[str, ...] = (
    "lab_physical_properties",
    "lab_chemical_properties",
    "lab_calculations_including_estimates_and_default_values",
)
LDM_ID = "pedon_key"
LDM_DEPTHS = ("hzn_top", "hzn_bot")
LDM_SAMPLE_KEY = "labsampnum"

NASIS_ID = "peiid"
NASIS_DEPTHS = ("hzdept", "hzdepb")


@dataclass
class ProfileCollection:
    """Site and horizon tables for a set of soil profiles."""

    site: pd.DataFrame
    horizons: pd.DataFrame
    idname: str
    depth_names: Tuple[str, str]
    source: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.site)

    def __repr__(self) -> str:
        return (
            f"ProfileCollection(profiles={len(self)}, horizons={self.n_horizons}, "
            f"idname={self.idname!r}, source={self.source!r})"
        )

    @property
    def n_horizons(self) -> int:
        return len(self.horizons)

    @property
    def profile_ids(self) -> List[Any]:
        return self.site[self.idname].tolist()

    def horizons_for(self, profile_id: Any) -> pd.DataFrame:
        """Return the depth-ordered horizons of one profile."""

        mask = self.horizons[self.idname] == profile_id
        return self.horizons.loc[mask].reset_index(drop=True)

    def subset(self, profile_ids: Iterable[Any]) -> "ProfileCollection":
        """Return a new collection restricted to ``profile_ids``."""

        wanted = set(profile_ids)
        site = self.site.loc[self.site[self.idname].isin(wanted)].reset_index(drop=True)
        horizons = self.horizons.loc[self.horizons[self.idname].isin(wanted)].reset_index(
            drop=True
        )
        return ProfileCollection(
            site, horizons, self.idname, self.depth_names, self.source, dict(self.metadata)
        )

    def depth_logic_errors(self) -> pd.DataFrame:
        """Report profiles whose horizon depths are missing, inverted, overlapping, or gapped.

        Returns:
            A frame indexed by profile id with boolean ``missing``, ``inverted``,
            ``overlap`` and ``gap`` columns, containing only profiles with at
            least one problem.
        """

        top, bottom = self.depth_names
        columns = ["missing", "inverted", "overlap", "gap"]
        if self.horizons.empty:
            return pd.DataFrame(columns=columns, dtype=bool)

        hz = self.horizons[[self.idname, top, bottom]].copy()
        hz[top] = pd.to_numeric(hz[top], errors="coerce")
        hz[bottom] = pd.to_numeric(hz[bottom], errors="coerce")
        next_top = hz.groupby(self.idname, sort=False)[top].shift(-1)
        flags = pd.DataFrame(
            {
                self.idname: hz[self.idname],
                "missing": hz[top].isna() | hz[bottom].isna(),
                "inverted": hz[top] >= hz[bottom],
                "overlap": next_top < hz[bottom],
                "gap": next_top > hz[bottom],
            }
        )
        per_profile = flags.groupby(self.idname, sort=False)[columns].any()
        return per_profile.loc[per_profile.any(axis=1)]

    def summary(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "profiles": len(self),
            "horizons": self.n_horizons,
            "site_columns": len(self.site.columns),
            "horizon_columns": len(self.horizons.columns),
        }


def _quote(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


def _tables(con: sqlite3.Connection) -> List[str]:
    rows = con.execute("SELECT name FROM sqlite_master WHERE type IN ('table', 'view')")
    return [row[0] for row in rows]


def _read_table(
    con: sqlite3.Connection,
    table: str,
    *,
    chunk_size: Optional[int] = None,
    where: str = "",
    params: Sequence[Any] = (),
) -> pd.DataFrame:
    query = f"SELECT * FROM {_quote(table)}{where}"
    if not chunk_size:
        return pd.read_sql_query(query, con, params=list(params))
    chunks = list(pd.read_sql_query(query, con, params=list(params), chunksize=chunk_size))
    if not chunks:
        return pd.read_sql_query(f"SELECT * FROM {_quote(table)} LIMIT 0", con)
    return pd.concat(chunks, ignore_index=True)


def _open_read_only(dsn: Path) -> sqlite3.Connection:
    if not dsn.is_file():
        raise FileNotFoundError(f"Database not found: {dsn}")
    return sqlite3.connect(dsn.resolve().as_uri() + "?mode=ro", uri=True)


def _build_collection(
    site: pd.DataFrame,
    horizons: pd.DataFrame,
    idname: str,
    depth_names: Tuple[str, str],
    source: str,
) -> ProfileCollection:
    for name, frame in (("site", site), ("horizon", horizons)):
        if idname not in frame.columns:
            raise KeyError(f"{name} table has no profile id column {idname!r}")
    top, bottom = depth_names
    for column in depth_names:
        if column not in horizons.columns:
            raise KeyError(f"horizon table has no depth column {column!r}")

    duplicated = site[idname].duplicated()
    if duplicated.any():
        logger.warning(
            "Dropping %d duplicate site rows in %s",
            int(duplicated.sum()),
            source,
            extra={"stage": "load"},
        )
        site = site.loc[~duplicated]
    site = site.loc[site[idname].notna()].reset_index(drop=True)

    orphaned = ~horizons[idname].isin(site[idname])
    if orphaned.any():
        logger.warning(
            "Dropping %d horizons without a matching profile in %s",
            int(orphaned.sum()),
            source,
            extra={"stage": "load"},
        )
        horizons = horizons.loc[~orphaned]
    horizons = horizons.sort_values([idname, top, bottom], kind="mergesort", na_position="last")
    return ProfileCollection(
        site=site,
        horizons=horizons.reset_index(drop=True),
        idname=idname,
        depth_names=(top, bottom),
        source=source,
    )


def load_ldm(
    dsn: PathLike,
    *,
    chunk_size: int = 10_000_000,
    layer_types: Optional[Sequence[str]] = None,
    property_tables: Sequence[str] = LDM_PROPERTY_TABLES,
) -> ProfileCollection:
    """Load the Lab Data Mart database at ``dsn`` into a :class:`ProfileCollection`.

    Args:
        dsn: Path to the patched GeoPackage/SQLite database.
        chunk_size: Rows fetched per query round trip.
        layer_types: Restrict horizons to these ``layer_type`` values.
        property_tables: Laboratory property tables joined onto horizons by
            ``labsampnum`` when present in the database.

    Raises:
        FileNotFoundError: If ``dsn`` does not exist.
        KeyError: If the site or layer table lacks the expected columns.
        sqlite3.Error: If the database cannot be read.
    """

    path = Path(dsn)
    with closing(_open_read_only(path)) as con:
        available = set(_tables(con))
        for required in (LDM_SITE_TABLE, LDM_LAYER_TABLE):
            if required not in available:
                raise KeyError(f"table {required!r} not found in {path.name}")

        site = _read_table(con, LDM_SITE_TABLE, chunk_size=chunk_size)
        if layer_types:
            placeholders = ", ".join("?" for _ in layer_types)
            horizons = _read_table(
                con,
                LDM_LAYER_TABLE,
                chunk_size=chunk_size,
                where=f" WHERE layer_type IN ({placeholders})",
                params=list(layer_types),
            )
        else:
            horizons = _read_table(con, LDM_LAYER_TABLE, chunk_size=chunk_size)

        if LDM_SAMPLE_KEY in horizons.columns:
            for table in property_tables:
                if table not in available:
                    continue
                props = _read_table(con, table, chunk_size=chunk_size)
                if LDM_SAMPLE_KEY not in props.columns:
                    continue
                keep = [LDM_SAMPLE_KEY] + [c for c in props.columns if c not in horizons.columns]
                props = props[keep].drop_duplicates(LDM_SAMPLE_KEY)
                horizons = horizons.merge(props, on=LDM_SAMPLE_KEY, how="left")

    return _build_collection(site, horizons, LDM_ID, LDM_DEPTHS, str(path))


def _choice_labels(con: sqlite3.Connection, available: Iterable[str]) -> Dict[str, Dict[Any, str]]:
    """Return ``{column: {code: label}}`` from the NASIS metadata tables, if present."""

    tables = set(available)
    if not {"metadatadomaindetail", "metadatatablecolumn"} <= tables:
        return {}
    domains = pd.read_sql_query(
        "SELECT DISTINCT ColumnPhysicalName, DomainID FROM metadatatablecolumn "
        "WHERE DomainID IS NOT NULL",
        con,
    )
    choices = pd.read_sql_query(
        "SELECT DomainID, ChoiceValue, ChoiceName FROM metadatadomaindetail", con
    )
    labels: Dict[str, Dict[Any, str]] = {}
    merged = domains.merge(choices, on="DomainID")
    for column, group in merged.groupby("ColumnPhysicalName"):
        labels[str(column)] = dict(zip(group["ChoiceValue"], group["ChoiceName"]))
    return labels


def _uncode(frame: pd.DataFrame, labels: Dict[str, Dict[Any, str]]) -> pd.DataFrame:
    decoded = frame.copy()
    for column in decoded.columns:
        mapping = labels.get(column)
        if mapping:
            decoded[column] = decoded[column].map(lambda value: mapping.get(value, value))
    return decoded


def load_nasis(dsn: PathLike, *, uncode: bool = False) -> ProfileCollection:
    """Load the NASIS morphologic database at ``dsn`` into a :class:`ProfileCollection`.

    Pedons are joined to their site observation and site records; horizons
    come from ``phorizon``.  Coded values are left untouched unless
    ``uncode`` is true and the database carries the NASIS metadata tables.

    Raises:
        FileNotFoundError: If ``dsn`` does not exist.
        KeyError: If the ``pedon`` or ``phorizon`` tables are missing.
        sqlite3.Error: If the database cannot be read.
    """

    path = Path(dsn)
    with closing(_open_read_only(path)) as con:
        available = set(_tables(con))
        for required in ("pedon", "phorizon"):
            if required not in available:
                raise KeyError(f"table {required!r} not found in {path.name}")

        site = _read_table(con, "pedon")
        if "siteobs" in available and "siteobsiidref" in site.columns:
            siteobs = _read_table(con, "siteobs")
            site = site.merge(
                siteobs,
                left_on="siteobsiidref",
                right_on="siteobsiid",
                how="left",
                suffixes=("", "_siteobs"),
            )
        if "site" in available and "siteiidref" in site.columns:
            site = site.merge(
                _read_table(con, "site"),
                left_on="siteiidref",
                right_on="siteiid",
                how="left",
                suffixes=("", "_site"),
            )

        horizons = _read_table(con, "phorizon").rename(columns={"peiidref": NASIS_ID})

        if uncode:
            labels = _choice_labels(con, available)
            site = _uncode(site, labels)
            horizons = _uncode(horizons, labels)

    return _build_collection(site, horizons, NASIS_ID, NASIS_DEPTHS, str(path))
