"""Archive extraction and housekeeping helpers."""

from __future__ import annotations

import logging
import zipfile

import pytest

from LabTaxa.archives import (
    extract_archive,
    extract_archives,
    format_bytes,
    remove_archives,
    rename_legacy_companion,
)


def test_format_bytes():
    assert format_bytes(512) == "512.00 B"
    assert format_bytes(2048) == "2.00 KB"
    assert format_bytes(5 * 1024 ** 3) == "5.00 GB"


def test_extract_archive_returns_written_files(tmp_path):
    archive = tmp_path / "bundle.zip"
    with zipfile.ZipFile(archive, "w") as bundle:
        bundle.writestr("ncss_labdata.gpkg", b"gpkg")
        bundle.writestr("docs/readme.txt", b"notes")

    files = extract_archive(archive, tmp_path / "out")

    assert sorted(path.name for path in files) == ["ncss_labdata.gpkg", "readme.txt"]
    assert (tmp_path / "out" / "docs" / "readme.txt").read_bytes() == b"notes"


def test_extract_archive_rejects_traversal(tmp_path):
    archive = tmp_path / "evil.zip"
    with zipfile.ZipFile(archive, "w") as bundle:
        bundle.writestr("../escape.txt", b"nope")

    with pytest.raises(ValueError, match="Unsafe path"):
        extract_archive(archive, tmp_path / "out")
    assert not (tmp_path / "escape.txt").exists()


def test_extract_archives_logs_bad_and_small_zips(tmp_path, caplog):
    """Corrupt archives are skipped with a warning; valid ones still extract."""

    good = tmp_path / "good.zip"
    with zipfile.ZipFile(good, "w") as bundle:
        bundle.writestr("ncss_morphologic.sqlite", b"db")
    (tmp_path / "bad.zip").write_bytes(b"not a zip")

    with caplog.at_level(logging.WARNING):
        results = extract_archives(tmp_path, verbose=False)

    assert list(results) == [good]
    assert (tmp_path / "ncss_morphologic.sqlite").exists()
    messages = " ".join(record.getMessage() for record in caplog.records)
    assert "Failed to extract bad.zip" in messages
    assert "suspiciously small" in messages


def test_rename_legacy_companion(tmp_path):
    (tmp_path / "NASIS_Morphological_09142021.sqlite").write_bytes(b"db")

    renamed = rename_legacy_companion(tmp_path, "ncss_morphologic.sqlite")

    assert renamed == tmp_path / "ncss_morphologic.sqlite"
    assert renamed.read_bytes() == b"db"
    assert rename_legacy_companion(tmp_path, "ncss_morphologic.sqlite") is None


def test_remove_archives_counts_existing(tmp_path):
    first = tmp_path / "a.zip"
    first.write_bytes(b"a")

    assert remove_archives([first, tmp_path / "b.zip"]) == 1
    assert not first.exists()
