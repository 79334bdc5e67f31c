"""Command line interface smoke tests via Typer's ``CliRunner``."""

from __future__ import annotations

import hashlib
import json

from typer.testing import CliRunner

from LabTaxa import __version__, cli
from LabTaxa.errors import AcquisitionError
from LabTaxa.storage import save

runner = CliRunner()


def test_version_flag():
    result = runner.invoke(cli.app, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_checksum_command(tmp_path):
    path = tmp_path / "blob.bin"
    path.write_bytes(b"abc")

    result = runner.invoke(cli.app, ["checksum", str(path)])

    assert result.exit_code == 0
    assert hashlib.sha256(b"abc").hexdigest() in result.stdout


def test_checksum_missing_file_fails(tmp_path):
    result = runner.invoke(cli.app, ["checksum", str(tmp_path / "missing.bin")])

    assert result.exit_code == 1


def test_metadata_command_writes_manifest(tmp_path):
    data = tmp_path / "ncss_labdata.gpkg"
    data.write_bytes(b"gpkg")

    result = runner.invoke(
        cli.app, ["metadata", str(data), "--dir", str(tmp_path / "out"), "--output", "meta.json"]
    )

    assert result.exit_code == 0
    written = json.loads((tmp_path / "out" / "meta.json").read_text())
    assert written["checksums"][0]["file"] == "ncss_labdata.gpkg"


def test_cache_info_lists_artefacts(tmp_path):
    save({"cached": True}, tmp_path, "cached-LDM-SPC.pkl")

    result = runner.invoke(cli.app, ["cache-info", "--dir", str(tmp_path)])

    assert result.exit_code == 0
    assert "primary cache" in result.stdout
    assert "missing" in result.stdout


def test_snapshot_command_reports_profiles(tmp_path, monkeypatch, ldm_builder):
    captured = {}

    def _fake_snapshot(**overrides):
        captured.update(overrides)
        from LabTaxa.profiles import load_ldm

        return load_ldm(ldm_builder(tmp_path / "db" / "ncss_labdata.gpkg"))

    monkeypatch.setattr(cli, "get_ldm_snapshot", _fake_snapshot)

    result = runner.invoke(
        cli.app,
        [
            "snapshot",
            "--dir",
            str(tmp_path / "data"),
            "--no-cache",
            "--port",
            "4999",
            "--log-dir",
            str(tmp_path / "logs"),
        ],
    )

    assert result.exit_code == 0, result.stdout
    assert "3 profiles" in result.stdout
    assert captured["cache"] is False
    assert captured["port"] == 4999
    assert captured["dirname"] == tmp_path / "data"


def test_snapshot_command_failure_exits_nonzero(tmp_path, monkeypatch):
    def _failing_snapshot(**overrides):
        raise AcquisitionError("Failed to download snapshot: offline")

    monkeypatch.setattr(cli, "get_ldm_snapshot", _failing_snapshot)

    result = runner.invoke(cli.app, ["snapshot", "--log-dir", str(tmp_path / "logs")])

    assert result.exit_code == 1
    assert "offline" in result.stdout
