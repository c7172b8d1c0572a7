from __future__ import annotations

import pytest

from kwp_sync.__main__ import build_parser, main, read_json
from kwp_sync.errors import PayloadValidationError


def test_parser_commands(tmp_path):
    parser = build_parser()

    args = parser.parse_args(["process-queue", "--once"])
    assert args.command == "process-queue"
    assert args.once

    args = parser.parse_args(["push", str(tmp_path / "rows.json")])
    assert args.rows.name == "rows.json"

    with pytest.raises(SystemExit):
        parser.parse_args([])


def test_read_json_rejects_broken_files(tmp_path):
    broken = tmp_path / "payload.json"
    broken.write_text("{not json", encoding="utf-8")

    with pytest.raises(PayloadValidationError):
        read_json(broken)
    with pytest.raises(PayloadValidationError):
        read_json(tmp_path / "missing.json")


def test_configuration_error_exits_with_1(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for name in ("MSSQL_SERVER", "MSSQL_DB", "MSSQL_USER", "MSSQL_PASS"):
        monkeypatch.delenv(name, raising=False)

    with pytest.raises(SystemExit) as excinfo:
        main(["pull"])

    assert excinfo.value.code == 1


def test_missing_supabase_settings_exit_with_1(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for name, value in {
        "MSSQL_SERVER": "erp.local",
        "MSSQL_DB": "KWP",
        "MSSQL_USER": "sync",
        "MSSQL_PASS": "secret",
    }.items():
        monkeypatch.setenv(name, value)
    monkeypatch.delenv("SUPA_URL", raising=False)
    monkeypatch.delenv("SUPA_SERVICE_KEY", raising=False)

    with pytest.raises(SystemExit) as excinfo:
        main(["process-queue", "--once"])

    assert excinfo.value.code == 1
