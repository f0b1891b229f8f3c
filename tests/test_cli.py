"""Tests for the operational command-line interface."""

import json

import pytest
from sqlalchemy import inspect

from pramaan import config as config_module
from pramaan.cli import PramaanCLI
from pramaan.constants import PROOF_SYSTEM_ID
from pramaan.storage import Database


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite:///{tmp_path / 'cli.db'}"


def test_init_db_creates_schema(database_url, capsys):
    assert PramaanCLI().run_from_args(["--database-url", database_url, "init-db"]) == 0
    assert "Database ready" in capsys.readouterr().out

    database = Database(database_url)
    try:
        tables = set(inspect(database.engine).get_table_names())
    finally:
        database.dispose()
    assert {
        "biometric_registry",
        "challenges",
        "session_nullifiers",
        "attendance_records",
        "status_overrides",
    } <= tables


def test_params_prints_proof_system(capsys):
    assert PramaanCLI().run_from_args(["params"]) == 0
    description = json.loads(capsys.readouterr().out)
    assert description["proof_system"] == PROOF_SYSTEM_ID
    assert description["group"]["modulus_bits"] == 2048


def test_config_prints_summary(capsys):
    assert PramaanCLI().run_from_args(["config"]) == 0
    summary = json.loads(capsys.readouterr().out)
    assert "protocol" in summary


def test_sweep(database_url, monkeypatch, capsys):
    monkeypatch.setattr(config_module, "REGISTRY_PEPPER", "a-production-pepper-value")
    assert PramaanCLI().run_from_args(["--database-url", database_url, "sweep"]) == 0
    assert "Expired 0 pending record(s)" in capsys.readouterr().out


def test_sweep_without_pepper_fails(database_url, monkeypatch, capsys):
    monkeypatch.setattr(config_module, "REGISTRY_PEPPER", "")
    monkeypatch.setattr(config_module, "DEBUG_MODE", False)
    assert PramaanCLI().run_from_args(["--database-url", database_url, "sweep"]) == 1
    assert "REGISTRY_PEPPER" in capsys.readouterr().err


def test_missing_command():
    with pytest.raises(SystemExit):
        PramaanCLI().run_from_args([])
