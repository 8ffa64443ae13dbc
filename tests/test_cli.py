import json

import pytest
from typer.testing import CliRunner

from vaultledger.adapters.sql_store import SqlStateStore
from vaultledger.domain.models import DailySnapshot
from vaultledger.presentation.cli import app

from .test_config import RAW

runner = CliRunner()


@pytest.fixture
def env(tmp_path, monkeypatch):
    vaults = tmp_path / "vaults.json"
    vaults.write_text(json.dumps([RAW]))
    db = f"sqlite:///{tmp_path / 'cli.db'}"
    monkeypatch.setenv("VAULTLEDGER_VAULTS_FILE", str(vaults))
    monkeypatch.setenv("VAULTLEDGER_DB_URL", db)
    return tmp_path, db


def test_status_lists_chain_cursor(env):
    _, db = env
    store = SqlStateStore.from_url(db)
    store.advance_cursor("ethereum", 1234)
    store.close()
    result = runner.invoke(app, ["status", "--env-file", "missing.env"])
    assert result.exit_code == 0, result.output
    assert "ethereum" in result.output and "1234" in result.output


def test_export_snapshots_writes_parquet(env):
    tmp_path, db = env
    store = SqlStateStore.from_url(db)
    store.put_snapshot(DailySnapshot("2024-01-01", "x-eth", "ethereum", "0x" + "ab" * 20,
                                     "1", "0", "1", "1", "1", "recompute"))
    store.close()
    out_dir = tmp_path / "export"
    result = runner.invoke(app, ["export-snapshots", "--out-dir", str(out_dir), "--env-file", "missing.env"])
    assert result.exit_code == 0, result.output
    assert (out_dir / "snapshots.parquet").exists()
