from __future__ import annotations

import json

import pytest
from typer.testing import CliRunner

from ledgersync.cli import app
from ledgersync.db import session as db_session

runner = CliRunner()

SUMMARY = {
    "id": 12345,
    "currency": "EUR",
    "totalValue": 1500,
    "investments": {"currentValue": 1000},
    "cash": {"availableToTrade": 300},
}

RECORDS = [
    {"action": "Deposit", "time": "2026-01-02 09:00:00", "id": "D1", "amount": "1000", "currency": "EUR"},
    {"action": "Card debit", "time": "2026-01-05 12:00:00", "id": "C1", "amount": "-12.5", "currency": "EUR",
     "merchant_name": "Coffee Shop"},
    {"action": "Market buy", "time": "2026-01-03 15:19:21", "id": "B1", "amount": "250", "currency": "EUR",
     "ticker": "AAPL", "shares": "2", "price_per_share": "125", "share_currency": "USD"},
]


@pytest.fixture()
def cli_env(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'data' / 'cli.db'}")
    monkeypatch.setenv("APP_SECRET_KEY", "test-key")
    monkeypatch.setattr(db_session, "_ENGINE", None)
    monkeypatch.setattr(db_session, "_SESSION_FACTORY", None)

    fixtures = tmp_path / "fixtures"
    fixtures.mkdir()
    (fixtures / "summary.json").write_text(json.dumps(SUMMARY))
    (fixtures / "transactions.json").write_text(json.dumps(RECORDS))
    return fixtures


def _json_out(result) -> dict:
    out = result.stdout
    return json.loads(out[out.index("{"):])


def test_cli_end_to_end_with_fixture_connection(cli_env):
    result = runner.invoke(app, ["init-db"])
    assert result.exit_code == 0, result.output
    assert "Database initialized." in result.stdout

    result = runner.invoke(app, ["add-connection", "--name", "T212", "--fixture-dir", str(cli_env)])
    assert result.exit_code == 0, result.output
    assert "Created connection id=1" in result.stdout

    # First sync only discovers accounts.
    result = runner.invoke(app, ["sync", "--connection-id", "1"])
    assert result.exit_code == 0, result.output
    first = _json_out(result)
    assert first["status"] == "SUCCESS"
    assert first["stats"]["unlinked_accounts"] == 2

    for kind in ("cash", "investment"):
        result = runner.invoke(app, ["link-account", "--connection-id", "1", "--kind", kind])
        assert result.exit_code == 0, result.output
        assert f"Linked {kind} account" in result.stdout

    result = runner.invoke(app, ["sync", "--connection-id", "1"])
    assert result.exit_code == 0, result.output
    second = _json_out(result)
    assert second["status"] == "SUCCESS"
    assert second["stats"]["batches"]["cash"]["imported"] == 2
    assert second["stats"]["batches"]["investment"]["imported"] == 1

    result = runner.invoke(app, ["process-account", "--broker-account-id", "1"])
    assert result.exit_code == 0, result.output
    batch = _json_out(result)
    assert batch == {"success": True, "total": 2, "imported": 2, "failed": 0, "errors": []}


def test_add_connection_requires_credentials_or_fixture(cli_env):
    runner.invoke(app, ["init-db"])
    result = runner.invoke(app, ["add-connection", "--name", "T212", "--api-key", "only-key"])
    assert result.exit_code == 2


def test_add_connection_stores_encrypted_credentials(cli_env):
    runner.invoke(app, ["init-db"])
    result = runner.invoke(app, ["add-connection", "--name", "Live", "--api-key", "k", "--api-secret", "s"])
    assert result.exit_code == 0, result.output

    from ledgersync.core.credential_store import load_api_credentials

    with db_session.get_session() as s:
        assert load_api_credentials(s, connection_id=1) == ("k", "s")


def test_link_before_discovery_fails(cli_env):
    runner.invoke(app, ["init-db"])
    runner.invoke(app, ["add-connection", "--name", "T212", "--fixture-dir", str(cli_env)])
    result = runner.invoke(app, ["link-account", "--connection-id", "1", "--kind", "cash"])
    assert result.exit_code == 2


def test_sync_unknown_connection_exits_2(cli_env):
    runner.invoke(app, ["init-db"])
    result = runner.invoke(app, ["sync", "--connection-id", "42"])
    assert result.exit_code == 2
