from __future__ import annotations

import json
import logging
import os
from typing import Optional

import typer
from dotenv import load_dotenv

app = typer.Typer(help="ledgersync: broker export -> ledger sync CLI")


def _setup() -> None:
    load_dotenv()
    level = (os.environ.get("LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    _check_runtime()


def _check_runtime() -> None:
    try:
        import sqlalchemy  # noqa: F401
    except Exception as e:
        typer.echo(
            "Runtime dependency error: SQLAlchemy failed to import.\n"
            "Create a virtualenv and install the project:\n"
            "  python -m venv .venv\n"
            "  source .venv/bin/activate\n"
            "  pip install -e .\n\n"
            f"Original error: {type(e).__name__}: {e}",
            err=True,
        )
        raise typer.Exit(code=1)


@app.command("init-db")
def init_db_cmd():
    _setup()
    from ledgersync.db.init_db import init_db

    init_db()
    typer.echo("Database initialized.")


@app.command("add-connection")
def add_connection_cmd(
    name: str = typer.Option(..., help="Unique connection name"),
    api_key: Optional[str] = typer.Option(None, help="API key (omit with --fixture-dir)"),
    api_secret: Optional[str] = typer.Option(None, help="API secret (omit with --fixture-dir)"),
    fixture_dir: Optional[str] = typer.Option(None, help="Serve summary.json/transactions.json instead of the API"),
    actor: str = typer.Option("cli", help="Audit actor"),
):
    _setup()
    from ledgersync.core.credential_store import CredentialError, store_api_credentials
    from ledgersync.db.audit import log_change
    from ledgersync.db.models import BrokerConnection
    from ledgersync.db.session import get_session

    if not fixture_dir and not (api_key and api_secret):
        typer.echo("Either --api-key/--api-secret or --fixture-dir is required.", err=True)
        raise typer.Exit(code=2)

    with get_session() as session:
        conn = BrokerConnection(name=name, provider="TRADING212", metadata_json={})
        if fixture_dir:
            conn.metadata_json = {"fixture_dir": fixture_dir}
        session.add(conn)
        session.flush()
        if api_key and api_secret:
            try:
                store_api_credentials(session, connection_id=conn.id, api_key=api_key, api_secret=api_secret)
            except CredentialError as e:
                typer.echo(str(e), err=True)
                raise typer.Exit(code=2)
        log_change(
            session,
            actor=actor,
            action="CREATE",
            entity="BrokerConnection",
            entity_id=conn.id,
            new={"name": name, "provider": conn.provider, "fixture": bool(fixture_dir)},
        )
        session.commit()
        typer.echo(f"Created connection id={conn.id}")


@app.command("link-account")
def link_account_cmd(
    connection_id: int = typer.Option(...),
    kind: str = typer.Option(..., help="cash|investment"),
    ledger_account_id: Optional[int] = typer.Option(None, help="Existing ledger account (default: create one)"),
    name: Optional[str] = typer.Option(None, help="Name for a new ledger account"),
    actor: str = typer.Option("cli", help="Audit actor"),
):
    _setup()
    from ledgersync.core.ledger import link_account
    from ledgersync.db.audit import log_change
    from ledgersync.db.models import BrokerAccount, LedgerAccount
    from ledgersync.db.session import get_session

    with get_session() as session:
        ba = (
            session.query(BrokerAccount)
            .filter(BrokerAccount.connection_id == connection_id, BrokerAccount.kind == kind.lower())
            .one_or_none()
        )
        if ba is None:
            typer.echo(f"No {kind} account discovered for connection {connection_id}; run `sync` first.", err=True)
            raise typer.Exit(code=2)
        if ledger_account_id is not None:
            acct = session.get(LedgerAccount, ledger_account_id)
            if acct is None:
                typer.echo(f"Ledger account {ledger_account_id} not found.", err=True)
                raise typer.Exit(code=2)
        else:
            acct = LedgerAccount(name=name or ba.name, currency=ba.currency)
            session.add(acct)
            session.flush()
        try:
            link_account(session, broker_account=ba, ledger_account=acct)
        except ValueError as e:
            typer.echo(str(e), err=True)
            raise typer.Exit(code=2)
        log_change(
            session,
            actor=actor,
            action="LINK",
            entity="BrokerAccount",
            entity_id=ba.id,
            new={"ledger_account_id": acct.id, "kind": ba.kind},
        )
        session.commit()
        typer.echo(f"Linked {ba.kind} account {ba.id} -> ledger account {acct.id} ({acct.name})")


@app.command("sync")
def sync_cmd(
    connection_id: int = typer.Option(...),
    actor: str = typer.Option("cli", help="Audit actor"),
):
    _setup()
    from ledgersync.core.sync_runner import SyncConfigError, run_sync
    from ledgersync.db.session import get_session

    with get_session() as session:
        try:
            run = run_sync(session, connection_id=connection_id, actor=actor)
        except SyncConfigError as e:
            typer.echo(str(e), err=True)
            raise typer.Exit(code=2)
        typer.echo(
            json.dumps(
                {
                    "run_id": run.id,
                    "status": run.status,
                    "window_start": run.window_start,
                    "window_end": run.window_end,
                    "stats": run.stats_json,
                    "error": run.error_json,
                },
                indent=2,
                default=str,
            )
        )
        if run.status == "ERROR":
            raise typer.Exit(code=1)


@app.command("process-account")
def process_account_cmd(
    broker_account_id: int = typer.Option(...),
):
    """Re-post one account's stored records without fetching."""
    _setup()
    from ledgersync.core.account_processor import AccountProcessor
    from ledgersync.core.config import load_sync_settings
    from ledgersync.db.models import BrokerAccount
    from ledgersync.db.session import get_session

    settings, _ = load_sync_settings()
    with get_session() as session:
        ba = session.get(BrokerAccount, broker_account_id)
        if ba is None:
            typer.echo(f"Broker account {broker_account_id} not found.", err=True)
            raise typer.Exit(code=2)
        result = AccountProcessor(session, ba, settings=settings).process()
        session.commit()
        if result is None:
            typer.echo("Account is not linked (or processing failed); nothing posted.")
            raise typer.Exit(code=1)
        typer.echo(json.dumps(result.as_dict(), indent=2, default=str))


if __name__ == "__main__":
    app()
