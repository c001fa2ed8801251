from __future__ import annotations

import datetime as dt
import json
import logging
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from ledgersync.core.account_processor import AccountProcessor
from ledgersync.core.config import SyncSettings, load_sync_settings
from ledgersync.core.credential_store import CredentialError, load_api_credentials
from ledgersync.core.importer import ImportResult, Trading212Importer, linked_accounts
from ledgersync.core.ledger import SecurityResolver
from ledgersync.db.audit import log_change
from ledgersync.db.models import BrokerConnection, SyncRun
from ledgersync.importers.adapters import BrokerAdapter, FixtureAdapter
from ledgersync.utils.time import utcnow


log = logging.getLogger(__name__)


class SyncConfigError(Exception):
    pass


def _adapter_for(session: Session, connection: BrokerConnection, settings: SyncSettings) -> BrokerAdapter:
    meta = connection.metadata_json or {}
    if meta.get("fixture_dir"):
        return FixtureAdapter(fixture_dir=str(meta["fixture_dir"]))
    provider = (connection.provider or "").upper()
    if provider != "TRADING212":
        raise SyncConfigError(f"Unsupported provider: {connection.provider}")
    try:
        api_key, api_secret = load_api_credentials(session, connection_id=connection.id)
    except CredentialError as e:
        raise SyncConfigError(str(e)) from e

    from ledgersync.adapters.trading212.client import Trading212Client

    return Trading212Client.from_settings(api_key, api_secret, settings)


def _account_stats(connection: BrokerConnection) -> dict[str, int]:
    total = len(connection.accounts)
    linked = len(linked_accounts(connection))
    unlinked = sum(1 for ba in connection.accounts if ba.link is None)
    return {"total_accounts": total, "linked_accounts": linked, "unlinked_accounts": unlinked}


def run_sync(
    session: Session,
    *,
    connection_id: int,
    adapter: BrokerAdapter | None = None,
    settings: SyncSettings | None = None,
    security_resolver: Optional[SecurityResolver] = None,
    actor: str = "sync",
    now_fn: Callable[[], dt.datetime] = utcnow,
) -> SyncRun:
    """
    One sync pass for a connection, recorded as a SyncRun.

    Phases: import (discovery + fetch + store), account setup stats, then reconciliation
    and posting for every linked account. Status is SUCCESS, PARTIAL (fetch warnings or
    record failures) or ERROR (import failed).
    """
    conn = session.query(BrokerConnection).filter(BrokerConnection.id == connection_id).one_or_none()
    if conn is None:
        raise SyncConfigError(f"Connection {connection_id} not found.")
    if settings is None:
        settings, _ = load_sync_settings()
    if adapter is None:
        adapter = _adapter_for(session, conn, settings)

    run = SyncRun(connection_id=conn.id, status="ERROR", started_at=utcnow(), stats_json={})
    session.add(run)
    session.flush()
    log_change(
        session,
        actor=actor,
        action="SYNC_RUN_STARTED",
        entity="SyncRun",
        entity_id=run.id,
        new={"connection_id": conn.id},
        note=f"Sync run started for connection={conn.id}",
    )

    warnings: list[str] = []
    stats: dict[str, Any] = {}
    try:
        # Phase 1: import
        imported: ImportResult = Trading212Importer(
            session, conn, adapter, settings=settings, now_fn=now_fn
        ).import_()
        stats["import"] = imported.as_dict()
        run.accounts_created = imported.accounts_created
        run.accounts_updated = imported.accounts_updated
        run.new_count = imported.transactions_imported
        if imported.window is not None:
            run.window_start = imported.window.start
            run.window_end = imported.window.end
            run.mode = imported.window.mode
        warnings.extend(imported.warnings)

        if not imported.success:
            run.status = "ERROR"
            run.error_json = json.dumps({"error": imported.error})
            conn.last_error_json = json.dumps({"at": utcnow().isoformat(), "run_id": run.id, "error": imported.error})
            return _finish(session, run, conn, stats=stats, warnings=warnings, actor=actor)

        # Phase 2: account setup status
        account_stats = _account_stats(conn)
        stats.update(account_stats)
        conn.pending_account_setup = account_stats["unlinked_accounts"] > 0
        if conn.pending_account_setup:
            log.info("%s accounts need setup for connection %s", account_stats["unlinked_accounts"], conn.id)

        # Phase 3: reconcile + post linked accounts
        batches: dict[str, Any] = {}
        processed = failed = 0
        for ba in linked_accounts(conn):
            batch = AccountProcessor(session, ba, settings=settings, security_resolver=security_resolver).process()
            if batch is None:
                warnings.append(f"Transactions for {ba.kind} account could not be processed.")
                continue
            batches[ba.kind] = batch.as_dict()
            processed += batch.imported
            failed += batch.failed
        stats["batches"] = batches
        run.processed_count = processed
        run.failed_count = failed

        run.status = "PARTIAL" if (warnings or failed) else "SUCCESS"
        # The window moves forward once a fetch went through, even if some records failed to post.
        if not imported.warnings:
            conn.last_synced_at = now_fn()
        if run.status == "SUCCESS":
            conn.last_error_json = None
        else:
            conn.last_error_json = json.dumps(
                {"at": utcnow().isoformat(), "run_id": run.id, "status": run.status, "warnings": warnings[:50]}
            )
        return _finish(session, run, conn, stats=stats, warnings=warnings, actor=actor)

    except Exception as e:
        log.error("Sync run %s failed: %s: %s", run.id, type(e).__name__, e)
        run.status = "ERROR"
        run.error_json = json.dumps({"error": f"{type(e).__name__}: {e}"})
        conn.last_error_json = json.dumps({"at": utcnow().isoformat(), "run_id": run.id, "error": f"{type(e).__name__}: {e}"})
        return _finish(session, run, conn, stats=stats, warnings=warnings, actor=actor)


def _finish(
    session: Session,
    run: SyncRun,
    conn: BrokerConnection,
    *,
    stats: dict[str, Any],
    warnings: list[str],
    actor: str,
) -> SyncRun:
    run.finished_at = utcnow()
    run.stats_json = stats | {"warnings": warnings[:50]}
    session.flush()
    log_change(
        session,
        actor=actor,
        action="SYNC_RUN_FINISHED",
        entity="SyncRun",
        entity_id=run.id,
        new={"status": run.status, "stats": stats, "warnings": warnings[:50], "connection_status": conn.status},
        note=f"Sync run finished for connection={conn.id}",
    )
    session.commit()
    log.info("Sync run %s for connection %s finished: %s", run.id, conn.id, run.status)
    return run
