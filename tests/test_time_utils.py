from __future__ import annotations

import datetime as dt

from ledgersync.db.audit import log_change
from ledgersync.db.models import AuditLog, BrokerConnection, SyncRun
from ledgersync.utils.time import UTC, format_api_time, parse_datetime, shift_months, shift_years


def test_sync_run_and_audit_log_timestamps_are_utc(session):
    conn = BrokerConnection(name="C", provider="TRADING212", metadata_json={})
    session.add(conn)
    session.flush()

    run = SyncRun(connection_id=conn.id, status="ERROR", mode="INCREMENTAL")
    session.add(run)
    session.flush()
    log_change(
        session,
        actor="test",
        action="NOTE",
        entity="SyncRun",
        entity_id=run.id,
        note="testing tz",
    )
    session.commit()
    session.expire_all()

    run = session.get(SyncRun, run.id)
    assert isinstance(run.started_at, dt.datetime)
    assert run.started_at.tzinfo == UTC

    audit = session.query(AuditLog).order_by(AuditLog.id.desc()).first()
    assert audit is not None
    assert audit.entity_id == str(run.id)
    assert audit.at.tzinfo == UTC


def test_naive_datetimes_are_stored_as_utc(session):
    conn = BrokerConnection(name="N", provider="TRADING212", metadata_json={})
    conn.last_synced_at = dt.datetime(2026, 3, 1, 8, 30)
    session.add(conn)
    session.commit()
    session.expire_all()

    conn = session.get(BrokerConnection, conn.id)
    assert conn.last_synced_at == dt.datetime(2026, 3, 1, 8, 30, tzinfo=UTC)


def test_format_api_time():
    assert format_api_time(dt.datetime(2026, 1, 2, 3, 4, 5, tzinfo=UTC)) == "2026-01-02T03:04:05Z"
    plus_two = dt.timezone(dt.timedelta(hours=2))
    assert format_api_time(dt.datetime(2026, 1, 2, 3, 4, 5, tzinfo=plus_two)) == "2026-01-02T01:04:05Z"
    assert format_api_time(dt.date(2026, 1, 2)) == "2026-01-02T00:00:00Z"
    assert format_api_time("2026-01-02T00:00:00Z") == "2026-01-02T00:00:00Z"


def test_shift_months_clamps_to_month_end():
    assert shift_months(dt.datetime(2026, 5, 31, tzinfo=UTC), -3) == dt.datetime(2026, 2, 28, tzinfo=UTC)
    assert shift_months(dt.datetime(2024, 5, 31), -3) == dt.datetime(2024, 2, 29)
    assert shift_months(dt.datetime(2026, 1, 15), -1) == dt.datetime(2025, 12, 15)
    assert shift_years(dt.datetime(2024, 2, 29), -1) == dt.datetime(2023, 2, 28)


def test_parse_datetime():
    assert parse_datetime("2026-01-02T03:04:05Z") == dt.datetime(2026, 1, 2, 3, 4, 5, tzinfo=UTC)
    assert parse_datetime("  ") is None
    assert parse_datetime("not a date") is None
    assert parse_datetime(None) is None
