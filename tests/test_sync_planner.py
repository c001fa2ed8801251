from __future__ import annotations

import datetime as dt
from decimal import Decimal

from ledgersync.core.sync_planner import compute_window, merge_new_records, merged_store, split_by_account_kind
from ledgersync.importers.records import TransactionRecord
from ledgersync.utils.time import UTC


NOW = dt.datetime(2026, 3, 15, 12, 0, tzinfo=UTC)


def _rec(action="Deposit", ext_id="D1", **kw) -> TransactionRecord:
    return TransactionRecord(action=action, timestamp=kw.pop("timestamp", "2026-01-02 09:00:00"), external_id=ext_id, **kw)


def test_first_sync_reaches_back_one_year():
    w = compute_window([], last_synced_at=dt.datetime(2026, 3, 1, tzinfo=UTC), now=NOW)
    assert w.is_full
    assert w.start == dt.datetime(2025, 3, 15, 12, 0, tzinfo=UTC)
    assert w.end == NOW


def test_incremental_uses_last_sync_minus_overlap():
    last = dt.datetime(2026, 3, 10, 6, 0)  # naive -> UTC
    w = compute_window([_rec()], last_synced_at=last, now=NOW)
    assert w.mode == "INCREMENTAL"
    assert w.start == dt.datetime(2026, 3, 3, 6, 0, tzinfo=UTC)


def test_incremental_without_last_sync_falls_back_three_months():
    now = dt.datetime(2026, 5, 31, tzinfo=UTC)
    w = compute_window([_rec()], last_synced_at=None, now=now)
    assert w.start == dt.datetime(2026, 2, 28, tzinfo=UTC)
    assert not w.is_full


def test_window_never_inverts():
    future = NOW + dt.timedelta(days=30)
    w = compute_window([_rec()], last_synced_at=future, now=NOW)
    assert w.start == w.end == NOW


def test_merge_skips_known_duplicate_and_idless_records():
    existing = [_rec(ext_id="D1")]
    fetched = [
        _rec(ext_id="D1"),
        _rec(ext_id="D2"),
        _rec(ext_id="D2"),
        _rec(action="Card debit", ext_id=None),
        _rec(action="Dividend (Dividend)", ext_id=None, isin="US0378331005", amount=Decimal("0.11")),
    ]
    new = merge_new_records(existing, fetched)
    assert [r.identity.value for r in new][:1] == ["D2"]
    assert len(new) == 2
    assert new[1].identity.is_synthesized

    store = merged_store(existing, new)
    assert [r.external_id for r in store] == ["D1", "D2", None]
    assert merge_new_records(store, fetched) == []


def test_split_by_account_kind_keeps_dividends_with_cash():
    records = [
        _rec(action="Deposit", ext_id="D1"),
        _rec(action="Market buy", ext_id="B1"),
        _rec(action="Limit sell", ext_id="S1"),
        _rec(action="Dividend (Dividend)", ext_id="V1"),
        _rec(action="Interest on cash", ext_id="I1"),
    ]
    cash, invest = split_by_account_kind(records)
    assert [r.external_id for r in cash] == ["D1", "V1", "I1"]
    assert [r.external_id for r in invest] == ["B1", "S1"]
