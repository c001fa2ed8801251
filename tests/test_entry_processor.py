from __future__ import annotations

import datetime as dt
from decimal import Decimal

import pytest

from ledgersync.core import entry_processor
from ledgersync.core.config import SyncSettings
from ledgersync.core.entry_processor import EntryProcessor, ProcessingError, parse_record_date
from ledgersync.core.identity import ValidationError, dividend_hash
from ledgersync.db.models import LedgerEntry, Merchant, Security, Transfer


def _cash(ext_id="C1", action="Card debit", total="-50.00", **kw):
    p = {"action": action, "time": "2026-01-05 12:00:00", "id": ext_id, "amount": total, "currency": "EUR"}
    p.update(kw)
    return p


def _order(ext_id="B1", action="Market buy", total="250.00", shares="2", **kw):
    p = {
        "action": action,
        "time": "2026-01-03 15:19:21",
        "id": ext_id,
        "amount": total,
        "currency": "EUR",
        "isin": "US0378331005",
        "ticker": "AAPL",
        "stock_name": "Apple Inc.",
        "shares": shares,
        "price_per_share": "125",
        "share_currency": "USD",
    }
    p.update(kw)
    return p


def _entries(session, account, kind=None):
    q = session.query(LedgerEntry).filter(LedgerEntry.account_id == account.id)
    if kind:
        q = q.filter(LedgerEntry.kind == kind)
    return q.order_by(LedgerEntry.id).all()


def test_cash_movement_amounts_are_negated(session, make_connection):
    _, cash, _ = make_connection()
    proc = EntryProcessor(session, cash)

    debit = proc.process(_cash("C1", total="-50.00", merchant_name="Coffee Shop", merchant_category="RESTAURANTS"))
    deposit = proc.process(_cash("D1", action="Deposit", total="1000"))

    assert debit.imported and deposit.imported
    assert debit.entry.amount == Decimal("50.00")
    assert deposit.entry.amount == Decimal("-1000")
    assert debit.entry.kind == "transaction"
    assert debit.entry.external_id == "C1"
    assert debit.entry.source == "trading212"
    assert debit.entry.date == dt.date(2026, 1, 5)
    assert debit.entry.name == "Coffee Shop"
    assert debit.entry.notes == "Type: Card debit | Category: RESTAURANTS"
    assert deposit.entry.name == "Deposit"


def test_buy_posts_trade_and_transfer_pair(session, make_connection):
    _, cash, invest = make_connection()
    out = EntryProcessor(session, invest).process(_order())

    trade = out.entry
    assert trade.kind == "trade"
    assert trade.amount == Decimal("250.00")
    assert trade.quantity == Decimal("2")
    assert trade.price == Decimal("125")
    assert trade.price_currency == "USD"
    assert trade.currency == "EUR"
    assert trade.name == "Market buy AAPL"
    assert trade.notes == "Type: Market buy | Ticker: AAPL | ISIN: US0378331005 | Shares: 2 | Price: 125 USD"
    assert session.get(Security, trade.security_id).isin == "US0378331005"

    legs = out.transfer
    assert legs is not None
    cash_acct, invest_acct = cash.linked_account, invest.linked_account
    assert legs.outflow.account_id == cash_acct.id
    assert legs.outflow.amount == Decimal("250.00")
    assert legs.outflow.external_id == "B1_transfer_out"
    assert legs.outflow.name == "Transfer to Invest"
    assert legs.inflow.account_id == invest_acct.id
    assert legs.inflow.amount == Decimal("-250.00")
    assert legs.inflow.external_id == "B1_transfer_in"
    assert legs.inflow.name == "Transfer from Cash"
    assert legs.transfer.status == "confirmed"
    assert legs.transfer.inflow_entry_id == legs.inflow.id


def test_sell_flips_signs_and_transfer_direction(session, make_connection):
    _, cash, invest = make_connection()
    out = EntryProcessor(session, invest).process(_order("S1", action="Limit sell", total="250.00"))

    assert out.entry.amount == Decimal("-250.00")
    assert out.entry.quantity == Decimal("-2")
    assert out.transfer.outflow.account_id == invest.linked_account.id
    assert out.transfer.outflow.amount == Decimal("250.00")
    assert out.transfer.inflow.account_id == cash.linked_account.id
    assert out.transfer.inflow.amount == Decimal("-250.00")


def test_reprocessing_is_idempotent_and_updates_fields(session, make_connection):
    _, cash, invest = make_connection()
    cash_proc = EntryProcessor(session, cash)
    first = cash_proc.process(_cash("D1", action="Deposit", total="100"))
    again = cash_proc.process(_cash("D1", action="Deposit", total="120"))
    assert first.entry.id == again.entry.id
    assert len(_entries(session, cash.linked_account)) == 1
    assert again.entry.amount == Decimal("-120")

    invest_proc = EntryProcessor(session, invest)
    invest_proc.process(_order())
    invest_proc.process(_order())
    assert session.query(Transfer).count() == 1
    assert len(_entries(session, invest.linked_account, "trade")) == 1
    assert len(_entries(session, invest.linked_account, "funds_movement")) == 1
    assert len(_entries(session, cash.linked_account, "funds_movement")) == 1


def test_transfer_waits_until_both_sides_are_linked(session, make_connection, link):
    _, cash, invest = make_connection(link_cash=False)
    proc = EntryProcessor(session, invest)

    out = proc.process(_order())
    assert out.imported
    assert out.transfer is None
    assert session.query(Transfer).count() == 0

    link(cash, "Cash")
    out = proc.process(_order())
    assert out.transfer is not None
    assert session.query(Transfer).count() == 1
    assert len(_entries(session, invest.linked_account, "trade")) == 1


def test_unlinked_account_skips(session, make_connection):
    _, cash, _ = make_connection(link_cash=False)
    out = EntryProcessor(session, cash).process(_cash())
    assert not out.imported
    assert out.reason == "No linked account"
    assert session.query(LedgerEntry).count() == 0


def test_skip_listed_action(session, make_connection):
    _, cash, _ = make_connection()
    settings = SyncSettings(skipped_actions=["Currency conversion"])
    out = EntryProcessor(session, cash, settings=settings).process(_cash(action="Currency conversion"))
    assert out.reason == "Skipped action: Currency conversion"
    assert session.query(LedgerEntry).count() == 0


class _NoSecurities:
    def resolve(self, ticker, *, isin=None, name=None):
        return None


def test_unresolved_security_skips_trade(session, make_connection):
    _, _, invest = make_connection()
    out = EntryProcessor(session, invest, security_resolver=_NoSecurities()).process(_order())
    assert out.reason == "Unresolved security: AAPL"

    out = EntryProcessor(session, invest).process(_order("B2", ticker=None))
    assert out.reason == "Unresolved security: no ticker"
    assert session.query(LedgerEntry).count() == 0


def test_dividend_without_id_posts_under_hash(session, make_connection):
    _, cash, _ = make_connection()
    payload = _cash(None, action="Dividend (Dividend)", total="0.11", isin="US0378331005", ticker="AAPL")
    payload["time"] = "2026-01-04 10:00:00"
    out = EntryProcessor(session, cash).process(payload)

    assert out.entry.external_id == dividend_hash("US0378331005", "2026-01-04 10:00:00", Decimal("0.11"))
    assert out.entry.name == "Dividend AAPL"
    assert out.entry.amount == Decimal("-0.11")

    payload.pop("ticker")
    payload["stock_name"] = "Apple Inc."
    assert EntryProcessor(session, cash).process(payload).entry.name == "Dividend Apple Inc."


def test_merchants_are_shared_case_insensitively(session, make_connection):
    _, cash, _ = make_connection()
    proc = EntryProcessor(session, cash)
    a = proc.process(_cash("C1", merchant_name="Coffee Shop"))
    b = proc.process(_cash("C2", merchant_name="coffee shop"))
    assert session.query(Merchant).count() == 1
    assert a.entry.merchant_id == b.entry.merchant_id
    assert session.query(Merchant).one().source == "trading212"


def test_invalid_records_raise_validation_errors(session, make_connection):
    _, cash, _ = make_connection()
    proc = EntryProcessor(session, cash)
    with pytest.raises(ValidationError):
        proc.process(_cash(None))
    with pytest.raises(ValidationError):
        proc.process(_cash("C9", total=None))
    with pytest.raises(ValidationError):
        proc.process(_cash("C10", time="yesterday"))


def test_unexpected_errors_are_wrapped(session, make_connection, monkeypatch):
    _, cash, _ = make_connection()

    def boom(*args, **kwargs):
        raise RuntimeError("db down")

    monkeypatch.setattr(entry_processor, "upsert_entry", boom)
    with pytest.raises(ProcessingError, match="Unexpected error importing transaction: db down"):
        EntryProcessor(session, cash).process(_cash())


def test_transfer_failure_keeps_the_trade(session, make_connection, monkeypatch):
    _, cash, invest = make_connection()

    def boom(*args, **kwargs):
        raise RuntimeError("constraint")

    monkeypatch.setattr(entry_processor, "find_or_create_transfer", boom)
    out = EntryProcessor(session, invest).process(_order())

    assert out.imported
    assert out.transfer is None
    assert len(_entries(session, invest.linked_account, "trade")) == 1
    assert session.query(LedgerEntry).filter(LedgerEntry.kind == "funds_movement").count() == 0


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("2026-01-03 15:19:21", dt.date(2026, 1, 3)),
        ("2026-01-03T23:30:00Z", dt.date(2026, 1, 3)),
        ("2026-01-03", dt.date(2026, 1, 3)),
        (1767225600, dt.date(2026, 1, 1)),
        (dt.datetime(2026, 2, 1, 9, 0), dt.date(2026, 2, 1)),
        (dt.date(2026, 2, 2), dt.date(2026, 2, 2)),
    ],
)
def test_parse_record_date(raw, expected):
    assert parse_record_date(raw) == expected


@pytest.mark.parametrize("raw", ["", "garbage", ["2026-01-01"], None])
def test_parse_record_date_rejects(raw):
    with pytest.raises(ValidationError):
        parse_record_date(raw)
