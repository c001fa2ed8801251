from __future__ import annotations

import hashlib
from decimal import Decimal

import pytest

from ledgersync.core.currency import normalize_currency, resolve_currency
from ledgersync.core.identity import (
    ValidationError,
    compute_effective_id,
    dividend_hash,
    effective_id,
    effective_id_or_none,
)
from ledgersync.importers.records import TransactionRecord


def test_natural_id_wins_over_dividend_hash() -> None:
    ident = compute_effective_id(external_id=" EOF123 ", action="Dividend (Ordinary)", isin="X", timestamp="t", amount=1)
    assert ident.value == "EOF123"
    assert not ident.is_synthesized


def test_dividend_without_id_gets_stable_hash() -> None:
    rec = TransactionRecord(
        action="Dividend (Dividend)",
        timestamp="2026-01-04 10:00:00",
        isin="US0378331005",
        amount=Decimal("0.11"),
    )
    expected = "dividend_" + hashlib.md5(b"US0378331005_2026-01-04 10:00:00_0.11").hexdigest()
    assert rec.identity.is_synthesized
    assert rec.identity.value == expected
    assert dividend_hash("US0378331005", "2026-01-04 10:00:00", Decimal("0.11")) == expected

    # Survives a trip through the stored payload.
    again = TransactionRecord.from_payload(rec.to_payload())
    assert again.identity.value == expected


def test_dividend_hash_changes_with_each_component() -> None:
    base = dividend_hash("ISIN", "2026-01-04", Decimal("0.11"))
    assert dividend_hash("ISIN", "2026-01-04", Decimal("0.12")) != base
    assert dividend_hash("ISIN2", "2026-01-04", Decimal("0.11")) != base
    assert dividend_hash("ISIN", "2026-01-05", Decimal("0.11")) != base
    assert dividend_hash("ISIN", "2026-01-04", Decimal("0.11")) == base


def test_non_dividend_without_id_is_invalid() -> None:
    rec = TransactionRecord(action="Card debit", timestamp="2026-01-05", amount=Decimal("-1"))
    with pytest.raises(ValidationError, match="missing required field 'id'"):
        effective_id(rec)
    assert effective_id_or_none(rec) is None


def test_effective_id_reuses_cached_identity() -> None:
    rec = TransactionRecord(action="Deposit", timestamp="2026-01-02", external_id="D1")
    assert effective_id(rec) is rec.identity


class _Plain:
    external_id = None
    action = "Dividend (Return of capital)"
    isin = "IE00B4L5Y983"
    timestamp = "2026-03-01"
    amount = Decimal("2.5")


def test_effective_id_duck_types_plain_objects() -> None:
    assert effective_id(_Plain()).value == dividend_hash("IE00B4L5Y983", "2026-03-01", Decimal("2.5"))


@pytest.mark.parametrize(
    "raw,expected",
    [("eur", "EUR"), (' "GBP" ', "GBP"), ("USD", "USD"), ("", None), (None, None), ("GBX", None), ("EURO", None),
     ("kzt", "KZT"), ("GEL", "GEL"), ("HRK", None)],
)
def test_normalize_currency(raw, expected) -> None:
    assert normalize_currency(raw) == expected


def test_resolve_currency_falls_back_in_order() -> None:
    assert resolve_currency("bad", None, "usd") == "USD"
    assert resolve_currency(None, "") == "EUR"
    assert resolve_currency(None, default="GBP") == "GBP"
