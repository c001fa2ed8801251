from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from decimal import Decimal
from functools import cached_property
from typing import Any, Optional

from ledgersync.core.identity import EffectiveId, compute_effective_id, is_dividend_action
from ledgersync.utils.money import decimal_str, to_decimal


INVESTMENT_ORDER_ACTIONS = frozenset({"Market buy", "Market sell", "Limit buy", "Limit sell"})

# Stored payload key -> accepted aliases (older snapshots / hand-written fixtures).
_ALIASES: dict[str, tuple[str, ...]] = {
    "time": ("time", "timestamp", "date"),
    "id": ("id", "external_id"),
    "merchant_category": ("merchant_category", "category"),
}


def _get(payload: dict[str, Any], key: str) -> Any:
    for k in _ALIASES.get(key, (key,)):
        if k in payload and payload[k] is not None:
            return payload[k]
    return None


def _opt_str(v: Any) -> Optional[str]:
    if v is None:
        return None
    s = str(v).strip()
    return s or None


@dataclass(frozen=True)
class TransactionRecord:
    """
    One row of the broker's history export, normalized.

    `timestamp` keeps whatever the source sent (CSV gives "2026-01-03 15:19:21"); the
    dividend hash is computed over it verbatim so it must survive a store round-trip.
    """

    action: Optional[str]
    timestamp: Any
    external_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    merchant_name: Optional[str] = None
    category: Optional[str] = None
    isin: Optional[str] = None
    ticker: Optional[str] = None
    stock_name: Optional[str] = None
    shares: Optional[Decimal] = None
    price_per_share: Optional[Decimal] = None
    share_currency: Optional[str] = None
    notes: Optional[str] = None
    withholding_tax: Optional[Decimal] = None
    withholding_tax_currency: Optional[str] = None

    @cached_property
    def identity(self) -> EffectiveId:
        return compute_effective_id(
            external_id=self.external_id,
            action=self.action,
            isin=self.isin,
            timestamp=self.timestamp,
            amount=self.amount,
        )

    @property
    def is_investment_order(self) -> bool:
        return (self.action or "") in INVESTMENT_ORDER_ACTIONS

    @property
    def is_dividend(self) -> bool:
        return is_dividend_action(self.action)

    @property
    def is_sell(self) -> bool:
        return "sell" in (self.action or "")

    @property
    def source_id(self) -> str:
        """The broker's own id for error reports."""
        return self.external_id or "unknown"

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "TransactionRecord":
        if isinstance(payload, TransactionRecord):
            return payload
        ts = _get(payload, "time")
        if isinstance(ts, str):
            ts = ts.strip() or None
        return cls(
            action=_opt_str(payload.get("action")),
            timestamp=ts,
            external_id=_opt_str(_get(payload, "id")),
            amount=to_decimal(payload.get("amount")),
            currency=_opt_str(payload.get("currency")),
            merchant_name=_opt_str(payload.get("merchant_name")),
            category=_opt_str(_get(payload, "merchant_category")),
            isin=_opt_str(payload.get("isin")),
            ticker=_opt_str(payload.get("ticker")),
            stock_name=_opt_str(payload.get("stock_name")),
            shares=to_decimal(payload.get("shares")),
            price_per_share=to_decimal(payload.get("price_per_share")),
            share_currency=_opt_str(payload.get("share_currency")),
            notes=_opt_str(payload.get("notes")),
            withholding_tax=to_decimal(payload.get("withholding_tax")),
            withholding_tax_currency=_opt_str(payload.get("withholding_tax_currency")),
        )

    def to_payload(self) -> dict[str, Any]:
        ts = self.timestamp
        if isinstance(ts, (dt.date, dt.datetime)):
            ts = ts.isoformat()
        return {
            "action": self.action,
            "time": ts,
            "id": self.external_id,
            "amount": decimal_str(self.amount),
            "currency": self.currency,
            "merchant_name": self.merchant_name,
            "merchant_category": self.category,
            "isin": self.isin,
            "ticker": self.ticker,
            "stock_name": self.stock_name,
            "shares": decimal_str(self.shares),
            "price_per_share": decimal_str(self.price_per_share),
            "share_currency": self.share_currency,
            "notes": self.notes,
            "withholding_tax": decimal_str(self.withholding_tax),
            "withholding_tax_currency": self.withholding_tax_currency,
        }
