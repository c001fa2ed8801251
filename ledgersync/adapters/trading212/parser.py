from __future__ import annotations

import csv
import io
import logging
from decimal import Decimal
from typing import Any, Optional

from ledgersync.importers.records import TransactionRecord
from ledgersync.utils.money import to_decimal


log = logging.getLogger(__name__)

# Export CSV header -> TransactionRecord field.
COLUMNS = {
    "Action": "action",
    "Time": "timestamp",
    "ID": "external_id",
    "Total": "amount",
    "Currency (Total)": "currency",
    "Merchant name": "merchant_name",
    "Merchant category": "category",
    "ISIN": "isin",
    "Ticker": "ticker",
    "Name": "stock_name",
    "No. of shares": "shares",
    "Price / share": "price_per_share",
    "Currency (Price / share)": "share_currency",
    "Notes": "notes",
    "Withholding tax": "withholding_tax",
    "Currency (Withholding tax)": "withholding_tax_currency",
}

REQUIRED_COLUMNS = ("Action", "Time", "ID", "Total", "Currency (Total)")

_DECIMAL_FIELDS = {"amount", "shares", "price_per_share", "withholding_tax"}
_QUOTED_FIELDS = {"currency", "share_currency", "withholding_tax_currency", "stock_name"}


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def _decimal_field(raw: Optional[str], *, column: str, row_num: int) -> Optional[Decimal]:
    if raw is None:
        return None
    d = to_decimal(raw)
    if d is None:
        log.warning("Export CSV row %s: unparseable %s value %r; treating as empty", row_num, column, raw)
    return d


def parse_transactions(content: str | bytes) -> list[TransactionRecord]:
    """
    Parse the history export CSV (header row, one transaction per row).

    Missing optional columns map to None; `Total`, shares and price become Decimals.
    """
    if isinstance(content, bytes):
        content = content.decode("utf-8-sig", errors="replace")
    text = content.lstrip("\ufeff")
    if not text.strip():
        return []

    reader = csv.DictReader(io.StringIO(text))
    headers = [h.strip() for h in (reader.fieldnames or [])]
    missing = [c for c in REQUIRED_COLUMNS if c not in headers]
    if missing:
        log.warning("Export CSV is missing expected columns: %s", ", ".join(missing))

    out: list[TransactionRecord] = []
    for row_num, raw_row in enumerate(reader, start=2):
        row = {str(k).strip(): v for k, v in raw_row.items() if k is not None}
        if not any(_clean(v) for v in row.values()):
            continue
        values: dict[str, Any] = {}
        for column, field_name in COLUMNS.items():
            v = _clean(row.get(column))
            if v is not None and field_name in _QUOTED_FIELDS:
                v = v.replace('"', "").strip() or None
            if field_name in _DECIMAL_FIELDS:
                values[field_name] = _decimal_field(v, column=column, row_num=row_num)
            else:
                values[field_name] = v
        out.append(TransactionRecord(**values))
    return out
