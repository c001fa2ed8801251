from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from typing import Iterable, Sequence, TypeVar

from ledgersync.core.identity import effective_id_or_none
from ledgersync.importers.records import TransactionRecord
from ledgersync.utils.time import ensure_utc, shift_months, shift_years


log = logging.getLogger(__name__)

# How far back a first sync reaches.
MAX_LOOKBACK_YEARS = 1
# Incremental fallback when the store has data but no sync timestamp.
INCREMENTAL_FALLBACK_MONTHS = 3
INCREMENTAL_OVERLAP_DAYS = 7


@dataclass(frozen=True)
class SyncWindow:
    start: dt.datetime
    end: dt.datetime
    mode: str  # FULL|INCREMENTAL

    @property
    def is_full(self) -> bool:
        return self.mode == "FULL"


def compute_window(
    existing_records: Sequence[TransactionRecord],
    *,
    last_synced_at: dt.datetime | None,
    now: dt.datetime,
    overlap_days: int = INCREMENTAL_OVERLAP_DAYS,
) -> SyncWindow:
    """
    Window for the next export request.

    - empty store: `now - 1 year` (first sync)
    - store with data: `last_synced_at - overlap_days`, or `now - 3 months` if never synced
    """
    end = ensure_utc(now)
    if not existing_records:
        return SyncWindow(start=shift_years(end, -MAX_LOOKBACK_YEARS), end=end, mode="FULL")
    if last_synced_at is not None:
        start = ensure_utc(last_synced_at) - dt.timedelta(days=int(overlap_days))
    else:
        start = shift_months(end, -INCREMENTAL_FALLBACK_MONTHS)
    # A clock skew (last_synced_at in the future) must not produce an inverted window.
    if start > end:
        start = end
    return SyncWindow(start=start, end=end, mode="INCREMENTAL")


def _ids(records: Iterable[TransactionRecord]) -> set[str]:
    out: set[str] = set()
    for r in records:
        ident = effective_id_or_none(r)
        if ident is not None:
            out.add(ident.value)
    return out


def merge_new_records(
    existing: Sequence[TransactionRecord],
    fetched: Sequence[TransactionRecord],
) -> list[TransactionRecord]:
    """
    Records from `fetched` not already in `existing`, in fetch order.

    Records without an effective id are dropped (logged); duplicates within `fetched`
    keep the first occurrence.
    """
    seen = _ids(existing)
    new: list[TransactionRecord] = []
    dropped = 0
    for r in fetched:
        ident = effective_id_or_none(r)
        if ident is None or not ident.value:
            dropped += 1
            continue
        if ident.value in seen:
            continue
        seen.add(ident.value)
        new.append(r)
    if dropped:
        log.warning("Dropped %s fetched records without an id", dropped)
    return new


T = TypeVar("T")


def merged_store(existing: Sequence[T], new: Sequence[T]) -> list[T]:
    """Existing entries untouched and in order, then the new ones."""
    return list(existing) + list(new)


def split_by_account_kind(
    records: Iterable[TransactionRecord],
) -> tuple[list[TransactionRecord], list[TransactionRecord]]:
    """(cash_records, investment_records). Dividends stay with cash."""
    cash: list[TransactionRecord] = []
    investment: list[TransactionRecord] = []
    for r in records:
        if r.is_investment_order:
            investment.append(r)
        else:
            cash.append(r)
    return cash, investment
