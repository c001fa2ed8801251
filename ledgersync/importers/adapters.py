from __future__ import annotations

import datetime as dt
import json
from abc import ABC, abstractmethod
from decimal import Decimal
from pathlib import Path
from typing import Any

from ledgersync.importers.records import TransactionRecord
from ledgersync.utils.money import to_decimal


class ProviderError(Exception):
    """
    Base class for export API failures. `error_type` is a stable tag callers can branch on.
    """

    error_type = "unknown"

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_auth_error(self) -> bool:
        return False


class RequestFailed(ProviderError):
    error_type = "request_failed"


class BadRequest(ProviderError):
    error_type = "bad_request"


class Unauthorized(ProviderError):
    error_type = "unauthorized"

    @property
    def is_auth_error(self) -> bool:
        return True


class AccessForbidden(ProviderError):
    error_type = "access_forbidden"

    @property
    def is_auth_error(self) -> bool:
        return True


class NotFound(ProviderError):
    error_type = "not_found"


class RateLimited(ProviderError):
    error_type = "rate_limited"


class FetchFailed(ProviderError):
    error_type = "fetch_failed"


class DownloadFailed(ProviderError):
    error_type = "download_failed"


class ExportFailed(ProviderError):
    error_type = "export_failed"


class ExportTimeout(ProviderError):
    error_type = "timeout"


class BrokerAdapter(ABC):
    """
    What the importer needs from a broker: one account summary and a flat list of records
    for a time window.
    """

    @abstractmethod
    def get_account_summary(self) -> dict[str, Any]:
        raise NotImplementedError

    def get_spending_balance(self, summary: dict[str, Any]) -> dict[str, Any]:
        """
        Cash available to spend: totalValue - investments.currentValue - cash.availableToTrade.
        """
        total_value = to_decimal(summary.get("totalValue")) or Decimal("0")
        investments_value = to_decimal((summary.get("investments") or {}).get("currentValue")) or Decimal("0")
        available_to_trade = to_decimal((summary.get("cash") or {}).get("availableToTrade")) or Decimal("0")
        return {
            "balance": total_value - investments_value - available_to_trade,
            "currency": summary.get("currency"),
            "account_id": summary.get("id"),
        }

    @abstractmethod
    def fetch_transactions(self, window_start: dt.datetime, window_end: dt.datetime) -> list[TransactionRecord]:
        raise NotImplementedError


class FixtureAdapter(BrokerAdapter):
    """
    Local-only adapter used for development/tests without network.

    Reads `summary.json` and `transactions.json` from `fixture_dir` when given, otherwise
    serves the in-memory `summary` / `records`. `summary_error` / `fetch_error` are raised
    instead of answering, to exercise failure paths.
    """

    def __init__(
        self,
        *,
        summary: dict[str, Any] | None = None,
        records: list[dict[str, Any]] | None = None,
        fixture_dir: str | None = None,
        summary_error: Exception | None = None,
        fetch_error: Exception | None = None,
    ):
        self._summary = summary
        self._records = records
        self._fixture_dir = fixture_dir
        self.summary_error = summary_error
        self.fetch_error = fetch_error
        self.summary_calls = 0
        self.fetch_calls: list[tuple[dt.datetime, dt.datetime]] = []

    def get_account_summary(self) -> dict[str, Any]:
        self.summary_calls += 1
        if self.summary_error is not None:
            raise self.summary_error
        if self._fixture_dir:
            p = Path(self._fixture_dir) / "summary.json"
            if p.exists():
                return json.loads(p.read_text())
        return dict(self._summary or {})

    def fetch_transactions(self, window_start: dt.datetime, window_end: dt.datetime) -> list[TransactionRecord]:
        self.fetch_calls.append((window_start, window_end))
        if self.fetch_error is not None:
            raise self.fetch_error
        raw = self._records
        if self._fixture_dir:
            p = Path(self._fixture_dir) / "transactions.json"
            if p.exists():
                raw = json.loads(p.read_text())
        return [TransactionRecord.from_payload(r) for r in (raw or [])]
