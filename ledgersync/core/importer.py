from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from ledgersync.core.config import SyncSettings
from ledgersync.core.currency import resolve_currency
from ledgersync.core.sync_planner import (
    SyncWindow,
    compute_window,
    merge_new_records,
    merged_store,
    split_by_account_kind,
)
from ledgersync.db.models import (
    ACCOUNT_KIND_CASH,
    ACCOUNT_KIND_INVESTMENT,
    CONNECTION_ACTIVE,
    CONNECTION_REQUIRES_UPDATE,
    BrokerAccount,
    BrokerConnection,
)
from ledgersync.importers.adapters import BrokerAdapter, FetchFailed, ProviderError
from ledgersync.importers.records import TransactionRecord
from ledgersync.utils.money import to_decimal
from ledgersync.utils.time import utcnow


log = logging.getLogger(__name__)


@dataclass
class ImportResult:
    success: bool
    accounts_created: int = 0
    accounts_updated: int = 0
    transactions_imported: int = 0
    error: Optional[str] = None
    window: Optional[SyncWindow] = None
    warnings: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "success": self.success,
            "accounts_created": self.accounts_created,
            "accounts_updated": self.accounts_updated,
            "transactions_imported": self.transactions_imported,
        }
        if self.error:
            out["error"] = self.error
        return out


def stored_records(broker_account: Optional[BrokerAccount]) -> list[TransactionRecord]:
    if broker_account is None:
        return []
    return [TransactionRecord.from_payload(p) for p in (broker_account.raw_transactions_payload or [])]


def linked_accounts(connection: BrokerConnection) -> list[BrokerAccount]:
    out = []
    for ba in connection.accounts:
        acct = ba.linked_account
        if acct is not None and acct.visible:
            out.append(ba)
    return out


class Trading212Importer:
    """
    Pulls one connection's data into its BrokerAccounts.

    1. account discovery from the account summary (cash + investment accounts)
    2. only if something is linked: one export for the planned window, split by account kind
       and appended to each account's record store
    3. balance refresh
    """

    def __init__(
        self,
        session: Session,
        connection: BrokerConnection,
        adapter: BrokerAdapter,
        *,
        settings: SyncSettings | None = None,
        now_fn: Callable[[], dt.datetime] = utcnow,
    ):
        self.session = session
        self.connection = connection
        self.adapter = adapter
        self.settings = settings or SyncSettings()
        self.now_fn = now_fn

    def import_(self) -> ImportResult:
        log.info("Starting import for connection %s", self.connection.id)
        try:
            accounts, created = self._discover_accounts()
        except ProviderError as e:
            self._handle_api_error(e)
            return ImportResult(success=False, error=str(e))
        except Exception as e:
            log.error("Error during import for connection %s: %s: %s", self.connection.id, type(e).__name__, e)
            return ImportResult(success=False, error=str(e))

        log.info(
            "Accounts discovered: %s (created: %s)", ", ".join(a.name for a in accounts), created
        )

        linked = linked_accounts(self.connection)
        result = ImportResult(success=True, accounts_created=created, accounts_updated=len(linked))
        if not linked:
            log.info("No linked accounts yet for connection %s, skipping transaction fetch", self.connection.id)
            return result

        try:
            result.window, result.transactions_imported = self._fetch_and_store()
        except ProviderError as e:
            self._handle_api_error(e)
            result.warnings.append(f"Failed to fetch transactions: {e}")
        except Exception as e:
            log.error("Unexpected error fetching transactions: %s: %s", type(e).__name__, e)
            result.warnings.append(f"Failed to fetch transactions: {e}")

        log.info(
            "Completed import for connection %s: %s accounts discovered, %s transactions imported",
            self.connection.id,
            created,
            result.transactions_imported,
        )
        return result

    # --- discovery ---

    def _account(self, kind: str) -> Optional[BrokerAccount]:
        return (
            self.session.query(BrokerAccount)
            .filter(BrokerAccount.connection_id == self.connection.id, BrokerAccount.kind == kind)
            .one_or_none()
        )

    def _institution_metadata(self) -> dict[str, Any]:
        return {
            "name": self.settings.institution_name,
            "domain": self.settings.institution_domain,
            "url": self.settings.institution_url,
        }

    def _discover_accounts(self) -> tuple[list[BrokerAccount], int]:
        summary = self.adapter.get_account_summary()
        self._mark_active()

        remote_id = str(summary.get("id") or "").strip()
        if not remote_id:
            raise FetchFailed("Account summary has no account id")
        currency = resolve_currency(summary.get("currency"), default=self.settings.default_currency)
        spending = self.adapter.get_spending_balance(summary)
        investment_value = to_decimal((summary.get("investments") or {}).get("currentValue")) or Decimal("0")

        cash, cash_created = self._upsert_account(
            kind=ACCOUNT_KIND_CASH,
            external_id=f"{remote_id}_cash",
            name=self.settings.cash_account_name,
            currency=currency,
            balance=spending["balance"],
            summary=summary,
        )
        invest, invest_created = self._upsert_account(
            kind=ACCOUNT_KIND_INVESTMENT,
            external_id=f"{remote_id}_investment",
            name=self.settings.investment_account_name,
            currency=currency,
            balance=investment_value,
            summary=summary,
        )
        return [cash, invest], int(cash_created) + int(invest_created)

    def _upsert_account(
        self,
        *,
        kind: str,
        external_id: str,
        name: str,
        currency: str,
        balance: Decimal,
        summary: dict[str, Any],
    ) -> tuple[BrokerAccount, bool]:
        ba = self._account(kind)
        created = ba is None
        if ba is None:
            ba = BrokerAccount(connection_id=self.connection.id, kind=kind, external_id=external_id, name=name)
            self.session.add(ba)
            self.connection.accounts.append(ba)
        ba.external_id = external_id
        ba.name = name
        ba.currency = currency
        ba.current_balance = balance
        ba.raw_payload = dict(summary)
        ba.institution_metadata = self._institution_metadata()
        ba.updated_at = utcnow()
        self.session.flush()
        log.info("Saved %s account %s (%s)", kind, ba.id, name)
        return ba, created

    # --- transactions ---

    def _fetch_and_store(self) -> tuple[SyncWindow, int]:
        cash = self._account(ACCOUNT_KIND_CASH)
        invest = self._account(ACCOUNT_KIND_INVESTMENT)

        window = compute_window(
            stored_records(cash),
            last_synced_at=self.connection.last_synced_at,
            now=self.now_fn(),
            overlap_days=self.settings.incremental_overlap_days,
        )
        log.info("Fetching transactions from %s to %s", window.start.isoformat(), window.end.isoformat())

        fetched = self.adapter.fetch_transactions(window.start, window.end)
        cash_records, investment_records = split_by_account_kind(fetched)
        log.info("Found %s cash transactions, %s investment orders", len(cash_records), len(investment_records))

        count = self._store(cash, cash_records) + self._store(invest, investment_records)
        self._refresh_balances(cash, invest)
        return window, count

    def _store(self, broker_account: Optional[BrokerAccount], records: list[TransactionRecord]) -> int:
        if broker_account is None or not records:
            return 0
        existing = stored_records(broker_account)
        new = merge_new_records(existing, records)
        if not new:
            log.info("No new transactions to store in %s account", broker_account.kind)
            return 0
        log.info("Storing %s new transactions in %s account", len(new), broker_account.kind)
        # Stored payloads are kept verbatim; reassign (not mutate) so the JSON column is marked dirty.
        broker_account.raw_transactions_payload = merged_store(
            list(broker_account.raw_transactions_payload or []), [r.to_payload() for r in new]
        )
        broker_account.updated_at = utcnow()
        self.session.flush()
        return len(new)

    def _refresh_balances(self, cash: Optional[BrokerAccount], invest: Optional[BrokerAccount]) -> None:
        try:
            summary = self.adapter.get_account_summary()
        except ProviderError as e:
            log.warning("Failed to fetch balance from API: %s", e)
            return
        spending = self.adapter.get_spending_balance(summary)
        if cash is not None:
            cash.currency = resolve_currency(spending.get("currency"), cash.currency, default=self.settings.default_currency)
            cash.current_balance = spending["balance"]
            cash.raw_payload = dict(summary)
        if invest is not None:
            invest.currency = resolve_currency(summary.get("currency"), invest.currency, default=self.settings.default_currency)
            invest.current_balance = to_decimal((summary.get("investments") or {}).get("currentValue")) or Decimal("0")
            invest.raw_payload = dict(summary)
        self.session.flush()

    # --- connection status ---

    def _mark_active(self) -> None:
        if self.connection.status != CONNECTION_ACTIVE:
            log.info("Connection %s credentials accepted again; marking active", self.connection.id)
            self.connection.status = CONNECTION_ACTIVE

    def _handle_api_error(self, error: ProviderError) -> None:
        if error.is_auth_error:
            self.connection.status = CONNECTION_REQUIRES_UPDATE
            self.session.flush()
        log.error("Export API error for connection %s (%s): %s", self.connection.id, error.error_type, error)
