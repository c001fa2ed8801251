from __future__ import annotations

import datetime as dt
import logging
from decimal import Decimal
from typing import Any, Iterable, Optional

from sqlalchemy.orm import Session

from ledgersync.core.batch_runner import BatchResult, process_account_transactions
from ledgersync.core.config import SyncSettings
from ledgersync.core.currency import resolve_currency
from ledgersync.core.entry_processor import parse_record_date
from ledgersync.core.identity import ValidationError
from ledgersync.core.ledger import SecurityResolver, set_opening_anchor
from ledgersync.db.models import BrokerAccount, LedgerAccount


log = logging.getLogger(__name__)


def earliest_record_date(payloads: Iterable[Any]) -> Optional[dt.date]:
    dates: list[dt.date] = []
    for p in payloads:
        if isinstance(p, dict):
            raw = p.get("time") or p.get("timestamp") or p.get("date")
        else:
            raw = getattr(p, "timestamp", None)
        if raw is None or raw == "":
            continue
        try:
            dates.append(parse_record_date(raw))
        except ValidationError:
            continue
    return min(dates) if dates else None


class AccountProcessor:
    """
    Reconciles a linked BrokerAccount with its ledger account, then posts its stored records.
    """

    def __init__(
        self,
        session: Session,
        broker_account: BrokerAccount,
        *,
        settings: SyncSettings | None = None,
        security_resolver: Optional[SecurityResolver] = None,
    ):
        self.session = session
        self.broker_account = broker_account
        self.settings = settings or SyncSettings()
        self.security_resolver = security_resolver

    def process(self) -> Optional[BatchResult]:
        account = self.broker_account.linked_account
        if account is None:
            log.info("No linked account for broker account %s, skipping processing", self.broker_account.id)
            return None

        log.info("Processing broker account %s (ledger account %s)", self.broker_account.id, account.id)
        self._apply_balance(account)
        self._apply_opening_anchor(account)
        return self._process_transactions()

    def _apply_balance(self, account: LedgerAccount) -> None:
        balance = self.broker_account.current_balance
        if balance is None:
            balance = Decimal("0")
        account.balance = balance
        account.cash_balance = balance
        account.currency = resolve_currency(
            self.broker_account.currency,
            account.currency,
            default=self.settings.default_currency,
            context=f"broker account {self.broker_account.id}",
        )
        self.session.flush()

    def _apply_opening_anchor(self, account: LedgerAccount) -> None:
        # Running balance starts at zero the day before the first known activity.
        oldest = earliest_record_date(self.broker_account.raw_transactions_payload or [])
        if oldest is None:
            return
        set_opening_anchor(
            self.session,
            account=account,
            date=oldest - dt.timedelta(days=1),
            balance=Decimal("0"),
            currency=account.currency,
        )

    def _process_transactions(self) -> Optional[BatchResult]:
        try:
            return process_account_transactions(
                self.session,
                self.broker_account,
                settings=self.settings,
                security_resolver=self.security_resolver,
            )
        except Exception as e:
            log.error("Error processing transactions for broker account %s: %s", self.broker_account.id, e)
            return None
