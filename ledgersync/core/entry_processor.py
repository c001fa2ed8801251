from __future__ import annotations

import datetime as dt
import hashlib
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional, Union

from sqlalchemy.orm import Session

from ledgersync.core.config import SyncSettings
from ledgersync.core.currency import normalize_currency, resolve_currency
from ledgersync.core.identity import EffectiveId, ValidationError, effective_id
from ledgersync.core.ledger import (
    DbSecurityResolver,
    SecurityResolver,
    find_or_create_merchant,
    find_or_create_transfer,
    upsert_entry,
)
from ledgersync.db.models import (
    ACCOUNT_KIND_CASH,
    ACCOUNT_KIND_INVESTMENT,
    ENTRY_KIND_FUNDS_MOVEMENT,
    ENTRY_KIND_TRADE,
    ENTRY_KIND_TRANSACTION,
    TRANSFER_CONFIRMED,
    BrokerAccount,
    LedgerAccount,
    LedgerEntry,
    Merchant,
    Transfer,
)
from ledgersync.importers.records import TransactionRecord
from ledgersync.utils.time import utcfromtimestamp


log = logging.getLogger(__name__)

IMPORTED = "imported"
SKIPPED = "skipped"

TRANSFER_OUT_SUFFIX = "_transfer_out"
TRANSFER_IN_SUFFIX = "_transfer_in"


class ProcessingError(Exception):
    """Unexpected failure while posting a record (persistence, bad state)."""


@dataclass(frozen=True)
class TransferPostings:
    outflow: LedgerEntry
    inflow: LedgerEntry
    transfer: Transfer


@dataclass(frozen=True)
class EntryOutcome:
    status: str
    entry: Optional[LedgerEntry] = None
    reason: Optional[str] = None
    transfer: Optional[TransferPostings] = None

    @property
    def imported(self) -> bool:
        return self.status == IMPORTED

    @classmethod
    def skipped(cls, reason: str) -> "EntryOutcome":
        return cls(status=SKIPPED, reason=reason)


def parse_record_date(value: Any) -> dt.date:
    """
    Posting date from a record timestamp: export strings ("2026-01-03 15:19:21" or ISO),
    epoch seconds, datetimes and dates. Anything else raises ValidationError.
    """
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return utcfromtimestamp(float(value)).date()
        except (OverflowError, OSError, ValueError) as e:
            raise ValidationError(f"Unable to parse transaction time: {value!r}") from e
    if isinstance(value, str):
        s = value.strip()
        if s:
            try:
                return dt.datetime.fromisoformat(s.replace("Z", "+00:00")).date()
            except ValueError:
                pass
            try:
                return dt.date.fromisoformat(s[:10])
            except ValueError:
                pass
        raise ValidationError(f"Unable to parse transaction time: {value!r}")
    raise ValidationError(f"Invalid time format: {value!r}")


def merchant_provider_id(name: str) -> str:
    return "trading212_merchant_" + hashlib.md5(name.lower().encode("utf-8")).hexdigest()


def synthesize_transfer(
    session: Session,
    *,
    trade_id: EffectiveId,
    is_buy: bool,
    magnitude: Decimal,
    currency: str,
    date: dt.date,
    cash_account: LedgerAccount,
    investment_account: LedgerAccount,
    source: str,
) -> TransferPostings:
    """
    Post the cash leg of a trade: one outflow (+m) in the paying account, one inflow (-m)
    in the receiving account, and the Transfer linking them.

    Buys move cash -> investment, sells investment -> cash. Both legs are keyed off the
    trade id so reprocessing finds the same rows.
    """
    m = abs(magnitude)
    if is_buy:
        src, dst = cash_account, investment_account
    else:
        src, dst = investment_account, cash_account

    outflow = upsert_entry(
        session,
        account=src,
        external_id=trade_id.suffixed(TRANSFER_OUT_SUFFIX),
        source=source,
        kind=ENTRY_KIND_FUNDS_MOVEMENT,
        amount=m,
        currency=currency,
        date=date,
        name=f"Transfer to {dst.name}",
    )
    inflow = upsert_entry(
        session,
        account=dst,
        external_id=trade_id.suffixed(TRANSFER_IN_SUFFIX),
        source=source,
        kind=ENTRY_KIND_FUNDS_MOVEMENT,
        amount=-m,
        currency=currency,
        date=date,
        name=f"Transfer from {src.name}",
    )
    transfer = find_or_create_transfer(session, inflow=inflow, outflow=outflow, status=TRANSFER_CONFIRMED)
    return TransferPostings(outflow=outflow, inflow=inflow, transfer=transfer)


RecordLike = Union[TransactionRecord, dict]


class EntryProcessor:
    """
    Classifies one stored record of a BrokerAccount and posts it to the linked ledger account.

    Cash movements (dividends included) become `transaction` entries with the amount negated.
    Investment orders become `trade` entries, plus a transfer pair when both sides of the
    connection are linked.
    """

    def __init__(
        self,
        session: Session,
        broker_account: BrokerAccount,
        *,
        settings: SyncSettings | None = None,
        security_resolver: SecurityResolver | None = None,
    ):
        self.session = session
        self.broker_account = broker_account
        self.settings = settings or SyncSettings()
        self.security_resolver = security_resolver or DbSecurityResolver(session)

    @property
    def source(self) -> str:
        return self.settings.source

    @property
    def account(self) -> Optional[LedgerAccount]:
        return self.broker_account.linked_account

    def process(self, record: RecordLike) -> EntryOutcome:
        rec = TransactionRecord.from_payload(record) if isinstance(record, dict) else record
        ident = effective_id(rec)

        account = self.account
        if account is None:
            log.warning(
                "No linked account for broker account %s, skipping transaction %s", self.broker_account.id, ident
            )
            return EntryOutcome.skipped("No linked account")

        if (rec.action or "") in set(self.settings.skipped_actions):
            log.debug("Skipping transaction %s with action %r", ident, rec.action)
            return EntryOutcome.skipped(f"Skipped action: {rec.action}")

        try:
            if rec.is_investment_order:
                return self._import_investment_order(rec, ident, account)
            return self._import_cash_movement(rec, ident, account)
        except ValidationError as e:
            log.error("Validation error for transaction %s: %s", ident, e)
            raise
        except Exception as e:
            log.error("Unexpected error processing transaction %s: %s: %s", ident, type(e).__name__, e)
            raise ProcessingError(f"Unexpected error importing transaction: {e}") from e

    # --- shared ---

    def _currency(self, rec: TransactionRecord, account: LedgerAccount) -> str:
        return resolve_currency(
            rec.currency,
            account.currency,
            default=self.settings.default_currency,
            context=f"transaction {rec.source_id}",
        )

    @staticmethod
    def _require_amount(rec: TransactionRecord) -> Decimal:
        if rec.amount is None:
            raise ValidationError(f"Transaction {rec.source_id} has no parseable amount")
        return rec.amount

    @staticmethod
    def _display_name(rec: TransactionRecord) -> str:
        action = rec.action or "Transaction"
        if rec.is_investment_order or rec.is_dividend:
            label = "Dividend" if rec.is_dividend else action
            subject = rec.ticker or rec.stock_name
            return f"{label} {subject}" if subject else label
        return rec.merchant_name or action

    @staticmethod
    def _notes(rec: TransactionRecord) -> Optional[str]:
        parts: list[str] = []
        if rec.action:
            parts.append(f"Type: {rec.action}")
        if rec.is_investment_order:
            if rec.ticker:
                parts.append(f"Ticker: {rec.ticker}")
            if rec.isin:
                parts.append(f"ISIN: {rec.isin}")
            if rec.shares is not None:
                parts.append(f"Shares: {rec.shares}")
            if rec.price_per_share is not None:
                parts.append(f"Price: {rec.price_per_share} {rec.share_currency or ''}".rstrip())
            if rec.notes:
                parts.append(rec.notes)
        elif rec.category:
            parts.append(f"Category: {rec.category}")
        return " | ".join(parts) if parts else None

    # --- cash path ---

    def _merchant(self, rec: TransactionRecord) -> Optional[Merchant]:
        name = (rec.merchant_name or "").strip()
        if not name:
            return None
        try:
            with self.session.begin_nested():
                return find_or_create_merchant(
                    self.session,
                    provider_merchant_id=merchant_provider_id(name),
                    name=name,
                    source=self.source,
                )
        except Exception as e:
            log.error("Failed to create merchant %r: %s", name, e)
            return None

    def _import_cash_movement(self, rec: TransactionRecord, ident: EffectiveId, account: LedgerAccount) -> EntryOutcome:
        # Source: positive = money in. Ledger: positive = outflow.
        amount = -self._require_amount(rec)
        date = parse_record_date(rec.timestamp)
        merchant = self._merchant(rec)
        entry = upsert_entry(
            self.session,
            account=account,
            external_id=ident.value,
            source=self.source,
            kind=ENTRY_KIND_TRANSACTION,
            amount=amount,
            currency=self._currency(rec, account),
            date=date,
            name=self._display_name(rec),
            notes=self._notes(rec),
            merchant_id=merchant.id if merchant is not None else None,
        )
        return EntryOutcome(status=IMPORTED, entry=entry)

    # --- investment path ---

    def _import_investment_order(
        self, rec: TransactionRecord, ident: EffectiveId, account: LedgerAccount
    ) -> EntryOutcome:
        security = self.security_resolver.resolve(rec.ticker or "", isin=rec.isin, name=rec.stock_name)
        if security is None:
            log.warning("Could not resolve security for %r, skipping trade %s", rec.ticker, ident)
            return EntryOutcome.skipped(f"Unresolved security: {rec.ticker or 'no ticker'}")

        raw_amount = self._require_amount(rec)
        date = parse_record_date(rec.timestamp)
        currency = self._currency(rec, account)
        shares = abs(rec.shares or Decimal("0"))
        if rec.is_sell:
            quantity, amount = -shares, -abs(raw_amount)
        else:
            quantity, amount = shares, abs(raw_amount)

        entry = upsert_entry(
            self.session,
            account=account,
            external_id=ident.value,
            source=self.source,
            kind=ENTRY_KIND_TRADE,
            amount=amount,
            currency=currency,
            date=date,
            name=self._display_name(rec),
            notes=self._notes(rec),
            security_id=security.id,
            quantity=quantity,
            price=rec.price_per_share,
            # Price is quoted in the share's currency, the amount in the account's.
            price_currency=normalize_currency(rec.share_currency, context=f"transaction {rec.source_id}") or currency,
        )
        postings = self._transfer_for_trade(rec, ident, amount=amount, currency=currency, date=date)
        return EntryOutcome(status=IMPORTED, entry=entry, transfer=postings)

    def _linked_side(self, kind: str) -> Optional[LedgerAccount]:
        if self.broker_account.kind == kind:
            return self.broker_account.linked_account
        sibling = (
            self.session.query(BrokerAccount)
            .filter(BrokerAccount.connection_id == self.broker_account.connection_id, BrokerAccount.kind == kind)
            .one_or_none()
        )
        return sibling.linked_account if sibling is not None else None

    def _transfer_for_trade(
        self,
        rec: TransactionRecord,
        ident: EffectiveId,
        *,
        amount: Decimal,
        currency: str,
        date: dt.date,
    ) -> Optional[TransferPostings]:
        cash_account = self._linked_side(ACCOUNT_KIND_CASH)
        investment_account = self._linked_side(ACCOUNT_KIND_INVESTMENT)
        if cash_account is None or investment_account is None:
            log.info(
                "Skipping transfer for %s, not all accounts linked (cash: %s, invest: %s)",
                ident,
                cash_account.id if cash_account is not None else None,
                investment_account.id if investment_account is not None else None,
            )
            return None
        try:
            with self.session.begin_nested():
                postings = synthesize_transfer(
                    self.session,
                    trade_id=ident,
                    is_buy=not rec.is_sell,
                    magnitude=amount,
                    currency=currency,
                    date=date,
                    cash_account=cash_account,
                    investment_account=investment_account,
                    source=self.source,
                )
        except Exception as e:
            # The trade entry stays; only the cash leg is lost.
            log.error("Failed to create transfer for %s: %s: %s", ident, type(e).__name__, e)
            return None
        log.info(
            "Created transfer %s for %s (%s -> %s)",
            postings.transfer.id,
            rec.ticker or "Stock",
            postings.outflow.account_id,
            postings.inflow.account_id,
        )
        return postings
