from __future__ import annotations

import datetime as dt
import logging
from decimal import Decimal
from typing import Any, Optional, Protocol

from sqlalchemy.orm import Session

from ledgersync.db.models import (
    TRANSFER_CONFIRMED,
    AccountLink,
    BalanceAnchor,
    BrokerAccount,
    LedgerAccount,
    LedgerEntry,
    Merchant,
    Security,
    Transfer,
)
from ledgersync.utils.time import utcnow


log = logging.getLogger(__name__)


def find_entry(session: Session, *, account_id: int, external_id: str, source: str) -> Optional[LedgerEntry]:
    return (
        session.query(LedgerEntry)
        .filter(
            LedgerEntry.account_id == account_id,
            LedgerEntry.external_id == external_id,
            LedgerEntry.source == source,
        )
        .one_or_none()
    )


def upsert_entry(
    session: Session,
    *,
    account: LedgerAccount,
    external_id: str,
    source: str,
    kind: str,
    **fields: Any,
) -> LedgerEntry:
    """
    Find-or-create by `(account, external_id, source)`, then assign `fields`.

    `kind` is only set on creation; an existing entry keeps its shape.
    """
    entry = find_entry(session, account_id=account.id, external_id=external_id, source=source)
    if entry is None:
        entry = LedgerEntry(account_id=account.id, external_id=external_id, source=source, kind=kind)
        session.add(entry)
    for k, v in fields.items():
        setattr(entry, k, v)
    entry.updated_at = utcnow()
    session.flush()
    return entry


def find_or_create_transfer(
    session: Session,
    *,
    inflow: LedgerEntry,
    outflow: LedgerEntry,
    status: str = TRANSFER_CONFIRMED,
) -> Transfer:
    transfer = (
        session.query(Transfer)
        .filter(Transfer.inflow_entry_id == inflow.id, Transfer.outflow_entry_id == outflow.id)
        .one_or_none()
    )
    if transfer is None:
        transfer = Transfer(inflow_entry_id=inflow.id, outflow_entry_id=outflow.id)
        session.add(transfer)
    transfer.status = status
    session.flush()
    return transfer


def find_or_create_merchant(session: Session, *, provider_merchant_id: str, name: str, source: str) -> Merchant:
    merchant = session.query(Merchant).filter(Merchant.provider_merchant_id == provider_merchant_id).one_or_none()
    if merchant is not None:
        return merchant
    if not (name or "").strip():
        raise ValueError("Merchant name can't be blank")
    merchant = Merchant(provider_merchant_id=provider_merchant_id, name=name.strip(), source=source)
    session.add(merchant)
    session.flush()
    return merchant


def find_or_create_security(
    session: Session,
    *,
    ticker: str,
    isin: str | None = None,
    name: str | None = None,
) -> Security:
    security = session.query(Security).filter(Security.ticker == ticker).one_or_none()
    if security is None:
        security = Security(ticker=ticker, isin=isin, name=name or ticker)
        session.add(security)
        session.flush()
        return security
    # Fill gaps only; never overwrite what is already known.
    if isin and not security.isin:
        security.isin = isin
    if name and (not security.name or security.name == security.ticker):
        security.name = name
    return security


class SecurityResolver(Protocol):
    def resolve(self, ticker: str, *, isin: str | None = None, name: str | None = None) -> Optional[Security]:
        ...


class DbSecurityResolver:
    """Maps a ticker to a local Security row, creating it on first sight."""

    def __init__(self, session: Session):
        self.session = session

    def resolve(self, ticker: str, *, isin: str | None = None, name: str | None = None) -> Optional[Security]:
        t = (ticker or "").strip().upper()
        if not t:
            return None
        return find_or_create_security(self.session, ticker=t, isin=isin, name=name)


def set_opening_anchor(
    session: Session,
    *,
    account: LedgerAccount,
    date: dt.date,
    balance: Decimal = Decimal("0"),
    currency: str | None = None,
) -> BalanceAnchor:
    anchor = (
        session.query(BalanceAnchor)
        .filter(BalanceAnchor.account_id == account.id, BalanceAnchor.kind == "opening")
        .one_or_none()
    )
    if anchor is None:
        anchor = BalanceAnchor(account_id=account.id, kind="opening", date=date, balance=balance)
        session.add(anchor)
    anchor.date = date
    anchor.balance = balance
    anchor.currency = currency or account.currency
    anchor.updated_at = utcnow()
    session.flush()
    log.info("Opening anchor for account %s: balance=%s date=%s", account.id, balance, date.isoformat())
    return anchor


def link_account(session: Session, *, broker_account: BrokerAccount, ledger_account: LedgerAccount) -> AccountLink:
    """Attach a BrokerAccount to a local account (0..1 on both sides)."""
    taken = (
        session.query(AccountLink)
        .filter(AccountLink.ledger_account_id == ledger_account.id, AccountLink.broker_account_id != broker_account.id)
        .one_or_none()
    )
    if taken is not None:
        raise ValueError(f"Ledger account {ledger_account.id} is already linked to broker account {taken.broker_account_id}")
    link = broker_account.link
    if link is None:
        link = AccountLink(broker_account=broker_account, ledger_account=ledger_account)
        session.add(link)
    else:
        link.ledger_account = ledger_account
    session.flush()
    return link
