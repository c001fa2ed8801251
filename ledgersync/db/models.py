from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Any, Optional

try:
    from sqlalchemy import (
        JSON,
        Boolean,
        Date,
        Enum,
        ForeignKey,
        Integer,
        Numeric,
        String,
        Text,
        UniqueConstraint,
    )
    from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
except Exception as e:  # pragma: no cover
    raise RuntimeError(
        "Failed to import SQLAlchemy. Create a virtualenv and install the project:\n"
        "  python -m venv .venv\n"
        "  source .venv/bin/activate\n"
        "  pip install -e .\n\n"
        f"Original error: {type(e).__name__}: {e}"
    ) from e

from ledgersync.db.types import UTCDateTime
from ledgersync.utils.time import utcnow


class Base(DeclarativeBase):
    pass


SyncMode = Enum("FULL", "INCREMENTAL", name="sync_mode")
SyncStatus = Enum("SUCCESS", "PARTIAL", "ERROR", name="sync_status")

CONNECTION_ACTIVE = "active"
CONNECTION_REQUIRES_UPDATE = "requires_update"

ACCOUNT_KIND_CASH = "cash"
ACCOUNT_KIND_INVESTMENT = "investment"

ENTRY_KIND_TRANSACTION = "transaction"
ENTRY_KIND_TRADE = "trade"
ENTRY_KIND_FUNDS_MOVEMENT = "funds_movement"

TRANSFER_CONFIRMED = "confirmed"


# --- Broker side ---


class BrokerConnection(Base):
    __tablename__ = "broker_connections"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)
    provider: Mapped[str] = mapped_column(String(50), nullable=False, default="TRADING212")
    status: Mapped[str] = mapped_column(String(50), nullable=False, default=CONNECTION_ACTIVE)  # active|requires_update
    metadata_json: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    pending_account_setup: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_synced_at: Mapped[Optional[dt.datetime]] = mapped_column(UTCDateTime())
    last_error_json: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    accounts: Mapped[list["BrokerAccount"]] = relationship(back_populates="connection")
    sync_runs: Mapped[list["SyncRun"]] = relationship(back_populates="connection")


class BrokerAccount(Base):
    __tablename__ = "broker_accounts"
    __table_args__ = (
        UniqueConstraint("connection_id", "kind"),
        UniqueConstraint("connection_id", "external_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    connection_id: Mapped[int] = mapped_column(ForeignKey("broker_connections.id"), nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)  # cash|investment
    external_id: Mapped[str] = mapped_column(String(200), nullable=False)  # <remote id>_cash|_investment
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    current_balance: Mapped[Optional[Decimal]] = mapped_column(Numeric(20, 6))
    currency: Mapped[Optional[str]] = mapped_column(String(3))
    raw_payload: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    institution_metadata: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    # Append-only record store (TransactionRecord.to_payload() dicts).
    raw_transactions_payload: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    connection: Mapped["BrokerConnection"] = relationship(back_populates="accounts")
    link: Mapped[Optional["AccountLink"]] = relationship(back_populates="broker_account", uselist=False)

    @property
    def linked_account(self) -> Optional["LedgerAccount"]:
        return self.link.ledger_account if self.link is not None else None


class AccountLink(Base):
    __tablename__ = "account_links"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    broker_account_id: Mapped[int] = mapped_column(ForeignKey("broker_accounts.id"), unique=True, nullable=False)
    ledger_account_id: Mapped[int] = mapped_column(ForeignKey("ledger_accounts.id"), unique=True, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    broker_account: Mapped["BrokerAccount"] = relationship(back_populates="link")
    ledger_account: Mapped["LedgerAccount"] = relationship()


class ExternalCredential(Base):
    __tablename__ = "external_credentials"
    __table_args__ = (UniqueConstraint("connection_id", "key"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    connection_id: Mapped[int] = mapped_column(ForeignKey("broker_connections.id"), nullable=False)
    key: Mapped[str] = mapped_column(String(100), nullable=False)  # api_key|api_secret
    value_encrypted: Mapped[str] = mapped_column(Text, nullable=False)  # fernet token (base64 text)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)


class SyncRun(Base):
    __tablename__ = "sync_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    connection_id: Mapped[int] = mapped_column(ForeignKey("broker_connections.id"), nullable=False)
    started_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    finished_at: Mapped[Optional[dt.datetime]] = mapped_column(UTCDateTime())
    status: Mapped[str] = mapped_column(SyncStatus, nullable=False, default="ERROR")
    mode: Mapped[Optional[str]] = mapped_column(SyncMode)

    window_start: Mapped[Optional[dt.datetime]] = mapped_column(UTCDateTime())
    window_end: Mapped[Optional[dt.datetime]] = mapped_column(UTCDateTime())
    accounts_created: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    accounts_updated: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    new_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    processed_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_json: Mapped[Optional[str]] = mapped_column(Text)

    stats_json: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)

    connection: Mapped["BrokerConnection"] = relationship(back_populates="sync_runs")


# --- Ledger side ---


class LedgerAccount(Base):
    __tablename__ = "ledger_accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    balance: Mapped[Optional[Decimal]] = mapped_column(Numeric(20, 6))
    cash_balance: Mapped[Optional[Decimal]] = mapped_column(Numeric(20, 6))
    currency: Mapped[Optional[str]] = mapped_column(String(3))
    visible: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    entries: Mapped[list["LedgerEntry"]] = relationship(back_populates="account")


class Security(Base):
    __tablename__ = "securities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ticker: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    isin: Mapped[Optional[str]] = mapped_column(String(12))
    name: Mapped[Optional[str]] = mapped_column(String(200))
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)


class Merchant(Base):
    __tablename__ = "merchants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    provider_merchant_id: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    source: Mapped[str] = mapped_column(String(50), nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)


class LedgerEntry(Base):
    __tablename__ = "ledger_entries"
    __table_args__ = (UniqueConstraint("account_id", "external_id", "source"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(ForeignKey("ledger_accounts.id"), nullable=False)
    external_id: Mapped[str] = mapped_column(String(200), nullable=False)
    source: Mapped[str] = mapped_column(String(50), nullable=False)
    kind: Mapped[str] = mapped_column(String(30), nullable=False)  # transaction|trade|funds_movement
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(20, 6), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    merchant_id: Mapped[Optional[int]] = mapped_column(ForeignKey("merchants.id"))
    # Trade-only fields.
    security_id: Mapped[Optional[int]] = mapped_column(ForeignKey("securities.id"))
    quantity: Mapped[Optional[Decimal]] = mapped_column(Numeric(24, 10))
    price: Mapped[Optional[Decimal]] = mapped_column(Numeric(24, 10))
    price_currency: Mapped[Optional[str]] = mapped_column(String(3))
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    account: Mapped["LedgerAccount"] = relationship(back_populates="entries")
    merchant: Mapped[Optional["Merchant"]] = relationship()
    security: Mapped[Optional["Security"]] = relationship()


class Transfer(Base):
    __tablename__ = "transfers"
    __table_args__ = (UniqueConstraint("inflow_entry_id", "outflow_entry_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    inflow_entry_id: Mapped[int] = mapped_column(ForeignKey("ledger_entries.id"), nullable=False)
    outflow_entry_id: Mapped[int] = mapped_column(ForeignKey("ledger_entries.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=TRANSFER_CONFIRMED)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    inflow_entry: Mapped["LedgerEntry"] = relationship(foreign_keys=[inflow_entry_id])
    outflow_entry: Mapped["LedgerEntry"] = relationship(foreign_keys=[outflow_entry_id])


class BalanceAnchor(Base):
    __tablename__ = "balance_anchors"
    __table_args__ = (UniqueConstraint("account_id", "kind"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(ForeignKey("ledger_accounts.id"), nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False, default="opening")
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    balance: Mapped[Decimal] = mapped_column(Numeric(20, 6), nullable=False)
    currency: Mapped[Optional[str]] = mapped_column(String(3))
    updated_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    actor: Mapped[str] = mapped_column(String(200), nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    entity: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_id: Mapped[Optional[str]] = mapped_column(String(100))
    old_json: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON)
    new_json: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON)
    note: Mapped[Optional[str]] = mapped_column(Text)
