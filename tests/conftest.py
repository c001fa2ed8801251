from __future__ import annotations

import sys
from decimal import Decimal
from pathlib import Path

import pytest
from sqlalchemy.orm import Session, sessionmaker

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from ledgersync.core.ledger import link_account
from ledgersync.db.models import Base, BrokerAccount, BrokerConnection, LedgerAccount
from ledgersync.db.session import make_engine


@pytest.fixture()
def session() -> Session:
    engine = make_engine("sqlite:///:memory:")
    Base.metadata.create_all(bind=engine)
    SessionLocal = sessionmaker(bind=engine, class_=Session, autoflush=False, autocommit=False)
    with SessionLocal() as s:
        yield s


@pytest.fixture()
def make_connection(session):
    """
    Build a connection with its cash + investment BrokerAccounts, optionally linked.

    Returns (connection, cash_broker_account, investment_broker_account).
    """

    def _make(*, link_cash: bool = True, link_investment: bool = True, currency: str = "EUR", name: str = "T212"):
        conn = BrokerConnection(name=name, provider="TRADING212", status="active", metadata_json={})
        session.add(conn)
        session.flush()
        cash = BrokerAccount(
            connection=conn,
            kind="cash",
            external_id="12345_cash",
            name="Trading 212 Cash",
            currency=currency,
            current_balance=Decimal("0"),
            raw_payload={},
            institution_metadata={},
            raw_transactions_payload=[],
        )
        invest = BrokerAccount(
            connection=conn,
            kind="investment",
            external_id="12345_investment",
            name="Trading 212 Invest",
            currency=currency,
            current_balance=Decimal("0"),
            raw_payload={},
            institution_metadata={},
            raw_transactions_payload=[],
        )
        session.add_all([cash, invest])
        session.flush()
        if link_cash:
            link_ledger(session, cash, "Cash", currency)
        if link_investment:
            link_ledger(session, invest, "Invest", currency)
        return conn, cash, invest

    return _make


def link_ledger(session, broker_account, name: str, currency: str = "EUR") -> LedgerAccount:
    acct = LedgerAccount(name=name, currency=currency)
    session.add(acct)
    session.flush()
    link_account(session, broker_account=broker_account, ledger_account=acct)
    return acct


@pytest.fixture()
def link(session):
    def _link(broker_account, name: str, currency: str = "EUR") -> LedgerAccount:
        return link_ledger(session, broker_account, name, currency)

    return _link
