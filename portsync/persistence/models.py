"""
Snapshot storage schema.

Every account-scoped table carries a ``source`` tag so a replace-all write for
the gateway never touches rows entered through other channels.
"""

from sqlalchemy import Column, DateTime, Float, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()


class AccountBalanceRecord(Base):
    """Headline balance per account and source"""

    __tablename__ = "account_balances"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(Integer, nullable=False)
    source = Column(String(16), nullable=False)
    account_code = Column(String(32))
    amount = Column(Float, nullable=False)
    currency = Column(String(8), nullable=False)
    total_cash = Column(Float)
    updated_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("account_id", "source", name="uq_account_balances_account_source"),
    )


class PositionRecord(Base):
    """One persisted position"""

    __tablename__ = "positions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(Integer, nullable=False)
    source = Column(String(16), nullable=False)
    con_id = Column(Integer)
    symbol = Column(String(64), nullable=False)
    sec_type = Column(String(16), nullable=False)
    currency = Column(String(8))
    country = Column(String(64))
    industry = Column(String(128))
    category = Column(String(128))
    quantity = Column(Float, nullable=False)
    average_cost = Column(Float)
    exchange = Column(String(32))
    primary_exchange = Column(String(32))
    market_price = Column(Float)
    market_value = Column(Float)
    close_price = Column(Float)
    day_change = Column(Float)
    day_change_percent = Column(Float)
    unrealized_pnl = Column(Float)
    realized_pnl = Column(Float)
    updated_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (Index("idx_positions_account_source", "account_id", "source"),)


class CashBalanceRecord(Base):
    """Cash per currency, valued in the reporting currencies"""

    __tablename__ = "cash_balances"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(Integer, nullable=False)
    source = Column(String(16), nullable=False)
    currency = Column(String(8), nullable=False)
    amount = Column(Float, nullable=False)
    market_value_hkd = Column(Float)
    market_value_usd = Column(Float)
    updated_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (Index("idx_cash_balances_account_source", "account_id", "source"),)


class LastUpdateRecord(Base):
    """Last successful refresh per account and data category"""

    __tablename__ = "last_updates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(Integer, nullable=False)
    update_type = Column(String(16), nullable=False)
    last_updated = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("account_id", "update_type", name="uq_last_updates_account_type"),
    )


class ContractReferenceRecord(Base):
    """Account-independent reference data per contract id"""

    __tablename__ = "contract_references"

    con_id = Column(Integer, primary_key=True)
    industry = Column(String(128))
    category = Column(String(128))
    country = Column(String(64))
    long_name = Column(String(256))
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
