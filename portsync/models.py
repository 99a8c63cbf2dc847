"""
In-memory data model shared by the gateway, enrichment and persistence layers.
"""

import math
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

CASH_SEC_TYPE = "CASH"
BOND_SEC_TYPE = "BOND"
CRYPTO_SEC_TYPE = "CRYPTO"
EQUITY_SEC_TYPES = ("STK", "ETF")


class RefreshCategory(Enum):
    """Data categories with their own last-refresh timestamp."""

    BALANCE = "balance"
    PORTFOLIO = "portfolio"
    CASH = "cash"


def clean_price(value: Optional[float]) -> Optional[float]:
    """Map missing/NaN gateway prices to None."""
    if value is None:
        return None
    try:
        value = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(value) or math.isinf(value):
        return None
    return value


@dataclass
class RawPosition:
    """
    One line item from the streaming portfolio feed.

    Repeated updates for the same ``con_id`` mutate the existing instance
    through ``apply_update``.
    """

    con_id: int
    symbol: str
    sec_type: str
    currency: str
    quantity: float = 0.0
    average_cost: float = 0.0
    last_price: Optional[float] = None
    market_value: Optional[float] = None
    unrealized_pnl: Optional[float] = None
    realized_pnl: Optional[float] = None
    exchange: str = ""
    primary_exchange: str = ""
    local_symbol: str = ""
    account_code: str = ""
    updated_at: Optional[datetime] = None

    def apply_update(
        self,
        quantity: float,
        last_price: Optional[float],
        market_value: Optional[float],
        average_cost: Optional[float] = None,
        unrealized_pnl: Optional[float] = None,
        realized_pnl: Optional[float] = None,
    ) -> None:
        self.quantity = quantity
        self.last_price = clean_price(last_price)
        self.market_value = clean_price(market_value)
        if average_cost is not None:
            self.average_cost = clean_price(average_cost) or 0.0
        self.unrealized_pnl = clean_price(unrealized_pnl)
        self.realized_pnl = clean_price(realized_pnl)
        self.updated_at = datetime.now(timezone.utc)

    @property
    def is_bond(self) -> bool:
        return self.sec_type == BOND_SEC_TYPE

    @property
    def is_crypto(self) -> bool:
        return self.sec_type == CRYPTO_SEC_TYPE

    @property
    def has_contract_id(self) -> bool:
        return bool(self.con_id) and self.con_id > 0


@dataclass
class ContractReference:
    """Account-independent reference data cached per contract id."""

    con_id: int
    industry: Optional[str] = None
    category: Optional[str] = None
    country: Optional[str] = None
    long_name: Optional[str] = None


@dataclass
class EnrichedPosition(RawPosition):
    """RawPosition plus reference data, previous close and day change."""

    industry: Optional[str] = None
    category: Optional[str] = None
    country: Optional[str] = None
    previous_close: Optional[float] = None
    day_change: Optional[float] = None
    day_change_percent: Optional[float] = None

    @classmethod
    def from_raw(cls, raw: RawPosition) -> "EnrichedPosition":
        values = {f.name: getattr(raw, f.name) for f in fields(RawPosition)}
        return cls(**values)

    def apply_reference(self, reference: ContractReference) -> None:
        self.industry = reference.industry or self.industry
        self.category = reference.category or self.category
        self.country = reference.country or self.country


@dataclass
class CashBalance:
    """Cash held in one currency, valued in the two reporting currencies."""

    currency: str
    amount: float
    value_hkd: Optional[float] = None
    value_usd: Optional[float] = None


@dataclass
class AccountBalance:
    """Headline account value (net liquidation, else total cash)."""

    amount: float
    currency: str = "USD"
    account_code: str = ""
    total_cash: Optional[float] = None


@dataclass
class AccountSnapshot:
    """The unit of persistence for one account."""

    account_id: int
    balance: Optional[AccountBalance] = None
    positions: List[EnrichedPosition] = field(default_factory=list)
    cash_balances: List[CashBalance] = field(default_factory=list)
    last_refreshed: Dict[RefreshCategory, datetime] = field(default_factory=dict)

    @property
    def total_market_value(self) -> float:
        return sum(p.market_value or 0.0 for p in self.positions)
