"""
Snapshot store.

``SnapshotStore`` is the persistence seam used by ``PersistenceSync`` and the
read path. Each replace operation swaps every row for (account, source) in one
transaction, so a failed write leaves the previous rows untouched.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from sqlalchemy import delete, insert, select

from portsync.enrichment.contract_cache import ReferenceStore
from portsync.logging import get_logger
from portsync.models import (
    AccountBalance,
    AccountSnapshot,
    CashBalance,
    ContractReference,
    EnrichedPosition,
    RefreshCategory,
)
from portsync.persistence.database import DatabaseManager
from portsync.persistence.models import (
    AccountBalanceRecord,
    CashBalanceRecord,
    ContractReferenceRecord,
    LastUpdateRecord,
    PositionRecord,
)

logger = get_logger(__name__)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; they are stored as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class SnapshotStore(ABC):
    @abstractmethod
    async def replace_balance(
        self, account_id: int, source: str, balance: AccountBalance
    ) -> None:
        ...

    @abstractmethod
    async def replace_positions(
        self, account_id: int, source: str, positions: List[EnrichedPosition]
    ) -> int:
        """Swap the account's positions for ``source``; returns rows written."""

    @abstractmethod
    async def replace_cash_balances(
        self, account_id: int, source: str, cash_balances: List[CashBalance]
    ) -> int:
        ...

    @abstractmethod
    async def mark_refreshed(
        self, account_id: int, category: RefreshCategory, at: datetime
    ) -> None:
        ...

    @abstractmethod
    async def load_last_refreshed(self, account_id: int) -> Dict[RefreshCategory, datetime]:
        ...

    @abstractmethod
    async def load_snapshot(self, account_id: int, source: str) -> AccountSnapshot:
        ...


def _position_row(account_id: int, source: str, position: EnrichedPosition) -> dict:
    return {
        "account_id": account_id,
        "source": source,
        "con_id": position.con_id or None,
        "symbol": position.symbol,
        "sec_type": position.sec_type,
        "currency": position.currency,
        "country": position.country,
        "industry": position.industry,
        "category": position.category,
        "quantity": position.quantity,
        "average_cost": position.average_cost,
        "exchange": position.exchange,
        "primary_exchange": position.primary_exchange,
        "market_price": position.last_price,
        "market_value": position.market_value,
        "close_price": position.previous_close,
        "day_change": position.day_change,
        "day_change_percent": position.day_change_percent,
        "unrealized_pnl": position.unrealized_pnl,
        "realized_pnl": position.realized_pnl,
        "updated_at": position.updated_at or datetime.now(timezone.utc),
    }


def _position_from_record(record: PositionRecord) -> EnrichedPosition:
    return EnrichedPosition(
        con_id=record.con_id or 0,
        symbol=record.symbol,
        sec_type=record.sec_type,
        currency=record.currency or "",
        quantity=record.quantity,
        average_cost=record.average_cost or 0.0,
        last_price=record.market_price,
        market_value=record.market_value,
        unrealized_pnl=record.unrealized_pnl,
        realized_pnl=record.realized_pnl,
        exchange=record.exchange or "",
        primary_exchange=record.primary_exchange or "",
        updated_at=as_utc(record.updated_at),
        industry=record.industry,
        category=record.category,
        country=record.country,
        previous_close=record.close_price,
        day_change=record.day_change,
        day_change_percent=record.day_change_percent,
    )


class SqlSnapshotStore(SnapshotStore):
    """SQLAlchemy-backed snapshot store."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    async def replace_balance(
        self, account_id: int, source: str, balance: AccountBalance
    ) -> None:
        async with self.db.get_session() as session:
            async with session.begin():
                await session.execute(
                    delete(AccountBalanceRecord).where(
                        AccountBalanceRecord.account_id == account_id,
                        AccountBalanceRecord.source == source,
                    )
                )
                session.add(
                    AccountBalanceRecord(
                        account_id=account_id,
                        source=source,
                        account_code=balance.account_code,
                        amount=balance.amount,
                        currency=balance.currency,
                        total_cash=balance.total_cash,
                        updated_at=datetime.now(timezone.utc),
                    )
                )

    async def replace_positions(
        self, account_id: int, source: str, positions: List[EnrichedPosition]
    ) -> int:
        rows = [_position_row(account_id, source, p) for p in positions]
        async with self.db.get_session() as session:
            async with session.begin():
                await session.execute(
                    delete(PositionRecord).where(
                        PositionRecord.account_id == account_id,
                        PositionRecord.source == source,
                    )
                )
                if rows:
                    # Single multi-row insert
                    await session.execute(insert(PositionRecord), rows)
        logger.debug(f"Replaced positions for account {account_id}: {len(rows)} rows")
        return len(rows)

    async def replace_cash_balances(
        self, account_id: int, source: str, cash_balances: List[CashBalance]
    ) -> int:
        now = datetime.now(timezone.utc)
        rows = [
            {
                "account_id": account_id,
                "source": source,
                "currency": cash.currency,
                "amount": cash.amount,
                "market_value_hkd": cash.value_hkd,
                "market_value_usd": cash.value_usd,
                "updated_at": now,
            }
            for cash in cash_balances
        ]
        async with self.db.get_session() as session:
            async with session.begin():
                await session.execute(
                    delete(CashBalanceRecord).where(
                        CashBalanceRecord.account_id == account_id,
                        CashBalanceRecord.source == source,
                    )
                )
                if rows:
                    await session.execute(insert(CashBalanceRecord), rows)
        logger.debug(f"Replaced cash balances for account {account_id}: {len(rows)} rows")
        return len(rows)

    async def mark_refreshed(
        self, account_id: int, category: RefreshCategory, at: datetime
    ) -> None:
        async with self.db.get_session() as session:
            async with session.begin():
                result = await session.execute(
                    select(LastUpdateRecord).where(
                        LastUpdateRecord.account_id == account_id,
                        LastUpdateRecord.update_type == category.value,
                    )
                )
                record = result.scalar_one_or_none()
                if record is None:
                    session.add(
                        LastUpdateRecord(
                            account_id=account_id,
                            update_type=category.value,
                            last_updated=at,
                        )
                    )
                else:
                    record.last_updated = at

    async def load_last_refreshed(self, account_id: int) -> Dict[RefreshCategory, datetime]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(LastUpdateRecord).where(LastUpdateRecord.account_id == account_id)
            )
            stamps = {}
            for record in result.scalars().all():
                try:
                    category = RefreshCategory(record.update_type)
                except ValueError:
                    logger.warning(f"Ignoring unknown update type {record.update_type!r}")
                    continue
                stamps[category] = as_utc(record.last_updated)
            return stamps

    async def load_snapshot(self, account_id: int, source: str) -> AccountSnapshot:
        async with self.db.get_session() as session:
            balance_result = await session.execute(
                select(AccountBalanceRecord).where(
                    AccountBalanceRecord.account_id == account_id,
                    AccountBalanceRecord.source == source,
                )
            )
            balance_record = balance_result.scalar_one_or_none()

            position_result = await session.execute(
                select(PositionRecord)
                .where(PositionRecord.account_id == account_id, PositionRecord.source == source)
                .order_by(PositionRecord.id)
            )
            positions = [_position_from_record(r) for r in position_result.scalars().all()]

            cash_result = await session.execute(
                select(CashBalanceRecord)
                .where(
                    CashBalanceRecord.account_id == account_id,
                    CashBalanceRecord.source == source,
                )
                .order_by(CashBalanceRecord.currency)
            )
            cash_balances = [
                CashBalance(
                    currency=r.currency,
                    amount=r.amount,
                    value_hkd=r.market_value_hkd,
                    value_usd=r.market_value_usd,
                )
                for r in cash_result.scalars().all()
            ]

        balance = None
        if balance_record is not None:
            balance = AccountBalance(
                amount=balance_record.amount,
                currency=balance_record.currency,
                account_code=balance_record.account_code or "",
                total_cash=balance_record.total_cash,
            )

        return AccountSnapshot(
            account_id=account_id,
            balance=balance,
            positions=positions,
            cash_balances=cash_balances,
            last_refreshed=await self.load_last_refreshed(account_id),
        )


class SqlReferenceStore(ReferenceStore):
    """Persists contract references so a restart does not re-query the gateway."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    @staticmethod
    def _to_reference(record: ContractReferenceRecord) -> ContractReference:
        return ContractReference(
            con_id=record.con_id,
            industry=record.industry,
            category=record.category,
            country=record.country,
            long_name=record.long_name,
        )

    async def load_reference(self, con_id: int) -> Optional[ContractReference]:
        async with self.db.get_session() as session:
            record = await session.get(ContractReferenceRecord, con_id)
            return self._to_reference(record) if record is not None else None

    async def load_all_references(self) -> Dict[int, ContractReference]:
        async with self.db.get_session() as session:
            result = await session.execute(select(ContractReferenceRecord))
            return {r.con_id: self._to_reference(r) for r in result.scalars().all()}

    async def save_reference(self, reference: ContractReference) -> None:
        async with self.db.get_session() as session:
            async with session.begin():
                await session.merge(
                    ContractReferenceRecord(
                        con_id=reference.con_id,
                        industry=reference.industry,
                        category=reference.category,
                        country=reference.country,
                        long_name=reference.long_name,
                    )
                )


class InMemorySnapshotStore(SnapshotStore):
    """Dictionary-backed store for tests and dry runs."""

    def __init__(self):
        self.balances: Dict[Tuple[int, str], AccountBalance] = {}
        self.positions: Dict[Tuple[int, str], List[EnrichedPosition]] = {}
        self.cash_balances: Dict[Tuple[int, str], List[CashBalance]] = {}
        self.last_updates: Dict[int, Dict[RefreshCategory, datetime]] = {}

    async def replace_balance(
        self, account_id: int, source: str, balance: AccountBalance
    ) -> None:
        self.balances[(account_id, source)] = balance

    async def replace_positions(
        self, account_id: int, source: str, positions: List[EnrichedPosition]
    ) -> int:
        self.positions[(account_id, source)] = list(positions)
        return len(positions)

    async def replace_cash_balances(
        self, account_id: int, source: str, cash_balances: List[CashBalance]
    ) -> int:
        self.cash_balances[(account_id, source)] = list(cash_balances)
        return len(cash_balances)

    async def mark_refreshed(
        self, account_id: int, category: RefreshCategory, at: datetime
    ) -> None:
        self.last_updates.setdefault(account_id, {})[category] = at

    async def load_last_refreshed(self, account_id: int) -> Dict[RefreshCategory, datetime]:
        return dict(self.last_updates.get(account_id, {}))

    async def load_snapshot(self, account_id: int, source: str) -> AccountSnapshot:
        key = (account_id, source)
        return AccountSnapshot(
            account_id=account_id,
            balance=self.balances.get(key),
            positions=list(self.positions.get(key, [])),
            cash_balances=list(self.cash_balances.get(key, [])),
            last_refreshed=await self.load_last_refreshed(account_id),
        )
