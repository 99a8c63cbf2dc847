"""
Day change computation.

Bond quotes are percent of par, so the currency amount is scaled by 10
(per-unit face value of 1000 quoted per 100).
"""

from dataclasses import dataclass
from typing import Optional

from portsync.models import BOND_SEC_TYPE, clean_price

BOND_PRICE_MULTIPLIER = 10


@dataclass(frozen=True)
class DayChange:
    amount: float
    percent: float


def compute_day_change(
    sec_type: str,
    last_price: Optional[float],
    previous_close: Optional[float],
    quantity: float,
) -> Optional[DayChange]:
    """
    Return the day change, or None unless both prices are present, strictly
    positive and different.
    """
    last = clean_price(last_price)
    prev = clean_price(previous_close)
    if last is None or prev is None or last <= 0 or prev <= 0 or last == prev:
        return None

    diff = last - prev
    amount = diff * quantity
    if sec_type == BOND_SEC_TYPE:
        amount *= BOND_PRICE_MULTIPLIER
    return DayChange(amount=amount, percent=diff / prev * 100)
