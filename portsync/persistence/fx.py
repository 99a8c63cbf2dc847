"""
Currency valuation for cash balances.
"""

from abc import ABC, abstractmethod
from typing import Dict, Optional

from portsync.config.settings import get_sync_settings
from portsync.logging import get_logger
from portsync.models import CashBalance

logger = get_logger(__name__)


class FxRateProvider(ABC):
    """Supplies conversion rates between currencies."""

    @abstractmethod
    def get_rate(self, from_currency: str, to_currency: str) -> Optional[float]:
        """Units of ``to_currency`` per one unit of ``from_currency``, or None."""

    def convert(self, amount: float, from_currency: str, to_currency: str) -> float:
        """Convert, falling back to the raw amount when no rate is known."""
        if from_currency == to_currency:
            return amount
        rate = self.get_rate(from_currency, to_currency)
        if rate is None:
            logger.warning(
                f"No FX rate {from_currency}/{to_currency}, using unconverted amount"
            )
            return amount
        return amount * rate

    def value_cash(self, currency: str, amount: float) -> CashBalance:
        return CashBalance(
            currency=currency,
            amount=amount,
            value_hkd=self.convert(amount, currency, "HKD"),
            value_usd=self.convert(amount, currency, "USD"),
        )


class StaticFxRates(FxRateProvider):
    """
    Fixed rate table keyed ``"FROM/TO"``.

    Missing pairs are derived from the inverse pair or by crossing through USD.
    """

    def __init__(self, rates: Optional[Dict[str, float]] = None):
        if rates is None:
            rates = get_sync_settings().fx_rates
        self.rates = {key.upper(): value for key, value in rates.items()}

    def _direct(self, from_currency: str, to_currency: str) -> Optional[float]:
        rate = self.rates.get(f"{from_currency}/{to_currency}")
        if rate:
            return rate
        inverse = self.rates.get(f"{to_currency}/{from_currency}")
        if inverse:
            return 1.0 / inverse
        return None

    def get_rate(self, from_currency: str, to_currency: str) -> Optional[float]:
        from_currency = from_currency.upper()
        to_currency = to_currency.upper()
        if from_currency == to_currency:
            return 1.0

        rate = self._direct(from_currency, to_currency)
        if rate is not None:
            return rate

        to_usd = self._direct(from_currency, "USD")
        from_usd = self._direct("USD", to_currency)
        if to_usd is not None and from_usd is not None:
            return to_usd * from_usd
        return None
