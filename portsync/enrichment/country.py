"""
Exchange to country lookup.
"""

from typing import Optional

EXCHANGE_COUNTRY = {
    "NYSE": "United States",
    "NASDAQ": "United States",
    "ARCA": "United States",
    "AMEX": "United States",
    "BATS": "United States",
    "ISLAND": "United States",
    "LSE": "United Kingdom",
    "SEHK": "Hong Kong",
    "HKFE": "Hong Kong",
    "JPX": "Japan",
    "TSE": "Canada",
    "ASX": "Australia",
    "SGX": "Singapore",
    "FWB": "Germany",
    "SWB": "Germany",
}

# US Treasury symbols ("US-T ...") trade on venues that say nothing about the issuer
TREASURY_PREFIXES = {"US-T": "United States"}


def derive_country(exchange: Optional[str], symbol: Optional[str] = None) -> str:
    """Return the country for an exchange code, or "" when unknown."""
    if symbol:
        for prefix, country in TREASURY_PREFIXES.items():
            if symbol.startswith(prefix):
                return country

    if not exchange:
        return ""
    return EXCHANGE_COUNTRY.get(exchange.upper(), "")
