"""
Rate Table

Prices destinations by (country, dial code). The dial code is the full
lookup key, never a prefix: no longest-match fallback exists, and a missing
rate is an error rather than a zero price.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import structlog

from .errors import RateNotFound
from .money import require_minor_units

logger = structlog.get_logger()


@dataclass(frozen=True)
class Rate:
    """Price in minor units per billing unit for one destination."""
    country: str
    code: int
    price: int
    id: Optional[int] = None
    updated_at: Optional[str] = None

    @property
    def key(self) -> tuple:
        return (self.country, self.code)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "country": self.country,
            "code": self.code,
            "price": self.price,
            "updatedAt": self.updated_at,
        }


def normalize_country(country: str) -> str:
    country = (country or "").strip().upper()
    if not country:
        raise ValueError("country is required")
    return country


class RateTable:
    """
    Lookup facade over the rate repository.

    Each lookup reads the current row; callers that need a stable price for
    the lifetime of a call keep the returned Rate (it is immutable).
    """

    def __init__(self, repository):
        self.repository = repository

    def lookup(self, country: str, dial_code: int) -> Rate:
        """Exact match on (country, dial_code)."""
        country = normalize_country(country)
        rate = self.repository.get(country, dial_code)
        if rate is None:
            raise RateNotFound(dial_code, country)
        return rate

    def resolve(self, dial_code: int, country: Optional[str] = None) -> Rate:
        """
        Rate for a call destination.

        Without a country the dial code must identify exactly one rate;
        codes shared by several countries (e.g. +1) need the country.
        """
        if country:
            return self.lookup(country, dial_code)

        candidates = self.repository.find_by_code(dial_code)
        if not candidates:
            raise RateNotFound(dial_code)
        if len(candidates) > 1:
            raise RateNotFound(dial_code, reason="ambiguous")
        return candidates[0]

    def set_rate(self, country: str, dial_code: int, price: int) -> Rate:
        """Create or replace the rate for a destination."""
        require_minor_units(price, "price")
        require_minor_units(dial_code, "dial_code")
        if price < 0:
            raise ValueError("price must not be negative")
        if dial_code <= 0:
            raise ValueError("dial_code must be positive")

        rate = self.repository.upsert(Rate(country=normalize_country(country), code=dial_code, price=price))
        logger.info("rate_set", country=rate.country, code=rate.code, price=rate.price)
        return rate

    def remove_rate(self, country: str, dial_code: int) -> bool:
        removed = self.repository.delete(normalize_country(country), dial_code)
        if removed:
            logger.info("rate_removed", country=country, code=dial_code)
        return removed

    def all(self) -> List[Rate]:
        return self.repository.list_all()
