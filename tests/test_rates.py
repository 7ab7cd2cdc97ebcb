"""
Tests for the Rate Table

Exact (country, dial code) lookup, no prefix fallback.
"""

import pytest

from phonebooth.core.errors import RateNotFound
from phonebooth.core.rates import RateTable, normalize_country
from phonebooth.persistence.repository import RateRepository


@pytest.fixture
def rates(service):
    return RateTable(RateRepository(service.db))


class TestLookup:
    """Test exact rate lookup."""

    def test_exact_match(self, rates):
        rates.set_rate("US", 1, 100)

        rate = rates.lookup("US", 1)

        assert rate.country == "US"
        assert rate.code == 1
        assert rate.price == 100
        assert rate.id is not None

    def test_country_is_case_insensitive(self, rates):
        rates.set_rate("gb", 44, 80)

        assert rates.lookup(" Gb ", 44).price == 80

    def test_missing_rate_raises(self, rates):
        with pytest.raises(RateNotFound) as exc:
            rates.lookup("FR", 33)

        assert exc.value.dial_code == 33
        assert exc.value.country == "FR"

    def test_no_prefix_fallback(self, rates):
        """A code that merely starts with a known code is not priced."""
        rates.set_rate("US", 1, 100)

        with pytest.raises(RateNotFound):
            rates.lookup("US", 1212)

    def test_zero_price_is_a_rate(self, rates):
        rates.set_rate("XX", 800, 0)

        assert rates.lookup("XX", 800).price == 0


class TestResolve:
    """Test resolution from a dial code alone."""

    def test_unique_code_resolves_without_country(self, rates):
        rates.set_rate("GB", 44, 80)

        assert rates.resolve(44).country == "GB"

    def test_shared_code_is_ambiguous(self, rates):
        rates.set_rate("US", 1, 100)
        rates.set_rate("CA", 1, 90)

        with pytest.raises(RateNotFound) as exc:
            rates.resolve(1)

        assert exc.value.reason == "ambiguous"

    def test_shared_code_with_country(self, rates):
        rates.set_rate("US", 1, 100)
        rates.set_rate("CA", 1, 90)

        assert rates.resolve(1, "CA").price == 90

    def test_unknown_code(self, rates):
        with pytest.raises(RateNotFound) as exc:
            rates.resolve(999)

        assert exc.value.reason == "missing"


class TestSetRate:
    """Test rate administration."""

    def test_set_rate_replaces_price(self, rates):
        first = rates.set_rate("US", 1, 100)
        second = rates.set_rate("US", 1, 150)

        assert second.id == first.id
        assert rates.lookup("US", 1).price == 150
        assert len(rates.all()) == 1

    def test_negative_price_rejected(self, rates):
        with pytest.raises(ValueError):
            rates.set_rate("US", 1, -1)

    def test_float_price_rejected(self, rates):
        with pytest.raises(TypeError):
            rates.set_rate("US", 1, 1.5)

    def test_non_positive_code_rejected(self, rates):
        with pytest.raises(ValueError):
            rates.set_rate("US", 0, 100)

    def test_remove_rate(self, rates):
        rates.set_rate("US", 1, 100)

        assert rates.remove_rate("US", 1) is True
        assert rates.remove_rate("US", 1) is False
        with pytest.raises(RateNotFound):
            rates.lookup("US", 1)

    def test_blank_country_rejected(self):
        with pytest.raises(ValueError):
            normalize_country("  ")
