"""
Unit Tests for Money and ledger primitives
"""

import pytest

from ledger.errors import CurrencyMismatchError, ValidationError
from ledger.primitives import Money, idempotency_key, make_reference, sum_money


class TestMoneyArithmetic:
    """Tests for integer minor-unit arithmetic."""

    def test_add_and_subtract(self):
        assert Money.of(8000) * 2 + Money.of(4500) * 5 == Money.of(38500)
        assert Money.of(1000) - Money.of(250) == Money.of(750)

    def test_currency_mismatch(self):
        """Test that amounts in different currencies never combine."""
        with pytest.raises(CurrencyMismatchError):
            Money.of(100, "KES") + Money.of(100, "USD")

        with pytest.raises(CurrencyMismatchError):
            Money.of(100, "KES") < Money.of(100, "USD")

    def test_fractional_amounts_rejected(self):
        """Test that floats are never accepted as money."""
        with pytest.raises(ValidationError):
            Money.of(12.5)

        with pytest.raises(ValidationError):
            Money.of(100) * 1.5

    def test_comparisons(self):
        assert Money.of(100) < Money.of(101)
        assert Money.of(100) >= Money.of(100)
        assert Money.of(-1).is_negative()
        assert not Money.zero().is_positive()

    def test_sum_money(self):
        assert sum_money([Money.of(1), Money.of(2), Money.of(3)]) == Money.of(6)
        assert sum_money([], "USD") == Money.zero("USD")

    def test_str(self):
        assert str(Money.of(123456)) == "KES 1,234.56"
        assert str(Money.of(-5)) == "KES -0.05"


class TestAllocate:
    """Tests for largest-remainder allocation."""

    def test_exact_split(self):
        shares = Money.of(75000).allocate([30000, 45000])

        assert shares == [Money.of(30000), Money.of(45000)]

    def test_remainder_goes_to_first_on_tie(self):
        shares = Money.of(100).allocate([1, 1, 1])

        assert [s.amount for s in shares] == [34, 33, 33]

    def test_allocation_conserves_total(self):
        """Test that parts always sum to the original amount."""
        amount = Money.of(99999)
        weights = [17, 23, 31, 7]

        shares = amount.allocate(weights)

        assert sum(s.amount for s in shares) == 99999

    def test_zero_weight_gets_nothing(self):
        shares = Money.of(1000).allocate([0, 3, 1])

        assert [s.amount for s in shares] == [0, 750, 250]

    def test_invalid_weights(self):
        with pytest.raises(ValidationError):
            Money.of(100).allocate([])

        with pytest.raises(ValidationError):
            Money.of(100).allocate([0, 0])


class TestReferences:
    """Tests for reference ids and idempotency keys."""

    def test_make_reference_format(self):
        reference = make_reference("MORD")

        prefix, millis, suffix = reference.split("-")
        assert prefix == "MORD"
        assert millis.isdigit()
        assert len(suffix) == 9

    def test_references_are_unique(self):
        references = {make_reference("PI") for _ in range(200)}

        assert len(references) == 200

    def test_idempotency_key(self):
        assert idempotency_key("reserve_release", "RSV-1", "MORD-1-S2") == "reserve_release:RSV-1:MORD-1-S2"
