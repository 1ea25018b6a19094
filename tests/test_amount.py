# tests/test_amount.py
"""
Unit tests for the amount codec.
"""
import pytest

from v402.protocol.amount import (
    SOL_DECIMALS,
    USDC_DECIMALS,
    decimals_for,
    from_atomic_units,
    to_atomic_units,
)


class TestToAtomicUnits:
    """Test decimal string -> atomic units."""

    def test_usdc_half(self):
        """0.50 USDC is 500000 base units."""
        assert to_atomic_units("0.50", 6) == 500000

    def test_one_sol(self):
        """1 SOL is 10^9 lamports."""
        assert to_atomic_units("1", 9) == 1_000_000_000

    def test_fraction_truncated(self):
        """Digits beyond the precision are dropped, not rounded."""
        assert to_atomic_units("0.1234569", 6) == 123456

    def test_leading_dot(self):
        """A bare fraction is accepted."""
        assert to_atomic_units(".5", 6) == 500000

    def test_trailing_dot(self):
        """A trailing dot is accepted."""
        assert to_atomic_units("2.", 6) == 2_000_000

    def test_whitespace_trimmed(self):
        """Surrounding whitespace is ignored."""
        assert to_atomic_units(" 0.01 ", 6) == 10000

    def test_zero_decimals(self):
        """Zero precision drops the fraction."""
        assert to_atomic_units("12.9", 0) == 12

    @pytest.mark.parametrize("bad", ["", ".", "abc", "-1", "1e3", "1.2.3", "0x10", "+1"])
    def test_invalid_rejected(self, bad):
        """Non-numeric or negative input always fails."""
        with pytest.raises(ValueError):
            to_atomic_units(bad, 6)

    @pytest.mark.parametrize("bad", ["１", "0.５", "١.5", "²"])
    def test_non_ascii_digits_rejected(self, bad):
        """Only ASCII digits count as numeric."""
        with pytest.raises(ValueError):
            to_atomic_units(bad, 6)

    def test_negative_decimals_rejected(self):
        """Negative precision is an error."""
        with pytest.raises(ValueError):
            to_atomic_units("1", -1)


class TestFromAtomicUnits:
    """Test atomic units -> decimal string."""

    def test_trailing_zeros_removed(self):
        """500000 at 6 decimals is 0.5."""
        assert from_atomic_units(500000, 6) == "0.5"

    def test_whole_number(self):
        """Whole amounts have no fraction."""
        assert from_atomic_units(2_000_000_000, 9) == "2"

    def test_small_amount(self):
        """Leading fractional zeros are kept."""
        assert from_atomic_units(1, 6) == "0.000001"

    def test_negative_rejected(self):
        """Negative units are an error."""
        with pytest.raises(ValueError):
            from_atomic_units(-1, 6)

    @pytest.mark.parametrize("amount,decimals", [("0.5", 6), ("1.000000001", 9), ("42", 6)])
    def test_round_trip(self, amount, decimals):
        """Canonical strings survive a round trip."""
        assert from_atomic_units(to_atomic_units(amount, decimals), decimals) == amount


class TestDecimalsFor:
    """Test currency precision lookup."""

    def test_known_currencies(self):
        """SOL has 9 decimals, USDC 6."""
        assert decimals_for("SOL") == SOL_DECIMALS == 9
        assert decimals_for("USDC") == USDC_DECIMALS == 6

    def test_unknown_currency(self):
        """Unsupported currencies fail."""
        with pytest.raises(ValueError):
            decimals_for("ETH")
