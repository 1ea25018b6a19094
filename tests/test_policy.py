# tests/test_policy.py
"""
Unit tests for the spending policy engine.
"""
from decimal import Decimal

import pytest

from v402.api.models.tool import SpendingPolicy
from v402.gateway.policy import (
    REASON_MAX_PER_CALL,
    REASON_MAX_PER_DAY,
    REASON_MERCHANT_NOT_ALLOWLISTED,
    REASON_SESSION_EXHAUSTED,
    REASON_TOOL_NOT_ALLOWLISTED,
    check_session_allowed,
    evaluate,
    to_decimal,
)

from factories import make_intent


class TestEvaluate:
    """Test policy evaluation order and caps."""

    def test_no_policy_allows(self):
        """Absent policy allows everything."""
        assert evaluate(None, "1000", "tool", "wallet").allowed is True

    def test_empty_policy_allows(self):
        """Missing caps and empty allowlists are permissive."""
        assert evaluate(SpendingPolicy(), "5", "tool", "wallet").allowed is True

    def test_per_call_cap(self):
        """Charges above the per-call cap are denied."""
        policy = SpendingPolicy(maxSpendPerCall=Decimal("0.05"))
        assert evaluate(policy, "0.05", "tool", "wallet").allowed is True
        decision = evaluate(policy, "0.051", "tool", "wallet")
        assert decision.allowed is False
        assert decision.reason == REASON_MAX_PER_CALL

    def test_daily_cap(self):
        """Spend plus charge above the daily cap is denied."""
        policy = SpendingPolicy(maxSpendPerDay=Decimal("1"))
        assert evaluate(policy, "0.5", "tool", "wallet", daily_spend="0.5").allowed is True
        decision = evaluate(policy, "0.5", "tool", "wallet", daily_spend="0.51")
        assert decision.allowed is False
        assert decision.reason == REASON_MAX_PER_DAY

    def test_decimal_exactness(self):
        """0.1 + 0.2 fits a 0.3 cap exactly."""
        policy = SpendingPolicy(maxSpendPerDay=Decimal("0.3"))
        assert evaluate(policy, "0.2", "tool", "wallet", daily_spend="0.1").allowed is True

    def test_tool_allowlist(self):
        """Tools outside a non-empty allowlist are denied."""
        policy = SpendingPolicy(allowlistedToolIds=["tool-a"])
        assert evaluate(policy, "1", "tool-a", "wallet").allowed is True
        decision = evaluate(policy, "1", "tool-b", "wallet")
        assert decision.reason == REASON_TOOL_NOT_ALLOWLISTED

    def test_merchant_allowlist(self):
        """Merchants outside a non-empty allowlist are denied."""
        policy = SpendingPolicy(allowlistedMerchants=["wallet-a"])
        assert evaluate(policy, "1", "tool", "wallet-a").allowed is True
        decision = evaluate(policy, "1", "tool", "wallet-b")
        assert decision.reason == REASON_MERCHANT_NOT_ALLOWLISTED

    def test_check_order(self):
        """The per-call cap is reported before later checks."""
        policy = SpendingPolicy(
            maxSpendPerCall=Decimal("0.01"),
            maxSpendPerDay=Decimal("0"),
            allowlistedToolIds=["other"],
            allowlistedMerchants=["other"],
        )
        assert evaluate(policy, "1", "tool", "wallet").reason == REASON_MAX_PER_CALL

    @pytest.mark.parametrize("spend", ["0", "0.4", "0.6", "5"])
    def test_denial_not_reversed_by_more_spend(self, spend):
        """A denied charge stays denied as daily spend grows."""
        policy = SpendingPolicy(maxSpendPerDay=Decimal("0.5"))
        denied_at = Decimal("0.6")
        assert evaluate(policy, "0.2", "tool", "wallet", daily_spend=denied_at).allowed is False
        if Decimal(spend) >= denied_at:
            assert evaluate(policy, "0.2", "tool", "wallet", daily_spend=spend).allowed is False

    @pytest.mark.parametrize("smaller", ["0.3", "0.1", "0"])
    def test_allowed_amount_allows_smaller(self, smaller):
        """Allowed at A implies allowed at any amount up to A."""
        policy = SpendingPolicy(maxSpendPerCall=Decimal("0.3"), maxSpendPerDay=Decimal("1"))
        assert evaluate(policy, "0.3", "tool", "wallet", daily_spend="0.7").allowed is True
        assert evaluate(policy, smaller, "tool", "wallet", daily_spend="0.7").allowed is True


class TestToDecimal:
    """Test amount parsing."""

    def test_float_rejected(self):
        """Floats are never accepted."""
        with pytest.raises(ValueError):
            to_decimal(0.1)

    @pytest.mark.parametrize("bad", ["-1", "abc", "NaN", "Infinity"])
    def test_invalid_rejected(self, bad):
        """Negative, non-numeric and non-finite amounts fail."""
        with pytest.raises(ValueError):
            to_decimal(bad)

    def test_valid(self):
        """Strings and ints parse exactly."""
        assert to_decimal("0.10") == Decimal("0.1")
        assert to_decimal(3) == Decimal(3)


class TestSessionAllowed:
    """Test session call limits."""

    def test_non_session_passes(self):
        """Intents without maxCalls always pass."""
        assert check_session_allowed(make_intent()).allowed is True

    def test_calls_left(self):
        """Sessions below maxCalls pass."""
        intent = make_intent(sessionId="s", maxCalls=3, callsUsed=2)
        assert check_session_allowed(intent).allowed is True

    def test_exhausted(self):
        """Sessions at maxCalls are denied."""
        intent = make_intent(sessionId="s", maxCalls=3, callsUsed=3)
        decision = check_session_allowed(intent)
        assert decision.allowed is False
        assert decision.reason == REASON_SESSION_EXHAUSTED
