# v402/gateway/policy.py
"""
Spending policy enforcement.

Checks run in a fixed order (per-call cap, daily cap, tool allowlist, merchant
allowlist) and the first failure names the reason. All arithmetic is Decimal.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional, Union

from v402.api.models.intent import PaymentIntent
from v402.api.models.tool import SpendingPolicy

logger = logging.getLogger(__name__)

REASON_MAX_PER_CALL = "max_spend_per_call exceeded"
REASON_MAX_PER_DAY = "max_spend_per_day exceeded"
REASON_TOOL_NOT_ALLOWLISTED = "tool not allowlisted"
REASON_MERCHANT_NOT_ALLOWLISTED = "merchant not allowlisted"
REASON_SESSION_EXHAUSTED = "Session call limit reached"


@dataclass
class PolicyDecision:
    allowed: bool
    reason: Optional[str] = None


def to_decimal(value: Union[str, int, Decimal]) -> Decimal:
    """
    Parse a non-negative decimal amount.

    Raises:
        ValueError: If the value is not a finite non-negative number
    """
    if isinstance(value, float):
        raise ValueError("Amounts must not be floats")
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValueError(f"Invalid decimal amount: {value!r}")
    if not amount.is_finite() or amount < 0:
        raise ValueError(f"Invalid decimal amount: {value!r}")
    return amount


def evaluate(
    policy: Optional[SpendingPolicy],
    amount: Union[str, Decimal],
    tool_id: str,
    merchant_wallet: str,
    daily_spend: Union[str, Decimal] = Decimal("0"),
) -> PolicyDecision:
    """
    Decide whether a payer may spend `amount` on a tool.

    Args:
        policy: The payer's policy, or None (everything allowed)
        amount: Charge for this call
        tool_id: Tool being paid for
        merchant_wallet: Recipient wallet of the tool's merchant
        daily_spend: Spend already approved today (UTC), excluding this call

    Returns:
        PolicyDecision; reason is set only when denied
    """
    if policy is None:
        return PolicyDecision(allowed=True)

    charge = to_decimal(amount)
    spent = to_decimal(daily_spend)

    if policy.maxSpendPerCall is not None and charge > policy.maxSpendPerCall:
        return PolicyDecision(allowed=False, reason=REASON_MAX_PER_CALL)

    if policy.maxSpendPerDay is not None and spent + charge > policy.maxSpendPerDay:
        return PolicyDecision(allowed=False, reason=REASON_MAX_PER_DAY)

    if policy.allowlistedToolIds and tool_id not in policy.allowlistedToolIds:
        return PolicyDecision(allowed=False, reason=REASON_TOOL_NOT_ALLOWLISTED)

    if policy.allowlistedMerchants and merchant_wallet not in policy.allowlistedMerchants:
        return PolicyDecision(allowed=False, reason=REASON_MERCHANT_NOT_ALLOWLISTED)

    return PolicyDecision(allowed=True)


def check_session_allowed(intent: PaymentIntent) -> PolicyDecision:
    """Whether a session intent still has calls left. Non-session intents always pass."""
    if intent.maxCalls is None:
        return PolicyDecision(allowed=True)
    if (intent.callsUsed or 0) >= intent.maxCalls:
        return PolicyDecision(allowed=False, reason=REASON_SESSION_EXHAUSTED)
    return PolicyDecision(allowed=True)
