# v402/gateway/pricing.py
"""
Price resolution for v402 payment intents.

A tool's pricing_model is a JSON object set by its merchant:
- per_call: amount charged per intent (per_step is accepted as a legacy alias)
- max_calls: when present, intents are session intents covering that many
  calls (max_calls_per_session is accepted as an alias)

Amounts may be strings or JSON numbers; they are validated against the
currency's precision and always leave this module as decimal strings.
"""
import logging
from typing import Any, Dict, Optional

from v402.api.models.tool import Tool
from v402.core.config import settings
from v402.protocol.amount import decimals_for, from_atomic_units, to_atomic_units
from v402.protocol.canonical import format_js_number

logger = logging.getLogger(__name__)


def normalize_amount(value: Any, currency: str) -> str:
    """
    Render a pricing amount as a canonical decimal string.

    Raises:
        ValueError: If the amount is missing, negative or not numeric
    """
    if value is None or isinstance(value, bool):
        raise ValueError("Pricing amount is missing")
    text = format_js_number(value) if isinstance(value, (int, float)) else str(value).strip()
    decimals = decimals_for(currency)
    if "e" in text.lower():
        raise ValueError(f"Pricing amount is too small or large to represent: {value!r}")
    return from_atomic_units(to_atomic_units(text, decimals), decimals)


def resolve_amount(tool: Tool) -> str:
    """Amount per intent for a tool, as a decimal string."""
    model = tool.pricingModel or {}
    raw = model.get("per_call")
    if raw is None:
        raw = model.get("per_step")
    amount = normalize_amount(raw, tool.acceptedCurrency)
    if to_atomic_units(amount, decimals_for(tool.acceptedCurrency)) == 0:
        raise ValueError(f"Tool {tool.toolId} has a zero price")
    return amount


def session_max_calls(tool: Tool) -> Optional[int]:
    """Calls covered by one payment when the tool is session-priced, else None."""
    model = tool.pricingModel or {}
    raw = model.get("max_calls")
    if raw is None:
        raw = model.get("max_calls_per_session")
    if raw is None:
        return None
    if isinstance(raw, bool) or not isinstance(raw, (int, str)) or int(raw) < 1:
        raise ValueError(f"Invalid max_calls in pricing model of tool {tool.toolId}: {raw!r}")
    return int(raw)


def get_price_quote(tool: Tool) -> Dict[str, Any]:
    """
    Get the payment terms for an intent on this tool.

    Returns:
        Dict containing:
        - amount: decimal string
        - currency: "SOL" or "USDC"
        - recipient: merchant wallet
        - mint: SPL mint (USDC only)
        - network: configured Solana cluster
        - max_calls: session size, or None
    """
    amount = resolve_amount(tool)
    quote = {
        "amount": amount,
        "currency": tool.acceptedCurrency,
        "recipient": tool.merchantWallet,
        "mint": settings.USDC_MINT if tool.acceptedCurrency == "USDC" else None,
        "network": settings.SOLANA_NETWORK,
        "max_calls": session_max_calls(tool),
    }
    logger.debug(f"Price quote for tool {tool.toolId}: {amount} {tool.acceptedCurrency}")
    return quote
