# v402/protocol/tool_metadata.py
"""
Tool metadata signing and path matching.

Merchants sign a tool's metadata when publishing it; the gateway refuses to
price a tool whose signature does not verify.
"""
import re
from typing import Any, Mapping

from v402.protocol.canonical import stable_stringify
from v402.protocol.receipt import sign_message, verify_message

TOOL_METADATA_FIELDS = (
    "toolId",
    "name",
    "description",
    "baseUrl",
    "pathPattern",
    "pricingModel",
    "acceptedCurrency",
    "merchantWallet",
    "createdAt",
    "updatedAt",
)


def canonical_tool_metadata(tool: Any) -> str:
    data: Mapping[str, Any] = tool.model_dump() if hasattr(tool, "model_dump") else tool
    payload = {key: data.get(key) for key in TOOL_METADATA_FIELDS}
    if payload["description"] is None:
        payload["description"] = ""
    return stable_stringify(payload)


def sign_tool_metadata(tool: Any, private_key) -> str:
    return sign_message(canonical_tool_metadata(tool), private_key)


def verify_tool_metadata_signature(tool: Any, signature: str, public_key) -> bool:
    if not signature:
        return False
    return verify_message(canonical_tool_metadata(tool), signature, public_key)


def path_pattern_regex(pattern: str) -> "re.Pattern[str]":
    """
    Compile a tool path pattern.

    '**' matches any remainder (slashes included), '*' matches a single
    path segment, everything else is literal.
    """
    parts = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("**", i):
            parts.append(".*")
            i += 2
        elif pattern[i] == "*":
            parts.append("[^/]+")
            i += 1
        else:
            j = i
            while j < len(pattern) and pattern[j] != "*":
                j += 1
            parts.append(re.escape(pattern[i:j]))
            i = j
    return re.compile("^" + "".join(parts) + "$")


def match_path_pattern(pattern: str, path: str) -> bool:
    return bool(path_pattern_regex(pattern).match(path))
