# v402/protocol/memo.py
"""
Memo program helpers.

A paying transaction binds itself to an intent by carrying a memo whose
content is exactly "v402:<reference>".
"""
import base64
import binascii
import re
from typing import Any, Dict, Iterable, List, Optional

V402_MEMO_PREFIX = "v402:"

MEMO_PROGRAM_ID = "MemoSq4gqABAXKb96qnH8TysNcWxMyWCqXgDLGmfcHr"
MEMO_PROGRAM_ID_V1 = "Memo1UhkJRfHyvLMcVucJwxXeuD728EqVDDwQDxFMNo"
MEMO_PROGRAM_IDS = frozenset({MEMO_PROGRAM_ID, MEMO_PROGRAM_ID_V1})

_BASE64_PATTERN = re.compile(r"^[A-Za-z0-9+/=]+$")


def build_memo(reference: str) -> str:
    """Memo text a wallet must attach when paying the intent with this reference."""
    return V402_MEMO_PREFIX + reference


def extract_memo_reference(memo: str) -> Optional[str]:
    """Return the reference from a "v402:<reference>" memo, or None."""
    trimmed = memo.strip()
    if not trimmed.startswith(V402_MEMO_PREFIX):
        return None
    return trimmed[len(V402_MEMO_PREFIX):]


def decode_memo_data(data: str) -> str:
    """
    Decode memo content that may be base64 encoded.

    Text that does not look like base64, or does not decode to UTF-8, is
    returned trimmed but otherwise unchanged.
    """
    trimmed = data.strip()
    if _BASE64_PATTERN.match(trimmed) and len(trimmed) % 4 == 0:
        try:
            return base64.b64decode(trimmed, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            return trimmed
    return trimmed


def memo_content(instruction: Dict[str, Any]) -> Optional[str]:
    """
    Pull the memo text out of a jsonParsed memo instruction.

    The RPC renders parsed memos as a plain string in "parsed"; older nodes or
    unparsed forms put it under "data" or parsed["memo"].
    """
    parsed = instruction.get("parsed")
    if isinstance(parsed, str):
        return parsed
    if isinstance(parsed, dict) and isinstance(parsed.get("memo"), str):
        return parsed["memo"]
    data = instruction.get("data")
    if isinstance(data, str):
        return data
    return None


def collect_memos(instructions: Iterable[Dict[str, Any]]) -> List[str]:
    """Memo contents of every memo-program instruction in the list."""
    memos = []
    for ix in instructions:
        program_id = ix.get("programId") or ix.get("program")
        if program_id not in MEMO_PROGRAM_IDS and ix.get("program") != "spl-memo":
            continue
        content = memo_content(ix)
        if content is not None:
            memos.append(content)
    return memos


def count_v402_memos(memos: Iterable[str], reference: str) -> int:
    """Number of memos whose content equals "v402:<reference>" verbatim."""
    count = 0
    for memo in memos:
        if extract_memo_reference(memo) == reference or extract_memo_reference(decode_memo_data(memo)) == reference:
            count += 1
    return count
