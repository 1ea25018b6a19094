# v402/protocol/canonical.py
"""
Canonical request representation for request hashing.

The client SDK and the gateway both build the same five-line string
(METHOD, PATH, QUERY, BODY, CONTENT-TYPE) from a request and hash it with
SHA-256. Output must be byte-identical across every implementation, so
numbers and strings are rendered the way JavaScript's JSON/Number does.
"""
import hashlib
import json
import math
import re
from decimal import Decimal
from typing import Any, Mapping, Optional, Union
from urllib.parse import quote

# Characters encodeURIComponent leaves untouched besides alphanumerics
_URI_COMPONENT_SAFE = "-_.!~*'()"

# Integers beyond this lose precision in a JavaScript number
_MAX_SAFE_INTEGER = 2 ** 53

# Unpaired UTF-16 surrogates, which JSON.stringify writes as \uXXXX escapes
_LONE_SURROGATE = re.compile("[\ud800-\udfff]")


def normalize_path(path: Optional[str]) -> str:
    """Collapse repeated slashes, drop one trailing slash, ensure a leading slash."""
    p = re.sub(r"/+", "/", path or "")
    if len(p) > 1 and p.endswith("/"):
        p = p[:-1]
    if not p.startswith("/"):
        p = "/" + p
    return p


def encode_uri_component(value: str) -> str:
    return quote(str(value), safe=_URI_COMPONENT_SAFE)


def build_sorted_query(query: Optional[Mapping[str, Any]]) -> str:
    """
    Render query parameters as key-sorted, URL-encoded k=v pairs joined by '&'.

    Multi-valued parameters (lists/tuples) contribute their first value.
    """
    if not query:
        return ""

    pairs = []
    for key in sorted(query.keys(), key=utf16_sort_key):
        value = query[key]
        if isinstance(value, (list, tuple)):
            value = value[0] if value else ""
        if value is None:
            value = ""
        pairs.append(f"{encode_uri_component(key)}={encode_uri_component(value)}")
    return "&".join(pairs)


def format_js_number(value: Union[int, float]) -> str:
    """
    Format a number exactly like JavaScript's Number.prototype.toString.

    Non-finite values render as "null", matching JSON.stringify.
    """
    if isinstance(value, int) and abs(value) < _MAX_SAFE_INTEGER:
        return str(value)

    number = float(value)
    if not math.isfinite(number):
        return "null"
    if number == 0:
        return "0"
    if number < 0:
        return "-" + format_js_number(-number)

    # repr() gives the shortest round-tripping digits, same as V8
    normalized = Decimal(repr(number)).normalize()
    _, digit_tuple, exponent = normalized.as_tuple()
    digits = "".join(str(d) for d in digit_tuple)
    k = len(digits)
    n = exponent + k

    if k <= n <= 21:
        return digits + "0" * (n - k)
    if 0 < n <= 21:
        return digits[:n] + "." + digits[n:]
    if -6 < n <= 0:
        return "0." + "0" * (-n) + digits

    e = n - 1
    sign = "+" if e >= 0 else "-"
    mantissa = digits if k == 1 else digits[0] + "." + digits[1:]
    return f"{mantissa}e{sign}{abs(e)}"


def utf16_sort_key(key: Any) -> bytes:
    """Sort key matching JavaScript's default sort, which compares UTF-16 code units."""
    return str(key).encode("utf-16-be", errors="surrogatepass")


def json_string(value: str) -> str:
    """JSON string literal as JSON.stringify writes it, lone surrogates escaped."""
    text = json.dumps(value, ensure_ascii=False)
    return _LONE_SURROGATE.sub(lambda m: "\\u%04x" % ord(m.group()), text)


def stable_stringify(value: Any) -> str:
    """
    JSON-stringify with object keys sorted recursively.

    Equal values produce identical output regardless of key insertion order.
    """
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return format_js_number(value)
    if isinstance(value, Decimal):
        return format_js_number(float(value))
    if isinstance(value, str):
        return json_string(value)
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(stable_stringify(v) for v in value) + "]"
    if isinstance(value, Mapping):
        items = sorted(((str(k), v) for k, v in value.items()), key=lambda kv: utf16_sort_key(kv[0]))
        return "{" + ",".join(
            json_string(k) + ":" + stable_stringify(v) for k, v in items
        ) + "}"
    return "null"


def _reject_constant(name: str) -> Any:
    # NaN/Infinity are not JSON; JSON.parse rejects them, so must we
    raise ValueError(f"Invalid JSON constant: {name}")


def normalize_content_type(content_type: Optional[str]) -> str:
    """Strip parameters such as charset: 'application/json; charset=utf-8' -> 'application/json'."""
    return (content_type or "").split(";")[0].strip()


def is_json_content_type(content_type: str) -> bool:
    ct = content_type.lower()
    return ct == "application/json" or ct.endswith("+json")


def canonical_body(body: Union[str, bytes, None], content_type: str) -> str:
    if body is None or body == "" or body == b"":
        return ""

    text = body.decode("utf-8", errors="replace") if isinstance(body, (bytes, bytearray)) else body

    if content_type and is_json_content_type(content_type):
        try:
            parsed = json.loads(text, parse_constant=_reject_constant)
        except ValueError:
            return text
        return stable_stringify(parsed)

    return text


def canonicalize(
    method: str,
    path: str,
    query: Optional[Mapping[str, Any]] = None,
    body: Union[str, bytes, None] = None,
    content_type: Optional[str] = None,
) -> str:
    """
    Build the canonical request string.

    Args:
        method: HTTP method (any case)
        path: Request path without query string
        query: Query parameters
        body: Raw request body (str or bytes)
        content_type: Content-Type header value, parameters allowed

    Returns:
        "METHOD\\nPATH\\nQUERY\\nBODY\\nCONTENT-TYPE"; five fields even when empty
    """
    ct = normalize_content_type(content_type)
    return "\n".join([
        method.upper(),
        normalize_path(path),
        build_sorted_query(query),
        canonical_body(body, ct),
        ct,
    ])


def sha256_hex(data: Union[str, bytes]) -> str:
    """SHA-256 of a UTF-8 string or raw bytes, lowercase hex."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def request_hash(
    method: str,
    path: str,
    query: Optional[Mapping[str, Any]] = None,
    body: Union[str, bytes, None] = None,
    content_type: Optional[str] = None,
) -> str:
    """Hash of the canonical request; the value sent as V402-Request-Hash."""
    return sha256_hex(canonicalize(method, path, query, body, content_type))
