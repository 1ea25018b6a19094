# v402/gateway/messages.py
"""
Framework-neutral request/response shapes passed between the transport
adapter, the gateway flow and the backends.
"""
import json
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Union

from v402.api.models.intent import PaymentIntent
from v402.api.models.receipt import Receipt, StoredReceipt

INTENT_HEADER = "V402-Intent"
TX_HEADER = "V402-Tx"
REQUEST_HASH_HEADER = "V402-Request-Hash"
RECEIPT_HEADER = "V402-Receipt"
SPENDING_ACCOUNT_HEADER = "V402-Spending-Account"


@dataclass
class IncomingRequest:
    """
    An inbound HTTP request as the gateway sees it.

    `path` is the full request path the client hashed; `route_path` is the
    part matched against tool path patterns. Header names are lowercased.
    """
    method: str
    path: str
    query: Dict[str, str] = field(default_factory=dict)
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    content_type: Optional[str] = None
    route_path: Optional[str] = None
    base_url: Optional[str] = None
    client_key: str = "unknown"

    def __post_init__(self):
        self.headers = {k.lower(): v for k, v in self.headers.items()}
        if self.route_path is None:
            self.route_path = self.path
        if self.content_type is None:
            self.content_type = self.headers.get("content-type")

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())


@dataclass
class ForwardGrant:
    """Permission to forward one request, issued after verification and policy."""
    intent_id: str
    tx_sig: str
    payer: str
    tool_id: str
    request_hash: str
    amount: Optional[str] = None
    currency: Optional[str] = None
    upstream_base_url: Optional[str] = None
    slot: Optional[int] = None
    session: bool = False


@dataclass
class UpstreamResponse:
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""


@dataclass
class PaymentRequired:
    intent: PaymentIntent


@dataclass
class Replay:
    stored: StoredReceipt


@dataclass
class Forward:
    grant: ForwardGrant
    request: IncomingRequest


HandleResult = Union[PaymentRequired, Replay, Forward]


@dataclass
class GatewayResponse:
    """What the transport adapter should send back to the caller."""
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    receipt: Optional[Receipt] = None


def encode_receipt_header(receipt: Receipt) -> str:
    return json.dumps(receipt.to_wire(), separators=(",", ":"))


def payment_required_response(intent: PaymentIntent) -> GatewayResponse:
    body = json.dumps(intent.to_wire()).encode("utf-8")
    return GatewayResponse(
        status=402,
        headers={"content-type": "application/json", INTENT_HEADER: intent.intentId},
        body=body,
    )


def receipted_response(
    status: int,
    headers: Mapping[str, str],
    body: bytes,
    receipt: Receipt,
) -> GatewayResponse:
    out = dict(headers)
    out[RECEIPT_HEADER] = encode_receipt_header(receipt)
    return GatewayResponse(status=status, headers=out, body=body, receipt=receipt)


def replay_response(stored: StoredReceipt) -> GatewayResponse:
    return receipted_response(
        stored.responseStatus,
        stored.responseHeaders,
        stored.responseBody,
        stored.receipt,
    )


def parse_intent_header(value: str) -> str:
    """
    Extract the intent id from a V402-Intent header.

    Accepts the bare id or the intent JSON the 402 body carried.
    """
    text = (value or "").strip()
    if text.startswith("{"):
        try:
            data = json.loads(text)
        except ValueError:
            return ""
        intent_id = data.get("intentId") if isinstance(data, dict) else None
        return intent_id if isinstance(intent_id, str) else ""
    return text
