"""
v402 Exception Hierarchy

Every gateway failure carries a stable error code with the v402: prefix, an
HTTP status, and structured details. Ledger verification failures put their
machine-readable cause in details["reason"] so callers can tell "pay again"
from "retry later".
"""
from typing import Optional, Dict, Any


class V402Error(Exception):
    """
    Base exception for all v402 protocol errors.
    """

    status_code = 400

    def __init__(
        self,
        error_code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ):
        self.error_code = error_code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    @property
    def reason(self) -> Optional[str]:
        return self.details.get("reason")

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to API error response format."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details
        }


def _with_reason(details: Optional[Dict[str, Any]], reason: Optional[str]) -> Dict[str, Any]:
    merged = dict(details or {})
    if reason:
        merged["reason"] = reason
    return merged


class InvalidRequestError(V402Error):
    """
    Malformed request or intent body.

    Examples:
    - 402 body missing required intent fields
    - Proof headers bound to a different request
    """

    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("v402:request:invalid", message, details)


class ExpiredError(V402Error):
    """
    Intent or transaction past its deadline. The caller needs a new intent.
    """

    status_code = 402

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("v402:intent:expired", message, _with_reason(details, "EXPIRED"))


class RpcError(V402Error):
    """
    Ledger endpoint unreachable, timed out or returned a JSON-RPC error.

    Transient: the same proof may be retried later.
    """

    status_code = 503

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("v402:ledger:rpc_error", message, _with_reason(details, "RPC_ERROR"))


class NotFoundError(V402Error):
    """
    Transaction, tool, intent or receipt absent.
    """

    status_code = 404

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("v402:not_found", message, details)


class VerificationFailedError(V402Error):
    """
    On-chain proof does not satisfy the intent.

    Never retried with the same proof; the caller must pay again or
    obtain a new intent.
    """

    status_code = 402

    def __init__(self, message: str, reason: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("v402:payment:verification_failed", message, _with_reason(details, reason))


class PolicyDeniedError(V402Error):
    """
    Payer's spending policy rejected the charge. details["reason"] names the cap
    or allowlist that tripped.
    """

    status_code = 403

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("v402:policy:denied", message, _with_reason(details, message))


class SignatureInvalidError(V402Error):
    """
    Receipt or tool metadata signature failed verification. Fatal.
    """

    status_code = 403

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("v402:signature:invalid", message, details)


class UpstreamError(V402Error):
    """
    The forwarded tool call failed. The intent stays claimed, so it cannot be
    charged twice.
    """

    status_code = 502

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("v402:upstream:error", message, details)


class IntentConflictError(V402Error):
    """
    Lost a race on an intent state transition (e.g. two simultaneous retries
    with identical proof).
    """

    status_code = 409

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("v402:intent:conflict", message, details)


class RateLimitedError(V402Error):
    """
    Too many intents created for one caller key within the window.
    """

    status_code = 429

    def __init__(self, message: str, retry_after: int, details: Optional[Dict[str, Any]] = None):
        self.retry_after = retry_after
        super().__init__("v402:rate_limited", message, dict(details or {}, retry_after=retry_after))


class ReceiptIssuanceError(V402Error):
    """
    Response capture or receipt signing failed after the upstream call ran.

    The intent is ambiguous between "forwarded" and "receipted" and needs
    operator attention.
    """

    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("v402:receipt:issuance_failed", message, details)


class V402PaymentError(Exception):
    """
    Client-side failure of the 402 -> pay -> retry flow.

    code is one of INVALID_INTENT, INTENT_EXPIRED, PAYMENT_FAILED, RETRY_FAILED.
    """

    INVALID_INTENT = "INVALID_INTENT"
    INTENT_EXPIRED = "INTENT_EXPIRED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    RETRY_FAILED = "RETRY_FAILED"

    def __init__(self, message: str, code: str, cause: Optional[BaseException] = None, response: Any = None):
        self.code = code
        self.cause = cause
        self.response = response
        super().__init__(message)

    def __repr__(self) -> str:
        return f"V402PaymentError(code={self.code!r}, message={str(self)!r})"
