# v402/gateway/flow.py
"""
The v402 gateway decision flow.

handle() turns an inbound request into one of three outcomes:
- PaymentRequired: no usable proof; a fresh intent was issued
- Replay: this (intent, request) already has a receipt; serve it again
- Forward: proof verified and policy approved; the caller may forward once

After forwarding, complete() signs and stores the receipt. process() runs
the whole cycle with a forwarder callable, for adapters without their own
downstream handler.
"""
import logging
from functools import lru_cache
from typing import Callable, Optional

from v402.core.config import settings
from v402.core.exceptions import (
    ExpiredError,
    IntentConflictError,
    NotFoundError,
    PolicyDeniedError,
    RateLimitedError,
    ReceiptIssuanceError,
    RpcError,
    V402Error,
    VerificationFailedError,
)
from v402.gateway import audit
from v402.gateway.backend import Backend, build_backend
from v402.gateway.messages import (
    INTENT_HEADER,
    REQUEST_HASH_HEADER,
    TX_HEADER,
    Forward,
    GatewayResponse,
    HandleResult,
    IncomingRequest,
    PaymentRequired,
    Replay,
    UpstreamResponse,
    parse_intent_header,
    payment_required_response,
    receipted_response,
    replay_response,
)
from v402.gateway.ratelimit import RateLimiter
from v402.protocol.canonical import request_hash

logger = logging.getLogger(__name__)

Forwarder = Callable[[Forward], UpstreamResponse]


class Gateway:
    """
    Framework-free payment gate over a Backend.

    Usage:
        gateway = Gateway(build_backend(), RateLimiter())
        outcome = gateway.handle(incoming)
    """

    def __init__(self, backend: Backend, rate_limiter: Optional[RateLimiter] = None):
        self.backend = backend
        self.rate_limiter = rate_limiter

    @staticmethod
    def compute_request_hash(request: IncomingRequest) -> str:
        return request_hash(
            request.method,
            request.path,
            request.query,
            request.body,
            request.content_type,
        )

    def handle(self, request: IncomingRequest) -> HandleResult:
        computed = self.compute_request_hash(request)
        intent_header = request.header(INTENT_HEADER)
        tx_sig = request.header(TX_HEADER)
        hash_header = request.header(REQUEST_HASH_HEADER)
        has_proof = bool(intent_header and tx_sig and hash_header)

        audit.log_request_received(request.client_key, request.method, request.path, has_proof)

        if has_proof and hash_header == computed:
            intent_id = parse_intent_header(intent_header)
            if intent_id:
                return self._handle_proof(request, intent_id, tx_sig, computed)
            logger.info(f"Unparseable {INTENT_HEADER} header from {request.client_key}; issuing new intent")
        elif has_proof:
            logger.info(
                f"Request hash mismatch from {request.client_key} on {request.path}; issuing new intent"
            )

        return self._charge(request, computed)

    def _charge(self, request: IncomingRequest, computed: str) -> PaymentRequired:
        if self.rate_limiter is not None:
            limited, made, limit = self.rate_limiter.is_rate_limited(request.client_key)
            if limited:
                audit.log_rate_limited(request.client_key, made, limit)
                raise RateLimitedError(
                    f"Too many payment intents: {made}/{limit} in {self.rate_limiter.window_seconds}s",
                    retry_after=self.rate_limiter.retry_after(request.client_key),
                )

        intent = self.backend.create_intent(request, computed)
        audit.log_intent_created(
            request.client_key,
            intent.intentId,
            intent.toolId,
            intent.amount,
            intent.currency,
            intent.recipient,
            computed,
        )
        return PaymentRequired(intent=intent)

    def _replay(self, request: IncomingRequest, intent_id: str, computed: str) -> Optional[Replay]:
        stored = self.backend.get_replay(intent_id, computed)
        if stored is None:
            return None
        logger.info(f"Replaying receipt {stored.receipt.receiptId} for intent {intent_id}")
        audit.log_replay_served(request.client_key, intent_id, stored.receipt.receiptId)
        return Replay(stored=stored)

    def _handle_proof(
        self,
        request: IncomingRequest,
        intent_id: str,
        tx_sig: str,
        computed: str,
    ) -> HandleResult:
        replay = self._replay(request, intent_id, computed)
        if replay is not None:
            return replay

        try:
            grant = self.backend.verify_intent(intent_id, tx_sig, computed, request)
        except IntentConflictError:
            # A concurrent retry may have finished in the meantime
            replay = self._replay(request, intent_id, computed)
            if replay is not None:
                return replay
            raise
        except PolicyDeniedError as e:
            audit.log_policy_denied(
                request.client_key, intent_id, e.message, payer=e.details.get("payer")
            )
            raise
        except (VerificationFailedError, ExpiredError, RpcError, NotFoundError) as e:
            logger.warning(f"Payment proof {tx_sig} rejected for intent {intent_id}: {e.error_code} {e.reason}")
            audit.log_payment_failed(
                request.client_key, intent_id, tx_sig, e.error_code, e.reason, e.message
            )
            raise

        audit.log_payment_verified(request.client_key, intent_id, grant.payer, tx_sig)
        return Forward(grant=grant, request=request)

    def complete(self, forward: Forward, upstream: UpstreamResponse) -> GatewayResponse:
        """
        Sign and store the receipt for a forwarded request.

        Raises:
            ReceiptIssuanceError: capture, signing or storage failed after the
                upstream call ran
        """
        grant = forward.grant
        request = forward.request
        audit.log_request_forwarded(request.client_key, grant.intent_id, upstream.status, payer=grant.payer)

        try:
            receipt = self.backend.store_receipt(grant, upstream)
        except IntentConflictError:
            replay = self._replay(request, grant.intent_id, grant.request_hash)
            if replay is not None:
                return replay_response(replay.stored)
            raise
        except Exception as e:
            logger.exception(f"Receipt issuance failed for intent {grant.intent_id}")
            audit.log_error(
                request.client_key,
                type(e).__name__,
                str(e),
                context={"tx_sig": grant.tx_sig, "request_hash": grant.request_hash},
                intent_id=grant.intent_id,
            )
            raise ReceiptIssuanceError(
                "Receipt issuance failed after forwarding",
                details={"intent_id": grant.intent_id, "cause": type(e).__name__},
            ) from e

        audit.log_receipt_issued(
            request.client_key, grant.intent_id, receipt.receiptId, receipt.responseHash, payer=grant.payer
        )
        return receipted_response(upstream.status, upstream.headers, upstream.body, receipt)

    def process(self, request: IncomingRequest, forwarder: Forwarder) -> GatewayResponse:
        """Run handle -> forward -> complete and build the response to send."""
        outcome = self.handle(request)
        if isinstance(outcome, PaymentRequired):
            return payment_required_response(outcome.intent)
        if isinstance(outcome, Replay):
            return replay_response(outcome.stored)

        try:
            upstream = forwarder(outcome)
        except V402Error as e:
            audit.log_error(
                request.client_key,
                type(e).__name__,
                e.message,
                intent_id=outcome.grant.intent_id,
            )
            raise
        return self.complete(outcome, upstream)


@lru_cache()
def get_gateway() -> Gateway:
    """Process-wide gateway built from settings on first use."""
    return Gateway(
        build_backend(settings),
        RateLimiter(settings.V402_INTENT_RATE_LIMIT, settings.V402_INTENT_RATE_WINDOW_SECONDS),
    )
