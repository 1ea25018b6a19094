# v402/gateway/backend.py
"""
Gateway backends.

A backend owns intents, verification and receipts. LocalBackend keeps them
in the self-hosted store and talks to the ledger itself; CloudBackend
(v402.gateway.cloud) delegates to the hosted v402 API. build_backend()
chooses once at startup.
"""
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import timedelta
from decimal import Decimal
from typing import Optional

from v402.api.models.intent import IntentRecord, PaymentIntent, format_timestamp, utcnow
from v402.api.models.receipt import Receipt, StoredReceipt
from v402.core.config import Settings, settings, validate_backend_settings
from v402.core.exceptions import (
    ExpiredError,
    IntentConflictError,
    InvalidRequestError,
    NotFoundError,
    PolicyDeniedError,
    SignatureInvalidError,
    VerificationFailedError,
)
from v402.gateway.encrypt import decrypt_merchant_key
from v402.gateway.messages import (
    SPENDING_ACCOUNT_HEADER,
    ForwardGrant,
    IncomingRequest,
    UpstreamResponse,
)
from v402.gateway.policy import check_session_allowed, evaluate
from v402.gateway.pricing import get_price_quote
from v402.gateway.store import IntentStore
from v402.protocol.canonical import canonical_body, normalize_content_type, sha256_hex
from v402.protocol.receipt import build_receipt, response_hash
from v402.protocol.tool_metadata import verify_tool_metadata_signature
from v402.protocol.verify import REQUEST_MISMATCH, LedgerVerifier, VerifyConfig
from v402.services.solana_rpc import SolanaRpcClient

logger = logging.getLogger(__name__)


class Backend(ABC):
    """Storage and verification behind the gateway flow."""

    @abstractmethod
    def create_intent(self, request: IncomingRequest, request_hash: str) -> PaymentIntent:
        """Price the request's tool and issue a fresh intent."""

    @abstractmethod
    def get_replay(self, intent_id: str, request_hash: str) -> Optional[StoredReceipt]:
        """Stored receipt and response for (intent, request), if any."""

    @abstractmethod
    def verify_intent(
        self,
        intent_id: str,
        tx_sig: str,
        request_hash: str,
        request: IncomingRequest,
    ) -> ForwardGrant:
        """Verify a proof, enforce policy and claim the forward slot."""

    @abstractmethod
    def store_receipt(self, grant: ForwardGrant, upstream: UpstreamResponse) -> Receipt:
        """Sign and persist the receipt for a forwarded request."""


class LocalBackend(Backend):
    """
    Self-hosted backend: SQL store, direct ledger verification, local signing.
    """

    def __init__(
        self,
        store: IntentStore,
        verifier: LedgerVerifier,
        encryption_key: Optional[str] = None,
        intent_ttl_seconds: Optional[int] = None,
        base_url: Optional[str] = None,
    ):
        self.store = store
        self.verifier = verifier
        self.encryption_key = encryption_key or settings.V402_ENCRYPTION_KEY
        self.intent_ttl_seconds = intent_ttl_seconds or settings.V402_INTENT_TTL_SECONDS
        self.base_url = base_url

    def create_intent(self, request: IncomingRequest, request_hash: str) -> PaymentIntent:
        tool = self.store.find_tool_by_path(request.route_path, request.base_url or self.base_url)
        if tool is None:
            raise NotFoundError(
                f"No tool matches {request.method} {request.route_path}",
                details={"path": request.route_path},
            )

        merchant = self.store.get_merchant(tool.merchantId)
        if merchant is None or not verify_tool_metadata_signature(
            tool, tool.metadataSignature, merchant.signingPublicKey
        ):
            logger.warning(f"Refusing intent for tool {tool.toolId}: metadata signature invalid")
            raise SignatureInvalidError(
                "Tool metadata signature invalid",
                details={"tool_id": tool.toolId},
            )

        try:
            quote = get_price_quote(tool)
        except ValueError as e:
            logger.error(f"Tool {tool.toolId} has an invalid pricing model: {e}")
            raise InvalidRequestError(f"Tool pricing is invalid: {e}", details={"tool_id": tool.toolId})

        now = utcnow()
        max_calls = quote["max_calls"]
        session_fields = {}
        if max_calls is not None:
            ct = normalize_content_type(request.content_type)
            session_fields = {
                "sessionId": str(uuid.uuid4()),
                "maxCalls": max_calls,
                "callsUsed": 0,
                "toolParamsHash": sha256_hex(canonical_body(request.body, ct)),
                "spendingAccount": request.header(SPENDING_ACCOUNT_HEADER),
            }

        record = IntentRecord(
            intentId=str(uuid.uuid4()),
            toolId=tool.toolId,
            amount=quote["amount"],
            currency=quote["currency"],
            chain="solana",
            recipient=quote["recipient"],
            reference=str(uuid.uuid4()),
            expiresAt=now + timedelta(seconds=self.intent_ttl_seconds),
            requestHash=request_hash,
            mint=quote["mint"],
            network=quote["network"],
            status="created",
            **session_fields,
        )
        stored = self.store.create_intent(record)
        logger.info(
            f"Created intent {stored.intentId} for tool {tool.toolId}: "
            f"{stored.amount} {stored.currency} to {stored.recipient}"
        )
        return stored.to_intent()

    def get_replay(self, intent_id: str, request_hash: str) -> Optional[StoredReceipt]:
        return self.store.get_receipt(intent_id, request_hash)

    def verify_intent(
        self,
        intent_id: str,
        tx_sig: str,
        request_hash: str,
        request: IncomingRequest,
    ) -> ForwardGrant:
        record = self.store.get_intent(intent_id)
        if record is None:
            raise NotFoundError(f"Intent {intent_id} not found", details={"intent_id": intent_id})

        if not record.is_session and record.requestHash != request_hash:
            raise VerificationFailedError(
                "Proof is bound to a different request",
                REQUEST_MISMATCH,
                details={"intent_id": intent_id},
            )

        if record.status == "consumed":
            if record.is_session:
                raise PolicyDeniedError("Session call limit reached", details={"intent_id": intent_id})
            raise IntentConflictError("Intent already consumed", details={"intent_id": intent_id})

        if record.is_expired():
            raise ExpiredError(
                "Intent expired",
                details={"intent_id": intent_id, "expires_at": format_timestamp(record.expiresAt)},
            )

        if record.is_session:
            allowed = check_session_allowed(record)
            if not allowed.allowed:
                raise PolicyDeniedError(allowed.reason, details={"intent_id": intent_id})
        elif record.claimedRequestHash is not None:
            raise IntentConflictError("Intent already claimed for forwarding", details={"intent_id": intent_id})

        tool = self.store.get_tool(record.toolId)
        if tool is None:
            raise NotFoundError(f"Tool {record.toolId} not found", details={"tool_id": record.toolId})

        # A session that already forwarded under this proof does not go back to the ledger
        continuation = (
            record.is_session
            and record.status == "paid_verified"
            and record.txSig == tx_sig
            and (record.callsUsed or 0) > 0
        )
        slot = None
        if continuation:
            payer = record.payer
        else:
            intent = record.to_intent()
            if not record.is_session:
                intent = intent.model_copy(update={"payer": None})
            payment = self.verifier.verify(tx_sig, intent)
            payer = payment.payer
            slot = payment.slot
            if not self.store.mark_paid_verified(intent_id, payer, tx_sig):
                raise IntentConflictError("Intent state changed during verification", details={"intent_id": intent_id})

        policy = self.store.get_policy(payer)
        daily_spend = self.store.get_daily_spend(payer)
        if continuation:
            # This session's payment is already part of today's spend
            daily_spend = max(Decimal("0"), daily_spend - Decimal(record.amount))
        decision = evaluate(policy, record.amount, tool.toolId, tool.merchantWallet, daily_spend)
        if not decision.allowed:
            logger.info(f"Policy denied intent {intent_id} for {payer}: {decision.reason}")
            raise PolicyDeniedError(decision.reason, details={"intent_id": intent_id, "payer": payer})

        spend = None if continuation else (payer, record.amount)
        if not self.store.claim_forward(intent_id, request_hash, record.is_session, spend):
            raise IntentConflictError("Forward slot already claimed", details={"intent_id": intent_id})

        return ForwardGrant(
            intent_id=intent_id,
            tx_sig=tx_sig,
            payer=payer,
            tool_id=tool.toolId,
            request_hash=request_hash,
            amount=record.amount,
            currency=record.currency,
            upstream_base_url=tool.baseUrl,
            slot=slot,
            session=record.is_session,
        )

    def store_receipt(self, grant: ForwardGrant, upstream: UpstreamResponse) -> Receipt:
        tool = self.store.get_tool(grant.tool_id)
        merchant = self.store.get_merchant(tool.merchantId) if tool else None
        if tool is None or merchant is None or not merchant.signingPrivateKeyEncrypted:
            raise NotFoundError("Merchant signing key not found", details={"tool_id": grant.tool_id})
        if not self.encryption_key:
            raise ValueError("V402_ENCRYPTION_KEY is not configured")

        seed = decrypt_merchant_key(merchant.signingPrivateKeyEncrypted, self.encryption_key)
        payload = {
            "receiptId": str(uuid.uuid4()),
            "intentId": grant.intent_id,
            "toolId": grant.tool_id,
            "requestHash": grant.request_hash,
            "responseHash": response_hash(upstream.status, upstream.headers, upstream.body),
            "txSig": grant.tx_sig,
            "payer": grant.payer,
            "merchant": tool.merchantWallet,
            "timestamp": format_timestamp(utcnow()),
        }
        receipt = Receipt(**build_receipt(
            payload,
            seed,
            amount=grant.amount,
            currency=grant.currency,
            block_height=grant.slot,
        ))
        if receipt.signerPubkey != merchant.signingPublicKey.lower():
            raise SignatureInvalidError(
                "Decrypted signing key does not match the merchant public key",
                details={"merchant_id": merchant.merchantId},
            )

        self.store.save_receipt(StoredReceipt(
            receipt=receipt,
            responseStatus=upstream.status,
            responseHeaders=upstream.headers,
            responseBody=upstream.body,
        ))
        self.store.mark_consumed(grant.intent_id, session_intent=grant.session)
        logger.info(f"Issued receipt {receipt.receiptId} for intent {grant.intent_id}")
        return receipt


def build_backend(config: Settings = settings) -> Backend:
    """
    Select the backend once from configuration.

    V402_API_KEY selects the cloud backend; otherwise the self-hosted store
    and ledger settings are used.
    """
    validate_backend_settings(config)

    if config.use_cloud:
        from v402.gateway.cloud import CloudBackend

        logger.info(f"Using v402 cloud backend at {config.V402_CLOUD_URL}")
        return CloudBackend(api_key=config.V402_API_KEY, base_url=config.V402_CLOUD_URL)

    store = IntentStore(config.V402_DATABASE_URL)
    store.init_db()
    rpc = SolanaRpcClient(
        rpc_url=config.SOLANA_RPC_URL,
        commitment=config.SOLANA_COMMITMENT,
        timeout=config.V402_RPC_TIMEOUT_SECONDS,
    )
    verifier = LedgerVerifier.from_config(
        rpc, VerifyConfig(usdc_mint=config.USDC_MINT, usdc_decimals=config.USDC_DECIMALS)
    )
    logger.info(f"Using self-hosted v402 backend ({config.SOLANA_NETWORK})")
    return LocalBackend(
        store=store,
        verifier=verifier,
        encryption_key=config.V402_ENCRYPTION_KEY,
        intent_ttl_seconds=config.V402_INTENT_TTL_SECONDS,
        base_url=config.V402_PUBLIC_BASE_URL,
    )
