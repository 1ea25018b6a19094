# v402/api/models/intent.py
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field, field_serializer, field_validator

from v402.protocol.amount import to_atomic_units

IntentStatus = Literal["created", "paid_verified", "consumed"]


def format_timestamp(value: datetime) -> str:
    """ISO-8601 UTC with millisecond precision and a Z suffix (2026-01-01T00:00:00.000Z)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentIntent(BaseModel):
    """
    A server-issued demand for a specific on-chain payment bound to one request.

    Sent to the caller as the 402 body and echoed back (JSON) in the
    V402-Intent header on retry.
    """
    intentId: str = Field(..., description="Unique identifier of the intent.")
    toolId: str = Field(..., description="Tool the payment unlocks.")
    amount: str = Field(..., description="Decimal amount as a string, e.g. \"0.01\".")
    currency: Literal["SOL", "USDC"] = Field(..., description="Settlement currency.")
    chain: Literal["solana"] = Field("solana", description="Ledger the payment must land on.")
    recipient: str = Field(..., description="Merchant wallet that must receive the transfer.")
    reference: str = Field(..., description="Unique id the payer embeds in the v402:<reference> memo.")
    expiresAt: datetime = Field(..., description="Absolute UTC deadline for the paying transaction.")
    requestHash: str = Field(..., description="Canonical request hash the intent is bound to.")
    payer: Optional[str] = Field(None, description="Payer wallet, set once a payment is verified.")
    mint: Optional[str] = Field(None, description="SPL token mint for USDC intents.")
    network: Optional[Literal["mainnet-beta", "devnet", "testnet"]] = Field(None, description="Solana cluster.")

    # Session intents
    toolParamsHash: Optional[str] = Field(None, description="Hash of the tool parameters the session was opened with.")
    sessionId: Optional[str] = Field(None, description="Session identifier; present only on session intents.")
    maxCalls: Optional[int] = Field(None, ge=1, description="Calls one payment covers in a session.")
    callsUsed: Optional[int] = Field(None, ge=0, description="Calls already forwarded under the session.")
    spendingAccount: Optional[str] = Field(None, description="Optional delegated spending account.")

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: Any) -> str:
        text = str(v).strip()
        # Raises ValueError for negative/non-numeric amounts
        to_atomic_units(text, 9)
        return text

    @field_validator("expiresAt")
    @classmethod
    def ensure_utc(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)

    @field_serializer("expiresAt")
    def serialize_expires_at(self, v: datetime) -> str:
        return format_timestamp(v)

    @property
    def is_session(self) -> bool:
        return bool(self.sessionId)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > self.expiresAt

    def to_wire(self) -> Dict[str, Any]:
        """JSON-ready dict with unset optional fields omitted."""
        return self.model_dump(mode="json", exclude_none=True)


class IntentRecord(PaymentIntent):
    """Stored form of an intent, including lifecycle state."""
    status: IntentStatus = Field("created", description="Lifecycle state.")
    txSig: Optional[str] = Field(None, description="Transaction that moved the intent to paid_verified.")
    claimedRequestHash: Optional[str] = Field(None, description="Request hash holding the forward claim.")
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None

    @field_validator("createdAt", "updatedAt")
    @classmethod
    def ensure_optional_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @field_serializer("createdAt", "updatedAt")
    def serialize_timestamps(self, v: Optional[datetime]) -> Optional[str]:
        return format_timestamp(v) if v is not None else None

    def to_intent(self) -> PaymentIntent:
        """The wire intent, without stored-only fields."""
        return PaymentIntent(**self.model_dump(include=set(PaymentIntent.model_fields)))
