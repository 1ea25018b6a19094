"""
SQLAlchemy ORM Models for the v402 self-hosted backend

Tables: merchants, tools, payment_intents, receipts, policies, daily_spend.
Intents and receipts are never deleted; intent rows only move forward through
created -> paid_verified -> consumed.
"""
from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _utcnow() -> datetime:
    # Stored naive; every timestamp column is UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


class MerchantModel(Base):
    """
    ORM model for merchants table.

    The signing seed is stored AES-256-GCM encrypted and only decrypted to
    sign a receipt.
    """
    __tablename__ = "merchants"

    merchant_id = Column(String, primary_key=True)
    wallet = Column(String)
    signing_public_key = Column(String, nullable=False)
    signing_private_key_encrypted = Column(Text)
    created_at = Column(DateTime, nullable=False, default=_utcnow)


class ToolModel(Base):
    """
    ORM model for tools table.

    created_at/updated_at are kept as the exact strings the merchant signed.
    """
    __tablename__ = "tools"

    tool_id = Column(String, primary_key=True)
    merchant_id = Column(String, ForeignKey("merchants.merchant_id"), index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=False, default="")
    base_url = Column(String, nullable=False, index=True)
    path_pattern = Column(String, nullable=False)
    pricing_model = Column(Text, nullable=False, default="{}")  # JSON blob
    accepted_currency = Column(String, nullable=False, default="USDC")
    merchant_wallet = Column(String, nullable=False)
    metadata_signature = Column(Text)
    status = Column(String, nullable=False, default="active", index=True)
    created_at = Column(String, nullable=False)
    updated_at = Column(String, nullable=False)

    __table_args__ = (
        CheckConstraint("accepted_currency IN ('SOL', 'USDC')", name="tool_currency_check"),
        CheckConstraint("status IN ('active', 'paused')", name="tool_status_check"),
    )


class PaymentIntentModel(Base):
    """ORM model for payment_intents table."""
    __tablename__ = "payment_intents"

    intent_id = Column(String, primary_key=True)
    reference = Column(String, nullable=False, unique=True)
    tool_id = Column(String, ForeignKey("tools.tool_id"), nullable=False, index=True)
    amount = Column(String, nullable=False)
    currency = Column(String, nullable=False)
    chain = Column(String, nullable=False, default="solana")
    recipient = Column(String, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)
    request_hash = Column(String, nullable=False)
    payer = Column(String, index=True)
    mint = Column(String)
    network = Column(String)
    status = Column(String, nullable=False, default="created", index=True)
    tx_sig = Column(String, index=True)
    claimed_request_hash = Column(String)

    # Session intents
    tool_params_hash = Column(String)
    session_id = Column(String, index=True)
    max_calls = Column(Integer)
    calls_used = Column(Integer)
    spending_account = Column(String)

    created_at = Column(DateTime, nullable=False, default=_utcnow)
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        CheckConstraint("status IN ('created', 'paid_verified', 'consumed')", name="intent_status_check"),
        CheckConstraint("currency IN ('SOL', 'USDC')", name="intent_currency_check"),
    )


class ReceiptModel(Base):
    """
    ORM model for receipts table.

    One row per (intent_id, request_hash); the captured upstream response is
    kept so a retry can be replayed without forwarding again.
    """
    __tablename__ = "receipts"

    receipt_id = Column(String, primary_key=True)
    intent_id = Column(String, ForeignKey("payment_intents.intent_id"), nullable=False, index=True)
    tool_id = Column(String, nullable=False)
    request_hash = Column(String, nullable=False)
    response_hash = Column(String, nullable=False)
    tx_sig = Column(String, nullable=False)
    payer = Column(String, nullable=False, index=True)
    merchant = Column(String, nullable=False)
    timestamp = Column(String, nullable=False)
    signature = Column(Text, nullable=False)
    signer_pubkey = Column(String, nullable=False)

    # v2 fields
    version = Column(String)
    amount = Column(String)
    currency = Column(String)
    block_height = Column(BigInteger)
    receipt_hash = Column(String)

    response_status = Column(Integer, nullable=False)
    response_headers = Column(Text, nullable=False, default="{}")  # JSON blob
    response_body = Column(LargeBinary, nullable=False, default=b"")
    created_at = Column(DateTime, nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("intent_id", "request_hash", name="uq_receipt_intent_request"),
    )


class PolicyModel(Base):
    """ORM model for policies table. Caps are decimal strings; NULL means no cap."""
    __tablename__ = "policies"

    payer = Column(String, primary_key=True)
    max_spend_per_call = Column(String)
    max_spend_per_day = Column(String)
    allowlisted_tool_ids = Column(Text, nullable=False, default="[]")  # JSON list
    allowlisted_merchants = Column(Text, nullable=False, default="[]")  # JSON list
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)


class DailySpendModel(Base):
    """
    ORM model for daily_spend table.

    amount_atomic is the day's approved spend in 10^-9 units so increments
    are plain integer additions.
    """
    __tablename__ = "daily_spend"

    payer = Column(String, primary_key=True)
    date_utc = Column(String, primary_key=True)  # YYYY-MM-DD
    amount_atomic = Column(BigInteger, nullable=False, default=0)
