# v402/api/models/tool.py
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class Merchant(BaseModel):
    """Merchant that owns tools and signs their receipts."""
    merchantId: str
    wallet: Optional[str] = Field(None, description="Default payout wallet.")
    signingPublicKey: str = Field(..., description="Hex Ed25519 public key.")
    signingPrivateKeyEncrypted: Optional[str] = Field(
        None,
        description="AES-256-GCM encrypted signing seed: base64(nonce | tag | ciphertext).",
    )


class Tool(BaseModel):
    """
    A paid endpoint published by a merchant.

    The metadata fields are covered by metadataSignature; the gateway will
    not price a tool whose signature does not verify.
    """
    toolId: str
    merchantId: Optional[str] = None
    name: str
    description: str = ""
    baseUrl: str = Field(..., description="Upstream origin calls are forwarded to.")
    pathPattern: str = Field(..., description="Glob pattern: '*' matches one segment, '**' any suffix.")
    pricingModel: Dict[str, Any] = Field(
        default_factory=dict,
        description="e.g. {\"per_call\": \"0.01\"} or {\"per_call\": \"0.05\", \"max_calls\": 10}.",
    )
    acceptedCurrency: Literal["SOL", "USDC"] = "USDC"
    merchantWallet: str
    createdAt: str
    updatedAt: str
    metadataSignature: Optional[str] = None
    status: Literal["active", "paused"] = "active"


class SpendingPolicy(BaseModel):
    """Per-payer spending limits. Missing caps and empty allowlists impose no restriction."""
    payer: Optional[str] = None
    maxSpendPerCall: Optional[Decimal] = Field(None, ge=0)
    maxSpendPerDay: Optional[Decimal] = Field(None, ge=0)
    allowlistedToolIds: List[str] = Field(default_factory=list)
    allowlistedMerchants: List[str] = Field(default_factory=list)
