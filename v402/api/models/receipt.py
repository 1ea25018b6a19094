# v402/api/models/receipt.py
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class ReceiptPayload(BaseModel):
    """The signed subset of a receipt."""
    receiptId: str
    intentId: str
    toolId: str
    requestHash: str
    responseHash: str
    txSig: str
    payer: str
    merchant: str
    timestamp: str = Field(..., description="ISO-8601 UTC issuance time.")


class Receipt(ReceiptPayload):
    """
    Signed proof that a specific paid request produced a specific response.

    Returned in the V402-Receipt header as JSON. Fields after signerPubkey
    belong to receipt version 2 and are informational (not signed).
    """
    signature: str = Field(..., description="Base64 Ed25519 signature over the canonical payload.")
    signerPubkey: str = Field(..., description="Hex Ed25519 public key of the signing merchant.")
    version: Optional[str] = Field(None, description="Receipt format version (\"2\").")
    amount: Optional[str] = None
    currency: Optional[str] = None
    block_height: Optional[int] = Field(None, description="Slot of the paying transaction.")
    receipt_hash: Optional[str] = Field(None, description="SHA-256 of the signed canonical payload.")

    def payload(self) -> ReceiptPayload:
        return ReceiptPayload(**self.model_dump(include=set(ReceiptPayload.model_fields)))

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class StoredReceipt(BaseModel):
    """A receipt together with the captured upstream response it covers."""
    receipt: Receipt
    responseStatus: int
    responseHeaders: Dict[str, str] = Field(default_factory=dict)
    responseBody: bytes = b""


class ReceiptVerifyRequest(BaseModel):
    """Request model for verifying a receipt signature."""
    receipt: Receipt = Field(..., description="The receipt as returned in V402-Receipt.")
    publicKey: Optional[str] = Field(
        None,
        description="Expected signer key (hex or PEM). Defaults to the receipt's signerPubkey.",
    )


class ReceiptVerifyResponse(BaseModel):
    """Response model for receipt verification."""
    valid: bool
    receiptId: str
    receiptHash: Optional[str] = None
    message: str
