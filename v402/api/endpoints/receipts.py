# v402/api/endpoints/receipts.py
from fastapi import APIRouter, Depends, HTTPException, Path, Query
from starlette.concurrency import run_in_threadpool
from typing import Any
import logging

from v402.api.models.receipt import Receipt, ReceiptVerifyRequest, ReceiptVerifyResponse
from v402.core.exceptions import V402Error
from v402.gateway.flow import Gateway, get_gateway
from v402.protocol.receipt import receipt_hash, verify_receipt

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post(
    "/verify",
    response_model=ReceiptVerifyResponse,
    summary="Verify a v402 receipt signature"
)
async def verify_receipt_signature(request: ReceiptVerifyRequest) -> Any:
    """
    Checks the Ed25519 signature of a receipt over its signed fields.

    The receipt's own signerPubkey is used unless publicKey is given; a
    caller that knows the merchant key should always pass it.

    Returns:
        ReceiptVerifyResponse: valid flag plus the payload hash
    """
    receipt = request.receipt
    public_key = request.publicKey or receipt.signerPubkey
    payload = receipt.payload()
    valid = verify_receipt(payload, receipt.signature, public_key)

    logger.info(f"Receipt {receipt.receiptId} verification: {'valid' if valid else 'invalid'}")
    return ReceiptVerifyResponse(
        valid=valid,
        receiptId=receipt.receiptId,
        receiptHash=receipt_hash(payload),
        message="Signature valid" if valid else "Signature invalid for the given public key",
    )


@router.get(
    "/{intent_id}",
    response_model=Receipt,
    response_model_exclude_none=True,
    summary="Fetch the stored receipt for an intent and request"
)
async def get_receipt(
    intent_id: str = Path(..., description="Payment intent id"),
    request_hash: str = Query(..., description="Request hash the receipt was issued for"),
    gateway: Gateway = Depends(get_gateway),
) -> Any:
    """
    Looks up a previously issued receipt.

    Raises:
        HTTPException: 404 if no receipt exists for (intent_id, request_hash)
    """
    try:
        stored = await run_in_threadpool(gateway.backend.get_replay, intent_id, request_hash)
    except V402Error as e:
        logger.error(f"Receipt lookup failed for intent {intent_id}: {e.message}")
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())

    if stored is None:
        raise HTTPException(status_code=404, detail=f"No receipt for intent {intent_id} and request hash")
    return stored.receipt
