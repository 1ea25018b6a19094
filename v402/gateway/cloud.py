# v402/gateway/cloud.py
"""
Backend that delegates intents, verification and receipts to the hosted
v402 API (bearer API key).
"""
import logging
from typing import Any, Dict, Optional
from urllib.parse import quote

import requests
from requests.exceptions import RequestException

from v402.api.models.intent import PaymentIntent
from v402.api.models.receipt import Receipt, StoredReceipt
from v402.core.config import settings
from v402.core.exceptions import RpcError, UpstreamError, VerificationFailedError
from v402.gateway.backend import Backend
from v402.gateway.messages import ForwardGrant, IncomingRequest, UpstreamResponse
from v402.protocol.receipt import response_body_text
from v402.protocol.verify import TRANSFER_NOT_FOUND

logger = logging.getLogger(__name__)


def _receipt_from_cloud(data: Dict[str, Any]) -> Receipt:
    """The hosted API names the signature serverSig; map it onto Receipt."""
    fields = dict(data)
    fields.setdefault("signature", data.get("serverSig", ""))
    fields.setdefault("signerPubkey", "")
    fields.setdefault("toolId", "")
    return Receipt(**{k: v for k, v in fields.items() if k in Receipt.model_fields})


class CloudBackend(Backend):

    def __init__(
        self,
        api_key: str,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = (base_url or settings.V402_CLOUD_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.V402_UPSTREAM_TIMEOUT_SECONDS
        self._session = session or requests.Session()
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            return self._session.request(
                method, url, headers=self._headers, timeout=self.timeout, **kwargs
            )
        except RequestException as e:
            logger.error(f"v402 cloud {method} {path} failed: {e}")
            raise UpstreamError(f"v402 cloud unreachable: {e}", details={"path": path}) from e

    @staticmethod
    def _json(response: requests.Response, operation: str) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            raise UpstreamError(
                f"Cloud {operation} returned an invalid body",
                details={"status": response.status_code},
            )
        return data

    def create_intent(self, request: IncomingRequest, request_hash: str) -> PaymentIntent:
        response = self._request("POST", "/v1/intents", json={
            "method": request.method,
            "path": request.path,
            "query": request.query or None,
            "bodyHash": request_hash,
            "requestHash": request_hash,
            "contentType": request.content_type,
            "baseUrl": request.base_url or "",
        })
        if not response.ok:
            raise UpstreamError(
                f"Cloud createIntent failed: {response.status_code} {response.text}",
                details={"status": response.status_code},
            )
        return PaymentIntent(**self._json(response, "createIntent"))

    def get_replay(self, intent_id: str, request_hash: str) -> Optional[StoredReceipt]:
        response = self._request(
            "GET", "/v1/receipts", params={"intentId": intent_id, "requestHash": request_hash}
        )
        if response.status_code == 404:
            return None
        if not response.ok:
            raise UpstreamError(
                f"Cloud getReceipt failed: {response.status_code}",
                details={"status": response.status_code},
            )
        data = self._json(response, "getReceipt")
        body = data.get("responseBody")
        return StoredReceipt(
            receipt=_receipt_from_cloud(data.get("receipt") or data),
            responseStatus=data.get("responseStatus", 200),
            responseHeaders=data.get("responseHeaders") or {},
            responseBody=body.encode("utf-8") if isinstance(body, str) else b"",
        )

    def verify_intent(
        self,
        intent_id: str,
        tx_sig: str,
        request_hash: str,
        request: IncomingRequest,
    ) -> ForwardGrant:
        response = self._request(
            "POST",
            f"/v1/intents/{quote(intent_id, safe='')}/verify",
            json={"txSignature": tx_sig, "requestHash": request_hash},
        )
        if response.status_code >= 500:
            raise RpcError(
                f"Cloud verify unavailable: {response.status_code}",
                details={"status": response.status_code},
            )
        data = self._json(response, "verify")
        if not response.ok or not data.get("verified"):
            raise VerificationFailedError(
                data.get("error") or f"Cloud verify failed: {response.status_code}",
                data.get("reason") or TRANSFER_NOT_FOUND,
                details={"intent_id": intent_id},
            )
        payer = data.get("payer")
        if not payer:
            raise VerificationFailedError("Cloud verify did not return payer", TRANSFER_NOT_FOUND)

        return ForwardGrant(
            intent_id=intent_id,
            tx_sig=tx_sig,
            payer=payer,
            tool_id=data.get("toolId", ""),
            request_hash=request_hash,
            amount=data.get("amount"),
            currency=data.get("currency"),
            upstream_base_url=data.get("baseUrl"),
        )

    def store_receipt(self, grant: ForwardGrant, upstream: UpstreamResponse) -> Receipt:
        response = self._request("POST", "/v1/receipts", json={
            "intentId": grant.intent_id,
            "requestHash": grant.request_hash,
            "txSig": grant.tx_sig,
            "payer": grant.payer,
            "responseStatus": upstream.status,
            "responseHeaders": upstream.headers,
            "responseBody": response_body_text(upstream.body),
        })
        if not response.ok:
            raise UpstreamError(
                f"Cloud storeReceipt failed: {response.status_code} {response.text}",
                details={"status": response.status_code},
            )
        data = self._json(response, "storeReceipt")
        return _receipt_from_cloud(data.get("receipt") or data)
