# v402/client/client.py
"""
Caller side of the v402 flow: request -> 402 -> pay -> retry with proof.
"""
import json
import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Dict, Mapping, Optional
from urllib.parse import parse_qsl, unquote, urlsplit

import requests
from pydantic import ValidationError

from v402.api.models.intent import PaymentIntent
from v402.api.models.receipt import Receipt
from v402.client.wallet import PayResult, WalletAdapter, intent_to_pay_params
from v402.core.exceptions import V402PaymentError
from v402.gateway.messages import INTENT_HEADER, RECEIPT_HEADER, REQUEST_HASH_HEADER, TX_HEADER
from v402.protocol.canonical import request_hash
from v402.protocol.receipt import verify_receipt

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0

BeforePayHook = Callable[[PaymentIntent], bool]


def hash_prepared_request(prepared: requests.PreparedRequest) -> str:
    """Request hash of a prepared request, computed the way the gateway sees it."""
    parts = urlsplit(prepared.url)
    query = dict(parse_qsl(parts.query, keep_blank_values=True))
    return request_hash(
        prepared.method,
        unquote(parts.path) or "/",
        query,
        prepared.body,
        prepared.headers.get("Content-Type"),
    )


def parse_intent(response: requests.Response) -> PaymentIntent:
    """
    Parse the intent carried by a 402 response.

    Raises:
        V402PaymentError: INVALID_INTENT if the body is not a valid intent
    """
    try:
        data = response.json()
    except ValueError as e:
        raise V402PaymentError("402 body is not JSON", V402PaymentError.INVALID_INTENT, cause=e, response=response)
    if not isinstance(data, dict):
        raise V402PaymentError("402 body is not an intent object", V402PaymentError.INVALID_INTENT, response=response)
    try:
        return PaymentIntent(**data)
    except ValidationError as e:
        raise V402PaymentError(
            f"402 body is missing required intent fields: {e.error_count()} error(s)",
            V402PaymentError.INVALID_INTENT,
            cause=e,
            response=response,
        )


def parse_receipt(response: requests.Response) -> Optional[Receipt]:
    """The receipt from the V402-Receipt header, or None if absent or malformed."""
    raw = response.headers.get(RECEIPT_HEADER)
    if not raw:
        return None
    try:
        return Receipt(**json.loads(raw))
    except (ValueError, TypeError) as e:
        logger.warning(f"Ignoring malformed {RECEIPT_HEADER} header: {e}")
        return None


def verify_response_receipt(
    response: requests.Response,
    public_key: Optional[str] = None,
    expected_request_hash: Optional[str] = None,
) -> bool:
    """
    Check the receipt attached to a paid response.

    public_key should be the merchant key obtained out of band; without it
    only self-consistency against the receipt's signerPubkey is checked.
    """
    receipt = parse_receipt(response)
    if receipt is None:
        return False
    if expected_request_hash is not None and receipt.requestHash != expected_request_hash:
        return False
    return verify_receipt(receipt.payload(), receipt.signature, public_key or receipt.signerPubkey)


class V402Client:
    """
    HTTP client that pays v402 intents transparently.

    Usage:
        client = V402Client(wallet=my_wallet)
        response = client.post("https://gw.example/api/v1/proxy/search", json={"q": "x"})
    """

    def __init__(
        self,
        wallet: WalletAdapter,
        session: Optional[requests.Session] = None,
        timeout: float = DEFAULT_TIMEOUT,
        pay_timeout: Optional[float] = None,
        on_before_pay: Optional[BeforePayHook] = None,
    ):
        self.wallet = wallet
        self.session = session or requests.Session()
        self.timeout = timeout
        self.pay_timeout = pay_timeout
        self.on_before_pay = on_before_pay

    def get(self, url: str, **kwargs) -> requests.Response:
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs) -> requests.Response:
        return self.request("POST", url, **kwargs)

    def request(
        self,
        method: str,
        url: str,
        params: Optional[Mapping[str, Any]] = None,
        data: Any = None,
        headers: Optional[Dict[str, str]] = None,
        json: Any = None,
    ) -> requests.Response:
        """
        Send a request, paying and retrying once if the gateway answers 402.

        Non-402 responses are returned unchanged.

        Raises:
            V402PaymentError: INVALID_INTENT, INTENT_EXPIRED, PAYMENT_FAILED
                or RETRY_FAILED
        """
        send_headers = dict(headers or {})
        if json is not None:
            data = _json_dumps(json)
            if not any(k.lower() == "content-type" for k in send_headers):
                send_headers["Content-Type"] = "application/json"

        prepared = self.session.prepare_request(
            requests.Request(method.upper(), url, params=params, data=data, headers=send_headers)
        )
        computed = hash_prepared_request(prepared)

        first = self.session.send(prepared.copy(), timeout=self.timeout)
        if first.status_code != 402:
            return first

        intent = parse_intent(first)
        if intent.is_expired():
            raise V402PaymentError(
                f"Intent {intent.intentId} expired at {intent.to_wire()['expiresAt']}",
                V402PaymentError.INTENT_EXPIRED,
                response=first,
            )

        tx_sig = self._pay(intent)
        logger.info(f"Paid intent {intent.intentId} ({intent.amount} {intent.currency}) with {tx_sig}")

        retry = prepared.copy()
        retry.headers[INTENT_HEADER] = intent.intentId
        retry.headers[TX_HEADER] = tx_sig
        retry.headers[REQUEST_HASH_HEADER] = computed

        try:
            response = self.session.send(retry, timeout=self.timeout)
        except requests.RequestException as e:
            raise V402PaymentError(
                f"Paid retry for intent {intent.intentId} failed: {e}",
                V402PaymentError.RETRY_FAILED,
                cause=e,
            )
        if not 200 <= response.status_code < 300:
            raise V402PaymentError(
                f"Paid retry for intent {intent.intentId} returned {response.status_code}",
                V402PaymentError.RETRY_FAILED,
                response=response,
            )
        return response

    def _pay(self, intent: PaymentIntent) -> str:
        if self.on_before_pay is not None:
            try:
                approved = self.on_before_pay(intent)
            except Exception as e:
                raise V402PaymentError(
                    f"Pre-payment hook failed: {e}", V402PaymentError.PAYMENT_FAILED, cause=e
                )
            if not approved:
                raise V402PaymentError(
                    f"Payment for intent {intent.intentId} vetoed", V402PaymentError.PAYMENT_FAILED
                )

        params = intent_to_pay_params(intent)
        try:
            if self.pay_timeout is None:
                result = self.wallet.pay(params)
            else:
                result = _call_with_timeout(self.wallet.pay, params, self.pay_timeout)
        except FutureTimeoutError as e:
            raise V402PaymentError(
                f"Wallet payment timed out after {self.pay_timeout}s",
                V402PaymentError.PAYMENT_FAILED,
                cause=e,
            )
        except Exception as e:
            raise V402PaymentError(f"Wallet payment failed: {e}", V402PaymentError.PAYMENT_FAILED, cause=e)

        tx_sig = result.tx_sig if isinstance(result, PayResult) else result
        if not tx_sig:
            raise V402PaymentError("Wallet returned no transaction signature", V402PaymentError.PAYMENT_FAILED)
        return tx_sig


def fetch_with_payment(
    wallet: WalletAdapter,
    method: str,
    url: str,
    on_before_pay: Optional[BeforePayHook] = None,
    pay_timeout: Optional[float] = None,
    **kwargs,
) -> requests.Response:
    """One-off paid request without keeping a V402Client around."""
    client = V402Client(wallet, pay_timeout=pay_timeout, on_before_pay=on_before_pay)
    try:
        return client.request(method, url, **kwargs)
    finally:
        client.session.close()


def _json_dumps(body: Any) -> bytes:
    return json.dumps(body, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _call_with_timeout(fn: Callable, arg: Any, timeout: float) -> Any:
    executor = ThreadPoolExecutor(max_workers=1)
    try:
        return executor.submit(fn, arg).result(timeout=timeout)
    finally:
        # A timed-out payment keeps running; do not block on it
        executor.shutdown(wait=False)
