# v402/gateway/middleware.py
"""
FastAPI middleware binding for the v402 gateway.

For requests under a protected prefix this middleware:
1. Builds an IncomingRequest and runs Gateway.handle in the thread pool
2. Returns 402 with a fresh intent, or replays a stored receipted response
3. On a verified proof, hands the request to the downstream endpoint with
   the grant on request.state.v402_forward
4. Captures the downstream response, signs the receipt and attaches
   V402-Receipt

When V402_ENABLED=false, all requests pass through unchanged.
"""
import logging
from typing import Callable, List, Optional

from fastapi import Request, Response
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from v402.core.config import settings
from v402.core.exceptions import RateLimitedError, V402Error
from v402.gateway import audit
from v402.gateway.flow import Gateway, get_gateway
from v402.gateway.forward import capture_headers
from v402.gateway.messages import (
    Forward,
    GatewayResponse,
    IncomingRequest,
    PaymentRequired,
    Replay,
    UpstreamResponse,
    payment_required_response,
    replay_response,
)

logger = logging.getLogger(__name__)

FORWARD_STATE_KEY = "v402_forward"


def get_client_ip(request: Request) -> str:
    """Extract client IP from request, handling proxies."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # Take the first IP in the chain
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    if request.client:
        return request.client.host

    return "unknown"


def match_protected_prefix(path: str, prefixes: List[str]) -> Optional[str]:
    """Longest configured prefix that `path` falls under, if any."""
    matches = [
        p for p in prefixes
        if path == p.rstrip("/") or path.startswith(p.rstrip("/") + "/")
    ]
    if not matches:
        return None
    return max(matches, key=len).rstrip("/")


def strip_prefix(path: str, prefix: Optional[str]) -> str:
    if not prefix:
        return path
    rest = path[len(prefix):]
    return rest if rest.startswith("/") else "/" + rest


async def build_incoming_request(
    request: Request,
    client_key: str,
    prefix: Optional[str] = None,
) -> IncomingRequest:
    body = await request.body()
    return IncomingRequest(
        method=request.method,
        path=request.url.path,
        query=dict(request.query_params),
        headers=dict(request.headers),
        body=body,
        route_path=strip_prefix(request.url.path, prefix),
        client_key=client_key,
    )


def error_response(error: V402Error) -> JSONResponse:
    headers = {}
    if isinstance(error, RateLimitedError):
        headers["Retry-After"] = str(error.retry_after)
    return JSONResponse(status_code=error.status_code, content=error.to_dict(), headers=headers)


def to_response(result: GatewayResponse) -> Response:
    return Response(content=result.body, status_code=result.status, headers=result.headers)


class V402Middleware(BaseHTTPMiddleware):
    """
    v402 payment gate for FastAPI.

    The gateway is built lazily from settings unless one is injected.
    """

    def __init__(
        self,
        app,
        gateway: Optional[Gateway] = None,
        protected_prefixes: Optional[List[str]] = None,
        enabled: Optional[bool] = None,
    ):
        super().__init__(app)
        self._gateway = gateway
        self.protected_prefixes = protected_prefixes if protected_prefixes is not None else settings.V402_PROTECTED_PREFIXES
        self.enabled = settings.V402_ENABLED if enabled is None else enabled

    @property
    def gateway(self) -> Gateway:
        """Lazy initialization of the gateway."""
        if self._gateway is None:
            self._gateway = get_gateway()
        return self._gateway

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Response]
    ) -> Response:
        if not self.enabled:
            return await call_next(request)

        prefix = match_protected_prefix(request.url.path, self.protected_prefixes)
        if prefix is None:
            return await call_next(request)

        client_ip = get_client_ip(request)
        incoming = await build_incoming_request(request, client_ip, prefix)
        gateway = self.gateway

        try:
            outcome = await run_in_threadpool(gateway.handle, incoming)
        except V402Error as e:
            logger.info(f"v402: {request.method} {request.url.path} from {client_ip} rejected: {e.error_code}")
            return error_response(e)

        if isinstance(outcome, PaymentRequired):
            logger.info(f"v402: Payment required for {request.url.path}, intent {outcome.intent.intentId}")
            return to_response(payment_required_response(outcome.intent))
        if isinstance(outcome, Replay):
            return to_response(replay_response(outcome.stored))

        setattr(request.state, FORWARD_STATE_KEY, outcome)
        try:
            response = await call_next(request)
        except V402Error as e:
            logger.error(f"v402: Downstream failed for intent {outcome.grant.intent_id}: {e.message}")
            audit.log_error(client_ip, type(e).__name__, e.message, intent_id=outcome.grant.intent_id)
            return error_response(e)

        body = b""
        async for chunk in response.body_iterator:
            body += chunk

        upstream = UpstreamResponse(
            status=response.status_code,
            headers=capture_headers(response.headers),
            body=body,
        )
        try:
            result = await run_in_threadpool(gateway.complete, outcome, upstream)
        except V402Error as e:
            return error_response(e)
        return to_response(result)


def get_forward(request: Request) -> Optional[Forward]:
    """The grant the middleware attached to this request, if any."""
    return getattr(request.state, FORWARD_STATE_KEY, None)
