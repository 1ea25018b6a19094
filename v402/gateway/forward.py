# v402/gateway/forward.py
"""
Upstream forwarding for the pay-gated reverse proxy.
"""
import logging
from functools import lru_cache
from typing import Dict, Mapping, Optional
from urllib.parse import urlencode

import requests
from requests.exceptions import RequestException

from v402.core.config import settings
from v402.core.exceptions import UpstreamError
from v402.gateway.messages import Forward, IncomingRequest, UpstreamResponse

logger = logging.getLogger(__name__)

# Not forwarded in either direction
HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "host",
    "content-length",
    "content-encoding",
})


def filter_request_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    """Caller headers minus hop-by-hop and v402 proof headers."""
    return {
        k: v for k, v in headers.items()
        if k.lower() not in HOP_BY_HOP_HEADERS and not k.lower().startswith("v402-")
    }


def capture_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    """Response headers that are recorded, hashed into the receipt and replayed."""
    return {
        k.lower(): v for k, v in headers.items()
        if k.lower() not in HOP_BY_HOP_HEADERS and k.lower() != "v402-receipt"
    }


def build_upstream_url(base_url: str, route_path: str, query: Optional[Mapping[str, str]] = None) -> str:
    url = base_url.rstrip("/") + "/" + route_path.lstrip("/")
    if query:
        url += "?" + urlencode(query)
    return url


class HttpForwarder:
    """
    Forwards a granted request to its tool's upstream with `requests`.

    The forwarder never retries: a failed upstream call leaves the intent
    claimed and is reported as UpstreamError.
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        timeout: Optional[float] = None,
        default_upstream: Optional[str] = None,
    ):
        self._session = session or requests.Session()
        self.timeout = timeout if timeout is not None else settings.V402_UPSTREAM_TIMEOUT_SECONDS
        self.default_upstream = default_upstream or settings.V402_UPSTREAM_URL

    def __call__(self, forward: Forward) -> UpstreamResponse:
        return self.forward(forward)

    def forward(self, forward: Forward) -> UpstreamResponse:
        base_url = forward.grant.upstream_base_url or self.default_upstream
        if not base_url:
            raise UpstreamError(
                "No upstream configured for tool",
                details={"tool_id": forward.grant.tool_id},
            )
        logger.info(f"Forwarding {forward.request.method} {forward.request.route_path} for intent {forward.grant.intent_id}")
        return self.send(
            forward.request,
            base_url,
            details={"tool_id": forward.grant.tool_id, "intent_id": forward.grant.intent_id},
        )

    def send(
        self,
        request: IncomingRequest,
        base_url: str,
        details: Optional[Dict[str, str]] = None,
    ) -> UpstreamResponse:
        """Send `request` to `base_url` + its route path and capture the response."""
        url = build_upstream_url(base_url, request.route_path, request.query)
        try:
            response = self._session.request(
                request.method,
                url,
                headers=filter_request_headers(request.headers),
                data=request.body or None,
                timeout=self.timeout,
                allow_redirects=False,
            )
        except RequestException as e:
            logger.error(f"Upstream call failed ({url}): {e}")
            raise UpstreamError(f"Upstream call failed: {e}", details=details or {"url": url}) from e

        return UpstreamResponse(
            status=response.status_code,
            headers=capture_headers(response.headers),
            body=response.content,
        )


@lru_cache()
def get_forwarder() -> HttpForwarder:
    return HttpForwarder()
