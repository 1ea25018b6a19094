# v402/api/endpoints/proxy.py
from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
import logging

from v402.core.config import settings
from v402.core.exceptions import UpstreamError
from v402.gateway.forward import HttpForwarder, get_forwarder
from v402.gateway.middleware import build_incoming_request, get_client_ip, get_forward, strip_prefix

router = APIRouter()
logger = logging.getLogger(__name__)

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


@router.api_route(
    "/{path:path}",
    methods=PROXY_METHODS,
    summary="Pay-gated reverse proxy to a tool upstream"
)
async def proxy(
    path: str,
    request: Request,
    forwarder: HttpForwarder = Depends(get_forwarder),
) -> Response:
    """
    Forwards the request to the matching tool's base URL.

    Payment is enforced by V402Middleware before this handler runs; the
    verified grant names the upstream. With gating disabled the request goes
    to V402_UPSTREAM_URL as-is.

    Raises:
        UpstreamError: 502 if the upstream is unreachable (gated requests;
            the middleware turns it into the error response)
    """
    forward = get_forward(request)
    try:
        if forward is not None:
            upstream = await run_in_threadpool(forwarder.forward, forward)
        else:
            if not forwarder.default_upstream:
                return JSONResponse(
                    status_code=404,
                    content={"detail": "No upstream configured"}
                )
            incoming = await build_incoming_request(
                request,
                get_client_ip(request),
                prefix=f"{settings.API_V1_STR}/proxy",
            )
            logger.info(f"Pass-through {request.method} {strip_prefix(request.url.path, settings.API_V1_STR + '/proxy')}")
            upstream = await run_in_threadpool(forwarder.send, incoming, forwarder.default_upstream)
    except UpstreamError as e:
        if forward is not None:
            raise
        return JSONResponse(status_code=e.status_code, content=e.to_dict())

    return Response(content=upstream.body, status_code=upstream.status, headers=upstream.headers)
