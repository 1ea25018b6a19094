# v402/main.py
from contextlib import asynccontextmanager

from fastapi import FastAPI
from v402.core.config import settings
from v402.api.endpoints import proxy, receipts
from v402.gateway.flow import get_gateway
from v402.gateway.middleware import V402Middleware
import logging

# Configure basic logging
logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL))
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Build the gateway up front so misconfiguration fails at startup
    limiter = get_gateway().rate_limiter if settings.V402_ENABLED else None
    if limiter is not None:
        limiter.start()
    yield
    if limiter is not None:
        limiter.stop()


app = FastAPI(
    title=settings.PROJECT_NAME,
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(V402Middleware)

# The prefix ensures all routes start with /api/v1
app.include_router(receipts.router, prefix=f"{settings.API_V1_STR}/receipts", tags=["receipts"])
app.include_router(proxy.router, prefix=f"{settings.API_V1_STR}/proxy", tags=["proxy"])


@app.get("/", summary="Health Check", tags=["default"])
def read_root():
    """ Basic health check endpoint. """
    logger.info("Root endpoint '/' accessed.")
    return {
        "status": "ok",
        "message": f"Welcome to {settings.PROJECT_NAME}",
        "payments_enabled": settings.V402_ENABLED,
        "backend": "cloud" if settings.use_cloud else "self-hosted",
    }
