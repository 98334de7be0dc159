# app/main.py
from contextlib import asynccontextmanager

from fastapi import FastAPI
from app.core.config import settings
from app.core.container import get_container
from app.api.endpoints import analytics, credits, pricing, sessions, transactions
from app.api.errors import register_error_handlers
from app.x402.middleware import X402Middleware
import logging

# Configure basic logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    container = get_container()
    container.start()
    logger.info(f"{settings.PROJECT_NAME} started")
    try:
        yield
    finally:
        container.shutdown()
        logger.info(f"{settings.PROJECT_NAME} stopped")


app = FastAPI(
    title=settings.PROJECT_NAME,
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
    lifespan=lifespan
)

register_error_handlers(app)

# Metered routes are declared in the service catalog (X402_SERVICE_CATALOG_PATH)
app.add_middleware(X402Middleware)

# The prefix ensures all routes start with /api/v1
app.include_router(pricing.router, prefix=f"{settings.API_V1_STR}/price", tags=["pricing"])
app.include_router(sessions.router, prefix=f"{settings.API_V1_STR}/sessions", tags=["sessions"])
app.include_router(credits.router, prefix=f"{settings.API_V1_STR}/credits", tags=["credits"])
app.include_router(transactions.router, prefix=f"{settings.API_V1_STR}/transactions", tags=["transactions"])
app.include_router(analytics.router, prefix=f"{settings.API_V1_STR}/analytics", tags=["analytics"])


@app.get("/", summary="Health Check", tags=["default"])
def read_root():
    """ Basic health check endpoint. """
    logger.info("Root endpoint '/' accessed.")
    return {"status": "ok", "message": f"Welcome to {settings.PROJECT_NAME}"}
