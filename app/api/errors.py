# app/api/errors.py
"""Translate payment engine errors into HTTP responses."""
import logging

from fastapi import FastAPI, Request
from starlette.responses import JSONResponse

from app.x402.errors import X402Error, http_status_for

logger = logging.getLogger(__name__)


async def x402_error_handler(request: Request, exc: X402Error) -> JSONResponse:
    status_code = http_status_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    else:
        logger.info(f"{request.method} {request.url.path} refused: {exc.code} {exc}")
    return JSONResponse(status_code=status_code, content=exc.to_dict())


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(X402Error, x402_error_handler)
