# app/x402/middleware.py
"""
FastAPI middleware enforcing the X-402-Payment header protocol.

For every request to a route metered by a service in the catalog:
1. No usable X-402-Payment header -> 402 naming the price and recipient
2. ``session=<token>`` -> wallet and resource checks, then the service's
   base price is drawn from the payment session
3. ``proof=<signature>`` -> the on-chain transaction is verified and
   redeemed once
4. The request proceeds and the response carries X-402-Payment-Response,
   a base64 JSON summary of the charge
5. The response code and time, or the error a route raised, are stored on
   the usage record; 5xx and exceptions mark the use failed

Routes not in the catalog, and all routes when X402_ENABLED is false, pass
through unchanged.
"""
import json
import logging
import time
import uuid
from typing import Any, Callable, Dict, Optional

from fastapi import Request, Response
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from x402.encoding import safe_base64_encode

from app.core.config import settings
from app.x402 import audit
from app.x402.catalog import ServiceConfig
from app.x402.errors import ResourceMismatchError, SessionNotFoundError, X402Error, http_status_for
from app.x402.header import X402_PAYMENT_HEADER, X402_PAYMENT_RESPONSE_HEADER, X402Header, parse_x402_header
from app.x402.usage import record_usage_outcome

logger = logging.getLogger(__name__)

X402_VERSION = 1


def get_client_ip(request: Request) -> str:
    """Extract client IP from request, handling proxies."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    if request.client:
        return request.client.host

    return "unknown"


def create_payment_requirements(container, service: ServiceConfig, path: str) -> Dict[str, Any]:
    """What a client has to pay for ``path`` and how."""
    quote = container.oracle.quote(service.base_price)
    return {
        "scheme": "x402-solana",
        "network": settings.X402_NETWORK,
        "service_id": service.service_id,
        "service_type": service.service_type,
        "resource": service.resource_for(path),
        "resource_pattern": service.default_resource_pattern(),
        "amount": service.base_price,
        "currency": service.currency,
        "amount_sol": quote.native_amount,
        "rate_source": quote.source,
        "pay_to": service.owner_wallet or container.submitter.recipient,
        "requires_preauth": service.requires_preauth,
        "max_session_amount": service.max_session_amount,
    }


def create_402_response(
    requirements: Dict[str, Any],
    error_message: str = "Payment required",
    code: str = "PAYMENT_REQUIRED",
    status_code: int = 402,
    extra: Optional[Dict[str, Any]] = None
) -> JSONResponse:
    body = {
        "x402Version": X402_VERSION,
        "error": error_message,
        "code": code,
        "accepts": [requirements],
    }
    if extra:
        body.update(extra)
    return JSONResponse(status_code=status_code, content=body)


def encode_payment_response(summary: Dict[str, Any]) -> str:
    """Encode a charge summary for the X-402-Payment-Response header."""
    return safe_base64_encode(json.dumps(summary).encode("utf-8"))


class X402Middleware(BaseHTTPMiddleware):
    """
    x402 payment enforcement for FastAPI.

    The container is resolved lazily so the middleware can be added before
    the application's components are built.
    """

    def __init__(self, app, container=None):
        super().__init__(app)
        self._container = container

    @property
    def container(self):
        if self._container is None:
            from app.core.container import get_container
            self._container = get_container()
        return self._container

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Response]
    ) -> Response:
        if not settings.X402_ENABLED:
            return await call_next(request)

        service = self.container.catalog.resolve(request.method, request.url.path)
        if service is None or not service.accepts_x402 or service.base_price <= 0:
            return await call_next(request)

        client_ip = get_client_ip(request)
        path = request.url.path
        logger.info(f"x402: metered request from {client_ip}: {request.method} {path} ({service.service_id})")

        header = parse_x402_header(request.headers.get(X402_PAYMENT_HEADER))
        if header is None or not (header.session_token or header.payment_proof):
            requirements = await run_in_threadpool(create_payment_requirements, self.container, service, path)
            reason = "X-402-Payment header is required" if header is None \
                else "Payment required: provide session or proof"
            audit.log_payment_required_sent(
                client_ip=client_ip,
                amount=service.base_price,
                currency=service.currency,
                pay_to=requirements["pay_to"],
                resource=requirements["resource"],
                reason=reason
            )
            return create_402_response(requirements, error_message=reason)

        request_id = uuid.uuid4().hex
        try:
            if header.session_token:
                summary = await run_in_threadpool(self._charge_session, header, service, request, request_id)
            else:
                summary = await run_in_threadpool(self._redeem_proof, header, service, request, request_id)
        except X402Error as e:
            return await self._payment_error_response(e, service, path, client_ip)

        started = time.monotonic()
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(f"x402: metered request {request.method} {path} raised: {e}")
            await self._record_outcome(request_id, None, started, error_message=str(e) or type(e).__name__)
            raise

        error_message = f"HTTP {response.status_code}" if response.status_code >= 500 else None
        await self._record_outcome(request_id, response.status_code, started, error_message=error_message)
        response.headers[X402_PAYMENT_RESPONSE_HEADER] = encode_payment_response(summary)
        return response

    async def _record_outcome(
        self,
        request_id: str,
        response_code: Optional[int],
        started: float,
        error_message: Optional[str] = None
    ) -> None:
        elapsed_ms = int((time.monotonic() - started) * 1000)
        try:
            await run_in_threadpool(
                record_usage_outcome,
                self.container.session_factory,
                request_id,
                response_code,
                elapsed_ms,
                error_message
            )
        except Exception as e:
            # The charge already stands; losing the outcome must not fail the response
            logger.error(f"x402: could not record outcome of request {request_id}: {e}")

    def _charge_session(
        self,
        header: X402Header,
        service: ServiceConfig,
        request: Request,
        request_id: Optional[str] = None
    ) -> Dict[str, Any]:
        sessions = self.container.sessions
        session = sessions.get_session(header.session_token)
        if session is None:
            raise SessionNotFoundError("Session not found")
        if session.wallet_address != header.wallet_address:
            raise ResourceMismatchError("Session does not belong to this wallet")

        remaining = sessions.spend(
            header.session_token,
            service.base_price,
            resource_url=str(request.url),
            resource_type=service.resource_type,
            http_method=request.method,
            resource=service.resource_for(request.url.path),
            service_id=service.service_id,
            request_id=request_id,
        )
        logger.info(f"x402: charged {service.base_price} to session, {remaining} remaining")
        return {
            "mode": "session",
            "amount": service.base_price,
            "currency": service.currency,
            "remaining_balance": remaining,
        }

    def _redeem_proof(
        self,
        header: X402Header,
        service: ServiceConfig,
        request: Request,
        request_id: Optional[str] = None
    ) -> Dict[str, Any]:
        proof = self.container.proofs.redeem(
            header.payment_proof,
            service.base_price,
            wallet_address=header.wallet_address,
            resource_url=str(request.url),
            resource_type=service.resource_type,
            http_method=request.method,
            service_id=service.service_id,
            recipient=service.owner_wallet or None,
            request_id=request_id,
        )
        logger.info(f"x402: proof {proof.signature} redeemed for {service.base_price}")
        return {
            "mode": "proof",
            "amount": service.base_price,
            "currency": service.currency,
            "transaction": proof.signature,
            "lamports": proof.lamports,
        }

    async def _payment_error_response(
        self,
        error: X402Error,
        service: ServiceConfig,
        path: str,
        client_ip: str
    ) -> JSONResponse:
        status_code = http_status_for(error)
        if status_code >= 500:
            logger.error(f"x402: payment backend unavailable: {error}")
            audit.log_error(error.code, str(error), context=error.context, client_ip=client_ip)
            return JSONResponse(status_code=status_code, content=error.to_dict())

        logger.warning(f"x402: payment refused for {client_ip}: {error.code} {error}")
        requirements = await run_in_threadpool(create_payment_requirements, self.container, service, path)
        return create_402_response(
            requirements,
            error_message=error.message,
            code=error.code,
            status_code=status_code,
            extra=error.context or None
        )
