# app/api/endpoints/sessions.py
from fastapi import APIRouter, Depends, Path, Query
from typing import Any, Optional
import logging

from app.api.models.session import (
    SessionListResponse,
    SessionResponse,
    SessionRevokeResponse,
    SessionSpendRequest,
    SessionSpendResponse,
    SessionValidateRequest,
    SessionValidateResponse,
)
from app.core.container import X402Container, get_container
from app.x402.errors import SessionNotFoundError

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("", response_model=SessionListResponse, summary="List a Wallet's Payment Sessions")
def list_sessions(
    wallet: str = Query(..., description="Owner wallet address."),
    status: Optional[str] = Query(None, description="Only sessions in this status."),
    container: X402Container = Depends(get_container)
) -> Any:
    sessions = container.sessions.get_user_sessions(wallet, status=status)
    return SessionListResponse(
        sessions=[SessionResponse(**s.to_dict()) for s in sessions],
        total_count=len(sessions)
    )


@router.get("/{session_token}", response_model=SessionResponse, summary="Get a Payment Session")
def get_session(
    session_token: str = Path(..., description="64 hex character session token."),
    container: X402Container = Depends(get_container)
) -> Any:
    session = container.sessions.get_session(session_token)
    if session is None:
        raise SessionNotFoundError("Session not found")
    return SessionResponse(**session.to_dict())


@router.post("/{session_token}/validate", response_model=SessionValidateResponse,
             summary="Check a Spend Without Applying It")
def validate_session(
    request: SessionValidateRequest,
    session_token: str = Path(...),
    container: X402Container = Depends(get_container)
) -> Any:
    """
    Check that ``amount`` could be spent from the session now.

    Returns 402 with the reason (inactive, expired, insufficient balance)
    when it could not, and 404 for an unknown token.
    """
    session = container.sessions.validate(session_token, request.amount)
    return SessionValidateResponse(valid=True, remaining_amount=session.remaining_amount)


@router.post("/{session_token}/spend", response_model=SessionSpendResponse, summary="Spend From a Payment Session")
def spend_from_session(
    request: SessionSpendRequest,
    session_token: str = Path(...),
    container: X402Container = Depends(get_container)
) -> Any:
    remaining = container.sessions.spend(
        session_token,
        request.amount,
        resource_url=request.resource_url,
        resource_type=request.resource_type,
        http_method=request.http_method,
        resource=request.resource,
        service_id=request.service_id,
    )
    return SessionSpendResponse(session_token=session_token, amount=request.amount, remaining_amount=remaining)


@router.post("/{session_token}/revoke", response_model=SessionRevokeResponse, summary="Revoke a Payment Session")
def revoke_session(
    session_token: str = Path(...),
    container: X402Container = Depends(get_container)
) -> Any:
    revoked = container.sessions.revoke(session_token)
    session = container.sessions.get_session(session_token)
    logger.info(f"Revoke requested for session {session_token[:8]}...: revoked={revoked}")
    return SessionRevokeResponse(session_token=session_token, revoked=revoked, status=session.status)
