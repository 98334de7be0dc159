# app/api/endpoints/credits.py
from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from typing import Any, Optional
import logging

from app.api.models.credit import (
    AutoTopupRequest,
    AutoTopupResponse,
    CreditAccountResponse,
    CreditBalanceResponse,
    CreditListResponse,
    CreditSpendRequest,
    CreditSpendResponse,
    ServiceTypeName,
)
from app.core.container import X402Container, get_container
from app.x402.credits import spend_resource
from app.x402.header import X402_PAYMENT_HEADER, parse_x402_header, verify_signed_header

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/balance", response_model=CreditBalanceResponse, summary="Get a Credit Balance")
def get_balance(
    wallet: str = Query(...),
    service_type: ServiceTypeName = Query(...),
    service_id: Optional[str] = Query(None),
    container: X402Container = Depends(get_container)
) -> Any:
    balance = container.credits.balance(wallet, service_id, service_type)
    return CreditBalanceResponse(
        wallet_address=wallet,
        service_id=service_id,
        service_type=service_type,
        balance=balance
    )


@router.get("", response_model=CreditListResponse, summary="List a Wallet's Credit Accounts")
def list_credits(
    wallet: str = Query(...),
    container: X402Container = Depends(get_container)
) -> Any:
    accounts = container.credits.get_all_credits(wallet)
    return CreditListResponse(
        credits=[CreditAccountResponse(**vars(a)) for a in accounts],
        total_count=len(accounts)
    )


@router.post("/spend", response_model=CreditSpendResponse, summary="Spend Prepaid Credits")
def spend_credits(
    request: CreditSpendRequest,
    x_402_payment: Optional[str] = Header(None, alias=X402_PAYMENT_HEADER),
    container: X402Container = Depends(get_container)
) -> Any:
    """
    Deduct credits for one metered use.

    The X-402-Payment header must carry the payer's signature over the
    wallet, amount, timestamp and the account's ``credits/<type>/<id>``
    resource; otherwise 401 SIGNATURE_INVALID. Each signature spends once.

    Returns 402 with code INSUFFICIENT_CREDITS when the balance is short, or
    AUTO_TOPUP_REQUIRED (with ``topup_amount``) when the account asked to be
    topped up. The balance is never partially deducted.
    """
    header = verify_signed_header(
        parse_x402_header(x_402_payment),
        spend_resource(request.service_id, request.service_type),
        request.wallet_address,
        request.amount
    )
    new_balance = container.credits.spend(
        request.wallet_address,
        request.service_id,
        request.service_type,
        request.amount,
        resource_url=request.resource_url,
        http_method=request.http_method,
        payment_signature=header.signature,
    )
    return CreditSpendResponse(
        wallet_address=request.wallet_address,
        amount=request.amount,
        new_balance=new_balance
    )


@router.put("/auto-topup", response_model=AutoTopupResponse, summary="Enable Auto Top-Up")
def enable_auto_topup(
    request: AutoTopupRequest,
    container: X402Container = Depends(get_container)
) -> Any:
    updated = container.credits.enable_auto_topup(
        request.wallet_address,
        request.service_id,
        request.service_type,
        threshold=request.threshold,
        amount=request.amount,
    )
    if not updated:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Credit account not found")
    return AutoTopupResponse(
        wallet_address=request.wallet_address,
        service_id=request.service_id,
        service_type=request.service_type,
        auto_topup_enabled=True
    )


@router.delete("/auto-topup", response_model=AutoTopupResponse, summary="Disable Auto Top-Up")
def disable_auto_topup(
    wallet: str = Query(...),
    service_type: ServiceTypeName = Query(...),
    service_id: Optional[str] = Query(None),
    container: X402Container = Depends(get_container)
) -> Any:
    if not container.credits.disable_auto_topup(wallet, service_id, service_type):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Credit account not found")
    return AutoTopupResponse(
        wallet_address=wallet,
        service_id=service_id,
        service_type=service_type,
        auto_topup_enabled=False
    )
