# app/api/endpoints/transactions.py
from fastapi import APIRouter, Depends, HTTPException, Path, Query, status
from typing import Any, Optional
import logging

from app.api.models.transaction import (
    TransactionListResponse,
    TransactionResponse,
    TransactionStatsResponse,
)
from app.core.container import X402Container, get_container

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("", response_model=TransactionListResponse, summary="List a Wallet's Transactions")
def list_transactions(
    wallet: str = Query(...),
    limit: int = Query(50, ge=1, le=500),
    container: X402Container = Depends(get_container)
) -> Any:
    records = container.transactions.get_transaction_history(wallet, limit=limit)
    return TransactionListResponse(
        transactions=[TransactionResponse(**vars(r)) for r in records],
        total_count=len(records)
    )


@router.get("/stats", response_model=TransactionStatsResponse, summary="Transaction Statistics")
def get_stats(
    wallet: Optional[str] = Query(None),
    container: X402Container = Depends(get_container)
) -> Any:
    return TransactionStatsResponse(**container.transactions.get_transaction_stats(wallet))


@router.get("/{signature}", response_model=TransactionResponse, summary="Get a Transaction")
def get_transaction(
    signature: str = Path(...),
    container: X402Container = Depends(get_container)
) -> Any:
    """
    Look up a submitted transaction by signature.

    The status is whatever the confirmation monitor has reconciled so far;
    this endpoint never queries the ledger itself.
    """
    record = container.transactions.get_transaction(signature)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Transaction not found")
    return TransactionResponse(**vars(record))
