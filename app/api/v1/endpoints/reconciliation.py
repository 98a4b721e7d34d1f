"""
Payment reconciliation API endpoints.

Handles:
- Unmatched payment queue (filter by landlord and source)
- Re-running automatic matching for one payment
- Manual allocation of a payment to an invoice
- Per-tenant reconciliation sweep
"""

import uuid
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, status

from app.api.deps import DB, raise_http_error
from app.core.exceptions import BillingEngineError
from app.schemas.payment import (
    AllocationRequest,
    InboundPaymentResponse,
    MatchResultResponse,
    PaymentAllocationResponse,
    SweepResponse,
    UnmatchedPaymentsResponse,
)
from app.services.allocation_service import AllocationService
from app.services.reconciliation_service import ReconciliationService

logger = logging.getLogger(__name__)


router = APIRouter(tags=["Reconciliation"])


@router.get(
    "/unmatched",
    response_model=UnmatchedPaymentsResponse,
    summary="List unmatched payments",
)
async def list_unmatched_payments(
    db: DB,
    landlord_id: Optional[uuid.UUID] = None,
    source: str = Query("all", description="all, mpesa, jenga or kcb"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    try:
        page = await AllocationService(db).unmatched_payments(
            landlord_id=landlord_id, source=source, limit=limit, offset=offset
        )
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )

    return UnmatchedPaymentsResponse(
        items=[InboundPaymentResponse.model_validate(p) for p in page["items"]],
        total=page["total"],
    )


@router.post(
    "/payments/{payment_id}/match",
    response_model=MatchResultResponse,
    summary="Run automatic matching for a payment",
)
async def match_payment(payment_id: uuid.UUID, db: DB):
    result = await ReconciliationService(db).match_payment_by_id(payment_id)
    if result is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Payment not found"
        )
    return MatchResultResponse(**result.to_dict())


@router.post(
    "/allocations",
    response_model=PaymentAllocationResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Manually allocate a payment to an invoice",
)
async def allocate_payment(data: AllocationRequest, db: DB):
    """
    Apply part or all of a payment to an invoice, then re-match the
    tenant's remaining unmatched payments.

    Amounts above either balance are rejected, never clamped.
    """
    try:
        allocation = await AllocationService(db).allocate(
            payment_id=data.payment_id,
            invoice_id=data.invoice_id,
            amount=data.amount,
            allocated_by=data.allocated_by,
            notes=data.notes,
        )
    except BillingEngineError as e:
        raise_http_error(e)
    return PaymentAllocationResponse.model_validate(allocation)


@router.post(
    "/tenants/{tenant_id}/sweep",
    response_model=SweepResponse,
    summary="Re-match a tenant's unmatched payments",
)
async def sweep_tenant(tenant_id: uuid.UUID, db: DB):
    results = await AllocationService(db).sweep_tenant(tenant_id)
    return SweepResponse(
        tenant_id=tenant_id,
        examined=len(results),
        matched=sum(1 for r in results if r.matched),
        results=[MatchResultResponse(**r.to_dict()) for r in results],
    )
