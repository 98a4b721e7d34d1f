"""
Service-charge billing API endpoints.

Handles:
- Monthly batch trigger for an external cron (X-Cron-Secret)
- Per-landlord invoice generation and listing
- Pricing preview for a plan against hypothetical usage
"""

import uuid
import logging
from typing import Annotated, Callable, List, Optional

from fastapi import APIRouter, Body, Depends, Header, HTTPException, status

from app.api.deps import DB, raise_http_error
from app.config import settings
from app.core.billing_period import BillingPeriod
from app.core.exceptions import BillingEngineError
from app.core.security import verify_shared_secret
from app.database import get_session_factory
from app.jobs.billing_runner import run_monthly_billing
from app.schemas.service_billing import (
    BillingPreviewRequest,
    BillingPreviewResponse,
    GenerateInvoiceRequest,
    GenerateInvoiceResponse,
    MonthlyBillingRunRequest,
    ServiceChargeInvoiceResponse,
)
from app.services.billing_service import BillingService
from app.services.pricing_engine import PricingInputs, compute_service_charge, describe_service_charge

logger = logging.getLogger(__name__)


router = APIRouter(tags=["Service Billing"])


@router.post(
    "/run-monthly",
    summary="Run monthly service billing",
    description="Bill every trial/active landlord for the previous calendar month.",
)
async def run_monthly(
    session_factory: Annotated[Callable, Depends(get_session_factory)],
    data: Optional[MonthlyBillingRunRequest] = Body(None),
    x_cron_secret: Optional[str] = Header(None, alias="X-Cron-Secret"),
):
    """
    Trigger the monthly billing run.

    When BILLING_CRON_SECRET is set the X-Cron-Secret header must match.
    Safe to call more than once for the same month.
    """
    if not verify_shared_secret(x_cron_secret, settings.BILLING_CRON_SECRET):
        logger.warning("Monthly billing trigger rejected: bad cron secret")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid cron secret"
        )

    run_date = data.run_date if data else None
    return await run_monthly_billing(run_date=run_date, session_factory=session_factory)


@router.post(
    "/landlords/{landlord_id}/invoices",
    response_model=GenerateInvoiceResponse,
    summary="Generate a landlord's service-charge invoice for a month",
)
async def generate_landlord_invoice(
    landlord_id: uuid.UUID,
    data: GenerateInvoiceRequest,
    db: DB,
):
    period = BillingPeriod.for_month(data.year, data.month)
    try:
        result = await BillingService(db).generate_service_invoice(landlord_id, period)
    except BillingEngineError as e:
        raise_http_error(e)

    return GenerateInvoiceResponse(
        outcome=result.outcome.value,
        service_charge=result.service_charge,
        sms_charges=result.sms_charges,
        total_amount=result.total_amount,
        explanation=result.explanation,
        invoice=(
            ServiceChargeInvoiceResponse.model_validate(result.invoice)
            if result.invoice is not None else None
        ),
    )


@router.get(
    "/landlords/{landlord_id}/invoices",
    response_model=List[ServiceChargeInvoiceResponse],
    summary="List a landlord's service-charge invoices",
)
async def list_landlord_invoices(
    landlord_id: uuid.UUID,
    db: DB,
    limit: int = 24,
):
    invoices = await BillingService(db).list_invoices(landlord_id, limit=limit)
    return [ServiceChargeInvoiceResponse.model_validate(inv) for inv in invoices]


@router.post(
    "/preview",
    response_model=BillingPreviewResponse,
    summary="Preview a service charge",
    description="Price usage under a billing model without touching the database.",
)
async def preview_service_charge(data: BillingPreviewRequest):
    inputs = PricingInputs(
        rent_collected=data.rent_collected,
        unit_count=data.unit_count,
        percentage_rate=data.percentage_rate,
        fixed_amount_per_unit=data.fixed_amount_per_unit,
        tier_pricing=[tier.model_dump() for tier in data.tier_pricing],
    )
    return BillingPreviewResponse(
        billing_model=data.billing_model.value,
        service_charge=compute_service_charge(data.billing_model, inputs),
        currency=data.currency,
        explanation=describe_service_charge(data.billing_model, inputs, data.currency),
    )
