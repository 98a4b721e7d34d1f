"""Inbound payment and reconciliation schemas."""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional, List
from uuid import UUID

from pydantic import BaseModel, Field

from app.models.payment import PaymentSource, PaymentStatus
from app.schemas.base import BaseResponseSchema, BaseCreateSchema


class InboundPaymentData(BaseModel):
    """
    Provider-neutral payment notification produced by an ingestion adapter.

    Provider specific fields are optional and only stored on their variant.
    """
    source: PaymentSource
    transaction_reference: str = Field(..., min_length=1, max_length=100)
    merchant_reference: Optional[str] = None
    transaction_date: datetime
    amount: Decimal = Field(..., ge=0)
    currency: str = "KES"
    status: PaymentStatus
    customer_name: Optional[str] = None
    customer_mobile: Optional[str] = None
    invoice_id: Optional[UUID] = None
    landlord_id: Optional[UUID] = None
    raw_payload: Dict[str, Any] = Field(default_factory=dict)
    ip_address: Optional[str] = None

    # Provider specific
    checkout_request_id: Optional[str] = None
    payment_mode: Optional[str] = None
    bank_reference: Optional[str] = None
    bank_code: Optional[str] = None


class InboundPaymentResponse(BaseResponseSchema):
    id: UUID
    source: str
    transaction_reference: str
    merchant_reference: Optional[str] = None
    transaction_date: datetime
    amount: Decimal
    currency: str
    status: str
    customer_name: Optional[str] = None
    customer_mobile: Optional[str] = None
    processed: bool
    invoice_id: Optional[UUID] = None
    landlord_id: Optional[UUID] = None
    tenant_id: Optional[UUID] = None
    match_quality: Optional[str] = None
    match_reason: Optional[str] = None
    created_at: datetime


class UnmatchedPaymentsResponse(BaseModel):
    items: List[InboundPaymentResponse]
    total: int


class PaymentAllocationResponse(BaseResponseSchema):
    id: UUID
    payment_id: UUID
    invoice_id: UUID
    amount: Decimal
    method: str
    match_quality: Optional[str] = None
    allocated_by: Optional[UUID] = None
    created_at: datetime


class AllocationRequest(BaseCreateSchema):
    """Manually apply part or all of a payment to an invoice."""
    payment_id: UUID
    invoice_id: UUID
    amount: Decimal = Field(..., description="Must be positive and within both balances")
    allocated_by: Optional[UUID] = None
    notes: Optional[str] = None


class MatchResultResponse(BaseModel):
    payment_id: UUID
    invoice_id: Optional[UUID] = None
    quality: str
    reason: str
    allocated_amount: Decimal = Decimal("0")


class SweepResponse(BaseModel):
    tenant_id: UUID
    examined: int
    matched: int
    results: List[MatchResultResponse]
