"""Service-charge billing schemas for API requests/responses."""
from datetime import date, datetime
from decimal import Decimal
from typing import Optional, List
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from app.models.billing import BillingModel
from app.schemas.base import BaseResponseSchema, BaseCreateSchema


class TierPrice(BaseModel):
    """One unit-count tier of a tiered plan."""
    min_units: int = Field(0, ge=0)
    max_units: Optional[int] = Field(None, ge=0, description="None = unbounded")
    price_per_unit: Decimal = Field(..., ge=0)


class ServiceChargeInvoiceResponse(BaseResponseSchema):
    """Service-charge invoice response."""
    id: UUID
    landlord_id: UUID
    invoice_number: str
    billing_period_start: date
    billing_period_end: date
    amount: Decimal
    sms_charges: Decimal
    total_amount: Decimal
    currency: str
    billing_model: str
    rent_collected: Optional[Decimal] = None
    unit_count: Optional[int] = None
    explanation: Optional[str] = None
    status: str
    due_date: date
    payment_date: Optional[datetime] = None
    payment_method: Optional[str] = None
    mpesa_receipt_number: Optional[str] = None
    created_at: datetime


class GenerateInvoiceRequest(BaseCreateSchema):
    """Generate the invoice for one calendar month."""
    year: int = Field(..., ge=2000, le=2100)
    month: int = Field(..., ge=1, le=12)


class GenerateInvoiceResponse(BaseModel):
    outcome: str = Field(..., description="created, already_exists, below_minimum")
    service_charge: Decimal
    sms_charges: Decimal
    total_amount: Decimal
    explanation: Optional[str] = None
    invoice: Optional[ServiceChargeInvoiceResponse] = None


class BillingPreviewRequest(BaseCreateSchema):
    """Price a hypothetical plan against given usage."""
    billing_model: BillingModel
    rent_collected: Decimal = Field(Decimal("0"), ge=0)
    unit_count: int = Field(0, ge=0)
    percentage_rate: Optional[Decimal] = Field(None, ge=0, le=100)
    fixed_amount_per_unit: Optional[Decimal] = Field(None, ge=0)
    tier_pricing: List[TierPrice] = Field(default_factory=list)
    currency: str = "KES"

    @model_validator(mode="after")
    def check_tier_ranges(self):
        for tier in self.tier_pricing:
            if tier.max_units is not None and tier.max_units < tier.min_units:
                raise ValueError(f"Tier max_units {tier.max_units} is below min_units {tier.min_units}")
        return self


class BillingPreviewResponse(BaseModel):
    billing_model: str
    service_charge: Decimal
    currency: str
    explanation: str


class MonthlyBillingRunRequest(BaseModel):
    run_date: Optional[date] = Field(None, description="Bills the month before this date; default today")
