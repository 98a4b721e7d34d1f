"""M-Pesa STK push schemas."""
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator

from app.models.payment import MpesaPaymentType, PaymentSource
from app.schemas.base import BaseResponseSchema, BaseCreateSchema


class StkPushRequest(BaseCreateSchema):
    """
    Initiate an STK prompt on the payer's phone.

    provider picks the rail: Daraja (mpesa) or the landlord's bank STK API
    (jenga, kcb). Service charges are always paid through Daraja.
    """
    phone_number: str = Field(..., description="07XX..., 2547XX... or +2547XX...")
    amount: Decimal = Field(..., gt=0)
    payment_type: MpesaPaymentType = MpesaPaymentType.RENT
    provider: PaymentSource = PaymentSource.MPESA
    invoice_id: Optional[UUID] = Field(None, description="Tenant rent invoice being paid")
    service_charge_invoice_id: Optional[UUID] = Field(None, description="Platform invoice being paid")
    landlord_id: Optional[UUID] = Field(None, description="Landlord whose M-Pesa or bank configuration to use")
    account_reference: Optional[str] = Field(None, max_length=12)
    transaction_desc: Optional[str] = Field(None, max_length=13)
    initiated_by: Optional[UUID] = None

    @field_validator("amount")
    @classmethod
    def whole_shillings(cls, v: Decimal) -> Decimal:
        if v != v.to_integral_value():
            raise ValueError("M-Pesa amounts must be whole shillings")
        return v

    @model_validator(mode="after")
    def service_charges_use_daraja(self) -> "StkPushRequest":
        if self.payment_type == MpesaPaymentType.SERVICE_CHARGE and self.provider != PaymentSource.MPESA:
            raise ValueError("Service charges are paid through M-Pesa only")
        return self


class StkPushResponse(BaseModel):
    checkout_request_id: str
    merchant_request_id: Optional[str] = None
    provider: str = PaymentSource.MPESA.value
    response_code: str
    response_description: Optional[str] = None
    customer_message: Optional[str] = None
    status: str


class MpesaTransactionResponse(BaseResponseSchema):
    id: UUID
    checkout_request_id: str
    merchant_request_id: Optional[str] = None
    phone_number: Optional[str] = None
    amount: Optional[Decimal] = None
    payment_type: str
    provider: str
    invoice_id: Optional[UUID] = None
    service_charge_invoice_id: Optional[UUID] = None
    status: str
    result_code: Optional[int] = None
    result_desc: Optional[str] = None
    mpesa_receipt_number: Optional[str] = None
    created_at: datetime
    updated_at: datetime
