"""
Base Schema Classes for Pydantic Models

RULE: Response schemas built from ORM rows (invoices, payments, STK
transactions) inherit from BaseResponseSchema; request bodies inherit from
BaseCreateSchema; provider webhook bodies inherit from ProviderPayload.
"""

from pydantic import BaseModel, ConfigDict


class BaseResponseSchema(BaseModel):
    """
    Read-side schema populated from SQLAlchemy rows.

    Usage:
        class ServiceChargeInvoiceResponse(BaseResponseSchema):
            id: UUID
            invoice_number: str
            total_amount: Decimal
    """
    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
    )


class BaseCreateSchema(BaseModel):
    """Request body; unknown keys from older clients are dropped."""
    model_config = ConfigDict(
        extra='ignore',
    )


class ProviderPayload(BaseModel):
    """
    Payment-provider webhook body.

    Providers add fields without notice, so unknown keys are ignored, and
    field aliases match the provider's casing.
    """
    model_config = ConfigDict(
        extra='ignore',
        populate_by_name=True,
    )
