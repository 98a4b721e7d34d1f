"""Inbound payment, allocation and M-Pesa STK transaction models.

Inbound payments from every rail share one table. The `source` column is the
discriminator; provider specific columns are nullable and only populated by
their variant.
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import String, Boolean, DateTime, ForeignKey, Integer, Text
from sqlalchemy import UniqueConstraint, Index, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.db_types import JSONType, MoneyType, UUIDType


class PaymentSource(str, Enum):
    """Payment rail that delivered the notification."""
    MPESA = "mpesa"
    JENGA = "jenga"
    KCB = "kcb"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class MatchQuality(str, Enum):
    """Confidence tier of an automatic invoice match."""
    EXACT = "exact"
    PROBABLE = "probable"
    FUZZY = "fuzzy"
    NONE = "none"


class AllocationMethod(str, Enum):
    AUTOMATIC = "automatic"
    MANUAL = "manual"


class MpesaTransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class MpesaPaymentType(str, Enum):
    RENT = "rent"
    SERVICE_CHARGE = "service_charge"


class InboundPayment(Base):
    """
    A payment notification from any rail.

    invoice_id NULL means unmatched. processed flips to True once the full
    amount has been allocated to invoices. allocated_amount always equals the
    sum of the payment's allocations.
    """
    __tablename__ = "inbound_payments"
    __table_args__ = (
        UniqueConstraint("source", "transaction_reference", name="uq_inbound_payment_source_reference"),
        Index("ix_inbound_payments_unmatched", "status", "processed", "invoice_id"),
        Index("ix_inbound_payments_match_attempt", "processed", "last_match_attempt_at"),
        Index("ix_inbound_payments_tenant", "tenant_id"),
        CheckConstraint("allocated_amount <= amount", name="ck_inbound_payments_allocation_within_amount"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    source: Mapped[str] = mapped_column(String(20), nullable=False, comment="mpesa, jenga, kcb")

    # Transaction
    transaction_reference: Mapped[str] = mapped_column(String(100), nullable=False)
    merchant_reference: Mapped[Optional[str]] = mapped_column(String(100))
    transaction_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    amount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="KES")
    status: Mapped[str] = mapped_column(String(20), default=PaymentStatus.PENDING.value, nullable=False)

    # Payer
    customer_name: Mapped[Optional[str]] = mapped_column(String(200))
    customer_mobile: Mapped[Optional[str]] = mapped_column(String(20))

    # Reconciliation
    allocated_amount: Mapped[Decimal] = mapped_column(MoneyType, default=Decimal("0"), nullable=False)
    processed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    invoice_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, ForeignKey("invoices.id", ondelete="SET NULL"))
    landlord_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, index=True)
    tenant_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, ForeignKey("tenants.id", ondelete="SET NULL"))
    match_quality: Mapped[Optional[str]] = mapped_column(String(20))
    match_reason: Mapped[Optional[str]] = mapped_column(Text)
    last_match_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Raw provider body
    raw_payload: Mapped[Optional[dict]] = mapped_column(JSONType)
    ip_address: Mapped[Optional[str]] = mapped_column(String(50))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    __mapper_args__ = {
        "polymorphic_on": "source",
    }

    @property
    def unallocated_amount(self) -> Decimal:
        return (self.amount or Decimal("0")) - (self.allocated_amount or Decimal("0"))

    @property
    def is_unmatched(self) -> bool:
        return (
            self.status == PaymentStatus.SUCCESS.value
            and not self.processed
            and self.invoice_id is None
        )

    def __repr__(self):
        return f"<{type(self).__name__} {self.transaction_reference} {self.amount}>"


class MpesaPayment(InboundPayment):
    """Safaricom M-Pesa STK payment; transaction_reference is the M-Pesa receipt."""
    checkout_request_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, use_existing_column=True)

    __mapper_args__ = {"polymorphic_identity": PaymentSource.MPESA.value}


class JengaPayment(InboundPayment):
    """Equity Jenga IPN payment."""
    payment_mode: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    bank_reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    __mapper_args__ = {"polymorphic_identity": PaymentSource.JENGA.value}


class KcbPayment(InboundPayment):
    """KCB Buni IPN payment (STK, C2B or generic notification)."""
    bank_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    checkout_request_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, use_existing_column=True)

    __mapper_args__ = {"polymorphic_identity": PaymentSource.KCB.value}


PAYMENT_CLASSES = {
    PaymentSource.MPESA.value: MpesaPayment,
    PaymentSource.JENGA.value: JengaPayment,
    PaymentSource.KCB.value: KcbPayment,
}


class PaymentAllocation(Base):
    """Portion of an inbound payment applied to one invoice."""
    __tablename__ = "payment_allocations"
    __table_args__ = (
        Index("ix_payment_allocations_payment", "payment_id"),
        Index("ix_payment_allocations_invoice", "invoice_id"),
        CheckConstraint("amount > 0", name="ck_payment_allocations_positive"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    payment_id: Mapped[uuid.UUID] = mapped_column(UUIDType, ForeignKey("inbound_payments.id"), nullable=False)
    invoice_id: Mapped[uuid.UUID] = mapped_column(UUIDType, ForeignKey("invoices.id"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)

    method: Mapped[str] = mapped_column(String(20), default=AllocationMethod.AUTOMATIC.value, nullable=False)
    match_quality: Mapped[Optional[str]] = mapped_column(String(20))
    allocated_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType)
    notes: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def __repr__(self):
        return f"<PaymentAllocation {self.payment_id} -> {self.invoice_id} {self.amount}>"


class MpesaTransaction(Base):
    """
    STK push initiated by this platform, through Daraja or a bank STK API.

    Moves pending -> completed | failed once, driven by the provider callback.
    """
    __tablename__ = "mpesa_transactions"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    checkout_request_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    merchant_request_id: Mapped[Optional[str]] = mapped_column(String(100))

    phone_number: Mapped[Optional[str]] = mapped_column(String(20))
    amount: Mapped[Optional[Decimal]] = mapped_column(MoneyType)
    account_reference: Mapped[Optional[str]] = mapped_column(String(50))
    payment_type: Mapped[str] = mapped_column(String(20), default=MpesaPaymentType.RENT.value, nullable=False)
    provider: Mapped[str] = mapped_column(String(20), default=PaymentSource.MPESA.value, nullable=False, comment="mpesa, jenga, kcb")

    invoice_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, ForeignKey("invoices.id", ondelete="SET NULL"))
    service_charge_invoice_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("service_charge_invoices.id", ondelete="SET NULL")
    )
    landlord_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType)
    initiated_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType)

    status: Mapped[str] = mapped_column(String(20), default=MpesaTransactionStatus.PENDING.value, nullable=False)
    result_code: Mapped[Optional[int]] = mapped_column(Integer)
    result_desc: Mapped[Optional[str]] = mapped_column(Text)
    mpesa_receipt_number: Mapped[Optional[str]] = mapped_column(String(50))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    def __repr__(self):
        return f"<MpesaTransaction {self.checkout_request_id} {self.status}>"


class LandlordBankConfig(Base):
    """
    Landlord bank paybill/till.

    merchant_code decodes MERCHANTCODE-UNITNUMBER references. The optional
    API key and consumer secret (Fernet-encrypted) enable bank STK pushes.
    """
    __tablename__ = "landlord_bank_configs"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    landlord_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False, index=True)
    bank_code: Mapped[str] = mapped_column(String(20), nullable=False)
    merchant_code: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    environment: Mapped[str] = mapped_column(String(20), default="sandbox", comment="sandbox, production")
    api_key_encrypted: Mapped[Optional[str]] = mapped_column(Text)
    consumer_secret_encrypted: Mapped[Optional[str]] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))


class LandlordMpesaConfig(Base):
    """
    Landlord-owned Daraja credentials.

    Consumer key, secret and passkey are stored Fernet-encrypted.
    """
    __tablename__ = "landlord_mpesa_configs"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    landlord_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False, index=True)
    shortcode: Mapped[str] = mapped_column(String(20), nullable=False)
    shortcode_type: Mapped[str] = mapped_column(String(20), default="paybill", comment="paybill, till")
    environment: Mapped[str] = mapped_column(String(20), default="sandbox", comment="sandbox, production")

    consumer_key_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    consumer_secret_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    passkey_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    callback_url: Mapped[Optional[str]] = mapped_column(String(500))

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))
