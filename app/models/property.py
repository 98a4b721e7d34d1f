"""Property management models read by billing and reconciliation.

Properties, units, tenants and leases are maintained by the property
management application; this service only needs their shape to resolve
landlords, payer scope and rent collected.
"""
import uuid
from datetime import datetime, date, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import String, DateTime, ForeignKey, Date, Index, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.db_types import MoneyType, UUIDType


class LeaseStatus(str, Enum):
    ACTIVE = "active"
    TERMINATED = "terminated"
    EXPIRED = "expired"


class InvoiceStatus(str, Enum):
    """Tenant rent invoice status."""
    PENDING = "pending"
    UNPAID = "unpaid"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


# Invoices that can still receive payments
OPEN_INVOICE_STATUSES = (
    InvoiceStatus.PENDING.value,
    InvoiceStatus.UNPAID.value,
    InvoiceStatus.OVERDUE.value,
)


class RentPaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class Property(Base):
    __tablename__ = "properties"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    owner_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False, index=True)
    manager_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def __repr__(self):
        return f"<Property {self.name}>"


class Unit(Base):
    __tablename__ = "units"
    __table_args__ = (
        Index("ix_units_property_unit_number", "property_id", "unit_number"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    property_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("properties.id", ondelete="CASCADE"),
        nullable=False
    )
    unit_number: Mapped[str] = mapped_column(String(50), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def __repr__(self):
        return f"<Unit {self.unit_number}>"


class Tenant(Base):
    """A renter. Phone numbers are stored in 2547XXXXXXXX form."""
    __tablename__ = "tenants"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(20), index=True)
    email: Mapped[Optional[str]] = mapped_column(String(255))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def __repr__(self):
        return f"<Tenant {self.name}>"


class Lease(Base):
    __tablename__ = "leases"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    unit_id: Mapped[uuid.UUID] = mapped_column(UUIDType, ForeignKey("units.id"), nullable=False, index=True)
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUIDType, ForeignKey("tenants.id"), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), default=LeaseStatus.ACTIVE.value, nullable=False)
    monthly_rent: Mapped[Optional[Decimal]] = mapped_column(MoneyType)
    start_date: Mapped[Optional[date]] = mapped_column(Date)
    end_date: Mapped[Optional[date]] = mapped_column(Date)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))


class Invoice(Base):
    """
    Tenant rent invoice.

    outstanding_amount only ever decreases through payment allocations and
    never goes below zero; status becomes paid when it reaches zero.
    """
    __tablename__ = "invoices"
    __table_args__ = (
        Index("ix_invoices_tenant_status", "tenant_id", "status"),
        Index("ix_invoices_landlord_status", "landlord_id", "status"),
        CheckConstraint("outstanding_amount >= 0", name="ck_invoices_outstanding_non_negative"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    invoice_number: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUIDType, ForeignKey("tenants.id"), nullable=False)
    lease_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, ForeignKey("leases.id"))
    landlord_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType)

    invoice_date: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)

    amount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    outstanding_amount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="KES")

    status: Mapped[str] = mapped_column(
        String(20),
        default=InvoiceStatus.PENDING.value,
        nullable=False,
        comment="pending, unpaid, paid, overdue, cancelled"
    )
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    def __repr__(self):
        return f"<Invoice {self.invoice_number} outstanding={self.outstanding_amount}>"


class RentPayment(Base):
    """Rent received against a lease; completed payments count as rent collected."""
    __tablename__ = "rent_payments"
    __table_args__ = (
        Index("ix_rent_payments_lease_date", "lease_id", "payment_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    lease_id: Mapped[uuid.UUID] = mapped_column(UUIDType, ForeignKey("leases.id"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    payment_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    payment_type: Mapped[str] = mapped_column(String(20), default="rent")
    status: Mapped[str] = mapped_column(String(20), default=RentPaymentStatus.COMPLETED.value)
    reference: Mapped[Optional[str]] = mapped_column(String(100))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
