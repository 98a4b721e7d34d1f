"""Platform service-charge billing models.

Supports:
- Billing plans (percentage of rent, fixed per unit, tiered per unit)
- Landlord subscriptions to a plan
- One service-charge invoice per landlord per calendar month
- SMS usage metering billed on top of the service charge
"""
import uuid
from datetime import datetime, date, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import String, Boolean, DateTime, ForeignKey, Integer, Text, Date
from sqlalchemy import UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.db_types import JSONType, MoneyType, RateType, UUIDType


class BillingModel(str, Enum):
    """Pricing model of a billing plan."""
    PERCENTAGE = "percentage"            # % of rent collected in the period
    FIXED_PER_UNIT = "fixed_per_unit"    # flat amount per unit
    TIERED = "tiered"                    # per-unit price chosen by unit-count tier


class SubscriptionStatus(str, Enum):
    """Landlord subscription status."""
    TRIAL = "trial"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    TRIAL_EXPIRED = "trial_expired"


class ServiceInvoiceStatus(str, Enum):
    """Service-charge invoice status."""
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


# Subscriptions that are billed by the monthly run
BILLABLE_SUBSCRIPTION_STATUSES = (SubscriptionStatus.TRIAL.value, SubscriptionStatus.ACTIVE.value)


class BillingPlan(Base):
    """
    Pricing plan a landlord subscribes to.

    tier_pricing is a list of {"min_units", "max_units" (null = unbounded),
    "price_per_unit"} objects evaluated in order; the first matching tier wins.
    """
    __tablename__ = "billing_plans"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)

    billing_model: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="percentage, fixed_per_unit, tiered"
    )
    percentage_rate: Mapped[Optional[Decimal]] = mapped_column(RateType)
    fixed_amount_per_unit: Mapped[Optional[Decimal]] = mapped_column(MoneyType)
    tier_pricing: Mapped[Optional[list]] = mapped_column(JSONType)

    sms_credits_included: Mapped[int] = mapped_column(Integer, default=0)
    currency: Mapped[str] = mapped_column(String(3), default="KES")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    def __repr__(self):
        return f"<BillingPlan {self.name} ({self.billing_model})>"


class LandlordSubscription(Base):
    """A landlord's subscription to a billing plan."""
    __tablename__ = "landlord_subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    landlord_id: Mapped[uuid.UUID] = mapped_column(UUIDType, unique=True, nullable=False, index=True)
    billing_plan_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("billing_plans.id", ondelete="SET NULL")
    )

    status: Mapped[str] = mapped_column(
        String(20),
        default=SubscriptionStatus.TRIAL.value,
        nullable=False,
        index=True,
        comment="trial, active, suspended, trial_expired"
    )
    trial_end_date: Mapped[Optional[date]] = mapped_column(Date)
    next_billing_date: Mapped[Optional[date]] = mapped_column(Date)
    sms_credits_balance: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    def __repr__(self):
        return f"<LandlordSubscription {self.landlord_id} {self.status}>"


class ServiceChargeInvoice(Base):
    """
    Platform invoice for one landlord and one calendar month.

    The (landlord_id, billing_period_start, billing_period_end) constraint is
    what makes invoice generation idempotent under concurrent runs.
    """
    __tablename__ = "service_charge_invoices"
    __table_args__ = (
        UniqueConstraint(
            "landlord_id", "billing_period_start", "billing_period_end",
            name="uq_service_charge_invoice_period"
        ),
        Index("ix_service_charge_invoices_status", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    landlord_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False, index=True)
    invoice_number: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)

    # Period
    billing_period_start: Mapped[date] = mapped_column(Date, nullable=False)
    billing_period_end: Mapped[date] = mapped_column(Date, nullable=False)

    # Amounts
    amount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    sms_charges: Mapped[Decimal] = mapped_column(MoneyType, default=Decimal("0"), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="KES")

    # Pricing snapshot
    billing_model: Mapped[str] = mapped_column(String(20), nullable=False)
    rent_collected: Mapped[Optional[Decimal]] = mapped_column(MoneyType)
    unit_count: Mapped[Optional[int]] = mapped_column(Integer)
    explanation: Mapped[Optional[str]] = mapped_column(Text)

    # Status & payment
    status: Mapped[str] = mapped_column(
        String(20),
        default=ServiceInvoiceStatus.PENDING.value,
        nullable=False,
        comment="pending, paid, overdue, cancelled"
    )
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    payment_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    payment_method: Mapped[Optional[str]] = mapped_column(String(30))
    mpesa_receipt_number: Mapped[Optional[str]] = mapped_column(String(50))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    def __repr__(self):
        return f"<ServiceChargeInvoice {self.invoice_number} {self.total_amount}>"


class SmsUsageRecord(Base):
    """One outbound SMS billed to a landlord."""
    __tablename__ = "sms_usage"
    __table_args__ = (
        Index("ix_sms_usage_landlord_sent_at", "landlord_id", "sent_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    landlord_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False)
    recipient: Mapped[Optional[str]] = mapped_column(String(20))
    message_id: Mapped[Optional[str]] = mapped_column(String(100))
    cost: Mapped[Decimal] = mapped_column(MoneyType, default=Decimal("0"), nullable=False)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)


class AutomatedBillingSettings(Base):
    """
    Platform-wide switches for the monthly billing run.

    At most one row is used; when the table is empty the application
    settings apply.
    """
    __tablename__ = "automated_billing_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    minimum_invoice_amount: Mapped[Optional[Decimal]] = mapped_column(MoneyType)
    due_days: Mapped[Optional[int]] = mapped_column(Integer)
    last_run_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))
