"""
Service Charge Billing Service

Generates the platform's monthly service-charge invoice for a landlord:

1. Return the existing invoice when the period is already billed
2. Resolve the landlord's billing plan through their subscription
3. Load rent collected and unit count for the landlord's properties
4. Price the service charge and add SMS charges for the period
5. Skip totals below the minimum invoice amount
6. Insert the invoice inside a SAVEPOINT; a concurrent insert for the same
   period is detected by the unique constraint and the winner is returned
7. Notify the landlord and record the activity
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from enum import Enum
from typing import Optional, List, Tuple
import uuid

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.billing_period import BillingPeriod
from app.core.exceptions import BillingConfigurationError
from app.core.money import ZERO, to_decimal, round_money, format_money
from app.models.billing import (
    AutomatedBillingSettings,
    BillingPlan,
    LandlordSubscription,
    ServiceChargeInvoice,
    ServiceInvoiceStatus,
)
from app.models.notifications import NotificationType
from app.models.property import Property, Unit, Lease, RentPayment, RentPaymentStatus
from app.services.activity_log_service import ActivityLogService
from app.services.notification_service import NotificationService
from app.services.pricing_engine import (
    PricingInputs,
    exact_service_charge,
    describe_service_charge,
    resolve_billing_model,
)
from app.services.sms_usage_service import SmsUsageService

logger = logging.getLogger(__name__)


class InvoiceOutcome(str, Enum):
    CREATED = "created"
    ALREADY_EXISTS = "already_exists"
    BELOW_MINIMUM = "below_minimum"


@dataclass
class InvoiceGenerationResult:
    outcome: InvoiceOutcome
    invoice: Optional[ServiceChargeInvoice] = None
    service_charge: Decimal = ZERO
    sms_charges: Decimal = ZERO
    total_amount: Decimal = ZERO
    explanation: Optional[str] = None

    @property
    def created(self) -> bool:
        return self.outcome == InvoiceOutcome.CREATED


@dataclass
class BillingSettings:
    """Effective billing switches: the settings row when present, else app config."""
    enabled: bool
    minimum_invoice_amount: Decimal
    due_days: int


class BillingService:
    """Service-charge invoice generation for a single landlord."""

    def __init__(
        self,
        db: AsyncSession,
        notification_service: Optional[NotificationService] = None,
        activity_service: Optional[ActivityLogService] = None,
    ):
        self.db = db
        self.notifications = notification_service or NotificationService(db)
        self.activity = activity_service or ActivityLogService(db)
        self.sms_usage = SmsUsageService(db)

    # ==================== Lookups ====================

    async def get_billing_settings(self) -> BillingSettings:
        row = await self.db.scalar(select(AutomatedBillingSettings).limit(1))
        if row is None:
            return BillingSettings(
                enabled=settings.AUTOMATED_BILLING_ENABLED,
                minimum_invoice_amount=settings.MINIMUM_INVOICE_AMOUNT,
                due_days=settings.SERVICE_INVOICE_DUE_DAYS,
            )
        return BillingSettings(
            enabled=row.enabled,
            minimum_invoice_amount=(
                to_decimal(row.minimum_invoice_amount)
                if row.minimum_invoice_amount is not None
                else settings.MINIMUM_INVOICE_AMOUNT
            ),
            due_days=row.due_days if row.due_days is not None else settings.SERVICE_INVOICE_DUE_DAYS,
        )

    async def get_landlord_plan(self, landlord_id: uuid.UUID) -> Tuple[LandlordSubscription, BillingPlan]:
        """
        Raises:
            BillingConfigurationError: no subscription, or the plan is missing
        """
        subscription = await self.db.scalar(
            select(LandlordSubscription).where(LandlordSubscription.landlord_id == landlord_id)
        )
        if subscription is None:
            raise BillingConfigurationError(f"Landlord {landlord_id} has no subscription")
        if subscription.billing_plan_id is None:
            raise BillingConfigurationError(f"Landlord {landlord_id} has no billing plan")

        plan = await self.db.get(BillingPlan, subscription.billing_plan_id)
        if plan is None:
            raise BillingConfigurationError(
                f"Billing plan {subscription.billing_plan_id} for landlord {landlord_id} not found"
            )
        return subscription, plan

    async def get_rent_collected(self, landlord_id: uuid.UUID, period: BillingPeriod) -> Decimal:
        """Completed rent payments on the landlord's properties within the period."""
        result = await self.db.execute(
            select(func.coalesce(func.sum(RentPayment.amount), 0))
            .join(Lease, Lease.id == RentPayment.lease_id)
            .join(Unit, Unit.id == Lease.unit_id)
            .join(Property, Property.id == Unit.property_id)
            .where(
                Property.owner_id == landlord_id,
                RentPayment.status == RentPaymentStatus.COMPLETED.value,
                RentPayment.payment_type == "rent",
                RentPayment.payment_date >= period.starts_at,
                RentPayment.payment_date <= period.ends_at,
            )
        )
        return to_decimal(result.scalar(), default=ZERO)

    async def get_unit_count(self, landlord_id: uuid.UUID) -> int:
        result = await self.db.execute(
            select(func.count(Unit.id))
            .join(Property, Property.id == Unit.property_id)
            .where(Property.owner_id == landlord_id)
        )
        return result.scalar() or 0

    async def find_invoice(self, landlord_id: uuid.UUID, period: BillingPeriod) -> Optional[ServiceChargeInvoice]:
        return await self.db.scalar(
            select(ServiceChargeInvoice).where(
                ServiceChargeInvoice.landlord_id == landlord_id,
                ServiceChargeInvoice.billing_period_start == period.start_date,
                ServiceChargeInvoice.billing_period_end == period.end_date,
            )
        )

    async def list_invoices(self, landlord_id: uuid.UUID, limit: int = 24) -> List[ServiceChargeInvoice]:
        result = await self.db.execute(
            select(ServiceChargeInvoice)
            .where(ServiceChargeInvoice.landlord_id == landlord_id)
            .order_by(ServiceChargeInvoice.billing_period_start.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    @staticmethod
    def build_invoice_number(landlord_id: uuid.UUID, period: BillingPeriod) -> str:
        return f"SCI-{period.start_date:%Y%m}-{landlord_id.hex[:12].upper()}"

    # ==================== Generation ====================

    async def generate_service_invoice(
        self,
        landlord_id: uuid.UUID,
        period: BillingPeriod,
        billing_settings: Optional[BillingSettings] = None,
    ) -> InvoiceGenerationResult:
        """
        Generate the service-charge invoice for one landlord and period.

        Safe to call repeatedly and concurrently: at most one invoice exists
        per (landlord, period).

        Raises:
            BillingConfigurationError: subscription, plan or billing model invalid
        """
        existing = await self.find_invoice(landlord_id, period)
        if existing is not None:
            logger.info(f"Service invoice already exists for landlord {landlord_id} ({period.label})")
            return self._existing_result(existing)

        billing_settings = billing_settings or await self.get_billing_settings()
        _, plan = await self.get_landlord_plan(landlord_id)
        billing_model = resolve_billing_model(plan.billing_model)
        currency = plan.currency or settings.DEFAULT_CURRENCY

        rent_collected = await self.get_rent_collected(landlord_id, period)
        unit_count = await self.get_unit_count(landlord_id)
        inputs = PricingInputs.from_plan(plan, rent_collected, unit_count)

        exact_charge = exact_service_charge(billing_model, inputs)
        service_charge = round_money(exact_charge)
        sms_charges = await self.sms_usage.sum_sms_cost(landlord_id, period.start_date, period.end_date)
        total_amount = round_money(exact_charge + sms_charges)
        explanation = describe_service_charge(billing_model, inputs, currency)
        if sms_charges > ZERO:
            explanation = f"{explanation}; SMS charges {format_money(sms_charges, currency)}"

        logger.info(
            f"Billing calculation for landlord {landlord_id}: model={billing_model.value} "
            f"units={unit_count} rent_collected={rent_collected} "
            f"service_charge={service_charge} sms_charges={sms_charges}"
        )

        if total_amount < billing_settings.minimum_invoice_amount:
            logger.info(
                f"Total amount too small for landlord {landlord_id}: {total_amount} "
                f"(minimum {billing_settings.minimum_invoice_amount})"
            )
            return InvoiceGenerationResult(
                outcome=InvoiceOutcome.BELOW_MINIMUM,
                service_charge=service_charge,
                sms_charges=sms_charges,
                total_amount=total_amount,
                explanation=explanation,
            )

        invoice = ServiceChargeInvoice(
            landlord_id=landlord_id,
            invoice_number=self.build_invoice_number(landlord_id, period),
            billing_period_start=period.start_date,
            billing_period_end=period.end_date,
            amount=service_charge,
            sms_charges=round_money(sms_charges),
            total_amount=total_amount,
            currency=currency,
            billing_model=billing_model.value,
            rent_collected=round_money(rent_collected),
            unit_count=unit_count,
            explanation=explanation,
            status=ServiceInvoiceStatus.PENDING.value,
            due_date=period.end_date + timedelta(days=billing_settings.due_days),
        )

        try:
            async with self.db.begin_nested():
                self.db.add(invoice)
        except IntegrityError:
            winner = await self.find_invoice(landlord_id, period)
            if winner is None:
                raise
            logger.info(f"Concurrent service invoice for landlord {landlord_id} ({period.label}) detected")
            return self._existing_result(winner)

        await self.notifications.notify(
            user_id=landlord_id,
            title="New Service Charge Invoice",
            message=(
                f"Your service charge invoice for {period.label} is ready. "
                f"Amount: {format_money(total_amount, currency)}. {explanation}"
            ),
            related_type="service_charge_invoice",
            related_id=invoice.id,
            notification_type=NotificationType.SERVICE_CHARGE_INVOICE,
        )
        await self.activity.log_activity(
            user_id=None,
            action="service_invoice_generated",
            entity_type="service_charge_invoice",
            entity_id=invoice.id,
            details={
                "landlord_id": str(landlord_id),
                "billing_period_start": period.start_date.isoformat(),
                "billing_period_end": period.end_date.isoformat(),
                "total_amount": str(total_amount),
                "billing_model": billing_model.value,
            },
        )

        logger.info(f"Generated service invoice {invoice.invoice_number} for landlord {landlord_id}: {total_amount}")
        return InvoiceGenerationResult(
            outcome=InvoiceOutcome.CREATED,
            invoice=invoice,
            service_charge=service_charge,
            sms_charges=sms_charges,
            total_amount=total_amount,
            explanation=explanation,
        )

    @staticmethod
    def _existing_result(invoice: ServiceChargeInvoice) -> InvoiceGenerationResult:
        return InvoiceGenerationResult(
            outcome=InvoiceOutcome.ALREADY_EXISTS,
            invoice=invoice,
            service_charge=to_decimal(invoice.amount),
            sms_charges=to_decimal(invoice.sms_charges),
            total_amount=to_decimal(invoice.total_amount),
            explanation=invoice.explanation,
        )
