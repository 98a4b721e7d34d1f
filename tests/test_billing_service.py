"""Tests for service-charge invoice generation for a single landlord."""

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from app.core.billing_period import BillingPeriod
from app.core.exceptions import BillingConfigurationError
from app.models.audit_log import ActivityLog
from app.models.billing import AutomatedBillingSettings, BillingModel, ServiceChargeInvoice
from app.models.notifications import Notification, NotificationType
from app.services.billing_service import BillingService, InvoiceOutcome

JANUARY = BillingPeriod.for_month(2025, 1)


def at(day: int, month: int = 1, year: int = 2025) -> datetime:
    return datetime(year, month, day, 10, 0, tzinfo=timezone.utc)


async def count_invoices(db, landlord_id) -> int:
    return await db.scalar(
        select(func.count(ServiceChargeInvoice.id)).where(ServiceChargeInvoice.landlord_id == landlord_id)
    )


class TestGenerateServiceInvoice:

    async def test_percentage_invoice_counts_completed_rent_in_period(self, db, seed):
        landlord_id = await seed.landlord(BillingModel.PERCENTAGE, percentage_rate=Decimal("10"))
        _, _, lease = await seed.occupied_unit(landlord_id)
        await seed.rent_payment(lease, 25000, at(5))
        await seed.rent_payment(lease, 25000, at(31))
        await seed.rent_payment(lease, 25000, at(1, month=2))           # next period
        await seed.rent_payment(lease, 25000, at(10), status="failed")
        await seed.rent_payment(lease, 5000, at(12), payment_type="deposit")

        result = await BillingService(db).generate_service_invoice(landlord_id, JANUARY)

        assert result.outcome == InvoiceOutcome.CREATED
        invoice = result.invoice
        assert invoice.amount == Decimal("5000.00")
        assert invoice.total_amount == Decimal("5000.00")
        assert invoice.rent_collected == Decimal("50000.00")
        assert invoice.billing_model == "percentage"
        assert invoice.billing_period_start == date(2025, 1, 1)
        assert invoice.billing_period_end == date(2025, 1, 31)
        assert invoice.due_date == date(2025, 2, 14)
        assert invoice.status == "pending"
        assert invoice.invoice_number == f"SCI-202501-{landlord_id.hex[:12].upper()}"
        assert invoice.explanation == "10% of KES 50,000.00 rent collected = KES 5,000.00"

    async def test_second_generation_returns_existing_invoice(self, db, seed):
        landlord_id = await seed.landlord(BillingModel.FIXED_PER_UNIT, fixed_amount_per_unit=Decimal("100"))
        await seed.property_with_units(landlord_id, units=("A1", "A2", "A3"))
        service = BillingService(db)

        first = await service.generate_service_invoice(landlord_id, JANUARY)
        second = await service.generate_service_invoice(landlord_id, JANUARY)

        assert first.outcome == InvoiceOutcome.CREATED
        assert second.outcome == InvoiceOutcome.ALREADY_EXISTS
        assert second.invoice.id == first.invoice.id
        assert second.total_amount == Decimal("300.00")
        assert await count_invoices(db, landlord_id) == 1

    async def test_sms_charges_are_added_to_the_total(self, db, seed):
        landlord_id = await seed.landlord(BillingModel.FIXED_PER_UNIT, fixed_amount_per_unit=Decimal("100"))
        await seed.property_with_units(landlord_id, units=[f"B{i}" for i in range(10)])
        await seed.sms(landlord_id, "0.50", at(3))
        await seed.sms(landlord_id, "0.25", at(31))
        await seed.sms(landlord_id, "4.00", at(2, month=2))   # outside the period

        result = await BillingService(db).generate_service_invoice(landlord_id, JANUARY)

        assert result.invoice.amount == Decimal("1000.00")
        assert result.invoice.sms_charges == Decimal("0.75")
        assert result.invoice.total_amount == Decimal("1000.75")
        assert result.invoice.explanation.endswith("; SMS charges KES 0.75")

    async def test_total_is_rounded_once_after_adding_sms_charges(self, db, seed):
        landlord_id = await seed.landlord(BillingModel.PERCENTAGE, percentage_rate=Decimal("1.5"))
        _, _, lease = await seed.occupied_unit(landlord_id)
        await seed.rent_payment(lease, 1001, at(5))
        await seed.sms(landlord_id, "0.01", at(6))

        result = await BillingService(db).generate_service_invoice(landlord_id, JANUARY)

        # 15.015 + 0.01 = 15.025, half-even to 15.02
        assert result.total_amount == Decimal("15.02")
        assert result.invoice.total_amount == Decimal("15.02")
        assert result.invoice.amount == Decimal("15.02")

    async def test_fractional_percentage_rate_is_stored_exactly(self, db, seed):
        landlord_id = await seed.landlord(BillingModel.PERCENTAGE, percentage_rate=Decimal("2.125"))
        _, _, lease = await seed.occupied_unit(landlord_id)
        await seed.rent_payment(lease, 1000, at(5))
        db.expire_all()

        result = await BillingService(db).generate_service_invoice(landlord_id, JANUARY)

        assert result.invoice.amount == Decimal("21.25")
        assert result.invoice.explanation.startswith("2.125% of KES 1,000.00")

    async def test_tiered_plan_uses_unit_count(self, db, seed):
        landlord_id = await seed.landlord(
            BillingModel.TIERED,
            tier_pricing=[
                {"min_units": 0, "max_units": 2, "price_per_unit": "500"},
                {"min_units": 3, "max_units": None, "price_per_unit": "450"},
            ],
        )
        await seed.property_with_units(landlord_id, units=("1", "2"))
        await seed.property_with_units(landlord_id, units=("3",), name="Hillside Court")

        result = await BillingService(db).generate_service_invoice(landlord_id, JANUARY)

        assert result.invoice.unit_count == 3
        assert result.invoice.total_amount == Decimal("1350.00")

    async def test_totals_below_minimum_create_nothing(self, db, seed):
        landlord_id = await seed.landlord(BillingModel.FIXED_PER_UNIT, fixed_amount_per_unit=Decimal("9.99"))
        await seed.property_with_units(landlord_id)

        result = await BillingService(db).generate_service_invoice(landlord_id, JANUARY)

        assert result.outcome == InvoiceOutcome.BELOW_MINIMUM
        assert result.invoice is None
        assert result.total_amount == Decimal("9.99")
        assert await count_invoices(db, landlord_id) == 0

    async def test_total_equal_to_minimum_is_invoiced(self, db, seed):
        landlord_id = await seed.landlord(BillingModel.FIXED_PER_UNIT, fixed_amount_per_unit=Decimal("10.00"))
        await seed.property_with_units(landlord_id)

        result = await BillingService(db).generate_service_invoice(landlord_id, JANUARY)

        assert result.outcome == InvoiceOutcome.CREATED
        assert result.invoice.total_amount == Decimal("10.00")

    async def test_settings_row_overrides_minimum_and_due_days(self, db, seed):
        db.add(AutomatedBillingSettings(enabled=True, minimum_invoice_amount=Decimal("500"), due_days=7))
        landlord_id = await seed.landlord(BillingModel.FIXED_PER_UNIT, fixed_amount_per_unit=Decimal("100"))
        await seed.property_with_units(landlord_id, units=("A1", "A2"))
        service = BillingService(db)

        below = await service.generate_service_invoice(landlord_id, JANUARY)
        assert below.outcome == InvoiceOutcome.BELOW_MINIMUM

        await seed.property_with_units(landlord_id, units=("C1", "C2", "C3"), name="Annex")
        created = await service.generate_service_invoice(landlord_id, JANUARY)
        assert created.outcome == InvoiceOutcome.CREATED
        assert created.invoice.due_date == date(2025, 2, 7)

    async def test_notifies_landlord_and_logs_activity(self, db, seed):
        landlord_id = await seed.landlord(BillingModel.FIXED_PER_UNIT, fixed_amount_per_unit=Decimal("250"))
        await seed.property_with_units(landlord_id, units=("A1", "A2"))

        result = await BillingService(db).generate_service_invoice(landlord_id, JANUARY)

        notification = await db.scalar(select(Notification).where(Notification.user_id == landlord_id))
        assert notification.title == "New Service Charge Invoice"
        assert notification.notification_type == NotificationType.SERVICE_CHARGE_INVOICE.value
        assert notification.related_id == result.invoice.id
        assert "January 2025" in notification.message
        assert "KES 500.00" in notification.message

        activity = await db.scalar(select(ActivityLog).where(ActivityLog.entity_id == result.invoice.id))
        assert activity.action == "service_invoice_generated"
        assert activity.details["total_amount"] == "500.00"


class TestBillingConfiguration:

    async def test_landlord_without_subscription(self, db):
        with pytest.raises(BillingConfigurationError):
            await BillingService(db).generate_service_invoice(uuid.uuid4(), JANUARY)

    async def test_subscription_without_plan(self, db, seed):
        landlord_id = await seed.landlord(with_plan=False)

        with pytest.raises(BillingConfigurationError, match="no billing plan"):
            await BillingService(db).generate_service_invoice(landlord_id, JANUARY)

    async def test_unknown_billing_model(self, db, seed):
        landlord_id = await seed.landlord(BillingModel.PERCENTAGE)
        plan = (await BillingService(db).get_landlord_plan(landlord_id))[1]
        plan.billing_model = "per_tenant"
        await db.flush()

        with pytest.raises(BillingConfigurationError, match="Unknown billing model"):
            await BillingService(db).generate_service_invoice(landlord_id, JANUARY)

    async def test_defaults_without_settings_row(self, db):
        billing_settings = await BillingService(db).get_billing_settings()
        assert billing_settings.enabled is True
        assert billing_settings.minimum_invoice_amount == Decimal("10")
        assert billing_settings.due_days == 14
