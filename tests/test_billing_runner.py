"""Tests for the monthly batch billing run across landlords."""

from datetime import date
from decimal import Decimal

from sqlalchemy import func, select

from app.jobs.billing_runner import MonthlyBillingRunner, run_monthly_billing
from app.models.billing import AutomatedBillingSettings, BillingModel, ServiceChargeInvoice, SubscriptionStatus

RUN_DATE = date(2025, 2, 10)


async def billed_landlord(seed, units=("A1", "A2")):
    landlord_id = await seed.landlord(BillingModel.FIXED_PER_UNIT, fixed_amount_per_unit=Decimal("100"))
    await seed.property_with_units(landlord_id, units=units)
    return landlord_id


class TestMonthlyBillingRun:

    async def test_bills_previous_month_for_billable_landlords(self, db, seed, session_factory):
        active = await billed_landlord(seed)
        trial = await seed.landlord(
            BillingModel.FIXED_PER_UNIT,
            status=SubscriptionStatus.TRIAL,
            fixed_amount_per_unit=Decimal("100"),
        )
        await seed.property_with_units(trial, units=("T1",))
        suspended = await seed.landlord(
            BillingModel.FIXED_PER_UNIT,
            status=SubscriptionStatus.SUSPENDED,
            fixed_amount_per_unit=Decimal("100"),
        )
        await seed.property_with_units(suspended, units=("S1",))
        await db.commit()

        summary = await run_monthly_billing(RUN_DATE, session_factory=session_factory, max_concurrent=1)

        assert summary["status"] == "completed"
        assert summary["billing_period_start"] == "2025-01-01"
        assert summary["billing_period_end"] == "2025-01-31"
        assert summary["landlord_count"] == 2
        assert summary["processed_count"] == 2
        assert summary["successful"] == 2
        assert summary["failed"] == 0
        billed = {entry["landlord_id"] for entry in summary["results"]}
        assert billed == {str(active), str(trial)}

        total = await db.scalar(select(func.count(ServiceChargeInvoice.id)))
        assert total == 2

    async def test_one_landlord_failure_does_not_stop_the_batch(self, db, seed, session_factory):
        good = await billed_landlord(seed)
        broken = await seed.landlord(with_plan=False)
        await db.commit()

        summary = await run_monthly_billing(RUN_DATE, session_factory=session_factory, max_concurrent=1)

        results = {entry["landlord_id"]: entry for entry in summary["results"]}
        assert results[str(good)]["success"] is True
        assert results[str(good)]["outcome"] == "created"
        assert results[str(good)]["amount"] == "200.00"
        assert results[str(broken)]["success"] is False
        assert "no billing plan" in results[str(broken)]["error"]
        assert summary["successful"] == 1
        assert summary["failed"] == 1
        assert summary["processed_count"] == 1

    async def test_rerun_creates_nothing_new(self, db, seed, session_factory):
        landlord_id = await billed_landlord(seed)
        await db.commit()
        runner = MonthlyBillingRunner(session_factory=session_factory, max_concurrent=1)

        first = await runner.run(RUN_DATE)
        second = await runner.run(RUN_DATE)

        assert first["processed_count"] == 1
        assert second["processed_count"] == 0
        assert second["results"][0]["outcome"] == "already_exists"
        assert second["results"][0]["invoice_id"] == first["results"][0]["invoice_id"]
        total = await db.scalar(
            select(func.count(ServiceChargeInvoice.id)).where(ServiceChargeInvoice.landlord_id == landlord_id)
        )
        assert total == 1

    async def test_below_minimum_is_a_success_without_invoice(self, db, seed, session_factory):
        landlord_id = await seed.landlord(BillingModel.FIXED_PER_UNIT, fixed_amount_per_unit=Decimal("5"))
        await seed.property_with_units(landlord_id)
        await db.commit()

        summary = await run_monthly_billing(RUN_DATE, session_factory=session_factory, max_concurrent=1)

        entry = summary["results"][0]
        assert entry["success"] is True
        assert entry["outcome"] == "below_minimum"
        assert entry["invoice_id"] is None
        assert summary["processed_count"] == 0

    async def test_disabled_by_settings_row(self, db, seed, session_factory):
        await billed_landlord(seed)
        db.add(AutomatedBillingSettings(enabled=False))
        await db.commit()

        summary = await run_monthly_billing(RUN_DATE, session_factory=session_factory, max_concurrent=1)

        assert summary == {"status": "disabled", "processed_count": 0, "results": []}
        assert await db.scalar(select(func.count(ServiceChargeInvoice.id))) == 0

    async def test_no_landlords(self, session_factory):
        summary = await run_monthly_billing(RUN_DATE, session_factory=session_factory, max_concurrent=1)

        assert summary["status"] == "completed"
        assert summary["landlord_count"] == 0
        assert summary["results"] == []
