"""Tests for manual allocation, the tenant sweep and the unmatched queue."""

import asyncio
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from app.core.exceptions import (
    InsufficientPaymentBalanceError,
    InvalidAllocationAmountError,
    InvoiceAlreadySettledError,
    InvoiceNotFoundError,
    InvoiceOverAllocationError,
    PaymentNotAllocatableError,
    PaymentNotFoundError,
)
from app.core.locks import KeyedLockRegistry
from app.models.audit_log import ActivityLog
from app.models.payment import MatchQuality, PaymentAllocation, PaymentSource, PaymentStatus
from app.services.allocation_service import AllocationService


async def allocated_to(db, invoice_id) -> Decimal:
    total = await db.scalar(
        select(func.coalesce(func.sum(PaymentAllocation.amount), 0)).where(PaymentAllocation.invoice_id == invoice_id)
    )
    return Decimal(str(total))


@pytest.fixture
async def tenant_setup(seed):
    landlord_id = await seed.landlord()
    _, tenant, lease = await seed.occupied_unit(landlord_id, phone="254733000111")
    return landlord_id, tenant, lease


class TestManualAllocation:

    async def test_split_payment_across_two_invoices(self, db, seed, tenant_setup):
        landlord_id, tenant, lease = tenant_setup
        january = await seed.invoice(tenant, 600, lease=lease, landlord_id=landlord_id)
        february = await seed.invoice(tenant, 400, lease=lease, landlord_id=landlord_id, invoice_date=date(2025, 2, 1))
        payment = await seed.payment(1000, source=PaymentSource.KCB)
        service = AllocationService(db)
        user_id = uuid.uuid4()

        first = await service.allocate(payment.id, january.id, "600", allocated_by=user_id, sweep=False)

        assert first.method == "manual"
        assert first.allocated_by == user_id
        assert payment.allocated_amount == Decimal("600.00")
        assert payment.processed is False
        assert payment.invoice_id is None
        assert payment.tenant_id == tenant.id
        assert payment.landlord_id == landlord_id

        await service.allocate(payment.id, february.id, Decimal("400"), sweep=False)

        assert payment.processed is True
        assert payment.invoice_id == february.id
        assert payment.match_quality == MatchQuality.EXACT.value
        assert payment.match_reason == "Manually allocated"
        for invoice in (january, february):
            await db.refresh(invoice)
            assert invoice.status == "paid"
            assert invoice.amount - invoice.outstanding_amount == await allocated_to(db, invoice.id)

    async def test_allocation_is_logged(self, db, seed, tenant_setup):
        _, tenant, lease = tenant_setup
        invoice = await seed.invoice(tenant, 500, lease=lease)
        payment = await seed.payment(500)

        await AllocationService(db).allocate(payment.id, invoice.id, "500.00", sweep=False)

        activity = await db.scalar(select(ActivityLog).where(ActivityLog.entity_id == payment.id))
        assert activity.action == "payment_allocated"
        assert activity.details["invoice_number"] == invoice.invoice_number
        assert activity.details["amount"] == "500.00"

    async def test_over_invoice_outstanding_is_rejected(self, db, seed, tenant_setup):
        _, tenant, lease = tenant_setup
        invoice = await seed.invoice(tenant, 1000, lease=lease, outstanding=300)
        payment = await seed.payment(1000)

        with pytest.raises(InvoiceOverAllocationError) as exc_info:
            await AllocationService(db).allocate(payment.id, invoice.id, "500", sweep=False)

        assert exc_info.value.constraint == "invoice_over_allocation"
        assert exc_info.value.outstanding == Decimal("300.00")
        await db.refresh(invoice)
        await db.refresh(payment)
        assert invoice.outstanding_amount == Decimal("300.00")
        assert payment.allocated_amount == Decimal("0.00")

    async def test_over_payment_balance_is_rejected(self, db, seed, tenant_setup):
        _, tenant, lease = tenant_setup
        invoice = await seed.invoice(tenant, 5000, lease=lease)
        payment = await seed.payment(1000, allocated_amount=Decimal("750"))

        with pytest.raises(InsufficientPaymentBalanceError) as exc_info:
            await AllocationService(db).allocate(payment.id, invoice.id, "500", sweep=False)

        assert exc_info.value.available == Decimal("250.00")

    @pytest.mark.parametrize("amount", ["0", "-5", "10.005", "abc", None])
    async def test_invalid_amounts(self, db, seed, tenant_setup, amount):
        _, tenant, lease = tenant_setup
        invoice = await seed.invoice(tenant, 500, lease=lease)
        payment = await seed.payment(500)

        with pytest.raises(InvalidAllocationAmountError):
            await AllocationService(db).allocate(payment.id, invoice.id, amount, sweep=False)

    async def test_failed_payment_cannot_be_allocated(self, db, seed, tenant_setup):
        _, tenant, lease = tenant_setup
        invoice = await seed.invoice(tenant, 500, lease=lease)
        payment = await seed.payment(500, status=PaymentStatus.FAILED)

        with pytest.raises(PaymentNotAllocatableError):
            await AllocationService(db).allocate(payment.id, invoice.id, "500", sweep=False)

    async def test_settled_invoice_is_rejected(self, db, seed, tenant_setup):
        _, tenant, lease = tenant_setup
        invoice = await seed.invoice(tenant, 500, lease=lease, outstanding=0, status="paid")
        payment = await seed.payment(500)

        with pytest.raises(InvoiceAlreadySettledError):
            await AllocationService(db).allocate(payment.id, invoice.id, "100", sweep=False)

    async def test_unknown_payment_and_invoice(self, db, seed, tenant_setup):
        _, tenant, lease = tenant_setup
        invoice = await seed.invoice(tenant, 500, lease=lease)
        payment = await seed.payment(500)
        service = AllocationService(db)

        with pytest.raises(PaymentNotFoundError):
            await service.allocate(uuid.uuid4(), invoice.id, "100")
        with pytest.raises(InvoiceNotFoundError):
            await service.allocate(payment.id, uuid.uuid4(), "100")


class TestTenantSweep:

    async def test_allocation_unblocks_ambiguous_payment(self, db, seed, tenant_setup):
        _, tenant, lease = tenant_setup
        first = await seed.invoice(tenant, 1000, lease=lease, invoice_date=date(2025, 1, 1))
        second = await seed.invoice(tenant, 1000, lease=lease, invoice_date=date(2025, 1, 5))
        manual = await seed.payment(1000, mobile="254733000111")
        waiting = await seed.payment(
            1000,
            mobile="254733000111",
            tenant_id=tenant.id,
            transaction_date=datetime(2025, 1, 6, 8, 0, tzinfo=timezone.utc),
        )

        await AllocationService(db).allocate(manual.id, first.id, "1000")

        await db.refresh(waiting)
        assert waiting.processed is True
        assert waiting.invoice_id == second.id
        assert waiting.match_quality == MatchQuality.PROBABLE.value
        await db.refresh(second)
        assert second.status == "paid"

    async def test_sweep_leaves_unresolvable_payments(self, db, seed, tenant_setup):
        _, tenant, lease = tenant_setup
        await seed.invoice(tenant, 1000, lease=lease)
        await seed.payment(250, tenant_id=tenant.id)

        outcomes = await AllocationService(db).sweep_tenant(tenant.id)

        assert len(outcomes) == 1
        assert outcomes[0].quality == MatchQuality.NONE


class TestUnmatchedQueue:

    async def test_lists_only_unmatched_successful_payments(self, db, seed, tenant_setup):
        landlord_id, tenant, lease = tenant_setup
        invoice = await seed.invoice(tenant, 500, lease=lease)
        await seed.payment(100, source=PaymentSource.JENGA, landlord_id=landlord_id)
        await seed.payment(200, source=PaymentSource.KCB, landlord_id=landlord_id)
        await seed.payment(300, source=PaymentSource.KCB, status=PaymentStatus.FAILED, landlord_id=landlord_id)
        await seed.payment(500, source=PaymentSource.KCB, invoice_id=invoice.id)
        await seed.payment(400, source=PaymentSource.JENGA)
        service = AllocationService(db)

        everything = await service.unmatched_payments()
        mine = await service.unmatched_payments(landlord_id=landlord_id)
        kcb = await service.unmatched_payments(landlord_id=landlord_id, source="KCB")

        assert everything["total"] == 3
        assert mine["total"] == 2
        assert [p.amount for p in kcb["items"]] == [Decimal("200.00")]

    async def test_unknown_source_is_rejected(self, db):
        with pytest.raises(ValueError):
            await AllocationService(db).unmatched_payments(source="paypal")


class TestKeyedLocks:

    async def test_same_key_is_serialised(self):
        locks = KeyedLockRegistry()
        order = []

        async def worker(name):
            async with locks.hold("tenant-1"):
                order.append(f"{name}-start")
                await asyncio.sleep(0)
                order.append(f"{name}-end")

        await asyncio.gather(worker("a"), worker("b"))

        assert order == ["a-start", "a-end", "b-start", "b-end"]
        assert not locks.is_locked("tenant-1")

    async def test_different_keys_do_not_block(self):
        locks = KeyedLockRegistry()

        async with locks.hold("tenant-1"):
            async with locks.hold("tenant-2"):
                assert locks.is_locked("tenant-1")
                assert locks.is_locked("tenant-2")
