"""
Manual Payment Allocation Service

Lets a landlord apply an unmatched payment (or part of it) to a specific
invoice, then re-runs automatic matching for the tenant's other unmatched
payments. Invalid allocations are rejected with a typed error; amounts are
never clamped.
"""
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional
import uuid

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.enum_utils import parse_enum
from app.core.exceptions import (
    InsufficientPaymentBalanceError,
    InvalidAllocationAmountError,
    InvoiceAlreadySettledError,
    InvoiceNotFoundError,
    InvoiceOverAllocationError,
    PaymentNotAllocatableError,
    PaymentNotFoundError,
)
from app.core.locks import tenant_locks
from app.core.money import ZERO, to_decimal, round_money
from app.models.payment import (
    AllocationMethod,
    InboundPayment,
    MatchQuality,
    PaymentAllocation,
    PaymentSource,
    PaymentStatus,
)
from app.models.property import Invoice, OPEN_INVOICE_STATUSES
from app.services.activity_log_service import ActivityLogService
from app.services.reconciliation_service import ReconciliationService, MatchResult

logger = logging.getLogger(__name__)


def unmatched_filter():
    """Successful payments that are neither fully allocated nor matched."""
    return (
        InboundPayment.status == PaymentStatus.SUCCESS.value,
        InboundPayment.processed.is_(False),
        InboundPayment.invoice_id.is_(None),
    )


class AllocationService:
    """Manual allocation, the per-tenant sweep and the unmatched queue."""

    def __init__(
        self,
        db: AsyncSession,
        reconciliation: Optional[ReconciliationService] = None,
        activity_service: Optional[ActivityLogService] = None,
    ):
        self.db = db
        self.reconciliation = reconciliation or ReconciliationService(db)
        self.activity = activity_service or ActivityLogService(db)

    async def unmatched_payments(
        self,
        landlord_id: Optional[uuid.UUID] = None,
        source: str = "all",
        limit: int = 100,
        offset: int = 0,
    ) -> Dict[str, Any]:
        """
        Unmatched payment queue, newest first.

        Args:
            landlord_id: Restrict to one landlord's payments
            source: "all" or a payment source (mpesa, jenga, kcb)
        """
        criteria = list(unmatched_filter())
        if landlord_id is not None:
            criteria.append(InboundPayment.landlord_id == landlord_id)
        if source and source != "all":
            payment_source = parse_enum(PaymentSource, source)
            if payment_source is None:
                raise ValueError(f"Unknown payment source: {source}")
            criteria.append(InboundPayment.source == payment_source.value)

        total = await self.db.scalar(select(func.count(InboundPayment.id)).where(*criteria))
        result = await self.db.execute(
            select(InboundPayment)
            .where(*criteria)
            .order_by(InboundPayment.transaction_date.desc())
            .offset(offset)
            .limit(limit)
        )
        return {"items": list(result.scalars().all()), "total": total or 0}

    async def allocate(
        self,
        payment_id: uuid.UUID,
        invoice_id: uuid.UUID,
        amount: Any,
        allocated_by: Optional[uuid.UUID] = None,
        notes: Optional[str] = None,
        sweep: bool = True,
    ) -> PaymentAllocation:
        """
        Allocate part or all of a payment to an invoice.

        Raises:
            PaymentNotFoundError, InvoiceNotFoundError
            InvalidAllocationAmountError: amount not positive or not a money value
            PaymentNotAllocatableError: payment is not a successful payment
            InsufficientPaymentBalanceError: amount exceeds the unallocated balance
            InvoiceAlreadySettledError: invoice is paid or cancelled
            InvoiceOverAllocationError: amount exceeds the invoice's outstanding amount
        """
        try:
            amount = to_decimal(amount, default=None)
        except ValueError:
            raise InvalidAllocationAmountError(f"Invalid allocation amount: {amount!r}")
        if amount is None or not amount.is_finite() or amount <= ZERO:
            raise InvalidAllocationAmountError("Allocation amount must be positive")
        if round_money(amount) != amount:
            raise InvalidAllocationAmountError("Allocation amount has more than two decimal places")

        payment = await self.db.get(InboundPayment, payment_id)
        if payment is None:
            raise PaymentNotFoundError(payment_id)
        invoice = await self.db.get(Invoice, invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(invoice_id)

        await self.db.refresh(payment)
        await self.db.refresh(invoice)
        self._validate(payment, invoice, amount)

        allocation = await self.reconciliation.apply_allocation(
            payment,
            invoice,
            amount,
            method=AllocationMethod.MANUAL,
            allocated_by=allocated_by,
            notes=notes,
        )
        if allocation is None:
            # A concurrent allocation changed a balance between validation and update
            await self.db.refresh(payment)
            await self.db.refresh(invoice)
            self._validate(payment, invoice, amount)
            raise InvoiceOverAllocationError(amount, to_decimal(invoice.outstanding_amount))

        if payment.tenant_id is None:
            payment.tenant_id = invoice.tenant_id
        if payment.landlord_id is None:
            payment.landlord_id = invoice.landlord_id
        if payment.processed:
            payment.match_quality = MatchQuality.EXACT.value
            payment.match_reason = "Manually allocated"
        await self.db.flush()

        await self.activity.log_activity(
            user_id=allocated_by,
            action="payment_allocated",
            entity_type="inbound_payment",
            entity_id=payment.id,
            details={
                "invoice_id": str(invoice.id),
                "invoice_number": invoice.invoice_number,
                "amount": str(amount),
                "payment_reference": payment.transaction_reference,
            },
        )

        if sweep:
            await self.sweep_tenant(invoice.tenant_id)
        return allocation

    @staticmethod
    def _validate(payment: InboundPayment, invoice: Invoice, amount: Decimal) -> None:
        if payment.status != PaymentStatus.SUCCESS.value:
            raise PaymentNotAllocatableError(
                f"Payment {payment.transaction_reference} has status {payment.status}"
            )
        available = payment.unallocated_amount
        if amount > available:
            raise InsufficientPaymentBalanceError(amount, available)
        if invoice.status not in OPEN_INVOICE_STATUSES or to_decimal(invoice.outstanding_amount) <= ZERO:
            raise InvoiceAlreadySettledError(f"Invoice {invoice.invoice_number} is {invoice.status}")
        outstanding = to_decimal(invoice.outstanding_amount)
        if amount > outstanding:
            raise InvoiceOverAllocationError(amount, outstanding)

    async def sweep_tenant(self, tenant_id: uuid.UUID) -> List[MatchResult]:
        """
        Re-run automatic matching for a tenant's remaining unmatched payments.

        Sweeps for the same tenant are serialised within this process.
        """
        async with tenant_locks.hold(tenant_id):
            result = await self.db.execute(
                select(InboundPayment)
                .where(*unmatched_filter(), InboundPayment.tenant_id == tenant_id)
                .order_by(InboundPayment.transaction_date)
            )
            payments = list(result.scalars().all())

            outcomes = []
            for payment in payments:
                outcomes.append(await self.reconciliation.match_payment(payment))

        matched = sum(1 for outcome in outcomes if outcome.matched)
        logger.info(f"Reconciliation sweep for tenant {tenant_id}: {matched}/{len(outcomes)} matched")
        return outcomes
