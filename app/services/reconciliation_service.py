"""
Payment Reconciliation Service

Matches inbound payments to tenant rent invoices.

Matching tiers, tried in order; the first tier yielding exactly one
candidate wins:
1. Exact    - invoice_id carried on the payment (STK push for an invoice)
2. Exact    - structured merchant reference: an embedded invoice number, or
              MERCHANTCODE-UNITNUMBER resolving to the unit's active lease
3. Probable - within the payer scope, one open invoice whose outstanding
              amount equals the payment and whose invoice date is within
              MATCH_DATE_WINDOW_DAYS of the transaction
4. Fuzzy    - within the payer scope, one open invoice with equal outstanding

Several candidates at any tier never resolve by guessing; the payment stays
unmatched with the reason recorded for manual allocation.

Invoice balances are decremented with compare-and-set UPDATEs so concurrent
matches can never over-allocate an invoice or a payment.
"""
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
import uuid

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.enum_utils import parse_enum
from app.core.money import ZERO, to_decimal, format_money
from app.core.phone import normalize_msisdn
from app.models.notifications import NotificationType
from app.models.payment import (
    AllocationMethod,
    InboundPayment,
    LandlordBankConfig,
    MatchQuality,
    PaymentAllocation,
    PaymentStatus,
)
from app.models.property import (
    Invoice,
    InvoiceStatus,
    Lease,
    LeaseStatus,
    Property,
    Tenant,
    Unit,
    OPEN_INVOICE_STATUSES,
)
from app.services.notification_service import NotificationService

logger = logging.getLogger(__name__)

INVOICE_NUMBER_PATTERN = re.compile(r"\bINV[-/_]?[A-Z0-9]+(?:[-/_][A-Z0-9]+)*\b")


# ==================== Reference parsing ====================

def normalize_reference(text: Optional[str]) -> str:
    """Uppercase and trim a payer-entered reference."""
    if not text:
        return ""
    return " ".join(str(text).upper().split())


def extract_invoice_numbers(text: Optional[str]) -> List[str]:
    """Invoice numbers embedded in a reference, e.g. "Rent INV-2025-000123"."""
    reference = normalize_reference(text)
    if not reference:
        return []
    return list(dict.fromkeys(INVOICE_NUMBER_PATTERN.findall(reference)))


def split_unit_reference(reference: Optional[str]) -> Optional[Tuple[str, str]]:
    """
    Split a MERCHANTCODE-UNITNUMBER reference.

    Only the first hyphen separates; unit numbers may contain hyphens.
    """
    reference = (reference or "").strip()
    if "-" not in reference:
        return None
    merchant_code, unit_number = reference.split("-", 1)
    merchant_code = merchant_code.strip()
    unit_number = unit_number.strip()
    if not merchant_code or not unit_number:
        return None
    return merchant_code, unit_number


def normalize_unit_number(unit_number: str) -> str:
    return "".join(unit_number.lower().split())


# ==================== Results ====================

@dataclass
class PayerScope:
    """Who is paying: narrows probable and fuzzy candidates."""
    tenant_id: Optional[uuid.UUID] = None
    landlord_id: Optional[uuid.UUID] = None
    lease_id: Optional[uuid.UUID] = None
    resolved_by: Optional[str] = None

    def invoice_criteria(self) -> Optional[Any]:
        if self.tenant_id is not None:
            return Invoice.tenant_id == self.tenant_id
        if self.landlord_id is not None:
            return Invoice.landlord_id == self.landlord_id
        return None


@dataclass
class MatchResult:
    payment_id: uuid.UUID
    invoice: Optional[Invoice]
    quality: MatchQuality
    reason: str
    allocation: Optional[PaymentAllocation] = None
    allocated_amount: Decimal = field(default=ZERO)

    @property
    def matched(self) -> bool:
        return self.invoice is not None and self.quality != MatchQuality.NONE

    @property
    def invoice_id(self) -> Optional[uuid.UUID]:
        return self.invoice.id if self.invoice is not None else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "payment_id": self.payment_id,
            "invoice_id": self.invoice_id,
            "quality": self.quality.value,
            "reason": self.reason,
            "allocated_amount": self.allocated_amount,
        }


class ReconciliationService:
    """Automatic payment-to-invoice matching and balance-safe allocation."""

    def __init__(self, db: AsyncSession, notification_service: Optional[NotificationService] = None):
        self.db = db
        self.notifications = notification_service or NotificationService(db)

    # ==================== Allocation primitive ====================

    async def apply_allocation(
        self,
        payment: InboundPayment,
        invoice: Invoice,
        amount: Decimal,
        method: AllocationMethod,
        quality: Optional[MatchQuality] = None,
        allocated_by: Optional[uuid.UUID] = None,
        notes: Optional[str] = None,
    ) -> Optional[PaymentAllocation]:
        """
        Move `amount` from a payment's unallocated balance to an invoice.

        Both balances are checked inside the UPDATE statements; if either
        no longer covers `amount` nothing is written and None is returned.
        """
        now = datetime.now(timezone.utc)
        savepoint = await self.db.begin_nested()
        try:
            invoice_result = await self.db.execute(
                update(Invoice)
                .where(
                    Invoice.id == invoice.id,
                    Invoice.status.in_(OPEN_INVOICE_STATUSES),
                    Invoice.outstanding_amount >= amount,
                )
                .values(outstanding_amount=Invoice.outstanding_amount - amount, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if invoice_result.rowcount != 1:
                await savepoint.rollback()
                return None

            payment_result = await self.db.execute(
                update(InboundPayment)
                .where(
                    InboundPayment.id == payment.id,
                    InboundPayment.amount - InboundPayment.allocated_amount >= amount,
                )
                .values(allocated_amount=InboundPayment.allocated_amount + amount, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if payment_result.rowcount != 1:
                await savepoint.rollback()
                return None

            await self.db.execute(
                update(Invoice)
                .where(Invoice.id == invoice.id, Invoice.outstanding_amount <= 0)
                .values(status=InvoiceStatus.PAID.value, paid_at=now)
                .execution_options(synchronize_session=False)
            )

            allocation = PaymentAllocation(
                payment_id=payment.id,
                invoice_id=invoice.id,
                amount=amount,
                method=method.value,
                match_quality=quality.value if quality else None,
                allocated_by=allocated_by,
                notes=notes,
            )
            self.db.add(allocation)
            await savepoint.commit()
        except Exception:
            if savepoint.is_active:
                await savepoint.rollback()
            raise

        await self.db.refresh(invoice)
        await self.db.refresh(payment, attribute_names=["allocated_amount", "updated_at"])

        if payment.unallocated_amount <= ZERO:
            payment.processed = True
            payment.processed_at = now
            payment.invoice_id = invoice.id
        await self.db.flush()

        logger.info(
            f"Allocated {amount} of payment {payment.transaction_reference} to invoice "
            f"{invoice.invoice_number} ({method.value}); outstanding now {invoice.outstanding_amount}"
        )
        return allocation

    # ==================== Payer scope ====================

    async def resolve_unit_reference(self, reference: Optional[str]) -> Optional[PayerScope]:
        """MERCHANTCODE-UNITNUMBER -> landlord bank config -> unit -> active lease."""
        parts = split_unit_reference(reference)
        if parts is None:
            return None
        merchant_code, unit_number = parts

        config = await self.db.scalar(
            select(LandlordBankConfig)
            .where(
                func.upper(LandlordBankConfig.merchant_code) == merchant_code.upper(),
                LandlordBankConfig.is_active.is_(True),
            )
            .limit(1)
        )
        if config is None:
            return None

        scope = PayerScope(landlord_id=config.landlord_id, resolved_by="merchant_code")
        units = (await self.db.execute(
            select(Unit)
            .join(Property, Property.id == Unit.property_id)
            .where(
                Property.owner_id == config.landlord_id,
                func.lower(func.replace(Unit.unit_number, " ", "")) == normalize_unit_number(unit_number),
            )
        )).scalars().all()
        if len(units) != 1:
            return scope

        lease = await self.db.scalar(
            select(Lease)
            .where(Lease.unit_id == units[0].id, Lease.status == LeaseStatus.ACTIVE.value)
            .order_by(Lease.created_at.desc())
            .limit(1)
        )
        if lease is not None:
            scope.tenant_id = lease.tenant_id
            scope.lease_id = lease.id
            scope.resolved_by = "unit_reference"
        return scope

    async def find_tenant_by_phone(self, phone: Optional[str]) -> Optional[uuid.UUID]:
        msisdn = normalize_msisdn(phone)
        if not msisdn:
            return None
        tenant_ids = (await self.db.execute(
            select(Tenant.id).where(Tenant.phone == msisdn).limit(2)
        )).scalars().all()
        if len(tenant_ids) == 1:
            return tenant_ids[0]
        return None

    async def resolve_payer_scope(self, payment: InboundPayment) -> PayerScope:
        scope = await self.resolve_unit_reference(payment.merchant_reference) or PayerScope()

        if payment.tenant_id is not None:
            scope.tenant_id = payment.tenant_id
            scope.resolved_by = scope.resolved_by or "payment"
        if scope.tenant_id is None:
            tenant_id = await self.find_tenant_by_phone(payment.customer_mobile)
            if tenant_id is not None:
                scope.tenant_id = tenant_id
                scope.resolved_by = "phone"
        if scope.landlord_id is None:
            scope.landlord_id = payment.landlord_id
        return scope

    # ==================== Candidates ====================

    async def open_invoices(self, *criteria) -> List[Invoice]:
        result = await self.db.execute(
            select(Invoice)
            .where(
                Invoice.status.in_(OPEN_INVOICE_STATUSES),
                Invoice.outstanding_amount > 0,
                *criteria,
            )
            .order_by(Invoice.due_date, Invoice.invoice_number)
        )
        return list(result.scalars().all())

    @staticmethod
    def can_absorb(invoice: Invoice, amount: Decimal) -> bool:
        return (
            invoice.status in OPEN_INVOICE_STATUSES
            and to_decimal(invoice.outstanding_amount) >= amount
        )

    async def find_candidate(
        self,
        payment: InboundPayment,
        amount: Decimal,
        scope: PayerScope,
    ) -> Tuple[Optional[Invoice], MatchQuality, str]:
        # 1. Invoice carried on the payment
        if payment.invoice_id is not None:
            invoice = await self.db.get(Invoice, payment.invoice_id)
            if invoice is not None and self.can_absorb(invoice, amount):
                return invoice, MatchQuality.EXACT, f"Invoice {invoice.invoice_number} referenced by the payment"

        # 2a. Invoice number in the reference
        numbers = extract_invoice_numbers(payment.merchant_reference)
        reference = normalize_reference(payment.merchant_reference)
        if reference and reference not in numbers:
            numbers.append(reference)
        if numbers:
            candidates = [
                invoice for invoice in await self.open_invoices(func.upper(Invoice.invoice_number).in_(numbers))
                if self.can_absorb(invoice, amount)
            ]
            if len(candidates) == 1:
                return candidates[0], MatchQuality.EXACT, f"Invoice number {candidates[0].invoice_number} in reference"

        # 2b. Unit reference resolved to a lease
        if scope.lease_id is not None:
            candidates = [
                invoice for invoice in await self.open_invoices(Invoice.lease_id == scope.lease_id)
                if self.can_absorb(invoice, amount)
            ]
            if len(candidates) == 1:
                return (
                    candidates[0],
                    MatchQuality.EXACT,
                    f"Unit reference {payment.merchant_reference} resolved to invoice {candidates[0].invoice_number}",
                )

        criteria = scope.invoice_criteria()
        if criteria is None:
            return None, MatchQuality.NONE, "Payer could not be identified"

        same_amount = [
            invoice for invoice in await self.open_invoices(criteria)
            if to_decimal(invoice.outstanding_amount) == amount
        ]

        # 3. Same amount within the date window
        transaction_day = payment.transaction_date.date()
        window_days = settings.MATCH_DATE_WINDOW_DAYS
        in_window = [
            invoice for invoice in same_amount
            if abs((invoice.invoice_date - transaction_day).days) <= window_days
        ]
        if len(in_window) == 1:
            return (
                in_window[0],
                MatchQuality.PROBABLE,
                f"Only open invoice of {format_money(amount, payment.currency)} within {window_days} days",
            )

        # 4. Same amount, any date
        if len(same_amount) == 1:
            return (
                same_amount[0],
                MatchQuality.FUZZY,
                f"Only open invoice of {format_money(amount, payment.currency)} for the payer",
            )

        if not same_amount:
            return None, MatchQuality.NONE, f"No open invoice of {format_money(amount, payment.currency)} for the payer"
        return (
            None,
            MatchQuality.NONE,
            f"{len(same_amount)} open invoices of {format_money(amount, payment.currency)} for the payer; "
            f"manual allocation required",
        )

    # ==================== Matching ====================

    async def match_payment(self, payment: InboundPayment) -> MatchResult:
        """
        Match one payment and allocate its unallocated balance.

        Already processed payments return their stored result with no writes.
        """
        await self.db.refresh(payment)

        if payment.processed:
            invoice = await self.db.get(Invoice, payment.invoice_id) if payment.invoice_id else None
            return MatchResult(
                payment_id=payment.id,
                invoice=invoice,
                quality=parse_enum(MatchQuality, payment.match_quality, default=MatchQuality.EXACT),
                reason=payment.match_reason or "Payment already processed",
            )

        if payment.status != PaymentStatus.SUCCESS.value:
            return MatchResult(payment.id, None, MatchQuality.NONE, f"Payment status is {payment.status}")

        balance = payment.unallocated_amount
        if balance <= ZERO:
            return MatchResult(payment.id, None, MatchQuality.NONE, "Payment has no unallocated balance")

        payment.last_match_attempt_at = datetime.now(timezone.utc)

        scope = await self.resolve_payer_scope(payment)
        if payment.tenant_id is None and scope.tenant_id is not None:
            payment.tenant_id = scope.tenant_id
        if payment.landlord_id is None and scope.landlord_id is not None:
            payment.landlord_id = scope.landlord_id

        invoice, quality, reason = await self.find_candidate(payment, balance, scope)

        if invoice is not None:
            allocation = await self.apply_allocation(
                payment, invoice, balance, method=AllocationMethod.AUTOMATIC, quality=quality
            )
            if allocation is not None:
                payment.match_quality = quality.value
                payment.match_reason = reason
                if payment.tenant_id is None:
                    payment.tenant_id = invoice.tenant_id
                await self.db.flush()
                await self._notify_payment_received(payment, invoice)
                logger.info(f"Matched payment {payment.transaction_reference} ({quality.value}): {reason}")
                return MatchResult(payment.id, invoice, quality, reason, allocation, balance)
            reason = f"Invoice {invoice.invoice_number} balance changed while matching"

        payment.invoice_id = None
        payment.processed = False
        payment.match_quality = MatchQuality.NONE.value
        payment.match_reason = reason
        await self.db.flush()
        logger.warning(f"Payment {payment.transaction_reference} left unmatched: {reason}")
        return MatchResult(payment.id, None, MatchQuality.NONE, reason)

    async def match_payment_by_id(self, payment_id: uuid.UUID) -> Optional[MatchResult]:
        payment = await self.db.get(InboundPayment, payment_id)
        if payment is None:
            return None
        return await self.match_payment(payment)

    async def reconcile_pending(self, limit: int = 200) -> Dict[str, int]:
        """
        Retry matching for successful payments not yet fully allocated.

        Payments never tried come first, then the least recently tried, so a
        backlog of unmatchable payments cannot starve newer ones. Each payment
        runs in its own SAVEPOINT; a failure rolls back that payment only.
        """
        result = await self.db.execute(
            select(InboundPayment)
            .where(
                InboundPayment.status == PaymentStatus.SUCCESS.value,
                InboundPayment.processed.is_(False),
            )
            .order_by(
                InboundPayment.last_match_attempt_at.asc().nulls_first(),
                InboundPayment.transaction_date,
                InboundPayment.created_at,
            )
            .limit(limit)
        )
        payments = list(result.scalars().all())

        matched = 0
        failed = 0
        for payment in payments:
            payment_id, reference = payment.id, payment.transaction_reference
            try:
                async with self.db.begin_nested():
                    outcome = await self.match_payment(payment)
            except Exception as e:
                failed += 1
                logger.error(f"Matching failed for payment {reference}: {e}")
                await self._record_match_attempt(payment_id, f"Matching failed: {e}")
                continue
            if outcome.matched:
                matched += 1

        logger.info(f"Reconciliation retry: {matched}/{len(payments)} payments matched, {failed} failed")
        return {"examined": len(payments), "matched": matched, "failed": failed}

    async def _record_match_attempt(self, payment_id: uuid.UUID, reason: str) -> None:
        await self.db.execute(
            update(InboundPayment)
            .where(InboundPayment.id == payment_id)
            .values(
                last_match_attempt_at=datetime.now(timezone.utc),
                match_reason=reason,
            )
            .execution_options(synchronize_session=False)
        )

    async def _notify_payment_received(self, payment: InboundPayment, invoice: Invoice) -> None:
        landlord_id = payment.landlord_id or invoice.landlord_id
        if landlord_id is None:
            return
        await self.notifications.notify(
            user_id=landlord_id,
            title="Payment Received",
            message=(
                f"Payment of {format_money(payment.amount, payment.currency)} received via "
                f"{payment.source.upper()} for invoice {invoice.invoice_number}. "
                f"Receipt: {payment.transaction_reference}"
            ),
            related_type="invoice",
            related_id=invoice.id,
            notification_type=NotificationType.PAYMENT_RECEIVED,
        )
