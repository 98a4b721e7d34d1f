"""
Payment Ingestion Service

Maps provider notifications into InboundPaymentData and persists them as
unprocessed InboundPayment rows.

Supported rails:
- M-Pesa STK callback (Safaricom Daraja), via MpesaService
- Jenga IPN (Equity Bank aggregator)
- KCB Buni IPN in three shapes: STK callback, C2B confirmation, generic

Persistence is idempotent on (source, transaction_reference): a redelivered
notification returns the row stored the first time. Matching to invoices is
done afterwards by the ReconciliationService.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Optional

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.exceptions import WebhookPayloadError
from app.core.money import to_decimal
from app.core.phone import normalize_msisdn
from app.models.payment import (
    InboundPayment,
    MpesaTransaction,
    PaymentSource,
    PaymentStatus,
    PAYMENT_CLASSES,
)
from app.schemas.payment import InboundPaymentData
from app.schemas.webhooks import (
    JengaIpnPayload,
    KcbC2BPayload,
    KcbGenericPayload,
    StkCallback,
    StkCallbackEnvelope,
)

logger = logging.getLogger(__name__)

# Safaricom and the Kenyan banks timestamp in East Africa Time
EAT = timezone(timedelta(hours=3), "EAT")

# Variant-only columns, set only on the class that declares them
PROVIDER_FIELDS = ("checkout_request_id", "payment_mode", "bank_reference", "bank_code")


@dataclass
class IngestionResult:
    payment: InboundPayment
    created: bool
    # STK push this notification answers, when we initiated one
    transaction: Optional[MpesaTransaction] = None


def parse_provider_timestamp(value: Any) -> datetime:
    """
    Parse a provider timestamp into an aware UTC datetime.

    Accepts Safaricom's YYYYMMDDHHMMSS (EAT) and ISO 8601; naive ISO values
    are taken as EAT. Unparseable or missing values fall back to now.
    """
    if value is None or value == "":
        return datetime.now(timezone.utc)

    text = str(value).strip()
    try:
        if text.isdigit() and len(text) == 14:
            parsed = datetime.strptime(text, "%Y%m%d%H%M%S").replace(tzinfo=EAT)
        else:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=EAT)
    except ValueError:
        logger.warning(f"Unparseable provider timestamp {text!r}; using receipt time")
        return datetime.now(timezone.utc)

    return parsed.astimezone(timezone.utc)


def _payload_error(source: str, exc: ValidationError) -> WebhookPayloadError:
    fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
    return WebhookPayloadError(f"Invalid {source} payload: {fields}")


class PaymentIngestionService:
    """Provider adapters and idempotent persistence of inbound payments."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ==================== Persistence ====================

    async def find_payment(self, source: PaymentSource, transaction_reference: str) -> Optional[InboundPayment]:
        return await self.db.scalar(
            select(InboundPayment).where(
                InboundPayment.source == source.value,
                InboundPayment.transaction_reference == transaction_reference,
            )
        )

    async def find_stk_transaction(
        self,
        references: Iterable[Optional[str]],
        provider: Optional[PaymentSource] = None,
    ) -> Optional[MpesaTransaction]:
        """STK transaction whose checkout or merchant request id is one of the references."""
        refs = [ref for ref in references if ref]
        if not refs:
            return None
        query = select(MpesaTransaction).where(
            MpesaTransaction.checkout_request_id.in_(refs) | MpesaTransaction.merchant_request_id.in_(refs)
        )
        if provider is not None:
            query = query.where(MpesaTransaction.provider == provider.value)
        return await self.db.scalar(query.order_by(MpesaTransaction.created_at.desc()).limit(1))

    async def ingest(self, data: InboundPaymentData) -> IngestionResult:
        """
        Persist a payment notification exactly once.

        Returns:
            IngestionResult with created=False when the (source, reference)
            pair was already stored
        """
        existing = await self.find_payment(data.source, data.transaction_reference)
        if existing is not None:
            logger.info(f"Duplicate {data.source.value} notification {data.transaction_reference}")
            return IngestionResult(payment=existing, created=False)

        payment_cls = PAYMENT_CLASSES[data.source.value]
        values = data.model_dump(exclude={"source", *PROVIDER_FIELDS})
        values["status"] = data.status.value
        values["customer_mobile"] = normalize_msisdn(data.customer_mobile)
        for field_name in PROVIDER_FIELDS:
            value = getattr(data, field_name)
            if value is not None and hasattr(payment_cls, field_name):
                values[field_name] = value

        payment = payment_cls(processed=False, **values)
        try:
            async with self.db.begin_nested():
                self.db.add(payment)
        except IntegrityError:
            winner = await self.find_payment(data.source, data.transaction_reference)
            if winner is None:
                raise
            logger.info(f"Concurrent {data.source.value} notification {data.transaction_reference} detected")
            return IngestionResult(payment=winner, created=False)

        logger.info(
            f"Stored {data.source.value} payment {data.transaction_reference} "
            f"amount={data.amount} status={data.status.value}"
        )
        return IngestionResult(payment=payment, created=True)

    # ==================== M-Pesa ====================

    def from_mpesa_callback(
        self,
        callback: StkCallback,
        transaction: MpesaTransaction,
        raw_payload: Dict[str, Any],
        ip_address: Optional[str] = None,
    ) -> InboundPaymentData:
        """Successful STK callback for a rent payment initiated by this platform."""
        receipt = callback.receipt_number
        if not receipt:
            raise WebhookPayloadError("Successful STK callback is missing MpesaReceiptNumber")

        amount = callback.amount if callback.amount is not None else transaction.amount
        return InboundPaymentData(
            source=PaymentSource.MPESA,
            transaction_reference=receipt,
            merchant_reference=transaction.account_reference,
            transaction_date=parse_provider_timestamp(callback.transaction_date),
            amount=to_decimal(amount),
            currency=settings.DEFAULT_CURRENCY,
            status=PaymentStatus.SUCCESS,
            customer_mobile=callback.phone_number or transaction.phone_number,
            invoice_id=transaction.invoice_id,
            landlord_id=transaction.landlord_id,
            raw_payload=raw_payload,
            ip_address=ip_address,
            checkout_request_id=callback.checkout_request_id,
        )

    # ==================== Jenga ====================

    def from_jenga(self, payload: Dict[str, Any], ip_address: Optional[str] = None) -> InboundPaymentData:
        try:
            ipn = JengaIpnPayload.model_validate(payload)
        except ValidationError as e:
            raise _payload_error("Jenga IPN", e)

        transaction = ipn.transaction
        customer = ipn.customer
        status = PaymentStatus.SUCCESS if (transaction.status or "").upper() == "SUCCESS" else PaymentStatus.FAILED

        return InboundPaymentData(
            source=PaymentSource.JENGA,
            transaction_reference=transaction.reference,
            merchant_reference=transaction.bill_number or (customer.reference if customer else None),
            transaction_date=parse_provider_timestamp(transaction.date),
            amount=transaction.amount,
            currency=settings.DEFAULT_CURRENCY,
            status=status,
            customer_name=customer.name if customer else None,
            customer_mobile=customer.mobile_number if customer else None,
            raw_payload=payload,
            ip_address=ip_address,
            payment_mode=transaction.payment_mode,
            bank_reference=ipn.bank.reference if ipn.bank else None,
        )

    async def ingest_jenga(self, payload: Dict[str, Any], ip_address: Optional[str] = None) -> IngestionResult:
        """
        Store a Jenga IPN. A notification for one of our Jenga STK pushes
        carries its payment or order reference and inherits its invoice.
        """
        data = self.from_jenga(payload, ip_address)
        transaction = await self.find_stk_transaction(
            [data.transaction_reference, data.merchant_reference], PaymentSource.JENGA
        )
        if transaction is not None:
            data = data.model_copy(update={
                "invoice_id": data.invoice_id or transaction.invoice_id,
                "landlord_id": data.landlord_id or transaction.landlord_id,
                "merchant_reference": transaction.account_reference or data.merchant_reference,
                "customer_mobile": data.customer_mobile or transaction.phone_number,
            })
        result = await self.ingest(data)
        result.transaction = transaction
        return result

    # ==================== KCB ====================

    async def from_kcb(self, payload: Dict[str, Any], ip_address: Optional[str] = None) -> InboundPaymentData:
        """
        KCB notifications arrive in one of three shapes:

        - {"Body": {"stkCallback": ...}}: STK result; the bill reference comes
          from the STK transaction we initiated, when known
        - {"TransID", "TransAmount", "BillRefNumber", ...}: C2B confirmation,
          always a completed payment
        - {"transactionReference", "amount", "billNumber", "status"}: generic
        """
        if not isinstance(payload, dict):
            raise WebhookPayloadError("KCB IPN body must be a JSON object")

        try:
            if isinstance(payload.get("Body"), dict) and "stkCallback" in payload["Body"]:
                return await self._from_kcb_stk(StkCallbackEnvelope.model_validate(payload), payload, ip_address)
            if "TransID" in payload:
                return self._from_kcb_c2b(KcbC2BPayload.model_validate(payload), payload, ip_address)
            return self._from_kcb_generic(KcbGenericPayload.model_validate(payload), payload, ip_address)
        except ValidationError as e:
            raise _payload_error("KCB IPN", e)

    async def _from_kcb_stk(
        self,
        envelope: StkCallbackEnvelope,
        payload: Dict[str, Any],
        ip_address: Optional[str],
    ) -> InboundPaymentData:
        callback = envelope.body.stk_callback
        transaction = await self.find_stk_transaction([callback.checkout_request_id])
        succeeded = callback.result_code == 0
        amount = callback.amount
        if amount is None and transaction is not None:
            amount = transaction.amount
        if amount is None:
            raise WebhookPayloadError("KCB STK callback carries no amount")

        return InboundPaymentData(
            source=PaymentSource.KCB,
            transaction_reference=callback.receipt_number or callback.checkout_request_id,
            merchant_reference=transaction.account_reference if transaction else None,
            transaction_date=parse_provider_timestamp(callback.transaction_date),
            amount=to_decimal(amount),
            currency=settings.DEFAULT_CURRENCY,
            status=PaymentStatus.SUCCESS if succeeded else PaymentStatus.FAILED,
            customer_mobile=callback.phone_number or (transaction.phone_number if transaction else None),
            invoice_id=transaction.invoice_id if transaction else None,
            landlord_id=transaction.landlord_id if transaction else None,
            raw_payload=payload,
            ip_address=ip_address,
            checkout_request_id=callback.checkout_request_id,
            bank_code="kcb",
        )

    def _from_kcb_c2b(self, c2b: KcbC2BPayload, payload: Dict[str, Any], ip_address: Optional[str]) -> InboundPaymentData:
        name = " ".join(part for part in (c2b.first_name, c2b.last_name) if part) or None
        return InboundPaymentData(
            source=PaymentSource.KCB,
            transaction_reference=c2b.trans_id,
            merchant_reference=c2b.bill_ref_number,
            transaction_date=parse_provider_timestamp(c2b.trans_time),
            amount=c2b.trans_amount,
            currency=settings.DEFAULT_CURRENCY,
            status=PaymentStatus.SUCCESS,
            customer_name=name,
            customer_mobile=c2b.msisdn,
            raw_payload=payload,
            ip_address=ip_address,
            bank_code="kcb",
        )

    def _from_kcb_generic(self, generic: KcbGenericPayload, payload: Dict[str, Any], ip_address: Optional[str]) -> InboundPaymentData:
        status = PaymentStatus.SUCCESS if (generic.status or "").upper() == "SUCCESS" else PaymentStatus.FAILED
        return InboundPaymentData(
            source=PaymentSource.KCB,
            transaction_reference=generic.transaction_reference,
            merchant_reference=generic.bill_number,
            transaction_date=parse_provider_timestamp(generic.date),
            amount=generic.amount,
            currency=settings.DEFAULT_CURRENCY,
            status=status,
            customer_name=generic.customer_name,
            customer_mobile=generic.mobile_number,
            raw_payload=payload,
            ip_address=ip_address,
            bank_code="kcb",
        )

    async def ingest_kcb(self, payload: Dict[str, Any], ip_address: Optional[str] = None) -> IngestionResult:
        data = await self.from_kcb(payload, ip_address)
        result = await self.ingest(data)
        if data.checkout_request_id:
            result.transaction = await self.find_stk_transaction([data.checkout_request_id], PaymentSource.KCB)
        return result
