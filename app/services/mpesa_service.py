"""
M-Pesa Service - Safaricom Daraja Integration

Handles Lipa na M-Pesa Online (STK push) for rent and service-charge invoices:
- OAuth token + STK push request through httpx; Jenga and KCB pushes go
  through the landlord bank (see bank_stk_service) and share the state machine
- STK transaction state machine: pending -> completed | failed, driven only
  by the provider callback
- Publishing transaction state to subscribers once the caller commits
  (see transaction_events)
- Source IP allow-listing for callbacks
"""

import base64
import ipaddress
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

import httpx
from pydantic import ValidationError
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.exceptions import (
    CredentialsNotConfiguredError,
    InvoiceAlreadySettledError,
    InvoiceNotFoundError,
    ProviderUnavailableError,
    TransactionStateError,
    WebhookPayloadError,
)
from app.core.money import to_decimal, format_money
from app.core.phone import normalize_msisdn, mask_msisdn
from app.models.billing import ServiceChargeInvoice, ServiceInvoiceStatus
from app.models.notifications import NotificationType
from app.models.payment import (
    InboundPayment,
    MpesaPaymentType,
    MpesaTransaction,
    MpesaTransactionStatus,
    PaymentSource,
    PaymentStatus,
)
from app.models.property import Invoice, OPEN_INVOICE_STATUSES
from app.schemas.mpesa import StkPushRequest
from app.schemas.webhooks import StkCallback, StkCallbackEnvelope
from app.services.activity_log_service import ActivityLogService
from app.services.bank_stk_service import BankStkService
from app.services.notification_service import NotificationService
from app.services.payment_credentials_service import MpesaCredentials, PaymentCredentialsService
from app.services.payment_ingestion_service import EAT, IngestionResult, PaymentIngestionService
from app.services.provider_client import ProviderClient, basic_auth
from app.services.transaction_events import (
    TransactionStatusBroker,
    checkout_channel,
    get_transaction_broker,
    invoice_channel,
)

logger = logging.getLogger(__name__)

# Callback metadata amounts may differ from the requested amount by float noise only
AMOUNT_TOLERANCE = Decimal("0.01")


def stk_timestamp(now: Optional[datetime] = None) -> str:
    """Daraja timestamp YYYYMMDDHHMMSS in East Africa Time."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(EAT).strftime("%Y%m%d%H%M%S")


def build_stk_password(shortcode: str, passkey: str, timestamp: str) -> str:
    """base64(shortcode + passkey + timestamp)."""
    return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode()).decode()


def is_allowed_source_ip(ip_address: Optional[str], cidrs: Iterable[str]) -> bool:
    """Whether the callback source address falls in one of the allowed networks."""
    if not ip_address:
        return False
    try:
        address = ipaddress.ip_address(ip_address.strip())
    except ValueError:
        return False
    for cidr in cidrs:
        try:
            if address in ipaddress.ip_network(cidr, strict=False):
                return True
        except ValueError:
            logger.warning(f"Ignoring invalid CIDR in M-Pesa allow-list: {cidr}")
    return False


class DarajaClient(ProviderClient):
    """Minimal Daraja API client."""

    provider_name = "M-Pesa"

    def __init__(
        self,
        credentials: MpesaCredentials,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        super().__init__(http_client=http_client, timeout=timeout)
        self.credentials = credentials

    async def get_access_token(self) -> str:
        url = f"{self.credentials.base_url}/oauth/v1/generate?grant_type=client_credentials"
        authorization = basic_auth(self.credentials.consumer_key, self.credentials.consumer_secret)

        response = await self._request("GET", url, headers={"Authorization": authorization})
        token = self._json(response).get("access_token")
        if response.status_code != 200 or not token:
            logger.error(f"Failed to get M-Pesa token: HTTP {response.status_code}")
            raise ProviderUnavailableError(
                "Failed to authenticate with M-Pesa", status_code=response.status_code
            )
        return token

    async def stk_push(
        self,
        phone_number: str,
        amount: Decimal,
        account_reference: str,
        description: str,
        callback_url: str,
        timestamp: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Submit an STK push.

        Returns:
            Daraja response body (ResponseCode "0" means accepted)
        """
        token = await self.get_access_token()
        timestamp = timestamp or stk_timestamp()
        shortcode = self.credentials.shortcode

        payload = {
            "BusinessShortCode": shortcode,
            "Password": build_stk_password(shortcode, self.credentials.passkey, timestamp),
            "Timestamp": timestamp,
            "TransactionType": self.credentials.transaction_type,
            "Amount": int(amount),
            "PartyA": phone_number,
            "PartyB": shortcode,
            "PhoneNumber": phone_number,
            "CallBackURL": callback_url,
            "AccountReference": account_reference,
            "TransactionDesc": description,
        }

        response = await self._request(
            "POST",
            f"{self.credentials.base_url}/mpesa/stkpush/v1/processrequest",
            json=payload,
            headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
        )
        try:
            return response.json()
        except ValueError:
            raise ProviderUnavailableError(
                "M-Pesa returned a non-JSON STK response", status_code=response.status_code
            )


@dataclass
class CallbackOutcome:
    """What an STK callback did."""
    action: str  # updated | duplicate | recorded_unknown
    transaction: MpesaTransaction
    payment: Optional[InboundPayment] = None
    payment_created: bool = False


class MpesaService:
    """
    STK push initiation and the STK transaction state machine.
    """

    def __init__(
        self,
        db: AsyncSession,
        broker: Optional[TransactionStatusBroker] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        notification_service: Optional[NotificationService] = None,
    ):
        self.db = db
        self.broker = broker or get_transaction_broker()
        self.http_client = http_client
        self.notifications = notification_service or NotificationService(db)
        self.credentials = PaymentCredentialsService(db)
        self.ingestion = PaymentIngestionService(db)
        self.activity = ActivityLogService(db)
        self._pending_states: List[Dict[str, Any]] = []

    # ==================== State ====================

    async def get_transaction(self, checkout_request_id: str) -> Optional[MpesaTransaction]:
        return await self.db.scalar(
            select(MpesaTransaction).where(MpesaTransaction.checkout_request_id == checkout_request_id)
        )

    async def latest_invoice_transaction(self, invoice_id) -> Optional[MpesaTransaction]:
        return await self.db.scalar(
            select(MpesaTransaction)
            .where(
                (MpesaTransaction.invoice_id == invoice_id)
                | (MpesaTransaction.service_charge_invoice_id == invoice_id)
            )
            .order_by(MpesaTransaction.created_at.desc())
            .limit(1)
        )

    @staticmethod
    def transaction_state(transaction: MpesaTransaction) -> Dict[str, Any]:
        """JSON-safe snapshot published to subscribers."""
        invoice_id = transaction.invoice_id or transaction.service_charge_invoice_id
        return {
            "checkout_request_id": transaction.checkout_request_id,
            "status": transaction.status,
            "result_code": transaction.result_code,
            "result_desc": transaction.result_desc,
            "mpesa_receipt_number": transaction.mpesa_receipt_number,
            "amount": str(transaction.amount) if transaction.amount is not None else None,
            "payment_type": transaction.payment_type,
            "provider": transaction.provider,
            "invoice_id": str(invoice_id) if invoice_id else None,
        }

    def queue_state(self, transaction: MpesaTransaction) -> None:
        """Hold a state change until the caller has committed it."""
        self._pending_states.append(self.transaction_state(transaction))

    async def publish_committed(self) -> int:
        """
        Publish the state changes queued by this service.

        Call only after the session has committed; a rolled-back change must
        never reach subscribers.
        """
        states, self._pending_states = self._pending_states, []
        for state in states:
            await self.broker.publish(checkout_channel(state["checkout_request_id"]), state)
            if state["invoice_id"]:
                await self.broker.publish(invoice_channel(state["invoice_id"]), state)
        return len(states)

    # ==================== STK push ====================

    async def initiate_stk_push(self, request: StkPushRequest) -> Tuple[MpesaTransaction, Dict[str, Any]]:
        """
        Send an STK prompt and record the pending transaction.

        The pending state is queued; publish it with publish_committed()
        after the session commits.

        Raises:
            InvoiceNotFoundError / InvoiceAlreadySettledError: invoice cannot be paid
            CredentialsNotConfiguredError: no usable credentials for the chosen rail
            ProviderUnavailableError: provider unreachable or refused the request
        """
        phone_number = normalize_msisdn(request.phone_number)
        landlord_id = request.landlord_id
        account_reference = request.account_reference
        invoice = None

        if request.payment_type == MpesaPaymentType.SERVICE_CHARGE:
            if request.service_charge_invoice_id is None:
                raise InvoiceNotFoundError(request.service_charge_invoice_id)
            service_invoice = await self.db.get(ServiceChargeInvoice, request.service_charge_invoice_id)
            if service_invoice is None:
                raise InvoiceNotFoundError(request.service_charge_invoice_id)
            if service_invoice.status == ServiceInvoiceStatus.PAID.value:
                raise InvoiceAlreadySettledError(f"Service charge invoice {service_invoice.invoice_number} is already paid")
            # Service charges are paid to the platform shortcode
            landlord_id = None
            account_reference = account_reference or "SERVICE"
            description = request.transaction_desc or "Service Charge"
        else:
            if request.invoice_id is not None:
                invoice = await self.db.get(Invoice, request.invoice_id)
                if invoice is None:
                    raise InvoiceNotFoundError(request.invoice_id)
                if invoice.status not in OPEN_INVOICE_STATUSES:
                    raise InvoiceAlreadySettledError(f"Invoice {invoice.invoice_number} is {invoice.status}")
                landlord_id = landlord_id or invoice.landlord_id
                account_reference = account_reference or invoice.invoice_number[:12]
            account_reference = account_reference or "RENT"
            description = request.transaction_desc or "Rent Payment"

        if request.provider == PaymentSource.MPESA:
            response, credentials_source = await self._push_via_daraja(
                landlord_id, phone_number, request.amount, account_reference, description
            )
        else:
            if landlord_id is None:
                raise CredentialsNotConfiguredError(
                    f"{request.provider.value.upper()} STK push needs a landlord; pass landlord_id or invoice_id"
                )
            bank_push = await BankStkService(self.db, http_client=self.http_client).push(
                request.provider,
                landlord_id,
                phone_number,
                request.amount,
                bill_number=invoice.invoice_number if invoice is not None else request.account_reference,
                description=request.transaction_desc,
            )
            response = bank_push.to_response()
            account_reference = bank_push.account_reference
            credentials_source = "landlord"

        transaction = MpesaTransaction(
            checkout_request_id=response["CheckoutRequestID"],
            merchant_request_id=response.get("MerchantRequestID"),
            phone_number=phone_number,
            amount=request.amount,
            account_reference=account_reference,
            payment_type=request.payment_type.value,
            provider=request.provider.value,
            invoice_id=request.invoice_id if request.payment_type == MpesaPaymentType.RENT else None,
            service_charge_invoice_id=(
                request.service_charge_invoice_id
                if request.payment_type == MpesaPaymentType.SERVICE_CHARGE
                else None
            ),
            landlord_id=landlord_id,
            initiated_by=request.initiated_by,
            status=MpesaTransactionStatus.PENDING.value,
        )
        self.db.add(transaction)
        await self.db.flush()

        await self.activity.log_activity(
            user_id=request.initiated_by,
            action="stk_push_initiated",
            entity_type="mpesa_transaction",
            entity_id=transaction.id,
            details={
                "checkout_request_id": transaction.checkout_request_id,
                "amount": str(request.amount),
                "payment_type": request.payment_type.value,
                "provider": request.provider.value,
                "credentials": credentials_source,
            },
        )
        self.queue_state(transaction)

        logger.info(
            f"STK push {transaction.checkout_request_id} sent to {mask_msisdn(phone_number)} "
            f"for {request.amount} via {request.provider.value} ({credentials_source} credentials)"
        )
        return transaction, response

    async def _push_via_daraja(
        self,
        landlord_id: Optional[uuid.UUID],
        phone_number: str,
        amount: Decimal,
        account_reference: str,
        description: str,
    ) -> Tuple[Dict[str, Any], str]:
        credentials = await self.credentials.resolve_credentials(landlord_id)
        if not credentials.callback_url:
            raise CredentialsNotConfiguredError("M-Pesa callback URL is not configured")

        client = DarajaClient(credentials, http_client=self.http_client)
        response = await client.stk_push(
            phone_number=phone_number,
            amount=amount,
            account_reference=account_reference,
            description=description,
            callback_url=credentials.callback_url,
        )

        if str(response.get("ResponseCode")) != "0":
            message = response.get("errorMessage") or response.get("ResponseDescription") or "STK push rejected"
            logger.error(f"STK push rejected for {mask_msisdn(phone_number)}: {message}")
            raise ProviderUnavailableError(f"M-Pesa rejected the STK push: {message}")
        return response, credentials.source

    # ==================== Callback ====================

    async def handle_stk_callback(self, payload: Dict[str, Any], ip_address: Optional[str] = None) -> CallbackOutcome:
        """
        Apply a Daraja STK callback.

        Raises:
            WebhookPayloadError: body is not an STK callback
            TransactionStateError: callback amount differs from the initiated amount
        """
        try:
            envelope = StkCallbackEnvelope.model_validate(payload)
        except ValidationError as e:
            fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
            raise WebhookPayloadError(f"Invalid M-Pesa callback payload: {fields}")
        callback = envelope.body.stk_callback

        succeeded = callback.result_code == 0
        new_status = MpesaTransactionStatus.COMPLETED if succeeded else MpesaTransactionStatus.FAILED

        transaction = await self.get_transaction(callback.checkout_request_id)
        if transaction is None:
            return await self._record_unknown_callback(callback, new_status)

        if transaction.status != MpesaTransactionStatus.PENDING.value:
            logger.info(
                f"Ignoring callback for {callback.checkout_request_id}: already {transaction.status}"
            )
            return CallbackOutcome(action="duplicate", transaction=transaction)

        if succeeded and callback.amount is not None and transaction.amount is not None:
            received = to_decimal(callback.amount)
            if abs(received - to_decimal(transaction.amount)) > AMOUNT_TOLERANCE:
                logger.error(
                    f"Amount mismatch for {callback.checkout_request_id}: "
                    f"expected {transaction.amount}, got {received}"
                )
                raise TransactionStateError(
                    f"Amount mismatch: expected {transaction.amount}, received {received}"
                )

        result = await self.db.execute(
            update(MpesaTransaction)
            .where(
                MpesaTransaction.id == transaction.id,
                MpesaTransaction.status == MpesaTransactionStatus.PENDING.value,
            )
            .values(
                status=new_status.value,
                result_code=callback.result_code,
                result_desc=callback.result_desc,
                mpesa_receipt_number=callback.receipt_number,
                updated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.refresh(transaction)
        if result.rowcount != 1:
            return CallbackOutcome(action="duplicate", transaction=transaction)

        logger.info(f"STK transaction {transaction.checkout_request_id} -> {new_status.value}")
        outcome = CallbackOutcome(action="updated", transaction=transaction)

        if succeeded:
            if transaction.payment_type == MpesaPaymentType.SERVICE_CHARGE.value:
                await self._settle_service_charge(transaction)
            else:
                data = self.ingestion.from_mpesa_callback(callback, transaction, payload, ip_address)
                ingested = await self.ingestion.ingest(data)
                outcome.payment = ingested.payment
                outcome.payment_created = ingested.created

        self.queue_state(transaction)
        return outcome

    async def settle_bank_transaction(self, ingested: IngestionResult) -> bool:
        """
        Complete or fail the Jenga/KCB STK transaction answered by a bank IPN.

        Only a newly stored notification moves the transaction, so a
        redelivered IPN changes nothing. The new state is queued like a
        Daraja callback.
        """
        transaction = ingested.transaction
        if not ingested.created or transaction is None:
            return False

        payment = ingested.payment
        succeeded = payment.status == PaymentStatus.SUCCESS.value
        new_status = MpesaTransactionStatus.COMPLETED if succeeded else MpesaTransactionStatus.FAILED
        result = await self.db.execute(
            update(MpesaTransaction)
            .where(
                MpesaTransaction.id == transaction.id,
                MpesaTransaction.status == MpesaTransactionStatus.PENDING.value,
            )
            .values(
                status=new_status.value,
                result_code=0 if succeeded else 1,
                result_desc=f"{transaction.provider.upper()} notification {payment.transaction_reference}",
                mpesa_receipt_number=payment.transaction_reference if succeeded else None,
                updated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.refresh(transaction)
        if result.rowcount != 1:
            logger.info(f"Bank STK transaction {transaction.checkout_request_id} already {transaction.status}")
            return False

        logger.info(f"Bank STK transaction {transaction.checkout_request_id} -> {new_status.value}")
        self.queue_state(transaction)
        return True

    async def _record_unknown_callback(
        self,
        callback: StkCallback,
        status: MpesaTransactionStatus,
    ) -> CallbackOutcome:
        """Store a callback for a checkout this service never initiated; nothing else is done."""
        logger.warning(f"Callback for unknown checkout {callback.checkout_request_id}; recording it")
        transaction = MpesaTransaction(
            checkout_request_id=callback.checkout_request_id,
            merchant_request_id=callback.merchant_request_id,
            phone_number=normalize_msisdn(callback.phone_number),
            amount=to_decimal(callback.amount, default=None),
            payment_type=MpesaPaymentType.RENT.value,
            status=status.value,
            result_code=callback.result_code,
            result_desc=callback.result_desc,
            mpesa_receipt_number=callback.receipt_number,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(transaction)
        except IntegrityError:
            existing = await self.get_transaction(callback.checkout_request_id)
            if existing is None:
                raise
            return CallbackOutcome(action="duplicate", transaction=existing)

        self.queue_state(transaction)
        return CallbackOutcome(action="recorded_unknown", transaction=transaction)

    async def _settle_service_charge(self, transaction: MpesaTransaction) -> None:
        service_invoice = None
        if transaction.service_charge_invoice_id is not None:
            service_invoice = await self.db.get(ServiceChargeInvoice, transaction.service_charge_invoice_id)
        if service_invoice is None:
            logger.error(
                f"Service charge invoice for {transaction.checkout_request_id} not found; payment not applied"
            )
            return

        if service_invoice.status != ServiceInvoiceStatus.PAID.value:
            service_invoice.status = ServiceInvoiceStatus.PAID.value
            service_invoice.payment_date = datetime.now(timezone.utc)
            service_invoice.payment_method = "M-Pesa"
            service_invoice.mpesa_receipt_number = transaction.mpesa_receipt_number
            await self.db.flush()
            logger.info(f"Service charge invoice {service_invoice.invoice_number} marked paid")

        amount = format_money(transaction.amount or service_invoice.total_amount, service_invoice.currency)
        await self.notifications.notify(
            user_id=service_invoice.landlord_id,
            title="Service Charge Payment Received",
            message=(
                f"Payment of {amount} for service charge invoice {service_invoice.invoice_number} "
                f"received. Receipt: {transaction.mpesa_receipt_number}"
            ),
            related_type="service_charge_invoice",
            related_id=service_invoice.id,
            notification_type=NotificationType.SERVICE_CHARGE_PAID,
        )
        if transaction.phone_number:
            await self.notifications.send_sms(
                transaction.phone_number,
                f"Payment received: {amount} for invoice {service_invoice.invoice_number}. "
                f"M-Pesa receipt: {transaction.mpesa_receipt_number}. Thank you.",
            )
