"""Tests for STK push initiation and the STK callback state machine."""

import base64
import json
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import func, select

from app.config import settings
from app.core.exceptions import (
    CredentialsNotConfiguredError,
    InvoiceAlreadySettledError,
    InvoiceNotFoundError,
    ProviderUnavailableError,
    TransactionStateError,
    WebhookPayloadError,
)
from app.models.billing import ServiceChargeInvoice
from app.models.notifications import Notification, NotificationType
from app.models.payment import (
    InboundPayment,
    LandlordMpesaConfig,
    MpesaPayment,
    MpesaPaymentType,
    MpesaTransaction,
    MpesaTransactionStatus,
)
from app.schemas.mpesa import StkPushRequest
from app.services.encryption_service import get_encryption_service
from app.services.mpesa_service import (
    MpesaService,
    build_stk_password,
    is_allowed_source_ip,
    stk_timestamp,
)
from app.services.notification_service import NotificationService
from app.services.transaction_events import TransactionStatusBroker, checkout_channel, invoice_channel

CALLBACK_URL = "https://billing.example.co.ke/api/v1/webhooks/mpesa/callback"

STK_ACCEPTED = {
    "MerchantRequestID": "29115-34620561-1",
    "CheckoutRequestID": "ws_CO_191220191020363925",
    "ResponseCode": "0",
    "ResponseDescription": "Success. Request accepted for processing",
    "CustomerMessage": "Success. Request accepted for processing",
}


@pytest.fixture
def platform_credentials(monkeypatch):
    monkeypatch.setattr(settings, "MPESA_CONSUMER_KEY", "platform-key")
    monkeypatch.setattr(settings, "MPESA_CONSUMER_SECRET", "platform-secret")
    monkeypatch.setattr(settings, "MPESA_SHORTCODE", "174379")
    monkeypatch.setattr(settings, "MPESA_PASSKEY", "platform-passkey")
    monkeypatch.setattr(settings, "MPESA_CALLBACK_URL", CALLBACK_URL)


class DarajaStub:
    """httpx.MockTransport handler recording Daraja requests."""

    def __init__(self, stk_response=None, token_status=200, fail_with=None):
        self.requests = []
        self.stk_response = stk_response or STK_ACCEPTED
        self.token_status = token_status
        self.fail_with = fail_with

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with is not None:
            raise self.fail_with(f"{request.url.host} unreachable", request=request)
        if request.url.path == "/oauth/v1/generate":
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"errorMessage": "Invalid credentials"})
            return httpx.Response(200, json={"access_token": "daraja-token", "expires_in": "3599"})
        if request.url.path == "/mpesa/stkpush/v1/processrequest":
            return httpx.Response(200, json=self.stk_response)
        return httpx.Response(404)

    @property
    def stk_body(self):
        return json.loads(self.requests[-1].content)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


async def service_invoice(db, landlord_id, status="pending", total=Decimal("2500")):
    invoice = ServiceChargeInvoice(
        landlord_id=landlord_id,
        invoice_number=f"SCI-202501-{landlord_id.hex[:12].upper()}",
        billing_period_start=date(2025, 1, 1),
        billing_period_end=date(2025, 1, 31),
        amount=total,
        total_amount=total,
        billing_model="fixed_per_unit",
        due_date=date(2025, 2, 14),
        status=status,
    )
    db.add(invoice)
    await db.flush()
    return invoice


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class TestDarajaHelpers:

    def test_password_is_base64_of_shortcode_passkey_timestamp(self):
        password = build_stk_password("174379", "passkey", "20250115143000")
        assert base64.b64decode(password).decode() == "174379passkey20250115143000"

    def test_timestamp_is_east_africa_time(self):
        assert stk_timestamp(datetime(2025, 1, 15, 11, 30, tzinfo=timezone.utc)) == "20250115143000"

    def test_source_ip_allow_list(self):
        cidrs = ["196.201.214.0/24", "196.201.212.0/24"]
        assert is_allowed_source_ip("196.201.214.200", cidrs)
        assert not is_allowed_source_ip("8.8.8.8", cidrs)
        assert not is_allowed_source_ip("not-an-ip", cidrs)
        assert not is_allowed_source_ip(None, cidrs)
        assert is_allowed_source_ip("196.201.212.5", ["bogus", "196.201.212.0/24"])


# ---------------------------------------------------------------------------
# STK push
# ---------------------------------------------------------------------------

class TestStkPush:

    async def test_rent_push_with_platform_credentials(self, db, seed, platform_credentials):
        landlord_id = await seed.landlord()
        _, tenant, lease = await seed.occupied_unit(landlord_id)
        invoice = await seed.invoice(tenant, 1500, lease=lease, landlord_id=landlord_id, invoice_number="INV-2025-000123")
        daraja = DarajaStub()
        broker = TransactionStatusBroker()

        service = MpesaService(db, broker=broker, http_client=daraja.client())

        async with broker.subscribe(invoice_channel(invoice.id)) as queue:
            transaction, response = await service.initiate_stk_push(
                StkPushRequest(phone_number="0712345678", amount=Decimal("1500"), invoice_id=invoice.id)
            )
            assert queue.empty()
            await db.commit()
            assert await service.publish_committed() == 1
            published = queue.get_nowait()

        assert response["ResponseCode"] == "0"
        assert transaction.checkout_request_id == "ws_CO_191220191020363925"
        assert transaction.status == MpesaTransactionStatus.PENDING.value
        assert transaction.phone_number == "254712345678"
        assert transaction.account_reference == "INV-2025-000"
        assert transaction.invoice_id == invoice.id
        assert transaction.landlord_id == landlord_id
        assert published["status"] == "pending"

        token_request = daraja.requests[0]
        expected_basic = base64.b64encode(b"platform-key:platform-secret").decode()
        assert token_request.headers["Authorization"] == f"Basic {expected_basic}"
        assert token_request.url.host == "sandbox.safaricom.co.ke"

        body = daraja.stk_body
        assert daraja.requests[-1].headers["Authorization"] == "Bearer daraja-token"
        assert body["BusinessShortCode"] == "174379"
        assert body["Password"] == build_stk_password("174379", "platform-passkey", body["Timestamp"])
        assert body["TransactionType"] == "CustomerPayBillOnline"
        assert body["Amount"] == 1500
        assert body["PartyA"] == "254712345678"
        assert body["PartyB"] == "174379"
        assert body["CallBackURL"] == CALLBACK_URL
        assert body["AccountReference"] == "INV-2025-000"
        assert body["TransactionDesc"] == "Rent Payment"

    async def test_landlord_credentials_take_precedence(self, db, seed, platform_credentials):
        landlord_id = await seed.landlord()
        encryption = get_encryption_service()
        db.add(LandlordMpesaConfig(
            landlord_id=landlord_id,
            shortcode="600100",
            shortcode_type="till",
            environment="production",
            consumer_key_encrypted=encryption.encrypt("landlord-key"),
            consumer_secret_encrypted=encryption.encrypt("landlord-secret"),
            passkey_encrypted=encryption.encrypt("landlord-passkey"),
            callback_url="https://landlord.example.co.ke/mpesa",
        ))
        await db.flush()
        daraja = DarajaStub()

        await MpesaService(db, broker=TransactionStatusBroker(), http_client=daraja.client()).initiate_stk_push(
            StkPushRequest(phone_number="254712345678", amount=Decimal("2000"), landlord_id=landlord_id)
        )

        expected_basic = base64.b64encode(b"landlord-key:landlord-secret").decode()
        assert daraja.requests[0].headers["Authorization"] == f"Basic {expected_basic}"
        assert daraja.requests[0].url.host == "api.safaricom.co.ke"
        body = daraja.stk_body
        assert body["BusinessShortCode"] == "600100"
        assert body["TransactionType"] == "CustomerBuyGoodsOnline"
        assert body["CallBackURL"] == "https://landlord.example.co.ke/mpesa"
        assert body["AccountReference"] == "RENT"

    async def test_service_charge_push_uses_platform_shortcode(self, db, seed, platform_credentials):
        landlord_id = await seed.landlord()
        invoice = await service_invoice(db, landlord_id)
        daraja = DarajaStub()

        transaction, _ = await MpesaService(db, broker=TransactionStatusBroker(), http_client=daraja.client()).initiate_stk_push(
            StkPushRequest(
                phone_number="0712345678",
                amount=Decimal("2500"),
                payment_type=MpesaPaymentType.SERVICE_CHARGE,
                service_charge_invoice_id=invoice.id,
                landlord_id=landlord_id,
            )
        )

        assert transaction.payment_type == "service_charge"
        assert transaction.service_charge_invoice_id == invoice.id
        assert transaction.invoice_id is None
        assert transaction.landlord_id is None
        assert daraja.stk_body["AccountReference"] == "SERVICE"
        assert daraja.stk_body["TransactionDesc"] == "Service Charge"

    async def test_paid_invoices_cannot_be_pushed(self, db, seed, platform_credentials):
        landlord_id = await seed.landlord()
        _, tenant, lease = await seed.occupied_unit(landlord_id)
        rent_invoice = await seed.invoice(tenant, 1500, lease=lease, outstanding=0, status="paid")
        paid_service_invoice = await service_invoice(db, landlord_id, status="paid")
        service = MpesaService(db, broker=TransactionStatusBroker(), http_client=DarajaStub().client())

        with pytest.raises(InvoiceAlreadySettledError):
            await service.initiate_stk_push(
                StkPushRequest(phone_number="0712345678", amount=Decimal("1500"), invoice_id=rent_invoice.id)
            )
        with pytest.raises(InvoiceAlreadySettledError):
            await service.initiate_stk_push(StkPushRequest(
                phone_number="0712345678",
                amount=Decimal("2500"),
                payment_type=MpesaPaymentType.SERVICE_CHARGE,
                service_charge_invoice_id=paid_service_invoice.id,
            ))
        with pytest.raises(InvoiceNotFoundError):
            await service.initiate_stk_push(
                StkPushRequest(phone_number="0712345678", amount=Decimal("1500"), invoice_id=uuid.uuid4())
            )

    async def test_no_credentials_configured(self, db):
        service = MpesaService(db, broker=TransactionStatusBroker(), http_client=DarajaStub().client())

        with pytest.raises(CredentialsNotConfiguredError):
            await service.initiate_stk_push(StkPushRequest(phone_number="0712345678", amount=Decimal("100")))

    async def test_missing_callback_url(self, db, platform_credentials, monkeypatch):
        monkeypatch.setattr(settings, "MPESA_CALLBACK_URL", "")
        service = MpesaService(db, broker=TransactionStatusBroker(), http_client=DarajaStub().client())

        with pytest.raises(CredentialsNotConfiguredError, match="callback URL"):
            await service.initiate_stk_push(StkPushRequest(phone_number="0712345678", amount=Decimal("100")))

    @pytest.mark.parametrize(
        "daraja",
        [
            DarajaStub(fail_with=httpx.ConnectError),
            DarajaStub(token_status=401),
            DarajaStub(stk_response={"ResponseCode": "1", "ResponseDescription": "Invalid Access Token"}),
        ],
        ids=["unreachable", "token-rejected", "push-rejected"],
    )
    async def test_provider_failures_store_nothing(self, db, platform_credentials, daraja):
        service = MpesaService(db, broker=TransactionStatusBroker(), http_client=daraja.client())

        with pytest.raises(ProviderUnavailableError):
            await service.initiate_stk_push(StkPushRequest(phone_number="0712345678", amount=Decimal("100")))

        assert await db.scalar(select(func.count(MpesaTransaction.id))) == 0

    def test_amount_must_be_whole_shillings(self):
        with pytest.raises(ValueError):
            StkPushRequest(phone_number="0712345678", amount=Decimal("100.50"))


# ---------------------------------------------------------------------------
# Callbacks
# ---------------------------------------------------------------------------

class TestStkCallback:

    async def test_success_completes_transaction_and_stores_payment(self, db, seed, stk_callback):
        landlord_id = await seed.landlord()
        _, tenant, lease = await seed.occupied_unit(landlord_id)
        invoice = await seed.invoice(tenant, 1500, lease=lease, landlord_id=landlord_id)
        await seed.stk_transaction(invoice_id=invoice.id, landlord_id=landlord_id, account_reference="INV-2025-000")
        broker = TransactionStatusBroker()

        service = MpesaService(db, broker=broker)

        async with broker.subscribe(checkout_channel("ws_CO_0001")) as queue:
            outcome = await service.handle_stk_callback(stk_callback(), "196.201.214.200")
            assert queue.empty()
            await db.commit()
            await service.publish_committed()
            published = queue.get_nowait()

        assert outcome.action == "updated"
        transaction = outcome.transaction
        assert transaction.status == "completed"
        assert transaction.result_code == 0
        assert transaction.mpesa_receipt_number == "SAB1CD2EF3"
        assert published["status"] == "completed"
        assert published["mpesa_receipt_number"] == "SAB1CD2EF3"

        payment = outcome.payment
        assert outcome.payment_created is True
        assert isinstance(payment, MpesaPayment)
        assert payment.transaction_reference == "SAB1CD2EF3"
        assert payment.checkout_request_id == "ws_CO_0001"
        assert payment.invoice_id == invoice.id
        assert payment.landlord_id == landlord_id
        assert payment.amount == Decimal("1500")
        assert payment.merchant_reference == "INV-2025-000"
        assert payment.ip_address == "196.201.214.200"
        assert payment.processed is False

    async def test_rolled_back_callback_is_never_published(self, db, seed, stk_callback):
        await seed.stk_transaction()
        await db.commit()
        broker = TransactionStatusBroker()

        async with broker.subscribe(checkout_channel("ws_CO_0001")) as queue:
            outcome = await MpesaService(db, broker=broker).handle_stk_callback(stk_callback())
            assert outcome.transaction.status == "completed"
            await db.rollback()
            assert queue.empty()

        stored = await MpesaService(db, broker=broker).get_transaction("ws_CO_0001")
        assert stored.status == "pending"
        assert await db.scalar(select(func.count(InboundPayment.id))) == 0

    async def test_published_states_are_cleared(self, db, seed, stk_callback):
        await seed.stk_transaction()
        broker = TransactionStatusBroker()
        service = MpesaService(db, broker=broker)

        async with broker.subscribe(checkout_channel("ws_CO_0001")) as queue:
            await service.handle_stk_callback(stk_callback())
            await db.commit()
            assert await service.publish_committed() == 1
            assert await service.publish_committed() == 0
            assert queue.qsize() == 1

    async def test_redelivered_callback_is_a_no_op(self, db, seed, stk_callback):
        await seed.stk_transaction()
        service = MpesaService(db, broker=TransactionStatusBroker())

        await service.handle_stk_callback(stk_callback())
        again = await service.handle_stk_callback(stk_callback())

        assert again.action == "duplicate"
        assert again.payment is None
        assert await db.scalar(select(func.count(InboundPayment.id))) == 1

    async def test_failure_is_terminal(self, db, seed, stk_callback):
        await seed.stk_transaction()
        service = MpesaService(db, broker=TransactionStatusBroker())

        failed = await service.handle_stk_callback(stk_callback(result_code=1032))
        late_success = await service.handle_stk_callback(stk_callback())

        assert failed.action == "updated"
        assert failed.transaction.status == "failed"
        assert failed.transaction.result_code == 1032
        assert failed.transaction.result_desc == "Request cancelled by user"
        assert failed.payment is None
        assert late_success.action == "duplicate"
        assert late_success.transaction.status == "failed"
        assert await db.scalar(select(func.count(InboundPayment.id))) == 0

    async def test_amount_mismatch_leaves_transaction_pending(self, db, seed, stk_callback):
        transaction = await seed.stk_transaction(amount=Decimal("1500"))

        with pytest.raises(TransactionStateError):
            await MpesaService(db, broker=TransactionStatusBroker()).handle_stk_callback(stk_callback(amount=1000))

        await db.refresh(transaction)
        assert transaction.status == "pending"

    async def test_unknown_checkout_is_recorded_only(self, db, stk_callback):
        outcome = await MpesaService(db, broker=TransactionStatusBroker()).handle_stk_callback(
            stk_callback("ws_CO_UNKNOWN", receipt="SXX0000001")
        )

        assert outcome.action == "recorded_unknown"
        assert outcome.transaction.status == "completed"
        assert outcome.transaction.amount == Decimal("1500")
        assert outcome.transaction.phone_number == "254712345678"
        assert outcome.payment is None
        assert await db.scalar(select(func.count(InboundPayment.id))) == 0

    async def test_malformed_callback(self, db):
        with pytest.raises(WebhookPayloadError):
            await MpesaService(db, broker=TransactionStatusBroker()).handle_stk_callback({"Body": {}})

    async def test_service_charge_callback_marks_invoice_paid(self, db, seed, stk_callback, monkeypatch):
        monkeypatch.setattr(settings, "SMS_API_URL", "https://sms.example.co.ke/send")
        sms_requests = []

        def sms_gateway(request):
            sms_requests.append(json.loads(request.content))
            return httpx.Response(200, json={"status": "queued"})

        landlord_id = await seed.landlord()
        invoice = await service_invoice(db, landlord_id)
        await seed.stk_transaction(
            amount=Decimal("2500"),
            payment_type=MpesaPaymentType.SERVICE_CHARGE.value,
            service_charge_invoice_id=invoice.id,
        )
        notifications = NotificationService(db, http_client=httpx.AsyncClient(transport=httpx.MockTransport(sms_gateway)))
        service = MpesaService(db, broker=TransactionStatusBroker(), notification_service=notifications)

        outcome = await service.handle_stk_callback(stk_callback(amount=2500))

        assert outcome.action == "updated"
        assert outcome.payment is None
        await db.refresh(invoice)
        assert invoice.status == "paid"
        assert invoice.payment_method == "M-Pesa"
        assert invoice.mpesa_receipt_number == "SAB1CD2EF3"
        assert invoice.payment_date is not None

        notification = await db.scalar(select(Notification).where(Notification.user_id == landlord_id))
        assert notification.title == "Service Charge Payment Received"
        assert notification.notification_type == NotificationType.SERVICE_CHARGE_PAID.value
        assert "KES 2,500.00" in notification.message

        assert len(sms_requests) == 1
        assert sms_requests[0]["to"] == "254712345678"
        assert "SAB1CD2EF3" in sms_requests[0]["message"]

        assert await db.scalar(select(func.count(InboundPayment.id))) == 0
