"""
Shared fixtures for the billing engine test suite.

Every test gets a fresh in-memory SQLite database (aiosqlite) with the full
schema, seed helpers for landlords, properties, tenants, invoices and
payments, and an ASGI client wired to the same database. No external
services are contacted.
"""

import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["RECONCILE_ON_INGEST"] = "false"
os.environ["MPESA_VALIDATE_SOURCE_IP"] = "false"
os.environ["MPESA_CONSUMER_KEY"] = ""
os.environ["MPESA_CONSUMER_SECRET"] = ""
os.environ["MPESA_SHORTCODE"] = ""
os.environ["MPESA_PASSKEY"] = ""
os.environ["MPESA_CALLBACK_URL"] = ""
os.environ["SMS_API_URL"] = ""
os.environ["ENCRYPTION_SECRET"] = "test-encryption-secret"

import uuid
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app import models  # noqa: F401
from app.api.deps import get_provider_http_client
from app.database import Base, custom_json_dumps, get_db, get_session_factory
from app.main import app
from app.models.billing import (
    BillingModel,
    BillingPlan,
    LandlordSubscription,
    SmsUsageRecord,
    SubscriptionStatus,
)
from app.models.payment import (
    LandlordBankConfig,
    MpesaTransaction,
    MpesaTransactionStatus,
    PAYMENT_CLASSES,
    PaymentSource,
    PaymentStatus,
)
from app.models.property import Invoice, Lease, Property, RentPayment, Tenant, Unit


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
async def engine():
    """In-memory database shared by every session of one test."""
    test_engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
        json_serializer=custom_json_dumps,
    )

    # pysqlite's own transaction handling breaks SAVEPOINTs; emit BEGIN ourselves
    @event.listens_for(test_engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(test_engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Seed helpers
# ---------------------------------------------------------------------------

class Seeder:
    """Creates the property-management rows billing and matching read."""

    def __init__(self, session: AsyncSession):
        self.db = session
        self._invoice_counter = 0

    async def plan(self, billing_model=BillingModel.PERCENTAGE, **values) -> BillingPlan:
        plan = BillingPlan(
            name=values.pop("name", f"{billing_model.value} plan"),
            billing_model=billing_model.value,
            **values,
        )
        self.db.add(plan)
        await self.db.flush()
        return plan

    async def landlord(
        self,
        billing_model=BillingModel.PERCENTAGE,
        status=SubscriptionStatus.ACTIVE,
        with_plan: bool = True,
        **plan_values,
    ) -> uuid.UUID:
        """A landlord subscribed to a fresh plan; returns the landlord id."""
        landlord_id = uuid.uuid4()
        plan = await self.plan(billing_model, **plan_values) if with_plan else None
        self.db.add(LandlordSubscription(
            landlord_id=landlord_id,
            billing_plan_id=plan.id if plan else None,
            status=status.value,
        ))
        await self.db.flush()
        return landlord_id

    async def property_with_units(self, landlord_id: uuid.UUID, units=("A1",), name="Sunrise Apartments"):
        prop = Property(name=name, owner_id=landlord_id)
        self.db.add(prop)
        await self.db.flush()
        unit_rows = []
        for number in units:
            unit = Unit(property_id=prop.id, unit_number=number)
            self.db.add(unit)
            unit_rows.append(unit)
        await self.db.flush()
        return prop, unit_rows

    async def tenant(self, phone="254712345678", name="Jane Wanjiku") -> Tenant:
        tenant = Tenant(name=name, phone=phone)
        self.db.add(tenant)
        await self.db.flush()
        return tenant

    async def lease(self, unit: Unit, tenant: Tenant, monthly_rent=Decimal("25000")) -> Lease:
        lease = Lease(unit_id=unit.id, tenant_id=tenant.id, monthly_rent=monthly_rent, start_date=date(2024, 1, 1))
        self.db.add(lease)
        await self.db.flush()
        return lease

    async def occupied_unit(self, landlord_id: uuid.UUID, unit_number="A1", phone="254712345678"):
        """Property with one unit, a tenant and an active lease."""
        _, (unit,) = await self.property_with_units(landlord_id, units=(unit_number,))
        tenant = await self.tenant(phone=phone)
        lease = await self.lease(unit, tenant)
        return unit, tenant, lease

    async def invoice(
        self,
        tenant: Tenant,
        amount,
        lease: Lease = None,
        landlord_id: uuid.UUID = None,
        invoice_number: str = None,
        invoice_date=date(2025, 1, 1),
        outstanding=None,
        status="pending",
    ) -> Invoice:
        self._invoice_counter += 1
        amount = Decimal(str(amount))
        invoice = Invoice(
            invoice_number=invoice_number or f"INV-2025-{self._invoice_counter:04d}",
            tenant_id=tenant.id,
            lease_id=lease.id if lease else None,
            landlord_id=landlord_id,
            invoice_date=invoice_date,
            due_date=invoice_date + timedelta(days=5),
            amount=amount,
            outstanding_amount=Decimal(str(outstanding)) if outstanding is not None else amount,
            status=status,
        )
        self.db.add(invoice)
        await self.db.flush()
        return invoice

    async def rent_payment(self, lease: Lease, amount, paid_at: datetime, status="completed", payment_type="rent"):
        payment = RentPayment(
            lease_id=lease.id,
            amount=Decimal(str(amount)),
            payment_date=paid_at,
            status=status,
            payment_type=payment_type,
        )
        self.db.add(payment)
        await self.db.flush()
        return payment

    async def sms(self, landlord_id: uuid.UUID, cost, sent_at: datetime):
        record = SmsUsageRecord(landlord_id=landlord_id, recipient="254700000000", cost=Decimal(str(cost)), sent_at=sent_at)
        self.db.add(record)
        await self.db.flush()
        return record

    async def payment(
        self,
        amount,
        source=PaymentSource.JENGA,
        reference: str = None,
        merchant_reference: str = None,
        mobile: str = None,
        transaction_date=datetime(2025, 1, 3, 9, 0, tzinfo=timezone.utc),
        status=PaymentStatus.SUCCESS,
        **values,
    ):
        payment = PAYMENT_CLASSES[source.value](
            transaction_reference=reference or f"TX{uuid.uuid4().hex[:10].upper()}",
            merchant_reference=merchant_reference,
            transaction_date=transaction_date,
            amount=Decimal(str(amount)),
            status=status.value,
            customer_mobile=mobile,
            processed=False,
            **values,
        )
        self.db.add(payment)
        await self.db.flush()
        return payment

    async def bank_config(self, landlord_id: uuid.UUID, merchant_code="ACME", bank_code="jenga", **values):
        config = LandlordBankConfig(
            landlord_id=landlord_id, merchant_code=merchant_code, bank_code=bank_code, **values
        )
        self.db.add(config)
        await self.db.flush()
        return config

    async def stk_transaction(
        self,
        checkout_request_id="ws_CO_0001",
        amount=Decimal("1500"),
        status=MpesaTransactionStatus.PENDING,
        **values,
    ) -> MpesaTransaction:
        transaction = MpesaTransaction(
            checkout_request_id=checkout_request_id,
            merchant_request_id="29115-34620561-1",
            phone_number=values.pop("phone_number", "254712345678"),
            amount=amount,
            status=status.value,
            **values,
        )
        self.db.add(transaction)
        await self.db.flush()
        return transaction


@pytest.fixture
def seed(db):
    return Seeder(db)


# ---------------------------------------------------------------------------
# Provider payload fixtures
# ---------------------------------------------------------------------------

def stk_callback_payload(
    checkout_request_id="ws_CO_0001",
    result_code=0,
    amount=1500,
    receipt="SAB1CD2EF3",
    phone=254712345678,
    transaction_date=20250115143000,
):
    callback = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": "The service request is processed successfully." if result_code == 0 else "Request cancelled by user",
    }
    if result_code == 0:
        callback["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": amount},
                {"Name": "MpesaReceiptNumber", "Value": receipt},
                {"Name": "TransactionDate", "Value": transaction_date},
                {"Name": "PhoneNumber", "Value": phone},
            ]
        }
    return {"Body": {"stkCallback": callback}}


@pytest.fixture
def stk_callback():
    """Builder for Daraja STK callback bodies."""
    return stk_callback_payload


@pytest.fixture
def jenga_payload():
    return {
        "callbackType": "IPN",
        "customer": {"name": "JANE WANJIKU", "mobileNumber": "0712345678", "reference": "ACME-A1"},
        "transaction": {
            "date": "2025-01-15T14:30:00",
            "reference": "JNG000123456",
            "paymentMode": "MPESA",
            "amount": "25000.00",
            "billNumber": "INV-2025-0001",
            "status": "SUCCESS",
            "remarks": "Rent",
        },
        "bank": {"reference": "EQ-998877", "transactionType": "C", "account": "1180000000000"},
    }


@pytest.fixture
def kcb_c2b_payload():
    return {
        "TransactionType": "Pay Bill",
        "TransID": "RKT4ABC123",
        "TransTime": "20250115143000",
        "TransAmount": "1500.00",
        "BusinessShortCode": "522522",
        "BillRefNumber": "ACME-A1",
        "MSISDN": "0712345678",
        "FirstName": "JANE",
        "LastName": "WANJIKU",
    }


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------

@pytest.fixture
def provider_client_holder():
    """Lets a test install an httpx client backed by MockTransport for provider calls."""
    return {"client": None}


@pytest.fixture
async def client(session_factory, provider_client_holder):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_provider_http_client] = lambda: provider_client_holder["client"]

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client

    app.dependency_overrides.clear()
