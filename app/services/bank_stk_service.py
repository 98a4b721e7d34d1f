"""
Bank STK Push - Equity Jenga and KCB Buni

Both banks can prompt a payer's phone for an M-Pesa payment that settles
into the landlord's bank paybill:
- Jenga: merchant OAuth token, then a checkout request signed with the
  platform RSA key over orderReference + currency + msisdn + amount
- KCB Buni: client-credentials token, then an STK request on the shared KCB
  shortcode with invoice number MERCHANTCODE-BILLNUMBER

MpesaService records the pending transaction under the returned checkout
id; the bank's IPN completes it.
"""
import base64
import logging
import time
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.exceptions import CredentialsNotConfiguredError, ProviderUnavailableError
from app.core.phone import mask_msisdn
from app.models.payment import PaymentSource
from app.services.payment_credentials_service import BankCredentials, PaymentCredentialsService
from app.services.provider_client import ProviderClient, basic_auth

logger = logging.getLogger(__name__)


def generate_reference(prefix: str) -> str:
    """PREFIX + epoch milliseconds + 5 random characters, e.g. OR1736934600000A1B2C."""
    return f"{prefix}{int(time.time() * 1000)}{uuid.uuid4().hex[:5].upper()}"


def sign_jenga_request(data: str, private_key_pem: str) -> str:
    """
    base64 RSA-SHA256 (PKCS#1 v1.5) signature for Jenga's Signature header.

    Raises:
        CredentialsNotConfiguredError: key missing or unusable
    """
    if not private_key_pem:
        raise CredentialsNotConfiguredError("Jenga signing key is not configured")
    try:
        # Keys set through env files often carry literal \n
        key = serialization.load_pem_private_key(private_key_pem.replace("\\n", "\n").encode(), password=None)
        signature = key.sign(data.encode(), padding.PKCS1v15(), hashes.SHA256())
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        logger.error(f"Jenga signing key cannot be used: {e}")
        raise CredentialsNotConfiguredError("Jenga signing key is invalid")
    return base64.b64encode(signature).decode()


@dataclass
class BankStkPush:
    """A bank STK request the bank accepted."""
    provider: PaymentSource
    checkout_request_id: str
    merchant_request_id: str
    account_reference: str
    message: str = "Request accepted"
    response: Dict[str, Any] = field(default_factory=dict)

    def to_response(self) -> Dict[str, Any]:
        """Daraja-shaped summary, so callers treat every rail alike."""
        return {
            "ResponseCode": "0",
            "ResponseDescription": self.message,
            "CustomerMessage": "STK push sent. Check your phone.",
            "CheckoutRequestID": self.checkout_request_id,
            "MerchantRequestID": self.merchant_request_id,
        }


class JengaClient(ProviderClient):
    """Jenga API checkout client."""

    provider_name = "Jenga"

    def __init__(
        self,
        credentials: BankCredentials,
        private_key: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        super().__init__(http_client=http_client, timeout=timeout)
        self.credentials = credentials
        self.private_key = private_key

    async def get_access_token(self) -> str:
        response = await self._request(
            "POST",
            f"{self.credentials.base_url}/authentication/api/v3/authenticate/merchant",
            headers={"Authorization": basic_auth(self.credentials.api_key, self.credentials.consumer_secret)},
            data={"grant_type": "client_credentials"},
        )
        data = self._json(response)
        token = data.get("accessToken") or data.get("access_token")
        if response.status_code != 200 or not token:
            logger.error(f"Failed to get Jenga token: HTTP {response.status_code}")
            raise ProviderUnavailableError("Failed to authenticate with Jenga", status_code=response.status_code)
        return token

    async def stk_push(
        self,
        phone_number: str,
        amount: Decimal,
        bill_number: str,
        description: str,
        callback_url: str,
        order_reference: str,
        payment_reference: str,
    ) -> Dict[str, Any]:
        token = await self.get_access_token()
        amount = int(amount)
        signature = sign_jenga_request(f"{order_reference}KES{phone_number}{amount}", self.private_key)

        payload = {
            "order": {
                "orderReference": order_reference,
                "orderAmount": amount,
                "orderCurrency": "KES",
                "source": "APICHECKOUT",
                "countryCode": "KE",
                "description": description,
            },
            "customer": {
                "name": "Tenant",
                "phoneNumber": phone_number,
            },
            "payment": {
                "paymentReference": payment_reference,
                "paymentCurrency": "KES",
                "channel": "MOBILE",
                "service": "MPESA",
                "provider": "JENGA",
                "callbackUrl": callback_url,
                "details": {
                    "msisdn": phone_number,
                    "paymentAmount": amount,
                },
            },
        }

        response = await self._request(
            "POST",
            f"{self.credentials.base_url}/api-checkout/mpesa-stk-push/v3.0/init",
            json=payload,
            headers={"Authorization": f"Bearer {token}", "Signature": signature},
        )
        data = self._json(response)
        if response.status_code >= 400 or data.get("status") is False:
            message = data.get("message") or "STK push request failed"
            logger.error(f"Jenga STK push rejected for {mask_msisdn(phone_number)}: {message} ({data.get('code')})")
            raise ProviderUnavailableError(f"Jenga rejected the STK push: {message}", status_code=response.status_code)
        return data


class KcbClient(ProviderClient):
    """KCB Buni STK client."""

    provider_name = "KCB"

    def __init__(
        self,
        credentials: BankCredentials,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        super().__init__(http_client=http_client, timeout=timeout)
        self.credentials = credentials

    async def get_access_token(self) -> str:
        response = await self._request(
            "POST",
            f"{self.credentials.base_url}/token?grant_type=client_credentials",
            headers={"Authorization": basic_auth(self.credentials.api_key, self.credentials.consumer_secret)},
        )
        token = self._json(response).get("access_token")
        if response.status_code != 200 or not token:
            logger.error(f"Failed to get KCB token: HTTP {response.status_code}")
            raise ProviderUnavailableError("Failed to authenticate with KCB", status_code=response.status_code)
        return token

    async def stk_push(
        self,
        phone_number: str,
        amount: Decimal,
        invoice_number: str,
        description: str,
        callback_url: str,
        org_shortcode: str,
    ) -> Dict[str, Any]:
        token = await self.get_access_token()
        payload = {
            "phoneNumber": phone_number,
            "amount": str(int(amount)),
            "invoiceNumber": invoice_number,
            "sharedShortCode": True,
            "orgShortCode": org_shortcode,
            "callbackUrl": callback_url,
            "transactionDescription": description,
        }

        response = await self._request(
            "POST",
            f"{self.credentials.base_url}/mm/api/request/1.0.0/stkpush",
            json=payload,
            headers={"Authorization": f"Bearer {token}"},
        )
        data = self._json(response)
        if response.status_code >= 400:
            message = data.get("message") or data.get("error") or "STK push request failed"
            logger.error(f"KCB STK push rejected for {mask_msisdn(phone_number)}: {message}")
            raise ProviderUnavailableError(f"KCB rejected the STK push: {message}", status_code=response.status_code)
        # Buni wraps the Daraja-style body in "response"
        body = data.get("response")
        return body if isinstance(body, dict) else data


class BankStkService:
    """Sends Jenga and KCB STK pushes with the landlord's bank credentials."""

    def __init__(
        self,
        db: AsyncSession,
        http_client: Optional[httpx.AsyncClient] = None,
        credentials_service: Optional[PaymentCredentialsService] = None,
    ):
        self.db = db
        self.http_client = http_client
        self.credentials = credentials_service or PaymentCredentialsService(db)

    async def push(
        self,
        bank: PaymentSource,
        landlord_id: uuid.UUID,
        phone_number: str,
        amount: Decimal,
        bill_number: Optional[str] = None,
        description: Optional[str] = None,
    ) -> BankStkPush:
        """
        Send an STK prompt through the landlord's bank.

        Raises:
            CredentialsNotConfiguredError: no bank configuration, signing key or callback URL
            ProviderUnavailableError: bank unreachable or refused the request
        """
        if bank == PaymentSource.JENGA:
            if not settings.JENGA_CALLBACK_URL:
                raise CredentialsNotConfiguredError("Jenga callback URL is not configured")
            if not settings.JENGA_PRIVATE_KEY:
                raise CredentialsNotConfiguredError("Jenga signing key is not configured")
            credentials = await self.credentials.resolve_bank_credentials(landlord_id, bank)
            return await self._push_jenga(credentials, phone_number, amount, bill_number, description)

        if bank == PaymentSource.KCB:
            if not settings.KCB_CALLBACK_URL:
                raise CredentialsNotConfiguredError("KCB callback URL is not configured")
            credentials = await self.credentials.resolve_bank_credentials(landlord_id, bank)
            return await self._push_kcb(credentials, phone_number, amount, bill_number, description)

        raise ValueError(f"{bank.value} has no bank STK API")

    async def _push_jenga(
        self,
        credentials: BankCredentials,
        phone_number: str,
        amount: Decimal,
        bill_number: Optional[str],
        description: Optional[str],
    ) -> BankStkPush:
        order_reference = generate_reference("OR")
        payment_reference = generate_reference("PAY")
        bill_number = bill_number or order_reference

        client = JengaClient(credentials, settings.JENGA_PRIVATE_KEY, http_client=self.http_client)
        data = await client.stk_push(
            phone_number=phone_number,
            amount=amount,
            bill_number=bill_number,
            description=description or f"Payment for {bill_number}",
            callback_url=settings.JENGA_CALLBACK_URL,
            order_reference=order_reference,
            payment_reference=payment_reference,
        )

        logger.info(f"Jenga STK push {payment_reference} sent to {mask_msisdn(phone_number)} for {amount}")
        return BankStkPush(
            provider=PaymentSource.JENGA,
            checkout_request_id=payment_reference,
            merchant_request_id=order_reference,
            account_reference=bill_number,
            message=data.get("message") or "Request accepted",
            response=data,
        )

    async def _push_kcb(
        self,
        credentials: BankCredentials,
        phone_number: str,
        amount: Decimal,
        bill_number: Optional[str],
        description: Optional[str],
    ) -> BankStkPush:
        merchant_request_id = generate_reference("KCB")
        bill_number = bill_number or merchant_request_id
        invoice_number = f"{credentials.merchant_code}-{bill_number}"

        client = KcbClient(credentials, http_client=self.http_client)
        data = await client.stk_push(
            phone_number=phone_number,
            amount=amount,
            invoice_number=invoice_number,
            description=description or f"Rent payment - {bill_number}",
            callback_url=settings.KCB_CALLBACK_URL,
            org_shortcode=settings.KCB_ORG_SHORTCODE,
        )

        checkout_request_id = (
            data.get("CheckoutRequestID") or data.get("checkoutRequestID") or merchant_request_id
        )
        logger.info(f"KCB STK push {checkout_request_id} sent to {mask_msisdn(phone_number)} for {amount}")
        return BankStkPush(
            provider=PaymentSource.KCB,
            checkout_request_id=checkout_request_id,
            merchant_request_id=merchant_request_id,
            account_reference=invoice_number,
            message=data.get("ResponseDescription") or "Request accepted",
            response=data,
        )
