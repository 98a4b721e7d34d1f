"""
Payment Credentials Resolution

STK pushes use the landlord's own Daraja app when they have configured one,
otherwise the platform's shared shortcode from settings. Jenga and KCB STK
pushes always use the landlord's bank configuration.
"""
import logging
from dataclasses import dataclass
from typing import Optional
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.exceptions import CredentialsNotConfiguredError
from app.models.payment import LandlordBankConfig, LandlordMpesaConfig, PaymentSource
from app.services.encryption_service import EncryptionError, EncryptionService, get_encryption_service

logger = logging.getLogger(__name__)

SANDBOX_BASE_URL = "https://sandbox.safaricom.co.ke"
PRODUCTION_BASE_URL = "https://api.safaricom.co.ke"

JENGA_SANDBOX_BASE_URL = "https://uat.finserve.africa"
JENGA_PRODUCTION_BASE_URL = "https://api.finserve.africa"
KCB_SANDBOX_BASE_URL = "https://uat.buni.kcbgroup.com"
KCB_PRODUCTION_BASE_URL = "https://buni.kcbgroup.com"


@dataclass(frozen=True)
class MpesaCredentials:
    consumer_key: str
    consumer_secret: str
    shortcode: str
    passkey: str
    shortcode_type: str = "paybill"
    environment: str = "sandbox"
    callback_url: Optional[str] = None
    source: str = "platform"  # landlord | platform

    @property
    def base_url(self) -> str:
        if self.environment.lower().startswith("prod"):
            return PRODUCTION_BASE_URL
        return SANDBOX_BASE_URL

    @property
    def transaction_type(self) -> str:
        if self.shortcode_type == "till":
            return "CustomerBuyGoodsOnline"
        return "CustomerPayBillOnline"

    def __repr__(self):
        return f"<MpesaCredentials {self.source} shortcode={self.shortcode} env={self.environment}>"


@dataclass(frozen=True)
class BankCredentials:
    """A landlord's Jenga or KCB Buni API credentials."""
    bank_code: str  # jenga | kcb
    merchant_code: str
    api_key: str
    consumer_secret: str
    environment: str = "sandbox"

    @property
    def base_url(self) -> str:
        production = self.environment.lower().startswith("prod")
        if self.bank_code == PaymentSource.KCB.value:
            return KCB_PRODUCTION_BASE_URL if production else KCB_SANDBOX_BASE_URL
        return JENGA_PRODUCTION_BASE_URL if production else JENGA_SANDBOX_BASE_URL

    def __repr__(self):
        return f"<BankCredentials {self.bank_code} merchant={self.merchant_code} env={self.environment}>"


def platform_credentials_configured() -> bool:
    return all([
        settings.MPESA_CONSUMER_KEY,
        settings.MPESA_CONSUMER_SECRET,
        settings.MPESA_SHORTCODE,
        settings.MPESA_PASSKEY,
    ])


class PaymentCredentialsService:
    """Resolves which M-Pesa credentials an STK push should use."""

    def __init__(self, db: AsyncSession, encryption: Optional[EncryptionService] = None):
        self.db = db
        self.encryption = encryption or get_encryption_service()

    async def get_landlord_config(self, landlord_id: uuid.UUID) -> Optional[LandlordMpesaConfig]:
        return await self.db.scalar(
            select(LandlordMpesaConfig)
            .where(
                LandlordMpesaConfig.landlord_id == landlord_id,
                LandlordMpesaConfig.is_active.is_(True),
            )
            .order_by(LandlordMpesaConfig.updated_at.desc())
            .limit(1)
        )

    async def resolve_credentials(self, landlord_id: Optional[uuid.UUID] = None) -> MpesaCredentials:
        """
        Landlord configuration first, then platform defaults.

        Raises:
            CredentialsNotConfiguredError: neither is available, or the landlord
                configuration cannot be decrypted
        """
        if landlord_id is not None:
            config = await self.get_landlord_config(landlord_id)
            if config is not None:
                logger.info(f"Using landlord M-Pesa configuration for {landlord_id}")
                try:
                    consumer_key = self.encryption.decrypt(config.consumer_key_encrypted)
                    consumer_secret = self.encryption.decrypt(config.consumer_secret_encrypted)
                    passkey = self.encryption.decrypt(config.passkey_encrypted)
                except EncryptionError as exc:
                    logger.error(f"Cannot decrypt M-Pesa configuration {config.id} for landlord {landlord_id}: {exc}")
                    raise CredentialsNotConfiguredError(
                        "The landlord M-Pesa configuration cannot be decrypted; re-enter the credentials"
                    ) from exc
                return MpesaCredentials(
                    consumer_key=consumer_key,
                    consumer_secret=consumer_secret,
                    shortcode=config.shortcode,
                    passkey=passkey,
                    shortcode_type=config.shortcode_type or "paybill",
                    environment=config.environment or "sandbox",
                    callback_url=config.callback_url or settings.MPESA_CALLBACK_URL or None,
                    source="landlord",
                )

        if platform_credentials_configured():
            return MpesaCredentials(
                consumer_key=settings.MPESA_CONSUMER_KEY,
                consumer_secret=settings.MPESA_CONSUMER_SECRET,
                shortcode=settings.MPESA_SHORTCODE,
                passkey=settings.MPESA_PASSKEY,
                environment=settings.MPESA_ENVIRONMENT,
                callback_url=settings.MPESA_CALLBACK_URL or None,
                source="platform",
            )

        raise CredentialsNotConfiguredError(
            "M-Pesa is not configured for this landlord and no platform credentials are set"
        )

    async def resolve_bank_credentials(self, landlord_id: uuid.UUID, bank: PaymentSource) -> BankCredentials:
        """
        The landlord's active Jenga or KCB configuration; banks have no platform fallback.

        Raises:
            CredentialsNotConfiguredError: no active configuration with API
                credentials, or they cannot be decrypted
        """
        config = await self.db.scalar(
            select(LandlordBankConfig)
            .where(
                LandlordBankConfig.landlord_id == landlord_id,
                LandlordBankConfig.bank_code == bank.value,
                LandlordBankConfig.is_active.is_(True),
            )
            .order_by(LandlordBankConfig.created_at.desc())
            .limit(1)
        )
        if config is None or not (config.api_key_encrypted and config.consumer_secret_encrypted):
            raise CredentialsNotConfiguredError(f"{bank.value.upper()} STK push is not configured for this landlord")

        try:
            api_key = self.encryption.decrypt(config.api_key_encrypted)
            consumer_secret = self.encryption.decrypt(config.consumer_secret_encrypted)
        except EncryptionError as exc:
            logger.error(f"Cannot decrypt {bank.value} configuration {config.id} for landlord {landlord_id}: {exc}")
            raise CredentialsNotConfiguredError(
                f"The landlord {bank.value.upper()} configuration cannot be decrypted; re-enter the credentials"
            ) from exc

        return BankCredentials(
            bank_code=bank.value,
            merchant_code=config.merchant_code,
            api_key=api_key,
            consumer_secret=consumer_secret,
            environment=config.environment or "sandbox",
        )
