"""
Notification Service

Delivers billing and payment notifications:
- In-app notifications stored in the notifications table
- SMS via the configured HTTP gateway (fire-and-forget)

SMS failures are logged and reported as False, never raised into the
billing or payment flow that triggered them.
"""
import logging
from typing import Optional, Dict, Any
import uuid

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.phone import normalize_msisdn, mask_msisdn
from app.models.notifications import Notification, NotificationType

logger = logging.getLogger(__name__)


class NotificationService:
    """
    In-app notifications and SMS delivery.

    The SMS gateway client can be injected for tests; otherwise a short-lived
    httpx.AsyncClient is used per message.
    """

    def __init__(self, db: Optional[AsyncSession] = None, http_client: Optional[httpx.AsyncClient] = None):
        self.db = db
        self.http_client = http_client

    async def notify(
        self,
        user_id: uuid.UUID,
        title: str,
        message: str,
        related_type: Optional[str] = None,
        related_id: Optional[uuid.UUID] = None,
        notification_type: NotificationType = NotificationType.SYSTEM,
        extra_data: Optional[Dict[str, Any]] = None,
    ) -> Notification:
        """
        Create an in-app notification in the current transaction.

        Args:
            user_id: Recipient (landlord or tenant user)
            title: Short title
            message: Body text
            related_type: Related entity type, e.g. "service_charge_invoice"
            related_id: Related entity ID

        Returns:
            The flushed Notification row
        """
        notification = Notification(
            user_id=user_id,
            title=title,
            message=message,
            notification_type=notification_type.value,
            related_type=related_type,
            related_id=related_id,
            extra_data=extra_data or {},
        )
        self.db.add(notification)
        await self.db.flush()
        logger.info(f"[NOTIFICATION] {notification_type.value} to {user_id}: {title}")
        return notification

    async def send_sms(self, phone: str, message: str) -> bool:
        """
        Send an SMS through the gateway.

        Returns:
            True if the gateway accepted the message, False otherwise
        """
        recipient = normalize_msisdn(phone)
        if not recipient:
            logger.warning("SMS not sent: no recipient phone number")
            return False

        if not settings.SMS_API_URL:
            logger.warning("SMS gateway not configured, SMS not sent")
            logger.info(f"DEV MODE - SMS to {mask_msisdn(recipient)}: {message[:50]}...")
            return False

        payload = {
            "to": recipient,
            "from": settings.SMS_SENDER_ID,
            "message": message,
        }
        headers = {
            "Authorization": f"Bearer {settings.SMS_API_KEY}",
            "Content-Type": "application/json",
        }

        try:
            if self.http_client is not None:
                response = await self.http_client.post(settings.SMS_API_URL, json=payload, headers=headers, timeout=10)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(settings.SMS_API_URL, json=payload, headers=headers, timeout=10)
            response.raise_for_status()
            logger.info(f"SMS sent to {mask_msisdn(recipient)}")
            return True
        except Exception as e:
            logger.error(f"Failed to send SMS to {mask_msisdn(recipient)}: {e}")
            return False
