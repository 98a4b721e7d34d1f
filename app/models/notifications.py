"""Database models for in-app notifications."""
from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, String, Text, DateTime, Boolean, Index

from app.database import Base
from app.db_types import JSONType, UUIDType


class NotificationType(str, Enum):
    """Types of notifications raised by billing and reconciliation."""
    SERVICE_CHARGE_INVOICE = "service_charge_invoice"
    SERVICE_CHARGE_PAID = "service_charge_paid"
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_UNMATCHED = "payment_unmatched"
    SYSTEM = "system"


class Notification(Base):
    """
    Notification shown to a landlord or tenant in the property app.
    """
    __tablename__ = "notifications"

    id = Column(UUIDType, primary_key=True, default=uuid4)

    # Recipient
    user_id = Column(UUIDType, nullable=False, index=True)

    # Notification content
    title = Column(String(200), nullable=False)
    message = Column(Text, nullable=False)
    notification_type = Column(String(50), default=NotificationType.SYSTEM.value, nullable=False)

    # Reference to related entity
    related_type = Column(String(50))  # e.g., "service_charge_invoice", "inbound_payment"
    related_id = Column(UUIDType)

    extra_data = Column(JSONType, default=dict)

    # Status
    is_read = Column(Boolean, default=False, nullable=False)
    read_at = Column(DateTime(timezone=True))

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    __table_args__ = (
        Index('ix_notifications_user_unread', 'user_id', 'is_read'),
        Index('ix_notifications_related', 'related_type', 'related_id'),
    )
