"""SMS usage metering billed on service-charge invoices."""
import logging
from datetime import date, datetime, time, timezone
from decimal import Decimal
import uuid

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.money import ZERO, to_decimal
from app.models.billing import SmsUsageRecord

logger = logging.getLogger(__name__)


class SmsUsageService:
    """Aggregates per-landlord SMS costs over a billing period."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def sum_sms_cost(self, landlord_id: uuid.UUID, period_start: date, period_end: date) -> Decimal:
        """
        Total SMS cost for a landlord with sent_at in
        [period_start 00:00, period_end 23:59:59.999999] UTC.

        Returns 0 when there is no usage.
        """
        starts_at = datetime.combine(period_start, time.min, tzinfo=timezone.utc)
        ends_at = datetime.combine(period_end, time.max, tzinfo=timezone.utc)

        result = await self.db.execute(
            select(func.coalesce(func.sum(SmsUsageRecord.cost), 0)).where(
                SmsUsageRecord.landlord_id == landlord_id,
                SmsUsageRecord.sent_at >= starts_at,
                SmsUsageRecord.sent_at <= ends_at,
            )
        )
        return to_decimal(result.scalar(), default=ZERO)
