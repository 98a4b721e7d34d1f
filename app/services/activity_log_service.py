import logging
from typing import Optional, Dict, Any
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.audit_log import ActivityLog

logger = logging.getLogger(__name__)


class ActivityLogService:
    """
    Records billing and reconciliation actions in the activity log.

    Logging is best-effort: a failed insert is rolled back to its savepoint and
    logged, never raised into the operation being recorded.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def log_activity(
        self,
        user_id: Optional[uuid.UUID],
        action: str,
        entity_type: str,
        entity_id: Optional[uuid.UUID] = None,
        details: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
    ) -> Optional[ActivityLog]:
        """
        Create an activity log entry.

        Args:
            user_id: ID of the acting user, None for scheduled jobs
            action: The action performed (service_invoice_generated, payment_allocated, ...)
            entity_type: Type of entity acted on
            entity_id: ID of the affected entity
            details: JSON-serialisable context

        Returns:
            The created ActivityLog entry, or None when it could not be written
        """
        entry = ActivityLog(
            user_id=user_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            details=details,
            description=description,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(entry)
        except Exception as e:
            logger.error(f"Failed to write activity log {action} for {entity_type} {entity_id}: {e}")
            return None
        return entry
