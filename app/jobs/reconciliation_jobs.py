"""
Unmatched Payment Retry Job.

Re-runs automatic matching for successful payments that are still
unallocated, e.g. a payment that arrived before its invoice was issued.

Triggers:
- Interval job (via APScheduler)
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict

from app.database import get_db_session
from app.services.reconciliation_service import ReconciliationService

logger = logging.getLogger(__name__)


async def reconcile_unmatched_payments(limit: int = 200) -> Dict[str, Any]:
    """
    Match pending payments in one session.

    Each payment is matched under its own SAVEPOINT, so the matches that
    succeed are committed even when another payment fails.

    Returns:
        Summary with examined, matched and failed counts
    """
    started_at = datetime.now(timezone.utc)
    async with get_db_session() as db:
        counts = await ReconciliationService(db).reconcile_pending(limit=limit)

    return {
        "started_at": started_at.isoformat(),
        "completed_at": datetime.now(timezone.utc).isoformat(),
        **counts,
    }


async def match_payment_job(payment_id: uuid.UUID) -> None:
    """
    Match one freshly ingested payment.

    Queued as a background task after a webhook has been acknowledged, so
    failures are logged and left for the retry job.
    """
    try:
        async with get_db_session() as db:
            result = await ReconciliationService(db).match_payment_by_id(payment_id)
        if result is not None:
            logger.info(f"Background match for payment {payment_id}: {result.quality.value}")
    except Exception as e:
        logger.error(f"Background match failed for payment {payment_id}: {e}")
