"""
Monthly Service Billing Runner

Bills every landlord with a trial or active subscription for the calendar
month preceding the run date.

Architecture:
- One database session per landlord, from the injected session factory
- Bounded concurrency (asyncio.Semaphore) across landlords
- Failures in one landlord don't affect others; each failure is captured
  in that landlord's result entry
- Idempotent: re-running for a billed period creates nothing new
"""

import asyncio
import logging
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional
import uuid

from sqlalchemy import select

from app.config import settings
from app.core.billing_period import BillingPeriod
from app.models.billing import LandlordSubscription, BILLABLE_SUBSCRIPTION_STATUSES
from app.services.billing_service import BillingService, BillingSettings, InvoiceOutcome

logger = logging.getLogger(__name__)


class MonthlyBillingRunner:
    """
    Executes service-charge billing across all billable landlords.
    """

    def __init__(self, session_factory: Optional[Callable] = None, max_concurrent: Optional[int] = None):
        """
        Args:
            session_factory: Callable returning an AsyncSession context manager
            max_concurrent: Max landlords to bill concurrently
        """
        if session_factory is None:
            from app.database import async_session_factory
            session_factory = async_session_factory
        self.session_factory = session_factory
        self.max_concurrent = max_concurrent or settings.BILLING_MAX_CONCURRENCY
        self._semaphore = asyncio.Semaphore(self.max_concurrent)

    async def load_run_context(self) -> tuple:
        """Billing settings and the landlords to bill, read in one session."""
        async with self.session_factory() as session:
            billing_settings = await BillingService(session).get_billing_settings()
            result = await session.execute(
                select(LandlordSubscription.landlord_id)
                .where(LandlordSubscription.status.in_(BILLABLE_SUBSCRIPTION_STATUSES))
                .order_by(LandlordSubscription.created_at)
            )
            landlord_ids = [row[0] for row in result.all()]
        return billing_settings, landlord_ids

    async def bill_landlord(
        self,
        landlord_id: uuid.UUID,
        period: BillingPeriod,
        billing_settings: BillingSettings,
    ) -> Dict[str, Any]:
        """
        Generate the invoice for one landlord in its own session.

        Returns:
            Result entry with success flag, outcome and error
        """
        start_time = datetime.now(timezone.utc)
        entry: Dict[str, Any] = {
            "landlord_id": str(landlord_id),
            "success": False,
            "outcome": None,
            "invoice_id": None,
            "amount": None,
            "error": None,
        }

        try:
            async with self._semaphore:
                async with self.session_factory() as session:
                    try:
                        service = BillingService(session)
                        generated = await service.generate_service_invoice(
                            landlord_id, period, billing_settings=billing_settings
                        )
                        await session.commit()
                    except Exception:
                        await session.rollback()
                        raise

            entry["success"] = True
            entry["outcome"] = generated.outcome.value
            entry["amount"] = str(generated.total_amount)
            if generated.invoice is not None:
                entry["invoice_id"] = str(generated.invoice.id)

        except Exception as e:
            entry["error"] = str(e)
            logger.error(f"Monthly billing failed for landlord {landlord_id}: {e}")

        entry["duration_ms"] = int((datetime.now(timezone.utc) - start_time).total_seconds() * 1000)
        return entry

    async def run(self, run_date: Optional[date] = None) -> Dict[str, Any]:
        """
        Bill all landlords for the month preceding run_date (default: today, UTC).

        Returns:
            JSON-serialisable summary with per-landlord results
        """
        start_time = datetime.now(timezone.utc)
        billing_settings, landlord_ids = await self.load_run_context()

        if not billing_settings.enabled:
            logger.info("Automated billing is disabled. Monthly billing skipped.")
            return {"status": "disabled", "processed_count": 0, "results": []}

        period = BillingPeriod.previous_month(run_date)
        logger.info(f"Running monthly billing for {period.label}: {len(landlord_ids)} landlords")

        results: List[Dict[str, Any]] = await asyncio.gather(*[
            self.bill_landlord(landlord_id, period, billing_settings)
            for landlord_id in landlord_ids
        ])

        processed_count = sum(1 for r in results if r["outcome"] == InvoiceOutcome.CREATED.value)
        successful = sum(1 for r in results if r["success"])
        failed = len(results) - successful

        end_time = datetime.now(timezone.utc)
        total_duration = int((end_time - start_time).total_seconds() * 1000)

        logger.info(
            f"Monthly billing completed for {period.label}: {processed_count} invoices created, "
            f"{successful}/{len(results)} landlords successful in {total_duration}ms"
        )

        return {
            "status": "completed",
            "billing_period_start": period.start_date.isoformat(),
            "billing_period_end": period.end_date.isoformat(),
            "started_at": start_time.isoformat(),
            "completed_at": end_time.isoformat(),
            "duration_ms": total_duration,
            "landlord_count": len(results),
            "processed_count": processed_count,
            "successful": successful,
            "failed": failed,
            "results": results,
        }


async def run_monthly_billing(
    run_date: Optional[date] = None,
    session_factory: Optional[Callable] = None,
    max_concurrent: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Convenience function used by the scheduler and the trigger endpoint.
    """
    runner = MonthlyBillingRunner(session_factory=session_factory, max_concurrent=max_concurrent)
    return await runner.run(run_date)
