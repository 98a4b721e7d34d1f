"""
Background Jobs Module

Handles scheduled tasks for:
- Monthly service-charge billing
- Retrying automatic matching of unmatched payments
"""

from app.jobs.scheduler import scheduler, start_scheduler, shutdown_scheduler, get_job_status
from app.jobs.billing_runner import MonthlyBillingRunner, run_monthly_billing
from app.jobs.reconciliation_jobs import reconcile_unmatched_payments

__all__ = [
    "scheduler",
    "start_scheduler",
    "shutdown_scheduler",
    "get_job_status",
    "MonthlyBillingRunner",
    "run_monthly_billing",
    "reconcile_unmatched_payments",
]
