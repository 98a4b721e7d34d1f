# Services module
from app.services.billing_service import BillingService
from app.services.payment_ingestion_service import PaymentIngestionService
from app.services.reconciliation_service import ReconciliationService
from app.services.allocation_service import AllocationService
from app.services.mpesa_service import MpesaService
from app.services.payment_credentials_service import PaymentCredentialsService

# Collaborators
from app.services.notification_service import NotificationService
from app.services.activity_log_service import ActivityLogService
from app.services.sms_usage_service import SmsUsageService
from app.services.encryption_service import EncryptionService

__all__ = [
    "BillingService",
    "PaymentIngestionService",
    "ReconciliationService",
    "AllocationService",
    "MpesaService",
    "PaymentCredentialsService",
    # Collaborators
    "NotificationService",
    "ActivityLogService",
    "SmsUsageService",
    "EncryptionService",
]
