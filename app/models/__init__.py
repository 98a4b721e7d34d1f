"""SQLAlchemy models. Importing this package registers every table on Base.metadata."""
from app.models.audit_log import ActivityLog
from app.models.billing import (
    AutomatedBillingSettings,
    BillingModel,
    BillingPlan,
    LandlordSubscription,
    ServiceChargeInvoice,
    ServiceInvoiceStatus,
    SmsUsageRecord,
    SubscriptionStatus,
)
from app.models.notifications import Notification, NotificationType
from app.models.payment import (
    AllocationMethod,
    InboundPayment,
    JengaPayment,
    KcbPayment,
    LandlordBankConfig,
    LandlordMpesaConfig,
    MatchQuality,
    MpesaPayment,
    MpesaPaymentType,
    MpesaTransaction,
    MpesaTransactionStatus,
    PaymentAllocation,
    PaymentSource,
    PaymentStatus,
)
from app.models.property import (
    Invoice,
    InvoiceStatus,
    Lease,
    LeaseStatus,
    Property,
    RentPayment,
    Tenant,
    Unit,
)

__all__ = [
    "ActivityLog",
    "AllocationMethod",
    "AutomatedBillingSettings",
    "BillingModel",
    "BillingPlan",
    "InboundPayment",
    "Invoice",
    "InvoiceStatus",
    "JengaPayment",
    "KcbPayment",
    "LandlordBankConfig",
    "LandlordMpesaConfig",
    "LandlordSubscription",
    "Lease",
    "LeaseStatus",
    "MatchQuality",
    "MpesaPayment",
    "MpesaPaymentType",
    "MpesaTransaction",
    "MpesaTransactionStatus",
    "Notification",
    "NotificationType",
    "PaymentAllocation",
    "PaymentSource",
    "PaymentStatus",
    "Property",
    "RentPayment",
    "ServiceChargeInvoice",
    "ServiceInvoiceStatus",
    "SmsUsageRecord",
    "SubscriptionStatus",
    "Tenant",
    "Unit",
]
