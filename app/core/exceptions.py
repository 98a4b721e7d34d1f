"""
Billing engine error taxonomy.

- Configuration: missing plan, unknown billing model, missing provider credentials.
  Fatal for the single operation, never for a batch.
- Validation: malformed webhook bodies, over-allocation, illegal state transitions.
  Rejected synchronously with no partial mutation.
- Transient: provider unreachable or timed out. Surfaced to the caller for retry.

Duplicate period invoices and redelivered webhooks are not errors, and match
ambiguity is recorded on the payment rather than raised.
"""
from decimal import Decimal
from typing import Optional
from uuid import UUID


class BillingEngineError(Exception):
    """Base class for all billing and reconciliation errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


# ==================== Configuration ====================

class BillingConfigurationError(BillingEngineError):
    """Landlord subscription, plan or pricing model cannot be resolved."""
    pass


class CredentialsNotConfiguredError(BillingEngineError):
    """Neither landlord nor platform payment credentials are available."""
    pass


# ==================== Validation ====================

class WebhookPayloadError(BillingEngineError):
    """Provider webhook body is malformed or missing required fields."""
    pass


class WebhookAuthenticationError(BillingEngineError):
    """Webhook signature or source address failed verification."""
    pass


class TransactionStateError(BillingEngineError):
    """Provider callback conflicts with the recorded STK transaction."""
    pass


class AllocationError(BillingEngineError):
    """Base class for rejected payment allocations."""
    constraint = "allocation"


class PaymentNotFoundError(AllocationError):
    constraint = "payment_not_found"

    def __init__(self, payment_id: UUID):
        super().__init__(f"Payment {payment_id} not found")
        self.payment_id = payment_id


class InvoiceNotFoundError(AllocationError):
    constraint = "invoice_not_found"

    def __init__(self, invoice_id: UUID):
        super().__init__(f"Invoice {invoice_id} not found")
        self.invoice_id = invoice_id


class InvalidAllocationAmountError(AllocationError):
    constraint = "invalid_amount"


class PaymentNotAllocatableError(AllocationError):
    constraint = "payment_not_successful"


class InsufficientPaymentBalanceError(AllocationError):
    constraint = "insufficient_payment_balance"

    def __init__(self, requested: Decimal, available: Decimal):
        super().__init__(
            f"Allocation of {requested} exceeds the payment's unallocated balance of {available}"
        )
        self.requested = requested
        self.available = available


class InvoiceAlreadySettledError(AllocationError):
    constraint = "invoice_already_settled"


class InvoiceOverAllocationError(AllocationError):
    constraint = "invoice_over_allocation"

    def __init__(self, requested: Decimal, outstanding: Decimal):
        super().__init__(
            f"Allocation of {requested} exceeds the invoice's outstanding amount of {outstanding}"
        )
        self.requested = requested
        self.outstanding = outstanding


# ==================== Transient ====================

class ProviderUnavailableError(BillingEngineError):
    """Payment provider could not be reached or returned a server error."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
