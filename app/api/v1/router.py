from fastapi import APIRouter

from app.api.v1.endpoints import (
    # Platform billing
    service_billing,
    # Payment rails
    payment_webhooks,
    mpesa,
    # Reconciliation
    reconciliation,
)

api_router = APIRouter(prefix="/api/v1")

# ==================== Service Billing ====================
api_router.include_router(
    service_billing.router,
    prefix="/service-billing",
    tags=["Service Billing"]
)

# ==================== Payment Webhooks ====================
api_router.include_router(
    payment_webhooks.router,
    prefix="/webhooks",
    tags=["Payment Webhooks"]
)

# ==================== M-Pesa ====================
api_router.include_router(
    mpesa.router,
    prefix="/mpesa",
    tags=["M-Pesa"]
)

# ==================== Reconciliation ====================
api_router.include_router(
    reconciliation.router,
    prefix="/reconciliation",
    tags=["Reconciliation"]
)
