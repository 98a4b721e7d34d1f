from typing import Annotated, NoReturn, Optional
import logging

import httpx
from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import (
    AllocationError,
    BillingConfigurationError,
    BillingEngineError,
    CredentialsNotConfiguredError,
    InvalidAllocationAmountError,
    InvoiceNotFoundError,
    PaymentNotFoundError,
    ProviderUnavailableError,
    TransactionStateError,
    WebhookAuthenticationError,
    WebhookPayloadError,
)
from app.core.security import client_ip
from app.database import get_db


logger = logging.getLogger(__name__)


# Type alias for dependency injection
DB = Annotated[AsyncSession, Depends(get_db)]


def get_client_ip(request: Request) -> str:
    """Originating client address, honouring proxy headers."""
    peer = request.client.host if request.client else None
    return client_ip(request.headers, peer)


ClientIP = Annotated[str, Depends(get_client_ip)]


def error_status_code(exc: BillingEngineError) -> int:
    """HTTP status for a billing engine error."""
    if isinstance(exc, (PaymentNotFoundError, InvoiceNotFoundError)):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, InvalidAllocationAmountError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, AllocationError):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, (WebhookPayloadError, TransactionStateError, BillingConfigurationError)):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, WebhookAuthenticationError):
        return status.HTTP_401_UNAUTHORIZED
    if isinstance(exc, CredentialsNotConfiguredError):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    if isinstance(exc, ProviderUnavailableError):
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def raise_http_error(exc: BillingEngineError) -> NoReturn:
    """Re-raise a billing engine error as an HTTPException."""
    code = error_status_code(exc)
    detail = {"error": exc.message}
    constraint = getattr(exc, "constraint", None)
    if constraint:
        detail["constraint"] = constraint
    if code >= 500:
        logger.error(f"{type(exc).__name__}: {exc.message}")
    raise HTTPException(status_code=code, detail=detail) from exc


def get_provider_http_client() -> Optional[httpx.AsyncClient]:
    """HTTP client for payment-provider calls; None lets services open their own."""
    return None


ProviderHTTPClient = Annotated[Optional[httpx.AsyncClient], Depends(get_provider_http_client)]
