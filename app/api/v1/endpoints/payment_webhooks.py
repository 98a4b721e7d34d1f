"""
Payment provider webhook endpoints.

Handles:
- M-Pesa Daraja STK callbacks (source IP allow-list)
- Equity Jenga IPN (optional X-Jenga-Signature HMAC)
- KCB Buni IPN (optional X-KCB-Signature HMAC)

A bank IPN answering one of our Jenga/KCB STK pushes also completes that
transaction; its state is published once committed.

Every notification is persisted and committed before the provider is
acknowledged. Matching runs afterwards as a background task.
"""

import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Header, HTTPException, Request, status

from app.api.deps import DB, ClientIP, raise_http_error
from app.config import settings
from app.core.exceptions import BillingEngineError
from app.core.security import verify_webhook_signature
from app.jobs.reconciliation_jobs import match_payment_job
from app.schemas.webhooks import WebhookAck
from app.services.mpesa_service import MpesaService, is_allowed_source_ip
from app.services.payment_ingestion_service import IngestionResult

logger = logging.getLogger(__name__)


router = APIRouter(tags=["Payment Webhooks"])


async def _read_json(request: Request) -> tuple:
    body = await request.body()
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid JSON payload"
        )
    if not isinstance(payload, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Webhook payload must be a JSON object"
        )
    return body, payload


def _check_signature(provider: str, body: bytes, signature: Optional[str], secret: Optional[str]) -> None:
    if not verify_webhook_signature(body, signature, secret):
        logger.warning(f"{provider} webhook signature verification failed")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature"
        )


def _queue_match(background_tasks: BackgroundTasks, ingested: IngestionResult) -> None:
    if ingested.created and ingested.payment.is_unmatched and settings.RECONCILE_ON_INGEST:
        background_tasks.add_task(match_payment_job, ingested.payment.id)


def _ack(ingested: IngestionResult) -> WebhookAck:
    return WebhookAck(
        message="Duplicate notification" if not ingested.created else "Accepted",
        payment_id=str(ingested.payment.id),
        duplicate=not ingested.created,
    )


@router.post(
    "/mpesa/callback",
    summary="M-Pesa STK callback",
    include_in_schema=False,
)
async def mpesa_callback(
    request: Request,
    db: DB,
    background_tasks: BackgroundTasks,
    ip_address: ClientIP,
) -> Dict[str, Any]:
    """
    Apply a Daraja STK result.

    Redelivered callbacks for a settled transaction are acknowledged
    without changes.
    """
    if settings.MPESA_VALIDATE_SOURCE_IP and not is_allowed_source_ip(ip_address, settings.MPESA_ALLOWED_CIDRS):
        logger.warning(f"M-Pesa callback rejected from {ip_address}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Source address not allowed"
        )

    _, payload = await _read_json(request)

    service = MpesaService(db)
    try:
        outcome = await service.handle_stk_callback(payload, ip_address)
    except BillingEngineError as e:
        raise_http_error(e)
    await db.commit()
    await service.publish_committed()

    if outcome.payment is not None:
        _queue_match(background_tasks, IngestionResult(outcome.payment, outcome.payment_created))

    return {
        "ResultCode": 0,
        "ResultDesc": "Accepted",
        "action": outcome.action,
        "status": outcome.transaction.status,
    }


@router.post(
    "/jenga/ipn",
    response_model=WebhookAck,
    summary="Equity Jenga IPN",
    include_in_schema=False,
)
async def jenga_ipn(
    request: Request,
    db: DB,
    background_tasks: BackgroundTasks,
    ip_address: ClientIP,
    x_jenga_signature: Optional[str] = Header(None, alias="X-Jenga-Signature"),
):
    body, payload = await _read_json(request)
    _check_signature("Jenga", body, x_jenga_signature, settings.JENGA_WEBHOOK_SECRET)

    stk = MpesaService(db)
    try:
        ingested = await stk.ingestion.ingest_jenga(payload, ip_address)
        await stk.settle_bank_transaction(ingested)
    except BillingEngineError as e:
        raise_http_error(e)
    await db.commit()
    await stk.publish_committed()

    _queue_match(background_tasks, ingested)
    return _ack(ingested)


@router.post(
    "/kcb/ipn",
    response_model=WebhookAck,
    summary="KCB Buni IPN",
    include_in_schema=False,
)
async def kcb_ipn(
    request: Request,
    db: DB,
    background_tasks: BackgroundTasks,
    ip_address: ClientIP,
    x_kcb_signature: Optional[str] = Header(None, alias="X-KCB-Signature"),
):
    body, payload = await _read_json(request)
    _check_signature("KCB", body, x_kcb_signature, settings.KCB_WEBHOOK_SECRET)

    stk = MpesaService(db)
    try:
        ingested = await stk.ingestion.ingest_kcb(payload, ip_address)
        await stk.settle_bank_transaction(ingested)
    except BillingEngineError as e:
        raise_http_error(e)
    await db.commit()
    await stk.publish_committed()

    _queue_match(background_tasks, ingested)
    return _ack(ingested)
