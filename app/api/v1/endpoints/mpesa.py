"""
M-Pesa STK push API endpoints.

Handles:
- STK push initiation for rent and service-charge invoices
- Transaction status lookup
- Live transaction status via Server-Sent Events
"""

import json
import uuid
import logging
from typing import Annotated, Any, AsyncIterator, Callable, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import StreamingResponse

from app.api.deps import DB, ProviderHTTPClient, raise_http_error
from app.core.exceptions import BillingEngineError
from app.database import get_session_factory
from app.schemas.mpesa import MpesaTransactionResponse, StkPushRequest, StkPushResponse
from app.services.mpesa_service import MpesaService
from app.services.transaction_events import checkout_channel, get_transaction_broker, invoice_channel

logger = logging.getLogger(__name__)


router = APIRouter(tags=["M-Pesa"])

SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


def _sse(states: AsyncIterator[Dict[str, Any]]) -> StreamingResponse:
    async def events():
        async for state in states:
            yield f"data: {json.dumps(state)}\n\n"

    return StreamingResponse(events(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.post(
    "/stk-push",
    response_model=StkPushResponse,
    summary="Initiate an M-Pesa STK push",
)
async def stk_push(
    data: StkPushRequest,
    db: DB,
    http_client: ProviderHTTPClient,
):
    """
    Prompt the payer's phone for an M-Pesa payment.

    Daraja pushes use the landlord's own credentials when configured,
    otherwise the platform's. Jenga and KCB pushes need the landlord's
    bank configuration.
    """
    service = MpesaService(db, http_client=http_client)
    try:
        transaction, response = await service.initiate_stk_push(data)
    except BillingEngineError as e:
        raise_http_error(e)
    await db.commit()
    await service.publish_committed()

    return StkPushResponse(
        checkout_request_id=transaction.checkout_request_id,
        merchant_request_id=transaction.merchant_request_id,
        provider=transaction.provider,
        response_code=str(response.get("ResponseCode")),
        response_description=response.get("ResponseDescription"),
        customer_message=response.get("CustomerMessage"),
        status=transaction.status,
    )


@router.get(
    "/transactions/{checkout_request_id}",
    response_model=MpesaTransactionResponse,
    summary="Get STK transaction status",
)
async def get_transaction(checkout_request_id: str, db: DB):
    transaction = await MpesaService(db).get_transaction(checkout_request_id)
    if not transaction:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Transaction not found"
        )
    return MpesaTransactionResponse.model_validate(transaction)


@router.get(
    "/transactions/{checkout_request_id}/events",
    summary="Stream STK transaction status",
    description="Server-Sent Events: the current state, then every change.",
)
async def transaction_events(
    checkout_request_id: str,
    session_factory: Annotated[Callable, Depends(get_session_factory)],
    stop_on_terminal: bool = True,
    timeout: Optional[float] = 300,
):
    # The stream outlives the request, so no request-scoped session is held
    async with session_factory() as session:
        known = await MpesaService(session).get_transaction(checkout_request_id) is not None
    if not known:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Transaction not found"
        )

    async def fetch_current():
        async with session_factory() as session:
            transaction = await MpesaService(session).get_transaction(checkout_request_id)
            return MpesaService.transaction_state(transaction) if transaction else None

    return _sse(get_transaction_broker().stream(
        checkout_channel(checkout_request_id),
        fetch_current,
        stop_on_terminal=stop_on_terminal,
        idle_timeout=timeout,
    ))


@router.get(
    "/invoices/{invoice_id}/events",
    summary="Stream payment status for an invoice",
    description="Server-Sent Events for STK transactions linked to a rent or service-charge invoice.",
)
async def invoice_events(
    invoice_id: uuid.UUID,
    session_factory: Annotated[Callable, Depends(get_session_factory)],
    stop_on_terminal: bool = False,
    timeout: Optional[float] = 300,
):
    async def fetch_current():
        async with session_factory() as session:
            transaction = await MpesaService(session).latest_invoice_transaction(invoice_id)
            return MpesaService.transaction_state(transaction) if transaction else None

    return _sse(get_transaction_broker().stream(
        invoice_channel(invoice_id),
        fetch_current,
        stop_on_terminal=stop_on_terminal,
        idle_timeout=timeout,
    ))
