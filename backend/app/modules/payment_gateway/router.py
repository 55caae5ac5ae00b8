"""API Router for payment transactions and processor webhooks.

The webhook endpoint and the status refresh endpoints are the two adapters
feeding PaymentReconciler.
"""

import json
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import ConfigurationError
from app.core.database import get_session
from app.core.redis import RateLimiter, get_webhook_rate_limiter
from app.core.security import require_internal_key
from app.modules.payment_gateway.exceptions import (
    ConcurrentUpdateError,
    InvalidSignatureError,
    InvalidWebhookPayloadError,
    TransactionNotFoundError,
)
from app.modules.payment_gateway.gateways.nowpayments import NOWPaymentsGateway, SIGNATURE_HEADER
from app.modules.payment_gateway.interface import PaymentGatewayInterface
from app.modules.payment_gateway.reconciler import PaymentReconciler, PaymentStatusPoller
from app.modules.payment_gateway.repository import (
    PaymentTransactionRepository,
    WebhookEventRepository,
)
from app.modules.payment_gateway.schemas import (
    PaymentStatusResponse,
    RefreshPendingResponse,
    TransactionCreate,
    TransactionResponse,
    WebhookResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


def get_payment_gateway() -> PaymentGatewayInterface:
    """FastAPI dependency for the payment processor."""
    return NOWPaymentsGateway()


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


# ==================== Webhooks ====================

@router.post("/webhooks/nowpayments", response_model=WebhookResponse)
async def nowpayments_webhook(
    request: Request,
    session: AsyncSession = Depends(get_session),
    gateway: PaymentGatewayInterface = Depends(get_payment_gateway),
    rate_limiter: RateLimiter = Depends(get_webhook_rate_limiter),
):
    """Handle a NOWPayments IPN callback."""
    client_ip = _client_ip(request)
    if not await rate_limiter.allow(f"nowpayments:{client_ip}"):
        logger.warning(f"Webhook rate limit exceeded for {client_ip}")
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="Rate limit exceeded")

    raw_body = await request.body()
    try:
        gateway.verify_webhook(raw_body, request.headers.get(SIGNATURE_HEADER))
    except InvalidSignatureError as e:
        logger.warning(f"Rejected webhook from {client_ip}: {e}")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")

    try:
        payload = json.loads(raw_body)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload")

    try:
        update = gateway.parse_webhook(payload)
    except InvalidWebhookPayloadError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.errors)

    event_id = str(payload.get("event_id") or f"{update.payment_id}:{update.status}")
    events = WebhookEventRepository(session)
    attempts = await events.record(gateway.provider, event_id, payload)
    if attempts > 1:
        logger.info(f"Webhook {event_id} redelivered (attempt {attempts})")

    try:
        result = await PaymentReconciler(session).apply(update)
    except TransactionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ConcurrentUpdateError as e:
        logger.error(str(e))
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    await events.mark_processed(gateway.provider, event_id, result.result, datetime.now(timezone.utc))
    await session.commit()

    return WebhookResponse(payment_id=update.payment_id, status=result.status, result=result.result)


# ==================== Transactions ====================

@router.post(
    "/transactions",
    response_model=TransactionResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_internal_key)],
)
async def register_transaction(
    data: TransactionCreate,
    session: AsyncSession = Depends(get_session),
):
    """Register a processor payment so webhooks and polls can reconcile it.

    Registering an already known payment ID returns the stored transaction.
    """
    repo = PaymentTransactionRepository(session)
    existing = await repo.get_by_payment_id(data.payment_id)
    if existing is not None:
        return existing

    try:
        values = data.model_dump()
        values["status"] = data.status.value
        transaction = await repo.create_transaction(**values)
        await session.commit()
    except IntegrityError:
        await session.rollback()
        transaction = await repo.get_by_payment_id(data.payment_id)
        if transaction is None:
            raise
    return transaction


@router.post(
    "/refresh-pending",
    response_model=RefreshPendingResponse,
    dependencies=[Depends(require_internal_key)],
)
async def refresh_pending_payments(
    limit: int = Query(100, ge=1, le=1000),
    session: AsyncSession = Depends(get_session),
    gateway: PaymentGatewayInterface = Depends(get_payment_gateway),
):
    """Poll the processor for every non-terminal transaction."""
    try:
        summary = await PaymentStatusPoller(session, gateway).refresh_pending(limit=limit)
    except ConfigurationError as e:
        logger.error(f"Pending refresh misconfigured: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Server misconfigured")
    return RefreshPendingResponse(**summary)


@router.get("/{payment_id}/status", response_model=PaymentStatusResponse)
async def get_payment_status(
    payment_id: str,
    refresh: bool = Query(True, description="Refresh from the processor before answering"),
    session: AsyncSession = Depends(get_session),
    gateway: PaymentGatewayInterface = Depends(get_payment_gateway),
):
    """Get a payment's status, refreshing non-terminal payments from the processor."""
    poller = PaymentStatusPoller(session, gateway)
    try:
        if refresh:
            await poller.refresh(payment_id)
        transaction = await poller.transaction_repo.get_by_payment_id(payment_id)
    except TransactionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ConcurrentUpdateError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except ConfigurationError as e:
        logger.error(f"Status refresh misconfigured: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Server misconfigured")

    if transaction is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Payment {payment_id} not found")

    return PaymentStatusResponse(
        payment_id=transaction.payment_id,
        status=transaction.status,
        tx_hash=transaction.tx_hash,
        payin_hash=transaction.payin_hash,
        payout_hash=transaction.payout_hash,
    )
