"""API Router for recurring billing.

Internal endpoints (X-Internal-Key) for subscription lifecycle changes,
manual invoice generation, amount overrides and the scheduler trigger.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import ConfigurationError
from app.core.database import get_session
from app.core.security import require_internal_key
from app.modules.billing.exceptions import (
    CatchUpLimitExceeded,
    InvalidOverrideError,
    InvalidTransitionError,
    PaymentLinkError,
    SubscriptionNotFoundError,
)
from app.modules.billing.generator import InvoiceGenerator
from app.modules.billing.lifecycle import SubscriptionLifecycle
from app.modules.billing.models import SubscriptionStatus
from app.modules.billing.overrides import OverrideResolver
from app.modules.billing.repository import InvoiceRepository, OverrideRepository
from app.modules.billing.scheduler import SubscriptionScheduler
from app.modules.billing.schemas import (
    AmountOverrideCreate,
    AmountOverrideResponse,
    GenerationResponse,
    InvoiceListResponse,
    InvoiceResponse,
    SchedulerRunRequest,
    SchedulerRunResponse,
    SubscriptionResponse,
    SubscriptionStatusUpdate,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/subscriptions",
    tags=["subscriptions"],
    dependencies=[Depends(require_internal_key)],
)


# ==================== Scheduler ====================

@router.post("/scheduler/run", response_model=SchedulerRunResponse)
async def run_scheduler(data: Optional[SchedulerRunRequest] = None):
    """Run the subscription scheduler once."""
    now = data.now if data else None
    if now is not None and now.tzinfo is None:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="now must be timezone-aware",
        )
    summary = await SubscriptionScheduler().run(now=now)
    return SchedulerRunResponse(**summary.to_dict())


# ==================== Subscriptions ====================

@router.get("/{subscription_id}", response_model=SubscriptionResponse)
async def get_subscription(
    subscription_id: uuid.UUID,
    session: AsyncSession = Depends(get_session),
):
    """Get a subscription."""
    try:
        return await SubscriptionLifecycle(session).get_subscription(subscription_id)
    except SubscriptionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.patch("/{subscription_id}/status", response_model=SubscriptionResponse)
async def update_subscription_status(
    subscription_id: uuid.UUID,
    data: SubscriptionStatusUpdate,
    session: AsyncSession = Depends(get_session),
):
    """Pause, resume, cancel or complete a subscription."""
    lifecycle = SubscriptionLifecycle(session)
    try:
        subscription = await lifecycle.transition(subscription_id, data.status.value)
        await session.commit()
        if data.status == SubscriptionStatus.ACTIVE:
            await lifecycle.notify_resumed(subscription, "manual")
    except SubscriptionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InvalidTransitionError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except CatchUpLimitExceeded as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    return subscription


# ==================== Invoices ====================

@router.post("/{subscription_id}/generate-invoice", response_model=GenerationResponse)
async def generate_invoice(
    subscription_id: uuid.UUID,
    session: AsyncSession = Depends(get_session),
):
    """Generate the invoice for the subscription's current cycle.

    Returns the existing invoice if the cycle was already billed.
    """
    generator = InvoiceGenerator(session)
    try:
        subscription = await generator.lifecycle.get_subscription(subscription_id)
        result = await generator.generate(subscription, now=datetime.now(timezone.utc))
    except SubscriptionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except PaymentLinkError as e:
        logger.error(f"Invoice generation for {subscription_id} failed: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to create payment link")
    except CatchUpLimitExceeded as e:
        logger.error(f"Invoice generation for {subscription_id} could not catch up: {e}")
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    except ConfigurationError as e:
        logger.error(f"Invoice generation for {subscription_id} misconfigured: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Server misconfigured")

    return GenerationResponse(
        outcome=result.outcome,
        reason=result.reason,
        payment_url=result.payment_url,
        invoice=InvoiceResponse.model_validate(result.invoice) if result.invoice else None,
    )


@router.get("/{subscription_id}/invoices", response_model=InvoiceListResponse)
async def list_invoices(
    subscription_id: uuid.UUID,
    limit: int = Query(50, ge=1, le=200),
    session: AsyncSession = Depends(get_session),
):
    """List a subscription's invoices, newest cycle first."""
    invoices = await InvoiceRepository(session).list_for_subscription(subscription_id, limit=limit)
    return InvoiceListResponse(
        invoices=[InvoiceResponse.model_validate(invoice) for invoice in invoices],
        total=len(invoices),
    )


# ==================== Amount Overrides ====================

@router.get("/{subscription_id}/amount-overrides", response_model=list[AmountOverrideResponse])
async def list_amount_overrides(
    subscription_id: uuid.UUID,
    session: AsyncSession = Depends(get_session),
):
    """List scheduled amount overrides."""
    return await OverrideRepository(session).list_for_subscription(subscription_id)


@router.post(
    "/{subscription_id}/amount-overrides",
    response_model=AmountOverrideResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_amount_override(
    subscription_id: uuid.UUID,
    data: AmountOverrideCreate,
    session: AsyncSession = Depends(get_session),
):
    """Schedule an amount override for future cycles."""
    try:
        await SubscriptionLifecycle(session).get_subscription(subscription_id)
        override = await OverrideResolver(session).schedule(
            subscription_id,
            effective_from=data.effective_from,
            amount=data.amount,
            effective_until=data.effective_until,
            note=data.note,
        )
        await session.commit()
    except SubscriptionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InvalidOverrideError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return override
