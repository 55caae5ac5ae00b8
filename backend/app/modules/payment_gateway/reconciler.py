"""Payment status reconciliation.

Processor status reports arrive from two adapters (the IPN webhook and the
status poller), possibly concurrently and out of order. Both funnel through
``PaymentReconciler.apply``, which enforces one rule set:

    waiting (0) -> confirming | partially_paid (1) -> confirmed (2)

A report ranked below the stored status is a regression and is ignored.
``failed`` and ``expired`` end a payment that has not confirmed yet.
Confirmed, failed and expired are terminal statuses.

Writes are compare-and-set on the stored status, so when a webhook and a
poll race to confirm the same payment exactly one of them performs the
transition and the invoice propagation.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.metrics import PAYMENT_STATUS_UPDATES_TOTAL
from app.modules.billing.lifecycle import SubscriptionLifecycle
from app.modules.billing.repository import InvoiceRepository, SubscriptionRepository
from app.modules.payment_gateway.exceptions import (
    ConcurrentUpdateError,
    ProcessorUnavailableError,
    TransactionNotFoundError,
)
from app.modules.payment_gateway.interface import PaymentGatewayInterface, StatusUpdate
from app.modules.payment_gateway.models import PaymentStatus, PaymentTransaction
from app.modules.payment_gateway.repository import PaymentTransactionRepository

logger = logging.getLogger(__name__)

MAX_CAS_ATTEMPTS = 3

STATUS_RANK = {
    PaymentStatus.WAITING.value: 0,
    PaymentStatus.CONFIRMING.value: 1,
    PaymentStatus.PARTIALLY_PAID.value: 1,
    PaymentStatus.CONFIRMED.value: 2,
}

# Processor vocabulary -> local status
EXTERNAL_STATUS_MAP = {
    "waiting": PaymentStatus.WAITING,
    "pending": PaymentStatus.WAITING,
    "confirming": PaymentStatus.CONFIRMING,
    "partially_paid": PaymentStatus.PARTIALLY_PAID,
    "confirmed": PaymentStatus.CONFIRMED,
    "sending": PaymentStatus.CONFIRMED,
    "finished": PaymentStatus.CONFIRMED,
    "failed": PaymentStatus.FAILED,
    "refunded": PaymentStatus.FAILED,
    "expired": PaymentStatus.EXPIRED,
}

_FAILURE_STATUSES = (PaymentStatus.FAILED.value, PaymentStatus.EXPIRED.value)
_TERMINAL = (PaymentStatus.CONFIRMED.value,) + _FAILURE_STATUSES


# ============================================
# Pure rules
# ============================================

def map_external_status(status: Optional[str]) -> Optional[PaymentStatus]:
    """Map a processor status to the local vocabulary, None if unknown."""
    if not status:
        return None
    return EXTERNAL_STATUS_MAP.get(status.strip().lower())


def _normalize(status: str) -> str:
    # Local statuses map to themselves; unknown words pass through
    raw = str(getattr(status, "value", status))
    mapped = map_external_status(raw)
    return mapped.value if mapped is not None else raw


def status_rank(status: str) -> Optional[int]:
    """Rank of a progression status; None for failed, expired and unknown words.

    Accepts local statuses and processor words ("finished" ranks as confirmed).
    """
    return STATUS_RANK.get(_normalize(status))


def reconcile(local_status: str, external_status: str) -> str:
    """Return the effective status after applying an external status.

    Args:
        local_status: Stored local status
        external_status: Incoming status, in the processor or the local vocabulary

    Returns:
        str: The status to store
    """
    local = _normalize(local_status)
    external = _normalize(external_status)

    if local in _TERMINAL:
        return local
    if external in _FAILURE_STATUSES:
        return external

    local_rank = status_rank(local)
    external_rank = status_rank(external)
    if local_rank is None or external_rank is None:
        return local
    if external_rank < local_rank:
        return local
    return external


def select_primary_hash(
    status: str,
    payin_hash: Optional[str],
    payout_hash: Optional[str],
) -> Optional[str]:
    """Pick the canonical transaction hash.

    A confirmed payment surfaces its payout hash; otherwise the payin hash is
    preferred and the payout hash used only when it is the one available.
    """
    if str(getattr(status, "value", status)) == PaymentStatus.CONFIRMED.value and payout_hash:
        return payout_hash
    return payin_hash or payout_hash


def merge_value(existing: Any, incoming: Any) -> Any:
    """A new non-empty value wins; otherwise keep what is stored."""
    return incoming if incoming not in (None, "") else existing


# ============================================
# Applying updates
# ============================================

@dataclass
class ReconcileResult:
    """Outcome of applying one status update."""
    payment_id: str
    previous_status: str
    status: str
    changed: bool = False
    suppressed: bool = False
    invoice_paid: bool = False
    subscription_resumed: bool = False
    subscription_id: Optional[uuid.UUID] = None
    transaction: Optional[PaymentTransaction] = None

    @property
    def result(self) -> str:
        if self.changed:
            return "updated"
        if self.suppressed:
            return "suppressed"
        return "unchanged"


def build_changes(
    transaction: PaymentTransaction,
    update: StatusUpdate,
    effective_status: str,
    suppressed: bool,
    now: datetime,
) -> dict[str, Any]:
    """Compute the column changes an update implies for a transaction.

    A suppressed update only fills hash fields that are still empty.
    Returns only values that differ from what is stored.
    """
    if suppressed:
        payin_hash = transaction.payin_hash or update.payin_hash
        payout_hash = transaction.payout_hash or update.payout_hash
    else:
        payin_hash = merge_value(transaction.payin_hash, update.payin_hash)
        payout_hash = merge_value(transaction.payout_hash, update.payout_hash)

    proposed: dict[str, Any] = {
        "status": effective_status,
        "payin_hash": payin_hash,
        "payout_hash": payout_hash,
        "tx_hash": select_primary_hash(effective_status, payin_hash, payout_hash) or transaction.tx_hash,
    }

    if not suppressed:
        if update.pay_currency and not transaction.pay_currency:
            proposed["pay_currency"] = update.pay_currency.lower()
        if update.price_amount is not None and transaction.price_amount is None:
            proposed["price_amount"] = update.price_amount
        if update.price_currency and not transaction.price_currency:
            proposed["price_currency"] = update.price_currency.lower()
        if update.outcome_amount is not None and update.outcome_currency:
            proposed["payout_amount"] = update.outcome_amount
            proposed["payout_currency"] = update.outcome_currency.upper()

    if effective_status == PaymentStatus.CONFIRMED.value and not suppressed:
        if update.actually_paid is not None:
            proposed["amount_received"] = update.actually_paid
            if update.pay_currency:
                proposed["currency_received"] = update.pay_currency.upper()

            price_amount = update.price_amount if update.price_amount is not None else transaction.price_amount
            price_currency = update.price_currency or transaction.price_currency
            if (
                price_amount is not None
                and update.pay_currency
                and price_currency
                and update.pay_currency.lower() == price_currency.lower()
            ):
                fee = update.actually_paid - Decimal(price_amount)
                if fee > 0:
                    proposed["gateway_fee"] = fee

        if transaction.confirmed_at is None:
            proposed["confirmed_at"] = now

    if update.raw is not None and not suppressed:
        proposed["gateway_response"] = update.raw

    return {
        key: value
        for key, value in proposed.items()
        if getattr(transaction, key) != value
    }


class PaymentReconciler:
    """Applies processor status updates to local payment transactions."""

    def __init__(
        self,
        session: AsyncSession,
        transaction_repo: Optional[PaymentTransactionRepository] = None,
        invoice_repo: Optional[InvoiceRepository] = None,
        subscription_repo: Optional[SubscriptionRepository] = None,
        lifecycle: Optional[SubscriptionLifecycle] = None,
    ):
        self.session = session
        self.transaction_repo = transaction_repo or PaymentTransactionRepository(session)
        self.invoice_repo = invoice_repo or InvoiceRepository(session)
        self.subscription_repo = subscription_repo or SubscriptionRepository(session)
        self.lifecycle = lifecycle or SubscriptionLifecycle(
            session,
            subscription_repo=self.subscription_repo,
            invoice_repo=self.invoice_repo,
        )

    async def apply(self, update: StatusUpdate, now: Optional[datetime] = None) -> ReconcileResult:
        """Apply a status update.

        Args:
            update: Normalized processor update (webhook or poll)
            now: Current time, defaults to the wall clock

        Returns:
            ReconcileResult

        Raises:
            TransactionNotFoundError: If no transaction has this payment ID
            ConcurrentUpdateError: If compare-and-set kept losing
        """
        now = now or datetime.now(timezone.utc)
        try:
            result = await self._apply(update, now)
        except Exception:
            await self.session.rollback()
            raise

        PAYMENT_STATUS_UPDATES_TOTAL.labels(source=update.source, result=result.result).inc()
        return result

    async def _apply(self, update: StatusUpdate, now: datetime) -> ReconcileResult:
        for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
            transaction = await self.transaction_repo.get_by_payment_id(update.payment_id)
            if transaction is None:
                raise TransactionNotFoundError(update.payment_id)

            observed = transaction.status
            external = map_external_status(update.status)
            if external is None:
                logger.warning(
                    f"Unknown processor status {update.status!r} for payment {update.payment_id}, "
                    f"keeping {observed}"
                )
                return ReconcileResult(update.payment_id, observed, observed, transaction=transaction)

            if observed in _FAILURE_STATUSES:
                if external.value != observed:
                    logger.warning(
                        f"Ignoring {update.source} status {update.status} for payment "
                        f"{update.payment_id}: already {observed}"
                    )
                return ReconcileResult(
                    update.payment_id, observed, observed,
                    suppressed=external.value != observed,
                    transaction=transaction,
                )

            effective = reconcile(observed, external.value)
            suppressed = effective != external.value
            if suppressed:
                logger.warning(
                    f"Suppressed status regression for payment {update.payment_id}: "
                    f"{update.source} reported {update.status}, keeping {observed}"
                )

            changes = build_changes(transaction, update, effective, suppressed, now)
            if not changes:
                return ReconcileResult(
                    update.payment_id, observed, observed,
                    suppressed=suppressed,
                    transaction=transaction,
                )

            if not await self.transaction_repo.compare_and_set(transaction.id, observed, changes):
                logger.info(
                    f"Payment {update.payment_id} changed concurrently "
                    f"(attempt {attempt}/{MAX_CAS_ATTEMPTS}), retrying"
                )
                continue

            result = ReconcileResult(
                update.payment_id,
                observed,
                effective,
                changed=True,
                suppressed=suppressed,
                transaction=transaction,
            )

            if (
                effective == PaymentStatus.CONFIRMED.value
                and observed != PaymentStatus.CONFIRMED.value
                and transaction.payment_link_id
            ):
                await self._propagate_confirmation(transaction.payment_link_id, now, result)

            await self.session.commit()

            if result.subscription_resumed:
                await self._notify_resumed(result.subscription_id)

            if observed != effective:
                logger.info(
                    f"Payment {update.payment_id} {observed} -> {effective} via {update.source}"
                )
            return result

        raise ConcurrentUpdateError(update.payment_id, MAX_CAS_ATTEMPTS)

    async def _propagate_confirmation(
        self,
        payment_link_id: str,
        now: datetime,
        result: ReconcileResult,
    ) -> None:
        subscription_id = await self.invoice_repo.mark_paid_by_payment_link(payment_link_id, now)
        if subscription_id is None:
            return

        await self.subscription_repo.increment_paid_cycles(subscription_id)
        result.invoice_paid = True
        result.subscription_id = subscription_id
        logger.info(f"Invoice for payment link {payment_link_id} paid, subscription {subscription_id}")

        if await self.lifecycle.on_invoice_paid(subscription_id, now):
            result.subscription_resumed = True
            logger.info(f"Subscription {subscription_id} auto-resumed after payment")

    async def _notify_resumed(self, subscription_id: uuid.UUID) -> None:
        subscription = await self.subscription_repo.get_by_id(subscription_id)
        if subscription is not None:
            await self.lifecycle.notify_resumed(subscription, "payment")


class PaymentStatusPoller:
    """Polls the processor for transactions the webhook has not settled."""

    def __init__(
        self,
        session: AsyncSession,
        gateway: PaymentGatewayInterface,
        reconciler: Optional[PaymentReconciler] = None,
        transaction_repo: Optional[PaymentTransactionRepository] = None,
    ):
        self.session = session
        self.gateway = gateway
        self.transaction_repo = transaction_repo or PaymentTransactionRepository(session)
        self.reconciler = reconciler or PaymentReconciler(session, transaction_repo=self.transaction_repo)

    async def refresh(self, payment_id: str, now: Optional[datetime] = None) -> str:
        """Refresh one transaction from the processor.

        Terminal transactions are not polled. A processor failure is logged
        and the stored status is returned unchanged.

        Raises:
            TransactionNotFoundError: If the payment is unknown locally
            ConfigurationError: If the processor API key is missing
        """
        transaction = await self.transaction_repo.get_by_payment_id(payment_id)
        if transaction is None:
            raise TransactionNotFoundError(payment_id)

        try:
            return await self._refresh(transaction, now)
        except ProcessorUnavailableError as e:
            logger.warning(f"Status refresh for {payment_id} skipped: {e}")
            return transaction.status

    async def _refresh(self, transaction, now: Optional[datetime]) -> str:
        if transaction.is_terminal():
            return transaction.status

        try:
            update = await self.gateway.get_payment_status(transaction.payment_id)
        except ProcessorUnavailableError:
            PAYMENT_STATUS_UPDATES_TOTAL.labels(source="poll", result="unavailable").inc()
            raise

        result = await self.reconciler.apply(update, now=now)
        return result.status

    async def refresh_pending(self, limit: int = 100, now: Optional[datetime] = None) -> dict[str, int]:
        """Refresh every non-terminal transaction.

        Returns:
            dict: Counts of checked, updated and failed refreshes
        """
        payment_ids = await self.transaction_repo.get_pending_payment_ids(limit=limit)
        summary = {"checked": 0, "updated": 0, "failed": 0}

        for payment_id in payment_ids:
            summary["checked"] += 1
            try:
                transaction = await self.transaction_repo.get_by_payment_id(payment_id)
                if transaction is None:
                    raise TransactionNotFoundError(payment_id)
                previous = transaction.status
                status = await self._refresh(transaction, now)
            except (TransactionNotFoundError, ConcurrentUpdateError, ProcessorUnavailableError) as e:
                logger.warning(f"Refresh of {payment_id} failed: {e}")
                summary["failed"] += 1
                continue
            if status != previous:
                summary["updated"] += 1

        logger.info(f"Pending payment refresh: {summary}")
        return summary
