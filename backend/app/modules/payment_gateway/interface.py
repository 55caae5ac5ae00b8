"""Payment Gateway Interface - contract for payment processor integrations.

Both the webhook push path and the status polling path turn processor data
into a StatusUpdate, which the reconciler applies.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

logger = logging.getLogger(__name__)


class UpdateSource:
    """Where a status update came from."""
    WEBHOOK = "webhook"
    POLL = "poll"


def to_decimal(value: Any) -> Optional[Decimal]:
    """Parse a processor numeric field, returning None when absent or invalid."""
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        logger.warning(f"Ignoring non-numeric processor amount: {value!r}")
        return None


def _first(*values: Any) -> Optional[str]:
    for value in values:
        if value:
            return str(value)
    return None


@dataclass
class StatusUpdate:
    """Normalized processor status report for one payment."""
    payment_id: str
    status: str
    source: str = UpdateSource.WEBHOOK
    order_id: Optional[str] = None
    payin_hash: Optional[str] = None
    payout_hash: Optional[str] = None
    actually_paid: Optional[Decimal] = None
    pay_currency: Optional[str] = None
    price_amount: Optional[Decimal] = None
    price_currency: Optional[str] = None
    outcome_amount: Optional[Decimal] = None
    outcome_currency: Optional[str] = None
    raw: Optional[dict] = None

    @classmethod
    def from_processor_payload(cls, payload: dict, source: str = UpdateSource.WEBHOOK) -> "StatusUpdate":
        """Build an update from a processor payment payload.

        Hashes arrive under several field names depending on the event:

        - payin: ``payin_hash``, else ``hash``/``tx_hash``/``transaction_hash``
          when ``type == "payin"``, else ``outcome.hash`` while confirming
        - payout: ``payout_hash``, else the generic hash fields when
          ``type == "payout"``, else ``outcome.hash`` once confirmed
        """
        status = str(payload.get("payment_status") or "").lower()
        event_type = str(payload.get("type") or "").lower()
        outcome = payload.get("outcome") if isinstance(payload.get("outcome"), dict) else {}
        generic_hash = _first(payload.get("hash"), payload.get("tx_hash"), payload.get("transaction_hash"))
        outcome_hash = _first(outcome.get("hash"))

        payin_hash = _first(payload.get("payin_hash"))
        if payin_hash is None and event_type == "payin":
            payin_hash = generic_hash
        if payin_hash is None and status == "confirming":
            payin_hash = outcome_hash

        payout_hash = _first(payload.get("payout_hash"))
        if payout_hash is None and event_type == "payout":
            payout_hash = generic_hash
        if payout_hash is None and status == "confirmed":
            payout_hash = outcome_hash

        outcome_amount = to_decimal(payload.get("outcome_amount"))
        if outcome_amount is None:
            outcome_amount = to_decimal(payload.get("payout_amount") or outcome.get("amount"))
        outcome_currency = _first(
            payload.get("outcome_currency"), payload.get("payout_currency"), outcome.get("currency")
        )

        return cls(
            payment_id=str(payload.get("payment_id")),
            status=status,
            source=source,
            order_id=_first(payload.get("order_id")),
            payin_hash=payin_hash,
            payout_hash=payout_hash,
            actually_paid=to_decimal(payload.get("actually_paid")),
            pay_currency=_first(payload.get("pay_currency")),
            price_amount=to_decimal(payload.get("price_amount")),
            price_currency=_first(payload.get("price_currency")),
            outcome_amount=outcome_amount,
            outcome_currency=outcome_currency,
            raw=payload,
        )


class PaymentGatewayInterface(ABC):
    """Abstract interface for payment processor implementations."""

    provider: str = ""

    @abstractmethod
    async def get_payment_status(self, payment_id: str) -> StatusUpdate:
        """Fetch the current status of a payment.

        Args:
            payment_id: Processor payment ID

        Returns:
            StatusUpdate from the processor

        Raises:
            ProcessorUnavailableError: If the processor cannot be reached
        """
        pass

    @abstractmethod
    def verify_webhook(self, raw_body: bytes, signature: Optional[str]) -> None:
        """Verify a webhook signature.

        Raises:
            InvalidSignatureError: If the signature is missing or wrong
        """
        pass

    @abstractmethod
    def parse_webhook(self, payload: dict) -> StatusUpdate:
        """Validate a webhook payload and normalize it.

        Raises:
            InvalidWebhookPayloadError: If required fields are missing or invalid
        """
        pass
