"""NOWPayments processor integration.

Status API: ``GET {PAYMENTS_API_URL}/payment/{payment_id}`` with ``x-api-key``.
IPN webhooks are signed with HMAC-SHA512 in the ``x-nowpayments-sig`` header.
"""

import hashlib
import hmac
import json
import logging
from typing import Optional

import httpx

from app.core.config import settings, require_setting
from app.core.metrics import PROCESSOR_API_REQUESTS_TOTAL
from app.modules.payment_gateway.exceptions import (
    InvalidSignatureError,
    InvalidWebhookPayloadError,
    ProcessorUnavailableError,
)
from app.modules.payment_gateway.interface import (
    PaymentGatewayInterface,
    StatusUpdate,
    UpdateSource,
    to_decimal,
)
from app.modules.payment_gateway.models import GatewayProvider

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-nowpayments-sig"

VALID_WEBHOOK_STATUSES = frozenset({
    "waiting",
    "confirming",
    "confirmed",
    "sending",
    "partially_paid",
    "finished",
    "failed",
    "refunded",
    "expired",
})

REQUIRED_WEBHOOK_FIELDS = ("payment_id", "order_id", "payment_status")


def compute_signature(body: bytes, secret: str) -> str:
    """HMAC-SHA512 hex digest of a payload."""
    return hmac.new(secret.encode(), body, hashlib.sha512).hexdigest()


def canonical_body(payload: dict) -> bytes:
    """Key-sorted compact JSON, the form NOWPayments signs."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode()


class NOWPaymentsGateway(PaymentGatewayInterface):
    """NOWPayments status API client and IPN verifier."""

    provider = GatewayProvider.NOWPAYMENTS.value

    def __init__(
        self,
        api_key: Optional[str] = None,
        ipn_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._api_key = api_key
        self._ipn_secret = ipn_secret
        self.base_url = (base_url or settings.PAYMENTS_API_URL).rstrip("/")
        self.timeout = timeout or settings.PAYMENTS_API_TIMEOUT_SECONDS
        self._transport = transport

    @property
    def api_key(self) -> str:
        return self._api_key or require_setting("PAYMENTS_API_KEY")

    @property
    def ipn_secret(self) -> Optional[str]:
        return self._ipn_secret or settings.PAYMENTS_IPN_SECRET or None

    async def get_payment_status(self, payment_id: str) -> StatusUpdate:
        """Fetch a payment from the status API.

        Args:
            payment_id: NOWPayments payment ID

        Returns:
            StatusUpdate tagged as a poll update

        Raises:
            ConfigurationError: If PAYMENTS_API_KEY is not set
            ProcessorUnavailableError: On timeout, transport error, non-2xx or
                a body that is not a JSON object
        """
        api_key = self.api_key
        url = f"{self.base_url}/payment/{payment_id}"

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(url, headers={"x-api-key": api_key})
        except httpx.TimeoutException as e:
            PROCESSOR_API_REQUESTS_TOTAL.labels(status="timeout").inc()
            raise ProcessorUnavailableError(f"Status API timeout for {payment_id}") from e
        except httpx.HTTPError as e:
            PROCESSOR_API_REQUESTS_TOTAL.labels(status="error").inc()
            raise ProcessorUnavailableError(f"Status API unreachable: {e}") from e

        PROCESSOR_API_REQUESTS_TOTAL.labels(status=str(response.status_code)).inc()
        if response.status_code >= 400:
            raise ProcessorUnavailableError(
                f"Status API returned {response.status_code} for {payment_id}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise ProcessorUnavailableError(
                f"Status API returned a non-JSON body for {payment_id}",
                status_code=response.status_code,
            ) from e
        if not isinstance(payload, dict):
            raise ProcessorUnavailableError(
                f"Status API returned {type(payload).__name__} instead of an object for {payment_id}",
                status_code=response.status_code,
            )
        if not payload.get("payment_id"):
            payload["payment_id"] = payment_id
        return StatusUpdate.from_processor_payload(payload, source=UpdateSource.POLL)

    def verify_webhook(self, raw_body: bytes, signature: Optional[str]) -> None:
        """Verify the IPN signature against the raw and the key-sorted body.

        Unsigned webhooks are only accepted when PAYMENTS_ALLOW_UNSIGNED_WEBHOOKS
        is enabled and no IPN secret is configured.
        """
        secret = self.ipn_secret
        if not secret:
            if settings.PAYMENTS_ALLOW_UNSIGNED_WEBHOOKS:
                logger.warning("Accepting unsigned webhook: no IPN secret configured")
                return
            raise InvalidSignatureError("IPN secret not configured")

        if not signature:
            raise InvalidSignatureError("Missing signature")

        signature = signature.strip().lower()
        if hmac.compare_digest(signature, compute_signature(raw_body, secret)):
            return

        try:
            payload = json.loads(raw_body)
        except ValueError:
            raise InvalidSignatureError("Invalid signature")
        if isinstance(payload, dict) and hmac.compare_digest(
            signature, compute_signature(canonical_body(payload), secret)
        ):
            return

        raise InvalidSignatureError("Invalid signature")

    def parse_webhook(self, payload: dict) -> StatusUpdate:
        """Validate and normalize an IPN payload."""
        errors = [f"Missing {name}" for name in REQUIRED_WEBHOOK_FIELDS if not payload.get(name)]

        status = str(payload.get("payment_status") or "").lower()
        if status and status not in VALID_WEBHOOK_STATUSES:
            errors.append(f"Invalid payment_status: {status}")

        for field_name in ("price_amount", "actually_paid", "pay_amount"):
            value = payload.get(field_name)
            if value is not None and value != "":
                amount = to_decimal(value)
                if amount is None or amount < 0:
                    errors.append(f"Invalid {field_name}")

        if errors:
            raise InvalidWebhookPayloadError(errors)

        return StatusUpdate.from_processor_payload(payload, source=UpdateSource.WEBHOOK)
