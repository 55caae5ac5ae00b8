"""Property-based tests for NOWPayments webhook handling.

Tests that:
- Hashes are extracted from every field variant the processor uses
- Signatures verify against the raw body and the key-sorted body
- Invalid payloads are rejected with every validation error listed
- The status API adapter maps outages to ProcessorUnavailableError
"""

import json

import httpx
from hypothesis import given, settings, strategies as st
import pytest

from app.core.config import settings as app_settings
from app.modules.payment_gateway.exceptions import (
    InvalidSignatureError,
    InvalidWebhookPayloadError,
    ProcessorUnavailableError,
)
from app.modules.payment_gateway.gateways.nowpayments import (
    NOWPaymentsGateway,
    canonical_body,
    compute_signature,
)
from app.modules.payment_gateway.interface import StatusUpdate, UpdateSource


SECRET = "ipn-secret"

hash_strategy = st.text(alphabet="0123456789abcdef", min_size=8, max_size=64)


def _payload(**kwargs) -> dict:
    payload = {
        "payment_id": 5077125051,
        "order_id": "sub_inv_1",
        "payment_status": "confirming",
        "price_amount": 25,
        "price_currency": "usd",
        "pay_currency": "btc",
        "actually_paid": 0.0004,
    }
    payload.update(kwargs)
    return payload


class TestHashExtraction:
    """Tests for hash field variants."""

    @given(value=hash_strategy)
    @settings(max_examples=100)
    def test_explicit_fields_win(self, value: str) -> None:
        update = StatusUpdate.from_processor_payload(
            _payload(payin_hash=value, payout_hash=value[::-1], hash="generic", type="payin")
        )
        assert update.payin_hash == value
        assert update.payout_hash == value[::-1]

    @given(value=hash_strategy, field=st.sampled_from(["hash", "tx_hash", "transaction_hash"]))
    @settings(max_examples=100)
    def test_generic_hash_follows_event_type(self, value: str, field: str) -> None:
        """*For any* generic hash field, the event type SHALL decide payin or payout."""
        payin = StatusUpdate.from_processor_payload(_payload(type="payin", **{field: value}))
        payout = StatusUpdate.from_processor_payload(_payload(type="payout", **{field: value}))

        assert payin.payin_hash == value and payin.payout_hash is None
        assert payout.payout_hash == value and payout.payin_hash is None

    def test_outcome_hash_depends_on_status(self) -> None:
        outcome = {"hash": "0xoutcome", "amount": "24.1", "currency": "usdt"}

        confirming = StatusUpdate.from_processor_payload(_payload(payment_status="confirming", outcome=outcome))
        confirmed = StatusUpdate.from_processor_payload(_payload(payment_status="confirmed", outcome=outcome))

        assert confirming.payin_hash == "0xoutcome"
        assert confirming.payout_hash is None
        assert confirmed.payout_hash == "0xoutcome"
        assert confirmed.outcome_currency == "usdt"
        assert str(confirmed.outcome_amount) == "24.1"

    def test_numeric_fields_are_decimals(self) -> None:
        update = StatusUpdate.from_processor_payload(_payload(), source=UpdateSource.POLL)

        assert update.payment_id == "5077125051"
        assert update.source == UpdateSource.POLL
        assert str(update.actually_paid) == "0.0004"
        assert update.price_amount == 25


class TestSignature:
    """Tests for IPN signature verification."""

    def test_raw_body_signature(self) -> None:
        gateway = NOWPaymentsGateway(ipn_secret=SECRET)
        body = json.dumps(_payload()).encode()

        gateway.verify_webhook(body, compute_signature(body, SECRET))

    @given(
        status=st.sampled_from(["waiting", "confirming", "finished"]),
        amount=st.integers(min_value=1, max_value=10**6),
    )
    @settings(max_examples=100)
    def test_sorted_body_signature(self, status: str, amount: int) -> None:
        """*For any* payload, a signature over the key-sorted body SHALL verify."""
        gateway = NOWPaymentsGateway(ipn_secret=SECRET)
        payload = _payload(payment_status=status, price_amount=amount)
        body = json.dumps(payload, indent=2).encode()

        gateway.verify_webhook(body, compute_signature(canonical_body(payload), SECRET).upper())

    def test_wrong_signature(self) -> None:
        gateway = NOWPaymentsGateway(ipn_secret=SECRET)
        body = json.dumps(_payload()).encode()

        with pytest.raises(InvalidSignatureError):
            gateway.verify_webhook(body, compute_signature(body, "other-secret"))

    def test_missing_signature(self) -> None:
        gateway = NOWPaymentsGateway(ipn_secret=SECRET)
        with pytest.raises(InvalidSignatureError):
            gateway.verify_webhook(b"{}", None)

    def test_unsigned_rejected_without_secret(self, monkeypatch) -> None:
        monkeypatch.setattr(app_settings, "PAYMENTS_IPN_SECRET", "")
        monkeypatch.setattr(app_settings, "PAYMENTS_ALLOW_UNSIGNED_WEBHOOKS", False)

        with pytest.raises(InvalidSignatureError):
            NOWPaymentsGateway().verify_webhook(b"{}", None)

    def test_unsigned_allowed_when_enabled(self, monkeypatch) -> None:
        monkeypatch.setattr(app_settings, "PAYMENTS_IPN_SECRET", "")
        monkeypatch.setattr(app_settings, "PAYMENTS_ALLOW_UNSIGNED_WEBHOOKS", True)

        NOWPaymentsGateway().verify_webhook(b"{}", None)


class TestPayloadValidation:
    """Tests for webhook payload validation."""

    def test_valid_payload(self) -> None:
        update = NOWPaymentsGateway(ipn_secret=SECRET).parse_webhook(_payload(payment_status="Finished"))

        assert update.status == "finished"
        assert update.source == UpdateSource.WEBHOOK

    def test_all_errors_reported(self) -> None:
        payload = {"payment_status": "bogus", "price_amount": -5}

        with pytest.raises(InvalidWebhookPayloadError) as exc_info:
            NOWPaymentsGateway(ipn_secret=SECRET).parse_webhook(payload)

        errors = exc_info.value.errors
        assert "Missing payment_id" in errors
        assert "Missing order_id" in errors
        assert "Invalid payment_status: bogus" in errors
        assert "Invalid price_amount" in errors

    @given(amount=st.one_of(st.just("abc"), st.integers(max_value=-1)))
    @settings(max_examples=50)
    def test_bad_amounts_rejected(self, amount) -> None:
        with pytest.raises(InvalidWebhookPayloadError):
            NOWPaymentsGateway(ipn_secret=SECRET).parse_webhook(_payload(actually_paid=amount))


class TestStatusApi:
    """Tests for the polling adapter's HTTP handling."""

    @pytest.mark.asyncio
    async def test_status_fetch(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.headers["x-api-key"] == "key"
            assert request.url.path.endswith("/payment/42")
            return httpx.Response(200, json={"payment_status": "finished", "payout_hash": "0xout"})

        gateway = NOWPaymentsGateway(
            api_key="key", base_url="https://np.test/v1", transport=httpx.MockTransport(handler)
        )
        update = await gateway.get_payment_status("42")

        assert update.payment_id == "42"
        assert update.status == "finished"
        assert update.payout_hash == "0xout"
        assert update.source == UpdateSource.POLL

    @pytest.mark.asyncio
    async def test_error_status_is_unavailable(self) -> None:
        gateway = NOWPaymentsGateway(
            api_key="key",
            base_url="https://np.test/v1",
            transport=httpx.MockTransport(lambda request: httpx.Response(503, text="busy")),
        )

        with pytest.raises(ProcessorUnavailableError) as exc_info:
            await gateway.get_payment_status("42")
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_timeout_is_unavailable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        gateway = NOWPaymentsGateway(
            api_key="key", base_url="https://np.test/v1", transport=httpx.MockTransport(handler)
        )

        with pytest.raises(ProcessorUnavailableError):
            await gateway.get_payment_status("42")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(200, text="<html>maintenance</html>"),
            httpx.Response(200, json=["finished"]),
        ],
    )
    async def test_unreadable_body_is_unavailable(self, response: httpx.Response) -> None:
        gateway = NOWPaymentsGateway(
            api_key="key",
            base_url="https://np.test/v1",
            transport=httpx.MockTransport(lambda request: response),
        )

        with pytest.raises(ProcessorUnavailableError) as exc_info:
            await gateway.get_payment_status("42")
        assert exc_info.value.status_code == 200
