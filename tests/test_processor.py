"""Stripe client behaviour over a mocked transport, and webhook signatures."""
import json
from decimal import Decimal
from urllib.parse import parse_qs

import httpx
import pytest

from orders_service.errors import PaymentProcessorError, ProcessorUnavailable
from orders_service.models import IntentStatus
from orders_service.processor import (
    SimulatedProcessor, StripeProcessor, stripe_status, to_minor_units, verify_webhook_signature,
)

from conftest import sign_webhook

INTENT = {
    "id": "pi_123",
    "client_secret": "pi_123_secret_abc",
    "amount": 2000,
    "currency": "usd",
    "status": "requires_payment_method",
    "metadata": {"order_id": "order-1"},
    "last_payment_error": None,
}


def stripe_with(handler):
    return StripeProcessor(
        api_key="sk_test_key",
        base_url="https://stripe.test",
        timeout=1.0,
        transport=httpx.MockTransport(handler),
    )


class TestStripeProcessor:

    async def test_create_sends_form_and_idempotency_key(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["key"] = request.headers.get("Idempotency-Key")
            seen["auth"] = request.headers.get("Authorization")
            seen["form"] = parse_qs(request.content.decode())
            return httpx.Response(200, json=INTENT)

        processor = stripe_with(handler)
        intent = await processor.create_payment_intent(Decimal("20.00"), "usd", "order-1", "order-order-1-attempt-0")
        await processor.aclose()

        assert seen["path"] == "/v1/payment_intents"
        assert seen["key"] == "order-order-1-attempt-0"
        assert seen["auth"].startswith("Basic ")
        assert seen["form"]["amount"] == ["2000"]
        assert seen["form"]["metadata[order_id]"] == ["order-1"]
        assert intent.id == "pi_123"
        assert intent.status == IntentStatus.CREATED

    async def test_card_error_is_not_retryable(self):
        def handler(request):
            return httpx.Response(402, json={"error": {"message": "Your card was declined."}})

        processor = stripe_with(handler)
        with pytest.raises(PaymentProcessorError) as exc:
            await processor.create_payment_intent(Decimal("1"), "usd", "order-1", "k")
        assert exc.value.detail == "Your card was declined."
        assert not exc.value.retryable

    @pytest.mark.parametrize("status_code", [500, 503, 429])
    async def test_server_errors_are_unavailable(self, status_code):
        processor = stripe_with(lambda request: httpx.Response(status_code, json={}))
        with pytest.raises(ProcessorUnavailable) as exc:
            await processor.retrieve_payment_intent("pi_123")
        assert exc.value.retryable
        assert exc.value.status_code == 503

    async def test_timeout_is_unavailable(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        processor = stripe_with(handler)
        with pytest.raises(ProcessorUnavailable):
            await processor.create_payment_intent(Decimal("1"), "usd", "order-1", "k")

    async def test_connection_error_is_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        processor = stripe_with(handler)
        with pytest.raises(ProcessorUnavailable):
            await processor.retrieve_payment_intent("pi_123")

    async def test_retrieve_missing(self):
        processor = stripe_with(lambda request: httpx.Response(404, json={"error": {}}))
        assert await processor.retrieve_payment_intent("pi_missing") is None

    async def test_retrieve_succeeded(self):
        body = dict(INTENT, status="succeeded")
        processor = stripe_with(lambda request: httpx.Response(200, json=body))
        intent = await processor.retrieve_payment_intent("pi_123")
        assert intent.status == IntentStatus.SUCCEEDED
        assert intent.metadata == {"order_id": "order-1"}


class TestStatusMapping:

    @pytest.mark.parametrize("raw, has_error, expected", [
        ("succeeded", False, IntentStatus.SUCCEEDED),
        ("canceled", False, IntentStatus.FAILED),
        ("requires_payment_method", True, IntentStatus.FAILED),
        ("requires_payment_method", False, IntentStatus.CREATED),
        ("processing", False, IntentStatus.CREATED),
        ("requires_action", False, IntentStatus.CREATED),
    ])
    def test_stripe_status(self, raw, has_error, expected):
        assert stripe_status(raw, has_error) == expected

    def test_minor_units(self):
        assert to_minor_units(Decimal("59.40")) == 5940
        assert to_minor_units(Decimal("0.01")) == 1


class TestSimulatedProcessor:

    async def test_idempotency_key_reuses_intent(self):
        processor = SimulatedProcessor()
        first = await processor.create_payment_intent(Decimal("5"), "usd", "order-1", "key-1")
        again = await processor.create_payment_intent(Decimal("5"), "usd", "order-1", "key-1")
        other = await processor.create_payment_intent(Decimal("5"), "usd", "order-1", "key-2")
        assert again.id == first.id
        assert other.id != first.id

    async def test_complete(self):
        processor = SimulatedProcessor()
        intent = await processor.create_payment_intent(Decimal("5"), "usd", "order-1", "key-1")
        processor.complete(intent.id, succeed=False)
        assert (await processor.retrieve_payment_intent(intent.id)).status == IntentStatus.FAILED


class TestWebhookSignature:
    secret = "whsec_test"
    payload = json.dumps({"type": "payment_intent.succeeded"}).encode()

    def test_valid(self):
        header = sign_webhook(self.payload, self.secret, 1_700_000_000)
        assert verify_webhook_signature(self.payload, header, self.secret, now=1_700_000_010)

    def test_tampered_payload(self):
        header = sign_webhook(self.payload, self.secret, 1_700_000_000)
        assert not verify_webhook_signature(self.payload + b" ", header, self.secret, now=1_700_000_010)

    def test_wrong_secret(self):
        header = sign_webhook(self.payload, "whsec_other", 1_700_000_000)
        assert not verify_webhook_signature(self.payload, header, self.secret, now=1_700_000_010)

    def test_outside_tolerance(self):
        header = sign_webhook(self.payload, self.secret, 1_700_000_000)
        assert not verify_webhook_signature(
            self.payload, header, self.secret, tolerance=300, now=1_700_000_301,
        )

    @pytest.mark.parametrize("header", ["", "v1=abc", "t=notanumber,v1=abc"])
    def test_malformed_header(self, header):
        assert not verify_webhook_signature(self.payload, header, self.secret, now=1_700_000_000)

    def test_no_secret_configured(self):
        header = sign_webhook(self.payload, "", 1_700_000_000)
        assert not verify_webhook_signature(self.payload, header, "", now=1_700_000_000)
