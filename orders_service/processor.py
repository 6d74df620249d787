"""Clients for the external payment processor.

The processor owns the truth about whether money moved. The gateway only
ever trusts what ``retrieve_payment_intent`` reports, never the client.
"""
from decimal import Decimal
from typing import Dict, Optional
import hashlib
import hmac
import logging
import time
import uuid
import httpx
from pydantic import BaseModel

from shared.utils import settings
from orders_service.errors import PaymentProcessorError, ProcessorUnavailable
from orders_service.models import IntentStatus

logger = logging.getLogger("orders-service.processor")


class ProcessorIntent(BaseModel):
    id: str
    client_secret: str
    amount: int  # minor units
    currency: str
    status: IntentStatus
    raw_status: str
    metadata: Dict[str, str] = {}


def to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1")))


def stripe_status(raw_status: str, has_error: bool = False) -> IntentStatus:
    if raw_status == "succeeded":
        return IntentStatus.SUCCEEDED
    if raw_status == "canceled":
        return IntentStatus.FAILED
    if raw_status == "requires_payment_method" and has_error:
        # Stripe returns a declined attempt to this state
        return IntentStatus.FAILED
    return IntentStatus.CREATED


class PaymentProcessor:
    async def create_payment_intent(self, amount: Decimal, currency: str, order_id: str,
                                    idempotency_key: str) -> ProcessorIntent:
        raise NotImplementedError

    async def retrieve_payment_intent(self, intent_id: str) -> Optional[ProcessorIntent]:
        raise NotImplementedError

    async def aclose(self):
        pass


class StripeProcessor(PaymentProcessor):
    def __init__(self, api_key: str = settings.STRIPE_API_KEY, base_url: str = settings.STRIPE_API_BASE,
                 timeout: float = settings.PROCESSOR_TIMEOUT_SECONDS, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.client = httpx.AsyncClient(
            base_url=base_url,
            auth=(api_key, ""),
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self.client.request(method, path, **kwargs)
        except httpx.TimeoutException:
            logger.warning("Payment processor timed out", extra={"path": path})
            raise ProcessorUnavailable()
        except httpx.RequestError:
            logger.warning("Payment processor unreachable", extra={"path": path})
            raise ProcessorUnavailable()
        if response.status_code >= 500 or response.status_code == 429:
            raise ProcessorUnavailable(f"Payment provider returned {response.status_code}")
        return response

    def _parse(self, data: dict) -> ProcessorIntent:
        raw_status = data["status"]
        return ProcessorIntent(
            id=data["id"],
            client_secret=data.get("client_secret") or "",
            amount=data["amount"],
            currency=data["currency"],
            status=stripe_status(raw_status, bool(data.get("last_payment_error"))),
            raw_status=raw_status,
            metadata=data.get("metadata") or {},
        )

    async def create_payment_intent(self, amount: Decimal, currency: str, order_id: str,
                                    idempotency_key: str) -> ProcessorIntent:
        response = await self._request(
            "POST",
            "/v1/payment_intents",
            data={
                "amount": to_minor_units(amount),
                "currency": currency,
                "metadata[order_id]": order_id,
                "automatic_payment_methods[enabled]": "true",
            },
            # Retried calls for the same attempt return the same intent
            headers={"Idempotency-Key": idempotency_key},
        )
        if response.status_code >= 400:
            message = response.json().get("error", {}).get("message", "Payment intent rejected")
            raise PaymentProcessorError(message)
        return self._parse(response.json())

    async def retrieve_payment_intent(self, intent_id: str) -> Optional[ProcessorIntent]:
        response = await self._request("GET", f"/v1/payment_intents/{intent_id}")
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise PaymentProcessorError("Could not verify payment intent")
        return self._parse(response.json())

    async def aclose(self):
        await self.client.aclose()


class SimulatedProcessor(PaymentProcessor):
    """In-process stand-in for local development.

    Intents stay ``created`` until ``complete`` is called, which plays the
    part of the client-side confirmation step.
    """

    def __init__(self):
        self.intents: Dict[str, ProcessorIntent] = {}
        self.idempotency: Dict[str, str] = {}

    async def create_payment_intent(self, amount: Decimal, currency: str, order_id: str,
                                    idempotency_key: str) -> ProcessorIntent:
        if idempotency_key in self.idempotency:
            return self.intents[self.idempotency[idempotency_key]]
        intent_id = f"pi_sim_{uuid.uuid4().hex[:24]}"
        intent = ProcessorIntent(
            id=intent_id,
            client_secret=f"{intent_id}_secret_{uuid.uuid4().hex[:16]}",
            amount=to_minor_units(amount),
            currency=currency,
            status=IntentStatus.CREATED,
            raw_status="requires_payment_method",
            metadata={"order_id": order_id},
        )
        self.intents[intent_id] = intent
        self.idempotency[idempotency_key] = intent_id
        return intent

    async def retrieve_payment_intent(self, intent_id: str) -> Optional[ProcessorIntent]:
        return self.intents.get(intent_id)

    def complete(self, intent_id: str, succeed: bool = True) -> ProcessorIntent:
        intent = self.intents[intent_id]
        intent.status = IntentStatus.SUCCEEDED if succeed else IntentStatus.FAILED
        intent.raw_status = "succeeded" if succeed else "canceled"
        return intent


def verify_webhook_signature(payload: bytes, header: str, secret: str,
                             tolerance: int = settings.WEBHOOK_TOLERANCE_SECONDS,
                             now: Optional[float] = None) -> bool:
    """Check a ``Stripe-Signature`` header (``t=<ts>,v1=<hex hmac>``)."""
    if not secret or not header:
        return False
    parts = {}
    signatures = []
    for item in header.split(","):
        key, _, value = item.strip().partition("=")
        if key == "v1":
            signatures.append(value)
        else:
            parts[key] = value
    try:
        timestamp = int(parts["t"])
    except (KeyError, ValueError):
        return False
    if abs((now or time.time()) - timestamp) > tolerance:
        return False
    signed = f"{timestamp}.".encode() + payload
    expected = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return any(hmac.compare_digest(expected, sig) for sig in signatures)


def build_processor() -> PaymentProcessor:
    if settings.PAYMENT_PROCESSOR == "stripe":
        return StripeProcessor()
    return SimulatedProcessor()
