"""HTTP surface: routing, auth and the error body clients switch on."""
import json
import time
from decimal import Decimal

from shared.utils import settings

from conftest import ADMIN, BUYER, FARMER, OTHER_BUYER, auth_headers, sign_webhook

ADDRESS_BODY = {
    "province": "Kigali",
    "district": "Gasabo",
    "sector": "Remera",
    "cell": "Rukiri I",
    "village": "Amahoro",
}


async def order_via_api(client, listing, quantity=2):
    res = await client.post(
        "/cart/items",
        json={"listing_id": listing.id, "quantity": quantity},
        headers=auth_headers(BUYER),
    )
    cart_id = res.json()["data"]["id"]
    res = await client.post(
        "/orders/create-from-carts",
        json={"cart_ids": [cart_id], "delivery_address": ADDRESS_BODY},
        headers=auth_headers(BUYER),
    )
    assert res.status_code == 200
    return res.json()["data"]


class TestAuth:

    async def test_missing_token(self, client):
        res = await client.get("/cart")
        assert res.status_code == 401
        assert res.json()["error"] == "UNAUTHORIZED"

    async def test_garbage_token(self, client):
        res = await client.get("/cart", headers={"Authorization": "Bearer not-a-jwt"})
        assert res.status_code == 401

    async def test_token_without_role(self, client):
        from shared.utils import create_access_token
        token = create_access_token({"sub": "buyer-1"})
        res = await client.get("/cart", headers={"Authorization": f"Bearer {token}"})
        assert res.status_code == 401


class TestCartRoutes:

    async def test_add_list_update_remove(self, client, listing):
        res = await client.post("/cart/items", json={"listing_id": listing.id}, headers=auth_headers(BUYER))
        assert res.status_code == 200
        entry = res.json()["data"]
        assert entry["quantity"] == 1

        res = await client.put(f"/cart/{entry['id']}", json={"quantity": 3}, headers=auth_headers(BUYER))
        assert res.json()["data"]["quantity"] == 3

        res = await client.get("/cart", headers=auth_headers(BUYER))
        cart = res.json()["data"]
        assert len(cart["items"]) == 1
        assert Decimal(str(cart["total"])) == Decimal("30.00")

        res = await client.delete(f"/cart/{entry['id']}", headers=auth_headers(BUYER))
        assert res.json()["data"]["items"] == []

    async def test_invalid_quantity(self, client, listing):
        res = await client.post("/cart/items", json={"listing_id": listing.id}, headers=auth_headers(BUYER))
        entry_id = res.json()["data"]["id"]
        res = await client.put(f"/cart/{entry_id}", json={"quantity": 0}, headers=auth_headers(BUYER))
        assert res.status_code == 422
        assert res.json()["error"] == "INVALID_QUANTITY"

    async def test_out_of_stock(self, client, listing):
        res = await client.post(
            "/cart/items", json={"listing_id": listing.id, "quantity": 99}, headers=auth_headers(BUYER),
        )
        assert res.status_code == 409
        body = res.json()
        assert body["error"] == "OUT_OF_STOCK"
        assert body["retryable"] is False


class TestOrderRoutes:

    async def test_lifecycle(self, client, listing):
        order = await order_via_api(client, listing)
        assert order["order_status"] == "PENDING"
        assert Decimal(str(order["total_amount"])) == Decimal("20.00")

        for action, expected in (("approve", "APPROVED"), ("ship", "SHIPPED")):
            res = await client.put(f"/orders/{order['id']}/{action}", headers=auth_headers(FARMER))
            assert res.status_code == 200
            assert res.json()["data"]["order_status"] == expected

        res = await client.get(f"/orders/{order['id']}", headers=auth_headers(BUYER))
        assert [h["action"] for h in res.json()["data"]["history"]] == ["create", "approve", "ship"]

    async def test_invalid_transition_body(self, client, listing):
        order = await order_via_api(client, listing)
        await client.put(f"/orders/{order['id']}/approve", headers=auth_headers(FARMER))
        res = await client.put(f"/orders/{order['id']}/approve", headers=auth_headers(FARMER))
        assert res.status_code == 409
        assert res.json()["error"] == "INVALID_TRANSITION"

    async def test_unknown_action(self, client, listing):
        order = await order_via_api(client, listing)
        for action in ("teleport", "pay", "create"):
            res = await client.put(f"/orders/{order['id']}/{action}", headers=auth_headers(ADMIN))
            assert res.status_code == 404

    async def test_forbidden(self, client, listing):
        order = await order_via_api(client, listing)
        res = await client.put(f"/orders/{order['id']}/approve", headers=auth_headers(BUYER))
        assert res.status_code == 403
        assert res.json()["error"] == "FORBIDDEN"

    async def test_other_buyer_sees_not_found(self, client, listing):
        order = await order_via_api(client, listing)
        res = await client.get(f"/orders/{order['id']}", headers=auth_headers(OTHER_BUYER))
        assert res.status_code == 404

    async def test_lists(self, client, listing):
        order = await order_via_api(client, listing)
        for actor, path in ((BUYER, "/orders/buyer"), (FARMER, "/orders/farmer"), (ADMIN, "/orders")):
            res = await client.get(path, headers=auth_headers(actor))
            assert [o["id"] for o in res.json()["data"]] == [order["id"]]
        res = await client.get("/orders", headers=auth_headers(BUYER))
        assert res.status_code == 403

    async def test_blank_address_is_rejected(self, client, listing):
        res = await client.post("/cart/items", json={"listing_id": listing.id}, headers=auth_headers(BUYER))
        cart_id = res.json()["data"]["id"]
        res = await client.post(
            "/orders/create-from-carts",
            json={"cart_ids": [cart_id], "delivery_address": dict(ADDRESS_BODY, village="")},
            headers=auth_headers(BUYER),
        )
        assert res.status_code == 422


class TestPaymentRoutes:

    async def test_pay_shipped_order(self, client, processor, shipped_order):
        res = await client.post(f"/payments/create-payment-intent/{shipped_order.id}", headers=auth_headers(BUYER))
        assert res.status_code == 200
        intent = res.json()["data"]
        processor.complete(intent["external_reference"])

        body = {"order_id": shipped_order.id, "payment_intent_id": intent["external_reference"]}
        res = await client.post("/payments/process-payment", json=body, headers=auth_headers(BUYER))
        assert res.status_code == 200
        assert res.json()["message"] == "Payment successful"
        assert res.json()["data"]["payment_status"] == "PAID"

        res = await client.post("/payments/process-payment", json=body, headers=auth_headers(BUYER))
        assert res.json()["message"] == "Payment already processed"

        res = await client.get("/payments/transactions", headers=auth_headers(BUYER))
        assert [t["status"] for t in res.json()["data"]] == ["succeeded"]

    async def test_pending_order_body(self, client, listing):
        order = await order_via_api(client, listing)
        res = await client.post(f"/payments/create-payment-intent/{order['id']}", headers=auth_headers(BUYER))
        assert res.status_code == 409
        assert res.json()["error"] == "INVALID_ORDER_STATE"

    async def test_not_completed_body(self, client, shipped_order):
        res = await client.post(f"/payments/create-payment-intent/{shipped_order.id}", headers=auth_headers(BUYER))
        reference = res.json()["data"]["external_reference"]
        res = await client.post(
            "/payments/process-payment",
            json={"order_id": shipped_order.id, "payment_intent_id": reference},
            headers=auth_headers(BUYER),
        )
        assert res.status_code == 402
        assert res.json()["error"] == "PAYMENT_NOT_COMPLETED"

    async def test_saved_methods_are_not_served(self, client):
        # Stored cards live with the processor; only per-order intents exist here
        res = await client.get("/payments/methods", headers=auth_headers(BUYER))
        assert res.status_code == 404


class TestRateLimit:

    async def test_payment_calls_are_limited_per_user(self, client, shipped_order):
        path = f"/payments/create-payment-intent/{shipped_order.id}"
        allowed = int(settings.PAYMENT_RATE_LIMIT.split("/")[0])
        for _ in range(allowed):
            res = await client.post(path, headers=auth_headers(BUYER))
            assert res.status_code == 200

        res = await client.post(path, headers=auth_headers(BUYER))
        assert res.status_code == 429
        body = res.json()
        assert body["error"] == "RATE_LIMITED"
        assert body["retryable"] is True

        # A different signed-in user has their own allowance
        res = await client.post(path, headers=auth_headers(OTHER_BUYER))
        assert res.status_code == 403


class TestWebhook:

    async def test_signed_event_settles(self, client, engine, processor, shipped_order, monkeypatch):
        monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", "whsec_test")
        intent = await engine.payments.create_intent(BUYER, shipped_order.id)
        processor.complete(intent.external_reference)

        payload = json.dumps({
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": intent.external_reference}},
        }).encode()
        res = await client.post(
            "/payments/webhook",
            content=payload,
            headers={"Stripe-Signature": sign_webhook(payload, "whsec_test", int(time.time()))},
        )
        assert res.status_code == 200
        assert res.json() == {"received": True, "settled": True}
        assert (await engine.orders.load(shipped_order.id)).payment_status.value == "PAID"

    async def test_bad_signature(self, client, monkeypatch):
        monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", "whsec_test")
        payload = b'{"type": "payment_intent.succeeded"}'
        res = await client.post(
            "/payments/webhook",
            content=payload,
            headers={"Stripe-Signature": sign_webhook(payload, "whsec_wrong", int(time.time()))},
        )
        assert res.status_code == 401

    async def test_malformed_payload(self, client, monkeypatch):
        monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", "whsec_test")
        payload = b'{"type": "payment_intent.succeeded"}'
        res = await client.post(
            "/payments/webhook",
            content=payload,
            headers={"Stripe-Signature": sign_webhook(payload, "whsec_test", int(time.time()))},
        )
        assert res.status_code == 400

    async def test_other_event_types_are_acknowledged(self, client, monkeypatch):
        monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", "whsec_test")
        payload = json.dumps({"type": "charge.refunded", "data": {"object": {"id": "ch_1"}}}).encode()
        res = await client.post(
            "/payments/webhook",
            content=payload,
            headers={"Stripe-Signature": sign_webhook(payload, "whsec_test", int(time.time()))},
        )
        assert res.json() == {"received": True, "settled": False}


class TestNotificationRoutes:

    async def test_count_and_read(self, client, listing):
        await order_via_api(client, listing)
        res = await client.get("/notifications/unread/count", headers=auth_headers(FARMER))
        data = res.json()["data"]
        assert data["count"] == 1
        assert data["poll_interval_seconds"] == settings.NOTIFICATION_POLL_INTERVAL_SECONDS

        res = await client.get("/notifications/all", headers=auth_headers(FARMER))
        notification = res.json()["data"][0]
        assert notification["type"] == "ORDER_CREATED"

        res = await client.post(f"/notifications/{notification['id']}/read", headers=auth_headers(FARMER))
        assert res.json()["data"]["read"] is True

        res = await client.post("/notifications/read-all", headers=auth_headers(FARMER))
        assert res.json()["data"] == {"updated": 0}


class TestHealth:

    async def test_health(self, client):
        res = await client.get("/health")
        assert res.status_code == 200
        assert res.json()["status"] == "healthy"
        assert res.headers["Cache-Control"] == "no-store"
