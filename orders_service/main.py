from fastapi import FastAPI, Depends, Query, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi import status
from pydantic import ValidationError
from pymongo.errors import PyMongoError
from datetime import datetime
from decimal import Decimal
from typing import List
import json
import logging

from shared.utils import (
    get_db_client, settings, SuccessResponse, ErrorResponse, HealthResponse,
    AppException, UnauthorizedException, ServiceUnavailableException, require_auth,
)
from shared.logging_config import setup_logging, RequestLoggingMiddleware
from shared.security_config import setup_rate_limiting, SecurityHeadersMiddleware, limiter

from orders_service.db import UnitOfWork, create_indexes
from orders_service.engine import OrderEngine
from orders_service.models import Actor, OrderAction
from orders_service.processor import build_processor, verify_webhook_signature
from orders_service.schemas import (
    CartItemAdd, CartItemUpdate, CartItemResponse, CartResponse,
    OrderCreate, OrderResponse,
    PaymentConfirm, PaymentIntentResponse, TransactionResponse, WebhookAck,
    NotificationResponse, UnreadCountResponse,
)

# Setup Logging
logger = setup_logging(settings.SERVICE_NAME)

app = FastAPI(title="Orders Service")

# Security Setup
setup_rate_limiting(app)
app.add_middleware(SecurityHeadersMiddleware)

# Middleware
app.add_middleware(RequestLoggingMiddleware, service_name=settings.SERVICE_NAME)

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
async def startup_db_client():
    app.mongodb_client = get_db_client()
    app.mongodb = app.mongodb_client[settings.MONGO_DB_NAME]
    await create_indexes(app.mongodb)
    app.state.engine = OrderEngine(app.mongodb, UnitOfWork(app.mongodb_client), build_processor())

@app.on_event("shutdown")
async def shutdown_db_client():
    await app.state.engine.processor.aclose()
    app.mongodb_client.close()

# --- Error Handlers ---
@app.exception_handler(AppException)
async def app_exception_handler(request: Request, exc: AppException):
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_response().model_dump(),
        headers=exc.headers,
    )

@app.exception_handler(PyMongoError)
async def database_exception_handler(request: Request, exc: PyMongoError):
    logging.getLogger(settings.SERVICE_NAME).error("Database error", exc_info=exc)
    return await app_exception_handler(request, ServiceUnavailableException("Database temporarily unavailable"))

# --- Dependencies ---
def get_engine(request: Request) -> OrderEngine:
    return request.app.state.engine

async def get_current_actor(request: Request, claims: dict = Depends(require_auth)) -> Actor:
    try:
        actor = Actor(user_id=claims["sub"], role=claims["role"])
    except (KeyError, ValidationError):
        raise UnauthorizedException("Token does not carry a user and role")
    request.state.actor = actor
    return actor

# --- Helper ---
async def cart_response(engine: OrderEngine, actor: Actor) -> CartResponse:
    entries = await engine.cart.list(actor)
    items = [CartItemResponse.from_entry(entry) for entry in entries]
    return CartResponse(
        buyer_id=actor.user_id,
        items=items,
        total=sum((item.subtotal for item in items), Decimal("0.00")),
    )

# --- Endpoints ---

# Cart
@app.get("/cart", response_model=SuccessResponse[CartResponse])
@limiter.limit("60/minute")
async def get_cart(request: Request, actor: Actor = Depends(get_current_actor), engine: OrderEngine = Depends(get_engine)):
    return SuccessResponse(data=await cart_response(engine, actor))

@app.post("/cart/items", response_model=SuccessResponse[CartItemResponse])
async def add_to_cart(item: CartItemAdd, actor: Actor = Depends(get_current_actor), engine: OrderEngine = Depends(get_engine)):
    entry = await engine.cart.add_or_increment(actor, item.listing_id, item.quantity)
    return SuccessResponse(data=CartItemResponse.from_entry(entry), message="Added to cart")

@app.put("/cart/{cart_id}", response_model=SuccessResponse[CartItemResponse])
async def update_cart_item(cart_id: str, update: CartItemUpdate, actor: Actor = Depends(get_current_actor), engine: OrderEngine = Depends(get_engine)):
    entry = await engine.cart.update_quantity(actor, cart_id, update.quantity)
    return SuccessResponse(data=CartItemResponse.from_entry(entry))

@app.delete("/cart/{cart_id}", response_model=SuccessResponse[CartResponse])
async def remove_cart_item(cart_id: str, actor: Actor = Depends(get_current_actor), engine: OrderEngine = Depends(get_engine)):
    await engine.cart.remove(actor, cart_id)
    return SuccessResponse(data=await cart_response(engine, actor), message="Item removed")

@app.delete("/cart", response_model=SuccessResponse[dict])
async def clear_cart(actor: Actor = Depends(get_current_actor), engine: OrderEngine = Depends(get_engine)):
    removed = await engine.cart.clear(actor)
    return SuccessResponse(data={"removed": removed}, message="Cart cleared")

# Orders
@app.post("/orders/create-from-carts", response_model=SuccessResponse[OrderResponse])
async def create_order(order_in: OrderCreate, actor: Actor = Depends(get_current_actor), engine: OrderEngine = Depends(get_engine)):
    order = await engine.assembler.create_from_carts(actor, order_in.cart_ids, order_in.delivery_address)
    return SuccessResponse(data=OrderResponse.from_order(order), message="Order created successfully")

@app.get("/orders/buyer", response_model=SuccessResponse[List[OrderResponse]])
async def list_buyer_orders(
    actor: Actor = Depends(get_current_actor),
    engine: OrderEngine = Depends(get_engine),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100)
):
    orders = await engine.orders.list_for_buyer(actor, page, limit)
    return SuccessResponse(data=[OrderResponse.from_order(order) for order in orders])

@app.get("/orders/farmer", response_model=SuccessResponse[List[OrderResponse]])
async def list_farmer_orders(
    actor: Actor = Depends(get_current_actor),
    engine: OrderEngine = Depends(get_engine),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100)
):
    orders = await engine.orders.list_for_farmer(actor, page, limit)
    return SuccessResponse(data=[OrderResponse.from_order(order) for order in orders])

@app.get("/orders", response_model=SuccessResponse[List[OrderResponse]])
async def list_orders(
    actor: Actor = Depends(get_current_actor),
    engine: OrderEngine = Depends(get_engine),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100)
):
    orders = await engine.orders.list_all(actor, page, limit)
    return SuccessResponse(data=[OrderResponse.from_order(order) for order in orders])

@app.get("/orders/{order_id}", response_model=SuccessResponse[OrderResponse])
async def get_order(order_id: str, actor: Actor = Depends(get_current_actor), engine: OrderEngine = Depends(get_engine)):
    order = await engine.orders.get(actor, order_id)
    return SuccessResponse(data=OrderResponse.from_order(order))

@app.put("/orders/{order_id}/{action}", response_model=SuccessResponse[OrderResponse])
async def transition_order(order_id: str, action: str, actor: Actor = Depends(get_current_actor), engine: OrderEngine = Depends(get_engine)):
    try:
        order_action = OrderAction(action)
    except ValueError:
        raise AppException(status.HTTP_404_NOT_FOUND, f"Unknown order action '{action}'")
    if order_action in (OrderAction.PAY, OrderAction.CREATE):
        raise AppException(status.HTTP_404_NOT_FOUND, f"Unknown order action '{action}'")
    order = await engine.orders.apply(actor, order_id, order_action)
    return SuccessResponse(data=OrderResponse.from_order(order), message=f"Order {order.order_status.value.lower()}")

# Payments
@app.post("/payments/create-payment-intent/{order_id}", response_model=SuccessResponse[PaymentIntentResponse])
@limiter.limit(settings.PAYMENT_RATE_LIMIT)
async def create_payment_intent(order_id: str, request: Request, actor: Actor = Depends(get_current_actor), engine: OrderEngine = Depends(get_engine)):
    intent = await engine.payments.create_intent(actor, order_id)
    return SuccessResponse(data=PaymentIntentResponse.from_intent(intent))

@app.post("/payments/process-payment", response_model=SuccessResponse[OrderResponse])
@limiter.limit(settings.PAYMENT_RATE_LIMIT)
async def process_payment(payment: PaymentConfirm, request: Request, actor: Actor = Depends(get_current_actor), engine: OrderEngine = Depends(get_engine)):
    result = await engine.payments.confirm_payment(actor, payment.order_id, payment.payment_intent_id)
    msg = "Payment already processed" if result.already_paid else "Payment successful"
    return SuccessResponse(data=OrderResponse.from_order(result.order), message=msg)

@app.get("/payments/transactions", response_model=SuccessResponse[List[TransactionResponse]])
async def list_transactions(actor: Actor = Depends(get_current_actor), engine: OrderEngine = Depends(get_engine)):
    intents = await engine.payments.list_for_buyer(actor)
    return SuccessResponse(data=[
        TransactionResponse(**intent.model_dump(include=set(TransactionResponse.model_fields)))
        for intent in intents
    ])

@app.post("/payments/webhook", response_model=WebhookAck)
async def payment_webhook(
    request: Request,
    stripe_signature: str = Header("", alias="Stripe-Signature"),
    engine: OrderEngine = Depends(get_engine),
):
    payload = await request.body()
    if not verify_webhook_signature(payload, stripe_signature, settings.STRIPE_WEBHOOK_SECRET):
        raise UnauthorizedException("Invalid webhook signature")
    try:
        event = json.loads(payload)
        event_type = event["type"]
        reference = event["data"]["object"]["id"]
    except (ValueError, KeyError, TypeError):
        raise AppException(status.HTTP_400_BAD_REQUEST, "Malformed webhook payload")

    if not event_type.startswith("payment_intent."):
        return WebhookAck()
    result = await engine.payments.reconcile(reference)
    return WebhookAck(settled=result is not None)

# Notifications
@app.get("/notifications/unread/count", response_model=SuccessResponse[UnreadCountResponse])
async def unread_count(actor: Actor = Depends(get_current_actor), engine: OrderEngine = Depends(get_engine)):
    count = await engine.notifications.unread_count(actor)
    return SuccessResponse(data=UnreadCountResponse(
        count=count,
        poll_interval_seconds=settings.NOTIFICATION_POLL_INTERVAL_SECONDS,
    ))

@app.get("/notifications/all", response_model=SuccessResponse[List[NotificationResponse]])
async def list_notifications(
    actor: Actor = Depends(get_current_actor),
    engine: OrderEngine = Depends(get_engine),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100)
):
    notifications = await engine.notifications.list_all(actor, page, limit)
    return SuccessResponse(data=[NotificationResponse.from_notification(n) for n in notifications])

@app.post("/notifications/read-all", response_model=SuccessResponse[dict])
async def mark_all_read(actor: Actor = Depends(get_current_actor), engine: OrderEngine = Depends(get_engine)):
    updated = await engine.notifications.mark_all_read(actor)
    return SuccessResponse(data={"updated": updated})

@app.post("/notifications/{notification_id}/read", response_model=SuccessResponse[NotificationResponse])
async def mark_read(notification_id: str, actor: Actor = Depends(get_current_actor), engine: OrderEngine = Depends(get_engine)):
    notification = await engine.notifications.mark_read(actor, notification_id)
    return SuccessResponse(data=NotificationResponse.from_notification(notification))

@app.get("/health", response_model=HealthResponse)
async def health_check(engine: OrderEngine = Depends(get_engine)):
    try:
        await engine.db.command('ping')
        db_status = "connected"
    except Exception:
        db_status = "disconnected"

    if db_status != "connected":
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=ErrorResponse(error="SERVICE_UNHEALTHY", details={"database": db_status}, retryable=True).model_dump(),
        )

    return HealthResponse(
        service=settings.SERVICE_NAME,
        status="healthy",
        timestamp=datetime.utcnow(),
        version="1.0.0",
        database=db_status,
        dependencies={"payment-processor": settings.PAYMENT_PROCESSOR},
    )
