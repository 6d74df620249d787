from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from decimal import Decimal
from datetime import datetime
from shared.security_config import sanitize_input
from orders_service.models import (
    CartEntryDB, DeliveryAddress, HistoryEntry, IntentStatus, NotificationDB, NotificationType,
    OrderDB, OrderStatus, PaymentIntentDB, PaymentStatus, Role,
)

# --- Cart ---
class CartItemAdd(BaseModel):
    listing_id: str
    quantity: int = Field(1, gt=0)

class CartItemUpdate(BaseModel):
    quantity: int

class CartItemResponse(BaseModel):
    id: str
    listing_id: str
    quantity: int
    unit_price: Decimal
    subtotal: Decimal
    name: Optional[str] = None

    @classmethod
    def from_entry(cls, entry: CartEntryDB) -> "CartItemResponse":
        return cls(
            id=entry.id,
            listing_id=entry.listing_id,
            quantity=entry.quantity,
            unit_price=entry.unit_price_snapshot,
            subtotal=entry.subtotal,
            name=entry.name,
        )

class CartResponse(BaseModel):
    buyer_id: str
    items: List[CartItemResponse]
    total: Decimal

# --- Orders ---
class DeliveryAddressIn(DeliveryAddress):
    province: str = Field(..., min_length=1)
    district: str = Field(..., min_length=1)
    sector: str = Field(..., min_length=1)
    cell: str = Field(..., min_length=1)
    village: str = Field(..., min_length=1)

    @field_validator('province', 'district', 'sector', 'cell', 'village')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

class OrderCreate(BaseModel):
    cart_ids: List[str] = Field(..., min_length=1)
    delivery_address: DeliveryAddressIn

class OrderLineResponse(BaseModel):
    listing_id: str
    farmer_id: str
    name: str
    quantity: int
    unit_price: Decimal
    line_total: Decimal

class OrderResponse(BaseModel):
    id: str
    buyer_id: str
    farmer_ids: List[str]
    lines: List[OrderLineResponse]
    total_amount: Decimal
    delivery_address: DeliveryAddress
    order_status: OrderStatus
    payment_status: PaymentStatus
    order_date: datetime
    delivery_date: Optional[datetime] = None
    created_from: List[str]
    history: List[HistoryEntry]
    updated_at: Optional[datetime] = None

    @classmethod
    def from_order(cls, order: OrderDB) -> "OrderResponse":
        return cls(
            id=order.id,
            buyer_id=order.buyer_id,
            farmer_ids=order.farmer_ids,
            lines=[OrderLineResponse(
                listing_id=line.listing_id,
                farmer_id=line.farmer_id,
                name=line.name,
                quantity=line.quantity,
                unit_price=line.unit_price,
                line_total=line.unit_price * line.quantity,
            ) for line in order.lines],
            total_amount=order.total,
            delivery_address=order.delivery_address,
            order_status=order.order_status,
            payment_status=order.payment_status,
            order_date=order.order_date,
            delivery_date=order.delivery_date,
            created_from=order.created_from,
            history=order.history,
            updated_at=order.updated_at,
        )

# --- Payments ---
class PaymentConfirm(BaseModel):
    order_id: str
    payment_intent_id: str

    @field_validator('order_id', 'payment_intent_id')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

class PaymentIntentResponse(BaseModel):
    id: str
    order_id: str
    client_secret: str
    external_reference: str
    amount: Decimal
    currency: str
    status: IntentStatus

    @classmethod
    def from_intent(cls, intent: PaymentIntentDB) -> "PaymentIntentResponse":
        return cls(
            id=intent.id,
            order_id=intent.order_id,
            client_secret=intent.client_secret,
            external_reference=intent.external_reference,
            amount=intent.amount,
            currency=intent.currency,
            status=intent.status,
        )

class TransactionResponse(BaseModel):
    id: str
    order_id: str
    external_reference: str
    amount: Decimal
    currency: str
    status: IntentStatus
    created_at: datetime
    updated_at: Optional[datetime] = None

class WebhookAck(BaseModel):
    received: bool = True
    settled: bool = False

# --- Notifications ---
class NotificationResponse(BaseModel):
    id: str
    type: NotificationType
    order_id: str
    message: str
    read: bool
    recipient_role: Role
    created_at: datetime

    @classmethod
    def from_notification(cls, notification: NotificationDB) -> "NotificationResponse":
        return cls(**notification.model_dump(include=set(cls.model_fields)))

class UnreadCountResponse(BaseModel):
    count: int
    poll_interval_seconds: int
