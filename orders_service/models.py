from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Optional, List
import uuid
from pydantic import BaseModel, BeforeValidator, Field


class Role(str, Enum):
    BUYER = "buyer"
    FARMER = "farmer"
    ADMIN = "admin"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    CANCELLED = "CANCELLED"


class IntentStatus(str, Enum):
    CREATED = "created"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class OrderAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    CANCEL = "cancel"
    SHIP = "ship"
    DELIVER = "deliver"
    PAY = "pay"
    CREATE = "create"


class NotificationType(str, Enum):
    ORDER_CREATED = "ORDER_CREATED"
    ORDER_APPROVED = "ORDER_APPROVED"
    ORDER_SHIPPED = "ORDER_SHIPPED"
    ORDER_DELIVERED = "ORDER_DELIVERED"
    ORDER_CANCELLED = "ORDER_CANCELLED"
    ORDER_PAID = "ORDER_PAID"


def notification_type_for(from_status: Optional[OrderStatus], to_status: OrderStatus) -> NotificationType:
    """Map an order-status move onto the notification type it produces."""
    if from_status is None:
        return NotificationType.ORDER_CREATED
    return {
        OrderStatus.APPROVED: NotificationType.ORDER_APPROVED,
        OrderStatus.SHIPPED: NotificationType.ORDER_SHIPPED,
        OrderStatus.DELIVERED: NotificationType.ORDER_DELIVERED,
        OrderStatus.CANCELLED: NotificationType.ORDER_CANCELLED,
    }[to_status]


def to_money(value) -> Decimal:
    # Amounts are stored as doubles; go through str to keep the decimal digits
    return Decimal(str(value)).quantize(Decimal("0.01"))


# Money read back from Mongo doubles
Money = Annotated[Decimal, BeforeValidator(to_money)]


class Actor(BaseModel):
    """Identity of the caller, passed explicitly into every core operation."""
    user_id: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


class ListingDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    farmer_id: str
    name: str
    price: Money
    stock: int
    is_active: bool = True
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None

    class Config:
        populate_by_name = True


class CartEntryDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    buyer_id: str
    listing_id: str
    quantity: int
    unit_price_snapshot: Money
    name: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        populate_by_name = True

    @property
    def subtotal(self) -> Decimal:
        return self.unit_price_snapshot * self.quantity


class DeliveryAddress(BaseModel):
    province: str
    district: str
    sector: str
    cell: str
    village: str


class OrderLineDB(BaseModel):
    listing_id: str
    farmer_id: str
    name: str
    quantity: int
    unit_price: Money
    line_total: Money


class TransitionEvent(BaseModel):
    """Pending fan-out entry kept on the order document until delivered."""
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: NotificationType
    order_id: str
    action: OrderAction
    from_status: Optional[OrderStatus] = None
    to_status: OrderStatus
    actor_id: str
    actor_role: Role
    occurred_at: datetime = Field(default_factory=datetime.utcnow)


class HistoryEntry(BaseModel):
    action: OrderAction
    from_status: Optional[OrderStatus] = None
    to_status: OrderStatus
    actor_id: str
    actor_role: Role
    at: datetime = Field(default_factory=datetime.utcnow)


class OrderDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    buyer_id: str
    farmer_ids: List[str]
    lines: List[OrderLineDB]
    delivery_address: DeliveryAddress
    order_status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    order_date: datetime = Field(default_factory=datetime.utcnow)
    delivery_date: Optional[datetime] = None
    created_from: List[str] = []
    version: int = 0
    payment_attempts: int = 0
    active_intent_id: Optional[str] = None
    paid_intent_id: Optional[str] = None
    history: List[HistoryEntry] = []
    outbox: List[TransitionEvent] = []
    updated_at: Optional[datetime] = None

    class Config:
        populate_by_name = True

    @property
    def total(self) -> Decimal:
        # Derived from the lines on every read, never stored
        return sum((line.unit_price * line.quantity for line in self.lines), Decimal("0.00"))


class PaymentIntentDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    order_id: str
    buyer_id: str
    attempt: int
    amount: Money
    currency: str
    external_reference: str
    client_secret: str
    status: IntentStatus = IntentStatus.CREATED
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None

    class Config:
        populate_by_name = True


class NotificationDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    recipient_id: str
    recipient_role: Role
    type: NotificationType
    order_id: str
    event_id: str
    message: str
    read: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        populate_by_name = True
