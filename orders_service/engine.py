from motor.motor_asyncio import AsyncIOMotorDatabase

from orders_service.assembler import OrderAssembler
from orders_service.cart import CartStore
from orders_service.catalog import ListingCatalog
from orders_service.db import UnitOfWork
from orders_service.notifications import NotificationFanout
from orders_service.payments import PaymentGateway
from orders_service.processor import PaymentProcessor
from orders_service.state_machine import OrderStateMachine


class OrderEngine:
    """Wires the cart, order, payment and notification components on one database."""

    def __init__(self, db: AsyncIOMotorDatabase, uow: UnitOfWork, processor: PaymentProcessor):
        self.db = db
        self.processor = processor
        self.catalog = ListingCatalog(db)
        self.notifications = NotificationFanout(db)
        self.cart = CartStore(db, self.catalog)
        self.assembler = OrderAssembler(db, uow, self.catalog, self.notifications)
        self.orders = OrderStateMachine(db, uow, self.catalog, self.notifications)
        self.payments = PaymentGateway(db, uow, processor, self.orders, self.notifications)
