from datetime import datetime
from typing import Dict, List
import logging
from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase

from shared.utils import NotFoundException
from orders_service.catalog import ListingCatalog
from orders_service.db import UnitOfWork, str_to_oid, to_document, from_document
from orders_service.errors import EmptyCart, Forbidden, StockConflict
from orders_service.models import (
    Actor, CartEntryDB, DeliveryAddress, HistoryEntry, NotificationType, OrderAction,
    OrderDB, OrderLineDB, OrderStatus, Role, TransitionEvent,
)
from orders_service.notifications import NotificationFanout

logger = logging.getLogger("orders-service.assembler")


class OrderAssembler:
    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        uow: UnitOfWork,
        catalog: ListingCatalog,
        fanout: NotificationFanout,
    ):
        self.carts = db.cart_entries
        self.orders = db.orders
        self.uow = uow
        self.catalog = catalog
        self.fanout = fanout

    async def create_from_carts(self, actor: Actor, cart_ids: List[str], address: DeliveryAddress) -> OrderDB:
        """Turn cart entries into one PENDING order.

        Order insert, cart deletion and stock decrement commit together or not
        at all. Lines are priced from the live listing, not the cart snapshot.
        """
        if actor.role != Role.BUYER:
            raise Forbidden("Only buyers can place orders")
        cart_ids = list(dict.fromkeys(cart_ids))
        if not cart_ids:
            raise EmptyCart()
        cart_oids = [str_to_oid(cart_id) for cart_id in cart_ids]
        order_oid = ObjectId()

        async def work(session) -> OrderDB:
            cursor = self.carts.find({"_id": {"$in": cart_oids}}, session=session)
            entries = [from_document(CartEntryDB, doc) async for doc in cursor]
            found = {entry.id for entry in entries}
            missing = [cart_id for cart_id in cart_ids if cart_id not in found]
            if missing:
                raise NotFoundException(f"Cart entries not found: {', '.join(missing)}")
            if any(entry.buyer_id != actor.user_id for entry in entries):
                raise Forbidden("Cart entry belongs to another buyer")

            quantities: Dict[str, int] = {}
            for entry in entries:
                quantities[entry.listing_id] = quantities.get(entry.listing_id, 0) + entry.quantity

            lines = []
            for listing_id, quantity in quantities.items():
                listing = await self.catalog.get(listing_id, session=session)
                if quantity > listing.stock:
                    raise StockConflict(listing_id, quantity, listing.stock)
                unit_price = listing.price
                lines.append(OrderLineDB(
                    listing_id=listing_id,
                    farmer_id=listing.farmer_id,
                    name=listing.name,
                    quantity=quantity,
                    unit_price=unit_price,
                    line_total=unit_price * quantity,
                ))

            # Conditional on live stock; the read above may already be stale
            for line in lines:
                await self.catalog.decrement_stock(line.listing_id, line.quantity, session=session)

            order_id = str(order_oid)
            event = TransitionEvent(
                type=NotificationType.ORDER_CREATED,
                order_id=order_id,
                action=OrderAction.CREATE,
                to_status=OrderStatus.PENDING,
                actor_id=actor.user_id,
                actor_role=actor.role,
            )
            order = OrderDB(
                buyer_id=actor.user_id,
                farmer_ids=list(dict.fromkeys(line.farmer_id for line in lines)),
                lines=lines,
                delivery_address=address,
                created_from=cart_ids,
                history=[HistoryEntry(
                    action=OrderAction.CREATE,
                    to_status=OrderStatus.PENDING,
                    actor_id=actor.user_id,
                    actor_role=actor.role,
                    at=event.occurred_at,
                )],
                outbox=[event],
                order_date=event.occurred_at,
                updated_at=datetime.utcnow(),
            )
            doc = to_document(order)
            doc["_id"] = order_oid
            await self.orders.insert_one(doc, session=session)

            res = await self.carts.delete_many(
                {"_id": {"$in": cart_oids}, "buyer_id": actor.user_id}, session=session
            )
            if res.deleted_count != len(cart_oids):
                raise NotFoundException("Cart entries were already checked out")
            return order

        order = await self.uow.run(work)
        order_id = str(order_oid)

        logger.info("Order created", extra={
            "order_id": order_id,
            "buyer_id": actor.user_id,
            "cart_ids": cart_ids,
            "amount": str(order.total),
        })
        await self.fanout.relay(order_id)
        return from_document(OrderDB, await self.orders.find_one({"_id": order_oid}))
