"""Notification fan-out.

Transitions never write notifications directly. They append a
``TransitionEvent`` to the order document's ``outbox`` in the same atomic
update that changes the status; this relay turns outbox entries into one
notification per recipient and then removes the entry. Delivery is
at-least-once and the unique ``(order_id, type, recipient_id)`` index makes
the resulting records exactly-once.
"""
from typing import List, Tuple
import logging
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError

from shared.utils import NotFoundException
from orders_service.db import str_to_oid, to_document, from_document
from orders_service.models import (
    Actor, NotificationDB, NotificationType, OrderAction, OrderDB, Role, TransitionEvent,
)

logger = logging.getLogger("orders-service.notifications")

# Role inbox shared by every admin
ADMIN_INBOX = "admins"

# Orders relayed per poll
RELAY_BATCH_SIZE = 50

MESSAGES = {
    NotificationType.ORDER_CREATED: "New order #{order_id} is waiting for your approval",
    NotificationType.ORDER_APPROVED: "Your order #{order_id} has been approved",
    NotificationType.ORDER_SHIPPED: "Your order #{order_id} has been shipped and is ready for payment",
    NotificationType.ORDER_DELIVERED: "Your order #{order_id} has been delivered",
    NotificationType.ORDER_PAID: "Payment received for order #{order_id}",
}
CANCEL_MESSAGES = {
    OrderAction.REJECT: "Order #{order_id} was rejected by the seller",
    OrderAction.CANCEL: "Order #{order_id} was cancelled by the buyer",
}


def render_message(event: TransitionEvent) -> str:
    if event.type == NotificationType.ORDER_CANCELLED:
        template = CANCEL_MESSAGES[event.action]
    else:
        template = MESSAGES[event.type]
    return template.format(order_id=event.order_id)


def recipients_for(event: TransitionEvent, order: OrderDB) -> List[Tuple[str, Role]]:
    """Who hears about an event: farmers on creation, the buyer on every
    later change, admins (and the farmers, when the buyer did it) on
    cancellation."""
    if event.type == NotificationType.ORDER_CREATED:
        return [(farmer_id, Role.FARMER) for farmer_id in order.farmer_ids]

    recipients = [(order.buyer_id, Role.BUYER)]
    if event.type == NotificationType.ORDER_CANCELLED:
        if event.action == OrderAction.CANCEL:
            recipients.extend((farmer_id, Role.FARMER) for farmer_id in order.farmer_ids)
        recipients.append((ADMIN_INBOX, Role.ADMIN))
    return recipients


def _inbox_query(actor: Actor) -> dict:
    if actor.is_admin:
        return {"recipient_id": {"$in": [actor.user_id, ADMIN_INBOX]}}
    return {"recipient_id": actor.user_id}


class NotificationFanout:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.collection = db.notifications
        self.orders = db.orders

    async def on_transition(self, event: TransitionEvent, order: OrderDB) -> int:
        """Create the notifications for one event; returns how many were new."""
        created = 0
        message = render_message(event)
        for recipient_id, role in recipients_for(event, order):
            notification = NotificationDB(
                recipient_id=recipient_id,
                recipient_role=role,
                type=event.type,
                order_id=event.order_id,
                event_id=event.event_id,
                message=message,
                created_at=event.occurred_at,
            )
            try:
                await self.collection.insert_one(to_document(notification))
                created += 1
            except DuplicateKeyError:
                # Delivered by an earlier relay run
                continue
        return created

    async def relay(self, order_id: str):
        """Deliver and clear the pending outbox of one order.

        Failures are logged and left in the outbox; the state change they
        describe has already committed.
        """
        try:
            order = from_document(OrderDB, await self.orders.find_one({"_id": str_to_oid(order_id)}))
            if order is None:
                return
            for event in order.outbox:
                await self.on_transition(event, order)
                await self.orders.update_one(
                    {"_id": str_to_oid(order_id)},
                    {"$pull": {"outbox": {"event_id": event.event_id}}},
                )
        except Exception:
            logger.exception("Notification delivery failed", extra={"order_id": order_id})

    async def relay_pending(self, actor: Actor):
        """Catch up on undelivered events for orders the actor is party to."""
        query = {"outbox": {"$exists": True, "$ne": []}}
        if not actor.is_admin:
            query["$or"] = [{"buyer_id": actor.user_id}, {"farmer_ids": actor.user_id}]
        cursor = self.orders.find(query, {"_id": 1}).limit(RELAY_BATCH_SIZE)
        order_ids = [str(doc["_id"]) async for doc in cursor]
        for order_id in order_ids:
            await self.relay(order_id)

    async def unread_count(self, actor: Actor) -> int:
        await self.relay_pending(actor)
        query = _inbox_query(actor)
        query["read"] = False
        return await self.collection.count_documents(query)

    async def list_all(self, actor: Actor, page: int = 1, limit: int = 50) -> List[NotificationDB]:
        await self.relay_pending(actor)
        skip = (page - 1) * limit
        cursor = (
            self.collection.find(_inbox_query(actor))
            .sort([("created_at", -1), ("_id", -1)])
            .skip(skip)
            .limit(limit)
        )
        docs = await cursor.to_list(length=limit)
        return [from_document(NotificationDB, doc) for doc in docs]

    async def mark_read(self, actor: Actor, notification_id: str) -> NotificationDB:
        query = _inbox_query(actor)
        query["_id"] = str_to_oid(notification_id)
        res = await self.collection.update_one(query, {"$set": {"read": True}})
        if res.matched_count == 0:
            raise NotFoundException("Notification not found")
        return from_document(NotificationDB, await self.collection.find_one({"_id": query["_id"]}))

    async def mark_all_read(self, actor: Actor) -> int:
        query = _inbox_query(actor)
        query["read"] = False
        res = await self.collection.update_many(query, {"$set": {"read": True}})
        return res.modified_count
