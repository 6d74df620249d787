"""Order/payment status lattice.

``order_status`` and ``payment_status`` are separate fields: an order can be
SHIPPED and still unpaid, and paying never moves fulfillment. Every change
is a conditional update on the order document, guarded by the status it was
validated against and by ``version``, so two concurrent requests on one order
cannot both succeed.
"""
from datetime import datetime
from typing import Dict, FrozenSet, List, NamedTuple, Optional
import logging
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from shared.utils import NotFoundException
from orders_service.catalog import ListingCatalog
from orders_service.db import UnitOfWork, str_to_oid, to_bson_value, from_document
from orders_service.errors import AlreadyPaid, Forbidden, InvalidOrderState, InvalidTransition
from orders_service.models import (
    Actor, HistoryEntry, NotificationType, OrderAction, OrderDB, OrderStatus,
    PaymentStatus, Role, TransitionEvent, notification_type_for,
)
from orders_service.notifications import NotificationFanout

logger = logging.getLogger("orders-service.state_machine")

SELLER_ROLES = frozenset({Role.FARMER, Role.ADMIN})


class Transition(NamedTuple):
    sources: FrozenSet[OrderStatus]
    target: OrderStatus
    roles: FrozenSet[Role]


TRANSITIONS: Dict[OrderAction, Transition] = {
    OrderAction.APPROVE: Transition(frozenset({OrderStatus.PENDING}), OrderStatus.APPROVED, SELLER_ROLES),
    OrderAction.REJECT: Transition(
        frozenset({OrderStatus.PENDING, OrderStatus.APPROVED}), OrderStatus.CANCELLED, SELLER_ROLES
    ),
    OrderAction.CANCEL: Transition(frozenset({OrderStatus.PENDING}), OrderStatus.CANCELLED, frozenset({Role.BUYER})),
    OrderAction.SHIP: Transition(frozenset({OrderStatus.APPROVED}), OrderStatus.SHIPPED, SELLER_ROLES),
    OrderAction.DELIVER: Transition(frozenset({OrderStatus.SHIPPED}), OrderStatus.DELIVERED, SELLER_ROLES),
}

# Fulfillment states in which a confirmed payment may still be recorded
PAYABLE_STATES = (OrderStatus.SHIPPED, OrderStatus.DELIVERED)


def can_view(actor: Actor, order: OrderDB) -> bool:
    return actor.is_admin or actor.user_id == order.buyer_id or actor.user_id in order.farmer_ids


def authorize(actor: Actor, order: OrderDB, transition: Transition):
    if actor.role not in transition.roles:
        raise Forbidden(f"A {actor.role.value} cannot perform this action")
    if actor.role == Role.FARMER and actor.user_id not in order.farmer_ids:
        raise Forbidden("Order does not contain your listings")
    if actor.role == Role.BUYER and actor.user_id != order.buyer_id:
        raise Forbidden("Order belongs to another buyer")


class OrderStateMachine:
    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        uow: UnitOfWork,
        catalog: ListingCatalog,
        fanout: NotificationFanout,
    ):
        self.orders = db.orders
        self.uow = uow
        self.catalog = catalog
        self.fanout = fanout

    async def find(self, order_id: str, session=None) -> Optional[OrderDB]:
        return from_document(OrderDB, await self.orders.find_one({"_id": str_to_oid(order_id)}, session=session))

    async def load(self, order_id: str, session=None) -> OrderDB:
        order = await self.find(order_id, session=session)
        if order is None:
            raise NotFoundException("Order not found")
        return order

    async def get(self, actor: Actor, order_id: str) -> OrderDB:
        order = await self.load(order_id)
        if not can_view(actor, order):
            # Do not reveal other parties' orders
            raise NotFoundException("Order not found")
        return order

    async def _list(self, query: dict, page: int, limit: int) -> List[OrderDB]:
        skip = (page - 1) * limit
        cursor = self.orders.find(query).sort([("order_date", -1), ("_id", -1)]).skip(skip).limit(limit)
        docs = await cursor.to_list(length=limit)
        return [from_document(OrderDB, doc) for doc in docs]

    async def list_for_buyer(self, actor: Actor, page: int = 1, limit: int = 10) -> List[OrderDB]:
        return await self._list({"buyer_id": actor.user_id}, page, limit)

    async def list_for_farmer(self, actor: Actor, page: int = 1, limit: int = 10) -> List[OrderDB]:
        if actor.role != Role.FARMER:
            raise Forbidden("Only farmers have incoming orders")
        return await self._list({"farmer_ids": actor.user_id}, page, limit)

    async def list_all(self, actor: Actor, page: int = 1, limit: int = 10) -> List[OrderDB]:
        if not actor.is_admin:
            raise Forbidden("Only admins can list every order")
        return await self._list({}, page, limit)

    async def apply(self, actor: Actor, order_id: str, action: OrderAction) -> OrderDB:
        transition = TRANSITIONS[action]

        async def work(session) -> OrderDB:
            order = await self.load(order_id, session=session)
            authorize(actor, order, transition)
            if order.order_status not in transition.sources:
                raise InvalidTransition(action.value, order.order_status.value)

            now = datetime.utcnow()
            event = TransitionEvent(
                type=notification_type_for(order.order_status, transition.target),
                order_id=order.id,
                action=action,
                from_status=order.order_status,
                to_status=transition.target,
                actor_id=actor.user_id,
                actor_role=actor.role,
                occurred_at=now,
            )
            changes = {"order_status": transition.target.value, "updated_at": now}
            if transition.target == OrderStatus.CANCELLED:
                # A cancelled order's pending payment is cancelled with it
                changes["payment_status"] = PaymentStatus.CANCELLED.value
            if transition.target == OrderStatus.DELIVERED:
                changes["delivery_date"] = now

            updated = await self._commit(order, changes, event, session=session)
            if updated is None:
                current = await self.load(order_id, session=session)
                raise InvalidTransition(action.value, current.order_status.value)

            if transition.target == OrderStatus.CANCELLED:
                await self.catalog.restock(order.lines, session=session)
            return order

        order = await self.uow.run(work)

        logger.info("Order transition", extra={
            "order_id": order.id,
            "action": action.value,
            "from_status": order.order_status.value,
            "to_status": transition.target.value,
            "actor_id": actor.user_id,
            "actor_role": actor.role.value,
        })
        await self.fanout.relay(order.id)
        return await self.load(order.id)

    async def mark_paid(self, order: OrderDB, intent_id: str, actor: Actor, session=None) -> OrderDB:
        """Set ``payment_status`` to PAID; ``order_status`` is left as it is.

        Raises ``AlreadyPaid`` if another confirmation got there first.
        """
        if order.payment_status == PaymentStatus.PAID:
            raise AlreadyPaid(order)
        if order.order_status not in PAYABLE_STATES or order.payment_status != PaymentStatus.PENDING:
            raise InvalidOrderState(order.order_status.value, order.payment_status.value)

        now = datetime.utcnow()
        event = TransitionEvent(
            type=NotificationType.ORDER_PAID,
            order_id=order.id,
            action=OrderAction.PAY,
            from_status=order.order_status,
            to_status=order.order_status,
            actor_id=actor.user_id,
            actor_role=actor.role,
            occurred_at=now,
        )
        changes = {
            "payment_status": PaymentStatus.PAID.value,
            "paid_intent_id": intent_id,
            "active_intent_id": None,
            "updated_at": now,
        }
        updated = await self._commit(
            order, changes, event, session=session,
            guard={"payment_status": PaymentStatus.PENDING.value},
        )
        if updated is None:
            current = await self.load(order.id, session=session)
            if current.payment_status == PaymentStatus.PAID:
                raise AlreadyPaid(current)
            raise InvalidOrderState(current.order_status.value, current.payment_status.value)

        logger.info("Order paid", extra={
            "order_id": order.id,
            "intent_id": intent_id,
            "actor_id": actor.user_id,
            "amount": str(order.total),
        })
        return updated

    async def _commit(self, order: OrderDB, changes: dict, event: TransitionEvent, session=None,
                      guard: Optional[dict] = None) -> Optional[OrderDB]:
        # Status write, history and outbox event land in one document update
        query = {
            "_id": str_to_oid(order.id),
            "version": order.version,
            "order_status": order.order_status.value,
        }
        if guard:
            query.update(guard)
        history = HistoryEntry(
            action=event.action,
            from_status=event.from_status,
            to_status=event.to_status,
            actor_id=event.actor_id,
            actor_role=event.actor_role,
            at=event.occurred_at,
        )
        doc = await self.orders.find_one_and_update(
            query,
            {
                "$set": changes,
                "$inc": {"version": 1},
                "$push": {"history": to_bson_value(history), "outbox": to_bson_value(event)},
            },
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        return from_document(OrderDB, doc)
