from datetime import datetime
from typing import List, NamedTuple, Optional
import logging
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError

from shared.utils import settings
from orders_service.db import UnitOfWork, str_to_oid, to_document, from_document
from orders_service.errors import (
    AlreadyPaid, Forbidden, InvalidOrderState, PaymentMismatch, PaymentNotCompleted,
)
from orders_service.models import (
    Actor, IntentStatus, OrderDB, OrderStatus, PaymentIntentDB, PaymentStatus, Role,
)
from orders_service.notifications import NotificationFanout
from orders_service.processor import PaymentProcessor, ProcessorIntent, to_minor_units
from orders_service.state_machine import OrderStateMachine

logger = logging.getLogger("orders-service.payments")

# Acts on behalf of the processor when a webhook settles an intent
PROCESSOR_ACTOR = Actor(user_id="payment-processor", role=Role.ADMIN)


class PaymentConfirmation(NamedTuple):
    order: OrderDB
    already_paid: bool


class PaymentGateway:
    """Creates processor intents and records confirmed payments on orders."""

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        uow: UnitOfWork,
        processor: PaymentProcessor,
        state_machine: OrderStateMachine,
        fanout: NotificationFanout,
        currency: str = settings.CURRENCY,
    ):
        self.intents = db.payment_intents
        self.orders = db.orders
        self.uow = uow
        self.processor = processor
        self.state_machine = state_machine
        self.fanout = fanout
        self.currency = currency

    async def _find_intent(self, query: dict, session=None) -> Optional[PaymentIntentDB]:
        return from_document(PaymentIntentDB, await self.intents.find_one(query, session=session))

    async def _load_buyer_order(self, actor: Actor, order_id: str) -> OrderDB:
        order = await self.state_machine.load(order_id)
        if actor.role != Role.BUYER:
            raise Forbidden("Only the buyer can pay for an order")
        if order.buyer_id != actor.user_id:
            raise Forbidden("Order belongs to another buyer")
        return order

    async def list_for_buyer(self, actor: Actor) -> List[PaymentIntentDB]:
        cursor = self.intents.find({"buyer_id": actor.user_id}).sort([("created_at", -1), ("_id", -1)])
        return [from_document(PaymentIntentDB, doc) async for doc in cursor]

    async def create_intent(self, actor: Actor, order_id: str) -> PaymentIntentDB:
        """Return the order's outstanding intent, or open a new attempt.

        Safe to retry: a live intent is reused, and the processor call is
        keyed on ``(order, attempt)`` so a retried create cannot open a
        second charge.
        """
        order = await self._load_buyer_order(actor, order_id)
        if order.order_status != OrderStatus.SHIPPED or order.payment_status != PaymentStatus.PENDING:
            raise InvalidOrderState(order.order_status.value, order.payment_status.value)

        if order.active_intent_id:
            current = await self._find_intent({"_id": str_to_oid(order.active_intent_id)})
            if current is not None and current.status == IntentStatus.CREATED:
                remote = await self.processor.retrieve_payment_intent(current.external_reference)
                if remote is None or remote.status != IntentStatus.FAILED:
                    return current
                await self._fail_intent(current, remote.raw_status)
                order = await self.state_machine.load(order_id)

        attempt = order.payment_attempts
        remote = await self.processor.create_payment_intent(
            amount=order.total,
            currency=self.currency,
            order_id=order.id,
            idempotency_key=f"order-{order.id}-attempt-{attempt}",
        )
        intent = PaymentIntentDB(
            order_id=order.id,
            buyer_id=order.buyer_id,
            attempt=attempt,
            amount=order.total,
            currency=remote.currency,
            external_reference=remote.id,
            client_secret=remote.client_secret,
        )
        try:
            res = await self.intents.insert_one(to_document(intent))
            intent_id = str(res.inserted_id)
        except DuplicateKeyError:
            # A concurrent call recorded this attempt first
            existing = await self._find_intent({"order_id": order.id, "attempt": attempt})
            intent_id = existing.id

        await self.orders.update_one(
            {"_id": str_to_oid(order.id), "active_intent_id": None, "payment_attempts": attempt},
            {"$set": {"active_intent_id": intent_id, "updated_at": datetime.utcnow()}},
        )
        logger.info("Payment intent created", extra={
            "order_id": order.id,
            "intent_id": intent_id,
            "external_reference": remote.id,
            "amount": str(order.total),
        })
        return await self._find_intent({"_id": str_to_oid(intent_id)})

    async def confirm_payment(self, actor: Actor, order_id: str, external_reference: str) -> PaymentConfirmation:
        """Record a client-reported success after checking it with the processor."""
        order = await self._load_buyer_order(actor, order_id)
        intent = await self._find_intent({"external_reference": external_reference})
        if intent is None or intent.order_id != order.id:
            logger.warning("Payment reference mismatch", extra={
                "order_id": order_id, "external_reference": external_reference,
            })
            raise PaymentMismatch()
        return await self._settle(order, intent, actor)

    async def reconcile(self, external_reference: str) -> Optional[PaymentConfirmation]:
        """Settle an intent from a processor notification.

        Returns ``None`` when the intent is unknown or its attempt failed.
        """
        intent = await self._find_intent({"external_reference": external_reference})
        if intent is None:
            logger.warning("Webhook for unknown intent", extra={"external_reference": external_reference})
            return None
        order = await self.state_machine.load(intent.order_id)
        try:
            return await self._settle(order, intent, PROCESSOR_ACTOR)
        except PaymentNotCompleted:
            return None

    async def _settle(self, order: OrderDB, intent: PaymentIntentDB, actor: Actor) -> PaymentConfirmation:
        try:
            if order.payment_status == PaymentStatus.PAID:
                raise AlreadyPaid(order)

            remote = await self.processor.retrieve_payment_intent(intent.external_reference)
            self._verify(order, intent, remote)
            if remote.status == IntentStatus.FAILED:
                await self._fail_intent(intent, remote.raw_status)
                raise PaymentNotCompleted(remote.raw_status)
            if remote.status != IntentStatus.SUCCEEDED:
                raise PaymentNotCompleted(remote.raw_status)

            async def settle(session) -> OrderDB:
                current = await self.state_machine.load(order.id, session=session)
                paid = await self.state_machine.mark_paid(current, intent.id, actor, session=session)
                await self.intents.update_one(
                    {"_id": str_to_oid(intent.id)},
                    {"$set": {"status": IntentStatus.SUCCEEDED.value, "updated_at": datetime.utcnow()}},
                    session=session,
                )
                return paid

            paid = await self.uow.run(settle)
        except AlreadyPaid as exc:
            logger.info("Payment already recorded", extra={
                "order_id": order.id, "external_reference": intent.external_reference,
            })
            return PaymentConfirmation(order=exc.order, already_paid=True)

        await self.fanout.relay(paid.id)
        return PaymentConfirmation(order=await self.state_machine.load(paid.id), already_paid=False)

    def _verify(self, order: OrderDB, intent: PaymentIntentDB, remote: Optional[ProcessorIntent]):
        if remote is None:
            raise PaymentMismatch("Payment reference is unknown to the payment provider")
        if remote.metadata.get("order_id") != order.id:
            raise PaymentMismatch("Payment was made for a different order")
        if remote.amount != to_minor_units(intent.amount) or remote.currency != intent.currency:
            raise PaymentMismatch("Payment amount does not match the order")

    async def _fail_intent(self, intent: PaymentIntentDB, raw_status: str):
        # The order stays SHIPPED/PENDING and a new attempt may be opened
        async def work(session):
            res = await self.intents.update_one(
                {"_id": str_to_oid(intent.id), "status": IntentStatus.CREATED.value},
                {"$set": {"status": IntentStatus.FAILED.value, "updated_at": datetime.utcnow()}},
                session=session,
            )
            if res.modified_count:
                await self.orders.update_one(
                    {"_id": str_to_oid(intent.order_id), "payment_attempts": intent.attempt},
                    {"$set": {"active_intent_id": None}, "$inc": {"payment_attempts": 1}},
                    session=session,
                )

        await self.uow.run(work)
        logger.info("Payment attempt failed", extra={
            "order_id": intent.order_id,
            "intent_id": intent.id,
            "external_reference": intent.external_reference,
            "to_status": raw_status,
        })
