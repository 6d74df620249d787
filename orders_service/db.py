from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Type, TypeVar
import logging
from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pydantic import BaseModel
from pymongo.errors import PyMongoError

from shared.utils import NotFoundException, settings

M = TypeVar("M", bound=BaseModel)
T = TypeVar("T")

logger = logging.getLogger("orders-service.db")


class UnitOfWork:
    """Runs a unit of work inside one MongoDB multi-document transaction.

    Requires a replica set (or sharded cluster). ``work`` is called with the
    session and every collection call it makes must pass that session. On a
    write conflict the server aborts with ``TransientTransactionError`` and
    ``work`` is run again from the start, so it must re-read everything it
    validates. A commit whose outcome is unknown is retried on its own.
    """

    def __init__(self, client: AsyncIOMotorClient, max_attempts: Optional[int] = None):
        self.client = client
        self.max_attempts = max_attempts or settings.TRANSACTION_MAX_ATTEMPTS

    async def run(self, work: Callable[[Any], Awaitable[T]]) -> T:
        attempt = 1
        while True:
            try:
                return await self._attempt(work)
            except PyMongoError as exc:
                if not exc.has_error_label("TransientTransactionError") or attempt >= self.max_attempts:
                    raise
                logger.warning("Transaction aborted by a conflicting write, retrying", extra={
                    "attempt": attempt, "error": str(exc),
                })
                attempt += 1

    async def _attempt(self, work: Callable[[Any], Awaitable[T]]) -> T:
        async with await self.client.start_session() as session:
            session.start_transaction()
            try:
                result = await work(session)
            except BaseException:
                if session.in_transaction:
                    await session.abort_transaction()
                raise
            await self._commit(session)
            return result

    async def _commit(self, session):
        for attempt in range(1, self.max_attempts + 1):
            try:
                await session.commit_transaction()
                return
            except PyMongoError as exc:
                if not exc.has_error_label("UnknownTransactionCommitResult") or attempt >= self.max_attempts:
                    raise
                logger.warning("Transaction commit result unknown, retrying commit")


async def create_indexes(db: AsyncIOMotorDatabase):
    await db.cart_entries.create_index([("buyer_id", 1), ("listing_id", 1)], unique=True)
    await db.orders.create_index("buyer_id")
    await db.orders.create_index("farmer_ids")
    await db.payment_intents.create_index("external_reference", unique=True)
    await db.payment_intents.create_index([("order_id", 1), ("attempt", 1)], unique=True)
    await db.payment_intents.create_index("buyer_id")
    # One notification per (order, transition, recipient)
    await db.notifications.create_index(
        [("order_id", 1), ("type", 1), ("recipient_id", 1)], unique=True
    )
    await db.notifications.create_index([("recipient_id", 1), ("read", 1)])


# --- Helpers ---
def str_to_oid(id: str) -> ObjectId:
    try:
        return ObjectId(id)
    except (InvalidId, TypeError):
        raise NotFoundException("Invalid ID format")


def _to_bson(value):
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _to_bson(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_to_bson(v) for v in value]
    return value


def to_document(model: BaseModel) -> dict:
    """Dump a model for insertion; Mongo assigns ``_id``."""
    return _to_bson(model.model_dump(by_alias=True, exclude={"id"}))


def to_bson_value(value):
    return _to_bson(value.model_dump() if isinstance(value, BaseModel) else value)


def from_document(model: Type[M], doc: Optional[dict]) -> Optional[M]:
    if doc is None:
        return None
    doc = dict(doc)
    doc["_id"] = str(doc["_id"])
    return model.model_validate(doc)
