from datetime import datetime
from typing import List
import logging
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from shared.utils import NotFoundException
from orders_service.catalog import ListingCatalog
from orders_service.db import str_to_oid, to_document, from_document
from orders_service.errors import Forbidden, InvalidQuantity, OutOfStock
from orders_service.models import Actor, CartEntryDB, Role

logger = logging.getLogger("orders-service.cart")


class CartStore:
    """Unconfirmed buyer selections.

    Nothing is reserved here: stock is only checked against the live listing
    on each mutation and checked again when the order is assembled.
    """

    def __init__(self, db: AsyncIOMotorDatabase, catalog: ListingCatalog):
        self.collection = db.cart_entries
        self.catalog = catalog

    async def list(self, actor: Actor) -> List[CartEntryDB]:
        cursor = self.collection.find({"buyer_id": actor.user_id}).sort("created_at", 1)
        return [from_document(CartEntryDB, doc) async for doc in cursor]

    async def get_owned(self, actor: Actor, cart_id: str) -> CartEntryDB:
        entry = from_document(CartEntryDB, await self.collection.find_one({"_id": str_to_oid(cart_id)}))
        if entry is None:
            raise NotFoundException(f"Cart entry {cart_id} not found")
        if entry.buyer_id != actor.user_id:
            raise Forbidden("Cart entry belongs to another buyer")
        return entry

    async def add_or_increment(self, actor: Actor, listing_id: str, quantity: int = 1) -> CartEntryDB:
        if actor.role != Role.BUYER:
            raise Forbidden("Only buyers have a cart")
        if quantity < 1:
            raise InvalidQuantity()

        listing = await self.catalog.get(listing_id)
        existing = await self.collection.find_one({"buyer_id": actor.user_id, "listing_id": listing_id})
        requested = quantity + (existing["quantity"] if existing else 0)
        if requested > listing.stock:
            raise OutOfStock(listing_id, requested, listing.stock)

        now = datetime.utcnow()
        snapshot = to_document(CartEntryDB(
            buyer_id=actor.user_id,
            listing_id=listing_id,
            quantity=quantity,
            unit_price_snapshot=listing.price,
            name=listing.name,
            created_at=now,
        ))
        for key in ("buyer_id", "listing_id", "quantity", "updated_at"):
            snapshot.pop(key)
        # One entry per (buyer, listing); the price captured on insert is kept
        query = {"buyer_id": actor.user_id, "listing_id": listing_id}
        update = {"$inc": {"quantity": quantity}, "$set": {"updated_at": now}, "$setOnInsert": snapshot}
        try:
            doc = await self.collection.find_one_and_update(
                query, update, upsert=True, return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            # Lost an insert race; the entry exists now so this is a plain increment
            doc = await self.collection.find_one_and_update(query, update, return_document=ReturnDocument.AFTER)
        entry = from_document(CartEntryDB, doc)
        if entry.quantity > listing.stock:
            # Another add for the same listing landed after the check above
            await self._undo_increment(entry.id, quantity)
            raise OutOfStock(listing_id, entry.quantity, listing.stock)

        logger.info("Cart updated", extra={
            "buyer_id": actor.user_id, "listing_id": listing_id, "amount": entry.quantity,
        })
        return entry

    async def _undo_increment(self, cart_id: str, quantity: int):
        oid = str_to_oid(cart_id)
        await self.collection.update_one({"_id": oid}, {"$inc": {"quantity": -quantity}})
        await self.collection.delete_one({"_id": oid, "quantity": {"$lte": 0}})

    async def update_quantity(self, actor: Actor, cart_id: str, quantity: int) -> CartEntryDB:
        if quantity < 1:
            raise InvalidQuantity()
        entry = await self.get_owned(actor, cart_id)

        listing = await self.catalog.get(entry.listing_id)
        if quantity > listing.stock:
            raise OutOfStock(entry.listing_id, quantity, listing.stock)

        await self.collection.update_one(
            {"_id": str_to_oid(cart_id)},
            {"$set": {"quantity": quantity, "updated_at": datetime.utcnow()}},
        )
        return await self.get_owned(actor, cart_id)

    async def remove(self, actor: Actor, cart_id: str):
        await self.get_owned(actor, cart_id)
        await self.collection.delete_one({"_id": str_to_oid(cart_id)})

    async def clear(self, actor: Actor) -> int:
        res = await self.collection.delete_many({"buyer_id": actor.user_id})
        return res.deleted_count
