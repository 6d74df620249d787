from datetime import datetime
from typing import Iterable, Optional
import logging
from motor.motor_asyncio import AsyncIOMotorDatabase

from shared.utils import NotFoundException
from orders_service.db import str_to_oid, to_document, from_document
from orders_service.errors import StockConflict
from orders_service.models import ListingDB, OrderLineDB

logger = logging.getLogger("orders-service.catalog")


class ListingCatalog:
    """Reads listings and moves their stock. Listings are owned by the catalog."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.collection = db.listings

    async def create(self, listing: ListingDB) -> ListingDB:
        res = await self.collection.insert_one(to_document(listing))
        return await self.get(str(res.inserted_id))

    async def find(self, listing_id: str, session=None) -> Optional[ListingDB]:
        doc = await self.collection.find_one({"_id": str_to_oid(listing_id)}, session=session)
        return from_document(ListingDB, doc)

    async def get(self, listing_id: str, session=None) -> ListingDB:
        listing = await self.find(listing_id, session=session)
        if listing is None or not listing.is_active:
            raise NotFoundException(f"Listing {listing_id} not found")
        return listing

    async def decrement_stock(self, listing_id: str, quantity: int, session=None):
        # The stock filter makes the decrement fail instead of going negative
        res = await self.collection.update_one(
            {"_id": str_to_oid(listing_id), "stock": {"$gte": quantity}},
            {"$inc": {"stock": -quantity}, "$set": {"updated_at": datetime.utcnow()}},
            session=session,
        )
        if res.modified_count == 0:
            listing = await self.find(listing_id, session=session)
            raise StockConflict(listing_id, quantity, listing.stock if listing else 0)

    async def restock(self, lines: Iterable[OrderLineDB], session=None):
        for line in lines:
            await self.collection.update_one(
                {"_id": str_to_oid(line.listing_id)},
                {"$inc": {"stock": line.quantity}, "$set": {"updated_at": datetime.utcnow()}},
                session=session,
            )
            logger.info("Stock released", extra={"listing_id": line.listing_id, "amount": line.quantity})
