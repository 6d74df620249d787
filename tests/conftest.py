import asyncio
import hashlib
import hmac
from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient
import mongomock
from pymongo.errors import OperationFailure

from shared.security_config import limiter
from shared.utils import create_access_token
from orders_service.db import UnitOfWork, create_indexes
from orders_service.engine import OrderEngine
from orders_service.main import app
from orders_service.models import Actor, DeliveryAddress, ListingDB, OrderAction, Role
from orders_service.processor import SimulatedProcessor

BUYER = Actor(user_id="buyer-1", role=Role.BUYER)
OTHER_BUYER = Actor(user_id="buyer-2", role=Role.BUYER)
FARMER = Actor(user_id="farmer-1", role=Role.FARMER)
OTHER_FARMER = Actor(user_id="farmer-2", role=Role.FARMER)
ADMIN = Actor(user_id="admin-1", role=Role.ADMIN)

ADDRESS = DeliveryAddress(
    province="Kigali",
    district="Gasabo",
    sector="Remera",
    cell="Rukiri I",
    village="Amahoro",
)


class AsyncCursor:
    def __init__(self, cursor):
        self._cursor = cursor

    def sort(self, *args, **kwargs):
        self._cursor.sort(*args, **kwargs)
        return self

    def skip(self, count):
        self._cursor.skip(count)
        return self

    def limit(self, count):
        self._cursor.limit(count)
        return self

    async def to_list(self, length=None):
        docs = list(self._cursor)
        return docs if length is None else docs[:length]

    async def __aiter__(self):
        for doc in self._cursor:
            yield doc


class AsyncCollection:
    """Awaitable facade over a mongomock collection, shaped like motor's.

    Every call yields to the event loop first, so concurrent tasks interleave
    between database operations the way they do against a real server.
    """

    def __init__(self, collection):
        self._collection = collection

    def find(self, *args, session=None, **kwargs):
        return AsyncCursor(self._collection.find(*args, **kwargs))

    def __getattr__(self, name):
        method = getattr(self._collection, name)

        async def call(*args, session=None, **kwargs):
            await asyncio.sleep(0)
            return method(*args, **kwargs)
        return call


class AsyncDatabase:
    def __init__(self, database):
        self._database = database

    def __getattr__(self, name):
        return AsyncCollection(self._database[name])

    async def command(self, *args, **kwargs):
        return self._database.command(*args, **kwargs)


class SerialUnitOfWork(UnitOfWork):
    """mongomock has no sessions, so units of work run one at a time."""

    def __init__(self, max_attempts=3):
        super().__init__(client=None, max_attempts=max_attempts)
        self.lock = asyncio.Lock()

    async def _attempt(self, work):
        async with self.lock:
            return await work(None)


class InterleavedUnitOfWork(UnitOfWork):
    """No isolation at all: only the conditional writes keep state consistent."""

    def __init__(self, max_attempts=3):
        super().__init__(client=None, max_attempts=max_attempts)

    async def _attempt(self, work):
        return await work(None)


@pytest.fixture
async def db():
    database = AsyncDatabase(mongomock.MongoClient()["orders_test"])
    await create_indexes(database)
    return database


@pytest.fixture
def processor():
    return SimulatedProcessor()


@pytest.fixture
def engine(db, processor):
    return OrderEngine(db, SerialUnitOfWork(), processor)


@pytest.fixture
def interleaved_engine(db, processor):
    return OrderEngine(db, InterleavedUnitOfWork(), processor)


@pytest.fixture
async def listing(engine):
    return await engine.catalog.create(ListingDB(
        farmer_id=FARMER.user_id,
        name="Ankole heifer",
        price=Decimal("10.00"),
        stock=5,
    ))


@pytest.fixture
def place_order(engine):
    async def _place(listing, quantity=2, buyer=BUYER):
        entry = await engine.cart.add_or_increment(buyer, listing.id, quantity)
        return await engine.assembler.create_from_carts(buyer, [entry.id], ADDRESS)
    return _place


@pytest.fixture
async def shipped_order(engine, listing, place_order):
    order = await place_order(listing)
    await engine.orders.apply(FARMER, order.id, OrderAction.APPROVE)
    return await engine.orders.apply(FARMER, order.id, OrderAction.SHIP)


def sign_webhook(payload: bytes, secret: str, timestamp: int) -> str:
    digest = hmac.new(secret.encode(), f"{timestamp}.".encode() + payload, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def write_conflict() -> OperationFailure:
    """What the server raises when another transaction wrote the same document."""
    return OperationFailure(
        "WriteConflict error: this operation conflicted with another operation",
        code=112,
        details={"errorLabels": ["TransientTransactionError"]},
    )


def auth_headers(actor: Actor) -> dict:
    token = create_access_token({"sub": actor.user_id, "role": actor.role.value})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
async def client(engine):
    app.state.engine = engine
    limiter.reset()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http
