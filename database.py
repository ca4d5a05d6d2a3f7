"""Database lifecycle and the transaction boundary for order placement.

A `Database` is built once at startup by `create_database`, connected and
closed by the app's lifespan, and handed to request handlers.  Its
`run_in_transaction(work, timeout)` runs `work(txn)` all-or-nothing:
commit when `work` returns, roll back and re-raise when it raises.
"""
import time
import logging
import threading
from typing import Callable, List, Optional, TypeVar

import pymongo
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.errors import PyMongoError

from config import Settings
from errors import StoreError, TransactionTimeout
from stores import (
    MemoryOrderStore, MemoryProductStore, MemoryUserStore,
    MongoOrderStore, MongoProductStore, MongoUserStore,
    OrderStore, ProductStore, UserStore,
)

log = logging.getLogger(__name__)

T = TypeVar("T")


class Database:
    backend = "none"
    transactional = False

    products: ProductStore
    orders: OrderStore
    users: UserStore

    def connect(self) -> None:
        raise NotImplementedError()

    def close(self) -> None:
        raise NotImplementedError()

    def ping(self) -> bool:
        raise NotImplementedError()

    def run_in_transaction(self, work: Callable[..., T], timeout: Optional[float] = None) -> T:
        raise NotImplementedError()


# ---------- MongoDB ----------

class MongoDatabase(Database):
    backend = "mongodb"
    transactional = True

    def __init__(self, url: str, name: str = "ecommerce", client_factory=MongoClient):
        self.url = url
        self.name = name
        self._client_factory = client_factory
        self.client = None
        self.db = None

    def connect(self) -> None:
        if self.client is not None:
            return
        log.info("Connecting to MongoDB database %r", self.name)
        client = self._client_factory(
            self.url,
            tz_aware=True,
            serverSelectionTimeoutMS=5000,
            retryWrites=True,
            w="majority",
        )
        try:
            client.admin.command("ping")
        except PyMongoError as e:
            client.close()
            log.error("MongoDB connection failed: %s", e)
            raise StoreError("could not connect to MongoDB") from e
        self.client = client
        self.db = client[self.name]
        self.products = MongoProductStore(self.db)
        self.orders = MongoOrderStore(self.db)
        self.users = MongoUserStore(self.db)
        self._create_indexes()
        log.info("Connected to MongoDB")

    def _create_indexes(self) -> None:
        try:
            self.db["products"].create_index("id", unique=True)
            self.db["products"].create_index("name")
            self.db["products"].create_index("category")
            self.db["orders"].create_index("id", unique=True)
            self.db["orders"].create_index([("owner_id", ASCENDING), ("created_at", DESCENDING)])
            self.db["users"].create_index("id", unique=True)
            self.db["users"].create_index("email", unique=True)
            self.db["users"].create_index("username", unique=True)
        except PyMongoError as e:
            raise StoreError("index creation failed") from e
        log.info("Database indexes created")

    def close(self) -> None:
        if self.client is not None:
            self.client.close()
            self.client = None
            self.db = None
            log.info("Database connection closed")

    def ping(self) -> bool:
        if self.client is None:
            return False
        try:
            self.client.admin.command("ping")
        except PyMongoError:
            return False
        return True

    def run_in_transaction(self, work, timeout=None):
        """Run `work(session)` in a MongoDB multi-document transaction.

        `with_transaction` commits on return and aborts on any exception.
        The driver re-runs `work` only for transient write conflicts.
        """
        if self.client is None:
            raise StoreError("database not connected")
        try:
            with pymongo.timeout(timeout):
                with self.client.start_session() as session:
                    return session.with_transaction(work)
        except PyMongoError as e:
            if e.timeout:
                raise TransactionTimeout(str(e)) from e
            raise StoreError(str(e)) from e


# ---------- In-memory ----------

class MemoryTransaction:
    """Undo journal and deadline for one in-memory unit of work."""

    def __init__(self, deadline: Optional[float] = None):
        self.deadline = deadline
        self._undo: List[Callable[[], None]] = []

    def guard(self) -> None:
        if self.deadline is not None and time.monotonic() > self.deadline:
            raise TransactionTimeout("transaction exceeded its deadline")

    def record(self, undo: Callable[[], None]) -> None:
        self._undo.append(undo)

    def rollback(self) -> None:
        while self._undo:
            self._undo.pop()()


class MemoryDatabase(Database):
    """Dict-backed store for local development and tests.

    Every single store call is atomic. Rollback replays the undo journal,
    but other readers can see a transaction's writes before it ends and a
    crash mid-way leaves them in place.
    """

    backend = "memory"
    transactional = False

    def __init__(self):
        self._lock = threading.RLock()
        self.products = MemoryProductStore(self._lock)
        self.orders = MemoryOrderStore(self._lock)
        self.users = MemoryUserStore(self._lock)
        self.connected = False

    def connect(self) -> None:
        self.connected = True
        log.warning("Using the in-memory store: order placement is only best-effort atomic")

    def close(self) -> None:
        self.connected = False

    def ping(self) -> bool:
        return self.connected

    def run_in_transaction(self, work, timeout=None):
        deadline = time.monotonic() + timeout if timeout else None
        txn = MemoryTransaction(deadline)
        try:
            result = work(txn)
            txn.guard()
        except Exception:
            txn.rollback()
            raise
        return result


def create_database(settings: Settings) -> Database:
    if settings.use_memory_store:
        return MemoryDatabase()
    return MongoDatabase(settings.database_url, settings.database_name)
