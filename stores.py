"""Product, order and user stores.

Each store has one interface and two implementations: a MongoDB adapter
and an in-memory double.  `database.py` picks the pair at construction
time, so no method here branches on which backend is active.

The `txn` handle passed to the transactional operations is whatever the
owning database's `run_in_transaction` hands to its unit of work: a
pymongo `ClientSession` for MongoDB, a `MemoryTransaction` for the
in-memory store.
"""
import re
import uuid
import logging
import threading
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Dict, List, Optional, Tuple

from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from errors import ConflictError, StoreError
from schemas import Order, Product, Role, User

log = logging.getLogger(__name__)

SORTS = {
    "price_asc": ("price", ASCENDING),
    "price_desc": ("price", DESCENDING),
    "name_asc": ("name", ASCENDING),
    "name_desc": ("name", DESCENDING),
}
DEFAULT_SORT = ("created_at", DESCENDING)
NO_ID = {"_id": 0}


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _guarded(fn):
    """Re-raise driver failures as StoreError.

    Only for calls made outside a transaction: inside one, pymongo has to
    see its own errors to retry transient write conflicts.
    """
    @wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except DuplicateKeyError:
            raise
        except PyMongoError as e:
            log.exception("%s failed", fn.__qualname__)
            raise StoreError(str(e)) from e
    return wrapper


# ---------- Interfaces ----------

class ProductStore:
    def create(self, data: Dict[str, Any], owner_id: str) -> Product:
        raise NotImplementedError()

    def get(self, product_id: str) -> Optional[Product]:
        raise NotImplementedError()

    def find_by_id_in_transaction(self, product_id: str, txn) -> Optional[Product]:
        """Read a product inside `txn`, seeing that transaction's own writes."""
        raise NotImplementedError()

    def decrement_stock(self, product_id: str, quantity: int, txn) -> bool:
        """Take `quantity` off stock only if at least that much is left.

        Check and write are a single store operation. Returns False, with
        no effect, when the product is gone or short.
        """
        raise NotImplementedError()

    def list(self, page: int = 1, limit: int = 10, search: str = "", category: str = "",
             sort: str = "") -> Tuple[List[Product], int]:
        raise NotImplementedError()

    def update(self, product_id: str, fields: Dict[str, Any]) -> Optional[Product]:
        raise NotImplementedError()

    def delete(self, product_id: str) -> bool:
        raise NotImplementedError()


class OrderStore:
    def create(self, data: Dict[str, Any], txn) -> Order:
        """Insert an order inside `txn`; assigns the public id and timestamp."""
        raise NotImplementedError()

    def find_by_owner(self, owner_id: str) -> List[Order]:
        """All orders of one user, newest first."""
        raise NotImplementedError()


class UserStore:
    def create(self, username: str, email: str, password_hash: str, role: Role = Role.USER,
               first_name: Optional[str] = None, last_name: Optional[str] = None) -> User:
        raise NotImplementedError()

    def get(self, user_id: str) -> Optional[User]:
        raise NotImplementedError()

    def find_by_email(self, email: str) -> Optional[User]:
        raise NotImplementedError()

    def set_role(self, user_id: str, role: Role) -> bool:
        raise NotImplementedError()


def _new_product(data: Dict[str, Any], owner_id: str) -> Product:
    now = utcnow()
    return Product(id=new_id(), owner_id=owner_id, created_at=now, updated_at=now, **data)


def _new_order(data: Dict[str, Any]) -> Order:
    return Order(id=new_id(), created_at=utcnow(), **data)


def _new_user(username, email, password_hash, role, first_name, last_name) -> User:
    return User(id=new_id(), username=username, email=email.strip().lower(),
                password_hash=password_hash, role=role, first_name=first_name,
                last_name=last_name, created_at=utcnow())


# ---------- MongoDB ----------

class MongoProductStore(ProductStore):
    def __init__(self, db):
        self.collection = db["products"]

    @_guarded
    def create(self, data, owner_id):
        product = _new_product(data, owner_id)
        self.collection.insert_one(product.model_dump())
        return product

    @_guarded
    def get(self, product_id):
        doc = self.collection.find_one({"id": product_id}, NO_ID)
        return Product(**doc) if doc else None

    def find_by_id_in_transaction(self, product_id, txn):
        doc = self.collection.find_one({"id": product_id}, NO_ID, session=txn)
        return Product(**doc) if doc else None

    def decrement_stock(self, product_id, quantity, txn):
        result = self.collection.update_one(
            {"id": product_id, "stock": {"$gte": quantity}},
            {"$inc": {"stock": -quantity}, "$set": {"updated_at": utcnow()}},
            session=txn,
        )
        return result.modified_count == 1

    @_guarded
    def list(self, page=1, limit=10, search="", category="", sort=""):
        query: Dict[str, Any] = {}
        if search and search.strip():
            query["name"] = {"$regex": re.escape(search.strip()), "$options": "i"}
        if category and category.strip():
            query["category"] = category.strip()
        key, direction = SORTS.get(sort, DEFAULT_SORT)
        cursor = (self.collection.find(query, NO_ID)
                  .sort(key, direction)
                  .skip((page - 1) * limit)
                  .limit(limit))
        products = [Product(**d) for d in cursor]
        return products, self.collection.count_documents(query)

    @_guarded
    def update(self, product_id, fields):
        doc = self.collection.find_one_and_update(
            {"id": product_id},
            {"$set": dict(fields, updated_at=utcnow())},
            projection=NO_ID,
            return_document=ReturnDocument.AFTER,
        )
        return Product(**doc) if doc else None

    @_guarded
    def delete(self, product_id):
        return self.collection.delete_one({"id": product_id}).deleted_count > 0


class MongoOrderStore(OrderStore):
    def __init__(self, db):
        self.collection = db["orders"]

    def create(self, data, txn):
        order = _new_order(data)
        doc = order.model_dump()
        doc["status"] = order.status.value
        self.collection.insert_one(doc, session=txn)
        return order

    @_guarded
    def find_by_owner(self, owner_id):
        cursor = self.collection.find({"owner_id": owner_id}, NO_ID).sort("created_at", DESCENDING)
        return [Order(**d) for d in cursor]


class MongoUserStore(UserStore):
    def __init__(self, db):
        self.collection = db["users"]

    @_guarded
    def create(self, username, email, password_hash, role=Role.USER, first_name=None, last_name=None):
        user = _new_user(username, email, password_hash, role, first_name, last_name)
        doc = user.model_dump()
        doc["role"] = user.role.value
        try:
            self.collection.insert_one(doc)
        except DuplicateKeyError as e:
            raise ConflictError("Registration failed", ["Email or username is already in use"]) from e
        return user

    @_guarded
    def get(self, user_id):
        doc = self.collection.find_one({"id": user_id}, NO_ID)
        return User(**doc) if doc else None

    @_guarded
    def find_by_email(self, email):
        doc = self.collection.find_one({"email": email.strip().lower()}, NO_ID)
        return User(**doc) if doc else None

    @_guarded
    def set_role(self, user_id, role):
        result = self.collection.update_one({"id": user_id}, {"$set": {"role": Role(role).value}})
        return result.matched_count > 0


# ---------- In-memory ----------

class MemoryProductStore(ProductStore):
    def __init__(self, lock: threading.RLock):
        self._lock = lock
        self._items: Dict[str, Product] = {}

    def create(self, data, owner_id):
        product = _new_product(data, owner_id)
        with self._lock:
            self._items[product.id] = product
        return product.model_copy()

    def get(self, product_id):
        with self._lock:
            product = self._items.get(product_id)
        return product.model_copy() if product else None

    def find_by_id_in_transaction(self, product_id, txn):
        txn.guard()
        return self.get(product_id)

    def decrement_stock(self, product_id, quantity, txn):
        txn.guard()
        with self._lock:
            product = self._items.get(product_id)
            if product is None or product.stock < quantity:
                return False
            self._items[product_id] = product.model_copy(
                update={"stock": product.stock - quantity, "updated_at": utcnow()})
        txn.record(lambda: self._restore_stock(product_id, quantity))
        return True

    def _restore_stock(self, product_id: str, quantity: int) -> None:
        with self._lock:
            product = self._items.get(product_id)
            if product is not None:
                self._items[product_id] = product.model_copy(update={"stock": product.stock + quantity})

    def list(self, page=1, limit=10, search="", category="", sort=""):
        with self._lock:
            products = list(self._items.values())
        needle = (search or "").strip().lower()
        if needle:
            products = [p for p in products if needle in p.name.lower()]
        if category and category.strip():
            products = [p for p in products if p.category == category.strip()]
        key, direction = SORTS.get(sort, DEFAULT_SORT)
        products.sort(key=lambda p: getattr(p, key), reverse=direction == DESCENDING)
        start = (page - 1) * limit
        return [p.model_copy() for p in products[start:start + limit]], len(products)

    def update(self, product_id, fields):
        with self._lock:
            product = self._items.get(product_id)
            if product is None:
                return None
            product = product.model_copy(update=dict(fields, updated_at=utcnow()))
            self._items[product_id] = product
        return product.model_copy()

    def delete(self, product_id):
        with self._lock:
            return self._items.pop(product_id, None) is not None


class MemoryOrderStore(OrderStore):
    def __init__(self, lock: threading.RLock):
        self._lock = lock
        self._items: Dict[str, Tuple[int, Order]] = {}
        self._seq = 0

    def create(self, data, txn):
        txn.guard()
        order = _new_order(data)
        with self._lock:
            self._seq += 1
            self._items[order.id] = (self._seq, order)
        txn.record(lambda: self._discard(order.id))
        return order.model_copy(deep=True)

    def _discard(self, order_id: str) -> None:
        with self._lock:
            self._items.pop(order_id, None)

    def find_by_owner(self, owner_id):
        with self._lock:
            rows = [row for row in self._items.values() if row[1].owner_id == owner_id]
        # insertion sequence breaks timestamp ties
        rows.sort(key=lambda row: (row[1].created_at, row[0]), reverse=True)
        return [order.model_copy(deep=True) for _, order in rows]


class MemoryUserStore(UserStore):
    def __init__(self, lock: threading.RLock):
        self._lock = lock
        self._items: Dict[str, User] = {}

    def create(self, username, email, password_hash, role=Role.USER, first_name=None, last_name=None):
        user = _new_user(username, email, password_hash, role, first_name, last_name)
        with self._lock:
            for existing in self._items.values():
                if existing.email == user.email or existing.username == user.username:
                    raise ConflictError("Registration failed", ["Email or username is already in use"])
            self._items[user.id] = user
        return user.model_copy()

    def get(self, user_id):
        with self._lock:
            user = self._items.get(user_id)
        return user.model_copy() if user else None

    def find_by_email(self, email):
        email = email.strip().lower()
        with self._lock:
            for user in self._items.values():
                if user.email == email:
                    return user.model_copy()
        return None

    def set_role(self, user_id, role):
        with self._lock:
            user = self._items.get(user_id)
            if user is None:
                return False
            self._items[user_id] = user.model_copy(update={"role": Role(role)})
        return True
