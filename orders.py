"""Order placement and order history.

`place_order` turns a client request into a committed pending order inside
one `Database.run_in_transaction` call:

1. the request is validated before anything touches the store;
2. every line is looked up, checked against stock and priced, in the
   order the client sent them;
3. only once all lines pass is stock taken, one conditional decrement per
   line;
4. the order is written with the server-side total and copies of each
   product's name and price.

Any failure rolls the whole unit back.  Prices always come from the
product store, never from the request.
"""
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

import pydantic

from database import Database
from errors import (
    AppError, InsufficientStock, InternalError, ProductNotFound, StoreError,
    ValidationError, format_validation_errors,
)
from schemas import LineItem, OrderCreate, OrderOut, OrderStatus, to_money

log = logging.getLogger(__name__)


def parse_order_request(payload: Union[OrderCreate, Dict[str, Any]]) -> OrderCreate:
    if isinstance(payload, OrderCreate):
        return payload
    try:
        return OrderCreate.model_validate(payload)
    except pydantic.ValidationError as e:
        raise ValidationError("Order validation failed", format_validation_errors(e.errors())) from e


def describe(items: List[LineItem]) -> str:
    return "Order for " + ", ".join(f"{item.quantity}x {item.name}" for item in items)


def place_order(db: Database, user_id: str, payload: Union[OrderCreate, Dict[str, Any]],
                timeout: Optional[float] = None) -> OrderOut:
    request = parse_order_request(payload)

    def work(txn):
        total = Decimal("0")
        items: List[LineItem] = []
        # units already promised to earlier lines of this same request
        claimed: Dict[str, int] = {}

        for line in request.products:
            product = db.products.find_by_id_in_transaction(line.product_id, txn)
            if product is None:
                raise ProductNotFound(line.product_id)
            available = product.stock - claimed.get(product.id, 0)
            if available < line.quantity:
                raise InsufficientStock(product.id, product.name, line.quantity, available)
            claimed[product.id] = claimed.get(product.id, 0) + line.quantity

            price = to_money(product.price)
            item_total = price * line.quantity
            total += item_total
            items.append(LineItem(
                product_id=product.id,
                name=product.name,
                price=float(price),
                quantity=line.quantity,
                item_total=float(item_total),
            ))

        for item in items:
            if not db.products.decrement_stock(item.product_id, item.quantity, txn):
                raise InsufficientStock(item.product_id, item.name, item.quantity)

        return db.orders.create({
            "owner_id": user_id,
            "description": (request.description or "").strip() or describe(items),
            "total": float(to_money(total)),
            "status": OrderStatus.PENDING,
            "items": items,
        }, txn)

    try:
        order = db.run_in_transaction(work, timeout=timeout)
    except AppError as e:
        log.warning("Order rejected for user %s: %s %s", user_id, e.code, e.errors)
        raise
    except StoreError as e:
        log.exception("Order placement failed for user %s", user_id)
        raise InternalError(errors=["Order placement failed due to server error"]) from e

    log.info("Order %s placed by user %s, total %.2f", order.id, user_id, order.total)
    return OrderOut.from_order(order)


def list_orders_for_user(db: Database, user_id: str) -> List[OrderOut]:
    try:
        orders = db.orders.find_by_owner(user_id)
    except StoreError as e:
        raise InternalError(errors=["Failed to retrieve orders"]) from e
    return [OrderOut.from_order(order) for order in orders]
