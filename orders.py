"""
Order lifecycle: persistence with the pricing hook, status transitions and
the checkout / cancellation stock workflow.

Stock adjustments and the order write are separate documents. With
MONGO_TRANSACTIONS enabled they run inside one multi-document transaction
(replica set required). Otherwise they are sequential, and two concurrent
checkouts for the same product can both pass the stock check.
"""
import logging
import os
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from bson import ObjectId

from database import parse_object_id, serialize_doc
from schemas import Order, OrderItem, PaymentResult, SelectedParameter, ShippingAddress, utcnow

logger = logging.getLogger(__name__)

USE_TRANSACTIONS = os.getenv("MONGO_TRANSACTIONS", "false").lower() in ("1", "true", "yes")


class OrderError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidOrderTransition(OrderError):
    pass


class OrderValidationError(OrderError):
    pass


class ProductNotFound(OrderError):
    status_code = 404


def order_number(order_id) -> str:
    return f"ORD-{str(order_id)[-8:].upper()}"


@contextmanager
def transaction(db, enabled: Optional[bool] = None):
    """Yield a session inside a transaction, or None when transactions are off."""
    if not (USE_TRANSACTIONS if enabled is None else enabled):
        yield None
        return
    with db.client.start_session() as session:
        with session.start_transaction():
            yield session


# Persistence

def load_order(db, order_id) -> Optional[Tuple[ObjectId, Order]]:
    oid = parse_object_id(order_id)
    if oid is None:
        return None
    doc = db["order"].find_one({"_id": oid})
    if not doc:
        return None
    return oid, Order.model_validate(doc)


def save_order(db, order: Order, order_id: Optional[ObjectId] = None, session=None) -> ObjectId:
    """Write the order, recomputing prices first. Inserts when order_id is None."""
    order.calculate_prices()
    data = order.model_dump()
    now = utcnow()
    data["updated_at"] = now
    if order_id is None:
        data["created_at"] = now
        return db["order"].insert_one(data, session=session).inserted_id
    # owner never changes after creation
    data.pop("user_id", None)
    db["order"].update_one({"_id": order_id}, {"$set": data}, session=session)
    return order_id


def order_payload(db, order_id: ObjectId) -> Optional[dict]:
    """Fetch an order for display with its user and item products populated."""
    doc = db["order"].find_one({"_id": order_id})
    if not doc:
        return None
    payload = serialize_doc(doc)
    payload["order_number"] = order_number(order_id)

    user = db["user"].find_one({"_id": parse_object_id(doc.get("user_id"))}) if doc.get("user_id") else None
    payload["user"] = {"id": str(user["_id"]), "name": user.get("name"), "email": user.get("email")} if user else None

    for item in payload.get("order_items", []):
        pid = parse_object_id(item.get("product_id"))
        product = db["product"].find_one({"_id": pid}) if pid else None
        item["product"] = (
            {"id": str(product["_id"]), "name": product.get("name"), "images": product.get("images", [])}
            if product else None
        )
    return payload


def list_order_payloads(db, filter_dict: dict, page: int, limit: int) -> Tuple[List[dict], int]:
    cursor = db["order"].find(filter_dict).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    ids = [doc["_id"] for doc in cursor]
    total = db["order"].count_documents(filter_dict)
    return [order_payload(db, oid) for oid in ids], total


# Status machine

def ensure_payable(order: Order) -> None:
    if order.is_paid:
        raise InvalidOrderTransition("Order is already paid")


def ensure_cancellable(order: Order) -> None:
    if order.order_status == "Delivered":
        raise InvalidOrderTransition("Cannot cancel delivered order")
    if order.order_status == "Cancelled":
        raise InvalidOrderTransition("Order is already cancelled")


def _delivered(order: Order, tracking_number: Optional[str], estimated_delivery: Optional[datetime]) -> None:
    order.mark_as_delivered()


def _shipped(order: Order, tracking_number: Optional[str], estimated_delivery: Optional[datetime]) -> None:
    if tracking_number:
        order.update_tracking(tracking_number, estimated_delivery)


STATUS_SIDE_EFFECTS: Dict[str, Callable] = {
    "Delivered": _delivered,
    "Shipped": _shipped,
}


def apply_status(order: Order, status: str, tracking_number: Optional[str] = None,
                 estimated_delivery: Optional[datetime] = None) -> None:
    """
    Admin status overwrite. Any of the six statuses is accepted; the only
    side effects are the ones registered in STATUS_SIDE_EFFECTS.
    """
    order.order_status = status
    side_effect = STATUS_SIDE_EFFECTS.get(status)
    if side_effect is not None:
        side_effect(order, tracking_number, estimated_delivery)


def set_payment_status(order: Order, is_paid: bool) -> None:
    order.is_paid = is_paid
    if is_paid:
        order.paid_at = utcnow()
        if order.order_status == "Pending":
            order.order_status = "Processing"
    else:
        order.paid_at = None


def fill_item_defaults(order: Order) -> None:
    for item in order.order_items:
        if not item.name:
            item.name = "Product"


# Checkout and cancellation

def _snapshot_item(db, line: dict) -> OrderItem:
    raw_id = line["product_id"]
    pid = parse_object_id(raw_id)
    if pid is None:
        raise OrderValidationError(f"Invalid product ID: {raw_id}")
    product = db["product"].find_one({"_id": pid})
    if not product:
        raise ProductNotFound(f"Product not found: {raw_id}")

    name = product.get("name", "Product")
    quantity = line["quantity"]
    if not product.get("is_active", True):
        raise OrderValidationError(f"{name} is no longer available")
    stock = product.get("stock", 0)
    if stock < quantity:
        raise OrderValidationError(
            f"Insufficient stock for {name}. Available: {stock}, Requested: {quantity}"
        )

    images = product.get("images") or []
    return OrderItem(
        product_id=str(pid),
        name=name,
        image=images[0].get("url", "") if images else "",
        price=float(product.get("price", 0)),
        quantity=quantity,
        selected_parameters=[SelectedParameter(**p) for p in line.get("selected_parameters") or []],
    )


def create_order(db, user_id: str, lines: List[dict], shipping_address: ShippingAddress,
                 payment_method: str = "Negotiable") -> ObjectId:
    """
    Validate every cart line against live product data, then persist the
    order and decrement stock. Nothing is written if any line is rejected.
    """
    if not lines:
        raise OrderValidationError("No order items provided")

    items = [_snapshot_item(db, line) for line in lines]
    order = Order(
        user_id=user_id,
        order_items=items,
        shipping_address=shipping_address,
        payment_method=payment_method,
    )

    with transaction(db) as session:
        order_id = save_order(db, order, session=session)
        for item in items:
            db["product"].update_one(
                {"_id": ObjectId(item.product_id)},
                {"$inc": {"stock": -item.quantity}, "$set": {"updated_at": utcnow()}},
                session=session,
            )

    logger.info("Order %s created for user %s (total %.2f)", order_id, user_id, order.total_price)
    return order_id


def restock_order(db, order: Order, session=None) -> None:
    for item in order.order_items:
        pid = parse_object_id(item.product_id)
        if pid is None:
            continue
        result = db["product"].update_one(
            {"_id": pid},
            {"$inc": {"stock": item.quantity}, "$set": {"updated_at": utcnow()}},
            session=session,
        )
        if result.matched_count == 0:
            logger.warning("Restock skipped, product %s no longer exists", item.product_id)


def cancel(db, order_id: ObjectId, order: Order, reason: Optional[str] = None) -> None:
    ensure_cancellable(order)
    with transaction(db) as session:
        restock_order(db, order, session=session)
        order.cancel_order(reason)
        save_order(db, order, order_id, session=session)
    logger.info("Order %s cancelled, stock restored", order_id)


def pay(db, order_id: ObjectId, order: Order, payment_result: PaymentResult) -> None:
    ensure_payable(order)
    order.mark_as_paid(payment_result)
    save_order(db, order, order_id)
    logger.info("Order %s marked as paid", order_id)


def order_stats(db) -> dict:
    revenue = list(db["order"].aggregate([
        {"$match": {"is_paid": True}},
        {"$group": {"_id": None, "total_revenue": {"$sum": "$total_price"}}},
    ]))
    recent = [doc["_id"] for doc in db["order"].find().sort("created_at", -1).limit(5)]
    return {
        "total_orders": db["order"].count_documents({}),
        "pending_orders": db["order"].count_documents({"order_status": "Pending"}),
        "delivered_orders": db["order"].count_documents({"order_status": "Delivered"}),
        "cancelled_orders": db["order"].count_documents({"order_status": "Cancelled"}),
        "total_revenue": revenue[0]["total_revenue"] if revenue else 0,
        "recent_orders": [order_payload(db, oid) for oid in recent],
    }
