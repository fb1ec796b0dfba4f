import pytest

import orders
from schemas import Order, OrderItem, PaymentResult


def make_order(*priced_items, **fields):
    items = [OrderItem(product_id="a" * 24, name="Item", price=price, quantity=qty) for price, qty in priced_items]
    return Order(user_id="b" * 24, order_items=items, **fields)


def test_prices_free_shipping_over_threshold():
    order = make_order((150, 2))
    order.calculate_prices()
    assert order.items_price == 300
    assert order.tax_price == 30.0
    assert order.shipping_price == 0
    assert order.total_price == 330.0


def test_prices_flat_shipping_at_or_below_threshold():
    order = make_order((20, 1))
    order.calculate_prices()
    assert order.items_price == 20
    assert order.tax_price == 2.0
    assert order.shipping_price == 10
    assert order.total_price == 32.0

    boundary = make_order((100, 1))
    boundary.calculate_prices()
    assert boundary.shipping_price == 10


def test_prices_follow_current_items():
    order = make_order((19.99, 3), (5.5, 2))
    order.calculate_prices()
    assert order.items_price == pytest.approx(19.99 * 3 + 5.5 * 2)
    assert order.total_price == round(order.items_price + order.tax_price + order.shipping_price, 2)

    order.order_items.pop()
    order.calculate_prices()
    assert order.items_price == pytest.approx(19.99 * 3)


def test_mark_as_paid_moves_to_processing():
    order = make_order((10, 1))
    result = PaymentResult(id="PAY-1", status="COMPLETED")
    order.mark_as_paid(result)
    assert order.is_paid
    assert order.paid_at is not None
    assert order.payment_result == result
    assert order.order_status == "Processing"


def test_ensure_payable_rejects_paid_order():
    order = make_order((10, 1))
    orders.ensure_payable(order)
    order.mark_as_paid(None)
    with pytest.raises(orders.InvalidOrderTransition, match="already paid"):
        orders.ensure_payable(order)


@pytest.mark.parametrize("status", ["Pending", "Processing", "Shipped"])
def test_cancellable_statuses(status):
    order = make_order((10, 1), order_status=status)
    orders.ensure_cancellable(order)
    order.cancel_order()
    assert order.order_status == "Cancelled"
    assert order.notes == "Order cancelled by user"


@pytest.mark.parametrize("status, message", [
    ("Delivered", "Cannot cancel delivered order"),
    ("Cancelled", "Order is already cancelled"),
])
def test_cancel_rejected(status, message):
    order = make_order((10, 1), order_status=status)
    with pytest.raises(orders.InvalidOrderTransition, match=message):
        orders.ensure_cancellable(order)


def test_apply_status_delivered_sets_delivery_fields():
    order = make_order((10, 1), order_status="Shipped")
    orders.apply_status(order, "Delivered")
    assert order.order_status == "Delivered"
    assert order.is_delivered
    assert order.delivered_at is not None


def test_apply_status_shipped_with_and_without_tracking():
    order = make_order((10, 1))
    orders.apply_status(order, "Shipped")
    assert order.order_status == "Shipped"
    assert order.tracking_number == ""

    orders.apply_status(order, "Shipped", tracking_number="TRK123")
    assert order.tracking_number == "TRK123"


@pytest.mark.parametrize("status", ["Pending", "Processing", "Cancelled", "Refunded"])
def test_apply_status_without_side_effects(status):
    order = make_order((10, 1), order_status="Delivered")
    orders.apply_status(order, status)
    assert order.order_status == status
    assert not order.is_delivered


def test_set_payment_status():
    order = make_order((10, 1))
    orders.set_payment_status(order, True)
    assert order.is_paid and order.paid_at is not None
    assert order.order_status == "Processing"

    orders.set_payment_status(order, False)
    assert not order.is_paid
    assert order.paid_at is None
    assert order.order_status == "Processing"


def test_order_number():
    assert orders.order_number("65f1c0ffee00000000abcdef") == "ORD-00ABCDEF"


def test_fill_item_defaults_names_unnamed_items():
    order = make_order((10, 1))
    order.order_items[0].name = ""
    orders.fill_item_defaults(order)
    assert order.order_items[0].name == "Product"
    assert order.order_items[0].image == ""
