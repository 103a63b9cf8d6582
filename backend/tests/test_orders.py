"""
Order lifecycle tests: reservation at creation, payment, delivery, cancellation.
"""

from datetime import timedelta

import pytest

from marketcore.errors import ConflictError, NotFoundError, ValidationError
from marketcore.models import BalanceTransaction, Order, Product
from marketcore.models.orders import STATUS_CANCELLED, STATUS_DELIVERED, STATUS_PAID, STATUS_PENDING
from marketcore.services import order_service
from marketcore.time_utils import utcnow


def _stock(db_session, product_id):
    return db_session.get(Product, product_id).count_in_stock


def test_create_order_reserves_stock_and_sets_expiry(db_session, seller, buyer, make_product):
    product = make_product(seller, price_cents=2500, stock=5)
    before = utcnow()

    order = order_service.create_order(
        [{"product_id": product.id, "qty": 2}],
        user_id=buyer.id,
        shipping_price_cents=500,
        tax_price_cents=100,
    )

    assert order.status == STATUS_PENDING
    assert order.is_paid is False
    assert order.items_price_cents == 5000
    assert order.total_price_cents == 5600
    assert _stock(db_session, product.id) == 3
    assert before + timedelta(minutes=10) <= order.stock_reservation_expires <= utcnow() + timedelta(minutes=10)

    line = order.lines[0]
    assert line.seller_id == seller.id
    assert line.price_cents == 2500
    assert line.qty == 2


def test_order_lines_are_snapshots(db_session, seller, buyer, make_product, place_order):
    product = make_product(seller, price_cents=1000)
    order = place_order(buyer, product)

    product.price_cents = 9999
    product.name = "Renamed"
    db_session.commit()

    reloaded = db_session.get(Order, order.id)
    assert reloaded.lines[0].price_cents == 1000
    assert reloaded.lines[0].name == "Test Product"


def test_failed_line_aborts_whole_order(db_session, seller, buyer, make_product):
    plenty = make_product(seller, stock=5)
    scarce = make_product(seller, stock=1)

    with pytest.raises(ConflictError) as exc_info:
        order_service.create_order(
            [{"product_id": plenty.id, "qty": 2}, {"product_id": scarce.id, "qty": 2}],
            user_id=buyer.id,
        )

    assert exc_info.value.details["available"] == 1
    assert exc_info.value.details["requested"] == 2
    assert _stock(db_session, plenty.id) == 5
    assert _stock(db_session, scarce.id) == 1
    assert db_session.query(Order).count() == 0


def test_variant_stock_is_reserved_per_variant(db_session, seller, buyer, make_product, place_order):
    product = make_product(seller, variants=[
        {"size": "S", "color": "Black", "stock": 2},
        {"size": "M", "color": "Black", "stock": 3},
    ])
    assert product.count_in_stock == 5

    order = place_order(buyer, product, qty=2, size="M", color="Black")

    product = db_session.get(Product, product.id)
    stock = {v.size: v.stock for v in product.variants}
    assert stock == {"S": 2, "M": 1}
    assert product.count_in_stock == 3
    assert order.lines[0].size == "M"


def test_missing_variant_is_not_found(db_session, seller, buyer, make_product, place_order):
    product = make_product(seller, variants=[{"size": "S", "stock": 2}])

    with pytest.raises(NotFoundError):
        place_order(buyer, product, size="XL")
    assert _stock(db_session, product.id) == 2


def test_create_order_requires_buyer(db_session, seller, make_product):
    product = make_product(seller)
    with pytest.raises(ValidationError):
        order_service.create_order([{"product_id": product.id, "qty": 1}])


def test_guest_order(db_session, seller, make_product):
    product = make_product(seller)
    order = order_service.create_order(
        [{"product_id": product.id, "qty": 1}],
        guest={"email": "guest@test.local", "name": "Guest"},
    )
    assert order.is_guest is True
    assert order.buyer_email == "guest@test.local"


@pytest.mark.parametrize("items", [
    [],
    None,
    [{"product_id": 1, "qty": 0}],
    [{"product_id": 1, "qty": "2"}],
    [{"product_id": "x", "qty": 1}],
])
def test_invalid_items_are_rejected(db_session, buyer, items):
    with pytest.raises(ValidationError):
        order_service.create_order(items, user_id=buyer.id)


def test_unknown_product_is_not_found(db_session, buyer):
    with pytest.raises(NotFoundError):
        order_service.create_order([{"product_id": 424242, "qty": 1}], user_id=buyer.id)


def test_duplicate_external_order_id_conflicts(db_session, seller, buyer, make_product, place_order):
    product = make_product(seller, stock=5)
    place_order(buyer, product, external_order_id="ext-1")

    with pytest.raises(ConflictError):
        place_order(buyer, product, external_order_id="ext-1")
    assert _stock(db_session, product.id) == 4


def test_confirm_payment_marks_paid_without_touching_stock(db_session, seller, buyer, make_product, place_order, notifier):
    product = make_product(seller, stock=5)
    order = place_order(buyer, product, qty=2)

    paid = order_service.confirm_payment(
        order.id,
        payment_result={"id": "pay-1", "status": "COMPLETED", "update_time": "now", "email": "b@test", "extra": "x"},
    )

    assert paid.status == STATUS_PAID
    assert paid.is_paid is True
    assert paid.paid_at is not None
    assert paid.stock_reservation_expires is None
    assert paid.payment_result == {"id": "pay-1", "status": "COMPLETED", "update_time": "now", "email": "b@test"}
    assert _stock(db_session, product.id) == 3
    assert "send_order_confirmation" in notifier.names()
    assert ("send_seller_order", (order.id, seller.id)) in notifier.sent


def test_confirm_payment_is_rejected_the_second_time(db_session, seller, buyer, make_product, place_order):
    product = make_product(seller, stock=5)
    order = place_order(buyer, product)
    order_service.confirm_payment(order.id)

    with pytest.raises(ConflictError):
        order_service.confirm_payment(order.id)
    assert _stock(db_session, product.id) == 4


def test_confirm_payment_by_external_id(db_session, seller, buyer, make_product, place_order):
    product = make_product(seller)
    order = place_order(buyer, product, external_order_id="bog-123")

    paid = order_service.confirm_payment(external_order_id="bog-123")
    assert paid.id == order.id
    assert paid.status == STATUS_PAID

    with pytest.raises(NotFoundError):
        order_service.confirm_payment(external_order_id="missing")


def test_payment_after_expiry_is_accepted_until_reaped(db_session, seller, buyer, make_product, place_order):
    product = make_product(seller, stock=2)
    order = place_order(buyer, product)
    order.stock_reservation_expires = utcnow() - timedelta(minutes=1)
    db_session.commit()

    paid = order_service.confirm_payment(order.id)
    assert paid.status == STATUS_PAID
    assert _stock(db_session, product.id) == 1


def test_notification_failure_does_not_fail_payment(app, db_session, seller, buyer, make_product, place_order):
    class BrokenNotifier:
        def __getattr__(self, name):
            def _fail(*args, **kwargs):
                raise RuntimeError("smtp down")
            return _fail

    product = make_product(seller)
    order = place_order(buyer, product)
    app.extensions["notifier"] = BrokenNotifier()

    paid = order_service.confirm_payment(order.id)
    assert paid.status == STATUS_PAID


def test_cancel_restores_stock(db_session, seller, buyer, make_product, place_order):
    product = make_product(seller, stock=5)
    order = place_order(buyer, product, qty=3)
    assert _stock(db_session, product.id) == 2

    cancelled = order_service.cancel_order(order.id)

    assert cancelled.status == STATUS_CANCELLED
    assert cancelled.status_reason == "Manually cancelled"
    assert cancelled.cancelled_at is not None
    assert cancelled.stock_reservation_expires is None
    assert _stock(db_session, product.id) == 5

    with pytest.raises(ConflictError):
        order_service.cancel_order(order.id)
    assert _stock(db_session, product.id) == 5


def test_cancel_restores_variant_stock(db_session, seller, buyer, make_product, place_order):
    product = make_product(seller, variants=[{"size": "S", "stock": 1}, {"size": "M", "stock": 4}])
    order = place_order(buyer, product, qty=1, size="S")

    order_service.cancel_order(order.id, "Buyer changed mind")

    product = db_session.get(Product, product.id)
    assert {v.size: v.stock for v in product.variants} == {"S": 1, "M": 4}
    assert product.count_in_stock == 5
    assert db_session.get(Order, order.id).status_reason == "Buyer changed mind"


def test_paid_orders_cannot_be_cancelled(db_session, seller, buyer, make_product, place_order):
    product = make_product(seller, stock=5)
    order = place_order(buyer, product)
    order_service.confirm_payment(order.id)

    with pytest.raises(ConflictError):
        order_service.cancel_order(order.id)
    assert _stock(db_session, product.id) == 4


def test_cancelled_order_cannot_be_paid(db_session, seller, buyer, make_product, place_order):
    product = make_product(seller)
    order = place_order(buyer, product)
    order_service.cancel_order(order.id)

    with pytest.raises(ConflictError):
        order_service.confirm_payment(order.id)


def test_deliver_requires_payment(db_session, seller, buyer, make_product, place_order):
    product = make_product(seller)
    order = place_order(buyer, product)

    with pytest.raises(ConflictError):
        order_service.mark_delivered(order.id)


def test_deliver_settles_once(db_session, seller, buyer, make_product, delivered_order, notifier):
    product = make_product(seller, price_cents=10000)
    order = delivered_order(buyer, product)

    assert order.status == STATUS_DELIVERED
    assert order.is_delivered is True
    assert "send_order_delivered" in notifier.names()

    again = order_service.mark_delivered(order.id)
    assert again.status == STATUS_DELIVERED
    assert db_session.query(BalanceTransaction).filter_by(owner_id=seller.id).count() == 1
