from decimal import Decimal

import pytest
from sqlmodel import select

from conftest import BUYER
from foodorder.errors import Forbidden, NotFound, Unauthorized, ValidationError
from foodorder.models import (
    BuyerInfo,
    FulfillmentStatus,
    Order,
    OrderItemCreate,
    OrderLine,
    PaymentMethod,
    PaymentStatus,
    Shop,
)
from foodorder.order_service import OrderService, get_shop, merge_items


def place(session, auth, items, **buyer_overrides):
    buyer = BuyerInfo(**{**BUYER, **buyer_overrides})
    return OrderService(session).create(auth, items, buyer)


def test_create_uses_catalog_prices(session, customer_auth, menu):
    # Client claims the burger costs a cent; the catalog says 9.99
    items = [OrderItemCreate(food_item_id=menu["burger"].id, quantity=2, unit_price=Decimal("0.01"))]
    order = place(session, customer_auth, items)

    assert order.subtotal == Decimal("19.98")
    assert order.tax == Decimal("1.60")
    assert order.delivery_fee == Decimal("3.99")
    assert order.total == Decimal("25.57")
    assert order.fulfillment_status == FulfillmentStatus.PENDING
    assert order.payment_status == PaymentStatus.UNPAID
    assert order.payment_method == PaymentMethod.CASH
    assert [(line.name, line.unit_price, line.quantity) for line in order.items] == [
        ("Burger", Decimal("9.99"), 2)
    ]


def test_create_uses_saved_shop_settings(session, customer_auth, menu):
    session.add(Shop(tax_rate=Decimal("0.13"), delivery_enabled=False, delivery_charge=Decimal("5")))
    session.commit()

    order = place(session, customer_auth, [OrderItemCreate(food_item_id=menu["fries"].id, quantity=4)])

    assert order.subtotal == Decimal("10.00")
    assert order.tax == Decimal("1.30")
    assert order.delivery_fee == Decimal("0")
    assert order.total == Decimal("11.30")


def test_duplicate_lines_are_merged(session, customer_auth, menu):
    burger_id = menu["burger"].id
    items = [OrderItemCreate(food_item_id=burger_id, quantity=1), OrderItemCreate(food_item_id=burger_id, quantity=2)]
    order = place(session, customer_auth, items)

    assert len(order.items) == 1
    assert order.items[0].quantity == 3


def test_empty_order_rejected(session, customer_auth, menu):
    with pytest.raises(ValidationError):
        place(session, customer_auth, [])
    assert session.exec(select(Order)).all() == []


def test_unknown_item_leaves_nothing_behind(session, customer_auth, menu):
    items = [OrderItemCreate(food_item_id=menu["burger"].id), OrderItemCreate(food_item_id=9999)]
    with pytest.raises(NotFound):
        place(session, customer_auth, items)

    assert session.exec(select(Order)).all() == []
    assert session.exec(select(OrderLine)).all() == []


def test_unavailable_item_cannot_be_ordered(session, customer_auth, menu):
    with pytest.raises(NotFound):
        place(session, customer_auth, [OrderItemCreate(food_item_id=menu["retired"].id)])


@pytest.mark.parametrize("field", ["first_name", "email", "phone", "street", "city"])
def test_missing_buyer_field_rejected(session, customer_auth, menu, field):
    with pytest.raises(ValidationError) as exc_info:
        place(session, customer_auth, [OrderItemCreate(food_item_id=menu["burger"].id)], **{field: "  "})
    assert field in exc_info.value.detail


def test_merge_items_rejects_zero_quantity():
    with pytest.raises(ValidationError):
        merge_items([OrderItemCreate(food_item_id=1, quantity=0)])


def test_get_shop_falls_back_to_defaults(session):
    shop = get_shop(session)
    assert shop.id is None
    assert Decimal(str(shop.tax_rate)) == Decimal("0.08")
    assert shop.delivery_enabled is True


def test_order_visibility(session, customer_auth, operator_auth, other_customer, menu):
    from foodorder.security import AuthContext

    order = place(session, customer_auth, [OrderItemCreate(food_item_id=menu["burger"].id)])
    service = OrderService(session)

    assert service.get(customer_auth, order.id).id == order.id
    assert service.get(operator_auth, order.id).id == order.id
    with pytest.raises(Unauthorized):
        service.get(AuthContext.for_user(other_customer), order.id)
    with pytest.raises(NotFound):
        service.get(operator_auth, 12345)


def test_list_scopes_customers_to_their_own_orders(session, customer_auth, operator_auth, other_customer, menu):
    from foodorder.security import AuthContext

    other_auth = AuthContext.for_user(other_customer)
    burger = OrderItemCreate(food_item_id=menu["burger"].id)
    mine = place(session, customer_auth, [burger])
    theirs = place(session, other_auth, [burger])
    service = OrderService(session)

    assert [o.id for o in service.list_orders(customer_auth)] == [mine.id]
    assert {o.id for o in service.list_orders(operator_auth)} == {mine.id, theirs.id}

    service.cancel(other_auth, theirs.id)
    cancelled = service.list_orders(operator_auth, fulfillment_status=FulfillmentStatus.CANCELLED)
    assert [o.id for o in cancelled] == [theirs.id]
    assert service.list_orders(operator_auth, payment_status=PaymentStatus.PAID) == []


def test_update_status_requires_a_change(session, operator_auth, customer_auth, menu):
    order = place(session, customer_auth, [OrderItemCreate(food_item_id=menu["burger"].id)])
    with pytest.raises(ValidationError):
        OrderService(session).update_status(operator_auth, order.id)


def test_customer_cannot_mark_own_order_paid(session, customer_auth, menu):
    order = place(session, customer_auth, [OrderItemCreate(food_item_id=menu["burger"].id)])
    with pytest.raises(Forbidden):
        OrderService(session).update_status(customer_auth, order.id, payment_status=PaymentStatus.PAID)
