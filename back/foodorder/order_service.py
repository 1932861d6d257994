"""
Order Service

Business logic for turning a cart into an order and moving it through its
lifecycle:
- Checkout with server-side price resolution (client prices are ignored)
- Atomic persistence of the order and its line snapshots
- Owner/operator scoped reads
- Status updates routed through the status state machine
- Payment initiation for the chosen gateway
- Order statistics for staff reconciliation
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal

from sqlmodel import Session, func, select

from .errors import Conflict, Forbidden, NotFound, Unauthorized, ValidationError
from .models import (
    BuyerInfo,
    FoodItem,
    FulfillmentStatus,
    Order,
    OrderItemCreate,
    OrderLine,
    PaymentAttempt,
    PaymentMethod,
    PaymentStatus,
    Shop,
    User,
)
from .payments import PaymentGateway, PaymentInitiation
from .permissions import Permissions
from .pricing import ZERO, compute_totals, line_total, round_money, to_money
from .security import AuthContext
from .settings import settings
from .status import PAYMENT_AXIS, FULFILLMENT_AXIS, StatusChange, StatusReconciler

logger = logging.getLogger(__name__)

REQUIRED_BUYER_FIELDS = ("first_name", "last_name", "email", "phone", "street", "city")


@dataclass
class ResolvedLine:
    food_item_id: int
    name: str
    unit_price: Decimal
    quantity: int


def get_shop(session: Session) -> Shop:
    """Shop configuration row, falling back to configured defaults."""
    shop = session.exec(select(Shop).order_by(Shop.id)).first()
    if shop:
        return shop
    return Shop(
        tax_rate=settings.default_tax_rate,
        delivery_enabled=settings.default_delivery_enabled,
        delivery_charge=settings.default_delivery_charge,
    )


def validate_buyer(buyer: BuyerInfo) -> None:
    missing = [name for name in REQUIRED_BUYER_FIELDS if not (getattr(buyer, name) or "").strip()]
    if missing:
        raise ValidationError(f"Missing buyer fields: {', '.join(missing)}")


def merge_items(items: Iterable[OrderItemCreate]) -> dict[int, int]:
    """Sum quantities per food item, keeping first-seen order."""
    quantities: dict[int, int] = {}
    for item in items:
        if item.quantity < 1:
            raise ValidationError(f"Quantity for item {item.food_item_id} must be at least 1")
        quantities[item.food_item_id] = quantities.get(item.food_item_id, 0) + item.quantity
    return quantities


class OrderService:
    def __init__(self, session: Session):
        self.session = session
        self.reconciler = StatusReconciler(session)

    # ============ CHECKOUT ============

    def resolve_lines(self, items: list[OrderItemCreate]) -> list[ResolvedLine]:
        quantities = merge_items(items)
        food_items = self.session.exec(
            select(FoodItem).where(FoodItem.id.in_(list(quantities)))
        ).all()
        by_id = {food.id: food for food in food_items}

        lines = []
        for food_item_id, quantity in quantities.items():
            food = by_id.get(food_item_id)
            if food is None or not food.is_available:
                raise NotFound(f"Food item with ID {food_item_id} not found")
            lines.append(ResolvedLine(
                food_item_id=food.id,
                name=food.name,
                unit_price=food.price,
                quantity=quantity,
            ))
        return lines

    def create(
        self,
        auth: AuthContext,
        items: list[OrderItemCreate],
        buyer: BuyerInfo,
        payment_method: PaymentMethod = PaymentMethod.CASH,
    ) -> Order:
        if not auth.can(Permissions.ORDERS_CREATE):
            raise Forbidden("Not allowed to place orders")
        if not items:
            raise ValidationError("Order must contain at least one item")
        validate_buyer(buyer)

        # Prices come from the catalog; any client-sent unit_price is ignored
        lines = self.resolve_lines(items)
        shop = get_shop(self.session)
        totals = compute_totals(lines, shop.tax_rate, shop.delivery_enabled, shop.delivery_charge)

        order = Order(
            user_id=auth.user_id,
            subtotal=totals.subtotal,
            tax=totals.tax,
            delivery_fee=totals.delivery_fee,
            total=totals.total,
            payment_method=payment_method,
            fulfillment_status=FulfillmentStatus.PENDING,
            payment_status=PaymentStatus.UNPAID,
            buyer_first_name=buyer.first_name.strip(),
            buyer_last_name=buyer.last_name.strip(),
            buyer_email=buyer.email.strip(),
            buyer_phone=buyer.phone.strip(),
            address_street=buyer.street.strip(),
            address_apartment=buyer.apartment,
            address_city=buyer.city.strip(),
            address_state=buyer.state,
            address_zip=buyer.zip_code,
            delivery_instructions=buyer.instructions,
        )

        # Order and lines commit together or not at all
        try:
            self.session.add(order)
            self.session.flush()
            for line in lines:
                self.session.add(OrderLine(
                    order_id=order.id,
                    food_item_id=line.food_item_id,
                    name=line.name,
                    unit_price=line.unit_price,
                    quantity=line.quantity,
                    line_total=line_total(line.unit_price, line.quantity),
                ))
            self.session.commit()
        except Exception:
            self.session.rollback()
            logger.exception("Order creation failed; transaction rolled back")
            raise

        self.session.refresh(order)
        logger.info(f"Order #{order.id} created for user {auth.user_id}: total {order.total}")
        return order

    # ============ READS ============

    def get(self, auth: AuthContext, order_id: int) -> Order:
        order = self.session.get(Order, order_id)
        if not order:
            raise NotFound("Order not found")
        if not auth.can(Permissions.ORDERS_READ_ALL) and order.user_id != auth.user_id:
            raise Unauthorized("Not allowed to view this order")
        return order

    def list_orders(
        self,
        auth: AuthContext,
        fulfillment_status: FulfillmentStatus | None = None,
        payment_status: PaymentStatus | None = None,
    ) -> list[Order]:
        statement = select(Order)
        if not auth.can(Permissions.ORDERS_READ_ALL):
            statement = statement.where(Order.user_id == auth.user_id)
        if fulfillment_status is not None:
            statement = statement.where(Order.fulfillment_status == fulfillment_status)
        if payment_status is not None:
            statement = statement.where(Order.payment_status == payment_status)
        statement = statement.order_by(Order.created_at.desc(), Order.id.desc())
        return list(self.session.exec(statement).all())

    # ============ STATUS ============

    def update_status(
        self,
        auth: AuthContext,
        order_id: int,
        fulfillment_status: FulfillmentStatus | None = None,
        payment_status: PaymentStatus | None = None,
    ) -> Order:
        changes = []
        if fulfillment_status is not None:
            changes.append(StatusChange(FULFILLMENT_AXIS, fulfillment_status))
        if payment_status is not None:
            changes.append(StatusChange(PAYMENT_AXIS, payment_status))
        if not changes:
            raise ValidationError("Status is required")
        return self.reconciler.apply_changes(order_id, changes, auth)

    def cancel(self, auth: AuthContext, order_id: int) -> Order:
        return self.update_status(auth, order_id, fulfillment_status=FulfillmentStatus.CANCELLED)

    # ============ STATISTICS ============

    def _totals_by(self, column) -> dict:
        statement = select(column, func.count(Order.id), func.sum(Order.total)).group_by(column)
        return {
            status: (count, round_money(to_money(total or 0)))
            for status, count, total in self.session.exec(statement).all()
        }

    def statistics(self, auth: AuthContext) -> dict:
        """
        Reconciliation summary for staff: order counts and totals per
        fulfillment and payment status. Cancelled orders are excluded
        from revenue and reported on their own.
        """
        if not auth.can(Permissions.ORDERS_READ_ALL):
            raise Forbidden("Only staff can view order statistics")

        by_fulfillment = self._totals_by(Order.fulfillment_status)
        by_payment = self._totals_by(Order.payment_status)
        empty = (0, round_money(ZERO))

        def summary(groups: dict, statuses) -> dict:
            return {
                s.value: {"count": groups.get(s, empty)[0], "total": str(groups.get(s, empty)[1])}
                for s in statuses
            }

        cancelled = by_fulfillment.get(FulfillmentStatus.CANCELLED, empty)[1]
        revenue = sum(
            (total for s, (_, total) in by_fulfillment.items() if s != FulfillmentStatus.CANCELLED),
            ZERO,
        )
        return {
            "user_count": self.session.exec(select(func.count(User.id))).one(),
            "food_item_count": self.session.exec(select(func.count(FoodItem.id))).one(),
            "order_count": sum(count for count, _ in by_fulfillment.values()),
            "revenue": str(round_money(revenue)),
            "cancelled_revenue": str(cancelled),
            "by_fulfillment_status": summary(by_fulfillment, FulfillmentStatus),
            "by_payment_status": summary(by_payment, PaymentStatus),
        }

    # ============ PAYMENT ============

    def begin_payment(self, auth: AuthContext, order_id: int, gateway: PaymentGateway) -> PaymentInitiation:
        """
        Start a payment attempt with `gateway` for an unpaid order.
        Switching gateways (or falling back to cash) is allowed until the order is paid.
        """
        order = self.get(auth, order_id)
        if order.payment_status == PaymentStatus.PAID:
            raise Conflict("Order is already paid")
        if order.fulfillment_status == FulfillmentStatus.CANCELLED:
            raise Conflict("Order has been cancelled")

        initiation = gateway.initiate(order)

        try:
            order.payment_method = gateway.method
            self.session.add(order)
            if initiation.transaction_ref:
                self.session.add(PaymentAttempt(
                    order_id=order.id,
                    gateway=gateway.method,
                    transaction_ref=initiation.transaction_ref,
                    amount=order.total,
                    signature=initiation.signature,
                ))
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        return initiation
