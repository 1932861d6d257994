"""
Order status state machine.

An order carries two independent axes: fulfillment (PENDING → PROCESSING →
COMPLETED, or CANCELLED) and payment (UNPAID → PAID). This module owns the
transition rules for both and applies them with compare-and-set updates so a
customer cancellation and a gateway callback racing on the same row cannot
overwrite each other.

`StatusReconciler` is also where verified gateway results become PAID.
Nothing here moves payment status on the strength of client-supplied data:
a gateway verification or an operator action is always required.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from .errors import Forbidden, InvalidTransition, NotFound, Unauthorized, ValidationError
from .models import (
    FulfillmentStatus,
    Order,
    PaymentAttempt,
    PaymentAttemptStatus,
    PaymentMethod,
    PaymentStatus,
)
from .payments import PaymentGateway, PaymentVerification
from .permissions import Permissions
from .security import AuthContext

logger = logging.getLogger(__name__)

FULFILLMENT_TRANSITIONS: dict[FulfillmentStatus, set[FulfillmentStatus]] = {
    FulfillmentStatus.PENDING: {FulfillmentStatus.PROCESSING, FulfillmentStatus.CANCELLED},
    FulfillmentStatus.PROCESSING: {FulfillmentStatus.COMPLETED, FulfillmentStatus.CANCELLED},
    FulfillmentStatus.COMPLETED: set(),
    FulfillmentStatus.CANCELLED: set(),
}

PAYMENT_TRANSITIONS: dict[PaymentStatus, set[PaymentStatus]] = {
    PaymentStatus.UNPAID: {PaymentStatus.PAID},
    PaymentStatus.PAID: set(),
}

CUSTOMER_CANCELLABLE = {FulfillmentStatus.PENDING, FulfillmentStatus.PROCESSING}

FULFILLMENT_AXIS = "status"
PAYMENT_AXIS = "payment"

# Attempts to win a compare-and-set before giving up
MAX_CAS_RETRIES = 3


def check_fulfillment_transition(current: FulfillmentStatus, target: FulfillmentStatus) -> bool:
    """
    Return True if the order must be written, False if it is already there.
    Raises InvalidTransition for anything outside the table.
    """
    if current == target:
        return False
    if target not in FULFILLMENT_TRANSITIONS[current]:
        raise InvalidTransition("fulfillment status", current.value, target.value)
    return True


def check_payment_transition(current: PaymentStatus, target: PaymentStatus) -> bool:
    if current == target:
        return False
    if target not in PAYMENT_TRANSITIONS[current]:
        raise InvalidTransition("payment status", current.value, target.value)
    return True


def can_customer_cancel(order: Order) -> bool:
    return order.fulfillment_status in CUSTOMER_CANCELLABLE


@dataclass(frozen=True)
class StatusChange:
    axis: str
    value: FulfillmentStatus | PaymentStatus

    @property
    def is_payment(self) -> bool:
        return self.axis == PAYMENT_AXIS


def decode_status_selector(selector: str) -> StatusChange:
    """Decode the operator dashboard's combined "status:X" / "payment:Y" value."""
    axis, sep, raw_value = (selector or "").partition(":")
    axis = axis.strip().lower()
    raw_value = raw_value.strip().upper()
    if not sep or not raw_value:
        raise ValidationError(f"Invalid status selector: {selector!r}")

    try:
        if axis == FULFILLMENT_AXIS:
            return StatusChange(FULFILLMENT_AXIS, FulfillmentStatus(raw_value))
        if axis == PAYMENT_AXIS:
            return StatusChange(PAYMENT_AXIS, PaymentStatus(raw_value))
    except ValueError:
        raise ValidationError(f"Unknown {axis} value: {raw_value}")
    raise ValidationError(f"Unknown status axis: {axis}")


def encode_status_selector(change: StatusChange) -> str:
    return f"{change.axis}:{change.value.value}"


@dataclass
class ReconcileResult:
    order: Order
    success: bool
    applied: bool
    message: str
    verification: PaymentVerification | None = None


class StatusReconciler:
    def __init__(self, session: Session):
        self.session = session

    # ============ LOW-LEVEL WRITES ============

    def _load(self, order_id: int) -> Order:
        order = self.session.get(Order, order_id)
        if not order:
            raise NotFound("Order not found")
        return order

    def _compare_and_set(self, order_id: int, column: Any, expected: Any, values: dict) -> bool:
        values = {**values, "updated_at": datetime.now(timezone.utc)}
        result = self.session.exec(
            update(Order)
            .where(Order.id == order_id, column == expected)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _set_fulfillment(self, order: Order, target: FulfillmentStatus, actor: AuthContext) -> bool:
        for _ in range(MAX_CAS_RETRIES):
            current = order.fulfillment_status
            if not check_fulfillment_transition(current, target):
                return False

            values: dict[str, Any] = {"fulfillment_status": target}
            if target == FulfillmentStatus.CANCELLED:
                values["cancelled_at"] = datetime.now(timezone.utc)
                values["cancelled_by"] = "staff" if actor.is_operator else "customer"

            if self._compare_and_set(order.id, Order.fulfillment_status, current, values):
                logger.info(
                    f"Order #{order.id} fulfillment {current.value} -> {target.value} "
                    f"by user {actor.user_id}"
                )
                return True
            # Lost the race; look at the row again and re-validate
            self.session.refresh(order, attribute_names=["fulfillment_status"])
        raise InvalidTransition("fulfillment status", order.fulfillment_status.value, target.value)

    def _set_payment(
        self,
        order: Order,
        target: PaymentStatus,
        method: PaymentMethod | None = None,
        paid_by_user_id: int | None = None,
    ) -> bool:
        current = order.payment_status
        if not check_payment_transition(current, target):
            return False

        values: dict[str, Any] = {
            "payment_status": target,
            "paid_at": datetime.now(timezone.utc),
            "paid_by_user_id": paid_by_user_id,
        }
        if method is not None:
            values["payment_method"] = method

        if self._compare_and_set(order.id, Order.payment_status, current, values):
            logger.info(f"Order #{order.id} payment {current.value} -> {target.value}")
            return True

        # UNPAID -> PAID is the only edge, so a lost race means someone else already paid it
        self.session.refresh(order, attribute_names=["payment_status"])
        check_payment_transition(order.payment_status, target)
        return False

    # ============ OPERATOR / CUSTOMER ACTIONS ============

    def authorize_change(self, order: Order, change: StatusChange, actor: AuthContext) -> None:
        if not actor.is_operator and order.user_id != actor.user_id:
            raise Unauthorized("Not allowed to modify this order")

        if change.is_payment:
            # Payment only moves by operator action or verified gateway callback
            if not actor.can(Permissions.ORDERS_PAY):
                raise Forbidden("Only staff can change payment status")
            return

        if actor.can(Permissions.ORDERS_UPDATE):
            return
        if change.value != FulfillmentStatus.CANCELLED or not actor.can(Permissions.ORDERS_CANCEL_OWN):
            raise Forbidden("Customers can only cancel their orders")
        if order.fulfillment_status != change.value and not can_customer_cancel(order):
            raise InvalidTransition("fulfillment status", order.fulfillment_status.value, change.value.value)

    def apply_changes(self, order_id: int, changes: list[StatusChange], actor: AuthContext) -> Order:
        """Validate every change first, then write them in one transaction."""
        order = self._load(order_id)
        for change in changes:
            self.authorize_change(order, change, actor)
            if change.is_payment:
                check_payment_transition(order.payment_status, change.value)
            else:
                check_fulfillment_transition(order.fulfillment_status, change.value)

        changed = False
        try:
            for change in changes:
                if change.is_payment:
                    changed |= self._set_payment(order, change.value, paid_by_user_id=actor.user_id)
                else:
                    changed |= self._set_fulfillment(order, change.value, actor)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        self.session.refresh(order)
        if not changed:
            logger.debug(f"Order #{order.id} status update was a no-op")
        return order

    def apply_change(self, order_id: int, change: StatusChange, actor: AuthContext) -> Order:
        return self.apply_changes(order_id, [change], actor)

    def apply_bulk(self, actor: AuthContext, order_ids: list[int], selector: str) -> dict[int, str]:
        """Apply one dashboard selector to many orders; returns the outcome per order."""
        if not actor.is_operator:
            raise Forbidden("Bulk status updates are restricted to staff")
        change = decode_status_selector(selector)

        outcome: dict[int, str] = {}
        for order_id in order_ids:
            try:
                order = self.apply_change(order_id, change, actor)
                current = order.payment_status if change.is_payment else order.fulfillment_status
                outcome[order_id] = current.value
            except (NotFound, InvalidTransition) as e:
                outcome[order_id] = f"error: {e.detail}"
        return outcome

    def confirm_cash_payment(self, order_id: int, actor: AuthContext) -> Order:
        """Operator records that cash was collected on delivery."""
        if not actor.can(Permissions.ORDERS_PAY):
            raise Forbidden("Only staff can confirm cash payments")
        order = self._load(order_id)
        if order.payment_method != PaymentMethod.CASH:
            raise ValidationError("Order is not a cash on delivery order")
        try:
            self._set_payment(order, PaymentStatus.PAID, paid_by_user_id=actor.user_id)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(order)
        return order

    # ============ GATEWAY CALLBACKS ============

    def _find_attempt(self, transaction_ref: str) -> PaymentAttempt | None:
        return self.session.exec(
            select(PaymentAttempt).where(PaymentAttempt.transaction_ref == transaction_ref)
        ).first()

    def _fail(self, order: Order, attempt: PaymentAttempt | None, message: str,
              verification: PaymentVerification | None = None) -> ReconcileResult:
        logger.warning(f"Payment verification failed for order #{order.id}: {message}")
        if attempt is not None and attempt.status == PaymentAttemptStatus.initiated:
            attempt.status = PaymentAttemptStatus.failed
            if verification is not None and verification.raw is not None:
                attempt.raw_response = json.dumps(verification.raw, default=str)
            self.session.add(attempt)
            self.session.commit()
        self.session.refresh(order)
        return ReconcileResult(order=order, success=False, applied=False,
                               message=message, verification=verification)

    def verify_and_apply(self, order_id: int, gateway: PaymentGateway, callback: dict) -> ReconcileResult:
        """
        Verify a gateway callback server-side and mark the order PAID.

        Safe to call repeatedly with the same payload: once the attempt is
        verified later calls return the current order with `applied=False`.
        """
        order = self._load(order_id)

        transaction_ref = gateway.reference_from_callback(callback)
        if not transaction_ref:
            return self._fail(order, None, "Missing transaction reference")

        attempt = self._find_attempt(transaction_ref)
        if attempt is None or attempt.order_id != order.id or attempt.gateway != gateway.method:
            return self._fail(order, None, f"Unknown transaction {transaction_ref}")

        if attempt.status == PaymentAttemptStatus.verified:
            self.session.refresh(order)
            return ReconcileResult(order=order, success=True, applied=False,
                                   message="Payment already verified")

        verification = gateway.verify(callback)
        if not verification.success:
            return self._fail(order, attempt, verification.message or "Payment not completed", verification)

        if verification.transaction_ref != attempt.transaction_ref:
            return self._fail(order, attempt, "Transaction reference mismatch", verification)
        if verification.amount is None or verification.amount != attempt.amount:
            return self._fail(
                order, attempt,
                f"Amount mismatch: paid {verification.amount}, expected {attempt.amount}",
                verification,
            )

        try:
            attempt.status = PaymentAttemptStatus.verified
            attempt.verified_at = datetime.now(timezone.utc)
            attempt.gateway_reference = verification.gateway_reference
            if verification.raw is not None:
                attempt.raw_response = json.dumps(verification.raw, default=str)
            self.session.add(attempt)
            applied = self._set_payment(order, PaymentStatus.PAID, method=gateway.method)
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            applied = False
        except Exception:
            self.session.rollback()
            raise

        self.session.refresh(order)
        if order.fulfillment_status == FulfillmentStatus.CANCELLED:
            logger.warning(f"Order #{order.id} was paid after cancellation; refund required")
        return ReconcileResult(order=order, success=True, applied=applied,
                               message="Payment verified", verification=verification)
