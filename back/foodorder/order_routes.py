from typing import Annotated

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from sqlmodel import Session

from . import models
from .db import get_session
from .email_service import render_order_confirmation, render_payment_confirmation, send_email
from .events import publish_order_update
from .order_service import OrderService
from .security import AuthContext, get_auth_context
from .status import StatusReconciler

router = APIRouter()


def get_order_service(session: Session = Depends(get_session)) -> OrderService:
    return OrderService(session)


def serialize_order(order: models.Order) -> dict:
    return {
        "id": order.id,
        "user_id": order.user_id,
        "fulfillment_status": order.fulfillment_status.value,
        "payment_status": order.payment_status.value,
        "payment_method": order.payment_method.value,
        "subtotal": str(order.subtotal),
        "delivery_fee": str(order.delivery_fee),
        "tax": str(order.tax),
        "total": str(order.total),
        "buyer": {
            "first_name": order.buyer_first_name,
            "last_name": order.buyer_last_name,
            "email": order.buyer_email,
            "phone": order.buyer_phone,
            "street": order.address_street,
            "apartment": order.address_apartment,
            "city": order.address_city,
            "state": order.address_state,
            "zip_code": order.address_zip,
            "instructions": order.delivery_instructions,
        },
        "created_at": order.created_at.isoformat(),
        "updated_at": order.updated_at.isoformat() if order.updated_at else None,
        "paid_at": order.paid_at.isoformat() if order.paid_at else None,
        "cancelled_at": order.cancelled_at.isoformat() if order.cancelled_at else None,
        "cancelled_by": order.cancelled_by,
        "items": [
            {
                "id": line.id,
                "food_item_id": line.food_item_id,
                "name": line.name,
                "unit_price": str(line.unit_price),
                "quantity": line.quantity,
                "line_total": str(line.line_total),
            }
            for line in order.items
        ],
    }


def notify_payment(background_tasks: BackgroundTasks, order: models.Order) -> None:
    publish_order_update("order_paid", order)
    subject, html_content, text_content = render_payment_confirmation(order)
    background_tasks.add_task(send_email, order.buyer_email, subject, html_content, text_content)


@router.post("/orders", status_code=status.HTTP_201_CREATED)
def create_order(
    order_data: models.OrderCreate,
    background_tasks: BackgroundTasks,
    auth: Annotated[AuthContext, Depends(get_auth_context)],
    service: OrderService = Depends(get_order_service),
) -> dict:
    order = service.create(auth, order_data.items, order_data.buyer, order_data.payment_method)

    publish_order_update("new_order", order)
    subject, html_content, text_content = render_order_confirmation(order)
    background_tasks.add_task(send_email, order.buyer_email, subject, html_content, text_content)

    return serialize_order(order)


@router.get("/orders")
def list_orders(
    auth: Annotated[AuthContext, Depends(get_auth_context)],
    fulfillment_status: models.FulfillmentStatus | None = Query(None, alias="status"),
    payment_status: models.PaymentStatus | None = None,
    service: OrderService = Depends(get_order_service),
) -> list[dict]:
    orders = service.list_orders(auth, fulfillment_status, payment_status)
    return [serialize_order(order) for order in orders]


@router.put("/orders/bulk-status")
def bulk_update_status(
    bulk_update: models.BulkStatusUpdate,
    auth: Annotated[AuthContext, Depends(get_auth_context)],
    session: Session = Depends(get_session),
) -> dict:
    """Operator dashboard bulk update with a combined "status:X" / "payment:Y" selector."""
    outcome = StatusReconciler(session).apply_bulk(auth, bulk_update.order_ids, bulk_update.selector)
    return {"selector": bulk_update.selector, "results": {str(k): v for k, v in outcome.items()}}


@router.get("/statistics")
def order_statistics(
    auth: Annotated[AuthContext, Depends(get_auth_context)],
    service: OrderService = Depends(get_order_service),
) -> dict:
    return service.statistics(auth)


@router.get("/orders/{order_id}")
def get_order(
    order_id: int,
    auth: Annotated[AuthContext, Depends(get_auth_context)],
    service: OrderService = Depends(get_order_service),
) -> dict:
    return serialize_order(service.get(auth, order_id))


@router.put("/orders/{order_id}")
def update_order(
    order_id: int,
    status_update: models.OrderStatusUpdate,
    background_tasks: BackgroundTasks,
    auth: Annotated[AuthContext, Depends(get_auth_context)],
    service: OrderService = Depends(get_order_service),
) -> dict:
    before = service.get(auth, order_id).payment_status
    order = service.update_status(
        auth,
        order_id,
        fulfillment_status=status_update.fulfillment_status,
        payment_status=status_update.payment_status,
    )

    publish_order_update("status_update", order)
    if before != order.payment_status:
        notify_payment(background_tasks, order)
    return serialize_order(order)


@router.post("/orders/{order_id}/cancel")
def cancel_order(
    order_id: int,
    auth: Annotated[AuthContext, Depends(get_auth_context)],
    service: OrderService = Depends(get_order_service),
) -> dict:
    order = service.cancel(auth, order_id)
    publish_order_update("order_cancelled", order)
    return serialize_order(order)


@router.put("/orders/{order_id}/mark-paid")
def mark_order_paid(
    order_id: int,
    background_tasks: BackgroundTasks,
    auth: Annotated[AuthContext, Depends(get_auth_context)],
    service: OrderService = Depends(get_order_service),
) -> dict:
    """Staff confirms cash collected on delivery."""
    before = service.get(auth, order_id).payment_status
    order = service.reconciler.confirm_cash_payment(order_id, auth)
    if before != order.payment_status:
        notify_payment(background_tasks, order)
    return serialize_order(order)
