import logging
from collections.abc import Iterator
from typing import Annotated

import httpx
from fastapi import APIRouter, BackgroundTasks, Depends, Request
from sqlmodel import Session

from . import models
from .db import get_session
from .errors import GatewayError, NotFound, ValidationError
from .order_routes import notify_payment, serialize_order
from .order_service import OrderService
from .payments import get_gateway
from .security import AuthContext, get_auth_context
from .settings import settings
from .status import StatusReconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payment")

GATEWAY_SLUGS = {
    "cash": models.PaymentMethod.CASH,
    "esewa": models.PaymentMethod.ESEWA,
    "khalti": models.PaymentMethod.KHALTI,
    # Generic aliases for the two online gateways
    "gateway-a": models.PaymentMethod.ESEWA,
    "gateway-b": models.PaymentMethod.KHALTI,
}


def get_gateway_client() -> Iterator[httpx.Client]:
    with httpx.Client(timeout=settings.gateway_timeout_seconds) as client:
        yield client


def resolve_method(gateway: str) -> models.PaymentMethod:
    method = GATEWAY_SLUGS.get(gateway.lower())
    if method is None:
        raise NotFound(f"Unknown payment gateway: {gateway}")
    return method


def payment_outcome(order: models.Order, success: bool, message: str) -> dict:
    # Callback endpoints are reachable without a session, so expose status only
    return {
        "success": success,
        "message": message,
        "order_id": order.id,
        "fulfillment_status": order.fulfillment_status.value,
        "payment_status": order.payment_status.value,
        "payment_method": order.payment_method.value,
        "total": str(order.total),
    }


def _initiate(
    method: models.PaymentMethod,
    order_id: int,
    auth: AuthContext,
    session: Session,
    client: httpx.Client,
) -> dict:
    gateway = get_gateway(method, client=client)
    service = OrderService(session)
    initiation = service.begin_payment(auth, order_id, gateway)
    return {"initiation": initiation.as_dict(), "order": serialize_order(service.get(auth, order_id))}


@router.post("/gateway-b/initiate")
def initiate_gateway_b(
    request_data: models.GatewayInitiateRequest,
    auth: Annotated[AuthContext, Depends(get_auth_context)],
    session: Session = Depends(get_session),
    client: httpx.Client = Depends(get_gateway_client),
) -> dict:
    """Server-to-server Khalti initiation; the client redirects to `redirect_url`."""
    return _initiate(models.PaymentMethod.KHALTI, request_data.order_id, auth, session, client)


@router.post("/{gateway}/initiate/{order_id}")
def initiate_payment(
    gateway: str,
    order_id: int,
    auth: Annotated[AuthContext, Depends(get_auth_context)],
    session: Session = Depends(get_session),
    client: httpx.Client = Depends(get_gateway_client),
) -> dict:
    """
    Start paying for an order.
    cash: switches the order to cash on delivery, nothing to redirect to.
    esewa: returns the signed form to post to eSewa.
    khalti: returns the Khalti payment URL.
    """
    return _initiate(resolve_method(gateway), order_id, auth, session, client)


@router.get("/{gateway}/success/{order_id}")
def payment_success(
    gateway: str,
    order_id: int,
    request: Request,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_session),
    client: httpx.Client = Depends(get_gateway_client),
) -> dict:
    """Gateway return URL. Nothing in the query is trusted until verified server-side."""
    method = resolve_method(gateway)
    if method == models.PaymentMethod.CASH:
        raise ValidationError("Cash payments are confirmed by staff on delivery")

    result = StatusReconciler(session).verify_and_apply(
        order_id, get_gateway(method, client=client), dict(request.query_params)
    )
    if result.applied:
        notify_payment(background_tasks, result.order)
    if not result.success:
        return payment_outcome(result.order, False, GatewayError.default_detail)
    return payment_outcome(result.order, True, result.message)


@router.get("/{gateway}/failure/{order_id}")
def payment_failure(
    gateway: str,
    order_id: int,
    session: Session = Depends(get_session),
) -> dict:
    """Gateway cancel/failure return URL; the order stays unpaid and can be retried."""
    resolve_method(gateway)
    order = session.get(models.Order, order_id)
    if not order:
        raise NotFound("Order not found")
    logger.info(f"Customer returned from {gateway} without paying for order #{order_id}")
    return payment_outcome(order, False, GatewayError.default_detail)
