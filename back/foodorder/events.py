"""
Order update fan-out over Redis pub/sub.

Publishes to:
- orders:staff - every order change, for the operator dashboard
- orders:user:{user_id} - changes to one customer's orders

Publishing is best effort: an unreachable Redis never fails an order request.
"""

import json
import logging

import redis

from .models import Order
from .settings import settings

logger = logging.getLogger(__name__)

redis_client: redis.Redis | None = None


def get_redis() -> redis.Redis | None:
    global redis_client
    if not settings.redis_url:
        return None
    if redis_client is None:
        try:
            redis_client = redis.from_url(settings.redis_url)
            redis_client.ping()
        except redis.RedisError as e:
            logger.warning(f"Redis unavailable, order updates will not be published: {e}")
            redis_client = None
    return redis_client


def order_event(event_type: str, order: Order) -> dict:
    return {
        "type": event_type,
        "order_id": order.id,
        "fulfillment_status": order.fulfillment_status.value,
        "payment_status": order.payment_status.value,
        "payment_method": order.payment_method.value,
        "total": str(order.total),
    }


def publish_order_update(event_type: str, order: Order) -> None:
    r = get_redis()
    if not r:
        return
    message = json.dumps(order_event(event_type, order))
    try:
        r.publish("orders:staff", message)
        r.publish(f"orders:user:{order.user_id}", message)
    except redis.RedisError as e:
        logger.warning(f"Failed to publish {event_type} for order #{order.id}: {e}")
