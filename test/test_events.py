import json

import redis

from conftest import BUYER, auth_headers
from foodorder import events


class FakeRedis:
    def __init__(self, fail=False):
        self.published = []
        self.fail = fail

    def publish(self, channel, message):
        if self.fail:
            raise redis.ConnectionError("redis went away")
        self.published.append((channel, json.loads(message)))


def test_redis_disabled_by_default():
    assert events.get_redis() is None


def test_new_order_fans_out_to_staff_and_customer(client, customer, menu, monkeypatch):
    fake = FakeRedis()
    monkeypatch.setattr(events, "get_redis", lambda: fake)

    response = client.post("/orders", headers=auth_headers(customer), json={
        "items": [{"food_item_id": menu["burger"].id}],
        "buyer": BUYER,
    })
    assert response.status_code == 201

    channels = [channel for channel, _ in fake.published]
    assert channels == ["orders:staff", f"orders:user:{customer.id}"]
    event = fake.published[0][1]
    assert event["type"] == "new_order"
    assert event["order_id"] == response.json()["id"]
    assert event["payment_status"] == "UNPAID"


def test_publish_failure_does_not_fail_the_request(client, customer, menu, monkeypatch):
    monkeypatch.setattr(events, "get_redis", lambda: FakeRedis(fail=True))

    response = client.post("/orders", headers=auth_headers(customer), json={
        "items": [{"food_item_id": menu["burger"].id}],
        "buyer": BUYER,
    })
    assert response.status_code == 201
