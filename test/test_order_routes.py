import pytest

from conftest import BUYER, auth_headers


@pytest.fixture
def order_payload(menu):
    return {
        "items": [{"food_item_id": menu["burger"].id, "quantity": 2, "unit_price": "0.01", "name": "Free Burger"}],
        "buyer": BUYER,
        "payment_method": "CASH",
    }


def place_order(client, user, payload):
    response = client.post("/orders", json=payload, headers=auth_headers(user))
    assert response.status_code == 201, response.text
    return response.json()


def test_checkout_requires_login(client, order_payload):
    response = client.post("/orders", json=order_payload)
    assert response.status_code == 401


def test_checkout_prices_come_from_catalog(client, customer, order_payload):
    order = place_order(client, customer, order_payload)

    assert order["subtotal"] == "19.98"
    assert order["tax"] == "1.60"
    assert order["delivery_fee"] == "3.99"
    assert order["total"] == "25.57"
    assert order["fulfillment_status"] == "PENDING"
    assert order["payment_status"] == "UNPAID"
    assert order["items"][0]["name"] == "Burger"
    assert order["items"][0]["unit_price"] == "9.99"
    assert order["buyer"]["city"] == "Pokhara"


def test_checkout_errors(client, customer, menu):
    headers = auth_headers(customer)

    response = client.post("/orders", json={"items": [], "buyer": BUYER}, headers=headers)
    assert response.status_code == 400

    response = client.post("/orders", json={"items": [{"food_item_id": 9999}], "buyer": BUYER}, headers=headers)
    assert response.status_code == 404

    response = client.post("/orders", json={
        "items": [{"food_item_id": menu["burger"].id}],
        "buyer": {**BUYER, "phone": ""},
    }, headers=headers)
    assert response.status_code == 400
    assert "phone" in response.json()["detail"]


def test_order_visibility(client, customer, other_customer, operator, order_payload):
    order = place_order(client, customer, order_payload)

    assert client.get(f"/orders/{order['id']}", headers=auth_headers(customer)).status_code == 200
    assert client.get(f"/orders/{order['id']}", headers=auth_headers(operator)).status_code == 200
    assert client.get(f"/orders/{order['id']}", headers=auth_headers(other_customer)).status_code == 401
    assert client.get("/orders/9999", headers=auth_headers(operator)).status_code == 404

    assert client.get("/orders", headers=auth_headers(other_customer)).json() == []
    assert len(client.get("/orders", headers=auth_headers(operator)).json()) == 1


def test_list_filters(client, customer, operator, order_payload):
    first = place_order(client, customer, order_payload)
    place_order(client, customer, order_payload)
    client.post(f"/orders/{first['id']}/cancel", headers=auth_headers(customer))

    headers = auth_headers(operator)
    cancelled = client.get("/orders", params={"status": "CANCELLED"}, headers=headers).json()
    assert [o["id"] for o in cancelled] == [first["id"]]
    unpaid = client.get("/orders", params={"payment_status": "UNPAID"}, headers=headers).json()
    assert len(unpaid) == 2


def test_operator_status_flow(client, customer, operator, order_payload):
    order = place_order(client, customer, order_payload)
    headers = auth_headers(operator)
    url = f"/orders/{order['id']}"

    assert client.put(url, json={"fulfillment_status": "PROCESSING"}, headers=headers).status_code == 200
    response = client.put(url, json={"fulfillment_status": "COMPLETED"}, headers=headers)
    assert response.json()["fulfillment_status"] == "COMPLETED"
    assert response.json()["payment_status"] == "UNPAID"

    response = client.put(url, json={"fulfillment_status": "PROCESSING"}, headers=headers)
    assert response.status_code == 409

    response = client.put(f"{url}/mark-paid", headers=headers)
    assert response.status_code == 200
    assert response.json()["payment_status"] == "PAID"

    response = client.put(url, json={"payment_status": "UNPAID"}, headers=headers)
    assert response.status_code == 409


def test_customer_status_limits(client, customer, order_payload):
    order = place_order(client, customer, order_payload)
    headers = auth_headers(customer)
    url = f"/orders/{order['id']}"

    assert client.put(url, json={"payment_status": "PAID"}, headers=headers).status_code == 403
    assert client.put(url, json={"fulfillment_status": "COMPLETED"}, headers=headers).status_code == 403
    assert client.put(f"{url}/mark-paid", headers=headers).status_code == 403
    assert client.put(url, json={}, headers=headers).status_code == 400

    response = client.post(f"{url}/cancel", headers=headers)
    assert response.status_code == 200
    assert response.json()["fulfillment_status"] == "CANCELLED"
    assert response.json()["cancelled_by"] == "customer"


def test_bulk_status(client, customer, operator, order_payload):
    first = place_order(client, customer, order_payload)
    second = place_order(client, customer, order_payload)

    response = client.put("/orders/bulk-status", headers=auth_headers(operator), json={
        "order_ids": [first["id"], second["id"], 9999],
        "selector": "status:PROCESSING",
    })
    assert response.status_code == 200
    results = response.json()["results"]
    assert results[str(first["id"])] == "PROCESSING"
    assert results[str(second["id"])] == "PROCESSING"
    assert results["9999"].startswith("error:")

    response = client.put("/orders/bulk-status", headers=auth_headers(operator), json={
        "order_ids": [first["id"]],
        "selector": "refund:ALL",
    })
    assert response.status_code == 400

    response = client.put("/orders/bulk-status", headers=auth_headers(customer), json={
        "order_ids": [first["id"]],
        "selector": "status:CANCELLED",
    })
    assert response.status_code == 403


def test_statistics(client, customer, operator, order_payload):
    cancelled = place_order(client, customer, order_payload)
    paid = place_order(client, customer, order_payload)
    place_order(client, customer, order_payload)
    client.post(f"/orders/{cancelled['id']}/cancel", headers=auth_headers(customer))
    client.put(f"/orders/{paid['id']}/mark-paid", headers=auth_headers(operator))

    assert client.get("/statistics", headers=auth_headers(customer)).status_code == 403

    response = client.get("/statistics", headers=auth_headers(operator))
    assert response.status_code == 200
    stats = response.json()
    assert stats["order_count"] == 3
    assert stats["user_count"] == 2
    assert stats["food_item_count"] == 3
    assert stats["revenue"] == "51.14"
    assert stats["cancelled_revenue"] == "25.57"
    assert stats["by_fulfillment_status"]["PENDING"] == {"count": 2, "total": "51.14"}
    assert stats["by_fulfillment_status"]["COMPLETED"] == {"count": 0, "total": "0.00"}
    assert stats["by_payment_status"]["PAID"] == {"count": 1, "total": "25.57"}
    assert stats["by_payment_status"]["UNPAID"] == {"count": 2, "total": "51.14"}
