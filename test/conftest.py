import base64
import json
import os

# Point the app at an in-memory database before anything imports the engine
os.environ["DB_URL"] = "sqlite://"
os.environ.pop("REDIS_URL", None)
os.environ["KHALTI_SECRET_KEY"] = "test-khalti-secret"

from decimal import Decimal

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel

from foodorder import models
from foodorder.db import engine
from foodorder.main import app
from foodorder.payment_routes import get_gateway_client
from foodorder.payments import esewa_signature
from foodorder.security import AuthContext, hash_password, issue_token
from foodorder.settings import settings


BUYER = {
    "first_name": "Sita",
    "last_name": "Sharma",
    "email": "sita@example.com",
    "phone": "9800000000",
    "street": "Lakeside Road 4",
    "city": "Pokhara",
}


RESPONSE_FIELDS = "transaction_code,status,total_amount,transaction_uuid,product_code,signed_field_names"


def esewa_callback(transaction_uuid, total_amount, status="COMPLETE", secret=None, product_code=None,
                   signed_field_names=RESPONSE_FIELDS, tamper=None):
    """Build the base64 `data` parameter eSewa appends to the success URL."""
    payload = {
        "transaction_code": "000AWEO",
        "status": status,
        "total_amount": total_amount,
        "transaction_uuid": transaction_uuid,
        "product_code": product_code or settings.esewa_product_code,
        "signed_field_names": signed_field_names,
    }
    payload["signature"] = esewa_signature(payload, signed_field_names, secret or settings.esewa_secret_key)
    payload.update(tamper or {})
    return {"data": base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")}


class KhaltiStub:
    """Answers Khalti initiate/lookup calls through httpx.MockTransport."""

    def __init__(self):
        self.lookup_status = "Completed"
        self.lookup_amount: int | None = None
        self.initiated: list[dict] = []
        self.lookups = 0
        self.fail_with: Exception | None = None
        self._counter = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.fail_with is not None:
            raise self.fail_with
        body = json.loads(request.content or b"{}")
        if request.url.path.endswith("/epayment/initiate/"):
            self._counter += 1
            self.initiated.append(body)
            pidx = f"pidx-{self._counter}"
            return httpx.Response(200, json={
                "pidx": pidx,
                "payment_url": f"https://test-pay.khalti.com/?pidx={pidx}",
                "expires_in": 1800,
            })
        if request.url.path.endswith("/epayment/lookup/"):
            self.lookups += 1
            amount = self.lookup_amount
            if amount is None:
                amount = self.initiated[-1]["amount"] if self.initiated else 0
            return httpx.Response(200, json={
                "pidx": body["pidx"],
                "total_amount": amount,
                "status": self.lookup_status,
                "transaction_id": "TXN123",
                "fee": 0,
                "refunded": False,
            })
        return httpx.Response(404, json={"detail": "not found"})

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self.handler))


@pytest.fixture(autouse=True)
def database():
    SQLModel.metadata.create_all(engine)
    yield
    SQLModel.metadata.drop_all(engine)


@pytest.fixture
def session():
    with Session(engine) as session:
        yield session


@pytest.fixture
def khalti():
    stub = KhaltiStub()
    client = stub.client()
    app.dependency_overrides[get_gateway_client] = lambda: client
    yield stub
    app.dependency_overrides.pop(get_gateway_client, None)
    client.close()


@pytest.fixture
def client(khalti):
    return TestClient(app)


def _make_user(session: Session, email: str, role: models.UserRole) -> models.User:
    user = models.User(
        email=email,
        hashed_password=hash_password("secret123"),
        name=email.split("@")[0],
        role=role,
    )
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


@pytest.fixture
def customer(session):
    return _make_user(session, "customer@example.com", models.UserRole.USER)


@pytest.fixture
def other_customer(session):
    return _make_user(session, "other@example.com", models.UserRole.USER)


@pytest.fixture
def operator(session):
    return _make_user(session, "admin@example.com", models.UserRole.ADMIN)


@pytest.fixture
def customer_auth(customer):
    return AuthContext.for_user(customer)


@pytest.fixture
def operator_auth(operator):
    return AuthContext.for_user(operator)


def auth_headers(user: models.User) -> dict[str, str]:
    token = issue_token(user)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def menu(session):
    category = models.Category(name="Burgers")
    session.add(category)
    session.commit()
    session.refresh(category)

    burger = models.FoodItem(name="Burger", price=Decimal("9.99"), category_id=category.id)
    fries = models.FoodItem(name="Fries", price=Decimal("2.50"), category_id=category.id)
    retired = models.FoodItem(
        name="Retired Special", price=Decimal("5.00"), category_id=category.id, is_available=False
    )
    session.add_all([burger, fries, retired])
    session.commit()
    for item in (burger, fries, retired):
        session.refresh(item)
    return {"category": category, "burger": burger, "fries": fries, "retired": retired}
