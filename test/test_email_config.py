"""
Order emails: rendering, and SMTP settings flowing into aiosmtplib.
"""

import asyncio
from decimal import Decimal

import aiosmtplib
import pytest

from conftest import BUYER
from foodorder import email_service
from foodorder.email_service import render_order_confirmation, render_payment_confirmation, send_email
from foodorder.models import BuyerInfo, FoodItem, OrderItemCreate
from foodorder.order_service import OrderService
from foodorder.settings import settings


@pytest.fixture
def sent(monkeypatch):
    calls = []

    async def fake_send(message, **kwargs):
        calls.append((message, kwargs))

    monkeypatch.setattr(email_service.aiosmtplib, "send", fake_send)
    return calls


@pytest.fixture
def smtp_configured(monkeypatch):
    monkeypatch.setattr(settings, "smtp_user", "orders@example.com")
    monkeypatch.setattr(settings, "smtp_password", "app-password")


def test_unconfigured_smtp_skips_sending(sent, monkeypatch):
    monkeypatch.setattr(settings, "smtp_user", "")
    assert asyncio.run(send_email("a@example.com", "Hi", "<p>Hi</p>")) is False
    assert sent == []


def test_starttls_on_submission_port(sent, smtp_configured, monkeypatch):
    monkeypatch.setattr(settings, "smtp_port", 587)
    assert asyncio.run(send_email("a@example.com", "Hi", "<p>Hi</p>", "Hi")) is True

    message, options = sent[0]
    assert message["To"] == "a@example.com"
    assert options["start_tls"] is True
    assert "use_tls" not in options


def test_implicit_tls_on_port_465(sent, smtp_configured, monkeypatch):
    monkeypatch.setattr(settings, "smtp_port", 465)
    asyncio.run(send_email("a@example.com", "Hi", "<p>Hi</p>"))
    assert sent[0][1]["use_tls"] is True


def test_smtp_failure_is_reported_not_raised(smtp_configured, monkeypatch):
    async def broken_send(message, **kwargs):
        raise aiosmtplib.SMTPException("connection refused")

    monkeypatch.setattr(email_service.aiosmtplib, "send", broken_send)
    assert asyncio.run(send_email("a@example.com", "Hi", "<p>Hi</p>")) is False


def test_rendered_confirmations(session, customer_auth, menu):
    items = [OrderItemCreate(food_item_id=menu["burger"].id, quantity=2)]
    order = OrderService(session).create(customer_auth, items, BuyerInfo(**BUYER))

    subject, html_content, text_content = render_order_confirmation(order)
    assert subject == f"Order #{order.id} received"
    assert "2 x Burger" in text_content
    assert "Total: 25.57" in text_content
    assert "25.57" in html_content

    subject, _, text_content = render_payment_confirmation(order)
    assert str(order.id) in subject
    assert "CASH" in text_content


def test_html_bodies_escape_customer_text(session, customer_auth, menu):
    snack = FoodItem(name="Chips & <b>Dip</b>", price=Decimal("4.00"), category_id=menu["category"].id)
    session.add(snack)
    session.commit()
    session.refresh(snack)
    buyer = BuyerInfo(**{**BUYER, "first_name": "<script>alert(1)</script>"})
    order = OrderService(session).create(customer_auth, [OrderItemCreate(food_item_id=snack.id)], buyer)

    _, html_content, text_content = render_order_confirmation(order)
    assert "Chips &amp; &lt;b&gt;Dip&lt;/b&gt;" in html_content
    assert "<b>Dip</b>" in text_content

    _, html_content, _ = render_payment_confirmation(order)
    assert "<script>" not in html_content
    assert "&lt;script&gt;" in html_content
