"""
Order notification emails.

Rendering is synchronous so it can run inside the request; sending goes
through aiosmtplib from a background task. Without SMTP credentials the
sender logs and returns False.
"""

import html
import logging
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

import aiosmtplib

from .models import Order
from .settings import settings

logger = logging.getLogger(__name__)


def _build_message(recipient: str, subject: str, html: str, text: Optional[str]) -> MIMEMultipart:
    sender = settings.email_from
    if settings.email_from_name:
        sender = f"{settings.email_from_name} <{sender}>"

    message = MIMEMultipart("alternative")
    message["Subject"] = subject
    message["From"] = sender
    message["To"] = recipient
    # Clients render the last alternative they understand, so html goes last
    if text:
        message.attach(MIMEText(text, "plain"))
    message.attach(MIMEText(html, "html"))
    return message


async def send_email(
    recipient: str,
    subject: str,
    html: str,
    text: Optional[str] = None,
) -> bool:
    """
    Deliver one message over SMTP.

    Returns True once the server accepted it, False when SMTP is not
    configured or delivery failed.
    """
    if not (settings.smtp_user and settings.smtp_password):
        logger.info(f"SMTP not configured, skipping email to {recipient}")
        return False

    # Port 465 is implicit TLS, everything else negotiates STARTTLS
    if settings.smtp_port == 465:
        tls_options = {"use_tls": True}
    else:
        tls_options = {"start_tls": settings.smtp_use_tls}

    try:
        await aiosmtplib.send(
            _build_message(recipient, subject, html, text),
            hostname=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_user,
            password=settings.smtp_password,
            **tls_options,
        )
    except (aiosmtplib.SMTPException, OSError) as e:
        logger.error(f"Could not deliver email to {recipient}: {e}")
        return False
    logger.info(f"Email delivered to {recipient}")
    return True


def _order_lines_text(order: Order) -> str:
    return "\n".join(
        f"  {line.quantity} x {line.name} @ {line.unit_price} = {line.line_total}"
        for line in order.items
    )


def render_order_confirmation(order: Order) -> tuple[str, str, str]:
    """Subject, HTML body and text body for an order confirmation."""
    subject = f"Order #{order.id} received"
    lines = _order_lines_text(order)
    text_content = (
        f"Hi {order.buyer_first_name},\n\n"
        f"Thank you for your order #{order.id}.\n\n"
        f"{lines}\n\n"
        f"Subtotal: {order.subtotal}\n"
        f"Delivery: {order.delivery_fee}\n"
        f"Tax: {order.tax}\n"
        f"Total: {order.total}\n\n"
        f"Payment: {order.payment_method.value} ({order.payment_status.value})\n"
    )
    rows = "".join(
        f"<tr><td>{line.quantity} × {html.escape(line.name)}</td><td>{line.line_total}</td></tr>"
        for line in order.items
    )
    html_content = f"""
    <html>
    <body>
        <h1>Thank you for your order #{order.id}</h1>
        <table>{rows}</table>
        <p>Subtotal: {order.subtotal}<br>
        Delivery: {order.delivery_fee}<br>
        Tax: {order.tax}<br>
        <strong>Total: {order.total}</strong></p>
        <p>Payment: {order.payment_method.value} ({order.payment_status.value})</p>
    </body>
    </html>
    """
    return subject, html_content, text_content


def render_payment_confirmation(order: Order) -> tuple[str, str, str]:
    subject = f"Payment received for order #{order.id}"
    text_content = (
        f"Hi {order.buyer_first_name},\n\n"
        f"We received your {order.payment_method.value} payment of {order.total} "
        f"for order #{order.id}.\n"
    )
    body = html.escape(text_content).replace("\n", "<br>")
    html_content = f"<html><body><p>{body}</p></body></html>"
    return subject, html_content, text_content
