"""
Payment gateway adapters.

Every provider is wrapped behind the same two calls:

- `initiate(order)` prepares a payment and tells the client where to go
  (a redirect URL or a signed form to post).
- `verify(callback)` checks what the provider reports back, server-side,
  and returns a `PaymentVerification`. Provider failures never raise from
  `verify`; they come back as `success=False`.

Provider quirks (field names, signing, minor units) stay inside the adapter.
"""

import base64
import binascii
import hashlib
import hmac
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any
from uuid import uuid4

import httpx

from .errors import GatewayError, ValidationError
from .models import Order, PaymentMethod
from .pricing import round_money, to_minor_units, to_money
from .settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)


@dataclass
class PaymentInitiation:
    gateway: PaymentMethod
    amount: Decimal
    transaction_ref: str | None = None
    redirect_url: str | None = None
    form_url: str | None = None
    form_fields: dict[str, str] = field(default_factory=dict)
    signature: str | None = None
    message: str = ""

    def as_dict(self) -> dict[str, Any]:
        return {
            "gateway": self.gateway.value,
            "amount": str(self.amount),
            "transaction_ref": self.transaction_ref,
            "redirect_url": self.redirect_url,
            "form_url": self.form_url,
            "form_fields": self.form_fields,
            "message": self.message,
        }


@dataclass
class PaymentVerification:
    success: bool
    transaction_ref: str | None = None
    order_ref: str | None = None
    amount: Decimal | None = None
    gateway_reference: str | None = None
    message: str = ""
    raw: dict[str, Any] | None = None


class PaymentGateway(ABC):
    method: PaymentMethod

    def __init__(self, config: Settings | None = None, client: httpx.Client | None = None):
        self.config = config or default_settings
        self.client = client

    @abstractmethod
    def initiate(self, order: Order) -> PaymentInitiation:
        ...

    @abstractmethod
    def verify(self, callback: dict[str, Any]) -> PaymentVerification:
        ...

    def reference_from_callback(self, callback: dict[str, Any]) -> str | None:
        """Attempt identifier carried by a callback, without trusting anything else in it."""
        return None

    def return_url(self, outcome: str, order: Order) -> str:
        base = self.config.base_url.rstrip("/")
        return f"{base}/payment/{self.method.value.lower()}/{outcome}/{order.id}"

    def _post_json(self, url: str, payload: dict, headers: dict[str, str]) -> httpx.Response:
        if self.client is not None:
            return self.client.post(url, json=payload, headers=headers,
                                    timeout=self.config.gateway_timeout_seconds)
        with httpx.Client(timeout=self.config.gateway_timeout_seconds) as client:
            return client.post(url, json=payload, headers=headers)

    def _get(self, url: str, params: dict[str, str]) -> httpx.Response:
        if self.client is not None:
            return self.client.get(url, params=params, timeout=self.config.gateway_timeout_seconds)
        with httpx.Client(timeout=self.config.gateway_timeout_seconds) as client:
            return client.get(url, params=params)


class CashOnDeliveryGateway(PaymentGateway):
    method = PaymentMethod.CASH

    def initiate(self, order: Order) -> PaymentInitiation:
        return PaymentInitiation(
            gateway=self.method,
            amount=order.total,
            message="Pay with cash when your order is delivered",
        )

    def verify(self, callback: dict[str, Any]) -> PaymentVerification:
        # Nothing external ever reports a cash payment
        raise GatewayError("Cash payments are confirmed by staff on delivery")


# ============ eSewa (redirect + shared secret) ============

ESEWA_SIGNED_FIELDS = ("total_amount", "transaction_uuid", "product_code")


def esewa_signature(fields: dict[str, Any], signed_field_names: str, secret: str) -> str:
    """Base64 HMAC-SHA256 over "name=value,name=value" in signed_field_names order."""
    names = [name.strip() for name in signed_field_names.split(",") if name.strip()]
    message = ",".join(f"{name}={fields[name]}" for name in names)
    digest = hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def _format_amount(value: Decimal) -> str:
    return str(round_money(value))


def _parse_amount(value: Any) -> Decimal:
    # eSewa formats thousands with commas ("1,000.0")
    return to_money(str(value).replace(",", ""))


class EsewaGateway(PaymentGateway):
    method = PaymentMethod.ESEWA

    def initiate(self, order: Order) -> PaymentInitiation:
        if not self.config.esewa_enabled:
            raise GatewayError("eSewa is not configured")
        # Fresh uuid per attempt; eSewa rejects a reused transaction_uuid
        transaction_uuid = f"{order.id}-{uuid4().hex}"
        fields = {
            "amount": _format_amount(order.subtotal),
            "tax_amount": _format_amount(order.tax),
            "product_service_charge": "0",
            "product_delivery_charge": _format_amount(order.delivery_fee),
            "total_amount": _format_amount(order.total),
            "transaction_uuid": transaction_uuid,
            "product_code": self.config.esewa_product_code,
            "success_url": self.return_url("success", order),
            "failure_url": self.return_url("failure", order),
            "signed_field_names": ",".join(ESEWA_SIGNED_FIELDS),
        }
        fields["signature"] = esewa_signature(
            fields, fields["signed_field_names"], self.config.esewa_secret_key
        )
        logger.info(f"eSewa payment initiated for order #{order.id} ({transaction_uuid})")
        return PaymentInitiation(
            gateway=self.method,
            amount=order.total,
            transaction_ref=transaction_uuid,
            form_url=self.config.esewa_form_url,
            form_fields=fields,
            signature=fields["signature"],
        )

    def _decode(self, callback: dict[str, Any]) -> dict[str, Any]:
        encoded = callback.get("data")
        if not encoded:
            raise ValueError("Missing data parameter")
        # A "+" in unencoded base64 arrives as a space after query parsing
        decoded = base64.b64decode(str(encoded).replace(" ", "+"), validate=False)
        payload = json.loads(decoded.decode("utf-8"))
        if not isinstance(payload, dict):
            raise ValueError("Callback data is not an object")
        return payload

    def reference_from_callback(self, callback: dict[str, Any]) -> str | None:
        try:
            return self._decode(callback).get("transaction_uuid")
        except (ValueError, binascii.Error, UnicodeDecodeError):
            return None

    def _confirm_with_status_api(self, payload: dict[str, Any]) -> bool:
        params = {
            "product_code": self.config.esewa_product_code,
            "total_amount": str(payload["total_amount"]),
            "transaction_uuid": str(payload["transaction_uuid"]),
        }
        try:
            response = self._get(self.config.esewa_status_url, params)
            response.raise_for_status()
            return response.json().get("status") == "COMPLETE"
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"eSewa status check failed for {params['transaction_uuid']}: {e}")
            return False

    def verify(self, callback: dict[str, Any]) -> PaymentVerification:
        if not self.config.esewa_enabled:
            return PaymentVerification(success=False, message="eSewa is not configured")
        try:
            payload = self._decode(callback)
        except (ValueError, binascii.Error, UnicodeDecodeError) as e:
            return PaymentVerification(success=False, message=f"Malformed eSewa response: {e}")

        transaction_uuid = payload.get("transaction_uuid")
        result = PaymentVerification(
            success=False,
            transaction_ref=transaction_uuid,
            order_ref=str(transaction_uuid).split("-", 1)[0] if transaction_uuid else None,
            gateway_reference=payload.get("transaction_code"),
            raw=payload,
        )

        signed_field_names = payload.get("signed_field_names")
        received_signature = payload.get("signature")
        if not signed_field_names or not received_signature:
            result.message = "Unsigned eSewa response"
            return result
        if not isinstance(signed_field_names, str):
            result.message = "Malformed signed_field_names in eSewa response"
            return result
        # The amount and reference we act on must be covered by the signature
        signed = {name.strip() for name in signed_field_names.split(",")}
        unsigned = [name for name in ESEWA_SIGNED_FIELDS if name not in signed]
        if unsigned:
            result.message = f"eSewa response does not sign {', '.join(unsigned)}"
            return result

        try:
            expected = esewa_signature(payload, signed_field_names, self.config.esewa_secret_key)
        except KeyError as e:
            result.message = f"Signed field missing from eSewa response: {e}"
            return result
        if not hmac.compare_digest(expected.encode("utf-8"), str(received_signature).encode("utf-8")):
            result.message = "eSewa signature mismatch"
            return result

        if payload.get("product_code") != self.config.esewa_product_code:
            result.message = "eSewa product code mismatch"
            return result
        if payload.get("status") != "COMPLETE":
            result.message = f"eSewa status {payload.get('status')}"
            return result

        try:
            result.amount = _parse_amount(payload.get("total_amount"))
        except ValidationError:
            result.message = "Invalid amount in eSewa response"
            return result

        if self.config.esewa_verify_with_status_api and not self._confirm_with_status_api(payload):
            result.message = "eSewa status check did not confirm the payment"
            return result

        result.success = True
        result.message = "Payment verified"
        return result


# ============ Khalti (server-initiated + lookup) ============

class KhaltiGateway(PaymentGateway):
    method = PaymentMethod.KHALTI

    def _headers(self) -> dict[str, str]:
        if not self.config.khalti_secret_key:
            raise GatewayError("Khalti is not configured")
        return {
            "Authorization": f"Key {self.config.khalti_secret_key}",
            "Content-Type": "application/json",
        }

    def _url(self, path: str) -> str:
        return f"{self.config.khalti_base_url.rstrip('/')}/{path.lstrip('/')}"

    def initiate(self, order: Order) -> PaymentInitiation:
        payload = {
            "return_url": self.return_url("success", order),
            "website_url": self.config.base_url,
            "amount": to_minor_units(order.total),
            "purchase_order_id": str(order.id),
            "purchase_order_name": f"Order #{order.id}",
            "customer_info": {
                "name": f"{order.buyer_first_name} {order.buyer_last_name}".strip(),
                "email": order.buyer_email,
                "phone": order.buyer_phone,
            },
        }
        try:
            response = self._post_json(self._url("epayment/initiate/"), payload, self._headers())
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            logger.error(f"Khalti initiate timed out for order #{order.id}: {e}")
            raise GatewayError()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Khalti initiate failed for order #{order.id}: {e}")
            raise GatewayError()

        pidx = data.get("pidx")
        payment_url = data.get("payment_url")
        if not pidx or not payment_url:
            logger.error(f"Khalti initiate returned no pidx for order #{order.id}: {data}")
            raise GatewayError()

        logger.info(f"Khalti payment initiated for order #{order.id} (pidx={pidx})")
        return PaymentInitiation(
            gateway=self.method,
            amount=order.total,
            transaction_ref=pidx,
            redirect_url=payment_url,
        )

    def reference_from_callback(self, callback: dict[str, Any]) -> str | None:
        return callback.get("pidx") or None

    def lookup(self, pidx: str) -> dict[str, Any]:
        response = self._post_json(self._url("epayment/lookup/"), {"pidx": pidx}, self._headers())
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            raise ValueError("Lookup response is not an object")
        return data

    def verify(self, callback: dict[str, Any]) -> PaymentVerification:
        pidx = self.reference_from_callback(callback)
        if not pidx:
            return PaymentVerification(success=False, message="Missing pidx")

        try:
            data = self.lookup(pidx)
        except GatewayError as e:
            return PaymentVerification(success=False, transaction_ref=pidx, message=e.detail)
        except httpx.TimeoutException:
            logger.warning(f"Khalti lookup timed out for pidx={pidx}")
            return PaymentVerification(success=False, transaction_ref=pidx, message="Lookup timed out")
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Khalti lookup failed for pidx={pidx}: {e}")
            return PaymentVerification(success=False, transaction_ref=pidx, message="Lookup failed")

        result = PaymentVerification(
            success=False,
            transaction_ref=data.get("pidx", pidx),
            gateway_reference=data.get("transaction_id"),
            raw=data,
        )
        # HTTP 200 alone proves nothing; only an explicit Completed status counts
        if data.get("status") != "Completed" or data.get("refunded"):
            result.message = f"Khalti status {data.get('status')}"
            return result

        try:
            result.amount = round_money(to_money(data.get("total_amount")) / 100)
        except ValidationError:
            result.message = "Invalid amount in Khalti response"
            return result

        result.success = True
        result.message = "Payment verified"
        return result


GATEWAYS: dict[PaymentMethod, type[PaymentGateway]] = {
    PaymentMethod.CASH: CashOnDeliveryGateway,
    PaymentMethod.ESEWA: EsewaGateway,
    PaymentMethod.KHALTI: KhaltiGateway,
}


def get_gateway(
    method: PaymentMethod,
    config: Settings | None = None,
    client: httpx.Client | None = None,
) -> PaymentGateway:
    try:
        gateway_cls = GATEWAYS[method]
    except KeyError:
        raise ValidationError(f"Unsupported payment method: {method}")
    return gateway_cls(config=config, client=client)
