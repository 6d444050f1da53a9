"""
Payment gateway client.

Creates hosted checkout sessions on a Stripe-compatible REST API and
verifies/parses the webhooks it sends back.
"""

import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Any, Optional, Protocol

import httpx

from fiatmint.app.core.exceptions import ExternalServiceError, ValidationError, WebhookSignatureError

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"


@dataclass(frozen=True)
class PaymentConfirmed:
    """A confirmed payment for an order, delivered at least once."""
    order_id: str
    amount_paid: Decimal
    currency: str
    provider_ref: str
    provider: str = "stripe"


class PaymentGateway(Protocol):
    async def create_checkout(
        self, order_id: str, amount: Decimal, currency: str, description: str = "", metadata: Optional[Dict[str, str]] = None
    ) -> str: ...


class HttpPaymentGateway:
    """Hosted checkout over httpx with form-encoded requests."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        success_url: str,
        cancel_url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.success_url = success_url
        self.cancel_url = cancel_url
        self.timeout = timeout
        self.transport = transport

    async def create_checkout(
        self,
        order_id: str,
        amount: Decimal,
        currency: str,
        description: str = "",
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        """
        Create a checkout session for an order.

        Returns:
            URL of the hosted checkout page

        Raises:
            ExternalServiceError: gateway unreachable or refused the request
        """
        cents = int((Decimal(amount) * 100).to_integral_value())
        form = {
            "mode": "payment",
            "payment_method_types[0]": "card",
            "line_items[0][quantity]": "1",
            "line_items[0][price_data][currency]": currency.lower(),
            "line_items[0][price_data][unit_amount]": str(cents),
            "line_items[0][price_data][product_data][name]": description or f"Order {order_id}",
            "success_url": f"{self.success_url}?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": self.cancel_url,
            "client_reference_id": order_id,
            "metadata[order_id]": order_id,
        }
        for key, value in (metadata or {}).items():
            form[f"metadata[{key}]"] = str(value)

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self.transport
            ) as client:
                response = await client.post(
                    "/v1/checkout/sessions",
                    data=form,
                    headers={"Authorization": f"Bearer {self.api_key}", "Idempotency-Key": f"checkout:{order_id}"},
                )
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("Checkout session creation failed", extra={"order_id": order_id, "error": str(exc)})
            raise ExternalServiceError("payment_gateway", "Could not create checkout session") from exc

        session = response.json()
        logger.info("Checkout session created", extra={"order_id": order_id, "session_id": session.get("id")})
        return session["url"]


def verify_webhook_signature(
    payload: bytes,
    signature_header: Optional[str],
    secret: str,
    tolerance_seconds: int = 300,
    now: Optional[float] = None,
) -> None:
    """
    Verify a ``t=<unix>,v1=<hex hmac>`` webhook signature header.

    The signed message is ``"<t>." + raw body`` under HMAC-SHA256.

    Raises:
        WebhookSignatureError: missing/malformed header, stale timestamp or no matching signature
    """
    if not signature_header or not secret:
        raise WebhookSignatureError("Missing webhook signature")

    timestamp = None
    signatures = []
    for part in signature_header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)

    if timestamp is None or not signatures:
        raise WebhookSignatureError("Malformed webhook signature header")

    try:
        signed_at = int(timestamp)
    except ValueError:
        raise WebhookSignatureError("Malformed webhook signature timestamp")

    current = time.time() if now is None else now
    if abs(current - signed_at) > tolerance_seconds:
        raise WebhookSignatureError("Webhook signature timestamp outside tolerance")

    expected = hmac.new(
        secret.encode(), f"{timestamp}.".encode() + payload, hashlib.sha256
    ).hexdigest()
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise WebhookSignatureError()


def sign_webhook_payload(payload: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    """Build a signature header for a payload (gateway simulators and tests)."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(secret.encode(), f"{timestamp}.".encode() + payload, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def parse_event(payload: bytes) -> Dict[str, Any]:
    try:
        event = json.loads(payload)
    except (ValueError, UnicodeDecodeError) as exc:
        raise ValidationError("Webhook body is not valid JSON") from exc
    if not isinstance(event, dict) or "type" not in event:
        raise ValidationError("Webhook body is not an event")
    return event


def parse_checkout_completed(event: Dict[str, Any]) -> PaymentConfirmed:
    """
    Turn a ``checkout.session.completed`` event into a PaymentConfirmed.

    ``amount_total`` is in minor units (cents).
    """
    session = (event.get("data") or {}).get("object") or {}
    metadata = session.get("metadata") or {}
    order_id = metadata.get("order_id") or session.get("client_reference_id")
    amount_total = session.get("amount_total")

    if not order_id or amount_total is None:
        raise ValidationError("Checkout session lacks order_id or amount_total", details={"event_id": event.get("id")})

    return PaymentConfirmed(
        order_id=order_id,
        amount_paid=Decimal(int(amount_total)) / Decimal(100),
        currency=str(session.get("currency", "")).upper(),
        provider_ref=session.get("id") or event.get("id", ""),
    )
