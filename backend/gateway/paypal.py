# gateway/paypal.py
# ============================================================================
# VISA COLLECT — PAYPAL GATEWAY ADAPTER
# ============================================================================
# All PayPal REST communication:
# - client-credentials token exchange, cached with a safety margin
# - order create / get / capture, capture refund
# - webhook signature verification and event normalisation
#
# The adapter owns no persisted state. Its only mutable state is the cached
# access token, refreshed through _get_access_token(). Concurrent refreshes
# are harmless: acquiring a redundant token is always safe.
# ============================================================================

import os
import secrets
import time
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Dict, Optional

import httpx
import structlog

from schemas.payment import (
    MAX_AMOUNT,
    VALID_CURRENCIES,
    GatewayEvent,
    GatewayOrder,
    PaymentCompletedEvent,
    PaymentDeniedEvent,
    PaymentRefundedEvent,
    RefundResult,
    UnknownEvent,
    to_decimal,
)
from services.errors import GatewayAuthError, GatewayError

logger = structlog.get_logger().bind(component="paypal_gateway")


SANDBOX_URL = "https://api-m.sandbox.paypal.com"
PRODUCTION_URL = "https://api-m.paypal.com"

EVENT_CAPTURE_COMPLETED = "PAYMENT.CAPTURE.COMPLETED"
EVENT_CAPTURE_DENIED = "PAYMENT.CAPTURE.DENIED"
EVENT_CAPTURE_REFUNDED = "PAYMENT.CAPTURE.REFUNDED"

ISSUE_ORDER_ALREADY_CAPTURED = "ORDER_ALREADY_CAPTURED"

# Webhook headers PayPal signs each delivery with.
SIGNATURE_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class PayPalConfig:
    """PayPal credentials and checkout settings."""
    client_id: str = ""
    client_secret: str = ""
    webhook_id: str = ""
    mode: str = "sandbox"
    frontend_url: str = ""
    brand_name: str = "Visa Collect"
    timeout_seconds: float = 30.0
    token_margin_seconds: int = 300

    @classmethod
    def from_env(cls) -> "PayPalConfig":
        return cls(
            client_id=os.getenv("PAYPAL_CLIENT_ID", ""),
            client_secret=os.getenv("PAYPAL_CLIENT_SECRET", ""),
            webhook_id=os.getenv("PAYPAL_WEBHOOK_ID", ""),
            mode=os.getenv("PAYPAL_MODE", "sandbox"),
            frontend_url=os.getenv("FRONTEND_URL", ""),
            brand_name=os.getenv("PAYPAL_BRAND_NAME", "Visa Collect"),
            timeout_seconds=float(os.getenv("PAYPAL_TIMEOUT", "30")),
        )

    @property
    def base_url(self) -> str:
        return PRODUCTION_URL if self.mode == "production" else SANDBOX_URL

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    @property
    def return_url(self) -> str:
        return f"{self.frontend_url}/payment/success" if self.frontend_url else "http://localhost:3000/payment/success"

    @property
    def cancel_url(self) -> str:
        return f"{self.frontend_url}/payment/cancel" if self.frontend_url else "http://localhost:3000/payment/cancel"


@dataclass
class AccessToken:
    """Bearer token with an absolute expiry (epoch seconds)."""
    value: str
    expires_at: float

    def is_valid(self, now: float) -> bool:
        return bool(self.value) and now < self.expires_at


@dataclass
class WebhookSignature:
    auth_algo: Optional[str] = None
    cert_url: Optional[str] = None
    transmission_id: Optional[str] = None
    transmission_sig: Optional[str] = None
    transmission_time: Optional[str] = None

    @classmethod
    def from_headers(cls, headers) -> "WebhookSignature":
        values = {name: headers.get(header) for name, header in SIGNATURE_HEADERS.items()}
        values["transmission_sig"] = values["transmission_sig"] or headers.get("paypal-transmission-signature")
        return cls(**values)


# =============================================================================
# HELPERS
# =============================================================================

def generate_idempotency_key() -> str:
    """Fresh 32-hex-char key per creation attempt."""
    return secrets.token_hex(16)


def is_valid_currency(currency: str) -> bool:
    return bool(currency) and currency.upper() in VALID_CURRENCIES


def is_valid_amount(amount: Any) -> bool:
    value = to_decimal(amount)
    return value is not None and Decimal("0") < value <= MAX_AMOUNT


def format_amount(amount: Decimal) -> str:
    return str(Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def _extract_issue(body: Dict[str, Any]) -> Optional[str]:
    details = body.get("details") or []
    if details and isinstance(details, list) and isinstance(details[0], dict) and details[0].get("issue"):
        return details[0]["issue"]
    return body.get("name") or body.get("error")


# =============================================================================
# GATEWAY
# =============================================================================

class PayPalGateway:
    """
    Thin typed wrapper over the PayPal REST API.

    A transport may be injected so tests can run the adapter against an
    in-process fake server.
    """

    def __init__(
        self,
        config: Optional[PayPalConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or PayPalConfig.from_env()
        self._transport = transport
        self._clock = clock
        self._client: Optional[httpx.AsyncClient] = None
        self._token: Optional[AccessToken] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=self.config.timeout_seconds,
                transport=self._transport,
            )
        return self._client

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def verifies_webhooks(self) -> bool:
        return bool(self.config.webhook_id)

    # -------------------------------------------------------------------------
    # Auth
    # -------------------------------------------------------------------------

    async def _get_access_token(self) -> str:
        if not self.config.is_configured:
            raise GatewayAuthError(
                "PayPal credentials not configured. Set PAYPAL_CLIENT_ID and PAYPAL_CLIENT_SECRET."
            )

        now = self._clock()
        if self._token and self._token.is_valid(now):
            return self._token.value

        try:
            response = await self.client.post(
                "/v1/oauth2/token",
                data={"grant_type": "client_credentials"},
                auth=(self.config.client_id, self.config.client_secret),
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            logger.error("paypal_token_request_failed", error=str(e))
            raise GatewayAuthError("Failed to authenticate with PayPal") from e

        if response.status_code >= 400:
            logger.error("paypal_auth_rejected", status=response.status_code)
            raise GatewayAuthError(
                f"PayPal auth failed: {response.status_code}",
                http_status=response.status_code,
            )

        data = response.json()
        expires_in = int(data.get("expires_in", 0))
        self._token = AccessToken(
            value=data.get("access_token", ""),
            expires_at=now + expires_in - self.config.token_margin_seconds,
        )
        logger.info("paypal_token_refreshed", expires_in=expires_in)
        return self._token.value

    # -------------------------------------------------------------------------
    # Request plumbing
    # -------------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        token = await self._get_access_token()
        request_headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        request_headers.update(headers or {})

        try:
            response = await self.client.request(method, path, json=json, headers=request_headers)
        except httpx.HTTPError as e:
            logger.error("paypal_request_failed", method=method, path=path, error=str(e))
            raise GatewayError(f"PayPal request failed: {e}") from e

        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = {"raw": response.text}
            issue = _extract_issue(body) if isinstance(body, dict) else None
            logger.error(
                "paypal_api_error",
                method=method,
                path=path,
                status=response.status_code,
                issue=issue,
            )
            raise GatewayError(
                f"PayPal API error: {response.status_code} {issue or ''}".strip(),
                http_status=response.status_code,
                issue=issue,
                payload=body if isinstance(body, dict) else None,
            )

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise GatewayError("PayPal returned a non-JSON response", http_status=response.status_code) from e

    # -------------------------------------------------------------------------
    # Orders
    # -------------------------------------------------------------------------

    async def create_order(
        self,
        amount: Decimal,
        currency: str = "USD",
        description: str = "Visa Application Payment",
        idempotency_key: Optional[str] = None,
    ) -> GatewayOrder:
        body = {
            "intent": "CAPTURE",
            "purchase_units": [{
                "amount": {"currency_code": currency, "value": format_amount(amount)},
                "description": description,
            }],
            "application_context": {
                "return_url": self.config.return_url,
                "cancel_url": self.config.cancel_url,
                "user_action": "PAY_NOW",
                "brand_name": self.config.brand_name,
            },
        }
        headers = {"PayPal-Request-Id": idempotency_key} if idempotency_key else None
        payload = await self._request("POST", "/v2/checkout/orders", json=body, headers=headers)
        order = GatewayOrder.from_payload(payload)
        if not order.order_id:
            raise GatewayError("PayPal order response is missing an id", payload=payload)
        logger.info("paypal_order_created", order_id=order.order_id, status=order.status)
        return order

    async def get_order(self, order_id: str) -> GatewayOrder:
        payload = await self._request("GET", f"/v2/checkout/orders/{order_id}")
        return GatewayOrder.from_payload(payload)

    async def capture_order(self, order_id: str) -> GatewayOrder:
        payload = await self._request("POST", f"/v2/checkout/orders/{order_id}/capture")
        order = GatewayOrder.from_payload(payload)
        if order.capture is None:
            raise GatewayError("PayPal capture response has no capture", payload=payload)
        logger.info(
            "paypal_order_captured",
            order_id=order_id,
            capture_id=order.capture.capture_id,
            status=order.status,
        )
        return order

    async def refund_capture(
        self,
        capture_id: str,
        amount: Decimal,
        currency: str = "USD",
        reason: str = "Refund requested by customer",
    ) -> RefundResult:
        body = {
            "amount": {"value": format_amount(amount), "currency_code": currency},
            "note_to_payer": reason,
        }
        payload = await self._request("POST", f"/v2/payments/captures/{capture_id}/refund", json=body)
        refund_id = payload.get("id")
        if not refund_id:
            raise GatewayError("PayPal refund response is missing an id", payload=payload)
        value = (payload.get("amount") or {}).get("value")
        return RefundResult(
            refund_id=refund_id,
            status=payload.get("status"),
            amount=to_decimal(value) or amount,
            raw=payload,
        )

    # -------------------------------------------------------------------------
    # Webhooks
    # -------------------------------------------------------------------------

    async def verify_webhook_signature(self, event: Dict[str, Any], signature: WebhookSignature) -> bool:
        """
        Ask PayPal to verify a webhook delivery.

        Without a configured webhook id verification is skipped and the
        delivery is accepted; a warning is logged every time.
        """
        if not self.verifies_webhooks:
            logger.warning("webhook_verification_skipped", reason="PAYPAL_WEBHOOK_ID not configured")
            return True

        body = {
            "auth_algo": signature.auth_algo,
            "cert_url": signature.cert_url,
            "transmission_id": signature.transmission_id,
            "transmission_sig": signature.transmission_sig,
            "transmission_time": signature.transmission_time,
            "webhook_id": self.config.webhook_id,
            "webhook_event": event,
        }
        try:
            result = await self._request("POST", "/v1/notifications/verify-webhook-signature", json=body)
        except GatewayError as e:
            logger.error("webhook_verification_error", error=e.message)
            return False
        return result.get("verification_status") == "SUCCESS"

    @staticmethod
    def parse_webhook_event(event: Dict[str, Any]) -> GatewayEvent:
        event_type = event.get("event_type", "")
        event_id = event.get("id", "")
        resource = event.get("resource") or {}
        amount = resource.get("amount") or {}
        order_id = ((resource.get("supplementary_data") or {}).get("related_ids") or {}).get("order_id")

        common = {
            "event_id": event_id,
            "event_type": event_type,
            "order_id": order_id,
            "transaction_id": resource.get("id"),
            "amount": to_decimal(amount.get("value")),
            "currency": amount.get("currency_code"),
            "raw": event,
        }

        if event_type == EVENT_CAPTURE_COMPLETED:
            return PaymentCompletedEvent(**common)

        if event_type == EVENT_CAPTURE_DENIED:
            reason = (resource.get("status_details") or {}).get("reason") or "Payment denied by gateway"
            return PaymentDeniedEvent(reason=reason, **common)

        if event_type == EVENT_CAPTURE_REFUNDED:
            # Refund resources point back to their capture through the "up" link.
            capture_href = next(
                (l.get("href", "") for l in resource.get("links") or [] if l.get("rel") == "up"),
                "",
            )
            capture_id = capture_href.rstrip("/").rsplit("/", 1)[-1] if "/captures/" in capture_href else None
            common["transaction_id"] = capture_id or resource.get("id")
            return PaymentRefundedEvent(refund_id=resource.get("id"), **common)

        return UnknownEvent(**common)
