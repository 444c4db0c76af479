from decimal import Decimal

import pytest

from gateway.paypal import (
    PayPalConfig,
    PayPalGateway,
    WebhookSignature,
    format_amount,
    generate_idempotency_key,
    is_valid_amount,
    is_valid_currency,
)
from schemas.payment import (
    PaymentCompletedEvent,
    PaymentDeniedEvent,
    PaymentRefundedEvent,
    UnknownEvent,
)
from services.errors import GatewayAuthError, GatewayError

from conftest import completed_event, denied_event, refunded_event


SIGNED_HEADERS = {
    "paypal-auth-algo": "SHA256withRSA",
    "paypal-cert-url": "https://api.sandbox.paypal.com/v1/notifications/certs/CERT-1",
    "paypal-transmission-id": "TX-1",
    "paypal-transmission-sig": "c2lnbmF0dXJl",
    "paypal-transmission-time": "2025-06-01T10:00:00Z",
}


# =============================================================================
# HELPERS
# =============================================================================

def test_amount_and_currency_checks():
    assert is_valid_amount("252")
    assert is_valid_amount(Decimal("10000"))
    assert not is_valid_amount(0)
    assert not is_valid_amount("10000.01")
    assert not is_valid_amount("abc")
    assert is_valid_currency("usd")
    assert not is_valid_currency("XYZ")
    assert format_amount(Decimal("252")) == "252.00"
    assert format_amount(Decimal("10.005")) == "10.01"


def test_idempotency_keys_are_unique_hex():
    first, second = generate_idempotency_key(), generate_idempotency_key()
    assert first != second
    assert len(first) == 32
    int(first, 16)


def test_config_urls_follow_mode():
    assert PayPalConfig(mode="production").base_url == "https://api-m.paypal.com"
    assert PayPalConfig().base_url == "https://api-m.sandbox.paypal.com"
    assert PayPalConfig(frontend_url="https://visa.example.com").return_url == "https://visa.example.com/payment/success"


# =============================================================================
# TOKENS
# =============================================================================

async def test_access_token_is_cached(gateway, fake_paypal):
    order = await gateway.create_order(Decimal("84"), "USD", "Visa", idempotency_key="k1")
    await gateway.get_order(order.order_id)
    await gateway.get_order(order.order_id)
    assert fake_paypal.token_requests == 1


async def test_access_token_refreshed_inside_safety_margin(fake_paypal, paypal_config):
    now = [1_000_000.0]
    gw = PayPalGateway(paypal_config, transport=fake_paypal.transport, clock=lambda: now[0])
    try:
        order = await gw.create_order(Decimal("84"), "USD", "Visa")
        # expires_in 32400 minus the 300 second margin
        now[0] += 32_099
        await gw.get_order(order.order_id)
        assert fake_paypal.token_requests == 1

        now[0] += 2
        await gw.get_order(order.order_id)
        assert fake_paypal.token_requests == 2
    finally:
        await gw.close()


async def test_missing_credentials_raise_auth_error(fake_paypal):
    gw = PayPalGateway(PayPalConfig(), transport=fake_paypal.transport)
    with pytest.raises(GatewayAuthError):
        await gw.create_order(Decimal("84"))
    assert fake_paypal.token_requests == 0


# =============================================================================
# ORDERS
# =============================================================================

async def test_create_order_sends_request_id(gateway, fake_paypal):
    order = await gateway.create_order(Decimal("252"), "USD", "Visa Application Payment", idempotency_key="abc123")

    assert order.status == "CREATED"
    assert order.amount == Decimal("252.00")
    assert order.approval_url.endswith(f"token={order.order_id}")
    assert fake_paypal.request_ids == ["abc123"]
    assert fake_paypal.orders[order.order_id]["value"] == "252.00"


async def test_capture_returns_capture_details(gateway, fake_paypal):
    order = await gateway.create_order(Decimal("84"))
    fake_paypal.approve(order.order_id)

    captured = await gateway.capture_order(order.order_id)

    assert captured.status == "COMPLETED"
    assert captured.capture.capture_id.startswith("CAPTURE-")
    assert captured.capture.fee == Decimal("3.50")
    assert captured.payer.email == "buyer@example.com"
    assert captured.payment_method == "paypal"


async def test_gateway_error_carries_issue(gateway):
    order = await gateway.create_order(Decimal("84"))
    with pytest.raises(GatewayError) as exc:
        await gateway.capture_order(order.order_id)
    assert exc.value.http_status == 422
    assert exc.value.issue == "ORDER_NOT_APPROVED"


async def test_refund_capture(gateway, fake_paypal):
    order = await gateway.create_order(Decimal("84"))
    capture_id = fake_paypal.complete_externally(order.order_id)

    result = await gateway.refund_capture(capture_id, Decimal("40"), "USD", "Changed plans")

    assert result.refund_id.startswith("REFUND-")
    assert result.amount == Decimal("40.00")
    assert fake_paypal.refunds[0]["capture_id"] == capture_id


# =============================================================================
# WEBHOOKS
# =============================================================================

def test_signature_headers_accept_alternate_name():
    headers = {"paypal-transmission-signature": "abc", "paypal-transmission-id": "TX"}
    signature = WebhookSignature.from_headers(headers)
    assert signature.transmission_sig == "abc"
    assert signature.transmission_id == "TX"


async def test_verification_skipped_without_webhook_id(gateway, fake_paypal):
    assert await gateway.verify_webhook_signature({"id": "WH-1"}, WebhookSignature()) is True
    assert fake_paypal.token_requests == 0


@pytest.mark.parametrize(
    "status, error, expected",
    [("SUCCESS", False, True), ("FAILURE", False, False), ("SUCCESS", True, False)],
)
async def test_verification_against_paypal(fake_paypal, status, error, expected):
    fake_paypal.verification_status = status
    fake_paypal.verification_error = error
    config = PayPalConfig(client_id="id", client_secret="secret", webhook_id="WH-CONFIG")
    gw = PayPalGateway(config, transport=fake_paypal.transport)
    try:
        signature = WebhookSignature.from_headers(SIGNED_HEADERS)
        assert await gw.verify_webhook_signature({"id": "WH-1"}, signature) is expected
    finally:
        await gw.close()


def test_parse_completed_event():
    event = PayPalGateway.parse_webhook_event(completed_event("WH-1", "ORDER-9", "CAPTURE-9", "252.00"))
    assert isinstance(event, PaymentCompletedEvent)
    assert event.order_id == "ORDER-9"
    assert event.transaction_id == "CAPTURE-9"
    assert event.amount == Decimal("252.00")
    assert event.currency == "USD"


def test_parse_denied_event_reason():
    event = PayPalGateway.parse_webhook_event(denied_event("WH-2", "ORDER-9", "Insufficient funds"))
    assert isinstance(event, PaymentDeniedEvent)
    assert event.reason == "Insufficient funds"


def test_parse_refunded_event_points_to_capture():
    event = PayPalGateway.parse_webhook_event(refunded_event("WH-3", "CAPTURE-9", refund_id="REFUND-9"))
    assert isinstance(event, PaymentRefundedEvent)
    assert event.transaction_id == "CAPTURE-9"
    assert event.refund_id == "REFUND-9"
    assert event.order_id is None


def test_parse_unknown_event():
    event = PayPalGateway.parse_webhook_event({"id": "WH-4", "event_type": "CHECKOUT.ORDER.APPROVED", "resource": {}})
    assert isinstance(event, UnknownEvent)
    assert event.kind == "unknown"
