"""
Shared fixtures: an in-process fake of the PayPal REST API, a recording
notifier, and a fully wired service container on in-memory storage.
"""

import json
from datetime import date
from typing import Any, Dict, List, Optional, Tuple

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from api.container import ServiceContainer
from gateway.paypal import PayPalConfig, PayPalGateway
from schemas.application import (
    AdditionalApplicant,
    ApplicantDetails,
    DocumentSet,
    SupportingDocument,
)
from services.notifications import Notifier

TODAY = date(2025, 6, 1)


# =============================================================================
# FAKE PAYPAL
# =============================================================================

class FakePayPal:
    """Minimal stateful PayPal REST fake, served through httpx.MockTransport."""

    def __init__(self):
        self.orders: Dict[str, Dict[str, Any]] = {}
        self.refunds: List[Dict[str, Any]] = []
        self.token_requests = 0
        self.capture_calls = 0
        self.request_ids: List[str] = []
        self.verification_status = "SUCCESS"
        self.verification_error = False
        self.capture_error: Optional[Tuple[int, str]] = None
        self.refund_error: Optional[Tuple[int, str]] = None
        self.race_capture = False
        self._counter = 0

    # -- test controls -------------------------------------------------------

    def approve(self, order_id: str):
        order = self.orders[order_id]
        order["status"] = "APPROVED"
        order["payer"] = {
            "payer_id": "PAYER123",
            "email_address": "buyer@example.com",
            "name": {"given_name": "Ayse", "surname": "Yilmaz"},
        }

    def complete_externally(self, order_id: str) -> str:
        """Capture the order on PayPal's side without going through the API."""
        if self.orders[order_id]["status"] != "APPROVED":
            self.approve(order_id)
        return self._capture(order_id)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    # -- internals -----------------------------------------------------------

    def _next(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}-{self._counter}"

    def _capture(self, order_id: str) -> str:
        order = self.orders[order_id]
        capture_id = self._next("CAPTURE")
        order["status"] = "COMPLETED"
        order["capture"] = {
            "id": capture_id,
            "status": "COMPLETED",
            "amount": {"currency_code": order["currency"], "value": order["value"]},
            "seller_receivable_breakdown": {
                "paypal_fee": {"currency_code": order["currency"], "value": "3.50"},
            },
        }
        return capture_id

    def order_payload(self, order_id: str) -> Dict[str, Any]:
        order = self.orders[order_id]
        unit: Dict[str, Any] = {
            "amount": {"currency_code": order["currency"], "value": order["value"]},
            "description": order["description"],
        }
        if order.get("capture"):
            unit["payments"] = {"captures": [order["capture"]]}
        payload: Dict[str, Any] = {
            "id": order_id,
            "status": order["status"],
            "purchase_units": [unit],
            "links": [
                {"rel": "self", "href": f"https://api-m.sandbox.paypal.com/v2/checkout/orders/{order_id}"},
            ],
        }
        if order["status"] in ("CREATED", "APPROVED"):
            payload["links"].append({
                "rel": "approve",
                "href": f"https://www.sandbox.paypal.com/checkoutnow?token={order_id}",
            })
        if order.get("payer"):
            payload["payer"] = order["payer"]
            payload["payment_source"] = {"paypal": {"email_address": order["payer"]["email_address"]}}
        return payload

    @staticmethod
    def _error(status: int, issue: str) -> httpx.Response:
        return httpx.Response(status, json={
            "name": "UNPROCESSABLE_ENTITY" if status == 422 else "INTERNAL_SERVICE_ERROR",
            "details": [{"issue": issue, "description": issue.replace("_", " ").lower()}],
        })

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        method = request.method

        if method == "POST" and path == "/v1/oauth2/token":
            self.token_requests += 1
            return httpx.Response(200, json={
                "access_token": f"token-{self.token_requests}",
                "token_type": "Bearer",
                "expires_in": 32400,
            })

        if not request.headers.get("authorization", "").startswith("Bearer "):
            return httpx.Response(401, json={"name": "AUTHENTICATION_FAILURE"})

        if method == "POST" and path == "/v2/checkout/orders":
            body = json.loads(request.content)
            self.request_ids.append(request.headers.get("paypal-request-id", ""))
            unit = body["purchase_units"][0]
            order_id = self._next("ORDER")
            self.orders[order_id] = {
                "status": "CREATED",
                "value": unit["amount"]["value"],
                "currency": unit["amount"]["currency_code"],
                "description": unit.get("description"),
            }
            return httpx.Response(201, json=self.order_payload(order_id))

        if path.startswith("/v2/checkout/orders/"):
            parts = path.split("/")
            order_id = parts[4]
            if order_id not in self.orders:
                return self._error(404, "INVALID_RESOURCE_ID")

            if method == "GET" and len(parts) == 5:
                return httpx.Response(200, json=self.order_payload(order_id))

            if method == "POST" and parts[-1] == "capture":
                self.capture_calls += 1
                order = self.orders[order_id]
                if self.capture_error:
                    return self._error(*self.capture_error)
                if self.race_capture and order["status"] == "APPROVED":
                    self._capture(order_id)
                    return self._error(422, "ORDER_ALREADY_CAPTURED")
                if order["status"] == "COMPLETED":
                    return self._error(422, "ORDER_ALREADY_CAPTURED")
                if order["status"] != "APPROVED":
                    return self._error(422, "ORDER_NOT_APPROVED")
                self._capture(order_id)
                return httpx.Response(201, json=self.order_payload(order_id))

        if method == "POST" and path.startswith("/v2/payments/captures/") and path.endswith("/refund"):
            if self.refund_error:
                return self._error(*self.refund_error)
            body = json.loads(request.content)
            refund = {
                "id": self._next("REFUND"),
                "status": "COMPLETED",
                "amount": body["amount"],
                "capture_id": path.split("/")[4],
            }
            self.refunds.append(refund)
            return httpx.Response(201, json=refund)

        if method == "POST" and path == "/v1/notifications/verify-webhook-signature":
            if self.verification_error:
                return self._error(500, "INTERNAL_SERVICE_ERROR")
            return httpx.Response(200, json={"verification_status": self.verification_status})

        return httpx.Response(404, json={"name": "NOT_FOUND"})


class RecordingNotifier(Notifier):
    def __init__(self):
        self.events: List[Tuple[str, Dict[str, Any]]] = []

    async def publish(self, event_type: str, payload: Dict[str, Any]) -> bool:
        self.events.append((event_type, payload))
        return True

    def of_type(self, event_type: str) -> List[Dict[str, Any]]:
        return [payload for kind, payload in self.events if kind == event_type]


# =============================================================================
# DOMAIN BUILDERS
# =============================================================================

def applicant_details(**overrides) -> ApplicantDetails:
    values = dict(
        given_names="Ayse",
        surname="Yilmaz",
        date_of_birth=date(1990, 5, 20),
        place_of_birth="Mumbai",
        mother_name="Fatma",
        father_name="Mehmet",
        passport_number="p1234567",
        passport_issue_date=date(2020, 1, 15),
        passport_expiry_date=date(2030, 1, 15),
        arrival_date=date(2025, 7, 1),
    )
    values.update(overrides)
    return ApplicantDetails(**values)


def document_set() -> DocumentSet:
    return DocumentSet(
        passport_url="https://media.example.com/passport.jpg",
        supporting_documents=[
            SupportingDocument(
                document_type="visa",
                issuing_country="United States",
                document_number="V1234567",
                is_unlimited=True,
            ),
        ],
    )


def additional_applicant(**overrides) -> AdditionalApplicant:
    details = applicant_details(**overrides)
    return AdditionalApplicant(**details.model_dump(), documents=document_set())


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def fake_paypal() -> FakePayPal:
    return FakePayPal()


@pytest.fixture
def paypal_config() -> PayPalConfig:
    return PayPalConfig(client_id="test-client", client_secret="test-secret")


@pytest_asyncio.fixture
async def gateway(fake_paypal, paypal_config):
    gw = PayPalGateway(paypal_config, transport=fake_paypal.transport)
    yield gw
    await gw.close()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest_asyncio.fixture
async def container(gateway, notifier):
    services = ServiceContainer.build(gateway=gateway, notifier=notifier, today=lambda: TODAY)
    yield services
    await services.notifications.drain()


@pytest.fixture
def workflow(container):
    return container.workflow


@pytest.fixture
def orchestrator(container):
    return container.orchestrator


@pytest.fixture
def webhooks(container):
    return container.webhooks


@pytest.fixture
def make_application(workflow):
    """Factory driving an application up to the requested status."""

    async def _make(status: str = "submitted", country: str = "India", additional: int = 0, email: str = "Ayse@Example.com"):
        application = await workflow.start(passport_country=country, email=email)
        if status == "started":
            return application
        application = await workflow.save_applicant_details(application.application_id, applicant_details())
        if status == "applicant_details_completed":
            return application
        application = await workflow.register_documents(application.application_id, document_set())
        for i in range(additional):
            application = await workflow.add_applicant(
                application.application_id,
                additional_applicant(given_names=f"Guest {chr(65 + i)}", passport_number=f"G{i}000001"),
            )
        if status == "documents_completed":
            return application
        return await workflow.submit(application.application_id)

    return _make


@pytest.fixture
def make_payment(make_application, orchestrator):
    """Factory returning (application, OrderCreation) for a submitted application."""

    async def _make(additional: int = 0):
        application = await make_application(additional=additional)
        creation = await orchestrator.create_order(application.application_id, application.total_fee)
        return application, creation

    return _make


@pytest_asyncio.fixture
async def client(container):
    from api.server import create_app

    app = create_app(container)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http


def completed_event(event_id: str, order_id: Optional[str], capture_id: str, value: str = "84.00") -> Dict[str, Any]:
    resource: Dict[str, Any] = {
        "id": capture_id,
        "status": "COMPLETED",
        "amount": {"currency_code": "USD", "value": value},
    }
    if order_id:
        resource["supplementary_data"] = {"related_ids": {"order_id": order_id}}
    return {"id": event_id, "event_type": "PAYMENT.CAPTURE.COMPLETED", "resource": resource}


def denied_event(event_id: str, order_id: str, reason: str = "Card declined") -> Dict[str, Any]:
    return {
        "id": event_id,
        "event_type": "PAYMENT.CAPTURE.DENIED",
        "resource": {
            "id": "CAPTURE-DENIED",
            "status": "DECLINED",
            "status_details": {"reason": reason},
            "supplementary_data": {"related_ids": {"order_id": order_id}},
        },
    }


def refunded_event(event_id: str, capture_id: str, refund_id: str = "REFUND-WH", value: str = "84.00") -> Dict[str, Any]:
    return {
        "id": event_id,
        "event_type": "PAYMENT.CAPTURE.REFUNDED",
        "resource": {
            "id": refund_id,
            "status": "COMPLETED",
            "amount": {"currency_code": "USD", "value": value},
            "links": [
                {"rel": "self", "href": f"https://api-m.sandbox.paypal.com/v2/payments/refunds/{refund_id}"},
                {"rel": "up", "href": f"https://api-m.sandbox.paypal.com/v2/payments/captures/{capture_id}"},
            ],
        },
    }
