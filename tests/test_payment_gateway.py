"""Tests for services.payment.app.gateway, reconciler and config."""

import asyncio
import json
from decimal import Decimal

import httpx
import pytest

from services.payment.app.config import LIVE_BASE_URL, SANDBOX_BASE_URL, PaymentOptions
from services.payment.app.gateway import (
    CaptureResult,
    GatewayFailure,
    PayPalHttpGateway,
    SimulatedGateway,
    build_gateway,
)
from services.payment.app.reconciler import PaymentCaptureReconciler

BASE_URL = "https://paypal.test"


class FakePayPal:
    """Records requests and answers like the PayPal Orders v2 API."""

    def __init__(self, capture_status=200, capture_body=None):
        self.capture_status = capture_status
        self.capture_body = capture_body if capture_body is not None else {"id": "PP-1", "status": "COMPLETED"}
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})
        if path.endswith("/capture"):
            return httpx.Response(
                self.capture_status, json=self.capture_body, headers={"PayPal-Debug-Id": "dbg-1"},
            )
        if path == "/v2/checkout/orders":
            return httpx.Response(201, json={
                "id": "PP-NEW",
                "status": "CREATED",
                "links": [
                    {"rel": "self", "href": f"{BASE_URL}/v2/checkout/orders/PP-NEW"},
                    {"rel": "approve", "href": "https://paypal.test/checkoutnow?token=PP-NEW"},
                ],
            })
        return httpx.Response(404)

    def paths(self):
        return [r.url.path for r in self.requests]


def _gateway(fake):
    client = httpx.AsyncClient(transport=httpx.MockTransport(fake))
    return PayPalHttpGateway("client-id", "secret", BASE_URL, client)


class SlowGateway:
    requires_reference = True

    async def capture(self, provider_order_id):
        await asyncio.sleep(1)
        return CaptureResult(True, "COMPLETED")


class BrokenGateway:
    requires_reference = True

    async def capture(self, provider_order_id):
        raise RuntimeError("unexpected")


# ------------------------------------------------------------------ #
#  PayPalHttpGateway                                                   #
# ------------------------------------------------------------------ #


class TestPayPalHttpGateway:
    async def test_capture_completed(self):
        fake = FakePayPal()
        result = await _gateway(fake).capture("PP-1")

        assert result == CaptureResult(True, "COMPLETED")
        capture_request = fake.requests[-1]
        assert capture_request.url.path == "/v2/checkout/orders/PP-1/capture"
        assert capture_request.headers["Authorization"] == "Bearer tok"
        assert capture_request.headers["PayPal-Request-Id"] == "capture-PP-1"

    async def test_capture_pending_is_not_success(self):
        fake = FakePayPal(capture_body={"id": "PP-1", "status": "PENDING"})
        result = await _gateway(fake).capture("PP-1")
        assert result == CaptureResult(False, "PENDING")

    async def test_token_is_cached(self):
        fake = FakePayPal()
        gateway = _gateway(fake)

        await gateway.capture("PP-1")
        await gateway.capture("PP-2")

        assert fake.paths().count("/v1/oauth2/token") == 1

    async def test_non_success_status_raises(self):
        fake = FakePayPal(capture_status=422, capture_body={"name": "UNPROCESSABLE_ENTITY"})
        with pytest.raises(GatewayFailure) as exc_info:
            await _gateway(fake).capture("PP-1")
        assert exc_info.value.status_code == 422
        assert exc_info.value.debug_id == "dbg-1"

    async def test_token_failure_raises(self):
        def handler(request):
            return httpx.Response(401, json={"error": "invalid_client"})

        gateway = PayPalHttpGateway(
            "id", "bad", BASE_URL, httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )
        with pytest.raises(GatewayFailure) as exc_info:
            await gateway.capture("PP-1")
        assert exc_info.value.status_code == 401

    async def test_transport_error_raises(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        gateway = PayPalHttpGateway(
            "id", "secret", BASE_URL, httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )
        with pytest.raises(GatewayFailure):
            await gateway.capture("PP-1")

    async def test_create_order(self):
        fake = FakePayPal()
        order_id, approval_link = await _gateway(fake).create_order(
            Decimal("21"), "USD", "https://shop.test/ok", "https://shop.test/cancel",
        )

        assert order_id == "PP-NEW"
        assert approval_link == "https://paypal.test/checkoutnow?token=PP-NEW"
        payload = json.loads(fake.requests[-1].content)
        assert payload["intent"] == "CAPTURE"
        assert payload["purchase_units"][0]["amount"] == {"currency_code": "USD", "value": "21.00"}
        assert payload["application_context"]["return_url"] == "https://shop.test/ok"


class TestSimulatedGateway:
    async def test_success_flag(self):
        assert await SimulatedGateway(True).capture("") == CaptureResult(True, "COMPLETED")

    async def test_failure_flag(self):
        result = await SimulatedGateway(False).capture("PP-1")
        assert result.succeeded is False


# ------------------------------------------------------------------ #
#  PaymentCaptureReconciler                                            #
# ------------------------------------------------------------------ #


class TestReconciler:
    async def test_completed_capture_succeeds(self):
        result = await PaymentCaptureReconciler(_gateway(FakePayPal())).capture("PP-1")
        assert result.succeeded is True
        assert result.status == "COMPLETED"

    async def test_status_compare_ignores_case(self):
        fake = FakePayPal(capture_body={"status": "completed"})
        result = await PaymentCaptureReconciler(_gateway(fake)).capture("PP-1")
        assert result.succeeded is True

    async def test_pending_fails(self):
        fake = FakePayPal(capture_body={"status": "PENDING"})
        result = await PaymentCaptureReconciler(_gateway(fake)).capture("PP-1")
        assert result == CaptureResult(False, "PENDING")

    @pytest.mark.parametrize("status_code", [404, 500])
    async def test_http_error_fails(self, status_code):
        fake = FakePayPal(capture_status=status_code, capture_body={})
        result = await PaymentCaptureReconciler(_gateway(fake)).capture("PP-1")
        assert result == CaptureResult(False, None)

    @pytest.mark.parametrize("reference", [None, "", "   "])
    async def test_missing_reference_fails_without_calling_gateway(self, reference):
        fake = FakePayPal()
        result = await PaymentCaptureReconciler(_gateway(fake)).capture(reference)
        assert result == CaptureResult(False, None)
        assert fake.requests == []

    async def test_simulated_gateway_ignores_missing_reference(self):
        result = await PaymentCaptureReconciler(SimulatedGateway(True)).capture(None)
        assert result.succeeded is True

    async def test_simulated_failure(self):
        result = await PaymentCaptureReconciler(SimulatedGateway(False)).capture("PP-1")
        assert result.succeeded is False

    async def test_timeout_fails(self):
        result = await PaymentCaptureReconciler(SlowGateway(), timeout=0.01).capture("PP-1")
        assert result == CaptureResult(False, None)

    async def test_unexpected_exception_fails(self):
        result = await PaymentCaptureReconciler(BrokenGateway()).capture("PP-1")
        assert result == CaptureResult(False, None)


# ------------------------------------------------------------------ #
#  PaymentOptions / build_gateway                                      #
# ------------------------------------------------------------------ #


class TestPaymentOptions:
    def test_defaults(self):
        options = PaymentOptions.from_env({})
        assert options.payment_succeeded is True
        assert options.use_paypal is False
        assert options.paypal_configured is False
        assert options.paypal_base_url == SANDBOX_BASE_URL
        assert options.capture_timeout_seconds == 15.0

    def test_from_env(self):
        options = PaymentOptions.from_env({
            "PAYMENT_SUCCEEDED": "false",
            "USE_PAYPAL": "true",
            "PAYPAL_CLIENT_ID": "id",
            "PAYPAL_CLIENT_SECRET": "secret",
            "PAYPAL_ENVIRONMENT": "Live",
            "PAYMENT_CURRENCY_CODE": "EUR",
            "CAPTURE_TIMEOUT_SECONDS": "5",
            "PAYPAL_CLIENT_ID_UNUSED": "x",
        })
        assert options.payment_succeeded is False
        assert options.paypal_configured is True
        assert options.paypal_base_url == LIVE_BASE_URL
        assert options.currency_code == "EUR"
        assert options.capture_timeout_seconds == 5.0

    def test_empty_values_fall_back_to_defaults(self):
        options = PaymentOptions.from_env({"PAYMENT_CURRENCY_CODE": "", "USE_PAYPAL": ""})
        assert options.currency_code == "USD"
        assert options.use_paypal is False

    def test_paypal_needs_credentials(self):
        options = PaymentOptions(use_paypal=True, paypal_client_id="id", paypal_client_secret=" ")
        assert options.paypal_configured is False

    def test_build_gateway_simulated_when_disabled(self):
        options = PaymentOptions(use_paypal=False, paypal_client_id="id", paypal_client_secret="s")
        gateway = build_gateway(options)
        assert isinstance(gateway, SimulatedGateway)
        assert gateway.requires_reference is False

    async def test_build_gateway_paypal_when_configured(self):
        options = PaymentOptions(use_paypal=True, paypal_client_id="id", paypal_client_secret="s")
        async with httpx.AsyncClient() as client:
            gateway = build_gateway(options, client)
            assert isinstance(gateway, PayPalHttpGateway)
            assert gateway.base_url == SANDBOX_BASE_URL
            assert gateway.requires_reference is True
            assert gateway.http_client is client

    def test_build_gateway_paypal_needs_shared_client(self):
        options = PaymentOptions(use_paypal=True, paypal_client_id="id", paypal_client_secret="s")
        with pytest.raises(ValueError):
            build_gateway(options)
