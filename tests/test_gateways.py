"""
Tests for the gateway adapters.

HTTP gateways run against httpx.MockTransport; the Stripe SDK is patched.
"""
import hashlib
import hmac
import json
from typing import Any, Callable, Dict, List
from unittest.mock import MagicMock, patch

import httpx
import pytest
import stripe

from property_payments.config import Settings
from property_payments.core.exceptions import (
    CallbackVerificationError,
    PermanentGatewayError,
    TransientGatewayError,
    UnknownGateway,
)
from property_payments.gateways.base import CircuitBreaker, charged_amount, major_to_minor
from property_payments.gateways.flutterwave import FlutterwaveGateway
from property_payments.gateways.manual import ManualGateway
from property_payments.gateways.paystack import PaystackGateway
from property_payments.gateways.registry import build_registry
from property_payments.gateways.stripe_gateway import StripeGateway


def mock_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def paystack_signature(body: bytes, secret: str = "sk_test_paystack") -> str:
    return hmac.new(secret.encode(), body, hashlib.sha512).hexdigest()


class TestPaystackGateway:
    """Test suite for the Paystack adapter."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_initialize(self, test_settings: Settings) -> None:
        requests: List[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(
                200,
                json={
                    "status": True,
                    "message": "Authorization URL created",
                    "data": {
                        "authorization_url": "https://checkout.paystack.com/abc123",
                        "access_code": "abc123",
                        "reference": "PROP-42",
                    },
                },
            )

        gateway = PaystackGateway(test_settings, http_client=mock_client(handler))
        session = await gateway.initialize(
            "PROP-42",
            50_000_000,
            "NGN",
            {"email": "buyer@example.com", "payment_method": "bank_transfer"},
        )

        assert session.gateway_reference == "PROP-42"
        assert session.authorization_url == "https://checkout.paystack.com/abc123"

        request = requests[0]
        assert request.url == "https://api.paystack.co/transaction/initialize"
        assert request.headers["Authorization"] == "Bearer sk_test_paystack"
        payload = json.loads(request.content)
        assert payload["amount"] == 50_000_000
        assert payload["email"] == "buyer@example.com"
        assert payload["reference"] == "PROP-42"
        assert payload["channels"] == ["bank_transfer"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_initialize_requires_email(self, test_settings: Settings) -> None:
        gateway = PaystackGateway(
            test_settings, http_client=mock_client(lambda r: httpx.Response(500))
        )

        with pytest.raises(PermanentGatewayError, match="email"):
            await gateway.initialize("PROP-42", 50_000_000, "NGN", {})

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self, test_settings: Settings) -> None:
        attempts = {"count": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            attempts["count"] += 1
            if attempts["count"] < 3:
                return httpx.Response(503, json={"message": "Service unavailable"})
            return httpx.Response(
                200, json={"status": True, "data": {"status": "success", "reference": "PROP-42"}}
            )

        gateway = PaystackGateway(test_settings, http_client=mock_client(handler))
        outcome = await gateway.verify("PROP-42")

        assert attempts["count"] == 3
        assert outcome is not None
        assert outcome.success is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retries_exhausted(self, test_settings: Settings) -> None:
        attempts = {"count": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            attempts["count"] += 1
            raise httpx.ConnectError("connection refused")

        gateway = PaystackGateway(test_settings, http_client=mock_client(handler))

        with pytest.raises(TransientGatewayError):
            await gateway.verify("PROP-42")
        assert attempts["count"] == test_settings.gateway_retry_max_attempts

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_client_errors_are_not_retried(self, test_settings: Settings) -> None:
        attempts = {"count": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            attempts["count"] += 1
            return httpx.Response(400, json={"status": False, "message": "Invalid amount"})

        gateway = PaystackGateway(test_settings, http_client=mock_client(handler))

        with pytest.raises(PermanentGatewayError, match="Invalid amount"):
            await gateway.initialize("PROP-42", 1, "NGN", {"email": "buyer@example.com"})
        assert attempts["count"] == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,expected",
        [("success", True), ("failed", False), ("reversed", False), ("abandoned", None), ("ongoing", None)],
    )
    async def test_verify_status_mapping(
        self, test_settings: Settings, status: str, expected: Any
    ) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/transaction/verify/PROP-42"
            return httpx.Response(
                200,
                json={
                    "status": True,
                    "data": {"status": status, "reference": "PROP-42", "gateway_response": "ok"},
                },
            )

        gateway = PaystackGateway(test_settings, http_client=mock_client(handler))
        outcome = await gateway.verify("PROP-42")

        if expected is None:
            assert outcome is None
        else:
            assert outcome.success is expected
            assert outcome.gateway_reference == "PROP-42"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_sends_idempotency_key(self, test_settings: Settings) -> None:
        requests: List[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(
                200, json={"status": True, "data": {"status": "pending", "id": 9}}
            )

        gateway = PaystackGateway(test_settings, http_client=mock_client(handler))
        result = await gateway.refund("PROP-42", 50_000_000, "refund:PROP-42")

        assert result["status"] == "pending"
        assert requests[0].headers["Idempotency-Key"] == "refund:PROP-42"
        assert json.loads(requests[0].content) == {"transaction": "PROP-42", "amount": 50_000_000}

    @pytest.mark.unit
    def test_parse_callback_success(self, test_settings: Settings) -> None:
        gateway = PaystackGateway(test_settings)
        body = json.dumps(
            {
                "event": "charge.success",
                "data": {
                    "reference": "PROP-42",
                    "status": "success",
                    "amount": 50_000_000,
                    "currency": "NGN",
                },
            }
        ).encode()

        outcome = gateway.parse_callback(body, {"x-paystack-signature": paystack_signature(body)})

        assert outcome.success is True
        assert outcome.gateway_reference == "PROP-42"
        assert outcome.reference == "PROP-42"
        assert (outcome.amount_minor, outcome.currency) == (50_000_000, "NGN")

    @pytest.mark.unit
    def test_parse_callback_bad_signature(self, test_settings: Settings) -> None:
        gateway = PaystackGateway(test_settings)
        body = json.dumps({"event": "charge.success", "data": {"reference": "PROP-42"}}).encode()

        with pytest.raises(CallbackVerificationError):
            gateway.parse_callback(body, {"x-paystack-signature": paystack_signature(body, "wrong")})
        with pytest.raises(CallbackVerificationError):
            gateway.parse_callback(body, {})

    @pytest.mark.unit
    def test_parse_callback_ignores_other_events(self, test_settings: Settings) -> None:
        gateway = PaystackGateway(test_settings)
        body = json.dumps({"event": "transfer.success", "data": {"reference": "TRF-1"}}).encode()

        assert gateway.parse_callback(body, {"x-paystack-signature": paystack_signature(body)}) is None

    @pytest.mark.unit
    def test_fee_quote(self, test_settings: Settings) -> None:
        gateway = PaystackGateway(test_settings)

        # 1.5% of ₦500,000 plus ₦100
        assert gateway.quote_fees(50_000_000) == 760_000


class TestFlutterwaveGateway:
    """Test suite for the Flutterwave adapter."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_initialize_sends_major_units(self, test_settings: Settings) -> None:
        requests: List[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(
                200,
                json={
                    "status": "success",
                    "message": "Hosted Link",
                    "data": {"link": "https://checkout.flutterwave.com/v3/hosted/pay/xyz"},
                },
            )

        gateway = FlutterwaveGateway(test_settings, http_client=mock_client(handler))
        session = await gateway.initialize(
            "PROP-42",
            50_000_000,
            "NGN",
            {"email": "buyer@example.com", "name": "Ada Obi", "payment_method": "card"},
        )

        assert session.gateway_reference == "PROP-42"
        assert session.authorization_url == "https://checkout.flutterwave.com/v3/hosted/pay/xyz"
        payload = json.loads(requests[0].content)
        assert requests[0].url == "https://api.flutterwave.com/v3/payments"
        assert payload["tx_ref"] == "PROP-42"
        assert payload["amount"] == "500000.00"
        assert payload["customer"] == {"email": "buyer@example.com", "name": "Ada Obi"}
        assert payload["payment_options"] == "card"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_verify_by_reference(self, test_settings: Settings) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v3/transactions/verify_by_reference"
            assert request.url.params["tx_ref"] == "PROP-42"
            return httpx.Response(
                200,
                json={"status": "success", "data": {"id": 288200108, "tx_ref": "PROP-42", "status": "successful"}},
            )

        gateway = FlutterwaveGateway(test_settings, http_client=mock_client(handler))
        outcome = await gateway.verify("PROP-42")

        assert outcome.success is True
        assert outcome.reference == "PROP-42"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_uses_flutterwave_id(self, test_settings: Settings) -> None:
        paths: List[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append(request.url.path)
            if request.url.path.endswith("/refund"):
                return httpx.Response(
                    200, json={"status": "success", "data": {"id": 75923, "status": "completed"}}
                )
            return httpx.Response(
                200,
                json={"status": "success", "data": {"id": 288200108, "tx_ref": "PROP-42", "status": "successful"}},
            )

        gateway = FlutterwaveGateway(test_settings, http_client=mock_client(handler))
        result = await gateway.refund("PROP-42", 50_000_000, "refund:PROP-42")

        assert result["status"] == "completed"
        assert paths == [
            "/v3/transactions/verify_by_reference",
            "/v3/transactions/288200108/refund",
        ]

    @pytest.mark.unit
    def test_parse_callback(self, test_settings: Settings) -> None:
        gateway = FlutterwaveGateway(test_settings)
        body = json.dumps(
            {
                "event": "charge.completed",
                "data": {
                    "id": 288200108,
                    "tx_ref": "PROP-42",
                    "status": "failed",
                    "processor_response": "Declined",
                    "amount": 500000,
                    "currency": "NGN",
                },
            }
        ).encode()

        outcome = gateway.parse_callback(body, {"verif-hash": "flw-webhook-hash"})

        assert outcome.success is False
        assert outcome.message == "Declined"
        # Flutterwave reports major units
        assert (outcome.amount_minor, outcome.currency) == (50_000_000, "NGN")
        with pytest.raises(CallbackVerificationError):
            gateway.parse_callback(body, {"verif-hash": "forged"})


class TestStripeGateway:
    """Test suite for the Stripe adapter."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_initialize_is_idempotent_on_reference(self, test_settings: Settings) -> None:
        gateway = StripeGateway(test_settings)
        intent = {"id": "pi_test_123", "status": "requires_payment_method", "client_secret": "cs"}

        with patch("stripe.PaymentIntent.create", return_value=intent) as create:
            session = await gateway.initialize("PROP-42", 125_050, "USD", {"email": "a@b.co"})

        assert session.gateway_reference == "pi_test_123"
        kwargs = create.call_args.kwargs
        assert kwargs["idempotency_key"] == "PROP-42"
        assert kwargs["amount"] == 125_050
        assert kwargs["currency"] == "usd"
        assert kwargs["metadata"]["reference"] == "PROP-42"
        assert kwargs["api_key"] == "sk_test_fake_key_for_testing"

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "error,expected",
        [
            (stripe.RateLimitError("Too many requests"), TransientGatewayError),
            (stripe.APIConnectionError("Network error"), TransientGatewayError),
            (stripe.CardError("Your card was declined", None, "card_declined"), PermanentGatewayError),
            (stripe.InvalidRequestError("No such payment_intent", "id"), PermanentGatewayError),
        ],
    )
    def test_error_classification(self, error: stripe.StripeError, expected: type) -> None:
        classified = StripeGateway._classify_error(error)

        assert type(classified) is expected
        assert classified.original_error is error

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_card_error_is_not_retried(self, test_settings: Settings) -> None:
        gateway = StripeGateway(test_settings)
        error = stripe.CardError("Your card was declined", None, "card_declined")

        with patch("stripe.PaymentIntent.create", side_effect=error) as create:
            with pytest.raises(PermanentGatewayError):
                await gateway.initialize("PROP-42", 125_050, "USD")

        assert create.call_count == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,expected",
        [("succeeded", True), ("canceled", False), ("processing", None), ("requires_action", None)],
    )
    async def test_verify(self, test_settings: Settings, status: str, expected: Any) -> None:
        gateway = StripeGateway(test_settings)

        with patch("stripe.PaymentIntent.retrieve", return_value={"id": "pi_1", "status": status}):
            outcome = await gateway.verify("pi_1")

        if expected is None:
            assert outcome is None
        else:
            assert outcome.success is expected

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund(self, test_settings: Settings) -> None:
        gateway = StripeGateway(test_settings)

        with patch(
            "stripe.Refund.create", return_value={"id": "re_1", "status": "succeeded"}
        ) as create:
            result = await gateway.refund("pi_1", 125_050, "refund:PROP-42")

        assert result == {"id": "re_1", "status": "succeeded"}
        assert create.call_args.kwargs["idempotency_key"] == "refund:PROP-42"
        assert create.call_args.kwargs["payment_intent"] == "pi_1"

    @pytest.mark.unit
    def test_parse_callback(self, test_settings: Settings) -> None:
        gateway = StripeGateway(test_settings)
        body = json.dumps(
            {
                "type": "payment_intent.succeeded",
                "data": {
                    "object": {
                        "id": "pi_1",
                        "amount": 50_000_000,
                        "currency": "ngn",
                        "metadata": {"reference": "PROP-42"},
                    }
                },
            }
        ).encode()

        with patch("stripe.Webhook.construct_event", return_value=MagicMock()) as construct:
            outcome = gateway.parse_callback(body, {"stripe-signature": "t=1,v1=abc"})

        construct.assert_called_once_with(body, "t=1,v1=abc", "whsec_test_fake_secret")
        assert outcome.gateway_reference == "pi_1"
        assert outcome.reference == "PROP-42"
        assert outcome.success is True
        assert (outcome.amount_minor, outcome.currency) == (50_000_000, "NGN")

    @pytest.mark.unit
    def test_parse_callback_bad_signature(self, test_settings: Settings) -> None:
        gateway = StripeGateway(test_settings)
        error = stripe.SignatureVerificationError("No signatures found", "t=1,v1=abc")

        with patch("stripe.Webhook.construct_event", side_effect=error):
            with pytest.raises(CallbackVerificationError):
                gateway.parse_callback(b"{}", {"stripe-signature": "t=1,v1=abc"})


class TestManualGateway:
    """Test suite for operator-confirmed settlement."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_session_and_verify(self, test_settings: Settings) -> None:
        gateway = ManualGateway(test_settings)

        session = await gateway.initialize("PROP-42", 50_000_000, "NGN")

        assert session.gateway_reference == "PROP-42"
        assert "PROP-42" in session.raw["instructions"]
        assert await gateway.verify("PROP-42") is None
        assert gateway.quote_fees(50_000_000) == 0

    @pytest.mark.unit
    def test_operator_confirmation(self, test_settings: Settings) -> None:
        gateway = ManualGateway(test_settings)
        body = json.dumps({"reference": "PROP-42", "success": True, "note": "Seen on statement"}).encode()

        outcome = gateway.parse_callback(body, {"x-api-key": "admin-secret"})

        assert outcome.success is True
        assert outcome.reference == "PROP-42"
        assert outcome.message == "Seen on statement"

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "body,headers",
        [
            (b'{"reference": "PROP-42", "success": true}', {"x-api-key": "wrong"}),
            (b'{"reference": "PROP-42", "success": true}', {}),
            (b'{"reference": "PROP-42", "success": "yes"}', {"x-api-key": "admin-secret"}),
            (b"not json", {"x-api-key": "admin-secret"}),
        ],
    )
    def test_rejected_confirmations(
        self, test_settings: Settings, body: bytes, headers: Dict[str, str]
    ) -> None:
        with pytest.raises(CallbackVerificationError):
            ManualGateway(test_settings).parse_callback(body, headers)


class TestCircuitBreaker:
    """Test suite for the gateway circuit breaker."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_opens_after_transient_failures(self) -> None:
        breaker = CircuitBreaker("fakepay", failure_threshold=2, timeout=60)

        async def failing() -> None:
            raise TransientGatewayError("down", gateway="fakepay")

        for _ in range(2):
            with pytest.raises(TransientGatewayError):
                await breaker.call(failing)

        assert breaker.state == "open"
        with pytest.raises(TransientGatewayError, match="Circuit breaker is open"):
            await breaker.call(failing)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_permanent_errors_do_not_trip(self) -> None:
        breaker = CircuitBreaker("fakepay", failure_threshold=1)

        async def rejecting() -> None:
            raise PermanentGatewayError("declined", gateway="fakepay")

        with pytest.raises(PermanentGatewayError):
            await breaker.call(rejecting)
        assert breaker.state == "closed"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_half_open_recovers(self) -> None:
        breaker = CircuitBreaker("fakepay", failure_threshold=1, timeout=0, success_threshold=1)

        async def failing() -> None:
            raise TransientGatewayError("down", gateway="fakepay")

        async def succeeding() -> str:
            return "ok"

        with pytest.raises(TransientGatewayError):
            await breaker.call(failing)
        breaker.last_failure_time -= 1

        assert await breaker.call(succeeding) == "ok"
        assert breaker.state == "closed"


class TestChargedAmount:
    """Normalizing what a provider says it charged."""

    @pytest.mark.unit
    def test_major_to_minor(self) -> None:
        assert major_to_minor(500000) == 50_000_000
        assert major_to_minor("1250.505") == 125_051
        assert major_to_minor(None) is None
        assert major_to_minor(True) is None
        assert major_to_minor("n/a") is None
        assert major_to_minor("NaN") is None

    @pytest.mark.unit
    def test_charged_amount(self) -> None:
        assert charged_amount(50_000_000, "ngn") == {"amount_minor": 50_000_000, "currency": "NGN"}
        assert charged_amount("5000", "") == {"amount_minor": None, "currency": None}
        assert charged_amount(False, None) == {"amount_minor": None, "currency": None}


class TestRegistry:
    """Test suite for registry construction from settings."""

    @pytest.mark.unit
    def test_builds_configured_gateways(self, test_settings: Settings) -> None:
        registry = build_registry(test_settings)

        assert registry.names() == ["flutterwave", "manual", "paystack", "stripe"]
        assert "paystack" in registry

    @pytest.mark.unit
    def test_skips_gateways_without_credentials(self, test_settings: Settings) -> None:
        settings = test_settings.model_copy(
            update={"paystack_secret_key": None, "stripe_secret_key": None}
        )

        registry = build_registry(settings)

        assert registry.names() == ["flutterwave", "manual"]
        with pytest.raises(UnknownGateway):
            registry.get("paystack")

    @pytest.mark.unit
    def test_describe(self, test_settings: Settings) -> None:
        info = {g["name"]: g for g in build_registry(test_settings).describe()}

        assert info["stripe"]["supported_methods"] == ["card"]
        assert info["paystack"]["fixed_fee_minor"] == 10000
