"""
Pytest configuration and fixtures.
"""
import asyncio
import json
from typing import Any, AsyncGenerator, Dict, List, Mapping, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from property_payments.api.main import create_app
from property_payments.config import Settings
from property_payments.core.engine import PaymentEngine
from property_payments.core.enums import PaymentMethod
from property_payments.core.exceptions import CallbackVerificationError
from property_payments.core.idempotency import ReferenceManager
from property_payments.core.locking import LocalLockManager
from property_payments.core.orchestrator import TransactionOrchestrator
from property_payments.database.connection import (
    create_engine_from_settings,
    create_session_factory,
    init_db,
)
from property_payments.database.store import TransactionStore
from property_payments.gateways.base import GatewayAdapter, GatewayOutcome, GatewaySession
from property_payments.gateways.manual import ManualGateway
from property_payments.gateways.registry import GatewayRegistry

ADMIN_KEY = "admin-secret"


def pytest_configure(config: Any) -> None:
    config.addinivalue_line("markers", "unit: fast tests without external services")
    config.addinivalue_line("markers", "integration: tests that exercise several components")
    config.addinivalue_line("markers", "race: concurrency tests")


class FakeGateway(GatewayAdapter):
    """
    Scriptable in-memory gateway.

    Set the *_error / *_delay attributes to make the next call fail or stall.
    Callbacks are JSON bodies signed with the header x-fake-signature: valid.
    """

    name = "fakepay"
    supported_currencies = frozenset({"NGN", "USD"})
    supported_methods = frozenset(PaymentMethod)

    def __init__(self) -> None:
        super().__init__(fee_percentage=1.5, fixed_fee_minor=10000)
        self.initialize_error: Optional[Exception] = None
        self.initialize_delay = 0.0
        self.verify_success: Optional[bool] = None
        self.verify_error: Optional[Exception] = None
        self.refund_error: Optional[Exception] = None
        self.refund_delay = 0.0
        self.calls: List[tuple] = []

    async def initialize(
        self,
        reference: str,
        amount_minor: int,
        currency: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> GatewaySession:
        self.calls.append(("initialize", reference, amount_minor, currency, metadata))
        if self.initialize_delay:
            await asyncio.sleep(self.initialize_delay)
        if self.initialize_error is not None:
            raise self.initialize_error
        return GatewaySession(
            gateway_reference=f"gw_{reference}",
            authorization_url=f"https://checkout.fakepay.test/{reference}",
            raw={"access_code": f"ac_{reference}"},
        )

    async def verify(self, gateway_reference: str) -> Optional[GatewayOutcome]:
        self.calls.append(("verify", gateway_reference))
        if self.verify_error is not None:
            raise self.verify_error
        if self.verify_success is None:
            return None
        return GatewayOutcome(
            gateway_reference=gateway_reference,
            success=self.verify_success,
            raw_payload={"status": "success" if self.verify_success else "failed"},
        )

    async def refund(
        self, gateway_reference: str, amount_minor: int, idempotency_key: str
    ) -> Dict[str, Any]:
        self.calls.append(("refund", gateway_reference, amount_minor, idempotency_key))
        if self.refund_delay:
            await asyncio.sleep(self.refund_delay)
        if self.refund_error is not None:
            raise self.refund_error
        return {"id": f"rf_{gateway_reference}", "status": "processed"}

    def parse_callback(
        self, body: bytes, headers: Mapping[str, str]
    ) -> Optional[GatewayOutcome]:
        if headers.get("x-fake-signature") != "valid":
            raise CallbackVerificationError("Invalid signature", gateway=self.name)
        event = json.loads(body)
        if event.get("event") != "charge":
            return None
        return GatewayOutcome(
            gateway_reference=event["gateway_reference"],
            success=event["success"],
            raw_payload=event,
            reference=event.get("reference"),
            message=event.get("message"),
            amount_minor=event.get("amount_minor"),
            currency=event.get("currency"),
        )


def callback_body(gateway_reference: str, success: bool = True, **extra: Any) -> bytes:
    return json.dumps(
        {"event": "charge", "gateway_reference": gateway_reference, "success": success, **extra}
    ).encode()


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        _env_file=None,
        app_name="property-payments-test",
        app_env="test",
        log_level="DEBUG",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'payments_test.db'}",
        redis_url=None,
        lock_backend="local",
        lock_wait_timeout_seconds=5.0,
        gateway_timeout_seconds=5.0,
        gateway_retry_max_attempts=3,
        gateway_retry_base_delay=0,
        paystack_secret_key="sk_test_paystack",
        flutterwave_secret_key="FLWSECK_TEST-secret",
        flutterwave_webhook_hash="flw-webhook-hash",
        stripe_secret_key="sk_test_fake_key_for_testing",
        stripe_webhook_secret="whsec_test_fake_secret",
        admin_api_key=ADMIN_KEY,
        receipt_issuer="Godirect Realty",
        receipt_base_url="https://pay.example.com",
        verification_min_age_seconds=0,
    )


@pytest_asyncio.fixture
async def session_factory(
    test_settings: Settings,
) -> AsyncGenerator[async_sessionmaker[AsyncSession], Any]:
    """Fresh SQLite database per test."""
    engine = create_engine_from_settings(test_settings)
    await init_db(engine)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def store(session_factory: async_sessionmaker[AsyncSession]) -> TransactionStore:
    return TransactionStore(session_factory)


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def registry(fake_gateway: FakeGateway, test_settings: Settings) -> GatewayRegistry:
    return GatewayRegistry([fake_gateway, ManualGateway(test_settings)])


@pytest.fixture
def orchestrator(
    store: TransactionStore, registry: GatewayRegistry, test_settings: Settings
) -> TransactionOrchestrator:
    return TransactionOrchestrator(
        store,
        registry,
        locks=LocalLockManager(wait_timeout=test_settings.lock_wait_timeout_seconds),
        references=ReferenceManager(store, test_settings),
        settings=test_settings,
    )


@pytest.fixture
def payment_engine(
    store: TransactionStore,
    registry: GatewayRegistry,
    orchestrator: TransactionOrchestrator,
    test_settings: Settings,
) -> PaymentEngine:
    return PaymentEngine(store, registry, orchestrator=orchestrator, settings=test_settings)


@pytest_asyncio.fixture
async def client(payment_engine: PaymentEngine) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client."""
    app = create_app(engine=payment_engine, settings=payment_engine.settings)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def deposit_request() -> Dict[str, Any]:
    """₦500,000 deposit on property 42."""
    return {
        "user_id": "user-17",
        "property_id": "42",
        "amount": "500000",
        "currency": "NGN",
        "transaction_type": "deposit",
        "method": "bank_transfer",
        "gateway": "fakepay",
        "reference": "PROP-42",
        "metadata": {"email": "buyer@example.com", "name": "Ada Obi"},
    }
