"""
Gateway adapter contract and shared HTTP plumbing.

Implements:
- The capability set every payment provider adapter exposes
- Circuit breaker pattern
- Exponential backoff for transient errors
- Classification of failures into transient vs permanent
"""
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, FrozenSet, Mapping, Optional

import httpx
import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from property_payments.config import Settings, get_settings
from property_payments.core.enums import PaymentMethod
from property_payments.core.exceptions import (
    GatewayError,
    PermanentGatewayError,
    TransientGatewayError,
)
from property_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class GatewaySession:
    """Acknowledgement of an initialized charge session."""

    gateway_reference: str
    authorization_url: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GatewayOutcome:
    """
    Terminal result reported by a gateway, normalized across providers.

    reference is the merchant reference when the provider echoes it back.
    amount_minor and currency are what the provider says it charged, when
    the payload carries them.
    """

    gateway_reference: str
    success: bool
    raw_payload: Dict[str, Any] = field(default_factory=dict)
    reference: Optional[str] = None
    message: Optional[str] = None
    amount_minor: Optional[int] = None
    currency: Optional[str] = None

    def charge_mismatch(self, amount_minor: int, currency: str) -> Optional[str]:
        """Name the reported field that disagrees with the stored charge, if any."""
        if self.amount_minor is not None and self.amount_minor != amount_minor:
            return "amount_mismatch"
        if self.currency is not None and self.currency != currency.upper():
            return "currency_mismatch"
        return None


class CircuitBreaker:
    """
    Circuit breaker for gateway API calls.

    Prevents cascading failures by temporarily stopping requests
    when the transient error count exceeds a threshold. Explicit
    rejections do not count: they prove the gateway is answering.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    async def call(self, func: Any, *args: Any, **kwargs: Any) -> Any:
        """
        Execute coroutine function with circuit breaker protection.

        Raises:
            TransientGatewayError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self.state = "half_open"
                self.success_count = 0
                logger.info("circuit_breaker_half_open", gateway=self.name)
            else:
                raise TransientGatewayError("Circuit breaker is open", gateway=self.name)

        try:
            result = await func(*args, **kwargs)
        except TransientGatewayError:
            self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self.state = "closed"
                logger.info("circuit_breaker_closed", gateway=self.name)
        metrics.set_circuit_breaker_state(self.name, self.state)

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold or self.state == "half_open":
            self.state = "open"
            logger.warning(
                "circuit_breaker_opened",
                gateway=self.name,
                failure_count=self.failure_count,
            )
        metrics.set_circuit_breaker_state(self.name, self.state)


class GatewayAdapter(ABC):
    """
    Uniform capability surface over a payment provider.

    The orchestrator only ever talks to this interface; which provider is
    behind it is decided by the transaction's gateway field.
    """

    name: str = ""
    supported_currencies: FrozenSet[str] = frozenset()
    supported_methods: FrozenSet[PaymentMethod] = frozenset()

    def __init__(self, fee_percentage: float = 0.0, fixed_fee_minor: int = 0):
        self.fee_percentage = Decimal(str(fee_percentage))
        self.fixed_fee_minor = fixed_fee_minor

    def supports(self, currency: str, method: PaymentMethod) -> bool:
        return currency in self.supported_currencies and PaymentMethod(method) in self.supported_methods

    def quote_fees(self, amount_minor: int) -> int:
        """Processing fee in minor units: percentage of the amount plus a flat fee."""
        percentage_fee = (Decimal(amount_minor) * self.fee_percentage / 100).quantize(
            Decimal("1"), rounding=ROUND_HALF_UP
        )
        return int(percentage_fee) + self.fixed_fee_minor

    def describe(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "supported_currencies": sorted(self.supported_currencies),
            "supported_methods": sorted(m.value for m in self.supported_methods),
            "fee_percentage": float(self.fee_percentage),
            "fixed_fee_minor": self.fixed_fee_minor,
        }

    @abstractmethod
    async def initialize(
        self,
        reference: str,
        amount_minor: int,
        currency: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> GatewaySession:
        """Open a charge session for the reference."""

    @abstractmethod
    async def verify(self, gateway_reference: str) -> Optional[GatewayOutcome]:
        """Ask the gateway for the result; None while it is still undecided."""

    @abstractmethod
    async def refund(
        self, gateway_reference: str, amount_minor: int, idempotency_key: str
    ) -> Dict[str, Any]:
        """Refund a settled charge."""

    @abstractmethod
    def parse_callback(
        self, body: bytes, headers: Mapping[str, str]
    ) -> Optional[GatewayOutcome]:
        """
        Verify and normalize a webhook delivery.

        Returns None for event types that carry no payment outcome.

        Raises:
            CallbackVerificationError: If the signature or payload is invalid
        """

    async def close(self) -> None:
        pass


class HttpGateway(GatewayAdapter):
    """
    Base for providers reached over a JSON REST API with a bearer secret.

    Features:
    - Automatic retry with exponential backoff on transient errors
    - Circuit breaker pattern
    - Status-code based error classification
    """

    def __init__(
        self,
        base_url: str,
        secret_key: Optional[str],
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        fee_percentage: float = 0.0,
        fixed_fee_minor: int = 0,
    ):
        super().__init__(fee_percentage=fee_percentage, fixed_fee_minor=fixed_fee_minor)
        self.settings = settings or get_settings()
        self.base_url = base_url.rstrip("/")
        self.secret_key = secret_key
        self._client = http_client
        self._owns_client = http_client is None
        self.circuit_breaker = CircuitBreaker(
            self.name,
            failure_threshold=self.settings.circuit_breaker_failure_threshold,
            timeout=self.settings.circuit_breaker_timeout,
        )

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.settings.gateway_timeout_seconds)
        return self._client

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:200] or f"HTTP {response.status_code}"
        if isinstance(body, dict):
            return str(body.get("message") or body)
        return str(body)

    def _classify_response(self, response: httpx.Response) -> Optional[GatewayError]:
        """Map an HTTP error status to a gateway error; None when the call succeeded."""
        status = response.status_code
        if status < 400:
            return None
        message = self._error_message(response)
        if status >= 500 or status in (408, 429):
            return TransientGatewayError(
                f"{self.name} unavailable ({status}): {message}", gateway=self.name
            )
        return PermanentGatewayError(
            f"{self.name} rejected request ({status}): {message}", gateway=self.name
        )

    async def _send(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        client = self._get_client()
        headers = {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
            **kwargs.pop("headers", {}),
        }
        started = time.time()
        try:
            response = await client.request(
                method, f"{self.base_url}{path}", headers=headers, **kwargs
            )
        except httpx.TransportError as e:
            metrics.record_gateway_call(self.name, path, "error", time.time() - started)
            raise TransientGatewayError(
                f"{self.name} connection error: {e}", gateway=self.name, original_error=e
            )

        error = self._classify_response(response)
        if error is not None:
            metrics.record_gateway_call(self.name, path, "error", time.time() - started)
            raise error

        metrics.record_gateway_call(self.name, path, "success", time.time() - started)
        try:
            return response.json()
        except ValueError as e:
            raise TransientGatewayError(
                f"{self.name} returned invalid JSON", gateway=self.name, original_error=e
            )

    async def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        """Send a request, retrying transient failures with exponential backoff."""
        if not self.secret_key:
            raise PermanentGatewayError(f"{self.name} is not configured", gateway=self.name)

        return await call_with_retry(
            self.settings, self.circuit_breaker, path, self._send, method, path, **kwargs
        )

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


async def call_with_retry(
    settings: Settings,
    breaker: CircuitBreaker,
    operation: str,
    func: Any,
    *args: Any,
    **kwargs: Any,
) -> Any:
    """
    Run a gateway call through the circuit breaker, retrying transient errors.

    Permanent errors propagate on the first attempt.
    """
    retrying = AsyncRetrying(
        retry=retry_if_exception_type(TransientGatewayError),
        stop=stop_after_attempt(settings.gateway_retry_max_attempts),
        wait=wait_exponential(multiplier=settings.gateway_retry_base_delay, max=16),
        reraise=True,
    )
    result: Any = None
    async for attempt in retrying:
        with attempt:
            if attempt.retry_state.attempt_number > 1:
                logger.info(
                    "gateway_request_retry",
                    gateway=breaker.name,
                    operation=operation,
                    attempt=attempt.retry_state.attempt_number,
                )
            result = await breaker.call(func, *args, **kwargs)
    return result


def customer_email(metadata: Optional[Dict[str, Any]], gateway: str) -> str:
    """Hosted checkouts need a customer email; its absence is a permanent rejection."""
    email = (metadata or {}).get("email") or (metadata or {}).get("customer_email")
    if not email:
        raise PermanentGatewayError(
            f"{gateway} requires a customer email in the transaction metadata",
            gateway=gateway,
        )
    return str(email)


def minor_to_major(amount_minor: int) -> Decimal:
    return (Decimal(amount_minor) / 100).quantize(Decimal("0.01"))


def major_to_minor(amount: Any) -> Optional[int]:
    """Minor units from a provider's major-unit amount; None when absent or not a number."""
    if amount is None or isinstance(amount, bool):
        return None
    try:
        value = Decimal(str(amount))
    except ArithmeticError:
        return None
    if not value.is_finite():
        return None
    return int((value * 100).to_integral_value(rounding=ROUND_HALF_UP))


def charged_amount(amount_minor: Any, currency: Any) -> Dict[str, Any]:
    """amount_minor/currency fields for GatewayOutcome from a provider payload."""
    if isinstance(amount_minor, bool) or not isinstance(amount_minor, int):
        amount_minor = None
    return {
        "amount_minor": amount_minor,
        "currency": currency.upper() if isinstance(currency, str) and currency else None,
    }
