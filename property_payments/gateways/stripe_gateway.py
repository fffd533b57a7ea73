"""
Stripe adapter built on PaymentIntents.

Implements:
- Idempotent PaymentIntent creation keyed by the transaction reference
- Stripe error classification into transient vs permanent
- Webhook signature verification

The API key is passed per request so no global SDK state is touched.
"""
import asyncio
import json
import time
from typing import Any, Callable, Dict, Mapping, Optional

import stripe
import structlog

from property_payments.config import Settings, get_settings
from property_payments.core.enums import PaymentMethod
from property_payments.core.exceptions import (
    CallbackVerificationError,
    GatewayError,
    PermanentGatewayError,
    TransientGatewayError,
)
from property_payments.gateways.base import (
    CircuitBreaker,
    GatewayAdapter,
    GatewayOutcome,
    GatewaySession,
    call_with_retry,
    charged_amount,
)
from property_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class StripeGateway(GatewayAdapter):
    name = "stripe"
    supported_currencies = frozenset({"NGN", "USD"})
    supported_methods = frozenset({PaymentMethod.CARD})

    def __init__(self, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        super().__init__(
            fee_percentage=settings.stripe_fee_percentage,
            fixed_fee_minor=settings.stripe_fixed_fee_minor,
        )
        self.settings = settings
        self.secret_key = settings.stripe_secret_key
        self.webhook_secret = settings.stripe_webhook_secret
        self.api_version = settings.stripe_api_version
        self.circuit_breaker = CircuitBreaker(
            self.name,
            failure_threshold=settings.circuit_breaker_failure_threshold,
            timeout=settings.circuit_breaker_timeout,
        )

    @staticmethod
    def _classify_error(error: stripe.StripeError) -> GatewayError:
        """Map a Stripe SDK error onto the engine's transient/permanent split."""
        if isinstance(
            error,
            (stripe.RateLimitError, stripe.APIConnectionError, stripe.APIError),
        ):
            return TransientGatewayError(str(error), gateway="stripe", original_error=error)
        if isinstance(
            error,
            (
                stripe.CardError,
                stripe.InvalidRequestError,
                stripe.AuthenticationError,
                stripe.PermissionError,
                stripe.IdempotencyError,
            ),
        ):
            return PermanentGatewayError(str(error), gateway="stripe", original_error=error)
        # Unknown errors are treated as transient
        return TransientGatewayError(str(error), gateway="stripe", original_error=error)

    async def _invoke(self, operation: str, func: Callable[..., Any], **kwargs: Any) -> Any:
        started = time.time()
        try:
            result = await asyncio.to_thread(
                func, api_key=self.secret_key, stripe_version=self.api_version, **kwargs
            )
        except stripe.StripeError as e:
            classified = self._classify_error(e)
            metrics.record_gateway_call(self.name, operation, "error", time.time() - started)
            logger.error(
                "stripe_api_error",
                operation=operation,
                error_type=classified.error_type.value,
                error_code=getattr(e, "code", None),
                error_message=str(e),
            )
            raise classified
        metrics.record_gateway_call(self.name, operation, "success", time.time() - started)
        return result

    async def _call(self, operation: str, func: Callable[..., Any], **kwargs: Any) -> Any:
        if not self.secret_key:
            raise PermanentGatewayError("stripe is not configured", gateway=self.name)
        return await call_with_retry(
            self.settings, self.circuit_breaker, operation, self._invoke, operation, func, **kwargs
        )

    async def initialize(
        self,
        reference: str,
        amount_minor: int,
        currency: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> GatewaySession:
        intent_metadata = {k: str(v) for k, v in (metadata or {}).items()}
        intent_metadata["reference"] = reference

        intent = await self._call(
            "create_payment_intent",
            stripe.PaymentIntent.create,
            amount=amount_minor,
            currency=currency.lower(),
            idempotency_key=reference,
            metadata=intent_metadata,
            automatic_payment_methods={"enabled": True},
        )

        logger.info(
            "stripe_payment_intent_created",
            reference=reference,
            payment_intent_id=intent["id"],
            status=intent["status"],
        )
        return GatewaySession(
            gateway_reference=intent["id"],
            authorization_url=None,
            raw={"id": intent["id"], "status": intent["status"]},
        )

    async def verify(self, gateway_reference: str) -> Optional[GatewayOutcome]:
        intent = await self._call(
            "retrieve_payment_intent", stripe.PaymentIntent.retrieve, id=gateway_reference
        )
        status = intent["status"]
        if status == "succeeded":
            success = True
        elif status == "canceled":
            success = False
        else:
            return None

        return GatewayOutcome(
            gateway_reference=intent["id"],
            success=success,
            raw_payload={"id": intent["id"], "status": status},
            **charged_amount(intent.get("amount"), intent.get("currency")),
        )

    async def refund(
        self, gateway_reference: str, amount_minor: int, idempotency_key: str
    ) -> Dict[str, Any]:
        refund = await self._call(
            "create_refund",
            stripe.Refund.create,
            payment_intent=gateway_reference,
            amount=amount_minor,
            idempotency_key=idempotency_key,
        )
        logger.info("stripe_refund_created", refund_id=refund["id"], status=refund["status"])
        return {"id": refund["id"], "status": refund["status"]}

    def parse_callback(
        self, body: bytes, headers: Mapping[str, str]
    ) -> Optional[GatewayOutcome]:
        signature = headers.get("stripe-signature")
        if not signature or not self.webhook_secret:
            raise CallbackVerificationError("Missing Stripe signature", gateway=self.name)

        try:
            stripe.Webhook.construct_event(body, signature, self.webhook_secret)
        except stripe.SignatureVerificationError:
            raise CallbackVerificationError("Invalid Stripe signature", gateway=self.name)
        except ValueError:
            raise CallbackVerificationError("Malformed Stripe payload", gateway=self.name)

        event = json.loads(body)
        event_type = event.get("type")
        intent = (event.get("data") or {}).get("object") or {}

        if event_type == "payment_intent.succeeded":
            success = True
        elif event_type == "payment_intent.payment_failed":
            success = False
        else:
            logger.info("stripe_event_ignored", event_type=event_type)
            return None

        last_error = intent.get("last_payment_error") or {}
        return GatewayOutcome(
            gateway_reference=intent.get("id", ""),
            success=success,
            raw_payload=intent,
            reference=(intent.get("metadata") or {}).get("reference"),
            message=last_error.get("message"),
            **charged_amount(intent.get("amount"), intent.get("currency")),
        )
