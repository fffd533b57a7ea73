"""
Offline settlement: bank deposits, direct transfers and crypto.

The payer quotes the transaction reference as the transfer narration and an
operator confirms receipt through the callback endpoint, authenticated with
the admin API key.
"""
import hmac
import json
from typing import Any, Dict, Mapping, Optional

import structlog

from property_payments.config import Settings, get_settings
from property_payments.core.enums import PaymentMethod
from property_payments.core.exceptions import CallbackVerificationError
from property_payments.gateways.base import GatewayAdapter, GatewayOutcome, GatewaySession

logger = structlog.get_logger(__name__)


class ManualGateway(GatewayAdapter):
    name = "manual"
    supported_currencies = frozenset({"NGN", "USD"})
    supported_methods = frozenset(
        {PaymentMethod.BANK_TRANSFER, PaymentMethod.BANK_DEPOSIT, PaymentMethod.CRYPTO}
    )

    def __init__(self, settings: Optional[Settings] = None):
        super().__init__()
        self.settings = settings or get_settings()

    async def initialize(
        self,
        reference: str,
        amount_minor: int,
        currency: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> GatewaySession:
        return GatewaySession(
            gateway_reference=reference,
            authorization_url=None,
            raw={
                "instructions": (
                    f"Quote {reference} as the payment narration. "
                    "The payment is confirmed once an operator verifies receipt."
                )
            },
        )

    async def verify(self, gateway_reference: str) -> Optional[GatewayOutcome]:
        # Only an operator can decide an offline payment
        return None

    async def refund(
        self, gateway_reference: str, amount_minor: int, idempotency_key: str
    ) -> Dict[str, Any]:
        logger.info(
            "manual_refund_recorded",
            gateway_reference=gateway_reference,
            amount_minor=amount_minor,
        )
        return {
            "status": "recorded",
            "refund_reference": idempotency_key,
            "message": "Refund to be paid out by an operator",
        }

    def parse_callback(
        self, body: bytes, headers: Mapping[str, str]
    ) -> Optional[GatewayOutcome]:
        expected = self.settings.admin_api_key
        supplied = headers.get(self.settings.api_key_header.lower())
        if not expected or not supplied or not hmac.compare_digest(expected, supplied):
            raise CallbackVerificationError("Invalid operator API key", gateway=self.name)

        try:
            payload = json.loads(body)
        except ValueError:
            raise CallbackVerificationError("Malformed confirmation payload", gateway=self.name)

        reference = payload.get("reference") if isinstance(payload, dict) else None
        if not reference or not isinstance(payload.get("success"), bool):
            raise CallbackVerificationError(
                "Confirmation needs a reference and a boolean success flag", gateway=self.name
            )

        return GatewayOutcome(
            gateway_reference=reference,
            success=payload["success"],
            raw_payload=payload,
            reference=reference,
            message=payload.get("note"),
        )
