"""
Paystack adapter.

Hosted checkout through the Paystack REST API. Amounts are sent in the
lowest currency unit (kobo/cents), which is what the engine stores.
"""
import hashlib
import hmac
import json
from typing import Any, Dict, Mapping, Optional

import httpx
import structlog

from property_payments.config import Settings, get_settings
from property_payments.core.enums import PaymentMethod
from property_payments.core.exceptions import CallbackVerificationError, PermanentGatewayError
from property_payments.gateways.base import (
    GatewayOutcome,
    GatewaySession,
    HttpGateway,
    charged_amount,
    customer_email,
)

logger = structlog.get_logger(__name__)

SUCCESS_STATUSES = {"success"}
FAILURE_STATUSES = {"failed", "reversed"}


class PaystackGateway(HttpGateway):
    name = "paystack"
    supported_currencies = frozenset({"NGN", "USD"})
    supported_methods = frozenset(
        {
            PaymentMethod.CARD,
            PaymentMethod.BANK_TRANSFER,
            PaymentMethod.USSD,
            PaymentMethod.MOBILE_MONEY,
        }
    )

    CHANNELS = {
        PaymentMethod.CARD: "card",
        PaymentMethod.BANK_TRANSFER: "bank_transfer",
        PaymentMethod.USSD: "ussd",
        PaymentMethod.MOBILE_MONEY: "mobile_money",
    }

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        settings = settings or get_settings()
        super().__init__(
            base_url=settings.paystack_base_url,
            secret_key=settings.paystack_secret_key,
            settings=settings,
            http_client=http_client,
            fee_percentage=settings.paystack_fee_percentage,
            fixed_fee_minor=settings.paystack_fixed_fee_minor,
        )

    @staticmethod
    def _unwrap(body: Dict[str, Any]) -> Dict[str, Any]:
        # Paystack reports business errors as {"status": false, "message": ...}
        if not body.get("status"):
            raise PermanentGatewayError(
                f"paystack: {body.get('message', 'request rejected')}",
                gateway="paystack",
                payload=body,
            )
        return body.get("data") or {}

    async def initialize(
        self,
        reference: str,
        amount_minor: int,
        currency: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> GatewaySession:
        metadata = metadata or {}
        payload: Dict[str, Any] = {
            "email": customer_email(metadata, self.name),
            "amount": amount_minor,
            "currency": currency,
            "reference": reference,
            "metadata": metadata,
        }
        if self.settings.paystack_callback_url:
            payload["callback_url"] = self.settings.paystack_callback_url
        method = metadata.get("payment_method")
        if method in {m.value for m in self.CHANNELS}:
            payload["channels"] = [self.CHANNELS[PaymentMethod(method)]]

        body = await self._request("POST", "/transaction/initialize", json=payload)
        data = self._unwrap(body)

        logger.info("paystack_transaction_initialized", reference=reference)
        return GatewaySession(
            gateway_reference=data.get("reference", reference),
            authorization_url=data.get("authorization_url"),
            raw={
                "access_code": data.get("access_code"),
                "authorization_url": data.get("authorization_url"),
            },
        )

    async def verify(self, gateway_reference: str) -> Optional[GatewayOutcome]:
        body = await self._request("GET", f"/transaction/verify/{gateway_reference}")
        data = self._unwrap(body)
        status = data.get("status")

        # abandoned/ongoing/pending mean the customer has not finished paying
        if status in SUCCESS_STATUSES:
            success = True
        elif status in FAILURE_STATUSES:
            success = False
        else:
            return None

        return GatewayOutcome(
            gateway_reference=data.get("reference", gateway_reference),
            success=success,
            raw_payload=data,
            reference=data.get("reference"),
            message=data.get("gateway_response"),
            **charged_amount(data.get("amount"), data.get("currency")),
        )

    async def refund(
        self, gateway_reference: str, amount_minor: int, idempotency_key: str
    ) -> Dict[str, Any]:
        body = await self._request(
            "POST",
            "/refund",
            json={"transaction": gateway_reference, "amount": amount_minor},
            headers={"Idempotency-Key": idempotency_key},
        )
        return self._unwrap(body)

    def verify_signature(self, body: bytes, signature: Optional[str]) -> bool:
        """Paystack signs the raw body with HMAC-SHA512 using the secret key."""
        if not signature or not self.secret_key:
            return False
        expected = hmac.new(self.secret_key.encode(), body, hashlib.sha512).hexdigest()
        return hmac.compare_digest(expected, signature)

    def parse_callback(
        self, body: bytes, headers: Mapping[str, str]
    ) -> Optional[GatewayOutcome]:
        if not self.verify_signature(body, headers.get("x-paystack-signature")):
            raise CallbackVerificationError("Invalid Paystack signature", gateway=self.name)

        try:
            event = json.loads(body)
        except ValueError:
            raise CallbackVerificationError("Malformed Paystack payload", gateway=self.name)

        event_type = event.get("event")
        data = event.get("data") or {}
        if event_type == "charge.success":
            success = True
        elif event_type == "charge.failed":
            success = False
        else:
            logger.info("paystack_event_ignored", event_type=event_type)
            return None

        reference = data.get("reference")
        if not reference:
            raise CallbackVerificationError("Paystack event has no reference", gateway=self.name)

        return GatewayOutcome(
            gateway_reference=reference,
            success=success,
            raw_payload=data,
            reference=reference,
            message=data.get("gateway_response"),
            **charged_amount(data.get("amount"), data.get("currency")),
        )
