"""
Flutterwave v3 adapter.

Flutterwave takes amounts in major units and identifies the charge by our
tx_ref, so the merchant reference doubles as the gateway reference.
"""
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
    major_to_minor,
    minor_to_major,
)

logger = structlog.get_logger(__name__)


class FlutterwaveGateway(HttpGateway):
    name = "flutterwave"
    supported_currencies = frozenset({"NGN", "USD"})
    supported_methods = frozenset(
        {
            PaymentMethod.CARD,
            PaymentMethod.BANK_TRANSFER,
            PaymentMethod.USSD,
            PaymentMethod.MOBILE_MONEY,
        }
    )

    PAYMENT_OPTIONS = {
        PaymentMethod.CARD: "card",
        PaymentMethod.BANK_TRANSFER: "banktransfer",
        PaymentMethod.USSD: "ussd",
        PaymentMethod.MOBILE_MONEY: "mobilemoneyghana",
    }

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        settings = settings or get_settings()
        super().__init__(
            base_url=settings.flutterwave_base_url,
            secret_key=settings.flutterwave_secret_key,
            settings=settings,
            http_client=http_client,
            fee_percentage=settings.flutterwave_fee_percentage,
            fixed_fee_minor=settings.flutterwave_fixed_fee_minor,
        )
        self.webhook_hash = settings.flutterwave_webhook_hash

    @staticmethod
    def _unwrap(body: Dict[str, Any]) -> Dict[str, Any]:
        if body.get("status") != "success":
            raise PermanentGatewayError(
                f"flutterwave: {body.get('message', 'request rejected')}",
                gateway="flutterwave",
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
        customer = {"email": customer_email(metadata, self.name)}
        if metadata.get("name"):
            customer["name"] = metadata["name"]
        if metadata.get("phone"):
            customer["phonenumber"] = metadata["phone"]

        payload: Dict[str, Any] = {
            "tx_ref": reference,
            "amount": str(minor_to_major(amount_minor)),
            "currency": currency,
            "customer": customer,
            "meta": metadata,
            "customizations": {"title": metadata.get("title", "Property payment")},
        }
        if self.settings.flutterwave_redirect_url:
            payload["redirect_url"] = self.settings.flutterwave_redirect_url
        method = metadata.get("payment_method")
        if method in {m.value for m in self.PAYMENT_OPTIONS}:
            payload["payment_options"] = self.PAYMENT_OPTIONS[PaymentMethod(method)]

        body = await self._request("POST", "/payments", json=payload)
        data = self._unwrap(body)

        logger.info("flutterwave_payment_initialized", reference=reference)
        return GatewaySession(
            gateway_reference=reference,
            authorization_url=data.get("link"),
            raw={"link": data.get("link")},
        )

    async def _lookup(self, tx_ref: str) -> Dict[str, Any]:
        body = await self._request(
            "GET", "/transactions/verify_by_reference", params={"tx_ref": tx_ref}
        )
        return self._unwrap(body)

    async def verify(self, gateway_reference: str) -> Optional[GatewayOutcome]:
        data = await self._lookup(gateway_reference)
        status = data.get("status")
        if status == "successful":
            success = True
        elif status == "failed":
            success = False
        else:
            return None

        return GatewayOutcome(
            gateway_reference=data.get("tx_ref", gateway_reference),
            success=success,
            raw_payload=data,
            reference=data.get("tx_ref"),
            message=data.get("processor_response"),
            **charged_amount(major_to_minor(data.get("amount")), data.get("currency")),
        )

    async def refund(
        self, gateway_reference: str, amount_minor: int, idempotency_key: str
    ) -> Dict[str, Any]:
        # Refunds are keyed by Flutterwave's numeric transaction id
        data = await self._lookup(gateway_reference)
        flw_id = data.get("id")
        if flw_id is None:
            raise PermanentGatewayError(
                f"flutterwave: no transaction for {gateway_reference}", gateway=self.name
            )
        body = await self._request(
            "POST",
            f"/transactions/{flw_id}/refund",
            json={"amount": str(minor_to_major(amount_minor))},
            headers={"Idempotency-Key": idempotency_key},
        )
        return self._unwrap(body)

    def parse_callback(
        self, body: bytes, headers: Mapping[str, str]
    ) -> Optional[GatewayOutcome]:
        signature = headers.get("verif-hash")
        if (
            not self.webhook_hash
            or not signature
            or not hmac.compare_digest(self.webhook_hash, signature)
        ):
            raise CallbackVerificationError("Invalid Flutterwave verif-hash", gateway=self.name)

        try:
            event = json.loads(body)
        except ValueError:
            raise CallbackVerificationError("Malformed Flutterwave payload", gateway=self.name)

        data = event.get("data") or {}
        if event.get("event") != "charge.completed":
            logger.info("flutterwave_event_ignored", event_type=event.get("event"))
            return None

        status = data.get("status")
        if status == "successful":
            success = True
        elif status == "failed":
            success = False
        else:
            return None

        tx_ref = data.get("tx_ref")
        if not tx_ref:
            raise CallbackVerificationError("Flutterwave event has no tx_ref", gateway=self.name)

        return GatewayOutcome(
            gateway_reference=tx_ref,
            success=success,
            raw_payload=data,
            reference=tx_ref,
            message=data.get("processor_response"),
            **charged_amount(major_to_minor(data.get("amount")), data.get("currency")),
        )
