"""Name → adapter lookup built from settings."""
from typing import Any, Dict, Iterable, List, Optional

import httpx
import structlog

from property_payments.config import Settings, get_settings
from property_payments.core.exceptions import UnknownGateway
from property_payments.gateways.base import GatewayAdapter
from property_payments.gateways.flutterwave import FlutterwaveGateway
from property_payments.gateways.manual import ManualGateway
from property_payments.gateways.paystack import PaystackGateway
from property_payments.gateways.stripe_gateway import StripeGateway

logger = structlog.get_logger(__name__)


class GatewayRegistry:
    """The set of gateways a transaction may name."""

    def __init__(self, adapters: Iterable[GatewayAdapter] = ()):
        self._adapters: Dict[str, GatewayAdapter] = {}
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: GatewayAdapter) -> None:
        self._adapters[adapter.name] = adapter

    def get(self, name: str) -> GatewayAdapter:
        """
        Raises:
            UnknownGateway: If no adapter is registered under name
        """
        try:
            return self._adapters[name]
        except KeyError:
            raise UnknownGateway(name)

    def __contains__(self, name: object) -> bool:
        return name in self._adapters

    def names(self) -> List[str]:
        return sorted(self._adapters)

    def adapters(self) -> List[GatewayAdapter]:
        return [self._adapters[name] for name in self.names()]

    def describe(self) -> List[Dict[str, Any]]:
        return [adapter.describe() for adapter in self.adapters()]

    async def close(self) -> None:
        for adapter in self._adapters.values():
            await adapter.close()


def build_registry(
    settings: Optional[Settings] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> GatewayRegistry:
    """
    Register every enabled gateway that has credentials.

    Gateways listed in gateways_enabled without a secret key are skipped with
    a warning, so transactions can never be created against them.
    """
    settings = settings or get_settings()
    registry = GatewayRegistry()

    for name in settings.gateways_enabled:
        name = name.strip().lower()
        if name == "paystack":
            if not settings.paystack_secret_key:
                logger.warning("gateway_not_configured", gateway=name)
                continue
            registry.register(PaystackGateway(settings, http_client=http_client))
        elif name == "flutterwave":
            if not settings.flutterwave_secret_key:
                logger.warning("gateway_not_configured", gateway=name)
                continue
            registry.register(FlutterwaveGateway(settings, http_client=http_client))
        elif name == "stripe":
            if not settings.stripe_secret_key:
                logger.warning("gateway_not_configured", gateway=name)
                continue
            registry.register(StripeGateway(settings))
        elif name == "manual":
            registry.register(ManualGateway(settings))
        else:
            logger.warning("unknown_gateway_in_settings", gateway=name)

    logger.info("gateway_registry_built", gateways=registry.names())
    return registry
