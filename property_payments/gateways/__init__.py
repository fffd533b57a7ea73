"""Payment gateway adapters."""
from .base import CircuitBreaker, GatewayAdapter, GatewayOutcome, GatewaySession, HttpGateway
from .flutterwave import FlutterwaveGateway
from .manual import ManualGateway
from .paystack import PaystackGateway
from .registry import GatewayRegistry, build_registry
from .stripe_gateway import StripeGateway

__all__ = [
    "CircuitBreaker",
    "GatewayAdapter",
    "GatewayOutcome",
    "GatewaySession",
    "HttpGateway",
    "FlutterwaveGateway",
    "ManualGateway",
    "PaystackGateway",
    "StripeGateway",
    "GatewayRegistry",
    "build_registry",
]
