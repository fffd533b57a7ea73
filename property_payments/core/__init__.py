"""Core transaction lifecycle logic."""
from .enums import GatewayErrorType, PaymentMethod, TransactionStatus, TransactionType
from .exceptions import (
    CallbackVerificationError,
    GatewayError,
    GatewayTimeout,
    InvalidInput,
    InvalidState,
    LockTimeout,
    PaymentEngineError,
    PermanentGatewayError,
    RefundFailed,
    TransactionNotFound,
    TransactionNotRetryable,
    TransientGatewayError,
)

__all__ = [
    "GatewayErrorType",
    "PaymentMethod",
    "TransactionStatus",
    "TransactionType",
    "CallbackVerificationError",
    "GatewayError",
    "GatewayTimeout",
    "InvalidInput",
    "InvalidState",
    "LockTimeout",
    "PaymentEngineError",
    "PermanentGatewayError",
    "RefundFailed",
    "TransactionNotFound",
    "TransactionNotRetryable",
    "TransientGatewayError",
]
