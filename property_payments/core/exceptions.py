"""
Exception classes for the payment transaction engine.

Every exception carries:
1. An error code (for client handling)
2. A user message (safe to show to an operator or customer)
3. An HTTP status code (for API responses)

Creation, retry and refund failures use different codes and messages so an
operator can tell whether to retry, contact the gateway, or abandon.
"""

from typing import Any, Dict, Optional

from .enums import GatewayErrorType


class PaymentEngineError(Exception):
    """Base exception for all engine errors."""

    error_code = "payment_engine_error"
    http_status = 500
    default_user_message = "An error occurred. Please try again."

    def __init__(
        self,
        message: str,
        user_message: Optional[str] = None,
        **kwargs: Any,
    ):
        super().__init__(message)
        self.message = message
        self.user_message = user_message or self.default_user_message
        self.metadata = kwargs

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses"""
        return {
            "error": {
                "code": self.error_code,
                "message": self.user_message,
                "type": self.__class__.__name__,
            }
        }


class InvalidInput(PaymentEngineError):
    """
    Malformed creation request (non-positive amount, unknown enum value).

    Rejected before anything is persisted.
    """

    error_code = "invalid_input"
    http_status = 400

    def __init__(self, message: str, field: Optional[str] = None, **kwargs: Any):
        super().__init__(message, user_message=message, field=field, **kwargs)
        self.field = field


class TransactionNotFound(PaymentEngineError):
    error_code = "transaction_not_found"
    http_status = 404
    default_user_message = "Transaction not found."

    def __init__(self, transaction_id: Any):
        super().__init__(f"Transaction {transaction_id} not found")
        self.transaction_id = transaction_id


class InvalidState(PaymentEngineError):
    """Operation attempted against a transaction whose status does not permit it."""

    error_code = "invalid_state"
    http_status = 409

    def __init__(
        self,
        message: str,
        current_status: Optional[str] = None,
        operation: Optional[str] = None,
        **kwargs: Any,
    ):
        super().__init__(
            message,
            user_message=message,
            current_status=current_status,
            operation=operation,
            **kwargs,
        )
        self.current_status = current_status
        self.operation = operation


class TransactionNotRetryable(InvalidState):
    """The gateway rejected this transaction permanently; create a new one instead."""

    error_code = "transaction_not_retryable"


class GatewayError(PaymentEngineError):
    """Base exception for gateway adapter failures."""

    error_type = GatewayErrorType.TRANSIENT

    def __init__(
        self,
        message: str,
        gateway: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message, gateway=gateway)
        self.gateway = gateway
        self.payload = payload
        self.original_error = original_error

    @property
    def retryable(self) -> bool:
        return self.error_type == GatewayErrorType.TRANSIENT


class TransientGatewayError(GatewayError):
    """Network, timeout or 5xx failure; the transaction may be retried."""

    error_code = "gateway_unavailable"
    http_status = 502
    default_user_message = (
        "The payment gateway could not be reached. The payment failed and can be retried."
    )


class PermanentGatewayError(GatewayError):
    """The gateway explicitly rejected the payment; create a new transaction instead."""

    error_code = "gateway_rejected"
    http_status = 402
    error_type = GatewayErrorType.PERMANENT
    default_user_message = (
        "The payment gateway rejected this payment. Start a new payment or contact the gateway."
    )


class GatewayTimeout(TransientGatewayError):
    """The caller's timeout elapsed before the gateway answered; nothing was changed."""

    error_code = "gateway_timeout"
    http_status = 504
    default_user_message = (
        "The payment gateway did not answer in time. No change was made; try again."
    )


class RefundFailed(PaymentEngineError):
    """The refund call failed; the transaction remains completed."""

    error_code = "refund_failed"
    http_status = 502
    default_user_message = (
        "The refund could not be processed. The payment is still completed; request the refund again."
    )

    def __init__(self, message: str, transaction_id: Any = None, retryable: bool = True):
        super().__init__(message, transaction_id=transaction_id, retryable=retryable)
        self.transaction_id = transaction_id
        self.retryable = retryable


class CallbackVerificationError(PaymentEngineError):
    """Webhook signature or payload could not be verified."""

    error_code = "invalid_callback"
    http_status = 400
    default_user_message = "Callback could not be verified."


class LockTimeout(PaymentEngineError):
    """Another operation held the transaction for longer than the lock wait timeout."""

    error_code = "transaction_busy"
    http_status = 409
    default_user_message = "Another operation on this payment is in progress. Try again shortly."

    def __init__(self, key: str, waited_seconds: float):
        super().__init__(f"Timed out after {waited_seconds:.1f}s waiting for lock on {key}")
        self.key = key


class UnknownGateway(InvalidInput):
    def __init__(self, gateway: str):
        super().__init__(f"Unknown payment gateway: {gateway}", field="gateway")
        self.gateway = gateway
