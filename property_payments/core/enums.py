"""Enumerations shared by the store, the orchestrator and the API."""
from enum import Enum


class TransactionStatus(str, Enum):
    """
    Transaction lifecycle states.

    State machine:
    PENDING → PROCESSING → COMPLETED → REFUNDED
       ↓          ↓
     FAILED ←─────┘
       ↓
    PENDING (retry)
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class TransactionType(str, Enum):
    DEPOSIT = "deposit"
    FULL_PAYMENT = "full_payment"
    INSTALLMENT = "installment"
    COMMISSION = "commission"


class PaymentMethod(str, Enum):
    CARD = "card"
    BANK_TRANSFER = "bank_transfer"
    USSD = "ussd"
    MOBILE_MONEY = "mobile_money"
    BANK_DEPOSIT = "bank_deposit"
    CRYPTO = "crypto"


class GatewayErrorType(Enum):
    """Classification of gateway errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
