"""
Pydantic schemas for API request/response models.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from property_payments.core.formatting import format_amount
from property_payments.database.models import PaymentTransaction, TransactionEvent


class CreateTransactionRequest(BaseModel):
    """Request schema for creating a transaction."""

    user_id: str = Field(..., description="Payer identifier")
    property_id: str = Field(..., description="Property identifier")
    amount: Decimal = Field(..., description="Amount in major units (naira, dollars)")
    currency: str = Field(..., description="Currency code (NGN or USD)")
    type: str = Field(..., description="deposit, full_payment, installment or commission")
    method: str = Field(..., description="card, bank_transfer, ussd, mobile_money, bank_deposit or crypto")
    gateway: str = Field(..., description="Registered gateway name")
    reference: Optional[str] = Field(
        default=None, description="Idempotency key; generated as PROP-{property_id}-{n} if omitted"
    )
    description: Optional[str] = Field(default=None, max_length=500)
    metadata: Optional[Dict[str, Any]] = Field(
        default=None, description="Passed to the gateway (customer email, name, phone)"
    )

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        return v.upper()

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "user_id": "user-17",
                    "property_id": "42",
                    "amount": "500000",
                    "currency": "NGN",
                    "type": "deposit",
                    "method": "bank_transfer",
                    "gateway": "paystack",
                    "reference": "PROP-42",
                    "metadata": {"email": "buyer@example.com", "name": "Ada Obi"},
                }
            ]
        }
    }


class TransactionResponse(BaseModel):
    """Response schema for a transaction."""

    id: UUID
    reference: str
    user_id: str
    property_id: str
    amount: Decimal
    amount_minor: int
    amount_display: str = Field(..., description="Formatted amount, e.g. ₦500,000")
    fees: Decimal
    fees_minor: int
    currency: str
    type: str
    method: str
    gateway: str
    description: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    status: str
    gateway_reference: Optional[str] = None
    authorization_url: Optional[str] = Field(
        default=None, description="Hosted checkout URL once a gateway session is open"
    )
    failure_reason: Optional[str] = None
    retryable: bool
    attempts: int
    completed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_transaction(cls, transaction: PaymentTransaction) -> "TransactionResponse":
        gateway_response = transaction.gateway_response or {}
        return cls(
            id=transaction.id,
            reference=transaction.reference,
            user_id=transaction.user_id,
            property_id=transaction.property_id,
            amount=transaction.amount,
            amount_minor=transaction.amount_minor,
            amount_display=format_amount(transaction.amount, transaction.currency),
            fees=transaction.fees,
            fees_minor=transaction.fees_minor,
            currency=transaction.currency,
            type=transaction.type,
            method=transaction.method,
            gateway=transaction.gateway,
            description=transaction.description,
            metadata=transaction.extra,
            status=transaction.status,
            gateway_reference=transaction.gateway_reference,
            authorization_url=gateway_response.get("authorization_url"),
            failure_reason=transaction.failure_reason,
            retryable=transaction.retryable,
            attempts=transaction.attempts,
            completed_at=transaction.completed_at,
            refunded_at=transaction.refunded_at,
            created_at=transaction.created_at,
            updated_at=transaction.updated_at,
        )


class TransactionListResponse(BaseModel):
    transactions: List[TransactionResponse]
    count: int


class ReceiptResponse(BaseModel):
    """Response schema for a receipt."""

    receipt_id: str
    transaction_id: str
    reference: str
    content: str
    checksum: str = Field(..., description="SHA-256 of content")
    download_url: str
    filename: str


class WebhookResponse(BaseModel):
    """Response schema for webhook processing."""

    status: str = Field(..., description="applied or ignored")
    reason: Optional[str] = None
    transaction_id: Optional[str] = None
    transaction_status: Optional[str] = None


class BucketResponse(BaseModel):
    count: int
    amounts: Dict[str, Decimal]


class StatisticsResponse(BaseModel):
    """Response schema for transaction statistics."""

    user_id: Optional[str] = None
    total_count: int
    total_amount: Dict[str, Decimal]
    settled_amount: Dict[str, Decimal]
    fees: Dict[str, Decimal]
    by_status: Dict[str, BucketResponse]
    by_method: Dict[str, BucketResponse]
    by_type: Dict[str, BucketResponse]


class GatewayInfoResponse(BaseModel):
    name: str
    supported_currencies: List[str]
    supported_methods: List[str]
    fee_percentage: float
    fixed_fee_minor: int


class TransactionEventResponse(BaseModel):
    """Response schema for an audit trail entry."""

    id: int
    event_type: str
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    event_data: Dict[str, Any]
    correlation_id: Optional[UUID] = None
    created_at: datetime

    @classmethod
    def from_event(cls, event: TransactionEvent) -> "TransactionEventResponse":
        return cls(
            id=event.id,
            event_type=event.event_type,
            from_status=event.from_status,
            to_status=event.to_status,
            event_data=event.event_data or {},
            correlation_id=event.correlation_id,
            created_at=event.created_at,
        )


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")


class ErrorDetail(BaseModel):
    code: str
    message: str
    type: str


class ErrorResponse(BaseModel):
    """Error body returned for every engine error."""

    error: ErrorDetail
