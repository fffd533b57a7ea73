"""SQLAlchemy database models for the payment transaction engine."""
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Minor units per major unit for every supported currency (kobo, cents).
MINOR_UNIT_EXPONENT = 2
MINOR_UNITS = Decimal(10) ** MINOR_UNIT_EXPONENT

JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class PaymentTransaction(Base):
    """
    Payment transaction records table.

    One row per transaction reference. Financial fields are written once at
    creation; only the lifecycle columns change afterwards, and rows are
    never deleted.
    """

    __tablename__ = "payment_transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    reference: Mapped[str] = mapped_column(String(120), unique=True, nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    property_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    method: Mapped[str] = mapped_column(String(32), nullable=False)
    gateway: Mapped[str] = mapped_column(String(32), nullable=False)
    fees_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    extra: Mapped[Dict[str, Any] | None] = mapped_column("metadata", JSONType, nullable=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    gateway_reference: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    gateway_response: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    retryable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    __table_args__ = (
        CheckConstraint("amount_minor > 0", name="positive_amount"),
        CheckConstraint("fees_minor >= 0", name="non_negative_fees"),
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed', 'refunded')",
            name="valid_status",
        ),
        CheckConstraint("length(currency) = 3", name="valid_currency"),
        Index("idx_transactions_user_status", "user_id", "status"),
        Index("idx_transactions_gateway_ref", "gateway", "gateway_reference"),
    )

    @property
    def amount(self) -> Decimal:
        """Amount in major units."""
        return Decimal(self.amount_minor) / MINOR_UNITS

    @property
    def fees(self) -> Decimal:
        return Decimal(self.fees_minor) / MINOR_UNITS

    def __repr__(self) -> str:
        """String representation of PaymentTransaction."""
        return (
            f"<PaymentTransaction(id={self.id}, reference={self.reference}, "
            f"amount={self.amount_minor}, status={self.status})>"
        )


class TransactionEvent(Base):
    """
    Transaction events audit trail table.

    Stores every transition (and every discarded gateway outcome) for a
    complete audit trail. Immutable once written.
    """

    __tablename__ = "transaction_events"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    transaction_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    from_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    to_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    event_data: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    correlation_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )

    __table_args__ = (
        Index("idx_transaction_events_type", "event_type"),
    )

    def __repr__(self) -> str:
        """String representation of TransactionEvent."""
        return (
            f"<TransactionEvent(id={self.id}, transaction_id={self.transaction_id}, "
            f"type={self.event_type})>"
        )
