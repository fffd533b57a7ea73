"""
Durable keyed storage for payment transactions.

The store is pure CRUD plus queries. It knows nothing about gateways or
business rules beyond two guarantees it enforces itself:

1. Financial and identity columns are never updated after insert.
2. A status change is a compare-and-set: the UPDATE only matches when the row
   is still in the status the caller last saw, and the audit event is written
   in the same database transaction.
"""
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from property_payments.core.enums import TransactionStatus
from property_payments.core.exceptions import InvalidState, TransactionNotFound
from property_payments.database.connection import get_session_factory
from property_payments.database.models import PaymentTransaction, TransactionEvent

logger = structlog.get_logger(__name__)

AGGREGATE_DIMENSIONS = ("status", "method", "type")


class DuplicateReference(Exception):
    """Raised when inserting a transaction whose reference already exists."""

    def __init__(self, reference: str):
        super().__init__(f"Reference {reference} already exists")
        self.reference = reference


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransactionStore:
    """
    Transaction repository backed by an async SQLAlchemy session factory.

    Every public method opens its own session, so each write is one atomic
    database transaction.
    """

    MUTABLE_FIELDS = frozenset(
        {
            "gateway_reference",
            "gateway_response",
            "failure_reason",
            "retryable",
            "attempts",
            "completed_at",
            "refunded_at",
        }
    )

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_factory = session_factory

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    @staticmethod
    def _build_event(
        transaction_id: uuid.UUID,
        event_type: str,
        from_status: Optional[str],
        to_status: Optional[str],
        event_data: Optional[Dict[str, Any]],
        correlation_id: Optional[uuid.UUID],
    ) -> TransactionEvent:
        return TransactionEvent(
            transaction_id=transaction_id,
            event_type=event_type,
            from_status=from_status,
            to_status=to_status,
            event_data=event_data or {},
            correlation_id=correlation_id,
            created_at=utcnow(),
        )

    async def insert(
        self,
        transaction: PaymentTransaction,
        correlation_id: Optional[uuid.UUID] = None,
    ) -> PaymentTransaction:
        """
        Persist a new transaction together with its creation event.

        Raises:
            DuplicateReference: If the reference is already taken
        """
        now = utcnow()
        if transaction.id is None:
            transaction.id = uuid.uuid4()
        transaction.created_at = now
        transaction.updated_at = now

        async with self.session_factory() as session:
            session.add(transaction)
            session.add(
                self._build_event(
                    transaction.id,
                    "transaction.created",
                    None,
                    transaction.status,
                    {
                        "reference": transaction.reference,
                        "amount_minor": transaction.amount_minor,
                        "currency": transaction.currency,
                        "gateway": transaction.gateway,
                    },
                    correlation_id,
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise DuplicateReference(transaction.reference)

        logger.info(
            "transaction_inserted",
            transaction_id=str(transaction.id),
            reference=transaction.reference,
        )
        return transaction

    async def get(self, transaction_id: uuid.UUID) -> Optional[PaymentTransaction]:
        async with self.session_factory() as session:
            return await session.get(PaymentTransaction, transaction_id)

    async def get_or_raise(self, transaction_id: uuid.UUID) -> PaymentTransaction:
        transaction = await self.get(transaction_id)
        if transaction is None:
            raise TransactionNotFound(transaction_id)
        return transaction

    async def get_by_reference(self, reference: str) -> Optional[PaymentTransaction]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(PaymentTransaction).where(PaymentTransaction.reference == reference)
            )
            return result.scalar_one_or_none()

    async def get_by_gateway_reference(
        self, gateway: str, gateway_reference: str
    ) -> Optional[PaymentTransaction]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(PaymentTransaction).where(
                    PaymentTransaction.gateway == gateway,
                    PaymentTransaction.gateway_reference == gateway_reference,
                )
            )
            return result.scalars().first()

    async def list_by_user(
        self,
        user_id: str,
        status: Optional[TransactionStatus] = None,
        limit: Optional[int] = None,
    ) -> List[PaymentTransaction]:
        """User's transactions, newest first."""
        stmt = select(PaymentTransaction).where(PaymentTransaction.user_id == user_id)
        if status is not None:
            stmt = stmt.where(PaymentTransaction.status == TransactionStatus(status).value)
        stmt = stmt.order_by(PaymentTransaction.created_at.desc())
        if limit:
            stmt = stmt.limit(limit)

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def list_by_status(
        self,
        status: TransactionStatus,
        updated_before: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[PaymentTransaction]:
        """Transactions in a status, oldest update first."""
        stmt = select(PaymentTransaction).where(
            PaymentTransaction.status == TransactionStatus(status).value
        )
        if updated_before is not None:
            stmt = stmt.where(PaymentTransaction.updated_at < updated_before)
        stmt = stmt.order_by(PaymentTransaction.updated_at.asc())
        if limit:
            stmt = stmt.limit(limit)

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def count_for_property(self, property_id: str) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                select(func.count(PaymentTransaction.id)).where(
                    PaymentTransaction.property_id == property_id
                )
            )
            return int(result.scalar() or 0)

    async def transition(
        self,
        transaction_id: uuid.UUID,
        expected_status: TransactionStatus,
        new_status: TransactionStatus,
        event_type: str,
        event_data: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[uuid.UUID] = None,
        **changes: Any,
    ) -> PaymentTransaction:
        """
        Move a transaction from expected_status to new_status in one write.

        Raises:
            ValueError: If changes name an immutable column
            TransactionNotFound: If the transaction does not exist
            InvalidState: If the stored status is no longer expected_status
        """
        forbidden = set(changes) - self.MUTABLE_FIELDS
        if forbidden:
            raise ValueError(f"Immutable transaction fields cannot be updated: {sorted(forbidden)}")

        expected = TransactionStatus(expected_status).value
        target = TransactionStatus(new_status).value

        async with self.session_factory() as session:
            result = await session.execute(
                update(PaymentTransaction)
                .where(
                    PaymentTransaction.id == transaction_id,
                    PaymentTransaction.status == expected,
                )
                .values(status=target, updated_at=utcnow(), **changes)
                .execution_options(synchronize_session=False)
            )

            if result.rowcount != 1:
                await session.rollback()
                current = await session.get(PaymentTransaction, transaction_id)
                if current is None:
                    raise TransactionNotFound(transaction_id)
                logger.warning(
                    "transaction_transition_conflict",
                    transaction_id=str(transaction_id),
                    expected_status=expected,
                    current_status=current.status,
                    new_status=target,
                )
                raise InvalidState(
                    f"Transaction is {current.status}, expected {expected}",
                    current_status=current.status,
                    operation=event_type,
                )

            session.add(
                self._build_event(
                    transaction_id, event_type, expected, target, event_data, correlation_id
                )
            )
            await session.commit()

            refreshed = await session.execute(
                select(PaymentTransaction).where(PaymentTransaction.id == transaction_id)
            )
            transaction = refreshed.scalar_one()

        logger.info(
            "transaction_transitioned",
            transaction_id=str(transaction_id),
            from_status=expected,
            to_status=target,
            event_type=event_type,
        )
        return transaction

    async def record_event(
        self,
        transaction_id: uuid.UUID,
        event_type: str,
        event_data: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[uuid.UUID] = None,
        status: Optional[str] = None,
    ) -> None:
        """Append an audit event without touching the transaction row."""
        async with self.session_factory() as session:
            session.add(
                self._build_event(
                    transaction_id, event_type, status, status, event_data, correlation_id
                )
            )
            await session.commit()

    async def list_events(self, transaction_id: uuid.UUID) -> List[TransactionEvent]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(TransactionEvent)
                .where(TransactionEvent.transaction_id == transaction_id)
                .order_by(TransactionEvent.id.asc())
            )
            return list(result.scalars().all())

    async def aggregate(self, *dimensions: str, user_id: Optional[str] = None) -> Sequence[Any]:
        """
        Count and sum transactions grouped by one or more columns and currency.

        All groupings come from one statement, so they describe the same
        snapshot of the table.

        Args:
            dimensions: Any of "status", "method", "type"
            user_id: Restrict to one owner; None aggregates everything

        Returns:
            Rows of (*dimensions, currency, tx_count, amount_minor, fees_minor)
        """
        if not dimensions or any(d not in AGGREGATE_DIMENSIONS for d in dimensions):
            raise ValueError(f"Cannot aggregate by {dimensions}")

        columns = [getattr(PaymentTransaction, d).label(d) for d in dimensions]
        stmt = select(
            *columns,
            PaymentTransaction.currency.label("currency"),
            func.count(PaymentTransaction.id).label("tx_count"),
            func.coalesce(func.sum(PaymentTransaction.amount_minor), 0).label("amount_minor"),
            func.coalesce(func.sum(PaymentTransaction.fees_minor), 0).label("fees_minor"),
        )
        if user_id is not None:
            stmt = stmt.where(PaymentTransaction.user_id == user_id)
        stmt = stmt.group_by(
            *(getattr(PaymentTransaction, d) for d in dimensions), PaymentTransaction.currency
        )

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return result.all()
