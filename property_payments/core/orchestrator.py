"""
Transaction orchestrator: the only component that changes transaction status.

Orchestrates the lifecycle:
1. Validate and persist a pending transaction (idempotent on reference)
2. Open a gateway session under a per-transaction lock
3. Apply the gateway's outcome (webhook or poll)
4. Retry failed sessions or refund settled payments

Every status change goes through TransactionStore.transition, which is a
compare-and-set on the expected status, and writes an audit event in the same
database transaction.
"""
import asyncio
import uuid
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Any, Dict, Optional, Tuple

import structlog

from property_payments.config import Settings, get_settings
from property_payments.core.enums import PaymentMethod, TransactionStatus, TransactionType
from property_payments.core.exceptions import (
    GatewayError,
    GatewayTimeout,
    InvalidInput,
    PaymentEngineError,
    RefundFailed,
    TransactionNotRetryable,
)
from property_payments.core.idempotency import ReferenceManager
from property_payments.core.locking import build_lock_manager
from property_payments.core.state_machine import require_status, validate_transition
from property_payments.database.models import MINOR_UNITS, PaymentTransaction
from property_payments.database.store import DuplicateReference, TransactionStore, utcnow
from property_payments.gateways.base import GatewayOutcome
from property_payments.gateways.registry import GatewayRegistry
from property_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

MAX_REFERENCE_ATTEMPTS = 10
# amount_minor is a signed 64-bit column
MAX_AMOUNT_MINOR = 2**63 - 1
MAX_AMOUNT = (Decimal(MAX_AMOUNT_MINOR) / MINOR_UNITS).quantize(
    Decimal("0.01"), rounding=ROUND_DOWN
)
IDENTITY_FIELDS = ("user_id", "property_id", "amount_minor", "currency", "type", "method", "gateway")


class TransactionOrchestrator:
    """
    Drives transactions through the state machine.

    Handles the complete lifecycle with per-transaction locking, caller
    timeouts on gateway calls, and classification of gateway failures.
    """

    def __init__(
        self,
        store: TransactionStore,
        registry: GatewayRegistry,
        locks: Any = None,
        references: Optional[ReferenceManager] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.registry = registry
        self.locks = locks or build_lock_manager(self.settings)
        self.references = references or ReferenceManager(store, self.settings)

    def call_timeout(self, timeout: Optional[float]) -> float:
        """Caller timeout for one gateway call, capped to end inside the lock lease."""
        timeout = self.settings.gateway_timeout_seconds if timeout is None else timeout
        max_hold = self.locks.max_hold_seconds
        if max_hold is not None and timeout > max_hold:
            logger.warning(
                "gateway_timeout_capped", requested_seconds=timeout, max_hold_seconds=max_hold
            )
            return max_hold
        return timeout

    @staticmethod
    def _parse_amount(amount: Any) -> int:
        """
        Convert a major-unit amount to minor units.

        Raises:
            InvalidInput: If amount is not a positive number with at most 2 decimals
        """
        if isinstance(amount, bool):
            raise InvalidInput("Amount must be a number", field="amount")
        try:
            value = Decimal(str(amount))
        except (InvalidOperation, ValueError):
            raise InvalidInput(f"Amount {amount!r} is not a number", field="amount")

        if not value.is_finite():
            raise InvalidInput("Amount must be a finite number", field="amount")
        if value <= 0:
            raise InvalidInput("Amount must be greater than zero", field="amount")
        if value > MAX_AMOUNT:
            raise InvalidInput(f"Amount cannot exceed {MAX_AMOUNT}", field="amount")
        if value != value.quantize(Decimal("0.01")):
            raise InvalidInput("Amount cannot have more than 2 decimal places", field="amount")
        return int(value * MINOR_UNITS)

    def _validate_request(
        self,
        user_id: str,
        property_id: str,
        amount: Any,
        currency: str,
        transaction_type: str,
        method: str,
        gateway: str,
        reference: Optional[str],
        metadata: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        """
        Normalize a creation request or reject it before anything is persisted.

        Raises:
            InvalidInput: If any field is missing or outside its allowed set
        """
        if not user_id or len(str(user_id)) > 64:
            raise InvalidInput("user_id is required (max 64 characters)", field="user_id")
        if not property_id or len(str(property_id)) > 64:
            raise InvalidInput(
                "property_id is required (max 64 characters)", field="property_id"
            )

        amount_minor = self._parse_amount(amount)

        currency = (currency or "").upper()
        if currency not in self.settings.supported_currencies:
            raise InvalidInput(
                f"Currency {currency or '(none)'} is not supported. "
                f"Use one of: {', '.join(self.settings.supported_currencies)}",
                field="currency",
            )

        try:
            transaction_type = TransactionType(transaction_type)
        except ValueError:
            raise InvalidInput(f"Unknown transaction type: {transaction_type}", field="type")

        try:
            method = PaymentMethod(method)
        except ValueError:
            raise InvalidInput(f"Unknown payment method: {method}", field="method")

        adapter = self.registry.get(gateway)
        if not adapter.supports(currency, method):
            raise InvalidInput(
                f"Gateway {gateway} does not accept {method.value} payments in {currency}",
                field="gateway",
            )

        if reference is not None:
            reference = reference.strip()
            if not reference or len(reference) > 120:
                raise InvalidInput(
                    "reference must be a non-empty string (max 120 characters)",
                    field="reference",
                )

        if metadata is not None and not isinstance(metadata, dict):
            raise InvalidInput("metadata must be an object", field="metadata")

        return {
            "user_id": str(user_id),
            "property_id": str(property_id),
            "amount_minor": amount_minor,
            "currency": currency,
            "type": transaction_type.value,
            "method": method.value,
            "gateway": adapter.name,
            "fees_minor": adapter.quote_fees(amount_minor),
            "reference": reference,
        }

    async def create_transaction(
        self,
        user_id: str,
        property_id: str,
        amount: Any,
        currency: str,
        transaction_type: str,
        method: str,
        gateway: str,
        reference: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[uuid.UUID] = None,
    ) -> PaymentTransaction:
        """
        Create a pending transaction, or return the one already under reference.

        Args:
            amount: Major units (e.g. Decimal("5000.00")); stored as minor units
            reference: Idempotency key; generated as PROP-{property_id}-{n} if omitted

        Raises:
            InvalidInput: If validation fails (nothing is persisted)
        """
        correlation_id = correlation_id or uuid.uuid4()
        fields = self._validate_request(
            user_id, property_id, amount, currency, transaction_type, method, gateway,
            reference, metadata,
        )
        reference = fields.pop("reference")

        logger.info(
            "transaction_creation_started",
            correlation_id=str(correlation_id),
            reference=reference,
            amount_minor=fields["amount_minor"],
            currency=fields["currency"],
            gateway=fields["gateway"],
        )

        if reference is not None:
            existing = await self.references.lookup(reference)
            if existing is not None:
                return self._idempotent_return(existing, fields, correlation_id)
            try:
                transaction = await self._insert(
                    reference, fields, description, metadata, correlation_id
                )
            except DuplicateReference:
                # Lost a creation race to an identical request
                existing = await self.store.get_by_reference(reference)
                return self._idempotent_return(existing, fields, correlation_id)
        else:
            transaction = await self._insert_with_generated_reference(
                fields, description, metadata, correlation_id
            )

        await self.references.remember(transaction.reference, transaction.id)
        metrics.record_transaction_created(
            transaction.gateway, transaction.currency, transaction.type, transaction.amount_minor
        )
        logger.info(
            "transaction_created",
            correlation_id=str(correlation_id),
            transaction_id=str(transaction.id),
            reference=transaction.reference,
        )
        return transaction

    async def _insert(
        self,
        reference: str,
        fields: Dict[str, Any],
        description: Optional[str],
        metadata: Optional[Dict[str, Any]],
        correlation_id: uuid.UUID,
    ) -> PaymentTransaction:
        transaction = PaymentTransaction(
            id=uuid.uuid4(),
            reference=reference,
            description=description,
            extra=metadata,
            status=TransactionStatus.PENDING.value,
            retryable=True,
            attempts=0,
            **fields,
        )
        return await self.store.insert(transaction, correlation_id=correlation_id)

    async def _insert_with_generated_reference(
        self,
        fields: Dict[str, Any],
        description: Optional[str],
        metadata: Optional[Dict[str, Any]],
        correlation_id: uuid.UUID,
    ) -> PaymentTransaction:
        for offset in range(MAX_REFERENCE_ATTEMPTS):
            reference = await self.references.next_reference(fields["property_id"], offset)
            try:
                return await self._insert(reference, fields, description, metadata, correlation_id)
            except DuplicateReference:
                logger.info("generated_reference_taken", reference=reference)
        raise PaymentEngineError(
            f"Could not allocate a reference for property {fields['property_id']}"
        )

    @staticmethod
    def _idempotent_return(
        existing: PaymentTransaction, fields: Dict[str, Any], correlation_id: uuid.UUID
    ) -> PaymentTransaction:
        mismatched = [
            name for name in IDENTITY_FIELDS if getattr(existing, name) != fields[name]
        ]
        if mismatched:
            logger.warning(
                "reference_reused_with_different_fields",
                correlation_id=str(correlation_id),
                reference=existing.reference,
                fields=mismatched,
            )
        logger.info(
            "transaction_idempotent_return",
            correlation_id=str(correlation_id),
            transaction_id=str(existing.id),
            reference=existing.reference,
        )
        return existing

    async def _transition(
        self,
        transaction: PaymentTransaction,
        new_status: TransactionStatus,
        event_type: str,
        event_data: Dict[str, Any],
        correlation_id: uuid.UUID,
        **changes: Any,
    ) -> PaymentTransaction:
        validate_transition(transaction.status, new_status, event_type)
        updated = await self.store.transition(
            transaction.id,
            TransactionStatus(transaction.status),
            new_status,
            event_type,
            event_data=event_data,
            correlation_id=correlation_id,
            **changes,
        )
        metrics.record_transition(transaction.status, new_status.value)
        return updated

    async def initialize_gateway_session(
        self,
        transaction_id: uuid.UUID,
        timeout: Optional[float] = None,
        correlation_id: Optional[uuid.UUID] = None,
    ) -> PaymentTransaction:
        """
        Open a gateway charge session for a pending transaction.

        Raises:
            InvalidState: If the transaction is not pending
            GatewayTimeout: If the gateway did not answer in time (still pending)
            TransientGatewayError: Recorded as failed, retryable
            PermanentGatewayError: Recorded as failed, not retryable
        """
        correlation_id = correlation_id or uuid.uuid4()
        async with self.locks.acquire(str(transaction_id)):
            transaction = await self.store.get_or_raise(transaction_id)
            require_status(transaction.status, TransactionStatus.PENDING, "initialize")
            return await self._initialize_locked(transaction, timeout, correlation_id)

    async def _initialize_locked(
        self,
        transaction: PaymentTransaction,
        timeout: Optional[float],
        correlation_id: uuid.UUID,
    ) -> PaymentTransaction:
        adapter = self.registry.get(transaction.gateway)
        metadata = dict(transaction.extra or {})
        metadata.setdefault("payment_method", transaction.method)
        metadata.setdefault("transaction_id", str(transaction.id))
        attempt = transaction.attempts + 1
        timeout = self.call_timeout(timeout)

        logger.info(
            "gateway_session_initializing",
            correlation_id=str(correlation_id),
            transaction_id=str(transaction.id),
            reference=transaction.reference,
            gateway=adapter.name,
            attempt=attempt,
        )

        try:
            session = await asyncio.wait_for(
                adapter.initialize(
                    transaction.reference,
                    transaction.amount_minor,
                    transaction.currency,
                    metadata,
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            metrics.record_gateway_error(adapter.name, "timeout")
            logger.warning(
                "gateway_session_timeout",
                correlation_id=str(correlation_id),
                transaction_id=str(transaction.id),
                gateway=adapter.name,
            )
            await self.store.record_event(
                transaction.id,
                "gateway.initialize_timeout",
                {"gateway": adapter.name, "timeout": timeout},
                correlation_id,
                status=transaction.status,
            )
            raise GatewayTimeout(
                f"{adapter.name} did not open a session for {transaction.reference} in time",
                gateway=adapter.name,
            )
        except GatewayError as e:
            metrics.record_gateway_error(adapter.name, e.error_type.value)
            logger.error(
                "gateway_session_failed",
                correlation_id=str(correlation_id),
                transaction_id=str(transaction.id),
                gateway=adapter.name,
                error=str(e),
                error_type=e.error_type.value,
            )
            await self._transition(
                transaction,
                TransactionStatus.FAILED,
                "transaction.failed",
                {"operation": "initialize", "error": str(e), "error_type": e.error_type.value},
                correlation_id,
                failure_reason=str(e),
                retryable=e.retryable,
                gateway_response=e.payload or {"error": str(e)},
                attempts=attempt,
            )
            raise

        processing = await self._transition(
            transaction,
            TransactionStatus.PROCESSING,
            "transaction.processing",
            {"gateway_reference": session.gateway_reference, "attempt": attempt},
            correlation_id,
            gateway_reference=session.gateway_reference,
            gateway_response={"authorization_url": session.authorization_url, **session.raw},
            failure_reason=None,
            attempts=attempt,
        )
        logger.info(
            "gateway_session_opened",
            correlation_id=str(correlation_id),
            transaction_id=str(transaction.id),
            gateway_reference=session.gateway_reference,
        )
        return processing

    async def apply_gateway_outcome(
        self,
        transaction_id: uuid.UUID,
        outcome: GatewayOutcome,
        correlation_id: Optional[uuid.UUID] = None,
    ) -> PaymentTransaction:
        """
        Record a gateway result against a processing transaction.

        Outcomes for transactions in any other status (duplicate or late
        callbacks) are discarded and the record is returned unchanged.
        """
        correlation_id = correlation_id or uuid.uuid4()
        async with self.locks.acquire(str(transaction_id)):
            transaction = await self.store.get_or_raise(transaction_id)
            return await self._apply_outcome_locked(transaction, outcome, correlation_id)

    async def _apply_outcome_locked(
        self,
        transaction: PaymentTransaction,
        outcome: GatewayOutcome,
        correlation_id: uuid.UUID,
    ) -> PaymentTransaction:
        if transaction.status != TransactionStatus.PROCESSING.value:
            return await self._discard_outcome(
                transaction, outcome, f"status_{transaction.status}", correlation_id
            )
        if transaction.gateway_reference and outcome.gateway_reference != transaction.gateway_reference:
            return await self._discard_outcome(
                transaction, outcome, "gateway_reference_mismatch", correlation_id
            )
        if outcome.success:
            mismatch = outcome.charge_mismatch(transaction.amount_minor, transaction.currency)
            if mismatch:
                return await self._discard_outcome(transaction, outcome, mismatch, correlation_id)

        if outcome.success:
            updated = await self._transition(
                transaction,
                TransactionStatus.COMPLETED,
                "transaction.completed",
                {"gateway_reference": outcome.gateway_reference},
                correlation_id,
                gateway_response=outcome.raw_payload,
                completed_at=utcnow(),
            )
        else:
            reason = outcome.message or "Payment was declined by the gateway"
            updated = await self._transition(
                transaction,
                TransactionStatus.FAILED,
                "transaction.failed",
                {"operation": "settlement", "error": reason},
                correlation_id,
                gateway_response=outcome.raw_payload,
                failure_reason=reason,
                retryable=True,
            )

        logger.info(
            "gateway_outcome_applied",
            correlation_id=str(correlation_id),
            transaction_id=str(transaction.id),
            success=outcome.success,
            status=updated.status,
        )
        return updated

    async def _discard_outcome(
        self,
        transaction: PaymentTransaction,
        outcome: GatewayOutcome,
        reason: str,
        correlation_id: uuid.UUID,
    ) -> PaymentTransaction:
        metrics.record_outcome_discarded(transaction.gateway, reason)
        logger.warning(
            "gateway_outcome_discarded",
            correlation_id=str(correlation_id),
            transaction_id=str(transaction.id),
            status=transaction.status,
            reason=reason,
            outcome_gateway_reference=outcome.gateway_reference,
        )
        await self.store.record_event(
            transaction.id,
            "gateway.outcome_discarded",
            {
                "reason": reason,
                "success": outcome.success,
                "gateway_reference": outcome.gateway_reference,
                "amount_minor": outcome.amount_minor,
                "currency": outcome.currency,
            },
            correlation_id,
            status=transaction.status,
        )
        return transaction

    async def find_for_outcome(
        self, gateway: str, outcome: GatewayOutcome
    ) -> Optional[PaymentTransaction]:
        """Locate the transaction a callback refers to: gateway reference first, then our reference."""
        transaction = await self.store.get_by_gateway_reference(gateway, outcome.gateway_reference)
        if transaction is None:
            for candidate in (outcome.reference, outcome.gateway_reference):
                if not candidate:
                    continue
                transaction = await self.store.get_by_reference(candidate)
                if transaction is not None and transaction.gateway == gateway:
                    return transaction
            return None
        return transaction

    async def apply_callback(
        self,
        gateway: str,
        outcome: GatewayOutcome,
        correlation_id: Optional[uuid.UUID] = None,
    ) -> Tuple[Optional[PaymentTransaction], bool]:
        """
        Apply a verified webhook outcome.

        Returns:
            (transaction, applied): transaction is None for stray callbacks;
            applied is False when the outcome was discarded
        """
        correlation_id = correlation_id or uuid.uuid4()
        transaction = await self.find_for_outcome(gateway, outcome)
        if transaction is None:
            logger.warning(
                "callback_for_unknown_transaction",
                correlation_id=str(correlation_id),
                gateway=gateway,
                gateway_reference=outcome.gateway_reference,
            )
            return None, False

        async with self.locks.acquire(str(transaction.id)):
            current = await self.store.get_or_raise(transaction.id)
            updated = await self._apply_outcome_locked(current, outcome, correlation_id)
            return updated, updated.status != current.status

    async def verify_transaction(
        self,
        transaction_id: uuid.UUID,
        timeout: Optional[float] = None,
        correlation_id: Optional[uuid.UUID] = None,
    ) -> PaymentTransaction:
        """
        Poll the gateway for a processing transaction's result.

        An undecided gateway answer, or a transaction that is not processing,
        leaves the record untouched.

        Raises:
            GatewayTimeout: If the gateway did not answer in time
            GatewayError: If the verification call itself failed
        """
        correlation_id = correlation_id or uuid.uuid4()
        async with self.locks.acquire(str(transaction_id)):
            transaction = await self.store.get_or_raise(transaction_id)
            if transaction.status != TransactionStatus.PROCESSING.value:
                logger.info(
                    "verification_skipped",
                    transaction_id=str(transaction.id),
                    status=transaction.status,
                )
                return transaction

            adapter = self.registry.get(transaction.gateway)
            try:
                outcome = await asyncio.wait_for(
                    adapter.verify(transaction.gateway_reference or transaction.reference),
                    timeout=self.call_timeout(timeout),
                )
            except asyncio.TimeoutError:
                metrics.record_gateway_error(adapter.name, "timeout")
                raise GatewayTimeout(
                    f"{adapter.name} did not answer verification for {transaction.reference} in time",
                    gateway=adapter.name,
                )
            except GatewayError as e:
                metrics.record_gateway_error(adapter.name, e.error_type.value)
                logger.warning(
                    "verification_failed",
                    correlation_id=str(correlation_id),
                    transaction_id=str(transaction.id),
                    error=str(e),
                )
                raise

            if outcome is None:
                logger.info(
                    "verification_undecided",
                    correlation_id=str(correlation_id),
                    transaction_id=str(transaction.id),
                )
                return transaction
            return await self._apply_outcome_locked(transaction, outcome, correlation_id)

    async def retry_transaction(
        self,
        transaction_id: uuid.UUID,
        timeout: Optional[float] = None,
        correlation_id: Optional[uuid.UUID] = None,
    ) -> PaymentTransaction:
        """
        Reopen a failed transaction and start a new gateway session.

        The reference, amount and currency are unchanged so the gateway can
        deduplicate on reference.

        Raises:
            InvalidState: If the transaction is not failed
            TransactionNotRetryable: If the gateway rejected it permanently
        """
        correlation_id = correlation_id or uuid.uuid4()
        async with self.locks.acquire(str(transaction_id)):
            transaction = await self.store.get_or_raise(transaction_id)
            require_status(transaction.status, TransactionStatus.FAILED, "retry")
            if not transaction.retryable:
                raise TransactionNotRetryable(
                    f"Transaction {transaction.reference} was rejected by {transaction.gateway} "
                    "and cannot be retried; create a new transaction instead",
                    current_status=transaction.status,
                    operation="retry",
                )

            pending = await self._transition(
                transaction,
                TransactionStatus.PENDING,
                "transaction.retried",
                {"previous_failure": transaction.failure_reason, "attempt": transaction.attempts + 1},
                correlation_id,
                gateway_reference=None,
            )
            logger.info(
                "transaction_retry_started",
                correlation_id=str(correlation_id),
                transaction_id=str(transaction.id),
                attempt=transaction.attempts + 1,
            )
            return await self._initialize_locked(pending, timeout, correlation_id)

    async def request_refund(
        self,
        transaction_id: uuid.UUID,
        timeout: Optional[float] = None,
        correlation_id: Optional[uuid.UUID] = None,
    ) -> PaymentTransaction:
        """
        Refund a completed transaction in full.

        A failed refund is never retried automatically.

        Raises:
            InvalidState: If the transaction is not completed
            RefundFailed: If the gateway refund failed or timed out (still completed)
        """
        correlation_id = correlation_id or uuid.uuid4()
        async with self.locks.acquire(str(transaction_id)):
            transaction = await self.store.get_or_raise(transaction_id)
            require_status(transaction.status, TransactionStatus.COMPLETED, "refund")

            adapter = self.registry.get(transaction.gateway)
            idempotency_key = f"refund:{transaction.reference}"

            logger.info(
                "refund_started",
                correlation_id=str(correlation_id),
                transaction_id=str(transaction.id),
                amount_minor=transaction.amount_minor,
            )

            try:
                result = await asyncio.wait_for(
                    adapter.refund(
                        transaction.gateway_reference or transaction.reference,
                        transaction.amount_minor,
                        idempotency_key,
                    ),
                    timeout=self.call_timeout(timeout),
                )
            except asyncio.TimeoutError:
                await self._refund_failed(transaction, "timeout", correlation_id)
                raise RefundFailed(
                    f"{adapter.name} did not confirm the refund of {transaction.reference} in time",
                    transaction_id=transaction.id,
                )
            except GatewayError as e:
                await self._refund_failed(transaction, str(e), correlation_id)
                raise RefundFailed(
                    f"Refund of {transaction.reference} failed: {e}",
                    transaction_id=transaction.id,
                    retryable=e.retryable,
                ) from e

            refunded = await self._transition(
                transaction,
                TransactionStatus.REFUNDED,
                "transaction.refunded",
                {"idempotency_key": idempotency_key, "refund": result},
                correlation_id,
                refunded_at=utcnow(),
            )
            metrics.record_refund(adapter.name, "refunded")
            logger.info(
                "refund_completed",
                correlation_id=str(correlation_id),
                transaction_id=str(transaction.id),
            )
            return refunded

    async def _refund_failed(
        self, transaction: PaymentTransaction, error: str, correlation_id: uuid.UUID
    ) -> None:
        metrics.record_refund(transaction.gateway, "failed")
        logger.error(
            "refund_failed",
            correlation_id=str(correlation_id),
            transaction_id=str(transaction.id),
            error=error,
        )
        await self.store.record_event(
            transaction.id,
            "refund.failed",
            {"error": error},
            correlation_id,
            status=transaction.status,
        )
