"""
Caller-facing operations of the payment engine.

PaymentEngine wires the store, gateway registry, orchestrator, receipt
generator and reporter together. The HTTP API and the verification worker
both talk to the engine rather than to the components directly.
"""
import time
import uuid
from typing import Any, Dict, List, Mapping, Optional, Tuple

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from property_payments.config import Settings, get_settings
from property_payments.core.enums import TransactionStatus
from property_payments.core.exceptions import CallbackVerificationError, TransactionNotFound
from property_payments.core.idempotency import ReferenceManager
from property_payments.core.locking import build_lock_manager
from property_payments.core.orchestrator import TransactionOrchestrator
from property_payments.core.receipts import Receipt, ReceiptGenerator
from property_payments.core.reporting import ReconciliationReport, ReconciliationReporter
from property_payments.database.connection import create_engine_from_settings, create_session_factory
from property_payments.database.models import PaymentTransaction, TransactionEvent
from property_payments.database.store import TransactionStore
from property_payments.gateways.registry import GatewayRegistry, build_registry
from property_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def parse_transaction_id(transaction_id: Any) -> uuid.UUID:
    """
    Raises:
        TransactionNotFound: If the value is not a UUID
    """
    if isinstance(transaction_id, uuid.UUID):
        return transaction_id
    try:
        return uuid.UUID(str(transaction_id))
    except ValueError:
        raise TransactionNotFound(transaction_id)


class PaymentEngine:
    """Facade over the transaction lifecycle components."""

    def __init__(
        self,
        store: TransactionStore,
        registry: GatewayRegistry,
        orchestrator: Optional[TransactionOrchestrator] = None,
        receipts: Optional[ReceiptGenerator] = None,
        reporter: Optional[ReconciliationReporter] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.registry = registry
        self.orchestrator = orchestrator or TransactionOrchestrator(
            store, registry, settings=self.settings
        )
        self.receipts = receipts or ReceiptGenerator(self.settings)
        self.reporter = reporter or ReconciliationReporter(store, self.settings)

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> "PaymentEngine":
        """Build an engine with every component configured from settings."""
        settings = settings or get_settings()
        if session_factory is None:
            session_factory = create_session_factory(create_engine_from_settings(settings))
        store = TransactionStore(session_factory)
        registry = build_registry(settings, http_client=http_client)
        orchestrator = TransactionOrchestrator(
            store,
            registry,
            locks=build_lock_manager(settings),
            references=ReferenceManager(store, settings),
            settings=settings,
        )
        return cls(store, registry, orchestrator=orchestrator, settings=settings)

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
    ) -> PaymentTransaction:
        return await self.orchestrator.create_transaction(
            user_id=user_id,
            property_id=property_id,
            amount=amount,
            currency=currency,
            transaction_type=transaction_type,
            method=method,
            gateway=gateway,
            reference=reference,
            description=description,
            metadata=metadata,
        )

    async def get_transaction(self, transaction_id: Any) -> PaymentTransaction:
        return await self.store.get_or_raise(parse_transaction_id(transaction_id))

    async def get_user_transactions(
        self,
        user_id: str,
        status: Optional[TransactionStatus] = None,
        limit: Optional[int] = None,
    ) -> List[PaymentTransaction]:
        return await self.store.list_by_user(user_id, status=status, limit=limit)

    async def initialize_transaction(
        self, transaction_id: Any, timeout: Optional[float] = None
    ) -> PaymentTransaction:
        return await self.orchestrator.initialize_gateway_session(
            parse_transaction_id(transaction_id), timeout=timeout
        )

    async def verify_transaction(
        self, transaction_id: Any, timeout: Optional[float] = None
    ) -> PaymentTransaction:
        return await self.orchestrator.verify_transaction(
            parse_transaction_id(transaction_id), timeout=timeout
        )

    async def retry_transaction(
        self, transaction_id: Any, timeout: Optional[float] = None
    ) -> PaymentTransaction:
        return await self.orchestrator.retry_transaction(
            parse_transaction_id(transaction_id), timeout=timeout
        )

    async def initiate_refund(
        self, transaction_id: Any, timeout: Optional[float] = None
    ) -> PaymentTransaction:
        return await self.orchestrator.request_refund(
            parse_transaction_id(transaction_id), timeout=timeout
        )

    async def generate_receipt(self, transaction_id: Any) -> Receipt:
        transaction = await self.get_transaction(transaction_id)
        return self.receipts.generate(transaction)

    async def render_receipt_pdf(self, transaction_id: Any) -> Tuple[Receipt, bytes]:
        transaction = await self.get_transaction(transaction_id)
        return self.receipts.generate(transaction), self.receipts.render_pdf(transaction)

    async def handle_gateway_callback(
        self, gateway: str, body: bytes, headers: Mapping[str, str]
    ) -> Dict[str, Any]:
        """
        Verify, normalize and apply a webhook delivery.

        Stray and duplicate callbacks are acknowledged as ignored.

        Raises:
            UnknownGateway: If gateway is not registered
            CallbackVerificationError: If the signature or payload is invalid
        """
        started = time.time()
        correlation_id = uuid.uuid4()
        adapter = self.registry.get(gateway)
        normalized = {key.lower(): value for key, value in headers.items()}

        try:
            outcome = adapter.parse_callback(body, normalized)
        except CallbackVerificationError as e:
            metrics.record_webhook_event(adapter.name, "rejected", time.time() - started)
            logger.warning(
                "callback_rejected",
                correlation_id=str(correlation_id),
                gateway=adapter.name,
                error=e.message,
            )
            raise

        if outcome is None:
            metrics.record_webhook_event(adapter.name, "ignored", time.time() - started)
            return {"status": "ignored", "reason": "event_not_handled"}

        transaction, applied = await self.orchestrator.apply_callback(
            adapter.name, outcome, correlation_id=correlation_id
        )
        if transaction is None:
            metrics.record_webhook_event(adapter.name, "ignored", time.time() - started)
            return {"status": "ignored", "reason": "unknown_transaction"}

        status = "applied" if applied else "ignored"
        metrics.record_webhook_event(adapter.name, status, time.time() - started)
        logger.info(
            "callback_processed",
            correlation_id=str(correlation_id),
            gateway=adapter.name,
            transaction_id=str(transaction.id),
            status=status,
        )
        ack: Dict[str, Any] = {
            "status": status,
            "transaction_id": str(transaction.id),
            "transaction_status": transaction.status,
        }
        if not applied:
            ack["reason"] = "not_awaiting_outcome"
        return ack

    async def get_statistics(self, user_id: Optional[str] = None) -> ReconciliationReport:
        return await self.reporter.summarize(user_id=user_id)

    def list_gateways(self) -> List[Dict[str, Any]]:
        return self.registry.describe()

    async def get_transaction_events(self, transaction_id: Any) -> List[TransactionEvent]:
        transaction = await self.get_transaction(transaction_id)
        return await self.store.list_events(transaction.id)

    async def close(self) -> None:
        await self.registry.close()
        await self.orchestrator.references.close()
