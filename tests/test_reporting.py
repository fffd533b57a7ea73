"""
Tests for reconciliation reports.
"""
from decimal import Decimal
from typing import Any, Dict
from unittest.mock import patch

import pytest

from property_payments.config import Settings
from property_payments.core.enums import PaymentMethod, TransactionStatus, TransactionType
from property_payments.core.orchestrator import TransactionOrchestrator
from property_payments.core.reporting import ReconciliationReporter
from property_payments.database.store import TransactionStore
from property_payments.gateways.base import GatewayOutcome

ZERO = Decimal("0.00")


class TestReconciliationReporter:
    """Test suite for ReconciliationReporter."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_empty_store(self, store: TransactionStore, test_settings: Settings) -> None:
        report = await ReconciliationReporter(store, test_settings).summarize()

        assert report.total_count == 0
        assert report.total_amount == {"NGN": ZERO, "USD": ZERO}
        assert report.settled_amount == {"NGN": ZERO, "USD": ZERO}
        assert set(report.by_status) == {s.value for s in TransactionStatus}
        assert set(report.by_method) == {m.value for m in PaymentMethod}
        assert set(report.by_type) == {t.value for t in TransactionType}
        assert all(b.count == 0 for b in report.by_status.values())

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_summary(
        self,
        orchestrator: TransactionOrchestrator,
        store: TransactionStore,
        test_settings: Settings,
        deposit_request: Dict[str, Any],
    ) -> None:
        # Completed ₦500,000 deposit
        deposit = await orchestrator.create_transaction(**deposit_request)
        await orchestrator.initialize_gateway_session(deposit.id)
        await orchestrator.apply_gateway_outcome(
            deposit.id, GatewayOutcome(gateway_reference="gw_PROP-42", success=True)
        )
        # Pending $1,250.50 card installment
        await orchestrator.create_transaction(
            **{
                **deposit_request,
                "reference": "PROP-42-USD",
                "amount": "1250.50",
                "currency": "USD",
                "transaction_type": "installment",
                "method": "card",
            }
        )
        # Another user's pending ₦100,000 commission
        await orchestrator.create_transaction(
            **{
                **deposit_request,
                "reference": "COMM-9",
                "user_id": "agent-3",
                "amount": "100000",
                "transaction_type": "commission",
            }
        )

        reporter = ReconciliationReporter(store, test_settings)
        report = await reporter.summarize()

        assert report.total_count == 3
        assert report.total_amount == {"NGN": Decimal("600000.00"), "USD": Decimal("1250.50")}
        assert report.settled_amount == {"NGN": Decimal("500000.00"), "USD": ZERO}
        assert report.by_status["completed"].count == 1
        assert report.by_status["pending"].count == 2
        assert report.by_status["pending"].amounts["USD"] == Decimal("1250.50")
        assert report.by_method["card"].count == 1
        assert report.by_method["bank_transfer"].count == 2
        assert report.by_type["commission"].amounts["NGN"] == Decimal("100000.00")
        assert report.by_status["refunded"].count == 0

        user_report = await reporter.summarize(user_id="user-17")
        assert user_report.total_count == 2
        assert user_report.by_type["commission"].count == 0

        as_dict = report.to_dict()
        assert as_dict["by_status"]["completed"] == {
            "count": 1,
            "amounts": {"NGN": Decimal("500000.00"), "USD": ZERO},
        }

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_summary_is_read_only(
        self,
        orchestrator: TransactionOrchestrator,
        store: TransactionStore,
        test_settings: Settings,
        deposit_request: Dict[str, Any],
    ) -> None:
        transaction = await orchestrator.create_transaction(**deposit_request)
        before = [e.id for e in await store.list_events(transaction.id)]
        stored = await store.get_or_raise(transaction.id)

        await ReconciliationReporter(store, test_settings).summarize()

        assert [e.id for e in await store.list_events(transaction.id)] == before
        assert (await store.get_or_raise(transaction.id)).updated_at == stored.updated_at

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_breakdowns_come_from_one_query(
        self,
        orchestrator: TransactionOrchestrator,
        store: TransactionStore,
        test_settings: Settings,
        deposit_request: Dict[str, Any],
    ) -> None:
        await orchestrator.create_transaction(**deposit_request)
        await orchestrator.create_transaction(
            **{**deposit_request, "reference": "PROP-42-B", "method": "card"}
        )

        with patch.object(store, "aggregate", wraps=store.aggregate) as aggregate:
            report = await ReconciliationReporter(store, test_settings).summarize()

        aggregate.assert_awaited_once_with("status", "method", "type", user_id=None)
        for buckets in (report.by_status, report.by_method, report.by_type):
            assert sum(b.count for b in buckets.values()) == report.total_count == 2
            assert sum(b.amounts["NGN"] for b in buckets.values()) == report.total_amount["NGN"]
