"""
Aggregate views over stored transactions.

Summaries are computed with GROUP BY queries and are strictly read-only.
Every status, method, type and supported currency appears in the report even
when no transaction has it, so an empty store yields an all-zero report.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Type

import structlog

from property_payments.config import Settings, get_settings
from property_payments.core.enums import PaymentMethod, TransactionStatus, TransactionType
from property_payments.database.models import MINOR_UNITS
from property_payments.database.store import TransactionStore

logger = structlog.get_logger(__name__)


@dataclass
class Bucket:
    count: int = 0
    amounts: Dict[str, Decimal] = field(default_factory=dict)


@dataclass
class ReconciliationReport:
    total_count: int
    total_amount: Dict[str, Decimal]
    settled_amount: Dict[str, Decimal]
    fees: Dict[str, Decimal]
    by_status: Dict[str, Bucket]
    by_method: Dict[str, Bucket]
    by_type: Dict[str, Bucket]

    def to_dict(self) -> Dict[str, Any]:
        def bucket(b: Bucket) -> Dict[str, Any]:
            return {"count": b.count, "amounts": dict(b.amounts)}

        return {
            "total_count": self.total_count,
            "total_amount": dict(self.total_amount),
            "settled_amount": dict(self.settled_amount),
            "fees": dict(self.fees),
            "by_status": {k: bucket(v) for k, v in self.by_status.items()},
            "by_method": {k: bucket(v) for k, v in self.by_method.items()},
            "by_type": {k: bucket(v) for k, v in self.by_type.items()},
        }


def _to_major(amount_minor: int) -> Decimal:
    return (Decimal(amount_minor) / MINOR_UNITS).quantize(Decimal("0.01"))


class ReconciliationReporter:
    def __init__(self, store: TransactionStore, settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings or get_settings()

    @staticmethod
    def _empty(keys: Type[Enum], currencies: Iterable[str]) -> Dict[str, Bucket]:
        return {
            member.value: Bucket(amounts={c: Decimal("0.00") for c in currencies})
            for member in keys
        }

    async def summarize(self, user_id: Optional[str] = None) -> ReconciliationReport:
        """
        Summarize transactions, optionally for one user.

        Settled amounts count completed transactions only; refunded
        transactions appear under their own status. Every figure is folded
        from a single GROUP BY so the breakdowns always agree.
        """
        rows = await self.store.aggregate("status", "method", "type", user_id=user_id)
        currencies = list(self.settings.supported_currencies)
        for row in rows:
            if row.currency not in currencies:
                currencies.append(row.currency)

        zero = {c: Decimal("0.00") for c in currencies}
        total_amount = dict(zero)
        settled_amount = dict(zero)
        fees = dict(zero)
        total_count = 0
        buckets = {
            "status": self._empty(TransactionStatus, currencies),
            "method": self._empty(PaymentMethod, currencies),
            "type": self._empty(TransactionType, currencies),
        }

        for row in rows:
            amount = _to_major(row.amount_minor)
            total_count += row.tx_count
            total_amount[row.currency] += amount
            fees[row.currency] += _to_major(row.fees_minor)
            if row.status == TransactionStatus.COMPLETED.value:
                settled_amount[row.currency] += amount
            for dimension, by_key in buckets.items():
                bucket = by_key.setdefault(getattr(row, dimension), Bucket(amounts=dict(zero)))
                bucket.count += row.tx_count
                bucket.amounts[row.currency] = (
                    bucket.amounts.get(row.currency, Decimal("0.00")) + amount
                )

        report = ReconciliationReport(
            total_count=total_count,
            total_amount=total_amount,
            settled_amount=settled_amount,
            fees=fees,
            by_status=buckets["status"],
            by_method=buckets["method"],
            by_type=buckets["type"],
        )
        logger.info("reconciliation_report_generated", user_id=user_id, total_count=total_count)
        return report
