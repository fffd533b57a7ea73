"""
Reference handling for idempotent transaction creation.

The transaction reference is the idempotency key. Lookups are two-tier:
1. Redis cache of reference → transaction id (optional, fast path)
2. Database unique index on reference (source of truth)
"""
import uuid
from typing import Optional

import redis.asyncio as aioredis
import structlog

from property_payments.config import Settings, get_settings
from property_payments.database.models import PaymentTransaction
from property_payments.database.store import TransactionStore
from property_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class ReferenceManager:
    """
    Mints references and resolves existing ones.

    Redis is only a cache: every Redis failure degrades to the database
    lookup, and a stale cache entry is ignored when the id no longer resolves.
    """

    def __init__(
        self,
        store: TransactionStore,
        settings: Optional[Settings] = None,
        redis_client: Optional[aioredis.Redis] = None,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.redis_client = redis_client
        self._owns_redis = False

    def _ensure_redis(self) -> Optional[aioredis.Redis]:
        """Ensure Redis client is initialized when a Redis URL is configured."""
        if self.redis_client is None and self.settings.redis_url:
            self.redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            self._owns_redis = True
        return self.redis_client

    @staticmethod
    def format_reference(prefix: str, property_id: str, sequence: int) -> str:
        """
        Human-readable reference quoted to gateways and payers.

        Format: {prefix}-{property_id}-{sequence}
        """
        return f"{prefix}-{property_id}-{sequence}"

    async def next_reference(self, property_id: str, offset: int = 0) -> str:
        count = await self.store.count_for_property(property_id)
        return self.format_reference(
            self.settings.reference_prefix, property_id, count + 1 + offset
        )

    async def lookup(self, reference: str) -> Optional[PaymentTransaction]:
        """Find the transaction already created under reference, if any."""
        redis = self._ensure_redis()
        if redis is not None:
            try:
                cached_id = await redis.get(f"reference:{reference}")
            except (aioredis.RedisError, OSError) as e:
                logger.warning("reference_cache_error", error=str(e), reference=reference)
                cached_id = None
            if cached_id:
                transaction = await self.store.get(uuid.UUID(cached_id))
                if transaction is not None:
                    metrics.record_reference_lookup("redis")
                    logger.info("reference_cache_hit", reference=reference, source="redis")
                    return transaction

        transaction = await self.store.get_by_reference(reference)
        if transaction is not None:
            metrics.record_reference_lookup("database")
            logger.info("reference_cache_hit", reference=reference, source="database")
            await self.remember(reference, transaction.id)
            return transaction

        metrics.record_reference_lookup("miss")
        return None

    async def remember(self, reference: str, transaction_id: uuid.UUID) -> None:
        redis = self._ensure_redis()
        if redis is None:
            return
        try:
            await redis.setex(
                f"reference:{reference}",
                self.settings.idempotency_cache_ttl,
                str(transaction_id),
            )
        except (aioredis.RedisError, OSError) as e:
            logger.warning("reference_cache_store_error", error=str(e), reference=reference)

    async def close(self) -> None:
        """Close Redis connection."""
        if self.redis_client is not None and self._owns_redis:
            await self.redis_client.aclose()
            self.redis_client = None
