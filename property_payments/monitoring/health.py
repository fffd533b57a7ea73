"""
Health check endpoints for Kubernetes readiness/liveness probes.

Checks:
- Database connectivity
- Redis connectivity (when a Redis URL is configured)
- Gateway circuit breaker states
"""
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from property_payments.config import Settings, get_settings
from property_payments.database.connection import get_session_factory

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    Provides:
    - Database connectivity check
    - Redis connectivity check
    - Gateway availability as seen by each circuit breaker
    - Overall system health status
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        registry: Any = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._session_factory = session_factory
        self.registry = registry

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            session_factory = self._session_factory or get_session_factory()
            async with session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()

                return {
                    "status": "healthy",
                    "service": "database",
                    "message": "Database connection successful",
                }

        except (SQLAlchemyError, OSError) as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}")

    async def check_redis(self) -> Dict[str, Any]:
        """
        Check Redis connectivity.

        Raises:
            HealthCheckError: If Redis check fails
        """
        if not self.settings.redis_url:
            return {
                "status": "skipped",
                "service": "redis",
                "message": "Redis is not configured",
            }

        redis_client: aioredis.Redis | None = None
        try:
            redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            await redis_client.ping()

            return {
                "status": "healthy",
                "service": "redis",
                "message": "Redis connection successful",
            }

        except (aioredis.RedisError, OSError) as e:
            logger.error("redis_health_check_failed", error=str(e))
            raise HealthCheckError(f"Redis health check failed: {str(e)}")

        finally:
            if redis_client:
                await redis_client.aclose()

    def check_gateways(self) -> Dict[str, Any]:
        """Report each adapter's circuit breaker; an open breaker degrades but does not fail readiness."""
        gateways: Dict[str, str] = {}
        if self.registry is not None:
            for adapter in self.registry.adapters():
                breaker = getattr(adapter, "circuit_breaker", None)
                gateways[adapter.name] = breaker.state if breaker else "closed"

        degraded = any(state == "open" for state in gateways.values())
        return {
            "status": "degraded" if degraded else "healthy",
            "service": "gateways",
            "circuit_breakers": gateways,
        }

    async def check_all(self) -> Dict[str, Any]:
        """Run all health checks."""
        checks = {}
        all_healthy = True

        try:
            checks["database"] = await self.check_database()
        except HealthCheckError as e:
            checks["database"] = {
                "status": "unhealthy",
                "service": "database",
                "error": str(e),
            }
            all_healthy = False

        try:
            checks["redis"] = await self.check_redis()
        except HealthCheckError as e:
            checks["redis"] = {
                "status": "unhealthy",
                "service": "redis",
                "error": str(e),
            }
            all_healthy = False

        checks["gateways"] = self.check_gateways()

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """
        Liveness probe endpoint.

        Does not check external dependencies.
        """
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """Readiness probe endpoint."""
        return await self.check_all()
