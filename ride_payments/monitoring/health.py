"""
Health checks for readiness/liveness probes.

Checks:
- Database connectivity
- Payment provider reachability
"""
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ride_payments.database.connection import get_session_factory
from ride_payments.integrations.provider import ProviderError, ProviderGateway

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """Health check service for the database and the payment provider."""

    def __init__(
        self,
        gateway: Optional[ProviderGateway] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ) -> None:
        self.gateway = gateway
        self._session_factory = session_factory

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If database check fails
        """
        session_factory = self._session_factory or get_session_factory()
        try:
            async with session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}") from e

        return {
            "status": "healthy",
            "service": "database",
            "message": "Database connection successful",
        }

    async def check_provider(self) -> Dict[str, Any]:
        """
        Check payment provider reachability.

        Raises:
            HealthCheckError: If the provider cannot be reached
        """
        if self.gateway is None:
            return {"status": "skipped", "service": "provider"}

        try:
            await self.gateway.ping()
        except ProviderError as e:
            logger.error("provider_health_check_failed", error=str(e))
            raise HealthCheckError(f"Provider health check failed: {str(e)}") from e

        return {
            "status": "healthy",
            "service": "provider",
            "message": "Provider API reachable",
        }

    async def check_all(self) -> Dict[str, Any]:
        """Run all health checks."""
        checks = {}
        all_healthy = True

        for name, check in (
            ("database", self.check_database),
            ("provider", self.check_provider),
        ):
            try:
                checks[name] = await check()
            except HealthCheckError as e:
                checks[name] = {"status": "unhealthy", "service": name, "error": str(e)}
                all_healthy = False

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }
