"""
Service identity and capability checks.

Callers authenticate with an API key that maps to one service identity.
Each identity holds a fixed set of capabilities, and each route requires
exactly one of them.
"""
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet

import structlog
from fastapi import HTTPException, Request, status

from ride_payments.config import get_settings

logger = structlog.get_logger(__name__)

PAYMENTS_AUTHORIZE = "payments:authorize"
PAYMENTS_READ = "payments:read"
PAYMENTS_REFUND = "payments:refund"
CANCELLATIONS_WRITE = "cancellations:write"
RIDES_COMPLETE = "rides:complete"
CAPTURE_RUN = "capture:run"
QUEUE_INSPECT = "queue:inspect"
QUEUE_REMEDIATE = "queue:remediate"
EARNINGS_READ = "earnings:read"
EARNINGS_SETTLE = "earnings:settle"

ALL_CAPABILITIES = frozenset(
    {
        PAYMENTS_AUTHORIZE,
        PAYMENTS_READ,
        PAYMENTS_REFUND,
        CANCELLATIONS_WRITE,
        RIDES_COMPLETE,
        CAPTURE_RUN,
        QUEUE_INSPECT,
        QUEUE_REMEDIATE,
        EARNINGS_READ,
        EARNINGS_SETTLE,
    }
)

SERVICE_CAPABILITIES: Dict[str, FrozenSet[str]] = {
    "booking_service": frozenset(
        {PAYMENTS_AUTHORIZE, PAYMENTS_READ, CANCELLATIONS_WRITE, RIDES_COMPLETE}
    ),
    "capture_worker": frozenset({PAYMENTS_READ, CAPTURE_RUN}),
    "payout_batcher": frozenset({EARNINGS_READ, EARNINGS_SETTLE}),
    "operator": ALL_CAPABILITIES,
}


@dataclass(frozen=True)
class ServiceIdentity:
    name: str
    capabilities: FrozenSet[str]

    def can(self, capability: str) -> bool:
        return capability in self.capabilities


def authenticate(request: Request) -> ServiceIdentity:
    """
    Resolve the caller's service identity from its API key.

    Raises:
        HTTPException: 401 if the key is missing or unknown
    """
    settings = get_settings()
    api_key = request.headers.get(settings.api_key_header)
    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing API key"
        )

    service_name = settings.service_api_keys.get(api_key)
    if service_name is None or service_name not in SERVICE_CAPABILITIES:
        logger.warning("api_key_rejected", path=request.url.path)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key"
        )

    return ServiceIdentity(name=service_name, capabilities=SERVICE_CAPABILITIES[service_name])


def require_capability(capability: str) -> Callable[[Request], ServiceIdentity]:
    """Build a dependency that admits only identities holding ``capability``."""

    def dependency(request: Request) -> ServiceIdentity:
        identity = authenticate(request)
        if not identity.can(capability):
            logger.warning(
                "capability_denied",
                service=identity.name,
                capability=capability,
                path=request.url.path,
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Service '{identity.name}' lacks capability '{capability}'",
            )
        return identity

    return dependency
