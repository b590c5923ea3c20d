"""Payment provider integrations."""
from .provider import (
    ProviderError,
    ProviderErrorType,
    ProviderGateway,
    ProviderIntentStatus,
    ProviderTerminalError,
    ProviderTransientError,
)
from .stripe_gateway import CircuitBreaker, StripeGateway

__all__ = [
    "CircuitBreaker",
    "ProviderError",
    "ProviderErrorType",
    "ProviderGateway",
    "ProviderIntentStatus",
    "ProviderTerminalError",
    "ProviderTransientError",
    "StripeGateway",
]
