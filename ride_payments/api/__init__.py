"""FastAPI application and routes."""
from .main import app
from .schemas import (
    AuthorizePaymentRequest,
    CancellationRequest,
    CancellationResponse,
    PaymentIntentResponse,
    RefundRequest,
    RefundResponse,
)

__all__ = [
    "app",
    "AuthorizePaymentRequest",
    "CancellationRequest",
    "CancellationResponse",
    "PaymentIntentResponse",
    "RefundRequest",
    "RefundResponse",
]
