"""Domain errors raised by the ledger, queue and cancellation paths."""


class PaymentError(Exception):
    """Base exception for payment lifecycle errors."""

    pass


class PaymentValidationError(PaymentError):
    """Raised for bad amounts, unknown intents or illegal state transitions."""

    pass


class IntentNotFound(PaymentValidationError):
    """Raised when no payment intent matches the given id or booking."""

    pass


class PolicyViolation(PaymentError):
    """Raised when a request is well-formed but breaks a money rule."""

    pass


class ConsistencyConflict(PaymentError):
    """
    Raised when another writer got to the payment intent first.

    The caller should reload and retry the whole operation.
    """

    pass
