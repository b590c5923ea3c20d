"""
Deterministic provider idempotency keys.

Every mutating provider call is keyed by the intent it acts on (plus the
capture amount or refund id where one intent sees several), so a retry
after a timeout or a crash replays the provider's original result instead of
moving money a second time.
"""
import uuid
from typing import Union

KEY_PREFIX = "ride-payments"

IdLike = Union[str, uuid.UUID]


class IdempotencyKeys:
    """Builds the idempotency key for each provider operation."""

    @staticmethod
    def generate_key(operation: str, intent_id: IdLike, *qualifiers: Union[IdLike, int]) -> str:
        """
        Generate an idempotency key.

        Format: ride-payments:{operation}:{intent_id}[:{qualifier}...]
        """
        parts = [KEY_PREFIX, operation, str(intent_id)]
        parts.extend(str(q) for q in qualifiers)
        return ":".join(parts)

    @classmethod
    def authorize(cls, intent_id: IdLike) -> str:
        return cls.generate_key("authorize", intent_id)

    @classmethod
    def capture(cls, intent_id: IdLike, amount: int) -> str:
        # Retries of the same capture reuse this key; a different amount
        # (a cancellation fee versus the full fare) is a different request
        return cls.generate_key("capture", intent_id, amount)

    @classmethod
    def cancel(cls, intent_id: IdLike) -> str:
        return cls.generate_key("cancel", intent_id)

    @classmethod
    def refund(cls, intent_id: IdLike, refund_id: IdLike) -> str:
        return cls.generate_key("refund", intent_id, refund_id)
