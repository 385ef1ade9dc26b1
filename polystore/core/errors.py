"""
Error taxonomy for polystore.

The federation engine never lets these escape ``execute``; they are converted
into ``OperationResult.error`` messages. The fan-out publisher propagates
connectivity errors from ``publish`` and ``NotInitializedError`` from
``subscribe``/``unsubscribe``.
"""

from __future__ import annotations


class PolystoreError(Exception):
    """Base exception for polystore errors."""

    pass


class ConfigurationError(PolystoreError):
    """A store required by an operation was never configured."""

    pass


class StoreConnectionError(PolystoreError):
    """A configured store's handshake or call failed."""

    def __init__(self, message: str, *, store: str | None = None) -> None:
        super().__init__(message)
        self.store = store


class StoreTimeoutError(StoreConnectionError):
    """A store call did not complete within its bounded timeout."""

    pass


class NotInitializedError(StoreConnectionError):
    """A component was used before ``start()``/``initialize()`` completed."""

    pass


class ValidationError(PolystoreError):
    """A request value is missing a required field or is malformed."""

    pass


class QuotaExceededError(ValidationError):
    """A tenant reached its entity quota for an entity type."""

    pass


class DeliveryError(PolystoreError):
    """A subscriber callback raised during fan-out."""

    def __init__(self, message: str, *, subscription_id: str) -> None:
        super().__init__(message)
        self.subscription_id = subscription_id


class RealtimeDisabledError(PolystoreError):
    """Real-time updates are switched off for the tenant."""

    pass
