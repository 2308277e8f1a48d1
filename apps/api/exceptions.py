"""Domain exception classes for the billing core."""

from typing import Optional


class BillingError(Exception):
    """Base class for credit and subscription failures."""


class StorageError(BillingError):
    """Raised when the ledger or subscription store rejects an operation."""


class StorageConflictError(StorageError):
    """Raised when a unique key (transaction id, order id, marker) already exists."""

    def __init__(self, message: str, key: Optional[str] = None) -> None:
        self.key = key
        super().__init__(message)


class StorageUnavailableError(StorageError):
    """Raised on transient infrastructure failure. Callers retry with backoff."""


class OperationTimeoutError(StorageUnavailableError):
    """Raised when a caller-supplied timeout elapses.

    The underlying write may still have committed.
    """

    def __init__(self, operation: str, timeout: float) -> None:
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"{operation} did not finish within {timeout:g}s")


class InsufficientCreditsError(BillingError):
    """Raised when a debit exceeds the user's valid balance."""

    def __init__(self, required: int, available: int) -> None:
        self.required = required
        self.available = available
        super().__init__(f"Insufficient credits. Required: {required}, available: {available}.")


class NotFoundError(BillingError):
    """Raised when a subscription or order does not exist."""

    def __init__(self, resource: str, key: str) -> None:
        self.resource = resource
        self.key = key
        super().__init__(f"{resource} not found: {key}")


class SubscriptionConflictError(BillingError):
    """Raised when a user already holds an active subscription."""

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(f"User {user_id} already has an active subscription")


class ReconciliationError(BillingError):
    """Raised when an order cannot be converted into ledger credit."""
