"""Error taxonomy shared by the portal components.

Every error carries a stable ``code`` used by the command dispatcher and the
HTTP layer to pick a response without inspecting the message text.
"""

from __future__ import annotations


class PortalError(RuntimeError):
    """Base class for failures surfaced to portal callers."""

    code = "portal_error"
    status_code = 500

    def __init__(self, message: str = "Portal operation failed"):
        super().__init__(message)
        self.message = message


class ValidationError(PortalError):
    """Missing or invalid input (empty id, malformed endpoint URL, ...)."""

    code = "validation_error"
    status_code = 400


class NotFoundError(PortalError):
    code = "not_found"
    status_code = 404


class PermissionDenied(PortalError):
    code = "forbidden"
    status_code = 403


class InvalidCredential(PortalError):
    """Raised when a login identifier does not match any account."""

    code = "invalid_credential"
    status_code = 401

    def __init__(self, message: str = "Invalid UID. Please try again."):
        super().__init__(message)


class InsufficientFunds(PortalError):
    code = "insufficient_funds"
    status_code = 402

    def __init__(self, balance: int, cost: int):
        super().__init__(f"Insufficient balance: {balance} available, {cost} required")
        self.balance = balance
        self.cost = cost


class SuspendedAccount(PortalError):
    """User-facing denial, not a system failure."""

    code = "suspended"
    status_code = 403

    def __init__(self, account_id: str):
        super().__init__(
            f"Account '{account_id}' is suspended. Please contact an administrator."
        )
        self.account_id = account_id


class LimitReached(PortalError):
    """User-facing denial, not a system failure."""

    code = "limit_reached"
    status_code = 429

    def __init__(self, account_id: str, daily_limit: int):
        super().__init__(
            f"Daily message limit of {daily_limit} reached for '{account_id}'. Please try again tomorrow."
        )
        self.account_id = account_id
        self.daily_limit = daily_limit


class DeliveryError(PortalError):
    """The single relay attempt failed; ``detail`` is best-effort."""

    code = "delivery_error"
    status_code = 502

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class StorageError(PortalError):
    code = "storage_error"
    status_code = 500
