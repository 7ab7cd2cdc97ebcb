"""
Error taxonomy for the billing core.

Only StorageUnavailable and LedgerInconsistency are meant to reach the
operator-facing layer; the rest are handled by failing or hanging up the
call they concern.
"""

from typing import Optional


class BillingError(Exception):
    """Base class for all billing core errors."""

    retryable = False


class RateNotFound(BillingError):
    """No rate prices the requested destination."""

    def __init__(self, dial_code: int, country: Optional[str] = None, reason: str = "missing"):
        self.dial_code = dial_code
        self.country = country
        self.reason = reason
        where = f"{country}/+{dial_code}" if country else f"+{dial_code}"
        super().__init__(f"No rate for destination {where} ({reason})")


class InsufficientFunds(BillingError):
    """Balance cannot cover the call."""

    def __init__(self, user_id: int, balance: int):
        self.user_id = user_id
        self.balance = balance
        super().__init__(f"User {user_id} has insufficient balance ({balance})")


class InvalidTransition(BillingError):
    """A call event arrived for a state that cannot accept it."""

    def __init__(self, call_id: Optional[int], status: str, event: str):
        self.call_id = call_id
        self.status = status
        self.event = event
        super().__init__(f"Call {call_id} in state '{status}' cannot handle '{event}'")


class LedgerError(BillingError, ValueError):
    """A transaction violates bookkeeping rules."""


class LedgerInconsistency(BillingError):
    """Cached balance diverges from the transaction sum."""

    def __init__(self, user_id: int, cached: int, computed: int):
        self.user_id = user_id
        self.cached = cached
        self.computed = computed
        super().__init__(
            f"Ledger inconsistency for user {user_id}: cached={cached} computed={computed}"
        )


class StorageUnavailable(BillingError):
    """The storage collaborator failed; the operation may be retried."""

    retryable = True


class CallNotFound(BillingError, LookupError):
    def __init__(self, call_id: int):
        self.call_id = call_id
        super().__init__(f"Call {call_id} not found")


class UserNotFound(BillingError, LookupError):
    def __init__(self, user_id: int):
        self.user_id = user_id
        super().__init__(f"User {user_id} not found")


class CallBusy(BillingError):
    """The call or its owner is locked by another operation."""

    retryable = True


class CallChanged(CallBusy):
    """The stored call moved on since it was read; the write was rolled back."""

    def __init__(self, call_id: int):
        self.call_id = call_id
        super().__init__(f"Call {call_id} was changed by another writer")
