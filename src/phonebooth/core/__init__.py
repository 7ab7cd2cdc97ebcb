"""
PHONEBOOTH - Core Module

Domain model of the billing core: rates, ledger, call states, errors.
Nothing here touches storage directly; collaborators are injected.
"""

from .calls import Call, CallEvent, CallStatus, Connected, Failed, Hanging, Over, Ringing
from .errors import (
    BillingError,
    CallBusy,
    CallChanged,
    CallNotFound,
    InsufficientFunds,
    InvalidTransition,
    LedgerError,
    LedgerInconsistency,
    RateNotFound,
    StorageUnavailable,
    UserNotFound,
)
from .ledger import Ledger, Transaction, TransactionHistory, TransactionType
from .rates import Rate, RateTable
from .users import User

__all__ = [
    "Call",
    "CallEvent",
    "CallStatus",
    "Connected",
    "Failed",
    "Hanging",
    "Over",
    "Ringing",
    "BillingError",
    "CallBusy",
    "CallChanged",
    "CallNotFound",
    "InsufficientFunds",
    "InvalidTransition",
    "LedgerError",
    "LedgerInconsistency",
    "RateNotFound",
    "StorageUnavailable",
    "UserNotFound",
    "Ledger",
    "Transaction",
    "TransactionHistory",
    "TransactionType",
    "Rate",
    "RateTable",
    "User",
]
