"""
PHONEBOOTH - Billing Module

Runtime side of call billing:
- CallLifecycle applies signaling events under per-call locks
- BillingMeter meters connected calls, settles hung-up ones, times out ringing ones
- LockRegistry provides the per-call / per-user mutual exclusion both rely on
"""

from .lifecycle import CallLifecycle
from .locks import LockRegistry, LockUnavailable
from .meter import BillingMeter, TickReport, billable_units

__all__ = [
    "CallLifecycle",
    "LockRegistry",
    "LockUnavailable",
    "BillingMeter",
    "TickReport",
    "billable_units",
]
