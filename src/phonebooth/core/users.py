"""User accounts as seen by the billing core."""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .clock import isoformat, utcnow


@dataclass(frozen=True)
class User:
    """
    A prepaid account.

    balance caches the sum of the user's ledger transactions and is only
    ever written by the Ledger.
    """
    email: str
    caller_id: str
    currency: str = "USD"
    display_currency: str = "USD"
    balance: int = 0
    frozen: bool = False
    created_at: str = field(default_factory=lambda: isoformat(utcnow()))
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "callerId": self.caller_id,
            "balance": self.balance,
            "currency": self.currency,
            "displayCurrency": self.display_currency,
            "frozen": self.frozen,
            "createdAt": self.created_at,
        }
