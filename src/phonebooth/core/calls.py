"""
Call State Model

    ringing -> connected -> hanging -> over
       |                       |
       +-----------------------+--> failed

Each status carries only the data meaningful to it, so a price on a ringing
call or a billing check on a finished one cannot be expressed. Transitions
return a new Call and never mutate; a call that was ever connected must go
through Hanging (settlement) before it can become terminal.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, Optional, Union

from .clock import isoformat
from .errors import InvalidTransition
from .rates import Rate


class CallStatus(Enum):
    RINGING = "ringing"
    CONNECTED = "connected"
    HANGING = "hanging"
    OVER = "over"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({CallStatus.OVER, CallStatus.FAILED})


class CallEvent(Enum):
    """Lifecycle events reported by the signaling layer."""
    ANSWERED = "answered"
    HANGUP = "hangup"
    ERROR = "error"


class FailureReason:
    RATE_NOT_FOUND = "rate_not_found"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"
    SIGNALING_ERROR = "signaling_error"


@dataclass(frozen=True)
class Ringing:
    status: ClassVar[CallStatus] = CallStatus.RINGING


@dataclass(frozen=True)
class Connected:
    """In progress and metered against the rate captured at connect."""
    status: ClassVar[CallStatus] = CallStatus.CONNECTED

    connected_at: datetime
    rate: Rate
    last_billing_check: Optional[datetime] = None
    billed_units: int = 0
    charged: int = 0


@dataclass(frozen=True)
class Hanging:
    """Hung up, awaiting the final charge up to hangup_at."""
    status: ClassVar[CallStatus] = CallStatus.HANGING

    connected_at: datetime
    rate: Rate
    hangup_at: datetime
    last_billing_check: Optional[datetime] = None
    billed_units: int = 0
    charged: int = 0


@dataclass(frozen=True)
class Over:
    status: ClassVar[CallStatus] = CallStatus.OVER

    end_time: datetime
    price: int


@dataclass(frozen=True)
class Failed:
    status: ClassVar[CallStatus] = CallStatus.FAILED

    end_time: datetime
    reason: str
    price: int = 0


CallState = Union[Ringing, Connected, Hanging, Over, Failed]
MeteredState = Union[Connected, Hanging]


@dataclass(frozen=True)
class Call:
    owner: int
    callee_id: str
    country_code: int
    start_time: datetime
    state: CallState = Ringing()
    country: Optional[str] = None
    id: Optional[int] = None

    @property
    def status(self) -> CallStatus:
        return self.state.status

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_metered(self) -> bool:
        return isinstance(self.state, (Connected, Hanging))

    @property
    def last_billing_check(self) -> Optional[datetime]:
        return getattr(self.state, "last_billing_check", None)

    @property
    def end_time(self) -> Optional[datetime]:
        return getattr(self.state, "end_time", None)

    @property
    def price(self) -> Optional[int]:
        return getattr(self.state, "price", None)

    @property
    def charged(self) -> int:
        return getattr(self.state, "charged", 0) or getattr(self.state, "price", 0)

    def _invalid(self, event: str) -> InvalidTransition:
        return InvalidTransition(self.id, self.status.value, event)

    def connect(self, rate: Rate, now: datetime) -> "Call":
        if not isinstance(self.state, Ringing):
            raise self._invalid("connect")
        return replace(self, state=Connected(connected_at=now, rate=rate))

    def record_charge(self, billed_units: int, charge: int, now: datetime) -> "Call":
        """Advance the billing fields of a metered call."""
        if not isinstance(self.state, (Connected, Hanging)):
            raise self._invalid("charge")
        if charge < 0 or billed_units < self.state.billed_units:
            raise ValueError("billing fields may only move forward")
        return replace(
            self,
            state=replace(
                self.state,
                billed_units=billed_units,
                charged=self.state.charged + charge,
                last_billing_check=now,
            ),
        )

    def hang_up(self, now: datetime) -> "Call":
        if not isinstance(self.state, Connected):
            raise self._invalid("hangup")
        s = self.state
        return replace(
            self,
            state=Hanging(
                connected_at=s.connected_at,
                rate=s.rate,
                hangup_at=max(now, s.connected_at),
                last_billing_check=s.last_billing_check,
                billed_units=s.billed_units,
                charged=s.charged,
            ),
        )

    def finish(self) -> "Call":
        """Close a settled call; the price is everything charged for it."""
        if not isinstance(self.state, Hanging):
            raise self._invalid("finish")
        return replace(self, state=Over(end_time=self.state.hangup_at, price=self.state.charged))

    def fail(self, now: datetime, reason: str) -> "Call":
        if isinstance(self.state, Ringing):
            return replace(self, state=Failed(end_time=now, reason=reason))
        if isinstance(self.state, Hanging):
            return replace(
                self,
                state=Failed(end_time=self.state.hangup_at, reason=reason, price=self.state.charged),
            )
        # Connected calls must pass through Hanging to be settled first.
        raise self._invalid("fail")

    def to_dict(self) -> Dict[str, Any]:
        state = self.state
        rate = getattr(state, "rate", None)
        return {
            "id": self.id,
            "owner": self.owner,
            "calleeID": self.callee_id,
            "countryCode": self.country_code,
            "country": self.country,
            "status": self.status.value,
            "startTime": isoformat(self.start_time),
            "connectTime": isoformat(getattr(state, "connected_at", None)),
            "lastBillingCheck": isoformat(self.last_billing_check),
            "ratePrice": rate.price if rate else None,
            "charged": getattr(state, "charged", None),
            "price": self.price,
            "endTime": isoformat(self.end_time),
            "failureReason": getattr(state, "reason", None),
        }
