"""
Data Models for Persistence Layer

Flat row shapes for the domain objects. Calls are stored as one row whose
state-specific columns are NULL outside the states they belong to.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..core.calls import Call, CallStatus, Connected, Failed, Hanging, Over, Ringing
from ..core.clock import isoformat, parse_timestamp
from ..core.ledger import Transaction, TransactionType
from ..core.rates import Rate
from ..core.users import User


def user_from_row(row: Dict[str, Any]) -> User:
    return User(
        id=row["id"],
        email=row["email"],
        caller_id=row["caller_id"],
        balance=row["balance"],
        currency=row["currency"],
        display_currency=row["display_currency"],
        frozen=bool(row.get("frozen", 0)),
        created_at=row["created_at"],
    )


def rate_from_row(row: Dict[str, Any]) -> Rate:
    return Rate(
        id=row["id"],
        country=row["country"],
        code=row["code"],
        price=row["price"],
        updated_at=row.get("updated_at"),
    )


def transaction_from_row(row: Dict[str, Any]) -> Transaction:
    return Transaction(
        id=row["id"],
        owner=row["owner"],
        transaction_type=TransactionType(row["transaction_type"]),
        display_currency=row["display_currency"],
        value=row["value"],
        timestamp=row["timestamp"],
        call_id=row.get("call_id"),
        note=row.get("note"),
    )


def transaction_to_db_tuple(transaction: Transaction) -> tuple:
    return (
        transaction.owner,
        transaction.transaction_type.value,
        transaction.display_currency,
        transaction.value,
        transaction.timestamp,
        transaction.call_id,
        transaction.note,
    )


@dataclass
class CallRecord:
    """Persisted call row."""
    owner: int
    callee_id: str
    country_code: int
    status: str
    start_time: str
    country: Optional[str] = None
    connect_time: Optional[str] = None
    last_billing_check: Optional[str] = None
    hangup_time: Optional[str] = None
    rate_id: Optional[int] = None
    rate_country: Optional[str] = None
    rate_code: Optional[int] = None
    rate_price: Optional[int] = None
    billed_units: int = 0
    charged: int = 0
    price: Optional[int] = None
    end_time: Optional[str] = None
    failure_reason: Optional[str] = None
    id: Optional[int] = None

    # Column order shared by INSERT and UPDATE statements
    COLUMNS = (
        "owner", "callee_id", "country_code", "country", "status", "start_time",
        "connect_time", "last_billing_check", "hangup_time", "rate_id",
        "rate_country", "rate_code", "rate_price", "billed_units", "charged",
        "price", "end_time", "failure_reason",
    )

    def to_db_tuple(self) -> tuple:
        return tuple(getattr(self, column) for column in self.COLUMNS)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "CallRecord":
        return cls(id=row["id"], **{column: row.get(column) for column in cls.COLUMNS})

    @classmethod
    def from_call(cls, call: Call) -> "CallRecord":
        record = cls(
            id=call.id,
            owner=call.owner,
            callee_id=call.callee_id,
            country_code=call.country_code,
            country=call.country,
            status=call.status.value,
            start_time=isoformat(call.start_time),
        )
        state = call.state
        if isinstance(state, (Connected, Hanging)):
            record.connect_time = isoformat(state.connected_at)
            record.last_billing_check = isoformat(state.last_billing_check)
            record.rate_id = state.rate.id
            record.rate_country = state.rate.country
            record.rate_code = state.rate.code
            record.rate_price = state.rate.price
            record.billed_units = state.billed_units
            record.charged = state.charged
        if isinstance(state, Hanging):
            record.hangup_time = isoformat(state.hangup_at)
        if isinstance(state, (Over, Failed)):
            record.charged = state.price
            record.price = state.price
            record.end_time = isoformat(state.end_time)
        if isinstance(state, Failed):
            record.failure_reason = state.reason
        return record

    def _rate(self) -> Rate:
        return Rate(
            id=self.rate_id,
            country=self.rate_country,
            code=self.rate_code,
            price=self.rate_price,
        )

    def to_call(self) -> Call:
        status = CallStatus(self.status)
        if status == CallStatus.RINGING:
            state = Ringing()
        elif status == CallStatus.CONNECTED:
            state = Connected(
                connected_at=parse_timestamp(self.connect_time),
                rate=self._rate(),
                last_billing_check=parse_timestamp(self.last_billing_check),
                billed_units=self.billed_units or 0,
                charged=self.charged or 0,
            )
        elif status == CallStatus.HANGING:
            state = Hanging(
                connected_at=parse_timestamp(self.connect_time),
                rate=self._rate(),
                hangup_at=parse_timestamp(self.hangup_time),
                last_billing_check=parse_timestamp(self.last_billing_check),
                billed_units=self.billed_units or 0,
                charged=self.charged or 0,
            )
        elif status == CallStatus.OVER:
            state = Over(end_time=parse_timestamp(self.end_time), price=self.price or 0)
        else:
            state = Failed(
                end_time=parse_timestamp(self.end_time),
                reason=self.failure_reason or "unknown",
                price=self.price or 0,
            )

        return Call(
            id=self.id,
            owner=self.owner,
            callee_id=self.callee_id,
            country_code=self.country_code,
            country=self.country,
            start_time=parse_timestamp(self.start_time),
            state=state,
        )
