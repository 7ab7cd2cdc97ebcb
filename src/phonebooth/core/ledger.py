"""
Ledger

Append-only record of balance-affecting transactions. The balance of a
user is the sum of their transaction values; User.balance caches that sum
and is rewritten in the same storage transaction as every append.

The ledger enforces bookkeeping only (integer amounts, sign matching type,
no negative balance). Business policy such as clamping a call charge to the
available balance belongs to the caller.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterator, Optional, Tuple
import structlog

from .clock import isoformat, utcnow
from .errors import InsufficientFunds, LedgerError, LedgerInconsistency, UserNotFound

logger = structlog.get_logger()


class TransactionType(Enum):
    TOPUP = "topup"
    CALL_CHARGE = "call_charge"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"


@dataclass(frozen=True)
class Transaction:
    """An immutable ledger entry. Negative value means a debit."""
    owner: int
    transaction_type: TransactionType
    value: int
    display_currency: str = "USD"
    timestamp: str = field(default_factory=lambda: isoformat(utcnow()))
    call_id: Optional[int] = None
    note: Optional[str] = None
    id: Optional[int] = None

    @property
    def is_debit(self) -> bool:
        return self.value < 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner": self.owner,
            "transactionType": self.transaction_type.value,
            "displayCurrency": self.display_currency,
            "value": self.value,
            "timestamp": self.timestamp,
            "callId": self.call_id,
            "note": self.note,
        }


def validate_transaction(transaction: Transaction) -> None:
    """Raise LedgerError unless the entry is well-formed."""
    value = transaction.value
    if isinstance(value, bool) or not isinstance(value, int):
        raise LedgerError(f"Transaction value must be an integer, got {type(value).__name__}")
    if not isinstance(transaction.transaction_type, TransactionType):
        raise LedgerError(f"Unknown transaction type: {transaction.transaction_type!r}")

    kind = transaction.transaction_type
    if kind in (TransactionType.TOPUP, TransactionType.REFUND) and value <= 0:
        raise LedgerError(f"{kind.value} must be a positive credit")
    if kind == TransactionType.CALL_CHARGE:
        if value >= 0:
            raise LedgerError("call_charge must be a negative debit")
        if transaction.call_id is None:
            raise LedgerError("call_charge must reference a call")
    if kind == TransactionType.ADJUSTMENT and value == 0:
        raise LedgerError("adjustment must not be zero")


class TransactionHistory:
    """
    A user's transactions in ascending (timestamp, id) order.

    Lazy and restartable: each iteration pages through storage from the
    start, so it reflects appends made since the last pass.
    """

    def __init__(
        self,
        repository,
        owner: int,
        page_size: int = 500,
        transaction_type: Optional[TransactionType] = None,
        call_id: Optional[int] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ):
        self.repository = repository
        self.owner = owner
        self.page_size = page_size
        self.filters = {
            "transaction_type": transaction_type,
            "call_id": call_id,
            "since": isoformat(since),
            "until": isoformat(until),
        }

    def __iter__(self) -> Iterator[Transaction]:
        after: Optional[Tuple[str, int]] = None
        while True:
            page = self.repository.page(self.owner, after=after, limit=self.page_size, **self.filters)
            yield from page
            if len(page) < self.page_size:
                return
            last = page[-1]
            after = (last.timestamp, last.id)

    def total(self) -> int:
        return sum(t.value for t in self)


class Ledger:
    """
    Per-user ledger over the storage collaborator.

    Appends hold the user's lock for the whole storage transaction so the
    cached balance is never read and rewritten by two writers at once.
    """

    def __init__(
        self,
        db,
        users,
        transactions,
        locks,
        lock_timeout: float = 2.0,
        verify_on_append: bool = True,
        page_size: int = 500,
    ):
        self.db = db
        self.users = users
        self.transactions = transactions
        self.locks = locks
        self.lock_timeout = lock_timeout
        self.verify_on_append = verify_on_append
        self.page_size = page_size

    def append(
        self,
        transaction: Transaction,
        also: Optional[Callable[[Any], None]] = None,
        timeout: Optional[float] = None,
    ) -> Tuple[Transaction, int]:
        """
        Record a transaction and return it with the owner's new balance.

        `also` runs inside the same storage transaction with its connection,
        so related rows (e.g. a call's billing fields) commit or roll back
        together with the entry.
        """
        validate_transaction(transaction)
        wait = self.lock_timeout if timeout is None else timeout

        with self.locks.hold(f"user:{transaction.owner}", timeout=wait):
            try:
                with self.db.transaction() as conn:
                    stored, balance = self._append(conn, transaction)
                    if also is not None:
                        also(conn)
            except LedgerInconsistency as e:
                self._freeze(e)
                raise

        logger.info(
            "ledger_appended",
            transaction_id=stored.id,
            owner=stored.owner,
            type=stored.transaction_type.value,
            value=stored.value,
            balance=balance,
            call_id=stored.call_id,
        )
        return stored, balance

    def _append(self, conn, transaction: Transaction) -> Tuple[Transaction, int]:
        user = self.users.get(transaction.owner, conn=conn, for_update=True)
        if user is None:
            raise UserNotFound(transaction.owner)

        if user.frozen or self.verify_on_append:
            computed = self.transactions.sum_for(user.id, conn=conn)
            if user.frozen or computed != user.balance:
                raise LedgerInconsistency(user.id, user.balance, computed)

        new_balance = user.balance + transaction.value
        if new_balance < 0:
            raise LedgerError(
                f"Transaction of {transaction.value} would drive balance of user {user.id} below zero"
            )

        stored = self.transactions.insert(transaction, conn=conn)
        self.users.set_balance(user.id, new_balance, conn=conn)
        return stored, new_balance

    def _freeze(self, error: LedgerInconsistency) -> None:
        self.users.set_frozen(error.user_id, True)
        logger.critical(
            "ledger_inconsistency",
            user_id=error.user_id,
            cached=error.cached,
            computed=error.computed,
            action="debits_halted",
        )

    def account(self, user_id: int):
        user = self.users.get(user_id)
        if user is None:
            raise UserNotFound(user_id)
        return user

    def balance_of(self, user_id: int) -> int:
        return self.account(user_id).balance

    def require_funds(self, user_id: int):
        """The account, if it can pay for anything at all. Frozen accounts cannot."""
        user = self.account(user_id)
        if user.frozen or user.balance <= 0:
            raise InsufficientFunds(user_id, user.balance)
        return user

    def history(
        self,
        user_id: int,
        transaction_type: Optional[TransactionType] = None,
        call_id: Optional[int] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> TransactionHistory:
        return TransactionHistory(
            self.transactions,
            user_id,
            page_size=self.page_size,
            transaction_type=transaction_type,
            call_id=call_id,
            since=since,
            until=until,
        )

    def verify(self, user_id: int) -> Tuple[bool, int, int]:
        """Return (consistent, cached, computed)."""
        with self.db.transaction() as conn:
            user = self.users.get(user_id, conn=conn)
            if user is None:
                raise UserNotFound(user_id)
            computed = self.transactions.sum_for(user_id, conn=conn)
        return (user.balance == computed, user.balance, computed)

    def reconcile(self, user_id: int) -> int:
        """Rewrite the cached balance from the transactions and lift a freeze."""
        with self.locks.hold(f"user:{user_id}", timeout=self.lock_timeout):
            with self.db.transaction() as conn:
                user = self.users.get(user_id, conn=conn, for_update=True)
                if user is None:
                    raise UserNotFound(user_id)
                computed = self.transactions.sum_for(user_id, conn=conn)
                self.users.set_balance(user_id, computed, conn=conn)
                self.users.set_frozen(user_id, False, conn=conn)

        logger.warning(
            "ledger_reconciled",
            user_id=user_id,
            previous=user.balance,
            balance=computed,
            was_frozen=user.frozen,
        )
        return computed
