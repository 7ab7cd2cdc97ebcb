"""
Repository Layer

CRUD for users, rates, calls and transactions. Every method accepts an
optional connection so several writes can share one storage transaction.
"""

from typing import Any, Iterable, List, Optional, Tuple
import structlog

from ..core.calls import Call, CallStatus
from ..core.clock import isoformat, utcnow
from ..core.errors import CallChanged
from ..core.ledger import Transaction, TransactionType
from ..core.rates import Rate
from ..core.users import User
from .database import Database, get_database
from .models import (
    CallRecord,
    rate_from_row,
    transaction_from_row,
    transaction_to_db_tuple,
    user_from_row,
)

logger = structlog.get_logger()


class UserRepository:
    """Repository for user accounts."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def create(self, user: User) -> User:
        """Create a user. The balance always starts at zero; credit it through the Ledger."""
        try:
            user_id = self.db.insert(
                """INSERT INTO users
                   (email, caller_id, balance, currency, display_currency, frozen, created_at)
                   VALUES (?, ?, 0, ?, ?, ?, ?)""",
                (user.email, user.caller_id, user.currency, user.display_currency, False, user.created_at)
            )
        except self.db.integrity_errors as e:
            raise ValueError(f"User {user.email} already exists") from e
        logger.info("user_created", user_id=user_id, email=user.email)
        return self.get(user_id)

    def get(self, user_id: int, conn: Any = None, for_update: bool = False) -> Optional[User]:
        query = "SELECT * FROM users WHERE id = ?"
        if for_update and self.db.is_postgres:
            query += " FOR UPDATE"
        results = self.db.execute(query, (user_id,), conn=conn)
        return user_from_row(results[0]) if results else None

    def set_balance(self, user_id: int, balance: int, conn: Any = None) -> None:
        self.db.update("UPDATE users SET balance = ? WHERE id = ?", (balance, user_id), conn=conn)

    def set_frozen(self, user_id: int, frozen: bool, conn: Any = None) -> None:
        self.db.update("UPDATE users SET frozen = ? WHERE id = ?", (frozen, user_id), conn=conn)

    def list_all(self, limit: int = 100, offset: int = 0) -> List[User]:
        results = self.db.execute(
            "SELECT * FROM users ORDER BY id ASC LIMIT ? OFFSET ?",
            (limit, offset)
        )
        return [user_from_row(r) for r in results]


class RateRepository:
    """Repository for destination rates."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def get(self, country: str, code: int) -> Optional[Rate]:
        results = self.db.execute(
            "SELECT * FROM rates WHERE country = ? AND code = ?",
            (country, code)
        )
        return rate_from_row(results[0]) if results else None

    def find_by_code(self, code: int) -> List[Rate]:
        results = self.db.execute(
            "SELECT * FROM rates WHERE code = ? ORDER BY country ASC",
            (code,)
        )
        return [rate_from_row(r) for r in results]

    def upsert(self, rate: Rate) -> Rate:
        now = isoformat(utcnow())
        with self.db.transaction() as conn:
            updated = self.db.update(
                "UPDATE rates SET price = ?, updated_at = ? WHERE country = ? AND code = ?",
                (rate.price, now, rate.country, rate.code),
                conn=conn,
            )
            if not updated:
                self.db.insert(
                    "INSERT INTO rates (country, code, price, updated_at) VALUES (?, ?, ?, ?)",
                    (rate.country, rate.code, rate.price, now),
                    conn=conn,
                )
        return self.get(rate.country, rate.code)

    def delete(self, country: str, code: int) -> bool:
        return self.db.update(
            "DELETE FROM rates WHERE country = ? AND code = ?",
            (country, code)
        ) > 0

    def list_all(self) -> List[Rate]:
        results = self.db.execute("SELECT * FROM rates ORDER BY country ASC, code ASC")
        return [rate_from_row(r) for r in results]


class CallRepository:
    """Repository for calls."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def create(self, call: Call, conn: Any = None) -> Call:
        record = CallRecord.from_call(call)
        placeholders = ", ".join("?" for _ in CallRecord.COLUMNS)
        call_id = self.db.insert(
            f"INSERT INTO calls ({', '.join(CallRecord.COLUMNS)}) VALUES ({placeholders})",
            record.to_db_tuple(),
            conn=conn,
        )
        record.id = call_id
        return record.to_call()

    def get(self, call_id: int, conn: Any = None) -> Optional[Call]:
        results = self.db.execute("SELECT * FROM calls WHERE id = ?", (call_id,), conn=conn)
        return CallRecord.from_row(results[0]).to_call() if results else None

    def save(self, call: Call, conn: Any = None, previous: Optional[Call] = None) -> Call:
        """
        Write every column of an existing call.

        With `previous` the row is only written while it still holds the
        status and billed units of that earlier read; otherwise CallChanged
        is raised and the enclosing storage transaction rolls back.
        """
        if call.id is None:
            raise ValueError("Cannot save a call that was never created")
        record = CallRecord.from_call(call)
        assignments = ", ".join(f"{column} = ?" for column in CallRecord.COLUMNS)
        query = f"UPDATE calls SET {assignments} WHERE id = ?"
        params = (*record.to_db_tuple(), call.id)
        if previous is not None:
            expected = CallRecord.from_call(previous)
            query += " AND status = ? AND billed_units = ?"
            params += (expected.status, expected.billed_units)

        if self.db.update(query, params, conn=conn) == 0:
            logger.warning("call_changed", call_id=call.id, status=record.status)
            raise CallChanged(call.id)
        logger.debug("call_saved", call_id=call.id, status=record.status)
        return call

    def list_by_owner(self, owner: int, limit: int = 100, offset: int = 0) -> List[Call]:
        results = self.db.execute(
            "SELECT * FROM calls WHERE owner = ? ORDER BY start_time DESC, id DESC LIMIT ? OFFSET ?",
            (owner, limit, offset)
        )
        return [CallRecord.from_row(r).to_call() for r in results]

    def list_by_status(self, statuses: Iterable[CallStatus]) -> List[Call]:
        values = [s.value for s in statuses]
        if not values:
            return []
        placeholders = ",".join("?" for _ in values)
        results = self.db.execute(
            f"SELECT * FROM calls WHERE status IN ({placeholders}) ORDER BY id ASC",
            tuple(values)
        )
        return [CallRecord.from_row(r).to_call() for r in results]


class TransactionRepository:
    """Repository for ledger transactions. Rows are only ever inserted."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def insert(self, transaction: Transaction, conn: Any = None) -> Transaction:
        transaction_id = self.db.insert(
            """INSERT INTO transactions
               (owner, transaction_type, display_currency, value, timestamp, call_id, note)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            transaction_to_db_tuple(transaction),
            conn=conn,
        )
        return Transaction(
            id=transaction_id,
            owner=transaction.owner,
            transaction_type=transaction.transaction_type,
            value=transaction.value,
            display_currency=transaction.display_currency,
            timestamp=transaction.timestamp,
            call_id=transaction.call_id,
            note=transaction.note,
        )

    def sum_for(self, owner: int, conn: Any = None) -> int:
        results = self.db.execute(
            "SELECT COALESCE(SUM(value), 0) AS total FROM transactions WHERE owner = ?",
            (owner,),
            conn=conn,
        )
        return int(results[0]["total"]) if results else 0

    def sum_for_call(self, call_id: int) -> int:
        results = self.db.execute(
            "SELECT COALESCE(SUM(value), 0) AS total FROM transactions WHERE call_id = ? AND transaction_type = ?",
            (call_id, TransactionType.CALL_CHARGE.value)
        )
        return int(results[0]["total"]) if results else 0

    def page(
        self,
        owner: int,
        after: Optional[Tuple[str, int]] = None,
        limit: int = 500,
        transaction_type: Optional[TransactionType] = None,
        call_id: Optional[int] = None,
        since: Optional[str] = None,
        until: Optional[str] = None,
    ) -> List[Transaction]:
        """One page of a user's transactions, ascending, strictly after `after`."""
        clauses = ["owner = ?"]
        params: list = [owner]
        if after is not None:
            clauses.append("(timestamp > ? OR (timestamp = ? AND id > ?))")
            params.extend([after[0], after[0], after[1]])
        if transaction_type is not None:
            clauses.append("transaction_type = ?")
            params.append(transaction_type.value)
        if call_id is not None:
            clauses.append("call_id = ?")
            params.append(call_id)
        if since is not None:
            clauses.append("timestamp >= ?")
            params.append(since)
        if until is not None:
            clauses.append("timestamp < ?")
            params.append(until)
        params.append(limit)

        results = self.db.execute(
            f"SELECT * FROM transactions WHERE {' AND '.join(clauses)} ORDER BY timestamp ASC, id ASC LIMIT ?",
            tuple(params)
        )
        return [transaction_from_row(r) for r in results]
