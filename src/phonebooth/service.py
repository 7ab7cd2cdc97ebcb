"""
Accounting Service

The seam the HTTP layer and the CLI call into. Wires the components
together and delegates; the rules live in core and billing.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
import structlog

from .billing.lifecycle import CallLifecycle
from .billing.locks import LockRegistry
from .billing.meter import BillingMeter, TickReport
from .config import BillingConfig
from .core.calls import Call, CallEvent
from .core.clock import Clock, isoformat, utcnow
from .core.errors import CallNotFound
from .core.ledger import Ledger, Transaction, TransactionHistory, TransactionType
from .core.money import to_display
from .core.rates import Rate, RateTable
from .core.users import User
from .persistence.database import Database
from .persistence.repository import (
    CallRepository,
    RateRepository,
    TransactionRepository,
    UserRepository,
)

logger = structlog.get_logger()


class AccountingService:
    """Public operations of the billing core."""

    def __init__(
        self,
        config: Optional[BillingConfig] = None,
        db: Optional[Database] = None,
        clock: Optional[Clock] = None,
    ):
        self.config = config or BillingConfig.from_env()
        self.clock = clock or utcnow
        self.db = db or Database(self.config.database_url)
        self.db.initialize()

        self.users = UserRepository(self.db)
        self.calls = CallRepository(self.db)
        self.transactions = TransactionRepository(self.db)
        self.locks = LockRegistry(default_timeout=self.config.lock_timeout_seconds)

        self.rates = RateTable(RateRepository(self.db))
        self.ledger = Ledger(
            self.db,
            self.users,
            self.transactions,
            self.locks,
            lock_timeout=self.config.lock_timeout_seconds,
            verify_on_append=self.config.verify_ledger_on_append,
            page_size=self.config.history_page_size,
        )
        self.meter = BillingMeter(
            self.calls,
            self.ledger,
            self.locks,
            billing_unit_seconds=self.config.billing_unit_seconds,
            interval_seconds=self.config.meter_interval_seconds,
            ring_timeout_seconds=self.config.ring_timeout_seconds,
            lock_timeout=self.config.meter_lock_timeout_seconds,
            clock=self.clock,
        )
        self.lifecycle = CallLifecycle(
            self.calls,
            self.rates,
            self.ledger,
            self.meter,
            self.locks,
            lock_timeout=self.config.lock_timeout_seconds,
            clock=self.clock,
        )

    # Calls

    def start_call(self, owner: int, callee_id: str, country_code: int, country: Optional[str] = None) -> Call:
        return self.lifecycle.start_call(owner, callee_id, country_code, country)

    def report_call_event(self, call_id: int, event: CallEvent) -> Call:
        return self.lifecycle.handle_event(call_id, event)

    def get_call(self, call_id: int, owner: Optional[int] = None) -> Call:
        call = self.calls.get(call_id)
        if call is None or (owner is not None and call.owner != owner):
            raise CallNotFound(call_id)
        return call

    def list_calls(self, owner: int, limit: int = 100, offset: int = 0) -> List[Call]:
        self.ledger.account(owner)
        return self.calls.list_by_owner(owner, limit=limit, offset=offset)

    def tick(self, now: Optional[datetime] = None) -> TickReport:
        return self.meter.tick(now)

    # Ledger

    def list_transactions(
        self,
        owner: int,
        transaction_type: Optional[TransactionType] = None,
        call_id: Optional[int] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> TransactionHistory:
        self.ledger.account(owner)
        return self.ledger.history(
            owner,
            transaction_type=transaction_type,
            call_id=call_id,
            since=since,
            until=until,
        )

    def balance(self, owner: int) -> Dict[str, Any]:
        user = self.ledger.account(owner)
        return {
            "owner": user.id,
            "balance": user.balance,
            "currency": user.currency,
            "displayCurrency": user.display_currency,
            "displayBalance": str(
                to_display(user.balance, user.currency, user.display_currency, self.config.display_rates)
            ),
            "frozen": user.frozen,
        }

    def _credit(
        self,
        owner: int,
        kind: TransactionType,
        amount: int,
        call_id: Optional[int] = None,
        note: Optional[str] = None,
    ) -> Transaction:
        user = self.ledger.account(owner)
        transaction, _ = self.ledger.append(
            Transaction(
                owner=owner,
                transaction_type=kind,
                value=amount,
                display_currency=user.display_currency,
                timestamp=isoformat(self.clock()),
                call_id=call_id,
                note=note,
            )
        )
        return transaction

    def top_up(self, owner: int, amount: int, note: Optional[str] = None) -> Transaction:
        return self._credit(owner, TransactionType.TOPUP, amount, note=note)

    def refund(self, owner: int, amount: int, call_id: Optional[int] = None, note: Optional[str] = None) -> Transaction:
        if call_id is not None:
            self.get_call(call_id, owner=owner)
        return self._credit(owner, TransactionType.REFUND, amount, call_id=call_id, note=note)

    def adjust(self, owner: int, amount: int, note: Optional[str] = None) -> Transaction:
        return self._credit(owner, TransactionType.ADJUSTMENT, amount, note=note)

    def reconcile(self, owner: int) -> int:
        return self.ledger.reconcile(owner)

    # Accounts and pricing administration

    def create_user(
        self,
        email: str,
        caller_id: str,
        currency: Optional[str] = None,
        display_currency: Optional[str] = None,
    ) -> User:
        currency = (currency or self.config.default_currency).upper()
        return self.users.create(
            User(
                email=email,
                caller_id=str(caller_id),
                currency=currency,
                display_currency=(display_currency or currency).upper(),
                created_at=isoformat(self.clock()),
            )
        )

    def set_rate(self, country: str, dial_code: int, price: int) -> Rate:
        return self.rates.set_rate(country, dial_code, price)

    def list_rates(self) -> List[Rate]:
        return self.rates.all()

    # Background metering

    def start(self) -> None:
        self.meter.start()

    def shutdown(self, timeout: Optional[float] = None) -> None:
        self.meter.stop(timeout)
        logger.info("accounting_service_stopped")
