"""
Billing Meter

Periodically bills every connected call against the rate snapshotted when
it connected, settles hung-up calls, and fails calls left ringing past the
ring timeout.

Charges are rounded up to whole billing units of the cumulative connected
duration: at each tick the call owes ceil(elapsed / unit) units, of which
the ones not yet billed are charged. A tick interval shorter than the
billing unit therefore never rounds the same partial unit twice.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from threading import Event, Thread
from typing import Any, Callable, Dict, List, Optional, Tuple
import structlog

from ..core.calls import Call, CallStatus, Connected, FailureReason, Hanging, Ringing
from ..core.clock import Clock, isoformat, utcnow
from ..core.errors import (
    BillingError,
    CallBusy,
    LedgerInconsistency,
    StorageUnavailable,
)
from ..core.ledger import Transaction, TransactionType

logger = structlog.get_logger()

_MICROSECOND = timedelta(microseconds=1)


def billable_units(connected_at: datetime, until: datetime, unit_seconds: int) -> int:
    """Whole billing units covering [connected_at, until], rounded up."""
    elapsed_us = (until - connected_at) // _MICROSECOND
    if elapsed_us <= 0:
        return 0
    unit_us = unit_seconds * 1_000_000
    return -(-elapsed_us // unit_us)


@dataclass
class TickReport:
    """What a single meter pass did."""
    at: datetime
    metered: List[int] = field(default_factory=list)
    settled: List[int] = field(default_factory=list)
    forced_hangups: List[int] = field(default_factory=list)
    timed_out: List[int] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)
    errors: Dict[int, str] = field(default_factory=dict)
    charged: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "at": isoformat(self.at),
            "metered": self.metered,
            "settled": self.settled,
            "forced_hangups": self.forced_hangups,
            "timed_out": self.timed_out,
            "skipped": self.skipped,
            "errors": self.errors,
            "charged": self.charged,
        }


class BillingMeter:
    """
    The metering engine.

    tick() may be called directly (tests, the CLI); start()/stop() run it
    on a background thread every `interval_seconds`, with a stop event as
    the cancellation token.
    """

    def __init__(
        self,
        calls,
        ledger,
        locks,
        billing_unit_seconds: int = 60,
        interval_seconds: float = 5.0,
        ring_timeout_seconds: int = 60,
        lock_timeout: float = 0.5,
        clock: Optional[Clock] = None,
    ):
        if billing_unit_seconds <= 0:
            raise ValueError("billing_unit_seconds must be positive")
        self.calls = calls
        self.ledger = ledger
        self.locks = locks
        self.billing_unit_seconds = billing_unit_seconds
        self.interval_seconds = interval_seconds
        self.ring_timeout = timedelta(seconds=ring_timeout_seconds)
        self.lock_timeout = lock_timeout
        self.clock = clock or utcnow

        self._stop = Event()
        self._thread: Optional[Thread] = None
        self._ticks = 0

    # ------------------------------------------------------------------
    # Charging (caller holds the call lock)
    # ------------------------------------------------------------------

    def _bill(
        self,
        call: Call,
        until: datetime,
        now: datetime,
        close: Optional[Callable[[Call], Call]] = None,
    ) -> Tuple[Call, int, bool]:
        """
        Charge a metered call up to `until` and persist it.

        Returns (call, charge, exhausted). When `close` is given, or the
        balance could not cover what was due, the call is closed in the same
        storage transaction as the charge.
        """
        state = call.state
        units = max(billable_units(state.connected_at, until, self.billing_unit_seconds), state.billed_units)
        due = (units - state.billed_units) * state.rate.price

        with self.locks.hold(f"user:{call.owner}", timeout=self.lock_timeout):
            account = self.ledger.account(call.owner)
            charge = min(due, account.balance)
            exhausted = charge < due

            updated = call.record_charge(units, charge, now)
            if exhausted and close is None:
                close = Call.finish
            if close is not None:
                if isinstance(updated.state, Connected):
                    updated = updated.hang_up(until)
                updated = close(updated)

            if charge > 0:
                self.ledger.append(
                    Transaction(
                        owner=call.owner,
                        transaction_type=TransactionType.CALL_CHARGE,
                        value=-charge,
                        display_currency=account.display_currency,
                        timestamp=isoformat(now),
                        call_id=call.id,
                    ),
                    also=lambda conn: self.calls.save(updated, conn=conn, previous=call),
                    timeout=self.lock_timeout,
                )
            else:
                self.calls.save(updated, previous=call)

        if exhausted:
            logger.warning(
                "call_funds_exhausted",
                call_id=call.id,
                owner=call.owner,
                due=due,
                charged=charge,
            )
        return updated, charge, exhausted

    def meter_call(self, call: Call, now: Optional[datetime] = None) -> Tuple[Call, int, bool]:
        """Bill a connected call up to now. Non-connected calls are left alone."""
        now = now or self.clock()
        if not isinstance(call.state, Connected):
            return call, 0, False
        return self._bill(call, until=now, now=now)

    def settle(
        self,
        call: Call,
        now: Optional[datetime] = None,
        close: Optional[Callable[[Call], Call]] = None,
    ) -> Call:
        """
        Final charge of a hanging call up to its hangup instant, then close it
        (as `over` unless `close` says otherwise).
        """
        now = now or self.clock()
        if not isinstance(call.state, Hanging):
            return call
        settled, charge, _ = self._bill(call, until=call.state.hangup_at, now=now, close=close or Call.finish)
        logger.info(
            "call_settled",
            call_id=settled.id,
            status=settled.status.value,
            final_charge=charge,
            price=settled.price,
        )
        return settled

    def expire_ringing(self, call: Call, now: Optional[datetime] = None) -> Optional[Call]:
        now = now or self.clock()
        if not isinstance(call.state, Ringing) or now - call.start_time < self.ring_timeout:
            return None
        failed = call.fail(now, FailureReason.TIMEOUT)
        self.calls.save(failed, previous=call)
        logger.info("call_ring_timeout", call_id=call.id, owner=call.owner)
        return failed

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    def tick(self, now: Optional[datetime] = None) -> TickReport:
        """One pass over all non-terminal calls."""
        now = now or self.clock()
        report = TickReport(at=now)
        candidates = self.calls.list_by_status(
            [CallStatus.CONNECTED, CallStatus.HANGING, CallStatus.RINGING]
        )

        for candidate in candidates:
            try:
                with self.locks.hold(f"call:{candidate.id}", timeout=0):
                    call = self.calls.get(candidate.id)
                    if call is not None:
                        self._process(call, now, report)
            except CallBusy:
                report.skipped.append(candidate.id)
                logger.info("meter_call_skipped", call_id=candidate.id, reason="busy")
            except LedgerInconsistency as e:
                report.errors[candidate.id] = str(e)
                logger.critical("meter_ledger_inconsistency", call_id=candidate.id, user_id=e.user_id)
            except StorageUnavailable as e:
                report.errors[candidate.id] = str(e)
                logger.error("meter_storage_unavailable", call_id=candidate.id, error=str(e))
            except BillingError as e:
                report.errors[candidate.id] = str(e)
                logger.warning("meter_call_error", call_id=candidate.id, error=str(e))

        self._ticks += 1
        logger.info(
            "meter_tick",
            calls=len(candidates),
            metered=len(report.metered),
            settled=len(report.settled),
            forced_hangups=len(report.forced_hangups),
            timed_out=len(report.timed_out),
            skipped=len(report.skipped),
            errors=len(report.errors),
            charged=report.charged,
        )
        return report

    def _process(self, call: Call, now: datetime, report: TickReport) -> None:
        if isinstance(call.state, Connected):
            _, charge, exhausted = self.meter_call(call, now)
            report.metered.append(call.id)
            report.charged += charge
            if exhausted:
                report.forced_hangups.append(call.id)
        elif isinstance(call.state, Hanging):
            before = call.state.charged
            settled = self.settle(call, now)
            report.settled.append(call.id)
            report.charged += settled.charged - before
        elif isinstance(call.state, Ringing):
            if self.expire_ringing(call, now) is not None:
                report.timed_out.append(call.id)

    # ------------------------------------------------------------------
    # Background scheduling
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def ticks(self) -> int:
        return self._ticks

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = Thread(target=self.run, name="billing-meter", daemon=True)
        self._thread.start()

    def run(self) -> None:
        """Tick every interval until stopped. The tick in flight always completes."""
        logger.info("meter_started", interval_seconds=self.interval_seconds, billing_unit_seconds=self.billing_unit_seconds)
        while not self._stop.wait(self.interval_seconds):
            try:
                self.tick()
            except StorageUnavailable as e:
                logger.error("meter_tick_failed", error=str(e), retry_in=self.interval_seconds)
            except Exception:
                logger.exception("meter_tick_crashed")
        logger.info("meter_stopped", ticks=self._ticks)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
