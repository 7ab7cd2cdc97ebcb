"""
Call Lifecycle

Drives the call state model from signaling events. Every transition runs
under the call's lock, on a fresh read of the call, and is written to
storage before the new Call is handed back.
"""

from typing import Optional
import structlog

from ..core.calls import Call, CallEvent, Connected, FailureReason, Hanging, Ringing
from ..core.clock import Clock, utcnow
from ..core.errors import CallBusy, CallNotFound, InsufficientFunds, InvalidTransition, RateNotFound
from ..core.rates import normalize_country

logger = structlog.get_logger()


class CallLifecycle:
    """Applies answered / hangup / error events to stored calls."""

    def __init__(
        self,
        calls,
        rates,
        ledger,
        meter,
        locks,
        lock_timeout: float = 2.0,
        clock: Optional[Clock] = None,
    ):
        self.calls = calls
        self.rates = rates
        self.ledger = ledger
        self.meter = meter
        self.locks = locks
        self.lock_timeout = lock_timeout
        self.clock = clock or utcnow

    def start_call(
        self,
        owner: int,
        callee_id: str,
        country_code: int,
        country: Optional[str] = None,
    ) -> Call:
        """
        Record a new outbound attempt as ringing.

        A destination no rate prices is recorded as failed straight away.
        """
        self.ledger.account(owner)
        now = self.clock()
        call = Call(
            owner=owner,
            callee_id=str(callee_id),
            country_code=int(country_code),
            start_time=now,
            country=normalize_country(country) if country else None,
        )

        try:
            self.rates.resolve(call.country_code, call.country)
        except RateNotFound as e:
            call = call.fail(now, FailureReason.RATE_NOT_FOUND)
            logger.warning("call_unpriced", owner=owner, country_code=country_code, country=country, reason=e.reason)

        call = self.calls.create(call)
        logger.info("call_started", call_id=call.id, owner=owner, status=call.status.value)
        return call

    def handle_event(self, call_id: int, event: CallEvent) -> Call:
        """
        Apply a signaling event.

        Events a call cannot accept in its current state are logged and
        ignored; the call is returned unchanged.
        """
        with self.locks.hold(f"call:{call_id}", timeout=self.lock_timeout):
            call = self.calls.get(call_id)
            if call is None:
                raise CallNotFound(call_id)

            try:
                updated = self._apply(call, CallEvent(event))
            except InvalidTransition as e:
                logger.warning(
                    "call_event_ignored",
                    call_id=call_id,
                    status=e.status,
                    signal=e.event,
                )
                return call

        logger.info(
            "call_event_applied",
            call_id=call_id,
            signal=CallEvent(event).value,
            status=updated.status.value,
        )
        return updated

    def _apply(self, call: Call, event: CallEvent) -> Call:
        now = self.clock()

        if event == CallEvent.ANSWERED:
            return self._answer(call)

        if isinstance(call.state, Ringing):
            reason = FailureReason.CANCELLED if event == CallEvent.HANGUP else FailureReason.SIGNALING_ERROR
            return self._save(call.fail(now, reason), call)

        close = None
        if event == CallEvent.ERROR:
            close = lambda c: c.fail(now, FailureReason.SIGNALING_ERROR)

        if isinstance(call.state, Connected):
            call = self._save(call.hang_up(now), call)
        elif not (isinstance(call.state, Hanging) and close is not None):
            raise InvalidTransition(call.id, call.status.value, event.value)

        try:
            return self.meter.settle(call, now, close=close)
        except CallBusy:
            # Left as stored; a hanging call is settled by the next meter tick.
            logger.info("call_settlement_deferred", call_id=call.id)
            return self.calls.get(call.id) or call

    def _answer(self, call: Call) -> Call:
        now = self.clock()
        if not isinstance(call.state, Ringing):
            raise InvalidTransition(call.id, call.status.value, CallEvent.ANSWERED.value)

        try:
            rate = self.rates.resolve(call.country_code, call.country)
        except RateNotFound:
            logger.warning("call_connect_refused", call_id=call.id, reason=FailureReason.RATE_NOT_FOUND)
            return self._save(call.fail(now, FailureReason.RATE_NOT_FOUND), call)

        try:
            account = self.ledger.require_funds(call.owner)
        except InsufficientFunds as e:
            logger.warning(
                "call_connect_refused",
                call_id=call.id,
                reason=FailureReason.INSUFFICIENT_FUNDS,
                balance=e.balance,
            )
            return self._save(call.fail(now, FailureReason.INSUFFICIENT_FUNDS), call)

        connected = self._save(call.connect(rate, now), call)
        logger.info(
            "call_connected",
            call_id=call.id,
            country=rate.country,
            code=rate.code,
            rate=rate.price,
            balance=account.balance,
        )
        return connected

    def _save(self, updated: Call, previous: Call) -> Call:
        self.calls.save(updated, previous=previous)
        return updated
