"""
Tests for the Accounting Service

End-to-end call flows through signaling events, the meter and the ledger.
"""

import threading
from datetime import timedelta
from decimal import Decimal

import pytest
import structlog
import structlog.testing

from phonebooth.config import BillingConfig
from phonebooth.core.calls import CallEvent, CallStatus, FailureReason
from phonebooth.core.errors import CallNotFound, UserNotFound
from phonebooth.core.ledger import TransactionType
from phonebooth.service import AccountingService

from conftest import T0


def call_charges(service, call):
    history = service.ledger.history(call.owner, transaction_type=TransactionType.CALL_CHARGE, call_id=call.id)
    return sum(t.value for t in history)


class TestStartCall:
    """Test placing calls."""

    def test_priced_destination_rings(self, service, funded):
        owner = funded(100)

        call = service.start_call(owner, "5551234", 1, "US")

        assert call.id is not None
        assert call.status == CallStatus.RINGING
        assert call.start_time == T0

    def test_unpriced_destination_fails_immediately(self, service, funded):
        owner = funded(100)

        call = service.start_call(owner, "331234", 33, "FR")

        assert call.status == CallStatus.FAILED
        assert call.state.reason == FailureReason.RATE_NOT_FOUND
        assert service.get_call(call.id).status == CallStatus.FAILED

    def test_unknown_user(self, service, us_rate):
        with pytest.raises(UserNotFound):
            service.start_call(999, "5551234", 1, "US")

    def test_list_calls_newest_first(self, service, funded, clock):
        owner = funded(100)
        first = service.start_call(owner, "5550001", 1, "US")
        clock.advance(1)
        second = service.start_call(owner, "5550002", 1, "US")

        assert [c.id for c in service.list_calls(owner)] == [second.id, first.id]

    def test_get_call_of_other_user_is_not_found(self, service, funded):
        owner = funded(100)
        call = service.start_call(owner, "5551234", 1, "US")
        other = service.create_user("bob@example.com", "+15550002")

        with pytest.raises(CallNotFound):
            service.get_call(call.id, owner=other.id)


class TestAnswer:
    """Test connecting calls."""

    def test_answer_connects(self, service, funded):
        owner = funded(100)
        call = service.start_call(owner, "5551234", 1, "US")

        connected = service.report_call_event(call.id, CallEvent.ANSWERED)

        assert connected.status == CallStatus.CONNECTED
        assert connected.state.rate.price == 100

    def test_answer_without_balance_fails(self, service, funded):
        owner = funded(0)
        call = service.start_call(owner, "5551234", 1, "US")

        result = service.report_call_event(call.id, CallEvent.ANSWERED)

        assert result.status == CallStatus.FAILED
        assert result.state.reason == FailureReason.INSUFFICIENT_FUNDS

    def test_answer_for_frozen_user_fails(self, service, funded):
        owner = funded(100)
        call = service.start_call(owner, "5551234", 1, "US")
        service.users.set_frozen(owner, True)

        result = service.report_call_event(call.id, CallEvent.ANSWERED)

        assert result.status == CallStatus.FAILED
        assert result.state.reason == FailureReason.INSUFFICIENT_FUNDS

    def test_answer_after_rate_removed_fails(self, service, funded):
        owner = funded(100)
        call = service.start_call(owner, "5551234", 1, "US")
        service.rates.remove_rate("US", 1)

        result = service.report_call_event(call.id, CallEvent.ANSWERED)

        assert result.status == CallStatus.FAILED
        assert result.state.reason == FailureReason.RATE_NOT_FOUND

    def test_unknown_call(self, service):
        with pytest.raises(CallNotFound):
            service.report_call_event(999, CallEvent.HANGUP)


class TestHangup:
    """Test hangup and settlement."""

    def test_hangup_while_ringing_cancels(self, service, funded):
        owner = funded(100)
        call = service.start_call(owner, "5551234", 1, "US")

        result = service.report_call_event(call.id, CallEvent.HANGUP)

        assert result.status == CallStatus.FAILED
        assert result.state.reason == FailureReason.CANCELLED
        assert result.price == 0

    def test_full_call(self, service, funded, clock):
        owner = funded(500)
        call = service.start_call(owner, "5551234", 1, "US")
        service.report_call_event(call.id, CallEvent.ANSWERED)
        service.tick(clock.advance(65))
        clock.advance(25)

        over = service.report_call_event(call.id, CallEvent.HANGUP)

        assert over.status == CallStatus.OVER
        assert over.price == 200
        assert over.end_time == T0 + timedelta(seconds=90)
        assert service.ledger.balance_of(owner) == 300

    def test_hangup_settles_unbilled_time(self, service, funded, clock):
        owner = funded(500)
        call = service.start_call(owner, "5551234", 1, "US")
        service.report_call_event(call.id, CallEvent.ANSWERED)
        clock.advance(130)

        over = service.report_call_event(call.id, CallEvent.HANGUP)

        assert over.price == 300
        assert service.ledger.balance_of(owner) == 200

    def test_price_equals_sum_of_charges(self, service, funded, clock):
        owner = funded(1000)
        call = service.start_call(owner, "5551234", 1, "US")
        service.report_call_event(call.id, CallEvent.ANSWERED)
        for _ in range(4):
            service.tick(clock.advance(25))
        clock.advance(7)

        over = service.report_call_event(call.id, CallEvent.HANGUP)

        assert over.price == -call_charges(service, over)
        assert over.price == 200

    def test_hangup_after_forced_hangup_is_ignored(self, service, funded, clock):
        owner = funded(150)
        call = service.start_call(owner, "5551234", 1, "US")
        service.report_call_event(call.id, CallEvent.ANSWERED)
        service.tick(clock.advance(65))

        result = service.report_call_event(call.id, CallEvent.HANGUP)

        assert result.status == CallStatus.OVER
        assert result.price == 150
        assert call_charges(service, result) == -150

    def test_duplicate_answer_is_ignored(self, service, funded, clock):
        owner = funded(100)
        call = service.start_call(owner, "5551234", 1, "US")
        connected = service.report_call_event(call.id, CallEvent.ANSWERED)
        clock.advance(10)

        again = service.report_call_event(call.id, CallEvent.ANSWERED)

        assert again.status == CallStatus.CONNECTED
        assert again.state.connected_at == connected.state.connected_at

    def test_settlement_deferred_while_user_busy(self, service, funded, clock):
        owner = funded(500)
        call = service.start_call(owner, "5551234", 1, "US")
        service.report_call_event(call.id, CallEvent.ANSWERED)
        clock.advance(30)
        held = threading.Event()
        release = threading.Event()

        def hold_user():
            with service.locks.hold(f"user:{owner}"):
                held.set()
                release.wait(5)

        holder = threading.Thread(target=hold_user)
        holder.start()
        try:
            assert held.wait(5)
            result = service.report_call_event(call.id, CallEvent.HANGUP)
        finally:
            release.set()
            holder.join(5)

        assert result.status == CallStatus.HANGING

        report = service.tick(clock.advance(60))

        assert report.settled == [call.id]
        settled = service.get_call(call.id)
        assert settled.status == CallStatus.OVER
        assert settled.price == 100
        assert settled.end_time == T0 + timedelta(seconds=30)


class TestSignalingError:
    """Test error events."""

    def test_error_while_ringing(self, service, funded):
        owner = funded(100)
        call = service.start_call(owner, "5551234", 1, "US")

        result = service.report_call_event(call.id, CallEvent.ERROR)

        assert result.status == CallStatus.FAILED
        assert result.state.reason == FailureReason.SIGNALING_ERROR

    def test_error_while_connected_settles_then_fails(self, service, funded, clock):
        owner = funded(500)
        call = service.start_call(owner, "5551234", 1, "US")
        service.report_call_event(call.id, CallEvent.ANSWERED)
        clock.advance(45)

        result = service.report_call_event(call.id, CallEvent.ERROR)

        assert result.status == CallStatus.FAILED
        assert result.state.reason == FailureReason.SIGNALING_ERROR
        assert result.price == 100
        assert service.ledger.balance_of(owner) == 400


class TestBalance:
    """Test balance presentation."""

    def test_balance_summary(self, service, funded):
        owner = funded(1234)

        summary = service.balance(owner)

        assert summary["balance"] == 1234
        assert summary["currency"] == "USD"
        assert summary["displayBalance"] == "12.34"
        assert summary["frozen"] is False

    def test_display_conversion(self, temp_db, clock):
        config = BillingConfig(
            database_url=temp_db,
            start_meter=False,
            display_rates={"EUR": Decimal("0.9")},
        )
        service = AccountingService(config=config, clock=clock)
        try:
            user = service.create_user("eve@example.com", "+445550001", display_currency="EUR")
            service.top_up(user.id, 1000)

            summary = service.balance(user.id)
        finally:
            service.db.close()

        assert summary["displayCurrency"] == "EUR"
        assert summary["displayBalance"] == "9.00"

    def test_duplicate_user_rejected(self, service, user):
        with pytest.raises(ValueError):
            service.create_user(user.email, "+15559999")


class TestHangupRace:
    """Test a signaling hangup racing the meter's forced hangup."""

    @pytest.mark.parametrize("attempt", range(5))
    def test_exactly_one_settlement(self, service, funded, clock, attempt):
        owner = funded(150)
        call = service.start_call(owner, "5551234", 1, "US")
        service.report_call_event(call.id, CallEvent.ANSWERED)
        clock.advance(65)
        start = threading.Barrier(2)
        errors = []

        def run(action):
            try:
                start.wait(5)
                action()
            except Exception as e:
                errors.append(e)

        threads = [
            threading.Thread(target=run, args=(lambda: service.report_call_event(call.id, CallEvent.HANGUP),)),
            threading.Thread(target=run, args=(service.tick,)),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(10)

        assert errors == []
        stored = service.get_call(call.id)
        assert stored.status == CallStatus.OVER
        assert stored.price == 150
        history = list(service.ledger.history(owner, transaction_type=TransactionType.CALL_CHARGE))
        assert [t.value for t in history] == [-150]
        assert stored.price == -call_charges(service, stored)
        assert service.ledger.balance_of(owner) == 0


class TestEventLogging:
    """Test lifecycle log events under structlog's default configuration."""

    @pytest.fixture(autouse=True)
    def default_structlog(self):
        structlog.reset_defaults()
        yield
        structlog.reset_defaults()

    def test_events_log_without_error(self, service, funded, clock):
        owner = funded(500)
        call = service.start_call(owner, "5551234", 1, "US")

        service.report_call_event(call.id, CallEvent.ANSWERED)
        service.report_call_event(call.id, CallEvent.ANSWERED)
        clock.advance(30)
        over = service.report_call_event(call.id, CallEvent.HANGUP)

        assert over.status == CallStatus.OVER

    def test_applied_and_ignored_events_name_the_signal(self, service, funded):
        owner = funded(500)
        call = service.start_call(owner, "5551234", 1, "US")

        with structlog.testing.capture_logs() as logs:
            service.report_call_event(call.id, CallEvent.ANSWERED)
            service.report_call_event(call.id, CallEvent.ANSWERED)

        applied = [entry for entry in logs if entry["event"] == "call_event_applied"]
        ignored = [entry for entry in logs if entry["event"] == "call_event_ignored"]
        assert applied[0]["signal"] == "answered"
        assert applied[0]["status"] == "connected"
        assert ignored[0]["signal"] == "answered"
        assert ignored[0]["status"] == "connected"
