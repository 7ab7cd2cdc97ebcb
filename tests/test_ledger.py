"""
Tests for the Ledger

Bookkeeping rules, cached balance consistency, and history iteration.
"""

import pytest

from phonebooth.core.errors import LedgerError, LedgerInconsistency, UserNotFound
from phonebooth.core.ledger import (
    Transaction,
    TransactionHistory,
    TransactionType,
    validate_transaction,
)


class TestValidation:
    """Test transaction well-formedness."""

    def test_topup_must_be_positive(self):
        with pytest.raises(LedgerError):
            validate_transaction(Transaction(owner=1, transaction_type=TransactionType.TOPUP, value=0))

    def test_call_charge_must_be_negative(self):
        with pytest.raises(LedgerError):
            validate_transaction(
                Transaction(owner=1, transaction_type=TransactionType.CALL_CHARGE, value=100, call_id=1)
            )

    def test_call_charge_needs_call(self):
        with pytest.raises(LedgerError):
            validate_transaction(Transaction(owner=1, transaction_type=TransactionType.CALL_CHARGE, value=-100))

    def test_float_value_rejected(self):
        with pytest.raises(LedgerError):
            validate_transaction(Transaction(owner=1, transaction_type=TransactionType.TOPUP, value=1.5))

    def test_bool_value_rejected(self):
        with pytest.raises(LedgerError):
            validate_transaction(Transaction(owner=1, transaction_type=TransactionType.TOPUP, value=True))

    def test_zero_adjustment_rejected(self):
        with pytest.raises(LedgerError):
            validate_transaction(Transaction(owner=1, transaction_type=TransactionType.ADJUSTMENT, value=0))

    def test_negative_adjustment_allowed(self):
        validate_transaction(Transaction(owner=1, transaction_type=TransactionType.ADJUSTMENT, value=-5))


class TestAppend:
    """Test appends and the cached balance."""

    def test_topup_updates_balance(self, service, user):
        transaction, balance = service.ledger.append(
            Transaction(owner=user.id, transaction_type=TransactionType.TOPUP, value=500)
        )

        assert transaction.id is not None
        assert balance == 500
        assert service.ledger.balance_of(user.id) == 500

    def test_balance_equals_sum_of_transactions(self, service, user):
        service.top_up(user.id, 500)
        service.adjust(user.id, -120)
        service.refund(user.id, 20)

        assert service.ledger.balance_of(user.id) == 400
        assert service.ledger.history(user.id).total() == 400
        assert service.ledger.verify(user.id) == (True, 400, 400)

    def test_cannot_go_negative(self, service, user):
        service.top_up(user.id, 100)

        with pytest.raises(LedgerError):
            service.adjust(user.id, -101)

        assert service.ledger.balance_of(user.id) == 100
        assert len(list(service.ledger.history(user.id))) == 1

    def test_float_amount_never_reaches_storage(self, service, user):
        with pytest.raises(LedgerError):
            service.top_up(user.id, 10.5)

        assert list(service.ledger.history(user.id)) == []

    def test_unknown_user(self, service):
        with pytest.raises(UserNotFound):
            service.top_up(999, 100)

    def test_failed_side_write_rolls_back_entry(self, service, user):
        """Writes passed as `also` commit or roll back with the entry."""
        def explode(conn):
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            service.ledger.append(
                Transaction(owner=user.id, transaction_type=TransactionType.TOPUP, value=100),
                also=explode,
            )

        assert service.ledger.balance_of(user.id) == 0
        assert list(service.ledger.history(user.id)) == []

    def test_display_currency_recorded(self, service):
        euro = service.create_user("eve@example.com", "+445550001", currency="usd", display_currency="eur")

        transaction = service.top_up(euro.id, 100)

        assert transaction.display_currency == "EUR"


class TestConsistency:
    """Test detection and repair of a diverged cached balance."""

    def test_divergence_freezes_user(self, service, user):
        service.top_up(user.id, 100)
        service.users.set_balance(user.id, 999)

        with pytest.raises(LedgerInconsistency) as exc:
            service.top_up(user.id, 50)

        assert exc.value.cached == 999
        assert exc.value.computed == 100
        assert service.ledger.account(user.id).frozen is True

    def test_frozen_user_cannot_be_debited(self, service, user):
        service.top_up(user.id, 100)
        service.users.set_frozen(user.id, True)

        with pytest.raises(LedgerInconsistency):
            service.adjust(user.id, -10)

    def test_verify_reports_divergence(self, service, user):
        service.top_up(user.id, 100)
        service.users.set_balance(user.id, 40)

        assert service.ledger.verify(user.id) == (False, 40, 100)

    def test_reconcile_repairs_and_unfreezes(self, service, user):
        service.top_up(user.id, 100)
        service.users.set_balance(user.id, 999)
        with pytest.raises(LedgerInconsistency):
            service.top_up(user.id, 50)

        assert service.reconcile(user.id) == 100

        account = service.ledger.account(user.id)
        assert account.balance == 100
        assert account.frozen is False
        service.top_up(user.id, 50)
        assert service.ledger.balance_of(user.id) == 150


class TestHistory:
    """Test lazy, restartable history."""

    def test_ascending_order(self, service, user, clock):
        for amount in (10, 20, 30):
            service.top_up(user.id, amount)
            clock.advance(1)

        values = [t.value for t in service.list_transactions(user.id)]

        assert values == [10, 20, 30]

    def test_same_timestamp_ordered_by_id(self, service, user):
        for amount in (1, 2, 3, 4, 5):
            service.top_up(user.id, amount)

        transactions = list(service.ledger.history(user.id))

        assert [t.value for t in transactions] == [1, 2, 3, 4, 5]
        assert [t.id for t in transactions] == sorted(t.id for t in transactions)

    def test_paging_across_pages(self, service, user, clock):
        for amount in range(1, 8):
            service.top_up(user.id, amount)
            clock.advance(1)

        history = TransactionHistory(service.transactions, user.id, page_size=2)

        assert [t.value for t in history] == list(range(1, 8))

    def test_restartable_and_sees_new_entries(self, service, user):
        service.top_up(user.id, 10)
        history = service.ledger.history(user.id)

        assert len(list(history)) == 1
        service.top_up(user.id, 20)
        assert [t.value for t in history] == [10, 20]
        assert [t.value for t in history] == [10, 20]

    def test_filter_by_type(self, service, user):
        service.top_up(user.id, 100)
        service.adjust(user.id, -10)

        adjustments = list(service.ledger.history(user.id, transaction_type=TransactionType.ADJUSTMENT))

        assert [t.value for t in adjustments] == [-10]

    def test_time_window(self, service, user, clock):
        service.top_up(user.id, 1)
        start = clock.advance(10)
        service.top_up(user.id, 2)
        end = clock.advance(10)
        service.top_up(user.id, 3)

        window = list(service.ledger.history(user.id, since=start, until=end))

        assert [t.value for t in window] == [2]

    def test_only_own_transactions(self, service, user):
        other = service.create_user("bob@example.com", "+15550002")
        service.top_up(user.id, 10)
        service.top_up(other.id, 99)

        assert [t.value for t in service.ledger.history(user.id)] == [10]
