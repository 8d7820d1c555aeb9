"""
Unit Tests for the Application Ledger

Tests cover:
1. Entry creation and idempotency
2. Refund and capture transitions
3. Exactly-once crediting on repeated settlement
"""

import pytest
from uuid import UUID

from honeydrops.balance import BalanceStore
from honeydrops.errors import AlreadyTerminalError, BusyError, LedgerInconsistencyError
from honeydrops.ledger import ApplicationLedger
from honeydrops.models import EntryState
from honeydrops.storage import KeyedLocks


USER_ID = UUID("550e8400-e29b-41d4-a716-446655440000")
JOB_ID = UUID("aaaaaaaa-0000-0000-0000-000000000001")
APPLICATION_ID = UUID("bbbbbbbb-0000-0000-0000-000000000001")


def make_ledger(balance: int = 0) -> ApplicationLedger:
    balances = BalanceStore()
    if balance:
        balances.credit(USER_ID, balance)
    return ApplicationLedger(balances)


class TestCreateEntry:
    """Tests for entry creation."""

    def test_create_entry_reserved(self):
        ledger = make_ledger()

        entry = ledger.create_entry(APPLICATION_ID, USER_ID, JOB_ID, 3)

        assert entry.state == EntryState.RESERVED
        assert entry.reserved_amount == 3
        assert entry.settled_at is None
        assert not entry.is_terminal()

    def test_create_entry_twice_returns_existing(self):
        ledger = make_ledger()

        first = ledger.create_entry(APPLICATION_ID, USER_ID, JOB_ID, 3)
        second = ledger.create_entry(APPLICATION_ID, USER_ID, JOB_ID, 3)

        assert second == first
        assert len(ledger.storage.ledger_entries) == 1

    def test_create_entry_does_not_touch_balance(self):
        ledger = make_ledger(balance=3)

        ledger.create_entry(APPLICATION_ID, USER_ID, JOB_ID, 3)

        assert ledger.balances.get_balance(USER_ID) == 3


class TestSettlement:
    """Tests for refund and capture."""

    def test_refund_credits_reserved_amount(self):
        ledger = make_ledger()
        ledger.create_entry(APPLICATION_ID, USER_ID, JOB_ID, 3)

        entry = ledger.mark_refunded(APPLICATION_ID)

        assert entry.state == EntryState.REFUNDED
        assert entry.settled_at is not None
        assert ledger.balances.get_balance(USER_ID) == 3

    def test_refund_twice_credits_once(self):
        ledger = make_ledger()
        ledger.create_entry(APPLICATION_ID, USER_ID, JOB_ID, 3)
        ledger.mark_refunded(APPLICATION_ID)

        with pytest.raises(AlreadyTerminalError):
            ledger.mark_refunded(APPLICATION_ID)

        assert ledger.balances.get_balance(USER_ID) == 3

    def test_capture_keeps_funds(self):
        ledger = make_ledger()
        ledger.create_entry(APPLICATION_ID, USER_ID, JOB_ID, 3)

        entry = ledger.mark_captured(APPLICATION_ID)

        assert entry.state == EntryState.CAPTURED
        assert ledger.balances.get_balance(USER_ID) == 0

    def test_terminal_states_do_not_cross(self):
        ledger = make_ledger()
        ledger.create_entry(APPLICATION_ID, USER_ID, JOB_ID, 3)
        ledger.mark_captured(APPLICATION_ID)

        with pytest.raises(AlreadyTerminalError):
            ledger.mark_refunded(APPLICATION_ID)
        with pytest.raises(AlreadyTerminalError):
            ledger.mark_captured(APPLICATION_ID)

        assert ledger.get_entry(APPLICATION_ID).state == EntryState.CAPTURED
        assert ledger.balances.get_balance(USER_ID) == 0

    def test_settling_missing_entry_is_inconsistency(self):
        ledger = make_ledger()

        with pytest.raises(LedgerInconsistencyError):
            ledger.mark_refunded(APPLICATION_ID)

    def test_busy_balance_leaves_entry_reserved(self):
        balance_locks = KeyedLocks("balance", lock_timeout=0.01, max_attempts=1)
        ledger = ApplicationLedger(BalanceStore(locks=balance_locks))
        ledger.create_entry(APPLICATION_ID, USER_ID, JOB_ID, 3)

        with balance_locks.hold(USER_ID):
            with pytest.raises(BusyError):
                ledger.mark_refunded(APPLICATION_ID)

        assert ledger.get_entry(APPLICATION_ID).state == EntryState.RESERVED
        ledger.mark_refunded(APPLICATION_ID)
        assert ledger.balances.get_balance(USER_ID) == 3

    def test_open_entries_filters_by_state_and_job(self):
        ledger = make_ledger()
        other_app = UUID("bbbbbbbb-0000-0000-0000-000000000002")
        other_job = UUID("aaaaaaaa-0000-0000-0000-000000000002")
        ledger.create_entry(APPLICATION_ID, USER_ID, JOB_ID, 3)
        ledger.create_entry(other_app, USER_ID, other_job, 3)
        ledger.mark_captured(other_app)

        assert [e.application_id for e in ledger.open_entries()] == [APPLICATION_ID]
        assert ledger.open_entries(other_job) == []
        assert len(ledger.entries_for_job(other_job)) == 1
