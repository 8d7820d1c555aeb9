from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

import structlog

from .balance import BalanceStore
from .errors import AlreadyTerminalError, LedgerInconsistencyError
from .models import EntryState, LedgerEntry
from .storage import InMemoryStorage, KeyedLocks

logger = structlog.get_logger(__name__)


class ApplicationLedger:
    """One entry per application, linking its reservation to its outcome.

    Settlement is idempotent: ``mark_refunded`` and ``mark_captured`` move a
    RESERVED entry forward exactly once and raise ``AlreadyTerminalError`` on
    any later call. A refund credits the balance inside the entry's lock, so
    the credit happens exactly when the state flips.
    """

    def __init__(
        self,
        balances: BalanceStore,
        storage: Optional[InMemoryStorage] = None,
        locks: Optional[KeyedLocks] = None,
    ):
        self.balances = balances
        self.storage = storage or balances.storage
        self.locks = locks or KeyedLocks("ledger")

    def create_entry(self, application_id: UUID, user_id: UUID, job_id: UUID, amount: int) -> LedgerEntry:
        with self.locks.hold(application_id):
            existing = self.storage.ledger_entries.get(application_id)
            if existing:
                logger.debug("entry_exists", application_id=str(application_id))
                return LedgerEntry(**existing)

            entry_data = {
                "application_id": application_id,
                "user_id": user_id,
                "job_id": job_id,
                "reserved_amount": amount,
                "state": EntryState.RESERVED,
                "created_at": datetime.now(timezone.utc),
                "settled_at": None,
            }
            self.storage.ledger_entries[application_id] = entry_data

        logger.info("entry_created", application_id=str(application_id), user_id=str(user_id), amount=amount)
        return LedgerEntry(**entry_data)

    def discard_entry(self, application_id: UUID) -> None:
        """Drop a RESERVED entry whose fee was never taken.

        Only called by submit while it holds the job lock, so no settlement can
        race with it.
        """
        entry_data = self.storage.ledger_entries.get(application_id)
        if entry_data is not None and entry_data["state"] == EntryState.RESERVED:
            del self.storage.ledger_entries[application_id]
            logger.debug("entry_discarded", application_id=str(application_id))

    def get_entry(self, application_id: UUID) -> Optional[LedgerEntry]:
        entry_data = self.storage.ledger_entries.get(application_id)
        return LedgerEntry(**entry_data) if entry_data else None

    def mark_refunded(self, application_id: UUID) -> LedgerEntry:
        with self.locks.hold(application_id):
            entry_data = self._get_reserved(application_id)
            self.balances.credit(
                entry_data["user_id"],
                entry_data["reserved_amount"],
                description="Bidding fee refund",
                reference=str(application_id),
            )
            self._settle(entry_data, EntryState.REFUNDED)

        logger.info("entry_refunded", application_id=str(application_id), amount=entry_data["reserved_amount"])
        return LedgerEntry(**entry_data)

    def mark_captured(self, application_id: UUID) -> LedgerEntry:
        with self.locks.hold(application_id):
            entry_data = self._get_reserved(application_id)
            self._settle(entry_data, EntryState.CAPTURED)

        logger.info("entry_captured", application_id=str(application_id), amount=entry_data["reserved_amount"])
        return LedgerEntry(**entry_data)

    def entries_for_job(self, job_id: UUID) -> list[LedgerEntry]:
        return [LedgerEntry(**e) for e in list(self.storage.ledger_entries.values()) if e["job_id"] == job_id]

    def open_entries(self, job_id: Optional[UUID] = None) -> list[LedgerEntry]:
        return [
            LedgerEntry(**e) for e in list(self.storage.ledger_entries.values())
            if e["state"] == EntryState.RESERVED and (job_id is None or e["job_id"] == job_id)
        ]

    def _get_reserved(self, application_id: UUID) -> dict:
        entry_data = self.storage.ledger_entries.get(application_id)
        if entry_data is None:
            raise LedgerInconsistencyError(f"No ledger entry for application {application_id}")
        if entry_data["state"] != EntryState.RESERVED:
            raise AlreadyTerminalError(f"Ledger entry {application_id} is already {entry_data['state'].value}")
        return entry_data

    @staticmethod
    def _settle(entry_data: dict, state: EntryState) -> None:
        entry_data["state"] = state
        entry_data["settled_at"] = datetime.now(timezone.utc)
