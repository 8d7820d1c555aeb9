from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

import structlog

from .errors import InsufficientBalanceError, InvalidAmountError, LedgerInconsistencyError, PaymentConflictError
from .models import Balance, HoneyTransaction, TransactionType
from .storage import InMemoryStorage, KeyedLocks

logger = structlog.get_logger(__name__)


class BalanceStore:
    """Spendable honey drop balance per user.

    ``reserve`` and ``credit`` are the only mutations. Each one runs under the
    user's own lock and commits through a version compare-and-swap, so a
    balance can never go negative and no update is lost.
    """

    def __init__(self, storage: Optional[InMemoryStorage] = None, locks: Optional[KeyedLocks] = None):
        self.storage = storage or InMemoryStorage()
        self.locks = locks or KeyedLocks("balance")

    def get_balance(self, user_id: UUID) -> int:
        record = self.storage.balances.get(user_id)
        return record["amount"] if record else 0

    def get_record(self, user_id: UUID) -> Balance:
        record = self.storage.balances.get(user_id)
        if record is None:
            return Balance(user_id=user_id)
        return Balance(**record)

    def reserve(
        self,
        user_id: UUID,
        amount: int,
        description: str = "Bidding fee",
        reference: Optional[str] = None,
    ) -> Balance:
        self._check_amount(amount)
        with self.locks.hold(user_id):
            current = self._get_or_create(user_id)
            if current["amount"] < amount:
                logger.info("reserve_rejected", user_id=str(user_id), amount=amount, available=current["amount"])
                raise InsufficientBalanceError(user_id, amount, current["amount"])
            updated = self._swap(user_id, current["version"], current["amount"] - amount)
            self._record(user_id, TransactionType.BID_FEE, -amount, updated["amount"], description, reference)

        logger.info("reserved", user_id=str(user_id), amount=amount, balance=updated["amount"])
        return Balance(**updated)

    def credit(
        self,
        user_id: UUID,
        amount: int,
        description: str = "Honey drops refund",
        reference: Optional[str] = None,
        transaction_type: TransactionType = TransactionType.REFUND,
    ) -> Balance:
        self._check_amount(amount)
        with self.locks.hold(user_id):
            current = self._get_or_create(user_id)
            updated = self._swap(user_id, current["version"], current["amount"] + amount)
            self._record(user_id, transaction_type, amount, updated["amount"], description, reference)

        logger.info("credited", user_id=str(user_id), amount=amount, balance=updated["amount"], type=transaction_type.value)
        return Balance(**updated)

    def top_up(self, user_id: UUID, amount: int, payment_id: str) -> Balance:
        """Credit purchased honey drops once per completed payment."""
        self._check_amount(amount)
        with self.locks.hold(("payment", payment_id)):
            paid_by = self.storage.payment_index.get(payment_id)
            if paid_by is not None:
                if paid_by != user_id:
                    logger.warning("top_up_conflict", user_id=str(user_id), paid_by=str(paid_by), payment_id=payment_id)
                    raise PaymentConflictError(f"Payment {payment_id} was already credited to another user")
                logger.info("top_up_duplicate", user_id=str(user_id), payment_id=payment_id)
                return self.get_record(user_id)
            balance = self.credit(
                user_id,
                amount,
                description=f"Purchased {amount} Honey Drops",
                reference=payment_id,
                transaction_type=TransactionType.PURCHASE,
            )
            self.storage.payment_index[payment_id] = user_id
        return balance

    def get_transactions(
        self,
        user_id: UUID,
        transaction_type: Optional[TransactionType] = None,
        limit: int = 50,
    ) -> list[HoneyTransaction]:
        matching = [
            HoneyTransaction(**t) for t in self.storage.transactions
            if t["user_id"] == user_id and (transaction_type is None or t["type"] == transaction_type)
        ]
        matching.reverse()
        return matching[:limit]

    def _get_or_create(self, user_id: UUID) -> dict:
        record = self.storage.balances.get(user_id)
        if record is None:
            record = {"user_id": user_id, "amount": 0, "version": 0, "updated_at": None}
            self.storage.balances[user_id] = record
        return dict(record)

    def _swap(self, user_id: UUID, expected_version: int, new_amount: int) -> dict:
        stored = self.storage.balances[user_id]
        if stored["version"] != expected_version:
            raise LedgerInconsistencyError(
                f"Balance for {user_id} changed underneath its lock "
                f"(expected version {expected_version}, found {stored['version']})"
            )
        if new_amount < 0:
            raise LedgerInconsistencyError(f"Balance for {user_id} would become negative ({new_amount})")
        updated = {
            "user_id": user_id,
            "amount": new_amount,
            "version": expected_version + 1,
            "updated_at": datetime.now(timezone.utc),
        }
        self.storage.balances[user_id] = updated
        return updated

    def _record(
        self,
        user_id: UUID,
        transaction_type: TransactionType,
        amount: int,
        balance_after: int,
        description: str,
        reference: Optional[str],
    ) -> None:
        self.storage.transactions.append({
            "id": uuid4(),
            "user_id": user_id,
            "type": transaction_type,
            "amount": amount,
            "balance_after": balance_after,
            "description": description,
            "reference": reference,
            "created_at": datetime.now(timezone.utc),
        })

    @staticmethod
    def _check_amount(amount: int) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidAmountError(f"Amount must be a positive whole number of honey drops, got {amount!r}")
