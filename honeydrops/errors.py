from typing import Optional
from uuid import UUID


class HoneyDropsError(Exception):
    pass


class InsufficientBalanceError(HoneyDropsError):
    def __init__(self, user_id: UUID, required: int, available: int):
        self.user_id = user_id
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient honey drops for user {user_id}: {required} required, {available} available"
        )


class InvalidAmountError(HoneyDropsError):
    pass


class PaymentConflictError(HoneyDropsError):
    """A payment id was replayed for a different user."""


class ContactInfoDetectedError(HoneyDropsError):
    def __init__(self, reasons: list[str]):
        self.reasons = reasons
        super().__init__(f"Cover letter contains contact information: {', '.join(reasons)}")


class JobNotOpenError(HoneyDropsError):
    pass


class JobNotFoundError(HoneyDropsError):
    pass


class AlreadyAppliedError(HoneyDropsError):
    pass


class ApplicationNotFoundError(HoneyDropsError):
    pass


class ApplicationNotPendingError(HoneyDropsError):
    pass


class NotAuthorizedError(HoneyDropsError):
    pass


class AlreadyTerminalError(HoneyDropsError):
    """Raised by idempotent ledger settlement on an entry that is already settled."""


class BusyError(HoneyDropsError):
    """Lock contention outlasted the retry budget; safe to retry."""

    def __init__(self, resource: str, retry_after: Optional[float] = None):
        self.resource = resource
        self.retry_after = retry_after
        super().__init__(f"{resource} is busy, retry later")


class LedgerInconsistencyError(HoneyDropsError):
    """Ledger and application records disagree. Never surfaced to end users."""
