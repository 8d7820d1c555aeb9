from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


class ApplicationStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    WITHDRAWN = "WITHDRAWN"


class EntryState(str, Enum):
    RESERVED = "RESERVED"
    REFUNDED = "REFUNDED"
    CAPTURED = "CAPTURED"


class TransactionType(str, Enum):
    PURCHASE = "PURCHASE"
    BID_FEE = "BID_FEE"
    REFUND = "REFUND"


class Balance(BaseModel):
    user_id: UUID
    amount: int = Field(default=0, ge=0)
    version: int = 0
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class HoneyTransaction(BaseModel):
    id: UUID
    user_id: UUID
    type: TransactionType
    amount: int
    balance_after: int
    description: str
    reference: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class LedgerEntry(BaseModel):
    application_id: UUID
    user_id: UUID
    job_id: UUID
    reserved_amount: int
    state: EntryState = EntryState.RESERVED
    created_at: datetime
    settled_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    def is_terminal(self) -> bool:
        return self.state != EntryState.RESERVED


class Application(BaseModel):
    id: UUID
    job_id: UUID
    applicant_id: UUID
    status: ApplicationStatus = ApplicationStatus.PENDING
    cover_letter_text: str
    proposed_rate: Optional[Decimal] = None
    submitted_at: datetime
    reviewed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ScanResult(BaseModel):
    allowed: bool
    reasons: list[str] = Field(default_factory=list)
    matches: list[str] = Field(default_factory=list)


class SubmitApplicationRequest(BaseModel):
    job_id: UUID
    applicant_id: UUID
    cover_letter_text: str = Field(..., min_length=1)
    proposed_rate: Optional[Decimal] = Field(default=None, gt=0)
    application_id: Optional[UUID] = Field(
        default=None, description="Client-generated id; resubmitting it returns the committed application"
    )

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "job_id": "aaaaaaaa-0000-0000-0000-000000000001",
            "applicant_id": "550e8400-e29b-41d4-a716-446655440000",
            "cover_letter_text": "I have 5 years of design experience",
            "proposed_rate": 450,
        }
    })


class DecisionRequest(BaseModel):
    caller_id: UUID


class WithdrawRequest(BaseModel):
    applicant_id: UUID


class UpdateApplicationRequest(BaseModel):
    applicant_id: UUID
    cover_letter_text: Optional[str] = Field(default=None, min_length=1)
    proposed_rate: Optional[Decimal] = Field(default=None, gt=0)


class PreviewRequest(BaseModel):
    text: str


class TopUpRequest(BaseModel):
    amount: int = Field(..., gt=0)
    payment_id: str = Field(..., min_length=1, description="Payment provider id, used as idempotency key")


class ApplicationResponse(BaseModel):
    application: Application
    ledger_entry: Optional[LedgerEntry] = None
    message: str


class DecisionResponse(BaseModel):
    application: Application
    refunded_application_ids: list[UUID] = Field(default_factory=list)
    message: str


class BalanceResponse(BaseModel):
    user_id: UUID
    balance: int


class TransactionHistoryResponse(BaseModel):
    user_id: UUID
    transactions: list[HoneyTransaction]
    total_count: int
    current_balance: int


class ReconcileReport(BaseModel):
    refunded: list[UUID] = Field(default_factory=list)
    captured: list[UUID] = Field(default_factory=list)
    inconsistencies: list[str] = Field(default_factory=list)
    busy: list[UUID] = Field(default_factory=list)
