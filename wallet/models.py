from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict, field_validator

CENT = Decimal("0.01")


def to_amount(value) -> Decimal:
    """Coerce to a two-place Decimal. Floats go through str() so 0.1 stays 0.10."""
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


class EntryKind(str, Enum):
    CREDIT_FEE = "CREDIT_FEE"
    DEBIT_USAGE = "DEBIT_USAGE"
    DEBIT_WITHDRAWAL = "DEBIT_WITHDRAWAL"
    HOLD = "HOLD"
    HOLD_RELEASE = "HOLD_RELEASE"
    HOLD_COMMIT = "HOLD_COMMIT"


CREDIT_KINDS = frozenset({EntryKind.CREDIT_FEE})
DEBIT_KINDS = frozenset({EntryKind.DEBIT_USAGE, EntryKind.DEBIT_WITHDRAWAL})


class AttemptState(str, Enum):
    PENDING_HOLD = "PENDING_HOLD"
    HELD = "HELD"
    GATEWAY_SUBMITTED = "GATEWAY_SUBMITTED"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({AttemptState.SUCCEEDED, AttemptState.FAILED, AttemptState.EXPIRED})
OPEN_STATES = frozenset({AttemptState.PENDING_HOLD, AttemptState.HELD, AttemptState.GATEWAY_SUBMITTED})


class LedgerEntry(BaseModel):
    id: UUID
    tenant_id: str
    kind: EntryKind
    amount: Decimal
    reference_id: str
    description: str = ""
    created_at: datetime
    metadata: dict = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True, from_attributes=True)

    @field_validator("amount", mode="before")
    @classmethod
    def _quantize(cls, v):
        return to_amount(v)


class Destination(BaseModel):
    bank_code: str
    account_number: str
    account_name: str
    bank_name: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    def problems(self) -> list[str]:
        found = []
        if not self.bank_code or not self.bank_code.isdigit():
            found.append("bank_code must be numeric")
        if len(self.account_number) != 10 or not self.account_number.isdigit():
            found.append("account_number must be a 10-digit NUBAN")
        if not self.account_name.strip():
            found.append("account_name is required")
        return found

    @property
    def masked_account(self) -> str:
        return f"******{self.account_number[-4:]}"


class WithdrawalAttempt(BaseModel):
    id: UUID
    tenant_id: str
    amount: Decimal
    destination: Destination
    state: AttemptState = AttemptState.PENDING_HOLD
    idempotency_key: str
    gateway_reference: Optional[str] = None
    failure_reason: Optional[str] = None
    submit_attempts: int = 0
    requested_by: Optional[str] = None
    needs_review: bool = False
    created_at: datetime
    updated_at: datetime
    expires_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @property
    def hold_reference(self) -> str:
        return f"WD-{self.id}"

    def is_open(self) -> bool:
        return self.state in OPEN_STATES


class TenantBalance(BaseModel):
    tenant_id: str
    committed: Decimal
    held: Decimal
    available: Decimal
    total_entries: int
    last_entry_at: Optional[datetime] = None


class WithdrawalRequest(BaseModel):
    amount: Decimal = Field(..., description="Amount in naira")
    bank_code: str
    account_number: str
    account_name: str
    bank_name: Optional[str] = None
    idempotency_key: Optional[str] = Field(default=None, description="Reuse to retry safely")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "amount": 25000.00,
            "bank_code": "058",
            "bank_name": "Guaranty Trust Bank",
            "account_number": "0123456789",
            "account_name": "Greenfield Academy",
            "idempotency_key": "wd-2024-term2-001",
        }
    })

    def destination(self) -> Destination:
        return Destination(
            bank_code=self.bank_code.strip(),
            account_number=self.account_number.strip(),
            account_name=self.account_name,
            bank_name=self.bank_name,
        )


class FeeCreditRequest(BaseModel):
    tenant_id: str
    amount: Decimal = Field(..., gt=Decimal("0"))
    reference: str = Field(..., description="Gateway transaction reference")
    student_id: Optional[str] = None
    description: Optional[str] = None
    metadata: dict = Field(default_factory=dict)


class UsageDebitRequest(BaseModel):
    amount: Decimal = Field(..., gt=Decimal("0"))
    reference: str
    student_count: int = Field(default=0, ge=0)
    description: Optional[str] = None


class TransitionResult(BaseModel):
    attempt: Optional[WithdrawalAttempt] = None
    applied: bool = False
    error: Optional[str] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def retryable(self) -> bool:
        return self.error == "GATEWAY_UNAVAILABLE"


class WalletSummary(BaseModel):
    tenant_id: str
    balance: Decimal
    held: Decimal
    available: Decimal
    total_fees_collected: Decimal
    total_usage_paid: Decimal
    total_withdrawn: Decimal
    pending_withdrawal: Optional[WithdrawalAttempt] = None


class WalletTransaction(BaseModel):
    id: UUID
    type: str
    amount: Decimal
    description: str
    date: datetime
    status: str


class LedgerHistoryResponse(BaseModel):
    tenant_id: str
    entries: list[LedgerEntry]
    total_count: int
    available: Decimal


class Bank(BaseModel):
    code: str
    name: str


class LedgerEntryResponse(BaseModel):
    entry: LedgerEntry
    created: bool
    message: str


class WithdrawalResponse(BaseModel):
    attempt_id: UUID
    state: AttemptState
    reference: str
    amount: Decimal
    message: str
