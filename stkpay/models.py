from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict

from .errors import InvalidStateTransitionError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransactionStatus(str, Enum):
    CREATED = "Created"
    PENDING = "Pending"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


TERMINAL_STATUSES = (TransactionStatus.SUCCEEDED, TransactionStatus.FAILED)


class PaymentRequest(BaseModel):
    phone: str = Field(..., description="Payer phone, local or international format")
    service: str
    plan: str
    amount: Decimal
    referral_code: Optional[str] = Field(default=None, alias="referralCode")

    model_config = ConfigDict(populate_by_name=True, json_schema_extra={
        "example": {
            "phone": "0712345678",
            "service": "netflix",
            "plan": "basic",
            "amount": 100,
            "referralCode": "ABC",
        }
    })


class Transaction(BaseModel):
    id: str
    correlation_key: Optional[str] = None
    merchant_request_id: Optional[str] = None
    phone: str
    service: str
    plan: str
    amount: Decimal
    reference: str
    referral_code: Optional[str] = None
    status: TransactionStatus = TransactionStatus.CREATED
    gateway_receipt: Optional[str] = None
    payer_phone: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    referral_applied: bool = False
    referral_reward: Optional[Decimal] = None
    version: int = 0

    model_config = ConfigDict(frozen=True)

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def needs_referral_credit(self) -> bool:
        return (
            self.status == TransactionStatus.SUCCEEDED
            and bool(self.referral_code)
            and not self.referral_applied
        )

    def _advance(self, **changes) -> "Transaction":
        return self.model_copy(update={**changes, "version": self.version + 1})

    def mark_pending(self, correlation_key: str, merchant_request_id: Optional[str] = None) -> "Transaction":
        if self.status != TransactionStatus.CREATED:
            raise InvalidStateTransitionError(f"Cannot move transaction {self.id} from {self.status.value} to Pending")
        return self._advance(
            status=TransactionStatus.PENDING,
            correlation_key=correlation_key,
            merchant_request_id=merchant_request_id,
        )

    def mark_succeeded(self, receipt: Optional[str], payer_phone: Optional[str] = None,
                       now: Optional[datetime] = None) -> "Transaction":
        if self.status != TransactionStatus.PENDING:
            raise InvalidStateTransitionError(f"Cannot move transaction {self.id} from {self.status.value} to Succeeded")
        return self._advance(
            status=TransactionStatus.SUCCEEDED,
            gateway_receipt=receipt,
            payer_phone=payer_phone,
            completed_at=now or utcnow(),
        )

    def mark_failed(self, reason: str, now: Optional[datetime] = None) -> "Transaction":
        # Created -> Failed covers gateway rejection during initiation
        if self.is_terminal():
            raise InvalidStateTransitionError(f"Cannot move transaction {self.id} from {self.status.value} to Failed")
        return self._advance(
            status=TransactionStatus.FAILED,
            failure_reason=reason,
            completed_at=now or utcnow(),
        )

    def mark_referral_applied(self, reward: Decimal) -> "Transaction":
        if not self.needs_referral_credit():
            raise InvalidStateTransitionError(f"Transaction {self.id} has no outstanding referral credit")
        return self._advance(referral_applied=True, referral_reward=reward)


class TransactionView(BaseModel):
    id: str
    correlation_key: Optional[str] = None
    phone: str
    service: str
    plan: str
    amount: Decimal
    reference: str
    referral_code: Optional[str] = None
    status: TransactionStatus
    gateway_receipt: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
    referral_applied: bool = False
    referral_reward: Optional[Decimal] = None

    @classmethod
    def from_transaction(cls, transaction: Transaction) -> "TransactionView":
        return cls(**transaction.model_dump(exclude={"version", "merchant_request_id", "payer_phone"}))


class TransactionListResponse(BaseModel):
    entries: list[TransactionView]
    total_count: int


class InitiationResult(BaseModel):
    transaction_id: str
    correlation_key: str
    status: TransactionStatus
    message: str


class ReferralCredit(BaseModel):
    transaction_id: str
    amount: Decimal
    timestamp: datetime = Field(default_factory=utcnow)


class ReferralAccount(BaseModel):
    code: str
    earnings: Decimal = Decimal("0")
    reward_count: int = 0
    history: list[ReferralCredit] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(frozen=True)

    def has_credit_for(self, transaction_id: str) -> bool:
        return any(entry.transaction_id == transaction_id for entry in self.history)

    def with_credit(self, credit: ReferralCredit) -> "ReferralAccount":
        return self.model_copy(update={
            "earnings": self.earnings + credit.amount,
            "reward_count": self.reward_count + 1,
            "history": [*self.history, credit],
        })


class CreditResult(str, Enum):
    OK = "Ok"
    ALREADY_CREDITED = "AlreadyCredited"


class RegisterReferralRequest(BaseModel):
    code: Optional[str] = Field(default=None, alias="userId", description="Leave empty to generate one")

    model_config = ConfigDict(populate_by_name=True)


class ReferralRegistration(BaseModel):
    code: str
    referral_link: str
    account: ReferralAccount


class PayoutRequest(BaseModel):
    code: str
    earnings: Decimal
    whatsapp_url: str


class DashboardSummary(BaseModel):
    total_sales: Decimal
    total_referral_earnings: Decimal
    successful_transactions: int
    pending_transactions: int
    failed_transactions: int
    total_transactions: int
