from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, ConfigDict

from .errors import InvalidAmount
from .money import round_units


USERS = "users"
DEPOSITS = "deposits"
STAKES = "stakes"
REFERRALS = "referrals"
TRANSFERS = "transfers"
DISTRIBUTION_JOBS = "distribution_jobs"
COMPANY = "company"
COMPANY_METRICS_ID = "metrics"


class StakeStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


class TransferKind(str, Enum):
    REFERRAL = "REF"
    DISTRIBUTION = "DIST"


class JobReason(str, Enum):
    NORMAL = "normal"
    INVALID_PRINCIPAL = "invalid-principal"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


ID_SEPARATOR = "-"


def _checked_user_id(user_id: str) -> str:
    # User ids close every composite key, so they must not contain the separator.
    if ID_SEPARATOR in user_id:
        raise ValueError(f"User id {user_id!r} must not contain {ID_SEPARATOR!r}")
    return user_id


def transfer_id(kind: TransferKind, stake_id: str, user_id: str) -> str:
    return ID_SEPARATOR.join((kind.value, stake_id, _checked_user_id(user_id)))


def referral_id(referrer_id: str, referee_id: str) -> str:
    return ID_SEPARATOR.join((_checked_user_id(referrer_id), _checked_user_id(referee_id)))


class User(BaseModel):
    id: str
    account_balance: int = Field(default=0, ge=0)
    returns_wallet: int = Field(default=0, ge=0)
    total_deposited: int = Field(default=0, ge=0)
    referral_code: Optional[str] = None
    referrer_code: Optional[str] = None
    paid_referees_ids: list[str] = Field(default_factory=list)
    phone: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    def has_paid_referee(self, referee_id: str) -> bool:
        return referee_id in self.paid_referees_ids

    def unlock(self, amount: int, now: datetime) -> "User":
        """Move ``amount`` from the locked returns wallet to the spendable balance."""
        if amount <= 0:
            raise InvalidAmount(f"Unlock amount must be positive, got {amount}")
        if amount > self.returns_wallet:
            raise InvalidAmount(
                f"Cannot unlock {amount} for user {self.id}: returns wallet holds {self.returns_wallet}"
            )
        return self.model_copy(update={
            "account_balance": self.account_balance + amount,
            "returns_wallet": self.returns_wallet - amount,
            "updated_at": now,
        })


class Deposit(BaseModel):
    id: str
    user_id: str
    gross_amount: int
    deposit_fee: int = 0
    net_principal: int = 0
    credited: bool = False
    phone: Optional[str] = None
    gateway: Optional[str] = None
    status: str = "successful"
    raw_event: Optional[dict[str, Any]] = None
    created_at: Optional[datetime] = None
    credited_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class Stake(BaseModel):
    id: str
    user_id: str
    principal: int
    daily_rate: Decimal
    total_days: int
    remaining_days: int
    earned_so_far: int = 0
    status: StakeStatus = StakeStatus.ACTIVE
    last_processed_date: Optional[str] = None
    last_processed_at: Optional[datetime] = None
    distribution_processed: bool = False
    deposit_ref: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    distribution_amount: Optional[int] = None
    referral_moved: Optional[int] = None
    distribution_reason: Optional[JobReason] = None
    distribution_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    def daily_return(self) -> int:
        return round_units(Decimal(self.principal) * self.daily_rate)

    def is_due(self, run_date: str) -> bool:
        return (
            self.status == StakeStatus.ACTIVE
            and self.remaining_days > 0
            and (self.last_processed_date is None or run_date > self.last_processed_date)
        )

    def accrue(self, daily: int, run_date: str, now: datetime) -> "Stake":
        remaining = self.remaining_days - 1
        update: dict[str, Any] = {
            "earned_so_far": self.earned_so_far + daily,
            "remaining_days": remaining,
            "last_processed_date": run_date,
            "last_processed_at": now,
        }
        if remaining <= 0:
            update["status"] = StakeStatus.COMPLETED
            update["completed_at"] = now
        return self.model_copy(update=update)


class Referral(BaseModel):
    id: str
    referrer_id: str
    referee_id: str
    deposit_ref: str
    bonus: int
    rate: Decimal
    amount: int
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class Transfer(BaseModel):
    id: str
    user_id: str
    stake_id: Optional[str] = None
    kind: Optional[TransferKind] = None
    amount: int
    type: str = "transfer"
    reason: str = ""
    source: str = "auto-distributor"
    phone: str = ""
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class DistributionJob(BaseModel):
    id: str
    locked: bool = False
    locked_until: Optional[datetime] = None
    done: bool = False
    cursor: int = 0
    last_user_id: Optional[str] = None
    total_users: int = 0
    total_active_principal: int = 0
    pool: int = 0
    referral_moved: int = 0
    total_distributed: int = 0
    reason: Optional[JobReason] = None
    error: Optional[str] = None
    attempts: int = 0
    heartbeat: Optional[datetime] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    def lease_held(self, now: datetime) -> bool:
        if not self.locked:
            return False
        # A lock without an expiry never lapses on its own.
        return self.locked_until is None or self.locked_until > now


class CompanyMetrics(BaseModel):
    id: str = COMPANY_METRICS_ID
    total_company_stakes: int = 0
    total_company_transfers: int = 0
    transfer_in_progress: bool = False
    updated_at: Optional[datetime] = None


class CreditDepositRequest(BaseModel):
    reference: str = Field(..., min_length=1, description="External payment reference, unique per payment")
    gross_amount: int = Field(..., description="Confirmed amount paid, fee included")
    user_id: str
    phone: Optional[str] = None
    raw_event: Optional[dict[str, Any]] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "reference": "TX-20240101-0001",
            "gross_amount": 2200,
            "user_id": "user-123",
            "phone": "256700000000"
        }
    })


class AccrualRunRequest(BaseModel):
    run_date: Optional[str] = Field(default=None, description="ISO date, defaults to today")


class DepositCreditResult(BaseModel):
    reference: str
    user_id: str
    gross_amount: int
    net_principal: int
    deposit_fee: int
    stake_created: bool
    already_credited: bool = False
    referral: Optional[Referral] = None


class AccrualRunResult(BaseModel):
    date: str
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    completed: int = 0
    paid_total: int = 0


class DistributionResult(BaseModel):
    stake_id: str
    principal: int
    referral_moved: int = 0
    pool: int = 0
    distributed: int = 0
    total_users: int = 0
    total_active_principal: int = 0
    reason: JobReason = JobReason.NORMAL
    resumed_from: int = 0

    @property
    def total_moved(self) -> int:
        return self.referral_moved + self.distributed


class DistributionOutcome(BaseModel):
    stake_id: str
    status: str
    result: Optional[DistributionResult] = None
    error: Optional[str] = None


class SweepResult(BaseModel):
    outcomes: list[DistributionOutcome] = Field(default_factory=list)

    def count(self, status: str) -> int:
        return sum(1 for o in self.outcomes if o.status == status)


class PaymentResponse(BaseModel):
    deposit: DepositCreditResult
    distribution: Optional[DistributionResult] = None
    message: str


class DistributionRunResponse(BaseModel):
    stake_id: str
    already_processed: bool = False
    result: Optional[DistributionResult] = None
    message: str
