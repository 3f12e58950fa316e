from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class CommissionType(str, Enum):
    CLICK = "click"
    LEAD = "lead"
    SALE = "sale"


class CommissionStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    PAID = "paid"
    REFUNDED = "refunded"
    DUPLICATE = "duplicate"
    FRAUD = "fraud"
    CANCELED = "canceled"


class PayoutStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"


class Granularity(str, Enum):
    HOUR = "hour"
    DAY = "day"
    MONTH = "month"


class TimeseriesGroupBy(str, Enum):
    LINK_ID = "link_id"
    TYPE = "type"


class SortField(str, Enum):
    CREATED_AT = "created_at"
    AMOUNT = "amount"
    EARNINGS = "earnings"


class SortOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"


# Scopes


class ByWorkspace(BaseModel):
    kind: Literal["workspace"] = "workspace"
    workspace_id: str


class ByProgram(BaseModel):
    kind: Literal["program"] = "program"
    program_id: str


class ByPartnerIds(BaseModel):
    kind: Literal["partner_ids"] = "partner_ids"
    partner_ids: list[str]


Scope = Annotated[Union[ByWorkspace, ByProgram, ByPartnerIds], Field(discriminator="kind")]


class CommissionFilters(BaseModel):
    """Optional narrowing applied on top of a scope. The range is [start, end)."""

    status: Optional[CommissionStatus] = None
    type: Optional[CommissionType] = None
    link_id: Optional[str] = None
    customer_id: Optional[str] = None
    payout_id: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    @field_validator("start", "end")
    @classmethod
    def assume_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @model_validator(mode="after")
    def check_range(self) -> "CommissionFilters":
        if self.start and self.end and self.start >= self.end:
            raise ValueError("start must be before end")
        return self


# Ledger records


class Commission(BaseModel):
    id: str
    program_id: str
    partner_id: Optional[str] = None
    link_id: str
    customer_id: Optional[str] = None
    type: CommissionType
    amount: int
    earnings: int
    currency: str = "usd"
    status: CommissionStatus
    payout_id: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class CommissionSplit(BaseModel):
    id: str
    commission_id: str
    phone_number: Optional[str] = None
    split_percent: int
    earnings: int
    claimed: bool = False
    claimed_at: Optional[datetime] = None
    claimed_by_user_id: Optional[str] = None
    claimed_by_partner_id: Optional[str] = None
    partner_id: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Payout(BaseModel):
    id: str
    program_id: str
    partner_id: str
    amount: int
    currency: str = "usd"
    status: PayoutStatus
    period_start: datetime
    period_end: datetime
    description: Optional[str] = None
    created_at: datetime
    paid_at: Optional[datetime] = None
    external_transfer_id: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class PendingVerification(BaseModel):
    token: str
    phone_number: str
    unclaimed_count: int
    unclaimed_earnings: int
    created_at: datetime
    expires_at: datetime

    model_config = ConfigDict(from_attributes=True)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


# Requests


class SplitConfig(BaseModel):
    phone_number: str
    split_percent: int = Field(..., ge=1, le=100)


class RecordCommissionRequest(BaseModel):
    program_id: str
    link_id: str
    type: CommissionType = CommissionType.SALE
    amount: int = Field(..., ge=0, description="Sale amount in minor currency units")
    earnings: int = Field(..., ge=0, description="Partner share in minor currency units")
    partner_id: Optional[str] = None
    customer_id: Optional[str] = None
    currency: Optional[str] = None
    splits: list[SplitConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_earnings(self) -> "RecordCommissionRequest":
        if self.type == CommissionType.SALE and self.earnings > self.amount:
            raise ValueError("earnings cannot exceed amount for a sale")
        if sum(s.split_percent for s in self.splits) > 100:
            raise ValueError("split percentages cannot exceed 100")
        return self


class TransitionCommissionRequest(BaseModel):
    status: CommissionStatus


class ForceCommissionStatusRequest(BaseModel):
    status: CommissionStatus
    performed_by: str


class CreatePayoutRequest(BaseModel):
    partner_id: str
    commission_ids: list[str] = Field(..., min_length=1)
    description: Optional[str] = None
    program_id: Optional[str] = None
    performed_by: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "partner_id": "pn_4f1c2a9e7b3d4c5e6f708192",
            "commission_ids": ["cm_9a8b7c6d5e4f3a2b1c0d9e8f"],
            "description": "March payout",
        }
    })


class PayoutStatusRequest(BaseModel):
    status: PayoutStatus
    external_transfer_id: Optional[str] = None
    performed_by: Optional[str] = None


class WithdrawRequest(BaseModel):
    amount: int = Field(..., gt=0)
    description: Optional[str] = None
    program_id: Optional[str] = None
    partner_id: Optional[str] = None


class ClaimRequest(BaseModel):
    phone_number: str
    user_id: str
    verification_token: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {"phone_number": "+15551234567", "user_id": "user_abc"}
    })


class PhoneVerificationRequest(BaseModel):
    phone_number: str


class ResetSplitsRequest(BaseModel):
    performed_by: str
    phone_number: Optional[str] = None


# Results


class StatusTotals(BaseModel):
    count: int = 0
    amount: int = 0
    earnings: int = 0


class Balances(BaseModel):
    counts: dict[CommissionStatus, StatusTotals]
    all: StatusTotals
    monthly_earnings: int
    available_balance: int
    pending_earnings: int
    allocated_earnings: int
    paid_earnings: int


class TimeseriesPoint(BaseModel):
    start: datetime
    earnings: int = 0
    data: Optional[dict[str, int]] = None


class CommissionDeletion(BaseModel):
    deleted_commission: Commission
    rollback_applied: bool


class ClaimResult(BaseModel):
    claimed_count: int
    claimed_earnings: int
    splits: list[CommissionSplit]
    partner_id: Optional[str] = None
    advertised_earnings: Optional[int] = None


class UnclaimedSummary(BaseModel):
    phone_number: str
    count: int
    earnings: int
    splits: list[CommissionSplit]


class AuditEvent(BaseModel):
    action: str
    actor: Optional[str] = None
    subject_id: str
    occurred_at: datetime
    details: dict[str, Any] = Field(default_factory=dict)
