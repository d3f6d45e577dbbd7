from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


class AffiliateStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    TERMINATED = "terminated"


class PayoutMethod(str, Enum):
    PAYPAL = "paypal"
    BANK_TRANSFER = "bank_transfer"
    CRYPTO = "crypto"


class ConversionType(str, Enum):
    SIGNUP = "signup"
    PURCHASE = "purchase"
    SUBSCRIPTION = "subscription"


class ReferralStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class WithdrawalStatus(str, Enum):
    REQUESTED = "requested"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class TimeFrame(str, Enum):
    ALL = "all"
    MONTH = "month"
    QUARTER = "quarter"


# Requests

class RegisterAffiliateRequest(BaseModel):
    email: str
    commission_rate: Optional[Decimal] = None
    affiliate_code: Optional[str] = None
    payout_email: Optional[str] = None
    payout_method: PayoutMethod = PayoutMethod.PAYPAL


class TrackVisitRequest(BaseModel):
    affiliate_code: Optional[str] = None
    page_url: Optional[str] = None
    referrer: Optional[str] = None
    user_agent: Optional[str] = None


class CreateReferralRequest(BaseModel):
    affiliate_code: Optional[str] = None
    conversion_type: Optional[ConversionType] = None
    order_id: Optional[str] = None
    order_amount: Optional[Decimal] = Field(default=None, ge=0, decimal_places=2)
    referred_user_id: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "affiliate_code": "SMX10",
            "conversion_type": "purchase",
            "order_id": "ORD-1001",
            "order_amount": 200.00,
            "referred_user_id": "660e8400-e29b-41d4-a716-446655440001",
        }
    })


class ProcessConversionRequest(BaseModel):
    referral_id: Optional[UUID] = None
    # Free-form so an unknown decision is reported as a validation failure
    status: Optional[str] = None
    notes: Optional[str] = None


class RequestWithdrawalRequest(BaseModel):
    affiliate_id: UUID
    amount: Decimal = Field(decimal_places=2)
    method: PayoutMethod = PayoutMethod.PAYPAL
    payout_email: Optional[str] = None


class ProcessWithdrawalRequest(BaseModel):
    withdrawal_id: Optional[UUID] = None
    status: Optional[WithdrawalStatus] = None
    transaction_id: Optional[str] = None
    notes: Optional[str] = None


class UpdateLeaderboardRequest(BaseModel):
    force_update: bool = False


# Records

class Affiliate(BaseModel):
    id: UUID
    affiliate_code: str
    email: str
    payout_email: Optional[str] = None
    payout_method: PayoutMethod = PayoutMethod.PAYPAL
    commission_rate: Decimal
    status: AffiliateStatus
    total_referrals: int = 0
    total_earnings: Decimal = Decimal("0.00")
    total_visits: int = 0
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Visit(BaseModel):
    id: UUID
    affiliate_id: UUID
    page_url: Optional[str] = None
    referrer: Optional[str] = None
    device_type: Optional[str] = None
    browser: Optional[str] = None
    converted: bool = False
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Referral(BaseModel):
    id: UUID
    affiliate_id: UUID
    visit_id: Optional[UUID] = None
    referred_user_id: Optional[str] = None
    order_id: Optional[str] = None
    order_amount: Optional[Decimal] = None
    commission_amount: Decimal
    commission_rate: Decimal
    conversion_type: ConversionType
    status: ReferralStatus
    notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    def can_transition_to(self, decision: ReferralStatus) -> bool:
        return self.status == ReferralStatus.PENDING or self.status == decision


class Withdrawal(BaseModel):
    id: UUID
    affiliate_id: UUID
    amount: Decimal
    method: PayoutMethod
    payout_email: Optional[str] = None
    status: WithdrawalStatus
    transaction_id: Optional[str] = None
    notes: Optional[str] = None
    requested_at: datetime
    processed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    def is_terminal(self) -> bool:
        return self.status in (WithdrawalStatus.COMPLETED, WithdrawalStatus.FAILED)


class AffiliateTotals(BaseModel):
    total_referrals: int
    total_earnings: Decimal
    total_visits: int


# Responses

class AffiliateResponse(BaseModel):
    success: bool = True
    message: str
    data: Affiliate


class VisitResponse(BaseModel):
    success: bool = True
    message: str
    data: Visit


class ReferralResponse(BaseModel):
    success: bool = True
    message: str
    data: Referral


class WithdrawalResponse(BaseModel):
    success: bool = True
    message: str
    data: Withdrawal


class LeaderboardUpdateResponse(BaseModel):
    success: bool = True
    message: str
    affiliates_updated: int = Field(default=0, alias="affiliatesUpdated")
    timestamp: datetime
    last_update: Optional[str] = Field(default=None, alias="lastUpdate")
    updated: bool = True

    model_config = ConfigDict(populate_by_name=True)


class LeaderboardEntry(BaseModel):
    rank: int
    affiliate_code: str
    total_referrals: int
    # Omitted from the payload, not nulled, when the caller did not ask for them
    total_earnings: Optional[Decimal] = None
    conversion_rate: Optional[float] = None


class LeaderboardMetadata(BaseModel):
    time_frame: TimeFrame = Field(alias="timeFrame")
    show_earnings: bool = Field(alias="showEarnings")
    show_conversion: bool = Field(alias="showConversion")
    total_affiliates: int = Field(alias="totalAffiliates")
    last_updated: datetime = Field(alias="lastUpdated")

    model_config = ConfigDict(populate_by_name=True)


class PublicLeaderboardResponse(BaseModel):
    success: bool = True
    data: list[LeaderboardEntry]
    metadata: LeaderboardMetadata
