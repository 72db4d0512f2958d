from pydantic import BaseModel, Field, AliasChoices, field_validator, model_validator
from typing import Any, Dict, List, Optional
from datetime import datetime
from decimal import Decimal
import enum

from app.models.commission_rate import ConversionType
from app.models.conversion import ConversionStatus
from app.models.payout import PayoutStatus
from app.services.referral_codes import is_valid_referral_code_format

# Largest amount a Numeric(12, 2) column holds
MAX_CONVERSION_VALUE = Decimal("9999999999.99")


class ConversionCreate(BaseModel):
    affiliate_user_id: str = Field(min_length=1)
    referred_user_id: str = Field(min_length=1)
    conversion_type: ConversionType
    conversion_value: Decimal = Field(default=Decimal("0"), ge=0, le=MAX_CONVERSION_VALUE, allow_inf_nan=False)
    reference_id: Optional[str] = None
    reference_type: Optional[str] = Field(default=None, max_length=50)
    affiliate_code: Optional[str] = Field(default=None, max_length=20)
    referral_source: str = Field(default="direct", max_length=50)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("affiliate_code")
    @classmethod
    def check_affiliate_code(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not is_valid_referral_code_format(value):
            raise ValueError("affiliate_code must look like MT followed by 8 letters or digits")
        return value

    @model_validator(mode="after")
    def check_parties(self) -> "ConversionCreate":
        if self.affiliate_user_id == self.referred_user_id:
            raise ValueError("an affiliate cannot be credited for referring themselves")
        return self

    @property
    def has_reference(self) -> bool:
        return bool(self.reference_id and self.reference_type)


class ConversionResponse(BaseModel):
    id: str
    affiliate_user_id: str
    referred_user_id: str
    conversion_type: str
    conversion_value: Decimal
    commission_rate_percent: Decimal
    commission_amount: Decimal
    status: ConversionStatus
    reference_id: Optional[str] = None
    reference_type: Optional[str] = None
    affiliate_code: Optional[str] = None
    referral_source: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = Field(
        default=None, validation_alias=AliasChoices("metadata_", "metadata")
    )
    confirmed_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class RecordConversionResult(BaseModel):
    conversion: ConversionResponse
    was_existing: bool


class PendingCommission(BaseModel):
    total_commission: Decimal
    platform_fee: Decimal
    net_amount: Decimal
    currency: str


class CommissionRateCreate(BaseModel):
    conversion_type: ConversionType
    rate_percent: Decimal = Field(ge=0, le=100, decimal_places=2, allow_inf_nan=False)
    description: Optional[str] = None
    is_active: bool = True


class CommissionRateUpdate(BaseModel):
    id: Optional[str] = None
    conversion_type: Optional[ConversionType] = None
    rate_percent: Optional[Decimal] = Field(default=None, ge=0, le=100, decimal_places=2, allow_inf_nan=False)
    description: Optional[str] = None
    is_active: Optional[bool] = None

    @model_validator(mode="after")
    def check_target(self) -> "CommissionRateUpdate":
        if not self.id and not self.conversion_type:
            raise ValueError("id or conversion_type is required")
        return self


class CommissionRateResponse(BaseModel):
    id: str
    conversion_type: str
    rate_percent: Decimal
    description: Optional[str] = None
    is_active: bool
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ResolvedRate(BaseModel):
    conversion_type: ConversionType
    rate_percent: Decimal


class PayoutAction(str, enum.Enum):
    APPROVE = "approve"
    REJECT = "reject"
    COMPLETE = "complete"
    FAIL = "fail"


class PayoutCreate(BaseModel):
    affiliate_user_id: str = Field(min_length=1)
    notes: Optional[str] = None


class PayoutTransition(BaseModel):
    action: PayoutAction
    transaction_id: Optional[str] = None
    payment_reference: Optional[str] = None
    rejection_reason: Optional[str] = None
    notes: Optional[str] = None

    @model_validator(mode="after")
    def check_reason(self) -> "PayoutTransition":
        if self.action == PayoutAction.REJECT and not (self.rejection_reason or "").strip():
            raise ValueError("rejection_reason is required when rejecting a payout")
        return self


class PayoutResponse(BaseModel):
    id: str
    affiliate_user_id: str
    amount: Decimal
    platform_fee: Decimal
    net_amount: Decimal
    currency: str
    status: PayoutStatus
    related_conversion_ids: List[str]
    transaction_id: Optional[str] = None
    payment_reference: Optional[str] = None
    rejection_reason: Optional[str] = None
    notes: Optional[str] = None
    processed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class ReferralHistoryItem(BaseModel):
    id: str
    status: str
    conversion_type: str
    conversion_value: Decimal
    commission_amount: Decimal
    source: str
    created_at: datetime


class AffiliateStats(BaseModel):
    total_referrals: int
    total_earnings: Decimal
    current_month_referrals: int
    conversion_rate: int
    referral_history: List[ReferralHistoryItem]


class ReferralCodeResponse(BaseModel):
    user_id: str
    referral_code: str
