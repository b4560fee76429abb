from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict


class TransactionType(str, Enum):
    EARNED = "earned"
    REDEEMED = "redeemed"
    MANUAL_ADJUSTMENT = "manual_adjustment"


class ReferenceType(str, Enum):
    REFERRAL = "referral"
    MANUAL_ADJUSTMENT = "manual_adjustment"
    ORDER_REDEMPTION = "order_redemption"
    DEBUG = "debug"


class ReferralRejection(str, Enum):
    CODE_NOT_FOUND = "code_not_found"
    SELF_REFERRAL = "self_referral"
    ALREADY_USED = "already_used"
    SETTINGS_UNAVAILABLE = "settings_unavailable"


REJECTION_MESSAGES = {
    ReferralRejection.CODE_NOT_FOUND: "Invalid referral code",
    ReferralRejection.SELF_REFERRAL: "Cannot use your own referral code",
    ReferralRejection.ALREADY_USED: "Referral code already used",
    ReferralRejection.SETTINGS_UNAVAILABLE: "Referral program is not active",
}


class PointsReference(BaseModel):
    """What caused a points change. ``id`` is a lookup aid, not a foreign key."""
    type: ReferenceType
    id: Optional[str] = None
    description: Optional[str] = None


class PointsChange(BaseModel):
    """A single signed change handed to the storage layer to apply atomically."""
    customer_id: str
    points_change: int
    transaction_type: TransactionType
    reference_type: ReferenceType
    reference_id: Optional[str] = None
    description: str = ""


class CustomerPointsAccount(BaseModel):
    customer_id: str
    current_balance: int = 0
    total_earned: int = 0
    total_redeemed: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def empty(cls, customer_id: str) -> "CustomerPointsAccount":
        return cls(customer_id=customer_id)


class PointsTransaction(BaseModel):
    id: int
    customer_id: str
    transaction_type: TransactionType
    points_change: int
    balance_after: int
    reference_type: ReferenceType
    reference_id: Optional[str] = None
    description: str = ""
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ReferralUsage(BaseModel):
    id: int
    referral_code: str
    referrer_customer_id: str
    referred_customer_id: str
    order_invoice_id: str
    discount_applied: int
    points_awarded: int
    used_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ReferralSettings(BaseModel):
    id: int = 0
    referral_discount_amount: int = 5000
    referrer_points_earned: int = 10
    points_redemption_minimum: int = 50
    points_redemption_value: int = 100
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class Customer(BaseModel):
    customer_id: str
    referral_code: str

    model_config = ConfigDict(from_attributes=True)


# -----------------------------------------------------------------------------
# Requests
# -----------------------------------------------------------------------------

class RegisterCustomerRequest(BaseModel):
    customer_id: str = Field(..., min_length=1)
    referral_code: Optional[str] = Field(default=None, description="Defaults to the customer id")


class ValidateReferralRequest(BaseModel):
    referral_code: str = Field(..., min_length=1)
    customer_id: str = Field(..., min_length=1)


class RecordReferralRequest(BaseModel):
    referral_code: str = Field(..., min_length=1)
    customer_id: str = Field(..., min_length=1)
    order_invoice_id: str = Field(..., min_length=1)
    points_used: Optional[int] = None
    points_discount: Optional[int] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "referral_code": "CUST-0001",
            "customer_id": "CUST-0042",
            "order_invoice_id": "INV-20240101-001",
            "points_used": 50,
            "points_discount": 5000,
        }
    })


class RedeemPointsRequest(BaseModel):
    customer_id: str = Field(..., min_length=1)
    points_to_redeem: int


class DeductPointsRequest(BaseModel):
    customer_id: str = Field(..., min_length=1)
    points: int
    order_invoice_id: str = Field(..., min_length=1)


class AdjustPointsRequest(BaseModel):
    customer_id: str = Field(..., min_length=1)
    points_change: int
    description: Optional[str] = None


class UpdateSettingsRequest(BaseModel):
    referral_discount_amount: Optional[int] = Field(default=None, ge=0)
    referrer_points_earned: Optional[int] = Field(default=None, ge=0)
    points_redemption_minimum: Optional[int] = Field(default=None, ge=0)
    points_redemption_value: Optional[int] = Field(default=None, ge=0)
    is_active: Optional[bool] = None


# -----------------------------------------------------------------------------
# Responses
# -----------------------------------------------------------------------------

class BalanceResponse(BaseModel):
    current_balance: int
    total_earned: int
    total_redeemed: int


class ReferralValidation(BaseModel):
    valid: bool
    reason: Optional[ReferralRejection] = None
    message: Optional[str] = None
    referrer_customer_id: Optional[str] = None
    discount_amount: Optional[int] = None
    points_awarded: Optional[int] = None

    @classmethod
    def rejected(cls, reason: ReferralRejection, message: Optional[str] = None) -> "ReferralValidation":
        return cls(valid=False, reason=reason, message=message or REJECTION_MESSAGES[reason])


class RecordReferralResponse(BaseModel):
    success: bool
    usage: ReferralUsage
    points_awarded: int
    referrer_new_balance: int
    points_deducted: int = 0
    new_balance: Optional[int] = None


class PointsRedemptionResult(BaseModel):
    valid: bool
    points_to_redeem: int
    max_redeemable: int
    discount_value: int


class PointsMutationResponse(BaseModel):
    success: bool
    new_balance: int
    transaction: PointsTransaction


class TransactionHistoryResponse(BaseModel):
    customer_id: str
    entries: list[PointsTransaction]
    total_count: int
    current_balance: int


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class AccountListResponse(BaseModel):
    accounts: list[CustomerPointsAccount]
    pagination: Pagination


class TopReferrer(BaseModel):
    referrer_customer_id: str
    referral_count: int
    total_points_earned: int


class AnalyticsSummary(BaseModel):
    total_referrals: int
    total_referral_discount: int
    total_points_awarded: int
    total_points_redeemed: int
    active_customers_with_points: int
    total_customers_with_points: int


class ReferralAnalytics(BaseModel):
    summary: AnalyticsSummary
    top_referrers: list[TopReferrer]
    recent_referrals: list[ReferralUsage]
    points_distribution: list[CustomerPointsAccount]
    recent_transactions: list[PointsTransaction]


class HealthReport(BaseModel):
    status: str
    backend: str
    tables: dict[str, str] = Field(default_factory=dict)
    issues: list[str] = Field(default_factory=list)


# -----------------------------------------------------------------------------
# Checkout
# -----------------------------------------------------------------------------

class OrderData(BaseModel):
    invoice_id: str = Field(..., min_length=1)
    customer_id: str = Field(..., min_length=1)
    subtotal: int = Field(..., ge=0)
    total_amount: int = Field(..., ge=0)


class ProcessOrderRequest(BaseModel):
    order: OrderData
    referral_code: Optional[str] = None
    points_to_redeem: Optional[int] = None


class RollbackOrderRequest(BaseModel):
    order: OrderData
    points_used: int = Field(default=0, ge=0)
    points_awarded: int = Field(default=0, ge=0)


class OrderProcessingResult(BaseModel):
    success: bool
    invoice_id: str
    original_total: int
    final_total: int
    referral_code: Optional[str] = None
    referral_discount: int = 0
    points_awarded: int = 0
    points_used: int = 0
    points_discount: int = 0
    errors: list[str] = Field(default_factory=list)
