# trademarket/models.py
from datetime import date, datetime
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, Field, model_validator


# Enums
class Role(str, Enum):
    customer = "customer"
    tradesperson = "tradesperson"
    business_owner = "business_owner"
    admin = "admin"


class Tier(str, Enum):
    basic = "basic"
    pro = "pro"
    business = "business"


TIER_ORDER = {Tier.basic: 0, Tier.pro: 1, Tier.business: 2}


def as_tier(value) -> Tier:
    """Normalise a raw tier value; anything unknown is treated as basic."""
    if isinstance(value, Tier):
        return value
    try:
        return Tier(str(value).lower())
    except ValueError:
        return Tier.basic


class JobStatus(str, Enum):
    open = "open"
    assigned = "assigned"
    in_progress = "in_progress"
    completed = "completed"
    cancelled = "cancelled"


class QuoteStatus(str, Enum):
    pending = "pending"
    accepted = "accepted"
    rejected = "rejected"
    expired = "expired"


class PaymentType(str, Enum):
    deposit = "deposit"
    final = "final"


class PaymentStatus(str, Enum):
    authorized = "authorized"
    captured = "captured"
    succeeded = "succeeded"
    refunded = "refunded"
    canceled = "canceled"


SETTLED_STATUSES = (PaymentStatus.captured, PaymentStatus.succeeded)


# Caller (resolved from the identity provider, never stored here)
class Caller(BaseModel):
    user_id: str
    role: Role
    subscription_tier: Tier = Tier.basic
    subscription_status: Optional[str] = None
    email: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == Role.admin

    @property
    def effective_tier(self) -> Tier:
        # Lapsed or missing subscriptions fall back to basic
        if self.subscription_status != "active":
            return Tier.basic
        return self.subscription_tier


# Request bodies
class JobLocation(BaseModel):
    postcode: str = Field(min_length=1)
    address: Optional[str] = None
    town: Optional[str] = None


class JobIn(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: str = Field(min_length=1)
    service_type: Optional[str] = None
    urgency: Literal["emergency", "urgent", "soon", "flexible"] = "flexible"
    location: JobLocation
    budget_cents: Optional[int] = Field(default=None, ge=0)


class QuoteIn(BaseModel):
    price_cents: int = Field(gt=0)
    deposit_cents: Optional[int] = Field(default=None, gt=0)
    description: str = ""
    estimated_duration: Optional[str] = None
    available_date: Optional[date] = None

    @model_validator(mode="after")
    def deposit_within_price(self):
        if self.deposit_cents is not None and self.deposit_cents > self.price_cents:
            raise ValueError("deposit_cents cannot exceed price_cents")
        return self


class CancelIn(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class ScheduleIn(BaseModel):
    scheduled_date: date


class SaveJobIn(BaseModel):
    job_id: str = Field(min_length=1)


class ReviewIn(BaseModel):
    review_id: str = Field(min_length=1)


class CheckoutIn(BaseModel):
    quote_id: str = Field(min_length=1)
    payment_type: PaymentType = PaymentType.deposit


# Records
class Job(BaseModel):
    id: str
    customer_id: str
    tradesperson_id: Optional[str] = None
    title: str
    description: str
    service_type: Optional[str] = None
    urgency: str
    location: JobLocation
    budget_cents: Optional[int] = None
    status: JobStatus
    accepted_quote_id: Optional[str] = None
    scheduled_date: Optional[date] = None
    review_id: Optional[str] = None
    cancellation_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Quote(BaseModel):
    id: str
    job_id: str
    tradesperson_id: str
    price_cents: int
    deposit_cents: Optional[int] = None
    description: str = ""
    estimated_duration: Optional[str] = None
    available_date: Optional[date] = None
    status: QuoteStatus
    accepted_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def deposit_due_cents(self) -> int:
        # No deposit on the quote means the deposit stage covers the full price
        return self.deposit_cents or self.price_cents

    @property
    def balance_due_cents(self) -> int:
        return self.price_cents - self.deposit_due_cents


class Payment(BaseModel):
    id: str
    job_id: str
    quote_id: str
    type: PaymentType
    amount_cents: int
    platform_fee_cents: int
    fee_rate_bps: int
    tier: Tier
    reference: str
    gateway_reference: Optional[str] = None
    checkout_url: Optional[str] = None
    status: PaymentStatus
    failure_code: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None


# Gateway contract
class CheckoutHandle(BaseModel):
    payment_id: str
    checkout_url: str
    session_id: Optional[str] = None


class GatewayEvent(BaseModel):
    """A settlement callback, already verified and normalised by the gateway."""

    event_id: str
    reference: Optional[str] = None
    outcome: Literal["succeeded", "failed"]
    gateway_reference: Optional[str] = None
    failure_code: Optional[str] = None


class CheckoutOut(BaseModel):
    payment_id: str
    checkout_url: str


class ExpireQuotesOut(BaseModel):
    expired: int
