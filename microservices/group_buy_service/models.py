"""
Group-Buy Service Data Models

Campaigns with quantity-tiered pricing, buyer pledges, payment intents and
fulfillment records for the B2B group-buying marketplace.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    """Default clock: current aware UTC time"""
    return datetime.now(timezone.utc)


def make_id(prefix: str) -> str:
    """Generate a prefixed identifier, e.g. cmp_1a2b3c..."""
    return f"{prefix}_{uuid4().hex[:16]}"


# ====================
# Enums
# ====================


class CampaignStatus(str, Enum):
    """Campaign lifecycle status"""
    DRAFT = "draft"
    ACTIVE = "active"
    GRACE_PERIOD = "grace_period"
    LOCKED = "locked"
    CANCELLED = "cancelled"
    DONE = "done"


class PledgeStatus(str, Enum):
    """Pledge status"""
    PENDING = "pending"
    COMMITTED = "committed"
    WITHDRAWN = "withdrawn"


class PaymentIntentStatus(str, Enum):
    """Payment intent status"""
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED_RETRY_1 = "failed_retry_1"
    FAILED_RETRY_2 = "failed_retry_2"
    FAILED_FINAL = "failed_final"
    COLLECTED_VIA_MANUAL = "collected_via_manual"


class DeliveryStatus(str, Enum):
    """Fulfillment delivery status"""
    PENDING = "pending"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"


# Payment statuses that count as collected for completion gating
SUCCESSFUL_PAYMENT_STATUSES = frozenset(
    {PaymentIntentStatus.SUCCEEDED, PaymentIntentStatus.COLLECTED_VIA_MANUAL}
)

# Statuses from which an automatic collection attempt may run
RETRYABLE_PAYMENT_STATUSES = frozenset(
    {
        PaymentIntentStatus.PENDING,
        PaymentIntentStatus.FAILED_RETRY_1,
        PaymentIntentStatus.FAILED_RETRY_2,
    }
)


# ====================
# Core Models
# ====================


class DiscountBracket(BaseModel):
    """Quantity range mapped to a unit price. max_quantity None means unbounded."""
    bracket_id: str = Field(default_factory=lambda: make_id("brk"))
    campaign_id: str
    min_quantity: int = Field(..., ge=0)
    max_quantity: Optional[int] = Field(None, ge=0)
    unit_price: Decimal = Field(..., ge=0)
    bracket_order: int = Field(..., ge=0)

    def contains(self, quantity: int) -> bool:
        if quantity < self.min_quantity:
            return False
        return self.max_quantity is None or quantity <= self.max_quantity


class Campaign(BaseModel):
    """Group-buy campaign"""
    campaign_id: str = Field(default_factory=lambda: make_id("cmp"))
    owner_id: str
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=4000)
    product_details: Dict[str, Any] = Field(default_factory=dict)

    start_date: datetime
    end_date: datetime
    grace_period_end_date: Optional[datetime] = None

    target_qty: int = Field(default=0, ge=0)
    status: CampaignStatus = CampaignStatus.DRAFT

    # Frozen at lock
    final_bracket_id: Optional[str] = None
    final_unit_price: Optional[Decimal] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Pledge(BaseModel):
    """A buyer's quantity commitment within a campaign"""
    pledge_id: str = Field(default_factory=lambda: make_id("plg"))
    campaign_id: str
    buyer_id: str
    quantity: int = Field(..., ge=1)
    status: PledgeStatus = PledgeStatus.PENDING
    committed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class PaymentIntent(BaseModel):
    """Tracked collection of payment for one committed pledge"""
    intent_id: str = Field(default_factory=lambda: make_id("pi"))
    campaign_id: str
    pledge_id: str
    buyer_id: str
    amount: Decimal = Field(..., ge=0)
    status: PaymentIntentStatus = PaymentIntentStatus.PENDING
    retry_count: int = Field(default=0, ge=0)
    processing_started_at: Optional[datetime] = None
    last_failure_reason: Optional[str] = None
    gateway_reference: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Fulfillment(BaseModel):
    """Delivery tracking for one pledge"""
    fulfillment_id: str = Field(default_factory=lambda: make_id("ful"))
    campaign_id: str
    pledge_id: str
    delivery_status: DeliveryStatus = DeliveryStatus.PENDING
    delivered_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ====================
# Value Objects
# ====================


class BracketEvaluation(BaseModel):
    """Pricing snapshot for a quantity against a bracket set"""
    model_config = {"frozen": True}

    quantity: int
    current_bracket: Optional[DiscountBracket] = None
    next_bracket: Optional[DiscountBracket] = None
    percentage_to_next_tier: Decimal
    unit_price: Optional[Decimal] = None


class CampaignPricing(BaseModel):
    """Live pricing view of a campaign"""
    campaign_id: str
    status: CampaignStatus
    display_total: int
    lock_eligibility_total: int
    minimum_viable_quantity: int
    evaluation: BracketEvaluation


class ChargeResult(BaseModel):
    """Outcome of a single payment gateway charge"""
    success: bool
    gateway_reference: Optional[str] = None
    failure_reason: Optional[str] = None


class JobFailure(BaseModel):
    """One entity that failed during a scheduled job run"""
    entity_id: str
    error_type: str
    message: str


class JobRunResult(BaseModel):
    """Summary of one scheduled job run"""
    job_name: str
    started_at: datetime
    selected: int = 0
    succeeded: int = 0
    failures: List[JobFailure] = Field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.failures)


# ====================
# Request Models
# ====================


class BracketSpec(BaseModel):
    """Bracket definition supplied at campaign creation"""
    min_quantity: int = Field(..., ge=0)
    max_quantity: Optional[int] = Field(None, ge=0)
    unit_price: Decimal = Field(..., ge=0)
    bracket_order: int = Field(..., ge=0)


class CampaignCreateRequest(BaseModel):
    """Create a DRAFT campaign"""
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=4000)
    product_details: Dict[str, Any] = Field(default_factory=dict)
    start_date: datetime
    end_date: datetime
    target_qty: int = Field(default=0, ge=0)
    brackets: List[BracketSpec] = Field(default_factory=list)


class CampaignUpdateRequest(BaseModel):
    """Edit a DRAFT campaign; only fields that are set are written"""
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=4000)
    product_details: Optional[Dict[str, Any]] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    target_qty: Optional[int] = Field(None, ge=0)
    brackets: Optional[List[BracketSpec]] = None


class CampaignBracketsRequest(BaseModel):
    """Replace the bracket set of a DRAFT campaign"""
    brackets: List[BracketSpec]


class CampaignCancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class PledgeCreateRequest(BaseModel):
    buyer_id: str
    quantity: int = Field(..., ge=1)


class PledgeUpdateRequest(BaseModel):
    buyer_id: str
    quantity: int = Field(..., ge=1)


class PledgeActionRequest(BaseModel):
    buyer_id: str


class DeliveryUpdateRequest(BaseModel):
    pledge_id: str
    delivery_status: DeliveryStatus


# ====================
# Health Models
# ====================


class HealthResponse(BaseModel):
    status: str
    service: str
    port: int
    version: str
    dependencies: Dict[str, str] = Field(default_factory=dict)


class ReadinessResponse(BaseModel):
    ready: bool
    checks: Dict[str, bool] = Field(default_factory=dict)
    details: Dict[str, str] = Field(default_factory=dict)


class LivenessResponse(BaseModel):
    alive: bool
    uptime_seconds: float
