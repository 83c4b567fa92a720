"""
Group-Buy Notification Event Models

Fixed set of notification kinds published on campaign and payment
transitions. Each event carries its kind as a literal tag; NotificationEvent
is the tagged union over all of them.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


# =============================================================================
# Event Type Definitions
# =============================================================================


class NotificationKind(str, Enum):
    """
    Events published by group_buy_service.

    Values double as NATS subjects.
    """
    CAMPAIGN_PUBLISHED = "group_buy.campaign.published"
    GRACE_PERIOD_STARTED = "group_buy.campaign.grace_period_started"
    CAMPAIGN_LOCKED = "group_buy.campaign.locked"
    CAMPAIGN_CANCELLED = "group_buy.campaign.cancelled"
    CAMPAIGN_COMPLETED = "group_buy.campaign.completed"
    PAYMENT_SUCCEEDED = "group_buy.payment.succeeded"
    PAYMENT_FAILED = "group_buy.payment.failed"


# =============================================================================
# Event Data Models
# =============================================================================


class CampaignPublishedEvent(BaseModel):
    kind: Literal[NotificationKind.CAMPAIGN_PUBLISHED] = NotificationKind.CAMPAIGN_PUBLISHED
    campaign_id: str
    owner_id: str
    title: str
    start_date: datetime
    end_date: datetime


class GracePeriodStartedEvent(BaseModel):
    """Sent once per campaign; buyers with pending pledges must confirm"""
    kind: Literal[NotificationKind.GRACE_PERIOD_STARTED] = NotificationKind.GRACE_PERIOD_STARTED
    campaign_id: str
    title: str
    grace_period_end_date: datetime
    pending_buyer_ids: List[str] = Field(default_factory=list)


class CampaignLockedEvent(BaseModel):
    """Sent once per committed buyer when the campaign locks"""
    kind: Literal[NotificationKind.CAMPAIGN_LOCKED] = NotificationKind.CAMPAIGN_LOCKED
    campaign_id: str
    title: str
    buyer_id: str
    pledge_id: str
    quantity: int
    unit_price: Decimal
    total_amount: Decimal
    discount_percentage: int


class CampaignCancelledEvent(BaseModel):
    kind: Literal[NotificationKind.CAMPAIGN_CANCELLED] = NotificationKind.CAMPAIGN_CANCELLED
    campaign_id: str
    title: str
    owner_id: str
    reason: str
    affected_buyer_ids: List[str] = Field(default_factory=list)


class CampaignCompletedEvent(BaseModel):
    kind: Literal[NotificationKind.CAMPAIGN_COMPLETED] = NotificationKind.CAMPAIGN_COMPLETED
    campaign_id: str
    title: str
    owner_id: str


class PaymentSucceededEvent(BaseModel):
    kind: Literal[NotificationKind.PAYMENT_SUCCEEDED] = NotificationKind.PAYMENT_SUCCEEDED
    intent_id: str
    campaign_id: str
    buyer_id: str
    amount: Decimal
    gateway_reference: Optional[str] = None


class PaymentFailedEvent(BaseModel):
    kind: Literal[NotificationKind.PAYMENT_FAILED] = NotificationKind.PAYMENT_FAILED
    intent_id: str
    campaign_id: str
    buyer_id: str
    amount: Decimal
    attempt: int
    final: bool
    reason: Optional[str] = None


NotificationEvent = Annotated[
    Union[
        CampaignPublishedEvent,
        GracePeriodStartedEvent,
        CampaignLockedEvent,
        CampaignCancelledEvent,
        CampaignCompletedEvent,
        PaymentSucceededEvent,
        PaymentFailedEvent,
    ],
    Field(discriminator="kind"),
]

notification_event_adapter = TypeAdapter(NotificationEvent)


def parse_notification_event(data: dict) -> NotificationEvent:
    """Rebuild a typed event from its JSON-compatible dict form"""
    return notification_event_adapter.validate_python(data)
