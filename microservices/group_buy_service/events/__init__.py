"""
Group-Buy Service Events

Notification event models and the dispatcher.
"""

from .models import (
    NotificationKind,
    NotificationEvent,
    CampaignPublishedEvent,
    GracePeriodStartedEvent,
    CampaignLockedEvent,
    CampaignCancelledEvent,
    CampaignCompletedEvent,
    PaymentSucceededEvent,
    PaymentFailedEvent,
    parse_notification_event,
)
from .publishers import NotificationDispatcher

__all__ = [
    "NotificationKind",
    "NotificationEvent",
    "CampaignPublishedEvent",
    "GracePeriodStartedEvent",
    "CampaignLockedEvent",
    "CampaignCancelledEvent",
    "CampaignCompletedEvent",
    "PaymentSucceededEvent",
    "PaymentFailedEvent",
    "parse_notification_event",
    "NotificationDispatcher",
]
