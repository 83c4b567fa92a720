"""
Group-Buy Notification Dispatcher

Publishes notification events to NATS and forwards buyer/supplier-facing
messages to notification_service. Dispatch is fire-and-forget: failures are
logged and reported as False, never raised into the state transition that
triggered them.
"""

import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

from core.nats_client import Event

from .models import NotificationEvent, NotificationKind

if TYPE_CHECKING:
    from ..protocols import EventBusProtocol, NotificationClientProtocol

logger = logging.getLogger(__name__)

# (recipient user id, message subject, message content)
Message = Tuple[str, str, Dict[str, Any]]


def route(event: NotificationEvent) -> List[Message]:
    """Map an event to the direct messages it produces, keyed on event.kind"""
    kind = event.kind

    if kind == NotificationKind.CAMPAIGN_PUBLISHED:
        return [(
            event.owner_id,
            f"Your campaign '{event.title}' is live",
            {"campaign_id": event.campaign_id, "end_date": event.end_date.isoformat()},
        )]

    if kind == NotificationKind.GRACE_PERIOD_STARTED:
        content = {
            "campaign_id": event.campaign_id,
            "confirm_by": event.grace_period_end_date.isoformat(),
        }
        return [
            (buyer_id, f"Confirm your pledge for '{event.title}'", content)
            for buyer_id in event.pending_buyer_ids
        ]

    if kind == NotificationKind.CAMPAIGN_LOCKED:
        return [(
            event.buyer_id,
            f"'{event.title}' locked at {event.discount_percentage}% off",
            {
                "campaign_id": event.campaign_id,
                "pledge_id": event.pledge_id,
                "quantity": event.quantity,
                "unit_price": str(event.unit_price),
                "total_amount": str(event.total_amount),
                "discount_percentage": event.discount_percentage,
            },
        )]

    if kind == NotificationKind.CAMPAIGN_CANCELLED:
        content = {"campaign_id": event.campaign_id, "reason": event.reason}
        recipients = [event.owner_id] + list(event.affected_buyer_ids)
        return [(user_id, f"'{event.title}' was cancelled", content) for user_id in recipients]

    if kind == NotificationKind.CAMPAIGN_COMPLETED:
        return [(
            event.owner_id,
            f"'{event.title}' is complete",
            {"campaign_id": event.campaign_id},
        )]

    if kind == NotificationKind.PAYMENT_SUCCEEDED:
        return [(
            event.buyer_id,
            "Payment received",
            {
                "campaign_id": event.campaign_id,
                "intent_id": event.intent_id,
                "amount": str(event.amount),
            },
        )]

    if kind == NotificationKind.PAYMENT_FAILED:
        subject = (
            "Payment failed - action required"
            if event.final
            else f"Payment attempt {event.attempt} failed - we will retry"
        )
        return [(
            event.buyer_id,
            subject,
            {
                "campaign_id": event.campaign_id,
                "intent_id": event.intent_id,
                "amount": str(event.amount),
                "attempt": event.attempt,
                "final": event.final,
                "reason": event.reason,
            },
        )]

    logger.warning(f"No route for notification kind {kind}")
    return []


class NotificationDispatcher:
    """Dispatcher for group-buy notification events"""

    def __init__(
        self,
        event_bus: Optional["EventBusProtocol"] = None,
        notification_client: Optional["NotificationClientProtocol"] = None,
    ):
        self.event_bus = event_bus
        self.notification_client = notification_client
        self.source = "group_buy_service"

    async def send(self, event: NotificationEvent) -> bool:
        """
        Dispatch an event.

        Returns:
            True if every delivery succeeded, False otherwise
        """
        published = await self._publish(event)
        delivered = await self._deliver(event)
        return published and delivered

    async def _publish(self, event: NotificationEvent) -> bool:
        if not self.event_bus:
            logger.debug(f"Event bus not configured, skipping publish: {event.kind.value}")
            return True

        try:
            envelope = Event(
                event_type=event.kind.value,
                source=self.source,
                data=event.model_dump(mode="json"),
                subject=event.campaign_id,
            )
            await self.event_bus.publish(event.kind.value, envelope.to_dict())
            logger.debug(f"Published event: {event.kind.value}")
            return True
        except Exception as e:
            logger.error(f"Failed to publish event {event.kind.value}: {e}")
            return False

    async def _deliver(self, event: NotificationEvent) -> bool:
        if not self.notification_client:
            return True

        ok = True
        for user_id, subject, content in route(event):
            try:
                await self.notification_client.send_notification(
                    user_id=user_id,
                    subject=subject,
                    content=content,
                    event_type=event.kind.value,
                )
            except Exception as e:
                logger.warning(
                    f"Failed to deliver {event.kind.value} notification to {user_id}: {e}"
                )
                ok = False
        return ok
