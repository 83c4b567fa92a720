"""
Group-Buy Service Protocols

Defines interfaces for dependency injection and testing.
Following the protocol-based architecture pattern.
"""

from datetime import datetime
from enum import Enum
from typing import Any, AsyncContextManager, Callable, Dict, List, Optional, Protocol

from .events.models import NotificationEvent
from .models import (
    Campaign,
    CampaignStatus,
    ChargeResult,
    DiscountBracket,
    Fulfillment,
    PaymentIntent,
    PaymentIntentStatus,
    Pledge,
    PledgeStatus,
)


# Zero-argument callable returning the current aware UTC datetime
Clock = Callable[[], datetime]


# ====================
# Repository Protocols
# ====================


class CampaignRepositoryProtocol(Protocol):
    """Protocol for campaign persistence"""

    def unit_of_work(self) -> AsyncContextManager[None]:
        """
        Scope in which every repository call commits together or not at all.
        An exception raised inside the block rolls back all of its writes.
        """
        ...

    async def save_campaign(self, campaign: Campaign) -> Campaign:
        """Insert or replace a campaign"""
        ...

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        ...

    async def list_campaigns(
        self,
        owner_id: Optional[str] = None,
        statuses: Optional[List[CampaignStatus]] = None,
        search: Optional[str] = None,
    ) -> List[Campaign]:
        """Newest first, optionally filtered by owner, status set and a title substring"""
        ...

    async def delete_campaign(self, campaign_id: str, expected_status: CampaignStatus) -> bool:
        """Delete the campaign and its brackets only if it is still in expected_status"""
        ...

    async def list_campaigns_ending_by(
        self, status: CampaignStatus, threshold: datetime
    ) -> List[Campaign]:
        """Campaigns in status whose end_date <= threshold"""
        ...

    async def list_campaigns_grace_ended_before(
        self, status: CampaignStatus, threshold: datetime
    ) -> List[Campaign]:
        """Campaigns in status whose grace_period_end_date < threshold"""
        ...

    async def transition_campaign_status(
        self,
        campaign_id: str,
        expected_status: CampaignStatus,
        new_status: CampaignStatus,
        updates: Optional[Dict[str, Any]] = None,
    ) -> Optional[Campaign]:
        """
        Optimistic status guard: write new_status (and updates) only if the
        stored status still equals expected_status. Returns None otherwise.
        """
        ...


class BracketRepositoryProtocol(Protocol):
    """Protocol for discount bracket persistence"""

    async def save_brackets(
        self, campaign_id: str, brackets: List[DiscountBracket]
    ) -> List[DiscountBracket]:
        """Replace the bracket set for a campaign"""
        ...

    async def get_brackets(self, campaign_id: str) -> List[DiscountBracket]:
        """Brackets ordered by bracket_order"""
        ...

    async def get_bracket(self, bracket_id: str) -> Optional[DiscountBracket]:
        ...


class PledgeRepositoryProtocol(Protocol):
    """Protocol for pledge persistence"""

    async def save_pledge(self, pledge: Pledge) -> Pledge:
        ...

    async def get_pledge(self, pledge_id: str) -> Optional[Pledge]:
        ...

    async def get_pledge_by_buyer(self, campaign_id: str, buyer_id: str) -> Optional[Pledge]:
        """Most recent pledge for (campaign, buyer) in any status"""
        ...

    async def list_pledges(
        self, campaign_id: str, statuses: Optional[List[PledgeStatus]] = None
    ) -> List[Pledge]:
        ...

    async def update_pledge(self, pledge_id: str, updates: Dict[str, Any]) -> Optional[Pledge]:
        ...

    async def withdraw_pending_pledges(self, campaign_id: str) -> int:
        """Mark every PENDING pledge of a campaign WITHDRAWN; returns the count"""
        ...

    async def commit_pending_pledges(self, campaign_id: str, committed_at: datetime) -> int:
        """Mark every PENDING pledge of a campaign COMMITTED; returns the count"""
        ...


class PaymentIntentRepositoryProtocol(Protocol):
    """Protocol for payment intent persistence"""

    async def create_intent(self, intent: PaymentIntent) -> PaymentIntent:
        """Insert an intent; returns the existing one if the pledge already has one"""
        ...

    async def get_intent(self, intent_id: str) -> Optional[PaymentIntent]:
        ...

    async def get_intent_by_pledge(self, pledge_id: str) -> Optional[PaymentIntent]:
        ...

    async def list_intents(self, campaign_id: str) -> List[PaymentIntent]:
        ...

    async def list_retryable_intents(
        self, statuses: List[PaymentIntentStatus], max_retries: int
    ) -> List[PaymentIntent]:
        """Intents in statuses with retry_count < max_retries"""
        ...

    async def claim_intent(
        self,
        intent_id: str,
        expected_status: PaymentIntentStatus,
        claimed_at: datetime,
        stale_before: datetime,
    ) -> Optional[PaymentIntent]:
        """
        Take the processing lease: set processing_started_at = claimed_at only if
        the status is still expected_status and no lease newer than stale_before
        is held. Returns None when the claim is lost.
        """
        ...

    async def release_claim(self, intent_id: str) -> None:
        ...

    async def transition_intent_status(
        self,
        intent_id: str,
        expected_status: PaymentIntentStatus,
        new_status: PaymentIntentStatus,
        updates: Optional[Dict[str, Any]] = None,
    ) -> Optional[PaymentIntent]:
        """Guarded status write that also clears the processing lease"""
        ...


class FulfillmentRepositoryProtocol(Protocol):
    """Protocol for fulfillment persistence"""

    async def save_fulfillment(self, fulfillment: Fulfillment) -> Fulfillment:
        ...

    async def get_fulfillment_by_pledge(self, pledge_id: str) -> Optional[Fulfillment]:
        ...

    async def list_fulfillments(self, campaign_id: str) -> List[Fulfillment]:
        ...


# ====================
# Collaborator Protocols
# ====================


class EventBusProtocol(Protocol):
    """Protocol for event bus (NATS)"""

    async def publish(self, subject: str, data: Dict[str, Any]) -> None:
        ...


class NotificationClientProtocol(Protocol):
    """Protocol for notification_service client"""

    async def send_notification(
        self,
        user_id: str,
        subject: str,
        content: Dict[str, Any],
        **kwargs,
    ) -> Dict[str, Any]:
        ...


class NotificationDispatcherProtocol(Protocol):
    """Fire-and-forget notification dispatch. Never raises."""

    async def send(self, event: NotificationEvent) -> bool:
        ...


class PaymentGatewayProtocol(Protocol):
    """Protocol for the payment gateway"""

    async def charge(self, intent: PaymentIntent, idempotency_key: str) -> ChargeResult:
        """
        Attempt to collect intent.amount from the buyer.

        Returns a ChargeResult for a definitive outcome. Raises when the outcome
        is unknown (transport failure), so the attempt can be replayed with the
        same idempotency key.
        """
        ...


# ====================
# Exceptions
# ====================


class GroupBuyServiceError(Exception):
    """Base exception for group-buy service errors"""
    pass


class NotFoundError(GroupBuyServiceError):
    """Referenced entity does not exist"""

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} not found: {entity_id}")
        self.entity = entity
        self.entity_id = entity_id


class CampaignNotFoundError(NotFoundError):
    def __init__(self, campaign_id: str):
        super().__init__("Campaign", campaign_id)


class BracketNotFoundError(NotFoundError):
    def __init__(self, bracket_id: str):
        super().__init__("Bracket", bracket_id)


class PledgeNotFoundError(NotFoundError):
    def __init__(self, pledge_id: str):
        super().__init__("Pledge", pledge_id)


class PaymentIntentNotFoundError(NotFoundError):
    def __init__(self, intent_id: str):
        super().__init__("PaymentIntent", intent_id)


class ValidationError(GroupBuyServiceError):
    """Business rule violated"""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class InvalidStateTransitionError(GroupBuyServiceError):
    """Requested transition is not allowed from the entity's current state"""

    def __init__(self, current_state: Enum, attempted_target: Enum, entity: str = "Campaign"):
        super().__init__(
            f"Cannot transition {entity} from {current_state.value} to {attempted_target.value}"
        )
        self.current_state = current_state
        self.attempted_target = attempted_target
        self.entity = entity


class PaymentInProgressError(GroupBuyServiceError):
    """Another collection attempt holds the intent"""

    def __init__(self, intent_id: str):
        super().__init__(f"Payment collection already in progress for intent {intent_id}")
        self.intent_id = intent_id
