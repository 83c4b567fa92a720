"""
Campaign Lifecycle Service

Campaign state machine:

    DRAFT -> ACTIVE -> GRACE_PERIOD -> LOCKED -> DONE
                                    -> CANCELLED
    DRAFT | ACTIVE -> CANCELLED          (manual abort)
    ACTIVE -> LOCKED                     (manual early lock)

Every status write goes through the repository's optimistic status guard, so
two schedulers (or a scheduler and a manual action) cannot both move the same
campaign out of a state.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, FrozenSet, List, Optional, Sequence, Set

from . import bracket_evaluator
from .events.models import (
    CampaignCancelledEvent,
    CampaignCompletedEvent,
    CampaignLockedEvent,
    CampaignPublishedEvent,
    GracePeriodStartedEvent,
)
from .models import (
    SUCCESSFUL_PAYMENT_STATUSES,
    BracketSpec,
    Campaign,
    CampaignCreateRequest,
    CampaignPricing,
    CampaignStatus,
    CampaignUpdateRequest,
    DeliveryStatus,
    DiscountBracket,
    Fulfillment,
    PaymentIntent,
    PledgeStatus,
    utc_now,
)
from .payment_retry_engine import PaymentRetryEngine
from .pledge_aggregator import PledgeAggregator
from .protocols import (
    BracketNotFoundError,
    BracketRepositoryProtocol,
    CampaignNotFoundError,
    CampaignRepositoryProtocol,
    Clock,
    FulfillmentRepositoryProtocol,
    InvalidStateTransitionError,
    NotificationDispatcherProtocol,
    PledgeNotFoundError,
    PledgeRepositoryProtocol,
    ValidationError,
)

logger = logging.getLogger(__name__)


VALID_TRANSITIONS: Dict[CampaignStatus, Set[CampaignStatus]] = {
    CampaignStatus.DRAFT: {CampaignStatus.ACTIVE, CampaignStatus.CANCELLED},
    CampaignStatus.ACTIVE: {
        CampaignStatus.GRACE_PERIOD,
        CampaignStatus.LOCKED,
        CampaignStatus.CANCELLED,
    },
    CampaignStatus.GRACE_PERIOD: {CampaignStatus.LOCKED, CampaignStatus.CANCELLED},
    CampaignStatus.LOCKED: {CampaignStatus.DONE},
    CampaignStatus.CANCELLED: set(),
    CampaignStatus.DONE: set(),
}

TERMINAL_STATES: FrozenSet[CampaignStatus] = frozenset(
    status for status, targets in VALID_TRANSITIONS.items() if not targets
)

MANUAL_CANCEL_SOURCES = frozenset({CampaignStatus.DRAFT, CampaignStatus.ACTIVE})


def can_transition(current: CampaignStatus, target: CampaignStatus) -> bool:
    return target in VALID_TRANSITIONS.get(current, set())


class CampaignLifecycleService:
    """Campaign state machine and pricing read path"""

    def __init__(
        self,
        campaign_repository: CampaignRepositoryProtocol,
        bracket_repository: BracketRepositoryProtocol,
        pledge_repository: PledgeRepositoryProtocol,
        fulfillment_repository: FulfillmentRepositoryProtocol,
        payment_engine: PaymentRetryEngine,
        dispatcher: Optional[NotificationDispatcherProtocol] = None,
        aggregator: Optional[PledgeAggregator] = None,
        grace_period_extension_hours: int = 0,
        clock: Optional[Clock] = None,
    ):
        self.campaign_repository = campaign_repository
        self.bracket_repository = bracket_repository
        self.pledge_repository = pledge_repository
        self.fulfillment_repository = fulfillment_repository
        self.payment_engine = payment_engine
        self.dispatcher = dispatcher
        self.aggregator = aggregator or PledgeAggregator(pledge_repository)
        self.grace_period_extension = timedelta(hours=grace_period_extension_hours)
        self.clock = clock or utc_now

    # ====================
    # Helpers
    # ====================

    async def get_campaign(self, campaign_id: str) -> Campaign:
        campaign = await self.campaign_repository.get_campaign(campaign_id)
        if not campaign:
            raise CampaignNotFoundError(campaign_id)
        return campaign

    @staticmethod
    def _require_source(
        campaign: Campaign, allowed: Sequence[CampaignStatus], target: CampaignStatus
    ) -> None:
        if campaign.status not in allowed:
            raise InvalidStateTransitionError(campaign.status, target)

    async def _transition(
        self,
        campaign: Campaign,
        target: CampaignStatus,
        updates: Optional[dict] = None,
    ) -> Campaign:
        if not can_transition(campaign.status, target):
            raise InvalidStateTransitionError(campaign.status, target)

        fields = dict(updates or {})
        fields["updated_at"] = self.clock()
        updated = await self.campaign_repository.transition_campaign_status(
            campaign.campaign_id, campaign.status, target, fields
        )
        if updated is None:
            # Someone else moved the campaign since we read it
            current = await self.get_campaign(campaign.campaign_id)
            raise InvalidStateTransitionError(current.status, target)

        logger.info(
            f"Campaign {campaign.campaign_id} transitioned {campaign.status.value} -> {target.value}"
        )
        return updated

    async def _notify(self, event) -> None:
        if self.dispatcher:
            await self.dispatcher.send(event)

    async def _load_brackets(self, campaign_id: str) -> List[DiscountBracket]:
        return bracket_evaluator.ordered_brackets(
            await self.bracket_repository.get_brackets(campaign_id)
        )

    @staticmethod
    def _lock_threshold(brackets: Sequence[DiscountBracket]) -> int:
        # Zero committed volume never locks, even with a zero-minimum base tier
        return max(bracket_evaluator.minimum_viable_quantity(brackets), 1)

    # ====================
    # Creation
    # ====================

    async def create_campaign(self, owner_id: str, request: CampaignCreateRequest) -> Campaign:
        """Create a DRAFT campaign together with its bracket set"""
        if request.end_date <= request.start_date:
            raise ValidationError("end_date must be after start_date", field="end_date")

        now = self.clock()
        campaign = Campaign(
            owner_id=owner_id,
            title=request.title,
            description=request.description,
            product_details=request.product_details,
            start_date=request.start_date,
            end_date=request.end_date,
            target_qty=request.target_qty,
            status=CampaignStatus.DRAFT,
            created_at=now,
            updated_at=now,
        )
        brackets = self._build_brackets(campaign.campaign_id, request.brackets)
        if brackets:
            bracket_evaluator.validate_brackets(brackets)

        async with self.campaign_repository.unit_of_work():
            saved = await self.campaign_repository.save_campaign(campaign)
            await self.bracket_repository.save_brackets(saved.campaign_id, brackets)
        logger.info(f"Campaign created: {saved.campaign_id} with {len(brackets)} brackets")
        return saved

    @staticmethod
    def _build_brackets(campaign_id: str, specs: List[BracketSpec]) -> List[DiscountBracket]:
        return [
            DiscountBracket(
                campaign_id=campaign_id,
                min_quantity=spec.min_quantity,
                max_quantity=spec.max_quantity,
                unit_price=spec.unit_price,
                bracket_order=spec.bracket_order,
            )
            for spec in specs
        ]

    # ====================
    # Draft management
    # ====================

    async def _get_owned_draft(self, campaign_id: str, owner_id: str, action: str) -> Campaign:
        campaign = await self.get_campaign(campaign_id)
        if campaign.owner_id != owner_id:
            raise CampaignNotFoundError(campaign_id)
        if campaign.status != CampaignStatus.DRAFT:
            raise ValidationError(f"Only DRAFT campaigns can be {action}", field="status")
        return campaign

    async def _write_draft(self, campaign: Campaign, updates: Dict[str, Any]) -> Campaign:
        fields = dict(updates)
        fields["updated_at"] = self.clock()
        updated = await self.campaign_repository.transition_campaign_status(
            campaign.campaign_id, CampaignStatus.DRAFT, CampaignStatus.DRAFT, fields
        )
        if updated is None:
            raise ValidationError("Only DRAFT campaigns can be updated", field="status")
        return updated

    async def update_campaign(
        self, campaign_id: str, owner_id: str, request: CampaignUpdateRequest
    ) -> Campaign:
        """
        Edit a DRAFT campaign. Unset fields keep their value; a bracket list,
        when given, replaces the whole set.
        """
        campaign = await self._get_owned_draft(campaign_id, owner_id, "updated")

        updates = request.model_dump(exclude_none=True, exclude={"brackets"})
        start_date = updates.get("start_date", campaign.start_date)
        end_date = updates.get("end_date", campaign.end_date)
        if end_date <= start_date:
            raise ValidationError("end_date must be after start_date", field="end_date")

        brackets = None
        if request.brackets is not None:
            brackets = self._build_brackets(campaign_id, request.brackets)
            bracket_evaluator.validate_brackets(brackets)

        async with self.campaign_repository.unit_of_work():
            updated = await self._write_draft(campaign, updates)
            if brackets is not None:
                await self.bracket_repository.save_brackets(campaign_id, brackets)

        logger.info(f"Campaign {campaign_id} updated: {sorted(updates) or 'no fields'}")
        return updated

    async def replace_brackets(
        self, campaign_id: str, owner_id: str, specs: List[BracketSpec]
    ) -> List[DiscountBracket]:
        """Swap the bracket set of a DRAFT campaign for a validated new one"""
        campaign = await self._get_owned_draft(campaign_id, owner_id, "updated")
        brackets = self._build_brackets(campaign_id, specs)
        bracket_evaluator.validate_brackets(brackets)

        async with self.campaign_repository.unit_of_work():
            await self._write_draft(campaign, {})
            saved = await self.bracket_repository.save_brackets(campaign_id, brackets)

        logger.info(f"Campaign {campaign_id} brackets replaced with {len(saved)} brackets")
        return bracket_evaluator.ordered_brackets(saved)

    async def delete_campaign(self, campaign_id: str, owner_id: str) -> None:
        """Remove a DRAFT campaign and its brackets"""
        await self._get_owned_draft(campaign_id, owner_id, "deleted")
        deleted = await self.campaign_repository.delete_campaign(campaign_id, CampaignStatus.DRAFT)
        if not deleted:
            raise ValidationError("Only DRAFT campaigns can be deleted", field="status")
        logger.info(f"Campaign {campaign_id} deleted")

    async def list_campaigns(
        self, owner_id: Optional[str] = None, status: Optional[CampaignStatus] = None
    ) -> List[Campaign]:
        return await self.campaign_repository.list_campaigns(
            owner_id=owner_id, statuses=[status] if status else None
        )

    async def find_active_campaigns(
        self, search: Optional[str] = None, owner_id: Optional[str] = None
    ) -> List[Campaign]:
        """Campaigns buyers can still pledge to or confirm, newest first"""
        return await self.campaign_repository.list_campaigns(
            owner_id=owner_id,
            statuses=[CampaignStatus.ACTIVE, CampaignStatus.GRACE_PERIOD],
            search=search.strip() if search else None,
        )

    # ====================
    # Transitions
    # ====================

    async def publish(self, campaign_id: str) -> Campaign:
        """DRAFT -> ACTIVE. Needs brackets and start_date <= today < end_date."""
        campaign = await self.get_campaign(campaign_id)
        self._require_source(campaign, [CampaignStatus.DRAFT], CampaignStatus.ACTIVE)

        brackets = await self._load_brackets(campaign_id)
        bracket_evaluator.validate_brackets(brackets)

        today = self.clock().date()
        if campaign.start_date.date() > today:
            raise ValidationError("Campaign start_date is in the future", field="start_date")
        if campaign.end_date.date() <= today:
            raise ValidationError("Campaign end_date must be after today", field="end_date")

        published = await self._transition(campaign, CampaignStatus.ACTIVE)
        await self._notify(
            CampaignPublishedEvent(
                campaign_id=published.campaign_id,
                owner_id=published.owner_id,
                title=published.title,
                start_date=published.start_date,
                end_date=published.end_date,
            )
        )
        return published

    async def start_grace_period(self, campaign_id: str) -> Campaign:
        """ACTIVE -> GRACE_PERIOD; pending buyers are asked to confirm"""
        campaign = await self.get_campaign(campaign_id)
        self._require_source(campaign, [CampaignStatus.ACTIVE], CampaignStatus.GRACE_PERIOD)

        grace_end = campaign.end_date + self.grace_period_extension
        updated = await self._transition(
            campaign,
            CampaignStatus.GRACE_PERIOD,
            {"grace_period_end_date": grace_end},
        )

        pending = await self.pledge_repository.list_pledges(
            campaign_id, statuses=[PledgeStatus.PENDING]
        )
        await self._notify(
            GracePeriodStartedEvent(
                campaign_id=updated.campaign_id,
                title=updated.title,
                grace_period_end_date=grace_end,
                pending_buyer_ids=[p.buyer_id for p in pending],
            )
        )
        return updated

    async def evaluate(self, campaign_id: str) -> Campaign:
        """
        GRACE_PERIOD -> LOCKED | CANCELLED.

        LOCKED when the committed total reaches the minimum viable quantity,
        otherwise CANCELLED. Unconfirmed pledges are withdrawn either way.
        Not idempotent: a resolved campaign raises InvalidStateTransitionError.

        The status write, the pledge updates and the payment intents commit as
        one unit; if any of them fails the campaign stays in GRACE_PERIOD and
        the next evaluation run retries it.
        """
        campaign = await self.get_campaign(campaign_id)
        if campaign.status != CampaignStatus.GRACE_PERIOD:
            raise InvalidStateTransitionError(campaign.status, CampaignStatus.LOCKED)

        brackets = await self._load_brackets(campaign_id)
        threshold = self._lock_threshold(brackets)
        total = await self.aggregator.lock_eligibility_total(campaign_id)
        logger.info(
            f"Evaluating campaign {campaign_id}: committed {total}, threshold {threshold}"
        )

        if brackets and total >= threshold:
            async with self.campaign_repository.unit_of_work():
                locked = await self._lock(campaign, brackets, total)
                withdrawn = await self.pledge_repository.withdraw_pending_pledges(campaign_id)
                intents = await self._create_intents(locked, brackets)
            if withdrawn:
                logger.info(f"Withdrew {withdrawn} unconfirmed pledges from {campaign_id}")
            await self._notify_locked(locked, brackets, intents)
            return locked

        async with self.campaign_repository.unit_of_work():
            affected = await self.pledge_repository.list_pledges(
                campaign_id, statuses=[PledgeStatus.PENDING, PledgeStatus.COMMITTED]
            )
            cancelled = await self._transition(campaign, CampaignStatus.CANCELLED)
            await self.pledge_repository.withdraw_pending_pledges(campaign_id)
        await self._notify(
            CampaignCancelledEvent(
                campaign_id=cancelled.campaign_id,
                title=cancelled.title,
                owner_id=cancelled.owner_id,
                reason=f"Minimum order not reached ({total} of {threshold})",
                affected_buyer_ids=[p.buyer_id for p in affected],
            )
        )
        return cancelled

    async def lock_manually(self, campaign_id: str) -> Campaign:
        """
        ACTIVE -> LOCKED on the supplier's request.

        Pending pledges are committed programmatically at lock, so the threshold
        is checked against committed plus pending quantity. An unmet minimum
        raises ValidationError and leaves the campaign untouched, as does a
        failure while committing pledges or creating payment intents.
        """
        campaign = await self.get_campaign(campaign_id)
        self._require_source(campaign, [CampaignStatus.ACTIVE], CampaignStatus.LOCKED)

        brackets = await self._load_brackets(campaign_id)
        if not brackets:
            raise ValidationError("Campaign has no discount brackets", field="brackets")

        threshold = self._lock_threshold(brackets)
        committed = await self.aggregator.lock_eligibility_total(campaign_id)
        pending = await self.pledge_repository.list_pledges(
            campaign_id, statuses=[PledgeStatus.PENDING]
        )
        prospective = committed + sum(p.quantity for p in pending)
        if prospective < threshold:
            raise ValidationError(
                f"Minimum viable quantity not met: {prospective} pledged, {threshold} required",
                field="quantity",
            )

        async with self.campaign_repository.unit_of_work():
            locked = await self._lock(campaign, brackets, prospective)
            committed_count = await self.pledge_repository.commit_pending_pledges(
                campaign_id, self.clock()
            )
            intents = await self._create_intents(locked, brackets)
        logger.info(f"Committed {committed_count} pending pledges at manual lock of {campaign_id}")
        await self._notify_locked(locked, brackets, intents)
        return locked

    async def _lock(
        self, campaign: Campaign, brackets: List[DiscountBracket], total: int
    ) -> Campaign:
        final = bracket_evaluator.current_bracket(brackets, total)
        return await self._transition(
            campaign,
            CampaignStatus.LOCKED,
            {
                "final_bracket_id": final.bracket_id,
                "final_unit_price": final.unit_price,
            },
        )

    @staticmethod
    def _final_bracket(campaign: Campaign, brackets: List[DiscountBracket]) -> DiscountBracket:
        final = next((b for b in brackets if b.bracket_id == campaign.final_bracket_id), None)
        if final is None:
            raise BracketNotFoundError(campaign.final_bracket_id)
        return final

    async def _create_intents(
        self, campaign: Campaign, brackets: List[DiscountBracket]
    ) -> List[PaymentIntent]:
        final = self._final_bracket(campaign, brackets)
        return await self.payment_engine.create_payment_intents(campaign, final)

    async def _notify_locked(
        self,
        campaign: Campaign,
        brackets: List[DiscountBracket],
        intents: List[PaymentIntent],
    ) -> None:
        final = self._final_bracket(campaign, brackets)
        discount = bracket_evaluator.discount_percentage(brackets, final.unit_price)

        pledges = {
            p.pledge_id: p
            for p in await self.pledge_repository.list_pledges(
                campaign.campaign_id, statuses=[PledgeStatus.COMMITTED]
            )
        }
        for intent in intents:
            pledge = pledges.get(intent.pledge_id)
            await self._notify(
                CampaignLockedEvent(
                    campaign_id=campaign.campaign_id,
                    title=campaign.title,
                    buyer_id=intent.buyer_id,
                    pledge_id=intent.pledge_id,
                    quantity=pledge.quantity if pledge else 0,
                    unit_price=final.unit_price,
                    total_amount=intent.amount,
                    discount_percentage=discount,
                )
            )

    async def cancel(self, campaign_id: str, reason: str = "Cancelled by supplier") -> Campaign:
        """Manual abort from DRAFT or ACTIVE"""
        campaign = await self.get_campaign(campaign_id)
        self._require_source(campaign, MANUAL_CANCEL_SOURCES, CampaignStatus.CANCELLED)

        async with self.campaign_repository.unit_of_work():
            affected = await self.pledge_repository.list_pledges(
                campaign_id, statuses=[PledgeStatus.PENDING]
            )
            cancelled = await self._transition(campaign, CampaignStatus.CANCELLED)
            await self.pledge_repository.withdraw_pending_pledges(campaign_id)
        await self._notify(
            CampaignCancelledEvent(
                campaign_id=cancelled.campaign_id,
                title=cancelled.title,
                owner_id=cancelled.owner_id,
                reason=reason,
                affected_buyer_ids=[p.buyer_id for p in affected],
            )
        )
        return cancelled

    async def complete(self, campaign_id: str) -> Campaign:
        """
        LOCKED -> DONE once every committed pledge is paid and delivered.

        Raises ValidationError naming the first unmet condition.
        """
        campaign = await self.get_campaign(campaign_id)
        self._require_source(campaign, [CampaignStatus.LOCKED], CampaignStatus.DONE)

        committed = await self.pledge_repository.list_pledges(
            campaign_id, statuses=[PledgeStatus.COMMITTED]
        )
        for pledge in committed:
            intent = await self.payment_engine.get_intent_by_pledge(pledge.pledge_id)
            if intent is None:
                raise ValidationError(
                    f"Payment not collected for pledge {pledge.pledge_id}: no payment intent",
                    field="payments",
                )
            if intent.status not in SUCCESSFUL_PAYMENT_STATUSES:
                raise ValidationError(
                    f"Payment not collected for pledge {pledge.pledge_id}: "
                    f"intent {intent.intent_id} is {intent.status.value}",
                    field="payments",
                )

        for pledge in committed:
            fulfillment = await self.fulfillment_repository.get_fulfillment_by_pledge(
                pledge.pledge_id
            )
            if fulfillment is None or fulfillment.delivery_status != DeliveryStatus.DELIVERED:
                status = fulfillment.delivery_status.value if fulfillment else "missing"
                raise ValidationError(
                    f"Delivery not confirmed for pledge {pledge.pledge_id}: fulfillment is {status}",
                    field="fulfillments",
                )

        done = await self._transition(campaign, CampaignStatus.DONE)
        await self._notify(
            CampaignCompletedEvent(
                campaign_id=done.campaign_id,
                title=done.title,
                owner_id=done.owner_id,
            )
        )
        return done

    # ====================
    # Fulfillment
    # ====================

    async def record_delivery(
        self, campaign_id: str, pledge_id: str, delivery_status: DeliveryStatus
    ) -> Fulfillment:
        """Create or update the fulfillment record of a committed pledge"""
        campaign = await self.get_campaign(campaign_id)
        if campaign.status not in (CampaignStatus.LOCKED, CampaignStatus.DONE):
            raise ValidationError(
                f"Deliveries can only be recorded for locked campaigns (campaign is {campaign.status.value})",
                field="status",
            )

        pledge = await self.pledge_repository.get_pledge(pledge_id)
        if not pledge or pledge.campaign_id != campaign_id:
            raise PledgeNotFoundError(pledge_id)
        if pledge.status != PledgeStatus.COMMITTED:
            raise ValidationError(
                f"Pledge {pledge_id} is {pledge.status.value}; only committed pledges are fulfilled",
                field="pledge_id",
            )

        now = self.clock()
        fulfillment = await self.fulfillment_repository.get_fulfillment_by_pledge(pledge_id)
        if fulfillment is None:
            fulfillment = Fulfillment(campaign_id=campaign_id, pledge_id=pledge_id, created_at=now)
        fulfillment = fulfillment.model_copy(
            update={
                "delivery_status": delivery_status,
                "delivered_at": now if delivery_status == DeliveryStatus.DELIVERED else None,
                "updated_at": now,
            }
        )
        saved = await self.fulfillment_repository.save_fulfillment(fulfillment)
        logger.info(f"Fulfillment for pledge {pledge_id} set to {delivery_status.value}")
        return saved

    # ====================
    # Read path
    # ====================

    async def get_pricing(self, campaign_id: str) -> CampaignPricing:
        """Live price and progress from the display total"""
        campaign = await self.get_campaign(campaign_id)
        brackets = await self._load_brackets(campaign_id)
        display_total = await self.aggregator.display_total(campaign_id)
        lock_total = await self.aggregator.lock_eligibility_total(campaign_id)
        return CampaignPricing(
            campaign_id=campaign_id,
            status=campaign.status,
            display_total=display_total,
            lock_eligibility_total=lock_total,
            minimum_viable_quantity=bracket_evaluator.minimum_viable_quantity(brackets),
            evaluation=bracket_evaluator.evaluate(brackets, display_total),
        )
