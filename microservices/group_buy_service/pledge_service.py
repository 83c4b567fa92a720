"""
Pledge Service

Buyer-facing pledge operations. Pledges can be created while a campaign
accepts demand, changed or withdrawn only while it is ACTIVE, and confirmed
(committed) only during the grace period.
"""

import logging
from typing import Optional

from .models import (
    Campaign,
    CampaignStatus,
    Pledge,
    PledgeStatus,
    utc_now,
)
from .protocols import (
    CampaignNotFoundError,
    CampaignRepositoryProtocol,
    Clock,
    InvalidStateTransitionError,
    PledgeNotFoundError,
    PledgeRepositoryProtocol,
    ValidationError,
)

logger = logging.getLogger(__name__)

# Campaign states in which each pledge operation is allowed
PLEDGE_OPEN_STATES = frozenset({CampaignStatus.ACTIVE, CampaignStatus.GRACE_PERIOD})
PLEDGE_MUTABLE_STATES = frozenset({CampaignStatus.ACTIVE})
PLEDGE_COMMIT_STATES = frozenset({CampaignStatus.GRACE_PERIOD})


class PledgeService:
    """Pledge business logic"""

    def __init__(
        self,
        campaign_repository: CampaignRepositoryProtocol,
        pledge_repository: PledgeRepositoryProtocol,
        clock: Optional[Clock] = None,
    ):
        self.campaign_repository = campaign_repository
        self.pledge_repository = pledge_repository
        self.clock = clock or utc_now

    async def _get_campaign(self, campaign_id: str) -> Campaign:
        campaign = await self.campaign_repository.get_campaign(campaign_id)
        if not campaign:
            raise CampaignNotFoundError(campaign_id)
        return campaign

    async def _get_owned_pledge(self, pledge_id: str, buyer_id: str) -> Pledge:
        pledge = await self.pledge_repository.get_pledge(pledge_id)
        # A pledge owned by someone else is reported as missing
        if not pledge or pledge.buyer_id != buyer_id:
            raise PledgeNotFoundError(pledge_id)
        return pledge

    @staticmethod
    def _require_campaign_state(campaign: Campaign, allowed, action: str) -> None:
        if campaign.status not in allowed:
            raise ValidationError(
                f"Cannot {action} pledge while campaign {campaign.campaign_id} is {campaign.status.value}",
                field="status",
            )

    async def create_pledge(self, campaign_id: str, buyer_id: str, quantity: int) -> Pledge:
        """
        Create a PENDING pledge for a buyer.

        A previously withdrawn pledge for the same buyer is reactivated with the
        new quantity; any other existing pledge is a duplicate.
        """
        if quantity < 1:
            raise ValidationError("Pledge quantity must be at least 1", field="quantity")

        campaign = await self._get_campaign(campaign_id)
        self._require_campaign_state(campaign, PLEDGE_OPEN_STATES, "create")

        now = self.clock()
        existing = await self.pledge_repository.get_pledge_by_buyer(campaign_id, buyer_id)
        if existing is not None:
            if existing.status != PledgeStatus.WITHDRAWN:
                raise ValidationError(
                    f"Buyer {buyer_id} already has a pledge for campaign {campaign_id}",
                    field="buyer_id",
                )
            reactivated = await self.pledge_repository.update_pledge(
                existing.pledge_id,
                {
                    "quantity": quantity,
                    "status": PledgeStatus.PENDING,
                    "committed_at": None,
                    "updated_at": now,
                },
            )
            logger.info(f"Pledge reactivated: {existing.pledge_id} ({quantity} units)")
            return reactivated

        pledge = Pledge(
            campaign_id=campaign_id,
            buyer_id=buyer_id,
            quantity=quantity,
            status=PledgeStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        saved = await self.pledge_repository.save_pledge(pledge)
        logger.info(f"Pledge created: {saved.pledge_id} for campaign {campaign_id} ({quantity} units)")
        return saved

    async def update_pledge(self, pledge_id: str, buyer_id: str, quantity: int) -> Pledge:
        if quantity < 1:
            raise ValidationError("Pledge quantity must be at least 1", field="quantity")

        pledge = await self._get_owned_pledge(pledge_id, buyer_id)
        campaign = await self._get_campaign(pledge.campaign_id)
        self._require_campaign_state(campaign, PLEDGE_MUTABLE_STATES, "update")

        if pledge.status != PledgeStatus.PENDING:
            raise InvalidStateTransitionError(pledge.status, PledgeStatus.PENDING, entity="Pledge")

        updated = await self.pledge_repository.update_pledge(
            pledge_id, {"quantity": quantity, "updated_at": self.clock()}
        )
        logger.info(f"Pledge updated: {pledge_id} ({quantity} units)")
        return updated

    async def withdraw_pledge(self, pledge_id: str, buyer_id: str) -> Pledge:
        """Withdraw a pledge. Withdrawing twice is a no-op."""
        pledge = await self._get_owned_pledge(pledge_id, buyer_id)
        if pledge.status == PledgeStatus.WITHDRAWN:
            return pledge

        campaign = await self._get_campaign(pledge.campaign_id)
        self._require_campaign_state(campaign, PLEDGE_MUTABLE_STATES, "withdraw")

        updated = await self.pledge_repository.update_pledge(
            pledge_id, {"status": PledgeStatus.WITHDRAWN, "updated_at": self.clock()}
        )
        logger.info(f"Pledge withdrawn: {pledge_id}")
        return updated

    async def commit_pledge(self, pledge_id: str, buyer_id: str) -> Pledge:
        """Buyer confirmation during the grace period: PENDING -> COMMITTED"""
        pledge = await self._get_owned_pledge(pledge_id, buyer_id)
        campaign = await self._get_campaign(pledge.campaign_id)
        self._require_campaign_state(campaign, PLEDGE_COMMIT_STATES, "commit")

        if pledge.status != PledgeStatus.PENDING:
            raise InvalidStateTransitionError(pledge.status, PledgeStatus.COMMITTED, entity="Pledge")

        now = self.clock()
        updated = await self.pledge_repository.update_pledge(
            pledge_id,
            {"status": PledgeStatus.COMMITTED, "committed_at": now, "updated_at": now},
        )
        logger.info(f"Pledge committed: {pledge_id} for campaign {pledge.campaign_id}")
        return updated
