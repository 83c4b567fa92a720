"""
Pledge Aggregator

Two deliberately separate totals over a campaign's pledges:

- display total: PENDING + COMMITTED, the optimistic figure shown to buyers
- lock-eligibility total: COMMITTED only, used for lock/cancel decisions

Both are recomputed from pledge rows on every call.
"""

import logging
from typing import Iterable

from .models import Pledge, PledgeStatus
from .protocols import PledgeRepositoryProtocol

logger = logging.getLogger(__name__)

DISPLAY_STATUSES = (PledgeStatus.PENDING, PledgeStatus.COMMITTED)
LOCK_ELIGIBLE_STATUSES = (PledgeStatus.COMMITTED,)


def sum_display_quantity(pledges: Iterable[Pledge]) -> int:
    return sum(p.quantity for p in pledges if p.status in DISPLAY_STATUSES)


def sum_committed_quantity(pledges: Iterable[Pledge]) -> int:
    return sum(p.quantity for p in pledges if p.status in LOCK_ELIGIBLE_STATUSES)


class PledgeAggregator:
    """Computes pledged totals for a campaign"""

    def __init__(self, pledge_repository: PledgeRepositoryProtocol):
        self.pledge_repository = pledge_repository

    async def display_total(self, campaign_id: str) -> int:
        pledges = await self.pledge_repository.list_pledges(
            campaign_id, statuses=list(DISPLAY_STATUSES)
        )
        return sum_display_quantity(pledges)

    async def lock_eligibility_total(self, campaign_id: str) -> int:
        pledges = await self.pledge_repository.list_pledges(
            campaign_id, statuses=list(LOCK_ELIGIBLE_STATUSES)
        )
        total = sum_committed_quantity(pledges)
        logger.debug(f"Lock-eligibility total for {campaign_id}: {total}")
        return total
