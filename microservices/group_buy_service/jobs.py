"""
Group-Buy Scheduled Jobs

Periodic drivers for time-based transitions. Each job selects eligible
entities with a deterministic predicate, runs the matching engine operation
for each one, and records per-entity failures without aborting the batch.
Failed entities are not retried within the run; the next tick picks them up.
"""

import logging
from datetime import timedelta
from typing import Any, Generic, List, Optional, TypeVar

from .campaign_lifecycle import CampaignLifecycleService
from .models import (
    Campaign,
    CampaignStatus,
    JobFailure,
    JobRunResult,
    PaymentIntent,
    PaymentIntentStatus,
    utc_now,
)
from .payment_retry_engine import PaymentRetryEngine
from .protocols import (
    CampaignRepositoryProtocol,
    Clock,
    GroupBuyServiceError,
    PaymentIntentRepositoryProtocol,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ScheduledJob(Generic[T]):
    """Select-then-process batch job with per-item failure isolation"""

    name = "scheduled_job"

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or utc_now

    async def select(self) -> List[T]:
        raise NotImplementedError

    async def process(self, entity: T) -> Any:
        raise NotImplementedError

    def entity_id(self, entity: T) -> str:
        raise NotImplementedError

    async def run_once(self) -> JobRunResult:
        result = JobRunResult(job_name=self.name, started_at=self.clock())
        logger.info(f"Starting {self.name}")

        entities = await self.select()
        result.selected = len(entities)
        logger.info(f"{self.name}: found {len(entities)} eligible entities")

        for entity in entities:
            entity_id = self.entity_id(entity)
            try:
                await self.process(entity)
                result.succeeded += 1
            except GroupBuyServiceError as e:
                logger.error(f"{self.name}: failed to process {entity_id}: {e}")
                result.failures.append(
                    JobFailure(entity_id=entity_id, error_type=type(e).__name__, message=str(e))
                )
            except Exception as e:
                logger.error(f"{self.name}: unexpected error processing {entity_id}", exc_info=True)
                result.failures.append(
                    JobFailure(entity_id=entity_id, error_type=type(e).__name__, message=str(e))
                )

        logger.info(
            f"{self.name} completed. Success: {result.succeeded}, Failures: {result.failed}"
        )
        return result


class GracePeriodTriggerJob(ScheduledJob[Campaign]):
    """ACTIVE campaigns with end_date <= now + lead time enter GRACE_PERIOD"""

    name = "grace_period_trigger"

    def __init__(
        self,
        campaign_repository: CampaignRepositoryProtocol,
        lifecycle: CampaignLifecycleService,
        lead_time_hours: int = 48,
        clock: Optional[Clock] = None,
    ):
        super().__init__(clock)
        self.campaign_repository = campaign_repository
        self.lifecycle = lifecycle
        self.lead_time = timedelta(hours=lead_time_hours)

    async def select(self) -> List[Campaign]:
        threshold = self.clock() + self.lead_time
        return await self.campaign_repository.list_campaigns_ending_by(
            CampaignStatus.ACTIVE, threshold
        )

    async def process(self, entity: Campaign) -> Campaign:
        return await self.lifecycle.start_grace_period(entity.campaign_id)

    def entity_id(self, entity: Campaign) -> str:
        return entity.campaign_id


class CampaignEvaluationJob(ScheduledJob[Campaign]):
    """GRACE_PERIOD campaigns whose grace period has ended are locked or cancelled"""

    name = "campaign_evaluation"

    def __init__(
        self,
        campaign_repository: CampaignRepositoryProtocol,
        lifecycle: CampaignLifecycleService,
        clock: Optional[Clock] = None,
    ):
        super().__init__(clock)
        self.campaign_repository = campaign_repository
        self.lifecycle = lifecycle

    async def select(self) -> List[Campaign]:
        return await self.campaign_repository.list_campaigns_grace_ended_before(
            CampaignStatus.GRACE_PERIOD, self.clock()
        )

    async def process(self, entity: Campaign) -> Campaign:
        return await self.lifecycle.evaluate(entity.campaign_id)

    def entity_id(self, entity: Campaign) -> str:
        return entity.campaign_id


class PaymentRetryJob(ScheduledJob[PaymentIntent]):
    """FAILED_RETRY_1/2 intents with retry_count < max_retries get another attempt"""

    name = "payment_retry"
    statuses = [PaymentIntentStatus.FAILED_RETRY_1, PaymentIntentStatus.FAILED_RETRY_2]

    def __init__(
        self,
        intent_repository: PaymentIntentRepositoryProtocol,
        engine: PaymentRetryEngine,
        clock: Optional[Clock] = None,
    ):
        super().__init__(clock)
        self.intent_repository = intent_repository
        self.engine = engine

    async def select(self) -> List[PaymentIntent]:
        return await self.intent_repository.list_retryable_intents(
            self.statuses, self.engine.max_retries
        )

    async def process(self, entity: PaymentIntent) -> PaymentIntent:
        return await self.engine.retry_failed_payment(entity.intent_id)

    def entity_id(self, entity: PaymentIntent) -> str:
        return entity.intent_id


class PaymentCollectionJob(PaymentRetryJob):
    """First collection attempt for PENDING intents created at lock"""

    name = "payment_collection"
    statuses = [PaymentIntentStatus.PENDING]
