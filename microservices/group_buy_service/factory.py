"""
Group-Buy Service Factory

Factory for creating group-buy service instances with proper dependency injection.
"""

import logging
from typing import Optional

from core.config import GroupBuyConfig, get_settings
from core.nats_client import NATSEventBus

from .campaign_lifecycle import CampaignLifecycleService
from .clients.notification_client import NotificationClient
from .clients.payment_gateway_client import PaymentGatewayClient
from .events.publishers import NotificationDispatcher
from .group_buy_repository import GroupBuyRepository
from .jobs import (
    CampaignEvaluationJob,
    GracePeriodTriggerJob,
    PaymentCollectionJob,
    PaymentRetryJob,
)
from .payment_retry_engine import PaymentRetryEngine
from .pledge_aggregator import PledgeAggregator
from .pledge_service import PledgeService
from .scheduler import JobScheduler

logger = logging.getLogger(__name__)


class GroupBuyServiceFactory:
    """Factory for creating group-buy service components"""

    def __init__(self, config: Optional[GroupBuyConfig] = None):
        self.config = config or get_settings()
        self._repository: Optional[GroupBuyRepository] = None
        self._nats_client: Optional[NATSEventBus] = None
        self._notification_client: Optional[NotificationClient] = None
        self._dispatcher: Optional[NotificationDispatcher] = None
        self._payment_engine: Optional[PaymentRetryEngine] = None
        self._lifecycle: Optional[CampaignLifecycleService] = None
        self._pledge_service: Optional[PledgeService] = None
        self._scheduler: Optional[JobScheduler] = None

    async def initialize(self) -> None:
        """Initialize all components"""
        logger.info("Initializing Group-Buy Service components...")

        # Initialize repository
        self._repository = GroupBuyRepository(self.config.infrastructure)
        await self._repository.initialize()

        # Initialize NATS client
        try:
            self._nats_client = NATSEventBus(
                service_name=self.config.service_name,
                config=self.config.infrastructure,
            )
            await self._nats_client.connect()
            logger.info("NATS client connected")
        except Exception as e:
            logger.warning(f"NATS client initialization failed: {e}")
            self._nats_client = None

        # Initialize service clients
        self._notification_client = NotificationClient(self.config.services)
        self._dispatcher = NotificationDispatcher(
            event_bus=self._nats_client,
            notification_client=self._notification_client,
        )

        # Initialize engines
        self._payment_engine = PaymentRetryEngine(
            intent_repository=self._repository,
            pledge_repository=self._repository,
            gateway=PaymentGatewayClient(self.config.services),
            dispatcher=self._dispatcher,
            max_retries=self.config.payments.max_retries,
            processing_lease_seconds=self.config.payments.processing_lease_seconds,
        )
        self._lifecycle = CampaignLifecycleService(
            campaign_repository=self._repository,
            bracket_repository=self._repository,
            pledge_repository=self._repository,
            fulfillment_repository=self._repository,
            payment_engine=self._payment_engine,
            dispatcher=self._dispatcher,
            aggregator=PledgeAggregator(self._repository),
            grace_period_extension_hours=self.config.campaigns.grace_period_extension_hours,
        )
        self._pledge_service = PledgeService(
            campaign_repository=self._repository,
            pledge_repository=self._repository,
        )

        self._scheduler = self._build_scheduler()

        logger.info("Group-Buy Service components initialized")

    def _build_scheduler(self) -> JobScheduler:
        intervals = self.config.scheduler
        scheduler = JobScheduler()
        scheduler.add_job(
            GracePeriodTriggerJob(
                self._repository,
                self._lifecycle,
                lead_time_hours=self.config.campaigns.grace_period_lead_time_hours,
            ),
            intervals.grace_period_trigger_interval_seconds,
        )
        scheduler.add_job(
            CampaignEvaluationJob(self._repository, self._lifecycle),
            intervals.campaign_evaluation_interval_seconds,
        )
        scheduler.add_job(
            PaymentRetryJob(self._repository, self._payment_engine),
            intervals.payment_retry_interval_seconds,
        )
        scheduler.add_job(
            PaymentCollectionJob(self._repository, self._payment_engine),
            intervals.payment_collection_interval_seconds,
        )
        return scheduler

    async def close(self) -> None:
        """Close all components"""
        logger.info("Closing Group-Buy Service components...")

        if self._scheduler and self._scheduler.is_running:
            await self._scheduler.stop()

        if self._nats_client:
            await self._nats_client.close()

        if self._repository:
            await self._repository.close()

        logger.info("Group-Buy Service components closed")

    @property
    def repository(self) -> GroupBuyRepository:
        """Get group-buy repository"""
        if not self._repository:
            raise RuntimeError("Factory not initialized. Call initialize() first.")
        return self._repository

    @property
    def lifecycle(self) -> CampaignLifecycleService:
        """Get campaign lifecycle service"""
        if not self._lifecycle:
            raise RuntimeError("Factory not initialized. Call initialize() first.")
        return self._lifecycle

    @property
    def pledge_service(self) -> PledgeService:
        """Get pledge service"""
        if not self._pledge_service:
            raise RuntimeError("Factory not initialized. Call initialize() first.")
        return self._pledge_service

    @property
    def payment_engine(self) -> PaymentRetryEngine:
        """Get payment retry engine"""
        if not self._payment_engine:
            raise RuntimeError("Factory not initialized. Call initialize() first.")
        return self._payment_engine

    @property
    def scheduler(self) -> JobScheduler:
        """Get job scheduler"""
        if not self._scheduler:
            raise RuntimeError("Factory not initialized. Call initialize() first.")
        return self._scheduler

    @property
    def nats_client(self) -> Optional[NATSEventBus]:
        """Get NATS client"""
        return self._nats_client


__all__ = [
    "GroupBuyServiceFactory",
]
