"""
Component Test Fixtures for Group-Buy Service

In-memory implementations of every repository protocol plus scripted
collaborators (payment gateway, notification client, clock), wired into the
real service classes.
"""

import asyncio
import copy
import os
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Union

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../.."))

from microservices.group_buy_service.campaign_lifecycle import CampaignLifecycleService
from microservices.group_buy_service.events.publishers import NotificationDispatcher
from microservices.group_buy_service.models import ChargeResult, PaymentIntent
from microservices.group_buy_service.payment_retry_engine import PaymentRetryEngine
from microservices.group_buy_service.pledge_service import PledgeService
from tests.component.mocks import MockEventBus
from tests.contracts.group_buy.data_contract import (
    FIXED_NOW,
    STANDARD_TIERS,
    Campaign,
    CampaignStatus,
    DiscountBracket,
    Fulfillment,
    GroupBuyTestDataFactory,
    PaymentIntentStatus,
    Pledge,
    PledgeStatus,
)


# ====================
# Mock Repository
# ====================


class MockGroupBuyRepository:
    """In-memory repository implementing all group-buy repository protocols"""

    def __init__(self):
        self.campaigns: Dict[str, Campaign] = {}
        self.brackets: Dict[str, List[DiscountBracket]] = {}
        self.pledges: Dict[str, Pledge] = {}
        self.intents: Dict[str, PaymentIntent] = {}
        self.fulfillments: Dict[str, Fulfillment] = {}
        self._transition_errors: Dict[str, Exception] = {}
        self._intent_error: Optional[Exception] = None

    async def initialize(self):
        pass

    async def close(self):
        pass

    async def health_check(self) -> bool:
        return True

    def fail_transition(self, campaign_id: str, error: Exception):
        """Raise error on the next status transitions of campaign_id"""
        self._transition_errors[campaign_id] = error

    def fail_intent_creation(self, error: Optional[Exception]):
        """Raise error from create_intent until called again with None"""
        self._intent_error = error

    @asynccontextmanager
    async def unit_of_work(self):
        """Restore every table to its state at entry if the block raises"""
        tables = (self.campaigns, self.brackets, self.pledges, self.intents, self.fulfillments)
        snapshot = [copy.deepcopy(table) for table in tables]
        try:
            yield
        except BaseException:
            for table, saved in zip(tables, snapshot):
                table.clear()
                table.update(saved)
            raise

    # Campaigns

    async def save_campaign(self, campaign: Campaign) -> Campaign:
        self.campaigns[campaign.campaign_id] = campaign.model_copy(deep=True)
        return campaign.model_copy(deep=True)

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        campaign = self.campaigns.get(campaign_id)
        return campaign.model_copy(deep=True) if campaign else None

    async def list_campaigns(
        self,
        owner_id: Optional[str] = None,
        statuses: Optional[List[CampaignStatus]] = None,
        search: Optional[str] = None,
    ) -> List[Campaign]:
        matches = [
            c for c in self.campaigns.values()
            if (owner_id is None or c.owner_id == owner_id)
            and (not statuses or c.status in statuses)
            and (not search or search.casefold() in c.title.casefold())
        ]
        matches.sort(key=lambda c: c.created_at or datetime.min, reverse=True)
        return [c.model_copy(deep=True) for c in matches]

    async def delete_campaign(self, campaign_id: str, expected_status: CampaignStatus) -> bool:
        campaign = self.campaigns.get(campaign_id)
        if campaign is None or campaign.status != expected_status:
            return False
        del self.campaigns[campaign_id]
        self.brackets.pop(campaign_id, None)
        return True

    async def list_campaigns_ending_by(
        self, status: CampaignStatus, threshold: datetime
    ) -> List[Campaign]:
        return [
            c.model_copy(deep=True)
            for c in self.campaigns.values()
            if c.status == status and c.end_date <= threshold
        ]

    async def list_campaigns_grace_ended_before(
        self, status: CampaignStatus, threshold: datetime
    ) -> List[Campaign]:
        return [
            c.model_copy(deep=True)
            for c in self.campaigns.values()
            if c.status == status
            and c.grace_period_end_date is not None
            and c.grace_period_end_date < threshold
        ]

    async def transition_campaign_status(
        self,
        campaign_id: str,
        expected_status: CampaignStatus,
        new_status: CampaignStatus,
        updates: Optional[Dict[str, Any]] = None,
    ) -> Optional[Campaign]:
        if campaign_id in self._transition_errors:
            raise self._transition_errors[campaign_id]
        campaign = self.campaigns.get(campaign_id)
        if campaign is None or campaign.status != expected_status:
            return None
        fields = dict(updates or {})
        fields["status"] = new_status
        self.campaigns[campaign_id] = campaign.model_copy(update=fields)
        return self.campaigns[campaign_id].model_copy(deep=True)

    # Brackets

    async def save_brackets(
        self, campaign_id: str, brackets: List[DiscountBracket]
    ) -> List[DiscountBracket]:
        self.brackets[campaign_id] = [b.model_copy() for b in brackets]
        return await self.get_brackets(campaign_id)

    async def get_brackets(self, campaign_id: str) -> List[DiscountBracket]:
        stored = self.brackets.get(campaign_id, [])
        return [b.model_copy() for b in sorted(stored, key=lambda b: b.bracket_order)]

    async def get_bracket(self, bracket_id: str) -> Optional[DiscountBracket]:
        for brackets in self.brackets.values():
            for bracket in brackets:
                if bracket.bracket_id == bracket_id:
                    return bracket.model_copy()
        return None

    # Pledges

    async def save_pledge(self, pledge: Pledge) -> Pledge:
        self.pledges[pledge.pledge_id] = pledge.model_copy()
        return pledge.model_copy()

    async def get_pledge(self, pledge_id: str) -> Optional[Pledge]:
        pledge = self.pledges.get(pledge_id)
        return pledge.model_copy() if pledge else None

    async def get_pledge_by_buyer(self, campaign_id: str, buyer_id: str) -> Optional[Pledge]:
        matches = [
            p for p in self.pledges.values()
            if p.campaign_id == campaign_id and p.buyer_id == buyer_id
        ]
        if not matches:
            return None
        return max(matches, key=lambda p: p.created_at or datetime.min).model_copy()

    async def list_pledges(
        self, campaign_id: str, statuses: Optional[List[PledgeStatus]] = None
    ) -> List[Pledge]:
        return [
            p.model_copy()
            for p in self.pledges.values()
            if p.campaign_id == campaign_id and (statuses is None or p.status in statuses)
        ]

    async def update_pledge(self, pledge_id: str, updates: Dict[str, Any]) -> Optional[Pledge]:
        pledge = self.pledges.get(pledge_id)
        if pledge is None:
            return None
        self.pledges[pledge_id] = pledge.model_copy(update=updates)
        return self.pledges[pledge_id].model_copy()

    async def withdraw_pending_pledges(self, campaign_id: str) -> int:
        return self._bulk_pledge_update(
            campaign_id, {"status": PledgeStatus.WITHDRAWN}
        )

    async def commit_pending_pledges(self, campaign_id: str, committed_at: datetime) -> int:
        return self._bulk_pledge_update(
            campaign_id, {"status": PledgeStatus.COMMITTED, "committed_at": committed_at}
        )

    def _bulk_pledge_update(self, campaign_id: str, updates: Dict[str, Any]) -> int:
        count = 0
        for pledge_id, pledge in list(self.pledges.items()):
            if pledge.campaign_id == campaign_id and pledge.status == PledgeStatus.PENDING:
                self.pledges[pledge_id] = pledge.model_copy(update=updates)
                count += 1
        return count

    # Payment intents

    async def create_intent(self, intent: PaymentIntent) -> PaymentIntent:
        if self._intent_error is not None:
            raise self._intent_error
        existing = await self.get_intent_by_pledge(intent.pledge_id)
        if existing:
            return existing
        self.intents[intent.intent_id] = intent.model_copy()
        return intent.model_copy()

    async def get_intent(self, intent_id: str) -> Optional[PaymentIntent]:
        intent = self.intents.get(intent_id)
        return intent.model_copy() if intent else None

    async def get_intent_by_pledge(self, pledge_id: str) -> Optional[PaymentIntent]:
        for intent in self.intents.values():
            if intent.pledge_id == pledge_id:
                return intent.model_copy()
        return None

    async def list_intents(self, campaign_id: str) -> List[PaymentIntent]:
        return [i.model_copy() for i in self.intents.values() if i.campaign_id == campaign_id]

    async def list_retryable_intents(
        self, statuses: List[PaymentIntentStatus], max_retries: int
    ) -> List[PaymentIntent]:
        return [
            i.model_copy()
            for i in self.intents.values()
            if i.status in statuses and i.retry_count < max_retries
        ]

    async def claim_intent(
        self,
        intent_id: str,
        expected_status: PaymentIntentStatus,
        claimed_at: datetime,
        stale_before: datetime,
    ) -> Optional[PaymentIntent]:
        intent = self.intents.get(intent_id)
        if intent is None or intent.status != expected_status:
            return None
        if intent.processing_started_at is not None and intent.processing_started_at >= stale_before:
            return None
        self.intents[intent_id] = intent.model_copy(update={"processing_started_at": claimed_at})
        return self.intents[intent_id].model_copy()

    async def release_claim(self, intent_id: str) -> None:
        intent = self.intents.get(intent_id)
        if intent:
            self.intents[intent_id] = intent.model_copy(update={"processing_started_at": None})

    async def transition_intent_status(
        self,
        intent_id: str,
        expected_status: PaymentIntentStatus,
        new_status: PaymentIntentStatus,
        updates: Optional[Dict[str, Any]] = None,
    ) -> Optional[PaymentIntent]:
        intent = self.intents.get(intent_id)
        if intent is None or intent.status != expected_status:
            return None
        fields = dict(updates or {})
        fields["status"] = new_status
        fields["processing_started_at"] = None
        self.intents[intent_id] = intent.model_copy(update=fields)
        return self.intents[intent_id].model_copy()

    # Fulfillments

    async def save_fulfillment(self, fulfillment: Fulfillment) -> Fulfillment:
        self.fulfillments[fulfillment.pledge_id] = fulfillment.model_copy()
        return fulfillment.model_copy()

    async def get_fulfillment_by_pledge(self, pledge_id: str) -> Optional[Fulfillment]:
        fulfillment = self.fulfillments.get(pledge_id)
        return fulfillment.model_copy() if fulfillment else None

    async def list_fulfillments(self, campaign_id: str) -> List[Fulfillment]:
        return [f.model_copy() for f in self.fulfillments.values() if f.campaign_id == campaign_id]


# ====================
# Mock Collaborators
# ====================


class FixedClock:
    """Settable clock"""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class MockPaymentGateway:
    """Scripted payment gateway.

    Outcomes are consumed in order; once the script is empty every charge
    succeeds. An Exception outcome is raised as an unknown-outcome failure.
    """

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self._script: List[Union[ChargeResult, Exception]] = []
        self.entered = asyncio.Event()
        self.release: Optional[asyncio.Event] = None

    def will_decline(self, times: int = 1, reason: str = "card_declined"):
        for _ in range(times):
            self._script.append(ChargeResult(success=False, failure_reason=reason))

    def will_raise(self, error: Exception):
        self._script.append(error)

    def hold(self):
        """Block charges until release.set() is called"""
        self.release = asyncio.Event()

    @property
    def idempotency_keys(self) -> List[str]:
        return [call["idempotency_key"] for call in self.calls]

    async def charge(self, intent: PaymentIntent, idempotency_key: str) -> ChargeResult:
        self.calls.append({"intent_id": intent.intent_id, "idempotency_key": idempotency_key})
        self.entered.set()
        if self.release is not None:
            await self.release.wait()

        outcome = self._script.pop(0) if self._script else None
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is None:
            return ChargeResult(success=True, gateway_reference=f"ch_{len(self.calls)}")
        return outcome


class MockNotificationClient:
    """Records direct notifications"""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self._should_raise: Optional[Exception] = None

    def set_error(self, error: Exception):
        self._should_raise = error

    async def send_notification(self, user_id: str, subject: str, content: Dict[str, Any], **kwargs):
        if self._should_raise:
            raise self._should_raise
        self.sent.append({"user_id": user_id, "subject": subject, "content": content, **kwargs})
        return {"notification_id": f"ntf_{len(self.sent)}"}

    def sent_to(self, user_id: str) -> List[Dict[str, Any]]:
        return [n for n in self.sent if n["user_id"] == user_id]


class CampaignSeeder:
    """Puts campaigns, brackets and pledges straight into the mock repository"""

    def __init__(self, repository: MockGroupBuyRepository, clock: FixedClock):
        self.repository = repository
        self.clock = clock

    async def campaign(
        self,
        status: CampaignStatus = CampaignStatus.ACTIVE,
        tiers: Optional[Sequence] = STANDARD_TIERS,
        **overrides,
    ) -> Campaign:
        campaign = GroupBuyTestDataFactory.make_campaign(
            status=status, now=self.clock(), **overrides
        )
        await self.repository.save_campaign(campaign)
        if tiers:
            await self.repository.save_brackets(
                campaign.campaign_id,
                GroupBuyTestDataFactory.make_brackets(campaign.campaign_id, tiers),
            )
        return campaign

    async def pledge(
        self,
        campaign: Campaign,
        quantity: int,
        status: PledgeStatus = PledgeStatus.PENDING,
        buyer_id: Optional[str] = None,
    ) -> Pledge:
        pledge = GroupBuyTestDataFactory.make_pledge(
            campaign.campaign_id,
            quantity=quantity,
            status=status,
            buyer_id=buyer_id,
            now=self.clock(),
        )
        return await self.repository.save_pledge(pledge)


# ====================
# Fixtures
# ====================


@pytest.fixture
def factory():
    """Provide GroupBuyTestDataFactory"""
    return GroupBuyTestDataFactory


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def repository():
    """Fresh in-memory repository for each test"""
    return MockGroupBuyRepository()


@pytest.fixture
def event_bus():
    return MockEventBus()


@pytest.fixture
def gateway():
    return MockPaymentGateway()


@pytest.fixture
def notification_client():
    return MockNotificationClient()


@pytest.fixture
def dispatcher(event_bus, notification_client):
    return NotificationDispatcher(event_bus=event_bus, notification_client=notification_client)


@pytest.fixture
def payment_engine(repository, gateway, dispatcher, clock):
    return PaymentRetryEngine(
        intent_repository=repository,
        pledge_repository=repository,
        gateway=gateway,
        dispatcher=dispatcher,
        max_retries=3,
        processing_lease_seconds=300,
        clock=clock,
    )


@pytest.fixture
def lifecycle(repository, payment_engine, dispatcher, clock):
    return CampaignLifecycleService(
        campaign_repository=repository,
        bracket_repository=repository,
        pledge_repository=repository,
        fulfillment_repository=repository,
        payment_engine=payment_engine,
        dispatcher=dispatcher,
        clock=clock,
    )


@pytest.fixture
def pledge_service(repository, clock):
    return PledgeService(
        campaign_repository=repository,
        pledge_repository=repository,
        clock=clock,
    )


@pytest.fixture
def seed(repository, clock):
    return CampaignSeeder(repository, clock)
