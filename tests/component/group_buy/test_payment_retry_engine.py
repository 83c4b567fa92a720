"""
Component Tests for PaymentRetryEngine

Bounded retries, idempotency keys and the single-attempt-at-a-time rule.
"""

import asyncio
from datetime import timedelta
from decimal import Decimal

import httpx
import pytest

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../.."))

from microservices.group_buy_service.protocols import (
    InvalidStateTransitionError,
    PaymentInProgressError,
    PaymentIntentNotFoundError,
)
from tests.contracts.group_buy.data_contract import (
    CampaignStatus,
    PaymentIntentStatus,
    PledgeStatus,
)


async def _seed_intent(seed, repository, factory, status=PaymentIntentStatus.PENDING, retry_count=0):
    campaign = await seed.campaign(status=CampaignStatus.LOCKED)
    pledge = await seed.pledge(campaign, 10, status=PledgeStatus.COMMITTED, buyer_id="buyer_a")
    intent = factory.make_intent(pledge, status=status, retry_count=retry_count)
    return await repository.create_intent(intent)


class TestCreatePaymentIntents:
    """One intent per committed pledge at the final bracket price"""

    @pytest.mark.asyncio
    async def test_intents_for_committed_pledges_only(
        self, payment_engine, seed, repository
    ):
        campaign = await seed.campaign(status=CampaignStatus.LOCKED)
        await seed.pledge(campaign, 7, status=PledgeStatus.COMMITTED)
        await seed.pledge(campaign, 3, status=PledgeStatus.COMMITTED)
        await seed.pledge(campaign, 9, status=PledgeStatus.WITHDRAWN)
        final = (await repository.get_brackets(campaign.campaign_id))[1]

        intents = await payment_engine.create_payment_intents(campaign, final)

        assert sorted(i.amount for i in intents) == [Decimal("66.00"), Decimal("154.00")]
        assert all(i.status == PaymentIntentStatus.PENDING for i in intents)
        assert all(i.retry_count == 0 for i in intents)

    @pytest.mark.asyncio
    async def test_repeat_creation_keeps_existing_intents(
        self, payment_engine, seed, repository
    ):
        campaign = await seed.campaign(status=CampaignStatus.LOCKED)
        await seed.pledge(campaign, 7, status=PledgeStatus.COMMITTED)
        final = (await repository.get_brackets(campaign.campaign_id))[0]

        first = await payment_engine.create_payment_intents(campaign, final)
        second = await payment_engine.create_payment_intents(campaign, final)

        assert [i.intent_id for i in first] == [i.intent_id for i in second]
        assert len(await repository.list_intents(campaign.campaign_id)) == 1

    @pytest.mark.asyncio
    async def test_get_intent_by_pledge(self, payment_engine, seed, repository, factory):
        intent = await _seed_intent(seed, repository, factory)

        found = await payment_engine.get_intent_by_pledge(intent.pledge_id)

        assert found.intent_id == intent.intent_id
        assert await payment_engine.get_intent_by_pledge("plg_missing") is None


class TestPaymentCollection:
    """Single collection attempts"""

    @pytest.mark.asyncio
    async def test_successful_charge(self, payment_engine, seed, repository, factory, gateway, event_bus):
        intent = await _seed_intent(seed, repository, factory)

        result = await payment_engine.retry_failed_payment(intent.intent_id)

        assert result.status == PaymentIntentStatus.SUCCEEDED
        assert result.retry_count == 0
        assert result.gateway_reference == "ch_1"
        assert result.processing_started_at is None
        assert gateway.idempotency_keys == [f"{intent.intent_id}:attempt-1"]
        event_bus.assert_event_published(
            "group_buy.payment.succeeded", {"intent_id": intent.intent_id}
        )

    @pytest.mark.asyncio
    async def test_three_failures_reach_final(
        self, payment_engine, seed, repository, factory, gateway
    ):
        # Given: A PENDING intent and a gateway that declines every time
        intent = await _seed_intent(seed, repository, factory)
        gateway.will_decline(times=4)

        # When: Three attempts run
        statuses = []
        for _ in range(3):
            result = await payment_engine.retry_failed_payment(intent.intent_id)
            statuses.append((result.status, result.retry_count))

        # Then: PENDING -> FAILED_RETRY_1 -> FAILED_RETRY_2 -> FAILED_FINAL
        assert statuses == [
            (PaymentIntentStatus.FAILED_RETRY_1, 1),
            (PaymentIntentStatus.FAILED_RETRY_2, 2),
            (PaymentIntentStatus.FAILED_FINAL, 3),
        ]

        # And: A fourth attempt is refused without calling the gateway
        with pytest.raises(InvalidStateTransitionError) as exc_info:
            await payment_engine.retry_failed_payment(intent.intent_id)
        assert exc_info.value.current_state == PaymentIntentStatus.FAILED_FINAL
        assert len(gateway.calls) == 3

    @pytest.mark.asyncio
    async def test_each_attempt_gets_its_own_idempotency_key(
        self, payment_engine, seed, repository, factory, gateway
    ):
        intent = await _seed_intent(seed, repository, factory)
        gateway.will_decline(times=2)

        for _ in range(3):
            await payment_engine.retry_failed_payment(intent.intent_id)

        assert gateway.idempotency_keys == [
            f"{intent.intent_id}:attempt-1",
            f"{intent.intent_id}:attempt-2",
            f"{intent.intent_id}:attempt-3",
        ]
        final = await repository.get_intent(intent.intent_id)
        assert final.status == PaymentIntentStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_failure_notifications_flag_final_attempt(
        self, payment_engine, seed, repository, factory, gateway, notification_client
    ):
        intent = await _seed_intent(
            seed, repository, factory, status=PaymentIntentStatus.FAILED_RETRY_2, retry_count=2
        )
        gateway.will_decline(reason="insufficient_funds")

        await payment_engine.retry_failed_payment(intent.intent_id)

        [message] = notification_client.sent_to("buyer_a")
        assert message["content"]["final"] is True
        assert message["content"]["reason"] == "insufficient_funds"
        assert message["content"]["attempt"] == 3

    @pytest.mark.asyncio
    async def test_unknown_outcome_is_replayed_with_same_key(
        self, payment_engine, seed, repository, factory, gateway
    ):
        # Given: The first charge times out
        intent = await _seed_intent(seed, repository, factory)
        gateway.will_raise(httpx.ReadTimeout("gateway timed out"))

        # When: The attempt runs
        with pytest.raises(httpx.ReadTimeout):
            await payment_engine.retry_failed_payment(intent.intent_id)

        # Then: Nothing was counted and the lease is released
        stored = await repository.get_intent(intent.intent_id)
        assert stored.status == PaymentIntentStatus.PENDING
        assert stored.retry_count == 0
        assert stored.processing_started_at is None

        # And: The replay reuses the same idempotency key
        await payment_engine.retry_failed_payment(intent.intent_id)
        assert gateway.idempotency_keys == [
            f"{intent.intent_id}:attempt-1",
            f"{intent.intent_id}:attempt-1",
        ]

    @pytest.mark.asyncio
    async def test_missing_intent(self, payment_engine):
        with pytest.raises(PaymentIntentNotFoundError):
            await payment_engine.retry_failed_payment("pi_missing")


class TestSingleAttemptAtATime:
    """No two collection attempts overlap on one intent"""

    @pytest.mark.asyncio
    async def test_concurrent_retry_is_refused(
        self, payment_engine, seed, repository, factory, gateway
    ):
        # Given: An attempt blocked inside the gateway call
        intent = await _seed_intent(seed, repository, factory)
        gateway.hold()
        first = asyncio.create_task(payment_engine.retry_failed_payment(intent.intent_id))
        await gateway.entered.wait()

        # When: A second attempt starts
        with pytest.raises(PaymentInProgressError):
            await payment_engine.retry_failed_payment(intent.intent_id)

        # Then: The first attempt finishes alone
        gateway.release.set()
        result = await first
        assert result.status == PaymentIntentStatus.SUCCEEDED
        assert len(gateway.calls) == 1

    @pytest.mark.asyncio
    async def test_fresh_lease_held_elsewhere_is_refused(
        self, payment_engine, seed, repository, factory, gateway, clock
    ):
        intent = await _seed_intent(seed, repository, factory)
        repository.intents[intent.intent_id] = repository.intents[intent.intent_id].model_copy(
            update={"processing_started_at": clock() - timedelta(seconds=30)}
        )

        with pytest.raises(PaymentInProgressError):
            await payment_engine.retry_failed_payment(intent.intent_id)
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_stale_lease_is_taken_over(
        self, payment_engine, seed, repository, factory, gateway, clock
    ):
        intent = await _seed_intent(seed, repository, factory)
        repository.intents[intent.intent_id] = repository.intents[intent.intent_id].model_copy(
            update={"processing_started_at": clock() - timedelta(minutes=10)}
        )

        result = await payment_engine.retry_failed_payment(intent.intent_id)

        assert result.status == PaymentIntentStatus.SUCCEEDED


class TestManualCollection:
    """Manual override to COLLECTED_VIA_MANUAL"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,retry_count",
        [
            (PaymentIntentStatus.PENDING, 0),
            (PaymentIntentStatus.FAILED_RETRY_1, 1),
            (PaymentIntentStatus.FAILED_FINAL, 3),
        ],
    )
    async def test_mark_collected_manually(
        self, payment_engine, seed, repository, factory, status, retry_count
    ):
        intent = await _seed_intent(seed, repository, factory, status=status, retry_count=retry_count)

        result = await payment_engine.mark_collected_manually(intent.intent_id)

        assert result.status == PaymentIntentStatus.COLLECTED_VIA_MANUAL
        assert result.retry_count == retry_count

    @pytest.mark.asyncio
    async def test_manual_collection_of_paid_intent_rejected(
        self, payment_engine, seed, repository, factory
    ):
        intent = await _seed_intent(seed, repository, factory, status=PaymentIntentStatus.SUCCEEDED)

        with pytest.raises(InvalidStateTransitionError):
            await payment_engine.mark_collected_manually(intent.intent_id)

    @pytest.mark.asyncio
    async def test_retry_after_manual_collection_rejected(
        self, payment_engine, seed, repository, factory, gateway
    ):
        intent = await _seed_intent(
            seed, repository, factory, status=PaymentIntentStatus.FAILED_RETRY_1, retry_count=1
        )
        await payment_engine.mark_collected_manually(intent.intent_id)

        with pytest.raises(InvalidStateTransitionError):
            await payment_engine.retry_failed_payment(intent.intent_id)
        assert gateway.calls == []
