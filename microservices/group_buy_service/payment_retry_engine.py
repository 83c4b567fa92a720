"""
Payment Retry Engine

Bounded-retry state machine for payment intents:

    PENDING -> SUCCEEDED
            -> FAILED_RETRY_1 -> FAILED_RETRY_2 -> FAILED_FINAL
    any non-successful state -> COLLECTED_VIA_MANUAL (manual override)

At most one collection attempt runs per intent at a time. Within a process a
per-intent asyncio.Lock serializes callers; across processes the repository
processing lease does. Each attempt carries an idempotency key derived from
the attempt number, so replaying an attempt whose outcome was unknown cannot
charge twice.
"""

import asyncio
import logging
from datetime import timedelta
from decimal import Decimal
from typing import Dict, List, Optional

from .events.models import PaymentFailedEvent, PaymentSucceededEvent
from .models import (
    RETRYABLE_PAYMENT_STATUSES,
    SUCCESSFUL_PAYMENT_STATUSES,
    Campaign,
    ChargeResult,
    DiscountBracket,
    PaymentIntent,
    PaymentIntentStatus,
    PledgeStatus,
    utc_now,
)
from .protocols import (
    Clock,
    InvalidStateTransitionError,
    NotificationDispatcherProtocol,
    PaymentGatewayProtocol,
    PaymentInProgressError,
    PaymentIntentNotFoundError,
    PaymentIntentRepositoryProtocol,
    PledgeRepositoryProtocol,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3


def next_failure_status(retry_count: int, max_retries: int) -> PaymentIntentStatus:
    """Status after a failed attempt that brought the count to retry_count"""
    if retry_count >= max_retries:
        return PaymentIntentStatus.FAILED_FINAL
    if retry_count == 1:
        return PaymentIntentStatus.FAILED_RETRY_1
    return PaymentIntentStatus.FAILED_RETRY_2


def is_retry_eligible(intent: PaymentIntent, max_retries: int) -> bool:
    return intent.status in RETRYABLE_PAYMENT_STATUSES and intent.retry_count < max_retries


def idempotency_key(intent: PaymentIntent) -> str:
    return f"{intent.intent_id}:attempt-{intent.retry_count + 1}"


class PaymentRetryEngine:
    """Drives payment intents toward a terminal outcome"""

    def __init__(
        self,
        intent_repository: PaymentIntentRepositoryProtocol,
        pledge_repository: PledgeRepositoryProtocol,
        gateway: PaymentGatewayProtocol,
        dispatcher: Optional[NotificationDispatcherProtocol] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        processing_lease_seconds: int = 300,
        clock: Optional[Clock] = None,
    ):
        self.intent_repository = intent_repository
        self.pledge_repository = pledge_repository
        self.gateway = gateway
        self.dispatcher = dispatcher
        self.max_retries = max_retries
        self.processing_lease = timedelta(seconds=processing_lease_seconds)
        self.clock = clock or utc_now
        self._locks: Dict[str, asyncio.Lock] = {}

    # ====================
    # Intent creation
    # ====================

    async def create_payment_intents(
        self, campaign: Campaign, final_bracket: DiscountBracket
    ) -> List[PaymentIntent]:
        """
        One PENDING intent per COMMITTED pledge at the final bracket price.

        Safe to call again: pledges that already have an intent keep it.
        """
        pledges = await self.pledge_repository.list_pledges(
            campaign.campaign_id, statuses=[PledgeStatus.COMMITTED]
        )
        now = self.clock()
        intents = []
        for pledge in pledges:
            amount = (final_bracket.unit_price * pledge.quantity).quantize(Decimal("0.01"))
            intent = PaymentIntent(
                campaign_id=campaign.campaign_id,
                pledge_id=pledge.pledge_id,
                buyer_id=pledge.buyer_id,
                amount=amount,
                created_at=now,
                updated_at=now,
            )
            intents.append(await self.intent_repository.create_intent(intent))

        logger.info(
            f"Created {len(intents)} payment intents for campaign {campaign.campaign_id} "
            f"at {final_bracket.unit_price} per unit"
        )
        return intents

    # ====================
    # Collection
    # ====================

    async def _get_intent(self, intent_id: str) -> PaymentIntent:
        intent = await self.intent_repository.get_intent(intent_id)
        if not intent:
            raise PaymentIntentNotFoundError(intent_id)
        return intent

    async def get_intent_by_pledge(self, pledge_id: str) -> Optional[PaymentIntent]:
        return await self.intent_repository.get_intent_by_pledge(pledge_id)

    async def retry_failed_payment(self, intent_id: str) -> PaymentIntent:
        """
        Run one collection attempt.

        Success moves the intent to SUCCEEDED. A declined charge increments
        retry_count and moves it to the next FAILED_RETRY_n, or FAILED_FINAL
        once max_retries is reached. Intents that are not retry-eligible raise
        InvalidStateTransitionError.
        """
        lock = self._locks.setdefault(intent_id, asyncio.Lock())
        if lock.locked():
            raise PaymentInProgressError(intent_id)

        async with lock:
            try:
                return await self._attempt_collection(intent_id)
            finally:
                self._locks.pop(intent_id, None)

    async def _attempt_collection(self, intent_id: str) -> PaymentIntent:
        intent = await self._get_intent(intent_id)
        if not is_retry_eligible(intent, self.max_retries):
            raise InvalidStateTransitionError(
                intent.status, PaymentIntentStatus.SUCCEEDED, entity="PaymentIntent"
            )

        now = self.clock()
        claimed = await self.intent_repository.claim_intent(
            intent_id,
            expected_status=intent.status,
            claimed_at=now,
            stale_before=now - self.processing_lease,
        )
        if claimed is None:
            raise PaymentInProgressError(intent_id)

        attempt = claimed.retry_count + 1
        try:
            result = await self.gateway.charge(claimed, idempotency_key(claimed))
        except Exception:
            # Outcome unknown: keep status and count so the replay reuses the key
            await self.intent_repository.release_claim(intent_id)
            logger.error(
                f"Payment attempt {attempt} for intent {intent_id} did not complete",
                exc_info=True,
            )
            raise

        if result.success:
            return await self._record_success(claimed, result)
        return await self._record_failure(claimed, result, attempt)

    async def _record_success(self, intent: PaymentIntent, result: ChargeResult) -> PaymentIntent:
        updated = await self.intent_repository.transition_intent_status(
            intent.intent_id,
            expected_status=intent.status,
            new_status=PaymentIntentStatus.SUCCEEDED,
            updates={
                "gateway_reference": result.gateway_reference,
                "last_failure_reason": None,
                "updated_at": self.clock(),
            },
        )
        if updated is None:
            await self._raise_lost_race(intent.intent_id, PaymentIntentStatus.SUCCEEDED)

        logger.info(f"Payment succeeded for intent {intent.intent_id} ({intent.amount})")
        await self._notify(
            PaymentSucceededEvent(
                intent_id=updated.intent_id,
                campaign_id=updated.campaign_id,
                buyer_id=updated.buyer_id,
                amount=updated.amount,
                gateway_reference=updated.gateway_reference,
            )
        )
        return updated

    async def _record_failure(
        self, intent: PaymentIntent, result: ChargeResult, attempt: int
    ) -> PaymentIntent:
        new_status = next_failure_status(attempt, self.max_retries)
        updated = await self.intent_repository.transition_intent_status(
            intent.intent_id,
            expected_status=intent.status,
            new_status=new_status,
            updates={
                "retry_count": attempt,
                "last_failure_reason": result.failure_reason,
                "updated_at": self.clock(),
            },
        )
        if updated is None:
            await self._raise_lost_race(intent.intent_id, new_status)

        final = new_status == PaymentIntentStatus.FAILED_FINAL
        log = logger.error if final else logger.warning
        log(
            f"Payment attempt {attempt}/{self.max_retries} failed for intent {intent.intent_id}: "
            f"{result.failure_reason} -> {new_status.value}"
        )
        await self._notify(
            PaymentFailedEvent(
                intent_id=updated.intent_id,
                campaign_id=updated.campaign_id,
                buyer_id=updated.buyer_id,
                amount=updated.amount,
                attempt=attempt,
                final=final,
                reason=result.failure_reason,
            )
        )
        return updated

    # ====================
    # Manual override
    # ====================

    async def mark_collected_manually(self, intent_id: str) -> PaymentIntent:
        """Record payment collected outside the gateway"""
        lock = self._locks.setdefault(intent_id, asyncio.Lock())
        if lock.locked():
            raise PaymentInProgressError(intent_id)

        async with lock:
            try:
                intent = await self._get_intent(intent_id)
                if intent.status in SUCCESSFUL_PAYMENT_STATUSES:
                    raise InvalidStateTransitionError(
                        intent.status,
                        PaymentIntentStatus.COLLECTED_VIA_MANUAL,
                        entity="PaymentIntent",
                    )

                now = self.clock()
                claimed = await self.intent_repository.claim_intent(
                    intent_id,
                    expected_status=intent.status,
                    claimed_at=now,
                    stale_before=now - self.processing_lease,
                )
                if claimed is None:
                    raise PaymentInProgressError(intent_id)

                updated = await self.intent_repository.transition_intent_status(
                    intent_id,
                    expected_status=claimed.status,
                    new_status=PaymentIntentStatus.COLLECTED_VIA_MANUAL,
                    updates={"updated_at": now},
                )
                if updated is None:
                    await self._raise_lost_race(intent_id, PaymentIntentStatus.COLLECTED_VIA_MANUAL)

                logger.info(f"Payment intent {intent_id} marked as collected manually")
                return updated
            finally:
                self._locks.pop(intent_id, None)

    # ====================
    # Helpers
    # ====================

    async def _raise_lost_race(self, intent_id: str, target: PaymentIntentStatus) -> None:
        current = await self._get_intent(intent_id)
        raise InvalidStateTransitionError(current.status, target, entity="PaymentIntent")

    async def _notify(self, event) -> None:
        if self.dispatcher:
            await self.dispatcher.send(event)
