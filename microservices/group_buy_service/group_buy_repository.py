"""
Group-Buy Service Data Repository

Data access layer - PostgreSQL (asyncpg)

Status changes use guarded updates (WHERE ... AND status = $expected) so a
lost race returns no row instead of overwriting a concurrent transition.
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import asyncpg

from core.config.infra_config import InfraConfig
from core.postgres_client import PostgresClientWrapper

from .models import (
    Campaign,
    CampaignStatus,
    DeliveryStatus,
    DiscountBracket,
    Fulfillment,
    PaymentIntent,
    PaymentIntentStatus,
    Pledge,
    PledgeStatus,
)
from .protocols import ValidationError

logger = logging.getLogger(__name__)


class ExtendedJSONEncoder(json.JSONEncoder):
    """JSON encoder that handles Decimal and datetime types"""
    def default(self, obj):
        if isinstance(obj, Decimal):
            return str(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        return super().default(obj)


def json_dumps(obj):
    """JSON dumps with Decimal and datetime support"""
    return json.dumps(obj, cls=ExtendedJSONEncoder)


# Columns that update helpers may write, per table
CAMPAIGN_UPDATABLE = frozenset({
    "title", "description", "product_details", "start_date", "end_date",
    "grace_period_end_date", "target_qty", "final_bracket_id", "final_unit_price",
    "updated_at",
})
PLEDGE_UPDATABLE = frozenset({"quantity", "status", "committed_at", "updated_at"})
INTENT_UPDATABLE = frozenset({
    "retry_count", "last_failure_reason", "gateway_reference", "updated_at",
})


def _set_clauses(
    updates: Dict[str, Any], allowed: frozenset, start: int
) -> Tuple[List[str], List[Any]]:
    clauses, params = [], []
    index = start
    for key, value in updates.items():
        if key not in allowed:
            raise ValueError(f"Column {key} cannot be updated")
        clauses.append(f"{key} = ${index}")
        if isinstance(value, dict):
            params.append(json_dumps(value))
        elif hasattr(value, "value"):  # Enum
            params.append(value.value)
        else:
            params.append(value)
        index += 1
    return clauses, params


class GroupBuyRepository:
    """Group-buy data repository - PostgreSQL (asyncpg)"""

    def __init__(
        self,
        config: Optional[InfraConfig] = None,
        db: Optional[PostgresClientWrapper] = None,
    ):
        config = config or InfraConfig.from_env()
        self.db = db or PostgresClientWrapper("group_buy_service", config)
        self.schema = config.postgres_schema

        # Table names
        self.campaigns_table = f"{self.schema}.campaigns"
        self.brackets_table = f"{self.schema}.discount_brackets"
        self.pledges_table = f"{self.schema}.pledges"
        self.intents_table = f"{self.schema}.payment_intents"
        self.fulfillments_table = f"{self.schema}.fulfillments"

    async def initialize(self):
        """Initialize database connection"""
        await self.db.connect()
        logger.info("Group-buy repository initialized with PostgreSQL")

    async def close(self):
        """Close database connection"""
        await self.db.close()
        logger.info("Group-buy repository database connection closed")

    async def health_check(self) -> bool:
        return await self.db.health_check()

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[None]:
        """Run every repository call made inside the block in one transaction"""
        async with self.db.transaction():
            yield

    # ====================
    # Campaigns
    # ====================

    async def save_campaign(self, campaign: Campaign) -> Campaign:
        query = f'''
            INSERT INTO {self.campaigns_table} (
                campaign_id, owner_id, title, description, product_details,
                start_date, end_date, grace_period_end_date, target_qty, status,
                final_bracket_id, final_unit_price, created_at, updated_at
            ) VALUES (
                $1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, COALESCE($13, NOW()), $14
            )
            ON CONFLICT (campaign_id) DO UPDATE SET
                title = EXCLUDED.title,
                description = EXCLUDED.description,
                product_details = EXCLUDED.product_details,
                start_date = EXCLUDED.start_date,
                end_date = EXCLUDED.end_date,
                target_qty = EXCLUDED.target_qty,
                updated_at = EXCLUDED.updated_at
            RETURNING *
        '''
        params = [
            campaign.campaign_id,
            campaign.owner_id,
            campaign.title,
            campaign.description,
            json_dumps(campaign.product_details),
            campaign.start_date,
            campaign.end_date,
            campaign.grace_period_end_date,
            campaign.target_qty,
            campaign.status.value,
            campaign.final_bracket_id,
            campaign.final_unit_price,
            campaign.created_at,
            campaign.updated_at,
        ]
        row = await self.db.query_row(query, params)
        return self._row_to_campaign(row)

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        row = await self.db.query_row(
            f"SELECT * FROM {self.campaigns_table} WHERE campaign_id = $1", [campaign_id]
        )
        return self._row_to_campaign(row) if row else None

    async def list_campaigns(
        self,
        owner_id: Optional[str] = None,
        statuses: Optional[List[CampaignStatus]] = None,
        search: Optional[str] = None,
    ) -> List[Campaign]:
        conditions, params = [], []
        if owner_id:
            params.append(owner_id)
            conditions.append(f"owner_id = ${len(params)}")
        if statuses:
            params.append([s.value for s in statuses])
            conditions.append(f"status = ANY(${len(params)}::text[])")
        if search:
            params.append(f"%{search}%")
            conditions.append(f"LOWER(title) LIKE LOWER(${len(params)})")

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        rows = await self.db.query(
            f"SELECT * FROM {self.campaigns_table} {where} ORDER BY created_at DESC",
            params,
        )
        return [self._row_to_campaign(r) for r in rows]

    async def delete_campaign(self, campaign_id: str, expected_status: CampaignStatus) -> bool:
        """Delete a campaign still in expected_status; brackets cascade"""
        deleted = await self.db.execute(
            f"DELETE FROM {self.campaigns_table} WHERE campaign_id = $1 AND status = $2",
            [campaign_id, expected_status.value],
        )
        return deleted == 1

    async def list_campaigns_ending_by(
        self, status: CampaignStatus, threshold: datetime
    ) -> List[Campaign]:
        rows = await self.db.query(
            f'''
                SELECT * FROM {self.campaigns_table}
                WHERE status = $1 AND end_date <= $2
                ORDER BY end_date
            ''',
            [status.value, threshold],
        )
        return [self._row_to_campaign(r) for r in rows]

    async def list_campaigns_grace_ended_before(
        self, status: CampaignStatus, threshold: datetime
    ) -> List[Campaign]:
        rows = await self.db.query(
            f'''
                SELECT * FROM {self.campaigns_table}
                WHERE status = $1 AND grace_period_end_date < $2
                ORDER BY grace_period_end_date
            ''',
            [status.value, threshold],
        )
        return [self._row_to_campaign(r) for r in rows]

    async def transition_campaign_status(
        self,
        campaign_id: str,
        expected_status: CampaignStatus,
        new_status: CampaignStatus,
        updates: Optional[Dict[str, Any]] = None,
    ) -> Optional[Campaign]:
        clauses, params = _set_clauses(updates or {}, CAMPAIGN_UPDATABLE, start=4)
        set_sql = ", ".join(["status = $1"] + clauses)
        query = f'''
            UPDATE {self.campaigns_table}
            SET {set_sql}
            WHERE campaign_id = $2 AND status = $3
            RETURNING *
        '''
        row = await self.db.query_row(
            query, [new_status.value, campaign_id, expected_status.value] + params
        )
        if row is None:
            logger.warning(
                f"Status guard rejected {campaign_id}: expected {expected_status.value} "
                f"for transition to {new_status.value}"
            )
            return None
        return self._row_to_campaign(row)

    # ====================
    # Brackets
    # ====================

    async def save_brackets(
        self, campaign_id: str, brackets: List[DiscountBracket]
    ) -> List[DiscountBracket]:
        async with self.db.transaction() as conn:
            await conn.execute(
                f"DELETE FROM {self.brackets_table} WHERE campaign_id = $1", campaign_id
            )
            if brackets:
                await conn.executemany(
                    f'''
                        INSERT INTO {self.brackets_table} (
                            bracket_id, campaign_id, min_quantity, max_quantity,
                            unit_price, bracket_order
                        ) VALUES ($1, $2, $3, $4, $5, $6)
                    ''',
                    [
                        (
                            b.bracket_id,
                            campaign_id,
                            b.min_quantity,
                            b.max_quantity,
                            b.unit_price,
                            b.bracket_order,
                        )
                        for b in brackets
                    ],
                )
        return await self.get_brackets(campaign_id)

    async def get_brackets(self, campaign_id: str) -> List[DiscountBracket]:
        rows = await self.db.query(
            f"SELECT * FROM {self.brackets_table} WHERE campaign_id = $1 ORDER BY bracket_order",
            [campaign_id],
        )
        return [self._row_to_bracket(r) for r in rows]

    async def get_bracket(self, bracket_id: str) -> Optional[DiscountBracket]:
        row = await self.db.query_row(
            f"SELECT * FROM {self.brackets_table} WHERE bracket_id = $1", [bracket_id]
        )
        return self._row_to_bracket(row) if row else None

    # ====================
    # Pledges
    # ====================

    async def save_pledge(self, pledge: Pledge) -> Pledge:
        query = f'''
            INSERT INTO {self.pledges_table} (
                pledge_id, campaign_id, buyer_id, quantity, status,
                committed_at, created_at, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, COALESCE($7, NOW()), $8)
            RETURNING *
        '''
        params = [
            pledge.pledge_id,
            pledge.campaign_id,
            pledge.buyer_id,
            pledge.quantity,
            pledge.status.value,
            pledge.committed_at,
            pledge.created_at,
            pledge.updated_at,
        ]
        try:
            row = await self.db.query_row(query, params)
        except asyncpg.UniqueViolationError:
            # uq_pledges_campaign_buyer: a concurrent create won the race
            logger.warning(
                f"Duplicate pledge rejected for buyer {pledge.buyer_id} on {pledge.campaign_id}"
            )
            raise ValidationError(
                f"Buyer {pledge.buyer_id} already has a pledge for campaign {pledge.campaign_id}",
                field="buyer_id",
            )
        return self._row_to_pledge(row)

    async def get_pledge(self, pledge_id: str) -> Optional[Pledge]:
        row = await self.db.query_row(
            f"SELECT * FROM {self.pledges_table} WHERE pledge_id = $1", [pledge_id]
        )
        return self._row_to_pledge(row) if row else None

    async def get_pledge_by_buyer(self, campaign_id: str, buyer_id: str) -> Optional[Pledge]:
        row = await self.db.query_row(
            f'''
                SELECT * FROM {self.pledges_table}
                WHERE campaign_id = $1 AND buyer_id = $2
                ORDER BY (status <> 'withdrawn') DESC, created_at DESC
                LIMIT 1
            ''',
            [campaign_id, buyer_id],
        )
        return self._row_to_pledge(row) if row else None

    async def list_pledges(
        self, campaign_id: str, statuses: Optional[List[PledgeStatus]] = None
    ) -> List[Pledge]:
        if statuses:
            rows = await self.db.query(
                f'''
                    SELECT * FROM {self.pledges_table}
                    WHERE campaign_id = $1 AND status = ANY($2::text[])
                    ORDER BY created_at
                ''',
                [campaign_id, [s.value for s in statuses]],
            )
        else:
            rows = await self.db.query(
                f"SELECT * FROM {self.pledges_table} WHERE campaign_id = $1 ORDER BY created_at",
                [campaign_id],
            )
        return [self._row_to_pledge(r) for r in rows]

    async def update_pledge(self, pledge_id: str, updates: Dict[str, Any]) -> Optional[Pledge]:
        clauses, params = _set_clauses(updates, PLEDGE_UPDATABLE, start=2)
        row = await self.db.query_row(
            f'''
                UPDATE {self.pledges_table}
                SET {", ".join(clauses)}
                WHERE pledge_id = $1
                RETURNING *
            ''',
            [pledge_id] + params,
        )
        return self._row_to_pledge(row) if row else None

    async def withdraw_pending_pledges(self, campaign_id: str) -> int:
        return await self.db.execute(
            f'''
                UPDATE {self.pledges_table}
                SET status = $1, updated_at = NOW()
                WHERE campaign_id = $2 AND status = $3
            ''',
            [PledgeStatus.WITHDRAWN.value, campaign_id, PledgeStatus.PENDING.value],
        )

    async def commit_pending_pledges(self, campaign_id: str, committed_at: datetime) -> int:
        return await self.db.execute(
            f'''
                UPDATE {self.pledges_table}
                SET status = $1, committed_at = $2, updated_at = $2
                WHERE campaign_id = $3 AND status = $4
            ''',
            [PledgeStatus.COMMITTED.value, committed_at, campaign_id, PledgeStatus.PENDING.value],
        )

    # ====================
    # Payment intents
    # ====================

    async def create_intent(self, intent: PaymentIntent) -> PaymentIntent:
        row = await self.db.query_row(
            f'''
                INSERT INTO {self.intents_table} (
                    intent_id, campaign_id, pledge_id, buyer_id, amount, status,
                    retry_count, created_at, updated_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, COALESCE($8, NOW()), $9)
                ON CONFLICT (pledge_id) DO NOTHING
                RETURNING *
            ''',
            [
                intent.intent_id,
                intent.campaign_id,
                intent.pledge_id,
                intent.buyer_id,
                intent.amount,
                intent.status.value,
                intent.retry_count,
                intent.created_at,
                intent.updated_at,
            ],
        )
        if row is None:
            return await self.get_intent_by_pledge(intent.pledge_id)
        return self._row_to_intent(row)

    async def get_intent(self, intent_id: str) -> Optional[PaymentIntent]:
        row = await self.db.query_row(
            f"SELECT * FROM {self.intents_table} WHERE intent_id = $1", [intent_id]
        )
        return self._row_to_intent(row) if row else None

    async def get_intent_by_pledge(self, pledge_id: str) -> Optional[PaymentIntent]:
        row = await self.db.query_row(
            f"SELECT * FROM {self.intents_table} WHERE pledge_id = $1", [pledge_id]
        )
        return self._row_to_intent(row) if row else None

    async def list_intents(self, campaign_id: str) -> List[PaymentIntent]:
        rows = await self.db.query(
            f"SELECT * FROM {self.intents_table} WHERE campaign_id = $1 ORDER BY created_at",
            [campaign_id],
        )
        return [self._row_to_intent(r) for r in rows]

    async def list_retryable_intents(
        self, statuses: List[PaymentIntentStatus], max_retries: int
    ) -> List[PaymentIntent]:
        rows = await self.db.query(
            f'''
                SELECT * FROM {self.intents_table}
                WHERE status = ANY($1::text[]) AND retry_count < $2
                ORDER BY updated_at
            ''',
            [[s.value for s in statuses], max_retries],
        )
        return [self._row_to_intent(r) for r in rows]

    async def claim_intent(
        self,
        intent_id: str,
        expected_status: PaymentIntentStatus,
        claimed_at: datetime,
        stale_before: datetime,
    ) -> Optional[PaymentIntent]:
        row = await self.db.query_row(
            f'''
                UPDATE {self.intents_table}
                SET processing_started_at = $1
                WHERE intent_id = $2 AND status = $3
                  AND (processing_started_at IS NULL OR processing_started_at < $4)
                RETURNING *
            ''',
            [claimed_at, intent_id, expected_status.value, stale_before],
        )
        return self._row_to_intent(row) if row else None

    async def release_claim(self, intent_id: str) -> None:
        await self.db.execute(
            f"UPDATE {self.intents_table} SET processing_started_at = NULL WHERE intent_id = $1",
            [intent_id],
        )

    async def transition_intent_status(
        self,
        intent_id: str,
        expected_status: PaymentIntentStatus,
        new_status: PaymentIntentStatus,
        updates: Optional[Dict[str, Any]] = None,
    ) -> Optional[PaymentIntent]:
        clauses, params = _set_clauses(updates or {}, INTENT_UPDATABLE, start=4)
        set_sql = ", ".join(["status = $1", "processing_started_at = NULL"] + clauses)
        row = await self.db.query_row(
            f'''
                UPDATE {self.intents_table}
                SET {set_sql}
                WHERE intent_id = $2 AND status = $3
                RETURNING *
            ''',
            [new_status.value, intent_id, expected_status.value] + params,
        )
        return self._row_to_intent(row) if row else None

    # ====================
    # Fulfillments
    # ====================

    async def save_fulfillment(self, fulfillment: Fulfillment) -> Fulfillment:
        row = await self.db.query_row(
            f'''
                INSERT INTO {self.fulfillments_table} (
                    fulfillment_id, campaign_id, pledge_id, delivery_status,
                    delivered_at, created_at, updated_at
                ) VALUES ($1, $2, $3, $4, $5, COALESCE($6, NOW()), $7)
                ON CONFLICT (pledge_id) DO UPDATE SET
                    delivery_status = EXCLUDED.delivery_status,
                    delivered_at = EXCLUDED.delivered_at,
                    updated_at = EXCLUDED.updated_at
                RETURNING *
            ''',
            [
                fulfillment.fulfillment_id,
                fulfillment.campaign_id,
                fulfillment.pledge_id,
                fulfillment.delivery_status.value,
                fulfillment.delivered_at,
                fulfillment.created_at,
                fulfillment.updated_at,
            ],
        )
        return self._row_to_fulfillment(row)

    async def get_fulfillment_by_pledge(self, pledge_id: str) -> Optional[Fulfillment]:
        row = await self.db.query_row(
            f"SELECT * FROM {self.fulfillments_table} WHERE pledge_id = $1", [pledge_id]
        )
        return self._row_to_fulfillment(row) if row else None

    async def list_fulfillments(self, campaign_id: str) -> List[Fulfillment]:
        rows = await self.db.query(
            f"SELECT * FROM {self.fulfillments_table} WHERE campaign_id = $1",
            [campaign_id],
        )
        return [self._row_to_fulfillment(r) for r in rows]

    # ====================
    # Row mapping
    # ====================

    def _row_to_campaign(self, row: Dict[str, Any]) -> Campaign:
        product_details = row.get("product_details") or {}
        if isinstance(product_details, str):
            product_details = json.loads(product_details)
        return Campaign(
            campaign_id=row["campaign_id"],
            owner_id=row["owner_id"],
            title=row["title"],
            description=row.get("description"),
            product_details=product_details,
            start_date=row["start_date"],
            end_date=row["end_date"],
            grace_period_end_date=row.get("grace_period_end_date"),
            target_qty=row.get("target_qty") or 0,
            status=CampaignStatus(row["status"]),
            final_bracket_id=row.get("final_bracket_id"),
            final_unit_price=row.get("final_unit_price"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def _row_to_bracket(self, row: Dict[str, Any]) -> DiscountBracket:
        return DiscountBracket(
            bracket_id=row["bracket_id"],
            campaign_id=row["campaign_id"],
            min_quantity=row["min_quantity"],
            max_quantity=row.get("max_quantity"),
            unit_price=row["unit_price"],
            bracket_order=row["bracket_order"],
        )

    def _row_to_pledge(self, row: Dict[str, Any]) -> Pledge:
        return Pledge(
            pledge_id=row["pledge_id"],
            campaign_id=row["campaign_id"],
            buyer_id=row["buyer_id"],
            quantity=row["quantity"],
            status=PledgeStatus(row["status"]),
            committed_at=row.get("committed_at"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def _row_to_intent(self, row: Dict[str, Any]) -> PaymentIntent:
        return PaymentIntent(
            intent_id=row["intent_id"],
            campaign_id=row["campaign_id"],
            pledge_id=row["pledge_id"],
            buyer_id=row["buyer_id"],
            amount=row["amount"],
            status=PaymentIntentStatus(row["status"]),
            retry_count=row.get("retry_count") or 0,
            processing_started_at=row.get("processing_started_at"),
            last_failure_reason=row.get("last_failure_reason"),
            gateway_reference=row.get("gateway_reference"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def _row_to_fulfillment(self, row: Dict[str, Any]) -> Fulfillment:
        return Fulfillment(
            fulfillment_id=row["fulfillment_id"],
            campaign_id=row["campaign_id"],
            pledge_id=row["pledge_id"],
            delivery_status=DeliveryStatus(row["delivery_status"]),
            delivered_at=row.get("delivered_at"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )
