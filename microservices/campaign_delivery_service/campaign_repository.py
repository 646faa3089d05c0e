"""
Campaign Delivery Data Repository

Data access layer - PostgreSQL (Async)
"""

import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from core.config.infra_config import InfraConfig
from core.postgres_client import PostgresClientWrapper, get_postgres_client

from .models import (
    Campaign,
    CampaignSnapshot,
    CampaignStatus,
    Delivery,
    DeliveryFilter,
    DeliveryStatus,
    SnapshotMetadata,
    SnapshotStats,
)

logger = logging.getLogger(__name__)


class ExtendedJSONEncoder(json.JSONEncoder):
    """JSON encoder that handles Decimal and datetime types"""
    def default(self, obj):
        if isinstance(obj, Decimal):
            return float(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        return super().default(obj)


def json_dumps(obj):
    """JSON dumps with Decimal and datetime support"""
    return json.dumps(obj, cls=ExtendedJSONEncoder)


def _param(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (dict, list)):
        return json_dumps(value)
    return value


# Columns writable through the status update helpers
CAMPAIGN_CONTROL_FIELDS = {
    "paused_at", "paused_by", "pause_reason",
    "resumed_at", "resumed_by",
    "cancelled_at", "cancelled_by", "cancelled_reason",
    "completed_at",
}
DELIVERY_UPDATE_FIELDS = {"status", "last_error", "last_attempt_at", "sent_at"}


SCHEMA_STATEMENTS = [
    "CREATE SCHEMA IF NOT EXISTS {schema}",
    """
    CREATE TABLE IF NOT EXISTS {schema}.campaigns (
        campaign_id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        subject TEXT NOT NULL DEFAULT '',
        template_id TEXT,
        status TEXT NOT NULL DEFAULT 'draft',
        scheduled_at TIMESTAMPTZ,
        paused_at TIMESTAMPTZ,
        paused_by TEXT,
        pause_reason TEXT,
        resumed_at TIMESTAMPTZ,
        resumed_by TEXT,
        cancelled_at TIMESTAMPTZ,
        cancelled_by TEXT,
        cancelled_reason TEXT,
        completed_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS {schema}.deliveries (
        delivery_id TEXT PRIMARY KEY,
        campaign_id TEXT NOT NULL REFERENCES {schema}.campaigns (campaign_id) ON DELETE RESTRICT,
        recipient_id TEXT NOT NULL,
        recipient_email TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'queued',
        attempts INTEGER NOT NULL DEFAULT 0 CHECK (attempts >= 0),
        last_error TEXT,
        idempotency_key TEXT UNIQUE,
        last_attempt_at TIMESTAMPTZ,
        sent_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_deliveries_campaign_status ON {schema}.deliveries (campaign_id, status)",
    """
    CREATE TABLE IF NOT EXISTS {schema}.snapshots (
        campaign_id TEXT PRIMARY KEY REFERENCES {schema}.campaigns (campaign_id) ON DELETE RESTRICT,
        subject TEXT NOT NULL,
        html_content TEXT NOT NULL,
        text_content TEXT NOT NULL DEFAULT '',
        preheader TEXT NOT NULL DEFAULT '',
        template_id TEXT,
        template_version INTEGER NOT NULL DEFAULT 1,
        article_ids JSONB NOT NULL DEFAULT '[]',
        content_hash TEXT NOT NULL,
        generated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        metadata JSONB NOT NULL DEFAULT '{{}}'
    )
    """,
]


class CampaignDeliveryRepository:
    """Campaign delivery data repository - PostgreSQL (Async)"""

    def __init__(
        self,
        db: Optional[PostgresClientWrapper] = None,
        config: Optional[InfraConfig] = None,
        service_name: str = "campaign_delivery_service",
    ):
        self.config = config or InfraConfig.from_env()
        self.db = db
        self.service_name = service_name
        self.schema = self.config.postgres_schema

        # Table names
        self.campaigns_table = "campaigns"
        self.deliveries_table = "deliveries"
        self.snapshots_table = "snapshots"

    async def initialize(self):
        """Connect and make sure the tables exist"""
        if self.db is None:
            self.db = await get_postgres_client(self.service_name, self.config)
        for statement in SCHEMA_STATEMENTS:
            await self.db.execute(statement.format(schema=self.schema))
        logger.info(f"Campaign delivery repository initialized with PostgreSQL schema {self.schema}")

    async def close(self):
        """Close database connection"""
        if self.db is not None:
            await self.db.close()
        logger.info("Campaign delivery repository database connection closed")

    async def health_check(self) -> bool:
        """Check repository health"""
        try:
            return await self.db.health_check()
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            return False

    def transaction(self):
        return self.db.transaction()

    # ====================
    # Campaigns
    # ====================

    async def save_campaign(self, campaign: Campaign) -> Campaign:
        """Insert or replace a campaign"""
        columns = list(Campaign.model_fields.keys())
        placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
        updates = ", ".join(f"{c} = EXCLUDED.{c}" for c in columns if c not in ("campaign_id", "created_at"))
        query = f'''
            INSERT INTO {self.schema}.{self.campaigns_table} ({", ".join(columns)})
            VALUES ({placeholders})
            ON CONFLICT (campaign_id) DO UPDATE SET {updates}
            RETURNING *
        '''
        data = campaign.model_dump()
        row = await self.db.query_row(query, [_param(data[c]) for c in columns])
        return self._row_to_campaign(row)

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        query = f'''
            SELECT * FROM {self.schema}.{self.campaigns_table}
            WHERE campaign_id = $1
        '''
        row = await self.db.query_row(query, [campaign_id])
        return self._row_to_campaign(row) if row else None

    async def list_campaigns(
        self,
        statuses: Optional[List[CampaignStatus]] = None,
        scheduled_before: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[Campaign]:
        conditions = []
        params: List[Any] = []

        if statuses:
            params.append([s.value for s in statuses])
            conditions.append(f"status = ANY(${len(params)}::text[])")
        if scheduled_before is not None:
            params.append(scheduled_before)
            conditions.append(f"scheduled_at IS NOT NULL AND scheduled_at <= ${len(params)}")

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        params.append(limit)
        query = f'''
            SELECT * FROM {self.schema}.{self.campaigns_table}
            {where}
            ORDER BY scheduled_at ASC NULLS LAST, created_at ASC
            LIMIT ${len(params)}
        '''
        rows = await self.db.query(query, params)
        return [self._row_to_campaign(r) for r in rows]

    async def update_campaign_status(
        self,
        campaign_id: str,
        status: CampaignStatus,
        expected: Optional[Sequence[CampaignStatus]] = None,
        **fields: Any,
    ) -> Optional[Campaign]:
        """Compare-and-set status plus control metadata; None if nothing matched"""
        unknown = set(fields) - CAMPAIGN_CONTROL_FIELDS
        if unknown:
            raise ValueError(f"Unsupported campaign fields: {sorted(unknown)}")

        params: List[Any] = [_param(status), datetime.now(timezone.utc)]
        set_clauses = ["status = $1", "updated_at = $2"]
        for key, value in fields.items():
            params.append(_param(value))
            set_clauses.append(f"{key} = ${len(params)}")

        params.append(campaign_id)
        where = f"campaign_id = ${len(params)}"
        if expected is not None:
            params.append([s.value for s in expected])
            where += f" AND status = ANY(${len(params)}::text[])"

        query = f'''
            UPDATE {self.schema}.{self.campaigns_table}
            SET {", ".join(set_clauses)}
            WHERE {where}
            RETURNING *
        '''
        row = await self.db.query_row(query, params)
        return self._row_to_campaign(row) if row else None

    # ====================
    # Delivery Ledger
    # ====================

    def _filter_clause(self, delivery_filter: DeliveryFilter, params: List[Any], alias: str = "") -> str:
        prefix = f"{alias}." if alias else ""
        conditions = []

        if delivery_filter.campaign_id is not None:
            params.append(delivery_filter.campaign_id)
            conditions.append(f"{prefix}campaign_id = ${len(params)}")
        if delivery_filter.statuses:
            params.append([s.value for s in delivery_filter.statuses])
            conditions.append(f"{prefix}status = ANY(${len(params)}::text[])")
        if delivery_filter.attempts_below is not None:
            params.append(delivery_filter.attempts_below)
            conditions.append(f"{prefix}attempts < ${len(params)}")
        if delivery_filter.attempts_at_least is not None:
            params.append(delivery_filter.attempts_at_least)
            conditions.append(f"{prefix}attempts >= ${len(params)}")
        if delivery_filter.delivery_ids is not None:
            params.append(list(delivery_filter.delivery_ids))
            conditions.append(f"{prefix}delivery_id = ANY(${len(params)}::text[])")

        return " AND ".join(conditions) if conditions else "TRUE"

    async def get_delivery(self, delivery_id: str) -> Optional[Delivery]:
        query = f'''
            SELECT * FROM {self.schema}.{self.deliveries_table}
            WHERE delivery_id = $1
        '''
        row = await self.db.query_row(query, [delivery_id])
        return self._row_to_delivery(row) if row else None

    async def create_deliveries(self, deliveries: List[Delivery]) -> List[Delivery]:
        """Bulk insert; rows whose idempotency key exists are skipped"""
        if not deliveries:
            return []

        query = f'''
            INSERT INTO {self.schema}.{self.deliveries_table} (
                delivery_id, campaign_id, recipient_id, recipient_email,
                status, attempts, idempotency_key, created_at, updated_at
            )
            SELECT * FROM unnest(
                $1::text[], $2::text[], $3::text[], $4::text[],
                $5::text[], $6::int[], $7::text[], $8::timestamptz[], $9::timestamptz[]
            )
            ON CONFLICT (idempotency_key) DO NOTHING
            RETURNING *
        '''
        params = [
            [d.delivery_id for d in deliveries],
            [d.campaign_id for d in deliveries],
            [d.recipient_id for d in deliveries],
            [d.recipient_email for d in deliveries],
            [d.status.value for d in deliveries],
            [d.attempts for d in deliveries],
            [d.idempotency_key for d in deliveries],
            [d.created_at for d in deliveries],
            [d.updated_at for d in deliveries],
        ]
        rows = await self.db.query(query, params)
        return [self._row_to_delivery(r) for r in rows]

    async def list_deliveries(
        self,
        delivery_filter: DeliveryFilter,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Delivery], int]:
        params: List[Any] = []
        where = self._filter_clause(delivery_filter, params)

        count_query = f'''
            SELECT COUNT(*) FROM {self.schema}.{self.deliveries_table}
            WHERE {where}
        '''
        total = await self.db.query_value(count_query, list(params))

        params.extend([limit, offset])
        query = f'''
            SELECT * FROM {self.schema}.{self.deliveries_table}
            WHERE {where}
            ORDER BY updated_at DESC, delivery_id ASC
            LIMIT ${len(params) - 1} OFFSET ${len(params)}
        '''
        rows = await self.db.query(query, params)
        return [self._row_to_delivery(r) for r in rows], int(total or 0)

    async def count_deliveries(self, delivery_filter: DeliveryFilter) -> int:
        params: List[Any] = []
        where = self._filter_clause(delivery_filter, params)
        query = f'''
            SELECT COUNT(*) FROM {self.schema}.{self.deliveries_table}
            WHERE {where}
        '''
        return int(await self.db.query_value(query, params) or 0)

    async def count_deliveries_by_status(self, campaign_id: str) -> Dict[DeliveryStatus, int]:
        query = f'''
            SELECT status, COUNT(*) AS count
            FROM {self.schema}.{self.deliveries_table}
            WHERE campaign_id = $1
            GROUP BY status
        '''
        rows = await self.db.query(query, [campaign_id])
        return {DeliveryStatus(r["status"]): int(r["count"]) for r in rows}

    async def update_deliveries(
        self, delivery_filter: DeliveryFilter, updates: Dict[str, Any]
    ) -> List[Delivery]:
        """One UPDATE ... RETURNING over every row the filter matches"""
        unknown = set(updates) - DELIVERY_UPDATE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported delivery fields: {sorted(unknown)}")

        params: List[Any] = [datetime.now(timezone.utc)]
        set_clauses = ["updated_at = $1"]
        for key, value in updates.items():
            params.append(_param(value))
            set_clauses.append(f"{key} = ${len(params)}")

        where = self._filter_clause(delivery_filter, params)
        query = f'''
            UPDATE {self.schema}.{self.deliveries_table}
            SET {", ".join(set_clauses)}
            WHERE {where}
            RETURNING *
        '''
        rows = await self.db.query(query, params)
        return [self._row_to_delivery(r) for r in rows]

    async def claim_delivery(
        self,
        delivery_id: str,
        expected_attempts: int,
        runnable_statuses: Sequence[CampaignStatus],
    ) -> Optional[Delivery]:
        """
        QUEUED -> SENDING, attempts + 1.

        The campaign row is share-locked so a concurrent pause or cancel either
        commits first (and the claim matches nothing) or waits for the claim.
        """
        query = f'''
            UPDATE {self.schema}.{self.deliveries_table} d
            SET status = 'sending',
                attempts = d.attempts + 1,
                last_attempt_at = $3,
                updated_at = $3
            WHERE d.delivery_id = $1
              AND d.status = 'queued'
              AND d.attempts = $2
              AND EXISTS (
                  SELECT 1 FROM {self.schema}.{self.campaigns_table} c
                  WHERE c.campaign_id = d.campaign_id
                    AND c.status = ANY($4::text[])
                  FOR SHARE
              )
            RETURNING d.*
        '''
        row = await self.db.query_row(
            query,
            [delivery_id, expected_attempts, datetime.now(timezone.utc), [s.value for s in runnable_statuses]],
        )
        return self._row_to_delivery(row) if row else None

    async def update_delivery_status(
        self,
        delivery_id: str,
        status: DeliveryStatus,
        expected: Optional[Sequence[DeliveryStatus]] = None,
        **fields: Any,
    ) -> Optional[Delivery]:
        delivery_filter = DeliveryFilter(
            delivery_ids=[delivery_id],
            statuses=list(expected) if expected else [],
        )
        rows = await self.update_deliveries(delivery_filter, {"status": status, **fields})
        return rows[0] if rows else None

    # ====================
    # Snapshots
    # ====================

    async def get_snapshot(self, campaign_id: str) -> Optional[CampaignSnapshot]:
        query = f'''
            SELECT * FROM {self.schema}.{self.snapshots_table}
            WHERE campaign_id = $1
        '''
        row = await self.db.query_row(query, [campaign_id])
        return self._row_to_snapshot(row) if row else None

    async def upsert_snapshot(self, snapshot: CampaignSnapshot) -> CampaignSnapshot:
        """Insert at version 1, or replace content and bump the stored version"""
        query = f'''
            INSERT INTO {self.schema}.{self.snapshots_table} AS s (
                campaign_id, subject, html_content, text_content, preheader,
                template_id, template_version, article_ids, content_hash,
                generated_at, metadata
            ) VALUES ($1, $2, $3, $4, $5, $6, 1, $7::jsonb, $8, $9, $10::jsonb)
            ON CONFLICT (campaign_id) DO UPDATE SET
                subject = EXCLUDED.subject,
                html_content = EXCLUDED.html_content,
                text_content = EXCLUDED.text_content,
                preheader = EXCLUDED.preheader,
                template_id = EXCLUDED.template_id,
                template_version = s.template_version + 1,
                article_ids = EXCLUDED.article_ids,
                content_hash = EXCLUDED.content_hash,
                generated_at = EXCLUDED.generated_at,
                metadata = EXCLUDED.metadata
            RETURNING *
        '''
        params = [
            snapshot.campaign_id,
            snapshot.subject,
            snapshot.html_content,
            snapshot.text_content,
            snapshot.preheader,
            snapshot.template_id,
            json_dumps(snapshot.article_ids),
            snapshot.content_hash,
            snapshot.generated_at,
            json_dumps(snapshot.metadata.model_dump()),
        ]
        row = await self.db.query_row(query, params)
        return self._row_to_snapshot(row)

    async def delete_snapshot(self, campaign_id: str) -> bool:
        query = f'''
            DELETE FROM {self.schema}.{self.snapshots_table}
            WHERE campaign_id = $1
            RETURNING campaign_id
        '''
        rows = await self.db.query(query, [campaign_id])
        return len(rows) > 0

    async def get_snapshot_stats(self, since: datetime) -> SnapshotStats:
        total = await self.db.query_value(
            f"SELECT COUNT(*) FROM {self.schema}.{self.snapshots_table}"
        )
        recent = await self.db.query_value(
            f"SELECT COUNT(*) FROM {self.schema}.{self.snapshots_table} WHERE generated_at >= $1",
            [since],
        )
        rows = await self.db.query(
            f'''
            SELECT template_id, COUNT(*) AS count
            FROM {self.schema}.{self.snapshots_table}
            GROUP BY template_id
            ORDER BY count DESC
            '''
        )
        return SnapshotStats(
            total=int(total or 0),
            recent=int(recent or 0),
            by_template=[{"template_id": r["template_id"], "count": int(r["count"])} for r in rows],
        )

    # ====================
    # Row Mapping
    # ====================

    def _row_to_campaign(self, row: Dict[str, Any]) -> Campaign:
        return Campaign.model_validate(row)

    def _row_to_delivery(self, row: Dict[str, Any]) -> Delivery:
        return Delivery.model_validate(row)

    def _row_to_snapshot(self, row: Dict[str, Any]) -> CampaignSnapshot:
        article_ids = row.get("article_ids", [])
        if isinstance(article_ids, str):
            article_ids = json.loads(article_ids)

        metadata = row.get("metadata", {})
        if isinstance(metadata, str):
            metadata = json.loads(metadata)

        return CampaignSnapshot(
            campaign_id=row["campaign_id"],
            subject=row["subject"],
            html_content=row["html_content"],
            text_content=row.get("text_content") or "",
            preheader=row.get("preheader") or "",
            template_id=row.get("template_id"),
            template_version=row.get("template_version") or 1,
            article_ids=article_ids or [],
            content_hash=row["content_hash"],
            generated_at=row["generated_at"],
            metadata=SnapshotMetadata(**(metadata or {})),
        )


__all__ = ["CampaignDeliveryRepository", "SCHEMA_STATEMENTS"]
