"""
Fulfillment Service Data Repository

Data access layer - PostgreSQL (asyncpg)
Implements LedgerRepositoryProtocol from protocols.py
"""

import logging
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

import asyncpg

from core.config import FulfillmentConfig, get_settings
from core.postgres_client import PostgresClient, get_postgres_client

from .models import (
    Campaign,
    ObjectiveDefinition,
    SpecialEvent,
    Submission,
    SubmissionStatus,
    TierDefinition,
    Vendor,
)
from .protocols import DuplicateValidatedOrderError, SubmissionNotFoundError, TierAssignmentConflictError

logger = logging.getLogger(__name__)

# Errors raised when a transaction loses a race
RETRYABLE_ERRORS = (
    asyncpg.exceptions.SerializationError,
    asyncpg.exceptions.DeadlockDetectedError,
)


class FulfillmentRepository:
    """Submission ledger repository - PostgreSQL (Async)"""

    def __init__(self, config: Optional[FulfillmentConfig] = None, db: Optional[PostgresClient] = None):
        self.config = config or get_settings()
        self.db = db
        self.schema = self.config.db_schema
        self.campaigns_table = "campaigns"
        self.tiers_table = "tiers"
        self.objectives_table = "objectives"
        self.submissions_table = "submissions"
        self.events_table = "special_events"
        self.completed_table = "completed_tiers"
        self.users_table = "users"
        self.stores_table = "stores"

    async def initialize(self):
        """Initialize database connection and make sure the ledger tables exist"""
        if self.db is None:
            self.db = await get_postgres_client(
                self.config.service_name, config=self.config.infrastructure
            )
        await self._ensure_schema()
        logger.info("Fulfillment repository initialized with PostgreSQL")

    async def close(self):
        """Close database connection"""
        if self.db:
            await self.db.close()
        logger.info("Fulfillment repository database connection closed")

    async def _ensure_schema(self):
        """Ensure fulfillment schema and tables exist"""
        s = self.schema
        statements = [
            f"CREATE SCHEMA IF NOT EXISTS {s}",
            f'''
            CREATE TABLE IF NOT EXISTS {s}.{self.stores_table} (
                store_id VARCHAR(64) PRIMARY KEY,
                name VARCHAR(200) NOT NULL,
                city VARCHAR(120),
                state VARCHAR(2),
                is_active BOOLEAN NOT NULL DEFAULT TRUE,
                ranking_visible BOOLEAN NOT NULL DEFAULT TRUE,
                is_matrix BOOLEAN NOT NULL DEFAULT FALSE,
                parent_store_id VARCHAR(64) REFERENCES {s}.{self.stores_table}(store_id),
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            ''',
            f'''
            CREATE TABLE IF NOT EXISTS {s}.{self.users_table} (
                user_id VARCHAR(64) PRIMARY KEY,
                name VARCHAR(200) NOT NULL DEFAULT '',
                avatar_url TEXT,
                level VARCHAR(20),
                role VARCHAR(20) NOT NULL DEFAULT 'VENDOR',
                status VARCHAR(20) NOT NULL DEFAULT 'PENDING',
                store_id VARCHAR(64) REFERENCES {s}.{self.stores_table}(store_id),
                manager_id VARCHAR(64),
                points_balance NUMERIC(12, 2) NOT NULL DEFAULT 0,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            ''',
            f'''
            CREATE TABLE IF NOT EXISTS {s}.{self.campaigns_table} (
                campaign_id VARCHAR(64) PRIMARY KEY,
                title VARCHAR(200) NOT NULL DEFAULT '',
                status VARCHAR(20) NOT NULL DEFAULT 'ACTIVE',
                manager_commission_rate NUMERIC(5, 4) NOT NULL DEFAULT 0,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            ''',
            f'''
            CREATE TABLE IF NOT EXISTS {s}.{self.tiers_table} (
                tier_id VARCHAR(64) PRIMARY KEY,
                campaign_id VARCHAR(64) NOT NULL REFERENCES {s}.{self.campaigns_table}(campaign_id),
                sequence INTEGER NOT NULL CHECK (sequence > 0),
                title VARCHAR(200),
                UNIQUE (campaign_id, sequence)
            )
            ''',
            f'''
            CREATE TABLE IF NOT EXISTS {s}.{self.objectives_table} (
                objective_id VARCHAR(64) PRIMARY KEY,
                tier_id VARCHAR(64) NOT NULL REFERENCES {s}.{self.tiers_table}(tier_id),
                ordering_key INTEGER NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                required_quantity INTEGER NOT NULL,
                unit_kind VARCHAR(10) NOT NULL DEFAULT 'UNIT'
            )
            ''',
            f'''
            CREATE TABLE IF NOT EXISTS {s}.{self.submissions_table} (
                submission_id VARCHAR(64) PRIMARY KEY,
                vendor_id VARCHAR(64) NOT NULL REFERENCES {s}.{self.users_table}(user_id),
                campaign_id VARCHAR(64) NOT NULL REFERENCES {s}.{self.campaigns_table}(campaign_id),
                objective_id VARCHAR(64) NOT NULL REFERENCES {s}.{self.objectives_table}(objective_id),
                order_number VARCHAR(100) NOT NULL DEFAULT '',
                status VARCHAR(20) NOT NULL DEFAULT 'PENDING',
                resolved_tier INTEGER,
                credited_to_balance BOOLEAN NOT NULL DEFAULT FALSE,
                base_value NUMERIC(10, 2) NOT NULL DEFAULT 0,
                applied_multiplier NUMERIC(5, 2) NOT NULL DEFAULT 1,
                final_value NUMERIC(10, 2),
                rejection_reason TEXT,
                submitted_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                validated_at TIMESTAMPTZ,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            ''',
            f'''
            CREATE TABLE IF NOT EXISTS {s}.{self.events_table} (
                event_id VARCHAR(64) PRIMARY KEY,
                campaign_id VARCHAR(64) NOT NULL REFERENCES {s}.{self.campaigns_table}(campaign_id),
                name VARCHAR(200) NOT NULL DEFAULT '',
                multiplier NUMERIC(5, 2) NOT NULL DEFAULT 1,
                starts_at TIMESTAMPTZ NOT NULL,
                ends_at TIMESTAMPTZ NOT NULL,
                is_active BOOLEAN NOT NULL DEFAULT TRUE
            )
            ''',
            f'''
            CREATE TABLE IF NOT EXISTS {s}.{self.completed_table} (
                vendor_id VARCHAR(64) NOT NULL,
                campaign_id VARCHAR(64) NOT NULL,
                tier_sequence INTEGER NOT NULL,
                credited_value NUMERIC(12, 2) NOT NULL DEFAULT 0,
                completed_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                PRIMARY KEY (vendor_id, campaign_id, tier_sequence)
            )
            ''',
            f'''
            CREATE UNIQUE INDEX IF NOT EXISTS uq_submissions_validated_order
            ON {s}.{self.submissions_table} (order_number, campaign_id)
            WHERE status = 'VALIDATED'
            ''',
            f'''
            CREATE INDEX IF NOT EXISTS idx_submissions_vendor_campaign
            ON {s}.{self.submissions_table} (vendor_id, campaign_id, status)
            ''',
            f'''
            CREATE INDEX IF NOT EXISTS idx_submissions_ranking
            ON {s}.{self.submissions_table} (vendor_id)
            WHERE status = 'VALIDATED' AND resolved_tier IS NOT NULL AND credited_to_balance
            ''',
            f'''
            CREATE INDEX IF NOT EXISTS idx_users_ranking
            ON {s}.{self.users_table} (role, status, store_id, manager_id)
            ''',
        ]
        try:
            for statement in statements:
                await self.db.execute(statement)
            logger.info(f"Fulfillment schema '{s}' ensured")
        except Exception as e:
            logger.error(f"Error ensuring fulfillment schema: {e}", exc_info=True)
            raise

    @property
    def _submission_select(self) -> str:
        return f'''
            SELECT s.submission_id, s.vendor_id, s.campaign_id, s.objective_id,
                   s.order_number, s.status, s.resolved_tier, s.credited_to_balance,
                   s.base_value, s.applied_multiplier, s.final_value, s.rejection_reason,
                   s.submitted_at, s.validated_at, s.created_at,
                   o.ordering_key, t.sequence AS tier_sequence
            FROM {self.schema}.{self.submissions_table} s
            JOIN {self.schema}.{self.objectives_table} o ON o.objective_id = s.objective_id
            JOIN {self.schema}.{self.tiers_table} t ON t.tier_id = o.tier_id
        '''

    # ====================
    # Ledger Reader
    # ====================

    async def get_submission(self, submission_id: str) -> Optional[Submission]:
        """Get submission by ID"""
        try:
            query = f"{self._submission_select} WHERE s.submission_id = $1"
            row = await self.db.query_row(query, [submission_id])
            return Submission.model_validate(row) if row else None
        except Exception as e:
            logger.error(f"Error getting submission {submission_id}: {e}")
            raise

    async def get_key_submissions(
        self, vendor_id: str, campaign_id: str, ordering_key: int
    ) -> List[Submission]:
        """Get a vendor's submissions for one ordering key across every tier"""
        try:
            query = f'''
                {self._submission_select}
                WHERE s.vendor_id = $1 AND s.campaign_id = $2 AND o.ordering_key = $3
                ORDER BY s.submitted_at DESC, s.submission_id
            '''
            rows = await self.db.query(query, [vendor_id, campaign_id, ordering_key])
            return [Submission.model_validate(row) for row in rows]
        except Exception as e:
            logger.error(f"Error getting submissions for {vendor_id}/{campaign_id}/key {ordering_key}: {e}")
            raise

    async def get_campaign_submissions(self, vendor_id: str, campaign_id: str) -> List[Submission]:
        """Get all of a vendor's submissions in a campaign"""
        try:
            query = f'''
                {self._submission_select}
                WHERE s.vendor_id = $1 AND s.campaign_id = $2
                ORDER BY s.submitted_at DESC, s.submission_id
            '''
            rows = await self.db.query(query, [vendor_id, campaign_id])
            return [Submission.model_validate(row) for row in rows]
        except Exception as e:
            logger.error(f"Error getting submissions for {vendor_id}/{campaign_id}: {e}")
            raise

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        """Get campaign with its tiers and objective instances"""
        try:
            campaign_row = await self.db.query_row(
                f"SELECT * FROM {self.schema}.{self.campaigns_table} WHERE campaign_id = $1",
                [campaign_id],
            )
            if not campaign_row:
                return None

            tier_rows = await self.db.query(
                f'''
                    SELECT tier_id, sequence, title FROM {self.schema}.{self.tiers_table}
                    WHERE campaign_id = $1 ORDER BY sequence
                ''',
                [campaign_id],
            )
            objective_rows = await self.db.query(
                f'''
                    SELECT o.*, t.sequence AS tier_sequence
                    FROM {self.schema}.{self.objectives_table} o
                    JOIN {self.schema}.{self.tiers_table} t ON t.tier_id = o.tier_id
                    WHERE t.campaign_id = $1
                    ORDER BY t.sequence, o.ordering_key
                ''',
                [campaign_id],
            )

            objectives: Dict[str, List[ObjectiveDefinition]] = {}
            for row in objective_rows:
                objectives.setdefault(row["tier_id"], []).append(self._row_to_objective(row))

            return Campaign(
                campaign_id=campaign_row["campaign_id"],
                title=campaign_row["title"],
                status=campaign_row["status"],
                manager_commission_rate=campaign_row["manager_commission_rate"],
                tiers=[
                    TierDefinition(
                        tier_id=row["tier_id"],
                        sequence=row["sequence"],
                        title=row["title"],
                        objectives=objectives.get(row["tier_id"], []),
                    )
                    for row in tier_rows
                ],
            )
        except Exception as e:
            logger.error(f"Error getting campaign {campaign_id}: {e}")
            raise

    async def get_vendor(self, user_id: str) -> Optional[Vendor]:
        """Get user by ID"""
        try:
            row = await self.db.query_row(
                f"SELECT * FROM {self.schema}.{self.users_table} WHERE user_id = $1",
                [user_id],
            )
            return Vendor.model_validate(row) if row else None
        except Exception as e:
            logger.error(f"Error getting user {user_id}: {e}")
            raise

    async def get_special_events(self, campaign_id: str) -> List[SpecialEvent]:
        """Get special events of a campaign"""
        try:
            rows = await self.db.query(
                f'''
                    SELECT * FROM {self.schema}.{self.events_table}
                    WHERE campaign_id = $1 ORDER BY starts_at
                ''',
                [campaign_id],
            )
            return [SpecialEvent.model_validate(row) for row in rows]
        except Exception as e:
            logger.error(f"Error getting special events for campaign {campaign_id}: {e}")
            raise

    async def get_completed_tiers(self, vendor_id: str, campaign_id: str) -> List[int]:
        """Get tier sequences already settled for a vendor"""
        try:
            rows = await self.db.query(
                f'''
                    SELECT tier_sequence FROM {self.schema}.{self.completed_table}
                    WHERE vendor_id = $1 AND campaign_id = $2 ORDER BY tier_sequence
                ''',
                [vendor_id, campaign_id],
            )
            return [row["tier_sequence"] for row in rows]
        except Exception as e:
            logger.error(f"Error getting completed tiers for {vendor_id}/{campaign_id}: {e}")
            raise

    async def list_unassigned_validations(self, limit: int) -> List[Submission]:
        """Get validated submissions still waiting for a tier, oldest first"""
        try:
            query = f'''
                {self._submission_select}
                WHERE s.status = 'VALIDATED' AND s.resolved_tier IS NULL
                ORDER BY COALESCE(s.validated_at, s.submitted_at), s.submission_id
                LIMIT $1
            '''
            rows = await self.db.query(query, [limit])
            return [Submission.model_validate(row) for row in rows]
        except Exception as e:
            logger.error(f"Error listing unassigned validations: {e}")
            raise

    async def list_unsettled_vendor_campaigns(self, limit: int) -> List[Tuple[str, str]]:
        """Get vendor/campaign pairs with assigned but uncredited validations"""
        try:
            rows = await self.db.query(
                f'''
                    SELECT DISTINCT vendor_id, campaign_id
                    FROM {self.schema}.{self.submissions_table}
                    WHERE status = 'VALIDATED' AND resolved_tier IS NOT NULL
                      AND NOT credited_to_balance
                    ORDER BY vendor_id, campaign_id
                    LIMIT $1
                ''',
                [limit],
            )
            return [(row["vendor_id"], row["campaign_id"]) for row in rows]
        except Exception as e:
            logger.error(f"Error listing unsettled vendor campaigns: {e}")
            raise

    # ====================
    # Engine Writes
    # ====================

    async def update_submission_status(
        self,
        submission_id: str,
        status: SubmissionStatus,
        expected_status: SubmissionStatus,
        base_value: Optional[Decimal] = None,
        rejection_reason: Optional[str] = None,
    ) -> Optional[Submission]:
        """Write a validation outcome guarded by the expected current status"""
        try:
            query = f'''
                UPDATE {self.schema}.{self.submissions_table}
                SET status = $2,
                    base_value = COALESCE($3, base_value),
                    rejection_reason = $4,
                    validated_at = CASE WHEN $6::boolean THEN NOW() ELSE validated_at END,
                    updated_at = NOW()
                WHERE submission_id = $1 AND status = $5
                RETURNING submission_id
            '''
            row = await self.db.query_row(
                query,
                [
                    submission_id,
                    status.value,
                    base_value,
                    rejection_reason,
                    expected_status.value,
                    status is SubmissionStatus.VALIDATED,
                ],
            )
            if not row:
                return None
            return await self.get_submission(submission_id)
        except asyncpg.exceptions.UniqueViolationError as e:
            logger.warning(f"Submission {submission_id} repeats a validated order number: {e}")
            raise DuplicateValidatedOrderError(submission_id) from e
        except Exception as e:
            logger.error(f"Error updating status of submission {submission_id}: {e}")
            raise

    async def assign_resolved_tier(
        self,
        submission: Submission,
        resolve_tier: Callable[[int], int],
    ) -> Tuple[Optional[int], bool]:
        """
        Assign the permanent tier of a validated submission.

        Runs read-count/assign/write inside one READ COMMITTED transaction that
        holds an advisory lock on (vendor, campaign, ordering key). Every
        statement after the lock sees what the previous holder committed. The
        UPDATE only applies while resolved_tier is still NULL.
        """
        submission_id = submission.submission_id
        lock_key = f"{submission.vendor_id}:{submission.campaign_id}:{submission.ordering_key}"
        try:
            async with self.db.transaction(isolation="read_committed") as conn:
                await conn.execute("SELECT pg_advisory_xact_lock(hashtext($1))", lock_key)

                current = await conn.fetchrow(
                    f'''
                        SELECT status, resolved_tier FROM {self.schema}.{self.submissions_table}
                        WHERE submission_id = $1
                    ''',
                    submission_id,
                )
                if current is None:
                    raise SubmissionNotFoundError(f"Submission {submission_id} not found")
                if current["resolved_tier"] is not None:
                    return current["resolved_tier"], False
                if current["status"] != SubmissionStatus.VALIDATED.value:
                    return None, False

                assigned = await conn.fetchval(
                    f'''
                        SELECT COUNT(*)
                        FROM {self.schema}.{self.submissions_table} s
                        JOIN {self.schema}.{self.objectives_table} o ON o.objective_id = s.objective_id
                        WHERE s.vendor_id = $1 AND s.campaign_id = $2 AND o.ordering_key = $3
                          AND s.status = 'VALIDATED' AND s.resolved_tier IS NOT NULL
                    ''',
                    submission.vendor_id,
                    submission.campaign_id,
                    submission.ordering_key,
                )
                tier = resolve_tier(assigned)

                result = await conn.execute(
                    f'''
                        UPDATE {self.schema}.{self.submissions_table}
                        SET resolved_tier = $2, updated_at = NOW()
                        WHERE submission_id = $1 AND resolved_tier IS NULL AND status = 'VALIDATED'
                    ''',
                    submission_id,
                    tier,
                )
                if result != "UPDATE 1":
                    raise TierAssignmentConflictError(submission_id, "version check failed")

            logger.debug(f"Submission {submission_id} assigned to tier {tier} ({assigned} prior)")
            return tier, True
        except RETRYABLE_ERRORS as e:
            raise TierAssignmentConflictError(submission_id, str(e)) from e
        except (TierAssignmentConflictError, SubmissionNotFoundError):
            raise
        except Exception as e:
            logger.error(f"Error assigning tier to submission {submission_id}: {e}", exc_info=True)
            raise

    async def settle_tier(
        self,
        vendor_id: str,
        campaign_id: str,
        tier_sequence: int,
        credits: List[Dict[str, Any]],
        vendor_credit: Decimal,
        manager_id: Optional[str],
        manager_commission: Decimal,
    ) -> bool:
        """Credit a completed tier once, using the completed-tier row as the lock"""
        try:
            async with self.db.transaction() as conn:
                inserted = await conn.fetchval(
                    f'''
                        INSERT INTO {self.schema}.{self.completed_table}
                            (vendor_id, campaign_id, tier_sequence, credited_value, completed_at)
                        VALUES ($1, $2, $3, $4, NOW())
                        ON CONFLICT (vendor_id, campaign_id, tier_sequence) DO NOTHING
                        RETURNING tier_sequence
                    ''',
                    vendor_id,
                    campaign_id,
                    tier_sequence,
                    vendor_credit,
                )
                if inserted is None:
                    return False

                await conn.executemany(
                    f'''
                        UPDATE {self.schema}.{self.submissions_table}
                        SET credited_to_balance = TRUE,
                            applied_multiplier = $2,
                            final_value = $3,
                            updated_at = NOW()
                        WHERE submission_id = $1 AND resolved_tier = $4
                          AND status = 'VALIDATED' AND NOT credited_to_balance
                    ''',
                    [
                        (line["submission_id"], line["multiplier"], line["final_value"], tier_sequence)
                        for line in credits
                    ],
                )

                await conn.execute(
                    f'''
                        UPDATE {self.schema}.{self.users_table}
                        SET points_balance = points_balance + $2
                        WHERE user_id = $1
                    ''',
                    vendor_id,
                    vendor_credit,
                )

                if manager_id and manager_commission > 0:
                    await conn.execute(
                        f'''
                            UPDATE {self.schema}.{self.users_table}
                            SET points_balance = points_balance + $2
                            WHERE user_id = $1
                        ''',
                        manager_id,
                        manager_commission,
                    )

            return True
        except Exception as e:
            logger.error(
                f"Error settling tier {tier_sequence} for {vendor_id}/{campaign_id}: {e}",
                exc_info=True,
            )
            raise

    # ====================
    # Helpers
    # ====================

    def _row_to_objective(self, row: Dict[str, Any]) -> ObjectiveDefinition:
        """Build an objective, treating stored quantities below 1 as 1"""
        quantity = row["required_quantity"]
        if quantity is None or quantity < 1:
            logger.warning(
                f"Data integrity: objective {row['objective_id']} stores required_quantity={quantity}; using 1"
            )
            quantity = 1
        return ObjectiveDefinition(
            objective_id=row["objective_id"],
            tier_sequence=row["tier_sequence"],
            ordering_key=row["ordering_key"],
            description=row.get("description") or "",
            required_quantity=quantity,
            unit_kind=row.get("unit_kind") or "UNIT",
        )
