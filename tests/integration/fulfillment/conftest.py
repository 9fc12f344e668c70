"""
Fulfillment Integration Test Configuration

Real FulfillmentRepository and RankingRepository bound to a per-test
schema, plus a seeder that writes factory objects straight into the
ledger tables.
"""

import dataclasses
import uuid
from typing import Optional

import pytest
import pytest_asyncio

from core.config import FulfillmentConfig, InfraConfig
from core.postgres_client import PostgresClient
from microservices.fulfillment_service.fulfillment_repository import FulfillmentRepository
from microservices.fulfillment_service.fulfillment_service import FulfillmentService
from microservices.fulfillment_service.models import Campaign, SpecialEvent, Store, Submission, Vendor
from microservices.fulfillment_service.ranking_repository import RankingRepository
from microservices.fulfillment_service.ranking_service import RankingService


class LedgerSeeder:
    """Inserts test data into one schema"""

    def __init__(self, db: PostgresClient, schema: str):
        self.db = db
        self.schema = schema

    async def store(self, store: Store) -> Store:
        await self.db.execute(
            f'''
                INSERT INTO {self.schema}.stores
                    (store_id, name, city, state, is_active, ranking_visible, is_matrix, parent_store_id, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            ''',
            [store.store_id, store.name, store.city, store.state, store.is_active,
             store.ranking_visible, store.is_matrix, store.parent_store_id, store.created_at],
        )
        return store

    async def user(self, user: Vendor) -> Vendor:
        await self.db.execute(
            f'''
                INSERT INTO {self.schema}.users
                    (user_id, name, role, status, store_id, manager_id, points_balance, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            ''',
            [user.user_id, user.name, user.role.value, user.status.value, user.store_id,
             user.manager_id, user.points_balance, user.created_at],
        )
        return user

    async def campaign(self, campaign: Campaign) -> Campaign:
        await self.db.execute(
            f'''
                INSERT INTO {self.schema}.campaigns (campaign_id, title, status, manager_commission_rate)
                VALUES ($1, $2, $3, $4)
            ''',
            [campaign.campaign_id, campaign.title, campaign.status.value, campaign.manager_commission_rate],
        )
        for tier in campaign.tiers:
            await self.db.execute(
                f"INSERT INTO {self.schema}.tiers (tier_id, campaign_id, sequence, title) VALUES ($1, $2, $3, $4)",
                [tier.tier_id, campaign.campaign_id, tier.sequence, tier.title],
            )
            for objective in tier.objectives:
                await self.db.execute(
                    f'''
                        INSERT INTO {self.schema}.objectives
                            (objective_id, tier_id, ordering_key, description, required_quantity, unit_kind)
                        VALUES ($1, $2, $3, $4, $5, $6)
                    ''',
                    [objective.objective_id, tier.tier_id, objective.ordering_key, objective.description,
                     objective.required_quantity, objective.unit_kind.value],
                )
        return campaign

    async def special_event(self, event: SpecialEvent) -> SpecialEvent:
        await self.db.execute(
            f'''
                INSERT INTO {self.schema}.special_events
                    (event_id, campaign_id, name, multiplier, starts_at, ends_at, is_active)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
            ''',
            [event.event_id, event.campaign_id, event.name, event.multiplier,
             event.starts_at, event.ends_at, event.is_active],
        )
        return event

    async def submission(self, submission: Submission, final_value: Optional[str] = None) -> Submission:
        await self.db.execute(
            f'''
                INSERT INTO {self.schema}.submissions
                    (submission_id, vendor_id, campaign_id, objective_id, order_number, status,
                     resolved_tier, credited_to_balance, base_value, submitted_at, validated_at, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
            ''',
            [submission.submission_id, submission.vendor_id, submission.campaign_id,
             submission.objective_id, submission.order_number, submission.status.value,
             submission.resolved_tier, submission.credited_to_balance, submission.base_value,
             submission.submitted_at, submission.validated_at, submission.created_at],
        )
        return submission

    async def balance(self, user_id: str):
        return await self.db.query_value(
            f"SELECT points_balance FROM {self.schema}.users WHERE user_id = $1", [user_id]
        )


@pytest_asyncio.fixture
async def pg_client(test_config):
    """PostgreSQL client for the test database; skips when unreachable"""
    infra = InfraConfig(
        postgres_host=test_config.POSTGRES_HOST,
        postgres_port=test_config.POSTGRES_PORT,
        postgres_db=test_config.POSTGRES_DB,
        postgres_user=test_config.POSTGRES_USER,
        postgres_password=test_config.POSTGRES_PASSWORD,
        postgres_command_timeout=test_config.DB_TIMEOUT,
    )
    client = PostgresClient("fulfillment_integration", config=infra)
    health = await client.health_check()
    if not health["healthy"]:
        await client.close()
        pytest.skip(f"PostgreSQL not available: {health.get('error')}")
    yield client
    await client.close()


@pytest_asyncio.fixture
async def schema_config(pg_client):
    """Service config bound to a throwaway schema"""
    schema = f"fulfillment_it_{uuid.uuid4().hex[:10]}"
    config = dataclasses.replace(FulfillmentConfig.from_env(), db_schema=schema)
    yield config
    await pg_client.execute(f"DROP SCHEMA IF EXISTS {schema} CASCADE")


@pytest_asyncio.fixture
async def ledger_repository(pg_client, schema_config):
    repository = FulfillmentRepository(config=schema_config, db=pg_client)
    await repository.initialize()
    return repository


@pytest_asyncio.fixture
async def ranking_repository(pg_client, schema_config, ledger_repository):
    repository = RankingRepository(config=schema_config, db=pg_client)
    await repository.initialize()
    return repository


@pytest.fixture
def seeder(pg_client, schema_config, ledger_repository):
    return LedgerSeeder(pg_client, schema_config.db_schema)


@pytest.fixture
def ledger_service(ledger_repository):
    return FulfillmentService(ledger_repository)


@pytest.fixture
def db_ranking_service(ranking_repository):
    """Ranking service that always takes the windowed SQL path"""
    return RankingService(ranking_repository, in_memory_threshold=0)


@pytest.fixture
def memory_ranking_service(ranking_repository):
    """Ranking service that ranks every store scope in memory"""
    return RankingService(ranking_repository, in_memory_threshold=10_000)
