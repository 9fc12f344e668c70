"""
Ranking Repository

Leaderboard queries computed in PostgreSQL with ROW_NUMBER() windows.
Implements RankingRepositoryProtocol from protocols.py

Ordering contract (same as tier_engine.ranking_sort_key):
    total_value DESC, registration time ASC, id ASC (byte order)
"""

import logging
from typing import Any, Dict, List, Optional

from core.config import FulfillmentConfig, get_settings
from core.postgres_client import PostgresClient, get_postgres_client

from .models import RankingScope, RankingScopeKind, Store, Vendor

logger = logging.getLogger(__name__)


class RankingRepository:
    """Ranking data repository - PostgreSQL (Async)"""

    def __init__(self, config: Optional[FulfillmentConfig] = None, db: Optional[PostgresClient] = None):
        self.config = config or get_settings()
        self.db = db
        self.schema = self.config.db_schema
        self.submissions_table = "submissions"
        self.users_table = "users"
        self.stores_table = "stores"

    async def initialize(self):
        """Initialize database connection"""
        if self.db is None:
            self.db = await get_postgres_client(
                self.config.service_name, config=self.config.infrastructure
            )
        logger.info("Ranking repository initialized with PostgreSQL")

    # ====================
    # Query Builders
    # ====================

    def _scope_clause(self, scope: RankingScope, params: List[Any]) -> str:
        """WHERE clause of the eligible population; appends its parameters"""
        clauses = ["u.role = 'VENDOR'", "u.status = 'ACTIVE'"]
        if scope.kind is RankingScopeKind.TEAM:
            params.append(scope.manager_id)
            clauses.append(f"u.manager_id = ${len(params)}")
        elif scope.kind is RankingScopeKind.STORE:
            params.append(scope.store_id)
            index = len(params)
            if scope.include_branches:
                clauses.append(
                    f'''(u.store_id = ${index} OR u.store_id IN (
                        SELECT store_id FROM {self.schema}.{self.stores_table}
                        WHERE parent_store_id = ${index}
                    ))'''
                )
            else:
                clauses.append(f"u.store_id = ${index}")
        return " AND ".join(clauses)

    @property
    def _totals_cte(self) -> str:
        return f'''
            totals AS (
                SELECT vendor_id, SUM(COALESCE(final_value, base_value)) AS total_value
                FROM {self.schema}.{self.submissions_table}
                WHERE status = 'VALIDATED' AND resolved_tier IS NOT NULL AND credited_to_balance
                GROUP BY vendor_id
            )
        '''

    def _ranked_query(self, scope: RankingScope, params: List[Any]) -> str:
        where = self._scope_clause(scope, params)
        return f'''
            WITH {self._totals_cte},
            ranked AS (
                SELECT u.user_id AS vendor_id, u.name, u.avatar_url, u.level, u.store_id,
                       st.name AS store_name, u.created_at AS registered_at,
                       COALESCE(t.total_value, 0) AS total_value,
                       ROW_NUMBER() OVER (
                           ORDER BY COALESCE(t.total_value, 0) DESC,
                                    u.created_at ASC,
                                    u.user_id COLLATE "C" ASC
                       ) AS position
                FROM {self.schema}.{self.users_table} u
                LEFT JOIN totals t ON t.vendor_id = u.user_id
                LEFT JOIN {self.schema}.{self.stores_table} st ON st.store_id = u.store_id
                WHERE {where}
            )
        '''

    # ====================
    # Vendor Rankings
    # ====================

    async def count_population(self, scope: RankingScope) -> int:
        """Count eligible vendors in a scope"""
        try:
            params: List[Any] = []
            where = self._scope_clause(scope, params)
            query = f"SELECT COUNT(*) FROM {self.schema}.{self.users_table} u WHERE {where}"
            return int(await self.db.query_value(query, params) or 0)
        except Exception as e:
            logger.error(f"Error counting ranking population for {scope.kind.value}: {e}")
            raise

    async def get_ranking_page(self, scope: RankingScope, limit: int, offset: int) -> List[Dict[str, Any]]:
        """Get one page of the ranked population"""
        try:
            params: List[Any] = []
            query = self._ranked_query(scope, params)
            params.extend([limit, offset])
            query += f"SELECT * FROM ranked ORDER BY position LIMIT ${len(params) - 1} OFFSET ${len(params)}"
            return await self.db.query(query, params)
        except Exception as e:
            logger.error(f"Error getting ranking page for {scope.kind.value}: {e}")
            raise

    async def get_vendor_position(self, vendor_id: str, scope: RankingScope) -> int:
        """Get a vendor's position without loading the population"""
        try:
            params: List[Any] = []
            query = self._ranked_query(scope, params)
            params.append(vendor_id)
            query += f"SELECT position FROM ranked WHERE vendor_id = ${len(params)}"
            position = await self.db.query_value(query, params)
            return int(position) if position else 0
        except Exception as e:
            logger.error(f"Error getting position of vendor {vendor_id}: {e}")
            raise

    async def get_population_totals(self, scope: RankingScope) -> List[Dict[str, Any]]:
        """Get eligible vendors with their totals, unordered"""
        try:
            params: List[Any] = []
            where = self._scope_clause(scope, params)
            query = f'''
                WITH {self._totals_cte}
                SELECT u.user_id AS vendor_id, u.name, u.avatar_url, u.level, u.store_id,
                       st.name AS store_name, u.created_at AS registered_at,
                       COALESCE(t.total_value, 0) AS total_value
                FROM {self.schema}.{self.users_table} u
                LEFT JOIN totals t ON t.vendor_id = u.user_id
                LEFT JOIN {self.schema}.{self.stores_table} st ON st.store_id = u.store_id
                WHERE {where}
            '''
            return await self.db.query(query, params)
        except Exception as e:
            logger.error(f"Error loading ranking population for {scope.kind.value}: {e}")
            raise

    # ====================
    # Store Ranking
    # ====================

    async def count_ranked_stores(self) -> int:
        """Count visible stores with at least one eligible vendor"""
        try:
            query = f'''
                SELECT COUNT(DISTINCT st.store_id)
                FROM {self.schema}.{self.stores_table} st
                JOIN {self.schema}.{self.users_table} u
                  ON u.store_id = st.store_id AND u.role = 'VENDOR' AND u.status = 'ACTIVE'
                WHERE st.is_active AND st.ranking_visible
            '''
            return int(await self.db.query_value(query) or 0)
        except Exception as e:
            logger.error(f"Error counting ranked stores: {e}")
            raise

    async def get_store_ranking_page(self, limit: int, offset: int) -> List[Dict[str, Any]]:
        """Get one page of stores ranked by their vendors' totals"""
        try:
            query = f'''
                WITH {self._totals_cte},
                store_totals AS (
                    SELECT st.store_id, st.name, st.city, st.state, st.created_at,
                           COUNT(u.user_id) AS vendor_count,
                           COALESCE(SUM(t.total_value), 0) AS total_value
                    FROM {self.schema}.{self.stores_table} st
                    JOIN {self.schema}.{self.users_table} u
                      ON u.store_id = st.store_id AND u.role = 'VENDOR' AND u.status = 'ACTIVE'
                    LEFT JOIN totals t ON t.vendor_id = u.user_id
                    WHERE st.is_active AND st.ranking_visible
                    GROUP BY st.store_id, st.name, st.city, st.state, st.created_at
                )
                SELECT *, ROW_NUMBER() OVER (
                    ORDER BY total_value DESC, created_at ASC, store_id COLLATE "C" ASC
                ) AS position
                FROM store_totals
                ORDER BY position
                LIMIT $1 OFFSET $2
            '''
            return await self.db.query(query, [limit, offset])
        except Exception as e:
            logger.error(f"Error getting store ranking page: {e}")
            raise

    # ====================
    # Scope Lookups
    # ====================

    async def get_user(self, user_id: str) -> Optional[Vendor]:
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

    async def get_store(self, store_id: str) -> Optional[Store]:
        """Get store by ID"""
        try:
            row = await self.db.query_row(
                f"SELECT * FROM {self.schema}.{self.stores_table} WHERE store_id = $1",
                [store_id],
            )
            return Store.model_validate(row) if row else None
        except Exception as e:
            logger.error(f"Error getting store {store_id}: {e}")
            raise

    async def get_branch_stores(self, store_id: str) -> List[Store]:
        """Get active branches of a matrix store ordered by name"""
        try:
            rows = await self.db.query(
                f'''
                    SELECT * FROM {self.schema}.{self.stores_table}
                    WHERE parent_store_id = $1 AND is_active
                    ORDER BY name, store_id
                ''',
                [store_id],
            )
            return [Store.model_validate(row) for row in rows]
        except Exception as e:
            logger.error(f"Error getting branches of store {store_id}: {e}")
            raise
