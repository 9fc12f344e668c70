"""
Ranking Service - Business Logic Layer

Leaderboards of vendors and stores by credited submission value.

Small store populations are ranked in memory; every other scope is ranked
by the database window query. Both paths follow tier_engine.ranking_sort_key.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from . import tier_engine
from .models import (
    BranchRanking,
    BranchRankingsResponse,
    BranchSummary,
    ManagerRankingResponse,
    RankingEntry,
    RankingPage,
    RankingScope,
    RankingScopeKind,
    StoreRankingEntry,
    StoreRankingPage,
    Store,
    UserRole,
    Vendor,
    VendorPositionResponse,
)
from .protocols import (
    InvalidPaginationError,
    RankingRepositoryProtocol,
    ScopeForbiddenError,
)

logger = logging.getLogger(__name__)


def _row_sort_key(row: Dict[str, Any]):
    return tier_engine.ranking_sort_key(
        Decimal(row["total_value"] or 0), row["registered_at"], row["vendor_id"]
    )


class RankingService:
    """
    Ranking Service - Core business logic

    - Paginated vendor rankings (global, team, store, own store, admin, manager)
    - Single vendor position without loading the population
    - Store leaderboard
    - Per-branch rankings for matrix store managers
    """

    def __init__(
        self,
        repository: RankingRepositoryProtocol,
        default_page_size: int = 20,
        max_page_size: int = 100,
        in_memory_threshold: int = 200,
    ):
        self.repository = repository
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size
        self.in_memory_threshold = in_memory_threshold

    def _validate_page(self, page: int, page_size: Optional[int]) -> Tuple[int, int]:
        page_size = self.default_page_size if page_size is None else page_size
        if page < 1:
            raise InvalidPaginationError(f"page must be >= 1, got {page}")
        if page_size < 1 or page_size > self.max_page_size:
            raise InvalidPaginationError(
                f"page_size must be between 1 and {self.max_page_size}, got {page_size}"
            )
        return page, page_size

    def _ranks_in_memory(self, scope: RankingScope, population: int) -> bool:
        return scope.kind is RankingScopeKind.STORE and population <= self.in_memory_threshold

    async def _rank_in_memory(self, scope: RankingScope) -> List[Dict[str, Any]]:
        rows = await self.repository.get_population_totals(scope)
        ranked = []
        for position, row in tier_engine.rank_rows(rows, key=_row_sort_key):
            ranked.append({**row, "position": position})
        return ranked

    async def _ranked_rows(
        self, scope: RankingScope, population: int, limit: int, offset: int
    ) -> List[Dict[str, Any]]:
        if self._ranks_in_memory(scope, population):
            ranked = await self._rank_in_memory(scope)
            return ranked[offset:offset + limit]
        return await self.repository.get_ranking_page(scope, limit, offset)

    @staticmethod
    def _to_entry(row: Dict[str, Any]) -> RankingEntry:
        return RankingEntry(
            position=row["position"],
            vendor_id=row["vendor_id"],
            name=row.get("name") or "",
            avatar_url=row.get("avatar_url"),
            level=row.get("level"),
            store_id=row.get("store_id"),
            store_name=row.get("store_name"),
            total_value=Decimal(row["total_value"] or 0),
            registered_at=row["registered_at"],
        )

    # ====================
    # Vendor Rankings
    # ====================

    async def get_ranking(
        self, scope: RankingScope, page: int = 1, page_size: Optional[int] = None
    ) -> RankingPage:
        """One page of the vendor ranking of a scope"""
        page, page_size = self._validate_page(page, page_size)
        population = await self.repository.count_population(scope)
        if population == 0:
            return RankingPage(page=page, page_size=page_size)

        limit, offset = tier_engine.page_bounds(page, page_size)
        rows = await self._ranked_rows(scope, population, limit, offset)
        return RankingPage(
            entries=[self._to_entry(row) for row in rows],
            page=page,
            page_size=page_size,
            total_records=population,
            total_pages=tier_engine.total_pages(population, page_size),
        )

    async def get_vendor_position(self, vendor_id: str, scope: RankingScope) -> VendorPositionResponse:
        """1-based position of a vendor within a scope, 0 when not ranked there"""
        vendor = await self.repository.get_user(vendor_id)
        if not vendor or not vendor.is_rankable:
            return VendorPositionResponse(vendor_id=vendor_id, scope=scope, position=0)

        population = await self.repository.count_population(scope)
        position = 0
        if population and self._ranks_in_memory(scope, population):
            for row in await self._rank_in_memory(scope):
                if row["vendor_id"] == vendor_id:
                    position = row["position"]
                    break
        elif population:
            position = await self.repository.get_vendor_position(vendor_id, scope)

        return VendorPositionResponse(vendor_id=vendor_id, scope=scope, position=position)

    async def _full_ranking(self, scope: RankingScope) -> Tuple[List[RankingEntry], int]:
        population = await self.repository.count_population(scope)
        if population == 0:
            return [], 0
        rows = await self._ranked_rows(scope, population, population, 0)
        return [self._to_entry(row) for row in rows], population

    # ====================
    # Store Ranking
    # ====================

    async def get_store_ranking(self, page: int = 1, page_size: Optional[int] = None) -> StoreRankingPage:
        """Stores ranked by the credited value of their eligible vendors"""
        page, page_size = self._validate_page(page, page_size)
        total = await self.repository.count_ranked_stores()
        if total == 0:
            return StoreRankingPage(page=page, page_size=page_size)

        limit, offset = tier_engine.page_bounds(page, page_size)
        rows = await self.repository.get_store_ranking_page(limit, offset)
        return StoreRankingPage(
            entries=[
                StoreRankingEntry(
                    position=row["position"],
                    store_id=row["store_id"],
                    name=row.get("name") or "",
                    city=row.get("city"),
                    state=row.get("state"),
                    vendor_count=row.get("vendor_count") or 0,
                    total_value=Decimal(row["total_value"] or 0),
                )
                for row in rows
            ],
            page=page,
            page_size=page_size,
            total_records=total,
            total_pages=tier_engine.total_pages(total, page_size),
        )

    # ====================
    # Vendor, Manager & Admin Scopes
    # ====================

    async def _load_manager(self, manager_id: str) -> Tuple[Vendor, Store]:
        manager = await self.repository.get_user(manager_id)
        if not manager or manager.role is not UserRole.MANAGER:
            raise ScopeForbiddenError(f"User {manager_id} is not a manager")
        if not manager.store_id:
            raise ScopeForbiddenError(f"Manager {manager_id} has no store")
        store = await self.repository.get_store(manager.store_id)
        if not store:
            raise ScopeForbiddenError(f"Store {manager.store_id} of manager {manager_id} not found")
        return manager, store

    async def resolve_vendor_scope(self, vendor_id: str) -> RankingScope:
        """A vendor sees the ranking of their own store"""
        vendor = await self.repository.get_user(vendor_id)
        if not vendor or vendor.role is not UserRole.VENDOR:
            raise ScopeForbiddenError(f"User {vendor_id} is not a vendor")
        if not vendor.store_id:
            raise ScopeForbiddenError(f"Vendor {vendor_id} has no store")
        return RankingScope.store(vendor.store_id)

    async def get_vendor_store_ranking(
        self, vendor_id: str, page: int = 1, page_size: Optional[int] = None
    ) -> RankingPage:
        page, page_size = self._validate_page(page, page_size)
        return await self.get_ranking(await self.resolve_vendor_scope(vendor_id), page, page_size)

    async def resolve_manager_scope(
        self, manager_id: str, branch_id: Optional[str] = None
    ) -> Tuple[Store, Optional[RankingScope], List[Store]]:
        """
        Ranking scope a manager may see.

        A matrix store manager sees the matrix and its branches, or one of
        them when branch_id is given. Other managers see their own store.

        Returns:
            (manager's store, scope or None when branch_id is outside the
            manager's reach, branches offered as filters)
        """
        manager, store = await self._load_manager(manager_id)
        branches = await self.repository.get_branch_stores(store.store_id) if store.is_matrix else []

        if branch_id is None:
            return store, RankingScope.store(store.store_id, include_branches=store.is_matrix), branches

        reachable = {store.store_id} | {b.store_id for b in branches}
        if branch_id not in reachable:
            logger.info(f"Manager {manager_id} filtered on store {branch_id} outside their reach")
            return store, None, branches
        return store, RankingScope.store(branch_id), branches

    async def get_manager_ranking(
        self,
        manager_id: str,
        branch_id: Optional[str] = None,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> ManagerRankingResponse:
        page, page_size = self._validate_page(page, page_size)
        store, scope, branches = await self.resolve_manager_scope(manager_id, branch_id)
        ranking = (
            await self.get_ranking(scope, page, page_size)
            if scope else RankingPage(page=page, page_size=page_size)
        )
        return ManagerRankingResponse(
            manager_id=manager_id,
            store_id=store.store_id,
            is_matrix=store.is_matrix,
            branches=[self._to_summary(b) for b in branches],
            ranking=ranking,
        )

    async def get_branch_rankings(self, manager_id: str) -> BranchRankingsResponse:
        """One full ranking per store of a matrix manager, matrix first"""
        _, store = await self._load_manager(manager_id)
        if not store.is_matrix:
            raise ScopeForbiddenError(f"Store {store.store_id} of manager {manager_id} is not a matrix store")

        rankings = []
        for member in [store] + await self.repository.get_branch_stores(store.store_id):
            entries, total = await self._full_ranking(RankingScope.store(member.store_id))
            rankings.append(BranchRanking(store=self._to_summary(member), entries=entries, total_records=total))
        return BranchRankingsResponse(manager_id=manager_id, rankings=rankings)

    @staticmethod
    def resolve_admin_scope(store_id: Optional[str] = None) -> RankingScope:
        """Global ranking, or one store with its branches when filtered"""
        if store_id:
            return RankingScope.store(store_id, include_branches=True)
        return RankingScope.global_scope()

    async def get_admin_ranking(
        self, store_id: Optional[str] = None, page: int = 1, page_size: Optional[int] = None
    ) -> RankingPage:
        return await self.get_ranking(self.resolve_admin_scope(store_id), page, page_size)

    @staticmethod
    def _to_summary(store: Store) -> BranchSummary:
        return BranchSummary(
            store_id=store.store_id,
            name=store.name,
            city=store.city,
            state=store.state,
            is_matrix=store.is_matrix,
        )
