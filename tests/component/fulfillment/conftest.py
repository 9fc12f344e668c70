"""
Fulfillment Service Component Test Fixtures

Provides mocks for fulfillment and ranking service component testing:
- MockLedgerRepository: In-memory LedgerRepositoryProtocol
- MockRankingRepository: In-memory RankingRepositoryProtocol
- MockEventBus: Records published events
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import pytest

from microservices.fulfillment_service.models import (
    Campaign,
    RankingScope,
    RankingScopeKind,
    SpecialEvent,
    Store,
    Submission,
    SubmissionStatus,
    Vendor,
)
from microservices.fulfillment_service.protocols import DuplicateValidatedOrderError, TierAssignmentConflictError


# =============================================================================
# Mock Ledger Repository
# =============================================================================


class MockLedgerRepository:
    """
    Mock implementation of LedgerRepositoryProtocol for testing.

    Keeps campaigns, submissions, users and balances in memory.
    """

    def __init__(self):
        self.campaigns: Dict[str, Campaign] = {}
        self.submissions: Dict[str, Submission] = {}
        self.vendors: Dict[str, Vendor] = {}
        self.special_events: Dict[str, List[SpecialEvent]] = {}
        self.completed: Set[Tuple[str, str, int]] = set()
        self.balances: Dict[str, Decimal] = {}

        # Conflicts raised by the next assign_resolved_tier calls
        self.pending_conflicts = 0

        # Track method calls for verification
        self.method_calls = []

    def reset(self):
        """Reset all stored data"""
        self.campaigns.clear()
        self.submissions.clear()
        self.vendors.clear()
        self.special_events.clear()
        self.completed.clear()
        self.balances.clear()
        self.pending_conflicts = 0
        self.method_calls.clear()

    # Seeding helpers

    def add_campaign(self, campaign: Campaign):
        self.campaigns[campaign.campaign_id] = campaign

    def add_submission(self, submission: Submission):
        self.submissions[submission.submission_id] = submission

    def add_vendor(self, vendor: Vendor):
        self.vendors[vendor.user_id] = vendor

    def add_special_event(self, event: SpecialEvent):
        self.special_events.setdefault(event.campaign_id, []).append(event)

    def calls(self, name: str) -> List[Tuple]:
        return [call for call in self.method_calls if call[0] == name]

    # Readers

    async def get_submission(self, submission_id: str) -> Optional[Submission]:
        self.method_calls.append(("get_submission", submission_id))
        return self.submissions.get(submission_id)

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        self.method_calls.append(("get_campaign", campaign_id))
        return self.campaigns.get(campaign_id)

    async def get_key_submissions(self, vendor_id: str, campaign_id: str, ordering_key: int) -> List[Submission]:
        self.method_calls.append(("get_key_submissions", vendor_id, campaign_id, ordering_key))
        return [
            s for s in self.submissions.values()
            if s.vendor_id == vendor_id and s.campaign_id == campaign_id and s.ordering_key == ordering_key
        ]

    async def get_campaign_submissions(self, vendor_id: str, campaign_id: str) -> List[Submission]:
        self.method_calls.append(("get_campaign_submissions", vendor_id, campaign_id))
        return [
            s for s in self.submissions.values()
            if s.vendor_id == vendor_id and s.campaign_id == campaign_id
        ]

    async def get_vendor(self, user_id: str) -> Optional[Vendor]:
        self.method_calls.append(("get_vendor", user_id))
        return self.vendors.get(user_id)

    async def get_special_events(self, campaign_id: str) -> List[SpecialEvent]:
        self.method_calls.append(("get_special_events", campaign_id))
        return list(self.special_events.get(campaign_id, []))

    async def get_completed_tiers(self, vendor_id: str, campaign_id: str) -> List[int]:
        self.method_calls.append(("get_completed_tiers", vendor_id, campaign_id))
        return sorted(t for v, c, t in self.completed if v == vendor_id and c == campaign_id)

    async def list_unassigned_validations(self, limit: int) -> List[Submission]:
        self.method_calls.append(("list_unassigned_validations", limit))
        pending = [s for s in self.submissions.values() if s.is_validated and s.resolved_tier is None]
        pending.sort(key=lambda s: (s.validated_at or s.submitted_at, s.submission_id))
        return pending[:limit]

    async def list_unsettled_vendor_campaigns(self, limit: int) -> List[Tuple[str, str]]:
        self.method_calls.append(("list_unsettled_vendor_campaigns", limit))
        pairs = sorted({
            (s.vendor_id, s.campaign_id) for s in self.submissions.values()
            if s.is_validated and s.resolved_tier is not None and not s.credited_to_balance
        })
        return pairs[:limit]

    # Writers

    async def update_submission_status(
        self,
        submission_id: str,
        status: SubmissionStatus,
        expected_status: SubmissionStatus,
        base_value: Optional[Decimal] = None,
        rejection_reason: Optional[str] = None,
    ) -> Optional[Submission]:
        self.method_calls.append(("update_submission_status", submission_id, status, expected_status))
        current = self.submissions.get(submission_id)
        if current is None or current.status is not expected_status:
            return None
        if status is SubmissionStatus.VALIDATED and any(
            s.submission_id != submission_id
            and s.campaign_id == current.campaign_id
            and s.order_number == current.order_number
            and s.is_validated
            for s in self.submissions.values()
        ):
            raise DuplicateValidatedOrderError(submission_id)
        update: Dict[str, Any] = {"status": status, "rejection_reason": rejection_reason}
        if base_value is not None:
            update["base_value"] = base_value
        if status is SubmissionStatus.VALIDATED:
            update["validated_at"] = datetime.now(timezone.utc)
        updated = current.model_copy(update=update)
        self.submissions[submission_id] = updated
        return updated

    async def assign_resolved_tier(
        self, submission: Submission, resolve_tier: Callable[[int], int]
    ) -> Tuple[Optional[int], bool]:
        self.method_calls.append(("assign_resolved_tier", submission.submission_id))
        if self.pending_conflicts > 0:
            self.pending_conflicts -= 1
            raise TierAssignmentConflictError(submission.submission_id, "serialization failure")

        current = self.submissions[submission.submission_id]
        if not current.is_validated:
            return None, False
        if current.resolved_tier is not None:
            return current.resolved_tier, False

        assigned = sum(
            1 for s in self.submissions.values()
            if s.vendor_id == current.vendor_id
            and s.campaign_id == current.campaign_id
            and s.ordering_key == current.ordering_key
            and s.is_validated
            and s.resolved_tier is not None
        )
        tier = resolve_tier(assigned)
        self.submissions[current.submission_id] = current.model_copy(update={"resolved_tier": tier})
        return tier, True

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
        self.method_calls.append(("settle_tier", vendor_id, campaign_id, tier_sequence))
        key = (vendor_id, campaign_id, tier_sequence)
        if key in self.completed:
            return False
        self.completed.add(key)
        for line in credits:
            current = self.submissions[line["submission_id"]]
            self.submissions[current.submission_id] = current.model_copy(update={
                "credited_to_balance": True,
                "applied_multiplier": line["multiplier"],
                "final_value": line["final_value"],
            })
        self.balances[vendor_id] = self.balances.get(vendor_id, Decimal("0")) + vendor_credit
        if manager_id and manager_commission > 0:
            self.balances[manager_id] = self.balances.get(manager_id, Decimal("0")) + manager_commission
        return True


# =============================================================================
# Mock Ranking Repository
# =============================================================================


class MockRankingRepository:
    """
    Mock implementation of RankingRepositoryProtocol for testing.

    The "database" path orders rows with successive stable sorts, independent
    of tier_engine.ranking_sort_key, so both paths can be compared.
    """

    def __init__(self):
        self.users: Dict[str, Vendor] = {}
        self.stores: Dict[str, Store] = {}
        self.totals: Dict[str, Decimal] = {}
        self.method_calls = []

    def add_store(self, store: Store) -> Store:
        self.stores[store.store_id] = store
        return store

    def add_user(self, user: Vendor, total: Decimal = Decimal("0")) -> Vendor:
        self.users[user.user_id] = user
        self.totals[user.user_id] = total
        return user

    def calls(self, name: str) -> List[Tuple]:
        return [call for call in self.method_calls if call[0] == name]

    def _in_scope(self, user: Vendor, scope: RankingScope) -> bool:
        if not user.is_rankable:
            return False
        if scope.kind is RankingScopeKind.TEAM:
            return user.manager_id == scope.manager_id
        if scope.kind is RankingScopeKind.STORE:
            if user.store_id == scope.store_id:
                return True
            store = self.stores.get(user.store_id) if user.store_id else None
            return bool(scope.include_branches and store and store.parent_store_id == scope.store_id)
        return True

    def _row(self, user: Vendor) -> Dict[str, Any]:
        store = self.stores.get(user.store_id) if user.store_id else None
        return {
            "vendor_id": user.user_id,
            "name": user.name,
            "avatar_url": user.avatar_url,
            "level": user.level,
            "store_id": user.store_id,
            "store_name": store.name if store else None,
            "registered_at": user.created_at,
            "total_value": self.totals.get(user.user_id, Decimal("0")),
        }

    def _ordered(self, scope: RankingScope) -> List[Dict[str, Any]]:
        rows = [self._row(u) for u in self.users.values() if self._in_scope(u, scope)]
        rows.sort(key=lambda r: r["vendor_id"])
        rows.sort(key=lambda r: r["registered_at"])
        rows.sort(key=lambda r: r["total_value"], reverse=True)
        return [{**row, "position": i} for i, row in enumerate(rows, start=1)]

    async def count_population(self, scope: RankingScope) -> int:
        self.method_calls.append(("count_population", scope))
        return sum(1 for u in self.users.values() if self._in_scope(u, scope))

    async def get_ranking_page(self, scope: RankingScope, limit: int, offset: int) -> List[Dict[str, Any]]:
        self.method_calls.append(("get_ranking_page", scope, limit, offset))
        return self._ordered(scope)[offset:offset + limit]

    async def get_vendor_position(self, vendor_id: str, scope: RankingScope) -> int:
        self.method_calls.append(("get_vendor_position", vendor_id, scope))
        for row in self._ordered(scope):
            if row["vendor_id"] == vendor_id:
                return row["position"]
        return 0

    async def get_population_totals(self, scope: RankingScope) -> List[Dict[str, Any]]:
        self.method_calls.append(("get_population_totals", scope))
        rows = [self._row(u) for u in self.users.values() if self._in_scope(u, scope)]
        return list(reversed(rows))

    def _store_rows(self) -> List[Dict[str, Any]]:
        rows = []
        for store in self.stores.values():
            if not (store.is_active and store.ranking_visible):
                continue
            members = [u for u in self.users.values() if u.is_rankable and u.store_id == store.store_id]
            if not members:
                continue
            rows.append({
                "store_id": store.store_id,
                "name": store.name,
                "city": store.city,
                "state": store.state,
                "created_at": store.created_at,
                "vendor_count": len(members),
                "total_value": sum((self.totals[u.user_id] for u in members), Decimal("0")),
            })
        rows.sort(key=lambda r: r["store_id"])
        rows.sort(key=lambda r: r["created_at"])
        rows.sort(key=lambda r: r["total_value"], reverse=True)
        return [{**row, "position": i} for i, row in enumerate(rows, start=1)]

    async def count_ranked_stores(self) -> int:
        self.method_calls.append(("count_ranked_stores",))
        return len(self._store_rows())

    async def get_store_ranking_page(self, limit: int, offset: int) -> List[Dict[str, Any]]:
        self.method_calls.append(("get_store_ranking_page", limit, offset))
        return self._store_rows()[offset:offset + limit]

    async def get_user(self, user_id: str) -> Optional[Vendor]:
        return self.users.get(user_id)

    async def get_store(self, store_id: str) -> Optional[Store]:
        return self.stores.get(store_id)

    async def get_branch_stores(self, store_id: str) -> List[Store]:
        branches = [s for s in self.stores.values() if s.parent_store_id == store_id and s.is_active]
        return sorted(branches, key=lambda s: (s.name, s.store_id))


# =============================================================================
# Mock Event Bus
# =============================================================================


class MockEventBus:
    """Mock event bus for testing"""

    def __init__(self):
        self.published_events = []

    def reset(self):
        """Reset published events"""
        self.published_events.clear()

    async def publish_event(self, event) -> bool:
        """Publish event"""
        self.published_events.append(event)
        return True

    def get_events_by_type(self, event_type: str) -> List[Any]:
        """Get all events of a type"""
        return [event for event in self.published_events if event.type == event_type]


# =============================================================================
# Pytest Fixtures
# =============================================================================


@pytest.fixture
def mock_repository():
    """Create mock ledger repository"""
    return MockLedgerRepository()


@pytest.fixture
def mock_ranking_repository():
    """Create mock ranking repository"""
    return MockRankingRepository()


@pytest.fixture
def mock_event_bus():
    """Create mock event bus"""
    return MockEventBus()


@pytest.fixture
def fulfillment_service(mock_repository, mock_event_bus):
    """Create fulfillment service with mocked dependencies"""
    from microservices.fulfillment_service.fulfillment_service import FulfillmentService

    return FulfillmentService(repository=mock_repository, event_bus=mock_event_bus)


@pytest.fixture
def ranking_service(mock_ranking_repository):
    """Create ranking service with a small page size and in-memory threshold"""
    from microservices.fulfillment_service.ranking_service import RankingService

    return RankingService(
        repository=mock_ranking_repository,
        default_page_size=3,
        max_page_size=50,
        in_memory_threshold=10,
    )
