"""
Fulfillment Service Protocols

Defines interfaces for dependency injection and testing.
Following the protocol-based architecture pattern.
"""

from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple, runtime_checkable

from .models import (
    Campaign,
    RankingScope,
    SpecialEvent,
    Store,
    Submission,
    SubmissionStatus,
    Vendor,
)


# ====================
# Repository Protocols
# ====================


@runtime_checkable
class LedgerRepositoryProtocol(Protocol):
    """Submission ledger: read view plus the engine's write-once updates"""

    async def get_submission(self, submission_id: str) -> Optional[Submission]:
        """Get one submission with its objective's ordering key and tier"""
        ...

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        """Get a campaign with its tiers and objective instances"""
        ...

    async def get_key_submissions(
        self, vendor_id: str, campaign_id: str, ordering_key: int
    ) -> List[Submission]:
        """
        Get every submission of a vendor for one logical objective.

        Joins across all tiers of the campaign: each tier instances the
        objective under a different objective_id.
        """
        ...

    async def get_campaign_submissions(self, vendor_id: str, campaign_id: str) -> List[Submission]:
        """Get all of a vendor's submissions in a campaign"""
        ...

    async def get_vendor(self, user_id: str) -> Optional[Vendor]:
        ...

    async def get_special_events(self, campaign_id: str) -> List[SpecialEvent]:
        ...

    async def get_completed_tiers(self, vendor_id: str, campaign_id: str) -> List[int]:
        """Tier sequences already settled for the vendor"""
        ...

    async def list_unassigned_validations(self, limit: int) -> List[Submission]:
        """VALIDATED submissions with no resolved tier, oldest validation first"""
        ...

    async def list_unsettled_vendor_campaigns(self, limit: int) -> List[Tuple[str, str]]:
        """(vendor_id, campaign_id) pairs holding assigned but uncredited submissions"""
        ...

    async def update_submission_status(
        self,
        submission_id: str,
        status: SubmissionStatus,
        expected_status: SubmissionStatus,
        base_value: Optional[Decimal] = None,
        rejection_reason: Optional[str] = None,
    ) -> Optional[Submission]:
        """
        Write a validation outcome if the submission is still in expected_status.

        Returns:
            Updated submission, or None when the status changed concurrently

        Raises:
            DuplicateValidatedOrderError: the order number is already VALIDATED in the campaign
        """
        ...

    async def assign_resolved_tier(
        self,
        submission: Submission,
        resolve_tier: Callable[[int], int],
    ) -> Tuple[Optional[int], bool]:
        """
        Assign the permanent tier of a validated submission.

        Counts the already-assigned validations of the submission's
        (vendor, campaign, ordering key) and writes resolve_tier(count)
        in one transaction serialized by a per-key advisory lock.

        Returns:
            (resolved tier, newly assigned). The tier is the existing one when
            already assigned and None when the submission is not validated

        Raises:
            TierAssignmentConflictError: concurrent assignment detected
        """
        ...

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
        """
        Credit a completed tier atomically.

        Records the completed tier (unique per vendor/campaign/tier), marks the
        submissions credited with their multiplier and final value, and adds
        the credit to the vendor's and manager's balances.

        Returns:
            False when the tier had already been settled
        """
        ...


@runtime_checkable
class RankingRepositoryProtocol(Protocol):
    """Ranking queries over credited submission values"""

    async def count_population(self, scope: RankingScope) -> int:
        ...

    async def get_ranking_page(self, scope: RankingScope, limit: int, offset: int) -> List[Dict[str, Any]]:
        """Rows ordered by the ranking contract, each carrying its position"""
        ...

    async def get_vendor_position(self, vendor_id: str, scope: RankingScope) -> int:
        """1-based position from a window query, 0 when outside the population"""
        ...

    async def get_population_totals(self, scope: RankingScope) -> List[Dict[str, Any]]:
        """Unordered vendor rows with totals, for in-memory ranking"""
        ...

    async def count_ranked_stores(self) -> int:
        ...

    async def get_store_ranking_page(self, limit: int, offset: int) -> List[Dict[str, Any]]:
        ...

    async def get_user(self, user_id: str) -> Optional[Vendor]:
        ...

    async def get_store(self, store_id: str) -> Optional[Store]:
        ...

    async def get_branch_stores(self, store_id: str) -> List[Store]:
        """Active branches whose parent is store_id, ordered by name"""
        ...


# ====================
# Event Bus Protocol
# ====================


@runtime_checkable
class EventBusProtocol(Protocol):
    """Interface for event publishing"""

    async def publish_event(self, event: Any) -> bool:
        ...


# ====================
# Custom Exceptions
# ====================


class FulfillmentServiceError(Exception):
    """Base exception for fulfillment service errors"""
    pass


class SubmissionNotFoundError(FulfillmentServiceError):
    """Raised when a submission does not exist"""
    pass


class CampaignNotFoundError(FulfillmentServiceError):
    """Raised when a campaign does not exist"""
    pass


class TierNotFoundError(FulfillmentServiceError):
    """Raised when a tier sequence has no definition"""
    pass


class ObjectiveNotFoundError(FulfillmentServiceError):
    """Raised when no objective carries the ordering key"""
    pass


class InvalidTransitionError(FulfillmentServiceError):
    """Raised when a status change is not an allowed transition"""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move submission from {current} to {target}")


class TierAssignmentConflictError(FulfillmentServiceError):
    """Raised when a concurrent validation invalidated the assignment count"""

    def __init__(self, submission_id: str, reason: Optional[str] = None):
        self.submission_id = submission_id
        self.reason = reason
        super().__init__(f"Tier assignment conflict for submission {submission_id}: {reason}")


class DuplicateValidatedOrderError(FulfillmentServiceError):
    """Raised when the order number is already validated in the campaign"""

    def __init__(self, submission_id: str):
        self.submission_id = submission_id
        super().__init__(f"Submission {submission_id} repeats an order number already validated in its campaign")


class ScopeForbiddenError(FulfillmentServiceError):
    """Raised when a user may not view the requested ranking scope"""
    pass


class InvalidPaginationError(FulfillmentServiceError, ValueError):
    """Raised when page or page_size is out of range"""
    pass


__all__ = [
    "LedgerRepositoryProtocol",
    "RankingRepositoryProtocol",
    "EventBusProtocol",
    "FulfillmentServiceError",
    "SubmissionNotFoundError",
    "CampaignNotFoundError",
    "TierNotFoundError",
    "ObjectiveNotFoundError",
    "InvalidTransitionError",
    "TierAssignmentConflictError",
    "DuplicateValidatedOrderError",
    "ScopeForbiddenError",
    "InvalidPaginationError",
]
