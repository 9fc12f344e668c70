"""
Fulfillment Service Event Models

Event data models for tier assignment and tier settlement events.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

# =============================================================================
# Event Type Definitions (Service-Specific)
# =============================================================================

class FulfillmentEventType(str, Enum):
    """
    Events published by fulfillment_service.

    Stream: fulfillment-stream
    Subjects: fulfillment.>
    """
    SUBMISSION_TIER_ASSIGNED = "fulfillment.submission.tier_assigned"
    TIER_COMPLETED = "fulfillment.tier.completed"


class FulfillmentSubscribedEventType(str, Enum):
    """Events that fulfillment_service subscribes to from the validation workflow."""
    SUBMISSION_VALIDATED = "validation.submission.validated"
    SUBMISSION_REJECTED = "validation.submission.rejected"
    SUBMISSION_CONFLICT = "validation.submission.conflict"


class FulfillmentStreamConfig:
    """Stream configuration for fulfillment_service"""
    STREAM_NAME = "fulfillment-stream"
    SUBJECTS = ["fulfillment.>"]
    MAX_MESSAGES = 100000
    CONSUMER_PREFIX = "fulfillment"


# ============================================================================
# Fulfillment Event Models
# ============================================================================


class SubmissionTierAssignedEventData(BaseModel):
    """
    Event: fulfillment.submission.tier_assigned
    Triggered once, when a validated submission receives its permanent tier
    """

    submission_id: str = Field(..., description="Submission ID")
    vendor_id: str = Field(..., description="Vendor owning the submission")
    campaign_id: str = Field(..., description="Campaign ID")
    ordering_key: int = Field(..., description="Logical objective position")
    resolved_tier: int = Field(..., description="Tier the submission is credited to")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class TierCompletedEventData(BaseModel):
    """
    Event: fulfillment.tier.completed
    Triggered when every objective of a tier is complete and its value is credited
    """

    vendor_id: str = Field(..., description="Vendor credited")
    campaign_id: str = Field(..., description="Campaign ID")
    tier_sequence: int = Field(..., description="Tier completed")
    credited_value: Decimal = Field(..., description="Value added to the vendor balance")
    submission_ids: List[str] = Field(default_factory=list, description="Submissions credited")
    manager_id: Optional[str] = Field(None, description="Manager receiving commission")
    manager_commission: Decimal = Field(default=Decimal("0"), description="Commission credited to the manager")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ============================================================================
# Helper Functions
# ============================================================================


def create_tier_assigned_event_data(
    submission_id: str,
    vendor_id: str,
    campaign_id: str,
    ordering_key: int,
    resolved_tier: int,
) -> SubmissionTierAssignedEventData:
    """Create SubmissionTierAssignedEventData instance"""
    return SubmissionTierAssignedEventData(
        submission_id=submission_id,
        vendor_id=vendor_id,
        campaign_id=campaign_id,
        ordering_key=ordering_key,
        resolved_tier=resolved_tier,
    )


def create_tier_completed_event_data(
    vendor_id: str,
    campaign_id: str,
    tier_sequence: int,
    credited_value: Decimal,
    submission_ids: List[str],
    manager_id: Optional[str] = None,
    manager_commission: Decimal = Decimal("0"),
) -> TierCompletedEventData:
    """Create TierCompletedEventData instance"""
    return TierCompletedEventData(
        vendor_id=vendor_id,
        campaign_id=campaign_id,
        tier_sequence=tier_sequence,
        credited_value=credited_value,
        submission_ids=submission_ids,
        manager_id=manager_id,
        manager_commission=manager_commission,
    )


__all__ = [
    "FulfillmentEventType",
    "FulfillmentSubscribedEventType",
    "FulfillmentStreamConfig",
    "SubmissionTierAssignedEventData",
    "TierCompletedEventData",
    "create_tier_assigned_event_data",
    "create_tier_completed_event_data",
]
