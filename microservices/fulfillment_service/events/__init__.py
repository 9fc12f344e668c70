"""
Fulfillment Service Event Package

Event-driven architecture for fulfillment service:
- Publishing: tier assignment and tier completion events
- Subscription: validation outcomes from the validation workflow
"""

from .models import (
    FulfillmentEventType,
    FulfillmentSubscribedEventType,
    FulfillmentStreamConfig,
    SubmissionTierAssignedEventData,
    TierCompletedEventData,
    create_tier_assigned_event_data,
    create_tier_completed_event_data,
)

from .publishers import (
    publish_tier_assigned,
    publish_tier_completed,
)

from .handlers import get_event_handlers, handle_submission_outcome

__all__ = [
    # Event models
    "FulfillmentEventType",
    "FulfillmentSubscribedEventType",
    "FulfillmentStreamConfig",
    "SubmissionTierAssignedEventData",
    "TierCompletedEventData",
    # Helper functions
    "create_tier_assigned_event_data",
    "create_tier_completed_event_data",
    # Publishers
    "publish_tier_assigned",
    "publish_tier_completed",
    # Handlers
    "get_event_handlers",
    "handle_submission_outcome",
]
