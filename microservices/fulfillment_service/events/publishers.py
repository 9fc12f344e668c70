"""
Fulfillment Service Event Publishers

Publish events for tier assignment and tier settlement.
Publishing failures are logged and never fail the operation that triggered them.
"""

import logging
from decimal import Decimal
from typing import List, Optional

from core.nats_client import Event, ServiceSource

from .models import (
    FulfillmentEventType,
    create_tier_assigned_event_data,
    create_tier_completed_event_data,
)

logger = logging.getLogger(__name__)


async def publish_tier_assigned(
    event_bus,
    submission_id: str,
    vendor_id: str,
    campaign_id: str,
    ordering_key: int,
    resolved_tier: int,
):
    """
    Publish fulfillment.submission.tier_assigned event

    Args:
        event_bus: NATS event bus instance
        submission_id: Submission that received its tier
        vendor_id: Vendor owning the submission
        campaign_id: Campaign ID
        ordering_key: Logical objective position
        resolved_tier: Permanent tier
    """
    try:
        event_data = create_tier_assigned_event_data(
            submission_id=submission_id,
            vendor_id=vendor_id,
            campaign_id=campaign_id,
            ordering_key=ordering_key,
            resolved_tier=resolved_tier,
        )

        event = Event(
            event_type=FulfillmentEventType.SUBMISSION_TIER_ASSIGNED.value,
            source=ServiceSource.FULFILLMENT_SERVICE,
            data=event_data.model_dump(mode='json'),
        )

        await event_bus.publish_event(event)
        logger.info(f"Published tier_assigned for submission {submission_id}: tier {resolved_tier}")

    except Exception as e:
        logger.error(f"Failed to publish tier_assigned: {e}")


async def publish_tier_completed(
    event_bus,
    vendor_id: str,
    campaign_id: str,
    tier_sequence: int,
    credited_value: Decimal,
    submission_ids: List[str],
    manager_id: Optional[str] = None,
    manager_commission: Decimal = Decimal("0"),
):
    """
    Publish fulfillment.tier.completed event

    Args:
        event_bus: NATS event bus instance
        vendor_id: Vendor credited
        campaign_id: Campaign ID
        tier_sequence: Tier completed
        credited_value: Value added to the vendor balance
        submission_ids: Submissions credited
        manager_id: Manager receiving commission (optional)
        manager_commission: Commission credited to the manager
    """
    try:
        event_data = create_tier_completed_event_data(
            vendor_id=vendor_id,
            campaign_id=campaign_id,
            tier_sequence=tier_sequence,
            credited_value=credited_value,
            submission_ids=submission_ids,
            manager_id=manager_id,
            manager_commission=manager_commission,
        )

        event = Event(
            event_type=FulfillmentEventType.TIER_COMPLETED.value,
            source=ServiceSource.FULFILLMENT_SERVICE,
            data=event_data.model_dump(mode='json'),
        )

        await event_bus.publish_event(event)
        logger.info(
            f"Published tier.completed for vendor {vendor_id}: campaign {campaign_id} tier {tier_sequence}, {credited_value}"
        )

    except Exception as e:
        logger.error(f"Failed to publish tier.completed: {e}")
