"""
Fulfillment Service Event Handlers

React to validation outcomes published by the validation workflow.
"""

import logging
from typing import Any, Dict, Union

from ..protocols import SubmissionNotFoundError

logger = logging.getLogger(__name__)


def extract_event_data(event_or_data: Union[Dict[str, Any], Any]) -> Dict[str, Any]:
    """
    Extract data from either an Event object or a raw dict.

    Handles both:
    - Event objects with .data attribute (from NATS)
    - Raw dict (for testing or direct calls)
    """
    if hasattr(event_or_data, 'data'):
        return event_or_data.data
    return event_or_data


# ============================================================================
# Event Handlers
# ============================================================================


async def handle_submission_outcome(event_or_data: Union[Dict[str, Any], Any], fulfillment_service=None):
    """
    Handle validation.submission.* events

    The validation workflow already wrote the outcome; the engine assigns
    the permanent tier of validated submissions and settles completed tiers.

    Event data:
        - submission_id: Submission whose status changed
        - status: New status (informational)
    """
    event_data = extract_event_data(event_or_data)
    submission_id = event_data.get("submission_id")

    if not submission_id:
        logger.warning("validation.submission event missing submission_id")
        return

    if not fulfillment_service:
        logger.warning(f"No fulfillment service bound; skipping submission {submission_id}")
        return

    logger.info(f"Processing outcome {event_data.get('status')} for submission {submission_id}")
    try:
        await fulfillment_service.process_submission(submission_id)
    except SubmissionNotFoundError:
        logger.warning(f"Outcome event for unknown submission {submission_id}")


def get_event_handlers(fulfillment_service=None) -> Dict[str, callable]:
    """
    Return a mapping of event patterns to handler functions

    This will be used in main.py to register event subscriptions.
    Handler errors propagate so the message is redelivered.

    Events subscribed:
        - validation.submission.*: validated, rejected and conflict outcomes
    """
    return {
        "validation.submission.*": lambda event: handle_submission_outcome(event, fulfillment_service),
    }
