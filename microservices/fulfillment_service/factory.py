"""
Fulfillment Service Factory

Factory for creating FulfillmentService and RankingService with real dependencies.
This is the ONLY module that imports concrete implementations.
"""

import logging
from typing import Optional

from core.config import FulfillmentConfig, get_settings

from .fulfillment_repository import FulfillmentRepository
from .fulfillment_service import FulfillmentService
from .ranking_repository import RankingRepository
from .ranking_service import RankingService

logger = logging.getLogger(__name__)


def create_fulfillment_service(
    config: Optional[FulfillmentConfig] = None,
    event_bus=None,
) -> FulfillmentService:
    """
    Create FulfillmentService with all real dependencies

    Args:
        config: Optional settings (global settings if not provided)
        event_bus: Optional event bus for event publishing

    Returns:
        FulfillmentService bound to a PostgreSQL ledger repository
        (call repository.initialize() before use)
    """
    if config is None:
        config = get_settings()

    repository = FulfillmentRepository(config=config)
    if event_bus is None:
        logger.warning("⚠️ Fulfillment service created without event bus; events will not be published")

    return FulfillmentService(
        repository=repository,
        event_bus=event_bus,
        assignment_retry_attempts=config.assignment_retry_attempts,
        reconcile_batch_size=config.reconcile_batch_size,
    )


def create_ranking_service(config: Optional[FulfillmentConfig] = None) -> RankingService:
    """Create RankingService bound to the PostgreSQL ranking repository"""
    if config is None:
        config = get_settings()

    return RankingService(
        repository=RankingRepository(config=config),
        default_page_size=config.default_page_size,
        max_page_size=config.max_page_size,
        in_memory_threshold=config.in_memory_ranking_threshold,
    )


__all__ = ["create_fulfillment_service", "create_ranking_service"]
