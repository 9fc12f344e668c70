#!/usr/bin/env python3
"""
Core Module for Microservices Architecture

Shared infrastructure for the fulfillment microservices.

COMPONENTS:
    - config/: Dataclass configuration loaded from environment files
    - logger.py: Service logger setup
    - postgres_client.py: asyncpg connection pool wrapper
    - nats_client.py: NATS event bus for event-driven architecture

USAGE:
    from core.config import get_settings
    from core.postgres_client import get_postgres_client

    settings = get_settings()
    db = await get_postgres_client("fulfillment_service")
"""

__version__ = "2.0.0"
