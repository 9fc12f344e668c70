#!/usr/bin/env python3
"""Fulfillment service main configuration

Combines the infrastructure and logging sub-configs with the settings that
drive tier resolution, ranking pagination and the reconciliation job.
"""
import os
from dataclasses import dataclass, field

from .infra_config import InfraConfig
from .logging_config import LoggingConfig


def _bool(val: str) -> bool:
    return val.lower() == "true"

def _int(val: str, default: int) -> int:
    try:
        return int(val) if val else default
    except ValueError:
        return default


@dataclass
class FulfillmentConfig:
    """Main fulfillment service configuration with all sub-configs"""

    # Environment
    environment: str = "development"
    debug: bool = False

    # Service identity
    service_name: str = "fulfillment_service"
    service_host: str = "0.0.0.0"
    service_port: int = 8240
    log_level: str = "INFO"

    # Persistence
    db_schema: str = "fulfillment"

    # Ranking
    default_page_size: int = 20
    max_page_size: int = 100
    # Store scopes at or below this population are ranked in memory
    in_memory_ranking_threshold: int = 200

    # Tier assignment
    assignment_retry_attempts: int = 2

    # Reconciliation sweep
    reconcile_enabled: bool = True
    reconcile_interval_minutes: int = 5
    reconcile_batch_size: int = 500

    # Sub-configurations
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    infrastructure: InfraConfig = field(default_factory=InfraConfig)

    @classmethod
    def from_env(cls) -> 'FulfillmentConfig':
        """Load complete configuration from environment"""
        env = os.getenv("ENV") or os.getenv("ENVIRONMENT", "development")
        logging_config = LoggingConfig.from_env()
        return cls(
            # Environment
            environment=env,
            debug=_bool(os.getenv("DEBUG", "true" if env == "development" else "false")),

            # Service identity
            service_name=os.getenv("FULFILLMENT_SERVICE_NAME", "fulfillment_service"),
            service_host=os.getenv("HOST", "0.0.0.0"),
            service_port=_int(os.getenv("FULFILLMENT_SERVICE_PORT") or os.getenv("PORT", "8240"), 8240),
            log_level=logging_config.log_level,

            # Persistence
            db_schema=os.getenv("FULFILLMENT_DB_SCHEMA", "fulfillment"),

            # Ranking
            default_page_size=_int(os.getenv("RANKING_DEFAULT_PAGE_SIZE", "20"), 20),
            max_page_size=_int(os.getenv("RANKING_MAX_PAGE_SIZE", "100"), 100),
            in_memory_ranking_threshold=_int(os.getenv("RANKING_IN_MEMORY_THRESHOLD", "200"), 200),

            # Tier assignment
            assignment_retry_attempts=_int(os.getenv("TIER_ASSIGNMENT_RETRY_ATTEMPTS", "2"), 2),

            # Reconciliation
            reconcile_enabled=_bool(os.getenv("RECONCILE_ENABLED", "true")),
            reconcile_interval_minutes=_int(os.getenv("RECONCILE_INTERVAL_MINUTES", "5"), 5),
            reconcile_batch_size=_int(os.getenv("RECONCILE_BATCH_SIZE", "500"), 500),

            # Load sub-configs
            logging=logging_config,
            infrastructure=InfraConfig.from_env(),
        )
