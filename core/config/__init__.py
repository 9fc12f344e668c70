#!/usr/bin/env python3
"""Configuration package for the fulfillment service

- infra_config: PostgreSQL pool and NATS JetStream endpoints
- logging_config: handlers and levels
- fulfillment_config: service settings composed with both sub-configs

Values come from the process environment first, then from the env file of
the current ENV (deployment/environments/<name>.env), or ENV_FILE when set.
"""
import os
from dotenv import load_dotenv
from .logging_config import LoggingConfig
from .infra_config import InfraConfig
from .fulfillment_config import FulfillmentConfig

ENV_FILE_NAMES = {
    "development": "dev",
    "dev": "dev",
    "testing": "test",
    "test": "test",
    "staging": "staging",
    "production": "production",
}


def _env_file() -> str:
    explicit = os.getenv("ENV_FILE")
    if explicit:
        return explicit
    env = os.getenv("ENV") or os.getenv("ENVIRONMENT", "development")
    return f"deployment/environments/{ENV_FILE_NAMES.get(env, 'dev')}.env"


load_dotenv(_env_file(), override=False)

settings = FulfillmentConfig.from_env()

def get_settings() -> FulfillmentConfig:
    """Get global settings instance"""
    return settings

def reload_settings() -> FulfillmentConfig:
    """Reload settings from environment"""
    global settings
    settings = FulfillmentConfig.from_env()
    return settings

__all__ = [
    'FulfillmentConfig',
    'InfraConfig',
    'LoggingConfig',
    'get_settings',
    'reload_settings',
    'settings',
]
