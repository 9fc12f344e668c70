#!/usr/bin/env python3
"""Infrastructure configuration

PostgreSQL pool settings and the NATS JetStream connection used by the
fulfillment service. NATS_URL, when set, wins over NATS_HOST/NATS_PORT.
"""
import os
from dataclasses import dataclass
from typing import Optional

def _bool(val: str) -> bool:
    return val.lower() == "true"

def _int(val: str, default: int) -> int:
    try:
        return int(val) if val else default
    except ValueError:
        return default


@dataclass
class InfraConfig:
    """Database and message bus endpoints"""

    # PostgreSQL (asyncpg pool)
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "postgres"
    postgres_user: str = "postgres"
    postgres_password: str = "postgres"
    postgres_min_pool: int = 1
    postgres_max_pool: int = 10
    postgres_command_timeout: int = 30

    # NATS JetStream
    nats_enabled: bool = True
    nats_host: str = "localhost"
    nats_port: int = 4222
    nats_url: Optional[str] = None
    nats_connect_timeout: int = 5
    nats_stream_max_msgs: int = 100000

    @property
    def postgres_dsn(self) -> str:
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def nats_servers(self) -> str:
        return self.nats_url or f"nats://{self.nats_host}:{self.nats_port}"

    @classmethod
    def from_env(cls) -> 'InfraConfig':
        env = os.getenv
        return cls(
            postgres_host=env("POSTGRES_HOST", "localhost"),
            postgres_port=_int(env("POSTGRES_PORT", ""), 5432),
            postgres_db=env("POSTGRES_DB", "postgres"),
            postgres_user=env("POSTGRES_USER", "postgres"),
            postgres_password=env("POSTGRES_PASSWORD", "postgres"),
            postgres_min_pool=_int(env("POSTGRES_MIN_POOL", ""), 1),
            postgres_max_pool=_int(env("POSTGRES_MAX_POOL", ""), 10),
            postgres_command_timeout=_int(env("POSTGRES_COMMAND_TIMEOUT", ""), 30),
            nats_enabled=_bool(env("NATS_ENABLED", "true")),
            nats_host=env("NATS_HOST", "localhost"),
            nats_port=_int(env("NATS_PORT", ""), 4222),
            nats_url=env("NATS_URL"),
            nats_connect_timeout=_int(env("NATS_CONNECT_TIMEOUT", ""), 5),
            nats_stream_max_msgs=_int(env("NATS_STREAM_MAX_MSGS", ""), 100000),
        )
