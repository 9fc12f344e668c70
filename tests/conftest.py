"""
Root conftest.py - Global fixtures and configuration for all test layers.

Test Layers:
    - api/        : HTTP contract tests (FastAPI TestClient, mocked services)
    - integration/: Repository tests against a real PostgreSQL
    - component/  : Service tests (in-memory repositories, mock event bus)
    - unit/       : Pure functions, no I/O
"""
import os
import sys

import pytest

# Set testing environment BEFORE any service imports
os.environ.setdefault("ENV", "testing")
os.environ.setdefault("NATS_ENABLED", "false")
os.environ.setdefault("RECONCILE_ENABLED", "false")

# Add project root to path
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, PROJECT_ROOT)

from tests.contracts.fulfillment.data_contract import FulfillmentTestDataFactory


# =============================================================================
# Test Configuration
# =============================================================================

class TestConfig:
    """Centralized test configuration"""

    # PostgreSQL for the integration layer
    POSTGRES_HOST = os.getenv("POSTGRES_HOST", "localhost")
    POSTGRES_PORT = int(os.getenv("POSTGRES_PORT", "5432"))
    POSTGRES_USER = os.getenv("POSTGRES_USER", "postgres")
    POSTGRES_PASSWORD = os.getenv("POSTGRES_PASSWORD", "postgres")
    POSTGRES_DB = os.getenv("POSTGRES_DB", "fulfillment_test")

    # Timeouts
    DB_TIMEOUT = 10


@pytest.fixture(scope="session")
def test_config() -> TestConfig:
    """Provide test configuration"""
    return TestConfig()


@pytest.fixture
def data_factory():
    """Provide data factory for test data generation"""
    return FulfillmentTestDataFactory

