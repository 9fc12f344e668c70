"""
Integration Test Layer Configuration

Repository tests against a real PostgreSQL. Every test gets its own
throwaway schema; the layer is skipped when the database is unreachable.

Usage:
    POSTGRES_HOST=localhost POSTGRES_DB=fulfillment_test pytest tests/integration -v
"""

import os
import sys

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../.."))


def pytest_configure(config):
    """Configure custom markers"""
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests (requires PostgreSQL)"
    )
