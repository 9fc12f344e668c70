"""
API Test Layer Configuration

HTTP contract tests: FastAPI TestClient against the real app with the
service dependencies overridden. The lifespan is not run, so no database
or NATS is needed.

Usage:
    pytest tests/api -v
"""

import os
import sys

# Add project root
sys.path.insert(
    0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
)


def pytest_configure(config):
    """Configure custom markers"""
    config.addinivalue_line(
        "markers", "api: marks tests as API contract tests"
    )
