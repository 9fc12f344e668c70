"""
Fulfillment Service API Test Configuration

Fixtures for testing fulfillment_service HTTP endpoints using the FastAPI
TestClient with mocked services injected through dependency overrides.
"""

from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from microservices.fulfillment_service.fulfillment_service import FulfillmentService
from microservices.fulfillment_service.ranking_service import RankingService

@pytest.fixture
def mock_fulfillment_service():
    """FulfillmentService double; async methods are AsyncMocks"""
    return MagicMock(spec=FulfillmentService)


@pytest.fixture
def mock_ranking_service():
    """RankingService double with the real admin scope resolution"""
    service = MagicMock(spec=RankingService)
    service.resolve_admin_scope.side_effect = RankingService.resolve_admin_scope
    return service


@pytest.fixture
def app():
    from microservices.fulfillment_service.main import app as fastapi_app

    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def client(app, mock_fulfillment_service, mock_ranking_service):
    """TestClient without lifespan; services come from dependency overrides"""
    from microservices.fulfillment_service.main import get_fulfillment_service, get_ranking_service

    app.dependency_overrides[get_fulfillment_service] = lambda: mock_fulfillment_service
    app.dependency_overrides[get_ranking_service] = lambda: mock_ranking_service
    return TestClient(app)
