"""Shared test fixtures."""
import pytest
from unittest.mock import Mock

from payment_sync.circuit_breaker import CircuitBreaker
from payment_sync.http_client import BackendClient, TRANSIENT_ERRORS
from payment_sync.storage import InMemoryStore


@pytest.fixture
def make_response():
    """Create a mock requests.Response."""
    def _create(status_code: int = 200, body=None, text: str = ""):
        response = Mock()
        response.status_code = status_code
        response.text = text
        if isinstance(body, Exception):
            response.json.side_effect = body
        else:
            response.json.return_value = body if body is not None else {}
        return response
    return _create


@pytest.fixture
def http_session():
    """Mock requests.Session - set .request.return_value / .side_effect per test."""
    return Mock()


@pytest.fixture
def backend(http_session):
    """BackendClient over the mock session, no retry delays."""
    return BackendClient(
        base_url="http://clinic.test/api",
        token_provider=lambda: "test-token",
        session=http_session,
        circuit_breaker=CircuitBreaker(
            name="test", failure_threshold=100, timeout=60, counted=TRANSIENT_ERRORS
        ),
        timeout=5,
        read_retries=2,
        read_backoff=0
    )


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def paid_appointment():
    return {"id": 42, "payment_status": "paid", "status": "approved", "updated_at": "2025-06-01T10:00:00Z"}


@pytest.fixture
def unpaid_appointment():
    return {"id": 42, "payment_status": "unpaid", "status": "approved", "updated_at": "2025-06-01T09:00:00Z"}
