"""
Tests for the FastAPI application wiring.

Covers the metrics endpoint, request validation handling and the request
logging middleware.
"""

from collections.abc import Iterator
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from echo_ledger.config import settings
from echo_ledger.db.session import get_read_db, get_write_db
from echo_ledger.main import app
from echo_ledger.observability.metrics import metrics


@pytest.fixture
def client(db_session: AsyncMock) -> Iterator[TestClient]:
    async def _db():
        yield db_session

    app.dependency_overrides[get_read_db] = _db
    app.dependency_overrides[get_write_db] = _db
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestMetricsEndpoint:
    """Tests for /metrics."""

    def test_exposes_ledger_metrics(self, client: TestClient):
        metrics.record_transaction("openai", Decimal("0"))

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "transactions_recorded_total" in response.text

    def test_disabled(self, client: TestClient, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setattr(settings, "metrics_enabled", False)

        assert client.get("/metrics").status_code == 404


class TestRequestHandling:
    """Tests for middleware and error handlers."""

    def test_health(self, client: TestClient):
        response = client.get("/health", headers={"X-Request-ID": "req-123"})

        assert response.status_code == 200
        assert response.json()["database"] == "connected"
        assert response.headers["X-Request-ID"] == "req-123"

    def test_request_id_generated(self, client: TestClient):
        response = client.get("/health")

        assert response.headers["X-Request-ID"]

    def test_transaction_body_validation(self, client: TestClient):
        response = client.post(
            "/v1/x402/transactions",
            json={"user_id": "not-a-uuid", "provider": "openai", "amount": "1"},
            headers={"x-echo-app-id": "00000000-0000-0000-0000-000000000000"},
        )

        assert response.status_code == 422
        for error in response.json()["detail"]:
            assert set(error) == {"type", "loc", "msg"}
