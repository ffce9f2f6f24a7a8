"""
HTTP surface tests with FastAPI's TestClient.

The ledger runs on a temporary SQLite file; gateways are the in-memory
fakes from conftest, wired in through dependency overrides.
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from afipsync.api.routes import orders
from afipsync.config import get_settings
from afipsync.errors import AuthorityRejectionError, InfrastructureError, NotFoundError, ValidationError
from afipsync.infrastructure.database import get_session_factory
from afipsync.infrastructure.ledger import Ledger
from afipsync.main import create_app, status_for
from afipsync.services.reconciliation import ReconciliationOrchestrator

from conftest import make_order, make_processor


@pytest.fixture
def seed(open_ledger):
    def _seed(*order_list):
        async def scenario():
            async with open_ledger() as ledger:
                await ledger.record_orders(order_list)

        asyncio.run(scenario())

    return _seed


@pytest.fixture
def client(database_url, monkeypatch, tax_authority):
    monkeypatch.setenv("AFIPSYNC_DATABASE_URL", database_url)
    monkeypatch.delenv("AFIPSYNC_GATEWAY_FACTORY", raising=False)
    monkeypatch.setattr(orders, "_gateways", None)
    get_settings.cache_clear()

    app = create_app()
    app.dependency_overrides[orders.get_orchestrator] = lambda: ReconciliationOrchestrator(
        ledger=Ledger(get_session_factory()),
        tax_authority=tax_authority,
        processor=make_processor(),
    )

    with TestClient(app) as test_client:
        yield test_client

    get_settings.cache_clear()


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["database"] == "connected"
    assert body["sales_point"] == 2


def test_process_orders(seed, client, tax_authority):
    tax_authority.rejections["2"] = "10016: CbteFch invalido"
    seed(make_order("1", days_ago=3), make_order("2", days_ago=2), make_order("3", days_ago=1))

    response = client.post("/api/v1/orders/process", json={})

    assert response.status_code == 200
    body = response.json()
    assert (body["processed"], body["successful"], body["failed"]) == (3, 2, 1)
    assert [r["status"] for r in body["results"]] == ["success", "failed", "success"]
    assert body["results"][1]["error"] == "10016: CbteFch invalido"


def test_process_with_limit(seed, client):
    seed(make_order("1", days_ago=3), make_order("2", days_ago=2))

    response = client.post("/api/v1/orders/process", json={"limit": 1, "trade_type": "SELL"})

    assert response.json()["processed"] == 1


def test_process_rejects_bad_limit(client):
    response = client.post("/api/v1/orders/process", json={"limit": 0})
    assert response.status_code == 422


def test_order_and_status(seed, client):
    seed(make_order("1", total="1000.00"), make_order("2"))
    client.post("/api/v1/orders/process", json={"limit": 1})

    order = client.get("/api/v1/orders/1").json()
    status = client.get("/api/v1/orders/status").json()

    assert order["success"] is True
    assert order["total_price"] == "1000.00"
    assert order["voucher_number"] == 1
    assert status["total"] == 2
    assert status["pending"] == 1
    assert status["successful"] == 1


def test_unknown_order(client):
    response = client.get("/api/v1/orders/missing")

    assert response.status_code == 404
    assert response.json()["code"] == "NOT_FOUND"


def test_manual_invoice(seed, client):
    seed(make_order("1"))

    response = client.post(
        "/api/v1/orders/1/manual",
        json={"cae": "75123456789012", "voucher_number": 12, "notes": "portal"},
    )

    assert response.status_code == 200
    assert response.json()["processing_method"] == "manual"

    conflict = client.post(
        "/api/v1/orders/1/manual",
        json={"cae": "75123456789099", "voucher_number": 13},
    )
    assert conflict.status_code == 422
    assert conflict.json()["code"] == "DOMAIN_ERROR"


def test_manual_invoice_bad_payload(client):
    response = client.post("/api/v1/orders/1/manual", json={"cae": "abc", "voucher_number": 1})
    assert response.status_code == 422


def test_unconfigured_gateways(database_url, monkeypatch):
    monkeypatch.setenv("AFIPSYNC_DATABASE_URL", database_url)
    monkeypatch.delenv("AFIPSYNC_GATEWAY_FACTORY", raising=False)
    monkeypatch.setattr(orders, "_gateways", None)
    get_settings.cache_clear()

    with TestClient(create_app()) as test_client:
        response = test_client.post("/api/v1/orders/process", json={})

    get_settings.cache_clear()
    assert response.status_code == 503
    assert response.json()["details"]["subsystem"] == "gateways"


@pytest.mark.parametrize(
    "error,status",
    [
        (ValidationError("bad"), 400),
        (NotFoundError.order("1"), 404),
        (AuthorityRejectionError("no"), 422),
        (InfrastructureError.database("down"), 503),
    ],
)
def test_error_status_mapping(error, status):
    assert status_for(error) == status
