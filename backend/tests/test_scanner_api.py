import sys
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from api.routes_scanner import get_scan_orchestrator
from main import app
from services import scan_orchestrator
from services.scan_orchestrator import ScanOrchestrator


@pytest.fixture
def runners():
    return {name: AsyncMock(return_value=[]) for name in scan_orchestrator.SCANNER_LABELS}


@pytest.fixture
def client(runners):
    app.dependency_overrides[get_scan_orchestrator] = lambda: ScanOrchestrator(scanners=runners)
    # No context manager: the lifespan (database bootstrap) is not needed here.
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.mark.parametrize(
    "body",
    [
        {"scanType": 5},
        {"scanType": ["all"]},
        {"scanType": {"type": "stocks"}},
        {"scanType": "forex"},
    ],
)
def test_invalid_scan_type_is_400(client, runners, body):
    response = client.post("/api/scanner/run", json=body)

    assert response.status_code == 400
    assert response.json()["error"].startswith("Invalid scanType. Must be one of: arbitrage")
    for runner in runners.values():
        runner.assert_not_awaited()


@pytest.mark.parametrize("body", [{}, {"scanType": None}, {"scanType": ""}, None])
def test_missing_scan_type_is_400(client, body):
    response = client.post("/api/scanner/run", json=body)

    assert response.status_code == 400
    assert response.json()["error"].startswith("scanType is required")


@pytest.mark.parametrize("body", [{"scanType": "stocks", "userId": 7}, {"scanType": "stocks", "userTier": 3}])
def test_non_string_user_fields_are_400(client, body):
    response = client.post("/api/scanner/run", json=body)

    assert response.status_code == 400


def test_free_tier_is_403(client):
    response = client.post("/api/scanner/run", json={"scanType": "stocks", "userId": "u1"})

    assert response.status_code == 403
    assert response.json()["code"] == "TIER_LIMIT_FREE"


def test_unlimited_scan_returns_report(client, runners):
    response = client.post("/api/scanner/run", json={"scanType": "crypto", "userTier": "enterprise"})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["count"] == 0
    assert body["message"] == "Found 0 crypto opportunities"
    runners["crypto"].assert_awaited_once()
