from __future__ import annotations

from fastapi.testclient import TestClient

from app.main import create_app


def test_live_reports_service_name() -> None:
    with TestClient(create_app()) as client:
        response = client.get("/health/live")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "material-importer-api"}


def test_ready_checks_database_and_skips_unused_redis() -> None:
    with TestClient(create_app()) as client:
        response = client.get("/health/ready")

    assert response.status_code == 200
    checks = response.json()["checks"]
    assert checks["database"]["status"] == "healthy"
    assert checks["redis"]["status"] == "skipped"
