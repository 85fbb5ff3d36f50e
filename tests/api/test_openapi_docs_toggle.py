from __future__ import annotations

from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from app import main as app_main


@pytest.mark.parametrize(("enabled", "expected_status"), [(True, 200), (False, 404)])
def test_openapi_docs_follow_setting(monkeypatch, enabled: bool, expected_status: int) -> None:
    monkeypatch.setattr(
        app_main,
        "get_settings",
        lambda: SimpleNamespace(log_level="INFO", enable_openapi_docs=enabled),
    )
    client = TestClient(app_main.create_app())

    for path in ("/docs", "/redoc", "/openapi.json"):
        assert client.get(path).status_code == expected_status


def test_internal_and_webhook_routes_are_mounted() -> None:
    paths = {route.path for route in app_main.app.routes}

    assert {
        "/webhook/stripe",
        "/stripe/checkout/success",
        "/stripe/checkout/cancel",
        "/internal/access/grants",
        "/internal/access/grants/{grant_id}/revoke",
        "/internal/access/check",
        "/health",
        "/ready",
        "/live",
    } <= paths
