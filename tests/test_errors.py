"""Tests for the JSON error envelope and rate limiting."""

from __future__ import annotations

import httpx
from fastapi.testclient import TestClient

from app.errors import CatalogError, CatalogErrorKind, GENERIC_ERROR_MESSAGE, catalog_app_error
from app.main import create_app

from conftest import FakeCatalog, auth, build_settings, register


def test_health(client) -> None:
    response = client.get("/api/health")

    assert response.status_code == 200
    assert response.json() == {"ok": True}


def test_unknown_route_uses_envelope(client) -> None:
    response = client.get("/api/nope")

    assert response.status_code == 404
    assert response.json()["code"] == "NOT_FOUND"
    assert response.json()["error"] == "Не найдено"


def test_unexpected_errors_are_generic(settings) -> None:
    app = create_app(settings, http_transport=httpx.MockTransport(FakeCatalog().handler))
    with TestClient(app, raise_server_exceptions=False) as test_client:
        token = register(test_client, "anna@example.com")

        async def _explode(user_id: str):
            raise RuntimeError("database exploded at /var/lib/secret")

        app.state.pair_service.get_pair = _explode
        response = test_client.get("/api/pairs", headers=auth(token))

    assert response.status_code == 500
    assert response.json() == {"error": GENERIC_ERROR_MESSAGE}
    assert "secret" not in response.text


def test_catalog_error_translation() -> None:
    not_found = catalog_app_error(
        CatalogError(CatalogErrorKind.NOT_FOUND, 404), not_found_message="Сериал не найден"
    )
    rate_limited = catalog_app_error(CatalogError(CatalogErrorKind.RATE_LIMITED, 429))
    network = catalog_app_error(CatalogError(CatalogErrorKind.NETWORK))

    assert (not_found.status_code, not_found.code, not_found.message) == (
        404,
        "NOT_FOUND",
        "Сериал не найден",
    )
    assert (rate_limited.status_code, rate_limited.code) == (502, "TMDB_ERROR")
    assert network.message.startswith("Нет связи")


def test_auth_endpoints_are_rate_limited(tmp_path) -> None:
    settings = build_settings(tmp_path, RATE_LIMIT_ENABLED=True)
    app = create_app(settings, http_transport=httpx.MockTransport(FakeCatalog().handler))
    with TestClient(app) as test_client:
        statuses = [test_client.post("/api/auth/logout").status_code for _ in range(21)]
        health = test_client.get("/api/health")

    assert statuses[:20] == [200] * 20
    assert statuses[20] == 429
    assert health.status_code == 200


def test_rate_limited_response_uses_envelope(tmp_path) -> None:
    settings = build_settings(tmp_path, RATE_LIMIT_ENABLED=True)
    app = create_app(settings, http_transport=httpx.MockTransport(FakeCatalog().handler))
    with TestClient(app) as test_client:
        for _ in range(20):
            test_client.post("/api/auth/logout")
        response = test_client.post("/api/auth/logout")

    assert response.status_code == 429
    assert response.json()["code"] == "RATE_LIMITED"
