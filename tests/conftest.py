"""Pytest configuration and test helpers."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Callable, Iterator

import httpx
import pytest


# Ensure the application package is importable when running tests without an
# editable install. This mirrors the expected runtime layout where ``app`` sits
# at the project root.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from fastapi.testclient import TestClient  # noqa: E402

from app.config import Settings  # noqa: E402
from app.main import create_app  # noqa: E402

IMAGE_BASE = "https://image.tmdb.org/t/p/"
PASSWORD = "secret123"


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


def build_settings(tmp_path: Path, **overrides: Any) -> Settings:
    """Return a settings object with defaults suitable for tests."""

    base: dict[str, Any] = {
        "DATABASE_URL": f"sqlite+aiosqlite:///{tmp_path / 'pairly.db'}",
        "CACHE_URL": "memory://",
        "TMDB_API_KEY": "tmdb-key",
        "JWT_SECRET": "test-secret",
        "AVATARS_DIR": str(tmp_path / "avatars"),
        "RATE_LIMIT_ENABLED": False,
        "WEB_ORIGIN": "http://localhost:3000",
    }
    base.update(overrides)
    return Settings(_env_file=None, **base)  # type: ignore[arg-type]


class FakeCatalog:
    """In-memory stand-in for the TMDB v3 endpoints the service calls."""

    def __init__(self) -> None:
        self.items: dict[tuple[str, int], dict[str, Any]] = {}
        self.failures: dict[tuple[str, int], int] = {}
        self.search_results: list[dict[str, Any]] = []
        self.config_status = 200
        self.requests: list[httpx.Request] = []
        self.external: Callable[[httpx.Request], httpx.Response] | None = None

    def add_movie(self, movie_id: int, title: str, **extra: Any) -> dict[str, Any]:
        payload = {
            "id": movie_id,
            "title": title,
            "overview": f"About {title}",
            "release_date": "2001-01-01",
            "poster_path": f"/poster-{movie_id}.jpg",
            "vote_average": 7.5,
            "genres": [{"id": 18, "name": "Драма"}, {"id": 35, "name": "Комедия"}],
            "runtime": 110,
        }
        payload.update(extra)
        self.items[("movie", movie_id)] = payload
        return payload

    def add_series(self, series_id: int, name: str, **extra: Any) -> dict[str, Any]:
        payload = {
            "id": series_id,
            "name": name,
            "overview": f"About {name}",
            "first_air_date": "2010-05-05",
            "poster_path": f"/series-{series_id}.jpg",
            "vote_average": 8.1,
            "genres": [{"id": 10765, "name": "Фантастика"}],
            "episode_run_time": [45],
        }
        payload.update(extra)
        self.items[("tv", series_id)] = payload
        return payload

    def detail_requests(self) -> list[httpx.Request]:
        return [
            request
            for request in self.requests
            if request.url.path.startswith(("/3/movie/", "/3/tv/"))
        ]

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.host != "api.themoviedb.org":
            if self.external is None:
                return httpx.Response(404, json={})
            return self.external(request)

        self.requests.append(request)
        path = request.url.path.removeprefix("/3")
        if path == "/configuration":
            if self.config_status != 200:
                return httpx.Response(self.config_status, json={})
            return httpx.Response(
                200,
                json={
                    "images": {
                        "secure_base_url": IMAGE_BASE,
                        "poster_sizes": ["w300", "w500", "w780", "original"],
                    }
                },
            )
        if path == "/search/multi":
            return httpx.Response(
                200,
                json={
                    "page": int(request.url.params.get("page", "1")),
                    "results": self.search_results,
                    "total_pages": 1 if self.search_results else 0,
                    "total_results": len(self.search_results),
                },
            )

        parts = path.strip("/").split("/")
        if len(parts) == 2 and parts[0] in {"movie", "tv"} and parts[1].isdigit():
            key = (parts[0], int(parts[1]))
            if key in self.failures:
                return httpx.Response(self.failures[key], json={})
            payload = self.items.get(key)
            if payload is None:
                return httpx.Response(404, json={"status_code": 34})
            return httpx.Response(200, json=payload)
        return httpx.Response(404, json={})


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return build_settings(tmp_path)


@pytest.fixture
def catalog() -> FakeCatalog:
    return FakeCatalog()


@pytest.fixture
def client(settings: Settings, catalog: FakeCatalog) -> Iterator[TestClient]:
    app = create_app(settings, http_transport=httpx.MockTransport(catalog.handler))
    with TestClient(app) as test_client:
        yield test_client


def register(
    client: TestClient, email: str, *, password: str = PASSWORD, name: str = ""
) -> str:
    """Create an account and return its bearer token."""

    response = client.post(
        "/api/auth/register", json={"email": email, "password": password, "name": name}
    )
    assert response.status_code == 201, response.text
    client.cookies.clear()
    return response.json()["token"]


def auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def drain_backfills(client: TestClient) -> None:
    """Wait for write-backs scheduled on the app's event loop."""

    service = client.app.state.watchlist_service
    client.portal.call(service.drain_backfills)
