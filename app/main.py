"""Entry point for the Pairly FastAPI backend."""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager
from datetime import timedelta
from typing import Any

import httpx
from fastapi import Depends, FastAPI, File, Form, Path, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles
from slowapi import Limiter
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from .cache import create_cache
from .config import Settings, get_settings
from .database import Database
from .errors import AppError, CatalogError, catalog_app_error, install_error_handlers
from .models import (
    AddWatchlistRequest,
    CatalogItem,
    ImageConfig,
    JoinPairRequest,
    LoginRequest,
    MediaType,
    RateRequest,
    RegisterRequest,
)
from .security import (
    SESSION_COOKIE,
    SessionUser,
    clear_session_cookie,
    create_session_token,
    current_user,
    set_session_cookie,
)
from .services.apple import AppleSignInClient
from .services.avatars import MAX_FILE_BYTES, AvatarStore
from .services.enrichment import POSTER_SIZE
from .services.movie_cache import MovieCacheStore
from .services.pairs import PairService
from .services.tmdb import TMDBClient
from .services.users import UserService, user_payload
from .services.watchlist import WatchlistService
from .utils import random_token

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

AUTH_RATE_LIMIT = "20 per 15 minutes"
API_RATE_LIMIT = "120/minute"
APPLE_STATE_COOKIE = "pairly_apple_state"
APPLE_NONCE_COOKIE = "pairly_apple_nonce"
APPLE_COOKIE_PATH = "/api/auth/apple"
APPLE_COOKIE_MAX_AGE = 10 * 60
SORT_KEYS = ("added_at", "rating", "title")

app: FastAPI


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    settings: Settings = fastapi_app.state.settings
    transport: httpx.AsyncBaseTransport | None = fastapi_app.state.http_transport
    client_kwargs: dict[str, Any] = {"transport": transport} if transport else {}

    exit_stack = AsyncExitStack()
    tmdb_http = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.tmdb_api_url),
            timeout=httpx.Timeout(settings.tmdb_timeout_seconds, connect=5.0),
            **client_kwargs,
        )
    )
    apple_http = await exit_stack.enter_async_context(
        httpx.AsyncClient(timeout=httpx.Timeout(15.0, connect=5.0), **client_kwargs)
    )

    database = Database(settings.database_url)
    await database.create_all()
    cache = create_cache(settings.cache_url)

    movie_cache = MovieCacheStore(
        database.session_factory, max_age=timedelta(days=settings.movie_cache_days)
    )
    tmdb = TMDBClient(settings, tmdb_http, cache, movie_cache)
    pairs = PairService(database.session_factory)
    watchlist = WatchlistService(
        database.session_factory,
        tmdb,
        pairs,
        concurrency=settings.tmdb_concurrency,
    )
    avatars = AvatarStore(settings.avatars_dir)
    avatars.ensure_directory()

    fastapi_app.state.database = database
    fastapi_app.state.cache = cache
    fastapi_app.state.tmdb = tmdb
    fastapi_app.state.pair_service = pairs
    fastapi_app.state.user_service = UserService(database.session_factory)
    fastapi_app.state.watchlist_service = watchlist
    fastapi_app.state.apple = AppleSignInClient(settings, apple_http)
    fastapi_app.state.avatars = avatars
    logger.info("Pairly started (environment=%s)", settings.environment)

    try:
        yield
    finally:
        await watchlist.drain_backfills()
        await cache.close()
        await database.dispose()
        await exit_stack.aclose()
        logger.info("Pairly stopped")


def create_app(
    settings: Settings | None = None,
    *,
    http_transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Shared movie and series watchlist for couples",
        version="1.0.0",
        lifespan=lifespan,
    )
    fastapi_app.state.settings = settings
    fastapi_app.state.http_transport = http_transport

    limiter = Limiter(
        key_func=get_remote_address,
        default_limits=[API_RATE_LIMIT],
        storage_uri="memory://",
        enabled=settings.rate_limit_enabled,
    )
    fastapi_app.state.limiter = limiter

    install_error_handlers(fastapi_app, session_cookie=SESSION_COOKIE)
    fastapi_app.add_middleware(SlowAPIMiddleware)
    fastapi_app.add_middleware(GZipMiddleware, minimum_size=1000)
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.allowed_origins),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    register_routes(fastapi_app, limiter)
    fastapi_app.mount(
        "/api/avatars",
        StaticFiles(directory=settings.avatars_dir, check_dir=False),
        name="avatars",
    )
    return fastapi_app


def _state(fastapi_app: FastAPI, name: str, expected: type) -> Any:
    service = getattr(fastapi_app.state, name, None)
    if not isinstance(service, expected):
        raise RuntimeError(f"{expected.__name__} not initialised")
    return service


def get_watchlist_service(fastapi_app: FastAPI) -> WatchlistService:
    return _state(fastapi_app, "watchlist_service", WatchlistService)


def get_tmdb_client(fastapi_app: FastAPI) -> TMDBClient:
    return _state(fastapi_app, "tmdb", TMDBClient)


def _search_result_payload(item: CatalogItem, image_config: ImageConfig) -> dict[str, Any]:
    return {
        "id": item.id,
        "media_type": item.media_type,
        "title": item.title,
        "overview": item.overview,
        "release_date": item.release_date,
        "poster_path": image_config.poster_url(item.poster_path, POSTER_SIZE),
        "vote_average": item.vote_average,
    }


def _detail_payload(item: CatalogItem, image_config: ImageConfig) -> dict[str, Any]:
    return {
        "id": item.id,
        "media_type": item.media_type,
        "title": item.title,
        "overview": item.overview,
        "release_date": item.release_date,
        "poster_path": image_config.poster_url(item.poster_path, "w780"),
        "poster_path_thumb": image_config.poster_url(item.poster_path, "w300"),
        "vote_average": item.vote_average,
        "genres": item.genres,
        "runtime": item.runtime,
    }


def register_routes(fastapi_app: FastAPI, limiter: Limiter) -> None:
    settings: Settings = fastapi_app.state.settings

    def users() -> UserService:
        return _state(fastapi_app, "user_service", UserService)

    def pairs() -> PairService:
        return _state(fastapi_app, "pair_service", PairService)

    def apple() -> AppleSignInClient:
        return _state(fastapi_app, "apple", AppleSignInClient)

    def _session_response(user, *, status_code: int = 200) -> JSONResponse:
        token = create_session_token(settings, user.id, user.email)
        response = JSONResponse(
            {"user": user_payload(user), "token": token}, status_code=status_code
        )
        set_session_cookie(response, settings, token)
        return response

    def _set_apple_cookie(response, name: str, value: str) -> None:
        # Apple posts the callback cross-site, which lax cookies do not survive.
        response.set_cookie(
            name,
            value,
            max_age=APPLE_COOKIE_MAX_AGE,
            path=APPLE_COOKIE_PATH,
            httponly=True,
            secure=settings.secure_cookies,
            samesite="none" if settings.secure_cookies else "lax",
        )

    def _clear_apple_cookies(response) -> None:
        for name in (APPLE_STATE_COOKIE, APPLE_NONCE_COOKIE):
            response.delete_cookie(name, path=APPLE_COOKIE_PATH, httponly=True)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------
    @fastapi_app.get("/api/health")
    @limiter.exempt
    async def healthcheck(request: Request) -> dict[str, bool]:
        return {"ok": True}

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------
    @fastapi_app.post("/api/auth/register", status_code=201)
    @limiter.limit(AUTH_RATE_LIMIT)
    async def register(request: Request, body: RegisterRequest) -> JSONResponse:
        user = await users().register(body.email, body.password, body.name)
        return _session_response(user, status_code=201)

    @fastapi_app.post("/api/auth/login")
    @limiter.limit(AUTH_RATE_LIMIT)
    async def login(request: Request, body: LoginRequest) -> JSONResponse:
        user = await users().authenticate(body.email, body.password)
        return _session_response(user)

    @fastapi_app.post("/api/auth/logout")
    @limiter.limit(AUTH_RATE_LIMIT)
    async def logout(request: Request) -> JSONResponse:
        response = JSONResponse({"message": "Выход выполнен"})
        clear_session_cookie(response, settings)
        return response

    @fastapi_app.get("/api/auth/me")
    @limiter.limit(AUTH_RATE_LIMIT)
    async def me(
        request: Request, session: SessionUser = Depends(current_user)
    ) -> dict[str, Any]:
        user = await users().get_user(session.id)
        return user_payload(user, include_avatar=True)

    @fastapi_app.get("/api/auth/apple")
    @limiter.limit(AUTH_RATE_LIMIT)
    async def apple_login(request: Request) -> RedirectResponse:
        client = apple()
        state = random_token(32)
        nonce = random_token(32)
        response = RedirectResponse(client.authorization_url(state, nonce), status_code=302)
        _set_apple_cookie(response, APPLE_STATE_COOKIE, state)
        _set_apple_cookie(response, APPLE_NONCE_COOKIE, nonce)
        return response

    @fastapi_app.post("/api/auth/apple/callback")
    @limiter.limit(AUTH_RATE_LIMIT)
    async def apple_callback(
        request: Request,
        code: str | None = Form(default=None),
        state: str | None = Form(default=None),
        user: str | None = Form(default=None),
    ):
        client = apple()
        if not client.configured:
            raise AppError(503, "Sign in with Apple не настроен", "CONFIG")
        saved_state = request.cookies.get(APPLE_STATE_COOKIE)
        saved_nonce = request.cookies.get(APPLE_NONCE_COOKIE)

        message: str | None = None
        if not code or not state:
            message = "Некорректный ответ от Apple"
        elif not saved_state or saved_state != state:
            message = "Неверный state. Повторите вход."
        if message is not None:
            rejected = JSONResponse(
                {"error": message, "code": "BAD_REQUEST"}, status_code=400
            )
            _clear_apple_cookies(rejected)
            return rejected

        id_token = await client.exchange_code(code)
        identity = await client.verify_identity_token(id_token, nonce=saved_nonce)
        account = await users().find_or_create_apple_user(
            identity.subject, identity.email, client.display_name(user)
        )
        token = create_session_token(settings, account.id, account.email)
        response = RedirectResponse(f"{settings.primary_origin}/", status_code=302)
        _clear_apple_cookies(response)
        set_session_cookie(response, settings, token)
        return response

    # ------------------------------------------------------------------
    # Pairs
    # ------------------------------------------------------------------
    @fastapi_app.get("/api/pairs")
    async def get_pair(session: SessionUser = Depends(current_user)) -> dict[str, Any]:
        view = await pairs().get_pair(session.id)
        return {"pair": view.to_payload() if view else None}

    @fastapi_app.post("/api/pairs/create", status_code=201)
    async def create_pair(
        session: SessionUser = Depends(current_user),
    ) -> dict[str, Any]:
        view = await pairs().create(session.id)
        return {"pair": view.to_payload(), "message": "Покажите этот код партнёру"}

    @fastapi_app.post("/api/pairs/join")
    async def join_pair(
        body: JoinPairRequest, session: SessionUser = Depends(current_user)
    ) -> dict[str, Any]:
        view = await pairs().join(session.id, body.code)
        return {"pair": view.to_payload(), "message": "Вы присоединились к паре"}

    @fastapi_app.post("/api/pairs/leave")
    async def leave_pair(session: SessionUser = Depends(current_user)) -> dict[str, str]:
        await pairs().leave(session.id)
        return {"message": "Вы вышли из пары"}

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------
    @fastapi_app.get("/api/movies/search")
    async def search_movies(q: str = "", page: int = 1) -> dict[str, Any]:
        query = q.strip()
        if not query:
            return {"page": 1, "results": [], "total_pages": 0, "total_results": 0}
        tmdb = get_tmdb_client(fastapi_app)
        try:
            result = await tmdb.search(query, page)
        except CatalogError as exc:
            raise catalog_app_error(exc) from exc
        image_config = await tmdb.image_config_or_default()
        return {
            "page": result.page,
            "results": [
                _search_result_payload(item, image_config) for item in result.results
            ],
            "total_pages": result.total_pages,
            "total_results": result.total_results,
        }

    @fastapi_app.get("/api/movies/config/image")
    async def image_configuration() -> dict[str, Any]:
        try:
            config = await get_tmdb_client(fastapi_app).get_image_config()
        except CatalogError as exc:
            raise catalog_app_error(exc) from exc
        return {"base_url": config.base_url, "poster_sizes": config.poster_sizes}

    @fastapi_app.get("/api/movies/{movie_id}")
    async def movie_detail(
        movie_id: int = Path(gt=0),
        media_type: MediaType = Query(default="movie", alias="type"),
    ) -> dict[str, Any]:
        tmdb = get_tmdb_client(fastapi_app)
        try:
            item = await tmdb.get_detail(movie_id, media_type)
        except CatalogError as exc:
            raise catalog_app_error(exc) from exc
        image_config = await tmdb.image_config_or_default()
        return _detail_payload(item, image_config)

    # ------------------------------------------------------------------
    # Watchlist
    # ------------------------------------------------------------------
    @fastapi_app.get("/api/watchlist/me")
    async def my_watchlist(
        sort: str = "added_at", session: SessionUser = Depends(current_user)
    ) -> dict[str, Any]:
        sort_key = sort if sort in SORT_KEYS else "added_at"
        items = await get_watchlist_service(fastapi_app).list_mine(session.id, sort_key)  # type: ignore[arg-type]
        return {"items": items}

    @fastapi_app.get("/api/watchlist/partner")
    async def partner_watchlist(
        session: SessionUser = Depends(current_user),
    ) -> dict[str, Any]:
        items = await get_watchlist_service(fastapi_app).list_partner(session.id)
        return {"items": items}

    @fastapi_app.get("/api/watchlist/intersections")
    async def intersections(
        session: SessionUser = Depends(current_user),
    ) -> dict[str, Any]:
        items = await get_watchlist_service(fastapi_app).list_intersections(session.id)
        return {"items": items}

    @fastapi_app.post("/api/watchlist/me", status_code=201)
    async def add_to_watchlist(
        body: AddWatchlistRequest, session: SessionUser = Depends(current_user)
    ) -> dict[str, str]:
        await get_watchlist_service(fastapi_app).add(
            session.id, body.movie_id, body.media_type
        )
        return {"message": "Фильм добавлен в список"}

    @fastapi_app.delete("/api/watchlist/me/{movie_id}")
    async def remove_from_watchlist(
        movie_id: int = Path(gt=0),
        media_type: MediaType = Query(default="movie", alias="type"),
        session: SessionUser = Depends(current_user),
    ) -> dict[str, str]:
        await get_watchlist_service(fastapi_app).remove(session.id, movie_id, media_type)
        return {"message": "Фильм удалён из списка"}

    @fastapi_app.put("/api/watchlist/me/{movie_id}/rate")
    async def rate_item(
        body: RateRequest,
        movie_id: int = Path(gt=0),
        media_type: MediaType = Query(default="movie", alias="type"),
        session: SessionUser = Depends(current_user),
    ) -> dict[str, str]:
        await get_watchlist_service(fastapi_app).rate(
            session.id, movie_id, media_type, body.rating
        )
        return {"message": "Оценка сохранена"}

    @fastapi_app.delete("/api/watchlist/me/{movie_id}/rate")
    async def unrate_item(
        movie_id: int = Path(gt=0),
        media_type: MediaType = Query(default="movie", alias="type"),
        session: SessionUser = Depends(current_user),
    ) -> dict[str, str]:
        await get_watchlist_service(fastapi_app).unrate(session.id, movie_id, media_type)
        return {"message": "Статус «Просмотрено» снят"}

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------
    @fastapi_app.put("/api/profile/avatar")
    async def upload_avatar(
        file: UploadFile | None = File(default=None),
        session: SessionUser = Depends(current_user),
    ) -> dict[str, str]:
        if file is None:
            raise AppError(
                400, "Выберите файл (JPEG, PNG или WebP)", "VALIDATION_ERROR"
            )
        data = await file.read(MAX_FILE_BYTES + 1)
        store: AvatarStore = _state(fastapi_app, "avatars", AvatarStore)
        avatar_url = await store.save(session.id, file.content_type, data)
        await users().set_avatar(session.id, avatar_url)
        return {"avatar_url": avatar_url}


app = create_app()


if __name__ == "__main__":  # pragma: no cover - manual execution
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=app.state.settings.server_host,
        port=app.state.settings.server_port,
        reload=app.state.settings.environment == "development",
    )
