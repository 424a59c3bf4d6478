"""Error types and the JSON error envelope shared by every endpoint."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Mapping

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

from .models import FIELD_MESSAGES

logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "Внутренняя ошибка сервера"


class AppError(Exception):
    """An expected failure carrying an HTTP status and a machine-readable code."""

    def __init__(self, status_code: int, message: str, code: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.code = code


class CatalogErrorKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"
    NETWORK = "network"
    UNAVAILABLE = "unavailable"


class CatalogError(Exception):
    """Raised by the catalog client; the kind is decided from the upstream response."""

    def __init__(self, kind: CatalogErrorKind, status_code: int | None = None):
        super().__init__(f"Catalog request failed: {kind.value}")
        self.kind = kind
        self.status_code = status_code


_CATALOG_MESSAGES: dict[CatalogErrorKind, str] = {
    CatalogErrorKind.RATE_LIMITED: "Слишком много запросов. Попробуйте через минуту.",
    CatalogErrorKind.TIMEOUT: "Нет связи с сервисом фильмов. Проверьте интернет.",
    CatalogErrorKind.NETWORK: "Нет связи с сервисом фильмов. Проверьте интернет.",
    CatalogErrorKind.UNAVAILABLE: "Сервис фильмов временно недоступен. Попробуйте позже.",
}


def catalog_app_error(exc: CatalogError, *, not_found_message: str = "Фильм не найден") -> AppError:
    """Translate a catalog failure into the error shown to the client."""

    if exc.kind is CatalogErrorKind.NOT_FOUND:
        return AppError(404, not_found_message, "NOT_FOUND")
    return AppError(502, _CATALOG_MESSAGES[exc.kind], "TMDB_ERROR")


def _error_payload(message: str, code: str | None) -> dict[str, str]:
    payload = {"error": message}
    if code:
        payload["code"] = code
    return payload


_TYPE_MESSAGES: dict[str, str] = {
    "missing": "обязательное поле",
    "string_type": "ожидается строка",
    "string_too_short": "слишком короткое значение",
    "string_too_long": "слишком длинное значение",
    "int_type": "ожидается целое число",
    "int_parsing": "ожидается целое число",
    "literal_error": "недопустимое значение",
}

_HTTP_MESSAGES: dict[int, str] = {
    404: "Не найдено",
    405: "Метод не поддерживается",
}


def _validation_message(error: Mapping[str, Any]) -> str:
    error_type = str(error.get("type") or "")
    if error_type == "json_invalid":
        return "Некорректный JSON"
    location = [
        str(part)
        for part in error.get("loc", ())
        if part not in {"body", "query", "path", "form"}
    ]
    if location and location[-1] in FIELD_MESSAGES:
        return FIELD_MESSAGES[location[-1]]
    if error_type == "value_error":
        # pydantic prefixes messages raised from custom validators.
        return str(error.get("msg") or "").removeprefix("Value error, ")
    if not location:
        return "Некорректный запрос"
    return f"{'.'.join(location)}: {_TYPE_MESSAGES.get(error_type, 'некорректное значение')}"


def _format_validation_errors(exc: RequestValidationError) -> str:
    messages: list[str] = []
    for error in exc.errors():
        message = _validation_message(error)
        if message and message not in messages:
            messages.append(message)
    return "; ".join(messages) or "Некорректный запрос"


def install_error_handlers(app: FastAPI, *, session_cookie: str) -> None:
    """Register handlers that shape every failure into ``{error, code?}``."""

    @app.exception_handler(AppError)
    async def _app_error_handler(request: Request, exc: AppError) -> JSONResponse:
        response = JSONResponse(
            _error_payload(exc.message, exc.code), status_code=exc.status_code
        )
        if exc.status_code == 401:
            response.delete_cookie(session_cookie, path="/", httponly=True, samesite="lax")
        return response

    @app.exception_handler(RequestValidationError)
    async def _validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return JSONResponse(
            _error_payload(_format_validation_errors(exc), "VALIDATION_ERROR"),
            status_code=400,
        )

    @app.exception_handler(StarletteHTTPException)
    async def _http_error_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        code = "NOT_FOUND" if exc.status_code == 404 else None
        return JSONResponse(
            _error_payload(_HTTP_MESSAGES.get(exc.status_code, str(exc.detail)), code),
            status_code=exc.status_code,
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RateLimitExceeded)
    async def _rate_limit_handler(
        request: Request, exc: RateLimitExceeded
    ) -> JSONResponse:
        return JSONResponse(
            _error_payload("Слишком много запросов. Подождите минуту.", "RATE_LIMITED"),
            status_code=429,
        )

    @app.exception_handler(Exception)
    async def _unexpected_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(
            "Unhandled error during %s %s", request.method, request.url.path, exc_info=exc
        )
        return JSONResponse({"error": GENERIC_ERROR_MESSAGE}, status_code=500)
