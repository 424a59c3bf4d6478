"""Password hashing, session tokens and the session cookie."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from fastapi import Request, Response
from jose import JWTError, jwt
from passlib.context import CryptContext

from .config import Settings
from .errors import AppError
from .utils import utcnow

SESSION_COOKIE = "pairly_token"

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    """Return a salted bcrypt hash."""

    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str | None) -> bool:
    """Constant-time check; accounts without a password never match."""

    if not password_hash:
        pwd_context.dummy_verify()
        return False
    try:
        return pwd_context.verify(password, password_hash)
    except ValueError:
        return False


def dummy_verify() -> None:
    """Spend the same time as a real check so unknown e-mails are not revealed."""

    pwd_context.dummy_verify()


@dataclass(slots=True, frozen=True)
class SessionUser:
    id: str
    email: str


def create_session_token(settings: Settings, user_id: str, email: str) -> str:
    now = utcnow()
    claims: dict[str, Any] = {
        "sub": user_id,
        "email": email,
        "iat": now,
        "exp": now + timedelta(days=settings.session_ttl_days),
    }
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_session_token(settings: Settings, token: str) -> SessionUser:
    try:
        claims = jwt.decode(
            token, settings.jwt_secret, algorithms=[settings.jwt_algorithm]
        )
    except JWTError as exc:
        raise AppError(401, "Недействительный токен", "UNAUTHORIZED") from exc
    user_id = claims.get("sub")
    if not isinstance(user_id, str) or not user_id:
        raise AppError(401, "Недействительный токен", "UNAUTHORIZED")
    return SessionUser(id=user_id, email=str(claims.get("email") or ""))


def set_session_cookie(response: Response, settings: Settings, token: str) -> None:
    response.set_cookie(
        SESSION_COOKIE,
        token,
        max_age=int(timedelta(days=settings.session_ttl_days).total_seconds()),
        path="/",
        httponly=True,
        secure=settings.secure_cookies,
        samesite="lax",
    )


def clear_session_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        SESSION_COOKIE,
        path="/",
        httponly=True,
        secure=settings.secure_cookies,
        samesite="lax",
    )


def _token_from_request(request: Request) -> str | None:
    header = request.headers.get("authorization") or ""
    scheme, _, credentials = header.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    cookie = request.cookies.get(SESSION_COOKIE)
    return cookie or None


async def current_user(request: Request) -> SessionUser:
    """FastAPI dependency resolving the caller from a bearer token or the cookie."""

    token = _token_from_request(request)
    if token is None:
        raise AppError(401, "Требуется авторизация", "UNAUTHORIZED")
    settings: Settings = request.app.state.settings
    return decode_session_token(settings, token)
