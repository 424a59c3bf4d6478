"""Sign in with Apple: authorization redirect, code exchange and token checks."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

import httpx
from jose import JWTError, jwt

from ..config import Settings
from ..errors import AppError

logger = logging.getLogger(__name__)

APPLE_ISSUER = "https://appleid.apple.com"
AUTHORIZE_URL = "https://appleid.apple.com/auth/authorize"
TOKEN_URL = "https://appleid.apple.com/auth/token"
KEYS_URL = "https://appleid.apple.com/auth/keys"
CLIENT_SECRET_TTL = 15_777_000  # about six months, Apple's maximum

_TOKEN_ERROR = "Apple не вернул токен. Повторите вход."


def _not_configured() -> AppError:
    return AppError(503, "Sign in with Apple не настроен", "CONFIG")


@dataclass(slots=True)
class AppleIdentity:
    subject: str
    email: str | None = None


class AppleKeySet:
    """Cached copy of Apple's published signing keys."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        ttl_seconds: float = 600.0,
        min_refresh_interval: float = 60.0,
    ):
        self._client = http_client
        self._ttl = ttl_seconds
        self._min_refresh_interval = min_refresh_interval
        self._keys: dict[str, dict[str, Any]] = {}
        self._fetched_at: float | None = None

    async def get(self, kid: str) -> dict[str, Any]:
        age = self._age()
        if age is None or age >= self._ttl:
            await self._refresh()
        elif kid not in self._keys and age >= self._min_refresh_interval:
            # Unknown kids usually mean Apple rotated its keys. Forged kids
            # must not turn every request into a fetch, hence the interval.
            await self._refresh()
        key = self._keys.get(kid)
        if key is None:
            raise AppError(401, "Недействительный токен Apple", "APPLE_TOKEN")
        return key

    def _age(self) -> float | None:
        if self._fetched_at is None:
            return None
        return time.monotonic() - self._fetched_at

    async def _refresh(self) -> None:
        try:
            response = await self._client.get(KEYS_URL)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Could not fetch Apple signing keys: %s", exc)
            raise AppError(401, _TOKEN_ERROR, "APPLE_TOKEN") from exc
        keys = {
            str(key["kid"]): key
            for key in payload.get("keys") or []
            if isinstance(key, dict) and key.get("kid")
        }
        self._keys = keys
        self._fetched_at = time.monotonic()


class AppleSignInClient:
    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        *,
        key_set: AppleKeySet | None = None,
    ):
        self._settings = settings
        self._client = http_client
        self._keys = key_set or AppleKeySet(http_client)

    @property
    def configured(self) -> bool:
        return self._settings.apple_configured

    def authorization_url(self, state: str, nonce: str) -> str:
        if not self.configured:
            raise _not_configured()
        params = {
            "client_id": self._settings.apple_client_id,
            "redirect_uri": self._settings.apple_redirect_uri,
            "response_type": "code",
            "response_mode": "form_post",
            "scope": "name email",
            "state": state,
            "nonce": nonce,
        }
        return f"{AUTHORIZE_URL}?{urlencode(params)}"

    def client_secret(self) -> str:
        """Sign the short-lived ES256 JWT Apple expects as ``client_secret``."""

        settings = self._settings
        if not (
            settings.apple_team_id
            and settings.apple_key_id
            and settings.apple_client_id
            and settings.apple_private_key
        ):
            raise _not_configured()
        now = int(time.time())
        claims = {
            "iss": settings.apple_team_id,
            "iat": now,
            "exp": now + CLIENT_SECRET_TTL,
            "aud": APPLE_ISSUER,
            "sub": settings.apple_client_id,
        }
        return jwt.encode(
            claims,
            settings.apple_private_key,
            algorithm="ES256",
            headers={"kid": settings.apple_key_id},
        )

    async def exchange_code(self, code: str) -> str:
        """Trade an authorization code for Apple's identity token."""

        if not self.configured:
            raise _not_configured()
        data = {
            "client_id": self._settings.apple_client_id,
            "client_secret": self.client_secret(),
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": self._settings.apple_redirect_uri,
        }
        try:
            response = await self._client.post(TOKEN_URL, data=data)
        except httpx.HTTPError as exc:
            logger.warning("Apple token exchange failed: %s", exc)
            raise AppError(401, _TOKEN_ERROR, "APPLE_TOKEN") from exc
        if response.status_code >= 300:
            logger.warning(
                "Apple token exchange returned %s: %s",
                response.status_code,
                response.text[:200],
            )
            raise AppError(401, _TOKEN_ERROR, "APPLE_TOKEN")
        try:
            id_token = response.json().get("id_token")
        except ValueError:
            id_token = None
        if not id_token:
            raise AppError(401, "Нет id_token от Apple", "APPLE_TOKEN")
        return str(id_token)

    async def verify_identity_token(
        self, id_token: str, *, nonce: str | None = None
    ) -> AppleIdentity:
        try:
            header = jwt.get_unverified_header(id_token)
        except JWTError as exc:
            raise AppError(401, "Недействительный токен Apple", "APPLE_TOKEN") from exc
        kid = header.get("kid")
        if not kid:
            raise AppError(401, "Недействительный токен Apple", "APPLE_TOKEN")

        key = await self._keys.get(str(kid))
        try:
            claims = jwt.decode(
                id_token,
                key,
                algorithms=["RS256"],
                audience=self._settings.apple_client_id,
                issuer=APPLE_ISSUER,
                options={"verify_at_hash": False},
            )
        except JWTError as exc:
            logger.info("Rejected Apple identity token: %s", exc)
            raise AppError(401, "Недействительный токен Apple", "APPLE_TOKEN") from exc

        token_nonce = claims.get("nonce")
        if nonce and token_nonce is not None and token_nonce != nonce:
            raise AppError(401, "Недействительный токен Apple", "APPLE_TOKEN")

        subject = claims.get("sub")
        if not subject:
            raise AppError(401, "Недействительный токен Apple", "APPLE_TOKEN")
        email = claims.get("email")
        return AppleIdentity(subject=str(subject), email=str(email) if email else None)

    @staticmethod
    def display_name(user_json: str | None) -> str | None:
        """Extract the name Apple posts alongside the first authorization only."""

        if not user_json:
            return None
        try:
            data = json.loads(user_json)
        except ValueError:
            return None
        name = data.get("name") if isinstance(data, dict) else None
        if not isinstance(name, dict):
            return None
        parts = [str(name.get("firstName") or ""), str(name.get("lastName") or "")]
        joined = " ".join(part for part in parts if part).strip()
        return joined or None
