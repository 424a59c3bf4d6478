"""Account storage: password sign-up, login and Apple identity linking."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.concurrency import run_in_threadpool

from ..db_models import User
from ..errors import AppError
from ..security import dummy_verify, hash_password, verify_password
from ..utils import utcnow

logger = logging.getLogger(__name__)

APPLE_DEFAULT_NAME = "Пользователь Apple"
INVALID_CREDENTIALS = "Некорректный email или пароль"


def user_payload(user: User, *, include_avatar: bool = False) -> dict[str, Any]:
    payload: dict[str, Any] = {"id": user.id, "email": user.email, "name": user.name}
    if include_avatar:
        payload["avatar_url"] = user.avatar_url
    return payload


class UserService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def register(self, email: str, password: str, name: str = "") -> User:
        email = email.strip().lower()
        async with self._session_factory() as session:
            if await self._by_email(session, email) is not None:
                raise AppError(
                    409,
                    "Пользователь с таким email уже зарегистрирован",
                    "EMAIL_EXISTS",
                )
            password_hash = await run_in_threadpool(hash_password, password)
            user = User(email=email, password_hash=password_hash, name=name.strip())
            session.add(user)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise AppError(
                    409,
                    "Пользователь с таким email уже зарегистрирован",
                    "EMAIL_EXISTS",
                ) from exc
            logger.info("Registered user %s", user.id)
            return user

    async def authenticate(self, email: str, password: str) -> User:
        """Return the user for valid credentials; every failure looks the same."""

        async with self._session_factory() as session:
            user = await self._by_email(session, email.strip().lower())
        if user is None:
            await run_in_threadpool(dummy_verify)
            raise AppError(401, INVALID_CREDENTIALS, "UNAUTHORIZED")
        valid = await run_in_threadpool(verify_password, password, user.password_hash)
        if not valid:
            raise AppError(401, INVALID_CREDENTIALS, "UNAUTHORIZED")
        return user

    async def get_user(self, user_id: str) -> User:
        async with self._session_factory() as session:
            user = await session.get(User, user_id)
        if user is None:
            raise AppError(404, "Пользователь не найден", "NOT_FOUND")
        return user

    async def find_or_create_apple_user(
        self, apple_sub: str, email: str | None, name: str | None
    ) -> User:
        """Resolve an Apple identity by subject, then by e-mail, else create it."""

        async with self._session_factory() as session:
            result = await session.execute(select(User).where(User.apple_id == apple_sub))
            user = result.scalar_one_or_none()
            if user is not None:
                return user

            address = (email or f"apple_{apple_sub[:8]}@pairly.local").strip().lower()
            user = await self._by_email(session, address)
            if user is not None:
                if user.apple_id is None:
                    user.apple_id = apple_sub
                    await session.commit()
                    logger.info("Linked Apple identity to user %s", user.id)
                return user

            user = User(
                email=address,
                password_hash=None,
                apple_id=apple_sub,
                name=(name or "").strip() or APPLE_DEFAULT_NAME,
            )
            session.add(user)
            await session.commit()
            logger.info("Created user %s from Apple sign-in", user.id)
            return user

    async def set_avatar(self, user_id: str, avatar_url: str) -> None:
        async with self._session_factory() as session:
            result = await session.execute(
                update(User)
                .where(User.id == user_id)
                .values(avatar_url=avatar_url, updated_at=utcnow())
            )
            if result.rowcount == 0:
                await session.rollback()
                raise AppError(404, "Пользователь не найден", "NOT_FOUND")
            await session.commit()

    @staticmethod
    async def _by_email(session: AsyncSession, email: str) -> User | None:
        result = await session.execute(select(User).where(User.email == email))
        return result.scalar_one_or_none()
