"""Pairing of two users through a six digit join code."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import Pair, User
from ..errors import AppError
from ..utils import generate_pair_code

logger = logging.getLogger(__name__)

MAX_CODE_ATTEMPTS = 10


@dataclass(slots=True)
class PairView:
    id: str
    code: str
    created_at: datetime
    partner: dict[str, Any] | None

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "code": self.code,
            "partner": self.partner,
            "created_at": self.created_at.isoformat(),
        }


def _user_summary(user: User | None) -> dict[str, Any] | None:
    if user is None:
        return None
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "avatar_url": user.avatar_url,
    }


class PairService:
    """Create, join and leave pairs; a user belongs to at most one pair."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get_pair(self, user_id: str) -> PairView | None:
        async with self._session_factory() as session:
            pair = await self._find_membership(session, user_id)
            if pair is None:
                return None
            partner_id = pair.user_b_id if pair.user_a_id == user_id else pair.user_a_id
            partner = await session.get(User, partner_id) if partner_id else None
            return PairView(pair.id, pair.code, pair.created_at, _user_summary(partner))

    async def partner_id(self, user_id: str) -> str | None:
        """Return the partner of ``user_id``; ``None`` while the pair is still open."""

        async with self._session_factory() as session:
            pair = await self._find_membership(session, user_id)
        if pair is None:
            raise AppError(404, "У вас нет пары", "NO_PAIR")
        return pair.user_b_id if pair.user_a_id == user_id else pair.user_a_id

    async def create(self, user_id: str) -> PairView:
        async with self._session_factory() as session:
            if await self._find_membership(session, user_id) is not None:
                raise AppError(
                    409,
                    "Вы уже состоите в паре. Выйдите из текущей пары.",
                    "ALREADY_IN_PAIR",
                )

            for attempt in range(1, MAX_CODE_ATTEMPTS + 1):
                code = generate_pair_code()
                taken = await session.execute(
                    select(Pair.id).where(Pair.code == code, Pair.user_b_id.is_(None))
                )
                if taken.first() is not None:
                    continue
                pair = Pair(code=code, user_a_id=user_id)
                session.add(pair)
                try:
                    await session.commit()
                except IntegrityError:
                    # Lost a race for the code (or the caller joined a pair meanwhile).
                    await session.rollback()
                    if await self._find_membership(session, user_id) is not None:
                        raise AppError(
                            409,
                            "Вы уже состоите в паре. Выйдите из текущей пары.",
                            "ALREADY_IN_PAIR",
                        )
                    logger.info("Pair code collision on attempt %s", attempt)
                    continue
                logger.info("User %s opened pair %s", user_id, pair.id)
                return PairView(pair.id, pair.code, pair.created_at, None)

        raise AppError(
            503,
            "Не удалось создать код пары. Попробуйте ещё раз.",
            "PAIR_CODE_EXHAUSTED",
        )

    async def join(self, user_id: str, code: str) -> PairView:
        async with self._session_factory() as session:
            if await self._find_membership(session, user_id) is not None:
                raise AppError(
                    409,
                    "Вы уже состоите в паре. Выйдите из текущей пары, чтобы присоединиться к другой.",
                    "ALREADY_IN_PAIR",
                )
            result = await session.execute(
                select(Pair).where(Pair.code == code, Pair.user_b_id.is_(None))
            )
            pair = result.scalar_one_or_none()
            if pair is None:
                raise AppError(
                    404, "Код не найден или пара уже сформирована", "CODE_NOT_FOUND"
                )
            if pair.user_a_id == user_id:
                raise AppError(400, "Нельзя присоединиться к своей паре по коду", "SELF_JOIN")

            try:
                claimed = await session.execute(
                    update(Pair)
                    .where(Pair.id == pair.id, Pair.user_b_id.is_(None))
                    .values(user_b_id=user_id)
                )
                if claimed.rowcount != 1:
                    await session.rollback()
                    raise AppError(
                        404, "Код не найден или пара уже сформирована", "CODE_NOT_FOUND"
                    )
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise AppError(409, "Вы уже состоите в паре.", "ALREADY_IN_PAIR") from exc

            partner = await session.get(User, pair.user_a_id)
            logger.info("User %s joined pair %s", user_id, pair.id)
            return PairView(pair.id, pair.code, pair.created_at, _user_summary(partner))

    async def leave(self, user_id: str) -> None:
        """Initiators dissolve the pair; joiners free their slot and reopen it."""

        async with self._session_factory() as session:
            pair = await self._find_membership(session, user_id)
            if pair is None:
                raise AppError(404, "Вы не состоите в паре", "NOT_IN_PAIR")
            pair_id = pair.id
            if pair.user_a_id == user_id:
                await session.execute(delete(Pair).where(Pair.id == pair_id))
                await session.commit()
            else:
                await self._reopen(session, pair_id)
            logger.info("User %s left pair %s", user_id, pair_id)

    async def _reopen(self, session: AsyncSession, pair_id: str) -> None:
        """Clear the joiner slot, re-rolling the code if another open pair now holds it."""

        values: dict[str, Any] = {"user_b_id": None}
        for _ in range(MAX_CODE_ATTEMPTS):
            try:
                await session.execute(
                    update(Pair).where(Pair.id == pair_id).values(**values)
                )
                await session.commit()
                return
            except IntegrityError:
                await session.rollback()
                values["code"] = generate_pair_code()
        raise AppError(
            503,
            "Не удалось освободить код пары. Попробуйте ещё раз.",
            "PAIR_CODE_EXHAUSTED",
        )

    @staticmethod
    async def _find_membership(session: AsyncSession, user_id: str) -> Pair | None:
        result = await session.execute(
            select(Pair).where(or_(Pair.user_a_id == user_id, Pair.user_b_id == user_id))
        )
        return result.scalars().first()
