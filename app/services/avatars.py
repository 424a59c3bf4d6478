"""Avatar processing: validation, square crop and WebP encoding."""

from __future__ import annotations

import io
import logging
from pathlib import Path

from PIL import Image, ImageOps, UnidentifiedImageError
from starlette.concurrency import run_in_threadpool

from ..errors import AppError

logger = logging.getLogger(__name__)

AVATAR_SIZE = 200
MAX_FILE_BYTES = 2 * 1024 * 1024
ALLOWED_CONTENT_TYPES = frozenset({"image/jpeg", "image/png", "image/webp"})
ALLOWED_FORMATS = frozenset({"JPEG", "PNG", "WEBP"})
AVATAR_URL_PREFIX = "/api/avatars"


def _render(data: bytes) -> bytes:
    try:
        with Image.open(io.BytesIO(data)) as source:
            if source.format not in ALLOWED_FORMATS:
                raise AppError(
                    400, "Допустимые форматы: JPEG, PNG, WebP", "VALIDATION_ERROR"
                )
            image = ImageOps.exif_transpose(source)
            if image.mode not in ("RGB", "RGBA"):
                image = image.convert("RGBA" if "A" in image.getbands() else "RGB")
            fitted = ImageOps.fit(
                image, (AVATAR_SIZE, AVATAR_SIZE), method=Image.Resampling.LANCZOS
            )
    except (UnidentifiedImageError, OSError) as exc:
        raise AppError(400, "Не удалось прочитать изображение", "VALIDATION_ERROR") from exc

    buffer = io.BytesIO()
    fitted.save(buffer, format="WEBP", quality=85)
    return buffer.getvalue()


class AvatarStore:
    """Writes ``<user_id>.webp`` files served under ``/api/avatars``."""

    def __init__(self, directory: Path):
        self._directory = Path(directory)

    @property
    def directory(self) -> Path:
        return self._directory

    def ensure_directory(self) -> None:
        self._directory.mkdir(parents=True, exist_ok=True)

    async def save(self, user_id: str, content_type: str | None, data: bytes) -> str:
        """Store a processed avatar and return its public URL."""

        if (content_type or "").lower() not in ALLOWED_CONTENT_TYPES:
            raise AppError(400, "Допустимые форматы: JPEG, PNG, WebP", "VALIDATION_ERROR")
        if not data:
            raise AppError(
                400, "Выберите файл (JPEG, PNG или WebP)", "VALIDATION_ERROR"
            )
        if len(data) > MAX_FILE_BYTES:
            raise AppError(400, "Файл не более 2 МБ", "VALIDATION_ERROR")

        rendered = await run_in_threadpool(_render, data)
        self.ensure_directory()
        filename = f"{user_id}.webp"
        target = self._directory / filename
        temporary = target.with_suffix(".webp.tmp")
        temporary.write_bytes(rendered)
        temporary.replace(target)
        logger.info("Stored avatar for user %s", user_id)
        return f"{AVATAR_URL_PREFIX}/{filename}"
