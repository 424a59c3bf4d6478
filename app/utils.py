"""Utility helpers for the Pairly service."""

from __future__ import annotations

import secrets
import string
import unicodedata
from datetime import datetime, timezone


TOKEN_ALPHABET = string.ascii_letters + string.digits


def utcnow() -> datetime:
    """Return the current UTC time as a naive datetime, as stored in the database."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


def generate_pair_code() -> str:
    """Return a random six digit numeric join code."""

    return f"{secrets.randbelow(1_000_000):06d}"


def random_token(length: int = 32) -> str:
    """Return an unguessable alphanumeric token."""

    return "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(length))


def _is_cyrillic(char: str) -> bool:
    return "CYRILLIC" in unicodedata.name(char, "")


def _collation_element(char: str) -> tuple[int, str]:
    if not char.isalpha():
        return 0, char
    if _is_cyrillic(char):
        # Russian alphabet order; only ё shares a place with е.
        return 1, "е" if char == "ё" else char
    return 2, char


def title_sort_key(value: str | None) -> tuple[tuple[tuple[int, str], ...], str]:
    """Collation key ordering titles the way a Russian reader expects.

    Case is ignored and Cyrillic sorts ahead of other scripts. Cyrillic
    letters keep their identity (``й`` follows ``и``), accents on other
    letters are folded away.
    """

    text = (value or "").strip()
    elements: list[tuple[int, str]] = []
    for char in unicodedata.normalize("NFC", text.casefold()):
        if _is_cyrillic(char):
            elements.append(_collation_element(char))
            continue
        for part in unicodedata.normalize("NFKD", char):
            if not unicodedata.combining(part):
                elements.append(_collation_element(part))
    return tuple(elements), text

