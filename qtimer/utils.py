from __future__ import annotations

import re
import unicodedata
from datetime import date, datetime
from typing import Optional

from .errors import ValidationError

_SLUG_SEP = re.compile(r"[^a-z0-9]+")
_SLUG_VALID = re.compile(r"^[a-z0-9]+(-[a-z0-9]+)*$")


def strip_accents(value: str) -> str:
    decomposed = unicodedata.normalize("NFKD", value)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def generate_slug(value: str) -> str:
    """'Maratón de Sevilla 2024' -> 'maraton-de-sevilla-2024'."""
    slug = strip_accents(value.lower())
    slug = _SLUG_SEP.sub("-", slug)
    return slug.strip("-")


def is_valid_slug(value: str) -> bool:
    return bool(value) and _SLUG_VALID.match(value) is not None


def normalize_header(value: str) -> str:
    # 'Categoría ' -> 'CATEGORIA'
    return strip_accents(value.strip()).upper()


def parse_date_yyyy_mm_dd(s: str) -> date:
    try:
        return datetime.strptime(s.strip(), "%Y-%m-%d").date()
    except ValueError:
        raise ValidationError("invalid date format, expected YYYY-MM-DD") from None


def parse_int(value: str) -> Optional[int]:
    value = (value or "").strip()
    if re.fullmatch(r"[+-]?\d+", value):
        return int(value)
    return None


def clamp_paging(page: int | None, limit: int | None, default_limit: int, max_limit: int) -> tuple[int, int]:
    page = page if page and page > 0 else 1
    limit = limit if limit and limit > 0 else default_limit
    return page, min(limit, max_limit)
