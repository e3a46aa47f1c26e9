from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from . import models
from .errors import NotFoundError, ValidationError
from .settings import settings
from .utils import clamp_paging, parse_int

COMPARISON_WINDOW = 5

# filter key -> (column, match kind)
FILTERS: dict[str, tuple[str, str]] = {
    "name": ("name", "contains"),
    "category": ("category", "contains"),
    "city": ("city", "contains"),
    "team": ("team", "contains"),
    "dorsal": ("bib", "exact"),
    "bib": ("bib", "exact"),
    "chip": ("chip", "exact"),
    "sex": ("sex", "iexact"),
    "distance": ("distance", "iexact"),
    "position": ("position", "int"),
}

@dataclass
class ComparisonResult:
    first_place: Optional[models.Participant]
    previous_participants: list[models.Participant]

def _ordering():
    p = models.Participant
    return (p.distance.asc(), p.position.is_(None), p.position.asc(), p.row_index.asc())

def _apply_filters(q, filters: Mapping[str, Optional[str]]):
    for key, raw in filters.items():
        if key not in FILTERS:
            continue
        value = (raw or "").strip()
        if not value:
            continue
        column_name, kind = FILTERS[key]
        column = getattr(models.Participant, column_name)
        if kind == "contains":
            q = q.where(column.icontains(value, autoescape=True))
        elif kind == "exact":
            q = q.where(column == value)
        elif kind == "iexact":
            q = q.where(func.lower(column) == value.lower())
        else:
            number = parse_int(value)
            if number is None:
                raise ValidationError(f"invalid {key} format, must be a number")
            q = q.where(column == number)
    return q

def list_participants(
    session: Session,
    event: models.Event,
    filters: Mapping[str, Optional[str]] | None = None,
    page: Optional[int] = None,
    limit: Optional[int] = None,
) -> tuple[list[models.Participant], int]:
    page, limit = clamp_paging(page, limit, settings.QTIMER_PARTICIPANTS_PAGE_SIZE, settings.QTIMER_MAX_PAGE_SIZE)
    q = _apply_filters(select(models.Participant).where(models.Participant.event_id == event.id), filters or {})
    total = session.execute(select(func.count()).select_from(q.subquery())).scalar_one()
    rows = session.execute(q.order_by(*_ordering()).offset((page - 1) * limit).limit(limit)).scalars().all()
    return list(rows), total

def iter_all_participants(session: Session, event: models.Event):
    q = select(models.Participant).where(models.Participant.event_id == event.id).order_by(*_ordering())
    return session.execute(q).scalars()

def get_comparison(
    session: Session,
    event: models.Event,
    bib: str,
    distance: str,
    category: Optional[str] = None,
) -> ComparisonResult:
    """Leader of the bib's distance (and category) plus the finishers just ahead of it."""
    bib = (bib or "").strip()
    distance = (distance or "").strip()
    category = (category or "").strip()
    if not bib or not distance:
        raise ValidationError("bib and distance parameters are required")

    q = select(models.Participant).where(
        models.Participant.event_id == event.id,
        func.lower(models.Participant.distance) == distance.lower(),
    )
    if category:
        q = q.where(func.lower(models.Participant.category) == category.lower())
    subset = session.execute(q.order_by(*_ordering())).scalars().all()

    target = next((i for i, p in enumerate(subset) if p.bib == bib), None)
    if target is None:
        raise NotFoundError("participant not found")

    start = max(0, target - COMPARISON_WINDOW)
    return ComparisonResult(first_place=subset[0], previous_participants=list(subset[start:target]))
