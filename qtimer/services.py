from __future__ import annotations

import logging
from datetime import date
from typing import Optional

from sqlalchemy import select, func, delete
from sqlalchemy.orm import Session

from . import models
from .errors import NotFoundError, ValidationError
from .schemas import EventCreate, EventUpdate
from .settings import settings
from .utils import clamp_paging, generate_slug, is_valid_slug, parse_date_yyyy_mm_dd

logger = logging.getLogger(__name__)

# ---------------------------
# Slugs
# ---------------------------

def _slug_from_name(name: str) -> str:
    slug = generate_slug(name)
    if not slug:
        raise ValidationError("event name must contain at least one valid character (letters or numbers)")
    if not is_valid_slug(slug):
        raise ValidationError(f"invalid slug generated from event name: {name}")
    return slug

def unique_slug(session: Session, name: str, exclude_id: Optional[int] = None) -> str:
    base = _slug_from_name(name)
    slug = base
    counter = 1
    while True:
        q = select(models.Event.id).where(models.Event.slug == slug)
        if exclude_id is not None:
            q = q.where(models.Event.id != exclude_id)
        if session.execute(q).first() is None:
            return slug
        slug = f"{base}-{counter}"
        counter += 1

# ---------------------------
# Events
# ---------------------------

def _required_name(name: str) -> str:
    name = (name or "").strip()
    if not name:
        raise ValidationError("event name cannot be empty")
    return name

def _optional_date(value: str) -> Optional[date]:
    value = (value or "").strip()
    return parse_date_yyyy_mm_dd(value) if value else None

def create_event(session: Session, payload: EventCreate) -> models.Event:
    name = _required_name(payload.name)
    event = models.Event(
        name=name,
        slug=unique_slug(session, name),
        event_date=_optional_date(payload.date),
        time=payload.time,
        address=payload.address,
        image_url=payload.image_url,
        file_name=payload.file_name,
        file_extension=payload.file_extension or models.DEFAULT_FILE_EXTENSION,
        status="PUBLISHED",
        file_hash=None,
    )
    session.add(event)
    session.commit()
    logger.info("event created", extra={"event_id": event.id, "slug": event.slug})
    return event

def get_event(session: Session, event_id: int) -> models.Event:
    event = session.get(models.Event, event_id)
    if not event:
        raise NotFoundError("event not found")
    return event

def get_event_by_slug(session: Session, slug: str) -> models.Event:
    event = session.execute(select(models.Event).where(models.Event.slug == slug)).scalar_one_or_none()
    if not event:
        raise NotFoundError("event not found")
    return event

def resolve_event(session: Session, ref: str) -> models.Event:
    """Look an event up by numeric id or by slug."""
    ref = (ref or "").strip()
    if ref.isdigit():
        event = session.get(models.Event, int(ref))
        if event:
            return event
        # purely numeric names produce numeric slugs
        return get_event_by_slug(session, ref)
    if not is_valid_slug(ref):
        # no stored slug can match
        raise NotFoundError("event not found")
    return get_event_by_slug(session, ref)

def list_events(
    session: Session,
    name: Optional[str] = None,
    day: Optional[date] = None,
    page: Optional[int] = None,
    limit: Optional[int] = None,
    include_hidden: bool = False,
) -> tuple[list[models.Event], int]:
    page, limit = clamp_paging(page, limit, settings.QTIMER_EVENTS_PAGE_SIZE, settings.QTIMER_MAX_PAGE_SIZE)
    q = select(models.Event)
    if name:
        q = q.where(models.Event.name.icontains(name, autoescape=True))
    if day:
        q = q.where(models.Event.event_date == day)
    if not include_hidden:
        q = q.where(models.Event.status == "PUBLISHED")

    total = session.execute(select(func.count()).select_from(q.subquery())).scalar_one()
    events = session.execute(
        q.order_by(models.Event.event_date.is_(None), models.Event.event_date.desc(), models.Event.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).scalars().all()
    return list(events), total

def update_event(session: Session, event_id: int, payload: EventUpdate) -> models.Event:
    name = _required_name(payload.name)
    event = get_event(session, event_id)
    if name != event.name:
        event.slug = unique_slug(session, name, exclude_id=event.id)
    event.name = name
    if payload.date.strip():
        event.event_date = _optional_date(payload.date)
    event.time = payload.time
    event.address = payload.address
    event.image_url = payload.image_url
    event.file_name = payload.file_name
    event.file_extension = payload.file_extension or models.DEFAULT_FILE_EXTENSION
    session.commit()
    logger.info("event updated", extra={"event_id": event.id, "slug": event.slug})
    return event

def update_event_image(session: Session, event_id: int, image_url: str) -> models.Event:
    image_url = (image_url or "").strip()
    if not image_url:
        raise ValidationError("imageUrl is required")
    event = get_event(session, event_id)
    event.image_url = image_url
    session.commit()
    return event

def update_event_status(session: Session, event_id: int, status: str) -> models.Event:
    if status not in models.EVENT_STATUSES:
        raise ValidationError("invalid status. Valid options are: PUBLISHED, HIDDEN, DRAFT")
    event = get_event(session, event_id)
    previous = event.status
    event.status = status
    session.commit()
    logger.info("event status changed", extra={"event_id": event.id, "from": previous, "to": status})
    return event

def delete_event(session: Session, event_id: int) -> None:
    event = get_event(session, event_id)
    session.execute(delete(models.Participant).where(models.Participant.event_id == event.id))
    session.delete(event)
    session.commit()
    logger.info("event deleted", extra={"event_id": event_id})
