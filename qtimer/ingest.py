from __future__ import annotations

import hashlib
import logging
import os
import threading
import weakref
from typing import Optional

from sqlalchemy import delete, insert, select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import ObjectDeletedError

from . import models
from .errors import FileHashMismatch, InvalidFileExtension, NotFoundError, UploadTooLarge
from .parsing import ParsedResults, extract_fields, parse_results_file
from .schemas import UploadResult
from .services import unique_slug
from .settings import settings

logger = logging.getLogger(__name__)

# ---------------------------
# Per-event write serialization
# ---------------------------

# entries vanish once no upload holds or waits on the lock
_locks_guard = threading.Lock()
_locks: weakref.WeakValueDictionary[str, threading.Lock] = weakref.WeakValueDictionary()

def _event_lock(key: str) -> threading.Lock:
    with _locks_guard:
        lock = _locks.get(key)
        if lock is None:
            lock = threading.Lock()
            _locks[key] = lock
        return lock

# ---------------------------
# Checks
# ---------------------------

def sha256_hex(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()

def _check_upload(filename: str, content: bytes, client_hash: str) -> str:
    ext = os.path.splitext(filename or "")[1]
    if ext.lower() != settings.QTIMER_RACECHECK_EXTENSION.lower():
        raise InvalidFileExtension(f"invalid file extension, expected {settings.QTIMER_RACECHECK_EXTENSION}")
    if len(content) > settings.QTIMER_MAX_UPLOAD_BYTES:
        raise UploadTooLarge(f"file exceeds {settings.QTIMER_MAX_UPLOAD_BYTES} bytes")
    calculated = sha256_hex(content)
    if calculated != (client_hash or "").strip().lower():
        raise FileHashMismatch("file hash mismatch")
    return calculated

def _not_reprocessed(event: models.Event) -> UploadResult:
    logger.info("same file hash, not reprocessed", extra={"event_id": event.id, "file_hash": event.file_hash})
    return UploadResult(EventID=event.id, RecordsInserted=event.records_count, Reprocessed=False)

# ---------------------------
# Replace
# ---------------------------

def replace_participants(session: Session, event: models.Event, parsed: ParsedResults, file_hash: str) -> int:
    """Swap the event's participant set for the parsed rows. Caller commits."""
    session.execute(delete(models.Participant).where(models.Participant.event_id == event.id))
    rows = [
        {
            "event_id": event.id,
            "row_index": i,
            "race_name": row.race_name,
            "data": row.data,
            **extract_fields(row.data),
        }
        for i, row in enumerate(parsed.rows)
    ]
    if rows:
        session.execute(insert(models.Participant), rows)
    event.file_hash = file_hash
    event.records_count = len(rows)
    event.columns = list(parsed.columns)
    event.unique_distances = parsed.unique_distances
    event.unique_categories = parsed.unique_categories
    return len(rows)

def _commit_replace(session: Session, event: models.Event, parsed: ParsedResults, file_hash: str) -> int:
    try:
        inserted = replace_participants(session, event, parsed, file_hash)
        session.commit()
    except Exception:
        session.rollback()
        raise
    return inserted

# ---------------------------
# Upload entry points
# ---------------------------

def upload_results(
    session: Session,
    *,
    filename: str,
    content: bytes,
    client_hash: str,
    event_id: Optional[int] = None,
) -> UploadResult:
    file_hash = _check_upload(filename, content, client_hash)
    if event_id is not None:
        return _upload_to_event(session, event_id, filename, content, file_hash)
    return _upload_new(session, filename, content, file_hash)

def _upload_to_event(session: Session, event_id: int, filename: str, content: bytes, file_hash: str) -> UploadResult:
    with _event_lock(f"id:{event_id}"):
        event = session.get(models.Event, event_id, populate_existing=True)
        if not event:
            raise NotFoundError("event not found")
        if event.file_hash == file_hash:
            return _not_reprocessed(event)

        parsed = parse_results_file(content)
        _log_parsed(filename, content, parsed)
        inserted = _commit_replace(session, event, parsed, file_hash)
        logger.info("results replaced", extra={"event_id": event.id, "records_inserted": inserted})
        return UploadResult(EventID=event.id, RecordsInserted=inserted, Reprocessed=True)

def _upload_new(session: Session, filename: str, content: bytes, file_hash: str) -> UploadResult:
    parsed = parse_results_file(content)
    _log_parsed(filename, content, parsed)

    with _event_lock(f"name:{parsed.event_name}"):
        existing = session.execute(
            select(models.Event).where(models.Event.name == parsed.event_name).order_by(models.Event.id.asc()).limit(1)
        ).scalar_one_or_none()

        if existing is not None:
            with _event_lock(f"id:{existing.id}"):
                # another upload may have committed while we waited
                try:
                    session.refresh(existing)
                except ObjectDeletedError:
                    raise NotFoundError("event not found") from None
                if existing.file_hash == file_hash:
                    return _not_reprocessed(existing)
                inserted = _commit_replace(session, existing, parsed, file_hash)
            logger.info("results replaced", extra={"event_id": existing.id, "records_inserted": inserted})
            return UploadResult(EventID=existing.id, RecordsInserted=inserted, Reprocessed=True)

        stem, ext = os.path.splitext(filename)
        event = models.Event(
            name=parsed.event_name,
            slug=unique_slug(session, parsed.event_name),
            file_name=os.path.basename(stem),
            file_extension=ext or models.DEFAULT_FILE_EXTENSION,
            status="PUBLISHED",
        )
        session.add(event)
        try:
            session.flush()
        except Exception:
            session.rollback()
            raise
        inserted = _commit_replace(session, event, parsed, file_hash)
        logger.info("event created from results file", extra={"event_id": event.id, "records_inserted": inserted})
        return UploadResult(EventID=event.id, RecordsInserted=inserted, Reprocessed=False)

def _log_parsed(filename: str, content: bytes, parsed: ParsedResults) -> None:
    logger.info(
        "parsed results file",
        extra={
            "file_name": filename,
            "size": len(content),
            "lines": parsed.line_count,
            "records": len(parsed.rows),
            "skipped": parsed.skipped,
        },
    )
    if not parsed.rows:
        logger.warning("no records extracted", extra={"event_name": parsed.event_name})
