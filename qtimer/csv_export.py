from __future__ import annotations

import csv
from io import StringIO

from fastapi import APIRouter, Depends
from starlette.responses import Response
from sqlalchemy.orm import Session

from .db import get_session
from . import participants as participant_queries
from .services import resolve_event

router = APIRouter()

def _csv_response(filename: str, text: str) -> Response:
    return Response(
        content=text,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )

@router.get("/events/{event_ref}/participants.csv")
def participants_csv(event_ref: str, session: Session = Depends(get_session)):
    event = resolve_event(session, event_ref)
    rows = list(participant_queries.iter_all_participants(session, event))

    columns = list(event.columns or [])
    # rows from older uploads may carry keys the header list lacks
    for p in rows:
        for key in p.data:
            if key not in columns:
                columns.append(key)

    buf = StringIO()
    w = csv.writer(buf)
    w.writerow(columns)
    for p in rows:
        w.writerow([p.data.get(c, "") for c in columns])
    return _csv_response(f"results_{event.slug}.csv", buf.getvalue())
