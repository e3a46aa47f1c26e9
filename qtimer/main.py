import logging

from fastapi import APIRouter, FastAPI, Request, Depends, HTTPException, UploadFile, File, Form, Query
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .settings import settings
from .csv_export import router as csv_router
from .db import init_db, get_session
from . import services, ingest
from . import participants as participant_queries
from .errors import NotFoundError, ValidationError
from .logging_config import RequestIdMiddleware, configure_logging
from .utils import parse_date_yyyy_mm_dd
from .auth import (
    AuthCookieMiddleware,
    admin_required,
    check_admin_password,
    clear_login_cookie,
    get_current_user,
    issue_token,
    set_login_cookie,
)
from .schemas import (
    ComparisonResponse,
    EventCreate,
    EventImageUpdate,
    EventOut,
    EventsResponse,
    EventStatusUpdate,
    EventUpdate,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    ParticipantOut,
    ParticipantsResponse,
    UploadResult,
)

logger = logging.getLogger(__name__)

PARTICIPANT_FILTER_KEYS = ("name", "chip", "dorsal", "bib", "category", "sex", "position", "distance", "city", "team")

router = APIRouter()

@router.get("/health")
def health():
    return {"status": "ok"}

# ---------------------------
# Auth
# ---------------------------

@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, payload: LoginRequest):
    if not check_admin_password(payload.password):
        raise HTTPException(status_code=401, detail="Invalid password")
    token = issue_token()
    set_login_cookie(request, token)
    return LoginResponse(token=token)

@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request):
    clear_login_cookie(request)
    return MessageResponse(message="logged out")

# ---------------------------
# Events
# ---------------------------

@router.get("/events", response_model=EventsResponse)
def list_events(
    request: Request,
    name: str = Query(default=""),
    date: str = Query(default=""),
    page: int = Query(default=1),
    limit: int = Query(default=0),
    include_hidden: bool = Query(default=False, alias="includeHidden"),
    session=Depends(get_session),
):
    if include_hidden:
        user = get_current_user(request)
        if not user or not user.is_admin:
            raise HTTPException(status_code=401, detail="Login required")
    day = parse_date_yyyy_mm_dd(date) if date.strip() else None
    events, total = services.list_events(
        session, name=name.strip() or None, day=day, page=page, limit=limit, include_hidden=include_hidden
    )
    return EventsResponse(events=[EventOut.model_validate(e) for e in events], total_count=total)

@router.post("/events/create", response_model=EventOut, dependencies=[Depends(admin_required)])
def create_event(payload: EventCreate, session=Depends(get_session)):
    return EventOut.model_validate(services.create_event(session, payload))

@router.post("/events/upload", response_model=UploadResult, dependencies=[Depends(admin_required)])
def upload_new_event(
    file: UploadFile | None = File(default=None),
    hash: str = Form(default=""),
    session=Depends(get_session),
):
    filename, content, client_hash = _read_upload(file, hash)
    return ingest.upload_results(session, filename=filename, content=content, client_hash=client_hash)

@router.post("/events/{event_id}/upload", response_model=UploadResult, dependencies=[Depends(admin_required)])
def upload_to_event(
    event_id: int,
    file: UploadFile | None = File(default=None),
    hash: str = Form(default=""),
    session=Depends(get_session),
):
    filename, content, client_hash = _read_upload(file, hash)
    logger.info("upload to event", extra={"event_id": event_id, "file_name": filename})
    return ingest.upload_results(
        session, filename=filename, content=content, client_hash=client_hash, event_id=event_id
    )

@router.get("/events/slug/{slug}", response_model=EventOut)
def get_event_by_slug(slug: str, session=Depends(get_session)):
    return EventOut.model_validate(services.get_event_by_slug(session, slug))

@router.get("/events/{event_ref}", response_model=EventOut)
def get_event(event_ref: str, session=Depends(get_session)):
    return EventOut.model_validate(services.resolve_event(session, event_ref))

@router.put("/events/{event_id}", response_model=EventOut, dependencies=[Depends(admin_required)])
def update_event(event_id: int, payload: EventUpdate, session=Depends(get_session)):
    return EventOut.model_validate(services.update_event(session, event_id, payload))

@router.patch("/events/{event_id}/image", response_model=EventOut, dependencies=[Depends(admin_required)])
def update_event_image(event_id: int, payload: EventImageUpdate, session=Depends(get_session)):
    return EventOut.model_validate(services.update_event_image(session, event_id, payload.image_url))

@router.patch("/events/{event_id}/status", response_model=EventOut, dependencies=[Depends(admin_required)])
def update_event_status(event_id: int, payload: EventStatusUpdate, session=Depends(get_session)):
    return EventOut.model_validate(services.update_event_status(session, event_id, payload.status))

@router.delete("/events/{event_id}", response_model=MessageResponse, dependencies=[Depends(admin_required)])
def delete_event(event_id: int, session=Depends(get_session)):
    services.delete_event(session, event_id)
    return MessageResponse(message="event deleted successfully")

# ---------------------------
# Participants
# ---------------------------

@router.get("/events/{event_ref}/participants", response_model=ParticipantsResponse)
def list_participants(
    event_ref: str,
    request: Request,
    page: int = Query(default=1),
    limit: int = Query(default=0),
    session=Depends(get_session),
):
    event = services.resolve_event(session, event_ref)
    filters = {k: request.query_params.get(k) for k in PARTICIPANT_FILTER_KEYS}
    rows, total = participant_queries.list_participants(session, event, filters, page=page, limit=limit)
    return ParticipantsResponse(participants=[ParticipantOut.model_validate(p) for p in rows], total_count=total)

@router.get("/events/{event_ref}/participants/comparison", response_model=ComparisonResponse)
def participant_comparison(
    event_ref: str,
    bib: str = Query(default=""),
    distance: str = Query(default=""),
    category: str = Query(default=""),
    session=Depends(get_session),
):
    event = services.resolve_event(session, event_ref)
    result = participant_queries.get_comparison(session, event, bib, distance, category or None)
    first = ParticipantOut.model_validate(result.first_place) if result.first_place is not None else None
    return ComparisonResponse(
        first_place=first,
        previous_participants=[ParticipantOut.model_validate(p) for p in result.previous_participants],
    )

def _read_upload(file: UploadFile | None, client_hash: str) -> tuple[str, bytes, str]:
    if file is None:
        raise ValidationError("file is required")
    if not client_hash.strip():
        raise ValidationError("hash is required")
    # one byte past the cap is enough to reject oversized files
    content = file.file.read(settings.QTIMER_MAX_UPLOAD_BYTES + 1)
    return file.filename or "", content, client_hash.strip()

# ---------------------------
# Error mapping
# ---------------------------

def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)

def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ValidationError)
    async def _validation_error(request: Request, exc: ValidationError):
        return _error(exc.status_code, str(exc))

    @app.exception_handler(NotFoundError)
    async def _not_found(request: Request, exc: NotFoundError):
        return _error(exc.status_code, str(exc))

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse({"error": str(exc.detail)}, status_code=exc.status_code, headers=getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def _request_validation(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        if errors:
            first = errors[0]
            where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
            message = f"{where}: {first.get('msg')}" if where else str(first.get("msg"))
        else:
            message = "invalid request"
        return _error(422, message)

    @app.exception_handler(SQLAlchemyError)
    async def _storage_error(request: Request, exc: SQLAlchemyError):
        logger.exception("storage error", exc_info=exc)
        return _error(500, "storage error")

# ---------------------------
# App
# ---------------------------

def create_app() -> FastAPI:
    configure_logging(settings.QTIMER_LOG_LEVEL)

    app = FastAPI(title="QTimer Results")
    app.add_middleware(AuthCookieMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
        expose_headers=["Content-Length", settings.QTIMER_REQUEST_ID_HEADER],
        allow_credentials=True,
    )
    app.add_middleware(RequestIdMiddleware, header_name=settings.QTIMER_REQUEST_ID_HEADER)
    _register_error_handlers(app)

    @app.on_event("startup")
    def _startup() -> None:
        init_db()

    app.include_router(router)
    app.include_router(csv_router, tags=["csv"])
    return app

app = create_app()
