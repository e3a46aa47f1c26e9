from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, Session, DeclarativeBase

from .settings import settings

class Base(DeclarativeBase):
    pass

_engine = None
_SessionLocal = None

def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()

def init_db(url: str | None = None) -> None:
    """Create the engine and tables. Passing a url rebinds to a new database."""
    global _engine, _SessionLocal
    if _engine is not None and url is None:
        return
    if _engine is not None:
        _engine.dispose()
    url = url or settings.QTIMER_DB_URL
    is_sqlite = url.startswith("sqlite")
    connect_args = {"check_same_thread": False} if is_sqlite else {}
    _engine = create_engine(url, future=True, echo=False, connect_args=connect_args)
    if is_sqlite:
        event.listen(_engine, "connect", _enable_sqlite_foreign_keys)
    _SessionLocal = sessionmaker(bind=_engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)
    from . import models  # noqa
    Base.metadata.create_all(bind=_engine)

def dispose_db() -> None:
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None

def new_session() -> Session:
    if _SessionLocal is None:
        init_db()
    return _SessionLocal()

def get_session() -> Session:
    db = new_session()
    try:
        yield db
    finally:
        db.close()
