from __future__ import annotations

from datetime import date, datetime, timezone
from sqlalchemy import JSON, String, Integer, Date, DateTime, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base

EVENT_STATUSES = ("DRAFT", "PUBLISHED", "HIDDEN")
DEFAULT_FILE_EXTENSION = ".racecheck"


class Event(Base):
    __tablename__ = "events"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    slug: Mapped[str] = mapped_column(String, nullable=False, unique=True, index=True)
    name: Mapped[str] = mapped_column(String, nullable=False, index=True)
    event_date: Mapped[date | None] = mapped_column("date", Date, nullable=True)
    time: Mapped[str] = mapped_column(String, nullable=False, default="")
    address: Mapped[str] = mapped_column(String, nullable=False, default="")
    image_url: Mapped[str] = mapped_column(String, nullable=False, default="")
    file_name: Mapped[str] = mapped_column(String, nullable=False, default="")
    file_extension: Mapped[str] = mapped_column(String, nullable=False, default=DEFAULT_FILE_EXTENSION)
    status: Mapped[str] = mapped_column(String, nullable=False, default="PUBLISHED")  # DRAFT | PUBLISHED | HIDDEN
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc)
    )

    # set once a results file has been ingested
    file_hash: Mapped[str | None] = mapped_column(String, nullable=True)
    records_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unique_distances: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    unique_categories: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    # header order of the ingested file, participant data keys follow it
    columns: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    participants: Mapped[list["Participant"]] = relationship(
        back_populates="event", cascade="all, delete-orphan", passive_deletes=True
    )


class Participant(Base):
    __tablename__ = "participants"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[int] = mapped_column(ForeignKey("events.id", ondelete="CASCADE"), nullable=False)
    row_index: Mapped[int] = mapped_column(Integer, nullable=False)
    race_name: Mapped[str | None] = mapped_column(String, nullable=True)

    # exactly as uploaded: header -> cell
    data: Mapped[dict] = mapped_column(JSON, nullable=False)

    # search columns extracted from data at ingest time
    bib: Mapped[str] = mapped_column(String, nullable=False, default="")
    name: Mapped[str] = mapped_column(String, nullable=False, default="")
    chip: Mapped[str] = mapped_column(String, nullable=False, default="")
    category: Mapped[str] = mapped_column(String, nullable=False, default="")
    distance: Mapped[str] = mapped_column(String, nullable=False, default="")
    sex: Mapped[str] = mapped_column(String, nullable=False, default="")
    city: Mapped[str] = mapped_column(String, nullable=False, default="")
    team: Mapped[str] = mapped_column(String, nullable=False, default="")
    position: Mapped[int | None] = mapped_column(Integer, nullable=True)

    event: Mapped["Event"] = relationship(back_populates="participants")

    __table_args__ = (
        Index("ix_participants_event_row", "event_id", "row_index"),
        Index("ix_participants_event_distance_position", "event_id", "distance", "position"),
        Index("ix_participants_event_bib", "event_id", "bib"),
    )
