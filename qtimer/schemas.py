from __future__ import annotations

import datetime as dt
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _Api(BaseModel):
    # JSON is camelCase, python attributes snake_case
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class LoginRequest(BaseModel):
    password: str


class LoginResponse(BaseModel):
    token: str


class EventCreate(_Api):
    name: str = ""
    date: str = ""  # YYYY-MM-DD
    time: str = ""
    address: str = ""
    image_url: str = ""
    file_name: str = ""
    file_extension: str = ""


class EventUpdate(EventCreate):
    pass


class EventImageUpdate(_Api):
    image_url: str = ""


class EventStatusUpdate(BaseModel):
    status: str = ""


class EventOut(_Api):
    id: int
    slug: str
    name: str
    date: Optional[dt.date] = Field(
        default=None, validation_alias=AliasChoices("event_date", "date"), serialization_alias="date"
    )
    time: str
    address: str
    image_url: str
    file_name: str
    file_extension: str
    status: str
    created_at: dt.datetime
    file_hash: Optional[str] = None
    records_count: int = 0
    unique_modalities: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("unique_distances", "uniqueModalities", "unique_modalities"),
        serialization_alias="uniqueModalities",
    )
    unique_categories: list[str] = Field(default_factory=list)


class EventsResponse(_Api):
    events: list[EventOut]
    total_count: int


class ParticipantOut(_Api):
    id: int
    event_id: int
    data: dict[str, str]


class ParticipantsResponse(_Api):
    participants: list[ParticipantOut]
    total_count: int


class ComparisonResponse(_Api):
    first_place: Optional[ParticipantOut] = None
    previous_participants: list[ParticipantOut] = Field(default_factory=list)


class UploadResult(BaseModel):
    EventID: int
    RecordsInserted: int
    Reprocessed: bool


class MessageResponse(BaseModel):
    message: str
