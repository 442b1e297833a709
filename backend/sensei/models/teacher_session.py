# backend/sensei/models/teacher_session.py

from datetime import datetime, timezone
from typing import Any, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

# Event type whose payload is required for replay and must never be emptied.
SNAPSHOT_EVENT_TYPE = 2

# token prefix of sessions ended by an admin or by the expiry sweep
INVALIDATED_TOKEN_PREFIX = "INVALIDATED_"

Millis = Union[int, float]


def now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class CamelModel(BaseModel):
    """
    Stored with snake_case keys, exchanged with clients in camelCase.
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class TimelineEvent(CamelModel):
    type: int = 0
    data: Any = Field(default_factory=dict)
    timestamp: int = Field(default_factory=now_ms)

    @field_validator("type", mode="before")
    @classmethod
    def _default_type(cls, v):
        return int(v) if _is_number(v) else 0

    @field_validator("data", mode="before")
    @classmethod
    def _default_data(cls, v):
        return {} if v is None else v

    @field_validator("timestamp", mode="before")
    @classmethod
    def _default_timestamp(cls, v):
        return int(v) if _is_number(v) else now_ms()

    @property
    def is_snapshot(self) -> bool:
        return self.type == SNAPSHOT_EVENT_TYPE


class TimelineSection(CamelModel):
    """
    One recorded segment of a session timeline.
    A section without a usable id is rejected as a whole.
    """
    id: str
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    duration: Optional[Millis] = None
    events: List[TimelineEvent] = Field(default_factory=list)

    @field_validator("id", mode="before")
    @classmethod
    def _require_id(cls, v):
        if _is_number(v):
            v = str(v)
        if not isinstance(v, str) or not v.strip():
            raise ValueError("section id is required")
        return v

    @field_validator("start_time", "end_time", mode="before")
    @classmethod
    def _as_text(cls, v):
        if v is None or isinstance(v, str):
            return v
        if isinstance(v, datetime):
            return v.isoformat()
        return str(v)

    @field_validator("duration", mode="before")
    @classmethod
    def _numeric_duration(cls, v):
        return v if _is_number(v) else None

    @field_validator("events", mode="before")
    @classmethod
    def _drop_malformed_events(cls, v):
        # non-object events are discarded, the rest are defaulted field by field
        if not isinstance(v, list):
            return []
        return [e for e in v if isinstance(e, (dict, TimelineEvent))]


class FileAccessEntry(CamelModel):
    file_id: str
    file_name: str
    folder_id: Optional[str] = None
    folder_name: Optional[str] = None
    accessed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    opened_at: Optional[str] = None
    closed_at: Optional[str] = None
    duration: Optional[Millis] = None
    idle_time: Millis = 0
    active_time: Millis = 0

    @field_validator("file_id", "file_name", "folder_id", "folder_name", "opened_at", "closed_at", mode="before")
    @classmethod
    def _as_text(cls, v):
        if v is None or isinstance(v, str):
            return v
        return str(v)

    @field_validator("idle_time", "active_time", mode="before")
    @classmethod
    def _zero_when_missing(cls, v):
        return 0 if v is None else v


class SoftDeleteMarker(BaseModel):
    status: bool = False
    deleted_by: Optional[str] = None
    deleted_time: Optional[datetime] = None


class TeacherSessionInDB(BaseModel):
    """
    Full shape of a document in the 'teacher_sessions' collection.
    idle_time / active_time are derived from file_access_log on every write.
    """
    id: str = Field(..., alias="_id")
    username: str
    course_class_ref: Any = None
    section_ref: Any = None
    subject_ref: Any = None
    session_token: Optional[str] = None
    device_id: Optional[str] = None

    login_at: Optional[datetime] = None
    login_time: Optional[datetime] = None
    logout_at: Optional[datetime] = None
    logout_time: Optional[datetime] = None
    last_active_at: Optional[datetime] = None
    active: bool = True

    idle_time: Optional[Millis] = None
    active_time: Optional[Millis] = None
    file_access_log: List[FileAccessEntry] = Field(default_factory=list)
    sections: List[TimelineSection] = Field(default_factory=list)

    is_deleted: Optional[SoftDeleteMarker] = None

    model_config = ConfigDict(populate_by_name=True, from_attributes=True, arbitrary_types_allowed=True)

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, v):
        return str(v)

    @field_validator("file_access_log", "sections", mode="before")
    @classmethod
    def _list_or_empty(cls, v):
        return v if isinstance(v, list) else []
