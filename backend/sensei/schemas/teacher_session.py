# backend/sensei/schemas/teacher_session.py

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import ConfigDict, Field

from sensei.models.teacher_session import (
    CamelModel,
    FileAccessEntry,
    Millis,
    TimelineSection,
)

# --- Request schemas ---


class TeacherSessionCreate(CamelModel):
    """
    [Request] POST /teacher-sessions
    Required: username, courseClassName, sectionName, subjectName, sessionToken.
    Presence is checked by the handler so that every missing field is named
    in a single 400 response.
    """
    username: Optional[str] = None
    course_class_name: Optional[str] = None
    section_name: Optional[str] = None
    subject_name: Optional[str] = None
    session_token: Optional[str] = None
    device_id: Optional[str] = None

    login_at: Optional[datetime] = None
    login_time: Optional[datetime] = None
    active: Optional[bool] = None

    # raw units: malformed log entries are rejected, malformed sections dropped
    file_access_log: List[Any] = Field(default_factory=list)
    section: List[Any] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore")


class TeacherSessionUpdate(CamelModel):
    """
    [Request] PUT /teacher-sessions/{session_id}
    One unit of work per call: at most one `section` and at most one
    `fileAccessLog` entry (the first element is taken when a list is sent).
    """
    username: Optional[str] = None
    course_class_name: Optional[str] = None
    section_name: Optional[str] = None
    subject_name: Optional[str] = None
    session_token: Optional[str] = None
    device_id: Optional[str] = None

    logout_at: Optional[datetime] = None
    logout_time: Optional[datetime] = None
    active: Optional[bool] = None

    section: Optional[Any] = None
    file_access_log: Optional[Any] = None

    model_config = ConfigDict(extra="ignore")


# --- Response schemas ---


class SectionView(TimelineSection):
    section_id_display: str = "N/A"


class TeacherSessionSummary(CamelModel):
    """
    [Response] identity + scalar fields only (update / create responses).
    """
    id: str
    username: str
    session_token: Optional[str] = None
    course_class_name: Optional[str] = None
    section_name: Optional[str] = None
    subject_name: Optional[str] = None
    login_at: Optional[datetime] = None
    last_active_at: Optional[datetime] = None
    active: bool = True
    idle_time: Optional[Millis] = None
    active_time: Optional[Millis] = None


class TeacherSessionView(TeacherSessionSummary):
    """
    [Response] resolved session for list / search / get-by-id.
    """
    device_id: Optional[str] = None
    login_time: Optional[datetime] = None
    logout_at: Optional[datetime] = None
    logout_time: Optional[datetime] = None
    is_live: bool = False

    course_class_display: str = "N/A"
    section_display: str = "N/A"
    subject_display: str = "N/A"

    idle_time_computed: Millis = 0
    active_time_computed: Millis = 0

    file_access_log: List[FileAccessEntry] = Field(default_factory=list)
    sections: List[SectionView] = Field(default_factory=list)


class TeacherSessionUpdated(CamelModel):
    message: str = "Session updated successfully"
    session: TeacherSessionSummary


class TeacherSessionCreated(CamelModel):
    message: str = "Teacher session created successfully"
    session: TeacherSessionSummary


class TeacherSessionDetail(CamelModel):
    message: str = "Teacher session retrieved successfully"
    session: TeacherSessionView


class TeacherSessionDeleted(CamelModel):
    message: str = "Teacher session deleted successfully"


class TeacherSessionSections(CamelModel):
    session_id: str
    sections: List[SectionView]


class ListPagination(CamelModel):
    page: int
    current_page: int
    total_pages: int
    has_more: bool
    total_items: int


class TeacherSessionList(CamelModel):
    message: str = "Teacher sessions retrieved successfully"
    sessions: List[TeacherSessionView]
    total: int
    limit: int
    offset: int
    pagination: ListPagination
    filters: Dict[str, Any]


class SearchPagination(CamelModel):
    current_page: int
    total_pages: int
    total_sessions: int
    has_next_page: bool
    has_prev_page: bool
    limit: int


class TeacherSessionSearchResult(CamelModel):
    success: bool = True
    message: str = "Teacher sessions searched successfully"
    data: List[TeacherSessionView]
    search_query: Optional[str] = None
    pagination: SearchPagination
    filters: Dict[str, Any]
