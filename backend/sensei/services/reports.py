# backend/sensei/services/reports.py
"""
Aggregates behind the individual and bulk teacher-session reports.
Everything here works on resolved session views and is free of I/O.
"""
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, List, Optional
from zoneinfo import ZoneInfo

from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE

from sensei.schemas.teacher_session import TeacherSessionView

# spreadsheet per-cell character ceiling, with a small safety margin
MAX_CELL_CHARS = 32767
CELL_TRUNCATE_AT = MAX_CELL_CHARS - 10

SESSION_ACTIVE_LABEL = "Session Active"


def to_minutes(ms: float) -> int:
    return int(math.floor((ms or 0) / 60000 + 0.5))


def truncate_cell(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, str):
        # control characters are rejected by the xlsx writer
        value = ILLEGAL_CHARACTERS_RE.sub("", value)
        if len(value) > CELL_TRUNCATE_AT:
            return value[:CELL_TRUNCATE_AT]
    return value


def login_of(view: TeacherSessionView) -> Optional[datetime]:
    return view.login_time or view.login_at


def logout_of(view: TeacherSessionView) -> Optional[datetime]:
    return view.logout_time or view.logout_at


def session_duration_ms(view: TeacherSessionView) -> float:
    """logout - login; 0 while the session is still open."""
    login, logout = login_of(view), logout_of(view)
    if login is None or logout is None:
        return 0
    return max((logout - login).total_seconds() * 1000, 0)


def event_count(view: TeacherSessionView) -> int:
    return sum(len(section.events) for section in view.sections)


def file_access_count(view: TeacherSessionView) -> int:
    return len(view.file_access_log)


class ReportClock:
    """Formats timestamps in the configured report timezone."""

    def __init__(self, tz_name: str = "UTC", now: Optional[datetime] = None):
        self.tz = ZoneInfo(tz_name)
        self.generated_at = (now or datetime.now(timezone.utc)).astimezone(self.tz)

    def format(self, value: Optional[datetime], empty: str = "") -> str:
        if value is None:
            return empty
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(self.tz).strftime("%Y-%m-%d %H:%M:%S")

    def format_ms(self, ms: Any) -> str:
        if isinstance(ms, bool) or not isinstance(ms, (int, float)):
            return ""
        return self.format(datetime.fromtimestamp(ms / 1000, tz=timezone.utc))

    def format_date(self, value: Optional[datetime], empty: str) -> str:
        if value is None:
            return empty
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(self.tz).strftime("%Y-%m-%d")

    @property
    def file_date(self) -> str:
        return self.generated_at.strftime("%Y-%m-%d")


@dataclass
class IndividualReport:
    session: TeacherSessionView
    duration_ms: float
    active_time: float
    idle_time: float
    total_events: int
    total_file_access: int

    @property
    def section_count(self) -> int:
        return len(self.session.sections)


def build_individual_report(view: TeacherSessionView) -> IndividualReport:
    return IndividualReport(
        session=view,
        duration_ms=session_duration_ms(view),
        active_time=view.active_time_computed,
        idle_time=view.idle_time_computed,
        total_events=event_count(view),
        total_file_access=file_access_count(view),
    )


def _add_distinct(values: List[str], value: str) -> None:
    if value not in values:
        values.append(value)


@dataclass
class TeacherRollup:
    username: str
    sessions: int = 0
    total_active_time: float = 0
    total_idle_time: float = 0
    total_events: int = 0
    total_file_access: int = 0
    # distinct display names, in first-seen order
    course_classes: List[str] = field(default_factory=list)
    sections: List[str] = field(default_factory=list)
    subjects: List[str] = field(default_factory=list)

    def add(self, view: TeacherSessionView) -> None:
        self.sessions += 1
        self.total_active_time += view.active_time_computed or 0
        self.total_idle_time += view.idle_time_computed or 0
        self.total_events += event_count(view)
        self.total_file_access += file_access_count(view)
        _add_distinct(self.course_classes, view.course_class_display)
        _add_distinct(self.sections, view.section_display)
        _add_distinct(self.subjects, view.subject_display)


@dataclass
class BulkReport:
    sessions: List[TeacherSessionView]
    teachers: List[TeacherRollup]
    total_active_time: float
    total_idle_time: float
    total_events: int
    total_file_access: int
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None

    @property
    def total_sessions(self) -> int:
        return len(self.sessions)


def build_bulk_report(
    views: List[TeacherSessionView],
    period_start: Optional[datetime] = None,
    period_end: Optional[datetime] = None,
) -> BulkReport:
    rollups = {}
    for view in views:
        rollup = rollups.get(view.username)
        if rollup is None:
            rollup = rollups[view.username] = TeacherRollup(username=view.username)
        rollup.add(view)

    return BulkReport(
        sessions=views,
        teachers=list(rollups.values()),
        total_active_time=sum(v.active_time_computed or 0 for v in views),
        total_idle_time=sum(v.idle_time_computed or 0 for v in views),
        total_events=sum(event_count(v) for v in views),
        total_file_access=sum(file_access_count(v) for v in views),
        period_start=period_start,
        period_end=period_end,
    )
