# backend/sensei/services/report_export.py

import logging
import re
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from fastapi.templating import Jinja2Templates

from sensei.core.config import Settings
from sensei.core.errors import NotFoundError, ValidationError
from sensei.core.logging_config import get_logger
from sensei.crud.teacher_sessions import SessionQuery
from sensei.services.pdf_renderer import PDF_MEDIA_TYPE
from sensei.services.reports import (
    ReportClock,
    build_bulk_report,
    build_individual_report,
    event_count,
    login_of,
    logout_of,
    session_duration_ms,
    to_minutes,
)
from sensei.services.session_queries import SessionFilters, SessionQueryService
from sensei.services.spreadsheet import XLSX_MEDIA_TYPE, build_bulk_workbook, build_individual_workbook
from sensei.utils.dates import end_of_day, parse_date

TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates"
templates = Jinja2Templates(directory=str(TEMPLATES_DIR))

NO_SESSION_FOUND = "No teacher session found for the given criteria"
NO_SESSIONS_FOUND = "No teacher sessions found for the given criteria"


class ExportFormat(str, Enum):
    PDF = "pdf"
    EXCEL = "excel"

    @property
    def extension(self) -> str:
        return "pdf" if self is ExportFormat.PDF else "xlsx"

    @property
    def media_type(self) -> str:
        return PDF_MEDIA_TYPE if self is ExportFormat.PDF else XLSX_MEDIA_TYPE


def parse_export_format(value: Optional[str]) -> ExportFormat:
    try:
        return ExportFormat((value or "pdf").lower())
    except ValueError:
        raise ValidationError('Invalid type parameter. Must be "pdf" or "excel"', fields=["type"])


def _filename_part(text: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]+", "_", text).strip("_") or "teacher"


@dataclass
class ExportedDocument:
    content: bytes
    filename: str
    media_type: str


class ReportExporter:
    def __init__(
        self,
        store,
        queries: SessionQueryService,
        renderer,
        settings: Settings,
        logger: Optional[logging.Logger] = None,
    ):
        self._store = store
        self._queries = queries
        self._renderer = renderer
        self._settings = settings
        self._logger = logger or get_logger("report_export")

    def _clock(self) -> ReportClock:
        return ReportClock(self._settings.REPORT_TIMEZONE)

    async def _render_pdf(self, template_name: str, **context) -> bytes:
        html = templates.get_template(template_name).render(to_minutes=to_minutes, **context)
        return await self._renderer.render(html)

    async def _latest_for_teacher(self, username: str, start_date: Optional[str], end_date: Optional[str]):
        date_to = parse_date(end_date)
        query = SessionQuery(
            username=username,
            username_exact=True,
            date_field="login_time",
            date_from=parse_date(start_date),
            date_to=end_of_day(date_to) if date_to is not None else None,
        )
        docs = await self._store.find(query, [("login_time", -1), ("_id", -1)], limit=1)
        if not docs:
            raise NotFoundError(NO_SESSION_FOUND)
        return docs[0]

    async def export_individual(
        self,
        export_format: ExportFormat,
        session_id: Optional[str] = None,
        username: Optional[str] = None,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
    ) -> ExportedDocument:
        started = time.perf_counter()
        if session_id:
            doc = await self._store.get(session_id)
        else:
            if not username:
                raise ValidationError("Username is required when sessionId is not provided", fields=["username"])
            doc = await self._latest_for_teacher(username, start_date, end_date)

        view = (await self._queries.build_views([doc]))[0]
        report = build_individual_report(view)
        clock = self._clock()

        if export_format is ExportFormat.PDF:
            content = await self._render_pdf(
                "teacher_session_report.html",
                report=report,
                clock=clock,
                login=login_of(view),
                logout=logout_of(view),
            )
        else:
            content = build_individual_workbook(report, clock)

        filename = f"teacher-session-{_filename_part(view.username)}-{clock.file_date}.{export_format.extension}"
        self._logger.info(
            "Exported session %s as %s (%d bytes) in %.1fms",
            view.id, export_format.value, len(content), (time.perf_counter() - started) * 1000,
        )
        return ExportedDocument(content=content, filename=filename, media_type=export_format.media_type)

    async def export_bulk(self, export_format: ExportFormat, filters: SessionFilters) -> ExportedDocument:
        started = time.perf_counter()
        query = await self._queries.build_query(filters, username_exact=True, date_field="login_time")
        docs = await self._store.find(query, [("login_time", -1), ("_id", -1)])
        if not docs:
            raise NotFoundError(NO_SESSIONS_FOUND)

        views = await self._queries.build_views(docs)
        report = build_bulk_report(views, period_start=query.date_from, period_end=query.date_to)
        clock = self._clock()

        if export_format is ExportFormat.PDF:
            rows = [
                {
                    "session": v,
                    "login": login_of(v),
                    "logout": logout_of(v),
                    "duration_ms": session_duration_ms(v),
                    "events": event_count(v),
                }
                for v in views
            ]
            content = await self._render_pdf(
                "teacher_sessions_bulk_report.html", report=report, clock=clock, rows=rows
            )
        else:
            content = build_bulk_workbook(report, clock)

        filename = f"teacher-sessions-report-{clock.file_date}.{export_format.extension}"
        self._logger.info(
            "Exported %d sessions as %s (%d bytes) in %.1fms",
            report.total_sessions, export_format.value, len(content), (time.perf_counter() - started) * 1000,
        )
        return ExportedDocument(content=content, filename=filename, media_type=export_format.media_type)
