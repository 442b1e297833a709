# backend/sensei/services/spreadsheet.py

import io
import json
from typing import Any, Dict, List

import pandas as pd

from sensei.services.reports import (
    SESSION_ACTIVE_LABEL,
    BulkReport,
    IndividualReport,
    ReportClock,
    event_count,
    logout_of,
    login_of,
    session_duration_ms,
    to_minutes,
    truncate_cell,
)

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

Rows = List[List[Any]]


def _event_data_text(data: Any) -> str:
    return json.dumps(data, default=str, ensure_ascii=False)


def write_workbook(sheets: Dict[str, Rows]) -> bytes:
    """
    Sheets are written as plain grids (first row is whatever the caller
    put there); every cell passes through the per-cell length limit.
    """
    buffer = io.BytesIO()
    with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
        for sheet_name, rows in sheets.items():
            grid = [[truncate_cell(cell) for cell in row] for row in rows]
            pd.DataFrame(grid).to_excel(writer, sheet_name=sheet_name, index=False, header=False)
    buffer.seek(0)
    return buffer.getvalue()


def individual_sheets(report: IndividualReport, clock: ReportClock) -> Dict[str, Rows]:
    s = report.session
    summary: Rows = [
        ["Teacher Session Detailed Report"],
        [""],
        ["Session Information"],
        ["Teacher Name", s.username],
        ["Course Class", s.course_class_display],
        ["Section", s.section_display],
        ["Subject", s.subject_display],
        ["Login Time", clock.format(login_of(s))],
        ["Logout Time", clock.format(logout_of(s), empty=SESSION_ACTIVE_LABEL)],
        [""],
        ["Session Metrics"],
        ["Total Duration (minutes)", to_minutes(report.duration_ms)],
        ["Active Time (minutes)", to_minutes(report.active_time)],
        ["Idle Time (minutes)", to_minutes(report.idle_time)],
        ["Number of Sections", report.section_count],
        ["Total Events", report.total_events],
        ["File Accesses", report.total_file_access],
    ]

    sections: Rows = [["Section", "Start Time", "End Time", "Number of Events"]]
    for section in s.sections:
        sections.append([section.section_id_display, section.start_time, section.end_time, len(section.events)])

    files: Rows = [["File Name", "Folder Name", "Accessed At"]]
    for entry in s.file_access_log:
        files.append([entry.file_name, entry.folder_name or "N/A", clock.format(entry.accessed_at)])

    events: Rows = [["Session Section", "Section Index", "Event Type", "Timestamp", "Data"]]
    for index, section in enumerate(s.sections, start=1):
        for event in section.events:
            events.append(
                [
                    section.section_id_display,
                    index,
                    event.type,
                    clock.format_ms(event.timestamp),
                    _event_data_text(event.data),
                ]
            )

    return {
        "Session Summary": summary,
        "Sections": sections,
        "File Access Log": files,
        "Events": events,
    }


def bulk_sheets(report: BulkReport, clock: ReportClock) -> Dict[str, Rows]:
    period = (
        f"{clock.format_date(report.period_start, 'All Time')} - "
        f"{clock.format_date(report.period_end, 'Present')}"
    )
    summary: Rows = [
        ["Teacher Sessions Report"],
        [""],
        ["Report Period", period],
        ["Generated On", clock.format(clock.generated_at)],
        [""],
        ["Overall Summary"],
        ["Total Sessions", report.total_sessions],
        ["Total Active Time (minutes)", to_minutes(report.total_active_time)],
        ["Total Idle Time (minutes)", to_minutes(report.total_idle_time)],
        ["Total Events", report.total_events],
        ["Total File Accesses", report.total_file_access],
        [""],
        ["Teacher Performance Summary"],
        [
            "Teacher Name", "Sessions", "Active Time (min)", "Idle Time (min)", "Events",
            "File Access", "Course Classes", "Sections", "Subjects",
        ],
    ]
    for teacher in report.teachers:
        summary.append(
            [
                teacher.username,
                teacher.sessions,
                to_minutes(teacher.total_active_time),
                to_minutes(teacher.total_idle_time),
                teacher.total_events,
                teacher.total_file_access,
                ", ".join(teacher.course_classes),
                ", ".join(teacher.sections),
                ", ".join(teacher.subjects),
            ]
        )

    sessions: Rows = [
        [
            "Teacher", "Course Class", "Section", "Subject", "Login Time", "Logout Time",
            "Duration (min)", "Active Time (min)", "Idle Time (min)", "Events", "File Access",
        ]
    ]
    files: Rows = [["Teacher", "File Name", "Folder Name", "Accessed At", "Course Class", "Section", "Subject"]]
    events: Rows = [["Teacher", "Course Class", "Section", "Subject", "Session Section", "Event Type", "Timestamp", "Data"]]

    for s in report.sessions:
        sessions.append(
            [
                s.username,
                s.course_class_display,
                s.section_display,
                s.subject_display,
                clock.format(login_of(s)),
                clock.format(logout_of(s), empty="Active"),
                to_minutes(session_duration_ms(s)),
                to_minutes(s.active_time_computed),
                to_minutes(s.idle_time_computed),
                event_count(s),
                len(s.file_access_log),
            ]
        )
        for entry in s.file_access_log:
            files.append(
                [
                    s.username,
                    entry.file_name,
                    entry.folder_name or "N/A",
                    clock.format(entry.accessed_at),
                    s.course_class_display,
                    s.section_display,
                    s.subject_display,
                ]
            )
        for section in s.sections:
            for event in section.events:
                events.append(
                    [
                        s.username,
                        s.course_class_display,
                        s.section_display,
                        s.subject_display,
                        section.section_id_display,
                        event.type,
                        clock.format_ms(event.timestamp),
                        _event_data_text(event.data),
                    ]
                )

    return {"Summary": summary, "Sessions": sessions, "File Access": files, "Events": events}


def build_individual_workbook(report: IndividualReport, clock: ReportClock) -> bytes:
    return write_workbook(individual_sheets(report, clock))


def build_bulk_workbook(report: BulkReport, clock: ReportClock) -> bytes:
    return write_workbook(bulk_sheets(report, clock))
