# backend/sensei/api/endpoints/teacher_session_exports.py
import io
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse

from sensei.api.deps import (
    get_audit_context,
    get_audit_writer,
    get_current_identity,
    get_report_exporter,
    get_session_filters,
)
from sensei.crud.audit_logs import AuditContext
from sensei.services.report_export import (
    ExportedDocument,
    ExportFormat,
    ReportExporter,
    parse_export_format,
)
from sensei.services.session_queries import SessionFilters

# Mounted ahead of the teacher-session router so /export/* never reaches /{session_id}.
router = APIRouter(prefix="/export", dependencies=[Depends(get_current_identity)])


def _attachment(document: ExportedDocument) -> StreamingResponse:
    return StreamingResponse(
        io.BytesIO(document.content),
        media_type=document.media_type,
        headers={"Content-Disposition": f'attachment; filename="{document.filename}"'},
    )


# --------------------------------------------------------------------------
# GET /api/v1/teacher-sessions/export/individual?username=&startDate=&endDate=&type=
# Latest session of one teacher inside the date range.
# --------------------------------------------------------------------------
@router.get("/individual")
async def export_latest_teacher_session(
    username: Optional[str] = None,
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    export_type: Optional[str] = Query("pdf", alias="type"),
    exporter: ReportExporter = Depends(get_report_exporter),
    audit=Depends(get_audit_writer),
    ctx: AuditContext = Depends(get_audit_context),
):
    export_format = parse_export_format(export_type)
    async with audit.recording_failures(ctx, "Export individual teacher session"):
        document = await exporter.export_individual(
            export_format, username=username, start_date=start_date, end_date=end_date
        )
    return _attachment(document)


@router.get("/individual/{session_id}")
async def export_teacher_session(
    session_id: str,
    export_type: Optional[str] = Query("pdf", alias="type"),
    exporter: ReportExporter = Depends(get_report_exporter),
    audit=Depends(get_audit_writer),
    ctx: AuditContext = Depends(get_audit_context),
):
    export_format = parse_export_format(export_type)
    async with audit.recording_failures(ctx, "Export individual teacher session", session_id):
        document = await exporter.export_individual(export_format, session_id=session_id)
    return _attachment(document)


async def _export_bulk(exporter: ReportExporter, audit, ctx: AuditContext, export_format: ExportFormat, filters: SessionFilters):
    async with audit.recording_failures(ctx, f"Export bulk teacher sessions ({export_format.value})"):
        document = await exporter.export_bulk(export_format, filters)
    return _attachment(document)


@router.get("/bulk/pdf")
async def export_teacher_sessions_pdf(
    filters: SessionFilters = Depends(get_session_filters),
    exporter: ReportExporter = Depends(get_report_exporter),
    audit=Depends(get_audit_writer),
    ctx: AuditContext = Depends(get_audit_context),
):
    return await _export_bulk(exporter, audit, ctx, ExportFormat.PDF, filters)


@router.get("/bulk/excel")
async def export_teacher_sessions_excel(
    filters: SessionFilters = Depends(get_session_filters),
    exporter: ReportExporter = Depends(get_report_exporter),
    audit=Depends(get_audit_writer),
    ctx: AuditContext = Depends(get_audit_context),
):
    return await _export_bulk(exporter, audit, ctx, ExportFormat.EXCEL, filters)
