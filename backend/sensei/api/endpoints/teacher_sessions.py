# backend/sensei/api/endpoints/teacher_sessions.py
from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from sensei.api.deps import (
    get_audit_context,
    get_audit_writer,
    get_current_identity,
    get_merge_engine,
    get_query_service,
    get_session_filters,
    get_session_store,
)
from sensei.core.errors import ValidationError
from sensei.crud.audit_logs import AuditContext
from sensei.crud.teacher_sessions import serialize_summary
from sensei.schemas.teacher_session import (
    TeacherSessionCreate,
    TeacherSessionCreated,
    TeacherSessionDeleted,
    TeacherSessionDetail,
    TeacherSessionList,
    TeacherSessionSearchResult,
    TeacherSessionSections,
    TeacherSessionUpdate,
    TeacherSessionUpdated,
)
from sensei.services.session_merge import build_new_session, build_patch
from sensei.services.session_queries import SessionFilters, SessionQueryService
from sensei.utils.dates import utcnow

router = APIRouter(dependencies=[Depends(get_current_identity)])

REQUIRED_CREATE_FIELDS = (
    ("username", "username"),
    ("course_class_name", "courseClassName"),
    ("section_name", "sectionName"),
    ("subject_name", "subjectName"),
    ("session_token", "sessionToken"),
)

# fields whose changes are written to the audit trail on update
TRACKED_UPDATE_FIELDS = ("username", "session_token", "last_active_at", "active")


# --------------------------------------------------------------------------
# GET /api/v1/teacher-sessions
# --------------------------------------------------------------------------
@router.get("", response_model=TeacherSessionList)
async def list_teacher_sessions(
    page: Optional[int] = Query(None, ge=1),
    offset: Optional[int] = Query(None, ge=0),
    limit: Optional[int] = Query(None, ge=1),
    filters: SessionFilters = Depends(get_session_filters),
    queries: SessionQueryService = Depends(get_query_service),
):
    return await queries.list_sessions(filters, page=page, offset=offset, limit=limit)


# --------------------------------------------------------------------------
# GET /api/v1/teacher-sessions/search
# --------------------------------------------------------------------------
@router.get("/search", response_model=TeacherSessionSearchResult)
async def search_teacher_sessions(
    q: Optional[str] = None,
    page: Optional[int] = Query(None, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    sort_by: Optional[str] = Query(None, alias="sortBy"),
    sort_order: Optional[str] = Query(None, alias="sortOrder"),
    filters: SessionFilters = Depends(get_session_filters),
    queries: SessionQueryService = Depends(get_query_service),
):
    return await queries.search_sessions(q, filters, page=page, limit=limit, sort_by=sort_by, sort_order=sort_order)


# CREATE
@router.post("", response_model=TeacherSessionCreated, status_code=status.HTTP_201_CREATED)
async def create_teacher_session(
    payload: TeacherSessionCreate,
    store=Depends(get_session_store),
    audit=Depends(get_audit_writer),
    ctx: AuditContext = Depends(get_audit_context),
):
    async with audit.recording_failures(ctx, "Create teacher session"):
        missing = [alias for field, alias in REQUIRED_CREATE_FIELDS if not getattr(payload, field)]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}", fields=missing)

        created = await store.insert(build_new_session(payload, utcnow()))
        await audit.log_create(ctx, str(created["_id"]), f"Teacher session created for {payload.username}")
        return TeacherSessionCreated(session=serialize_summary(created))


# READ ONE
@router.get("/{session_id}", response_model=TeacherSessionDetail)
async def read_teacher_session(session_id: str, queries: SessionQueryService = Depends(get_query_service)):
    return TeacherSessionDetail(session=await queries.get_session(session_id))


@router.get("/{session_id}/sections", response_model=TeacherSessionSections)
async def read_teacher_session_sections(session_id: str, queries: SessionQueryService = Depends(get_query_service)):
    return await queries.get_sections(session_id)


# UPDATE (merge one unit of work)
@router.put("/{session_id}", response_model=TeacherSessionUpdated)
async def update_teacher_session(
    session_id: str,
    payload: TeacherSessionUpdate,
    store=Depends(get_session_store),
    engine=Depends(get_merge_engine),
    audit=Depends(get_audit_writer),
    ctx: AuditContext = Depends(get_audit_context),
):
    async with audit.recording_failures(ctx, "Update teacher session", session_id):
        before = await store.get_summary(session_id)
        after = await engine.apply_update(session_id, build_patch(payload))
        await audit.log_update(
            ctx,
            session_id,
            before,
            after,
            TRACKED_UPDATE_FIELDS,
            f"Teacher session updated for {after.get('username')}",
        )
        return TeacherSessionUpdated(session=serialize_summary(after))


# DELETE (soft)
@router.delete("/{session_id}", response_model=TeacherSessionDeleted)
async def delete_teacher_session(
    session_id: str,
    store=Depends(get_session_store),
    audit=Depends(get_audit_writer),
    ctx: AuditContext = Depends(get_audit_context),
):
    async with audit.recording_failures(ctx, "Delete teacher session", session_id):
        await store.soft_delete(session_id, ctx.user_id, utcnow())
        await audit.log_delete(ctx, session_id, "Teacher session deleted")
        return TeacherSessionDeleted()
