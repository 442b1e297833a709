# backend/sensei/api/deps.py
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, Query, Request, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError

from sensei.core.config import Settings, settings
from sensei.core.security import decode_access_token
from sensei.crud.audit_logs import AuditContext, AuditLogWriter
from sensei.crud.taxonomy import TaxonomyDirectory
from sensei.crud.teacher_sessions import MongoSessionStore
from sensei.db.mongo import get_db
from sensei.services.pdf_renderer import PdfRenderer
from sensei.services.report_export import ReportExporter
from sensei.services.session_merge import SessionMergeEngine
from sensei.services.session_queries import SessionFilters, SessionQueryService

AUDIT_MODULE = "TEACHER_SESSION"

# Token issuance lives in the auth service; this only documents the flow for Swagger.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/login")


@dataclass
class CallerIdentity:
    user_id: str
    role: Optional[str] = None
    username: Optional[str] = None


async def get_current_identity(token: str = Depends(oauth2_scheme)) -> CallerIdentity:
    """
    Verifies the bearer JWT and returns the caller (sub / role / username).
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = decode_access_token(token)
    except JWTError:
        raise credentials_exception

    user_id = payload.get("sub")
    if user_id is None:
        raise credentials_exception
    return CallerIdentity(user_id=user_id, role=payload.get("role"), username=payload.get("username"))


def get_settings() -> Settings:
    return settings


# --- collaborators ---

def get_database():
    return get_db()


def get_session_store() -> MongoSessionStore:
    return MongoSessionStore(get_db())


def get_taxonomy() -> TaxonomyDirectory:
    return TaxonomyDirectory(get_db())


def get_audit_writer() -> AuditLogWriter:
    return AuditLogWriter(get_db(), module=AUDIT_MODULE)


def get_pdf_renderer(app_settings: Settings = Depends(get_settings)) -> PdfRenderer:
    return PdfRenderer(app_settings)


def get_merge_engine(store=Depends(get_session_store)) -> SessionMergeEngine:
    return SessionMergeEngine(store)


def get_query_service(
    store=Depends(get_session_store),
    taxonomy=Depends(get_taxonomy),
    app_settings: Settings = Depends(get_settings),
) -> SessionQueryService:
    return SessionQueryService(store, taxonomy, app_settings)


def get_report_exporter(
    store=Depends(get_session_store),
    queries: SessionQueryService = Depends(get_query_service),
    renderer=Depends(get_pdf_renderer),
    app_settings: Settings = Depends(get_settings),
) -> ReportExporter:
    return ReportExporter(store, queries, renderer, app_settings)


def get_audit_context(request: Request, identity: CallerIdentity = Depends(get_current_identity)) -> AuditContext:
    return AuditContext(
        user_id=identity.user_id,
        user_role=identity.role,
        ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


# --- shared query parameters ---

def get_session_filters(
    username: Optional[str] = None,
    course_class_name: Optional[str] = Query(None, alias="courseClassName"),
    course_class: Optional[str] = Query(None, alias="courseClass"),
    section_name: Optional[str] = Query(None, alias="sectionName"),
    section: Optional[str] = None,
    subject_name: Optional[str] = Query(None, alias="subjectName"),
    subject: Optional[str] = None,
    active: Optional[str] = None,
    start_date: Optional[str] = Query(None, alias="startDate"),
    date_from: Optional[str] = Query(None, alias="dateFrom"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    date_to: Optional[str] = Query(None, alias="dateTo"),
) -> SessionFilters:
    return SessionFilters(
        username=username,
        course_class=course_class_name or course_class,
        section=section_name or section,
        subject=subject_name or subject,
        active=active,
        start_date=start_date or date_from,
        end_date=end_date or date_to,
    )
