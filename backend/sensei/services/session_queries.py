# backend/sensei/services/session_queries.py
"""
Read side of teacher sessions: list / search / get-by-id / sections.

Views carry resolved display names for the taxonomy references and for
every timeline section id, plus computed idle/active totals.
"""
import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

from bson import ObjectId

from sensei.core.config import Settings
from sensei.core.logging_config import get_logger
from sensei.crud.taxonomy import TaxonomyKind
from sensei.crud.teacher_sessions import SessionQuery, SortSpec
from sensei.models.teacher_session import INVALIDATED_TOKEN_PREFIX, TeacherSessionInDB, TimelineSection
from sensei.schemas.teacher_session import (
    ListPagination,
    SearchPagination,
    SectionView,
    TeacherSessionList,
    TeacherSessionSearchResult,
    TeacherSessionSections,
    TeacherSessionView,
)
from sensei.services.references import ReferenceKind, classify_reference, looks_like_object_id
from sensei.services.timeline import sum_log_times
from sensei.utils.dates import end_of_day, parse_date

NOT_AVAILABLE = "N/A"

# client sort keys -> stored fields
SORTABLE_FIELDS = {
    "loginAt": "login_at",
    "loginTime": "login_time",
    "logoutAt": "logout_at",
    "logoutTime": "logout_time",
    "lastActiveAt": "last_active_at",
    "username": "username",
    "active": "active",
    "activeTime": "active_time",
    "idleTime": "idle_time",
}


@dataclass
class SessionFilters:
    """Raw filter parameters as received from the client."""
    username: Optional[str] = None
    course_class: Optional[str] = None
    section: Optional[str] = None
    subject: Optional[str] = None
    active: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None

    def echo(self) -> Dict[str, Any]:
        return {
            "username": self.username,
            "courseClassName": self.course_class,
            "sectionName": self.section,
            "subjectName": self.subject,
            "active": self.active,
            "startDate": self.start_date,
            "endDate": self.end_date,
        }


def parse_active(value: Optional[str]) -> Optional[bool]:
    if value is None or value == "":
        return None
    return str(value).lower() == "true"


def normalize_pagination(
    page: Optional[int],
    offset: Optional[int],
    limit: Optional[int],
    default_limit: int,
    max_limit: int,
    default_offset: int = 0,
) -> Tuple[int, int]:
    """
    (limit, offset). A page number, when given, takes precedence over an
    explicit offset.
    """
    safe_limit = default_limit if not limit or limit < 1 else limit
    safe_limit = max(1, min(safe_limit, max_limit))
    if page is not None and page >= 1:
        return safe_limit, (page - 1) * safe_limit
    safe_offset = default_offset if offset is None else offset
    return safe_limit, max(safe_offset, 0)


def wrap_offset(offset: int, total: int) -> int:
    # past the end of a non-empty result: serve the first page instead
    if total > 0 and offset >= total:
        return 0
    return offset


def computed_times(session: TeacherSessionInDB) -> Tuple[float, float]:
    """
    (idle, active): stored totals when present, else summed from the log.
    """
    log = [entry.model_dump() for entry in session.file_access_log]
    log_idle, log_active = sum_log_times(log)
    idle = session.idle_time if session.idle_time is not None else log_idle
    active = session.active_time if session.active_time is not None else log_active
    return idle, active


def is_live(session: TeacherSessionInDB) -> bool:
    token = session.session_token or ""
    return (
        session.active
        and session.logout_at is None
        and session.logout_time is None
        and not token.startswith(INVALIDATED_TOKEN_PREFIX)
    )


class DisplayResolver:
    """
    Maps stored references to display names. Lookups are memoised for the
    lifetime of the resolver, which is one request.
    """

    def __init__(self, taxonomy):
        self._taxonomy = taxonomy
        self._cache: Dict[Tuple[TaxonomyKind, str], str] = {}
        self.lookups = 0

    async def prime(self, kind: TaxonomyKind, values: Iterable[Any]) -> None:
        pending = {str(v) for v in values if looks_like_object_id(v) and (kind, str(v)) not in self._cache}
        if not pending:
            return
        self.lookups += 1
        names = await self._taxonomy.names_by_ids(kind, pending)
        for key in pending:
            self._cache[(kind, key)] = names.get(key) or key

    async def resolve(self, kind: TaxonomyKind, value: Any) -> str:
        if value is None or value == "":
            return NOT_AVAILABLE
        key = str(value)
        if not looks_like_object_id(value):
            return key
        if (kind, key) not in self._cache:
            await self.prime(kind, [key])
        return self._cache[(kind, key)]


async def section_views(sections: List[TimelineSection], resolver: DisplayResolver) -> List[SectionView]:
    return [
        SectionView(
            **section.model_dump(),
            section_id_display=await resolver.resolve(TaxonomyKind.SECTION, section.id),
        )
        for section in sections
    ]


async def build_view(session_doc: Dict[str, Any], resolver: DisplayResolver) -> TeacherSessionView:
    session = TeacherSessionInDB.model_validate(session_doc)
    idle_computed, active_computed = computed_times(session)
    sections = await section_views(session.sections, resolver)

    return TeacherSessionView(
        id=session.id,
        username=session.username,
        session_token=session.session_token,
        device_id=session.device_id,
        course_class_name=str(session.course_class_ref) if session.course_class_ref is not None else None,
        section_name=str(session.section_ref) if session.section_ref is not None else None,
        subject_name=str(session.subject_ref) if session.subject_ref is not None else None,
        course_class_display=await resolver.resolve(TaxonomyKind.COURSE_CLASS, session.course_class_ref),
        section_display=await resolver.resolve(TaxonomyKind.SECTION, session.section_ref),
        subject_display=await resolver.resolve(TaxonomyKind.SUBJECT, session.subject_ref),
        login_at=session.login_at,
        login_time=session.login_time,
        logout_at=session.logout_at,
        logout_time=session.logout_time,
        last_active_at=session.last_active_at,
        active=session.active,
        is_live=is_live(session),
        idle_time=session.idle_time,
        active_time=session.active_time,
        idle_time_computed=idle_computed,
        active_time_computed=active_computed,
        file_access_log=session.file_access_log,
        sections=sections,
    )


class SessionQueryService:
    def __init__(self, store, taxonomy, settings: Settings, logger: Optional[logging.Logger] = None):
        self._store = store
        self._taxonomy = taxonomy
        self._settings = settings
        self._logger = logger or get_logger("session_queries")

    def new_resolver(self) -> DisplayResolver:
        return DisplayResolver(self._taxonomy)

    async def resolve_reference_filter(self, kind: TaxonomyKind, value: Optional[str]) -> Optional[List[Any]]:
        """
        Identifier-shaped input filters directly; anything else is a name
        search whose matches (possibly none) become the filter.
        """
        if not value:
            return None
        if classify_reference(value) is ReferenceKind.IDENTIFIER:
            return [ObjectId(value), value]
        return await self._taxonomy.find_ids_by_name(kind, value)

    async def build_query(
        self,
        filters: SessionFilters,
        *,
        username_exact: bool = False,
        date_field: str = "login_at",
    ) -> SessionQuery:
        date_from = parse_date(filters.start_date)
        date_to = parse_date(filters.end_date)
        return SessionQuery(
            username=filters.username or None,
            username_exact=username_exact,
            course_class_refs=await self.resolve_reference_filter(TaxonomyKind.COURSE_CLASS, filters.course_class),
            section_refs=await self.resolve_reference_filter(TaxonomyKind.SECTION, filters.section),
            subject_refs=await self.resolve_reference_filter(TaxonomyKind.SUBJECT, filters.subject),
            active=parse_active(filters.active),
            date_field=date_field,
            date_from=date_from,
            date_to=end_of_day(date_to) if date_to is not None else None,
        )

    async def build_views(self, docs: List[Dict[str, Any]], resolver: Optional[DisplayResolver] = None) -> List[TeacherSessionView]:
        resolver = resolver or self.new_resolver()
        # one batched lookup per kind before resolving field by field
        await resolver.prime(TaxonomyKind.COURSE_CLASS, (d.get("course_class_ref") for d in docs))
        await resolver.prime(
            TaxonomyKind.SECTION,
            [d.get("section_ref") for d in docs]
            + [s.get("id") for d in docs for s in (d.get("sections") or []) if isinstance(s, dict)],
        )
        await resolver.prime(TaxonomyKind.SUBJECT, (d.get("subject_ref") for d in docs))
        return [await build_view(doc, resolver) for doc in docs]

    # READ ALL
    async def list_sessions(
        self,
        filters: SessionFilters,
        page: Optional[int] = None,
        offset: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> TeacherSessionList:
        started = time.perf_counter()
        safe_limit, safe_offset = normalize_pagination(
            page,
            offset,
            limit,
            self._settings.DEFAULT_RES_LIMIT,
            self._settings.MAX_RES_LIMIT,
            self._settings.DEFAULT_RES_OFFSET,
        )
        query = await self.build_query(filters)
        total = await self._store.count(query)
        safe_offset = wrap_offset(safe_offset, total)

        docs = await self._store.find(query, [("login_at", -1), ("_id", -1)], skip=safe_offset, limit=safe_limit)
        sessions = await self.build_views(docs)

        current_page = safe_offset // safe_limit + 1
        self._logger.info(
            "Listed %d/%d teacher sessions in %.1fms",
            len(sessions), total, (time.perf_counter() - started) * 1000,
        )
        return TeacherSessionList(
            sessions=sessions,
            total=total,
            limit=safe_limit,
            offset=safe_offset,
            pagination=ListPagination(
                page=current_page,
                current_page=current_page,
                total_pages=math.ceil(total / safe_limit),
                has_more=safe_offset + len(sessions) < total,
                total_items=total,
            ),
            filters=filters.echo(),
        )

    # SEARCH
    async def search_sessions(
        self,
        q: Optional[str],
        filters: SessionFilters,
        page: Optional[int] = None,
        limit: Optional[int] = None,
        sort_by: Optional[str] = None,
        sort_order: Optional[str] = None,
    ) -> TeacherSessionSearchResult:
        started = time.perf_counter()
        safe_limit, safe_offset = normalize_pagination(
            page or 1,
            None,
            limit,
            self._settings.SEARCH_DEFAULT_LIMIT,
            self._settings.MAX_RES_LIMIT,
        )
        query = await self.build_query(filters)
        text = (q or "").strip()
        if text:
            query.text = text
            query.text_course_class_refs = await self._taxonomy.find_ids_by_name(TaxonomyKind.COURSE_CLASS, text)
            query.text_section_refs = await self._taxonomy.find_ids_by_name(TaxonomyKind.SECTION, text)
            query.text_subject_refs = await self._taxonomy.find_ids_by_name(TaxonomyKind.SUBJECT, text)

        sort_field = SORTABLE_FIELDS.get(sort_by or "loginAt", "login_at")
        direction = 1 if (sort_order or "desc").lower() == "asc" else -1
        sort: SortSpec = [(sort_field, direction), ("_id", direction)]

        total = await self._store.count(query)
        safe_offset = wrap_offset(safe_offset, total)
        docs = await self._store.find(query, sort, skip=safe_offset, limit=safe_limit)
        sessions = await self.build_views(docs)

        current_page = safe_offset // safe_limit + 1
        total_pages = math.ceil(total / safe_limit)
        self._logger.info(
            "Searched teacher sessions (q=%r): %d/%d in %.1fms",
            text, len(sessions), total, (time.perf_counter() - started) * 1000,
        )
        return TeacherSessionSearchResult(
            data=sessions,
            search_query=text or None,
            pagination=SearchPagination(
                current_page=current_page,
                total_pages=total_pages,
                total_sessions=total,
                has_next_page=current_page < total_pages,
                has_prev_page=current_page > 1,
                limit=safe_limit,
            ),
            filters={**filters.echo(), "sortBy": sort_by or "loginAt", "sortOrder": sort_order or "desc"},
        )

    # READ ONE
    async def get_session(self, session_id: str) -> TeacherSessionView:
        doc = await self._store.get(session_id)
        views = await self.build_views([doc])
        return views[0]

    async def get_sections(self, session_id: str) -> TeacherSessionSections:
        sections = await self._store.get_sections(session_id)
        resolver = self.new_resolver()
        await resolver.prime(TaxonomyKind.SECTION, [s.get("id") for s in sections if isinstance(s, dict)])
        parsed = [TimelineSection.model_validate(s) for s in sections if isinstance(s, dict)]
        return TeacherSessionSections(session_id=session_id, sections=await section_views(parsed, resolver))
