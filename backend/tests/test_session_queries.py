"""Read-side helpers: pagination, display resolution and computed totals."""

from datetime import datetime, timezone

import pytest
from bson import ObjectId

from fakes import InMemorySessionStore, InMemoryTaxonomy
from sensei.core.config import settings
from sensei.crud.taxonomy import TaxonomyKind
from sensei.models.teacher_session import TeacherSessionInDB
from sensei.services.session_queries import (
    NOT_AVAILABLE,
    DisplayResolver,
    SessionFilters,
    SessionQueryService,
    computed_times,
    is_live,
    normalize_pagination,
    parse_active,
    wrap_offset,
)


def _session(**overrides):
    doc = {"_id": ObjectId(), "username": "t1", "active": True, "session_token": "tok"}
    doc.update(overrides)
    return TeacherSessionInDB.model_validate(doc)


class TestPagination:
    def test_page_takes_precedence_over_offset(self):
        assert normalize_pagination(3, 7, 10, 20, 1000) == (10, 20)

    def test_defaults_and_caps(self):
        assert normalize_pagination(None, None, None, 20, 1000) == (20, 0)
        assert normalize_pagination(None, -5, 0, 20, 1000) == (20, 0)
        assert normalize_pagination(None, 40, 5000, 20, 1000) == (1000, 40)
        assert normalize_pagination(None, None, None, 20, 1000, default_offset=10) == (20, 10)

    def test_offset_wraps_to_first_page(self):
        assert wrap_offset(20, 15) == 0
        assert wrap_offset(15, 15) == 0
        assert wrap_offset(10, 15) == 10
        assert wrap_offset(40, 0) == 40


def test_parse_active():
    assert parse_active("true") is True
    assert parse_active("TRUE") is True
    assert parse_active("false") is False
    assert parse_active("yes") is False
    assert parse_active(None) is None
    assert parse_active("") is None


class TestComputedTimes:
    def test_stored_totals_win(self):
        session = _session(
            idle_time=7, active_time=9, file_access_log=[{"file_id": "f", "file_name": "a", "idle_time": 1, "active_time": 2}]
        )
        assert computed_times(session) == (7, 9)

    def test_missing_totals_are_summed_from_the_log(self):
        session = _session(
            file_access_log=[
                {"file_id": "f1", "file_name": "a", "idle_time": 1000, "active_time": 5000},
                {"file_id": "f2", "file_name": "b", "idle_time": 500, "active_time": 2000},
            ]
        )
        assert computed_times(session) == (1500, 7000)

    def test_empty_session(self):
        assert computed_times(_session()) == (0, 0)


class TestIsLive:
    def test_open_active_session(self):
        assert is_live(_session())

    def test_closed_or_invalidated_sessions(self):
        logout = datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert not is_live(_session(logout_time=logout))
        assert not is_live(_session(active=False))
        assert not is_live(_session(session_token="INVALIDATED_t1_1700000000000"))


@pytest.mark.anyio
class TestDisplayResolver:
    async def test_fallbacks(self):
        resolver = DisplayResolver(InMemoryTaxonomy())
        unknown = ObjectId()

        assert await resolver.resolve(TaxonomyKind.SECTION, None) == NOT_AVAILABLE
        assert await resolver.resolve(TaxonomyKind.SECTION, "") == NOT_AVAILABLE
        assert await resolver.resolve(TaxonomyKind.SECTION, "Algebra") == "Algebra"
        assert await resolver.resolve(TaxonomyKind.SECTION, unknown) == str(unknown)

    async def test_lookups_are_memoised(self):
        taxonomy = InMemoryTaxonomy()
        oid = taxonomy.add(TaxonomyKind.COURSE_CLASS, "10-A")
        resolver = DisplayResolver(taxonomy)

        for _ in range(5):
            assert await resolver.resolve(TaxonomyKind.COURSE_CLASS, oid) == "10-A"
            assert await resolver.resolve(TaxonomyKind.COURSE_CLASS, str(oid)) == "10-A"
        assert taxonomy.id_lookups == 1

    async def test_kinds_are_resolved_independently(self):
        taxonomy = InMemoryTaxonomy()
        oid = taxonomy.add(TaxonomyKind.SUBJECT, "Physics")
        resolver = DisplayResolver(taxonomy)

        assert await resolver.resolve(TaxonomyKind.SUBJECT, oid) == "Physics"
        assert await resolver.resolve(TaxonomyKind.SECTION, oid) == str(oid)


@pytest.mark.anyio
class TestSessionQueryService:
    async def _seed(self, store, count, **fields):
        ids = []
        for i in range(count):
            login = datetime(2024, 1, 1 + i, 8, tzinfo=timezone.utc)
            doc = await store.insert(
                {
                    "username": f"teacher{i}",
                    "login_at": login,
                    "login_time": login,
                    "active": True,
                    "session_token": f"tok{i}",
                    "file_access_log": [],
                    "sections": [],
                    "is_deleted": {"status": False},
                    **fields,
                }
            )
            ids.append(doc["_id"])
        return ids

    async def test_list_wraps_past_the_end(self):
        store = InMemorySessionStore()
        await self._seed(store, 15)
        service = SessionQueryService(store, InMemoryTaxonomy(), settings)

        result = await service.list_sessions(SessionFilters(), offset=20, limit=10)

        assert result.offset == 0
        assert len(result.sessions) == 10
        assert result.total == 15
        assert result.pagination.has_more is True
        assert result.pagination.total_pages == 2
        assert result.sessions[0].username == "teacher14"

    async def test_name_filter_without_match_yields_nothing(self):
        store = InMemorySessionStore()
        await self._seed(store, 3, subject_ref="Chemistry")
        service = SessionQueryService(store, InMemoryTaxonomy(), settings)

        result = await service.list_sessions(SessionFilters(subject="Chemistry"))
        assert result.total == 0
        assert result.sessions == []

    async def test_identifier_filter_matches_either_storage_form(self):
        store = InMemorySessionStore()
        taxonomy = InMemoryTaxonomy()
        oid = taxonomy.add(TaxonomyKind.SUBJECT, "Physics")
        await self._seed(store, 2, subject_ref=oid)
        await self._seed(store, 1, subject_ref=str(oid))
        await self._seed(store, 1, subject_ref="Biology")
        service = SessionQueryService(store, taxonomy, settings)

        by_id = await service.list_sessions(SessionFilters(subject=str(oid)))
        by_name = await service.list_sessions(SessionFilters(subject="phys"))

        assert by_id.total == 3
        assert by_name.total == 2
        assert {s.subject_display for s in by_name.sessions} == {"Physics"}

    async def test_end_date_covers_the_whole_day(self):
        store = InMemorySessionStore()
        await self._seed(store, 5)
        service = SessionQueryService(store, InMemoryTaxonomy(), settings)

        result = await service.list_sessions(SessionFilters(start_date="2024-01-02", end_date="2024-01-03"))
        assert sorted(s.username for s in result.sessions) == ["teacher1", "teacher2"]

    async def test_views_share_one_lookup_per_kind(self):
        store = InMemorySessionStore()
        taxonomy = InMemoryTaxonomy()
        section_id = taxonomy.add(TaxonomyKind.SECTION, "Section A")
        await self._seed(
            store,
            6,
            section_ref=section_id,
            sections=[{"id": str(section_id), "events": []}, {"id": "free-text", "events": []}],
        )
        service = SessionQueryService(store, taxonomy, settings)

        result = await service.list_sessions(SessionFilters())

        assert taxonomy.id_lookups == 1
        view = result.sessions[0]
        assert view.section_display == "Section A"
        assert [s.section_id_display for s in view.sections] == ["Section A", "free-text"]
        assert view.course_class_display == NOT_AVAILABLE
