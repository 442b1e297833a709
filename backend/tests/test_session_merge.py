"""Tests for update building and the overflow state machine."""

from datetime import datetime, timezone

import pytest
from bson import ObjectId

from fakes import InMemorySessionStore, StorageDown
from sensei.core.errors import DocumentTooLargeError, OverflowExhaustedError
from sensei.schemas.teacher_session import TeacherSessionCreate, TeacherSessionUpdate
from sensei.services.session_merge import (
    AttemptOutcome,
    MergeStage,
    SessionMergeEngine,
    SessionPatch,
    build_new_session,
    build_patch,
)
from sensei.services.timeline import STAGE1_BOUNDS, STAGE2_BOUNDS

NOW = datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc)
CLASS_ID = "65f0c0ffee0000000000abcd"


class ScriptedStore:
    """Commit fails with the scripted errors in order, then succeeds."""

    def __init__(self, commit_errors):
        self.commit_errors = list(commit_errors)
        self.commits = []
        self.shrinks = []

    async def shrink(self, session_id, bounds):
        self.shrinks.append(bounds)

    async def commit(self, session_id, patch, bounds=None):
        self.commits.append((patch, bounds))
        if self.commit_errors:
            error = self.commit_errors.pop(0)
            if error is not None:
                raise error
        return {"_id": session_id, "username": "t1"}


def _big_events(count, payload_size=200):
    return [{"type": 1, "data": {"p": "x" * payload_size}, "timestamp": i} for i in range(count)]


class TestBuildNewSession:
    def test_defaults(self):
        payload = TeacherSessionCreate.model_validate(
            {
                "username": "t1",
                "courseClassName": CLASS_ID,
                "sectionName": "S1",
                "subjectName": "Sub1",
                "sessionToken": "tok1",
                "fileAccessLog": [{"fileId": "f1", "fileName": "a.pdf", "idleTime": 100, "activeTime": 300}],
                "section": [{"id": "s1", "events": []}, {"events": []}],
            }
        )
        doc = build_new_session(payload, NOW)

        assert doc["course_class_ref"] == ObjectId(CLASS_ID)
        assert doc["section_ref"] == "S1"
        assert doc["login_at"] == doc["login_time"] == NOW
        assert doc["last_active_at"] == NOW
        assert doc["active"] is True
        assert doc["is_deleted"]["status"] is False
        assert [s["id"] for s in doc["sections"]] == ["s1"]
        assert (doc["idle_time"], doc["active_time"]) == (100, 300)

    def test_login_time_alias(self):
        payload = TeacherSessionCreate.model_validate(
            {"username": "t1", "loginTime": "2024-02-01T08:00:00Z", "active": False}
        )
        doc = build_new_session(payload, NOW)
        assert doc["login_at"] == datetime(2024, 2, 1, 8, 0, tzinfo=timezone.utc)
        assert doc["login_time"] == doc["login_at"]
        assert doc["active"] is False


class TestBuildPatch:
    def test_heartbeat_refreshes_last_active(self):
        patch = build_patch(TeacherSessionUpdate.model_validate({"active": True}), NOW)
        assert patch.fields == {"active": True, "last_active_at": NOW}
        assert patch.section is None
        assert patch.log_entry is None
        assert not patch.is_logout

    def test_logout_sets_both_fields_and_leaves_last_active(self):
        patch = build_patch(TeacherSessionUpdate.model_validate({"logoutTime": "2024-03-01T10:00:00Z"}), NOW)
        logout = datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)
        assert patch.fields["logout_at"] == logout
        assert patch.fields["logout_time"] == logout
        assert "last_active_at" not in patch.fields
        assert patch.is_logout

    def test_empty_references_are_ignored(self):
        patch = build_patch(
            TeacherSessionUpdate.model_validate({"courseClassName": "", "sectionName": CLASS_ID, "sessionToken": ""}),
            NOW,
        )
        assert "course_class_ref" not in patch.fields
        assert "session_token" not in patch.fields
        assert patch.fields["section_ref"] == ObjectId(CLASS_ID)

    def test_units_are_normalised(self):
        patch = build_patch(
            TeacherSessionUpdate.model_validate(
                {
                    "section": [{"id": "s9", "events": ["bad", {"type": 2, "data": {"dom": 1}, "timestamp": 1}]}],
                    "fileAccessLog": {"fileId": "f1", "fileName": "a.pdf", "activeTime": 5000},
                }
            ),
            NOW,
        )
        assert patch.section["id"] == "s9"
        assert patch.section["events"] == [{"type": 2, "data": {"dom": 1}, "timestamp": 1}]
        assert patch.log_entry["active_time"] == 5000
        assert patch.log_entry["idle_time"] == 0

    def test_section_without_id_is_dropped(self):
        patch = build_patch(TeacherSessionUpdate.model_validate({"section": {"events": []}}), NOW)
        assert patch.section is None


@pytest.mark.anyio
class TestMergeEngine:
    async def test_plain_update_commits_once(self):
        store = ScriptedStore([None])
        engine = SessionMergeEngine(store)
        document = await engine.apply_update("abc", SessionPatch(fields={"active": True}))

        assert document["username"] == "t1"
        assert store.shrinks == []
        assert [bounds for _, bounds in store.commits] == [None]

    async def test_escalates_through_both_stages(self):
        store = ScriptedStore([DocumentTooLargeError("normal"), DocumentTooLargeError("stage1"), None])
        engine = SessionMergeEngine(store)
        patch = SessionPatch(section={"id": "s1", "events": _big_events(300)})

        await engine.apply_update("abc", patch)

        assert store.shrinks == [STAGE1_BOUNDS, STAGE2_BOUNDS]
        assert [bounds for _, bounds in store.commits] == [None, STAGE1_BOUNDS, STAGE2_BOUNDS]
        last_patch = store.commits[-1][0]
        assert len(last_patch.section["events"]) == 100
        assert all(e["data"] == {} for e in last_patch.section["events"])
        # the caller's patch is left untouched
        assert len(patch.section["events"]) == 300

    async def test_exhaustion_reports_the_first_error(self):
        first = DocumentTooLargeError("normal attempt")
        store = ScriptedStore([first, DocumentTooLargeError("stage1"), DocumentTooLargeError("stage2")])
        engine = SessionMergeEngine(store)

        with pytest.raises(OverflowExhaustedError) as exc:
            await engine.apply_update("abc", SessionPatch(fields={"active": True}))

        assert exc.value.__cause__ is first
        assert exc.value.status_code == 500
        assert len(store.commits) == 3

    async def test_non_size_errors_propagate_without_retry(self):
        store = ScriptedStore([StorageDown("connection reset")])
        engine = SessionMergeEngine(store)

        with pytest.raises(StorageDown):
            await engine.apply_update("abc", SessionPatch(fields={"active": True}))
        assert store.shrinks == []
        assert len(store.commits) == 1

    async def test_attempt_outcomes(self):
        engine = SessionMergeEngine(ScriptedStore([DocumentTooLargeError("a"), DocumentTooLargeError("b")]))
        patch = SessionPatch(fields={"active": True})

        first = await engine.attempt("abc", patch, MergeStage.STAGE1_RETRY)
        second = await engine.attempt("abc", patch, MergeStage.STAGE2_RETRY)
        failed = await engine.attempt("abc", patch, MergeStage.FAILED)

        assert first.outcome is AttemptOutcome.ESCALATE
        assert second.outcome is AttemptOutcome.FAIL
        assert failed.outcome is AttemptOutcome.FAIL

    async def test_stage1_recovers_oversized_document(self):
        store = InMemorySessionStore()
        created = await store.insert(
            {
                "username": "t1",
                "sections": [{"id": "old", "events": _big_events(600)}],
                "file_access_log": [],
                "idle_time": 0,
                "active_time": 0,
                "is_deleted": {"status": False},
            }
        )
        store.max_document_bytes = 60_000
        engine = SessionMergeEngine(store)

        await engine.apply_update(
            str(created["_id"]),
            SessionPatch(
                section={"id": "new", "events": _big_events(10, payload_size=10)},
                log_entry={"file_id": "f1", "idle_time": 1000, "active_time": 5000},
            ),
        )

        stored = store.raw(created["_id"])
        assert store.shrink_bounds == [STAGE1_BOUNDS]
        assert store.commit_bounds == [None, STAGE1_BOUNDS]
        assert len(stored["sections"][0]["events"]) == 500
        assert [s["id"] for s in stored["sections"]] == ["old", "new"]
        assert (stored["idle_time"], stored["active_time"]) == (1000, 5000)
