"""The Mongo update pipelines against the in-process timeline rules.

Runs against a real mongod named by SENSEI_TEST_MONGO_URI (for example
mongodb://localhost:27017); skipped when it is not set.
"""

import os
from datetime import datetime, timezone

import pytest
from bson import ObjectId
from pymongo import MongoClient, ReturnDocument

from sensei.crud.teacher_sessions import build_commit_pipeline, build_shrink_pipeline
from sensei.services.session_merge import SessionPatch
from sensei.services.timeline import (
    STAGE1_BOUNDS,
    STAGE2_BOUNDS,
    RetentionBounds,
    apply_patch,
    prune_events,
    shrink_document,
)

MONGO_URI = os.environ.get("SENSEI_TEST_MONGO_URI")
NARROW_WINDOW = RetentionBounds(events_per_section=3, max_sections=50, max_log_entries=100)

pytestmark = pytest.mark.skipif(not MONGO_URI, reason="SENSEI_TEST_MONGO_URI is not set")


@pytest.fixture()
def collection():
    client = MongoClient(MONGO_URI, serverSelectionTimeoutMS=3000, tz_aware=True)
    db_name = f"sensei_test_{ObjectId()}"
    try:
        yield client[db_name]["teacher_sessions"]
    finally:
        client.drop_database(db_name)
        client.close()


def _events(count, event_type=1, start=0):
    return [{"type": event_type, "data": {"n": start + i, "p": "x" * 8}, "timestamp": 1_000 + start + i} for i in range(count)]


def _replay_fixture():
    # 599 ordinary events with one replay snapshot near the start
    events = _events(10) + [{"type": 2, "data": {"dom": "full"}, "timestamp": 5}] + _events(589, start=10)
    assert len(events) == 600
    return events


def _document(sections, log_entries=0):
    return {
        "username": "t1",
        "active": True,
        "sections": sections,
        "file_access_log": [
            {"file_id": f"f{i}", "file_name": "a.pdf", "idle_time": i, "active_time": 2 * i} for i in range(log_entries)
        ],
        "idle_time": 0,
        "active_time": 0,
        "is_deleted": {"status": False},
    }


def _stored(collection, oid):
    return collection.find_one({"_id": oid}, {"_id": 0})


def _shrunk_in_mongo(collection, doc, bounds):
    oid = collection.insert_one({**doc}).inserted_id
    collection.update_one({"_id": oid}, build_shrink_pipeline(bounds))
    return _stored(collection, oid)


class TestShrinkParity:
    def test_replay_fixture_at_stage1(self, collection):
        doc = _document([{"id": "s1", "start_time": "a", "events": _replay_fixture()}], log_entries=150)

        result = _shrunk_in_mongo(collection, doc, STAGE1_BOUNDS)

        assert result == shrink_document(doc, STAGE1_BOUNDS)
        events = result["sections"][0]["events"]
        assert len(events) == 500
        assert events[0] == {"type": 2, "data": {"dom": "full"}, "timestamp": 5}
        assert events[-1]["timestamp"] == 1_598
        assert all(e["data"] == {} for e in events[1:])
        assert result["active_time"] == sum(2 * i for i in range(50, 150))

    def test_section_limit_at_stage2(self, collection):
        sections = [{"id": f"sec-{i}", "events": _events(120)} for i in range(25)]
        result = _shrunk_in_mongo(collection, _document(sections, log_entries=60), STAGE2_BOUNDS)

        assert result == shrink_document(_document(sections, log_entries=60), STAGE2_BOUNDS)
        assert [s["id"] for s in result["sections"]] == [f"sec-{i}" for i in range(5, 25)]

    @pytest.mark.parametrize(
        "events",
        [
            [],
            _events(3),
            _events(4, event_type=2) + _events(6),
            _events(50) + _events(2, event_type=2, start=50) + _events(80, start=52),
        ],
        ids=["empty", "short", "snapshots-fill-window", "snapshots-mid-window"],
    )
    def test_event_window_edges(self, collection, events):
        doc = _document([{"id": "s1", "events": events}, {"id": "no-events"}])

        result = _shrunk_in_mongo(collection, doc, NARROW_WINDOW)

        assert result == shrink_document(doc, NARROW_WINDOW)
        assert result["sections"][0]["events"] == prune_events(events, 3)


class TestCommitParity:
    def _commit(self, collection, doc, patch, bounds=None):
        oid = collection.insert_one({**doc}).inserted_id
        collection.find_one_and_update(
            {"_id": oid}, build_commit_pipeline(patch, bounds), return_document=ReturnDocument.AFTER
        )
        return _stored(collection, oid)

    def test_totals_follow_the_merged_log(self, collection):
        doc = _document([], log_entries=2)
        patch = SessionPatch(
            fields={"active": False, "username": "$not-a-field", "logout_at": datetime(2024, 3, 1, 10, tzinfo=timezone.utc)},
            log_entry={"file_id": "f9", "file_name": "b.pdf", "idle_time": 1000, "active_time": 5000},
            section={"id": "s1", "events": _events(2)},
        )

        result = self._commit(collection, doc, patch)

        assert result == apply_patch(doc, patch)
        assert result["username"] == "$not-a-field"
        assert (result["idle_time"], result["active_time"]) == (1001, 5002)

    def test_bounds_cap_appended_units(self, collection):
        doc = _document([{"id": f"sec-{i}", "events": []} for i in range(50)], log_entries=100)
        patch = SessionPatch(
            section={"id": "new", "events": []},
            log_entry={"file_id": "x", "file_name": "c.pdf", "idle_time": 0, "active_time": 7},
        )

        result = self._commit(collection, doc, patch, STAGE1_BOUNDS)

        assert result == apply_patch(doc, patch, STAGE1_BOUNDS)
        assert len(result["sections"]) == 50
        assert result["sections"][-1]["id"] == "new"
        assert len(result["file_access_log"]) == 100
