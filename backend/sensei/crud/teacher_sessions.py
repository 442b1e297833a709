# backend/sensei/crud/teacher_sessions.py

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument
from pymongo.errors import DocumentTooLarge, OperationFailure, PyMongoError

from sensei.core.errors import DocumentTooLargeError, NotFoundError
from sensei.models.teacher_session import SNAPSHOT_EVENT_TYPE
from sensei.schemas.teacher_session import TeacherSessionSummary
from sensei.services.references import reference_text
from sensei.services.timeline import RetentionBounds

COLLECTION_NAME = "teacher_sessions"

SESSION_NOT_FOUND = "Teacher session not found"

SUMMARY_PROJECTION = {
    "username": 1,
    "session_token": 1,
    "course_class_ref": 1,
    "section_ref": 1,
    "subject_ref": 1,
    "login_at": 1,
    "last_active_at": 1,
    "active": 1,
    "idle_time": 1,
    "active_time": 1,
}

# server: BSONObjectTooLarge, "Resulting document after update is larger than ..."
SIZE_ERROR_CODES = {10334, 17419}
SIZE_ERROR_MARKERS = ("too large", "maximum size", "bsonobj size", "offset", "out of range")

NOT_DELETED = {"is_deleted.status": {"$ne": True}}


def is_size_error(exc: Exception) -> bool:
    if isinstance(exc, DocumentTooLarge):
        return True
    if isinstance(exc, OperationFailure) and exc.code in SIZE_ERROR_CODES:
        return True
    message = str(exc).lower()
    return any(marker in message for marker in SIZE_ERROR_MARKERS)


def serialize_summary(doc: Dict[str, Any]) -> TeacherSessionSummary:
    """
    Mongo document(dict) -> TeacherSessionSummary
    """
    return TeacherSessionSummary(
        id=str(doc["_id"]),
        username=doc.get("username", ""),
        session_token=doc.get("session_token"),
        course_class_name=reference_text(doc.get("course_class_ref")) or None,
        section_name=reference_text(doc.get("section_ref")) or None,
        subject_name=reference_text(doc.get("subject_ref")) or None,
        login_at=doc.get("login_at"),
        last_active_at=doc.get("last_active_at"),
        active=doc.get("active", True),
        idle_time=doc.get("idle_time"),
        active_time=doc.get("active_time"),
    )


def _safe_object_id(session_id: Any) -> ObjectId:
    # a malformed id cannot name a stored session
    try:
        return ObjectId(session_id)
    except (InvalidId, TypeError):
        raise NotFoundError(SESSION_NOT_FOUND)


# --------------------------------------------------------------------------
# Query description shared with the in-process stores
# --------------------------------------------------------------------------
@dataclass
class SessionQuery:
    """
    Storage-neutral filter. ``None`` means "no constraint"; an empty
    reference list means "nothing can match".
    """
    username: Optional[str] = None
    username_exact: bool = False
    text: Optional[str] = None
    text_course_class_refs: Sequence[Any] = ()
    text_section_refs: Sequence[Any] = ()
    text_subject_refs: Sequence[Any] = ()
    course_class_refs: Optional[Sequence[Any]] = None
    section_refs: Optional[Sequence[Any]] = None
    subject_refs: Optional[Sequence[Any]] = None
    active: Optional[bool] = None
    date_field: str = "login_at"
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    include_deleted: bool = False


SortSpec = List[Tuple[str, int]]


def _contains(text: str) -> Dict[str, str]:
    return {"$regex": re.escape(text), "$options": "i"}


def build_mongo_filter(query: SessionQuery) -> Dict[str, Any]:
    mongo_filter: Dict[str, Any] = {}
    if not query.include_deleted:
        mongo_filter.update(NOT_DELETED)

    if query.username:
        mongo_filter["username"] = query.username if query.username_exact else _contains(query.username)

    for field, refs in (
        ("course_class_ref", query.course_class_refs),
        ("section_ref", query.section_refs),
        ("subject_ref", query.subject_refs),
    ):
        if refs is not None:
            mongo_filter[field] = {"$in": list(refs)}

    if query.active is not None:
        mongo_filter["active"] = query.active

    date_range = {}
    if query.date_from is not None:
        date_range["$gte"] = query.date_from
    if query.date_to is not None:
        date_range["$lte"] = query.date_to
    if date_range:
        mongo_filter[query.date_field] = date_range

    if query.text:
        alternatives: List[Dict[str, Any]] = [
            {"username": _contains(query.text)},
            {"session_token": _contains(query.text)},
            {"device_id": _contains(query.text)},
        ]
        for field, refs in (
            ("course_class_ref", query.text_course_class_refs),
            ("section_ref", query.text_section_refs),
            ("subject_ref", query.text_subject_refs),
        ):
            if refs:
                alternatives.append({field: {"$in": list(refs)}})
        mongo_filter["$or"] = alternatives

    return mongo_filter


# --------------------------------------------------------------------------
# Update pipelines
# --------------------------------------------------------------------------
def _log_sum(field: str) -> Dict[str, Any]:
    return {
        "$sum": {
            "$map": {
                "input": {"$ifNull": ["$file_access_log", []]},
                "as": "entry",
                "in": {"$ifNull": [f"$$entry.{field}", 0]},
            }
        }
    }


# recomputed after every mutation of file_access_log, in the same operation
TOTALS_STAGE = {"$set": {"idle_time": _log_sum("idle_time"), "active_time": _log_sum("active_time")}}


def _append(field: str, item: Dict[str, Any], keep_last: Optional[int]) -> Dict[str, Any]:
    expr: Dict[str, Any] = {"$concatArrays": [{"$ifNull": [f"${field}", []]}, {"$literal": [item]}]}
    if keep_last is not None:
        expr = {"$slice": [expr, -keep_last]}
    return expr


def build_commit_pipeline(patch, bounds: Optional[RetentionBounds] = None) -> List[Dict[str, Any]]:
    merge: Dict[str, Any] = {name: {"$literal": value} for name, value in patch.fields.items()}
    if patch.log_entry is not None:
        merge["file_access_log"] = _append(
            "file_access_log", patch.log_entry, bounds.max_log_entries if bounds else None
        )
    if patch.section is not None:
        merge["sections"] = _append("sections", patch.section, bounds.max_sections if bounds else None)

    pipeline: List[Dict[str, Any]] = []
    if merge:
        pipeline.append({"$set": merge})
    pipeline.append(TOTALS_STAGE)
    return pipeline


def pruned_events_expr(events: str, keep_last: int) -> Dict[str, Any]:
    """
    Snapshot-priority event window as an aggregation expression:
    all snapshot events plus the newest non-snapshot events that fit in
    ``keep_last``, non-snapshot payloads emptied, order preserved.
    """
    is_snapshot = {"$eq": ["$$x.e.type", SNAPSHOT_EVENT_TYPE]}
    cutoff = {
        "$switch": {
            "branches": [
                {"case": {"$eq": ["$$quota", 0]}, "then": {"$size": "$$evs"}},
                {"case": {"$gte": ["$$quota", {"$size": "$$others"}]}, "then": 0},
            ],
            "default": {
                "$let": {
                    "vars": {
                        "first": {
                            "$arrayElemAt": ["$$others", {"$subtract": [{"$size": "$$others"}, "$$quota"]}]
                        }
                    },
                    "in": "$$first.i",
                }
            },
        }
    }
    window = {
        "$map": {
            "input": {
                "$filter": {
                    "input": "$$indexed",
                    "as": "x",
                    "cond": {"$or": [is_snapshot, {"$gte": ["$$x.i", "$$cutoff"]}]},
                }
            },
            "as": "x",
            "in": {"$cond": [is_snapshot, "$$x.e", {"$mergeObjects": ["$$x.e", {"data": {"$literal": {}}}]}]},
        }
    }
    return {
        "$let": {
            "vars": {"evs": {"$ifNull": [events, []]}},
            "in": {
                "$let": {
                    "vars": {
                        "indexed": {
                            "$map": {
                                "input": {"$range": [0, {"$size": "$$evs"}]},
                                "as": "i",
                                "in": {"i": "$$i", "e": {"$arrayElemAt": ["$$evs", "$$i"]}},
                            }
                        }
                    },
                    "in": {
                        "$let": {
                            "vars": {
                                "others": {
                                    "$filter": {
                                        "input": "$$indexed",
                                        "as": "x",
                                        "cond": {"$ne": ["$$x.e.type", SNAPSHOT_EVENT_TYPE]},
                                    }
                                }
                            },
                            "in": {
                                "$let": {
                                    "vars": {
                                        "quota": {
                                            "$max": [
                                                0,
                                                {
                                                    "$subtract": [
                                                        keep_last,
                                                        {"$subtract": [{"$size": "$$evs"}, {"$size": "$$others"}]},
                                                    ]
                                                },
                                            ]
                                        }
                                    },
                                    "in": {"$let": {"vars": {"cutoff": cutoff}, "in": window}},
                                }
                            },
                        }
                    },
                }
            },
        }
    }


def build_shrink_pipeline(bounds: RetentionBounds) -> List[Dict[str, Any]]:
    return [
        {
            "$set": {
                "sections": {
                    "$map": {
                        "input": {"$slice": [{"$ifNull": ["$sections", []]}, -bounds.max_sections]},
                        "as": "section",
                        "in": {
                            "$mergeObjects": [
                                "$$section",
                                {"events": pruned_events_expr("$$section.events", bounds.events_per_section)},
                            ]
                        },
                    }
                },
                "file_access_log": {"$slice": [{"$ifNull": ["$file_access_log", []]}, -bounds.max_log_entries]},
            }
        },
        TOTALS_STAGE,
    ]


# --------------------------------------------------------------------------
# Store
# --------------------------------------------------------------------------
class MongoSessionStore:
    """
    Teacher-session persistence over a Motor collection.
    Size-class write failures surface as DocumentTooLargeError.
    """

    def __init__(self, db):
        self._col = db[COLLECTION_NAME]

    # CREATE
    async def insert(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        try:
            result = await self._col.insert_one(doc)
        except PyMongoError as exc:
            if is_size_error(exc):
                raise DocumentTooLargeError(str(exc)) from exc
            raise
        return {**doc, "_id": result.inserted_id}

    # READ ONE
    async def get(self, session_id: str) -> Dict[str, Any]:
        doc = await self._col.find_one({"_id": _safe_object_id(session_id), **NOT_DELETED}, {"is_deleted": 0})
        if not doc:
            raise NotFoundError(SESSION_NOT_FOUND)
        return doc

    async def get_summary(self, session_id: str) -> Dict[str, Any]:
        doc = await self._col.find_one({"_id": _safe_object_id(session_id), **NOT_DELETED}, SUMMARY_PROJECTION)
        if not doc:
            raise NotFoundError(SESSION_NOT_FOUND)
        return doc

    async def get_sections(self, session_id: str) -> List[Dict[str, Any]]:
        doc = await self._col.find_one({"_id": _safe_object_id(session_id), **NOT_DELETED}, {"sections": 1})
        if not doc:
            raise NotFoundError(SESSION_NOT_FOUND)
        return doc.get("sections") or []

    # READ MANY
    async def count(self, query: SessionQuery) -> int:
        return await self._col.count_documents(build_mongo_filter(query))

    async def find(
        self,
        query: SessionQuery,
        sort: SortSpec,
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        cursor = self._col.find(build_mongo_filter(query), {"is_deleted": 0}).sort(sort).skip(skip)
        if limit is not None:
            cursor = cursor.limit(limit)
        return await cursor.to_list(length=limit)

    # UPDATE (merge)
    async def commit(self, session_id: str, patch, bounds: Optional[RetentionBounds] = None) -> Dict[str, Any]:
        oid = _safe_object_id(session_id)
        try:
            updated = await self._col.find_one_and_update(
                {"_id": oid, **NOT_DELETED},
                build_commit_pipeline(patch, bounds),
                projection=SUMMARY_PROJECTION,
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as exc:
            if is_size_error(exc):
                raise DocumentTooLargeError(str(exc)) from exc
            raise
        if not updated:
            raise NotFoundError(SESSION_NOT_FOUND)
        return updated

    async def shrink(self, session_id: str, bounds: RetentionBounds) -> None:
        oid = _safe_object_id(session_id)
        try:
            result = await self._col.update_one({"_id": oid, **NOT_DELETED}, build_shrink_pipeline(bounds))
        except PyMongoError as exc:
            if is_size_error(exc):
                raise DocumentTooLargeError(str(exc)) from exc
            raise
        if result.matched_count == 0:
            raise NotFoundError(SESSION_NOT_FOUND)

    # DELETE (soft)
    async def soft_delete(self, session_id: str, deleted_by: Optional[str], now: datetime) -> None:
        result = await self._col.update_one(
            {"_id": _safe_object_id(session_id), **NOT_DELETED},
            {"$set": {"is_deleted": {"status": True, "deleted_by": deleted_by, "deleted_time": now}}},
        )
        if result.matched_count == 0:
            raise NotFoundError(SESSION_NOT_FOUND)

    # EXPIRY
    async def find_expired(self, cutoff: datetime) -> List[Dict[str, Any]]:
        cursor = self._col.find(
            {
                **NOT_DELETED,
                "active": True,
                "logout_time": None,
                "logout_at": None,
                "$or": [{"login_time": {"$lte": cutoff}}, {"login_at": {"$lte": cutoff}}],
            },
            {"username": 1},
        )
        return await cursor.to_list(length=None)

    async def invalidate(self, session_ids: List[Any], username: str, now: datetime, token: str) -> int:
        result = await self._col.update_many(
            {"_id": {"$in": list(session_ids)}},
            {"$set": {"active": False, "logout_at": now, "logout_time": now, "session_token": token}},
        )
        return result.modified_count
