# backend/sensei/services/session_merge.py
"""
Incremental merge engine for teacher-session updates.

An update carries scalar field changes plus at most one new timeline
section and at most one new file-access entry. It is committed as one
storage operation that appends the units and recomputes idle/active
totals from the post-merge log.

When the storage engine rejects the write for size, the overflow ladder
takes over: shrink the stored document to the stage's retention bounds,
minimise the incoming section the same way, retry. Two shrink stages are
tried before the update is abandoned.
"""
import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from sensei.core.errors import DocumentTooLargeError, OverflowExhaustedError
from sensei.core.logging_config import get_logger
from sensei.schemas.teacher_session import TeacherSessionCreate, TeacherSessionUpdate
from sensei.services.references import to_reference
from sensei.services.timeline import (
    STAGE1_BOUNDS,
    STAGE2_BOUNDS,
    RetentionBounds,
    minimize_section,
    normalize_log_entry,
    normalize_section,
    recompute_totals,
)
from sensei.utils.dates import ensure_aware_utc, utcnow


@dataclass
class SessionPatch:
    """Storage-shaped unit of work for one update call."""
    fields: Dict[str, Any] = field(default_factory=dict)
    section: Optional[Dict[str, Any]] = None
    log_entry: Optional[Dict[str, Any]] = None

    @property
    def is_logout(self) -> bool:
        return "logout_at" in self.fields or "logout_time" in self.fields

    def minimized(self, bounds: RetentionBounds) -> "SessionPatch":
        if self.section is None:
            return self
        return replace(self, section=minimize_section(self.section, bounds))


def build_new_session(payload: TeacherSessionCreate, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Storage document for a freshly opened session. Required fields are
    checked by the caller.
    """
    now = now or utcnow()
    login = ensure_aware_utc(payload.login_at or payload.login_time) or now
    sections = [normalize_section(raw) for raw in payload.section]
    entries = [normalize_log_entry(raw) for raw in payload.file_access_log]

    doc = {
        "username": payload.username,
        "course_class_ref": to_reference(payload.course_class_name),
        "section_ref": to_reference(payload.section_name),
        "subject_ref": to_reference(payload.subject_name),
        "session_token": payload.session_token,
        "device_id": payload.device_id,
        "login_at": login,
        "login_time": login,
        "last_active_at": now,
        "active": True if payload.active is None else payload.active,
        "file_access_log": [e for e in entries if e is not None],
        "sections": [s for s in sections if s is not None],
        "is_deleted": {"status": False, "deleted_by": None, "deleted_time": None},
    }
    return recompute_totals(doc)


def build_patch(payload: TeacherSessionUpdate, now: Optional[datetime] = None) -> SessionPatch:
    now = now or utcnow()
    fields: Dict[str, Any] = {}

    if payload.username is not None:
        fields["username"] = payload.username
    if payload.course_class_name:
        fields["course_class_ref"] = to_reference(payload.course_class_name)
    if payload.section_name:
        fields["section_ref"] = to_reference(payload.section_name)
    if payload.subject_name:
        fields["subject_ref"] = to_reference(payload.subject_name)
    if payload.session_token:
        fields["session_token"] = payload.session_token
    if payload.device_id is not None:
        fields["device_id"] = payload.device_id
    if payload.active is not None:
        fields["active"] = payload.active

    # either alias closes the session; both fields are kept in step
    logout = payload.logout_at or payload.logout_time
    if logout is not None:
        logout = ensure_aware_utc(logout)
        fields["logout_at"] = logout
        fields["logout_time"] = logout
    else:
        fields["last_active_at"] = now

    return SessionPatch(
        fields=fields,
        section=normalize_section(payload.section),
        log_entry=normalize_log_entry(payload.file_access_log),
    )


class MergeStage(str, Enum):
    NORMAL = "normal"
    STAGE1_RETRY = "stage1_retry"
    STAGE2_RETRY = "stage2_retry"
    FAILED = "failed"


class AttemptOutcome(str, Enum):
    COMMITTED = "committed"
    ESCALATE = "escalate"
    FAIL = "fail"


STAGE_BOUNDS: Dict[MergeStage, Optional[RetentionBounds]] = {
    MergeStage.NORMAL: None,
    MergeStage.STAGE1_RETRY: STAGE1_BOUNDS,
    MergeStage.STAGE2_RETRY: STAGE2_BOUNDS,
}

NEXT_STAGE: Dict[MergeStage, MergeStage] = {
    MergeStage.NORMAL: MergeStage.STAGE1_RETRY,
    MergeStage.STAGE1_RETRY: MergeStage.STAGE2_RETRY,
    MergeStage.STAGE2_RETRY: MergeStage.FAILED,
    MergeStage.FAILED: MergeStage.FAILED,
}


@dataclass
class AttemptResult:
    outcome: AttemptOutcome
    stage: MergeStage
    document: Optional[Dict[str, Any]] = None
    error: Optional[Exception] = None


class SessionMergeEngine:
    def __init__(self, store, logger: Optional[logging.Logger] = None):
        self._store = store
        self._logger = logger or get_logger("session_merge")

    async def attempt(self, session_id: str, patch: SessionPatch, stage: MergeStage) -> AttemptResult:
        """
        One transition of the overflow state machine.
        Non-size storage errors propagate unchanged.
        """
        if stage is MergeStage.FAILED:
            return AttemptResult(AttemptOutcome.FAIL, stage)

        bounds = STAGE_BOUNDS[stage]
        try:
            if bounds is not None:
                await self._store.shrink(session_id, bounds)
                patch = patch.minimized(bounds)
            document = await self._store.commit(session_id, patch, bounds)
        except DocumentTooLargeError as exc:
            next_stage = NEXT_STAGE[stage]
            outcome = AttemptOutcome.FAIL if next_stage is MergeStage.FAILED else AttemptOutcome.ESCALATE
            return AttemptResult(outcome, stage, error=exc)

        return AttemptResult(AttemptOutcome.COMMITTED, stage, document=document)

    async def apply_update(self, session_id: str, patch: SessionPatch) -> Dict[str, Any]:
        started = time.perf_counter()
        stage = MergeStage.NORMAL
        original_error: Optional[Exception] = None

        while True:
            result = await self.attempt(session_id, patch, stage)

            if result.outcome is AttemptOutcome.COMMITTED:
                elapsed_ms = (time.perf_counter() - started) * 1000
                if stage is MergeStage.NORMAL:
                    self._logger.info("Session %s updated in %.1fms", session_id, elapsed_ms)
                else:
                    self._logger.warning(
                        "Session %s updated after overflow recovery (%s) in %.1fms",
                        session_id, stage.value, elapsed_ms,
                    )
                return result.document

            if original_error is None:
                original_error = result.error

            if result.outcome is AttemptOutcome.FAIL:
                self._logger.error(
                    "Session %s update failed after all overflow stages: %s",
                    session_id, original_error,
                )
                raise OverflowExhaustedError(
                    "Session update exceeds the maximum document size"
                ) from original_error

            self._logger.warning(
                "Session %s hit the document size ceiling at stage %s; escalating",
                session_id, stage.value,
            )
            stage = NEXT_STAGE[stage]
