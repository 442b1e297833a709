# backend/sensei/services/timeline.py
"""
Pure rules for the nested timeline data of a teacher session.

Documents here are plain dicts in storage shape (snake_case keys).
Normalisation runs on every incoming unit of work, the event prune on
overflow retries.
The Mongo store applies document-level retention and merging as update
pipelines; `shrink_document` and `apply_patch` are the reference
implementation of those pipelines, used by in-memory stores and by the
pipeline parity tests.
"""
import copy
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from sensei.core.errors import ValidationError
from sensei.models.teacher_session import (
    SNAPSHOT_EVENT_TYPE,
    FileAccessEntry,
    TimelineSection,
)


@dataclass(frozen=True)
class RetentionBounds:
    events_per_section: int
    max_sections: int
    max_log_entries: int


# overflow ladder
STAGE1_BOUNDS = RetentionBounds(events_per_section=500, max_sections=50, max_log_entries=100)
STAGE2_BOUNDS = RetentionBounds(events_per_section=100, max_sections=20, max_log_entries=50)


def _first_unit(raw: Any) -> Any:
    # clients may send a list; only its first element is accepted per update
    if isinstance(raw, list):
        return raw[0] if raw else None
    return raw


def is_snapshot(event: Dict[str, Any]) -> bool:
    return event.get("type") == SNAPSHOT_EVENT_TYPE


def normalize_section(raw: Any) -> Optional[Dict[str, Any]]:
    """
    Returns the storage form of one incoming section, or None when the
    section is absent or has no usable id.
    """
    unit = _first_unit(raw)
    if not isinstance(unit, dict):
        return None
    try:
        section = TimelineSection.model_validate(unit)
    except PydanticValidationError:
        return None
    return section.model_dump()


def normalize_log_entry(raw: Any) -> Optional[Dict[str, Any]]:
    unit = _first_unit(raw)
    if unit is None:
        return None
    if not isinstance(unit, dict):
        raise ValidationError("Invalid fileAccessLog entry", fields=["fileAccessLog"])
    try:
        entry = FileAccessEntry.model_validate(unit)
    except PydanticValidationError as exc:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in exc.errors()})
        raise ValidationError("Invalid fileAccessLog entry", fields=fields) from exc
    return entry.model_dump()


def _as_number(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return value


def sum_log_times(entries: List[Dict[str, Any]]) -> Tuple[float, float]:
    """(idle, active) totals over a file-access log."""
    idle = 0
    active = 0
    for entry in entries or []:
        if not isinstance(entry, dict):
            continue
        idle += _as_number(entry.get("idle_time"))
        active += _as_number(entry.get("active_time"))
    return idle, active


def recompute_totals(doc: Dict[str, Any]) -> Dict[str, Any]:
    idle, active = sum_log_times(doc.get("file_access_log") or [])
    doc["idle_time"] = idle
    doc["active_time"] = active
    return doc


def prune_events(events: List[Dict[str, Any]], keep_last: int) -> List[Dict[str, Any]]:
    """
    Snapshot-priority retention window.

    Every snapshot event is kept with its payload. The remaining room in a
    window of ``keep_last`` events goes to the most recent non-snapshot
    events, whose payloads are emptied. Original order is preserved.
    """
    events = [e for e in events or [] if isinstance(e, dict)]
    snapshot_count = sum(1 for e in events if is_snapshot(e))
    quota = max(keep_last - snapshot_count, 0)
    others = [i for i, e in enumerate(events) if not is_snapshot(e)]

    if quota == 0:
        cutoff = len(events)
    elif quota >= len(others):
        cutoff = 0
    else:
        cutoff = others[len(others) - quota]

    kept = []
    for i, event in enumerate(events):
        if is_snapshot(event):
            kept.append(event)
        elif i >= cutoff:
            kept.append({**event, "data": {}})
    return kept


def minimize_section(section: Dict[str, Any], bounds: RetentionBounds) -> Dict[str, Any]:
    return {**section, "events": prune_events(section.get("events") or [], bounds.events_per_section)}


def shrink_document(doc: Dict[str, Any], bounds: RetentionBounds) -> Dict[str, Any]:
    """
    Stored-document shrink for one overflow stage. Idempotent for a given
    set of bounds.
    """
    shrunk = copy.deepcopy(doc)
    sections = (shrunk.get("sections") or [])[-bounds.max_sections:]
    shrunk["sections"] = [minimize_section(s, bounds) for s in sections]
    shrunk["file_access_log"] = (shrunk.get("file_access_log") or [])[-bounds.max_log_entries:]
    return recompute_totals(shrunk)


def apply_patch(doc: Dict[str, Any], patch, bounds: Optional[RetentionBounds] = None) -> Dict[str, Any]:
    """
    Merge one unit of work into a stored document and recompute the
    derived totals against the post-merge log.
    """
    merged = copy.deepcopy(doc)
    merged.update(copy.deepcopy(patch.fields))

    if patch.log_entry is not None:
        log = list(merged.get("file_access_log") or []) + [copy.deepcopy(patch.log_entry)]
        if bounds is not None:
            log = log[-bounds.max_log_entries:]
        merged["file_access_log"] = log

    if patch.section is not None:
        sections = list(merged.get("sections") or []) + [copy.deepcopy(patch.section)]
        if bounds is not None:
            sections = sections[-bounds.max_sections:]
        merged["sections"] = sections

    return recompute_totals(merged)
