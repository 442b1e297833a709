# backend/sensei/services/references.py
"""
Identifier-or-name handling for taxonomy references (course class,
section, subject).
"""
import re
from enum import Enum
from typing import Any

from bson import ObjectId

_OBJECT_ID_PATTERN = re.compile(r"^[a-f0-9]{24}$", re.IGNORECASE)


class ReferenceKind(str, Enum):
    IDENTIFIER = "identifier"
    NAME = "name"


def looks_like_object_id(value: Any) -> bool:
    if isinstance(value, ObjectId):
        return True
    return isinstance(value, str) and bool(_OBJECT_ID_PATTERN.match(value))


def classify_reference(value: Any) -> ReferenceKind:
    return ReferenceKind.IDENTIFIER if looks_like_object_id(value) else ReferenceKind.NAME


def to_reference(value: Any) -> Any:
    """
    Storage form of a reference: an ObjectId when the value has the
    identifier shape, otherwise the raw value.
    """
    if isinstance(value, ObjectId):
        return value
    if looks_like_object_id(value):
        return ObjectId(value)
    return value


def reference_text(value: Any) -> str:
    return "" if value is None else str(value)
