# backend/sensei/crud/taxonomy.py

import re
from enum import Enum
from typing import Any, Dict, Iterable, List

from bson import ObjectId

from sensei.services.references import looks_like_object_id


class TaxonomyKind(str, Enum):
    COURSE_CLASS = "course_class"
    SECTION = "section"
    SUBJECT = "subject"


COLLECTIONS = {
    TaxonomyKind.COURSE_CLASS: "course_classes",
    TaxonomyKind.SECTION: "sections",
    TaxonomyKind.SUBJECT: "subjects",
}

NOT_DELETED = {"is_deleted.status": {"$ne": True}}


class TaxonomyDirectory:
    """
    Read-only lookups over the course class / section / subject collections.
    Those collections are maintained elsewhere; only `name` is relied upon.
    """

    def __init__(self, db):
        self._db = db

    def _collection(self, kind: TaxonomyKind):
        return self._db[COLLECTIONS[kind]]

    async def find_ids_by_name(self, kind: TaxonomyKind, text: str) -> List[ObjectId]:
        cursor = self._collection(kind).find(
            {"name": {"$regex": re.escape(text), "$options": "i"}, **NOT_DELETED},
            {"_id": 1},
        )
        docs = await cursor.to_list(length=None)
        return [d["_id"] for d in docs]

    async def names_by_ids(self, kind: TaxonomyKind, ids: Iterable[Any]) -> Dict[str, str]:
        """
        {str(id): name} for the ids that exist. Values without the
        identifier shape are skipped.
        """
        oids = list({ObjectId(str(i)) for i in ids if looks_like_object_id(i)})
        if not oids:
            return {}
        cursor = self._collection(kind).find({"_id": {"$in": oids}, **NOT_DELETED}, {"name": 1})
        docs = await cursor.to_list(length=None)
        return {str(d["_id"]): d.get("name") for d in docs if d.get("name")}
