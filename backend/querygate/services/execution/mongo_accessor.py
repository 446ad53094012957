from __future__ import annotations

"""backend/querygate/services/execution/mongo_accessor.py

The ``db`` capability object a Mongo query expression is evaluated against.

- DatabaseAccessor: attribute / subscript access lazily materializes a
  CollectionWrapper per collection name; ``collection(name)`` (and the
  shell-style ``getCollection(name)``) give the same wrapper by explicit name
- CollectionWrapper: the allow-listed collection methods, named as in the
  Mongo shell (find, findOne, insertOne, ..., aggregate, countDocuments)
- CursorChain: the cursor returned by find/aggregate; supports the
  allow-listed modifiers and is converted to a list once evaluation ends

Write results are converted to plain dicts shaped like the shell's
acknowledgements so they can be stored as a JSON snapshot.
"""

from typing import Any, Dict, List, Optional

from pymongo.collection import Collection
from pymongo.database import Database

# Shell method name -> CollectionWrapper attribute
COLLECTION_METHODS = {
    "find": "find",
    "findOne": "find_one",
    "insertOne": "insert_one",
    "insertMany": "insert_many",
    "updateOne": "update_one",
    "updateMany": "update_many",
    "deleteOne": "delete_one",
    "deleteMany": "delete_many",
    "countDocuments": "count_documents",
    "aggregate": "aggregate",
}

CURSOR_METHODS = {
    "sort": "sort",
    "limit": "limit",
    "skip": "skip",
    "toArray": "to_array",
}

DATABASE_METHODS = {"collection", "getCollection"}

_FIND_OPTION_KEYS = {"projection", "sort", "limit", "skip"}


def _sort_spec(spec: Any) -> List[tuple]:
    if isinstance(spec, dict):
        return [(key, direction) for key, direction in spec.items()]
    if isinstance(spec, (list, tuple)):
        return [tuple(pair) for pair in spec]
    raise TypeError(f"Invalid sort specification: {spec!r}")


def _find_kwargs(options: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Accept either a driver-style options document or a bare projection."""
    if not options:
        return {}
    if not isinstance(options, dict):
        raise TypeError("find options must be a document")
    if not set(options) & _FIND_OPTION_KEYS:
        return {"projection": options}

    kwargs: Dict[str, Any] = {}
    if options.get("projection") is not None:
        kwargs["projection"] = options["projection"]
    if options.get("sort") is not None:
        kwargs["sort"] = _sort_spec(options["sort"])
    if options.get("limit") is not None:
        kwargs["limit"] = int(options["limit"])
    if options.get("skip") is not None:
        kwargs["skip"] = int(options["skip"])
    return kwargs


def _update_result(result) -> Dict[str, Any]:
    return {
        "acknowledged": result.acknowledged,
        "matchedCount": result.matched_count,
        "modifiedCount": result.modified_count,
        "upsertedId": result.upserted_id,
        "upsertedCount": 1 if result.upserted_id is not None else 0,
    }


class CursorChain:
    def __init__(self, cursor, *, modifiers: bool = True) -> None:
        self._cursor = cursor
        self._modifiers = modifiers

    def allows(self, method: str) -> bool:
        return method == "toArray" or self._modifiers

    def sort(self, spec: Any) -> "CursorChain":
        self._cursor = self._cursor.sort(_sort_spec(spec))
        return self

    def limit(self, count: int) -> "CursorChain":
        self._cursor = self._cursor.limit(int(count))
        return self

    def skip(self, count: int) -> "CursorChain":
        self._cursor = self._cursor.skip(int(count))
        return self

    def to_array(self) -> List[Any]:
        return list(self._cursor)


class CollectionWrapper:
    def __init__(self, collection: Collection) -> None:
        self._collection = collection

    @property
    def name(self) -> str:
        return self._collection.name

    def find(self, query: Optional[dict] = None, options: Optional[dict] = None) -> CursorChain:
        return CursorChain(self._collection.find(query or {}, **_find_kwargs(options)))

    def find_one(self, query: Optional[dict] = None, options: Optional[dict] = None) -> Any:
        kwargs = _find_kwargs(options)
        kwargs.pop("limit", None)
        return self._collection.find_one(query or {}, **kwargs)

    def insert_one(self, document: dict, options: Optional[dict] = None) -> Dict[str, Any]:
        result = self._collection.insert_one(document)
        return {"acknowledged": result.acknowledged, "insertedId": result.inserted_id}

    def insert_many(self, documents: List[dict], options: Optional[dict] = None) -> Dict[str, Any]:
        ordered = bool((options or {}).get("ordered", True))
        result = self._collection.insert_many(documents, ordered=ordered)
        return {
            "acknowledged": result.acknowledged,
            "insertedCount": len(result.inserted_ids),
            "insertedIds": {str(i): _id for i, _id in enumerate(result.inserted_ids)},
        }

    def update_one(self, query: dict, update: Any, options: Optional[dict] = None) -> Dict[str, Any]:
        upsert = bool((options or {}).get("upsert", False))
        return _update_result(self._collection.update_one(query, update, upsert=upsert))

    def update_many(self, query: dict, update: Any, options: Optional[dict] = None) -> Dict[str, Any]:
        upsert = bool((options or {}).get("upsert", False))
        return _update_result(self._collection.update_many(query, update, upsert=upsert))

    def delete_one(self, query: dict, options: Optional[dict] = None) -> Dict[str, Any]:
        result = self._collection.delete_one(query)
        return {"acknowledged": result.acknowledged, "deletedCount": result.deleted_count}

    def delete_many(self, query: dict, options: Optional[dict] = None) -> Dict[str, Any]:
        result = self._collection.delete_many(query)
        return {"acknowledged": result.acknowledged, "deletedCount": result.deleted_count}

    def count_documents(self, query: Optional[dict] = None, options: Optional[dict] = None) -> int:
        kwargs = {k: int(v) for k, v in (options or {}).items() if k in ("limit", "skip")}
        return self._collection.count_documents(query or {}, **kwargs)

    def aggregate(self, pipeline: List[dict], options: Optional[dict] = None) -> CursorChain:
        if not isinstance(pipeline, list):
            raise TypeError("aggregate pipeline must be an array of stages")
        return CursorChain(self._collection.aggregate(pipeline), modifiers=False)


class DatabaseAccessor:
    """``db`` as seen by a query expression."""

    def __init__(self, database: Database) -> None:
        self._database = database
        self._collections: Dict[str, CollectionWrapper] = {}

    def collection(self, name: str) -> CollectionWrapper:
        if not isinstance(name, str) or not name:
            raise TypeError("collection name must be a non-empty string")
        if name not in self._collections:
            self._collections[name] = CollectionWrapper(self._database[name])
        return self._collections[name]

    getCollection = collection

    def __getitem__(self, name: str) -> CollectionWrapper:
        return self.collection(name)

    def __getattr__(self, name: str) -> CollectionWrapper:
        if name.startswith("_"):
            raise AttributeError(name)
        return self.collection(name)
