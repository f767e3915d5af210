"""
In-memory stand-ins for the motor database used by the entitlement tests.

Supports the subset of MongoDB the services use: equality / $ne / $in /
$gt(e) / $lt(e) / $exists / $or filters on dotted paths, $set / $unset /
$inc / $setOnInsert updates, upserts, projections, unique indexes, and
cursors with sort / limit / to_list / async iteration.

Every operation yields to the event loop once before running, then runs
without suspending, so asyncio.gather interleaves callers the way
concurrent requests interleave against a real server while each single
operation stays atomic.
"""
import asyncio
import copy
import itertools
from types import SimpleNamespace

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

_MISSING = object()
_ids = itertools.count(1)

# Mirrors the unique indexes created by database._create_indexes
UNIQUE_KEYS = {
    "accounts": ("account_id", "email"),
    "site_settings": ("settings_id",),
    "billing_events": ("event_key",),
    "audit_logs": ("log_id",),
}


def _get_path(doc, path):
    current = doc
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return _MISSING
    return current


def _set_path(doc, path, value):
    parts = path.split(".")
    current = doc
    for part in parts[:-1]:
        nxt = current.get(part)
        if not isinstance(nxt, dict):
            nxt = {}
            current[part] = nxt
        current = nxt
    current[parts[-1]] = value


def _unset_path(doc, path):
    parts = path.split(".")
    current = doc
    for part in parts[:-1]:
        current = current.get(part)
        if not isinstance(current, dict):
            return
    current.pop(parts[-1], None)


def _eq(value, expected):
    if value is _MISSING:
        return expected is None
    return value == expected


def _is_operator_dict(cond):
    return isinstance(cond, dict) and bool(cond) and all(k.startswith("$") for k in cond)


def _compare(value, op, arg):
    if value is _MISSING or value is None:
        return False
    if op == "$gt":
        return value > arg
    if op == "$gte":
        return value >= arg
    if op == "$lt":
        return value < arg
    return value <= arg


def _match_value(value, cond):
    if not _is_operator_dict(cond):
        return _eq(value, cond)
    for op, arg in cond.items():
        if op == "$ne":
            if _eq(value, arg):
                return False
        elif op == "$in":
            if not any(_eq(value, a) for a in arg):
                return False
        elif op == "$nin":
            if any(_eq(value, a) for a in arg):
                return False
        elif op in ("$gt", "$gte", "$lt", "$lte"):
            if not _compare(value, op, arg):
                return False
        elif op == "$exists":
            if (value is not _MISSING) != bool(arg):
                return False
        else:
            raise NotImplementedError(f"Unsupported query operator {op}")
    return True


def matches(doc, query):
    for key, cond in (query or {}).items():
        if key == "$or":
            if not any(matches(doc, q) for q in cond):
                return False
        elif key == "$and":
            if not all(matches(doc, q) for q in cond):
                return False
        elif not _match_value(_get_path(doc, key), cond):
            return False
    return True


def _apply_update(doc, update, inserting=False):
    for op, fields in update.items():
        if op == "$set":
            for path, value in fields.items():
                _set_path(doc, path, copy.deepcopy(value))
        elif op == "$unset":
            for path in fields:
                _unset_path(doc, path)
        elif op == "$inc":
            for path, amount in fields.items():
                current = _get_path(doc, path)
                base = 0 if current is _MISSING or current is None else current
                _set_path(doc, path, base + amount)
        elif op == "$setOnInsert":
            if inserting:
                for path, value in fields.items():
                    _set_path(doc, path, copy.deepcopy(value))
        else:
            raise NotImplementedError(f"Unsupported update operator {op}")


def _project(doc, projection):
    if doc is None:
        return None
    result = copy.deepcopy(doc)
    if not projection:
        return result
    included = [k for k, v in projection.items() if v and k != "_id"]
    if included:
        result = {k: result[k] for k in included if k in result}
        if projection.get("_id", 1) and "_id" in doc:
            result["_id"] = doc["_id"]
    if not projection.get("_id", 1):
        result.pop("_id", None)
    return result


def _sort_key(value):
    # None / missing sort first, as in MongoDB
    if value is _MISSING or value is None:
        return (0, 0)
    return (1, value)


class FakeCursor:
    def __init__(self, docs, projection):
        self._docs = docs
        self._projection = projection
        self._limit = 0

    def sort(self, key, direction=1):
        keys = key if isinstance(key, list) else [(key, direction)]
        for field, order in reversed(keys):
            self._docs.sort(key=lambda d: _sort_key(_get_path(d, field)), reverse=order < 0)
        return self

    def limit(self, n):
        self._limit = n
        return self

    def _results(self):
        docs = self._docs[: self._limit] if self._limit else self._docs
        return [_project(d, self._projection) for d in docs]

    async def to_list(self, length=None):
        await asyncio.sleep(0)
        results = self._results()
        return results[:length] if length else results

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for doc in self._results():
            await asyncio.sleep(0)
            yield doc


class FakeCollection:
    def __init__(self, name):
        self.name = name
        self.docs = []
        self.unique_keys = list(UNIQUE_KEYS.get(name, ()))

    # -- helpers -------------------------------------------------------------

    def _first(self, query):
        for doc in self.docs:
            if matches(doc, query):
                return doc
        return None

    def _check_unique(self, candidate, ignore=None):
        for key in self.unique_keys:
            value = _get_path(candidate, key)
            if value is _MISSING or value is None:
                continue
            for other in self.docs:
                if other is ignore:
                    continue
                if _get_path(other, key) == value:
                    raise DuplicateKeyError(f"E11000 duplicate key error collection: {self.name} key: {key}", 11000)

    def _upsert_doc(self, query, update):
        doc = {}
        for key, value in query.items():
            if not key.startswith("$") and not _is_operator_dict(value):
                _set_path(doc, key, copy.deepcopy(value))
        _apply_update(doc, update, inserting=True)
        doc["_id"] = next(_ids)
        self._check_unique(doc)
        self.docs.append(doc)
        return doc

    def _update_in_place(self, doc, update):
        updated = copy.deepcopy(doc)
        _apply_update(updated, update)
        self._check_unique(updated, ignore=doc)
        changed = updated != doc
        doc.clear()
        doc.update(updated)
        return changed

    # -- motor API -----------------------------------------------------------

    async def create_index(self, keys, unique=False, **kwargs):
        if unique and isinstance(keys, str) and keys not in self.unique_keys:
            self.unique_keys.append(keys)
        return keys if isinstance(keys, str) else "_".join(k for k, _ in keys)

    async def insert_one(self, document):
        await asyncio.sleep(0)
        doc = copy.deepcopy(document)
        doc.setdefault("_id", next(_ids))
        self._check_unique(doc)
        self.docs.append(doc)
        document.setdefault("_id", doc["_id"])
        return SimpleNamespace(inserted_id=doc["_id"])

    async def find_one(self, query=None, projection=None, **kwargs):
        await asyncio.sleep(0)
        return _project(self._first(query or {}), projection)

    def find(self, query=None, projection=None, **kwargs):
        return FakeCursor([d for d in self.docs if matches(d, query or {})], projection)

    async def count_documents(self, query):
        await asyncio.sleep(0)
        return sum(1 for d in self.docs if matches(d, query))

    async def update_one(self, query, update, upsert=False, **kwargs):
        await asyncio.sleep(0)
        doc = self._first(query)
        if doc is None:
            if upsert:
                created = self._upsert_doc(query, update)
                return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=created["_id"])
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)
        changed = self._update_in_place(doc, update)
        return SimpleNamespace(matched_count=1, modified_count=1 if changed else 0, upserted_id=None)

    async def update_many(self, query, update, **kwargs):
        await asyncio.sleep(0)
        matched = [d for d in self.docs if matches(d, query)]
        modified = sum(1 for d in matched if self._update_in_place(d, update))
        return SimpleNamespace(matched_count=len(matched), modified_count=modified, upserted_id=None)

    async def find_one_and_update(
        self,
        query,
        update,
        projection=None,
        upsert=False,
        return_document=ReturnDocument.BEFORE,
        **kwargs,
    ):
        await asyncio.sleep(0)
        doc = self._first(query)
        if doc is None:
            if not upsert:
                return None
            created = self._upsert_doc(query, update)
            return _project(created, projection) if return_document == ReturnDocument.AFTER else None
        before = _project(doc, projection)
        self._update_in_place(doc, update)
        return _project(doc, projection) if return_document == ReturnDocument.AFTER else before

    async def delete_many(self, query):
        await asyncio.sleep(0)
        keep = [d for d in self.docs if not matches(d, query)]
        deleted = len(self.docs) - len(keep)
        self.docs = keep
        return SimpleNamespace(deleted_count=deleted)


class FakeDatabase:
    """Attribute access returns a collection, created on first use."""

    def __init__(self):
        self._collections = {}

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        if name not in self._collections:
            self._collections[name] = FakeCollection(name)
        return self._collections[name]

    def __getitem__(self, name):
        return self.__getattr__(name)

    async def command(self, name):
        return {"ok": 1}


class FailingCollection(FakeCollection):
    """Collection whose reads raise, for degraded-path tests."""

    async def find_one(self, *args, **kwargs):
        raise RuntimeError("datastore unavailable")

    async def find_one_and_update(self, *args, **kwargs):
        raise RuntimeError("datastore unavailable")
