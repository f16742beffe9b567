import os
import copy
import json
import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorClient

from . import config

logger = logging.getLogger(__name__)

COLLECTIONS = ("users", "families", "achievements", "meta")


class _InMemoryResult:
    def __init__(self, *, matched_count: int = 0, modified_count: int = 0, deleted_count: int = 0):
        self.matched_count = matched_count
        self.modified_count = modified_count
        self.deleted_count = deleted_count


def _get_path(doc: Dict[str, Any], path: str) -> Tuple[bool, Any]:
    current: Any = doc
    for part in path.split("."):
        if isinstance(current, list) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return False, None
            current = current[index]
        elif isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return False, None
    return True, current


def _set_path(doc: Dict[str, Any], path: str, value: Any) -> None:
    # Numeric parts index into existing arrays ("goals.2.title").
    parts = path.split(".")
    current: Any = doc
    for part in parts[:-1]:
        if isinstance(current, list):
            current = current[int(part)]
            continue
        nxt = current.get(part)
        if not isinstance(nxt, (dict, list)):
            nxt = {}
            current[part] = nxt
        current = nxt
    if isinstance(current, list):
        current[int(parts[-1])] = value
    else:
        current[parts[-1]] = value


def _equals(value: Any, expected: Any) -> bool:
    # Mongo semantics: a scalar condition on an array field matches membership.
    if isinstance(value, list) and not isinstance(expected, list):
        return expected in value
    return value == expected


def _is_operator_dict(expected: Any) -> bool:
    return isinstance(expected, dict) and bool(expected) and all(k.startswith("$") for k in expected)


def _match_filter(doc: Dict[str, Any], query: Dict[str, Any]) -> bool:
    for key, expected in query.items():
        found, value = _get_path(doc, key)
        if _is_operator_dict(expected):
            for op, arg in expected.items():
                if op == "$ne":
                    if found and _equals(value, arg):
                        return False
                    if not found and arg is None:
                        return False
                elif op == "$in":
                    if not any(_equals(value, a) for a in arg):
                        return False
                elif op == "$gte":
                    if value is None or value < arg:
                        return False
                elif op == "$lte":
                    if value is None or value > arg:
                        return False
                elif op == "$exists":
                    if bool(arg) != found:
                        return False
                else:
                    raise ValueError(f"Unsupported query operator: {op}")
            continue

        if expected is None:
            if found and value is not None:
                return False
            continue
        if not found or not _equals(value, expected):
            return False
    return True


def apply_update(doc: Dict[str, Any], update: Dict[str, Any]) -> None:
    """Apply a MongoDB-style update document to ``doc`` in place."""
    for op, fields in update.items():
        for path, arg in fields.items():
            if op == "$set":
                _set_path(doc, path, copy.deepcopy(arg))
            elif op == "$inc":
                _, current = _get_path(doc, path)
                _set_path(doc, path, (current or 0) + arg)
            elif op == "$push":
                _, current = _get_path(doc, path)
                items = list(current or [])
                if isinstance(arg, dict) and "$each" in arg:
                    items.extend(copy.deepcopy(arg["$each"]))
                    limit = arg.get("$slice")
                    if limit is not None:
                        items = items[limit:] if limit < 0 else items[:limit]
                else:
                    items.append(copy.deepcopy(arg))
                _set_path(doc, path, items)
            elif op == "$pull":
                _, current = _get_path(doc, path)
                if isinstance(arg, dict):
                    kept = [i for i in (current or []) if not (isinstance(i, dict) and _match_filter(i, arg))]
                else:
                    kept = [i for i in (current or []) if i != arg]
                _set_path(doc, path, kept)
            else:
                raise ValueError(f"Unsupported update operator: {op}")


def _apply_projection(doc: Dict[str, Any], projection: Optional[Dict[str, int]]) -> Dict[str, Any]:
    doc = copy.deepcopy(doc)
    if not projection:
        return doc
    # Only exclusion projections like {"_id": 0, "password": 0} are used.
    excluded_keys = {k for k, v in projection.items() if v == 0}
    return {k: v for k, v in doc.items() if k not in excluded_keys}


class _InMemoryCursor:
    def __init__(self, docs: List[Dict[str, Any]], projection: Optional[Dict[str, int]]):
        self._docs = docs
        self._projection = projection
        self._sort: Optional[Tuple[str, int]] = None

    def sort(self, field: str, direction: int):
        self._sort = (field, direction)
        return self

    async def to_list(self, length: Optional[int] = None) -> List[Dict[str, Any]]:
        docs = list(self._docs)
        if self._sort is not None:
            field, direction = self._sort
            reverse = direction == -1
            docs.sort(key=lambda d: _get_path(d, field)[1], reverse=reverse)

        limited = docs if length is None else docs[:length]
        return [_apply_projection(d, self._projection) for d in limited]


class _InMemoryCollection:
    def __init__(self):
        self._items: List[Dict[str, Any]] = []

    def _docs(self) -> List[Dict[str, Any]]:
        return self._items

    async def _commit(self) -> None:
        return None

    async def find_one(self, query: Dict[str, Any], projection: Optional[Dict[str, int]] = None):
        for doc in self._docs():
            if _match_filter(doc, query):
                return _apply_projection(doc, projection)
        return None

    def find(self, query: Optional[Dict[str, Any]] = None, projection: Optional[Dict[str, int]] = None) -> _InMemoryCursor:
        # Snapshot at call time; the cursor is independent of later writes.
        matched = [copy.deepcopy(d) for d in self._docs() if _match_filter(d, query or {})]
        return _InMemoryCursor(matched, projection)

    async def insert_one(self, doc: Dict[str, Any]):
        self._docs().append(copy.deepcopy(doc))
        await self._commit()
        return _InMemoryResult(matched_count=1)

    async def update_one(self, query: Dict[str, Any], update: Dict[str, Any]):
        for doc in self._docs():
            if _match_filter(doc, query):
                apply_update(doc, update)
                await self._commit()
                return _InMemoryResult(matched_count=1, modified_count=1)
        return _InMemoryResult(matched_count=0)

    async def update_many(self, query: Dict[str, Any], update: Dict[str, Any]):
        matched = 0
        for doc in self._docs():
            if _match_filter(doc, query):
                apply_update(doc, update)
                matched += 1
        if matched:
            await self._commit()
        return _InMemoryResult(matched_count=matched, modified_count=matched)

    async def delete_one(self, query: Dict[str, Any]):
        docs = self._docs()
        for i, doc in enumerate(docs):
            if _match_filter(doc, query):
                del docs[i]
                await self._commit()
                return _InMemoryResult(deleted_count=1)
        return _InMemoryResult(deleted_count=0)

    async def create_index(self, *args, **kwargs) -> None:
        return None


class InMemoryDB:
    def __init__(self):
        for name in COLLECTIONS:
            setattr(self, name, _InMemoryCollection())

    def __getitem__(self, name: str):
        return getattr(self, name)


class FileBackedDB:
    def __init__(self, path: Path):
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()
        self._data: Dict[str, List[Dict[str, Any]]] = {name: [] for name in COLLECTIONS}
        self._load_from_disk()

        for name in COLLECTIONS:
            setattr(self, name, _FileBackedCollection(self, name))

    def __getitem__(self, name: str):
        return getattr(self, name)

    def _load_from_disk(self) -> None:
        if not self._path.exists():
            return
        try:
            raw = self._path.read_text(encoding="utf-8")
            loaded = json.loads(raw) if raw.strip() else {}
            if isinstance(loaded, dict):
                for key in COLLECTIONS:
                    value = loaded.get(key)
                    if isinstance(value, list):
                        self._data[key] = value
        except Exception as e:
            logger.warning("Failed to load file-backed DB (%s). Starting empty.", str(e))

    async def _save_to_disk(self) -> None:
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        payload = json.dumps(self._data, ensure_ascii=False, separators=(",", ":"))
        tmp_path.write_text(payload, encoding="utf-8")
        os.replace(tmp_path, self._path)


class _FileBackedCollection(_InMemoryCollection):
    def __init__(self, db: FileBackedDB, key: str):
        super().__init__()
        self._db = db
        self._key = key

    def _docs(self) -> List[Dict[str, Any]]:
        return self._db._data[self._key]

    async def _commit(self) -> None:
        async with self._db._lock:
            await self._db._save_to_disk()


async def connect_database():
    """Return ``(client, db)``: MongoDB when reachable, else a local fallback."""
    client = None
    db: Any = None

    if config.DATA_FILE == ":memory:":
        logger.warning("Using in-memory DB (data is lost on restart).")
        return None, InMemoryDB()

    if config.MONGO_URL:
        try:
            client = AsyncIOMotorClient(config.MONGO_URL, serverSelectionTimeoutMS=2000)
            await client.admin.command("ping")
            db = client[config.DB_NAME]
            logger.info("Connected to MongoDB: %s / %s", config.MONGO_URL, config.DB_NAME)
        except Exception as e:
            logger.warning("MongoDB not available (%s). Falling back to file-backed DB.", str(e))
            client = None

    if db is None:
        path = Path(config.DATA_FILE) if config.DATA_FILE else (config.ROOT_DIR / "data" / "db.json")
        db = FileBackedDB(path)
        logger.warning("Using file-backed DB at %s (data persists between restarts).", str(path))

    return client, db
