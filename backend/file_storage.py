"""JSON-file task storage, used when MongoDB is disabled or unreachable.

The whole collection lives in one document::

    {"tasks": [<task>, ...], "nextId": 1}

Every mutation reads the document, changes it in memory and rewrites the
whole file once. There is no locking: two requests that read-modify-write
concurrently race and the last write wins, silently dropping the other
update. A crash in the middle of a rewrite can leave a truncated file.
"""
import asyncio
import json
import logging
import secrets
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from query import SortSpec, TaskFilter, apply_filter, group_count, run_query
from schemas import GroupCount
from storage import Record, StorageError, TaskStore, merge_changes, new_record, utcnow

logger = logging.getLogger(__name__)

DATE_FIELDS = ("dueDate", "createdAt", "updatedAt")


def _empty_document() -> Dict[str, Any]:
    return {"tasks": [], "nextId": 1}


def _parse_date(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed is not None and parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def decode_task(raw: Dict[str, Any]) -> Record:
    task = dict(raw)
    for field in DATE_FIELDS:
        task[field] = _parse_date(task.get(field))
    task["tags"] = list(task.get("tags") or [])
    return task


def encode_task(task: Record) -> Dict[str, Any]:
    raw = dict(task)
    for field in DATE_FIELDS:
        value = raw.get(field)
        if isinstance(value, datetime):
            raw[field] = value.isoformat()
    return raw


def generate_id(existing: Iterable[str] = ()) -> str:
    """Millisecond clock plus a random suffix, unique within the document."""
    taken = set(existing)
    while True:
        candidate = f"{int(time.time() * 1000)}{secrets.token_hex(5)[:9]}"
        if candidate not in taken:
            return candidate


class FileTaskStore(TaskStore):
    name = "file"

    def __init__(self, path):
        self.path = Path(path)

    # Medium access

    def _read_sync(self) -> Dict[str, Any]:
        if not self.path.exists():
            self._write_sync(_empty_document())
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            data.setdefault("nextId", 1)
            data["tasks"] = [decode_task(t) for t in data.get("tasks", [])]
        except (OSError, ValueError, TypeError, AttributeError) as exc:
            logger.error("Error reading data file %s: %s", self.path, exc)
            raise StorageError(f"could not read {self.path}") from exc
        return data

    def _write_sync(self, data: Dict[str, Any]) -> None:
        document = {**data, "tasks": [encode_task(t) for t in data.get("tasks", [])]}
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(document, indent=2), encoding="utf-8")
        except (OSError, TypeError, ValueError) as exc:
            logger.error("Error writing data file %s: %s", self.path, exc)
            raise StorageError(f"could not write {self.path}") from exc

    async def _read(self) -> Dict[str, Any]:
        return await asyncio.to_thread(self._read_sync)

    async def _write(self, data: Dict[str, Any]) -> None:
        await asyncio.to_thread(self._write_sync, data)

    # Contract

    async def create(self, fields: Record) -> Record:
        data = await self._read()
        task = new_record(fields)
        task["_id"] = generate_id(t["_id"] for t in data["tasks"])
        data["tasks"].append(task)
        await self._write(data)
        return dict(task)

    async def find(
        self,
        flt: TaskFilter = TaskFilter(),
        sort: SortSpec = SortSpec(),
        page: int = 1,
        limit: Optional[int] = None,
    ) -> List[Record]:
        data = await self._read()
        return run_query(data["tasks"], flt, sort, page, limit)

    async def count(self, flt: TaskFilter = TaskFilter()) -> int:
        data = await self._read()
        return len(apply_filter(data["tasks"], flt))

    async def aggregate_count(self, field: str) -> List[GroupCount]:
        data = await self._read()
        return [GroupCount(value=value, count=n) for value, n in group_count(data["tasks"], field)]

    async def update(self, task_id: str, changes: Record) -> Optional[Record]:
        data = await self._read()
        for index, task in enumerate(data["tasks"]):
            if task["_id"] == task_id:
                updated = merge_changes(task, changes)
                data["tasks"][index] = updated
                await self._write(data)
                return dict(updated)
        return None

    async def delete(self, task_id: str) -> Optional[Record]:
        data = await self._read()
        for index, task in enumerate(data["tasks"]):
            if task["_id"] == task_id:
                removed = data["tasks"].pop(index)
                await self._write(data)
                return removed
        return None

    async def bulk_update(self, task_ids: Iterable[str], changes: Record) -> int:
        wanted = set(task_ids)
        data = await self._read()
        now = utcnow()
        modified = 0
        for index, task in enumerate(data["tasks"]):
            if task["_id"] in wanted:
                data["tasks"][index] = merge_changes(task, changes, now)
                modified += 1
        if modified:
            await self._write(data)
        return modified

    async def bulk_delete(self, task_ids: Iterable[str]) -> int:
        wanted = set(task_ids)
        data = await self._read()
        kept = [task for task in data["tasks"] if task["_id"] not in wanted]
        deleted = len(data["tasks"]) - len(kept)
        if deleted:
            data["tasks"] = kept
            await self._write(data)
        return deleted
