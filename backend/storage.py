"""
Storage contract shared by the MongoDB and JSON-file backends.

Records cross this boundary as plain dicts keyed by their stored names
(``_id``, ``task``, ``dueDate``, ``createdAt`` ...). Every read returns a
fresh dict; callers never hold a reference into the persisted state.

``update`` and ``delete`` return ``None`` when no record has the given id.
Medium failures surface as ``StorageError``.
"""
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from query import SortSpec, TaskFilter
from schemas import GroupCount

Record = Dict[str, Any]

TASK_DEFAULTS: Dict[str, Any] = {
    "description": "",
    "completed": False,
    "priority": "medium",
    "category": "other",
    "dueDate": None,
    "tags": [],
}


class StorageError(Exception):
    """The storage medium could not be read or written."""


def to_millis(value):
    """Drop sub-millisecond precision, which BSON dates cannot hold."""
    if isinstance(value, datetime):
        return value.replace(microsecond=value.microsecond // 1000 * 1000)
    return value


def utcnow() -> datetime:
    return to_millis(datetime.now(timezone.utc))


def new_record(fields: Record, now: Optional[datetime] = None) -> Record:
    """Apply defaults and timestamps to the fields of a task being created."""
    now = to_millis(now or utcnow())
    record = {key: (list(value) if isinstance(value, list) else value) for key, value in TASK_DEFAULTS.items()}
    record.update({key: value for key, value in fields.items() if key not in ("_id", "createdAt", "updatedAt")})
    record["dueDate"] = to_millis(record.get("dueDate"))
    record["createdAt"] = now
    record["updatedAt"] = now
    return record


def merge_changes(record: Record, changes: Record, now: Optional[datetime] = None) -> Record:
    """Shallow merge; id and createdAt are immutable."""
    merged = dict(record)
    merged.update({key: value for key, value in changes.items() if key not in ("_id", "createdAt")})
    merged["dueDate"] = to_millis(merged.get("dueDate"))
    merged["updatedAt"] = to_millis(now or utcnow())
    return merged


class TaskStore(ABC):
    """Abstract interface for task storage backends."""

    name = "abstract"

    @abstractmethod
    async def create(self, fields: Record) -> Record:
        """Store a new task and return it with its id and timestamps."""

    @abstractmethod
    async def find(
        self,
        flt: TaskFilter = TaskFilter(),
        sort: SortSpec = SortSpec(),
        page: int = 1,
        limit: Optional[int] = None,
    ) -> List[Record]:
        """Matching tasks, sorted, sliced to one page."""

    @abstractmethod
    async def count(self, flt: TaskFilter = TaskFilter()) -> int:
        """Number of tasks matching the filter."""

    @abstractmethod
    async def aggregate_count(self, field: str) -> List[GroupCount]:
        """Per-value counts of ``field`` across all tasks."""

    @abstractmethod
    async def update(self, task_id: str, changes: Record) -> Optional[Record]:
        """Merge ``changes`` into a task; ``None`` if it does not exist."""

    @abstractmethod
    async def delete(self, task_id: str) -> Optional[Record]:
        """Remove a task and return it; ``None`` if it does not exist."""

    @abstractmethod
    async def bulk_update(self, task_ids: Iterable[str], changes: Record) -> int:
        """Update every existing task in ``task_ids``; return how many changed."""

    @abstractmethod
    async def bulk_delete(self, task_ids: Iterable[str]) -> int:
        """Delete every existing task in ``task_ids``; return how many went."""

    async def close(self) -> None:
        pass
