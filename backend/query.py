"""Filter, sort and paginate task records in memory.

These are plain functions over lists of record dicts so the file backend can
compose them into the same pipeline a database runs natively:
filter -> sort -> page. ``group_count`` is the in-memory counterpart of a
``$group`` stage.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

Record = Dict[str, Any]


@dataclass(frozen=True)
class TaskFilter:
    """Conjunction of optional clauses. ``None`` means "no constraint"."""

    completed: Optional[bool] = None
    priority: Optional[str] = None
    category: Optional[str] = None
    search: Optional[str] = None
    due_before: Optional[datetime] = None


@dataclass(frozen=True)
class SortSpec:
    field: str = "createdAt"
    descending: bool = True

    @classmethod
    def parse(cls, sort_by: str, sort_order: str) -> "SortSpec":
        return cls(field=sort_by, descending=sort_order != "asc")


def _contains(value: Optional[str], needle: str) -> bool:
    return bool(value) and needle in value.lower()


def matches(record: Record, flt: TaskFilter) -> bool:
    if flt.completed is not None and record.get("completed") is not flt.completed:
        return False
    if flt.priority and record.get("priority") != flt.priority:
        return False
    if flt.category and record.get("category") != flt.category:
        return False
    if flt.search:
        needle = flt.search.lower()
        if not (
            _contains(record.get("task"), needle)
            or _contains(record.get("description"), needle)
            or any(_contains(tag, needle) for tag in record.get("tags") or [])
        ):
            return False
    if flt.due_before is not None:
        due = record.get("dueDate")
        if due is None or not due < flt.due_before:
            return False
    return True


def apply_filter(records: Iterable[Record], flt: TaskFilter) -> List[Record]:
    return [r for r in records if matches(r, flt)]


def _sort_key(field: str):
    # Missing values order before everything else, as in MongoDB.
    def key(record: Record):
        value = record.get(field)
        return (value is not None, value)

    return key


def apply_sort(records: Iterable[Record], sort: SortSpec) -> List[Record]:
    """Stable sort on a single field; equal keys keep their stored order."""
    return sorted(records, key=_sort_key(sort.field), reverse=sort.descending)


def apply_page(records: List[Record], page: int = 1, limit: Optional[int] = None) -> List[Record]:
    """Slice out a 1-indexed page. ``limit=None`` disables pagination."""
    if limit is None:
        return list(records)
    if page < 1 or limit < 1:
        raise ValueError("page and limit must be positive")
    start = (page - 1) * limit
    return records[start:start + limit]


def run_query(
    records: Iterable[Record],
    flt: TaskFilter,
    sort: SortSpec,
    page: int = 1,
    limit: Optional[int] = None,
) -> List[Record]:
    return apply_page(apply_sort(apply_filter(records, flt), sort), page, limit)


def _group_key(value: Any) -> Any:
    return tuple(value) if isinstance(value, list) else value


def group_count(records: Iterable[Record], field: str) -> List[tuple]:
    """Count records per distinct value of ``field``, in first-seen order."""
    counts: Dict[Any, int] = {}
    values: Dict[Any, Any] = {}
    for record in records:
        value = record.get(field)
        key = _group_key(value)
        if key not in counts:
            counts[key] = 0
            values[key] = value
        counts[key] += 1
    return [(values[key], count) for key, count in counts.items()]
