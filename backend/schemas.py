from pydantic import BaseModel, ConfigDict, Field, StringConstraints, field_validator, model_validator
from pydantic.alias_generators import to_camel
from typing import Annotated, Any, List, Literal, Optional
from datetime import datetime, timezone

# Field names below are snake_case in Python and camelCase on the wire and in storage
# (dueDate, createdAt, updatedAt). The record id travels as "_id".

Priority = Literal["low", "medium", "high"]
Category = Literal["work", "personal", "shopping", "health", "education", "other"]
SortField = Literal[
    "task", "description", "completed", "priority", "category",
    "dueDate", "tags", "createdAt", "updatedAt",
]
Tag = Annotated[str, StringConstraints(strip_whitespace=True, max_length=50)]


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


class Task(CamelModel):
    id: str = Field(..., alias="_id")
    task: str
    description: str = ""
    completed: bool = False
    priority: Priority = "medium"
    category: Category = "other"
    due_date: Optional[datetime] = None
    tags: List[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class TaskCreate(CamelModel):
    model_config = ConfigDict(extra="forbid")

    task: str = Field(..., min_length=1, max_length=500)
    description: str = Field(default="", max_length=1000)
    priority: Priority = "medium"
    category: Category = "other"
    due_date: Optional[datetime] = None
    tags: List[Tag] = Field(default_factory=list, max_length=10)

    @field_validator("due_date")
    @classmethod
    def utc_due_date(cls, value):
        return _as_utc(value)


class TaskUpdate(CamelModel):
    model_config = ConfigDict(extra="forbid")

    task: Optional[str] = Field(default=None, min_length=1, max_length=500)
    description: Optional[str] = Field(default=None, max_length=1000)
    completed: Optional[bool] = None
    priority: Optional[Priority] = None
    category: Optional[Category] = None
    due_date: Optional[datetime] = None
    tags: Optional[List[Tag]] = Field(default=None, max_length=10)

    @field_validator("due_date")
    @classmethod
    def utc_due_date(cls, value):
        return _as_utc(value)

    @model_validator(mode="after")
    def reject_nulls(self):
        # dueDate is the only field that may be cleared with an explicit null
        for name in self.model_fields_set:
            if name != "due_date" and getattr(self, name) is None:
                raise ValueError(f"{to_camel(name)} must not be null")
        return self

    def changes(self) -> dict[str, Any]:
        """Fields the client actually sent, keyed by their stored names."""
        return self.model_dump(by_alias=True, exclude_unset=True)


class BulkRequest(CamelModel):
    action: Literal["complete", "incomplete", "delete"]
    task_ids: List[str]


class GroupCount(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    value: Any = Field(default=None, alias="_id")
    count: int


class Pagination(CamelModel):
    current_page: int
    total_pages: int
    total_tasks: int
    has_next: bool
    has_prev: bool


class TaskStats(CamelModel):
    total: int
    completed: int
    pending: int
    overdue: int
    priority_breakdown: List[GroupCount]
    category_breakdown: List[GroupCount]


class TaskResponse(BaseModel):
    success: bool = True
    data: Task
    message: Optional[str] = None


class TaskListResponse(BaseModel):
    success: bool = True
    data: List[Task]
    pagination: Pagination


class StatsResponse(BaseModel):
    success: bool = True
    data: TaskStats


class BulkResponse(BaseModel):
    success: bool = True
    data: dict[str, int]
    message: Optional[str] = None
