import logging
import math
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional, Literal

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from backends import open_store
from config import Settings, configure_logging
from query import SortSpec, TaskFilter
from schemas import (
    BulkRequest,
    BulkResponse,
    Category,
    Pagination,
    Priority,
    SortField,
    StatsResponse,
    TaskCreate,
    TaskListResponse,
    TaskResponse,
    TaskStats,
    TaskUpdate,
)
from storage import StorageError, TaskStore

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = Settings()
    configure_logging(settings.log_level)
    app.state.settings = settings
    app.state.store = await open_store(settings)
    logger.info("Task storage backend: %s", app.state.store.name)
    try:
        yield
    finally:
        await app.state.store.close()


app = FastAPI(title="Todo API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_store(request: Request) -> TaskStore:
    return request.app.state.store


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        where = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{where}: {first.get('msg')}" if where else first.get("msg")
    else:
        message = "Invalid request"
    return JSONResponse(status_code=400, content={"success": False, "message": message})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    message = "Route not found" if exc.status_code == 404 and exc.detail == "Not Found" else exc.detail
    return JSONResponse(status_code=exc.status_code, content={"success": False, "message": message})


def _failure(message: str, exc: Exception) -> HTTPException:
    logger.error("%s: %s", message, exc, exc_info=exc)
    return HTTPException(status_code=500, detail=message)


@app.get("/health", tags=["health"])
async def health(request: Request):
    settings = getattr(request.app.state, "settings", None)
    store = getattr(request.app.state, "store", None)
    return {
        "success": True,
        "message": "Server is running",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "environment": settings.environment if settings else "development",
        "storage": store.name if store else None,
    }


@app.get("/ok", tags=["health"], response_class=PlainTextResponse)
async def ok():
    return "ok"


@app.post("/api/tasks", response_model=TaskResponse, status_code=status.HTTP_201_CREATED)
async def create_task(payload: TaskCreate, store: TaskStore = Depends(get_store)):
    try:
        created = await store.create(payload.model_dump(by_alias=True))
    except StorageError as exc:
        raise _failure("Failed to create task", exc)
    return {"data": created, "message": "Task created successfully"}


@app.get("/api/tasks", response_model=TaskListResponse)
async def list_tasks(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
    completed: Optional[bool] = None,
    priority: Optional[Priority] = None,
    category: Optional[Category] = None,
    search: Optional[str] = None,
    sort_by: SortField = Query("createdAt", alias="sortBy"),
    sort_order: Literal["asc", "desc"] = Query("desc", alias="sortOrder"),
    store: TaskStore = Depends(get_store),
):
    flt = TaskFilter(
        completed=completed,
        priority=priority,
        category=category,
        search=search or None,
    )
    try:
        total = await store.count(flt)
        tasks = await store.find(flt, SortSpec.parse(sort_by, sort_order), page, limit)
    except StorageError as exc:
        raise _failure("Failed to fetch tasks", exc)
    skip = (page - 1) * limit
    pagination = Pagination(
        current_page=page,
        total_pages=math.ceil(total / limit),
        total_tasks=total,
        has_next=skip + len(tasks) < total,
        has_prev=page > 1,
    )
    return {"data": tasks, "pagination": pagination}


@app.get("/api/tasks/stats", response_model=StatsResponse)
async def task_stats(store: TaskStore = Depends(get_store)):
    try:
        total = await store.count()
        completed = await store.count(TaskFilter(completed=True))
        overdue = await store.count(TaskFilter(completed=False, due_before=datetime.now(timezone.utc)))
        priority_breakdown = await store.aggregate_count("priority")
        category_breakdown = await store.aggregate_count("category")
    except StorageError as exc:
        raise _failure("Failed to fetch statistics", exc)
    stats = TaskStats(
        total=total,
        completed=completed,
        pending=total - completed,
        overdue=overdue,
        priority_breakdown=priority_breakdown,
        category_breakdown=category_breakdown,
    )
    return {"data": stats}


@app.put("/api/tasks/{task_id}", response_model=TaskResponse)
async def update_task(task_id: str, payload: TaskUpdate, store: TaskStore = Depends(get_store)):
    try:
        updated = await store.update(task_id, payload.changes())
    except StorageError as exc:
        raise _failure("Failed to update task", exc)
    if not updated:
        raise HTTPException(status_code=404, detail="Task not found")
    return {"data": updated, "message": "Task updated successfully"}


@app.delete("/api/tasks/{task_id}", response_model=TaskResponse)
async def remove_task(task_id: str, store: TaskStore = Depends(get_store)):
    try:
        removed = await store.delete(task_id)
    except StorageError as exc:
        raise _failure("Failed to delete task", exc)
    if not removed:
        raise HTTPException(status_code=404, detail="Task not found")
    return {"data": removed, "message": "Task deleted successfully"}


@app.post("/api/tasks/bulk", response_model=BulkResponse)
async def bulk_tasks(payload: BulkRequest, store: TaskStore = Depends(get_store)):
    try:
        if payload.action == "delete":
            result = {"deletedCount": await store.bulk_delete(payload.task_ids)}
        else:
            changes = {"completed": payload.action == "complete"}
            result = {"modifiedCount": await store.bulk_update(payload.task_ids, changes)}
    except StorageError as exc:
        raise _failure("Failed to perform bulk operation", exc)
    return {"data": result, "message": f"Bulk {payload.action} operation completed successfully"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=Settings().port)
