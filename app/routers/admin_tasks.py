from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.db import get_db
from app.core.deps import get_queue, rate_limit, require_admin
from app.models.task import Task
from app.models.user import User
from app.schemas.orders import TaskCreateIn, TaskIdsIn, TaskOut
from app.services.tasks import TaskQueue


ACTIONS = ("commit", "sync", "revalidate", "cancel")

router = APIRouter(prefix="/admin/tasks", tags=["Admin Tasks"], dependencies=[Depends(rate_limit)])


@router.get("/{task_id}", response_model=TaskOut)
async def get_task(
    task_id: int,
    db: AsyncSession = Depends(get_db),
    _: User = Depends(require_admin),
) -> TaskOut:
    task = await db.get(Task, task_id)
    if task is None:
        raise HTTPException(status_code=404, detail="Task not found")
    return TaskOut.model_validate(task)


@router.post("")
async def create_task(
    payload: TaskCreateIn,
    _: User = Depends(require_admin),
    queue: TaskQueue = Depends(get_queue),
) -> dict:
    if payload.action not in ACTIONS:
        raise HTTPException(status_code=400, detail="action must be one of " + ",".join(ACTIONS))
    created = await queue.create_task(payload.subject_ids, payload.action, delay=payload.delay)
    return {"created": created}


@router.post("/stop")
async def stop_tasks(
    payload: TaskIdsIn,
    _: User = Depends(require_admin),
    queue: TaskQueue = Depends(get_queue),
) -> dict:
    return {"stopped": await queue.stop_task(payload.ids)}


@router.post("/retry")
async def retry_tasks(
    payload: TaskIdsIn,
    _: User = Depends(require_admin),
    queue: TaskQueue = Depends(get_queue),
) -> dict:
    return {"retried": await queue.retry_task(payload.ids)}


@router.delete("")
async def delete_tasks(
    subject_ids: List[int] = Query(...),
    actions: Optional[List[str]] = Query(default=None),
    _: User = Depends(require_admin),
    queue: TaskQueue = Depends(get_queue),
) -> dict:
    return {"deleted": await queue.delete_task(subject_ids, actions)}
