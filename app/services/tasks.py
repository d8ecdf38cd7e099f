"""
Database-backed task queue.

Rows in ``tasks`` are the queue: ``started_at`` is the not-before time and a
worker claims a due row under ``FOR UPDATE SKIP LOCKED``, pushing
``started_at`` forward by a lease so a crashed worker's task comes back on its
own. At most one ``executing`` row exists per (subject, action).
"""

from __future__ import annotations

import asyncio
import traceback
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Iterable, List, Optional, Union

from loguru import logger
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import Settings
from app.core.db import utcnow
from app.core.results import ActionResult
from app.models.task import Task, TaskStatus
from app.services.notifier import FailureNotice, Notifier


CANCEL_MIN_DELAY = 120

Dispatcher = Callable[[str, int, Optional[int]], Awaitable[ActionResult]]
SubjectIds = Union[int, str, Iterable[Union[int, str]]]


def _ids(values: SubjectIds) -> List[int]:
    if isinstance(values, (int, str)):
        values = str(values).split(",")
    return [int(v) for v in values if str(v).strip()]


class TaskQueue:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], settings: Settings, source: str = "api"):
        self.session_factory = session_factory
        self.settings = settings
        self.source = source

    async def _insert(
        self,
        db: AsyncSession,
        subject_id: int,
        action: str,
        not_before: datetime,
        user_id: Optional[int],
    ) -> Optional[int]:
        res = await db.execute(
            select(Task.id)
            .where(Task.subject_id == subject_id, Task.action == action, Task.status == TaskStatus.EXECUTING)
            .limit(1)
        )
        if res.scalar_one_or_none() is not None:
            return None

        task = Task(
            subject_id=subject_id,
            action=action,
            user_id=user_id,
            source=self.source,
            started_at=not_before,
            status=TaskStatus.EXECUTING,
        )
        try:
            async with db.begin_nested():
                db.add(task)
                await db.flush()
        except IntegrityError:
            # a concurrent create won the partial unique index
            return None
        return task.id

    async def create_task(
        self,
        subject_ids: SubjectIds,
        action: str,
        delay: int = 0,
        user_id: Optional[int] = None,
    ) -> List[int]:
        """Schedule ``action`` for every subject; subjects that already have it executing are skipped."""
        if action == "cancel":
            delay = max(CANCEL_MIN_DELAY, delay)
        not_before = utcnow() + timedelta(seconds=max(0, delay))

        created: List[int] = []
        async with self.session_factory() as db:
            try:
                for subject_id in _ids(subject_ids):
                    task_id = await self._insert(db, subject_id, action, not_before, user_id)
                    if task_id is not None:
                        created.append(task_id)
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        if created:
            logger.info("scheduled {} task(s) {} at {}", action, created, not_before.isoformat())
        return created

    async def enqueue(self, action: str, subject_id: int, not_before: datetime) -> Optional[int]:
        delay = int((not_before - utcnow()).total_seconds())
        created = await self.create_task([subject_id], action, delay=delay)
        return created[0] if created else None

    async def delete_task(self, subject_ids: SubjectIds, actions: Union[str, Iterable[str], None] = None) -> int:
        """Drop executing or stopped tasks for the subjects, optionally only some actions."""
        stmt = delete(Task).where(
            Task.subject_id.in_(_ids(subject_ids)),
            Task.status.in_((TaskStatus.EXECUTING, TaskStatus.STOPPED)),
        )
        if actions:
            if isinstance(actions, str):
                actions = actions.split(",")
            stmt = stmt.where(Task.action.in_(list(actions)))

        async with self.session_factory() as db:
            try:
                res = await db.execute(stmt)
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        return res.rowcount or 0

    async def stop_task(self, task_ids: SubjectIds) -> int:
        # a running task finishes its current execution; it just won't be picked up again
        async with self.session_factory() as db:
            try:
                res = await db.execute(
                    update(Task)
                    .where(Task.id.in_(_ids(task_ids)), Task.status == TaskStatus.EXECUTING)
                    .values(status=TaskStatus.STOPPED, updated_at=utcnow())
                )
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        return res.rowcount or 0

    async def retry_task(self, task_ids: SubjectIds) -> int:
        """Put stopped or failed tasks back in the queue, unless the same work is already executing."""
        retried = 0
        async with self.session_factory() as db:
            try:
                res = await db.execute(
                    select(Task).where(
                        Task.id.in_(_ids(task_ids)),
                        Task.status.in_((TaskStatus.STOPPED, TaskStatus.FAILED)),
                    )
                )
                for task in res.scalars().all():
                    busy = await db.execute(
                        select(Task.id)
                        .where(
                            Task.subject_id == task.subject_id,
                            Task.action == task.action,
                            Task.status == TaskStatus.EXECUTING,
                        )
                        .limit(1)
                    )
                    if busy.scalar_one_or_none() is not None:
                        continue
                    try:
                        async with db.begin_nested():
                            task.status = TaskStatus.EXECUTING
                            task.started_at = utcnow()
                            task.weight = 1
                            await db.flush()
                    except IntegrityError:
                        continue
                    retried += 1
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        return retried


class TaskRunner:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher: Dispatcher,
        notifier: Notifier,
        settings: Settings,
    ):
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.notifier = notifier
        self.settings = settings

    async def claim(self, now: Optional[datetime] = None) -> Optional[Task]:
        now = now or utcnow()
        async with self.session_factory() as db:
            try:
                res = await db.execute(
                    select(Task)
                    .where(Task.status == TaskStatus.EXECUTING, Task.started_at <= now)
                    .order_by(Task.weight.desc(), Task.started_at, Task.id)
                    .limit(1)
                    .with_for_update(skip_locked=True)
                )
                task = res.scalar_one_or_none()
                if task is None:
                    await db.rollback()
                    return None

                # compare-and-set on started_at: backends without SKIP LOCKED can race here
                lease = now + timedelta(seconds=self.settings.TASK_LEASE_SECONDS)
                claimed = await db.execute(
                    update(Task)
                    .where(
                        Task.id == task.id,
                        Task.status == TaskStatus.EXECUTING,
                        Task.started_at == task.started_at,
                    )
                    .values(started_at=lease)
                    .execution_options(synchronize_session=False)
                )
                if not claimed.rowcount:
                    await db.rollback()
                    return None
                await db.commit()
                task.started_at = lease
            except Exception:
                await db.rollback()
                raise
        return task

    async def execute(self, task: Task) -> str:
        """Run one claimed task and record the outcome; returns the new task status."""
        error: Optional[BaseException] = None
        try:
            outcome = await self.dispatcher(task.action, task.subject_id, task.user_id)
            result = outcome.as_payload(debug=True)
            status = TaskStatus.SUCCESSFUL if outcome.ok else TaskStatus.FAILED
        except Exception as e:
            logger.exception("task {} ({} {}) raised", task.id, task.action, task.subject_id)
            error = e
            result = {
                "code": 0,
                "msg": str(e) or type(e).__name__,
                "data": {"exception": type(e).__name__, "trace": traceback.format_exc(limit=20)},
            }
            status = TaskStatus.FAILED

        now = utcnow()
        attempts = int(task.attempts or 0) + 1
        values = {"result": result, "attempts": attempts, "weight": 0, "last_execute_at": now, "status": status}
        if error is not None and attempts < self.settings.TASK_MAX_ATTEMPTS:
            values["status"] = TaskStatus.EXECUTING
            values["started_at"] = now + timedelta(seconds=self.settings.TASK_RETRY_BACKOFF * attempts)

        async with self.session_factory() as db:
            try:
                # a task stopped or deleted while running keeps that state
                await db.execute(
                    update(Task)
                    .where(Task.id == task.id, Task.status == TaskStatus.EXECUTING)
                    .values(**values, updated_at=now)
                )
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        for key, value in values.items():
            setattr(task, key, value)

        if error is not None and values["status"] == TaskStatus.FAILED:
            await self._notify(task, now)
        else:
            logger.info("task {} {} {} -> {}", task.id, task.action, task.subject_id, values["status"])
        return values["status"]

    async def _notify(self, task: Task, executed_at: datetime) -> None:
        notice = FailureNotice(
            order_id=task.subject_id,
            task_id=task.id,
            action=task.action,
            status=task.status,
            attempts=task.attempts,
            result=task.result or {},
            created_at=task.created_at,
            executed_at=executed_at,
        )
        try:
            await self.notifier.send_failure_notice(notice)
        except Exception:
            logger.exception("failure notice for task {} could not be sent", task.id)

    async def run_once(self) -> Optional[str]:
        task = await self.claim()
        if task is None:
            return None
        return await self.execute(task)


class WorkerPool:
    """N asyncio workers polling the task table until :meth:`stop`."""

    def __init__(self, runner: TaskRunner, workers: int = 4, poll_interval: float = 1.0):
        self.runner = runner
        self.workers = workers
        self.poll_interval = poll_interval
        self._stopping = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    async def _idle(self) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
        except asyncio.TimeoutError:
            pass

    async def _work(self, n: int) -> None:
        logger.info("task worker {} started", n)
        while not self._stopping.is_set():
            try:
                status = await self.runner.run_once()
            except Exception:
                logger.exception("task worker {} iteration failed", n)
                status = None
            if status is None:
                await self._idle()
        logger.info("task worker {} stopped", n)

    def start(self) -> None:
        self._stopping.clear()
        self._tasks = [asyncio.create_task(self._work(n), name=f"task-worker-{n}") for n in range(self.workers)]

    async def stop(self) -> None:
        self._stopping.set()
        if self._tasks:
            await asyncio.gather(*self._tasks)
        self._tasks = []

    async def run(self) -> None:
        self.start()
        await asyncio.gather(*self._tasks)
