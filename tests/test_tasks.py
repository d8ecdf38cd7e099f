import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select

from app.core.db import utcnow
from app.core.results import ActionResult, VendorTransportError
from app.models.task import Task, TaskStatus
from app.services.tasks import TaskRunner


async def tasks_for(session_factory, subject_id: int) -> list[Task]:
    async with session_factory() as db:
        res = await db.execute(select(Task).where(Task.subject_id == subject_id).order_by(Task.id))
        return list(res.scalars().all())


class ScriptedDispatcher:
    """Returns (or raises) the queued outcomes in order."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    async def __call__(self, action, subject_id, user_id=None):
        self.calls.append((action, subject_id, user_id))
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def later(minutes: int = 60):
    return utcnow() + timedelta(minutes=minutes)


async def test_create_task_is_deduplicated(queue, session_factory):
    first = await queue.create_task(7, "sync")
    second = await queue.create_task([7], "sync")
    other = await queue.create_task("7", "revalidate")

    assert len(first) == 1
    assert second == []
    assert len(other) == 1
    assert [t.action for t in await tasks_for(session_factory, 7)] == ["sync", "revalidate"]


async def test_concurrent_creates_leave_one_executing_task(queue, session_factory):
    results = await asyncio.gather(*(queue.create_task(8, "commit") for _ in range(3)))

    assert sum(len(r) for r in results) == 1
    assert len(await tasks_for(session_factory, 8)) == 1


async def test_create_task_for_several_subjects(queue, session_factory):
    created = await queue.create_task("1,2,3", "sync", delay=30, user_id=5)

    assert len(created) == 3
    task = (await tasks_for(session_factory, 2))[0]
    assert task.user_id == 5
    assert task.source == "api"
    assert task.started_at >= utcnow() + timedelta(seconds=25)


async def test_cancel_is_delayed_at_least_two_minutes(queue, session_factory):
    await queue.create_task(9, "cancel")

    task = (await tasks_for(session_factory, 9))[0]
    assert task.started_at >= utcnow() + timedelta(seconds=115)


async def test_enqueue_at_not_before(queue, session_factory):
    task_id = await queue.enqueue("revalidate", 11, later(10))

    [task] = await tasks_for(session_factory, 11)
    assert task.id == task_id
    assert later(9) <= task.started_at <= later(10)
    assert await queue.enqueue("revalidate", 11, later(20)) is None


async def test_delete_task_by_action(queue, session_factory):
    await queue.create_task(10, "sync")
    await queue.create_task(10, "cancel")

    assert await queue.delete_task(10, "cancel") == 1
    assert [t.action for t in await tasks_for(session_factory, 10)] == ["sync"]
    assert await queue.delete_task([10]) == 1


async def test_stop_and_retry(queue, session_factory):
    [task_id] = await queue.create_task(11, "sync")

    assert await queue.stop_task(task_id) == 1
    assert (await tasks_for(session_factory, 11))[0].status == TaskStatus.STOPPED

    assert await queue.retry_task([task_id]) == 1
    task = (await tasks_for(session_factory, 11))[0]
    assert task.status == TaskStatus.EXECUTING
    assert task.weight == 1


async def test_retry_skips_when_same_work_is_executing(queue, session_factory):
    [stopped] = await queue.create_task(12, "sync")
    await queue.stop_task(stopped)
    await queue.create_task(12, "sync")

    assert await queue.retry_task(stopped) == 0
    statuses = sorted(t.status for t in await tasks_for(session_factory, 12))
    assert statuses == [TaskStatus.EXECUTING, TaskStatus.STOPPED]


async def test_retry_ignores_successful_tasks(queue, session_factory, settings, notifier):
    [task_id] = await queue.create_task(13, "sync")
    runner = TaskRunner(session_factory, ScriptedDispatcher(ActionResult.success()), notifier, settings)
    await runner.execute(await runner.claim(later()))

    assert await queue.retry_task(task_id) == 0


async def test_claim_prefers_weight_and_respects_not_before(queue, session_factory, settings, notifier):
    await queue.create_task(20, "sync", delay=600)
    [due] = await queue.create_task(21, "sync")
    runner = TaskRunner(session_factory, ScriptedDispatcher(), notifier, settings)

    task = await runner.claim()
    assert task.id == due
    # leased: the same task is not handed out again
    assert await runner.claim() is None


async def test_successful_and_failed_outcomes(queue, session_factory, settings, notifier):
    await queue.create_task(30, "sync")
    await queue.create_task(31, "sync")
    dispatcher = ScriptedDispatcher(ActionResult.success({"status": "active"}), ActionResult.failure("CA says no"))
    runner = TaskRunner(session_factory, dispatcher, notifier, settings)

    assert await runner.execute(await runner.claim(later())) == TaskStatus.SUCCESSFUL
    assert await runner.execute(await runner.claim(later())) == TaskStatus.FAILED

    ok, failed = (await tasks_for(session_factory, 30))[0], (await tasks_for(session_factory, 31))[0]
    assert ok.result == {"code": 1, "msg": "", "data": {"status": "active"}}
    assert failed.result["msg"] == "CA says no"
    assert failed.attempts == 1
    # a business failure is final and not mailed
    assert notifier.notices == []


async def test_exceptions_are_retried_then_reported(queue, session_factory, settings, notifier):
    await queue.create_task(40, "commit", user_id=3)
    boom = VendorTransportError("racent", "place: HTTP 502")
    runner = TaskRunner(session_factory, ScriptedDispatcher(boom, boom, boom), notifier, settings)

    before = utcnow()
    assert await runner.execute(await runner.claim(later(0))) == TaskStatus.EXECUTING
    task = (await tasks_for(session_factory, 40))[0]
    assert task.attempts == 1
    assert task.started_at >= before + timedelta(seconds=settings.TASK_RETRY_BACKOFF)

    assert await runner.execute(await runner.claim(later())) == TaskStatus.EXECUTING
    assert await runner.execute(await runner.claim(later(120))) == TaskStatus.FAILED

    task = (await tasks_for(session_factory, 40))[0]
    assert task.attempts == settings.TASK_MAX_ATTEMPTS
    assert task.result["data"]["exception"] == "VendorTransportError"

    [notice] = notifier.notices
    assert (notice.order_id, notice.action, notice.attempts) == (40, "commit", 3)
    assert notice.result["msg"] == "racent: place: HTTP 502"


async def test_stopped_while_running_keeps_stopped(queue, session_factory, settings, notifier):
    [task_id] = await queue.create_task(50, "sync")
    runner = TaskRunner(session_factory, ScriptedDispatcher(ActionResult.success()), notifier, settings)
    task = await runner.claim(later())
    await queue.stop_task(task_id)

    await runner.execute(task)

    assert (await tasks_for(session_factory, 50))[0].status == TaskStatus.STOPPED


async def test_notifier_errors_are_swallowed(queue, session_factory, settings):
    class BrokenNotifier:
        async def send_failure_notice(self, notice):
            raise ConnectionRefusedError("smtp down")

    await queue.create_task(60, "cancel")
    runner = TaskRunner(
        session_factory, ScriptedDispatcher(*[RuntimeError("x")] * 3), BrokenNotifier(), settings
    )
    for minutes in (10, 20, 30):
        status = await runner.execute(await runner.claim(later(minutes)))

    assert status == TaskStatus.FAILED


async def test_run_once_without_due_tasks(session_factory, settings, notifier):
    runner = TaskRunner(session_factory, ScriptedDispatcher(), notifier, settings)
    assert await runner.run_once() is None


@pytest.mark.parametrize("workers", [1, 3])
async def test_worker_pool_drains_queue(queue, session_factory, settings, notifier, workers):
    from app.services.tasks import WorkerPool

    await queue.create_task("70,71,72", "sync")
    dispatcher = ScriptedDispatcher(*[ActionResult.success()] * 3)
    pool = WorkerPool(TaskRunner(session_factory, dispatcher, notifier, settings), workers=workers, poll_interval=0.05)

    pool.start()
    for _ in range(100):
        if len(dispatcher.calls) == 3:
            break
        await asyncio.sleep(0.05)
    await pool.stop()

    assert sorted(subject for _, subject, _ in dispatcher.calls) == [70, 71, 72]
