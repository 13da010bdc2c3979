"""Crawl queue scheduling, retries, reclamation and dispatch against SQLite."""

import asyncio
from datetime import timedelta
from types import SimpleNamespace
from typing import List, Tuple

import pytest

from docchat import crawl_queue
from docchat.crawl_queue import (
    add_to_queue,
    cleanup_old_queue_items,
    get_next_queue_item,
    get_queue_position,
    mark_as_completed,
    mark_as_failed,
    mark_as_processing,
    process_queue,
)
from docchat.db import session_scope, utcnow
from docchat.errors import DocumentationTooLarge
from docchat.lifecycle import AssistantStatus
from docchat.models import Assistant, QueueItem


def queue(assistant_id: str, plan: str = "free", priority=None, now=None) -> str:
    with session_scope() as db:
        return add_to_queue(db, assistant_id, plan, priority=priority, now=now).id


def load_item(queue_id: str) -> QueueItem:
    with session_scope() as db:
        return db.get(QueueItem, queue_id)


def load_assistant(assistant_id: str) -> Assistant:
    with session_scope() as db:
        return db.get(Assistant, assistant_id)


def load_item_count() -> int:
    with session_scope() as db:
        return db.query(QueueItem).count()


class RecordingExecutor:
    def __init__(self, error: Exception = None) -> None:
        self.calls: List[Tuple[str, str]] = []
        self.error = error

    async def __call__(self, assistant_id: str, user_plan: str) -> None:
        self.calls.append((assistant_id, user_plan))
        if self.error is not None:
            raise self.error


class BlockingExecutor:
    """Holds every job open until ``release`` is set."""

    def __init__(self) -> None:
        self.release = asyncio.Event()
        self.calls = 0
        self.running = 0
        self.max_running = 0

    async def __call__(self, assistant_id: str, user_plan: str) -> None:
        self.calls += 1
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            await self.release.wait()
        finally:
            self.running -= 1


def test_selection_orders_by_priority_then_age(make_assistant) -> None:
    t0 = utcnow() - timedelta(minutes=5)
    a, b, c = make_assistant(name="A"), make_assistant(name="B"), make_assistant(name="C")
    queue(a, priority=2, now=t0)
    queue(b, priority=1, now=t0 + timedelta(seconds=1))
    queue(c, priority=1, now=t0 + timedelta(seconds=2))

    served = []
    with session_scope() as db:
        for _ in range(3):
            item = get_next_queue_item(db, utcnow())
            served.append(item.assistant_id)
            mark_as_processing(db, item)
        assert get_next_queue_item(db, utcnow()) is None
    assert served == [b, c, a]


def test_items_waiting_for_backoff_are_not_selected(make_assistant) -> None:
    assistant_id = make_assistant()
    now = utcnow()
    queue_id = queue(assistant_id, now=now)
    with session_scope() as db:
        item = db.get(QueueItem, queue_id)
        item.next_attempt_at = now + timedelta(minutes=1)
    with session_scope() as db:
        assert get_next_queue_item(db, now) is None
        assert get_next_queue_item(db, now + timedelta(minutes=2)).id == queue_id


def test_plan_sets_default_priority(make_assistant) -> None:
    pro_item = load_item(queue(make_assistant(), plan="pro"))
    free_item = load_item(queue(make_assistant(), plan="free"))
    assert pro_item.priority == 0
    assert free_item.priority == 10


def test_requeue_resets_existing_item(make_assistant) -> None:
    assistant_id = make_assistant()
    queue_id = queue(assistant_id)
    with session_scope() as db:
        item = db.get(QueueItem, queue_id)
        mark_as_processing(db, item)
        mark_as_failed(db, queue_id, "boom", permanent=True)

    assert queue(assistant_id, plan="pro") == queue_id
    item = load_item(queue_id)
    assert item.status == "pending"
    assert item.retry_count == 0
    assert item.error_message is None
    assert item.priority == 0


def _fail_attempts(assistant_id: str, queue_id: str, message: str, attempts: int) -> None:
    now = utcnow()
    for _ in range(attempts):
        with session_scope() as db:
            assistant = db.get(Assistant, assistant_id)
            assistant.status = AssistantStatus.CRAWLING.value
            mark_as_processing(db, db.get(QueueItem, queue_id), now)
            mark_as_failed(db, queue_id, message, now=now)


def test_rate_limited_failures_retry_five_times(make_assistant) -> None:
    assistant_id = make_assistant()
    queue_id = queue(assistant_id)

    _fail_attempts(assistant_id, queue_id, "429 Too Many Requests", 5)
    item = load_item(queue_id)
    assert (item.status, item.retry_count) == ("pending", 5)
    assert load_assistant(assistant_id).status == "queued"

    _fail_attempts(assistant_id, queue_id, "429 Too Many Requests", 1)
    item = load_item(queue_id)
    assert (item.status, item.retry_count) == ("failed", 6)
    assistant = load_assistant(assistant_id)
    assert assistant.status == "error"
    assert assistant.error_message == "429 Too Many Requests"


def test_other_failures_retry_three_times(make_assistant) -> None:
    assistant_id = make_assistant()
    queue_id = queue(assistant_id)

    _fail_attempts(assistant_id, queue_id, "connection reset", 3)
    assert load_item(queue_id).status == "pending"

    _fail_attempts(assistant_id, queue_id, "connection reset", 1)
    item = load_item(queue_id)
    assert (item.status, item.retry_count) == ("failed", 4)


def test_failure_schedules_backoff(make_assistant) -> None:
    assistant_id = make_assistant()
    queue_id = queue(assistant_id)
    now = utcnow()
    with session_scope() as db:
        mark_as_processing(db, db.get(QueueItem, queue_id), now)
        mark_as_failed(db, queue_id, "Rate limit exceeded", now=now)
    item = load_item(queue_id)
    assert item.next_attempt_at == now + timedelta(seconds=60)


def test_permanent_failure_skips_retries(make_assistant) -> None:
    assistant_id = make_assistant()
    queue_id = queue(assistant_id)
    with session_scope() as db:
        mark_as_processing(db, db.get(QueueItem, queue_id))
        mark_as_failed(db, queue_id, "too large", permanent=True)
    item = load_item(queue_id)
    assert (item.status, item.retry_count) == ("failed", 1)


def test_failing_a_missing_item_is_a_noop() -> None:
    with session_scope() as db:
        assert mark_as_failed(db, "does-not-exist", "boom") is None


def test_queue_position_and_estimated_wait(make_assistant) -> None:
    t0 = utcnow() - timedelta(minutes=5)
    a, b, c = make_assistant(), make_assistant(), make_assistant()
    queue(a, priority=10, now=t0)
    queue(b, priority=0, now=t0 + timedelta(seconds=1))
    queue(c, priority=10, now=t0 + timedelta(seconds=2))

    with session_scope() as db:
        first = get_queue_position(db, b)
        last = get_queue_position(db, c)
        assert get_queue_position(db, "unknown") is None

    assert (first["position"], first["estimated_wait_minutes"]) == (1, 0)
    assert (last["position"], last["estimated_wait_minutes"]) == (3, 4)
    assert last["total_pending"] == 3


def test_queue_position_of_processing_item(make_assistant) -> None:
    assistant_id = make_assistant()
    queue_id = queue(assistant_id)
    with session_scope() as db:
        mark_as_processing(db, db.get(QueueItem, queue_id))
    with session_scope() as db:
        position = get_queue_position(db, assistant_id)
    assert position["status"] == "processing"
    assert position["position"] is None


def test_cleanup_removes_only_old_finished_items(make_assistant) -> None:
    now = utcnow()
    old = now - timedelta(hours=2)
    rows = [("completed", old), ("failed", old), ("completed", now), ("pending", old)]
    owners = [make_assistant() for _ in rows]
    with session_scope() as db:
        for owner, (status, updated) in zip(owners, rows):
            db.add(
                QueueItem(
                    assistant_id=owner,
                    status=status,
                    next_attempt_at=updated,
                    created_at=updated,
                    updated_at=updated,
                )
            )
    with session_scope() as db:
        assert cleanup_old_queue_items(db, now) == 2
    with session_scope() as db:
        remaining = sorted(i.status for i in db.query(QueueItem).all())
    assert remaining == ["completed", "pending"]


@pytest.mark.asyncio
async def test_tick_dispatches_and_completes(make_assistant) -> None:
    assistant_id = make_assistant()
    queue_id = queue(assistant_id, plan="pro")
    executor = RecordingExecutor()

    result = await process_queue(utcnow(), executor=executor)
    assert result.action == "dispatched"
    assert result.queue_id == queue_id
    assert load_item(queue_id).status == "processing"

    await result.task
    assert executor.calls == [(assistant_id, "pro")]
    assert load_item(queue_id).status == "completed"


@pytest.mark.asyncio
async def test_tick_with_empty_queue_is_idle() -> None:
    result = await process_queue(utcnow(), executor=RecordingExecutor())
    assert result.action == "idle"


@pytest.mark.asyncio
async def test_failed_job_is_scheduled_for_retry(make_assistant) -> None:
    assistant_id = make_assistant()
    queue_id = queue(assistant_id)
    executor = RecordingExecutor(error=RuntimeError("connection reset"))

    result = await process_queue(utcnow(), executor=executor)
    await result.task

    item = load_item(queue_id)
    assert (item.status, item.retry_count) == ("pending", 1)
    assert item.error_message == "connection reset"
    assert item.next_attempt_at > utcnow()


@pytest.mark.asyncio
async def test_permanent_job_error_fails_item(make_assistant) -> None:
    assistant_id = make_assistant()
    queue_id = queue(assistant_id)
    error = DocumentationTooLarge("https://docs.example.com/huge", 60_000, 50_000)

    result = await process_queue(utcnow(), executor=RecordingExecutor(error=error))
    await result.task

    item = load_item(queue_id)
    assert (item.status, item.retry_count) == ("failed", 1)


@pytest.mark.asyncio
async def test_only_one_item_processes_at_a_time(make_assistant) -> None:
    first, second = make_assistant(), make_assistant()
    queue_id = queue(first)
    queue(second)
    with session_scope() as db:
        mark_as_processing(db, db.get(QueueItem, queue_id))

    executor = RecordingExecutor()
    result = await process_queue(utcnow(), executor=executor)

    assert result.action == "busy"
    assert executor.calls == []


@pytest.mark.asyncio
async def test_stuck_item_is_reclaimed_and_retried_later(make_assistant) -> None:
    assistant_id = make_assistant(status=AssistantStatus.QUEUED)
    queue_id = queue(assistant_id)
    now = utcnow()
    with session_scope() as db:
        db.get(Assistant, assistant_id).status = AssistantStatus.CRAWLING.value
        mark_as_processing(db, db.get(QueueItem, queue_id), now - timedelta(minutes=11))

    executor = RecordingExecutor()
    result = await process_queue(now, executor=executor)

    assert result.reclaimed == 1
    assert result.action == "idle"
    item = load_item(queue_id)
    assert item.status == "pending"
    assert item.retry_count == 1
    assert item.next_attempt_at > now
    assert "Processing timeout" in item.error_message
    assert load_assistant(assistant_id).status == "queued"
    assert executor.calls == []


@pytest.mark.asyncio
async def test_recent_processing_item_is_not_reclaimed(make_assistant) -> None:
    queue_id = queue(make_assistant())
    now = utcnow()
    with session_scope() as db:
        mark_as_processing(db, db.get(QueueItem, queue_id), now - timedelta(minutes=5))

    result = await process_queue(now, executor=RecordingExecutor())
    assert (result.action, result.reclaimed) == ("busy", 0)


@pytest.mark.asyncio
async def test_deleted_assistant_is_rejected(make_assistant) -> None:
    assistant_id = make_assistant()
    queue_id = queue(assistant_id)
    with session_scope() as db:
        db.delete(db.get(Assistant, assistant_id))

    executor = RecordingExecutor()
    result = await process_queue(utcnow(), executor=executor)

    assert result.action == "rejected"
    assert "not found" in result.reason
    assert executor.calls == []
    assert load_item(queue_id).status == "failed"


@pytest.mark.asyncio
async def test_assistant_not_queued_is_rejected(make_assistant) -> None:
    assistant_id = make_assistant(status=AssistantStatus.READY)
    queue_id = queue(assistant_id)

    executor = RecordingExecutor()
    result = await process_queue(utcnow(), executor=executor)

    assert result.action == "rejected"
    assert result.reason == "Assistant status is ready, expected queued"
    assert executor.calls == []
    item = load_item(queue_id)
    assert (item.status, item.error_message) == ("failed", result.reason)
    assert load_assistant(assistant_id).status == "ready"


def test_run_cleanup_uses_retention_window(make_assistant) -> None:
    assistant_id = make_assistant()
    old = utcnow() - timedelta(hours=3)
    with session_scope() as db:
        db.add(QueueItem(assistant_id=assistant_id, status="completed", created_at=old, updated_at=old))
    assert crawl_queue.run_cleanup() == 1
    assert load_item_count() == 0

@pytest.mark.asyncio
async def test_tick_without_the_queue_lock_does_nothing(monkeypatch, make_assistant) -> None:
    queue_id = queue(make_assistant())
    monkeypatch.setattr(crawl_queue, "_try_tick_lock", lambda db: False)
    executor = RecordingExecutor()

    result = await process_queue(utcnow(), executor=executor)

    assert result.action == "busy"
    assert executor.calls == []
    assert load_item(queue_id).status == "pending"


def test_tick_lock_uses_postgres_advisory_lock() -> None:
    statements = []

    class FakeSession:
        def get_bind(self):
            return SimpleNamespace(dialect=SimpleNamespace(name="postgresql"))

        def execute(self, stmt, params):
            statements.append((str(stmt), params))
            return SimpleNamespace(scalar=lambda: False)

    assert crawl_queue._try_tick_lock(FakeSession()) is False
    assert "pg_try_advisory_xact_lock" in statements[0][0]
    assert statements[0][1] == {"key": crawl_queue.QUEUE_TICK_LOCK_KEY}

    with session_scope() as db:
        assert crawl_queue._try_tick_lock(db) is True


@pytest.mark.asyncio
async def test_reclaimed_job_is_cancelled_before_it_is_dispatched_again(make_assistant) -> None:
    assistant_id = make_assistant()
    queue_id = queue(assistant_id)
    executor = BlockingExecutor()
    t0 = utcnow()

    first = await process_queue(t0, executor=executor)
    assert first.action == "dispatched"
    await asyncio.sleep(0)
    assert executor.running == 1

    reclaim = await process_queue(t0 + timedelta(minutes=11), executor=executor)
    assert (reclaim.action, reclaim.reclaimed) == ("idle", 1)
    with pytest.raises(asyncio.CancelledError):
        await first.task
    assert executor.running == 0

    second = await process_queue(t0 + timedelta(minutes=12), executor=executor)
    assert second.action == "dispatched"
    await asyncio.sleep(0)
    executor.release.set()
    await second.task

    assert executor.calls == 2
    assert executor.max_running == 1
    item = load_item(queue_id)
    assert (item.status, item.retry_count) == ("completed", 1)


@pytest.mark.asyncio
async def test_outcome_of_a_superseded_run_is_dropped(make_assistant) -> None:
    assistant_id = make_assistant()
    queue_id = queue(assistant_id)
    stale_start = utcnow() - timedelta(minutes=20)
    with session_scope() as db:
        mark_as_processing(db, db.get(QueueItem, queue_id), utcnow())

    await crawl_queue.run_queue_item(queue_id, assistant_id, "free", RecordingExecutor(), stale_start)
    await crawl_queue.run_queue_item(
        queue_id, assistant_id, "free", RecordingExecutor(error=RuntimeError("late failure")), stale_start
    )

    item = load_item(queue_id)
    assert (item.status, item.retry_count, item.error_message) == ("processing", 0, None)


@pytest.mark.asyncio
async def test_late_completion_after_requeue_does_not_raise(make_assistant) -> None:
    assistant_id = make_assistant()
    queue_id = queue(assistant_id)
    started = utcnow()
    with session_scope() as db:
        mark_as_processing(db, db.get(QueueItem, queue_id), started)
        mark_as_completed(db, queue_id)

    await crawl_queue.run_queue_item(queue_id, assistant_id, "free", RecordingExecutor(), started)
    assert load_item(queue_id).status == "completed"
