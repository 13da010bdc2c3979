"""Durable crawl/index job queue.

Provides:
- add_to_queue: enqueue or reset an assistant's single queue item
- get_next_queue_item: highest-priority ready item, ordered by (priority, created_at)
- mark_as_processing / mark_as_completed / mark_as_failed: item state changes
- backoff: retry delay for an attempt number and failure class
- remove_from_queue, get_queue_position, cleanup_old_queue_items
- process_queue: one scheduling tick (reclaim, single-flight guard, select, dispatch)

Only one item is ever ``processing`` system-wide. Each tick runs in one
transaction that first takes a transaction-scoped advisory lock on PostgreSQL,
so overlapping ticks (several workers, each with its own scheduler) are
serialized: a tick that cannot take the lock reports "busy". The guard, the
selection and the processing mark all happen under that lock. Ingestion itself
runs as an asyncio task after the transaction commits.

A reclaimed item's in-process task is cancelled, and a job only records its
outcome while it still owns the item (status ``processing`` with the
``last_attempt_at`` it was dispatched with).

Failures are retried with exponential backoff:

- rate-limit failures: up to 5 retries, min(60s * 2^(n-1), 16 min)
- other failures: up to 3 retries, min(30s * 2^(n-1), 2 min)

Permanent errors fail the item immediately.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional

from sqlalchemy import and_, delete, func, or_, select, text
from sqlalchemy.orm import Session

from docchat.config import settings
from docchat.db import session_scope, utcnow
from docchat.errors import is_permanent_error, is_rate_limit_error
from docchat.lifecycle import (
    TERMINAL_QUEUE_STATUSES,
    AssistantStatus,
    QueueStatus,
    assistant_transition,
    queue_transition,
)
from docchat.models import Assistant, QueueItem
from docchat.obs import span

logger = logging.getLogger(__name__)

MAX_RETRIES_RATE_LIMIT = 5
MAX_RETRIES_DEFAULT = 3
RATE_LIMIT_BASE_DELAY = timedelta(seconds=60)
RATE_LIMIT_MAX_DELAY = timedelta(minutes=16)
DEFAULT_BASE_DELAY = timedelta(seconds=30)
DEFAULT_MAX_DELAY = timedelta(minutes=2)

Executor = Callable[[str, str], Awaitable[None]]

# Any fixed 64-bit key shared by every worker
QUEUE_TICK_LOCK_KEY = 0x646F636368617471

# In-flight ingestion tasks by queue item id
_running_tasks: Dict[str, asyncio.Task] = {}


@dataclass
class TickResult:
    """Outcome of one scheduling tick.

    action is one of: "idle" (nothing ready), "busy" (an item is processing),
    "skipped" (lost a race for the selected item), "rejected" (precondition
    failed, item marked failed) or "dispatched" (ingestion task started).
    """
    action: str
    queue_id: Optional[str] = None
    assistant_id: Optional[str] = None
    reason: Optional[str] = None
    reclaimed: int = 0
    task: Optional[asyncio.Task] = None


def backoff(attempt: int, is_rate_limit: bool) -> timedelta:
    """Delay before retry number ``attempt`` (1-based).

    Rate-limit failures: 60s doubling, capped at 16 minutes.
    Other failures: 30s doubling, capped at 2 minutes.
    """
    n = max(1, attempt)
    if is_rate_limit:
        return min(RATE_LIMIT_BASE_DELAY * (2 ** (n - 1)), RATE_LIMIT_MAX_DELAY)
    return min(DEFAULT_BASE_DELAY * (2 ** (n - 1)), DEFAULT_MAX_DELAY)


def max_retries(is_rate_limit: bool) -> int:
    return MAX_RETRIES_RATE_LIMIT if is_rate_limit else MAX_RETRIES_DEFAULT


def _get_item(db: Session, assistant_id: str) -> Optional[QueueItem]:
    return db.execute(select(QueueItem).where(QueueItem.assistant_id == assistant_id)).scalar_one_or_none()


def add_to_queue(
    db: Session,
    assistant_id: str,
    user_plan: str,
    priority: Optional[int] = None,
    now: Optional[datetime] = None,
) -> QueueItem:
    """Enqueue an assistant, resetting its existing item in place if there is one."""
    now = now or utcnow()
    priority = settings.queue_priority(user_plan) if priority is None else priority
    item = _get_item(db, assistant_id)
    if item is not None:
        item.status = queue_transition(item.status, QueueStatus.PENDING).value
        item.retry_count = 0
        item.priority = priority
        item.user_plan = user_plan
        item.next_attempt_at = now
        item.last_attempt_at = None
        item.error_message = None
        item.created_at = now
        logger.info("Re-queued assistant %s (priority=%d)", assistant_id, priority)
    else:
        item = QueueItem(
            assistant_id=assistant_id,
            status=QueueStatus.PENDING.value,
            priority=priority,
            user_plan=user_plan,
            retry_count=0,
            next_attempt_at=now,
            created_at=now,
            updated_at=now,
        )
        db.add(item)
        logger.info("Queued assistant %s (priority=%d)", assistant_id, priority)
    db.flush()
    return item


def get_next_queue_item(db: Session, now: Optional[datetime] = None, lock: bool = False) -> Optional[QueueItem]:
    """Return the ready pending item with the lowest (priority, created_at)."""
    now = now or utcnow()
    stmt = (
        select(QueueItem)
        .where(QueueItem.status == QueueStatus.PENDING.value, QueueItem.next_attempt_at <= now)
        .order_by(QueueItem.priority.asc(), QueueItem.created_at.asc())
        .limit(1)
    )
    if lock:
        stmt = stmt.with_for_update(skip_locked=True)
    return db.execute(stmt).scalar_one_or_none()


def mark_as_processing(db: Session, item: QueueItem, now: Optional[datetime] = None) -> QueueItem:
    now = now or utcnow()
    item.status = queue_transition(item.status, QueueStatus.PROCESSING).value
    item.last_attempt_at = now
    db.flush()
    return item


def mark_as_completed(db: Session, queue_id: str) -> Optional[QueueItem]:
    item = db.get(QueueItem, queue_id)
    if item is None:
        logger.warning("Queue item %s disappeared before completion", queue_id)
        return None
    item.status = queue_transition(item.status, QueueStatus.COMPLETED).value
    item.error_message = None
    db.flush()
    return item


def _requeue_assistant(db: Session, assistant_id: str, error_message: str) -> None:
    assistant = db.get(Assistant, assistant_id)
    if assistant is None:
        return
    if assistant.status in (AssistantStatus.CRAWLING.value, AssistantStatus.PROCESSING.value):
        assistant.status = assistant_transition(assistant.status, AssistantStatus.ERROR).value
        assistant.error_message = error_message
    if assistant.status == AssistantStatus.ERROR.value:
        assistant.status = assistant_transition(assistant.status, AssistantStatus.QUEUED).value


def _fail_assistant(db: Session, assistant_id: str, error_message: str) -> None:
    assistant = db.get(Assistant, assistant_id)
    if assistant is None:
        return
    if assistant.status in (AssistantStatus.CRAWLING.value, AssistantStatus.PROCESSING.value):
        assistant.status = assistant_transition(assistant.status, AssistantStatus.ERROR).value
        assistant.error_message = error_message


def mark_as_failed(
    db: Session,
    queue_id: str,
    error_message: str,
    *,
    is_rate_limit: Optional[bool] = None,
    permanent: bool = False,
    now: Optional[datetime] = None,
) -> Optional[QueueItem]:
    """Record a failed attempt and either schedule a retry or fail the item for good.

    Args:
        db: Session; the caller commits.
        queue_id: Queue item id. A missing item is a no-op.
        error_message: Captured failure message.
        is_rate_limit: Backoff regime; classified from the message when None.
        permanent: Skip retries entirely.
        now: Clock override.

    Returns:
        Optional[QueueItem]: The updated item, or None if it no longer exists.
    """
    now = now or utcnow()
    item = db.get(QueueItem, queue_id)
    if item is None:
        logger.warning("Queue item %s disappeared before failure could be recorded", queue_id)
        return None
    if is_rate_limit is None:
        is_rate_limit = is_rate_limit_error(error_message)

    item.retry_count += 1
    item.error_message = error_message
    if not permanent and item.retry_count <= max_retries(is_rate_limit):
        delay = backoff(item.retry_count, is_rate_limit)
        item.status = queue_transition(item.status, QueueStatus.PENDING).value
        item.next_attempt_at = now + delay
        _requeue_assistant(db, item.assistant_id, error_message)
        logger.warning(
            "Queue item %s failed (attempt %d, rate_limit=%s); retrying in %ds: %s",
            queue_id, item.retry_count, is_rate_limit, int(delay.total_seconds()), error_message,
        )
    else:
        item.status = queue_transition(item.status, QueueStatus.FAILED).value
        _fail_assistant(db, item.assistant_id, error_message)
        logger.error(
            "Queue item %s failed permanently after %d attempt(s): %s", queue_id, item.retry_count, error_message
        )
    db.flush()
    return item


def remove_from_queue(db: Session, assistant_id: str) -> bool:
    result = db.execute(delete(QueueItem).where(QueueItem.assistant_id == assistant_id))
    return bool(result.rowcount)


def get_queue_position(db: Session, assistant_id: str) -> Optional[Dict]:
    """Position of an assistant's item among pending items (informational)."""
    item = _get_item(db, assistant_id)
    if item is None:
        return None
    total_pending = db.execute(
        select(func.count()).select_from(QueueItem).where(QueueItem.status == QueueStatus.PENDING.value)
    ).scalar_one()
    if item.status != QueueStatus.PENDING.value:
        return {
            "status": item.status,
            "position": None,
            "total_pending": total_pending,
            "estimated_wait_minutes": 0,
            "retry_count": item.retry_count,
            "error_message": item.error_message,
        }
    ahead = db.execute(
        select(func.count())
        .select_from(QueueItem)
        .where(
            QueueItem.status == QueueStatus.PENDING.value,
            QueueItem.id != item.id,
            or_(
                QueueItem.priority < item.priority,
                and_(QueueItem.priority == item.priority, QueueItem.created_at < item.created_at),
            ),
        )
    ).scalar_one()
    return {
        "status": item.status,
        "position": ahead + 1,
        "total_pending": total_pending,
        "estimated_wait_minutes": ahead * settings.QUEUE_ITEM_ESTIMATE_MINUTES,
        "retry_count": item.retry_count,
        "error_message": item.error_message,
    }


def reclaim_stuck_items(db: Session, now: Optional[datetime] = None) -> List[str]:
    """Push items processing for longer than QUEUE_STUCK_TIMEOUT_SECONDS down the failure path."""
    now = now or utcnow()
    cutoff = now - timedelta(seconds=settings.QUEUE_STUCK_TIMEOUT_SECONDS)
    stuck = db.execute(
        select(QueueItem).where(
            QueueItem.status == QueueStatus.PROCESSING.value,
            QueueItem.last_attempt_at < cutoff,
        )
    ).scalars().all()
    minutes = settings.QUEUE_STUCK_TIMEOUT_SECONDS // 60
    for item in stuck:
        mark_as_failed(db, item.id, f"Processing timeout: job exceeded {minutes} minutes", now=now)
        task = _running_tasks.get(item.id)
        if task is not None and not task.done():
            logger.warning("Cancelling stuck ingestion task for queue item %s", item.id)
            task.cancel()
    return [item.id for item in stuck]


def cleanup_old_queue_items(db: Session, now: Optional[datetime] = None) -> int:
    """Delete completed/failed items older than QUEUE_RETENTION_SECONDS."""
    now = now or utcnow()
    cutoff = now - timedelta(seconds=settings.QUEUE_RETENTION_SECONDS)
    result = db.execute(
        delete(QueueItem).where(
            QueueItem.status.in_([s.value for s in TERMINAL_QUEUE_STATUSES]),
            QueueItem.updated_at < cutoff,
        )
    )
    deleted = result.rowcount or 0
    if deleted:
        logger.info("Purged %d finished queue items", deleted)
    return deleted


def _owns_item(db: Session, queue_id: str, started_at: datetime) -> bool:
    item = db.get(QueueItem, queue_id)
    if item is None or item.status != QueueStatus.PROCESSING.value or item.last_attempt_at != started_at:
        logger.warning("Queue item %s was reclaimed or reset; discarding the outcome of its old run", queue_id)
        return False
    return True


async def run_queue_item(
    queue_id: str,
    assistant_id: str,
    user_plan: str,
    executor: Executor,
    started_at: datetime,
) -> None:
    """Run one ingestion job and record its outcome on the queue item.

    The outcome is only recorded if the item is still the run this task was
    dispatched for; otherwise it is logged and dropped.
    """
    try:
        with span("queue.job", {"queue_id": queue_id, "assistant_id": assistant_id}):
            await executor(assistant_id, user_plan)
    except Exception as e:
        with session_scope() as db:
            if _owns_item(db, queue_id, started_at):
                mark_as_failed(db, queue_id, str(e) or e.__class__.__name__, permanent=is_permanent_error(e))
        return
    with session_scope() as db:
        if not _owns_item(db, queue_id, started_at):
            return
        mark_as_completed(db, queue_id)
    logger.info("Queue item %s completed for assistant %s", queue_id, assistant_id)


def _try_tick_lock(db: Session) -> bool:
    """Take the tick lock for the rest of the transaction.

    Only PostgreSQL needs it; SQLite already serializes writers.
    """
    if db.get_bind().dialect.name != "postgresql":
        return True
    acquired = db.execute(text("SELECT pg_try_advisory_xact_lock(:key)"), {"key": QUEUE_TICK_LOCK_KEY}).scalar()
    return bool(acquired)


def _track(queue_id: str, task: asyncio.Task) -> None:
    _running_tasks[queue_id] = task

    def _forget(done: asyncio.Task) -> None:
        if _running_tasks.get(queue_id) is done:
            del _running_tasks[queue_id]

    task.add_done_callback(_forget)


def _default_executor() -> Executor:
    from docchat.ingestion.pipeline import process_assistant_crawl

    return process_assistant_crawl


async def process_queue(now: Optional[datetime] = None, executor: Optional[Executor] = None) -> TickResult:
    """One scheduling tick.

    Steps: take the tick lock, reclaim stuck items, exit if anything is still
    processing, select the next ready item, re-check it, verify the assistant is
    still queued, mark the item processing and dispatch the ingestion job as a
    background task.
    """
    now = now or utcnow()
    executor = executor or _default_executor()
    with session_scope() as db:
        if not _try_tick_lock(db):
            logger.debug("Another tick holds the queue lock")
            return TickResult("busy", reason="tick in progress")

        reclaimed = reclaim_stuck_items(db, now)

        processing = db.execute(
            select(func.count()).select_from(QueueItem).where(QueueItem.status == QueueStatus.PROCESSING.value)
        ).scalar_one()
        if processing:
            return TickResult("busy", reclaimed=len(reclaimed))

        item = get_next_queue_item(db, now, lock=True)
        if item is None:
            return TickResult("idle", reclaimed=len(reclaimed))

        db.refresh(item)
        if item.status != QueueStatus.PENDING.value:
            return TickResult("skipped", item.id, item.assistant_id, reclaimed=len(reclaimed))

        assistant = db.get(Assistant, item.assistant_id)
        if assistant is None or assistant.status != AssistantStatus.QUEUED.value:
            reason = (
                f"Assistant {item.assistant_id} not found"
                if assistant is None
                else f"Assistant status is {assistant.status}, expected queued"
            )
            item.status = queue_transition(item.status, QueueStatus.FAILED).value
            item.error_message = reason
            logger.warning("Rejected queue item %s: %s", item.id, reason)
            return TickResult("rejected", item.id, item.assistant_id, reason, reclaimed=len(reclaimed))

        mark_as_processing(db, item, now)
        queue_id, assistant_id, plan = item.id, item.assistant_id, item.user_plan

    logger.info("Dispatching queue item %s for assistant %s", queue_id, assistant_id)
    task = asyncio.create_task(run_queue_item(queue_id, assistant_id, plan, executor, now))
    _track(queue_id, task)
    return TickResult("dispatched", queue_id, assistant_id, reclaimed=len(reclaimed), task=task)


def run_cleanup() -> int:
    with session_scope() as db:
        return cleanup_old_queue_items(db)
