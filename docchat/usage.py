"""Per-user monthly question counters and plan limit checks.

Counters are keyed by (user_id, "YYYY-MM"). Every successful answer increments
the counter; only the free plan has a monthly ceiling.
"""
import logging
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from docchat.config import settings
from docchat.db import utcnow
from docchat.errors import (
    ASSISTANT_LIMIT_FREE_MESSAGE,
    ASSISTANT_LIMIT_PRO_MESSAGE,
    MONTHLY_LIMIT_MESSAGE,
    AssistantLimitReached,
    QuestionLimitReached,
)
from docchat.models import Assistant, UsageCounter
from docchat.utils import month_period

logger = logging.getLogger(__name__)


def get_current_month_usage(db: Session, user_id: str, now: Optional[datetime] = None) -> int:
    period = month_period(now or utcnow())
    row = db.execute(
        select(UsageCounter).where(UsageCounter.user_id == user_id, UsageCounter.period == period)
    ).scalar_one_or_none()
    return row.questions if row is not None else 0


def increment_usage(db: Session, user_id: str, now: Optional[datetime] = None) -> int:
    """Add one question to the user's current-month counter and return the new total."""
    period = month_period(now or utcnow())
    row = db.execute(
        select(UsageCounter).where(UsageCounter.user_id == user_id, UsageCounter.period == period)
    ).scalar_one_or_none()
    if row is None:
        row = UsageCounter(user_id=user_id, period=period, questions=0)
        db.add(row)
    row.questions += 1
    db.flush()
    return row.questions


def question_limit(plan: str) -> Optional[int]:
    """Monthly question ceiling for a plan, or None for unlimited."""
    return None if plan == "pro" else settings.FREE_QUESTIONS_PER_MONTH


def assistant_limit(plan: str) -> int:
    return settings.PRO_MAX_ASSISTANTS if plan == "pro" else settings.FREE_MAX_ASSISTANTS


def check_question_limit(db: Session, user_id: str, plan: str) -> None:
    """Raise QuestionLimitReached when a free user has used this month's questions."""
    limit = question_limit(plan)
    if limit is None:
        return
    used = get_current_month_usage(db, user_id)
    if used >= limit:
        raise QuestionLimitReached(MONTHLY_LIMIT_MESSAGE, used=used, limit=limit)


def check_assistant_limit(db: Session, user_id: str, plan: str) -> None:
    """Raise AssistantLimitReached when the user may not create another assistant.

    Free users are also refused once their monthly questions are exhausted.
    """
    limit = assistant_limit(plan)
    count = db.execute(select(func.count()).select_from(Assistant).where(Assistant.user_id == user_id)).scalar_one()
    if count >= limit:
        template = ASSISTANT_LIMIT_PRO_MESSAGE if plan == "pro" else ASSISTANT_LIMIT_FREE_MESSAGE
        raise AssistantLimitReached(template.format(limit=limit))
    check_question_limit(db, user_id, plan)


def usage_summary(db: Session, user_id: str, plan: str) -> Dict:
    count = db.execute(select(func.count()).select_from(Assistant).where(Assistant.user_id == user_id)).scalar_one()
    return {
        "period": month_period(utcnow()),
        "questions_used": get_current_month_usage(db, user_id),
        "questions_limit": question_limit(plan),
        "assistants_used": count,
        "assistants_limit": assistant_limit(plan),
    }
