"""Chat turns against a ready assistant.

Order of writes for one turn:
1. user message (committed before any model call)
2. assistant message with deduplicated sources
3. usage counter increment

If answering fails after step 1, an apology message is stored in place of the
answer and the original exception is re-raised.
"""
import logging
from typing import Dict, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from docchat.config import settings
from docchat.db import session_scope
from docchat.errors import AssistantNotFound, AssistantNotReady
from docchat.lifecycle import AssistantStatus
from docchat.models import Assistant, Message
from docchat.obs import span
from docchat.retrieval import Answer, answer
from docchat.usage import check_question_limit, increment_usage

logger = logging.getLogger(__name__)

APOLOGY_MESSAGE = "Sorry, I encountered an error while answering your question. Please try again."


def _history(db: Session, assistant_id: str, limit: int) -> List[Dict]:
    if limit <= 0:
        return []
    rows = db.execute(
        select(Message)
        .where(Message.assistant_id == assistant_id)
        .order_by(Message.created_at.desc())
        .limit(limit)
    ).scalars().all()
    return [{"role": m.role, "content": m.content} for m in reversed(rows)]


def get_messages(db: Session, assistant_id: str, limit: Optional[int] = None) -> List[Message]:
    stmt = select(Message).where(Message.assistant_id == assistant_id).order_by(Message.created_at.asc())
    if limit is not None:
        stmt = stmt.limit(limit)
    return list(db.execute(stmt).scalars().all())


def clear_messages(db: Session, assistant_id: str) -> int:
    result = db.execute(delete(Message).where(Message.assistant_id == assistant_id))
    return result.rowcount or 0


async def send_message(assistant_id: str, user_id: str, plan: str, content: str) -> Message:
    """Run one chat turn and return the stored assistant message.

    Raises:
        AssistantNotFound: unknown assistant or not owned by user_id.
        AssistantNotReady: assistant has no queryable namespace yet.
        QuestionLimitReached: free-plan monthly limit exhausted.
    """
    with session_scope() as db:
        assistant = db.get(Assistant, assistant_id)
        if assistant is None or assistant.user_id != user_id:
            raise AssistantNotFound(f"Assistant {assistant_id} not found")
        if assistant.status != AssistantStatus.READY.value or not assistant.pinecone_namespace:
            raise AssistantNotReady(f"Assistant is {assistant.status}, not ready for chat")
        namespace = assistant.pinecone_namespace
        check_question_limit(db, user_id, plan)
        history = _history(db, assistant_id, settings.CHAT_HISTORY_TURNS)
        db.add(Message(assistant_id=assistant_id, role="user", content=content))

    try:
        with span("chat.answer", {"assistant_id": assistant_id}):
            result: Answer = await answer(namespace, content, history)
    except Exception:
        logger.exception("Chat turn failed for assistant %s", assistant_id)
        with session_scope() as db:
            db.add(Message(assistant_id=assistant_id, role="assistant", content=APOLOGY_MESSAGE, sources=[]))
        raise

    with session_scope() as db:
        reply = Message(assistant_id=assistant_id, role="assistant", content=result.text, sources=result.sources)
        db.add(reply)
        db.flush()
        increment_usage(db, user_id)
    return reply
