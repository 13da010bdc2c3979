"""Assistant records: creation, owner edits, re-crawl, deletion and status updates.

Functions take a Session and flush; the caller owns the transaction. Status
changes go through docchat.lifecycle so illegal moves raise InvalidTransition.
"""
import logging
import secrets
from typing import Dict, List, Optional, Tuple

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from docchat.crawl_queue import add_to_queue, remove_from_queue
from docchat.db import utcnow
from docchat.documents import delete_documents_by_assistant
from docchat.domain_validator import check_url
from docchat.errors import AssistantNotFound
from docchat.lifecycle import AssistantStatus, assistant_transition
from docchat.models import Assistant, Message, namespace_for
from docchat.usage import check_assistant_limit
from docchat.vector_index import get_vector_index

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("name", "description")


def create_assistant(
    db: Session,
    user_id: str,
    plan: str,
    name: str,
    docs_url: str,
    description: Optional[str] = None,
) -> Tuple[Assistant, Optional[str]]:
    """Validate, enforce plan limits, insert the assistant and enqueue its crawl.

    Returns:
        (assistant, warning): warning is the domain validator's notice, if any.

    Raises:
        InvalidUrl, BlockedDomain, GenericPattern: URL rejected.
        AssistantLimitReached, QuestionLimitReached: plan limits.
    """
    result = check_url(docs_url)
    check_assistant_limit(db, user_id, plan)

    assistant = Assistant(
        user_id=user_id,
        name=name.strip(),
        description=description,
        docs_url=docs_url.strip(),
        status=AssistantStatus.CREATING.value,
    )
    db.add(assistant)
    db.flush()

    assistant.status = assistant_transition(assistant.status, AssistantStatus.QUEUED).value
    add_to_queue(db, assistant.id, plan)
    logger.info("Created assistant %s for user %s (%s)", assistant.id, user_id, assistant.docs_url)
    return assistant, result.warning


def get_assistant(db: Session, assistant_id: str, user_id: Optional[str] = None) -> Assistant:
    """Fetch an assistant, optionally scoped to its owner.

    Raises:
        AssistantNotFound: missing, or owned by someone else.
    """
    assistant = db.get(Assistant, assistant_id)
    if assistant is None or (user_id is not None and assistant.user_id != user_id):
        raise AssistantNotFound(f"Assistant {assistant_id} not found")
    return assistant


def list_assistants(db: Session, user_id: str) -> List[Assistant]:
    stmt = select(Assistant).where(Assistant.user_id == user_id).order_by(Assistant.created_at.desc())
    return list(db.execute(stmt).scalars().all())


def get_public_assistant(db: Session, share_id: str) -> Assistant:
    assistant = db.execute(
        select(Assistant).where(Assistant.public_share_id == share_id, Assistant.is_public.is_(True))
    ).scalar_one_or_none()
    if assistant is None:
        raise AssistantNotFound("Public assistant not found")
    return assistant


def update_assistant(db: Session, assistant: Assistant, changes: Dict) -> Assistant:
    """Apply owner edits (name, description, is_public)."""
    for key in EDITABLE_FIELDS:
        if changes.get(key) is not None:
            setattr(assistant, key, changes[key])
    if changes.get("is_public") is not None:
        set_public(assistant, bool(changes["is_public"]))
    db.flush()
    return assistant


def set_public(assistant: Assistant, is_public: bool) -> None:
    """Toggle visibility; the share id is assigned once and kept stable."""
    assistant.is_public = is_public
    if is_public and not assistant.public_share_id:
        assistant.public_share_id = secrets.token_urlsafe(12)


def recrawl_assistant(db: Session, assistant: Assistant, plan: str) -> Assistant:
    """Re-submit an assistant for ingestion, replacing its queue item."""
    assistant.status = assistant_transition(assistant.status, AssistantStatus.QUEUED).value
    assistant.error_message = None
    add_to_queue(db, assistant.id, plan)
    db.flush()
    return assistant


def update_assistant_status(
    db: Session,
    assistant_id: str,
    status: AssistantStatus,
    **fields,
) -> Optional[Assistant]:
    """Move an assistant to ``status`` and set extra columns.

    A missing assistant (deleted mid-job) is a silent no-op returning None.
    """
    assistant = db.get(Assistant, assistant_id)
    if assistant is None:
        logger.info("Assistant %s no longer exists; skipping status %s", assistant_id, status.value)
        return None
    assistant.status = assistant_transition(assistant.status, status).value
    for key, value in fields.items():
        setattr(assistant, key, value)
    assistant.updated_at = utcnow()
    db.flush()
    return assistant


async def delete_assistant(db: Session, assistant: Assistant) -> None:
    """Delete an assistant with its queue item, documents, messages and vectors.

    Vector cleanup is best-effort and never fails the deletion.
    """
    assistant_id = assistant.id
    remove_from_queue(db, assistant_id)
    delete_documents_by_assistant(db, assistant_id)
    db.execute(delete(Message).where(Message.assistant_id == assistant_id))
    db.delete(assistant)
    db.flush()
    await get_vector_index().delete_namespace(namespace_for(assistant_id))
    logger.info("Deleted assistant %s", assistant_id)
