"""FastAPI application entrypoint and routes.

Exposes health, assistant management, crawl-queue status, chat and usage
endpoints; configures logging and CORS; initializes the database schema and the
vector index at startup and runs the crawl-queue scheduler while the app is up.

Identity is a given fact: the caller passes ``X-User-Id`` and ``X-User-Plan``
("free" or "pro") headers. No authentication is performed here.
"""
import logging
from dataclasses import dataclass
from typing import List

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from docchat import assistants as assistant_service
from docchat.chat import APOLOGY_MESSAGE, clear_messages, get_messages, send_message
from docchat.config import settings
from docchat.crawl_queue import get_queue_position
from docchat.db import get_db, init_db
from docchat.errors import (
    AssistantLimitReached,
    AssistantNotFound,
    AssistantNotReady,
    DocChatError,
    InvalidTransition,
    QuestionLimitReached,
    UrlValidationError,
    classify_error,
    error_details,
)
from docchat.obs import span
from docchat.scheduler import start_scheduler, stop_scheduler
from docchat.schemas import (
    AssistantCreate,
    AssistantCreated,
    AssistantOut,
    AssistantUpdate,
    ChatRequest,
    MessageOut,
    PublicAssistantOut,
    QueuePosition,
    UsageOut,
)
from docchat.usage import usage_summary
from docchat.vector_index import get_vector_index

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)

PLANS = ("free", "pro")

STATUS_CODES = (
    (UrlValidationError, 400),
    (AssistantNotFound, 404),
    (AssistantNotReady, 409),
    (InvalidTransition, 409),
    (AssistantLimitReached, 403),
    (QuestionLimitReached, 429),
)

app = FastAPI(title="DocChat API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_credentials=True,
    allow_headers=["*"],
)


@dataclass
class Identity:
    user_id: str
    plan: str


def current_user(
    x_user_id: str = Header(..., min_length=1),
    x_user_plan: str = Header("free"),
) -> Identity:
    """Resolve the caller from identity headers."""
    plan = x_user_plan.strip().lower()
    if plan not in PLANS:
        raise HTTPException(status_code=400, detail=f"Unknown plan: {x_user_plan}")
    return Identity(user_id=x_user_id, plan=plan)


@app.on_event("startup")
async def on_startup() -> None:
    """Create relational tables, provision the vector index and start the queue scheduler."""
    init_db()
    await get_vector_index().ensure_index()
    if settings.QUEUE_WORKER_ENABLED:
        start_scheduler()


@app.on_event("shutdown")
def on_shutdown() -> None:
    stop_scheduler()


@app.exception_handler(DocChatError)
async def docchat_error_handler(request: Request, exc: DocChatError) -> JSONResponse:
    """Map application errors to status codes with a user-facing classification."""
    status = 500
    for exc_type, code in STATUS_CODES:
        if isinstance(exc, exc_type):
            status = code
            break
    message = str(exc)
    details = error_details(message)
    if status == 500:
        logger.error("Unhandled application error on %s: %s", request.url.path, message)
    return JSONResponse(
        status_code=status,
        content={
            "detail": message,
            "error_type": classify_error(message).value,
            "title": details.title,
            "suggestions": details.suggestions,
        },
    )


@app.get("/health")
def health():
    """Liveness probe endpoint.

    Returns:
        dict: {"status": "ok"} when the service is running.
    """
    return {"status": "ok"}


@app.post("/assistants", response_model=AssistantCreated, status_code=201)
def create_assistant(
    req: AssistantCreate, user: Identity = Depends(current_user), db: Session = Depends(get_db)
) -> AssistantCreated:
    """Validate the URL, enforce plan limits, create the assistant and queue its crawl."""
    assistant, warning = assistant_service.create_assistant(
        db, user.user_id, user.plan, req.name, req.docs_url, req.description
    )
    db.commit()
    return AssistantCreated(assistant=AssistantOut.model_validate(assistant), warning=warning)


@app.get("/assistants", response_model=List[AssistantOut])
def list_assistants(user: Identity = Depends(current_user), db: Session = Depends(get_db)):
    return assistant_service.list_assistants(db, user.user_id)


@app.get("/assistants/{assistant_id}", response_model=AssistantOut)
def get_assistant(assistant_id: str, user: Identity = Depends(current_user), db: Session = Depends(get_db)):
    return assistant_service.get_assistant(db, assistant_id, user.user_id)


@app.patch("/assistants/{assistant_id}", response_model=AssistantOut)
def update_assistant(
    assistant_id: str,
    req: AssistantUpdate,
    user: Identity = Depends(current_user),
    db: Session = Depends(get_db),
):
    assistant = assistant_service.get_assistant(db, assistant_id, user.user_id)
    assistant_service.update_assistant(db, assistant, req.model_dump(exclude_unset=True))
    db.commit()
    return assistant


@app.delete("/assistants/{assistant_id}", status_code=204)
async def delete_assistant(
    assistant_id: str, user: Identity = Depends(current_user), db: Session = Depends(get_db)
) -> None:
    """Delete an assistant with its queue item, documents, messages and vectors."""
    assistant = assistant_service.get_assistant(db, assistant_id, user.user_id)
    await assistant_service.delete_assistant(db, assistant)
    db.commit()


@app.post("/assistants/{assistant_id}/recrawl", response_model=AssistantOut)
def recrawl_assistant(assistant_id: str, user: Identity = Depends(current_user), db: Session = Depends(get_db)):
    assistant = assistant_service.get_assistant(db, assistant_id, user.user_id)
    assistant_service.recrawl_assistant(db, assistant, user.plan)
    db.commit()
    return assistant


@app.get("/assistants/{assistant_id}/queue", response_model=QueuePosition)
def queue_position(assistant_id: str, user: Identity = Depends(current_user), db: Session = Depends(get_db)):
    assistant_service.get_assistant(db, assistant_id, user.user_id)
    position = get_queue_position(db, assistant_id)
    if position is None:
        raise HTTPException(status_code=404, detail="Assistant is not in the crawl queue")
    return position


@app.post("/assistants/{assistant_id}/chat", response_model=MessageOut)
async def chat(assistant_id: str, req: ChatRequest, user: Identity = Depends(current_user)):
    """Answer one question; failures after the question is stored return a generic apology."""
    with span("http.chat", {"assistant_id": assistant_id}):
        try:
            reply = await send_message(assistant_id, user.user_id, user.plan, req.message)
        except (AssistantNotFound, AssistantNotReady, QuestionLimitReached):
            raise
        except Exception:
            logger.exception("Chat failed for assistant %s", assistant_id)
            raise HTTPException(status_code=502, detail=APOLOGY_MESSAGE)
    return MessageOut.model_validate(reply)


@app.get("/assistants/{assistant_id}/messages", response_model=List[MessageOut])
def list_messages(assistant_id: str, user: Identity = Depends(current_user), db: Session = Depends(get_db)):
    assistant_service.get_assistant(db, assistant_id, user.user_id)
    return get_messages(db, assistant_id)


@app.delete("/assistants/{assistant_id}/messages", status_code=204)
def delete_messages(assistant_id: str, user: Identity = Depends(current_user), db: Session = Depends(get_db)) -> None:
    assistant_service.get_assistant(db, assistant_id, user.user_id)
    clear_messages(db, assistant_id)
    db.commit()


@app.get("/usage", response_model=UsageOut)
def usage(user: Identity = Depends(current_user), db: Session = Depends(get_db)):
    return UsageOut(plan=user.plan, **usage_summary(db, user.user_id, user.plan))


@app.get("/public/{share_id}", response_model=PublicAssistantOut)
def public_assistant(share_id: str, db: Session = Depends(get_db)):
    return assistant_service.get_public_assistant(db, share_id)
