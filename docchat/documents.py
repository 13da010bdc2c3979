"""Full-content document store.

Documents hold the complete cleaned page text; the vector index only carries a
preview plus the document id. Functions take a Session and leave committing to
the caller.
"""
from typing import Dict, Iterable, List

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from docchat.models import Document


def create_documents(db: Session, assistant_id: str, pages: Iterable[Dict]) -> List[Document]:
    """Insert one Document per crawled page and flush so ids are assigned."""
    docs = [
        Document(
            assistant_id=assistant_id,
            source_url=p["url"],
            title=(p.get("title") or "Untitled")[:512],
            content=p["content"],
        )
        for p in pages
    ]
    db.add_all(docs)
    db.flush()
    return docs


def get_documents_by_ids(db: Session, ids: Iterable[str]) -> Dict[str, Document]:
    ids = list(set(ids))
    if not ids:
        return {}
    rows = db.execute(select(Document).where(Document.id.in_(ids))).scalars().all()
    return {d.id: d for d in rows}


def get_documents(db: Session, assistant_id: str) -> List[Document]:
    stmt = select(Document).where(Document.assistant_id == assistant_id).order_by(Document.created_at)
    return list(db.execute(stmt).scalars().all())


def delete_documents_by_assistant(db: Session, assistant_id: str, keep: Iterable[str] = ()) -> int:
    """Delete an assistant's Documents, except the ids in ``keep``."""
    stmt = delete(Document).where(Document.assistant_id == assistant_id)
    keep = list(keep)
    if keep:
        stmt = stmt.where(Document.id.notin_(keep))
    result = db.execute(stmt)
    return result.rowcount or 0
