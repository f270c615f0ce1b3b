from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy import func, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from turnrelay.logging_config import get_logger
from turnrelay.models import Message, Sender
from turnrelay.schemas.webhook import MessageKind, MessageRole
from turnrelay.services.errors import StoreError
from turnrelay.services.message_service import save_message

logger = get_logger("conversation_service")


@dataclass(frozen=True)
class SenderRecord:
    id: int
    phone: str
    name: Optional[str] = None
    thread_id: Optional[str] = None


@dataclass(frozen=True)
class HandleAssignment:
    assigned: bool
    handle: str


def get_or_create_sender(db: Session, phone: str, name: Optional[str] = None) -> SenderRecord:
    """Upsert by phone in one statement; an existing name is kept, a missing one is filled in."""
    stmt = insert(Sender).values(phone=phone, name=name)
    stmt = stmt.on_conflict_do_update(
        index_elements=[Sender.phone],
        set_={"name": func.coalesce(Sender.name, stmt.excluded.name)},
    ).returning(Sender.id, Sender.phone, Sender.name, Sender.thread_id)
    row = db.execute(stmt).one()
    return SenderRecord(id=row.id, phone=row.phone, name=row.name, thread_id=row.thread_id)


def set_conversation_handle(db: Session, sender_id: int, handle: str) -> HandleAssignment:
    """
    Bind a conversation handle to a sender, first writer wins.

    Returns assigned=False with the stored handle when another writer got there
    first; the caller must discard its own handle.
    """
    result = db.execute(
        update(Sender)
        .where(Sender.id == sender_id, Sender.thread_id.is_(None))
        .values(thread_id=handle)
    )
    if result.rowcount:
        return HandleAssignment(assigned=True, handle=handle)

    existing = db.query(Sender.thread_id).filter(Sender.id == sender_id).first()
    if existing is None:
        raise StoreError(f"sender {sender_id} not found")
    return HandleAssignment(assigned=False, handle=existing.thread_id)


class ConversationStore:
    """Persistence used by the webhook and the turn orchestrator, one short session per call."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def _run(self, label: str, operation):
        db = self.session_factory()
        try:
            value = operation(db)
            db.commit()
            return value
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error(f"Store {label} failed", extra={"context": {"error": str(exc)}})
            raise StoreError(f"{label} failed: {exc}") from exc
        finally:
            db.close()

    def get_or_create_sender(self, phone: str, name: Optional[str] = None) -> SenderRecord:
        return self._run("get_or_create_sender", lambda db: get_or_create_sender(db, phone, name))

    def set_conversation_handle(self, sender_id: int, handle: str) -> HandleAssignment:
        return self._run("set_conversation_handle", lambda db: set_conversation_handle(db, sender_id, handle))

    def append_history(
        self,
        sender_id: int,
        role: MessageRole,
        kind: MessageKind,
        content: str,
        ext_id: Optional[str] = None,
    ) -> None:
        def _save(db: Session) -> Message:
            return save_message(db, sender_id, role=role, kind=kind, content=content, ext_id=ext_id)

        self._run("append_history", _save)
