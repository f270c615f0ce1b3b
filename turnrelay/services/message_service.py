from enum import Enum
from typing import Optional, Union

from sqlalchemy.orm import Session

from turnrelay.models import Message
from turnrelay.schemas.webhook import MessageKind, MessageRole


def _value(item: Union[str, Enum]) -> str:
    return item.value if isinstance(item, Enum) else str(item)


def sanitize_text(text: Optional[str]) -> str:
    """Strip the citation brackets some assistants leave behind and trim."""
    if not text:
        return ""
    return text.replace("【", "").replace("】", "").strip()


def save_message(
    db: Session,
    sender_id: int,
    *,
    role: Union[MessageRole, str],
    kind: Union[MessageKind, str],
    content: str,
    ext_id: Optional[str] = None,
) -> Message:
    """Save a history record to the database."""
    message = Message(
        sender_id=sender_id,
        role=_value(role),
        kind=_value(kind),
        content=content,
        ext_id=ext_id or None,
    )
    db.add(message)
    db.flush()
    return message
