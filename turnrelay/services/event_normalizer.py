"""Turn heterogeneous gateway webhook payloads into one canonical InboundEvent."""

import json
import re
from dataclasses import dataclass
from typing import Any, Callable, Optional

from pydantic import ValidationError

from turnrelay.logging_config import get_logger
from turnrelay.schemas.webhook import (
    BodyWrapper,
    EventEnvelope,
    GatewayMessage,
    InboundEvent,
    KeyedEvent,
    MessageKind,
    MessageWrapper,
)
from turnrelay.services.errors import IdentityError, ParseError

logger = get_logger("event_normalizer")

DIRECT_CHAT_JID_RE = re.compile(r"^(\d+)@(?:s\.whatsapp\.net|c\.us)$")
ANY_JID_RE = re.compile(r"(\d+@(?:s\.whatsapp\.net|c\.us|g\.us|newsletter))")

KIND_ALIASES = {
    "conversation": MessageKind.TEXT,
    "extendedtextmessage": MessageKind.TEXT,
    "text": MessageKind.TEXT,
    "audiomessage": MessageKind.AUDIO,
    "audio": MessageKind.AUDIO,
    "ptt": MessageKind.AUDIO,
    "voice": MessageKind.AUDIO,
    "imagemessage": MessageKind.IMAGE,
    "image": MessageKind.IMAGE,
    "documentmessage": MessageKind.DOCUMENT,
    "document": MessageKind.DOCUMENT,
}


@dataclass(frozen=True)
class ParsedPayload:
    event: InboundEvent
    raw: bytes


@dataclass(frozen=True)
class _Candidate:
    """A shape match before identity extraction."""

    shape: str
    message: GatewayMessage


ShapeParser = Callable[[Any], Optional[_Candidate]]


def extract_phone_from_jid(jid: Optional[str]) -> Optional[str]:
    """Return the numeric identity of a direct-chat address, None for groups/channels/garbage."""
    if not jid:
        return None
    match = DIRECT_CHAT_JID_RE.match(jid.strip())
    if not match:
        return None
    return match.group(1)


def resolve_kind(raw_type: Optional[str]) -> MessageKind:
    return KIND_ALIASES.get((raw_type or "").strip().lower(), MessageKind.TEXT)


def _parse_envelope(payload: Any) -> Optional[_Candidate]:
    envelope = EventEnvelope.model_validate(payload)
    message = envelope.body.message
    if not message.chatid:
        chat = envelope.body.chat
        fallback = chat.wa_chatid or chat.wa_lastMessageSender
        if fallback:
            message = message.model_copy(update={"chatid": fallback})
    if not message.has_identity():
        return None
    return _Candidate("envelope", message)


def _parse_body_wrapped(payload: Any) -> Optional[_Candidate]:
    message = BodyWrapper.model_validate(payload).body.message
    return _Candidate("body.message", message) if message.has_identity() else None


def _parse_message_wrapped(payload: Any) -> Optional[_Candidate]:
    message = MessageWrapper.model_validate(payload).message
    return _Candidate("message", message) if message.has_identity() else None


def _parse_bare(payload: Any) -> Optional[_Candidate]:
    message = GatewayMessage.model_validate(payload)
    return _Candidate("bare", message) if message.has_identity() else None


def _keyed_content(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        if isinstance(value.get("conversation"), str):
            return value["conversation"]
        extended = value.get("extendedTextMessage")
        if isinstance(extended, dict) and isinstance(extended.get("text"), str):
            return extended["text"]
    return None


def _parse_keyed(payload: Any) -> Optional[_Candidate]:
    keyed = KeyedEvent.model_validate(payload)
    if not keyed.key.remoteJid and not keyed.key.participant:
        return None
    message_type = keyed.messageType
    if not message_type and isinstance(keyed.message, dict) and keyed.message:
        message_type = next(iter(keyed.message))
    message = GatewayMessage(
        messageType=message_type,
        content=_keyed_content(keyed.message),
        sender=keyed.key.participant,
        senderName=keyed.pushName,
        chatid=keyed.key.remoteJid,
        messageid=keyed.key.id,
        fromMe=keyed.key.fromMe,
    )
    return _Candidate("key", message)


# Most specific first; the first shape with a chat/sender identity wins.
SHAPE_PARSERS: tuple[ShapeParser, ...] = (
    _parse_envelope,
    _parse_body_wrapped,
    _parse_message_wrapped,
    _parse_bare,
    _parse_keyed,
)


def _unwrap_array(trimmed: bytes) -> bytes:
    if not trimmed.startswith(b"["):
        return trimmed
    try:
        items = json.loads(trimmed)
    except ValueError:
        return trimmed
    if isinstance(items, list) and items:
        return json.dumps(items[0]).encode("utf-8")
    return trimmed


def _match_shape(payload: Any) -> Optional[_Candidate]:
    if not isinstance(payload, dict):
        return None
    for parser in SHAPE_PARSERS:
        try:
            candidate = parser(payload)
        except ValidationError:
            continue
        if candidate is not None:
            return candidate
    return None


def _scan_for_jid(raw: bytes) -> Optional[str]:
    match = ANY_JID_RE.search(raw.decode("utf-8", "ignore"))
    return match.group(1) if match else None


def _build_event(candidate: _Candidate) -> InboundEvent:
    message = candidate.message
    phone = extract_phone_from_jid(message.chatid) or extract_phone_from_jid(message.sender)
    if not phone:
        raise IdentityError(f"invalid chatid: {message.chatid or message.sender or ''}")

    raw_type = (message.messageType or "").strip()
    content = message.content if isinstance(message.content, str) else None
    return InboundEvent(
        sender_id=phone,
        sender_name=message.senderName or None,
        kind=resolve_kind(raw_type),
        raw_type=raw_type,
        raw_content=content,
        button_id=message.buttonOrListid or None,
        external_message_id=message.message_id(),
        chat_address=message.chatid or message.sender,
        is_echo=bool(message.fromMe or message.wasSentByApi),
    )


def parse_inbound_event(raw: bytes) -> ParsedPayload:
    """
    Parse a webhook body of unknown shape.

    Raises ParseError when nothing identity-bearing is found anywhere in the
    payload and IdentityError when the only addresses found are not direct chats.
    """
    trimmed = _unwrap_array((raw or b"").strip())

    payload: Any = None
    if trimmed:
        try:
            payload = json.loads(trimmed)
        except ValueError:
            payload = None

    candidate = _match_shape(payload)
    if candidate is None:
        raw_jid = _scan_for_jid(trimmed)
        if raw_jid:
            candidate = _Candidate("raw_scan", GatewayMessage(chatid=raw_jid))
    if candidate is None:
        raise ParseError("no chat identity found in payload")

    event = _build_event(candidate)
    logger.debug(
        "Inbound event parsed",
        extra={
            "context": {
                "shape": candidate.shape,
                "sender_id": event.sender_id,
                "kind": event.kind.value,
                "raw_type": event.raw_type,
                "is_echo": event.is_echo,
            }
        },
    )
    return ParsedPayload(event=event, raw=raw)
