"""Reduce every inbound modality to a text fragment the buffer can hold."""

from dataclasses import dataclass
from io import BytesIO

from pypdf import PdfReader
from pypdf.errors import PdfReadError

from turnrelay.logging_config import get_logger
from turnrelay.schemas.webhook import InboundEvent, MessageKind
from turnrelay.services.errors import DependencyError, EngineError
from turnrelay.services.event_normalizer import KIND_ALIASES
from turnrelay.services.gateway_client import GatewayClient
from turnrelay.services.llm.base import ConversationEngine
from turnrelay.services.message_service import sanitize_text

logger = get_logger("media_service")

EMPTY_MESSAGE_PLACEHOLDER = "(empty message)"
UNREADABLE_DOCUMENT_PLACEHOLDER = "(could not extract text from the document)"
IMAGE_PREFIX = "Image description: "
DOCUMENT_PREFIX = "Document summary: "
SUMMARY_FALLBACK_CHARS = 4000


@dataclass(frozen=True)
class Fragment:
    text: str
    kind: MessageKind


def extract_pdf_text(data: bytes) -> str:
    """Concatenate the text layer of every page; raises PdfReadError on unreadable input."""
    if not data:
        raise PdfReadError("empty document")
    reader = PdfReader(BytesIO(data))
    return "\n".join(page.extract_text() or "" for page in reader.pages).strip()


def _text_fragment(event: InboundEvent) -> Fragment:
    text = sanitize_text(event.raw_content) or sanitize_text(event.button_id)
    if text:
        return Fragment(text, MessageKind.TEXT)

    raw_type = event.raw_type.strip()
    if raw_type and raw_type.lower() not in KIND_ALIASES:
        return Fragment(f"(unsupported message: {raw_type})", MessageKind.TEXT)
    return Fragment(EMPTY_MESSAGE_PLACEHOLDER, MessageKind.TEXT)


async def _audio_fragment(event: InboundEvent, gateway: GatewayClient, engine: ConversationEngine) -> Fragment:
    media = await gateway.fetch_media(event.external_message_id)
    transcript = await engine.transcribe(media.content, "audio.ogg")
    return Fragment(sanitize_text(transcript) or EMPTY_MESSAGE_PLACEHOLDER, MessageKind.AUDIO)


async def _image_fragment(event: InboundEvent, gateway: GatewayClient, engine: ConversationEngine) -> Fragment:
    url = await gateway.resolve_media_url(event.external_message_id)
    description = await engine.describe_image(url)
    return Fragment(IMAGE_PREFIX + sanitize_text(description), MessageKind.IMAGE)


async def _document_fragment(event: InboundEvent, gateway: GatewayClient, engine: ConversationEngine) -> Fragment:
    media = await gateway.fetch_media(event.external_message_id)
    try:
        text = extract_pdf_text(media.content)
    except (PdfReadError, ValueError) as exc:
        logger.warning(
            "Document text extraction failed",
            extra={"context": {"sender_id": event.sender_id, "error": str(exc)}},
        )
        text = ""
    if not text:
        return Fragment(UNREADABLE_DOCUMENT_PLACEHOLDER, MessageKind.DOCUMENT)

    try:
        summary = sanitize_text(await engine.summarize(text))
    except EngineError as exc:
        logger.warning(
            "Document summary failed, using extracted text",
            extra={"context": {"sender_id": event.sender_id, "error": str(exc)}},
        )
        return Fragment(text[:SUMMARY_FALLBACK_CHARS], MessageKind.DOCUMENT)
    if not summary:
        return Fragment(text[:SUMMARY_FALLBACK_CHARS], MessageKind.DOCUMENT)
    return Fragment(DOCUMENT_PREFIX + summary, MessageKind.DOCUMENT)


_MEDIA_HANDLERS = {
    MessageKind.AUDIO: _audio_fragment,
    MessageKind.IMAGE: _image_fragment,
    MessageKind.DOCUMENT: _document_fragment,
}


async def normalize_fragment(event: InboundEvent, gateway: GatewayClient, engine: ConversationEngine) -> Fragment:
    """
    Turn one inbound event into buffered text.

    Media kinds need the gateway message id to download or resolve the
    attachment; gateway and engine failures propagate as DependencyError.
    """
    handler = _MEDIA_HANDLERS.get(event.kind)
    if handler is None:
        return _text_fragment(event)

    if not event.external_message_id:
        raise DependencyError(f"missing message id for {event.kind.value} message")

    fragment = await handler(event, gateway, engine)
    logger.info(
        "Media fragment normalized",
        extra={
            "context": {
                "sender_id": event.sender_id,
                "kind": fragment.kind.value,
                "chars": len(fragment.text),
            }
        },
    )
    return fragment
