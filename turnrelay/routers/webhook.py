import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from starlette.requests import ClientDisconnect

from turnrelay.logging_config import get_logger
from turnrelay.pipeline import Pipeline, get_pipeline
from turnrelay.schemas.webhook import MessageRole, WebhookResponse
from turnrelay.services.errors import DependencyError, IdentityError, ParseError
from turnrelay.services.event_normalizer import parse_inbound_event
from turnrelay.services.media_service import normalize_fragment

logger = get_logger("webhook")

router = APIRouter()

MAX_BODY_BYTES = 4 << 20


async def _read_body(request: Request) -> bytes:
    """Read at most MAX_BODY_BYTES; anything past the cap is dropped."""
    received = bytearray()
    async for chunk in request.stream():
        received.extend(chunk[: MAX_BODY_BYTES - len(received)])
        if len(received) >= MAX_BODY_BYTES:
            break
    return bytes(received)


async def _ingest(request: Request, pipeline: Pipeline, *, instance: Optional[str] = None) -> WebhookResponse:
    try:
        raw = await _read_body(request)
    except ClientDisconnect:
        logger.info("Webhook client disconnected during read", extra={"context": {"instance": instance}})
        return WebhookResponse(ignored="disconnected")

    try:
        event = parse_inbound_event(raw).event
    except (ParseError, IdentityError) as exc:
        logger.info(
            "Webhook payload rejected",
            extra={
                "context": {
                    "instance": instance,
                    "error": str(exc),
                    "body_preview": raw[:200].decode("utf-8", "ignore"),
                }
            },
        )
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

    if event.is_echo:
        return WebhookResponse(ignored="fromMe")

    context = {"instance": instance, "sender_id": event.sender_id, "kind": event.kind.value}

    try:
        sender = await asyncio.to_thread(pipeline.store.get_or_create_sender, event.sender_id, event.sender_name)
    except DependencyError as exc:
        logger.error("Sender lookup failed", extra={"context": {**context, "error": str(exc)}})
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=f"sender lookup failed: {exc}")

    try:
        fragment = await normalize_fragment(event, pipeline.gateway, pipeline.engine)
    except DependencyError as exc:
        logger.error("Fragment normalization failed", extra={"context": {**context, "error": str(exc)}})
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=f"media processing failed: {exc}")

    try:
        await asyncio.to_thread(
            pipeline.store.append_history,
            sender.id,
            MessageRole.USER,
            fragment.kind,
            fragment.text,
            ext_id=event.external_message_id,
        )
    except DependencyError as exc:
        logger.error("Fragment history write failed", extra={"context": {**context, "error": str(exc)}})
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=f"history write failed: {exc}")

    buffered = pipeline.buffer.append(event.sender_id, fragment.text, fragment.kind)
    logger.info("Webhook fragment accepted", extra={"context": {**context, "buffered": buffered}})
    return WebhookResponse()


@router.post("/webhook", response_model=WebhookResponse, response_model_exclude_none=True)
async def handle_webhook(request: Request, pipeline: Pipeline = Depends(get_pipeline)):
    """Inbound gateway event of any supported shape."""
    return await _ingest(request, pipeline)


@router.post("/webhook/{instance}", response_model=WebhookResponse, response_model_exclude_none=True)
async def handle_instance_webhook(instance: str, request: Request, pipeline: Pipeline = Depends(get_pipeline)):
    """Same as /webhook, with the gateway instance name kept for logging."""
    return await _ingest(request, pipeline, instance=instance)
