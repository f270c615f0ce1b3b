"""Wiring of the ingestion pipeline: store, engine, gateway, orchestrator and buffer."""

from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import HTTPException, Request, status
from sqlalchemy.orm import Session

from turnrelay.config import Settings
from turnrelay.database import SessionLocal
from turnrelay.services.conversation_buffer import ConversationBuffer
from turnrelay.services.conversation_service import ConversationStore
from turnrelay.services.gateway_client import GatewayClient
from turnrelay.services.llm import ConversationEngine, OpenAIAssistantEngine
from turnrelay.services.turn_orchestrator import TurnOrchestrator


@dataclass
class Pipeline:
    store: ConversationStore
    engine: ConversationEngine
    gateway: GatewayClient
    orchestrator: TurnOrchestrator
    buffer: ConversationBuffer


def build_gateway(settings: Settings) -> GatewayClient:
    return GatewayClient(
        settings.gateway_base_send,
        settings.gateway_token_send,
        settings.gateway_base_download,
        settings.gateway_token_download,
        timeout_seconds=settings.gateway_timeout_seconds,
        max_retries=settings.gateway_max_retries,
        backoff_seconds=settings.gateway_backoff_seconds,
        minimal_payload=settings.gateway_minimal_payload,
        delay_as_string=settings.gateway_delay_as_string,
        min_visible_delay_ms=settings.gateway_min_visible_delay_ms,
        typing_pulses=settings.gateway_typing_pulses,
        wait_pulse_ms=settings.gateway_wait_pulse_ms,
        text_paths=settings.gateway_text_paths,
        media_paths=settings.gateway_media_paths,
    )


def build_engine(settings: Settings) -> OpenAIAssistantEngine:
    return OpenAIAssistantEngine(
        settings.openai_api_key,
        settings.openai_assistant_id,
        chat_model=settings.openai_chat_model,
        transcribe_model=settings.openai_transcribe_model,
        tts_model=settings.tts_model,
        tts_voice=settings.tts_voice,
        tts_speed=settings.tts_speed,
        base_url=settings.openai_base_url,
        timeout_seconds=settings.openai_timeout_seconds,
    )


def build_pipeline(
    settings: Settings,
    session_factory: Callable[[], Session] = SessionLocal,
    engine: Optional[ConversationEngine] = None,
    gateway: Optional[GatewayClient] = None,
) -> Pipeline:
    """Assemble the pipeline; raises ValueError when required credentials are missing."""
    if engine is None or gateway is None:
        missing = settings.missing_credentials()
        if missing:
            raise ValueError(f"missing settings: {', '.join(missing)}")

    store = ConversationStore(session_factory)
    engine = engine or build_engine(settings)
    gateway = gateway or build_gateway(settings)
    orchestrator = TurnOrchestrator(
        engine,
        gateway,
        store,
        poll_interval_seconds=settings.run_poll_interval_seconds,
        max_poll_attempts=settings.run_poll_max_attempts,
        reply_delay_ms=settings.reply_delay_ms,
        notify_sender_on_failure=settings.notify_sender_on_failure,
        failure_notice_text=settings.failure_notice_text,
    )
    buffer = ConversationBuffer(settings.buffer_timeout_seconds, orchestrator.handle_turn)
    return Pipeline(store=store, engine=engine, gateway=gateway, orchestrator=orchestrator, buffer=buffer)


def get_pipeline(request: Request) -> Pipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Pipeline not configured")
    return pipeline
