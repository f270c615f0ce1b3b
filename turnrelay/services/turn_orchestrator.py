"""
Detached processing of one flushed Turn.

Sender lookup, conversation handle, engine run and polling, reply dispatch and
history recording. Every failure ends the turn with a logged error code; no
exception leaves handle_turn.
"""

import asyncio
from typing import Awaitable, Callable

from turnrelay.logging_config import LoggerAdapter, get_logger
from turnrelay.schemas.webhook import MessageKind, MessageRole
from turnrelay.services.conversation_buffer import Turn
from turnrelay.services.conversation_service import ConversationStore, SenderRecord
from turnrelay.services.errors import EngineError, GatewayError, RunTimeoutError, StoreError
from turnrelay.services.gateway_client import GatewayClient
from turnrelay.services.llm.base import ConversationEngine, Run, RunStatus
from turnrelay.services.message_service import sanitize_text
from turnrelay.services.result import Result, TurnErrorCode

logger = get_logger("turn_orchestrator")

TURN_PREVIEW_CHARS = 120


class TurnOrchestrator:
    def __init__(
        self,
        engine: ConversationEngine,
        gateway: GatewayClient,
        store: ConversationStore,
        *,
        poll_interval_seconds: float = 2.0,
        max_poll_attempts: int = 10,
        reply_delay_ms: int = 0,
        notify_sender_on_failure: bool = False,
        failure_notice_text: str = "",
        sleep_func: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.engine = engine
        self.gateway = gateway
        self.store = store
        self.poll_interval_seconds = poll_interval_seconds
        self.max_poll_attempts = max_poll_attempts
        self.reply_delay_ms = reply_delay_ms
        self.notify_sender_on_failure = notify_sender_on_failure
        self.failure_notice_text = failure_notice_text
        self._sleep = sleep_func

    async def handle_turn(self, turn: Turn) -> None:
        """Flush callback for the buffer; never raises."""
        try:
            result = await self.process_turn(turn)
        except Exception as exc:
            logger.exception(
                "Unexpected turn failure",
                extra={"context": {"sender_id": turn.sender_id, "error": str(exc)}},
            )
            result = Result.failure(str(exc), "unexpected")

        if not result.ok and self.notify_sender_on_failure and self.failure_notice_text:
            await self._notify_failure(turn.sender_id)

    async def process_turn(self, turn: Turn) -> Result[str]:
        log = LoggerAdapter(logger, {"sender_id": turn.sender_id, "fragments": len(turn.fragments)})
        log.info("Turn started", extra={"context": {"preview": turn.text[:TURN_PREVIEW_CHARS]}})

        try:
            sender = await asyncio.to_thread(self.store.get_or_create_sender, turn.sender_id)
        except StoreError as exc:
            return self._fail(log, TurnErrorCode.STORE_ERROR, f"sender lookup failed: {exc}")

        try:
            handle = await self._conversation_handle(sender, log)
        except StoreError as exc:
            return self._fail(log, TurnErrorCode.STORE_ERROR, f"handle write failed: {exc}")
        except EngineError as exc:
            return self._fail(log, TurnErrorCode.ENGINE_ERROR, f"create conversation failed: {exc}")

        prompt = turn.as_prompt()
        try:
            await self.engine.append_message(handle, prompt)
        except EngineError as exc:
            return self._fail(log, TurnErrorCode.ENGINE_ERROR, f"append message failed: {exc}")
        await self._record(sender.id, MessageRole.USER, MessageKind.TEXT, prompt, log)

        try:
            run = Run(thread_id=handle, run_id=await self.engine.start_run(handle))
        except EngineError as exc:
            return self._fail(log, TurnErrorCode.ENGINE_ERROR, f"start run failed: {exc}")

        try:
            await self._wait_for_run(run)
        except EngineError as exc:
            return self._fail(log, TurnErrorCode.ENGINE_ERROR, f"run status failed: {exc}")
        except RunTimeoutError as exc:
            return self._fail(log, TurnErrorCode.RUN_TIMEOUT, str(exc))

        if run.status != RunStatus.COMPLETED:
            return self._fail(log, TurnErrorCode.RUN_FAILED, f"run {run.run_id} ended with status {run.status.value}")

        try:
            reply = sanitize_text(await self.engine.get_latest_reply(handle))
        except EngineError as exc:
            return self._fail(log, TurnErrorCode.ENGINE_ERROR, f"read reply failed: {exc}")
        if not reply:
            return self._fail(log, TurnErrorCode.ENGINE_ERROR, "engine returned an empty reply")

        reply_kind = MessageKind.AUDIO if turn.last_kind == MessageKind.AUDIO else MessageKind.TEXT
        try:
            await self._dispatch(turn.sender_id, reply, reply_kind)
        except GatewayError as exc:
            return self._fail(log, TurnErrorCode.GATEWAY_ERROR, f"dispatch failed: {exc}")
        except EngineError as exc:
            return self._fail(log, TurnErrorCode.ENGINE_ERROR, f"speech synthesis failed: {exc}")

        await self._record(sender.id, MessageRole.ASSISTANT, reply_kind, reply, log)
        log.info("Turn completed", extra={"context": {"run_id": run.run_id, "reply_kind": reply_kind.value}})
        return Result.success(reply)

    async def _conversation_handle(self, sender: SenderRecord, log: LoggerAdapter) -> str:
        if sender.thread_id:
            return sender.thread_id

        handle = await self.engine.create_conversation()
        assignment = await asyncio.to_thread(self.store.set_conversation_handle, sender.id, handle)
        if not assignment.assigned:
            log.info(
                "Conversation handle already set by another turn",
                extra={"context": {"discarded": handle, "handle": assignment.handle}},
            )
        return assignment.handle

    async def _wait_for_run(self, run: Run) -> None:
        for _ in range(self.max_poll_attempts):
            await self._sleep(self.poll_interval_seconds)
            run.status = await self.engine.get_run_status(run.thread_id, run.run_id)
            if run.status.is_terminal:
                return
        raise RunTimeoutError(run.run_id, self.max_poll_attempts, run.status.value)

    async def _dispatch(self, to: str, reply: str, kind: MessageKind) -> None:
        if kind == MessageKind.AUDIO:
            audio = await self.engine.synthesize_speech(reply)
            await self.gateway.send_media(to, MessageKind.AUDIO.value, audio, delay_ms=self.reply_delay_ms)
        else:
            await self.gateway.send_text(to, reply, delay_ms=self.reply_delay_ms)

    async def _record(
        self, sender_id: int, role: MessageRole, kind: MessageKind, content: str, log: LoggerAdapter
    ) -> None:
        # History is informational; a failed write does not undo an accepted turn.
        try:
            await asyncio.to_thread(self.store.append_history, sender_id, role, kind, content)
        except StoreError as exc:
            log.warning("History record failed", extra={"context": {"role": role.value, "error": str(exc)}})

    @staticmethod
    def _fail(log: LoggerAdapter, code: TurnErrorCode, error: str) -> Result[str]:
        log.error("Turn failed", extra={"context": {"error_code": code.value, "error": error}})
        return Result.failure(error, code)

    async def _notify_failure(self, to: str) -> None:
        try:
            await self.gateway.send_text(to, self.failure_notice_text)
        except GatewayError as exc:
            logger.warning(
                "Failure notice not delivered",
                extra={"context": {"sender_id": to, "error": str(exc)}},
            )
