import threading
from unittest.mock import AsyncMock, call

import pytest

from turnrelay.schemas.webhook import MessageKind, MessageRole
from turnrelay.services.conversation_buffer import Turn
from turnrelay.services.conversation_service import HandleAssignment, SenderRecord
from turnrelay.services.errors import EngineError, GatewayError, StoreError
from turnrelay.services.llm.base import RunStatus
from turnrelay.services.turn_orchestrator import TurnOrchestrator

SENDER = "5511999999999"


def _orchestrator(engine, gateway, store, **overrides) -> TurnOrchestrator:
    options = {
        "poll_interval_seconds": 2.0,
        "max_poll_attempts": 10,
        "sleep_func": AsyncMock(),
    }
    options.update(overrides)
    return TurnOrchestrator(engine, gateway, store, **options)


def _turn(*fragments, last_kind=MessageKind.TEXT) -> Turn:
    return Turn(sender_id=SENDER, fragments=fragments, last_kind=last_kind)


class TestProcessTurnSuccess:
    @pytest.mark.asyncio
    async def test_text_turn_creates_conversation_and_replies(self, mock_engine, mock_gateway, mock_store):
        mock_engine.get_run_status.side_effect = [RunStatus.QUEUED, RunStatus.IN_PROGRESS, RunStatus.COMPLETED]
        turn = _turn("Hi", "are you open?")

        result = await _orchestrator(mock_engine, mock_gateway, mock_store).process_turn(turn)

        assert result.ok is True
        assert result.value == "We open at 9."
        mock_engine.create_conversation.assert_awaited_once()
        mock_store.set_conversation_handle.assert_called_once_with(1, "thread_1")
        mock_engine.append_message.assert_awaited_once_with("thread_1", turn.as_prompt())
        mock_engine.start_run.assert_awaited_once_with("thread_1")
        assert mock_engine.get_run_status.await_count == 3
        mock_gateway.send_text.assert_awaited_once_with(SENDER, "We open at 9.", delay_ms=0)
        mock_gateway.send_media.assert_not_awaited()
        assert mock_store.append_history.call_args_list == [
            call(1, MessageRole.USER, MessageKind.TEXT, turn.as_prompt()),
            call(1, MessageRole.ASSISTANT, MessageKind.TEXT, "We open at 9."),
        ]

    @pytest.mark.asyncio
    async def test_existing_handle_is_reused(self, mock_engine, mock_gateway, mock_store):
        mock_store.get_or_create_sender.return_value = SenderRecord(id=7, phone=SENDER, thread_id="thread_old")
        mock_engine.get_run_status.return_value = RunStatus.COMPLETED

        result = await _orchestrator(mock_engine, mock_gateway, mock_store).process_turn(_turn("again"))

        assert result.ok is True
        mock_engine.create_conversation.assert_not_awaited()
        mock_store.set_conversation_handle.assert_not_called()
        mock_engine.append_message.assert_awaited_once()
        assert mock_engine.append_message.await_args[0][0] == "thread_old"

    @pytest.mark.asyncio
    async def test_handle_already_set_by_another_turn(self, mock_engine, mock_gateway, mock_store):
        mock_store.set_conversation_handle.side_effect = None
        mock_store.set_conversation_handle.return_value = HandleAssignment(assigned=False, handle="thread_winner")
        mock_engine.get_run_status.return_value = RunStatus.COMPLETED

        result = await _orchestrator(mock_engine, mock_gateway, mock_store).process_turn(_turn("hi"))

        assert result.ok is True
        mock_engine.start_run.assert_awaited_once_with("thread_winner")

    @pytest.mark.asyncio
    async def test_audio_turn_replies_with_speech(self, mock_engine, mock_gateway, mock_store):
        mock_engine.get_run_status.return_value = RunStatus.COMPLETED

        result = await _orchestrator(mock_engine, mock_gateway, mock_store, reply_delay_ms=1500).process_turn(
            _turn("hello from audio", last_kind=MessageKind.AUDIO)
        )

        assert result.ok is True
        mock_engine.synthesize_speech.assert_awaited_once_with("We open at 9.")
        mock_gateway.send_media.assert_awaited_once_with(SENDER, "audio", b"mp3-bytes", delay_ms=1500)
        mock_gateway.send_text.assert_not_awaited()
        assert mock_store.append_history.call_args_list[-1] == call(
            1, MessageRole.ASSISTANT, MessageKind.AUDIO, "We open at 9."
        )

    @pytest.mark.asyncio
    async def test_poll_sleeps_between_status_checks(self, mock_engine, mock_gateway, mock_store):
        mock_engine.get_run_status.side_effect = [RunStatus.IN_PROGRESS, RunStatus.COMPLETED]
        sleep = AsyncMock()

        await _orchestrator(mock_engine, mock_gateway, mock_store, sleep_func=sleep).process_turn(_turn("hi"))

        assert sleep.await_args_list == [call(2.0), call(2.0)]


class TestProcessTurnFailures:
    @pytest.mark.asyncio
    async def test_run_pending_for_whole_budget(self, mock_engine, mock_gateway, mock_store):
        mock_engine.get_run_status.return_value = RunStatus.IN_PROGRESS

        result = await _orchestrator(mock_engine, mock_gateway, mock_store).process_turn(_turn("hi"))

        assert result.ok is False
        assert result.error_code == "run_timeout"
        assert mock_engine.get_run_status.await_count == 10
        mock_engine.get_latest_reply.assert_not_awaited()
        mock_gateway.send_text.assert_not_awaited()
        roles = [args[0][1] for args in mock_store.append_history.call_args_list]
        assert MessageRole.ASSISTANT not in roles

    @pytest.mark.asyncio
    async def test_failed_run_is_not_dispatched(self, mock_engine, mock_gateway, mock_store):
        mock_engine.get_run_status.return_value = RunStatus.FAILED

        result = await _orchestrator(mock_engine, mock_gateway, mock_store).process_turn(_turn("hi"))

        assert result.ok is False
        assert result.error_code == "run_failed"
        assert mock_engine.get_run_status.await_count == 1
        mock_gateway.send_text.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_sender_lookup_failure_aborts(self, mock_engine, mock_gateway, mock_store):
        mock_store.get_or_create_sender.side_effect = StoreError("db down")

        result = await _orchestrator(mock_engine, mock_gateway, mock_store).process_turn(_turn("hi"))

        assert result.error_code == "store_error"
        mock_engine.create_conversation.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_handle_write_failure_aborts(self, mock_engine, mock_gateway, mock_store):
        mock_store.set_conversation_handle.side_effect = StoreError("db down")

        result = await _orchestrator(mock_engine, mock_gateway, mock_store).process_turn(_turn("hi"))

        assert result.error_code == "store_error"
        mock_engine.append_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_append_failure_records_nothing(self, mock_engine, mock_gateway, mock_store):
        mock_engine.append_message.side_effect = EngineError("append failed", status_code=500)

        result = await _orchestrator(mock_engine, mock_gateway, mock_store).process_turn(_turn("hi"))

        assert result.error_code == "engine_error"
        mock_store.append_history.assert_not_called()
        mock_engine.start_run.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_status_error_aborts(self, mock_engine, mock_gateway, mock_store):
        mock_engine.get_run_status.side_effect = EngineError("status failed")

        result = await _orchestrator(mock_engine, mock_gateway, mock_store).process_turn(_turn("hi"))

        assert result.error_code == "engine_error"
        mock_gateway.send_text.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_empty_reply_is_an_error(self, mock_engine, mock_gateway, mock_store):
        mock_engine.get_run_status.return_value = RunStatus.COMPLETED
        mock_engine.get_latest_reply.return_value = "  【】 "

        result = await _orchestrator(mock_engine, mock_gateway, mock_store).process_turn(_turn("hi"))

        assert result.error_code == "engine_error"
        mock_gateway.send_text.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_dispatch_failure_skips_assistant_record(self, mock_engine, mock_gateway, mock_store):
        mock_engine.get_run_status.return_value = RunStatus.COMPLETED
        mock_gateway.send_text.side_effect = GatewayError("all routes failed", route="x", status_code=404)

        result = await _orchestrator(mock_engine, mock_gateway, mock_store).process_turn(_turn("hi"))

        assert result.error_code == "gateway_error"
        roles = [args[0][1] for args in mock_store.append_history.call_args_list]
        assert roles == [MessageRole.USER]

    @pytest.mark.asyncio
    async def test_history_write_failure_does_not_abort(self, mock_engine, mock_gateway, mock_store):
        mock_engine.get_run_status.return_value = RunStatus.COMPLETED
        mock_store.append_history.side_effect = StoreError("db down")

        result = await _orchestrator(mock_engine, mock_gateway, mock_store).process_turn(_turn("hi"))

        assert result.ok is True
        mock_gateway.send_text.assert_awaited_once()


class TestHandleTurn:
    @pytest.mark.asyncio
    async def test_failures_are_silent_by_default(self, mock_engine, mock_gateway, mock_store):
        mock_engine.get_run_status.return_value = RunStatus.FAILED

        await _orchestrator(mock_engine, mock_gateway, mock_store).handle_turn(_turn("hi"))

        mock_gateway.send_text.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failure_notice_when_enabled(self, mock_engine, mock_gateway, mock_store):
        mock_engine.get_run_status.return_value = RunStatus.FAILED
        orchestrator = _orchestrator(
            mock_engine,
            mock_gateway,
            mock_store,
            notify_sender_on_failure=True,
            failure_notice_text="Try again later.",
        )

        await orchestrator.handle_turn(_turn("hi"))

        mock_gateway.send_text.assert_awaited_once_with(SENDER, "Try again later.")

    @pytest.mark.asyncio
    async def test_unexpected_errors_never_escape(self, mock_engine, mock_gateway, mock_store):
        mock_engine.start_run.side_effect = RuntimeError("bug")
        mock_gateway.send_text.side_effect = GatewayError("down")
        orchestrator = _orchestrator(
            mock_engine,
            mock_gateway,
            mock_store,
            notify_sender_on_failure=True,
            failure_notice_text="Try again later.",
        )

        await orchestrator.handle_turn(_turn("hi"))

        mock_gateway.send_text.assert_awaited_once()


class TestStoreThreading:
    @pytest.mark.asyncio
    async def test_store_calls_run_off_the_event_loop(self, mock_engine, mock_gateway, mock_store):
        mock_engine.get_run_status.return_value = RunStatus.COMPLETED
        loop_thread = threading.get_ident()
        seen = []
        mock_store.append_history.side_effect = lambda *args, **kwargs: seen.append(threading.get_ident())

        result = await _orchestrator(mock_engine, mock_gateway, mock_store).process_turn(_turn("hi"))

        assert result.ok
        assert len(seen) == 2
        assert loop_thread not in seen
