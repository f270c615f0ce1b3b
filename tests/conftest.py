from unittest.mock import AsyncMock, Mock

import pytest

from turnrelay.schemas.webhook import InboundEvent, MessageKind
from turnrelay.services.conversation_service import HandleAssignment, SenderRecord
from turnrelay.services.gateway_client import MediaDownload


@pytest.fixture
def db_session():
    """Mock database session."""
    return Mock()


@pytest.fixture
def mock_store():
    store = Mock()
    store.get_or_create_sender.return_value = SenderRecord(id=1, phone="5511999999999", name="Ana", thread_id=None)
    store.set_conversation_handle.side_effect = lambda sender_id, handle: HandleAssignment(assigned=True, handle=handle)
    store.append_history.return_value = None
    return store


@pytest.fixture
def mock_engine():
    engine = Mock()
    engine.create_conversation = AsyncMock(return_value="thread_1")
    engine.append_message = AsyncMock(return_value=None)
    engine.start_run = AsyncMock(return_value="run_1")
    engine.get_run_status = AsyncMock()
    engine.get_latest_reply = AsyncMock(return_value="We open at 9.")
    engine.synthesize_speech = AsyncMock(return_value=b"mp3-bytes")
    engine.transcribe = AsyncMock(return_value="hello from audio")
    engine.describe_image = AsyncMock(return_value="a red bicycle")
    engine.summarize = AsyncMock(return_value="a short summary")
    return engine


@pytest.fixture
def mock_gateway():
    gateway = Mock()
    gateway.send_text = AsyncMock(return_value="https://gw.example.com/send/text")
    gateway.send_media = AsyncMock(return_value="https://gw.example.com/send/media")
    gateway.resolve_media_url = AsyncMock(return_value="https://files.example.com/abc.jpg")
    gateway.fetch_media = AsyncMock(
        return_value=MediaDownload(content=b"media-bytes", url="https://files.example.com/abc.ogg")
    )
    return gateway


@pytest.fixture
def make_event():
    def _make(kind=MessageKind.TEXT, **overrides):
        fields = {
            "sender_id": "5511999999999",
            "sender_name": "Ana",
            "kind": kind,
            "raw_type": kind.value,
            "raw_content": None,
            "external_message_id": "MSG1",
            "chat_address": "5511999999999@s.whatsapp.net",
        }
        fields.update(overrides)
        return InboundEvent(**fields)

    return _make
