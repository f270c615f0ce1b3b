from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum


class RunStatus(str, Enum):
    QUEUED = "queued"
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    REQUIRES_ACTION = "requires_action"
    CANCELLING = "cancelling"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"
    INCOMPLETE = "incomplete"

    @classmethod
    def parse(cls, value: str | None) -> "RunStatus":
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.PENDING

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_RUN_STATUSES


TERMINAL_RUN_STATUSES = frozenset(
    {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.EXPIRED, RunStatus.CANCELLED, RunStatus.INCOMPLETE}
)


@dataclass
class Run:
    thread_id: str
    run_id: str
    status: RunStatus = RunStatus.PENDING


class ConversationEngine(ABC):
    """Conversational-AI backend that keeps per-sender context behind an opaque handle."""

    @abstractmethod
    async def create_conversation(self) -> str:
        """Create an empty conversation and return its handle."""

    @abstractmethod
    async def append_message(self, handle: str, text: str) -> None:
        """Append a user message to the conversation."""

    @abstractmethod
    async def start_run(self, handle: str) -> str:
        """Start generating a reply; returns the run id."""

    @abstractmethod
    async def get_run_status(self, handle: str, run_id: str) -> RunStatus:
        pass

    @abstractmethod
    async def get_latest_reply(self, handle: str) -> str:
        pass

    @abstractmethod
    async def synthesize_speech(self, text: str) -> bytes:
        pass

    @abstractmethod
    async def transcribe(self, audio: bytes, filename: str = "audio.ogg") -> str:
        pass

    @abstractmethod
    async def describe_image(self, url: str) -> str:
        pass

    @abstractmethod
    async def summarize(self, text: str) -> str:
        pass
