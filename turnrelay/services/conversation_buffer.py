"""
Per-sender debounce buffer.

Bursty messages from one sender are collected until the sender has been quiet
for a fixed window, then flushed as a single Turn to an async callback that
runs on its own task.

Every fragment bumps a per-sender generation counter and arms a fresh timer
that remembers the generation it was armed for. Cancelling the previous timer
is best-effort only: a timer that fires anyway sees a newer generation and
does nothing.
"""

import asyncio
import threading
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from turnrelay.logging_config import get_logger
from turnrelay.schemas.webhook import MessageKind

logger = get_logger("conversation_buffer")

TURN_PROMPT_HEADER = "Recent messages from the user:"


@dataclass(frozen=True)
class Turn:
    sender_id: str
    fragments: tuple[str, ...]
    last_kind: MessageKind = MessageKind.TEXT

    @property
    def text(self) -> str:
        return "\n".join(self.fragments)

    def as_prompt(self) -> str:
        """Render the fragments as a list, the form appended to the engine conversation."""
        return TURN_PROMPT_HEADER + "\n- " + "\n- ".join(self.fragments)


@dataclass
class SenderBufferState:
    fragments: list[str] = field(default_factory=list)
    last_kind: MessageKind = MessageKind.TEXT
    generation: int = 0
    timer: Optional[asyncio.TimerHandle] = None
    lock: threading.Lock = field(default_factory=threading.Lock)


FlushCallback = Callable[[Turn], Awaitable[None]]


class ConversationBuffer:
    """Debounce aggregator keyed by sender identity."""

    def __init__(self, window_seconds: float, on_flush: FlushCallback):
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.window_seconds = window_seconds
        self._on_flush = on_flush
        self._states: dict[str, SenderBufferState] = {}
        self._lock = threading.Lock()
        # Shared by all senders so a recreated state never reuses a generation.
        self._generation = 0
        self._tasks: set[asyncio.Task] = set()

    def append(self, sender_id: str, text: str, kind: MessageKind = MessageKind.TEXT) -> bool:
        """
        Buffer one fragment and (re)arm the sender's inactivity timer.

        Must be called from the event loop. Returns False when the fragment was
        dropped (blank, or equal to the previous fragment).
        """
        normalized = (text or "").strip()
        if not normalized:
            return False

        loop = asyncio.get_running_loop()

        with self._lock:
            state = self._states.get(sender_id)
            if state is None:
                state = SenderBufferState()
                self._states[sender_id] = state

            with state.lock:
                if state.fragments and state.fragments[-1] == normalized:
                    return False
                state.fragments.append(normalized)
                state.last_kind = kind
                self._generation += 1
                generation = self._generation
                state.generation = generation
                fragment_count = len(state.fragments)
                if state.timer is not None:
                    state.timer.cancel()
                state.timer = loop.call_later(self.window_seconds, self.flush_if_current, sender_id, generation)

        logger.debug(
            "Fragment buffered",
            extra={
                "context": {
                    "sender_id": sender_id,
                    "generation": generation,
                    "fragments": fragment_count,
                    "kind": kind.value,
                }
            },
        )
        return True

    def flush_if_current(self, sender_id: str, observed_generation: int) -> Optional[Turn]:
        """
        Drain the sender's buffer if observed_generation is still the live one.

        A stale generation means a newer fragment re-armed the timer; the call
        returns None without side effects. On a match the state entry is removed
        before the flush callback is spawned, so the callback may append for the
        same sender and get a fresh buffer.
        """
        with self._lock:
            state = self._states.get(sender_id)
            if state is None:
                return None
            with state.lock:
                if state.generation != observed_generation:
                    return None
                fragments = state.fragments
                last_kind = state.last_kind
                state.fragments = []
                if state.timer is not None:
                    state.timer.cancel()
                state.timer = None
            del self._states[sender_id]

        if not fragments:
            return None

        turn = Turn(sender_id=sender_id, fragments=tuple(fragments), last_kind=last_kind)
        logger.info(
            "Buffer flushed",
            extra={
                "context": {
                    "sender_id": sender_id,
                    "generation": observed_generation,
                    "fragments": len(fragments),
                    "last_kind": last_kind.value,
                }
            },
        )
        self._spawn(turn)
        return turn

    def _spawn(self, turn: Turn) -> None:
        task = asyncio.get_running_loop().create_task(self._on_flush(turn))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Flush callback failed",
                extra={"context": {"error": str(exc), "error_type": type(exc).__name__}},
            )

    def has_pending(self, sender_id: str) -> bool:
        with self._lock:
            return sender_id in self._states

    def pending_senders(self) -> list[str]:
        with self._lock:
            return list(self._states)

    async def wait_idle(self) -> None:
        """Wait for flush callbacks that are currently running."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def close(self) -> int:
        """Cancel every armed timer; returns how many buffered turns were dropped."""
        with self._lock:
            states = list(self._states.values())
            self._states.clear()
        for state in states:
            with state.lock:
                if state.timer is not None:
                    state.timer.cancel()
                    state.timer = None
        if states:
            logger.warning("Buffer closed with pending turns", extra={"context": {"dropped": len(states)}})
        return len(states)
