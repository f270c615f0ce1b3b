"""Outbound client for the WhatsApp gateway (send text/media, download media)."""

import asyncio
import base64
import functools
import json
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Sequence

import httpx

from turnrelay.logging_config import get_logger
from turnrelay.services.errors import GatewayError

logger = get_logger("gateway_client")

DEFAULT_TEXT_PATHS = (
    "/send/text",
    "/api/send/text",
    "/send-text",
    "/api/send-text",
    "/message/text",
    "/api/message/text",
    "/messages/text",
    "/api/messages/text",
)
DEFAULT_MEDIA_PATHS = (
    "/send/media",
    "/api/send/media",
    "/send-media",
    "/api/send-media",
    "/message/media",
    "/api/message/media",
    "/messages/media",
    "/api/messages/media",
)
WAIT_PATHS = ("/wait", "/send/wait")
DOWNLOAD_PATH = "/message/download"

TRANSIENT_ERROR_MARKERS = (
    "connection reset",
    "connection refused",
    "broken pipe",
    "unexpected eof",
)
# Text sent right after typing pulses keeps a short delay so the two do not add up.
POST_PULSE_DELAY_MS = 300
PULSE_GAP_SECONDS = 0.1


def best_effort(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[None]]:
    """Mark an auxiliary gateway call whose failure must never reach the caller."""

    @functools.wraps(func)
    async def wrapper(*args, **kwargs) -> None:
        try:
            await func(*args, **kwargs)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(
                "Best-effort gateway call failed",
                extra={"context": {"call": func.__name__, "error": str(exc)}},
            )

    return wrapper


def is_transient_error(exc: Exception) -> bool:
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in TRANSIENT_ERROR_MARKERS)


def join_url(base: str, path: str) -> str:
    base = (base or "").rstrip("/")
    if not path.startswith("/"):
        path = "/" + path
    if base.endswith("/api") and path.startswith("/api/"):
        path = path[len("/api"):]
    return base + path


def only_digits(value: str) -> str:
    return re.sub(r"\D", "", value or "")


def make_chat_id(jid_or_number: str) -> tuple[str, str]:
    """Return (number, chat_id) for either a bare number or a full JID."""
    if "@" in (jid_or_number or ""):
        return only_digits(jid_or_number.split("@", 1)[0]), jid_or_number
    number = only_digits(jid_or_number)
    return number, f"{number}@s.whatsapp.net"


@dataclass(frozen=True)
class GatewayResponse:
    status_code: int
    body: bytes

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", "replace")


@dataclass(frozen=True)
class MediaDownload:
    content: bytes
    url: str


class GatewayClient:
    """
    Client for the messaging gateway.

    Gateway deployments disagree on route names and field names, so every send
    walks a list of candidate routes until one answers 2xx. Each route gets its
    own retries for transient network errors and 5xx; a 4xx moves on to the next
    route immediately.
    """

    def __init__(
        self,
        base_send: str,
        token_send: str,
        base_download: Optional[str] = None,
        token_download: Optional[str] = None,
        *,
        timeout_seconds: float = 30.0,
        max_retries: int = 3,
        backoff_seconds: float = 0.25,
        minimal_payload: bool = True,
        delay_as_string: bool = False,
        min_visible_delay_ms: int = 1000,
        typing_pulses: bool = False,
        wait_pulse_ms: int = 5500,
        text_paths: Optional[Sequence[str]] = None,
        media_paths: Optional[Sequence[str]] = None,
        sleep_func: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.base_send = (base_send or "").rstrip("/")
        self.token_send = token_send
        self.base_download = (base_download or base_send or "").rstrip("/")
        self.token_download = token_download or token_send
        self.timeout_seconds = timeout_seconds
        self.max_retries = max(0, max_retries)
        self.backoff_seconds = backoff_seconds
        self.minimal_payload = minimal_payload
        self.delay_as_string = delay_as_string
        self.min_visible_delay_ms = min_visible_delay_ms
        self.typing_pulses = typing_pulses
        self.wait_pulse_ms = wait_pulse_ms if wait_pulse_ms > 0 else 5500
        self.text_paths = tuple(text_paths) if text_paths else DEFAULT_TEXT_PATHS
        self.media_paths = tuple(media_paths) if media_paths else DEFAULT_MEDIA_PATHS
        self._sleep = sleep_func

    # ----------------- transport -----------------

    def _headers(self, token: str) -> dict[str, str]:
        return {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "token": token,
            "convert": "true",
        }

    async def _post_json_once(self, url: str, token: str, body: dict) -> GatewayResponse:
        logger.debug(f"Gateway POST {url}")
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            response = await client.post(url, headers=self._headers(token), json=body)
        return GatewayResponse(status_code=response.status_code, body=response.content)

    async def _get_once(self, url: str) -> GatewayResponse:
        async with httpx.AsyncClient(timeout=self.timeout_seconds, follow_redirects=True) as client:
            response = await client.get(url)
        return GatewayResponse(status_code=response.status_code, body=response.content)

    async def _with_retry(self, url: str, request: Callable[[], Awaitable[GatewayResponse]]) -> GatewayResponse:
        """
        Run one request with linear backoff.

        Transient network errors and 5xx are retried up to max_retries times.
        Anything else (2xx, 4xx) is returned as is; non-transient errors raise.
        """
        attempt = 1
        while True:
            try:
                response = await request()
            except httpx.HTTPError as exc:
                if attempt <= self.max_retries and is_transient_error(exc):
                    logger.info(
                        "Gateway transient error, retrying",
                        extra={"context": {"url": url, "attempt": attempt, "error": str(exc)}},
                    )
                    await self._sleep(self.backoff_seconds * attempt)
                    attempt += 1
                    continue
                raise
            if response.ok:
                return response
            if 500 <= response.status_code <= 599 and attempt <= self.max_retries:
                logger.info(
                    "Gateway 5xx, retrying",
                    extra={"context": {"url": url, "attempt": attempt, "status": response.status_code}},
                )
                await self._sleep(self.backoff_seconds * attempt)
                attempt += 1
                continue
            return response

    async def _post_with_retry(self, url: str, token: str, body: dict) -> GatewayResponse:
        return await self._with_retry(url, lambda: self._post_json_once(url, token, body))

    async def _post_first_success(self, operation: str, paths: Sequence[str], body: dict) -> str:
        """Try each candidate route in order; return the route that answered 2xx."""
        last_route: Optional[str] = None
        last_status: Optional[int] = None
        last_body: Optional[str] = None
        last_error: Optional[Exception] = None

        for path in paths:
            url = join_url(self.base_send, path)
            last_route = url
            try:
                response = await self._post_with_retry(url, self.token_send, body)
            except httpx.HTTPError as exc:
                last_status, last_body, last_error = None, None, exc
                logger.warning(
                    f"Gateway {operation} route failed",
                    extra={"context": {"url": url, "error": str(exc)}},
                )
                continue
            if response.ok:
                logger.info(
                    f"Gateway {operation} delivered",
                    extra={"context": {"url": url, "status": response.status_code}},
                )
                return url
            last_status, last_body, last_error = response.status_code, response.text[:500], None
            logger.info(
                f"Gateway {operation} route rejected",
                extra={"context": {"url": url, "status": response.status_code, "body": last_body[:200]}},
            )

        if last_error is not None:
            raise GatewayError(
                f"gateway {operation} failed on {last_route}: {last_error}",
                route=last_route,
            ) from last_error
        raise GatewayError(
            f"gateway {operation} {last_status}: {last_body}",
            route=last_route,
            status_code=last_status,
            body=last_body,
        )

    # ----------------- payloads -----------------

    def _visible_delay(self, delay_ms: int) -> int:
        if delay_ms <= 0:
            return 0
        return max(delay_ms, self.min_visible_delay_ms)

    def _send_delay(self, delay_ms: int) -> int:
        # With pulses on, the typing indicator already covered the visible delay.
        if self.typing_pulses:
            return max(delay_ms, 0)
        return self._visible_delay(delay_ms)

    def _delay_value(self, delay_ms: int):
        return str(delay_ms) if self.delay_as_string else delay_ms

    def _apply_delay(self, body: dict, delay_ms: int) -> None:
        if delay_ms <= 0:
            return
        body["delay"] = self._delay_value(delay_ms)
        if self.minimal_payload:
            return
        body["typing"] = True
        body["typingTime"] = delay_ms
        body["typing_time"] = delay_ms
        body["showTyping"] = True

    def build_text_payload(self, to: str, text: str, delay_ms: int = 0) -> dict:
        number, chat_id = make_chat_id(to)
        body: dict[str, Any] = {"number": number, "text": text}
        if not self.minimal_payload:
            body.update({"chatId": chat_id, "chatid": chat_id, "readchat": True, "linkPreview": False})
        self._apply_delay(body, self._send_delay(delay_ms))
        return body

    def build_media_payload(self, to: str, kind: str, data: bytes, delay_ms: int = 0) -> dict:
        number, _ = make_chat_id(to)
        body: dict[str, Any] = {
            "number": number,
            "type": kind,
            "file": base64.b64encode(data).decode("ascii"),
        }
        if not self.minimal_payload:
            body.update({"readchat": True, "linkPreview": False})
        self._apply_delay(body, self._send_delay(delay_ms))
        return body

    # ----------------- sending -----------------

    async def send_text(self, to: str, text: str, *, delay_ms: int = 0) -> str:
        """Send a text message; returns the route that accepted it."""
        delay_ms = await self._maybe_pulse(to, delay_ms)
        body = self.build_text_payload(to, text, delay_ms)
        return await self._post_first_success("send text", self.text_paths, body)

    async def send_media(self, to: str, kind: str, data: bytes, *, delay_ms: int = 0) -> str:
        """Send base64-encoded media of the given kind (e.g. "audio"); returns the accepting route."""
        delay_ms = await self._maybe_pulse(to, delay_ms)
        body = self.build_media_payload(to, kind, data, delay_ms)
        return await self._post_first_success("send media", self.media_paths, body)

    async def _maybe_pulse(self, to: str, delay_ms: int) -> int:
        if not self.typing_pulses or delay_ms <= 0:
            return delay_ms
        await self.send_typing(to, self._visible_delay(delay_ms))
        return POST_PULSE_DELAY_MS

    @best_effort
    async def send_typing(self, to: str, duration_ms: int) -> None:
        """Keep the "typing..." indicator up for duration_ms using /wait pulses."""
        number, chat_id = make_chat_id(to)
        remaining = duration_ms
        while remaining > 0:
            step = min(remaining, self.wait_pulse_ms)
            await self._wait_pulse(number, chat_id, step)
            remaining -= step
            if remaining > 0 and step >= 2000:
                await self._sleep(PULSE_GAP_SECONDS)

    async def _wait_pulse(self, number: str, chat_id: str, ms: int) -> None:
        payload = {"number": number, "chatId": chat_id, "chatid": chat_id, "ms": ms, "time": ms, "duration": ms}
        for path in WAIT_PATHS:
            url = join_url(self.base_send, path)
            try:
                response = await self._post_with_retry(url, self.token_send, payload)
            except httpx.HTTPError as exc:
                logger.debug(f"Typing pulse failed on {url}: {exc}")
                continue
            if response.status_code < 300:
                return

    # ----------------- download -----------------

    async def resolve_media_url(self, message_id: str) -> str:
        """Ask the gateway for a short-lived direct link to a message's media."""
        url = join_url(self.base_download, DOWNLOAD_PATH)
        body = {"id": message_id, "return_link": True}
        try:
            response = await self._post_with_retry(url, self.token_download, body)
        except httpx.HTTPError as exc:
            raise GatewayError(f"gateway download link failed: {exc}", route=url) from exc
        if not response.ok:
            raise GatewayError(
                f"gateway download {response.status_code}: {response.text[:500]}",
                route=url,
                status_code=response.status_code,
                body=response.text[:500],
            )
        try:
            payload = json.loads(response.body)
        except ValueError as exc:
            raise GatewayError("gateway download returned invalid JSON", route=url, body=response.text[:500]) from exc
        file_url = payload.get("fileURL") if isinstance(payload, dict) else None
        if not file_url:
            raise GatewayError("gateway download returned empty fileURL", route=url, body=response.text[:500])
        return file_url

    async def fetch_media(self, message_id: str) -> MediaDownload:
        """Resolve the direct link for a message and download its bytes."""
        file_url = await self.resolve_media_url(message_id)
        try:
            response = await self._with_retry(file_url, lambda: self._get_once(file_url))
        except httpx.HTTPError as exc:
            raise GatewayError(f"media download failed: {exc}", route=file_url) from exc
        if not response.ok:
            raise GatewayError(
                f"media download {response.status_code}: {response.text[:500]}",
                route=file_url,
                status_code=response.status_code,
                body=response.text[:500],
            )
        return MediaDownload(content=response.body, url=file_url)
