from typing import Optional

import httpx

from turnrelay.logging_config import get_logger
from turnrelay.services.errors import EngineError
from turnrelay.services.llm.base import ConversationEngine, RunStatus

logger = get_logger("llm.openai")

VISION_PROMPT = "Analyze and objectively describe the image:"
SUMMARY_PROMPT = (
    "You are an assistant that summarizes documents. Summarize the provided text concisely, "
    "keeping the main ideas. Answer in the language of the document."
)
SUMMARY_MAX_INPUT_CHARS = 12000


class OpenAIAssistantEngine(ConversationEngine):
    """OpenAI Assistants v2 engine plus the vision, speech and summary endpoints."""

    def __init__(
        self,
        api_key: str,
        assistant_id: str,
        *,
        chat_model: str = "gpt-4o-mini",
        transcribe_model: str = "whisper-1",
        tts_model: str = "tts-1",
        tts_voice: str = "onyx",
        tts_speed: float = 1.0,
        base_url: str = "https://api.openai.com/v1",
        timeout_seconds: float = 60.0,
    ):
        self.api_key = api_key
        self.assistant_id = assistant_id
        self.chat_model = chat_model
        self.transcribe_model = transcribe_model
        self.tts_model = tts_model
        self.tts_voice = tts_voice
        self.tts_speed = tts_speed
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

    def _headers(self, *, assistants: bool = False, json_body: bool = True) -> dict:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        if json_body:
            headers["Content-Type"] = "application/json"
        if assistants:
            headers["OpenAI-Beta"] = "assistants=v2"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        label: str,
        assistants: bool = False,
        json: Optional[dict] = None,
        files: Optional[dict] = None,
        data: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> httpx.Response:
        url = f"{self.base_url}{path}"
        logger.debug(f"OpenAI request: {method} {path}")
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.request(
                    method,
                    url,
                    headers=self._headers(assistants=assistants, json_body=files is None),
                    json=json,
                    files=files,
                    data=data,
                    params=params,
                )
        except httpx.HTTPError as exc:
            logger.error(f"OpenAI {label} request failed: {exc}")
            raise EngineError(f"{label} request failed: {exc}") from exc

        if response.status_code > 299:
            logger.error(f"OpenAI {label} error: {response.status_code} {response.text[:500]}")
            raise EngineError(
                f"{label} status {response.status_code}: {response.text[:500]}",
                status_code=response.status_code,
                body=response.text[:500],
            )
        return response

    @staticmethod
    def _json(response: httpx.Response, label: str) -> dict:
        try:
            payload = response.json()
        except ValueError as exc:
            raise EngineError(f"{label} returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise EngineError(f"{label} returned unexpected payload")
        return payload

    # ----------------- assistants -----------------

    async def create_conversation(self) -> str:
        response = await self._request("POST", "/threads", label="create thread", assistants=True, json={})
        thread_id = self._json(response, "create thread").get("id")
        if not thread_id:
            raise EngineError("create thread returned no id")
        return thread_id

    async def append_message(self, handle: str, text: str) -> None:
        body = {"role": "user", "content": [{"type": "text", "text": text}]}
        await self._request("POST", f"/threads/{handle}/messages", label="add message", assistants=True, json=body)

    async def start_run(self, handle: str) -> str:
        response = await self._request(
            "POST",
            f"/threads/{handle}/runs",
            label="create run",
            assistants=True,
            json={"assistant_id": self.assistant_id},
        )
        run_id = self._json(response, "create run").get("id")
        if not run_id:
            raise EngineError("create run returned no id")
        return run_id

    async def get_run_status(self, handle: str, run_id: str) -> RunStatus:
        response = await self._request("GET", f"/threads/{handle}/runs/{run_id}", label="get run", assistants=True)
        return RunStatus.parse(self._json(response, "get run").get("status"))

    async def get_latest_reply(self, handle: str) -> str:
        response = await self._request(
            "GET",
            f"/threads/{handle}/messages",
            label="list messages",
            assistants=True,
            params={"order": "desc", "limit": 1},
        )
        data = self._json(response, "list messages").get("data") or []
        if not data:
            raise EngineError("no assistant text found")
        for part in data[0].get("content") or []:
            text = part.get("text") if isinstance(part, dict) else None
            if isinstance(text, dict) and text.get("value"):
                return text["value"]
        raise EngineError("no assistant text found")

    # ----------------- media helpers -----------------

    async def synthesize_speech(self, text: str) -> bytes:
        body = {
            "model": self.tts_model,
            "input": text,
            "voice": self.tts_voice,
            "speed": self.tts_speed,
            "response_format": "mp3",
        }
        response = await self._request("POST", "/audio/speech", label="tts", json=body)
        return response.content

    async def transcribe(self, audio: bytes, filename: str = "audio.ogg") -> str:
        if not audio:
            raise EngineError("audio is empty")
        response = await self._request(
            "POST",
            "/audio/transcriptions",
            label="transcribe",
            files={"file": (filename or "audio", audio, "application/octet-stream")},
            data={"model": self.transcribe_model},
        )
        transcript = (self._json(response, "transcribe").get("text") or "").strip()
        if not transcript:
            logger.warning("OpenAI transcription returned empty text")
        return transcript

    async def _chat(self, messages: list, *, label: str, max_tokens: int, temperature: Optional[float] = None) -> str:
        body = {"model": self.chat_model, "messages": messages, "max_tokens": max_tokens}
        if temperature is not None:
            body["temperature"] = temperature
        response = await self._request("POST", "/chat/completions", label=label, json=body)
        choices = self._json(response, label).get("choices") or []
        if not choices:
            raise EngineError(f"no {label} choices")
        return ((choices[0].get("message") or {}).get("content") or "").strip()

    async def describe_image(self, url: str) -> str:
        messages = [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": VISION_PROMPT},
                    {"type": "image_url", "image_url": {"url": url}},
                ],
            }
        ]
        return await self._chat(messages, label="vision", max_tokens=400)

    async def summarize(self, text: str) -> str:
        messages = [
            {"role": "system", "content": SUMMARY_PROMPT},
            {"role": "user", "content": text[:SUMMARY_MAX_INPUT_CHARS]},
        ]
        return await self._chat(messages, label="summary", max_tokens=512, temperature=0.3)
