"""AI session adapter.

Executors only depend on the ``AISession``/``SessionProvider`` protocols; the
Ollama-compatible implementation below is the one the service runs with.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Protocol

import httpx

logger = logging.getLogger(__name__)


class SessionTimeoutError(TimeoutError):
    """The AI service did not answer within the caller-supplied timeout."""


class SessionDestroyedError(RuntimeError):
    """The session was destroyed (usually by a cancellation) while in use."""


@dataclass
class SessionResult:
    response_text: str
    total_time_ms: int


@dataclass
class StreamEvent:
    type: str  # delta | tool_start | done | error
    content: str = ""
    name: str | None = None
    message: str | None = None
    total_content: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.type}
        if self.type == "delta":
            payload["content"] = self.content
        elif self.type == "tool_start":
            payload["name"] = self.name
        elif self.type == "done":
            payload["totalContent"] = self.total_content or ""
        elif self.type == "error":
            payload["message"] = self.message or "Stream error"
        return payload


class AISession(Protocol):
    async def send_and_wait(self, prompt: str, timeout: float | None = None) -> SessionResult:
        """Send one prompt and return the complete reply."""

    def stream(self, prompt: str) -> AsyncIterator[StreamEvent]:
        """Send one prompt and yield reply events as they arrive."""

    async def destroy(self) -> None:
        """Release the session; in-flight calls fail with SessionDestroyedError."""


class SessionProvider(Protocol):
    async def create_session(self, label: str, *, system_prompt: str | None = None) -> AISession:
        """Open a session; ``label`` only feeds logs and activity events."""


@dataclass
class OllamaSession:
    client: httpx.AsyncClient
    model: str
    label: str
    system_prompt: str | None = None
    timeout: float = 120.0
    _destroyed: bool = field(default=False, init=False)

    def _messages(self, prompt: str) -> list[dict[str, str]]:
        messages = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        messages.append({"role": "user", "content": prompt})
        return messages

    def _ensure_alive(self) -> None:
        if self._destroyed:
            raise SessionDestroyedError(f"Session {self.label!r} was destroyed")

    async def send_and_wait(self, prompt: str, timeout: float | None = None) -> SessionResult:
        self._ensure_alive()
        limit = timeout or self.timeout
        started = time.monotonic()
        payload = {"model": self.model, "messages": self._messages(prompt), "stream": False}
        try:
            response = await self.client.post("/api/chat", json=payload, timeout=limit)
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise SessionTimeoutError(f"AI request timed out after {limit:g}s") from exc
        except httpx.HTTPError as exc:
            self._ensure_alive()
            raise RuntimeError(f"AI request failed: {exc}") from exc

        self._ensure_alive()
        data = response.json()
        text = (data.get("message") or {}).get("content", "")
        return SessionResult(response_text=text, total_time_ms=int((time.monotonic() - started) * 1000))

    async def stream(self, prompt: str) -> AsyncIterator[StreamEvent]:
        self._ensure_alive()
        payload = {"model": self.model, "messages": self._messages(prompt), "stream": True}
        total = ""
        try:
            async with self.client.stream("POST", "/api/chat", json=payload, timeout=self.timeout) as response:
                response.raise_for_status()
                async for line in response.aiter_lines():
                    self._ensure_alive()
                    if not line.strip():
                        continue
                    try:
                        chunk = json.loads(line)
                    except ValueError:
                        logger.warning("Malformed stream line from AI service: %.200s", line)
                        yield StreamEvent(type="error", message="AI stream returned malformed data")
                        return
                    if not isinstance(chunk, dict):
                        yield StreamEvent(type="error", message="AI stream returned malformed data")
                        return
                    if chunk.get("error"):
                        yield StreamEvent(type="error", message=str(chunk["error"]))
                        return
                    message = chunk.get("message") or {}
                    for call in message.get("tool_calls") or []:
                        name = (call.get("function") or {}).get("name", "tool")
                        yield StreamEvent(type="tool_start", name=name)
                    delta = message.get("content", "")
                    if delta:
                        total += delta
                        yield StreamEvent(type="delta", content=delta)
                    if chunk.get("done"):
                        break
        except httpx.TimeoutException:
            yield StreamEvent(type="error", message=f"AI stream timed out after {self.timeout:g}s")
            return
        except httpx.HTTPError as exc:
            self._ensure_alive()
            yield StreamEvent(type="error", message=f"AI stream failed: {exc}")
            return
        yield StreamEvent(type="done", total_content=total)

    async def destroy(self) -> None:
        self._destroyed = True


class OllamaSessionProvider:
    """Sessions against an Ollama-compatible ``/api/chat`` endpoint."""

    def __init__(self, base_url: str, model: str, timeout: float = 120.0, client: httpx.AsyncClient | None = None):
        self.model = model
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout)

    async def create_session(self, label: str, *, system_prompt: str | None = None) -> OllamaSession:
        logger.debug("Creating AI session %r (model=%s)", label, self.model)
        return OllamaSession(
            client=self._client,
            model=self.model,
            label=label,
            system_prompt=system_prompt,
            timeout=self.timeout,
        )

    async def aclose(self) -> None:
        await self._client.aclose()
