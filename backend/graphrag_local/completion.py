from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Any, AsyncIterator, Mapping, Sequence

import httpx

logger = logging.getLogger(__name__)

OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
OLLAMA_MODEL = os.getenv("OLLAMA_MODEL", "llama3.1:8b")
OLLAMA_TIMEOUT_SECONDS = float(os.getenv("OLLAMA_TIMEOUT_SECONDS", "60"))

SYSTEM_PROMPT = (
    "You are a helpful assistant. Answer using the knowledge base context below when it is relevant. "
    "If the context does not cover the question, say so and answer conservatively."
)


def build_messages(
    system_context: Sequence[str],
    history: Sequence[Mapping[str, str]],
    user_message: str,
) -> list[dict[str, str]]:
    system = SYSTEM_PROMPT
    if system_context:
        blocks = "\n\n".join(f"[{i}] {txt}" for i, txt in enumerate(system_context, start=1))
        system = f"{system}\n\nContext:\n{blocks}"
    messages = [{"role": "system", "content": system}]
    for turn in history:
        role = str(turn.get("role") or "user")
        if role not in {"user", "assistant"}:
            continue
        messages.append({"role": role, "content": str(turn.get("content") or "")})
    messages.append({"role": "user", "content": user_message})
    return messages


@dataclass(frozen=True)
class OllamaCompletionClient:
    """Streams chat completions from an Ollama server (``/api/chat``).

    ``transport`` lets tests plug in ``httpx.MockTransport``.
    """

    base_url: str = OLLAMA_BASE_URL
    model: str = OLLAMA_MODEL
    timeout_seconds: float = OLLAMA_TIMEOUT_SECONDS
    temperature: float = 0.2
    transport: httpx.AsyncBaseTransport | None = None

    def _client(self, timeout: float | None = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url.rstrip("/"),
            timeout=self.timeout_seconds if timeout is None else timeout,
            transport=self.transport,
        )

    def _payload(
        self,
        system_context: Sequence[str],
        history: Sequence[Mapping[str, str]],
        user_message: str,
    ) -> dict[str, Any]:
        return {
            "model": self.model,
            "stream": True,
            "messages": build_messages(system_context, history, user_message),
            "options": {"temperature": self.temperature},
        }

    async def stream(
        self,
        system_context: Sequence[str],
        history: Sequence[Mapping[str, str]],
        user_message: str,
    ) -> AsyncIterator[str]:
        payload = self._payload(system_context, history, user_message)
        async with self._client() as client:
            async with client.stream("POST", "/api/chat", json=payload) as resp:
                resp.raise_for_status()
                async for line in resp.aiter_lines():
                    line = line.strip()
                    if not line:
                        continue
                    data = json.loads(line)
                    if data.get("error"):
                        raise RuntimeError(f"Ollama error: {data['error']}")
                    msg = data.get("message")
                    if isinstance(msg, dict):
                        token = str(msg.get("content") or "")
                        if token:
                            yield token
                    if data.get("done"):
                        break

    async def complete(
        self,
        system_context: Sequence[str],
        history: Sequence[Mapping[str, str]],
        user_message: str,
    ) -> str:
        parts = [token async for token in self.stream(system_context, history, user_message)]
        return "".join(parts)

    async def probe(self, timeout: float = 3.0) -> bool:
        try:
            async with self._client(timeout=timeout) as client:
                resp = await client.get("/api/tags")
                return resp.status_code == 200
        except httpx.HTTPError as e:
            logger.info("completion_probe_failed", extra={"fields": {"error": type(e).__name__}})
            return False
