from __future__ import annotations

import json
import logging
import os
from collections.abc import AsyncIterator, Sequence
from typing import Any, Protocol

import httpx

from codegen_api.config.settings import Settings

from .models import ChatMessage, CompletionResponse, CompletionUsage, StreamDelta

logger = logging.getLogger(__name__)

SSE_DATA_PREFIX = "data:"
SSE_DONE = "[DONE]"


class GatewayError(RuntimeError):
    """Transport, auth, or protocol failure while talking to the completion service."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class CompletionGateway(Protocol):
    """Interface for chat completions, full-message or streamed."""

    async def complete(
        self,
        messages: Sequence[ChatMessage],
        *,
        model: str,
        max_tokens: int,
        temperature: float,
    ) -> CompletionResponse: ...

    def stream(
        self,
        messages: Sequence[ChatMessage],
        *,
        model: str,
        max_tokens: int,
        temperature: float,
    ) -> AsyncIterator[StreamDelta]: ...


class OpenAICompatibleGateway:
    """Chat completions over any OpenAI-compatible REST endpoint."""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        timeout_s: float = 1800.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("api_key is required")
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        # Tests inject httpx.MockTransport here.
        self._transport = transport

    async def complete(
        self,
        messages: Sequence[ChatMessage],
        *,
        model: str,
        max_tokens: int,
        temperature: float,
    ) -> CompletionResponse:
        payload = self._payload(messages, model, max_tokens, temperature, stream=False)
        async with self._client() as client:
            try:
                response = await client.post("/chat/completions", json=payload)
            except httpx.HTTPError as exc:
                raise GatewayError(f"Completion request failed: {exc}") from exc
            self._raise_for_status(response.status_code, response.text)
            try:
                body = response.json()
            except json.JSONDecodeError as exc:
                raise GatewayError("Completion service returned non-JSON response") from exc
        return self._parse_completion(body)

    async def stream(
        self,
        messages: Sequence[ChatMessage],
        *,
        model: str,
        max_tokens: int,
        temperature: float,
    ) -> AsyncIterator[StreamDelta]:
        payload = self._payload(messages, model, max_tokens, temperature, stream=True)
        if _trace_enabled():
            logger.warning(
                "LLM trace request provider=openai model=%s url=%s messages=%d",
                model,
                self.base_url,
                len(payload["messages"]),
            )
        async with self._client() as client:
            try:
                async with client.stream("POST", "/chat/completions", json=payload) as response:
                    if response.status_code >= 400:
                        raw_error = (await response.aread()).decode("utf-8", errors="replace")
                        self._raise_for_status(response.status_code, raw_error)
                    async for line in response.aiter_lines():
                        delta = parse_sse_line(line)
                        if delta is not None:
                            yield delta
            except httpx.HTTPError as exc:
                raise GatewayError(f"Completion stream failed: {exc}") from exc

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout_s,
            transport=self._transport,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
        )

    @staticmethod
    def _payload(
        messages: Sequence[ChatMessage],
        model: str,
        max_tokens: int,
        temperature: float,
        *,
        stream: bool,
    ) -> dict[str, Any]:
        return {
            "model": model,
            "messages": [message.model_dump() for message in messages],
            "max_tokens": max_tokens,
            "temperature": temperature,
            "stream": stream,
        }

    @staticmethod
    def _raise_for_status(status_code: int, raw_error: str) -> None:
        if status_code < 400:
            return
        logger.warning("LLM request rejected status=%d body=%s", status_code, raw_error[:400])
        raise GatewayError(
            f"Completion request failed with status {status_code}: {raw_error[:400]}",
            status_code=status_code,
        )

    @staticmethod
    def _parse_completion(body: Any) -> CompletionResponse:
        if not isinstance(body, dict):
            raise GatewayError("Completion response is not a JSON object")
        choices = body.get("choices") or []
        if not isinstance(choices, list) or not choices:
            raise GatewayError("Completion response did not contain choices")

        choice = choices[0]
        if not isinstance(choice, dict):
            raise GatewayError("Completion choice is not a JSON object")
        message = choice.get("message") or {}
        if not isinstance(message, dict):
            raise GatewayError("Completion message is not a JSON object")
        content = message.get("content") or ""
        if isinstance(content, list):
            content = "".join(
                item.get("text", "") for item in content if isinstance(item, dict)
            )
        usage_raw = body.get("usage")
        usage = None
        if isinstance(usage_raw, dict):
            usage = CompletionUsage(
                prompt_tokens=int(usage_raw.get("prompt_tokens", 0) or 0),
                completion_tokens=int(usage_raw.get("completion_tokens", 0) or 0),
                total_tokens=int(usage_raw.get("total_tokens", 0) or 0),
            )
        return CompletionResponse(
            content=str(content),
            finish_reason=_finish_reason(choice),
            usage=usage,
        )


def parse_sse_line(line: str) -> StreamDelta | None:
    """Turn one server-sent-event line into a delta; None for keep-alives and [DONE]."""
    line = line.strip()
    if not line.startswith(SSE_DATA_PREFIX):
        return None
    data = line[len(SSE_DATA_PREFIX) :].strip()
    if not data or data == SSE_DONE:
        return None
    try:
        chunk = json.loads(data)
    except json.JSONDecodeError as exc:
        raise GatewayError(f"Malformed stream chunk: {data[:200]}") from exc
    if not isinstance(chunk, dict):
        raise GatewayError(f"Malformed stream chunk: {data[:200]}")

    choices = chunk.get("choices") or []
    if not isinstance(choices, list):
        raise GatewayError(f"Malformed stream chunk: {data[:200]}")
    if not choices:
        return None
    choice = choices[0]
    if not isinstance(choice, dict):
        raise GatewayError(f"Malformed stream chunk: {data[:200]}")
    delta = choice.get("delta") or {}
    if not isinstance(delta, dict):
        raise GatewayError(f"Malformed stream chunk: {data[:200]}")
    content = delta.get("content")
    if content is not None and not isinstance(content, str):
        raise GatewayError(f"Malformed stream chunk: {data[:200]}")
    finish_reason = _finish_reason(choice)
    if not content and not finish_reason:
        return None
    return StreamDelta(content=content or None, finish_reason=finish_reason)


def _finish_reason(choice: dict[str, Any]) -> str | None:
    finish_reason = choice.get("finish_reason")
    if finish_reason is not None and not isinstance(finish_reason, str):
        raise GatewayError(f"Unexpected finish_reason: {finish_reason!r}")
    return finish_reason


def build_gateway_from_settings(settings: Settings) -> CompletionGateway | None:
    if settings.llm_provider.lower() != "openai":
        return None

    api_key = settings.resolved_llm_api_key()
    if not api_key:
        return None

    return OpenAICompatibleGateway(
        api_key=api_key,
        base_url=settings.llm_base_url,
        timeout_s=settings.llm_timeout_s,
    )


def _trace_enabled() -> bool:
    return os.getenv("CODEGEN_LLM_TRACE", "0").strip() == "1"
