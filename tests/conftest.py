from __future__ import annotations

import json
import time
from collections.abc import AsyncIterator, Callable, Iterator, Sequence
from contextlib import ExitStack
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from fastapi.testclient import TestClient

from codegen_api.app.llm import GatewayError
from codegen_api.app.models import ChatMessage, CompletionResponse, StreamDelta
from codegen_api.config.settings import Settings
from codegen_api.main import create_app

COUNTER_FILES: dict[str, str] = {
    "counter-app/package.json": json.dumps(
        {
            "name": "counter-app",
            "private": True,
            "type": "module",
            "scripts": {"dev": "vite", "build": "vite build"},
            "dependencies": {"vue": "^3.5.0"},
            "devDependencies": {"vite": "^6.0.0", "@vitejs/plugin-vue": "^5.1.0"},
        },
        indent=2,
    ),
    "counter-app/index.html": (
        '<!DOCTYPE html>\n<html>\n<body>\n  <div id="app"></div>\n'
        '  <script type="module" src="/src/main.js"></script>\n</body>\n</html>\n'
    ),
    "counter-app/src/main.js": (
        "import { createApp } from 'vue'\nimport App from './App.vue'\n\n"
        "createApp(App).mount('#app')\n"
    ),
    "counter-app/src/App.vue": (
        '<template>\n  <button class="counter" @click="count++">Count: {{ count }}</button>\n'
        "</template>\n\n<script setup>\nimport { ref } from 'vue'\n\n"
        "const count = ref(0)\n</script>\n"
    ),
}

Round = tuple[list[str], str | None]


def project_json(files: dict[str, str] | None = None) -> str:
    return json.dumps(COUNTER_FILES if files is None else files, indent=2)


def split_rounds(text: str, parts: int) -> list[Round]:
    """Split ``text`` into ``parts`` rounds; all but the last end with ``length``."""
    size = -(-len(text) // parts)
    chunks = [text[index : index + size] for index in range(0, len(text), size)]
    rounds: list[Round] = [([chunk], "length") for chunk in chunks[:-1]]
    rounds.append(([chunks[-1]], "stop"))
    return rounds


class ScriptedGateway:
    """Test-only gateway that replays scripted rounds of stream deltas."""

    def __init__(self, rounds: list[Round], *, repeat_last: bool = False) -> None:
        self.rounds = list(rounds)
        self.repeat_last = repeat_last
        self.calls: list[list[ChatMessage]] = []
        self.temperatures: list[float] = []

    async def complete(
        self,
        messages: Sequence[ChatMessage],
        *,
        model: str,
        max_tokens: int,
        temperature: float,
    ) -> CompletionResponse:
        self._record(messages, temperature)
        pieces, finish_reason = self._next_round()
        return CompletionResponse(content="".join(pieces), finish_reason=finish_reason)

    async def stream(
        self,
        messages: Sequence[ChatMessage],
        *,
        model: str,
        max_tokens: int,
        temperature: float,
    ) -> AsyncIterator[StreamDelta]:
        self._record(messages, temperature)
        pieces, finish_reason = self._next_round()
        for piece in pieces:
            yield StreamDelta(content=piece)
        yield StreamDelta(finish_reason=finish_reason)

    def _record(self, messages: Sequence[ChatMessage], temperature: float) -> None:
        self.calls.append([message.model_copy() for message in messages])
        self.temperatures.append(temperature)

    def _next_round(self) -> Round:
        if len(self.rounds) > 1 or (self.rounds and not self.repeat_last):
            return self.rounds.pop(0)
        if self.rounds:
            return self.rounds[0]
        return [], "stop"


class FailingGateway:
    """Test-only gateway whose every call fails like an unreachable upstream."""

    def __init__(self, status_code: int = 503, error: Exception | None = None) -> None:
        self.status_code = status_code
        self.error = error
        self.calls = 0

    def _failure(self) -> Exception:
        return self.error or GatewayError("upstream unavailable", status_code=self.status_code)

    async def complete(
        self,
        messages: Sequence[ChatMessage],
        *,
        model: str,
        max_tokens: int,
        temperature: float,
    ) -> CompletionResponse:
        self.calls += 1
        raise self._failure()

    async def stream(
        self,
        messages: Sequence[ChatMessage],
        *,
        model: str,
        max_tokens: int,
        temperature: float,
    ) -> AsyncIterator[StreamDelta]:
        self.calls += 1
        raise self._failure()
        yield  # pragma: no cover


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def settings(monkeypatch: pytest.MonkeyPatch) -> Settings:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    return Settings(_env_file=None, llm_api_key="", round_delay_s=0.0)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_client(settings: Settings) -> Iterator[Callable[..., TestClient]]:
    with ExitStack() as stack:

        def _make(gateway: Any = None, **overrides: Any) -> TestClient:
            app_settings = settings.model_copy(update=overrides) if overrides else settings
            app = create_app(settings_override=app_settings, gateway=gateway)
            return stack.enter_context(TestClient(app))

        yield _make


def wait_for_terminal(client: TestClient, task_id: str, timeout_s: float = 5.0) -> dict[str, Any]:
    deadline = time.monotonic() + timeout_s
    while True:
        response = client.get(f"/tasks/{task_id}")
        assert response.status_code == 200
        body = response.json()
        if body["completed"]:
            return body
        if time.monotonic() > deadline:
            raise AssertionError(f"task {task_id} did not finish: {body}")
        time.sleep(0.01)
