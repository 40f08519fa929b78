from __future__ import annotations

import json

import httpx
import pytest

from codegen_api.app.llm import (
    GatewayError,
    OpenAICompatibleGateway,
    build_gateway_from_settings,
    parse_sse_line,
)
from codegen_api.app.models import ChatMessage
from codegen_api.config.settings import Settings

MESSAGES = [
    ChatMessage(role="system", content="system"),
    ChatMessage(role="user", content="build it"),
    ChatMessage(role="assistant", content='{"a": '),
]


def _sse(*chunks: dict) -> bytes:
    lines = [f"data: {json.dumps(chunk)}\n\n" for chunk in chunks]
    lines.append(": keep-alive\n\n")
    lines.append("data: [DONE]\n\n")
    return "".join(lines).encode("utf-8")


def _gateway(handler) -> OpenAICompatibleGateway:
    return OpenAICompatibleGateway(
        api_key="test-key",
        base_url="https://llm.test/v1",
        transport=httpx.MockTransport(handler),
    )


async def test_complete_posts_chat_request_and_parses_response() -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "choices": [{"message": {"content": "1}"}, "finish_reason": "stop"}],
                "usage": {"prompt_tokens": 12, "completion_tokens": 2, "total_tokens": 14},
            },
        )

    response = await _gateway(handler).complete(
        MESSAGES, model="gpt-test", max_tokens=128, temperature=0.5
    )

    assert response.content == "1}"
    assert response.finish_reason == "stop"
    assert response.usage is not None
    assert response.usage.total_tokens == 14
    assert seen["url"] == "https://llm.test/v1/chat/completions"
    assert seen["auth"] == "Bearer test-key"
    assert seen["body"]["stream"] is False
    assert seen["body"]["model"] == "gpt-test"
    assert seen["body"]["max_tokens"] == 128
    assert seen["body"]["messages"][-1] == {"role": "assistant", "content": '{"a": '}


async def test_stream_yields_deltas_until_done() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert json.loads(request.content)["stream"] is True
        body = _sse(
            {"choices": [{"delta": {"role": "assistant"}, "finish_reason": None}]},
            {"choices": [{"delta": {"content": "1"}, "finish_reason": None}]},
            {"choices": [{"delta": {"content": "}"}, "finish_reason": None}]},
            {"choices": [{"delta": {}, "finish_reason": "length"}]},
        )
        return httpx.Response(200, content=body, headers={"Content-Type": "text/event-stream"})

    gateway = _gateway(handler)
    deltas = [
        delta
        async for delta in gateway.stream(MESSAGES, model="gpt-test", max_tokens=8, temperature=0.7)
    ]

    assert [delta.content for delta in deltas] == ["1", "}", None]
    assert deltas[-1].finish_reason == "length"


@pytest.mark.parametrize("status_code", [401, 429, 500])
async def test_error_status_raises_gateway_error(status_code: int) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, json={"error": {"message": "nope"}})

    gateway = _gateway(handler)

    with pytest.raises(GatewayError) as complete_error:
        await gateway.complete(MESSAGES, model="gpt-test", max_tokens=8, temperature=0.7)
    with pytest.raises(GatewayError) as stream_error:
        async for _ in gateway.stream(MESSAGES, model="gpt-test", max_tokens=8, temperature=0.7):
            pass

    assert complete_error.value.status_code == status_code
    assert stream_error.value.status_code == status_code


async def test_transport_failure_raises_gateway_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    gateway = _gateway(handler)

    with pytest.raises(GatewayError, match="connection refused"):
        await gateway.complete(MESSAGES, model="gpt-test", max_tokens=8, temperature=0.7)
    with pytest.raises(GatewayError, match="connection refused"):
        async for _ in gateway.stream(MESSAGES, model="gpt-test", max_tokens=8, temperature=0.7):
            pass


async def test_missing_choices_raise_gateway_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"choices": []})

    with pytest.raises(GatewayError, match="choices"):
        await _gateway(handler).complete(MESSAGES, model="gpt-test", max_tokens=8, temperature=0.7)


@pytest.mark.parametrize(
    "body",
    [
        [1, 2],
        {"choices": "none"},
        {"choices": [1]},
        {"choices": [{"message": "text"}]},
        {"choices": [{"message": {"content": "x"}, "finish_reason": 7}]},
    ],
)
async def test_malformed_completion_body_raises_gateway_error(body: object) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=body)

    with pytest.raises(GatewayError):
        await _gateway(handler).complete(MESSAGES, model="gpt-test", max_tokens=8, temperature=0.7)


async def test_malformed_stream_chunk_raises_gateway_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200, content=b"data: [1]\n\n", headers={"Content-Type": "text/event-stream"}
        )

    gateway = _gateway(handler)

    with pytest.raises(GatewayError, match="Malformed"):
        async for _ in gateway.stream(MESSAGES, model="gpt-test", max_tokens=8, temperature=0.7):
            pass


def test_parse_sse_line() -> None:
    assert parse_sse_line("") is None
    assert parse_sse_line(": ping") is None
    assert parse_sse_line("data: [DONE]") is None
    assert parse_sse_line('data: {"choices": []}') is None

    delta = parse_sse_line('data: {"choices": [{"delta": {"content": "hi"}}]}')
    assert delta is not None
    assert delta.content == "hi"
    assert delta.finish_reason is None

    with pytest.raises(GatewayError, match="Malformed"):
        parse_sse_line("data: {not json")
    for line in (
        "data: [1]",
        'data: "text"',
        'data: {"choices": {"delta": {}}}',
        'data: {"choices": [1]}',
        'data: {"choices": [{"delta": "hi"}]}',
        'data: {"choices": [{"delta": {"content": 5}}]}',
    ):
        with pytest.raises(GatewayError, match="Malformed"):
            parse_sse_line(line)


def test_gateway_requires_api_key() -> None:
    with pytest.raises(ValueError):
        OpenAICompatibleGateway(api_key="")


def test_build_gateway_from_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    assert build_gateway_from_settings(Settings(_env_file=None, llm_api_key="")) is None
    assert (
        build_gateway_from_settings(Settings(_env_file=None, llm_provider="local", llm_api_key="k"))
        is None
    )

    gateway = build_gateway_from_settings(
        Settings(_env_file=None, llm_api_key="k", llm_base_url="https://llm.test/v1/", llm_timeout_s=30)
    )
    assert isinstance(gateway, OpenAICompatibleGateway)
    assert gateway.base_url == "https://llm.test/v1"
    assert gateway.timeout_s == 30

    monkeypatch.setenv("OPENAI_API_KEY", "from-env")
    fallback = build_gateway_from_settings(Settings(_env_file=None, llm_api_key=""))
    assert isinstance(fallback, OpenAICompatibleGateway)
    assert fallback.api_key == "from-env"
