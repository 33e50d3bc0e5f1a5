import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any

import httpx
import pytest

from src.modelrouter.credentials import StaticCredentialStore
from src.modelrouter.errors import AuthenticationError, ProviderError, RateLimitError, RequestCancelledError
from src.modelrouter.providers.openai import OpenAICompatAdapter, _api_root
from src.modelrouter.types import (
    CancelToken,
    ChatMessage,
    ChatOptions,
    DoneEvent,
    ErrorEvent,
    TextEvent,
    collect_chat_result,
)
from tests.fakes import make_provider

MESSAGES = [ChatMessage(role="system", content="be brief"), ChatMessage(role="user", content="hi")]


def sse_body(*payloads: Any) -> bytes:
    frames = [f"data: {json.dumps(payload)}\n\n" for payload in payloads]
    frames.append("data: [DONE]\n\n")
    return "".join(frames).encode("utf-8")


def make_adapter(handler, *, key: str | None = "sk-test", **config_kwargs: Any) -> OpenAICompatAdapter:
    config = make_provider("openai", ("gpt-4o",), base_url="https://api.openai.com", **config_kwargs)
    keys = {"openai": key} if key else {}
    return OpenAICompatAdapter(config, StaticCredentialStore(keys), transport=httpx.MockTransport(handler))


def collect(adapter: OpenAICompatAdapter, model: str = "gpt-4o", options: ChatOptions | None = None) -> list[Any]:
    async def run() -> list[Any]:
        return [event async for event in adapter.chat(model, MESSAGES, options)]

    return asyncio.run(run())


def test_api_root_normalization() -> None:
    assert _api_root("https://api.openai.com") == "https://api.openai.com/v1"
    assert _api_root("https://api.openai.com/v1/chat/completions") == "https://api.openai.com/v1"
    assert _api_root("http://localhost:8000/v1/") == "http://localhost:8000/v1"
    assert _api_root("https://gateway.example.com/openai") == "https://gateway.example.com/openai"


def test_chat_streams_text_and_sends_expected_request() -> None:
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        body = sse_body(
            {"choices": [{"delta": {"content": "Hello"}}]},
            {"choices": [{"delta": {"content": " there"}, "finish_reason": "stop"}]},
            {"choices": [], "usage": {"prompt_tokens": 5, "completion_tokens": 2}},
        )
        return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

    adapter = make_adapter(handler, organization_id="org-1", default_headers={"X-Trace": "abc"})
    options = ChatOptions(
        max_tokens=64,
        temperature=0.2,
        json=True,
        tools=[{"type": "function", "function": {"name": "f", "parameters": {}}}],
        extra={"top_p": 0.5, "stream": False},
    )
    events = collect(adapter, options=options)

    assert events[:2] == [TextEvent(delta="Hello"), TextEvent(delta=" there")]
    assert isinstance(events[2], DoneEvent)
    assert events[2].usage is not None and events[2].usage.input_tokens == 5
    request = captured[0]
    assert str(request.url) == "https://api.openai.com/v1/chat/completions"
    assert request.headers["Authorization"] == "Bearer sk-test"
    assert request.headers["OpenAI-Organization"] == "org-1"
    assert request.headers["X-Trace"] == "abc"
    payload = json.loads(request.content)
    assert payload["model"] == "gpt-4o"
    assert payload["stream"] is True
    assert payload["max_tokens"] == 64
    assert payload["temperature"] == 0.2
    assert payload["response_format"] == {"type": "json_object"}
    assert payload["tool_choice"] == "auto"
    assert payload["top_p"] == 0.5
    assert payload["messages"][0] == {"role": "system", "content": "be brief"}


def test_chat_maps_401_to_terminal_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": {"message": "bad key"}})

    events = collect(make_adapter(handler))
    assert len(events) == 1
    assert isinstance(events[0], ErrorEvent)
    assert events[0].status_code == 401

    async def aggregate() -> None:
        adapter = make_adapter(handler)
        await collect_chat_result(adapter.chat("gpt-4o", MESSAGES), provider="openai", model="gpt-4o")

    with pytest.raises(AuthenticationError):
        asyncio.run(aggregate())


def test_chat_maps_429_with_retry_after() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, headers={"retry-after": "7"}, json={"error": {"message": "slow down"}})

    events = collect(make_adapter(handler))
    assert events == [
        ErrorEvent(message="Rate limit exceeded for openai:gpt-4o", status_code=429, retry_after=7.0)
    ]


def test_chat_maps_server_error_with_body_detail() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"error": {"message": "upstream exploded"}})

    events = collect(make_adapter(handler))
    assert events == [ErrorEvent(message="openai API error (500): upstream exploded", status_code=500)]


def test_chat_reports_transport_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    events = collect(make_adapter(handler))
    assert len(events) == 1
    assert events[0].message.startswith("Transport error:")


def test_chat_without_credential_or_unknown_model_yields_single_error() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200)

    missing_key = collect(make_adapter(handler, key=None))
    assert missing_key == [ErrorEvent(message="No API key configured for provider 'openai'")]
    unknown = collect(make_adapter(handler), model="gpt-9")
    assert unknown == [ErrorEvent(message="Model 'gpt-9' is not configured for provider 'openai'")]
    assert calls == []


def test_local_openai_compatible_server_needs_no_key() -> None:
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200, content=sse_body({"choices": [{"delta": {"content": "ok"}}]}))

    config = make_provider("lmstudio", ("local-model",), base_url="http://localhost:1234/v1", local=True)
    adapter = OpenAICompatAdapter(config, StaticCredentialStore(), transport=httpx.MockTransport(handler))

    async def run() -> list[Any]:
        return [event async for event in adapter.chat("local-model", MESSAGES)]

    events = asyncio.run(run())
    assert events[0] == TextEvent(delta="ok")
    assert "Authorization" not in captured[0].headers
    assert str(captured[0].url) == "http://localhost:1234/v1/chat/completions"


def test_pre_cancelled_token_yields_cancelled_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=sse_body({"choices": [{"delta": {"content": "never"}}]}))

    async def run() -> list[Any]:
        token = CancelToken()
        token.cancel()
        adapter = make_adapter(handler)
        return [event async for event in adapter.chat("gpt-4o", MESSAGES, ChatOptions(cancel=token))]

    assert asyncio.run(run()) == [ErrorEvent(message="Request cancelled", cancelled=True)]


def test_cancel_mid_stream_stops_after_current_event() -> None:
    async def body() -> AsyncIterator[bytes]:
        yield b'data: {"choices": [{"delta": {"content": "first"}}]}\n\n'
        yield b'data: {"choices": [{"delta": {"content": "second"}}]}\n\n'

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=body())

    async def run() -> list[Any]:
        token = CancelToken()
        adapter = make_adapter(handler)
        events: list[Any] = []
        async for event in adapter.chat("gpt-4o", MESSAGES, ChatOptions(cancel=token)):
            events.append(event)
            token.cancel()
        return events

    events = asyncio.run(run())
    assert events == [TextEvent(delta="first"), ErrorEvent(message="Request cancelled", cancelled=True)]


def test_chat_complete_maps_json_response() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert json.loads(request.content)["stream"] is False
        return httpx.Response(
            200,
            json={
                "choices": [
                    {
                        "message": {
                            "role": "assistant",
                            "content": None,
                            "tool_calls": [
                                {"id": "c1", "type": "function", "function": {"name": "f", "arguments": "{}"}}
                            ],
                        },
                        "finish_reason": "tool_calls",
                    }
                ],
                "usage": {"prompt_tokens": 3, "completion_tokens": 4},
            },
        )

    result = asyncio.run(make_adapter(handler).chat_complete("gpt-4o", MESSAGES))
    assert result.content == ""
    assert result.finish_reason == "tool_calls"
    assert result.tool_calls is not None and result.tool_calls[0]["id"] == "c1"
    assert result.usage is not None and result.usage.output_tokens == 4


def test_chat_complete_raises_rate_limit() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, headers={"retry-after": "1.5"})

    with pytest.raises(RateLimitError) as excinfo:
        asyncio.run(make_adapter(handler).chat_complete("gpt-4o", MESSAGES))
    assert excinfo.value.retry_after == 2.0


def test_chat_complete_without_key_raises() -> None:
    adapter = make_adapter(lambda request: httpx.Response(200), key=None)
    with pytest.raises(ProviderError):
        asyncio.run(adapter.chat_complete("gpt-4o", MESSAGES))


def test_is_available_probes_models_endpoint() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(200, json={"data": [{"id": "gpt-4o"}, {"id": "gpt-4o-mini"}]})

    adapter = make_adapter(handler)
    assert asyncio.run(adapter.is_available()) is True
    assert seen == ["https://api.openai.com/v1/models"]
    assert asyncio.run(adapter.list_models()) == ["gpt-4o", "gpt-4o-mini"]
    assert asyncio.run(make_adapter(handler, key=None).is_available()) is False


def test_is_available_never_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    assert asyncio.run(make_adapter(handler).is_available()) is False


def test_estimate_tokens_heuristic() -> None:
    adapter = make_adapter(lambda request: httpx.Response(200))
    assert adapter.estimate_tokens("abcdefgh") == 2
    assert adapter.estimate_tokens("a b c d e f g h") == 6


def test_chat_skips_payloads_with_unexpected_field_types() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        body = sse_body(
            {"choices": [{"delta": "oops"}]},
            {"choices": [{"delta": {"content": "kept", "tool_calls": 5}}]},
            {"choices": "nope"},
            {"choices": [{"delta": {}, "finish_reason": "stop"}]},
        )
        return httpx.Response(200, content=body)

    events = collect(make_adapter(handler))
    assert events == [TextEvent(delta="kept"), DoneEvent(finish_reason="stop")]


def test_chat_turns_unparseable_usage_into_error_event() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        body = sse_body(
            {"choices": [{"delta": {"content": "partial"}}]},
            {"choices": [], "usage": {"prompt_tokens": "many"}},
        )
        return httpx.Response(200, content=body)

    events = collect(make_adapter(handler))
    assert events[0] == TextEvent(delta="partial")
    assert len(events) == 2
    assert isinstance(events[1], ErrorEvent)
    assert events[1].message.startswith("Malformed openai stream payload")


def test_chat_complete_with_cancelled_token_raises_without_request() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"choices": [{"message": {"content": "late"}}]})

    async def run() -> None:
        token = CancelToken()
        token.cancel()
        await make_adapter(handler).chat_complete("gpt-4o", MESSAGES, ChatOptions(cancel=token))

    with pytest.raises(RequestCancelledError) as excinfo:
        asyncio.run(run())
    assert excinfo.value.provider == "openai"
    assert calls == []


def test_chat_complete_cancelled_while_in_flight() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(5)
        return httpx.Response(200, json={"choices": [{"message": {"content": "late"}}]})

    async def run() -> float:
        token = CancelToken()
        loop = asyncio.get_running_loop()
        loop.call_later(0.01, token.cancel)
        started = loop.time()
        with pytest.raises(RequestCancelledError):
            await make_adapter(handler).chat_complete("gpt-4o", MESSAGES, ChatOptions(cancel=token))
        return loop.time() - started

    assert asyncio.run(run()) < 2
