import asyncio
from collections.abc import AsyncIterator
from typing import Any

import pytest
from pydantic import TypeAdapter

from src.modelrouter.errors import AuthenticationError, ProviderError, RateLimitError, RequestCancelledError
from src.modelrouter.types import (
    DoneEvent,
    ErrorEvent,
    PerfStats,
    StreamEvent,
    TextEvent,
    TokenUsage,
    ToolCallEvent,
    collect_chat_result,
    error_event,
    error_from_event,
)


async def _events(*events: Any) -> AsyncIterator[Any]:
    for event in events:
        yield event


def test_collect_concatenates_text_and_tool_calls() -> None:
    call = {"id": "c1", "type": "function", "function": {"name": "f", "arguments": "{}"}}
    result = asyncio.run(
        collect_chat_result(
            _events(
                TextEvent(delta="Hel"),
                TextEvent(delta="lo"),
                ToolCallEvent(calls=[call]),
                DoneEvent(
                    usage=TokenUsage(input_tokens=3, output_tokens=2),
                    finish_reason="tool_calls",
                    perf=PerfStats(total_duration=10),
                ),
                TextEvent(delta="ignored"),
            )
        )
    )
    assert result.content == "Hello"
    assert result.tool_calls == [call]
    assert result.finish_reason == "tool_calls"
    assert result.usage == TokenUsage(input_tokens=3, output_tokens=2)
    assert result.perf is not None and result.perf.total_duration == 10


def test_collect_defaults_when_stream_ends_without_done() -> None:
    result = asyncio.run(collect_chat_result(_events(TextEvent(delta="partial"))))
    assert result.content == "partial"
    assert result.finish_reason == "stop"
    assert result.tool_calls is None
    assert result.usage is None


def test_collect_returns_cancelled_result() -> None:
    result = asyncio.run(
        collect_chat_result(
            _events(TextEvent(delta="so far"), ErrorEvent(message="Request cancelled", cancelled=True))
        )
    )
    assert result.content == "so far"
    assert result.finish_reason == "cancelled"


@pytest.mark.parametrize(
    ("event", "expected"),
    [
        (ErrorEvent(message="nope", status_code=401), AuthenticationError),
        (ErrorEvent(message="slow", status_code=429, retry_after=3.0), RateLimitError),
        (ErrorEvent(message="boom", status_code=500), ProviderError),
        (ErrorEvent(message="stream broke"), ProviderError),
    ],
)
def test_collect_raises_matching_error(event: ErrorEvent, expected: type) -> None:
    with pytest.raises(expected) as excinfo:
        asyncio.run(collect_chat_result(_events(event), provider="p", model="m"))
    assert excinfo.value.provider == "p"
    if expected is RateLimitError:
        assert excinfo.value.retry_after == 3.0


def test_error_event_round_trips_rate_limit_details() -> None:
    event = error_event(RateLimitError("p", "m", retry_after=4.0))
    assert event.status_code == 429
    assert event.retry_after == 4.0
    assert event.terminal is True


def test_stream_event_union_discriminates_on_type() -> None:
    adapter = TypeAdapter(StreamEvent)
    assert isinstance(adapter.validate_python({"type": "text", "delta": "x"}), TextEvent)
    done = adapter.validate_python({"type": "done", "finish_reason": "stop"})
    assert isinstance(done, DoneEvent) and done.terminal
    assert TextEvent(delta="x").terminal is False


def test_cancellation_maps_between_error_and_event() -> None:
    event = error_event(RequestCancelledError("openai", "gpt-4o"))
    assert event == ErrorEvent(message="Request cancelled", cancelled=True)
    assert isinstance(error_from_event(event, provider="openai"), RequestCancelledError)
