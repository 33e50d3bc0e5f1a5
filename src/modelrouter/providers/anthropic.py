from __future__ import annotations

import json
import math
from collections.abc import AsyncIterator, Sequence
from typing import Any

import httpx

from ..config import ProviderConfig
from ..credentials import CredentialStore
from ..errors import ProviderError
from ..types import (
    ChatMessage,
    ChatOptions,
    ChatResult,
    DoneEvent,
    ErrorEvent,
    TextEvent,
    TokenUsage,
    ToolCallEvent,
)
from . import wire

__all__ = ["AnthropicAdapter", "parse_anthropic_stream"]

ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 4096


def _map_stop_reason(raw: str | None) -> str | None:
    if raw is None:
        return None
    if raw == "tool_use":
        return "tool_calls"
    if raw in {"max_tokens", "message_limit"}:
        return "length"
    if raw in {"end_turn", "stop_sequence"}:
        return "stop"
    return raw


def _normalize_tool(tool: dict[str, Any]) -> dict[str, Any]:
    if tool.get("type") is None:
        return dict(tool)
    if tool.get("type") != "function":
        raise ValueError("Anthropic tools only support OpenAI function tool definitions.")
    function = tool.get("function")
    if not isinstance(function, dict) or not function.get("name"):
        raise ValueError("Anthropic function tools require a named 'function' definition.")
    parameters = function.get("parameters")
    normalized: dict[str, Any] = {
        "name": function["name"],
        "input_schema": parameters if isinstance(parameters, dict) else {"type": "object", "properties": {}},
    }
    if function.get("description"):
        normalized["description"] = function["description"]
    return normalized


def _tool_call(block_id: str | None, name: str, arguments: str) -> dict[str, Any]:
    return {
        "id": block_id,
        "type": "function",
        "function": {"name": name, "arguments": arguments or "{}"},
    }


def _input_usage(usage: dict[str, Any]) -> tuple[int, int]:
    cache_read = int(usage.get("cache_read_input_tokens") or 0)
    return int(usage.get("input_tokens") or 0) + cache_read, cache_read


async def parse_anthropic_stream(lines: AsyncIterator[str]) -> AsyncIterator[Any]:
    input_tokens = 0
    cached_tokens = 0
    output_tokens = 0
    stop_reason: str | None = None
    blocks: dict[int, dict[str, Any]] = {}
    async for line in lines:
        data = wire.sse_data(line)
        if not data:
            continue
        event = wire.load_json_object(data)
        if event is None:
            continue
        event_type = event.get("type")
        if event_type == "message_start":
            message = event.get("message") or {}
            usage = message.get("usage") if isinstance(message, dict) else None
            if isinstance(usage, dict):
                input_tokens, cached_tokens = _input_usage(usage)
                output_tokens = int(usage.get("output_tokens") or 0)
        elif event_type == "content_block_start":
            block = event.get("content_block")
            index = event.get("index")
            if isinstance(block, dict) and block.get("type") == "tool_use":
                blocks[index if isinstance(index, int) else len(blocks)] = {
                    "id": block.get("id"),
                    "name": block.get("name") or "",
                    "arguments": "",
                }
        elif event_type == "content_block_delta":
            delta = event.get("delta")
            if not isinstance(delta, dict):
                continue
            text = delta.get("text")
            partial = delta.get("partial_json")
            if delta.get("type") == "text_delta" and isinstance(text, str) and text:
                yield TextEvent(delta=text)
            elif delta.get("type") == "input_json_delta" and isinstance(partial, str):
                index = event.get("index")
                block = blocks.get(index) if isinstance(index, int) else None
                if block is not None:
                    block["arguments"] += partial
        elif event_type == "content_block_stop":
            index = event.get("index")
            block = blocks.pop(index, None) if isinstance(index, int) else None
            if block is not None:
                yield ToolCallEvent(
                    calls=[_tool_call(block["id"], block["name"], block["arguments"])]
                )
        elif event_type == "message_delta":
            delta = event.get("delta")
            if isinstance(delta, dict) and isinstance(delta.get("stop_reason"), str):
                stop_reason = delta["stop_reason"]
            usage = event.get("usage")
            if isinstance(usage, dict) and isinstance(usage.get("output_tokens"), int):
                output_tokens = usage["output_tokens"]
        elif event_type == "message_stop":
            break
        elif event_type == "error":
            error = event.get("error") or {}
            message = error.get("message") if isinstance(error, dict) else str(error)
            yield ErrorEvent(message=message or "Unknown stream error")
            return
    yield DoneEvent(
        usage=TokenUsage(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cached_input_tokens=cached_tokens,
        ),
        finish_reason=_map_stop_reason(stop_reason) or "stop",
    )


class AnthropicAdapter:
    def __init__(
        self,
        config: ProviderConfig,
        credentials: CredentialStore,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self.credentials = credentials
        self.transport = transport
        self.base_url = config.base_url.rstrip("/")

    def id(self) -> str:
        return self.config.id

    def supports(self, model: str) -> bool:
        return self.config.supports(model)

    def estimate_tokens(self, text: str) -> int:
        return math.ceil(len(text) / 4)

    def _headers(self, key: str) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": key,
            "anthropic-version": ANTHROPIC_VERSION,
        }

    def _build_payload(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        options: ChatOptions,
        *,
        stream: bool,
    ) -> dict[str, Any]:
        system_parts = [message.content for message in messages if message.role == "system"]
        payload: dict[str, Any] = {
            "model": model,
            "messages": [
                {"role": message.role, "content": message.content}
                for message in messages
                if message.role != "system"
            ],
            "max_tokens": options.max_tokens or DEFAULT_MAX_TOKENS,
            "stream": stream,
        }
        if system_parts:
            payload["system"] = "\n\n".join(system_parts)
        if options.temperature is not None:
            payload["temperature"] = options.temperature
        if options.tools:
            payload["tools"] = [_normalize_tool(tool) for tool in options.tools]
            payload["tool_choice"] = {"type": "auto"}
        wire.merge_extra_options(payload, options.extra)
        return payload

    def _precheck(self, model: str) -> tuple[str | None, str | None]:
        if not self.supports(model):
            return None, f"Model '{model}' is not configured for provider '{self.config.id}'"
        key = self.credentials.get(self.config.id)
        if not key:
            return None, f"No API key configured for provider '{self.config.id}'"
        return key, None

    async def is_available(self) -> bool:
        key = self.credentials.get(self.config.id)
        if not key:
            return False
        async with wire.make_client(self.config, self.transport, timeout=5.0) as client:
            return await wire.probe(client, f"{self.base_url}/v1/models", self._headers(key))

    async def chat(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        options: ChatOptions | None = None,
    ) -> AsyncIterator[Any]:
        options = options or ChatOptions()
        key, problem = self._precheck(model)
        if problem is not None or key is None:
            yield ErrorEvent(message=problem or "No API key")
            return
        try:
            payload = self._build_payload(model, messages, options, stream=True)
        except ValueError as exc:
            yield ErrorEvent(message=str(exc))
            return
        async with wire.make_client(self.config, self.transport) as client:
            async for event in wire.stream_request(
                client,
                "POST",
                f"{self.base_url}/v1/messages",
                headers=self._headers(key),
                json_body=payload,
                parser=parse_anthropic_stream,
                provider=self.config.id,
                model=model,
                cancel=options.cancel,
            ):
                yield event

    async def chat_complete(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        options: ChatOptions | None = None,
    ) -> ChatResult:
        options = options or ChatOptions()
        key, problem = self._precheck(model)
        if problem is not None or key is None:
            raise ProviderError(problem or "No API key", self.config.id, model)
        try:
            payload = self._build_payload(model, messages, options, stream=False)
        except ValueError as exc:
            raise ProviderError(str(exc), self.config.id, model) from exc
        async with wire.make_client(self.config, self.transport) as client:
            data = await wire.post_json(
                client,
                f"{self.base_url}/v1/messages",
                headers=self._headers(key),
                json_body=payload,
                provider=self.config.id,
                model=model,
                cancel=options.cancel,
            )
        texts: list[str] = []
        tool_calls: list[dict[str, Any]] = []
        for block in data.get("content") or []:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text":
                texts.append(block.get("text") or "")
            elif block.get("type") == "tool_use":
                tool_calls.append(
                    _tool_call(block.get("id"), block.get("name") or "", json.dumps(block.get("input") or {}))
                )
        usage = data.get("usage") if isinstance(data.get("usage"), dict) else {}
        input_tokens, cached_tokens = _input_usage(usage)
        return ChatResult(
            content="".join(texts),
            tool_calls=tool_calls or None,
            usage=TokenUsage(
                input_tokens=input_tokens,
                output_tokens=int(usage.get("output_tokens") or 0),
                cached_input_tokens=cached_tokens,
            ),
            finish_reason=_map_stop_reason(data.get("stop_reason")) or "stop",
        )
