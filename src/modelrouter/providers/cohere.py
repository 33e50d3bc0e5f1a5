from __future__ import annotations

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

__all__ = ["CohereAdapter", "parse_cohere_stream"]

_FINISH_REASONS = {
    "COMPLETE": "stop",
    "STOP_SEQUENCE": "stop",
    "MAX_TOKENS": "length",
    "TOOL_CALL": "tool_calls",
}


def _map_finish_reason(raw: Any) -> str:
    if not raw or not isinstance(raw, str):
        return "stop"
    return _FINISH_REASONS.get(raw, raw.lower())


def _map_usage(container: Any) -> TokenUsage | None:
    if not isinstance(container, dict):
        return None
    billed = container.get("billed_units")
    if not isinstance(billed, dict):
        return None
    return TokenUsage(
        input_tokens=int(billed.get("input_tokens") or 0),
        output_tokens=int(billed.get("output_tokens") or 0),
    )


def _record(line: str) -> dict[str, Any] | None:
    data = wire.sse_data(line)
    if data is None:
        # v1 streams are bare newline-delimited JSON
        stripped = line.strip()
        data = stripped if stripped.startswith("{") else None
    if not data or data == wire.DONE_SENTINEL:
        return None
    return wire.load_json_object(data)


async def parse_cohere_stream(lines: AsyncIterator[str]) -> AsyncIterator[Any]:
    pending: dict[str, Any] | None = None
    async for line in lines:
        record = _record(line)
        if record is None:
            continue
        record_type = record.get("type") or record.get("event_type")
        delta = record.get("delta") if isinstance(record.get("delta"), dict) else {}
        message = delta.get("message") if isinstance(delta.get("message"), dict) else {}
        if record_type == "content-delta":
            content = message.get("content") if isinstance(message.get("content"), dict) else {}
            text = content.get("text")
            if isinstance(text, str) and text:
                yield TextEvent(delta=text)
        elif record_type == "tool-call-start":
            call = message.get("tool_calls") if isinstance(message.get("tool_calls"), dict) else {}
            function = call.get("function") if isinstance(call.get("function"), dict) else {}
            arguments = function.get("arguments")
            pending = {
                "id": call.get("id"),
                "type": "function",
                "function": {
                    "name": function.get("name") or "",
                    "arguments": arguments if isinstance(arguments, str) else "",
                },
            }
        elif record_type == "tool-call-delta":
            call = message.get("tool_calls") if isinstance(message.get("tool_calls"), dict) else {}
            function = call.get("function") if isinstance(call.get("function"), dict) else {}
            if pending is not None:
                arguments = function.get("arguments")
                if isinstance(arguments, str):
                    pending["function"]["arguments"] += arguments
        elif record_type == "tool-call-end":
            if pending is not None:
                yield ToolCallEvent(calls=[pending])
                pending = None
        elif record_type == "message-end":
            yield DoneEvent(
                usage=_map_usage(delta.get("usage")),
                finish_reason=_map_finish_reason(delta.get("finish_reason")),
            )
            return
        elif record_type == "text-generation":
            if isinstance(record.get("text"), str) and record["text"]:
                yield TextEvent(delta=record["text"])
        elif record_type == "stream-end":
            response = record.get("response") if isinstance(record.get("response"), dict) else {}
            yield DoneEvent(
                usage=_map_usage(response.get("meta")),
                finish_reason=_map_finish_reason(record.get("finish_reason")),
            )
            return
        elif record_type == "error" or "error" in record:
            error = record.get("error") or record.get("message")
            text = error.get("message") if isinstance(error, dict) else error
            yield ErrorEvent(message=str(text or "Unknown stream error"))
            return
    yield DoneEvent(finish_reason="stop")


class CohereAdapter:
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
        return {"Content-Type": "application/json", "Authorization": f"Bearer {key}"}

    def _build_payload(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        options: ChatOptions,
        *,
        stream: bool,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model,
            "messages": [message.model_dump() for message in messages],
            "stream": stream,
        }
        if options.max_tokens is not None:
            payload["max_tokens"] = options.max_tokens
        if options.temperature is not None:
            payload["temperature"] = options.temperature
        if options.json:
            payload["response_format"] = {"type": "json_object"}
        if options.tools:
            payload["tools"] = options.tools
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
        payload = self._build_payload(model, messages, options, stream=True)
        async with wire.make_client(self.config, self.transport) as client:
            async for event in wire.stream_request(
                client,
                "POST",
                f"{self.base_url}/v2/chat",
                headers=self._headers(key),
                json_body=payload,
                parser=parse_cohere_stream,
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
        payload = self._build_payload(model, messages, options, stream=False)
        async with wire.make_client(self.config, self.transport) as client:
            data = await wire.post_json(
                client,
                f"{self.base_url}/v2/chat",
                headers=self._headers(key),
                json_body=payload,
                provider=self.config.id,
                model=model,
                cancel=options.cancel,
            )
        message = data.get("message") if isinstance(data.get("message"), dict) else {}
        content = message.get("content")
        if isinstance(content, list):
            text = "".join(
                block.get("text") or ""
                for block in content
                if isinstance(block, dict) and block.get("type") == "text"
            )
        else:
            text = content or data.get("text") or ""
        return ChatResult(
            content=text,
            tool_calls=message.get("tool_calls") or None,
            usage=_map_usage(data.get("usage")),
            finish_reason=_map_finish_reason(data.get("finish_reason")),
        )
