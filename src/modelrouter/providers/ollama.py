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
    PerfStats,
    TextEvent,
    TokenUsage,
    ToolCallEvent,
)
from . import wire

__all__ = ["OllamaAdapter", "parse_ollama_stream"]

DEFAULT_KEEP_ALIVE = "5m"


def _map_tool_calls(raw: Any) -> list[dict[str, Any]]:
    calls: list[dict[str, Any]] = []
    if not isinstance(raw, list):
        return calls
    for index, call in enumerate(raw):
        if not isinstance(call, dict):
            continue
        function = call.get("function") if isinstance(call.get("function"), dict) else {}
        arguments = function.get("arguments")
        if not isinstance(arguments, str):
            arguments = json.dumps(arguments or {})
        calls.append(
            {
                "id": call.get("id") or f"call_{index}",
                "type": "function",
                "function": {"name": function.get("name") or "", "arguments": arguments},
            }
        )
    return calls


def _done_event(record: dict[str, Any]) -> DoneEvent:
    return DoneEvent(
        usage=TokenUsage(
            input_tokens=int(record.get("prompt_eval_count") or 0),
            output_tokens=int(record.get("eval_count") or 0),
        ),
        finish_reason=record["done_reason"] if isinstance(record.get("done_reason"), str) else "stop",
        perf=PerfStats(
            total_duration=record.get("total_duration"),
            load_duration=record.get("load_duration"),
            prompt_eval_duration=record.get("prompt_eval_duration"),
            eval_duration=record.get("eval_duration"),
        ),
    )


async def parse_ollama_stream(lines: AsyncIterator[str]) -> AsyncIterator[Any]:
    async for line in lines:
        stripped = line.strip()
        if not stripped:
            continue
        record = wire.load_json_object(stripped)
        if record is None:
            continue
        if record.get("error"):
            yield ErrorEvent(message=str(record["error"]))
            return
        message = record.get("message") if isinstance(record.get("message"), dict) else {}
        if isinstance(message.get("content"), str) and message["content"]:
            yield TextEvent(delta=message["content"])
        calls = _map_tool_calls(message.get("tool_calls"))
        if calls:
            yield ToolCallEvent(calls=calls)
        if record.get("done"):
            yield _done_event(record)
            return
    yield DoneEvent(finish_reason="stop")


class OllamaAdapter:
    """Chat backend for a local Ollama daemon. No credential is required."""

    def __init__(
        self,
        config: ProviderConfig,
        credentials: CredentialStore | None = None,
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
        words = len(text.split())
        return max(math.ceil(words * 0.7), math.ceil(len(text) / 3.5))

    def _status_messages(self, model: str) -> dict[int, str]:
        return {404: f"Model '{model}' not found. Make sure it's pulled in Ollama."}

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
            "keep_alive": self.config.keep_alive or DEFAULT_KEEP_ALIVE,
        }
        model_options: dict[str, Any] = {}
        if options.temperature is not None:
            model_options["temperature"] = options.temperature
        if options.max_tokens is not None:
            model_options["num_predict"] = options.max_tokens
        model_options.update(
            {
                key: value
                for key, value in options.extra.items()
                if key not in wire.RESERVED_OPTION_KEYS and value is not None
            }
        )
        if model_options:
            payload["options"] = model_options
        if options.json:
            payload["format"] = "json"
        if options.tools:
            payload["tools"] = options.tools
        return payload

    async def is_available(self) -> bool:
        async with wire.make_client(self.config, self.transport, timeout=3.0) as client:
            return await wire.probe(client, f"{self.base_url}/api/tags")

    async def chat(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        options: ChatOptions | None = None,
    ) -> AsyncIterator[Any]:
        options = options or ChatOptions()
        if not self.supports(model):
            yield ErrorEvent(
                message=f"Model '{model}' is not configured for provider '{self.config.id}'"
            )
            return
        payload = self._build_payload(model, messages, options, stream=True)
        async with wire.make_client(self.config, self.transport) as client:
            async for event in wire.stream_request(
                client,
                "POST",
                f"{self.base_url}/api/chat",
                headers={"Content-Type": "application/json"},
                json_body=payload,
                parser=parse_ollama_stream,
                provider=self.config.id,
                model=model,
                cancel=options.cancel,
                status_messages=self._status_messages(model),
            ):
                yield event

    async def chat_complete(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        options: ChatOptions | None = None,
    ) -> ChatResult:
        options = options or ChatOptions()
        if not self.supports(model):
            raise ProviderError(
                f"Model '{model}' is not configured for provider '{self.config.id}'",
                self.config.id,
                model,
            )
        payload = self._build_payload(model, messages, options, stream=False)
        async with wire.make_client(self.config, self.transport) as client:
            data = await wire.post_json(
                client,
                f"{self.base_url}/api/chat",
                headers={"Content-Type": "application/json"},
                json_body=payload,
                provider=self.config.id,
                model=model,
                status_messages=self._status_messages(model),
                cancel=options.cancel,
            )
        message = data.get("message") if isinstance(data.get("message"), dict) else {}
        done = _done_event(data)
        return ChatResult(
            content=message.get("content") or "",
            tool_calls=_map_tool_calls(message.get("tool_calls")) or None,
            usage=done.usage,
            finish_reason=done.finish_reason or "stop",
            perf=done.perf,
        )

    async def list_local_models(self) -> list[dict[str, Any]]:
        async with wire.make_client(self.config, self.transport) as client:
            try:
                response = await client.get(f"{self.base_url}/api/tags")
            except httpx.HTTPError as exc:
                raise ProviderError(
                    f"Failed to fetch models: {exc}", self.config.id
                ) from exc
            await wire.raise_for_status(response, provider=self.config.id)
            data = response.json()
        models = data.get("models") if isinstance(data, dict) else None
        return [entry for entry in models or [] if isinstance(entry, dict)]

    async def is_model_pulled(self, model: str) -> bool:
        try:
            models = await self.list_local_models()
        except ProviderError:
            return False
        names = {entry.get("name") for entry in models} | {entry.get("model") for entry in models}
        # the daemon reports untagged pulls as "<name>:latest"
        return model in names or f"{model}:latest" in names
