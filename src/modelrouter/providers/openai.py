from __future__ import annotations

import logging
import math
from collections.abc import AsyncIterator, Sequence
from typing import Any
from urllib.parse import urlparse, urlunparse

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

logger = logging.getLogger(__name__)

__all__ = ["OpenAICompatAdapter", "parse_openai_stream"]


def _is_version_segment(segment: str) -> bool:
    lowered = segment.lower()
    return lowered.startswith("v") and len(lowered) > 1 and lowered[1].isdigit()


def _api_root(base_url: str) -> str:
    """Normalize a configured base URL to the API root that owns ``/models``.

    A trailing ``chat/completions`` is stripped, and ``v1`` is appended for
    api.openai.com style hosts that were configured without a version.
    """
    parsed = urlparse(base_url.strip())
    segments = [segment for segment in (parsed.path or "").split("/") if segment]
    lowered = [segment.lower() for segment in segments]
    if lowered[-2:] == ["chat", "completions"]:
        segments = segments[:-2]
    elif lowered[-1:] == ["chat"]:
        segments = segments[:-1]
    hostname = (parsed.hostname or "").lower()
    if hostname.endswith("openai.com") and not any(_is_version_segment(s) for s in segments):
        segments.append("v1")
    path = "/" + "/".join(segments) if segments else ""
    return urlunparse(parsed._replace(path=path)).rstrip("/")


def _map_usage(payload: dict[str, Any]) -> TokenUsage:
    details = payload.get("prompt_tokens_details")
    cached = details.get("cached_tokens") if isinstance(details, dict) else None
    return TokenUsage(
        input_tokens=int(payload.get("prompt_tokens") or 0),
        output_tokens=int(payload.get("completion_tokens") or 0),
        cached_input_tokens=int(cached or 0),
    )


def _merge_tool_call(calls: dict[int, dict[str, Any]], fragment: Any) -> None:
    if not isinstance(fragment, dict):
        return
    index = fragment.get("index")
    if not isinstance(index, int):
        index = len(calls)
    entry = calls.setdefault(
        index, {"id": None, "type": "function", "function": {"name": "", "arguments": ""}}
    )
    if fragment.get("id"):
        entry["id"] = fragment["id"]
    function = fragment.get("function")
    if isinstance(function, dict):
        if function.get("name"):
            entry["function"]["name"] = function["name"]
        arguments = function.get("arguments")
        if isinstance(arguments, str):
            entry["function"]["arguments"] += arguments


async def parse_openai_stream(lines: AsyncIterator[str]) -> AsyncIterator[Any]:
    finish_reason: str | None = None
    usage: TokenUsage | None = None
    tool_calls: dict[int, dict[str, Any]] = {}
    async for line in lines:
        data = wire.sse_data(line)
        if not data:
            continue
        if data == wire.DONE_SENTINEL:
            break
        payload = wire.load_json_object(data)
        if payload is None:
            continue
        error = payload.get("error")
        if error is not None:
            message = error.get("message") if isinstance(error, dict) else str(error)
            yield ErrorEvent(message=message or "Unknown stream error")
            return
        usage_payload = payload.get("usage")
        if isinstance(usage_payload, dict):
            usage = _map_usage(usage_payload)
        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            continue
        choice = choices[0]
        delta = choice.get("delta")
        if isinstance(delta, dict):
            content = delta.get("content")
            if isinstance(content, str) and content:
                yield TextEvent(delta=content)
            fragments = delta.get("tool_calls")
            if isinstance(fragments, list):
                for fragment in fragments:
                    _merge_tool_call(tool_calls, fragment)
        if isinstance(choice.get("finish_reason"), str):
            finish_reason = choice["finish_reason"]
    if tool_calls:
        yield ToolCallEvent(calls=[tool_calls[index] for index in sorted(tool_calls)])
    yield DoneEvent(usage=usage, finish_reason=finish_reason or "stop")


class OpenAICompatAdapter:
    """Chat backend for OpenAI and servers that speak its ``chat/completions`` API."""

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
        self.api_root = _api_root(config.base_url)

    def id(self) -> str:
        return self.config.id

    def supports(self, model: str) -> bool:
        return self.config.supports(model)

    def estimate_tokens(self, text: str) -> int:
        words = len(text.split())
        return max(math.ceil(words * 0.75), math.ceil(len(text) / 4))

    def _api_key(self) -> str | None:
        return self.credentials.get(self.config.id)

    def _headers(self, key: str | None) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if key:
            headers["Authorization"] = f"Bearer {key}"
        if self.config.organization_id:
            headers["OpenAI-Organization"] = self.config.organization_id
        headers.update(self.config.default_headers)
        return headers

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
            payload["tool_choice"] = "auto"
        wire.merge_extra_options(payload, options.extra)
        return payload

    def _precheck(self, model: str) -> tuple[str | None, str | None]:
        if not self.supports(model):
            return None, f"Model '{model}' is not configured for provider '{self.config.id}'"
        key = self._api_key()
        if not key and not self.config.is_local:
            return None, f"No API key configured for provider '{self.config.id}'"
        return key, None

    async def is_available(self) -> bool:
        key = self._api_key()
        if not key and not self.config.is_local:
            return False
        async with wire.make_client(self.config, self.transport, timeout=5.0) as client:
            return await wire.probe(client, f"{self.api_root}/models", self._headers(key))

    async def chat(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        options: ChatOptions | None = None,
    ) -> AsyncIterator[Any]:
        options = options or ChatOptions()
        key, problem = self._precheck(model)
        if problem is not None:
            yield ErrorEvent(message=problem)
            return
        payload = self._build_payload(model, messages, options, stream=True)
        async with wire.make_client(self.config, self.transport) as client:
            async for event in wire.stream_request(
                client,
                "POST",
                f"{self.api_root}/chat/completions",
                headers=self._headers(key),
                json_body=payload,
                parser=parse_openai_stream,
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
        if problem is not None:
            raise ProviderError(problem, self.config.id, model)
        payload = self._build_payload(model, messages, options, stream=False)
        async with wire.make_client(self.config, self.transport) as client:
            data = await wire.post_json(
                client,
                f"{self.api_root}/chat/completions",
                headers=self._headers(key),
                json_body=payload,
                provider=self.config.id,
                model=model,
                cancel=options.cancel,
            )
        choices = data.get("choices") or []
        choice = choices[0] if choices and isinstance(choices[0], dict) else {}
        message = choice.get("message") if isinstance(choice.get("message"), dict) else {}
        usage_payload = data.get("usage")
        return ChatResult(
            content=message.get("content") or "",
            tool_calls=message.get("tool_calls") or None,
            usage=_map_usage(usage_payload) if isinstance(usage_payload, dict) else None,
            finish_reason=choice.get("finish_reason") or "stop",
        )

    async def list_models(self) -> list[str]:
        key = self._api_key()
        async with wire.make_client(self.config, self.transport, timeout=5.0) as client:
            try:
                response = await client.get(f"{self.api_root}/models", headers=self._headers(key))
            except httpx.HTTPError as exc:
                raise ProviderError(f"Transport error: {exc}", self.config.id) from exc
            await wire.raise_for_status(response, provider=self.config.id)
            data = response.json()
        entries = data.get("data") if isinstance(data, dict) else None
        return [entry["id"] for entry in entries or [] if isinstance(entry, dict) and "id" in entry]
