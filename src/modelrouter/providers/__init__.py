from __future__ import annotations

from collections.abc import AsyncIterator, Callable, Iterable, Mapping, Sequence
from typing import Any, Dict, Protocol, runtime_checkable

import httpx

from ..config import ProviderConfig
from ..credentials import CredentialStore, StaticCredentialStore
from ..types import ChatMessage, ChatOptions, ChatResult
from .anthropic import AnthropicAdapter
from .cohere import CohereAdapter
from .ollama import OllamaAdapter
from .openai import OpenAICompatAdapter


@runtime_checkable
class ChatBackend(Protocol):
    """Uniform contract every wire adapter satisfies."""

    def id(self) -> str: ...

    def supports(self, model: str) -> bool: ...

    def estimate_tokens(self, text: str) -> int: ...

    async def is_available(self) -> bool: ...

    def chat(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        options: ChatOptions | None = None,
    ) -> AsyncIterator[Any]: ...

    async def chat_complete(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        options: ChatOptions | None = None,
    ) -> ChatResult: ...


BackendFactory = Callable[..., ChatBackend]


class ProviderRegistry:
    _PROVIDER_FACTORIES: dict[str, BackendFactory] = {
        "openai-compat": OpenAICompatAdapter,
        "custom": OpenAICompatAdapter,
        "anthropic": AnthropicAdapter,
        "cohere": CohereAdapter,
        "ollama": OllamaAdapter,
    }

    def __init__(
        self,
        providers: Iterable[ProviderConfig],
        credentials: CredentialStore | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        factories: Mapping[str, BackendFactory] | None = None,
    ) -> None:
        credentials = credentials or StaticCredentialStore()
        registered = {**self._PROVIDER_FACTORIES, **(factories or {})}
        self.providers: Dict[str, ChatBackend] = {}
        for config in providers:
            factory = registered.get(config.kind)
            if factory is None:
                raise ValueError(
                    f"Unknown provider type '{config.kind}' for provider '{config.id}'"
                )
            self.providers[config.id] = factory(config, credentials, transport=transport)

    def get(self, name: str) -> ChatBackend:
        return self.providers[name]

    def __contains__(self, name: object) -> bool:
        return name in self.providers

    def __iter__(self):
        return iter(self.providers.values())


__all__ = [
    "ChatBackend",
    "ProviderRegistry",
    "OpenAICompatAdapter",
    "AnthropicAdapter",
    "CohereAdapter",
    "OllamaAdapter",
]
