from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from types import MappingProxyType

from .config import ModelConfig, ProviderConfig


@dataclass(frozen=True)
class ModelEntry:
    provider: ProviderConfig
    model: ModelConfig

    @property
    def key(self) -> str:
        return f"{self.provider.id}:{self.model.name}"


class ModelRegistry:
    """Read-only lookup of declared models keyed by ``(provider id, model name)``."""

    def __init__(self, providers: Iterable[ProviderConfig]) -> None:
        providers_by_id: dict[str, ProviderConfig] = {}
        entries: dict[tuple[str, str], ModelEntry] = {}
        for provider in providers:
            providers_by_id[provider.id] = provider
            for model in provider.models:
                entries[(provider.id, model.name)] = ModelEntry(provider, model)
        self._providers = MappingProxyType(providers_by_id)
        self._entries = MappingProxyType(entries)

    def get(self, provider_id: str, model_name: str) -> ModelConfig | None:
        entry = self._entries.get((provider_id, model_name))
        return entry.model if entry is not None else None

    def provider(self, provider_id: str) -> ProviderConfig | None:
        return self._providers.get(provider_id)

    def models(self) -> list[ModelEntry]:
        return list(self._entries.values())

    def by_capability(self, capability: str) -> list[ModelEntry]:
        return [entry for entry in self._entries.values() if capability in entry.model.caps]

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __iter__(self) -> Iterator[ModelEntry]:
        return iter(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)
