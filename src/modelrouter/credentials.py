from __future__ import annotations

import os
from collections.abc import Iterable, Mapping
from typing import Protocol, runtime_checkable

from .config import ProviderConfig


@runtime_checkable
class CredentialStore(Protocol):
    def get(self, provider_id: str) -> str | None: ...


def default_env_var(provider_id: str) -> str:
    return provider_id.upper().replace("-", "_") + "_API_KEY"


class EnvCredentialStore:
    """Resolve API keys from the process environment.

    A provider's ``credential_ref`` names the variable to read. Without one
    the store falls back to ``<PROVIDER_ID>_API_KEY``.
    """

    def __init__(
        self,
        providers: Iterable[ProviderConfig] = (),
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self._refs = {provider.id: provider.credential_ref for provider in providers}
        self._environ = environ if environ is not None else os.environ

    def get(self, provider_id: str) -> str | None:
        name = self._refs.get(provider_id) or default_env_var(provider_id)
        value = self._environ.get(name, "")
        return value.strip() or None


class StaticCredentialStore:
    def __init__(self, keys: Mapping[str, str] | None = None) -> None:
        self._keys = dict(keys or {})

    def get(self, provider_id: str) -> str | None:
        return self._keys.get(provider_id) or None
