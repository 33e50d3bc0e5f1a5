import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Type, TypeVar

try:
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - exercised on Python < 3.11
    import tomli as tomllib

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    NonNegativeFloat,
    NonNegativeInt,
    PositiveFloat,
    PositiveInt,
    ValidationError,
    field_validator,
    model_validator,
)

from .errors import ConfigError

logger = logging.getLogger(__name__)

ProviderKind = Literal["openai-compat", "anthropic", "cohere", "ollama", "custom"]
ProfileMode = Literal["auto", "speed", "quality", "cheap", "local-only", "offline", "privacy-strict"]
RouteTarget = Literal["chat", "completion"]

LOCAL_PROVIDER_KINDS: frozenset[str] = frozenset({"ollama"})
PRIVACY_FORCING_MODES: frozenset[str] = frozenset({"privacy-strict", "local-only"})

PROVIDERS_FILENAME = "providers.toml"
ROUTER_FILENAME = "router.yaml"


class ModelPrice(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    input_per_mtok: NonNegativeFloat
    output_per_mtok: NonNegativeFloat
    cached_input_per_mtok: NonNegativeFloat | None = None


class ModelConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(min_length=1)
    context: PositiveInt | None = None
    caps: frozenset[str] = frozenset()
    price: ModelPrice | None = None


class ProviderConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(min_length=1)
    kind: ProviderKind = "openai-compat"
    base_url: str = Field(min_length=1)
    credential_ref: str | None = None
    models: tuple[ModelConfig, ...]
    timeout: PositiveFloat = 60.0
    max_retries: NonNegativeInt = 0
    local: bool | None = None
    organization_id: str | None = None
    default_headers: Dict[str, str] = Field(default_factory=dict)
    keep_alive: str | None = None

    @field_validator("models")
    @classmethod
    def _require_models(cls, value: tuple[ModelConfig, ...]) -> tuple[ModelConfig, ...]:
        if not value:
            raise ValueError("provider must declare at least one model")
        return value

    @property
    def is_local(self) -> bool:
        if self.local is not None:
            return self.local
        return self.kind in LOCAL_PROVIDER_KINDS

    def supports(self, model_name: str) -> bool:
        return any(model.name == model_name for model in self.models)


class RuleCondition(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    any_keyword: tuple[str, ...] | None = None
    all_keywords: tuple[str, ...] | None = None
    file_lang_in: tuple[str, ...] | None = None
    file_path_matches: tuple[str, ...] | None = None
    min_context_kb: NonNegativeFloat | None = None
    max_context_kb: NonNegativeFloat | None = None
    privacy_strict: bool | None = None
    mode: tuple[str, ...] | None = None


def _check_preferences(prefer: tuple[str, ...]) -> tuple[str, ...]:
    for preference in prefer:
        if ":" not in preference:
            raise ValueError(
                f"prefer entries must use the 'providerId:modelName' format, got '{preference}'"
            )
    return prefer


class RuleAction(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    prefer: tuple[str, ...] = ()
    target: RouteTarget = "chat"
    priority: float | None = None

    @field_validator("prefer")
    @classmethod
    def _validate_prefer(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        return _check_preferences(value)


class RoutingRule(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    id: str = Field(min_length=1)
    when: RuleCondition = Field(default_factory=RuleCondition, alias="if")
    then: RuleAction


class DefaultRoute(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    prefer: tuple[str, ...] = ()
    target: RouteTarget = "chat"

    @field_validator("prefer")
    @classmethod
    def _validate_prefer(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        return _check_preferences(value)


class BudgetConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    daily_usd: NonNegativeFloat | None = None
    monthly_usd: NonNegativeFloat | None = None
    hard_stop: bool = False
    warning_threshold: float = Field(default=80.0, ge=0, le=100)


class PrivacyConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    redact_paths: tuple[str, ...] = ()
    strip_file_content_over_kb: PositiveFloat | None = None


class ProfileConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = "default"
    mode: ProfileMode = "auto"
    budget: BudgetConfig | None = None
    privacy: PrivacyConfig = Field(default_factory=PrivacyConfig)
    providers: tuple[ProviderConfig, ...] = ()
    rules: tuple[RoutingRule, ...] = ()
    default: DefaultRoute = Field(default_factory=DefaultRoute)

    def provider(self, provider_id: str) -> ProviderConfig | None:
        for provider in self.providers:
            if provider.id == provider_id:
                return provider
        return None


class _ProfileModel(BaseModel):
    mode: ProfileMode = "auto"
    budget: BudgetConfig | None = None
    privacy: PrivacyConfig = Field(default_factory=PrivacyConfig)
    providers: list[str] | None = None
    rules: list[RoutingRule] = Field(default_factory=list)
    default: DefaultRoute = Field(default_factory=DefaultRoute)

    model_config = ConfigDict(extra="forbid")


class _RouterModel(BaseModel):
    active_profile: str = "default"
    profiles: Dict[str, _ProfileModel]

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: object) -> object:
        if not isinstance(data, dict):
            raise ValueError("router configuration must be a mapping")
        if "profiles" in data:
            return data
        # single-profile shorthand: the whole document is the default profile
        return {"active_profile": "default", "profiles": {"default": data}}


@dataclass
class LoadedConfig:
    providers: Dict[str, ProviderConfig]
    profile: ProfileConfig
    profiles: Dict[str, ProfileConfig] = field(default_factory=dict)
    mtimes: dict[str, float] = field(default_factory=dict)
    watch_paths: tuple[str, ...] = field(default_factory=tuple)
    config_dir: str | None = None


_M = TypeVar("_M", bound=BaseModel)


def _validate(model: Type[_M], data: Any, *, prefix: str, path: str) -> _M:
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        problems = []
        for error in exc.errors():
            location = " -> ".join(str(item) for item in error.get("loc", ())) or "<root>"
            problems.append(f"{location}: {error.get('msg', 'invalid value')}")
        raise ConfigError(f"{prefix}: " + "; ".join(problems), path) from exc


def _read_providers(prov_path: str) -> Dict[str, ProviderConfig]:
    try:
        with open(prov_path, "rb") as f:
            prov_data = tomllib.load(f)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Failed to parse {PROVIDERS_FILENAME}: {exc}", prov_path) from exc
    providers: Dict[str, ProviderConfig] = {}
    for name, d in prov_data.items():
        if not isinstance(d, dict):
            raise ConfigError(f"Provider '{name}' must be a table", prov_path)
        providers[name] = _validate(
            ProviderConfig,
            {**d, "id": name},
            prefix=f"Provider '{name}'",
            path=prov_path,
        )
    return providers


def _read_router(router_path: str) -> _RouterModel:
    try:
        with open(router_path, "r", encoding="utf-8") as f:
            rdata = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse {ROUTER_FILENAME}: {exc}", router_path) from exc
    return _validate(_RouterModel, rdata, prefix="Router configuration", path=router_path)


def _build_profile(
    name: str,
    raw: _ProfileModel,
    providers: Dict[str, ProviderConfig],
    *,
    path: str,
) -> ProfileConfig:
    if raw.providers is None:
        selected = tuple(providers.values())
    else:
        missing = [provider_id for provider_id in raw.providers if provider_id not in providers]
        if missing:
            available = ", ".join(sorted(providers)) or "<none>"
            raise ConfigError(
                f"Profile '{name}' lists undefined providers {', '.join(missing)}. Available providers: {available}",
                path,
            )
        selected = tuple(providers[provider_id] for provider_id in raw.providers)
    profile = ProfileConfig(
        name=name,
        mode=raw.mode,
        budget=raw.budget,
        privacy=raw.privacy,
        providers=selected,
        rules=tuple(raw.rules),
        default=raw.default,
    )
    validate_profile(profile, path=path)
    return profile


def validate_profile(profile: ProfileConfig, *, path: str | None = None) -> None:
    known = {provider.id for provider in profile.providers}
    available = ", ".join(sorted(known)) or "<none>"
    routes: list[tuple[str, tuple[str, ...]]] = [
        (f"rule '{rule.id}'", rule.then.prefer) for rule in profile.rules
    ]
    routes.append(("default route", profile.default.prefer))
    for label, prefer in routes:
        for preference in prefer:
            provider_id, _, _ = preference.partition(":")
            if provider_id not in known:
                raise ConfigError(
                    "Profile '{profile}' {label} references undefined provider '{provider}'. Available providers: {available}".format(
                        profile=profile.name,
                        label=label,
                        provider=provider_id,
                        available=available,
                    ),
                    path,
                )
    for rule in profile.rules:
        if not rule.then.prefer:
            logger.warning(
                f"routing rule has no preferences and will never be selected profile={profile.name} rule={rule.id}"
            )


def load_config(config_dir: str, profile: str | None = None) -> LoadedConfig:
    prov_path = os.path.join(config_dir, PROVIDERS_FILENAME)
    router_path = os.path.join(config_dir, ROUTER_FILENAME)
    for path in (prov_path, router_path):
        if not os.path.exists(path):
            raise ConfigError(f"Configuration file not found: {path}", path)

    providers = _read_providers(prov_path)
    parsed = _read_router(router_path)
    active = profile or parsed.active_profile
    if active not in parsed.profiles:
        raise ConfigError(f"Active profile '{active}' not found in profiles", router_path)

    profiles = {
        name: _build_profile(name, raw, providers, path=router_path)
        for name, raw in parsed.profiles.items()
    }
    mtimes = {
        "providers": os.stat(prov_path).st_mtime,
        "router": os.stat(router_path).st_mtime,
    }
    return LoadedConfig(
        providers=providers,
        profile=profiles[active],
        profiles=profiles,
        mtimes=mtimes,
        watch_paths=(prov_path, router_path),
        config_dir=config_dir,
    )


def config_changed(loaded: LoadedConfig) -> bool:
    if not loaded.watch_paths:
        return False
    try:
        current = [os.stat(path).st_mtime for path in loaded.watch_paths]
    except FileNotFoundError:
        return False
    previous = [loaded.mtimes.get(key) for key in ("providers", "router")]
    return current != previous
