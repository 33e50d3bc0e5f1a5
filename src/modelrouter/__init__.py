from .budget import BudgetLedger, JsonFileBudgetStorage, MemoryBudgetStorage
from .config import LoadedConfig, ProfileConfig, ProviderConfig, load_config
from .credentials import EnvCredentialStore, StaticCredentialStore
from .errors import (
    AuthenticationError,
    BudgetExceededError,
    ConfigError,
    NoCandidateError,
    ProviderError,
    RateLimitError,
)
from .registry import ModelRegistry
from .router import ModelRouter, RoutingContext, RoutingResult
from .service import ModelRouterService, RoutedCompletion
from .types import CancelToken, ChatMessage, ChatOptions, ChatResult, collect_chat_result

__all__ = [
    "AuthenticationError",
    "BudgetExceededError",
    "BudgetLedger",
    "CancelToken",
    "ChatMessage",
    "ChatOptions",
    "ChatResult",
    "ConfigError",
    "EnvCredentialStore",
    "JsonFileBudgetStorage",
    "LoadedConfig",
    "MemoryBudgetStorage",
    "ModelRegistry",
    "ModelRouter",
    "ModelRouterService",
    "NoCandidateError",
    "ProfileConfig",
    "ProviderConfig",
    "ProviderError",
    "RateLimitError",
    "RoutedCompletion",
    "RoutingContext",
    "RoutingResult",
    "StaticCredentialStore",
    "collect_chat_result",
    "load_config",
]
