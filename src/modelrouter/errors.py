from __future__ import annotations


class ProviderError(Exception):
    """Raised when a backend rejects or fails a request."""

    def __init__(
        self,
        message: str,
        provider: str,
        model: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.model = model
        self.status_code = status_code


class RateLimitError(ProviderError):
    def __init__(
        self,
        provider: str,
        model: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        target = f"{provider}:{model}" if model else provider
        super().__init__(f"Rate limit exceeded for {target}", provider, model, 429)
        self.retry_after = retry_after


class AuthenticationError(ProviderError):
    def __init__(self, provider: str, model: str | None = None) -> None:
        super().__init__(f"Authentication failed for {provider}", provider, model, 401)


class RequestCancelledError(ProviderError):
    """Raised by non-streaming calls whose cancel token fired."""

    def __init__(self, provider: str, model: str | None = None) -> None:
        super().__init__("Request cancelled", provider, model)


class NoCandidateError(RuntimeError):
    """Raised when every rule and the default preference list are exhausted."""

    def __init__(self, message: str = "No available models found for routing", tried: list[str] | None = None):
        super().__init__(message)
        self.tried = list(tried or [])


class BudgetExceededError(RuntimeError):
    """Raised only when the budget is configured with ``hard_stop``."""

    def __init__(self, reason: str, estimated_cost: float = 0.0) -> None:
        super().__init__(reason)
        self.reason = reason
        self.estimated_cost = estimated_cost


class ConfigError(ValueError):
    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path


__all__ = [
    "ProviderError",
    "RateLimitError",
    "AuthenticationError",
    "RequestCancelledError",
    "NoCandidateError",
    "BudgetExceededError",
    "ConfigError",
]
