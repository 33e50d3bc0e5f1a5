from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import httpx

from .budget import (
    BudgetLedger,
    BudgetStorage,
    CostEstimate,
    Operation,
    estimate_cost,
)
from .config import LoadedConfig, ModelConfig, ProfileConfig
from .credentials import CredentialStore, EnvCredentialStore
from .errors import ProviderError
from .providers import BackendFactory, ChatBackend, ProviderRegistry
from .registry import ModelRegistry
from .router import ModelRouter, RouteSimulation, RoutingContext, RoutingResult
from .types import (
    ChatMessage,
    ChatOptions,
    ChatResult,
    DoneEvent,
    TokenUsage,
    collect_chat_result,
)

logger = logging.getLogger(__name__)


@dataclass
class RoutedCompletion:
    routing: RoutingResult
    result: ChatResult


def _prompt_text(messages: Sequence[ChatMessage]) -> str:
    return "\n".join(message.content for message in messages)


class ModelRouterService:
    """Facade over routing, adapters and the budget ledger.

    ``chat`` and ``chat_complete`` check the budget before the request is
    issued and record the actual usage once the backend reports it.
    """

    def __init__(
        self,
        profile: ProfileConfig,
        backends: ProviderRegistry,
        *,
        registry: ModelRegistry | None = None,
        ledger: BudgetLedger | None = None,
        loaded: LoadedConfig | None = None,
        router_logger: logging.Logger | None = None,
    ) -> None:
        self.profile = profile
        self.backends = backends
        self.registry = registry if registry is not None else ModelRegistry(profile.providers)
        self.ledger = ledger if ledger is not None else BudgetLedger()
        self.loaded = loaded
        self.router = ModelRouter(
            profile,
            backends.providers,
            self.registry,
            ledger=self.ledger,
            logger=router_logger,
        )

    @classmethod
    def from_config(
        cls,
        loaded: LoadedConfig,
        *,
        credentials: CredentialStore | None = None,
        storage: BudgetStorage | None = None,
        ledger: BudgetLedger | None = None,
        clock: Callable[[], datetime] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        factories: Mapping[str, BackendFactory] | None = None,
    ) -> "ModelRouterService":
        profile = loaded.profile
        if credentials is None:
            credentials = EnvCredentialStore(profile.providers)
        backends = ProviderRegistry(
            profile.providers, credentials, transport=transport, factories=factories
        )
        if ledger is None:
            ledger = BudgetLedger(storage, clock=clock or datetime.now)
        return cls(profile, backends, ledger=ledger, loaded=loaded)

    def _resolve(self, provider_id: str, model_name: str) -> tuple[ChatBackend, ModelConfig]:
        if provider_id not in self.backends:
            raise ProviderError(f"Unknown provider '{provider_id}'", provider_id, model_name, 404)
        model = self.registry.get(provider_id, model_name)
        if model is None:
            raise ProviderError(
                f"Model '{provider_id}:{model_name}' is not configured", provider_id, model_name, 404
            )
        return self.backends.get(provider_id), model

    async def _check_budget(
        self,
        provider_id: str,
        model: ModelConfig,
        messages: Sequence[ChatMessage],
        options: ChatOptions,
    ) -> list[str]:
        budget = self.profile.budget
        if budget is None or model.price is None:
            return []
        estimated = estimate_cost(_prompt_text(messages), model, provider_id, options.max_tokens)
        return await self.ledger.ensure_within_budget(estimated.total_cost, budget)

    async def _record(
        self,
        provider_id: str,
        model: ModelConfig,
        usage: TokenUsage | None,
        operation: Operation,
    ) -> None:
        if usage is None:
            logger.debug(f"no usage reported provider={provider_id} model={model.name}")
            return
        try:
            await self.ledger.record_usage(provider_id, model.name, usage, model.price, operation)
        except (OSError, ValueError) as exc:
            logger.warning(
                f"failed to record usage provider={provider_id} model={model.name} error={exc}"
            )

    async def route(self, context: RoutingContext) -> RoutingResult:
        return await self.router.route(context)

    async def simulate_route(self, context: RoutingContext) -> RouteSimulation:
        return await self.router.simulate_route(context)

    async def _chat(
        self,
        provider_id: str,
        model_name: str,
        messages: Sequence[ChatMessage],
        options: ChatOptions | None,
        operation: Operation,
    ) -> AsyncIterator[Any]:
        options = options or ChatOptions()
        backend, model = self._resolve(provider_id, model_name)
        await self._check_budget(provider_id, model, messages, options)
        async for event in backend.chat(model_name, messages, options):
            if isinstance(event, DoneEvent):
                await self._record(provider_id, model, event.usage, operation)
            yield event
            if event.terminal:
                return

    def chat(
        self,
        provider_id: str,
        model_name: str,
        messages: Sequence[ChatMessage],
        options: ChatOptions | None = None,
    ) -> AsyncIterator[Any]:
        return self._chat(provider_id, model_name, messages, options, "chat")

    async def chat_complete(
        self,
        provider_id: str,
        model_name: str,
        messages: Sequence[ChatMessage],
        options: ChatOptions | None = None,
    ) -> ChatResult:
        options = options or ChatOptions()
        backend, model = self._resolve(provider_id, model_name)
        await self._check_budget(provider_id, model, messages, options)
        result = await backend.chat_complete(model_name, messages, options)
        await self._record(provider_id, model, result.usage, "chat")
        return result

    async def estimate_cost(
        self,
        prompt: str,
        provider_id: str,
        model_name: str,
        expected_output_tokens: int | None = None,
    ) -> CostEstimate:
        _, model = self._resolve(provider_id, model_name)
        return estimate_cost(prompt, model, provider_id, expected_output_tokens)

    def chat_routed(
        self,
        routing: RoutingResult,
        messages: Sequence[ChatMessage] | None = None,
        options: ChatOptions | None = None,
    ) -> AsyncIterator[Any]:
        """Chat with a routed model. Without messages the projected prompt is sent."""
        if not messages:
            messages = [ChatMessage(role="user", content=routing.prompt)]
        operation: Operation = "completion" if routing.target == "completion" else "chat"
        return self._chat(routing.provider_id, routing.model_name, messages, options, operation)

    async def stream(
        self,
        context: RoutingContext,
        messages: Sequence[ChatMessage] | None = None,
        options: ChatOptions | None = None,
    ) -> AsyncIterator[Any]:
        routing = await self.route(context)
        async for event in self.chat_routed(routing, messages, options):
            yield event

    async def complete(
        self,
        context: RoutingContext,
        messages: Sequence[ChatMessage] | None = None,
        options: ChatOptions | None = None,
    ) -> RoutedCompletion:
        routing = await self.route(context)
        result = await collect_chat_result(
            self.chat_routed(routing, messages, options),
            provider=routing.provider_id,
            model=routing.model_name,
        )
        return RoutedCompletion(routing=routing, result=result)

    async def budget_report(self) -> dict[str, Any]:
        usage = await self.ledger.get_usage()
        budget = self.profile.budget
        warnings = await self.ledger.get_budget_warnings(budget) if budget is not None else []
        return {
            "daily_spent": usage.daily_spent,
            "monthly_spent": usage.monthly_spent,
            "last_reset": usage.last_reset,
            "daily_limit": budget.daily_usd if budget is not None else None,
            "monthly_limit": budget.monthly_usd if budget is not None else None,
            "hard_stop": budget.hard_stop if budget is not None else False,
            "warnings": warnings,
            "stats": await self.ledger.spending_stats(),
        }

    def models(self) -> list[dict[str, Any]]:
        return [
            {
                "id": entry.key,
                "provider": entry.provider.id,
                "kind": entry.provider.kind,
                "model": entry.model.name,
                "context": entry.model.context,
                "caps": sorted(entry.model.caps),
                "local": entry.provider.is_local,
                "price": entry.model.price.model_dump() if entry.model.price else None,
            }
            for entry in self.registry.models()
        ]
