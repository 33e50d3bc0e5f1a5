from __future__ import annotations

import logging
import re
from collections import Counter
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, Field

from .budget import BudgetLedger, estimate_cost
from .config import PRIVACY_FORCING_MODES, ModelConfig, ProfileConfig, RoutingRule
from .errors import NoCandidateError
from .providers import ChatBackend
from .registry import ModelRegistry

module_logger = logging.getLogger(__name__)

REDACTED_PATH = "[REDACTED]"
MAX_KEYWORDS = 20
MAX_ALTERNATIVES = 5
_STRIP_KEEP_LINES = 50
_KEYWORD_RE = re.compile(r"\b[a-zA-Z]{3,}\b")


class RoutingContext(BaseModel):
    prompt: str
    lang: str | None = None
    file_path: str | None = None
    file_size_kb: float | None = None
    mode: str | None = None
    privacy_strict: bool | None = None
    keywords: list[str] | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


@dataclass
class RoutingResult:
    provider_id: str
    model_name: str
    model: ModelConfig
    score: float
    rule: RoutingRule | None
    reasoning: list[str] = field(default_factory=list)
    provider: ChatBackend | None = None
    target: str = "chat"
    prompt: str = ""


@dataclass
class RouteAlternative:
    provider_id: str
    model_name: str
    score: float
    available: bool
    reasoning: list[str] = field(default_factory=list)


@dataclass
class RouteSimulation:
    result: RoutingResult | None
    alternatives: list[RouteAlternative] = field(default_factory=list)


@dataclass
class ScoredRule:
    rule: RoutingRule
    score: float


def extract_keywords(prompt: str) -> list[str]:
    """Most frequent alphabetic words of three or more letters, ties in first-seen order."""
    counts = Counter(_KEYWORD_RE.findall(prompt.lower()))
    # Counter preserves insertion order and sorted() is stable
    ranked = sorted(counts.items(), key=lambda item: item[1], reverse=True)
    return [word for word, _ in ranked[:MAX_KEYWORDS]]


def _glob_to_regex(pattern: str) -> str:
    parts: list[str] = []
    index = 0
    while index < len(pattern):
        char = pattern[index]
        if pattern.startswith("**/", index):
            # zero or more whole directories
            parts.append("(?:.*/)?")
            index += 3
            continue
        if pattern.startswith("**", index):
            parts.append(".*")
            index += 2
            continue
        if char == "*":
            parts.append("[^/]*")
        elif char == "?":
            parts.append("[^/]")
        else:
            parts.append(re.escape(char))
        index += 1
    return "".join(parts)


def matches_pattern(path: str, pattern: str) -> bool:
    return re.fullmatch(_glob_to_regex(pattern), path, flags=re.IGNORECASE) is not None


def strip_large_content(content: str) -> str:
    lines = content.split("\n")
    if len(lines) <= _STRIP_KEEP_LINES * 2:
        return content
    head = "\n".join(lines[:_STRIP_KEEP_LINES])
    tail = "\n".join(lines[-_STRIP_KEEP_LINES:])
    omitted = len(lines) - _STRIP_KEEP_LINES * 2
    return f"{head}\n\n[... {omitted} lines omitted for privacy ...]\n\n{tail}"


def expand_candidates(preferences: tuple[str, ...] | list[str]) -> list[tuple[str, str]]:
    candidates: list[tuple[str, str]] = []
    for preference in preferences:
        provider_id, _, model_name = preference.partition(":")
        if provider_id and model_name:
            candidates.append((provider_id, model_name))
    return candidates


class ModelRouter:
    def __init__(
        self,
        profile: ProfileConfig,
        providers: Mapping[str, ChatBackend],
        registry: ModelRegistry | None = None,
        *,
        ledger: BudgetLedger | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.profile = profile
        self.providers = providers
        self.registry = registry if registry is not None else ModelRegistry(profile.providers)
        self.ledger = ledger
        self.logger = logger or module_logger

    def apply_privacy_mode(self, context: RoutingContext) -> RoutingContext:
        updates: dict[str, Any] = {}
        privacy = self.profile.privacy
        if self.profile.mode in PRIVACY_FORCING_MODES:
            updates["privacy_strict"] = True
        if context.file_path:
            for pattern in privacy.redact_paths:
                if matches_pattern(context.file_path, pattern):
                    updates["file_path"] = REDACTED_PATH
                    break
        limit = privacy.strip_file_content_over_kb
        if limit is not None and context.file_size_kb is not None and context.file_size_kb > limit:
            updates["prompt"] = strip_large_content(context.prompt)
        return context.model_copy(update=updates)

    def prepare_context(self, context: RoutingContext) -> RoutingContext:
        # keywords come from the caller's prompt, before any stripping
        keywords = context.keywords if context.keywords is not None else extract_keywords(context.prompt)
        return self.apply_privacy_mode(context.model_copy(update={"keywords": keywords}))

    @staticmethod
    def _keyword_hit(keyword: str, context: RoutingContext) -> bool:
        needle = keyword.lower()
        if any(needle in candidate.lower() for candidate in context.keywords or ()):
            return True
        return needle in context.prompt.lower()

    def score_rule(self, rule: RoutingRule, context: RoutingContext) -> float:
        conditions = rule.when
        score: float = 0
        if conditions.any_keyword:
            score += 2 * sum(1 for keyword in conditions.any_keyword if self._keyword_hit(keyword, context))
        if conditions.all_keywords:
            if all(self._keyword_hit(keyword, context) for keyword in conditions.all_keywords):
                score += 3 * len(conditions.all_keywords)
        if conditions.file_lang_in and context.lang:
            if context.lang in conditions.file_lang_in:
                score += 1
        if conditions.file_path_matches and context.file_path:
            score += sum(
                1 for pattern in conditions.file_path_matches if matches_pattern(context.file_path, pattern)
            )
        if context.file_size_kb is not None:
            if conditions.min_context_kb is not None and context.file_size_kb >= conditions.min_context_kb:
                score += 1
            if conditions.max_context_kb is not None and context.file_size_kb <= conditions.max_context_kb:
                score += 1
        if conditions.privacy_strict is not None and context.privacy_strict is not None:
            if conditions.privacy_strict == context.privacy_strict:
                score += 3
        if conditions.mode and context.mode:
            if context.mode in conditions.mode:
                score += 2
        if rule.then.priority:
            score += rule.then.priority
        return score

    def score_rules(self, context: RoutingContext) -> list[ScoredRule]:
        scored = [ScoredRule(rule, self.score_rule(rule, context)) for rule in self.profile.rules]
        scored = [item for item in scored if item.score > 0]
        return sorted(scored, key=lambda item: item.score, reverse=True)

    def _reject(self, provider_id: str, model_name: str, reason: str) -> None:
        self.logger.debug(
            f"route candidate rejected provider={provider_id} model={model_name} reason={reason!r}"
        )

    async def validate_candidate(
        self,
        provider_id: str,
        model_name: str,
        context: RoutingContext,
        scored: ScoredRule | None,
        *,
        require_available: bool = True,
        budget_check: bool = True,
    ) -> RoutingResult | None:
        backend = self.providers.get(provider_id)
        if backend is None:
            self._reject(provider_id, model_name, "unknown provider")
            return None
        if not backend.supports(model_name):
            self._reject(provider_id, model_name, "model not supported by provider")
            return None
        model = self.registry.get(provider_id, model_name)
        if model is None:
            self._reject(provider_id, model_name, "model not in registry")
            return None

        reasoning: list[str] = []
        if require_available and not await backend.is_available():
            self._reject(provider_id, model_name, f"Provider {provider_id} not available")
            return None

        budget = self.profile.budget
        if budget_check and model.price is not None and budget is not None:
            estimated = estimate_cost(context.prompt, model, provider_id).total_cost
            reasoning.append(f"Estimated cost: ${estimated:.4f}")
            if self.ledger is not None:
                try:
                    check = await self.ledger.check_budget(estimated, budget)
                    if not check.allowed:
                        reasoning.append(f"Budget block: {check.reason}")
                        if budget.hard_stop:
                            self._reject(provider_id, model_name, check.reason or "budget exceeded")
                            return None
                    else:
                        warnings = await self.ledger.get_budget_warnings(budget)
                        reasoning.extend(f"Warn: {warning}" for warning in warnings)
                except (OSError, ValueError) as exc:
                    self.logger.warning(f"budget check failed provider={provider_id} error={exc}")
                    reasoning.append(f"Budget check failed: {exc}")

        if context.privacy_strict:
            provider_config = self.registry.provider(provider_id)
            if provider_config is None or not provider_config.is_local:
                self._reject(provider_id, model_name, "Privacy mode requires local provider")
                return None

        if scored is not None:
            reasoning.append(f"Matched rule: {scored.rule.id} (score: {scored.score:g})")
        reasoning.append(f"Selected {provider_id}:{model_name}")
        return RoutingResult(
            provider_id=provider_id,
            model_name=model_name,
            model=model,
            score=scored.score if scored is not None else 0,
            rule=scored.rule if scored is not None else None,
            reasoning=reasoning,
            provider=backend,
            target=scored.rule.then.target if scored is not None else self.profile.default.target,
            prompt=context.prompt,
        )

    async def route(
        self,
        context: RoutingContext,
        *,
        require_available: bool = True,
        budget_check: bool = True,
    ) -> RoutingResult:
        effective = self.prepare_context(context)
        tried: list[str] = []
        for scored in self.score_rules(effective):
            for provider_id, model_name in expand_candidates(scored.rule.then.prefer):
                tried.append(f"{provider_id}:{model_name}")
                result = await self.validate_candidate(
                    provider_id,
                    model_name,
                    effective,
                    scored,
                    require_available=require_available,
                    budget_check=budget_check,
                )
                if result is not None:
                    self.logger.info(
                        f"route selected provider={provider_id} model={model_name} "
                        f"rule={scored.rule.id} score={scored.score:g}"
                    )
                    return result

        for provider_id, model_name in expand_candidates(self.profile.default.prefer):
            tried.append(f"{provider_id}:{model_name}")
            result = await self.validate_candidate(
                provider_id,
                model_name,
                effective,
                None,
                require_available=require_available,
                budget_check=budget_check,
            )
            if result is not None:
                result.reasoning.append("Used default fallback")
                self.logger.info(
                    f"route selected provider={provider_id} model={model_name} rule=<default>"
                )
                return result

        self.logger.info(f"route exhausted candidates tried={len(tried)}")
        raise NoCandidateError(tried=tried)

    async def simulate_route(self, context: RoutingContext) -> RouteSimulation:
        """Dry run: route without availability probes and list top alternatives."""
        try:
            result: RoutingResult | None = await self.route(context, require_available=False)
        except NoCandidateError:
            result = None
        effective = self.prepare_context(context)
        alternatives: list[RouteAlternative] = []
        for scored in self.score_rules(effective)[:MAX_ALTERNATIVES]:
            for provider_id, model_name in expand_candidates(scored.rule.then.prefer)[:3]:
                if len(alternatives) >= MAX_ALTERNATIVES:
                    break
                backend = self.providers.get(provider_id)
                available = await backend.is_available() if backend is not None else False
                alternatives.append(
                    RouteAlternative(
                        provider_id=provider_id,
                        model_name=model_name,
                        score=scored.score,
                        available=available,
                        reasoning=[f"Rule: {scored.rule.id}", f"Score: {scored.score:g}"],
                    )
                )
        return RouteSimulation(result=result, alternatives=alternatives)

    def available_models(self) -> list[dict[str, Any]]:
        models: list[dict[str, Any]] = []
        for provider_config in self.profile.providers:
            backend = self.providers.get(provider_config.id)
            if backend is None:
                continue
            for model in provider_config.models:
                models.append(
                    {
                        "provider_id": provider_config.id,
                        "model_name": model.name,
                        "config": model,
                        "provider": backend,
                    }
                )
        return models

    def models_by_capability(self, capability: str) -> list[dict[str, Any]]:
        return [
            {key: entry[key] for key in ("provider_id", "model_name", "config")}
            for entry in self.available_models()
            if capability in entry["config"].caps
        ]
