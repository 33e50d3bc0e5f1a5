from __future__ import annotations

import asyncio
import json
import logging
import math
import os
import tempfile
import threading
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from typing import Any, Literal, Protocol

from pydantic import BaseModel, ConfigDict, Field, NonNegativeInt

from .config import BudgetConfig, ModelConfig, ModelPrice
from .errors import BudgetExceededError
from .types import TokenUsage

DEFAULT_OUTPUT_TOKENS = 150
DEFAULT_WARNING_THRESHOLD = 80.0
CHARS_PER_TOKEN = 4
STORAGE_KEY = "modelrouter.budget"

Operation = Literal["chat", "completion", "test"]

module_logger = logging.getLogger(__name__)


def estimate_tokens(text: str) -> int:
    """Heuristic token count: the larger of a char-based and a word-based guess."""
    char_estimate = math.ceil(len(text) / CHARS_PER_TOKEN)
    word_estimate = math.ceil(len(text.split()) * 1.3)
    return max(char_estimate, word_estimate)


class CostEstimate(BaseModel):
    model_config = ConfigDict(frozen=True)

    input_cost: float = 0.0
    output_cost: float = 0.0
    total_cost: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0
    currency: Literal["USD"] = "USD"
    model: str
    provider: str


def calculate_cost(
    input_tokens: int,
    output_tokens: int,
    price: ModelPrice,
    model: str,
    provider: str,
    cached_input_tokens: int = 0,
) -> CostEstimate:
    if cached_input_tokens and price.cached_input_per_mtok is not None:
        billable_input = max(input_tokens - cached_input_tokens, 0)
        input_cost = billable_input / 1_000_000 * price.input_per_mtok
        input_cost += cached_input_tokens / 1_000_000 * price.cached_input_per_mtok
    else:
        input_cost = input_tokens / 1_000_000 * price.input_per_mtok
    output_cost = output_tokens / 1_000_000 * price.output_per_mtok
    return CostEstimate(
        input_cost=input_cost,
        output_cost=output_cost,
        total_cost=input_cost + output_cost,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        model=model,
        provider=provider,
    )


def estimate_cost(
    prompt: str,
    model: ModelConfig,
    provider: str,
    expected_output_tokens: int | None = None,
) -> CostEstimate:
    """Pre-flight estimate. Unpriced models are free."""
    if model.price is None:
        return CostEstimate(
            output_tokens=expected_output_tokens or 0,
            model=model.name,
            provider=provider,
        )
    return calculate_cost(
        estimate_tokens(prompt),
        DEFAULT_OUTPUT_TOKENS if expected_output_tokens is None else expected_output_tokens,
        model.price,
        model.name,
        provider,
    )


def calculate_actual_cost(
    usage: TokenUsage, price: ModelPrice, model: str, provider: str
) -> CostEstimate:
    return calculate_cost(
        usage.input_tokens,
        usage.output_tokens,
        price,
        model,
        provider,
        usage.cached_input_tokens,
    )


def compare_costs(
    prompt: str,
    models: Iterable[tuple[ModelConfig, str]],
    expected_output_tokens: int | None = None,
) -> list[CostEstimate]:
    estimates = [
        estimate_cost(prompt, model, provider, expected_output_tokens)
        for model, provider in models
    ]
    return sorted(estimates, key=lambda estimate: estimate.total_cost)


def cheapest_model(
    prompt: str,
    models: Iterable[tuple[ModelConfig, str]],
    expected_output_tokens: int | None = None,
) -> tuple[CostEstimate, int] | None:
    candidates = list(models)
    costs = compare_costs(prompt, candidates, expected_output_tokens)
    if not costs:
        return None
    cheapest = costs[0]
    for index, (model, provider) in enumerate(candidates):
        if model.name == cheapest.model and provider == cheapest.provider:
            return cheapest, index
    return cheapest, -1


class CostTransaction(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    timestamp: str
    provider: str
    model: str
    cost: float
    input_tokens: NonNegativeInt = 0
    output_tokens: NonNegativeInt = 0
    cached_input_tokens: NonNegativeInt = 0
    operation: Operation = "chat"


class BudgetUsage(BaseModel):
    daily_spent: float = 0.0
    monthly_spent: float = 0.0
    last_reset: str
    currency: Literal["USD"] = "USD"
    transactions: list[CostTransaction] = Field(default_factory=list)


class BudgetCheck(BaseModel):
    allowed: bool
    reason: str | None = None
    usage: BudgetUsage


class BudgetStorage(Protocol):
    def get(self, key: str) -> dict[str, Any] | None: ...

    def update(self, key: str, value: dict[str, Any]) -> None: ...


class MemoryBudgetStorage:
    def __init__(self, initial: dict[str, dict[str, Any]] | None = None) -> None:
        self._data: dict[str, dict[str, Any]] = dict(initial or {})

    def get(self, key: str) -> dict[str, Any] | None:
        value = self._data.get(key)
        return json.loads(json.dumps(value)) if value is not None else None

    def update(self, key: str, value: dict[str, Any]) -> None:
        self._data[key] = json.loads(json.dumps(value))


class JsonFileBudgetStorage:
    """Persist ledger blobs in one JSON document, replaced atomically on write."""

    def __init__(self, path: str) -> None:
        self.path = path
        self._lock = threading.Lock()

    def _read_all(self) -> dict[str, Any]:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Budget file {self.path} does not contain a JSON object")
        return data

    def get(self, key: str) -> dict[str, Any] | None:
        with self._lock:
            value = self._read_all().get(key)
        return value if isinstance(value, dict) else None

    def update(self, key: str, value: dict[str, Any]) -> None:
        with self._lock:
            data = self._read_all()
            data[key] = value
            directory = os.path.dirname(os.path.abspath(self.path))
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(data, f, indent=2)
                os.replace(tmp_path, self.path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise


def _format_limit(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


class BudgetLedger:
    """Append-only spend log with daily and monthly aggregates.

    The daily counter is reset when the stored ``last_reset`` date differs
    from the clock's local date. The monthly figure is always recomputed from
    the current month's transactions. All writes go through one lock.
    """

    def __init__(
        self,
        storage: BudgetStorage | None = None,
        *,
        clock: Callable[[], datetime] = datetime.now,
        logger: logging.Logger | None = None,
        key: str = STORAGE_KEY,
    ) -> None:
        self.storage = storage if storage is not None else MemoryBudgetStorage()
        self.clock = clock
        self.logger = logger or module_logger
        self.key = key
        self._lock = asyncio.Lock()

    async def _load(self) -> BudgetUsage:
        # storage may hit the filesystem; keep it off the event loop
        stored = await asyncio.to_thread(self.storage.get, self.key)
        today = self.clock().date().isoformat()
        if not stored:
            return BudgetUsage(last_reset=today)
        return BudgetUsage(
            daily_spent=float(stored.get("daily_spent") or 0.0),
            last_reset=stored.get("last_reset") or today,
            transactions=stored.get("transactions") or [],
        )

    async def _save(self, usage: BudgetUsage) -> None:
        await asyncio.to_thread(
            self.storage.update,
            self.key,
            usage.model_dump(mode="json", include={"daily_spent", "last_reset", "transactions"}),
        )

    async def _current_usage(self) -> BudgetUsage:
        usage = await self._load()
        now = self.clock()
        today = now.date().isoformat()
        if usage.last_reset != today:
            usage.daily_spent = 0.0
            usage.last_reset = today
        month = today[:7]
        usage.monthly_spent = sum(
            transaction.cost
            for transaction in usage.transactions
            if transaction.timestamp[:7] == month
        )
        return usage

    async def get_usage(self) -> BudgetUsage:
        return await self._current_usage()

    async def record_transaction(
        self,
        provider: str,
        model: str,
        cost: float,
        input_tokens: int,
        output_tokens: int,
        operation: Operation = "chat",
        cached_input_tokens: int = 0,
    ) -> CostTransaction:
        async with self._lock:
            usage = await self._current_usage()
            transaction = CostTransaction(
                id=uuid.uuid4().hex,
                timestamp=self.clock().isoformat(),
                provider=provider,
                model=model,
                cost=cost,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                cached_input_tokens=cached_input_tokens,
                operation=operation,
            )
            usage.transactions.append(transaction)
            usage.daily_spent += cost
            usage.monthly_spent += cost
            await self._save(usage)
        self.logger.info(
            f"budget transaction recorded provider={provider} model={model} cost={cost:.6f} "
            f"daily_spent={usage.daily_spent:.6f}"
        )
        return transaction

    async def record_usage(
        self,
        provider: str,
        model: str,
        usage: TokenUsage,
        price: ModelPrice | None,
        operation: Operation = "chat",
    ) -> CostTransaction:
        cost = calculate_actual_cost(usage, price, model, provider).total_cost if price else 0.0
        return await self.record_transaction(
            provider,
            model,
            cost,
            usage.input_tokens,
            usage.output_tokens,
            operation,
            usage.cached_input_tokens,
        )

    async def check_budget(self, estimated_cost: float, config: BudgetConfig) -> BudgetCheck:
        usage = await self._current_usage()
        if config.daily_usd and config.daily_usd > 0:
            if usage.daily_spent + estimated_cost > config.daily_usd:
                return BudgetCheck(
                    allowed=False,
                    reason=(
                        f"Would exceed daily budget (${_format_limit(config.daily_usd)}). "
                        f"Current: ${usage.daily_spent:.4f}, Estimated: +${estimated_cost:.4f}"
                    ),
                    usage=usage,
                )
        if config.monthly_usd and config.monthly_usd > 0:
            if usage.monthly_spent + estimated_cost > config.monthly_usd:
                return BudgetCheck(
                    allowed=False,
                    reason=(
                        f"Would exceed monthly budget (${_format_limit(config.monthly_usd)}). "
                        f"Current: ${usage.monthly_spent:.4f}, Estimated: +${estimated_cost:.4f}"
                    ),
                    usage=usage,
                )
        return BudgetCheck(allowed=True, usage=usage)

    async def get_budget_warnings(self, config: BudgetConfig) -> list[str]:
        usage = await self._current_usage()
        threshold = (config.warning_threshold or DEFAULT_WARNING_THRESHOLD) / 100
        warnings: list[str] = []
        for label, spent, limit in (
            ("Daily", usage.daily_spent, config.daily_usd),
            ("Monthly", usage.monthly_spent, config.monthly_usd),
        ):
            if not limit or limit <= 0:
                continue
            ratio = spent / limit
            if ratio >= threshold:
                warnings.append(
                    f"{label} budget {ratio * 100:.1f}% used (${spent:.2f} of ${_format_limit(limit)})"
                )
        return warnings

    async def ensure_within_budget(self, estimated_cost: float, config: BudgetConfig) -> list[str]:
        check = await self.check_budget(estimated_cost, config)
        if not check.allowed and config.hard_stop:
            raise BudgetExceededError(check.reason or "Budget exceeded", estimated_cost)
        warnings = await self.get_budget_warnings(config)
        if not check.allowed and check.reason:
            warnings.insert(0, check.reason)
        for warning in warnings:
            self.logger.warning(f"budget warning message={warning!r}")
        return warnings

    async def spending_stats(self) -> dict[str, Any]:
        transactions = (await self._current_usage()).transactions
        total = sum(transaction.cost for transaction in transactions)
        count = len(transactions)

        def _group(key: Callable[[CostTransaction], str]) -> dict[str, dict[str, float]]:
            groups: dict[str, dict[str, float]] = {}
            for transaction in transactions:
                stat = groups.setdefault(key(transaction), {"cost": 0.0, "count": 0})
                stat["cost"] += transaction.cost
                stat["count"] += 1
            return groups

        providers = _group(lambda t: t.provider)
        models = _group(lambda t: t.model)
        days = _group(lambda t: t.timestamp[:10])
        return {
            "total_spent": total,
            "transaction_count": count,
            "average_per_transaction": total / count if count else 0.0,
            "top_providers": sorted(
                ({"provider": name, **stat} for name, stat in providers.items()),
                key=lambda item: item["cost"],
                reverse=True,
            ),
            "top_models": sorted(
                ({"model": name, **stat} for name, stat in models.items()),
                key=lambda item: item["cost"],
                reverse=True,
            ),
            "daily_trend": sorted(
                ({"date": date, **stat} for date, stat in days.items()),
                key=lambda item: item["date"],
            ),
        }

    async def cleanup_old_transactions(self, keep_days: int = 30) -> int:
        async with self._lock:
            usage = await self._current_usage()
            cutoff = (self.clock() - timedelta(days=keep_days)).isoformat()
            kept = [t for t in usage.transactions if t.timestamp >= cutoff]
            removed = len(usage.transactions) - len(kept)
            usage.transactions = kept
            await self._save(usage)
        if removed:
            self.logger.info(f"budget transactions pruned removed={removed} keep_days={keep_days}")
        return removed

    async def export_transactions(self) -> dict[str, Any]:
        transactions = sorted((await self._current_usage()).transactions, key=lambda t: t.timestamp)
        return {
            "transactions": [transaction.model_dump() for transaction in transactions],
            "summary": {
                "total_cost": sum(transaction.cost for transaction in transactions),
                "total_transactions": len(transactions),
                "date_range": {
                    "from": transactions[0].timestamp if transactions else "",
                    "to": transactions[-1].timestamp if transactions else "",
                },
            },
        }
