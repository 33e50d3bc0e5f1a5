from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing_extensions import TypedDict

from .budget import BudgetLedger, JsonFileBudgetStorage
from .config import config_changed, load_config
from .errors import (
    AuthenticationError,
    BudgetExceededError,
    ConfigError,
    NoCandidateError,
    ProviderError,
    RateLimitError,
)
from .router import RouteSimulation, RoutingContext, RoutingResult
from .service import ModelRouterService
from .types import ChatMessage, ChatOptions, collect_chat_result

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = os.path.join(os.getcwd(), "config")
DEFAULT_REFRESH_INTERVAL = 30.0


def _env_var_as_float(name: str, *, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = float(raw.strip())
    except ValueError:
        return default
    return value if value >= 0 else default


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    provider: str | None = None
    model: str | None = None
    context: RoutingContext | None = None
    messages: list[ChatMessage] = Field(default_factory=list)
    stream: bool = False
    max_tokens: int | None = Field(default=None, gt=0)
    temperature: float | None = None
    json_mode: bool = Field(default=False, alias="json")
    tools: list[dict[str, Any]] | None = None

    @model_validator(mode="after")
    def _require_target(self) -> "ChatRequest":
        if self.context is None and not (self.provider and self.model):
            raise ValueError("either 'context' or both 'provider' and 'model' are required")
        if self.context is None and not self.messages:
            raise ValueError("'messages' must not be empty when no routing context is given")
        return self

    def options(self) -> ChatOptions:
        return ChatOptions(
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            json=self.json_mode,
            tools=self.tools,
        )


class EstimateRequest(BaseModel):
    prompt: str
    provider: str
    model: str
    expected_output_tokens: int | None = Field(default=None, ge=0)


def load_service_from_env(*, ledger: BudgetLedger | None = None) -> ModelRouterService:
    config_dir = os.environ.get("MODELROUTER_CONFIG_DIR", DEFAULT_CONFIG_DIR)
    loaded = load_config(config_dir, os.environ.get("MODELROUTER_PROFILE") or None)
    if ledger is None:
        budget_file = os.environ.get("MODELROUTER_BUDGET_FILE")
        ledger = BudgetLedger(JsonFileBudgetStorage(budget_file) if budget_file else None)
    return ModelRouterService.from_config(loaded, ledger=ledger)


class _RoutingPayload(TypedDict):
    provider_id: str
    model_name: str
    model: dict[str, Any]
    score: float
    rule: str | None
    target: str
    reasoning: list[str]


def _routing_payload(result: RoutingResult) -> _RoutingPayload:
    return {
        "provider_id": result.provider_id,
        "model_name": result.model_name,
        "model": result.model.model_dump(mode="json"),
        "score": result.score,
        "rule": result.rule.id if result.rule is not None else None,
        "target": result.target,
        "reasoning": list(result.reasoning),
    }


def _simulation_payload(simulation: RouteSimulation) -> dict[str, Any]:
    return {
        "result": _routing_payload(simulation.result) if simulation.result is not None else None,
        "alternatives": [
            {
                "provider_id": alternative.provider_id,
                "model_name": alternative.model_name,
                "score": alternative.score,
                "available": alternative.available,
                "reasoning": alternative.reasoning,
            }
            for alternative in simulation.alternatives
        ],
    }


def _error_body(error_type: str, message: str, **extra: Any) -> dict[str, Any]:
    return {"error": {"type": error_type, "message": message, **extra}}


def _sse_frame(event: Any) -> bytes:
    return f"event: {event.type}\ndata: {event.model_dump_json()}\n\n".encode("utf-8")


async def _config_refresh_loop(app: FastAPI, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        service: ModelRouterService = app.state.service
        loaded = service.loaded
        if loaded is None or not config_changed(loaded):
            continue
        try:
            reloaded = load_config(loaded.config_dir or DEFAULT_CONFIG_DIR, loaded.profile.name)
        except ConfigError as exc:
            logger.warning(f"config reload failed path={exc.path} error={exc}")
            continue
        app.state.service = ModelRouterService.from_config(reloaded, ledger=service.ledger)
        logger.info(f"config reloaded profile={reloaded.profile.name}")


def create_app(service: ModelRouterService | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if app.state.service is None:
            app.state.service = load_service_from_env()
        interval = _env_var_as_float(
            "MODELROUTER_CONFIG_REFRESH_INTERVAL", default=DEFAULT_REFRESH_INTERVAL
        )
        task: asyncio.Task[None] | None = None
        if interval > 0 and app.state.service.loaded is not None:
            task = asyncio.create_task(_config_refresh_loop(app, interval))
        try:
            yield
        finally:
            if task is not None:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

    app = FastAPI(title="modelrouter", lifespan=lifespan)
    app.state.service = service

    def _service(request: Request) -> ModelRouterService:
        current = request.app.state.service
        if current is None:
            raise RuntimeError("model router service is not initialised")
        return current

    @app.exception_handler(NoCandidateError)
    async def _no_candidate(_: Request, exc: NoCandidateError) -> JSONResponse:
        return JSONResponse(_error_body("no_candidate", str(exc), tried=exc.tried), status_code=503)

    @app.exception_handler(BudgetExceededError)
    async def _budget_exceeded(_: Request, exc: BudgetExceededError) -> JSONResponse:
        return JSONResponse(
            _error_body("budget_exceeded", exc.reason, estimated_cost=exc.estimated_cost),
            status_code=402,
        )

    @app.exception_handler(ProviderError)
    async def _provider_error(_: Request, exc: ProviderError) -> JSONResponse:
        headers: dict[str, str] = {}
        if isinstance(exc, AuthenticationError):
            status, error_type = 401, "authentication_error"
        elif isinstance(exc, RateLimitError):
            status, error_type = 429, "rate_limit"
            if exc.retry_after is not None:
                headers["Retry-After"] = str(int(exc.retry_after))
        elif exc.status_code == 404:
            status, error_type = 404, "not_found"
        else:
            status, error_type = 502, "provider_error"
        logger.warning(
            f"provider error provider={exc.provider} model={exc.model} status={exc.status_code} message={exc.message!r}"
        )
        return JSONResponse(
            _error_body(error_type, exc.message, provider=exc.provider, model=exc.model),
            status_code=status,
            headers=headers,
        )

    @app.get("/healthz")
    async def healthz(request: Request) -> dict[str, Any]:
        current = _service(request)
        return {
            "status": "ok",
            "profile": current.profile.name,
            "mode": current.profile.mode,
            "providers": [provider.id for provider in current.profile.providers],
        }

    @app.get("/v1/models")
    async def list_models(request: Request) -> dict[str, Any]:
        return {"object": "list", "data": _service(request).models()}

    @app.post("/v1/route")
    async def route(request: Request, context: RoutingContext) -> dict[str, Any]:
        result = await _service(request).route(context)
        return _routing_payload(result)

    @app.post("/v1/route/simulate")
    async def simulate(request: Request, context: RoutingContext) -> dict[str, Any]:
        simulation = await _service(request).simulate_route(context)
        return _simulation_payload(simulation)

    @app.post("/v1/estimate")
    async def estimate(request: Request, body: EstimateRequest) -> dict[str, Any]:
        result = await _service(request).estimate_cost(
            body.prompt, body.provider, body.model, body.expected_output_tokens
        )
        return result.model_dump()

    @app.get("/v1/budget")
    async def budget(request: Request) -> dict[str, Any]:
        return await _service(request).budget_report()

    @app.post("/v1/chat", response_model=None)
    async def chat(request: Request, body: ChatRequest) -> JSONResponse | StreamingResponse:
        current = _service(request)
        options = body.options()
        routing: RoutingResult | None = None
        if body.context is not None:
            routing = await current.route(body.context)
            provider_id, model_name = routing.provider_id, routing.model_name
        else:
            provider_id, model_name = str(body.provider), str(body.model)
        headers = {"x-modelrouter-provider": provider_id, "x-modelrouter-model": model_name}

        if not body.stream:
            if routing is not None:
                routed = await collect_chat_result(
                    current.chat_routed(routing, body.messages or None, options),
                    provider=provider_id,
                    model=model_name,
                )
                payload = {"routing": _routing_payload(routing), "result": routed.model_dump()}
            else:
                result = await current.chat_complete(provider_id, model_name, body.messages, options)
                payload = {"routing": None, "result": result.model_dump()}
            return JSONResponse(payload, headers=headers)

        if routing is not None:
            events = current.chat_routed(routing, body.messages or None, options)
        else:
            events = current.chat(provider_id, model_name, body.messages, options)
        # prime the stream so budget and lookup errors still map to a status code
        try:
            first = await events.__anext__()
        except StopAsyncIteration:
            first = None

        async def event_source() -> AsyncIterator[bytes]:
            try:
                if first is None:
                    return
                yield _sse_frame(first)
                if first.terminal:
                    return
                async for event in events:
                    yield _sse_frame(event)
            finally:
                await events.aclose()

        return StreamingResponse(event_source(), media_type="text/event-stream", headers=headers)

    return app


app = create_app()
