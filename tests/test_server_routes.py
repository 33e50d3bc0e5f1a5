import json
from datetime import datetime
from pathlib import Path
from typing import Any

from fastapi.testclient import TestClient

from src.modelrouter.budget import BudgetLedger, MemoryBudgetStorage
from src.modelrouter.config import BudgetConfig, ModelPrice
from src.modelrouter.providers import ProviderRegistry
from src.modelrouter.server import _env_var_as_float, create_app
from src.modelrouter.service import ModelRouterService
from src.modelrouter.types import ErrorEvent, TextEvent
from tests.fakes import FakeBackend, FixedClock, make_profile, make_provider, make_rule

PROJECT_ROOT = Path(__file__).resolve().parents[1]
PRICE = ModelPrice(input_per_mtok=10.0, output_per_mtok=30.0)


def build_client(*, budget: BudgetConfig | None = None) -> tuple[TestClient, ProviderRegistry]:
    cloud = make_provider("cloud", ("big",), price=PRICE, caps=("code",))
    local = make_provider("local", ("small",), kind="ollama", base_url="http://localhost:11434")
    rule = make_rule("private", {"privacy_strict": True}, ["local:small"])
    profile = make_profile([cloud, local], [rule], ["cloud:big"], budget=budget)
    backends = ProviderRegistry(
        profile.providers, factories={"openai-compat": FakeBackend, "ollama": FakeBackend}
    )
    ledger = BudgetLedger(MemoryBudgetStorage(), clock=FixedClock(datetime(2024, 6, 1, 12, 0, 0)))
    service = ModelRouterService(profile, backends, ledger=ledger)
    return TestClient(create_app(service)), backends


def sse_frames(text: str) -> list[tuple[str, dict[str, Any]]]:
    frames = []
    for block in text.strip().split("\n\n"):
        event_line, data_line = block.split("\n")
        frames.append((event_line[len("event: "):], json.loads(data_line[len("data: "):])))
    return frames


def test_healthz_and_models() -> None:
    client, _ = build_client()
    health = client.get("/healthz")
    assert health.status_code == 200
    assert health.json() == {"status": "ok", "profile": "test", "mode": "auto", "providers": ["cloud", "local"]}

    models = client.get("/v1/models").json()
    assert models["object"] == "list"
    assert [entry["id"] for entry in models["data"]] == ["cloud:big", "local:small"]


def test_route_returns_selection_and_reasoning() -> None:
    client, _ = build_client()
    response = client.post("/v1/route", json={"prompt": "fix this bug", "privacy_strict": True})
    assert response.status_code == 200
    body = response.json()
    assert (body["provider_id"], body["model_name"]) == ("local", "small")
    assert body["rule"] == "private"
    assert body["target"] == "chat"
    assert body["reasoning"][-1] == "Selected local:small"


def test_route_without_candidates_is_503() -> None:
    client, backends = build_client()
    backends.get("local").available = False
    response = client.post("/v1/route", json={"prompt": "fix this bug", "privacy_strict": True})
    assert response.status_code == 503
    error = response.json()["error"]
    assert error["type"] == "no_candidate"
    assert error["tried"] == ["local:small", "cloud:big"]


def test_simulate_lists_alternatives() -> None:
    client, _ = build_client()
    body = client.post("/v1/route/simulate", json={"prompt": "x", "privacy_strict": True}).json()
    assert body["result"]["provider_id"] == "local"
    assert body["alternatives"][0]["reasoning"] == ["Rule: private", "Score: 3"]


def test_estimate_and_unknown_model() -> None:
    client, _ = build_client()
    response = client.post(
        "/v1/estimate",
        json={"prompt": "abcd" * 100, "provider": "cloud", "model": "big", "expected_output_tokens": 50},
    )
    assert response.status_code == 200
    assert response.json()["input_tokens"] == 100
    assert response.json()["output_tokens"] == 50

    missing = client.post("/v1/estimate", json={"prompt": "x", "provider": "cloud", "model": "huge"})
    assert missing.status_code == 404
    assert missing.json()["error"]["type"] == "not_found"


def test_chat_direct_non_stream() -> None:
    client, _ = build_client()
    response = client.post(
        "/v1/chat",
        json={"provider": "cloud", "model": "big", "messages": [{"role": "user", "content": "hi"}]},
    )
    assert response.status_code == 200
    assert response.headers["x-modelrouter-provider"] == "cloud"
    assert response.headers["x-modelrouter-model"] == "big"
    body = response.json()
    assert body["routing"] is None
    assert body["result"]["content"] == "complete"

    budget = client.get("/v1/budget").json()
    assert budget["daily_spent"] > 0
    assert budget["stats"]["transaction_count"] == 1


def test_chat_routed_non_stream_sends_prompt() -> None:
    client, backends = build_client()
    response = client.post("/v1/chat", json={"context": {"prompt": "summarize", "privacy_strict": True}})
    assert response.status_code == 200
    body = response.json()
    assert body["routing"]["provider_id"] == "local"
    assert body["result"]["content"] == "hello world"
    assert body["result"]["usage"]["input_tokens"] == 1000
    model, messages = backends.get("local").calls[0]
    assert model == "small"
    assert messages[0].content == "summarize"


def test_chat_stream_emits_sse_frames() -> None:
    client, _ = build_client()
    response = client.post(
        "/v1/chat",
        json={
            "provider": "local",
            "model": "small",
            "stream": True,
            "messages": [{"role": "user", "content": "hi"}],
        },
    )
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    frames = sse_frames(response.text)
    assert [name for name, _ in frames] == ["text", "text", "done"]
    assert frames[0][1]["delta"] == "hello "
    assert frames[2][1]["usage"]["output_tokens"] == 500


def test_chat_stream_hard_stop_maps_to_402() -> None:
    client, backends = build_client(budget=BudgetConfig(daily_usd=0.0001, hard_stop=True))
    response = client.post(
        "/v1/chat",
        json={"provider": "cloud", "model": "big", "stream": True, "messages": [{"role": "user", "content": "hi"}]},
    )
    assert response.status_code == 402
    assert response.json()["error"]["type"] == "budget_exceeded"
    assert backends.get("cloud").calls == []


def test_chat_routed_provider_errors_map_to_status() -> None:
    client, backends = build_client()
    local = backends.get("local")
    context = {"context": {"prompt": "x", "privacy_strict": True}}

    local.reply = [ErrorEvent(message="slow down", status_code=429, retry_after=5.0)]
    limited = client.post("/v1/chat", json=context)
    assert limited.status_code == 429
    assert limited.headers["retry-after"] == "5"

    local.reply = [ErrorEvent(message="bad key", status_code=401)]
    assert client.post("/v1/chat", json=context).status_code == 401

    local.reply = [TextEvent(delta="partial"), ErrorEvent(message="upstream exploded", status_code=500)]
    failed = client.post("/v1/chat", json=context)
    assert failed.status_code == 502
    assert failed.json()["error"]["message"] == "upstream exploded"


def test_lifespan_loads_service_from_environment(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("MODELROUTER_CONFIG_DIR", str(PROJECT_ROOT / "config"))
    monkeypatch.setenv("MODELROUTER_PROFILE", "offline")
    monkeypatch.setenv("MODELROUTER_BUDGET_FILE", str(tmp_path / "budget.json"))
    monkeypatch.setenv("MODELROUTER_CONFIG_REFRESH_INTERVAL", "0")
    with TestClient(create_app()) as client:
        body = client.get("/healthz").json()
    assert body["profile"] == "offline"
    assert body["mode"] == "local-only"
    assert body["providers"] == ["ollama"]


def test_env_var_as_float_falls_back_on_bad_values(monkeypatch) -> None:
    monkeypatch.setenv("MODELROUTER_CONFIG_REFRESH_INTERVAL", "soon")
    assert _env_var_as_float("MODELROUTER_CONFIG_REFRESH_INTERVAL", default=30.0) == 30.0
    monkeypatch.setenv("MODELROUTER_CONFIG_REFRESH_INTERVAL", "-5")
    assert _env_var_as_float("MODELROUTER_CONFIG_REFRESH_INTERVAL", default=30.0) == 30.0
    monkeypatch.setenv("MODELROUTER_CONFIG_REFRESH_INTERVAL", " 2.5 ")
    assert _env_var_as_float("MODELROUTER_CONFIG_REFRESH_INTERVAL", default=30.0) == 2.5


def test_chat_request_validation() -> None:
    client, _ = build_client()
    assert client.post("/v1/chat", json={"messages": [{"role": "user", "content": "hi"}]}).status_code == 422
    assert client.post("/v1/chat", json={"provider": "cloud", "model": "big"}).status_code == 422
