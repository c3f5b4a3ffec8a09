"""
HTTP contract tests for the tutor gateway.

Services are swapped in through FastAPI's dependency_overrides so every test
controls the provider; the store points at a fresh SQLite file per test.
"""

from __future__ import annotations

import json
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from tutor_gateway.agents.config_loader import load_agent_config
from tutor_gateway.agents.text import sanitize_input
from tutor_gateway.dependencies import get_services
from tutor_gateway.orchestrator import missing_agent_notice
from tutor_gateway.services import init_services
from tutor_gateway.storage import session_store


def _prompt(agent_id: str) -> str:
    return load_agent_config(agent_id).system_prompt


VIZ_ARGS = {"type": "math", "title": "y = x²", "description": "قطع مكافئ"}


@pytest.fixture
def app():
    from tutor_gateway.main import app as fastapi_app

    return fastapi_app


@pytest.fixture
def gateway(app, env, tmp_path, provider_cls):
    """
    Factory: `with gateway(provider=..., auth_token=...) as (client, services)`.
    """

    @contextmanager
    def _open(provider=None, auth_token: str = "", extra_env: Optional[Dict[str, str]] = None):
        values = {
            "DB_PATH": str(tmp_path / "gateway.db"),
            "DATABASE_URL": "",
            "PROVIDER": "stub",
            "AUTH_TOKEN": auth_token,
            "RETRY_INITIAL_DELAY": "0",
            "AGENT_CONFIG_DIR": "",
        }
        values.update(extra_env or {})
        with env(values):
            services = init_services(provider=provider or provider_cls(), memory_store=session_store)
            app.dependency_overrides[get_services] = lambda: services
            try:
                with TestClient(app) as client:
                    yield client, services
            finally:
                app.dependency_overrides.clear()

    return _open


def _sse_events(text: str) -> List[Dict[str, Any]]:
    events = []
    for block in text.strip().split("\n\n"):
        event = {"event": "message"}
        for line in block.splitlines():
            if line.startswith("event: "):
                event["event"] = line[len("event: "):]
            elif line.startswith("data: "):
                event["data"] = json.loads(line[len("data: "):])
        events.append(event)
    return events


# -- service metadata ---------------------------------------------------------


def test_root_and_health(gateway):
    with gateway() as (client, services):
        root = client.get("/")
        health = client.get("/health")

    assert root.status_code == 200
    assert root.json()["chat"] == "/chat"
    assert health.status_code == 200
    body = health.json()
    assert body["status"] == "ok"
    assert body["agents"] == 6
    assert body["provider"] == "stub"


# -- /chat --------------------------------------------------------------------


def test_chat_routes_visualization_request(gateway, provider_cls):
    provider = provider_cls(
        {_prompt("visualizer"): "إليك رسم الدالة"},
        tool_calls={"generate_visualization": VIZ_ARGS},
    )
    with gateway(provider=provider) as (client, services):
        resp = client.post("/chat", json={"message": "ارسم دالة تربيعية", "user_id": "u1"})
        sessions = client.get("/users/u1/sessions").json()["sessions"]

    assert resp.status_code == 200
    body = resp.json()
    assert body["message"] == "إليك رسم الدالة"
    assert body["visualizations"][0]["title"] == "y = x²"
    assert body["questions"] == []
    orchestration = body["orchestration"]
    assert orchestration["intent"] == "visualize"
    assert orchestration["strategy"] == "single"
    assert orchestration["selected_agents"] == ["visualizer"]
    assert [m["role"] for m in body["conversation_history"]] == ["user", "agent"]
    assert body["conversation_history"][1]["producing_agent_id"] == "visualizer"
    # routing call plus the visualizer call
    assert body["usage"]["total_tokens"] == 300
    assert body["meta"]["agent"] == "maestro"
    assert body["session_id"].startswith("session_")

    assert sessions[0]["agent_id"] == "visualizer"
    assert sessions[0]["input"] == "ارسم دالة تربيعية"
    assert sessions[0]["session_id"] == body["session_id"]


def test_chat_keeps_supplied_session_and_history(gateway, provider_cls):
    provider = provider_cls({_prompt("narrator"): "كان البيروني..."})
    payload = {
        "message": "حدثني عن البيروني",
        "user_id": "u1",
        "session_id": "session-abc",
        "history": [
            {"role": "user", "content": "مرحبا"},
            {"role": "agent", "content": "أهلا بك", "producing_agent_id": "narrator"},
        ],
    }
    with gateway(provider=provider) as (client, services):
        resp = client.post("/chat", json=payload)

    assert resp.status_code == 200
    body = resp.json()
    assert body["session_id"] == "session-abc"
    assert len(body["conversation_history"]) == 4


def test_chat_stores_supplied_profile(gateway, provider_cls):
    profile = {"user_id": "u1", "display_name": "ليلى", "preferred_dialect": "Gulf", "grade_level": 9}
    with gateway(provider=provider_cls()) as (client, services):
        resp = client.post("/chat", json={"message": "مرحبا", "user_id": "u1", "profile": profile})
        stored = session_store.get_student_profile("u1")

    assert resp.status_code == 200
    assert resp.json()["orchestration"]["dialect_source"] == "profile"
    assert stored.display_name == "ليلى"
    assert stored.preferred_dialect.value == "Gulf"


def test_chat_missing_agent_uses_general_answer(gateway, provider_cls):
    provider = provider_cls({_prompt("maestro"): "إجابة عامة"})
    with gateway(provider=provider) as (client, services):
        resp = client.post("/chat", json={"message": "اعرض محاكاة لحركة المقذوف", "user_id": "u1"})

    assert resp.status_code == 200
    message = resp.json()["message"]
    assert message.startswith(missing_agent_notice("simulator"))
    assert message.endswith("إجابة عامة")


def test_chat_malformed_json_is_400(gateway):
    with gateway() as (client, services):
        resp = client.post("/chat", content=b"{not json", headers={"Content-Type": "application/json"})

    assert resp.status_code == 400
    body = resp.json()
    assert body["error"]["code"] == "MALFORMED_REQUEST"
    assert body["meta"]["agent"] == "maestro"


@pytest.mark.parametrize(
    "payload",
    [
        {"message": "مرحبا"},
        {"message": "مرحبا", "user_id": ""},
        {"message": "مرحبا", "user_id": "u1", "dialect": "Klingon"},
        ["not", "an", "object"],
    ],
)
def test_chat_invalid_body_is_422(gateway, payload):
    with gateway() as (client, services):
        resp = client.post("/chat", json=payload)

    assert resp.status_code == 422
    error = resp.json()["error"]
    assert error["code"] == "INPUT_VALIDATION_ERROR"
    assert isinstance(error["details"], list)


def test_chat_empty_message_is_invalid_input(gateway):
    with gateway() as (client, services):
        resp = client.post("/chat", json={"message": "   ", "user_id": "u1"})

    assert resp.status_code == 422
    error = resp.json()["error"]
    assert error["code"] == "INVALID_INPUT"
    assert error["details"]["kind"] == "invalid_input"


def test_chat_provider_failure_is_502(gateway, raising_provider_cls):
    with gateway(provider=raising_provider_cls()) as (client, services):
        resp = client.post("/chat", json={"message": "ارسم دالة تربيعية", "user_id": "u1"})

    assert resp.status_code == 502
    error = resp.json()["error"]
    assert error["code"] == "MODEL_ERROR"
    assert error["details"]["agent_id"] == "visualizer"


def test_chat_requires_bearer_when_auth_token_set(gateway):
    with gateway(auth_token="secret") as (client, services):
        missing = client.post("/chat", json={"message": "مرحبا", "user_id": "u1"})
        wrong = client.post(
            "/chat", json={"message": "مرحبا", "user_id": "u1"}, headers={"Authorization": "Bearer nope"}
        )
        ok = client.post(
            "/chat", json={"message": "مرحبا", "user_id": "u1"}, headers={"Authorization": "Bearer secret"}
        )

    assert missing.status_code == 401
    assert missing.json()["error"]["code"] == "UNAUTHORIZED"
    assert wrong.status_code == 401
    assert wrong.json()["error"]["message"] == "Invalid bearer token"
    assert ok.status_code == 200


# -- /agents ------------------------------------------------------------------


def test_list_agents_and_filters(gateway):
    with gateway() as (client, services):
        everything = client.get("/agents").json()
        content = client.get("/agents", params={"tier": "content"}).json()
        visual = client.get("/agents", params={"capability": "visualization"}).json()
        bad = client.get("/agents", params={"tier": "royalty"})

    assert everything["count"] == 6
    assert "maestro" in {a["id"] for a in everything["agents"]}
    assert {a["id"] for a in content["agents"]} == {"visualizer", "narrator", "problem-decomposer"}
    assert [a["id"] for a in visual["agents"]] == ["visualizer"]
    assert bad.status_code == 422
    assert "content" in bad.json()["error"]["details"]["allowed"]


def test_get_agent_details(gateway):
    with gateway() as (client, services):
        found = client.get("/agents/visualizer")
        missing = client.get("/agents/simulator")

    assert found.status_code == 200
    body = found.json()
    assert body["tools"] == ["generate_visualization"]
    assert body["allowed_models"] == ["flash", "pro"]
    assert body["localized_name"]
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "AGENT_NOT_FOUND"


def test_invoke_agent_returns_envelope_and_records_memory(gateway, provider_cls):
    provider = provider_cls({_prompt("narrator"): "كان الخوارزمي في بغداد"})
    with gateway(provider=provider) as (client, services):
        resp = client.post("/agents/narrator", json={"input": "ما هو الجبر؟", "user_id": "u1"})
        memory = client.get("/users/u1/memory/narrator").json()
        interactions = client.get("/users/u1/memory/narrator", params={"key": "last_interaction"}).json()

    assert resp.status_code == 200
    body = resp.json()
    assert body["output"]["content"] == "كان الخوارزمي في بغداد"
    assert body["output"]["agent_id"] == "narrator"
    assert body["output"]["metadata"]["figure"] == "al-khwarizmi"
    assert body["output"]["metadata"]["pipeline"]["attempts"] == 1
    assert body["meta"]["agent"] == "narrator"
    assert body["meta"]["session_id"].startswith("session_")

    assert {e["key"] for e in memory["entries"]} == {"last_interaction", "last_figure"}
    assert len(interactions["entries"]) == 1
    assert interactions["entries"][0]["value"]["input"] == "ما هو الجبر؟"


def test_invoke_unknown_agent_is_404(gateway):
    with gateway() as (client, services):
        resp = client.post("/agents/simulator", json={"input": "x", "user_id": "u1"})

    assert resp.status_code == 404
    error = resp.json()["error"]
    assert error["code"] == "AGENT_NOT_FOUND"
    assert "narrator" in error["details"]["available"]


def test_invoke_requires_input_and_user(gateway):
    with gateway() as (client, services):
        resp = client.post("/agents/narrator", json={})

    assert resp.status_code == 422
    paths = [d["path"] for d in resp.json()["error"]["details"]]
    assert ["input"] in paths
    assert ["user_id"] in paths


def test_stream_agent_emits_chunks_then_done(gateway, provider_cls):
    provider = provider_cls({_prompt("narrator"): "كان يا ما كان"})
    with gateway(provider=provider) as (client, services):
        resp = client.post("/agents/narrator/stream", json={"input": "احكِ لي قصة", "user_id": "u1"})

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    events = _sse_events(resp.text)
    chunks = [e["data"]["text"] for e in events if e["event"] == "message"]
    assert "".join(chunks).strip() == "كان يا ما كان"
    assert events[-1]["event"] == "done"
    assert events[-1]["data"]["chunks"] == len(chunks)


def test_stream_empty_input_is_json_error(gateway):
    with gateway() as (client, services):
        resp = client.post("/agents/narrator/stream", json={"input": "  ", "user_id": "u1"})

    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "INVALID_INPUT"


def test_stream_input_is_sanitized_and_truncated(gateway, provider_cls):
    provider = provider_cls({_prompt("narrator"): "قصة قصيرة"})
    raw = "كلمة " * 3000
    with gateway(provider=provider) as (client, services):
        resp = client.post("/agents/narrator/stream", json={"input": raw, "user_id": "u1"})
        limit = services.settings.max_input_chars

    assert resp.status_code == 200
    prompt = provider.calls[-1]["prompt"]
    assert prompt.endswith(sanitize_input(raw, limit))
    assert len(prompt) < limit + 500
    assert prompt.count("كلمة") == sanitize_input(raw, limit).count("كلمة")


def test_stream_is_admitted_by_the_agent_rate_limiter(gateway, provider_cls):
    provider = provider_cls({_prompt("visualizer"): "رسم"})
    with gateway(provider=provider) as (client, services):
        limiter = services.registry.get("visualizer").rate_limiter
        first = client.post("/agents/visualizer/stream", json={"input": "ارسم دائرة", "user_id": "u1"})
        second = client.post("/agents/visualizer/stream", json={"input": "ارسم مربعا", "user_id": "u1"})
        in_window = limiter.in_window()

    assert first.status_code == second.status_code == 200
    assert limiter.rule.limit == 30
    assert in_window == 2


def test_stream_rejects_oversized_context(gateway, provider_cls):
    provider = provider_cls()
    history = [{"role": "user", "content": "سؤال طويل " * 400} for _ in range(2)]
    with gateway(provider=provider, extra_env={"MAX_CONTEXT_TOKENS": "50"}) as (client, services):
        resp = client.post(
            "/agents/narrator/stream",
            json={"input": "تابع القصة", "user_id": "u1", "history": history},
        )

    assert resp.status_code == 413
    assert resp.json()["error"]["code"] == "CONTEXT_TOO_LARGE"
    assert provider.calls == []


def test_stream_provider_failure_is_error_event(gateway, raising_provider_cls):
    with gateway(provider=raising_provider_cls()) as (client, services):
        resp = client.post("/agents/narrator/stream", json={"input": "قصة", "user_id": "u1"})

    assert resp.status_code == 200
    events = _sse_events(resp.text)
    assert events[-1]["event"] == "error"
    assert events[-1]["data"]["error"]["code"] == "MODEL_ERROR"


def test_invoke_requires_bearer_when_auth_token_set(gateway):
    with gateway(auth_token="secret") as (client, services):
        resp = client.post("/agents/narrator", json={"input": "x", "user_id": "u1"})

    assert resp.status_code == 401


# -- /users ---------------------------------------------------------------------


def test_sessions_limit_validation(gateway):
    with gateway() as (client, services):
        too_small = client.get("/users/u1/sessions", params={"limit": 0})
        not_a_number = client.get("/users/u1/sessions", params={"limit": "many"})
        empty = client.get("/users/u1/sessions")

    assert too_small.status_code == 422
    assert not_a_number.status_code == 422
    assert not_a_number.json()["error"]["code"] == "INPUT_VALIDATION_ERROR"
    assert empty.json() == {"user_id": "u1", "sessions": []}


def test_memory_for_unknown_agent_is_404(gateway):
    with gateway() as (client, services):
        resp = client.get("/users/u1/memory/simulator")

    assert resp.status_code == 404


def test_delete_memory_clears_entries(gateway, provider_cls):
    with gateway(provider=provider_cls()) as (client, services):
        client.post("/agents/wellbeing", json={"input": "أنا متعب", "user_id": "u1"})
        before = client.get("/users/u1/memory/wellbeing").json()["entries"]
        deleted = client.delete("/users/u1/memory/wellbeing")
        after = client.get("/users/u1/memory/wellbeing").json()["entries"]
        persisted = session_store.load_memory_entries("u1", "wellbeing")

    assert len(before) == 1
    assert deleted.status_code == 200
    assert deleted.json()["cleared"] is True
    assert after == []
    assert persisted == []


def test_delete_memory_requires_bearer_when_auth_token_set(gateway):
    with gateway(auth_token="secret") as (client, services):
        denied = client.delete("/users/u1/memory/narrator")
        allowed = client.delete("/users/u1/memory/narrator", headers={"Authorization": "Bearer secret"})

    assert denied.status_code == 401
    assert allowed.status_code == 200
