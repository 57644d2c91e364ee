"""Tests for the FastAPI surface."""

import pytest
from fastapi.testclient import TestClient

from conftest import FakeCompletionClient, FakeLLM, chat_reply
from ultima_agent.agents.agent_brain import AgentBrain
from ultima_agent.agents.knowledge_gate import KnowledgePersistenceGate
from ultima_agent.agents.reflector import ContinuationController
from ultima_agent.api.main import app, app_state

STOP = '{"shouldContinue": false, "reasoning": "complete"}'


@pytest.fixture
def client():
    # No context manager: the lifespan (real database and model wiring) is not started
    return TestClient(app)


@pytest.fixture
def ready_state(monkeypatch, registry, store):
    gate = KnowledgePersistenceGate(store, llm=FakeLLM("{}"))
    brain = AgentBrain(
        registry,
        store=store,
        client=FakeCompletionClient([chat_reply("Hello from the agent.")]),
        reflector=ContinuationController(llm=FakeLLM(STOP)),
        knowledge_gate=gate,
    )
    monkeypatch.setattr(app_state, "brain", brain)
    monkeypatch.setattr(app_state, "registry", registry)
    monkeypatch.setattr(app_state, "db", store)
    monkeypatch.setattr(app_state, "ready", True)
    monkeypatch.setattr(app_state, "db_connected", True)
    return app_state


class TestUninitialized:
    def test_health_reports_initializing(self, client):
        body = client.get("/health").json()
        assert body["status"] == "initializing"
        assert body["ready"] is False

    @pytest.mark.parametrize("method,path,payload", [
        ("post", "/query", {"message": "hello"}),
        ("get", "/tools", None),
        ("get", "/sessions/s1/messages", None),
        ("post", "/knowledge/n1/deprecate", {"user_id": "u1"}),
    ])
    def test_503_without_backend(self, client, method, path, payload):
        response = getattr(client, method)(path, json=payload) if payload else getattr(client, method)(path)
        assert response.status_code == 503


class TestReady:
    def test_health(self, client, ready_state):
        body = client.get("/health").json()
        assert body["status"] == "ok"
        assert body["db_connected"] is True
        assert "github-tools" in body["tools"]

    def test_tools(self, client, ready_state):
        tools = client.get("/tools").json()["tools"]
        assert {t["id"] for t in tools} == {"web-search", "web-scraper", "knowledge-search", "github-tools"}

    def test_query(self, client, ready_state):
        response = client.post("/query", json={"message": "hello", "session_id": "api-1"})
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["message"] == "Hello from the agent."
        assert body["session_id"] == "api-1"
        assert body["decision"]["detected_type"] == "general"
        assert body["loop_iterations"] == 1

        messages = client.get("/sessions/api-1/messages").json()["messages"]
        assert [m["role"] for m in messages] == ["user", "assistant"]

    def test_query_validation(self, client, ready_state):
        assert client.post("/query", json={}).status_code == 422

    def test_deprecate(self, client, ready_state, store):
        node_id = store.insert_knowledge({"user_id": "u1", "title": "T", "type": "fact"}, {"content": "c"})

        missing = client.post("/knowledge/nope/deprecate", json={"user_id": "u1"}).json()
        assert missing["success"] is False

        body = client.post(f"/knowledge/{node_id}/deprecate", json={"user_id": "u1", "reason": "outdated"}).json()
        assert body == {"success": True, "node_id": node_id, "validation_status": "deprecated"}
        assert store.get_knowledge_node(node_id)["metadata"]["deprecated_reason"] == "outdated"
