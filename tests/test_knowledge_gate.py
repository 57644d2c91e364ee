"""Tests for the knowledge persistence gate."""

import asyncio
import json
from unittest.mock import MagicMock

import pytest

from conftest import FakeLLM, WEB_RESULTS
from ultima_agent.agents.knowledge_gate import (
    KnowledgePersistenceGate,
    extract_json_from_response,
    is_similar_title,
    validate_insight,
    validate_tool_execution_for_learning,
)
from ultima_agent.core.exceptions import PersistenceError
from ultima_agent.core.models import InsightType, IterationRecord, ToolResult

INSIGHT = {
    "title": "React hooks run after render",
    "description": "useEffect callbacks run after the browser paints, so layout reads belong in useLayoutEffect.",
    "type": "concept",
    "confidence": 0.8,
    "domain": "frontend",
    "tags": ["react"],
    "isSignificant": True,
    "reasoning": "Reusable rule of thumb",
}


def ok(name, result):
    return ToolResult(name=f"execute_{name}", result=result, success=True)


def failed(name):
    return ToolResult(name=f"execute_{name}", success=False, error="boom")


class TestLearningValidation:
    def test_no_tools(self):
        validation = validate_tool_execution_for_learning([])
        assert validation.should_learn is True
        assert validation.confidence == 0.8

    def test_all_failed_blocks_learning(self):
        validation = validate_tool_execution_for_learning([failed("web-search")])
        assert validation.should_learn is False
        assert validation.reason == "All tool executions failed - preventing false negative learning"

    def test_empty_majority_is_tentative(self):
        validation = validate_tool_execution_for_learning([ok("web-search", []), ok("knowledge-search", [])])
        assert validation.tentative is True
        assert validation.confidence == 0.4
        assert validation.quality == "tentative"

    def test_mixed(self):
        validation = validate_tool_execution_for_learning([failed("jira-tools"), ok("web-search", WEB_RESULTS)])
        assert (validation.confidence, validation.quality) == (0.6, "medium")

    def test_all_successful(self):
        validation = validate_tool_execution_for_learning([ok("web-search", WEB_RESULTS)])
        assert (validation.confidence, validation.quality) == (0.9, "high")


class TestInsightParsing:
    def test_direct_json(self):
        assert extract_json_from_response(json.dumps(INSIGHT))["title"] == INSIGHT["title"]

    def test_fenced_json(self):
        content = "Here you go:\n```json\n" + json.dumps(INSIGHT) + "\n```"
        assert extract_json_from_response(content)["type"] == "concept"

    def test_braces_in_prose(self):
        assert extract_json_from_response('Result: {"title": "t"} hope that helps')["title"] == "t"

    def test_garbage(self):
        assert extract_json_from_response("no json at all") is None
        assert extract_json_from_response("") is None

    def test_validate_insight(self):
        assert validate_insight(INSIGHT) is True
        assert validate_insight({**INSIGHT, "isSignificant": False}) is False
        assert validate_insight({k: v for k, v in INSIGHT.items() if k != "isSignificant"}) is False
        assert validate_insight({**INSIGHT, "title": ""}) is False
        assert validate_insight({**{k: v for k, v in INSIGHT.items() if k != "isSignificant"},
                                 "is_significant": True}) is True

    def test_similar_titles(self):
        assert is_similar_title("React hooks run after render", "When do React hooks run") is True
        assert is_similar_title("Python packaging guide", "React hooks") is False
        assert is_similar_title("a b c d", "a x y z", ratio=0.25, cap=3) is True
        assert is_similar_title("", "anything") is False

    def test_similar_titles_unicode(self):
        assert is_similar_title("Квантовые вычисления", "квантовые  вычисления") is True
        assert is_similar_title("Квантовые вычисления сегодня", "Квантовые вычисления") is True
        assert is_similar_title("機械学習", "機械学習") is True
        assert is_similar_title("Квантовые вычисления", "Классическая музыка") is False


class TestPersistenceGate:
    """End-to-end gate against the SQLite store"""

    @pytest.mark.asyncio
    async def test_persists_node_and_chunk(self, store):
        gate = KnowledgePersistenceGate(store, llm=FakeLLM(json.dumps(INSIGHT)))
        history = [IterationRecord(iteration=0, input="q", response="first", tools_used=[ok("web-search", WEB_RESULTS)])]
        outcome = await gate.maybe_persist("how do hooks run?", "They run after render.", history,
                                           [ok("web-search", WEB_RESULTS)], "user-1")

        assert outcome.persisted is True
        node = store.get_knowledge_node(outcome.node_id)
        assert node["title"] == INSIGHT["title"]
        assert node["type"] == "concept"
        assert node["metadata"]["validation_status"] == "unverified"
        assert node["metadata"]["tools_involved"] == ["execute_web-search"]
        assert node["metadata"]["iterations_used"] == 1

        chunk = store.list_knowledge_chunks("user-1")[0]
        assert chunk["content"].startswith(INSIGHT["title"] + "\n\n")
        assert "Original Query: how do hooks run?" in chunk["content"]
        assert chunk["content"].endswith("Key Insights: They run after render.")

    @pytest.mark.asyncio
    async def test_same_insight_twice_stores_one_node(self, store):
        gate = KnowledgePersistenceGate(store, llm=FakeLLM(json.dumps(INSIGHT)))
        tools = [ok("web-search", WEB_RESULTS)]
        first = await gate.maybe_persist("q", "answer", [], tools, "user-1")
        second = await gate.maybe_persist("q", "answer", [], tools, "user-1")

        assert first.persisted is True
        assert second.persisted is False
        assert second.reason == "Similar knowledge already exists"
        assert store.find_node_titles("user-1") == [INSIGHT["title"]]

    @pytest.mark.asyncio
    async def test_non_ascii_title_stored_once(self, store):
        insight = {**INSIGHT, "title": "Квантовые вычисления"}
        gate = KnowledgePersistenceGate(store, llm=FakeLLM(json.dumps(insight)))
        first = await gate.maybe_persist("q", "answer", [], [], "user-1")
        second = await gate.maybe_persist("q", "answer", [], [], "user-1")

        assert (first.persisted, second.persisted) == (True, False)
        assert store.find_node_titles("user-1") == ["Квантовые вычисления"]

    @pytest.mark.asyncio
    async def test_concurrent_persists_store_one_node(self, store):
        gate = KnowledgePersistenceGate(store, llm=FakeLLM(json.dumps(INSIGHT)))
        outcomes = await asyncio.gather(*[
            gate.maybe_persist("q", "answer", [], [], "user-1") for _ in range(5)
        ])

        assert sum(o.persisted for o in outcomes) == 1
        assert store.find_node_titles("user-1") == [INSIGHT["title"]]
        assert len(store.list_knowledge_chunks("user-1")) == 1

    @pytest.mark.asyncio
    async def test_all_failed_skips_without_model_call(self, store):
        llm = FakeLLM(json.dumps(INSIGHT))
        gate = KnowledgePersistenceGate(store, llm=llm)
        outcome = await gate.maybe_persist("q", "answer", [], [failed("web-search")], "user-1")

        assert outcome.persisted is False
        assert outcome.reason == "All tool executions failed - preventing false negative learning"
        llm.ainvoke.assert_not_called()
        assert store.find_node_titles("user-1") == []

    @pytest.mark.asyncio
    async def test_tentative_learning(self, store):
        gate = KnowledgePersistenceGate(store, llm=FakeLLM("```json\n" + json.dumps(INSIGHT) + "\n```"))
        tools = [ok("web-search", []), ok("knowledge-search", [])]
        outcome = await gate.maybe_persist("q", "answer", [], tools, "user-1")

        assert outcome.persisted is True
        assert outcome.insight.type == InsightType.TENTATIVE_FACT
        assert outcome.insight.confidence == 0.4
        assert "tentative" in outcome.insight.tags
        node = store.get_knowledge_node(outcome.node_id)
        assert node["type"] == "tentative_fact"
        assert node["metadata"]["is_tentative"] is True

    @pytest.mark.asyncio
    async def test_insignificant_insight(self, store):
        gate = KnowledgePersistenceGate(store, llm=FakeLLM(json.dumps({**INSIGHT, "isSignificant": False})))
        outcome = await gate.maybe_persist("q", "answer", [], [], "user-1")
        assert outcome.persisted is False
        assert outcome.reason == "No significant insights generated"

    @pytest.mark.asyncio
    async def test_requires_user(self, store):
        gate = KnowledgePersistenceGate(store, llm=FakeLLM(json.dumps(INSIGHT)))
        outcome = await gate.maybe_persist("q", "answer", [], [], None)
        assert outcome.reason == "No user to attribute knowledge to"

    @pytest.mark.asyncio
    async def test_store_failure_is_reported(self):
        store = MagicMock()
        store.insert_knowledge_if_absent.side_effect = PersistenceError("disk full")
        gate = KnowledgePersistenceGate(store, llm=FakeLLM(json.dumps(INSIGHT)))

        outcome = await gate.maybe_persist("q", "answer", [], [], "user-1")
        assert outcome.persisted is False
        assert outcome.reason == "disk full"

    @pytest.mark.asyncio
    async def test_deprecate(self, store):
        gate = KnowledgePersistenceGate(store, llm=FakeLLM(json.dumps(INSIGHT)))
        outcome = await gate.maybe_persist("q", "answer", [], [], "user-1")

        assert await gate.deprecate_node(outcome.node_id, "someone-else", "outdated") is False
        assert await gate.deprecate_node(outcome.node_id, "user-1", "outdated") is True
        metadata = store.get_knowledge_node(outcome.node_id)["metadata"]
        assert metadata["validation_status"] == "deprecated"
        assert metadata["deprecated_reason"] == "outdated"
