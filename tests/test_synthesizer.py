"""Tests for failure-aware result synthesis."""

import pytest

from conftest import FakeCompletionClient, WEB_RESULTS, chat_reply
from ultima_agent.agents.synthesizer import (
    ResultSynthesizer,
    analyze_tool_execution_quality,
    extract_knowledge_results,
    generate_fallback_response,
    prepare_synthesis_context,
)
from ultima_agent.core.exceptions import CompletionServiceError
from ultima_agent.core.models import KnowledgeItem, ToolExecutionQuality, ToolResult


def ok(name, result):
    return ToolResult(name=f"execute_{name}", result=result, success=True)


def failed(name, error="boom"):
    return ToolResult(name=f"execute_{name}", result={"error": error}, success=False, error=error)


class TestQualityAnalysis:
    def test_no_tools_is_medium(self):
        assert analyze_tool_execution_quality([]).quality == ToolExecutionQuality.MEDIUM

    def test_all_failed(self):
        analysis = analyze_tool_execution_quality([failed("web-search"), failed("github-tools")])
        assert analysis.quality == ToolExecutionQuality.FAILED
        assert analysis.failed_tools == ["execute_web-search", "execute_github-tools"]
        assert analysis.has_data is False

    def test_mostly_empty_is_low(self):
        analysis = analyze_tool_execution_quality([ok("web-search", []), ok("knowledge-search", [])])
        assert analysis.quality == ToolExecutionQuality.LOW

    def test_mixed_is_medium(self):
        analysis = analyze_tool_execution_quality([ok("knowledge-search", []), ok("web-search", WEB_RESULTS)])
        assert analysis.quality == ToolExecutionQuality.MEDIUM
        assert analysis.empty_results == ["execute_knowledge-search"]
        assert analysis.has_data is True

    def test_failure_with_data_is_medium(self):
        analysis = analyze_tool_execution_quality([failed("jira-tools"), ok("web-search", WEB_RESULTS)])
        assert analysis.quality == ToolExecutionQuality.MEDIUM

    def test_all_data_is_high(self):
        analysis = analyze_tool_execution_quality([ok("web-search", WEB_RESULTS)])
        assert analysis.quality == ToolExecutionQuality.HIGH

    def test_zero_total_counts_as_empty(self):
        analysis = analyze_tool_execution_quality([ok("jira-tools", {"issues": [], "total": 0})])
        assert analysis.quality == ToolExecutionQuality.LOW


class TestKnowledgeExtraction:
    def test_reads_knowledge_results_only(self):
        results = [
            ok("knowledge-search", [{"id": "n1", "title": "Hooks", "snippet": "useEffect runs after render",
                                     "metadata": {"is_tentative": True}}]),
            ok("web-search", WEB_RESULTS),
            failed("knowledge-search"),
        ]
        items = extract_knowledge_results(results)
        assert [i.title for i in items] == ["Hooks"]
        assert items[0].metadata["is_tentative"] is True

    def test_reads_nested_results(self):
        items = extract_knowledge_results([ok("knowledge-search", {"results": [{"content": "raw chunk"}]})])
        assert items[0].snippet == "raw chunk"
        assert items[0].title == "Untitled"


class TestContextAndFallback:
    def test_context_flags_tentative_and_deprecated(self):
        knowledge = [
            KnowledgeItem(title="Maybe", snippet="s", metadata={"is_tentative": True}),
            KnowledgeItem(title="Old", snippet="s", metadata={"validation_status": "deprecated"}),
        ]
        tools = [failed("web-search", "timeout")]
        context = prepare_synthesis_context("q", tools, knowledge, analyze_tool_execution_quality(tools))
        assert context.startswith('Original Question: "q"')
        assert "Error: timeout" in context
        assert "Marked as tentative/unverified" in context
        assert "Marked as deprecated" in context

    def test_all_failed_fallback_is_non_empty(self):
        tools = [failed("web-search"), failed("github-tools")]
        text = generate_fallback_response("q", tools, [], analyze_tool_execution_quality(tools))
        assert text.startswith('I attempted to address your question: "q"')
        assert "all tool executions encountered issues" in text

    def test_mixed_fallback_acknowledges_empty_knowledge(self):
        message = "quantum computing news"
        tools = [ok("knowledge-search", []), ok("web-search", WEB_RESULTS)]
        text = generate_fallback_response(message, tools, [], analyze_tool_execution_quality(tools))
        assert "Based on available data" in text
        assert "No results found in knowledge base" in text
        assert "Quantum advantage reached" in text
        assert "no data exists" not in text.lower()

    def test_fallback_lists_at_most_three_knowledge_items(self):
        knowledge = [KnowledgeItem(title=f"Item {i}", snippet="x") for i in range(5)]
        text = generate_fallback_response("q", [], knowledge)
        assert "3. Item 2" in text
        assert "Item 3" not in text


class TestResultSynthesizer:
    """Completion-backed synthesis with deterministic fallback"""

    @pytest.mark.asyncio
    async def test_uses_completion_answer(self):
        client = FakeCompletionClient([chat_reply("Here is what I found.")])
        synthesizer = ResultSynthesizer(client=client)
        answer = await synthesizer.synthesize("q", [ok("web-search", WEB_RESULTS)])

        assert answer == "Here is what I found."
        system, user = client.calls[0]["messages"]
        assert "Tool Quality: high" in system["content"]
        assert "TOOL RESULTS:" in user["content"]

    @pytest.mark.asyncio
    async def test_falls_back_on_completion_error(self):
        client = FakeCompletionClient([CompletionServiceError("connection refused")])
        tools = [failed("web-search"), failed("knowledge-search")]
        answer = await ResultSynthesizer(client=client).synthesize("q", tools)
        assert "all tool executions encountered issues" in answer

    @pytest.mark.asyncio
    async def test_falls_back_on_empty_reply(self):
        client = FakeCompletionClient([chat_reply("")])
        answer = await ResultSynthesizer(client=client).synthesize("q", [ok("web-search", WEB_RESULTS)])
        assert answer.startswith("I attempted to address your question")

    @pytest.mark.asyncio
    async def test_falls_back_on_undecodable_reply(self):
        client = FakeCompletionClient([{"choices": [42]}])
        answer = await ResultSynthesizer(client=client).synthesize("q", [ok("web-search", WEB_RESULTS)])
        assert answer.startswith("I attempted to address your question")

    @pytest.mark.asyncio
    async def test_content_parts_reply(self):
        reply = {"choices": [{"message": {"content": [{"type": "text", "text": "Joined answer."}]}}]}
        answer = await ResultSynthesizer(client=FakeCompletionClient([reply])).synthesize(
            "q", [ok("web-search", WEB_RESULTS)]
        )
        assert answer == "Joined answer."
