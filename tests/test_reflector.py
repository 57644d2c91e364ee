"""Tests for the reflection / continuation controller."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import FakeLLM
from ultima_agent.agents.reflector import (
    DEFAULT_NEXT_ACTION,
    ContinuationController,
    parse_reflection,
    should_continue,
)
from ultima_agent.core.models import LoopState, ReflectionDecision, ToolResult


class TestParseReflection:
    def test_json_embedded_in_prose(self):
        text = 'Sure. {"shouldContinue": true, "reasoning": "missing examples", "nextAction": "Add examples"} Done.'
        decision = parse_reflection(text)
        assert decision.should_continue is True
        assert decision.next_action == "Add examples"
        assert decision.reasoning == "missing examples"

    def test_string_flag(self):
        decision = parse_reflection('{"continue": "true"}')
        assert decision.should_continue is True
        assert decision.next_action == DEFAULT_NEXT_ACTION
        assert decision.reasoning == "No reasoning provided"

    def test_stop_clears_next_action(self):
        decision = parse_reflection('{"should_continue": false, "next_action": "ignored", "reasoning": "complete"}')
        assert decision.should_continue is False
        assert decision.next_action is None

    def test_keyword_fallback(self):
        decision = parse_reflection("The answer could improve with benchmarks")
        assert decision.should_continue is True
        assert decision.next_action == DEFAULT_NEXT_ACTION
        assert parse_reflection("The answer is complete.").should_continue is False

    def test_skips_non_json_braces(self):
        decision = parse_reflection('{not json} then {"shouldContinue": false, "reasoning": "ok"}')
        assert decision.should_continue is False
        assert decision.reasoning == "ok"

    def test_non_string_fields_are_dropped(self):
        decision = parse_reflection('{"continue": true, "nextAction": {"step": "search again"}, "reasoning": ["a", "b"]}')
        assert decision.should_continue is True
        assert decision.next_action == DEFAULT_NEXT_ACTION
        assert decision.reasoning == "No reasoning provided"

    def test_blank_next_action_uses_default(self):
        decision = parse_reflection('{"shouldContinue": true, "nextAction": "   ", "reasoning": "thin"}')
        assert decision.next_action == DEFAULT_NEXT_ACTION

    def test_next_action_is_stripped(self):
        decision = parse_reflection('{"shouldContinue": true, "nextAction": "  Add sources  "}')
        assert decision.next_action == "Add sources"


class TestLoopBound:
    def test_should_continue_respects_budget(self):
        wants_more = ReflectionDecision(should_continue=True, next_action="dig deeper")
        state = LoopState(max_iterations=2)
        assert should_continue(state, wants_more) is True
        assert should_continue(state.next().next(), wants_more) is False

    def test_should_continue_needs_next_action(self):
        assert should_continue(LoopState(), ReflectionDecision(should_continue=True)) is False


class TestContinuationController:
    """Short-circuits and model-backed evaluation"""

    @pytest.mark.asyncio
    async def test_disabled_by_user(self):
        llm = FakeLLM('{"shouldContinue": true}')
        decision = await ContinuationController(llm=llm).evaluate("answer", [], 0, "q", loop_enabled=False)
        assert decision.should_continue is False
        assert decision.reasoning == "Self-improvement loops are disabled by user preference"
        llm.ainvoke.assert_not_called()

    @pytest.mark.asyncio
    async def test_budget_exhausted(self):
        llm = FakeLLM('{"shouldContinue": true}')
        decision = await ContinuationController(llm=llm, max_loops=2).evaluate("answer", [], 2, "q")
        assert decision.reasoning == "Maximum loop iterations (2) reached"
        llm.ainvoke.assert_not_called()

    @pytest.mark.asyncio
    async def test_empty_response(self):
        decision = await ContinuationController(llm=FakeLLM("")).evaluate("   ", [], 0, "q")
        assert decision.reasoning == "No response to evaluate"

    @pytest.mark.asyncio
    async def test_model_decision(self):
        llm = FakeLLM('<thinking>hmm</thinking>{"shouldContinue": true, "nextAction": "Compare releases"}')
        tools = [ToolResult(name="execute_web-search", success=False, error="timeout")]
        decision = await ContinuationController(llm=llm).evaluate("short answer", tools, 0, "what changed?")

        assert decision.should_continue is True
        assert decision.next_action == "Compare releases"
        prompt = llm.ainvoke.call_args.args[0]
        assert "execute_web-search (failed)" in prompt
        assert "what changed?" in prompt

    @pytest.mark.asyncio
    async def test_model_error_stops(self):
        llm = MagicMock()
        llm.ainvoke = AsyncMock(side_effect=RuntimeError("ollama down"))
        decision = await ContinuationController(llm=llm).evaluate("answer", [], 0, "q")
        assert decision.should_continue is False
        assert decision.reasoning == "Evaluation error - proceeding with current response"

    @pytest.mark.asyncio
    async def test_malformed_model_object(self):
        llm = FakeLLM('{"shouldContinue": true, "reasoning": ["a", "b"], "nextAction": ["x"]}')
        decision = await ContinuationController(llm=llm).evaluate("answer", [], 0, "q")
        assert decision.should_continue is True
        assert decision.next_action == DEFAULT_NEXT_ACTION
