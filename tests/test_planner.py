"""Tests for the orchestration planner and dependency batching."""

import pytest

from ultima_agent.agents.planner import (
    OrchestrationPlanner,
    detect_orchestration_needs,
    group_into_batches,
    is_basic_query,
    resolve_repo,
)
from ultima_agent.agents.tool_decision import analyze
from ultima_agent.core.config import Config
from ultima_agent.core.models import ExecutionStep


@pytest.fixture
def planner():
    return OrchestrationPlanner()


class TestOrchestrationDetection:
    @pytest.mark.parametrize("message", ["hello", "Hi there", "thanks", "what can you do"])
    def test_basic_queries(self, message):
        assert is_basic_query(message) is True
        assert detect_orchestration_needs(message).use_orchestration is False

    def test_repo_analysis(self):
        needs = detect_orchestration_needs("https://github.com/acme/widgets on github")
        assert needs.plan_type == "repo-analysis"
        assert needs.tools == ["github-tools"]

    def test_search_and_scrape(self):
        needs = detect_orchestration_needs("search for rust runtimes and scrape the top pages")
        assert needs.tools == ["web-search", "web-scraper"]
        assert needs.dependencies == {"web-scraper": ["web-search"]}

    def test_news_search(self):
        needs = detect_orchestration_needs("latest news on fusion energy")
        assert needs.plan_type == "news-search"
        assert needs.tools == ["web-search", "knowledge-search"]

    def test_resolve_repo_shorthand(self):
        repo = resolve_repo("what does acme/widgets do")
        assert repo.full_name == "acme/widgets"
        assert resolve_repo("nothing here") is None


class TestPlanner:
    """Plans derived from decisions"""

    def test_greeting_gets_empty_plan(self, planner):
        assert planner.plan(analyze("hello"), "hello") == []

    def test_repository_plan(self, planner):
        message = "https://github.com/acme/widgets"
        steps = planner.plan(analyze(message), message)
        assert len(steps) == 1
        assert steps[0].tool == "github-tools"
        assert steps[0].parameters == {"action": "get_repository", "owner": "acme", "repository": "widgets"}
        assert steps[0].dependencies == []

    def test_search_then_scrape_plan(self, planner):
        message = "search for rust runtimes and scrape the top pages"
        plan = planner.create_plan(analyze(message), message)
        assert plan.is_multi_tool
        search, scrape = plan.steps
        assert (search.step, search.tool) == (1, "web-search")
        assert (scrape.step, scrape.tool) == (2, "web-scraper")
        assert scrape.dependencies == [1]
        assert search.parameters == {"query": message, "limit": Config.knowledge.SEARCH_LIMIT}

    def test_single_tool_plan_from_decision(self, planner):
        message = "search for quantum computing breakthroughs"
        steps = planner.plan(analyze(message), message)
        assert [s.tool for s in steps] == ["web-search"]

    def test_dependent_step_dropped_with_its_prerequisite(self, planner):
        message = "search for rust runtimes and scrape the top pages"
        steps = planner.plan(analyze(message), message, available_tools=["web-scraper"])
        assert steps == []

    def test_plan_for_unmatched_message_is_empty(self, planner):
        message = "tell me a joke about compilers"
        assert planner.plan(analyze(message), message) == []


class TestBatching:
    @staticmethod
    def _step(number, deps=()):
        return ExecutionStep(step=number, tool="web-search", description="", dependencies=list(deps))

    def test_independent_steps_share_a_batch(self):
        batches = group_into_batches([self._step(1), self._step(2, [1]), self._step(3)])
        assert [[s.step for s in batch] for batch in batches] == [[1, 3], [2]]

    def test_cycle_is_broken_in_plan_order(self):
        batches = group_into_batches([self._step(1, [2]), self._step(2, [1])])
        assert [[s.step for s in batch] for batch in batches] == [[1], [2]]

    def test_empty_plan(self):
        assert group_into_batches([]) == []
