"""Tests for the forced-execution fallback controller."""

import pytest

from ultima_agent.agents.forced_tools import (
    ForcedExecutionController,
    extract_search_query,
    render_jira,
    render_or_fallback,
    render_repository,
)
from ultima_agent.agents.tool_decision import analyze
from ultima_agent.core.models import RepoRef, ToolStatus
from ultima_agent.tools.registry import JIRA_TOOLS_DESCRIPTOR, ToolRegistry


@pytest.fixture
def controller():
    return ForcedExecutionController()


class TestRendering:
    def test_repository_render(self):
        text = render_repository(RepoRef(owner="acme", repo="widgets"), {
            "description": "Widgets", "language": "Python", "stargazers_count": 0,
            "created_at": "2021-03-04T10:00:00Z", "license": {"name": "MIT License"},
        })
        assert text.startswith("I've analyzed the GitHub repository **acme/widgets**:")
        assert "**Stars**: 0" in text
        assert "**Created**: Mar 04, 2021" in text
        assert "**License**: MIT License" in text

    def test_repository_render_without_data(self):
        text = render_repository(RepoRef(owner="acme", repo="widgets"), None)
        assert "couldn't retrieve detailed information" in text

    def test_jira_projects(self):
        text = render_jira("list_projects", [{"key": "OPS", "name": "Operations"}])
        assert "**OPS**: Operations" in text
        assert "didn't find any projects" in render_jira("list_projects", [])

    def test_repository_odd_topics(self):
        text = render_repository(RepoRef(owner="acme", repo="widgets"), {"topics": [1, None, "cli"]})
        assert "**Topics**: 1, None, cli" in text
        assert "**Topics**: widgets" in render_repository(RepoRef(owner="acme", repo="widgets"), {"topics": "widgets"})

    def test_jira_issues_with_odd_items(self):
        text = render_jira("search_issues", {"issues": [{"key": "OPS-1", "summary": "Login"}, "OPS-2 raw", 7]})
        assert "**OPS-1**: Login" in text
        assert "- OPS-2 raw" in text
        assert "- 7" in text
        assert "didn't find any matching issues" in render_jira("search_issues", {"issues": "none"})

    def test_render_or_fallback(self):
        def broken(payload):
            return payload["missing"]

        assert render_or_fallback(broken, "fallback text", {}) == "fallback text"
        assert render_or_fallback(lambda payload: "", "fallback text", {}) == "fallback text"
        assert render_or_fallback(lambda payload: "ok", "fallback text", {}) == "ok"

    def test_follow_up_query_rewrite(self):
        repo = RepoRef(owner="acme", repo="widgets")
        assert extract_search_query("show me its file structure", repo) == (
            "acme/widgets repository file structure directory layout"
        )
        assert extract_search_query("show me its file structure") == "show me its file structure"


class TestMaybeForce:
    """Deterministic execution when the model skipped a required tool"""

    @pytest.mark.asyncio
    async def test_not_forced_when_tools_were_called(self, controller, registry, caller):
        decision = analyze("https://github.com/acme/widgets")
        assert await controller.maybe_force(decision, "x", caller, registry, tool_calls_made=1) is None

    @pytest.mark.asyncio
    async def test_not_forced_for_general_messages(self, controller, registry, caller):
        assert await controller.maybe_force(analyze("hello"), "hello", caller, registry) is None

    @pytest.mark.asyncio
    async def test_github_repository(self, controller, registry, caller, backends):
        message = "https://github.com/acme/widgets"
        forced = await controller.maybe_force(analyze(message), message, caller, registry)

        assert "acme/widgets" in forced.final_response
        assert "**Primary Language**: Python" in forced.final_response
        params = backends.called("github-tools")[0]
        assert (params["action"], params["owner"], params["repository"]) == ("get_repository", "acme", "widgets")
        assert forced.tools_used[0].success is True
        assert forced.tool_progress[0].display_name.endswith("(Forced)")
        assert forced.tool_progress[0].status == ToolStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_github_failure_still_answers(self, controller, registry, caller, backends):
        backends.github_response = {"success": False, "error": "Not Found"}
        message = "https://github.com/acme/widgets"
        forced = await controller.maybe_force(analyze(message), message, caller, registry)

        assert forced.final_response
        assert "Not Found" in forced.final_response
        assert forced.tools_used[0].success is False

    @pytest.mark.asyncio
    async def test_github_without_registered_tool(self, controller, caller):
        message = "https://github.com/acme/widgets"
        forced = await controller.maybe_force(analyze(message), message, caller, ToolRegistry())
        assert "not properly configured" in forced.final_response
        assert forced.tools_used == []

    @pytest.mark.asyncio
    async def test_search_escalates_to_web_on_empty_knowledge(self, controller, registry, caller, backends):
        message = "search for quantum computing news"
        forced = await controller.maybe_force(analyze(message), message, caller, registry)

        assert [r.name for r in forced.tools_used] == ["execute_knowledge-search", "execute_web-search"]
        assert "Quantum advantage reached" in forced.final_response
        assert backends.called("knowledge-search")[0]["userId"] == "user-1"

    @pytest.mark.asyncio
    async def test_search_escalates_when_knowledge_fails(self, controller, registry, caller, backends):
        backends.knowledge_response = {"success": False, "error": "index offline"}
        message = "search for quantum computing news"
        forced = await controller.maybe_force(analyze(message), message, caller, registry)

        assert forced.tools_used[0].success is False
        assert forced.tools_used[1].success is True

    @pytest.mark.asyncio
    async def test_search_answered_from_knowledge(self, controller, registry, caller, backends):
        backends.knowledge_response = {"success": True, "results": [
            {"title": "Qubits primer", "snippet": "Notes on superconducting qubits"},
        ]}
        message = "search for quantum computing news"
        forced = await controller.maybe_force(analyze(message), message, caller, registry)

        assert len(forced.tools_used) == 1
        assert "Qubits primer" in forced.final_response
        assert backends.called("web-search") == []

    @pytest.mark.asyncio
    async def test_search_total_failure_is_non_empty(self, controller, registry, caller, backends):
        backends.knowledge_response = {"success": False, "error": "index offline"}
        backends.web_response = {"success": False, "error": "rate limited"}
        message = "search for quantum computing news"
        forced = await controller.maybe_force(analyze(message), message, caller, registry)

        assert "rate limited" in forced.final_response
        assert all(not r.success for r in forced.tools_used)

    @pytest.mark.asyncio
    async def test_jira_unavailable(self, controller, registry, caller):
        message = "show my projects"
        forced = await controller.maybe_force(analyze(message), message, caller, registry)
        assert "Jira tools are not properly configured" in forced.final_response

    @pytest.mark.asyncio
    async def test_jira_projects_listed(self, controller, registry, caller):
        projects = [{"key": "OPS", "name": "Operations"}, {"key": "WEB", "name": "Website"}]
        registry.register(JIRA_TOOLS_DESCRIPTOR, lambda params: {"success": True, "data": projects})

        message = "show my projects"
        forced = await controller.maybe_force(analyze(message), message, caller, registry)
        assert "I found 2 Jira projects:" in forced.final_response
        assert "**WEB**: Website" in forced.final_response

    @pytest.mark.asyncio
    async def test_github_odd_payload_still_answers(self, controller, registry, caller, backends):
        backends.github_response = {"success": True, "data": {"description": "Widgets", "topics": [{"name": "x"}, 3]}}
        message = "https://github.com/acme/widgets"
        forced = await controller.maybe_force(analyze(message), message, caller, registry)
        assert "acme/widgets" in forced.final_response
        assert "**Topics**:" in forced.final_response
