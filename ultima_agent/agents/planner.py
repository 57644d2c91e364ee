# Ultima Agent: Tool-Using Conversational Agent
# Copyright (C) 2026 Pankaj Varma
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.

import re
from typing import Any, Dict, Iterable, List, NamedTuple, Optional

from ..core.config import Config
from ..core.models import ExecutionPlan, ExecutionStep, RepoRef, ToolDecision
from ..core.utils import logger
from .tool_decision import (
    GITHUB_TOOLS,
    JIRA_TOOLS,
    KNOWLEDGE_SEARCH,
    WEB_SCRAPER,
    WEB_SEARCH,
    parse_github_url,
)

BASIC_QUERIES = (
    'hello', 'hi', 'hey', 'good morning', 'good afternoon', 'good evening',
    'how are you', 'what can you do', 'help', 'thanks', 'thank you'
)

REPO_SHORTHAND_PATTERN = re.compile(r'\b([\w-]+)/([\w-]+)\b')

MULTI_TOOL_INDICATORS = (
    (re.compile(r'search.*knowledge|knowledge.*search'), [WEB_SEARCH, KNOWLEDGE_SEARCH]),
    (re.compile(r'github.*search|search.*github'), [GITHUB_TOOLS, WEB_SEARCH]),
    (re.compile(r'jira.*search|search.*jira'), [JIRA_TOOLS, WEB_SEARCH]),
)

STEP_DURATIONS = {
    WEB_SEARCH: 6,
    KNOWLEDGE_SEARCH: 4,
    GITHUB_TOOLS: 5,
    JIRA_TOOLS: 5,
    WEB_SCRAPER: 8,
}

STEP_DESCRIPTIONS = {
    WEB_SEARCH: "Search the web for current information",
    KNOWLEDGE_SEARCH: "Search personal knowledge base",
    GITHUB_TOOLS: "Inspect GitHub repository",
    JIRA_TOOLS: "Query Jira",
    WEB_SCRAPER: "Extract page content from search results",
}


class OrchestrationNeeds(NamedTuple):
    use_orchestration: bool
    tools: List[str]
    dependencies: Dict[str, List[str]]
    plan_type: str


SINGLE_TOOL = OrchestrationNeeds(False, [], {}, "single-tool")


def is_basic_query(message: str) -> bool:
    """Greetings and small talk never get a plan"""
    lower = message.lower().strip()
    return any(lower == q or lower.startswith(q + ' ') for q in BASIC_QUERIES)


def resolve_repo(message: str) -> Optional[RepoRef]:
    """Full github.com URL first, then an owner/repo shorthand"""
    repo = parse_github_url(message)
    if repo:
        return repo
    match = REPO_SHORTHAND_PATTERN.search(message)
    if match:
        return RepoRef(owner=match.group(1), repo=match.group(2))
    return None


def detect_orchestration_needs(message: str) -> OrchestrationNeeds:
    """Multi-tool plan detection; first matching rule wins"""
    lower = message.lower().strip()
    if is_basic_query(lower):
        return SINGLE_TOOL

    if 'comprehensive' in lower or 'detailed analysis' in lower or ('search' in lower and 'analyze' in lower):
        return OrchestrationNeeds(True, [WEB_SEARCH, KNOWLEDGE_SEARCH], {}, "comprehensive-search")

    repo_match = re.search(r'github\.com/([^/\s]+)/([^/\s]+)', lower) or REPO_SHORTHAND_PATTERN.search(lower)
    if repo_match and ('repo' in lower or 'github' in lower or 'analyze' in lower):
        return OrchestrationNeeds(True, [GITHUB_TOOLS], {}, "repo-analysis")

    if 'search' in lower and ('scrape' in lower or 'extract' in lower):
        return OrchestrationNeeds(
            True, [WEB_SEARCH, WEB_SCRAPER], {WEB_SCRAPER: [WEB_SEARCH]}, "comprehensive-search"
        )

    if ('latest news' in lower or 'breaking news' in lower
            or ('news' in lower and ('today' in lower or 'recent' in lower))):
        return OrchestrationNeeds(True, [WEB_SEARCH, KNOWLEDGE_SEARCH], {}, "news-search")

    for pattern, tools in MULTI_TOOL_INDICATORS:
        if pattern.search(lower):
            return OrchestrationNeeds(True, list(tools), {}, "comprehensive-search")

    return SINGLE_TOOL


class OrchestrationPlanner:
    """
    Expands a ToolDecision into ordered, dependency-annotated ExecutionSteps.
    Dependencies only state "must have output of"; data flow is bound at execution time.
    """

    def __init__(self):
        logger.info("Orchestration Planner initialized")

    def default_parameters(self, tool: str, message: str, decision: Optional[ToolDecision] = None) -> Dict[str, Any]:
        if tool in (WEB_SEARCH, KNOWLEDGE_SEARCH):
            return {"query": message, "limit": Config.knowledge.SEARCH_LIMIT}
        if tool == WEB_SCRAPER:
            return {}
        if tool == GITHUB_TOOLS:
            action = (decision.tool_action if decision and decision.tool_action else "get_repository")
            repo = (decision.github_repo if decision and decision.github_repo else None) or resolve_repo(message)
            if repo:
                return {"action": action, "owner": repo.owner, "repository": repo.repo}
            return {"action": action, "query": message}
        if tool == JIRA_TOOLS:
            action = decision.tool_action if decision and decision.tool_action else "search_issues"
            return {"action": action, "query": message}
        return {"query": message}

    def _build_steps(
        self,
        tools: List[str],
        dependencies: Dict[str, List[str]],
        message: str,
        decision: Optional[ToolDecision]
    ) -> List[ExecutionStep]:
        step_numbers = {tool: index for index, tool in enumerate(tools, start=1)}
        steps = []
        for tool in tools:
            steps.append(ExecutionStep(
                step=step_numbers[tool],
                tool=tool,
                description=STEP_DESCRIPTIONS.get(tool, f"Execute {tool}"),
                parameters=self.default_parameters(tool, message, decision),
                dependencies=[step_numbers[d] for d in dependencies.get(tool, []) if d in step_numbers],
                estimated_duration=STEP_DURATIONS.get(tool, 5),
            ))
        return steps

    def create_plan(
        self,
        decision: ToolDecision,
        message: str,
        available_tools: Optional[Iterable[str]] = None
    ) -> ExecutionPlan:
        if is_basic_query(message):
            logger.info("Planner: basic query, empty plan")
            return ExecutionPlan(query=message, plan_type="single-tool", steps=[])

        available = set(available_tools) if available_tools is not None else None
        needs = detect_orchestration_needs(message)

        if needs.use_orchestration:
            tools = [t for t in needs.tools if available is None or t in available]
            # A dependent step whose prerequisite is unavailable has nothing to consume
            tools = [t for t in tools if all(d in tools for d in needs.dependencies.get(t, []))]
            if tools:
                steps = self._build_steps(tools, needs.dependencies, message, decision)
                logger.info(f"Planner: {needs.plan_type} plan with {len(steps)} step(s): {[s.tool for s in steps]}")
                return ExecutionPlan(query=message, plan_type=needs.plan_type, steps=steps)

        if decision.should_use_tools and decision.suggested_tools:
            tools = [t for t in decision.suggested_tools if available is None or t in available][:1]
            steps = self._build_steps(tools, {}, message, decision)
            logger.info(f"Planner: single-tool plan {[s.tool for s in steps]}")
            return ExecutionPlan(query=message, plan_type="single-tool", steps=steps)

        return ExecutionPlan(query=message, plan_type="single-tool", steps=[])

    def plan(
        self,
        decision: ToolDecision,
        message: str,
        available_tools: Optional[Iterable[str]] = None
    ) -> List[ExecutionStep]:
        return self.create_plan(decision, message, available_tools).steps


def group_into_batches(steps: List[ExecutionStep]) -> List[List[ExecutionStep]]:
    """
    Group steps into batches whose dependencies are all satisfied by earlier batches.
    Steps inside a batch keep plan order. A dependency cycle (or a dependency on a
    step outside the plan) is broken by taking the first unprocessed step alone.
    """
    batches: List[List[ExecutionStep]] = []
    processed = set()
    remaining = list(steps)

    while remaining:
        ready = [s for s in remaining if all(d in processed for d in s.dependencies)]
        if not ready:
            logger.warning(f"Planner: unresolved dependencies, forcing step {remaining[0].step}")
            ready = [remaining[0]]
        batches.append(ready)
        processed.update(s.step for s in ready)
        remaining = [s for s in remaining if s.step not in processed]

    return batches
