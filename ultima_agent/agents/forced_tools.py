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

"""
Forced-Execution Fallback Controller for Ultima_Agent

When the decision analyzer required tools but the model answered without calling any,
this controller runs the minimum necessary tool itself and renders the answer
directly from the raw payload, without another LLM call. Every path returns a
non-empty, user-presentable response, including on total failure.
"""

import re
from datetime import datetime
from typing import Any, Callable, List, Optional

from ..core.config import Config
from ..core.models import (
    CallerContext,
    DetectedType,
    ForcedResult,
    RepoRef,
    ToolDecision,
    ToolProgress,
    ToolResult,
)
from ..core.utils import is_empty_payload, logger, truncate_text
from ..tools.registry import ToolRegistry
from .tool_decision import GITHUB_TOOLS, JIRA_TOOLS, KNOWLEDGE_SEARCH, WEB_SEARCH, parse_github_url
from .tool_executor import ToolExecutionEngine

FORCED_SUFFIX = " (Forced)"
MAX_RENDERED_RESULTS = 3
MAX_RENDERED_WEB_RESULTS = 5

STRUCTURE_FOLLOW_UP = re.compile(r'\b(its?|this|that)\s+(file structure|directory structure|structure)\b', re.IGNORECASE)
CONTENTS_FOLLOW_UP = re.compile(r'\b(its?|this|that)\s+(files|folders|contents?)\b', re.IGNORECASE)


def extract_search_query(message: str, repo_context: Optional[RepoRef] = None) -> str:
    """Rewrite context-dependent follow-ups about a known repository into standalone queries"""
    if repo_context:
        if STRUCTURE_FOLLOW_UP.search(message):
            return f"{repo_context.full_name} repository file structure directory layout"
        if CONTENTS_FOLLOW_UP.search(message):
            return f"{repo_context.full_name} repository files folders contents"
    return message


def _format_date(value: Any) -> str:
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).strftime("%b %d, %Y")
    except ValueError:
        return str(value)


def _as_list(payload: Any) -> List[Any]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in ("results", "data", "items"):
            if isinstance(payload.get(key), list):
                return payload[key]
    return []


# =============================================================================
# RENDERERS
# =============================================================================

def render_or_fallback(render: Callable[..., str], fallback: str, *args) -> str:
    """Run a renderer; an unexpected payload shape yields `fallback` instead of an exception"""
    try:
        text = render(*args)
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        logger.error(f"Rendering {render.__name__} failed: {e}")
        return fallback
    return text or fallback


def render_repository(repo: RepoRef, data: Any) -> str:
    if not data or not isinstance(data, dict):
        return (
            f"I was able to access the GitHub repository **{repo.full_name}**, but couldn't retrieve detailed "
            "information. The repository might be private or there might be an issue with the GitHub API. "
            "Please check if the repository exists and is publicly accessible."
        )

    lines = [f"I've analyzed the GitHub repository **{repo.full_name}**:", ""]
    if data.get("description"):
        lines += [f"**Description**: {data['description']}", ""]
    if data.get("language"):
        lines.append(f"**Primary Language**: {data['language']}")
    if data.get("stargazers_count") is not None:
        lines.append(f"**Stars**: {data['stargazers_count']}")
    if data.get("forks_count") is not None:
        lines.append(f"**Forks**: {data['forks_count']}")
    if data.get("created_at"):
        lines.append(f"**Created**: {_format_date(data['created_at'])}")
    if data.get("updated_at"):
        lines.append(f"**Last Updated**: {_format_date(data['updated_at'])}")
    topics = data.get("topics")
    if topics:
        topics = topics if isinstance(topics, list) else [topics]
        lines.append(f"**Topics**: {', '.join(str(t) for t in topics)}")
    license_info = data.get("license")
    license_name = license_info.get("name") if isinstance(license_info, dict) else license_info
    if license_name:
        lines.append(f"**License**: {license_name}")
    lines += ["", "Would you like me to examine specific files, the README, or other aspects of this repository?"]
    return "\n".join(lines)


def render_knowledge_results(message: str, results: List[Any]) -> str:
    snippet_chars = Config.knowledge.SNIPPET_CHARS
    lines = [f'I searched your knowledge base for "{message}" and found {len(results)} relevant results:', ""]
    for index, item in enumerate(results[:MAX_RENDERED_RESULTS], start=1):
        item = item if isinstance(item, dict) else {"snippet": str(item)}
        lines.append(f"{index}. **{item.get('title') or 'Untitled'}**")
        content = item.get("snippet") or item.get("content") or ""
        if content:
            lines += [f"   {truncate_text(content, snippet_chars)}", ""]
    if len(results) > MAX_RENDERED_RESULTS:
        lines.append(f"...and {len(results) - MAX_RENDERED_RESULTS} more results in your knowledge base.")
    return "\n".join(lines).rstrip()


def render_web_results(query: str, results: List[Any]) -> str:
    lines = [f'I searched the web for "{query}" and found {len(results)} results:', ""]
    for index, item in enumerate(results[:MAX_RENDERED_WEB_RESULTS], start=1):
        item = item if isinstance(item, dict) else {"snippet": str(item)}
        lines.append(f"{index}. **{item.get('title') or 'Untitled'}**")
        if item.get("url"):
            lines.append(f"   {item['url']}")
        if item.get("snippet"):
            lines.append(f"   {truncate_text(item['snippet'], Config.knowledge.SNIPPET_CHARS)}")
        lines.append("")
    return "\n".join(lines).rstrip()


def render_jira(action: str, data: Any) -> str:
    if action == "list_projects":
        projects = _as_list(data)
        if not projects:
            return "I checked Jira but didn't find any projects you have access to."
        lines = [f"I found {len(projects)} Jira projects:", ""]
        lines += [f"- **{p.get('key')}**: {p.get('name')}" for p in projects if isinstance(p, dict)]
        return "\n".join(lines)

    if action == "create_issue":
        if isinstance(data, dict) and data.get("key"):
            return f"I created the Jira issue **{data['key']}**." + (f" {data['url']}" if data.get("url") else "")
        return "I submitted the issue to Jira, but the response did not include an issue key."

    issues = data.get("issues") if isinstance(data, dict) else data
    issues = issues if isinstance(issues, list) else _as_list(issues)
    if not issues:
        return "I searched Jira but didn't find any matching issues. Try a different search term or project."
    total = data.get("total", len(issues)) if isinstance(data, dict) else len(issues)
    lines = [f"I found {total} matching Jira issues:", ""]
    for issue in issues[:10]:
        if not isinstance(issue, dict):
            lines.append(f"- {issue}")
            continue
        status = f" ({issue.get('status')})" if issue.get("status") else ""
        lines.append(f"- **{issue.get('key')}**: {issue.get('summary')}{status}")
    return "\n".join(lines)


# =============================================================================
# CONTROLLER
# =============================================================================

class ForcedExecutionController:
    """Deterministic tool execution when the model skipped a required tool"""

    def __init__(self, engine: Optional[ToolExecutionEngine] = None):
        self.engine = engine or ToolExecutionEngine()

    async def maybe_force(
        self,
        decision: ToolDecision,
        message: str,
        caller: CallerContext,
        registry: ToolRegistry,
        tool_calls_made: int = 0,
        repo_context: Optional[RepoRef] = None
    ) -> Optional[ForcedResult]:
        """
        Returns None unless the decision required tools and none were invoked.
        """
        if not decision.should_use_tools or tool_calls_made > 0:
            return None

        logger.info(f"FORCING TOOL EXECUTION: {decision.detected_type.value} ({decision.reasoning})")

        if decision.detected_type == DetectedType.GITHUB:
            return await self._force_github(decision, message, caller, registry)
        if decision.detected_type == DetectedType.KNOWLEDGE:
            return await self._force_knowledge(message, caller, registry)
        if decision.detected_type == DetectedType.SEARCH:
            return await self._force_search(message, caller, registry, repo_context or decision.github_repo)
        if decision.detected_type == DetectedType.JIRA:
            return await self._force_jira(decision, message, caller, registry)
        return None

    async def _force_github(self, decision, message, caller, registry) -> ForcedResult:
        if GITHUB_TOOLS not in registry:
            return ForcedResult(
                final_response=(
                    "I understand you want me to examine the GitHub repository, but the GitHub tools are not "
                    "properly configured. Please ensure your GitHub integration is set up correctly."
                ),
                self_reflection="GitHub request detected but no GitHub tools available"
            )

        repo = decision.github_repo or parse_github_url(message)
        if repo is None:
            return ForcedResult(
                final_response=(
                    "I detected a GitHub repository request, but I couldn't parse the repository information "
                    'from your message. Please provide a clear GitHub repository URL like '
                    '"https://github.com/owner/repository".'
                ),
                self_reflection="GitHub request detected but repository information could not be parsed"
            )

        params = {"action": "get_repository", "owner": repo.owner, "repository": repo.repo}
        progress, result = await self.engine.execute_one(GITHUB_TOOLS, params, registry, caller, FORCED_SUFFIX)

        if not result.success:
            return ForcedResult(
                final_response=(
                    f"I tried to analyze the GitHub repository **{repo.full_name}** but encountered an error: "
                    f"{result.error}. This could be because:\n\n"
                    "1. The repository is private or doesn't exist\n"
                    "2. GitHub API access is not properly configured\n"
                    "3. Rate limits have been exceeded\n\n"
                    "Please check that the repository URL is correct and publicly accessible."
                ),
                tools_used=[result],
                tool_progress=[progress],
                self_reflection=f"Forced GitHub tool execution failed: {result.error}"
            )

        return ForcedResult(
            final_response=render_or_fallback(
                render_repository,
                f"I retrieved data for the GitHub repository **{repo.full_name}** but couldn't format it: "
                f"{truncate_text(str(result.result), 500)}",
                repo, result.result
            ),
            tools_used=[result],
            tool_progress=[progress],
            self_reflection=(
                "Successfully executed GitHub tools for repository analysis. "
                f"Retrieved repository data: {bool(result.result)}"
            )
        )

    async def _search_knowledge(self, message, caller, registry):
        params = {"query": message, "limit": Config.knowledge.SEARCH_LIMIT}
        return await self.engine.execute_one(KNOWLEDGE_SEARCH, params, registry, caller, FORCED_SUFFIX)

    async def _force_knowledge(self, message, caller, registry) -> ForcedResult:
        if KNOWLEDGE_SEARCH not in registry:
            return ForcedResult(
                final_response=(
                    f'I understand you\'re looking for information about "{message}". However, the knowledge '
                    "search tool is not properly configured. Please ensure your knowledge base and search tools "
                    "are set up correctly."
                ),
                self_reflection="Knowledge request detected but no knowledge search tool available"
            )

        progress, result = await self._search_knowledge(message, caller, registry)
        if not result.success:
            return ForcedResult(
                final_response=(
                    f'I tried to search your knowledge base for "{message}" but encountered an error: '
                    f"{result.error}. Please check your knowledge base configuration or try a different search query."
                ),
                tools_used=[result],
                tool_progress=[progress],
                self_reflection=f"Forced tool execution failed: {result.error}"
            )

        results = _as_list(result.result)
        if results:
            response = render_or_fallback(
                render_knowledge_results,
                f'I searched your knowledge base for "{message}" and found {len(results)} results.',
                message, results
            )
        else:
            response = (
                f'I searched your knowledge base for "{message}" but didn\'t find any relevant results. '
                "You might want to add more information to your knowledge base or try rephrasing your search query."
            )
        return ForcedResult(
            final_response=response,
            tools_used=[result],
            tool_progress=[progress],
            self_reflection=f"Forced knowledge base search completed successfully. Found {len(results)} results."
        )

    async def _force_search(self, message, caller, registry, repo_context) -> ForcedResult:
        tools_used: List[ToolResult] = []
        tool_progress: List[ToolProgress] = []

        # Owned data first
        if KNOWLEDGE_SEARCH in registry:
            progress, result = await self._search_knowledge(message, caller, registry)
            tools_used.append(result)
            tool_progress.append(progress)
            if result.success and not is_empty_payload(result.result):
                results = _as_list(result.result)
                return ForcedResult(
                    final_response=render_or_fallback(
                        render_knowledge_results,
                        f'I searched your knowledge base for "{message}" and found {len(results)} results.',
                        message, results
                    ) if results
                    else f'I searched your knowledge base for "{message}" and found relevant information.',
                    tools_used=tools_used,
                    tool_progress=tool_progress,
                    self_reflection=f"Answered from knowledge base ({len(results)} results); web search not needed."
                )

        if WEB_SEARCH not in registry:
            return ForcedResult(
                final_response=(
                    f'I understand you\'re looking for information about "{message}", but no results were found '
                    "in your knowledge base and the web search tool is not properly configured."
                ),
                tools_used=tools_used,
                tool_progress=tool_progress,
                self_reflection="Search request detected but no working web search tool available"
            )

        query = extract_search_query(message, repo_context)
        progress, result = await self.engine.execute_one(
            WEB_SEARCH, {"query": query, "limit": Config.knowledge.SEARCH_LIMIT}, registry, caller, FORCED_SUFFIX
        )
        tools_used.append(result)
        tool_progress.append(progress)

        if not result.success:
            return ForcedResult(
                final_response=(
                    f'I tried to search the web for "{query}" but encountered an error: {result.error}. '
                    "This could be because:\n\n"
                    "1. The search service is unreachable\n"
                    "2. Search rate limits have been exceeded\n"
                    "3. Network access is not available\n\n"
                    "Please try again in a moment or rephrase your question."
                ),
                tools_used=tools_used,
                tool_progress=tool_progress,
                self_reflection=f"Forced web search failed: {result.error}"
            )

        results = _as_list(result.result)
        if results:
            response = render_or_fallback(
                render_web_results,
                f'I searched the web for "{query}" and found {len(results)} results.',
                query, results
            )
        else:
            response = (
                f'I searched the web for "{query}" but didn\'t find any results. '
                "Try rephrasing your question or using more specific terms."
            )
        return ForcedResult(
            final_response=response,
            tools_used=tools_used,
            tool_progress=tool_progress,
            self_reflection=f"No knowledge base results; forced web search found {len(results)} results."
        )

    async def _force_jira(self, decision, message, caller, registry) -> ForcedResult:
        if JIRA_TOOLS not in registry:
            return ForcedResult(
                final_response=(
                    "I understand you want me to work with Jira, but the Jira tools are not properly configured. "
                    "Please ensure your Jira integration is set up correctly."
                ),
                self_reflection="Jira request detected but no Jira tools available"
            )

        action = decision.tool_action or "list_projects"
        progress, result = await self.engine.execute_one(
            JIRA_TOOLS, {"action": action, "query": message}, registry, caller, FORCED_SUFFIX
        )
        if not result.success:
            return ForcedResult(
                final_response=(
                    f"I tried to run the Jira action `{action}` but encountered an error: {result.error}. "
                    "This could be because:\n\n"
                    "1. Jira credentials are missing or invalid\n"
                    "2. The project or issue doesn't exist or isn't accessible\n"
                    "3. Rate limits have been exceeded"
                ),
                tools_used=[result],
                tool_progress=[progress],
                self_reflection=f"Forced Jira tool execution failed: {result.error}"
            )

        return ForcedResult(
            final_response=render_or_fallback(
                render_jira,
                f"The Jira action `{action}` completed, but I couldn't format its response: "
                f"{truncate_text(str(result.result), 500)}",
                action, result.result
            ),
            tools_used=[result],
            tool_progress=[progress],
            self_reflection=f"Forced Jira {action} completed successfully."
        )
