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
Tool Registry for Ultima_Agent
Descriptors and handlers of the tools the agent may call, plus their
OpenAI function-definition rendering for tool-calling completions.
"""

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from ..core.config import Config
from ..core.exceptions import ToolNotFoundError
from ..core.utils import logger
from .github_tools import github_tools_handler
from .jira_tools import jira_tools_handler
from .knowledge_search import KnowledgeSearchBackend
from .web_search import web_scraper_handler, web_search_handler

ToolHandler = Callable[[Dict[str, Any]], Union[Dict[str, Any], Awaitable[Dict[str, Any]]]]

FUNCTION_PREFIX = "execute_"

TOOL_ALIASES = {
    "google-search": "web-search",
    "knowledge-search-v2": "knowledge-search",
}

TOOL_GUIDANCE = {
    "jira-tools": ' Use "list_projects" action for project requests like "retrieve projects", "show my projects".',
    "knowledge-search": " ONLY searches internal/uploaded content, NOT external web content.",
    "web-search": " ONLY searches external web content, NOT internal documents or Jira projects.",
}


class ToolParameter(BaseModel):
    name: str
    type: str = "string"
    description: str = ""
    required: bool = False
    enum: Optional[List[str]] = None


class ToolDescriptor(BaseModel):
    id: str
    title: str
    description: str
    parameters: List[ToolParameter] = Field(default_factory=list)
    is_default: bool = True
    sample_use_cases: List[str] = Field(default_factory=list)


class ToolRegistry:
    """In-process registry of tool descriptors and their backend handlers"""

    def __init__(self):
        self._descriptors: Dict[str, ToolDescriptor] = {}
        self._handlers: Dict[str, ToolHandler] = {}

    def register(self, descriptor: ToolDescriptor, handler: ToolHandler) -> None:
        self._descriptors[descriptor.id] = descriptor
        self._handlers[descriptor.id] = handler
        logger.info(f"Tool registered: {descriptor.id}")

    def list_tools(self) -> List[ToolDescriptor]:
        return list(self._descriptors.values())

    def tool_ids(self) -> List[str]:
        return list(self._descriptors)

    def get(self, tool_id: str) -> Optional[ToolDescriptor]:
        return self._descriptors.get(tool_id)

    def resolve(self, name: str) -> Optional[str]:
        """Map a function name (execute_web-search), alias or id to a registered tool id"""
        key = name[len(FUNCTION_PREFIX):] if name.startswith(FUNCTION_PREFIX) else name
        for candidate in (key, key.replace("_", "-")):
            candidate = TOOL_ALIASES.get(candidate, candidate)
            if candidate in self._descriptors:
                return candidate
        return None

    def __contains__(self, tool_id: str) -> bool:
        return tool_id in self._descriptors

    async def invoke(self, tool_id: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """
        Call a tool backend. Synchronous handlers run in a worker thread.

        Raises:
            ToolNotFoundError: tool_id is not registered
        """
        handler = self._handlers.get(tool_id)
        if handler is None:
            raise ToolNotFoundError(tool_id)

        if inspect.iscoroutinefunction(handler) or inspect.iscoroutinefunction(getattr(handler, "__call__", None)):
            result = await handler(params)
        else:
            result = await asyncio.to_thread(handler, params)
        if inspect.isawaitable(result):
            result = await result
        return result

    def to_function_definitions(self) -> List[Dict[str, Any]]:
        """OpenAI function definitions named execute_<id>"""
        definitions = []
        for descriptor in self._descriptors.values():
            properties: Dict[str, Any] = {}
            required = []
            for param in descriptor.parameters:
                properties[param.name] = {
                    "type": param.type if param.type in ("number", "boolean") else "string",
                    "description": param.description or f"{param.name} parameter"
                }
                if param.enum:
                    properties[param.name]["enum"] = param.enum
                if param.required:
                    required.append(param.name)

            description = descriptor.description
            if descriptor.sample_use_cases:
                description += f" Examples: {'. '.join(descriptor.sample_use_cases[:2])}"
            description += TOOL_GUIDANCE.get(descriptor.id, "")

            definitions.append({
                "type": "function",
                "function": {
                    "name": f"{FUNCTION_PREFIX}{descriptor.id}",
                    "description": description,
                    "parameters": {"type": "object", "properties": properties, "required": required}
                }
            })
        return definitions

    def describe_for_prompt(self) -> str:
        """Tool list for the agent system prompt"""
        lines = []
        for d in self._descriptors.values():
            line = f"- **{d.title}** (`{FUNCTION_PREFIX}{d.id}`): {d.description}"
            if d.sample_use_cases:
                line += f" Use cases: {'; '.join(d.sample_use_cases)}"
            lines.append(line)
        return "\n".join(lines) if lines else "No tools are available."


# =============================================================================
# BUILT-IN TOOLS
# =============================================================================

WEB_SEARCH_DESCRIPTOR = ToolDescriptor(
    id="web-search",
    title="Web Search",
    description="Search the web for current information.",
    parameters=[
        ToolParameter(name="query", description="Search query", required=True),
        ToolParameter(name="limit", type="number", description="Maximum number of results"),
        ToolParameter(name="useEmbeddings", type="boolean", description="Rank by semantic similarity (default true)"),
    ],
    sample_use_cases=["Find the latest news about AI", "Look up current information about a topic"],
)

WEB_SCRAPER_DESCRIPTOR = ToolDescriptor(
    id="web-scraper",
    title="Web Scraper",
    description="Fetch a web page and extract its main text content.",
    parameters=[ToolParameter(name="url", description="Page URL", required=True)],
    sample_use_cases=["Get content from this website", "Extract the article text from a URL"],
)

KNOWLEDGE_SEARCH_DESCRIPTOR = ToolDescriptor(
    id="knowledge-search",
    title="Knowledge Search",
    description="Search your personal knowledge base of saved insights and uploaded documents.",
    parameters=[
        ToolParameter(name="query", description="What to look for", required=True),
        ToolParameter(name="limit", type="number", description="Maximum number of results"),
    ],
    sample_use_cases=["What did I save about React hooks?", "Search my notes for deployment steps"],
)

GITHUB_TOOLS_DESCRIPTOR = ToolDescriptor(
    id="github-tools",
    title="GitHub Tools",
    description="Inspect GitHub repositories: metadata, recent commits and files.",
    parameters=[
        ToolParameter(name="action", description="Action to perform", required=True,
                      enum=["get_repository", "get_commits", "list_files"]),
        ToolParameter(name="owner", description="Repository owner", required=True),
        ToolParameter(name="repository", description="Repository name", required=True),
        ToolParameter(name="path", description="Directory path for list_files"),
    ],
    sample_use_cases=["Check my GitHub repo", "What's new in the repository?"],
)

JIRA_TOOLS_DESCRIPTOR = ToolDescriptor(
    id="jira-tools",
    title="Jira Tools",
    description="Work with Jira: list projects, search issues and create issues.",
    parameters=[
        ToolParameter(name="action", description="Action to perform", required=True,
                      enum=["list_projects", "search_issues", "create_issue"]),
        ToolParameter(name="query", description="Free text or JQL for search_issues"),
        ToolParameter(name="project_key", description="Project key for create_issue"),
        ToolParameter(name="summary", description="Issue summary for create_issue"),
    ],
    sample_use_cases=["Show my projects", "Find open bugs in the backend project"],
)


def build_default_registry(store) -> ToolRegistry:
    """Register the built-in tools. Jira is only offered when credentials are configured."""
    registry = ToolRegistry()
    registry.register(WEB_SEARCH_DESCRIPTOR, web_search_handler)
    registry.register(WEB_SCRAPER_DESCRIPTOR, web_scraper_handler)
    registry.register(KNOWLEDGE_SEARCH_DESCRIPTOR, KnowledgeSearchBackend(store))
    registry.register(GITHUB_TOOLS_DESCRIPTOR, github_tools_handler)
    if Config.tools.jira_configured():
        registry.register(JIRA_TOOLS_DESCRIPTOR, jira_tools_handler)
    else:
        logger.info("Jira credentials not configured; jira-tools not registered")
    return registry
