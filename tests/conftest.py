"""Shared fixtures: injected fakes for the completion service, prompt LLMs, tools and store."""

import json
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock

import pytest

from ultima_agent.core.models import CallerContext
from ultima_agent.data.database import DatabaseManager, SQLiteDatabase
from ultima_agent.tools.registry import (
    GITHUB_TOOLS_DESCRIPTOR,
    KNOWLEDGE_SEARCH_DESCRIPTOR,
    WEB_SCRAPER_DESCRIPTOR,
    WEB_SEARCH_DESCRIPTOR,
    ToolRegistry,
)

REPO_PAYLOAD = {
    "full_name": "acme/widgets",
    "description": "Widgets for everyone",
    "language": "Python",
    "stargazers_count": 42,
    "forks_count": 7,
    "created_at": "2021-03-04T10:00:00Z",
    "updated_at": "2024-01-15T08:30:00Z",
    "license": "MIT License",
}

WEB_RESULTS = [
    {"title": "Quantum advantage reached", "url": "https://news.example/qa", "snippet": "Researchers report..."},
    {"title": "New qubit design", "url": "https://news.example/qubit", "snippet": "A new design..."},
    {"title": "Quantum startups raise funds", "url": "https://news.example/funds", "snippet": "Investors..."},
]


def chat_reply(content: str = "", tool_calls: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    """OpenAI-style chat completion body"""
    message: Dict[str, Any] = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    return {"choices": [{"message": message}]}


def tool_call(name: str, arguments: Dict[str, Any], call_id: str = "call-1") -> Dict[str, Any]:
    return {"id": call_id, "type": "function", "function": {"name": name, "arguments": json.dumps(arguments)}}


class FakeCompletionClient:
    """Scripted stand-in for CompletionClient; raises queued exceptions"""

    def __init__(self, replies: Optional[List[Any]] = None, default: Any = ""):
        self.replies = list(replies or [])
        self.default = default
        self.calls: List[Dict[str, Any]] = []

    async def achat(self, messages, **kwargs):
        self.calls.append({"messages": messages, **kwargs})
        reply = self.replies.pop(0) if self.replies else self.default
        if isinstance(reply, Exception):
            raise reply
        return reply


class FakeLLM:
    """Prompt-in/text-out stand-in for OllamaLLM"""

    def __init__(self, *outputs: Any):
        self.ainvoke = AsyncMock(side_effect=list(outputs) if len(outputs) > 1 else None,
                                 return_value=outputs[0] if len(outputs) == 1 else "")


class ToolBackends:
    """Configurable tool handlers that record their calls"""

    def __init__(self):
        self.calls: List[tuple] = []
        self.knowledge_response: Dict[str, Any] = {"success": True, "results": []}
        self.web_response: Dict[str, Any] = {"success": True, "results": WEB_RESULTS}
        self.github_response: Dict[str, Any] = {"success": True, "data": REPO_PAYLOAD}
        self.scraper_response: Dict[str, Any] = {"success": True, "data": {"content": "page text"}}

    def web_search(self, params):
        self.calls.append(("web-search", params))
        return self.web_response

    def web_scraper(self, params):
        self.calls.append(("web-scraper", params))
        return self.scraper_response

    def knowledge_search(self, params):
        self.calls.append(("knowledge-search", params))
        return self.knowledge_response

    def github_tools(self, params):
        self.calls.append(("github-tools", params))
        return self.github_response

    def called(self, tool_id: str) -> List[Dict[str, Any]]:
        return [params for name, params in self.calls if name == tool_id]


@pytest.fixture
def backends():
    return ToolBackends()


@pytest.fixture
def registry(backends):
    reg = ToolRegistry()
    reg.register(WEB_SEARCH_DESCRIPTOR, backends.web_search)
    reg.register(WEB_SCRAPER_DESCRIPTOR, backends.web_scraper)
    reg.register(KNOWLEDGE_SEARCH_DESCRIPTOR, backends.knowledge_search)
    reg.register(GITHUB_TOOLS_DESCRIPTOR, backends.github_tools)
    return reg


@pytest.fixture
def caller():
    return CallerContext(user_id="user-1", session_id="session-1")


@pytest.fixture
def store(tmp_path):
    backend = SQLiteDatabase(str(tmp_path / "agent.db"))
    manager = DatabaseManager(db_type="sqlite", backend=backend)
    assert manager.connect()
    manager.initialize_schema()
    yield manager
    manager.disconnect()
