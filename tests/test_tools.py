"""Tests for the tool registry and the built-in tool backends."""

from typing import List
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from ultima_agent.data.embedder import ChunkEmbedder
from ultima_agent.tools.github_tools import GitHubClient, github_tools_handler
from ultima_agent.tools.jira_tools import build_jql, jira_tools_handler
from ultima_agent.tools.knowledge_search import KnowledgeSearchBackend, query_terms, score_chunk
from ultima_agent.tools.registry import (
    KNOWLEDGE_SEARCH_DESCRIPTOR,
    ToolRegistry,
    build_default_registry,
)
from ultima_agent.tools.web_search import web_scraper_handler, web_search_handler


def _http(status=200, body=None):
    response = MagicMock()
    response.status_code = status
    response.json.return_value = body
    response.text = ""
    return response


class TestRegistry:
    def test_resolve(self, registry):
        assert registry.resolve("execute_web-search") == "web-search"
        assert registry.resolve("execute_github_tools") == "github-tools"
        assert registry.resolve("google-search") == "web-search"
        assert registry.resolve("execute_weather") is None

    def test_function_definitions(self, registry):
        definitions = {d["function"]["name"]: d["function"] for d in registry.to_function_definitions()}
        assert set(definitions) == {
            "execute_web-search", "execute_web-scraper", "execute_knowledge-search", "execute_github-tools"
        }
        github = definitions["execute_github-tools"]["parameters"]
        assert github["properties"]["action"]["enum"] == ["get_repository", "get_commits", "list_files"]
        assert set(github["required"]) == {"action", "owner", "repository"}
        assert "NOT internal documents" in definitions["execute_web-search"]["description"]

    def test_describe_for_prompt(self):
        assert ToolRegistry().describe_for_prompt() == "No tools are available."

    @pytest.mark.asyncio
    async def test_invoke_async_handler(self):
        async def handler(params):
            return {"success": True, "data": params["query"]}

        registry = ToolRegistry()
        registry.register(KNOWLEDGE_SEARCH_DESCRIPTOR, handler)
        assert await registry.invoke("knowledge-search", {"query": "q"}) == {"success": True, "data": "q"}

    def test_default_registry_without_jira(self, store):
        with patch("ultima_agent.tools.registry.Config.tools.jira_configured", return_value=False):
            registry = build_default_registry(store)
        assert "jira-tools" not in registry
        assert registry.tool_ids() == ["web-search", "web-scraper", "knowledge-search", "github-tools"]


class KeywordModel:
    """Bag-of-keywords encoder standing in for a sentence-transformer"""

    VOCAB = ("deploy", "migrations", "kubernetes", "cooking")

    def __init__(self):
        self.encoded: List[str] = []

    def encode(self, texts, **kwargs):
        self.encoded.extend(texts)
        rows = []
        for text in texts:
            vector = np.array([text.lower().count(word) for word in self.VOCAB], dtype=np.float32)
            norm = np.linalg.norm(vector)
            rows.append(vector / norm if norm else vector)
        return np.array(rows)


class TestKnowledgeSearch:
    """Semantic and term-coverage search over stored chunks"""

    @staticmethod
    def _seed(store, user_id="user-1", title="Deployment checklist", content="Run migrations before deploy",
              metadata=None):
        return store.insert_knowledge(
            {"user_id": user_id, "title": title, "description": "d", "type": "process",
             "metadata": metadata or {"validation_status": "unverified"}},
            {"content": content}
        )

    @staticmethod
    def _semantic_backend(store, model=None):
        embedder = ChunkEmbedder(model=model or KeywordModel(), use_cache=True)
        return KnowledgeSearchBackend(store, embedder_factory=lambda: embedder)

    def test_query_terms_drop_stopwords(self):
        assert query_terms("search my notes for the deploy steps") == ["deploy", "steps"]

    def test_score_chunk(self):
        assert score_chunk(["deploy", "migrations"], "t", "run migrations before deploy") == 1.0
        assert score_chunk(["deploy", "rollback"], "deploy", "nothing here") == 0.25

    def test_semantic_ranking(self, store):
        self._seed(store)
        self._seed(store, title="Dinner", content="cooking pasta")
        backend = self._semantic_backend(store)

        response = backend({"query": "deploy migrations", "userId": "user-1", "useEmbeddings": True})
        assert response["success"] is True
        assert [hit["title"] for hit in response["results"]] == ["Deployment checklist"]
        assert response["results"][0]["relevance_score"] == pytest.approx(0.949, abs=1e-3)

        strict = backend({"query": "deploy migrations", "userId": "user-1", "matchThreshold": 0.99})
        assert strict["results"] == []

    def test_semantic_is_default_and_caches_chunks(self, store):
        self._seed(store)
        model = KeywordModel()
        backend = self._semantic_backend(store, model)

        backend({"query": "deploy", "userId": "user-1"})
        backend({"query": "migrations", "userId": "user-1"})
        chunk_encodings = [t for t in model.encoded if t.startswith("Deployment checklist")]
        assert len(chunk_encodings) == 1

    def test_lexical_path_skips_embedder(self, store):
        self._seed(store)
        factory = MagicMock()
        backend = KnowledgeSearchBackend(store, embedder_factory=factory)

        response = backend({"query": "deploy migrations", "userId": "user-1", "useEmbeddings": "false"})
        assert response["results"][0]["relevance_score"] == 1.0
        factory.assert_not_called()

    def test_finds_owned_chunks_only(self, store):
        self._seed(store)
        self._seed(store, user_id="user-2", content="deploy migrations elsewhere")
        backend = KnowledgeSearchBackend(store)

        response = backend({"query": "deploy migrations", "userId": "user-1", "useEmbeddings": False})
        assert response["success"] is True
        assert len(response["results"]) == 1
        hit = response["results"][0]
        assert hit["title"] == "Deployment checklist"
        assert hit["metadata"]["validation_status"] == "unverified"
        assert hit["relevance_score"] == 1.0

    def test_surfaces_deprecated_status(self, store):
        node_id = self._seed(store)
        store.deprecate_knowledge_node(node_id, "user-1", "superseded")
        hit = self._semantic_backend(store)({"query": "deploy migrations", "userId": "user-1"})["results"][0]
        assert hit["metadata"]["validation_status"] == "deprecated"

    def test_no_match_is_empty_success(self, store):
        self._seed(store)
        for use_embeddings in (True, False):
            response = self._semantic_backend(store)(
                {"query": "kubernetes", "userId": "user-1", "useEmbeddings": use_embeddings}
            )
            assert response == {"success": True, "results": []}

    def test_embedding_failure_is_reported(self, store):
        self._seed(store)
        backend = KnowledgeSearchBackend(store, embedder_factory=MagicMock(side_effect=OSError("model not found")))
        response = backend({"query": "deploy", "userId": "user-1"})
        assert response["success"] is False
        assert "model not found" in response["error"]

    def test_requires_user(self, store):
        assert KnowledgeSearchBackend(store)({"query": "q"})["success"] is False


class TestGitHubTools:
    def test_get_repository(self):
        body = {"full_name": "acme/widgets", "language": "Python", "license": {"name": "MIT License"}}
        with patch("ultima_agent.tools.github_tools.requests.get", return_value=_http(body=body)) as get:
            response = github_tools_handler(
                {"action": "get_repository", "owner": "acme", "repo": "widgets"}, GitHubClient(token="t")
            )
        assert response["success"] is True
        assert response["data"]["license"] == "MIT License"
        assert get.call_args.args[0].endswith("/repos/acme/widgets")
        assert get.call_args.kwargs["headers"]["Authorization"] == "Bearer t"

    def test_not_found(self):
        with patch("ultima_agent.tools.github_tools.requests.get", return_value=_http(status=404)):
            response = github_tools_handler({"action": "get_repository", "owner": "acme", "repository": "nope"})
        assert response["success"] is False
        assert "not found" in response["error"]

    def test_validation(self):
        assert github_tools_handler({"action": "delete_repo", "owner": "a", "repository": "b"})["success"] is False
        assert github_tools_handler({"action": "get_repository"})["success"] is False


class TestJiraTools:
    def test_build_jql(self):
        assert build_jql("login bug") == 'text ~ "login bug" ORDER BY updated DESC'
        assert build_jql("project = OPS") == "project = OPS"

    def test_unconfigured(self):
        with patch("ultima_agent.tools.jira_tools.Config.tools.jira_configured", return_value=False):
            response = jira_tools_handler({"action": "list_projects"})
        assert response["success"] is False
        assert "not configured" in response["error"]

    def test_list_projects(self):
        client = MagicMock()
        client.list_projects.return_value = [{"key": "OPS", "name": "Operations"}]
        response = jira_tools_handler({"action": "list_projects"}, client)
        assert response == {"success": True, "data": [{"key": "OPS", "name": "Operations"}]}


class TestWebTools:
    def test_search_requires_query(self):
        assert web_search_handler({"query": "  "})["success"] is False

    def test_search_envelope(self):
        results = [{"title": "t", "url": "https://x", "snippet": "s"}]
        with patch("ultima_agent.tools.web_search.web_search", return_value=results):
            assert web_search_handler({"query": "x", "limit": 3}) == {"success": True, "results": results}

    def test_search_failure(self):
        with patch("ultima_agent.tools.web_search.web_search", side_effect=RuntimeError("ratelimit")):
            response = web_search_handler({"query": "x"})
        assert response["success"] is False
        assert "ratelimit" in response["error"]

    def test_scraper_failure(self):
        with patch("ultima_agent.tools.web_search.scrape_url", side_effect=RuntimeError("Could not download")):
            response = web_scraper_handler({"url": "https://x"})
        assert response["success"] is False
