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
Core Configuration Module for Ultima_Agent
Centralized configuration management with environment variable support.

Every tunable is read from the environment (Credentials/.env is loaded first),
so switching models, tool credentials or the persistence backend needs no code change.

Quick reference:
  MODEL_NAME=qwen2.5:14b
  LLM_BASE_URL=http://localhost:11434
  AGENT_MAX_LOOPS=2
  AGENT_REQUEST_TIMEOUT=120
  GITHUB_TOKEN=ghp_...
  DB_TYPE=sqlite
"""

import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from Credentials folder
CREDENTIALS_PATH = Path(__file__).parent.parent.parent / "Credentials" / ".env"
load_dotenv(CREDENTIALS_PATH)

from .utils import logger


def _env_bool(key: str, default: str) -> bool:
    return os.getenv(key, default).strip().lower() in ("1", "true", "yes", "on")


# =============================================================================
# COMPLETION SERVICE CONFIGURATION
# =============================================================================

class CompletionConfig:
    """
    Chat-completion endpoint used for tool-calling turns and synthesis.
    Any OpenAI-compatible server works; the default is a local Ollama.
    """
    # Connection
    BASE_URL: str = os.getenv("LLM_BASE_URL", os.getenv("OLLAMA_BASE_URL", "http://localhost:11434"))
    CHAT_PATH: str = os.getenv("LLM_CHAT_PATH", "/v1/chat/completions")
    MODEL_NAME: str = os.getenv("MODEL_NAME", "qwen2.5:14b")

    # Provider
    PROVIDER: str = os.getenv("LLM_PROVIDER", "ollama")
    API_KEY: str = os.getenv("LLM_API_KEY", "")

    # Generation behavior
    TEMPERATURE: float = float(os.getenv("LLM_TEMPERATURE", "0.7"))
    FOLLOW_UP_TEMPERATURE: float = float(os.getenv("LLM_FOLLOW_UP_TEMPERATURE", "0.3"))
    MAX_OUTPUT_TOKENS: int = int(os.getenv("MAX_OUTPUT_TOKENS", "2000"))
    SYNTHESIS_MAX_TOKENS: int = int(os.getenv("SYNTHESIS_MAX_TOKENS", "1500"))
    TIMEOUT: int = int(os.getenv("LLM_TIMEOUT", "120"))


class AgentModelConfig:
    """
    Per-agent model assignments for prompt-only evaluation calls.
    All default to MODEL_NAME and are overridable individually.

    ENV keys:
      AGENT_MODEL_REFLECTOR  — completeness evaluation after each answer
      AGENT_MODEL_INSIGHT    — insight extraction for the knowledge store
    """
    target_model: str = os.getenv("MODEL_NAME", "qwen2.5:14b")

    AGENT_MODELS = {
        "reflector": os.getenv("AGENT_MODEL_REFLECTOR", target_model),
        "insight":   os.getenv("AGENT_MODEL_INSIGHT",   target_model),
    }


# =============================================================================
# AGENT LOOP CONFIGURATION
# =============================================================================

class AgentConfig:
    """
    Reflective loop and request bounds.

    MAX_LOOPS caps continuations per originating message.
    REQUEST_TIMEOUT is the caller-level deadline (seconds); on expiry the
    deterministic fallback answer is returned instead of waiting.
    """
    MAX_LOOPS: int = int(os.getenv("AGENT_MAX_LOOPS", "2"))
    LOOPS_ENABLED: bool = _env_bool("AGENT_LOOPS_ENABLED", "true")
    REQUEST_TIMEOUT: float = float(os.getenv("AGENT_REQUEST_TIMEOUT", "120"))
    PARALLEL_BATCHES: bool = _env_bool("AGENT_PARALLEL_BATCHES", "false")
    PERSIST_INSIGHTS: bool = _env_bool("AGENT_PERSIST_INSIGHTS", "true")
    HISTORY_WINDOW: int = int(os.getenv("AGENT_HISTORY_WINDOW", "20"))


class KnowledgeConfig:
    """Knowledge search defaults and duplicate-insight detection"""
    SIMILARITY_RATIO: float = float(os.getenv("KNOWLEDGE_SIMILARITY_RATIO", "0.6"))
    SIMILARITY_TOKEN_CAP: int = int(os.getenv("KNOWLEDGE_SIMILARITY_TOKEN_CAP", "3"))
    SEARCH_LIMIT: int = int(os.getenv("KNOWLEDGE_SEARCH_LIMIT", "5"))
    MATCH_THRESHOLD: float = float(os.getenv("KNOWLEDGE_MATCH_THRESHOLD", "0.5"))
    SNIPPET_CHARS: int = int(os.getenv("KNOWLEDGE_SNIPPET_CHARS", "200"))
    DEFAULT_DOMAIN: str = os.getenv("KNOWLEDGE_DEFAULT_DOMAIN", "ai-agent")


# =============================================================================
# EMBEDDING CONFIGURATION
# =============================================================================

class EmbeddingConfig:
    """
    Sentence-transformer used by knowledge-search when useEmbeddings is true.

    ENV keys:
      EMBEDDING_MODEL   — sentence-transformer model (default: sentence-transformers/all-MiniLM-L6-v2)
      EMBEDDING_BATCH   — batch size for encoding (default: 32)
      EMBEDDING_DEVICE  — cpu unless a dedicated embedding GPU exists (default: cpu)
      EMBEDDING_CACHE   — keep chunk embeddings in memory between searches (default: true)
    """
    MODEL_NAME: str = os.getenv("EMBEDDING_MODEL", "sentence-transformers/all-MiniLM-L6-v2")
    BATCH_SIZE: int = int(os.getenv("EMBEDDING_BATCH", "32"))
    DEVICE: str = os.getenv("EMBEDDING_DEVICE", "cpu")
    CACHE_EMBEDDINGS: bool = _env_bool("EMBEDDING_CACHE", "true")
    CACHE_MAX_ENTRIES: int = int(os.getenv("EMBEDDING_CACHE_MAX_ENTRIES", "10000"))


# =============================================================================
# TOOL BACKEND CONFIGURATION
# =============================================================================

class ToolConfig:
    """Credentials and limits for the built-in tool backends"""
    GITHUB_API_URL: str = os.getenv("GITHUB_API_URL", "https://api.github.com")
    GITHUB_TOKEN: str = os.getenv("GITHUB_TOKEN", "")

    JIRA_BASE_URL: str = os.getenv("JIRA_BASE_URL", "")
    JIRA_EMAIL: str = os.getenv("JIRA_EMAIL", "")
    JIRA_API_TOKEN: str = os.getenv("JIRA_API_TOKEN", "")

    WEB_SEARCH_MAX_RESULTS: int = int(os.getenv("WEB_SEARCH_MAX_RESULTS", "5"))
    SCRAPE_MAX_CHARS: int = int(os.getenv("SCRAPE_MAX_CHARS", "1000"))
    HTTP_TIMEOUT: int = int(os.getenv("TOOL_HTTP_TIMEOUT", "20"))

    @classmethod
    def jira_configured(cls) -> bool:
        return bool(cls.JIRA_BASE_URL and cls.JIRA_EMAIL and cls.JIRA_API_TOKEN)


# =============================================================================
# DATABASE CONFIGURATION
# =============================================================================

class DatabaseConfig:
    """Persistence store selection"""
    DB_TYPE: str = os.getenv("DB_TYPE", "sqlite").lower()
    SQLITE_DB_PATH: str = os.getenv("SQLITE_DB_PATH", "")
    DATABASE_URL: str = os.getenv("DATABASE_URL", "")


class Config:
    """
    Unified configuration access point.
    All values are environment-variable driven.
    See Credentials/.env for the full list of configurable keys.
    """
    completion = CompletionConfig
    agent_models = AgentModelConfig
    agent = AgentConfig
    knowledge = KnowledgeConfig
    embedding = EmbeddingConfig
    tools = ToolConfig
    database = DatabaseConfig

    @classmethod
    def log_summary(cls):
        """Startup banner with the effective agent settings"""
        logger.info(f"Completion: {cls.completion.MODEL_NAME} @ {cls.completion.BASE_URL}{cls.completion.CHAT_PATH}")
        logger.info(f"Loop: max {cls.agent.MAX_LOOPS} continuations | deadline {cls.agent.REQUEST_TIMEOUT}s | "
                    f"parallel batches: {cls.agent.PARALLEL_BATCHES}")
        logger.info(f"Jira configured: {cls.tools.jira_configured()} | GitHub token: {bool(cls.tools.GITHUB_TOKEN)}")

    @classmethod
    def validate(cls) -> bool:
        """Validate critical configuration - check completion service connectivity"""
        import requests
        try:
            response = requests.get(f"{cls.completion.BASE_URL}/v1/models", timeout=5)
            if response.status_code != 200:
                raise ValueError(f"Completion service not responding at {cls.completion.BASE_URL}")
            return True
        except requests.exceptions.ConnectionError:
            raise ValueError(
                f"Cannot connect to completion service at {cls.completion.BASE_URL}. "
                "Please ensure the server is running (e.g. `ollama serve`)"
            )
