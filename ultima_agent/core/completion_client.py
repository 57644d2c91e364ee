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
Completion Client for Ultima_Agent
HTTP client for an OpenAI-compatible chat-completion endpoint (local Ollama by default)
plus the response decoder that normalizes every envelope shape into one message.
"""

import re
import asyncio
from typing import Any, Dict, List, Optional

import requests
from pydantic import BaseModel, Field

from .config import CompletionConfig
from .exceptions import CompletionServiceError
from .models import ModelSettings
from .utils import logger, Timer

# Singleton instance
_client_instance = None

DEFAULT_TOOL_CALL_CONTENT = "I'll help you with that request using the available tools."
FENCED_BLOCK_PATTERN = re.compile(r'^\s*```(?:json|text|markdown)?\s*([\s\S]*?)\s*```\s*$')


# =============================================================================
# RESPONSE DECODER
# =============================================================================

class AssistantMessage(BaseModel):
    """Normalized assistant turn regardless of which envelope carried it"""
    role: str = "assistant"
    content: str = ""
    tool_calls: List[Dict[str, Any]] = Field(default_factory=list)
    source: str = "unknown"


def _content_text(value: Any) -> str:
    """Flatten string or content-part list (OpenAI multimodal style) into text"""
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        value = [value]
    if isinstance(value, list):
        parts = []
        for part in value:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and isinstance(part.get("text"), str):
                parts.append(part["text"])
            elif isinstance(part, dict) and isinstance(part.get("content"), str):
                parts.append(part["content"])
        return "".join(parts)
    return ""


def _tool_calls(value: Any) -> List[Dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [call for call in value if isinstance(call, dict)]


def _message_from_choices(choice: Any) -> Optional[AssistantMessage]:
    if isinstance(choice, str):
        return AssistantMessage(content=choice, source="choices")
    if not isinstance(choice, dict):
        return None
    message = choice.get("message")
    if not isinstance(message, dict):
        # legacy completion shape: {"text": ...}
        return AssistantMessage(content=_content_text(choice.get("text")), source="choices")
    tool_calls = _tool_calls(message.get("tool_calls"))
    content = _content_text(message.get("content"))
    if tool_calls and not content.strip():
        content = DEFAULT_TOOL_CALL_CONTENT
    role = message.get("role")
    return AssistantMessage(
        role=role if isinstance(role, str) else "assistant",
        content=content,
        tool_calls=tool_calls,
        source="choices"
    )


def _decode(data: Any) -> Optional[AssistantMessage]:
    # 1. chat-choices
    if isinstance(data, dict):
        choices = data.get("choices")
        if isinstance(choices, list) and choices:
            return _message_from_choices(choices[0])

        # 2. result
        if data.get("result"):
            result = data["result"]
            text = _content_text(result) if isinstance(result, (list, dict)) else str(result)
            return AssistantMessage(content=text, source="result")

        # 3. content / message (string, part list or nested {content})
        for key in ("content", "message"):
            value = data.get(key)
            if isinstance(value, str) and value:
                return AssistantMessage(content=value, source=key)
            if isinstance(value, list) and _content_text(value):
                return AssistantMessage(content=_content_text(value), source=key)
            if isinstance(value, dict) and (value.get("content") or value.get("tool_calls")):
                return AssistantMessage(
                    content=_content_text(value.get("content")),
                    tool_calls=_tool_calls(value.get("tool_calls")),
                    source=key
                )

        # 4. data envelope
        if data.get("data") is not None:
            return _decode(data["data"])
        return None

    # 5. bare string
    if isinstance(data, str):
        return AssistantMessage(content=data, source="string")
    return None


def extract_assistant_message(data: Any) -> Optional[AssistantMessage]:
    """
    Decode a completion response into a single AssistantMessage.

    Priority: choices[0].message -> result -> content/message -> data -> bare string.
    A reply consisting of one fenced code block is unwrapped to its body.
    Returns None when no envelope carries content or tool calls.
    """
    try:
        message = _decode(data)
    except (TypeError, ValueError) as e:
        logger.warning(f"Undecodable completion response: {e}")
        return None
    if message is None:
        logger.warning(f"Unexpected completion response format: {str(data)[:200]}")
        return None

    if not message.content and not message.tool_calls:
        return None

    fenced = FENCED_BLOCK_PATTERN.match(message.content)
    if fenced and fenced.group(1).strip():
        message.content = fenced.group(1).strip()
    return message


def extract_text(data: Any) -> str:
    """Normalized assistant text, empty string when nothing usable came back"""
    message = extract_assistant_message(data)
    return message.content.strip() if message else ""


# =============================================================================
# COMPLETION CLIENT
# =============================================================================

class CompletionClient:
    """
    HTTP client for chat completions.

    Features:
    - OpenAI-compatible request shape (messages, tools, tool_choice)
    - Per-request model / endpoint overrides via ModelSettings
    - Async wrapper that keeps the event loop free during the HTTP call
    """

    def __init__(
        self,
        base_url: str = None,
        model_name: str = None,
        api_key: str = None,
        timeout: int = None
    ):
        self.base_url = (base_url or CompletionConfig.BASE_URL).rstrip("/")
        self.model_name = model_name or CompletionConfig.MODEL_NAME
        self.api_key = api_key if api_key is not None else CompletionConfig.API_KEY
        self.timeout = timeout or CompletionConfig.TIMEOUT
        logger.info(f"CompletionClient initialized: {self.model_name} @ {self.base_url}")

    def is_available(self) -> bool:
        """Check if the completion endpoint answers"""
        try:
            response = requests.get(f"{self.base_url}/v1/models", headers=self._headers(), timeout=5)
            return response.status_code == 200
        except requests.exceptions.RequestException as e:
            logger.debug(f"Completion availability check failed: {e}")
            return False

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _endpoint(self, settings: Optional[ModelSettings]) -> str:
        base = self.base_url
        if settings and settings.local_model_url:
            base = settings.local_model_url.rstrip("/")
        return f"{base}{CompletionConfig.CHAT_PATH}"

    def chat(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        tool_choice: Optional[str] = None,
        temperature: float = None,
        max_tokens: int = None,
        model_settings: Optional[ModelSettings] = None
    ) -> Any:
        """
        Chat completion.

        Args:
            messages: List of {"role": "system/user/assistant/tool", "content": "..."}
            tools: OpenAI function definitions offered to the model
            tool_choice: "auto", "none" or a specific function selector
            temperature: Sampling temperature
            max_tokens: Max output tokens
            model_settings: Optional per-request model / endpoint override

        Returns:
            The decoded JSON body, or the raw text when the server does not answer JSON
        """
        settings = model_settings or ModelSettings()
        if temperature is None:
            temperature = settings.temperature if settings.temperature is not None else CompletionConfig.TEMPERATURE
        max_tokens = max_tokens or settings.max_tokens or CompletionConfig.MAX_OUTPUT_TOKENS

        payload: Dict[str, Any] = {
            "model": settings.selected_model or self.model_name,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "stream": False
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = tool_choice or "auto"

        url = self._endpoint(settings)
        try:
            with Timer(f"Completion ({payload['model']})"):
                response = requests.post(url, json=payload, headers=self._headers(), timeout=self.timeout)
        except requests.exceptions.ConnectionError:
            raise CompletionServiceError(
                f"Cannot connect to completion service at {url}. "
                "Please ensure the server is running."
            )
        except requests.exceptions.Timeout:
            raise CompletionServiceError(f"Completion service timed out after {self.timeout}s")
        except requests.exceptions.RequestException as e:
            raise CompletionServiceError(f"Completion request failed: {e}")

        if response.status_code != 200:
            raise CompletionServiceError(
                f"Completion API error: {response.status_code} - {response.text[:300]}",
                status_code=response.status_code
            )

        try:
            return response.json()
        except ValueError:
            return response.text

    async def achat(self, messages: List[Dict[str, Any]], **kwargs) -> Any:
        """Async wrapper around chat(); the blocking HTTP call runs in a worker thread"""
        return await asyncio.to_thread(self.chat, messages, **kwargs)

    async def acomplete(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float = None,
        max_tokens: int = None,
        model_settings: Optional[ModelSettings] = None
    ) -> str:
        """System + user prompt in, normalized text out"""
        raw = await self.achat(
            [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt}
            ],
            temperature=temperature,
            max_tokens=max_tokens,
            model_settings=model_settings
        )
        return extract_text(raw)


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================

def get_completion_client() -> CompletionClient:
    """Get or create a singleton CompletionClient instance"""
    global _client_instance
    if _client_instance is None:
        _client_instance = CompletionClient()
    return _client_instance
