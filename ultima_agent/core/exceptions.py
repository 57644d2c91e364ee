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
Error taxonomy for Ultima_Agent.

ToolNotFoundError and ToolBackendError never escape a single tool invocation;
CompletionServiceError is answered with a deterministic fallback;
PersistenceError is logged and never fails the user-facing response.
"""

from typing import Optional


class AgentError(Exception):
    """Base class for all agent errors"""


class ClassificationError(AgentError):
    """Decision analyzer received malformed input (never raised for 'no match')"""


class ToolNotFoundError(AgentError):
    """Requested tool is absent from the registry"""

    def __init__(self, tool_key: str):
        self.tool_key = tool_key
        super().__init__(f"Tool '{tool_key}' not found or not available")


class ToolBackendError(AgentError):
    """Tool backend was reachable but reported failure, or the call itself raised"""

    def __init__(self, message: str, tool_name: Optional[str] = None):
        self.tool_name = tool_name
        super().__init__(message)


class ToolStateError(AgentError):
    """Attempted transition out of a terminal ToolProgress status"""


class CompletionServiceError(AgentError):
    """The LLM call failed or returned unusable content"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class PersistenceError(AgentError):
    """Persistence store read or write failed"""
