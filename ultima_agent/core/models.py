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
Data Models for Ultima_Agent
Decision, plan, execution, reflection and knowledge records shared by all agents.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .exceptions import ToolStateError
from .utils import utc_now_iso


# =============================================================================
# ENUMS
# =============================================================================

class DetectedType(str, Enum):
    SEARCH = "search"
    GITHUB = "github"
    KNOWLEDGE = "knowledge"
    JIRA = "jira"
    GENERAL = "general"
    NONE = "none"


class Complexity(str, Enum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"


class ToolStatus(str, Enum):
    STARTING = "starting"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({ToolStatus.COMPLETED, ToolStatus.FAILED})


class ToolExecutionQuality(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    FAILED = "failed"


class InsightType(str, Enum):
    INSIGHT = "insight"
    CONCEPT = "concept"
    PROCESS = "process"
    FACT = "fact"
    STRATEGY = "strategy"
    TENTATIVE_FACT = "tentative_fact"


# =============================================================================
# DECISION & PLAN
# =============================================================================

class RepoRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    owner: str
    repo: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"


class ToolDecision(BaseModel):
    """Classification of whether/which tools a message needs. Immutable."""
    model_config = ConfigDict(frozen=True)

    should_use_tools: bool
    detected_type: DetectedType
    reasoning: str
    confidence: float = Field(ge=0.0, le=1.0)
    complexity: Complexity
    suggested_tools: List[str] = Field(default_factory=list)
    estimated_steps: int
    fallback_strategy: Optional[str] = None
    github_repo: Optional[RepoRef] = None
    tool_action: Optional[str] = None
    scores: Dict[str, float] = Field(default_factory=dict)


class ExecutionStep(BaseModel):
    step: int
    tool: str
    description: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    dependencies: List[int] = Field(default_factory=list)
    estimated_duration: int = 5


class ExecutionPlan(BaseModel):
    query: str
    plan_type: str = "single-tool"
    steps: List[ExecutionStep] = Field(default_factory=list)

    @property
    def is_multi_tool(self) -> bool:
        return len(self.steps) > 1


# =============================================================================
# TOOL EXECUTION
# =============================================================================

class CallerContext(BaseModel):
    """Identity injected into tool parameters"""
    user_id: Optional[str] = None
    session_id: Optional[str] = None


class ToolProgress(BaseModel):
    """
    Lifecycle record of one tool invocation.
    starting -> executing -> {completed | failed}; terminal states are final.
    """
    id: str
    name: str
    display_name: str
    status: ToolStatus = ToolStatus.STARTING
    start_time: str = Field(default_factory=utc_now_iso)
    end_time: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)
    progress: int = Field(default=0, ge=0, le=100)
    result: Any = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def advance(self, status: ToolStatus, progress: Optional[int] = None, **fields) -> None:
        if self.is_terminal:
            raise ToolStateError(f"{self.name} is already {self.status.value}; cannot move to {status.value}")
        self.status = status
        if progress is not None:
            self.progress = progress
        for key, value in fields.items():
            setattr(self, key, value)
        if status in TERMINAL_STATUSES:
            self.end_time = utc_now_iso()

    def duration_seconds(self) -> float:
        if not self.end_time:
            return 0.0
        start = datetime.fromisoformat(self.start_time)
        end = datetime.fromisoformat(self.end_time)
        return max((end - start).total_seconds(), 0.0)


class ToolResult(BaseModel):
    """Durable record of one tool's contribution to an answer. Immutable."""
    model_config = ConfigDict(frozen=True)

    name: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    result: Any = None
    success: bool
    error: Optional[str] = None


class ExecutionOutcome(BaseModel):
    """Result of running a batch of tool calls, in request order"""
    tool_messages: List[Dict[str, Any]] = Field(default_factory=list)
    tools_used: List[ToolResult] = Field(default_factory=list)
    tool_progress: List[ToolProgress] = Field(default_factory=list)

    def extend(self, other: "ExecutionOutcome") -> None:
        self.tool_messages.extend(other.tool_messages)
        self.tools_used.extend(other.tools_used)
        self.tool_progress.extend(other.tool_progress)


class ForcedResult(BaseModel):
    final_response: str
    tools_used: List[ToolResult] = Field(default_factory=list)
    tool_progress: List[ToolProgress] = Field(default_factory=list)
    self_reflection: str = ""


# =============================================================================
# SYNTHESIS
# =============================================================================

class ToolAnalysis(BaseModel):
    quality: ToolExecutionQuality
    total_tools: int = 0
    successful_tools: int = 0
    failed_tools: List[str] = Field(default_factory=list)
    empty_results: List[str] = Field(default_factory=list)
    has_data: bool = False


class KnowledgeItem(BaseModel):
    id: Optional[str] = None
    title: str = "Untitled"
    snippet: str = ""
    source: str = "Knowledge Base"
    relevance_score: Optional[float] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# REFLECTION LOOP
# =============================================================================

class ReflectionDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    should_continue: bool = False
    next_action: Optional[str] = None
    reasoning: Optional[str] = None


class IterationRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    iteration: int
    input: str
    response: str
    tools_used: List[ToolResult] = Field(default_factory=list)


class LoopState(BaseModel):
    """
    Explicit reflective-loop state carried by the caller.
    `iteration` counts continuations already granted for one originating message.
    """
    model_config = ConfigDict(frozen=True)

    iteration: int = 0
    max_iterations: int = 2
    history: List[IterationRecord] = Field(default_factory=list)

    def can_continue(self) -> bool:
        return self.iteration < self.max_iterations

    def record(self, record: IterationRecord) -> "LoopState":
        return self.model_copy(update={"history": [*self.history, record]})

    def next(self) -> "LoopState":
        return self.model_copy(update={"iteration": self.iteration + 1})


# =============================================================================
# KNOWLEDGE PERSISTENCE
# =============================================================================

class LearningValidation(BaseModel):
    should_learn: bool
    reason: Optional[str] = None
    confidence: float
    quality: str
    tentative: bool = False
    context: Dict[str, Any] = Field(default_factory=dict)


class KnowledgeInsight(BaseModel):
    title: str
    description: str
    type: InsightType
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    domain: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    is_significant: bool
    reasoning: Optional[str] = None
    tools_involved: List[str] = Field(default_factory=list)


class PersistenceOutcome(BaseModel):
    persisted: bool
    node_id: Optional[str] = None
    reason: Optional[str] = None
    insight: Optional[KnowledgeInsight] = None
    quality: Optional[str] = None


# =============================================================================
# CALLER SURFACE
# =============================================================================

class ModelSettings(BaseModel):
    provider: Optional[str] = None
    selected_model: Optional[str] = None
    local_model_url: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None


class AgentResponse(BaseModel):
    success: bool
    message: str
    tools_used: List[ToolResult] = Field(default_factory=list)
    tool_progress: List[ToolProgress] = Field(default_factory=list)
    self_reflection: str = ""
    reflection_decision: Optional[ReflectionDecision] = None
    session_id: Optional[str] = None
    decision: Optional[ToolDecision] = None
    loop_iterations: int = 0
    error: Optional[str] = None
