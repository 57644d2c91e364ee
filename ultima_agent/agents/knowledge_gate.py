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
Knowledge Persistence Gate for Ultima_Agent
Decides whether a finished interaction is worth remembering, extracts a structured
insight from it and commits it as one knowledge node plus one searchable chunk.

Guards, in order:
- learn-or-skip validation over the tool results (all failed -> skip)
- insight extraction must yield the required fields and isSignificant
- similar-title check against the owner's existing nodes
"""

import asyncio
import json
import re
from typing import Any, Dict, List, Optional

from langchain_ollama import OllamaLLM

from ..core.config import Config
from ..core.exceptions import PersistenceError
from ..core.models import (
    Complexity,
    InsightType,
    IterationRecord,
    KnowledgeInsight,
    LearningValidation,
    PersistenceOutcome,
    ToolResult,
)
from ..core.prompts import INSIGHT_EXTRACTION_PROMPT
from ..core.utils import Timer, is_empty_payload, logger, strip_thinking, tokenize_simple, truncate_text

LEARNING_SOURCE = "ai-agent-learning-loop"
CREATED_BY = "ultima-agent"
REQUIRED_INSIGHT_FIELDS = ("title", "description", "type")


# =============================================================================
# LEARN-OR-SKIP VALIDATION
# =============================================================================

def validate_tool_execution_for_learning(tool_results: List[ToolResult]) -> LearningValidation:
    if not tool_results:
        return LearningValidation(
            should_learn=True, confidence=0.8, quality="medium",
            context={"type": "no_tools_used", "tool_count": 0}
        )

    successful = [t for t in tool_results if t.success]
    failed = [t for t in tool_results if not t.success]

    if len(failed) == len(tool_results):
        return LearningValidation(
            should_learn=False,
            reason="All tool executions failed - preventing false negative learning",
            confidence=0.0, quality="low", tentative=True,
            context={
                "type": "all_tools_failed",
                "tool_count": len(tool_results),
                "failed_tools": [t.name for t in failed]
            }
        )

    empty = [t for t in successful if is_empty_payload(t.result)]
    if len(empty) > len(successful) / 2:
        return LearningValidation(
            should_learn=True, confidence=0.4, quality="tentative", tentative=True,
            context={
                "type": "empty_results_majority",
                "tool_count": len(tool_results),
                "successful_tools": len(successful),
                "empty_results": len(empty),
                "tools_with_empty_results": [t.name for t in empty]
            }
        )

    if failed:
        return LearningValidation(
            should_learn=True, confidence=0.6, quality="medium",
            context={
                "type": "mixed_results",
                "tool_count": len(tool_results),
                "successful_tools": len(successful),
                "failed_tools": len(failed)
            }
        )

    return LearningValidation(
        should_learn=True, confidence=0.9, quality="high",
        context={
            "type": "all_tools_successful",
            "tool_count": len(tool_results),
            "successful_tools": len(successful)
        }
    )


# =============================================================================
# INSIGHT PARSING
# =============================================================================

def extract_json_from_response(content: str) -> Optional[Dict[str, Any]]:
    """
    Layered JSON recovery: direct parse, fenced block, outermost braces,
    then stripping everything outside the first '{' and last '}'.
    """
    if not content:
        return None

    try:
        parsed = json.loads(content)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    fenced = re.search(r'```(?:json)?\s*(\{[\s\S]*?\})\s*```', content, re.IGNORECASE)
    if fenced:
        try:
            return json.loads(fenced.group(1))
        except json.JSONDecodeError:
            logger.debug("Fenced insight JSON did not parse")

    braces = re.search(r'\{[\s\S]*\}', content)
    if braces:
        try:
            return json.loads(braces.group(0))
        except json.JSONDecodeError:
            logger.debug("Brace-delimited insight JSON did not parse")

    cleaned = re.sub(r'^\s*```(?:json)?\s*', '', content, flags=re.IGNORECASE)
    cleaned = re.sub(r'\s*```\s*$', '', cleaned)
    cleaned = re.sub(r'^[^{]*(\{)', r'\1', cleaned)
    cleaned = re.sub(r'(\})[^}]*$', r'\1', cleaned).strip()
    try:
        parsed = json.loads(cleaned)
        return parsed if isinstance(parsed, dict) else None
    except json.JSONDecodeError:
        return None


def validate_insight(raw: Any) -> bool:
    if not isinstance(raw, dict):
        return False
    missing = [f for f in REQUIRED_INSIGHT_FIELDS if raw.get(f) in (None, "")]
    significant = raw.get("isSignificant", raw.get("is_significant"))
    if missing or significant is None:
        logger.info(f"Insight missing required fields: {missing or ['isSignificant']}")
        return False
    if not significant:
        logger.info("Insight not marked as significant")
        return False
    return True


def _as_confidence(value: Any, default: float = 0.5) -> float:
    try:
        return max(0.0, min(1.0, float(value)))
    except (TypeError, ValueError):
        return default


def build_insight(raw: Dict[str, Any], validation: LearningValidation, tools_involved: List[str]) -> KnowledgeInsight:
    """Normalize extracted fields; tentative learning is always stored as a tentative fact"""
    try:
        insight_type = InsightType(str(raw["type"]).strip().lower())
    except ValueError:
        insight_type = InsightType.INSIGHT

    tags = [str(t) for t in (raw.get("tags") or []) if t]
    confidence = _as_confidence(raw.get("confidence"))

    if validation.tentative:
        insight_type = InsightType.TENTATIVE_FACT
        confidence = min(confidence, validation.confidence)
        if "tentative" not in tags:
            tags.append("tentative")

    return KnowledgeInsight(
        title=truncate_text(str(raw["title"]).strip(), 100, suffix=""),
        description=truncate_text(str(raw["description"]).strip(), 500),
        type=insight_type,
        confidence=confidence,
        domain=raw.get("domain") or Config.knowledge.DEFAULT_DOMAIN,
        tags=tags,
        is_significant=True,
        reasoning=raw.get("reasoning"),
        tools_involved=tools_involved
    )


def is_similar_title(candidate: str, existing: str, ratio: float = None, cap: int = None) -> bool:
    """Token overlap of at least `ratio` of the shorter title, never requiring more than `cap` tokens"""
    ratio = Config.knowledge.SIMILARITY_RATIO if ratio is None else ratio
    cap = Config.knowledge.SIMILARITY_TOKEN_CAP if cap is None else cap
    if candidate and " ".join(candidate.casefold().split()) == " ".join((existing or "").casefold().split()):
        return bool(candidate.strip())
    a, b = set(tokenize_simple(candidate)), set(tokenize_simple(existing))
    if not a or not b:
        return False
    overlap = len(a & b)
    return overlap > 0 and overlap >= min(min(len(a), len(b)) * ratio, cap)


def _research_process(iteration_context: List[IterationRecord]) -> str:
    if not iteration_context:
        return "Single response, no iterations recorded"
    return "\n\n".join(
        f"Iteration {r.iteration}: {truncate_text(r.response, 800)}\n"
        f"Tools: {', '.join(t.name for t in r.tools_used) or 'none'}"
        for r in iteration_context
    )


# =============================================================================
# PERSISTENCE GATE
# =============================================================================

class KnowledgePersistenceGate:
    """
    Usage:
        gate = KnowledgePersistenceGate(get_database())
        outcome = await gate.maybe_persist(message, answer, history, tool_results, user_id)

    Store failures are logged and reported as persisted=False; they never propagate.
    """

    def __init__(self, store, llm=None):
        self.store = store
        self.llm = llm or OllamaLLM(
            model=Config.agent_models.AGENT_MODELS["insight"],
            base_url=Config.completion.BASE_URL,
            temperature=Config.completion.FOLLOW_UP_TEMPERATURE,
            timeout=Config.completion.TIMEOUT
        )

    async def generate_insight(
        self,
        message: str,
        final_response: str,
        iteration_context: List[IterationRecord],
        tools_involved: List[str],
        validation: LearningValidation,
        complexity: Optional[Complexity] = None
    ) -> Optional[KnowledgeInsight]:
        prompt = INSIGHT_EXTRACTION_PROMPT.format(
            quality=validation.quality,
            confidence=validation.confidence,
            tentative=validation.tentative,
            context=json.dumps(validation.context),
            message=message,
            research_process=_research_process(iteration_context),
            final_response=truncate_text(final_response, 2000),
            tools_involved=", ".join(tools_involved) or "none",
            complexity=complexity.value if complexity else "unknown"
        )
        try:
            with Timer("Insight extraction"):
                raw = await self.llm.ainvoke(prompt)
        except Exception as e:
            logger.error(f"Insight extraction failed: {e}")
            return None

        parsed = extract_json_from_response(strip_thinking(str(raw)))
        if parsed is None:
            logger.warning("Failed to extract valid JSON from insight response")
            return None
        if not validate_insight(parsed):
            return None
        return build_insight(parsed, validation, tools_involved)

    async def maybe_persist(
        self,
        message: str,
        final_response: str,
        iteration_context: List[IterationRecord],
        tool_results: List[ToolResult],
        user_id: Optional[str],
        complexity: Optional[Complexity] = None
    ) -> PersistenceOutcome:
        if not user_id:
            return PersistenceOutcome(persisted=False, reason="No user to attribute knowledge to")

        validation = validate_tool_execution_for_learning(tool_results)
        if not validation.should_learn:
            logger.info(f"Skipping knowledge persistence: {validation.reason}")
            return PersistenceOutcome(persisted=False, reason=validation.reason, quality=validation.quality)

        tools_involved = list(dict.fromkeys(
            [t.name for r in iteration_context for t in r.tools_used] + [t.name for t in tool_results]
        ))
        insight = await self.generate_insight(
            message, final_response, iteration_context, tools_involved, validation, complexity
        )
        if insight is None:
            return PersistenceOutcome(
                persisted=False, reason="No significant insights generated", quality=validation.quality
            )

        try:
            node = {
                "user_id": user_id,
                "title": insight.title,
                "description": insight.description,
                "type": insight.type.value,
                "domain_id": insight.domain,
                "confidence": insight.confidence,
                "metadata": {
                    "source": LEARNING_SOURCE,
                    "original_query": message,
                    "iterations_used": len(iteration_context),
                    "tools_involved": tools_involved,
                    "created_by": CREATED_BY,
                    "tags": insight.tags,
                    "tool_execution_context": validation.context,
                    "learning_confidence": validation.confidence,
                    "knowledge_quality": validation.quality,
                    "is_tentative": validation.tentative,
                    "validation_status": "unverified",
                }
            }
            chunk = {
                "title": insight.title,
                "content": (f"{insight.title}\n\n{insight.description}\n\n"
                            f"Original Query: {message}\n\nKey Insights: {final_response}"),
                "metadata": {
                    "source": LEARNING_SOURCE,
                    "type": insight.type.value,
                    "confidence": insight.confidence,
                    "domain": insight.domain,
                    "tags": insight.tags,
                    "tools_used": tools_involved,
                    "data_quality": validation.quality,
                    "is_tentative": validation.tentative,
                }
            }
            node_id = await asyncio.to_thread(
                self.store.insert_knowledge_if_absent, node, chunk,
                lambda existing: is_similar_title(insight.title, existing)
            )
        except PersistenceError as e:
            logger.error(f"Knowledge persistence failed: {e}")
            return PersistenceOutcome(persisted=False, reason=str(e), insight=insight, quality=validation.quality)

        if node_id is None:
            logger.info(f"Similar knowledge already exists: {insight.title}")
            return PersistenceOutcome(
                persisted=False, reason="Similar knowledge already exists",
                insight=insight, quality=validation.quality
            )
        logger.info(f"Persisted knowledge node {node_id}: {insight.title}")
        return PersistenceOutcome(persisted=True, node_id=node_id, insight=insight, quality=validation.quality)

    async def deprecate_node(self, node_id: str, user_id: str, reason: str) -> bool:
        """Flag a node as deprecated; a replacement is added as a new node by the caller"""
        try:
            return await asyncio.to_thread(self.store.deprecate_knowledge_node, node_id, user_id, reason)
        except PersistenceError as e:
            logger.error(f"Failed to deprecate knowledge node {node_id}: {e}")
            return False
