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

import json
from typing import Any, Dict, List, Optional

from langchain_ollama import OllamaLLM

from ..core.config import Config
from ..core.completion_client import extract_text
from ..core.models import LoopState, ReflectionDecision, ToolResult
from ..core.prompts import REFLECTION_PROMPT, REFLECTION_SYSTEM_PROMPT
from ..core.utils import Timer, logger, strip_thinking, truncate_text

DEFAULT_NEXT_ACTION = "Provide additional details and analysis to improve the response"
CONTINUE_KEYWORDS = ("true", "improve", "additional")
CONTINUE_KEYS = ("continue", "shouldContinue", "should_continue")
NEXT_ACTION_KEYS = ("nextAction", "next_action")


def _first_json_object(text: str) -> Optional[Dict[str, Any]]:
    """First decodable JSON object embedded anywhere in `text`"""
    decoder = json.JSONDecoder()
    start = text.find("{")
    while start != -1:
        try:
            obj, _ = decoder.raw_decode(text, start)
            if isinstance(obj, dict):
                return obj
        except json.JSONDecodeError:
            pass
        start = text.find("{", start + 1)
    return None


def _text_field(value: Any) -> Optional[str]:
    """Non-empty stripped string, None for anything else"""
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _keyword_decision(text: str) -> ReflectionDecision:
    lowered = text.lower()
    should = any(word in lowered for word in CONTINUE_KEYWORDS)
    return ReflectionDecision(
        should_continue=should,
        next_action=DEFAULT_NEXT_ACTION if should else None,
        reasoning=truncate_text(text.strip(), 300) or "Unparseable evaluation"
    )


def _json_decision(obj: Dict[str, Any]) -> ReflectionDecision:
    flag = next((obj[k] for k in CONTINUE_KEYS if k in obj), False)
    if isinstance(flag, str):
        flag = flag.strip().lower() == "true"
    should = flag is True or (isinstance(flag, (int, float)) and bool(flag))
    next_action = next((_text_field(obj[k]) for k in NEXT_ACTION_KEYS if _text_field(obj.get(k))), None)
    return ReflectionDecision(
        should_continue=should,
        next_action=(next_action or DEFAULT_NEXT_ACTION) if should else None,
        reasoning=_text_field(obj.get("reasoning")) or "No reasoning provided"
    )


def parse_reflection(text: str) -> ReflectionDecision:
    """
    Turn an evaluation answer into a ReflectionDecision.
    A JSON object wins; otherwise the keyword heuristic decides.
    """
    obj = _first_json_object(text)
    if obj is not None:
        try:
            return _json_decision(obj)
        except (TypeError, ValueError) as e:
            logger.warning(f"Malformed reflection object, using keyword heuristic: {e}")
    return _keyword_decision(text)


def should_continue(state: LoopState, decision: ReflectionDecision) -> bool:
    """Whether the caller may run another iteration for this message"""
    return decision.should_continue and bool(decision.next_action) and state.can_continue()


class ContinuationController:
    """
    Post-answer completeness evaluation.

    Stops without asking the model when loops are disabled, the loop budget
    is spent or there is nothing to evaluate. Never runs tools or synthesis;
    the caller feeds `next_action` back as the next input.
    """

    def __init__(self, llm=None, max_loops: Optional[int] = None):
        self.max_loops = Config.agent.MAX_LOOPS if max_loops is None else max_loops
        self.llm = llm or OllamaLLM(
            model=Config.agent_models.AGENT_MODELS["reflector"],
            base_url=Config.completion.BASE_URL,
            temperature=Config.completion.FOLLOW_UP_TEMPERATURE,
            timeout=Config.completion.TIMEOUT
        )
        logger.info(f"ContinuationController initialized | max loops: {self.max_loops}")

    async def evaluate(
        self,
        response: str,
        tools_used: List[ToolResult],
        loop_count: int,
        message: str,
        loop_enabled: bool = True
    ) -> ReflectionDecision:
        if not loop_enabled:
            return ReflectionDecision(reasoning="Self-improvement loops are disabled by user preference")
        if loop_count >= self.max_loops:
            return ReflectionDecision(reasoning=f"Maximum loop iterations ({self.max_loops}) reached")
        if not response or not response.strip():
            return ReflectionDecision(reasoning="No response to evaluate")

        if tools_used:
            tools_summary = ", ".join(f"{t.name} ({'success' if t.success else 'failed'})" for t in tools_used)
        else:
            tools_summary = "No tools used"

        prompt = REFLECTION_PROMPT.format(
            system_prompt=REFLECTION_SYSTEM_PROMPT,
            message=message,
            response=response,
            tools_summary=tools_summary
        )

        try:
            with Timer("Reflection"):
                raw = await self.llm.ainvoke(prompt)
            text = strip_thinking(extract_text(raw))
        except Exception as e:
            logger.error(f"Reflection evaluation failed: {e}")
            return ReflectionDecision(reasoning="Evaluation error - proceeding with current response")

        try:
            decision = parse_reflection(text)
        except Exception as e:
            logger.error(f"Reflection parsing failed: {e}")
            return ReflectionDecision(reasoning="Evaluation error - proceeding with current response")
        logger.info(f"Reflection: continue={decision.should_continue} | {truncate_text(decision.reasoning or '', 120)}")
        return decision
