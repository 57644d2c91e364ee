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
Tool Execution Engine for Ultima_Agent
Runs requested tool calls against the registry, tracks per-tool progress and
normalizes every outcome (success, backend failure, unknown tool) into a ToolResult.

One tool's failure never aborts its siblings. Results and progress are recorded in
request order even when a batch runs concurrently.
"""

import json
import asyncio
from typing import Any, Dict, List, Optional, Tuple

from ..core.config import Config
from ..core.exceptions import ToolBackendError, ToolNotFoundError
from ..core.models import (
    CallerContext,
    ExecutionOutcome,
    ExecutionStep,
    ToolProgress,
    ToolResult,
    ToolStatus,
)
from ..core.utils import Timer, logger, new_progress_id, title_case_tool_name
from ..tools.registry import FUNCTION_PREFIX, ToolRegistry
from .planner import group_into_batches
from .tool_decision import KNOWLEDGE_SEARCH, WEB_SCRAPER

REMEDIATION_HINT = "Check if required API tokens are configured and valid"


def parse_arguments(raw: Any) -> Dict[str, Any]:
    """Tool-call arguments arrive as a JSON string; anything unparseable becomes {}"""
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        logger.error(f"Failed to parse tool parameters: {str(raw)[:200]}")
        return {}
    return parsed if isinstance(parsed, dict) else {}


def shape_parameters(tool_id: str, parameters: Dict[str, Any], caller: CallerContext) -> Dict[str, Any]:
    """Tool-specific parameter shaping plus caller identity injection"""
    if tool_id == KNOWLEDGE_SEARCH:
        return {
            "query": parameters.get("query") or "",
            "limit": parameters.get("limit") or Config.knowledge.SEARCH_LIMIT,
            "includeNodes": parameters.get("includeNodes") is not False,
            "matchThreshold": parameters.get("matchThreshold") or Config.knowledge.MATCH_THRESHOLD,
            "useEmbeddings": parameters.get("useEmbeddings") is not False,
            "userId": caller.user_id,
        }
    return {**parameters, "userId": caller.user_id}


def unwrap_response(response: Any, tool_name: str) -> Any:
    """
    Classify a backend response.
    Explicit failure raises ToolBackendError; a `data` or `results` envelope is
    unwrapped; anything else passes through verbatim.
    """
    if isinstance(response, dict):
        if response.get("success") is False:
            raise ToolBackendError(response.get("error") or "Tool execution failed", tool_name)
        if response.get("data") is not None:
            return response["data"]
        if response.get("results") is not None:
            return response["results"]
    return response


def first_url(payload: Any) -> Optional[str]:
    """First `url` found in a search payload"""
    items = payload if isinstance(payload, list) else [payload]
    for item in items:
        if isinstance(item, dict) and item.get("url"):
            return item["url"]
    return None


class ToolExecutionEngine:
    """
    Executes tool calls and plan steps.

    Usage:
        engine = ToolExecutionEngine()
        outcome = await engine.execute(tool_calls, registry, CallerContext(user_id="u1"))
    """

    async def _run(
        self,
        function_name: str,
        parameters: Dict[str, Any],
        registry: ToolRegistry,
        caller: CallerContext,
        display_suffix: str = ""
    ) -> Tuple[ToolProgress, ToolResult, Any]:
        progress = ToolProgress(
            id=new_progress_id(),
            name=function_name,
            display_name=title_case_tool_name(function_name) + display_suffix,
            parameters=parameters,
        )
        tool_key = function_name[len(FUNCTION_PREFIX):] if function_name.startswith(FUNCTION_PREFIX) else function_name
        tool_id = registry.resolve(function_name)

        if tool_id is None:
            error = ToolNotFoundError(tool_key)
            logger.error(f"Tool not found: {tool_key}. Available tools: {registry.tool_ids()}")
            payload = {"error": str(error), "toolName": function_name}
            progress.advance(ToolStatus.FAILED, error="Tool not found")
            return progress, ToolResult(
                name=function_name, parameters=parameters, result=payload, success=False, error=str(error)
            ), payload

        progress.advance(ToolStatus.EXECUTING, 25)
        shaped = shape_parameters(tool_id, parameters, caller)
        progress.progress = 50

        try:
            with Timer(f"Tool {tool_id}"):
                response = await registry.invoke(tool_id, shaped)
            processed = unwrap_response(response, function_name)
        except Exception as e:
            # Any backend error is isolated to this invocation
            logger.error(f"Tool execution failed: {function_name}: {e}")
            payload = {"error": str(e), "toolName": function_name, "details": REMEDIATION_HINT}
            progress.advance(ToolStatus.FAILED, error=str(e))
            return progress, ToolResult(
                name=function_name, parameters=parameters, result=payload, success=False, error=str(e)
            ), payload

        progress.advance(ToolStatus.COMPLETED, 100, result=processed)
        logger.info(f"Tool execution successful: {function_name}")
        return progress, ToolResult(
            name=function_name, parameters=parameters, result=processed, success=True
        ), processed

    async def execute(
        self,
        tool_calls: List[Dict[str, Any]],
        registry: ToolRegistry,
        caller: CallerContext
    ) -> ExecutionOutcome:
        """
        Run model-requested tool calls in order.

        Args:
            tool_calls: [{"id": ..., "function": {"name": "execute_<id>", "arguments": "<json>"}}]
        """
        logger.info(f"Processing {len(tool_calls)} tool call(s)")
        outcome = ExecutionOutcome()
        for index, call in enumerate(tool_calls):
            function = call.get("function") or {}
            name = function.get("name") or "unknown"
            parameters = parse_arguments(function.get("arguments"))
            progress, result, payload = await self._run(name, parameters, registry, caller)
            outcome.tool_messages.append({
                "tool_call_id": call.get("id") or f"call-{index}",
                "role": "tool",
                "content": json.dumps(payload, default=str)
            })
            outcome.tools_used.append(result)
            outcome.tool_progress.append(progress)
        return outcome

    async def execute_one(
        self,
        tool_id: str,
        parameters: Dict[str, Any],
        registry: ToolRegistry,
        caller: CallerContext,
        display_suffix: str = ""
    ) -> Tuple[ToolProgress, ToolResult]:
        """Run a single tool by id (used by the forced-execution path)"""
        progress, result, _ = await self._run(
            f"{FUNCTION_PREFIX}{tool_id}", parameters, registry, caller, display_suffix
        )
        return progress, result

    async def execute_plan(
        self,
        steps: List[ExecutionStep],
        registry: ToolRegistry,
        caller: CallerContext,
        parallel: Optional[bool] = None
    ) -> ExecutionOutcome:
        """
        Run plan steps batch by batch. Steps inside a batch run sequentially unless
        `parallel` is set; recorded order is plan order either way. A scraper step
        without a url takes the first url its dependency produced.
        """
        parallel = Config.agent.PARALLEL_BATCHES if parallel is None else parallel
        outcome = ExecutionOutcome()
        outputs: Dict[int, ToolResult] = {}

        for batch in group_into_batches(steps):
            prepared = [(step, self._bind_inputs(step, outputs)) for step in batch]

            if parallel and len(prepared) > 1:
                runs = await asyncio.gather(*[
                    self._run(f"{FUNCTION_PREFIX}{step.tool}", params, registry, caller)
                    for step, params in prepared
                ])
            else:
                runs = []
                for step, params in prepared:
                    runs.append(await self._run(f"{FUNCTION_PREFIX}{step.tool}", params, registry, caller))

            for (step, _), (progress, result, payload) in zip(prepared, runs):
                outputs[step.step] = result
                outcome.tool_messages.append({
                    "tool_call_id": f"plan-step-{step.step}",
                    "role": "tool",
                    "content": json.dumps(payload, default=str)
                })
                outcome.tools_used.append(result)
                outcome.tool_progress.append(progress)

        return outcome

    @staticmethod
    def _bind_inputs(step: ExecutionStep, outputs: Dict[int, ToolResult]) -> Dict[str, Any]:
        params = dict(step.parameters)
        if step.tool == WEB_SCRAPER and not params.get("url"):
            for dependency in step.dependencies:
                upstream = outputs.get(dependency)
                url = first_url(upstream.result) if upstream and upstream.success else None
                if url:
                    params["url"] = url
                    break
        return params
