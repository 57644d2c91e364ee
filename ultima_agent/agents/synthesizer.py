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
Synthesis Agent for Ultima_Agent
Merges tool outputs and knowledge-base hits into one failure-aware answer.
Uses the completion service for the answer and a deterministic fallback when it
errors or returns nothing, so the result is never an empty string.
"""

import json
from typing import Any, List, Optional

from ..core.config import Config
from ..core.completion_client import CompletionClient, extract_text, get_completion_client
from ..core.exceptions import CompletionServiceError
from ..core.models import KnowledgeItem, ModelSettings, ToolAnalysis, ToolExecutionQuality, ToolResult
from ..core.prompts import SYNTHESIS_INSTRUCTIONS, SYNTHESIS_SYSTEM_PROMPT
from ..core.utils import Timer, is_empty_payload, logger, title_case_tool_name, truncate_text

MAX_FALLBACK_ITEMS = 3


def _is_knowledge_tool(name: str) -> bool:
    return "knowledge-search" in name


def _has_content(result: Any) -> bool:
    if isinstance(result, (dict, list, str)):
        return len(result) > 0
    return result is not None


# =============================================================================
# QUALITY ANALYSIS
# =============================================================================

def analyze_tool_execution_quality(tool_results: List[ToolResult]) -> ToolAnalysis:
    """
    Classify a batch of tool results.

    failed: every invocation failed
    low:    more than half of the successful invocations returned empty payloads
    medium: no tools, or some failures, or some empty payloads
    high:   everything succeeded with data
    """
    if not tool_results:
        return ToolAnalysis(quality=ToolExecutionQuality.MEDIUM)

    successful = [t for t in tool_results if t.success]
    failed = [t.name for t in tool_results if not t.success]
    empty = [t.name for t in successful if is_empty_payload(t.result)]

    if len(failed) == len(tool_results):
        quality = ToolExecutionQuality.FAILED
    elif len(empty) > len(successful) / 2:
        quality = ToolExecutionQuality.LOW
    elif failed or empty:
        quality = ToolExecutionQuality.MEDIUM
    else:
        quality = ToolExecutionQuality.HIGH

    return ToolAnalysis(
        quality=quality,
        total_tools=len(tool_results),
        successful_tools=len(successful),
        failed_tools=failed,
        empty_results=empty,
        has_data=len(successful) > len(empty)
    )


def extract_knowledge_results(tool_results: List[ToolResult]) -> List[KnowledgeItem]:
    """Knowledge hits carried by successful knowledge-search results"""
    items = []
    for tool in tool_results:
        if not tool.success or not _is_knowledge_tool(tool.name):
            continue
        payload = tool.result
        if isinstance(payload, dict):
            payload = payload.get("results") or payload.get("data") or []
        if not isinstance(payload, list):
            continue
        for entry in payload:
            if not isinstance(entry, dict):
                continue
            items.append(KnowledgeItem(
                id=entry.get("id"),
                title=entry.get("title") or "Untitled",
                snippet=entry.get("snippet") or entry.get("content") or "",
                source=entry.get("source") or "Knowledge Base",
                relevance_score=entry.get("relevance_score", entry.get("relevanceScore")),
                metadata=entry.get("metadata") or {}
            ))
    return items


# =============================================================================
# CONTEXT & FALLBACK
# =============================================================================

def prepare_synthesis_context(
    message: str,
    tool_results: List[ToolResult],
    knowledge_results: List[KnowledgeItem],
    analysis: ToolAnalysis
) -> str:
    lines = [
        f'Original Question: "{message}"',
        "",
        "TOOL EXECUTION SUMMARY:",
        f"- Quality: {analysis.quality.value}",
        f"- Total Tools: {analysis.total_tools}",
        f"- Successful: {analysis.successful_tools}",
        f"- Failed: {len(analysis.failed_tools)}",
        f"- Empty Results: {len(analysis.empty_results)}",
        f"- Has Data: {analysis.has_data}",
        "",
    ]

    if tool_results:
        lines.append("TOOL RESULTS:")
        for index, tool in enumerate(tool_results, start=1):
            lines.append(f"{index}. Tool: {tool.name}")
            lines.append(f"   Success: {tool.success}")
            if not tool.success:
                lines.append(f"   Error: {tool.error or 'Unknown error'}")
            else:
                has_data = _has_content(tool.result) and not is_empty_payload(tool.result)
                lines.append(f"   Has Data: {has_data}")
                if has_data:
                    lines.append(f"   Result: {json.dumps(tool.result, indent=2, default=str)}")
                else:
                    lines.append("   Result: Empty or no data returned")
            lines.append("")

    if knowledge_results:
        lines.append("KNOWLEDGE BASE RESULTS:")
        for index, item in enumerate(knowledge_results, start=1):
            lines.append(f"{index}. {item.title}")
            lines.append(f"   Source: {item.source}")
            lines.append(f"   Relevance: {item.relevance_score if item.relevance_score is not None else 'N/A'}")
            lines.append(f"   Content: {item.snippet}")
            if item.metadata.get("is_tentative"):
                lines.append("   ⚠️ Marked as tentative/unverified")
            if item.metadata.get("validation_status") == "deprecated":
                lines.append("   ❌ Marked as deprecated")
            lines.append("")

    lines += ["", SYNTHESIS_INSTRUCTIONS]
    return "\n".join(lines)


def _describe_result(tool: ToolResult) -> str:
    name = title_case_tool_name(tool.name)
    if not tool.success:
        return f"- {name}: could not be completed ({tool.error or 'unknown error'})."
    if is_empty_payload(tool.result):
        if _is_knowledge_tool(tool.name):
            return f"- {name}: No results found in knowledge base."
        return f"- {name}: the current search returned no results."
    payload = tool.result
    if isinstance(payload, list):
        titles = [str(p.get("title") or p.get("name") or p.get("key")) for p in payload[:MAX_FALLBACK_ITEMS]
                  if isinstance(p, dict)]
        detail = f": {'; '.join(titles)}" if titles else ""
        return f"- {name}: returned {len(payload)} result(s){detail}"
    return f"- {name}: {truncate_text(json.dumps(payload, default=str), 300)}"


def generate_fallback_response(
    message: str,
    tool_results: List[ToolResult],
    knowledge_results: List[KnowledgeItem],
    analysis: Optional[ToolAnalysis] = None
) -> str:
    """Deterministic answer built from the quality classification and available snippets"""
    lines = [f'I attempted to address your question: "{message}"', ""]

    if analysis:
        if analysis.quality == ToolExecutionQuality.FAILED:
            lines.append("Unfortunately, all tool executions encountered issues, which may indicate "
                         "connectivity problems or access limitations.")
        elif analysis.quality == ToolExecutionQuality.LOW:
            lines.append("The search returned limited results. The requested information may not be available "
                         "in the sources I could reach, or there may be access limitations.")
        elif not analysis.has_data and analysis.total_tools:
            lines.append("The tools completed but returned no data. I was unable to retrieve the requested "
                         "information from the accessible sources.")
        elif analysis.quality == ToolExecutionQuality.MEDIUM and analysis.total_tools:
            lines.append("Based on available data, some sources returned results and others did not:")

    if tool_results:
        lines.append("")
        lines += [_describe_result(tool) for tool in tool_results]

    if knowledge_results:
        lines += ["", "I found some related information in the knowledge base:", ""]
        for index, item in enumerate(knowledge_results[:MAX_FALLBACK_ITEMS], start=1):
            lines.append(f"{index}. {item.title}: {truncate_text(item.snippet, Config.knowledge.SNIPPET_CHARS)}")

    lines += [
        "",
        "For more specific information, you might want to:",
        "- Check if you have the necessary access permissions",
        "- Verify the search terms or identifiers",
        "- Try a different approach or consult additional data sources",
    ]
    return "\n".join(lines)


# =============================================================================
# SYNTHESIS AGENT
# =============================================================================

class ResultSynthesizer:
    """
    Responsibilities:
    - Classify tool execution quality
    - Ask the completion service for a failure-aware final answer
    - Fall back to a deterministic answer when the completion call fails or is empty
    """

    def __init__(self, client: Optional[CompletionClient] = None):
        self.client = client or get_completion_client()
        logger.info("ResultSynthesizer initialized")

    async def synthesize(
        self,
        message: str,
        tool_results: List[ToolResult],
        knowledge_results: Optional[List[KnowledgeItem]] = None,
        model_settings: Optional[ModelSettings] = None
    ) -> str:
        if knowledge_results is None:
            knowledge_results = extract_knowledge_results(tool_results)
        analysis = analyze_tool_execution_quality(tool_results)
        logger.info(f"Synthesis: quality={analysis.quality.value} "
                    f"({analysis.successful_tools}/{analysis.total_tools} ok, {len(analysis.empty_results)} empty)")

        system_prompt = SYNTHESIS_SYSTEM_PROMPT.format(
            quality=analysis.quality.value,
            successful_tools=analysis.successful_tools,
            total_tools=analysis.total_tools,
            failed_count=len(analysis.failed_tools),
            empty_count=len(analysis.empty_results)
        )
        context = prepare_synthesis_context(message, tool_results, knowledge_results, analysis)

        try:
            with Timer("Synthesis"):
                raw = await self.client.achat(
                    [
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": context}
                    ],
                    temperature=Config.completion.FOLLOW_UP_TEMPERATURE,
                    max_tokens=Config.completion.SYNTHESIS_MAX_TOKENS,
                    model_settings=model_settings
                )
            answer = extract_text(raw)
        except CompletionServiceError as e:
            logger.error(f"Synthesis completion failed: {e}")
            return generate_fallback_response(message, tool_results, knowledge_results, analysis)

        if not answer:
            logger.warning("No synthesis response received, using fallback")
            return generate_fallback_response(message, tool_results, knowledge_results, analysis)

        logger.info(f"Synthesis result: Success ({len(answer)} chars)")
        return answer
