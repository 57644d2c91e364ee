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

import asyncio
from typing import Any, Dict, List, Literal, Optional, Set

from typing_extensions import TypedDict
from langgraph.graph import StateGraph, END

from ..core.config import Config
from ..core.completion_client import AssistantMessage, CompletionClient, extract_assistant_message, get_completion_client
from ..core.exceptions import CompletionServiceError, PersistenceError
from ..core.models import (
    AgentResponse,
    CallerContext,
    Complexity,
    ExecutionStep,
    IterationRecord,
    LoopState,
    ModelSettings,
    ReflectionDecision,
    RepoRef,
    ToolDecision,
    ToolProgress,
    ToolResult,
)
from ..core.prompts import AGENT_SYSTEM_PROMPT, LOOP_GUIDANCE_INITIAL, LOOP_GUIDANCE_ITERATION
from ..core.telemetry import telemetry
from ..core.utils import logger, new_id, strip_thinking, truncate_text
from ..tools.registry import ToolRegistry
from .forced_tools import ForcedExecutionController
from .knowledge_gate import KnowledgePersistenceGate
from .planner import OrchestrationPlanner, resolve_repo
from .reflector import ContinuationController, should_continue
from .synthesizer import (
    ResultSynthesizer,
    analyze_tool_execution_quality,
    extract_knowledge_results,
    generate_fallback_response,
)
from .tool_decision import ToolDecisionAnalyzer
from .tool_executor import ToolExecutionEngine

GRAPH_RECURSION_LIMIT = 50
NO_RESPONSE_TEXT = "I apologize, but I could not generate a response."


class RequestTrace:
    """
    Everything gathered for one request, visible to the caller even if the
    graph is cancelled by the deadline.
    """

    def __init__(self):
        self.tools_used: List[ToolResult] = []
        self.tool_progress: List[ToolProgress] = []
        self.responses: List[str] = []


# --- Graph State Definition ---

class AgentState(TypedDict):
    """State of one handle_query run through the reflective loop."""
    original_message: str
    message: str                      # effective input of the current iteration
    history: List[Dict[str, Any]]
    caller: CallerContext
    model_settings: Optional[ModelSettings]
    loop_enabled: bool
    repo_context: Optional[RepoRef]
    decision: Optional[ToolDecision]
    plan: List[ExecutionStep]
    assistant: Optional[AssistantMessage]
    iteration_tools: List[ToolResult]
    response: str
    loop_state: LoopState
    reflection: Optional[ReflectionDecision]
    continue_loop: bool
    completion_error: Optional[str]
    trace: RequestTrace


def generate_self_reflection(tool_progress: List[ToolProgress]) -> str:
    """Execution summary attached to every answer"""
    if not tool_progress:
        return "Responded directly without using tools."
    succeeded = [p for p in tool_progress if p.status.value == "completed"]
    failed = [p for p in tool_progress if p.status.value == "failed"]
    total_seconds = round(sum(p.duration_seconds() for p in tool_progress), 2)
    summary = (f"Used {len(tool_progress)} tool(s): {len(succeeded)} succeeded, {len(failed)} failed. "
               f"Total execution time: {total_seconds}s")
    if failed:
        summary += f" Failed tools: {', '.join(p.display_name for p in failed)}"
    return summary


def repo_from_history(history: List[Dict[str, Any]]) -> Optional[RepoRef]:
    """Most recent repository mentioned in the conversation"""
    for entry in reversed(history or []):
        repo = resolve_repo(str(entry.get("content") or ""))
        if repo:
            return repo
    return None


class AgentBrain:
    """
    Ultima_Agent orchestration core.

    Graph:
        analyze -> respond -> execute | force | finalize
        execute -> synthesize -> finalize
        force -> finalize
        finalize -> reflect -> analyze (continue) | END

    Every collaborator is injectable; defaults are built from Config.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        store=None,
        client: Optional[CompletionClient] = None,
        analyzer: Optional[ToolDecisionAnalyzer] = None,
        planner: Optional[OrchestrationPlanner] = None,
        engine: Optional[ToolExecutionEngine] = None,
        forced: Optional[ForcedExecutionController] = None,
        synthesizer: Optional[ResultSynthesizer] = None,
        reflector: Optional[ContinuationController] = None,
        knowledge_gate: Optional[KnowledgePersistenceGate] = None,
    ):
        self.registry = registry
        self.store = store
        self.client = client or get_completion_client()
        self.analyzer = analyzer or ToolDecisionAnalyzer()
        self.planner = planner or OrchestrationPlanner()
        self.engine = engine or ToolExecutionEngine()
        self.forced = forced or ForcedExecutionController(self.engine)
        self.synthesizer = synthesizer or ResultSynthesizer(self.client)
        self.reflector = reflector or ContinuationController()
        self.knowledge_gate = knowledge_gate
        if self.knowledge_gate is None and store is not None and Config.agent.PERSIST_INSIGHTS:
            self.knowledge_gate = KnowledgePersistenceGate(store)

        self._background: Set[asyncio.Task] = set()
        self.workflow = self._build_graph()
        logger.info(f"AgentBrain initialized | tools: {registry.tool_ids()}")

    def _build_graph(self):
        builder = StateGraph(AgentState)

        builder.add_node("analyze", self.analyze_request)
        builder.add_node("respond", self.generate_response)
        builder.add_node("execute", self.execute_tools)
        builder.add_node("force", self.force_tools)
        builder.add_node("synthesize", self.synthesize_results)
        builder.add_node("finalize", self.finalize_iteration)
        builder.add_node("reflect", self.reflect)

        builder.set_entry_point("analyze")
        builder.add_conditional_edges(
            "analyze",
            self.decide_entry,
            {
                "orchestrate": "execute",
                "respond": "respond"
            }
        )
        builder.add_conditional_edges(
            "respond",
            self.decide_after_response,
            {
                "execute": "execute",
                "force": "force",
                "finalize": "finalize"
            }
        )
        builder.add_edge("execute", "synthesize")
        builder.add_edge("synthesize", "finalize")
        builder.add_edge("force", "finalize")
        builder.add_edge("finalize", "reflect")
        builder.add_conditional_edges(
            "reflect",
            lambda state: "continue" if state.get("continue_loop") else "stop",
            {
                "continue": "analyze",
                "stop": END
            }
        )

        return builder.compile()

    # --- Node Logic ---

    async def analyze_request(self, state: AgentState) -> Dict:
        tid = telemetry.start_activity("Analyzer", "Classifying tool requirement")
        available = self.registry.tool_ids()
        decision = self.analyzer.analyze(state["message"], available)
        plan = self.planner.plan(decision, state["message"], available)
        telemetry.end_activity(tid, {
            "detected_type": decision.detected_type.value,
            "should_use_tools": decision.should_use_tools,
            "steps": len(plan)
        })
        return {
            "decision": decision,
            "plan": plan,
            "assistant": None,
            "iteration_tools": [],
            "response": "",
            "completion_error": None,
            "continue_loop": False
        }

    def decide_entry(self, state: AgentState) -> Literal["orchestrate", "respond"]:
        """Multi-step plans run directly; everything else goes through the model first"""
        if len(state.get("plan") or []) > 1:
            logger.info(f"Brain: orchestrating {len(state['plan'])} planned steps")
            return "orchestrate"
        return "respond"

    def _conversation(self, state: AgentState) -> List[Dict[str, Any]]:
        loop_state = state["loop_state"]
        guidance = (LOOP_GUIDANCE_INITIAL if loop_state.iteration == 0
                    else LOOP_GUIDANCE_ITERATION.format(iteration=loop_state.iteration))
        messages = [{
            "role": "system",
            "content": AGENT_SYSTEM_PROMPT.format(
                tool_descriptions=self.registry.describe_for_prompt(),
                loop_guidance=guidance
            )
        }]
        for entry in (state.get("history") or [])[-Config.agent.HISTORY_WINDOW:]:
            if entry.get("role") in ("user", "assistant") and entry.get("content"):
                messages.append({"role": entry["role"], "content": entry["content"]})
        if loop_state.iteration > 0:
            messages.append({"role": "user", "content": state["original_message"]})
            for record in loop_state.history:
                messages.append({"role": "assistant", "content": record.response})
        messages.append({"role": "user", "content": state["message"]})
        return messages

    async def generate_response(self, state: AgentState) -> Dict:
        tid = telemetry.start_activity("Responder", "Requesting model response")
        decision = state["decision"]
        kwargs: Dict[str, Any] = {"model_settings": state.get("model_settings")}
        if decision.should_use_tools:
            kwargs["tools"] = self.registry.to_function_definitions()
            kwargs["tool_choice"] = "auto"

        try:
            raw = await self.client.achat(self._conversation(state), **kwargs)
        except CompletionServiceError as e:
            logger.error(f"Completion call failed: {e}")
            telemetry.end_activity(tid, {"error": str(e)})
            return {"assistant": None, "completion_error": str(e)}

        assistant = extract_assistant_message(raw)
        telemetry.end_activity(tid, {"tool_calls": len(assistant.tool_calls) if assistant else 0})
        return {"assistant": assistant}

    def decide_after_response(self, state: AgentState) -> Literal["execute", "force", "finalize"]:
        assistant = state.get("assistant")
        if assistant and assistant.tool_calls:
            return "execute"
        if state["decision"].should_use_tools:
            logger.info("Brain: tools expected but none requested, forcing execution")
            return "force"
        return "finalize"

    async def execute_tools(self, state: AgentState) -> Dict:
        tid = telemetry.start_activity("Executor", "Running tools")
        assistant = state.get("assistant")
        if assistant and assistant.tool_calls:
            outcome = await self.engine.execute(assistant.tool_calls, self.registry, state["caller"])
        else:
            outcome = await self.engine.execute_plan(state["plan"], self.registry, state["caller"])

        trace = state["trace"]
        trace.tools_used.extend(outcome.tools_used)
        trace.tool_progress.extend(outcome.tool_progress)
        telemetry.end_activity(tid, {
            "tools": [t.name for t in outcome.tools_used],
            "failed": sum(1 for t in outcome.tools_used if not t.success)
        })
        return {"iteration_tools": outcome.tools_used}

    async def force_tools(self, state: AgentState) -> Dict:
        tid = telemetry.start_activity("ForcedExecutor", "Executing required tools")
        forced = await self.forced.maybe_force(
            state["decision"],
            state["message"],
            state["caller"],
            self.registry,
            tool_calls_made=0,
            repo_context=state.get("repo_context")
        )
        if forced is None:
            telemetry.end_activity(tid, {"forced": False})
            assistant = state.get("assistant")
            return {"response": assistant.content if assistant else ""}

        trace = state["trace"]
        trace.tools_used.extend(forced.tools_used)
        trace.tool_progress.extend(forced.tool_progress)
        telemetry.end_activity(tid, {"forced": True, "tools": [t.name for t in forced.tools_used]})
        return {"response": forced.final_response, "iteration_tools": forced.tools_used}

    async def synthesize_results(self, state: AgentState) -> Dict:
        tid = telemetry.start_activity("Synthesizer", "Merging tool results")
        answer = await self.synthesizer.synthesize(
            state["message"],
            state["iteration_tools"],
            model_settings=state.get("model_settings")
        )
        telemetry.end_activity(tid, {"chars": len(answer)})
        return {"response": answer}

    async def finalize_iteration(self, state: AgentState) -> Dict:
        response = state.get("response") or ""
        if not response:
            assistant = state.get("assistant")
            if assistant and assistant.content:
                response = strip_thinking(assistant.content)
            elif state.get("completion_error"):
                response = ("I couldn't reach the language model to answer this request. "
                            f"Cause: {state['completion_error']}")
            else:
                response = NO_RESPONSE_TEXT

        loop_state = state["loop_state"].record(IterationRecord(
            iteration=state["loop_state"].iteration,
            input=state["message"],
            response=response,
            tools_used=state.get("iteration_tools") or []
        ))
        state["trace"].responses.append(response)
        return {"response": response, "loop_state": loop_state}

    async def reflect(self, state: AgentState) -> Dict:
        loop_state = state["loop_state"]
        if state.get("completion_error"):
            return {"reflection": ReflectionDecision(reasoning="Completion service unavailable"), "continue_loop": False}

        tid = telemetry.start_activity("Reflector", f"Evaluating answer (pass {loop_state.iteration})")
        decision = await self.reflector.evaluate(
            state["response"],
            state.get("iteration_tools") or [],
            loop_state.iteration,
            state["original_message"],
            state.get("loop_enabled", True)
        )
        proceed = should_continue(loop_state, decision)
        telemetry.end_activity(tid, {"continue": proceed, "reasoning": truncate_text(decision.reasoning or "", 200)})

        if not proceed:
            return {"reflection": decision, "continue_loop": False}
        logger.info(f"Brain: continuing with '{truncate_text(decision.next_action, 100)}'")
        return {
            "reflection": decision,
            "continue_loop": True,
            "message": decision.next_action,
            "loop_state": loop_state.next()
        }

    # --- Caller Surface ---

    async def handle_query(
        self,
        message: str,
        history: Optional[List[Dict[str, Any]]] = None,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        model_settings: Optional[ModelSettings] = None,
        loop_enabled: bool = True
    ) -> AgentResponse:
        """
        Answer one user message. Never raises: unexpected failures come back as
        success=False with the real cause; the request deadline falls back to a
        deterministic answer built from the tool results gathered so far.
        """
        if not message or not message.strip():
            return AgentResponse(success=False, message="Message is required", error="Message is required")

        session_id = session_id or new_id()
        caller = CallerContext(user_id=user_id, session_id=session_id)
        history = history or []
        trace = RequestTrace()
        await self._store_message(session_id, "user", message, user_id=user_id)

        initial_state: AgentState = {
            "original_message": message,
            "message": message,
            "history": history,
            "caller": caller,
            "model_settings": model_settings,
            "loop_enabled": loop_enabled and Config.agent.LOOPS_ENABLED,
            "repo_context": repo_from_history(history),
            "decision": None,
            "plan": [],
            "assistant": None,
            "iteration_tools": [],
            "response": "",
            "loop_state": LoopState(max_iterations=self.reflector.max_loops),
            "reflection": None,
            "continue_loop": False,
            "completion_error": None,
            "trace": trace
        }

        try:
            final_state = await asyncio.wait_for(
                self.workflow.ainvoke(initial_state, config={"recursion_limit": GRAPH_RECURSION_LIMIT}),
                timeout=Config.agent.REQUEST_TIMEOUT
            )
        except asyncio.TimeoutError:
            logger.warning(f"Request deadline ({Config.agent.REQUEST_TIMEOUT}s) reached, using fallback answer")
            tools = list(trace.tools_used)
            if trace.responses:
                answer = "\n\n".join(trace.responses)
            else:
                answer = generate_fallback_response(
                    message, tools, extract_knowledge_results(tools), analyze_tool_execution_quality(tools)
                )
            response = AgentResponse(
                success=True,
                message=answer,
                tools_used=tools,
                tool_progress=list(trace.tool_progress),
                self_reflection=generate_self_reflection(trace.tool_progress),
                session_id=session_id,
                loop_iterations=len(trace.responses)
            )
            await self._store_message(session_id, "assistant", answer, user_id=user_id,
                                      tools_used=tools, self_reflection=response.self_reflection)
            return response
        except Exception as e:
            logger.exception(f"Agent request failed: {e}")
            return AgentResponse(
                success=False,
                message=f"I encountered an error while processing your request: {e}",
                tools_used=list(trace.tools_used),
                tool_progress=list(trace.tool_progress),
                session_id=session_id,
                error=str(e)
            )

        responses = trace.responses or [final_state.get("response") or NO_RESPONSE_TEXT]
        final_message = "\n\n".join(responses)
        loop_state: LoopState = final_state["loop_state"]
        decision: ToolDecision = final_state.get("decision")
        self_reflection = generate_self_reflection(trace.tool_progress)

        result = AgentResponse(
            success=final_state.get("completion_error") is None or bool(trace.tools_used),
            message=final_message,
            tools_used=list(trace.tools_used),
            tool_progress=list(trace.tool_progress),
            self_reflection=self_reflection,
            reflection_decision=final_state.get("reflection"),
            session_id=session_id,
            decision=decision,
            loop_iterations=len(loop_state.history),
            error=final_state.get("completion_error")
        )

        await self._store_message(
            session_id, "assistant", final_message, user_id=user_id,
            tools_used=result.tools_used, self_reflection=self_reflection,
            loop_iteration=loop_state.iteration,
            ai_reasoning=result.reflection_decision.reasoning if result.reflection_decision else None
        )

        if self.knowledge_gate is not None and user_id and result.success:
            self._schedule_persistence(
                message, final_message, loop_state.history, result.tools_used, user_id,
                decision.complexity if decision else None
            )
        return result

    # --- Side Effects ---

    async def _store_message(
        self,
        session_id: str,
        role: str,
        content: str,
        user_id: Optional[str] = None,
        tools_used: Optional[List[ToolResult]] = None,
        self_reflection: Optional[str] = None,
        loop_iteration: int = 0,
        ai_reasoning: Optional[str] = None
    ):
        if self.store is None:
            return
        try:
            await asyncio.to_thread(
                self.store.add_conversation_message,
                session_id, role, content,
                user_id=user_id,
                tools_used=[t.model_dump(mode="json") for t in tools_used] if tools_used else None,
                self_reflection=self_reflection,
                loop_iteration=loop_iteration,
                ai_reasoning=ai_reasoning
            )
        except PersistenceError as e:
            logger.error(f"Persistence Error ({role}): {e}")

    def _schedule_persistence(
        self,
        message: str,
        final_response: str,
        iterations: List[IterationRecord],
        tool_results: List[ToolResult],
        user_id: str,
        complexity: Optional[Complexity]
    ):
        task = asyncio.create_task(
            self._persist_knowledge(message, final_response, iterations, tool_results, user_id, complexity)
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _persist_knowledge(self, message, final_response, iterations, tool_results, user_id, complexity):
        tid = telemetry.start_activity("KnowledgeGate", "Evaluating insight")
        try:
            outcome = await self.knowledge_gate.maybe_persist(
                message, final_response, iterations, tool_results, user_id, complexity
            )
        except Exception as e:
            logger.error(f"Knowledge persistence task failed: {e}")
            telemetry.end_activity(tid, {"error": str(e)})
            return None
        telemetry.end_activity(tid, {"persisted": outcome.persisted, "reason": outcome.reason})
        return outcome

    async def drain_background_tasks(self):
        """Wait for pending persistence tasks (shutdown and tests)"""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
