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
FastAPI Main Application for Ultima_Agent
REST API backend for the tool-using conversational agent.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional
from contextlib import asynccontextmanager


class EndpointFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not record.args or len(record.args) < 3:
            return True
        # Mute health polling
        return not str(record.args[2]).startswith("/health")


logging.getLogger("uvicorn.access").addFilter(EndpointFilter())

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from ..core.config import Config
from ..core.exceptions import PersistenceError
from ..core.models import ModelSettings, ReflectionDecision, ToolDecision, ToolProgress, ToolResult
from ..core.telemetry import telemetry
from ..core.utils import logger
from ..data.database import get_database, init_database
from ..tools.registry import build_default_registry
from ..agents.agent_brain import AgentBrain


# =============================================================================
# PYDANTIC MODELS
# =============================================================================

class HistoryMessage(BaseModel):
    role: str
    content: str


class QueryRequest(BaseModel):
    """Request model for query endpoint"""
    message: str
    history: List[HistoryMessage] = Field(default_factory=list)
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    model_settings: Optional[ModelSettings] = None
    loop_enabled: bool = True


class QueryResponse(BaseModel):
    """Response model for query endpoint"""
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


class DeprecateRequest(BaseModel):
    user_id: str
    reason: str = "Superseded by newer knowledge"


class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    ready: bool
    db_connected: bool = False
    tools: List[str] = Field(default_factory=list)
    agents: Dict[str, Any] = Field(default_factory=dict)
    startup_error: Optional[str] = None


# =============================================================================
# APPLICATION STATE
# =============================================================================

class AppState:
    """Application state container"""
    brain: Optional[Any] = None            # AgentBrain
    db: Optional[Any] = None               # DatabaseManager
    registry: Optional[Any] = None         # ToolRegistry
    ready: bool = False
    db_connected: bool = False
    startup_error: Optional[str] = None


app_state = AppState()


# =============================================================================
# LIFESPAN MANAGEMENT
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown"""
    logger.info("🚀 Starting Ultima_Agent API...")
    Config.log_summary()

    try:
        logger.info("[1/2] Initializing persistence store...")
        if init_database():
            app_state.db = get_database()
            app_state.db_connected = True
            logger.info("✅ Persistence store ready.")
        else:
            logger.error("❌ Failed to initialize persistence store.")
    except PersistenceError as e:
        logger.error(f"❌ Database Initialization Error: {e}")

    try:
        logger.info("[2/2] Initializing tool registry and agent...")
        app_state.registry = build_default_registry(app_state.db)
        app_state.brain = AgentBrain(app_state.registry, store=app_state.db)
        app_state.ready = True
        logger.info("🧠 Ultima_Agent ready.")
    except Exception as e:
        logger.exception(f"❌ Failed to initialize agent: {e}")
        app_state.ready = False
        app_state.startup_error = f"Agent Initialization Failed: {e}"

    yield

    logger.info("Shutting down Ultima_Agent API...")
    if app_state.brain:
        await app_state.brain.drain_background_tasks()
    if app_state.db:
        app_state.db.disconnect()


# =============================================================================
# FASTAPI APPLICATION
# =============================================================================

app = FastAPI(
    title="Ultima_Agent API",
    description="Tool-using conversational agent with a bounded self-improvement loop",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# ENDPOINTS
# =============================================================================

@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint"""
    return HealthResponse(
        status="ok" if app_state.brain else "initializing",
        ready=app_state.ready,
        db_connected=app_state.db_connected,
        tools=app_state.registry.tool_ids() if app_state.registry else [],
        agents=telemetry.get_active_status(),
        startup_error=app_state.startup_error
    )


@app.get("/tools")
async def list_tools():
    if not app_state.registry:
        raise HTTPException(status_code=503, detail="Tool registry not initialized")
    return {"tools": [d.model_dump() for d in app_state.registry.list_tools()]}


@app.post("/query", response_model=QueryResponse)
async def process_query(request: QueryRequest):
    """
    Ultima_Agent entry point.
    Routes the message through the LangGraph decision/tool/reflection loop.
    """
    if not app_state.brain:
        raise HTTPException(status_code=503, detail="Ultima_Agent not initialized")

    result = await app_state.brain.handle_query(
        request.message,
        history=[h.model_dump() for h in request.history],
        user_id=request.user_id,
        session_id=request.session_id,
        model_settings=request.model_settings,
        loop_enabled=request.loop_enabled
    )
    return QueryResponse(**result.model_dump())


@app.get("/sessions/{session_id}/messages")
async def get_session_messages(session_id: str, limit: Optional[int] = None):
    if not app_state.db:
        raise HTTPException(status_code=503, detail="Database not connected")
    try:
        messages = await asyncio.to_thread(app_state.db.get_session_messages, session_id, limit)
    except PersistenceError as e:
        return {"success": False, "error": str(e), "messages": []}
    return {"success": True, "session_id": session_id, "messages": messages}


@app.post("/knowledge/{node_id}/deprecate")
async def deprecate_knowledge(node_id: str, request: DeprecateRequest):
    if not app_state.brain or not app_state.brain.knowledge_gate:
        raise HTTPException(status_code=503, detail="Knowledge store not available")
    deprecated = await app_state.brain.knowledge_gate.deprecate_node(node_id, request.user_id, request.reason)
    if not deprecated:
        return {"success": False, "error": f"Knowledge node '{node_id}' not found for this user"}
    return {"success": True, "node_id": node_id, "validation_status": "deprecated"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("ultima_agent.api.main:app", host="0.0.0.0", port=8000)
