"""
Agent Runtime API — FastAPI endpoints.

Exposes one running agent for:
- Health and status inspection
- Lifecycle control (start, pause, resume, stop)
- History and memory queries
- Approval handling
- Manual event submission
"""

from typing import Any, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from agent_runtime.agent.orchestrator import Agent
from agent_runtime.errors import InvalidStateTransitionError
from agent_runtime.models.agent import AgentState
from agent_runtime.models.storage import ActionStatus, HistoryFilter


# --- Request Models ---

class EventRequest(BaseModel):
    payload: Any = None
    goal: Optional[Any] = None


class ApprovalResolveRequest(BaseModel):
    approve: bool


# --- Application Factory ---

def create_app(agent: Agent) -> FastAPI:
    """Create the monitoring and control API for `agent`."""

    app = FastAPI(
        title="Agent Runtime API",
        description="Monitoring and control for an autonomous agent",
        version="0.1.0",
    )
    app.state.agent = agent

    # === HEALTH / STATUS ===

    @app.get("/health")
    def health():
        return {"status": "ok", "state": agent.state.value}

    @app.get("/agent/status")
    def get_status():
        return agent.status()

    # === LIFECYCLE ===

    @app.post("/agent/start")
    async def start_agent():
        try:
            await agent.start()
        except InvalidStateTransitionError as e:
            raise HTTPException(409, str(e))
        return agent.status()

    @app.post("/agent/pause")
    async def pause_agent():
        try:
            await agent.pause()
        except InvalidStateTransitionError as e:
            raise HTTPException(409, str(e))
        return agent.status()

    @app.post("/agent/resume")
    async def resume_agent():
        try:
            await agent.resume()
        except InvalidStateTransitionError as e:
            raise HTTPException(409, str(e))
        return agent.status()

    @app.post("/agent/stop")
    async def stop_agent():
        try:
            await agent.stop()
        except InvalidStateTransitionError as e:
            raise HTTPException(409, str(e))
        return agent.status()

    # === HISTORY / MEMORY ===

    @app.get("/agent/history")
    def get_history(status: Optional[ActionStatus] = None, limit: Optional[int] = None):
        """Events and actions, most recent `limit` of each."""
        history = agent.history(HistoryFilter(status=status, limit=limit))
        return history.model_dump(mode="json")

    @app.get("/agent/memory/summary")
    def get_memory_summary():
        summary = agent.memory.summarize()
        return dict(summary.model_dump(mode="json"), text=summary.render())

    # === APPROVALS ===

    @app.get("/agent/approvals")
    def get_approvals():
        return [a.model_dump(mode="json") for a in agent.pending_approvals]

    @app.post("/agent/approvals/{approval_id}/resolve")
    async def resolve_approval(approval_id: str, req: ApprovalResolveRequest):
        if not any(a.id == approval_id for a in agent.pending_approvals):
            raise HTTPException(404, "Approval not found or already resolved")
        result = await agent.resolve_approval(approval_id, req.approve)
        return {
            "approval_id": approval_id,
            "approved": req.approve,
            "result": result.model_dump(mode="json") if result else None,
        }

    # === EVENTS ===

    @app.post("/agent/events")
    async def submit_event(req: EventRequest):
        """Run the pipeline for a manually supplied event."""
        if agent.state != AgentState.ACTIVE:
            raise HTTPException(409, f"Agent is {agent.state.value}")
        outcome = await agent.process_event(req.payload, goal=req.goal, trigger_id="api")
        return outcome.model_dump(mode="json")

    return app
