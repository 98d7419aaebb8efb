"""REST API for the ticket dispatch & escalation engine."""

import logging
from contextlib import asynccontextmanager
from typing import Optional
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from dispatch.activity import get_recent as activity_get_recent, start_redis_subscriber, ticket_history
from dispatch.config import REDIS_URL
from dispatch.errors import DispatchError, NotFound
from dispatch.models import (
    Agent,
    AgentPermissions,
    AssignmentDecision,
    AssignRequest,
    CloseRequest,
    EscalationSummary,
    FeedbackResult,
    FeedbackSubmission,
    Priority,
    Requester,
    ResolveRequest,
    ResolveResult,
    TicketCreateEvent,
    TicketStatus,
    TicketView,
)
from dispatch.permissions import permissions_for, permissions_for_requester
from dispatch.services import lifecycle, load_tracker
from dispatch.services.agent_registry import (
    list_agents,
    register_agent,
    remove_agent,
    require_agent,
    set_agent_status,
)
from dispatch.services.escalation import run_escalation

logger = logging.getLogger(__name__)

_arq_pool = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _arq_pool
    _arq_pool = None
    try:
        from arq import create_pool
        from arq.connections import RedisSettings
        _arq_pool = await create_pool(RedisSettings.from_dsn(REDIS_URL))
    except Exception as e:
        logger.warning("Redis/ARQ pool unavailable: %s. POST /tickets/enqueue will return 503.", e)
    start_redis_subscriber()
    try:
        yield
    finally:
        if _arq_pool is not None:
            await _arq_pool.close()
            _arq_pool = None


app = FastAPI(
    title="Ticket Dispatch Engine",
    description="Automatic assignment, workload counters and time-based escalation for support tickets.",
    version="0.3.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["Content-Type", "Authorization"],
)


@app.exception_handler(DispatchError)
async def dispatch_error_handler(request: Request, exc: DispatchError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


# --- Tickets ---


@app.post("/tickets", status_code=201, response_model=AssignmentDecision)
def create_ticket_endpoint(event: TicketCreateEvent) -> AssignmentDecision:
    """Ticket-creation event: create the ticket and return the assignment decision."""
    _, decision = lifecycle.create_ticket(event)
    return decision


class TicketEventAccepted(BaseModel):
    """Response for 202 Accepted: event queued for the worker."""

    job_id: str = Field(..., description="Unique job id for this processing task")
    message: str = Field(default="Accepted for processing")


@app.post("/tickets/enqueue", status_code=202, response_model=TicketEventAccepted)
async def enqueue_ticket_event(event: TicketCreateEvent) -> TicketEventAccepted:
    """Queue a ticket-creation event for the ARQ worker instead of assigning inline."""
    pool = _arq_pool
    if pool is None:
        raise HTTPException(status_code=503, detail="Worker pool not ready")
    job = await pool.enqueue_job("dispatch_ticket", event.model_dump())
    return TicketEventAccepted(job_id=job.job_id if job else str(uuid4()))


@app.get("/tickets", response_model=list[TicketView])
def list_tickets_endpoint(
    tenant_id: str,
    status: Optional[TicketStatus] = None,
    priority: Optional[Priority] = None,
    agent_id: Optional[str] = None,
) -> list[TicketView]:
    """A tenant's tickets; `agent_id` narrows to one agent's queue."""
    tickets = lifecycle.list_tickets(tenant_id, status, priority=priority, agent_id=agent_id)
    return [TicketView.from_ticket(t) for t in tickets]


@app.get("/tickets/{ticket_id}", response_model=TicketView)
def get_ticket_endpoint(ticket_id: str) -> TicketView:
    return TicketView.from_ticket(lifecycle.require_ticket(ticket_id))


class ActorRequest(BaseModel):
    actor: str = Field(default="", description="User performing the change (audit only)")


@app.post("/tickets/{ticket_id}/start", response_model=TicketView)
def start_ticket(ticket_id: str, payload: Optional[ActorRequest] = None) -> TicketView:
    actor = (payload.actor if payload else "") or "System"
    return TicketView.from_ticket(lifecycle.start_progress(ticket_id, actor=actor))


@app.post("/tickets/{ticket_id}/resolve", response_model=ResolveResult)
def resolve_ticket(ticket_id: str, payload: ResolveRequest) -> ResolveResult:
    """Resolve and hand back the single-use feedback token (for the customer email)."""
    ticket, token = lifecycle.resolve(ticket_id, payload.resolved_by)
    return ResolveResult(ticket=TicketView.from_ticket(ticket), feedback_token=token)


@app.post("/tickets/{ticket_id}/close", response_model=TicketView)
def close_ticket(ticket_id: str, payload: CloseRequest) -> TicketView:
    return TicketView.from_ticket(lifecycle.close(ticket_id, payload.requester))


@app.post("/tickets/{ticket_id}/reopen", response_model=TicketView)
def reopen_ticket(ticket_id: str, payload: Optional[ActorRequest] = None) -> TicketView:
    actor = (payload.actor if payload else "") or "System"
    return TicketView.from_ticket(lifecycle.reopen(ticket_id, actor=actor))


@app.post("/tickets/{ticket_id}/assign", response_model=TicketView)
def assign_ticket(ticket_id: str, payload: AssignRequest) -> TicketView:
    """Manual assignment / transfer; bypasses the automatic selector."""
    return TicketView.from_ticket(lifecycle.assign(ticket_id, payload.target_agent_id, payload.requester))


@app.post("/tickets/{ticket_id}/feedback", response_model=FeedbackResult)
def submit_feedback(ticket_id: str, payload: FeedbackSubmission) -> FeedbackResult:
    """Unauthenticated customer endpoint; the feedback token is the credential."""
    ticket = lifecycle.submit_feedback(ticket_id, payload.feedback_token, payload.verdict, payload.note)
    return FeedbackResult(ticket_id=ticket.ticket_id, status=ticket.status)


@app.get("/tickets/{ticket_id}/activity")
def get_ticket_activity(ticket_id: str) -> dict:
    lifecycle.require_ticket(ticket_id)
    return {"ticket_id": ticket_id, "events": ticket_history(ticket_id)}


# --- Agents ---


@app.post("/agents", response_model=Agent)
def register_agent_endpoint(agent: Agent) -> Agent:
    """Register or update an agent (tier, status). Counters in the body are ignored."""
    lifecycle.check_id(agent.agent_id, "agent")
    return register_agent(agent)


@app.get("/agents", response_model=list[Agent])
def list_agents_endpoint(tenant_id: str) -> list[Agent]:
    """A tenant's agents in pool order, with current counters."""
    return list_agents(tenant_id)


@app.get("/agents/{agent_id}", response_model=Agent)
def get_agent_endpoint(agent_id: str) -> Agent:
    return require_agent(agent_id)


@app.delete("/agents/{agent_id}")
def delete_agent_endpoint(agent_id: str) -> dict:
    if not remove_agent(agent_id):
        raise NotFound(f"Agent {agent_id} not found")
    return {"status": "ok", "agent_id": agent_id}


class AgentStatusRequest(BaseModel):
    status: str = Field(..., description="online | away | offline")


@app.put("/agents/{agent_id}/status", response_model=Agent)
def set_agent_status_endpoint(agent_id: str, payload: AgentStatusRequest) -> Agent:
    return set_agent_status(agent_id, payload.status)


@app.get("/agents/{agent_id}/permissions", response_model=AgentPermissions)
def get_agent_permissions(agent_id: str) -> AgentPermissions:
    return permissions_for(require_agent(agent_id).level)


@app.post("/agents/loads/reconcile")
def reconcile_loads(tenant_id: str) -> dict:
    """Set each agent's open count to the number of its Open / In Progress tickets. Use to fix drift."""
    updated = load_tracker.reconcile(tenant_id)
    return {"status": "ok", "agents_updated": updated}


@app.post("/permissions/check", response_model=AgentPermissions)
def check_requester_permissions(requester: Requester) -> AgentPermissions:
    """Capabilities the surrounding auth layer should expect for a caller."""
    return permissions_for_requester(requester)


# --- Escalation & activity ---


@app.post("/escalation/run", response_model=EscalationSummary)
def run_escalation_endpoint() -> EscalationSummary:
    """Admin trigger for one escalation pass (the worker's cron runs the same thing)."""
    return run_escalation()


@app.get("/activity")
def get_activity(limit: int = 100) -> dict:
    """Return recent lifecycle and escalation events seen by this process."""
    if limit < 1 or limit > 200:
        limit = 100
    return {"events": activity_get_recent(limit=limit)}


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}
