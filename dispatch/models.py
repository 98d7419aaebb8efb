"""Data models for the ticket dispatch & escalation engine."""

import time
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class AgentLevel(str, Enum):
    """Seniority tier of an agent (permission scope and escalation routing)."""

    AGENT = "agent"
    SENIOR_AGENT = "senior-agent"
    SUPERVISOR = "supervisor"
    MANAGEMENT = "management"


class EscalationTier(str, Enum):
    """Tier a ticket currently sits at; tickets start at AGENT and only move up."""

    AGENT = "agent"
    SENIOR_AGENT = "senior-agent"
    SUPERVISOR = "supervisor"


class Priority(str, Enum):
    CRITICAL = "Critical"
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"


class TicketStatus(str, Enum):
    OPEN = "Open"
    IN_PROGRESS = "In Progress"
    RESOLVED = "Resolved"
    CLOSED = "Closed"


ACTIVE_STATUSES = frozenset({TicketStatus.OPEN, TicketStatus.IN_PROGRESS})


class ClientFeedback(str, Enum):
    NONE = "none"
    SATISFIED = "satisfied"
    DISSATISFIED = "dissatisfied"
    NO_RESPONSE = "no_response"


class UserRole(str, Enum):
    SUPER_ADMIN = "super-admin"
    TENANT_ADMIN = "tenant-admin"
    AGENT = "agent"


# --- Agents ---


class Agent(BaseModel):
    """An agent belonging to one tenant. Counters are written only by the load tracker."""

    agent_id: str = Field(..., min_length=1, description="Unique agent identifier")
    tenant_id: str = Field(..., min_length=1, description="Owning tenant")
    display_name: str = Field(default="", description="Display name")
    level: AgentLevel = Field(default=AgentLevel.AGENT)
    status: str = Field(default="online", description="online | away | offline (informational)")
    open_ticket_count: int = Field(default=0, ge=0)
    resolved_count: int = Field(default=0, ge=0)
    joined_at: float = Field(default_factory=time.time, description="Unix timestamp")


class AgentPermissions(BaseModel):
    """Capability record for one seniority tier."""

    can_view_tickets: bool = False
    can_work_on_tickets: bool = False
    can_close_tickets: bool = False
    can_assign_tickets: bool = False
    can_transfer_tickets: bool = False
    can_force_close: bool = False
    can_track_agents: bool = False
    can_manage_agents: bool = False


class Requester(BaseModel):
    """Caller of a gated operation, as resolved by the surrounding auth layer."""

    user_id: str = Field(default="", description="Acting user (agent_id for agents)")
    role: UserRole = Field(default=UserRole.AGENT)
    level: Optional[AgentLevel] = Field(None, description="Seniority tier when role is agent")


# --- Tickets ---


class Ticket(BaseModel):
    """A support ticket as seen by the dispatch engine."""

    ticket_id: str
    tenant_id: str
    title: str = ""
    priority: Priority = Priority.MEDIUM
    status: TicketStatus = TicketStatus.OPEN
    channel: str = "web"
    customer_ref: Optional[str] = None
    assigned_agent_id: Optional[str] = None
    assigned_at: Optional[float] = None
    escalation_tier: EscalationTier = EscalationTier.AGENT
    escalation_timestamp: float = Field(default_factory=time.time, description="When the current tier was entered")
    resolved_by: Optional[str] = None
    resolved_at: Optional[float] = None
    resolved_agent_id: Optional[str] = Field(None, description="Agent credited with the resolution")
    client_feedback: ClientFeedback = ClientFeedback.NONE
    feedback_note: Optional[str] = None
    feedback_token_hash: Optional[str] = Field(None, description="sha256 of the single-use token")
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)
    version: int = Field(default=0, ge=0, description="Incremented on every mutation")

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES


class TicketView(BaseModel):
    """Public projection of a ticket (never exposes the feedback token hash)."""

    ticket_id: str
    tenant_id: str
    title: str
    priority: Priority
    status: TicketStatus
    channel: str
    customer_ref: Optional[str] = None
    assigned_agent_id: Optional[str] = None
    assigned_at: Optional[float] = None
    escalation_tier: EscalationTier
    escalation_timestamp: float
    resolved_by: Optional[str] = None
    resolved_at: Optional[float] = None
    resolved_agent_id: Optional[str] = None
    client_feedback: ClientFeedback
    feedback_note: Optional[str] = None
    created_at: float
    updated_at: float
    version: int

    @classmethod
    def from_ticket(cls, ticket: Ticket) -> "TicketView":
        return cls.model_validate(ticket.model_dump(exclude={"feedback_token_hash"}))


class TicketCreateEvent(BaseModel):
    """Ticket-creation event supplied by the intake collaborator."""

    tenant_id: str = Field(..., min_length=1)
    priority: Priority = Priority.MEDIUM
    channel: str = Field(default="web")
    customer_ref: Optional[str] = Field(None, description="Opaque customer reference")
    title: str = Field(default="")
    ticket_id: Optional[str] = Field(None, description="Optional caller-supplied id; generated when omitted")


class AssignmentDecision(BaseModel):
    """Outcome of automatic assignment. assigned_agent_id None means Unassigned."""

    ticket_id: str
    assigned_agent_id: Optional[str] = None
    unassigned_reason: Optional[str] = None


class AssignRequest(BaseModel):
    target_agent_id: str = Field(..., min_length=1)
    requester: Requester


class CloseRequest(BaseModel):
    requester: Requester


class ResolveRequest(BaseModel):
    resolved_by: str = Field(..., min_length=1, description="User marking the ticket resolved")


class ResolveResult(BaseModel):
    """Resolution outcome. The clear feedback token is only ever returned here."""

    ticket: TicketView
    feedback_token: str


class FeedbackSubmission(BaseModel):
    # verdict stays a plain string so unknown values surface as InvalidInput from the engine
    feedback_token: str = Field(default="")
    verdict: str
    note: Optional[str] = None


class FeedbackResult(BaseModel):
    ticket_id: str
    status: TicketStatus


class EscalationSummary(BaseModel):
    """Counts from one scheduler run."""

    escalated_to_senior: int = 0
    escalated_to_supervisor: int = 0
    failed: int = Field(default=0, description="Tickets whose escalation raised; logged, not fatal")
    skipped: bool = Field(default=False, description="True if another run held the single-flight lock")
