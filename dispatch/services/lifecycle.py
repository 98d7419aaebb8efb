"""
Ticket lifecycle: status state machine, resolution bookkeeping, manual
assignment and the client feedback flow.

    Open -> In Progress -> Resolved -> Closed
    Open -> Resolved
    Resolved -> In Progress      (reopen, or dissatisfied feedback)
    Closed -> In Progress        (reopen)

Every mutation goes through _mutate(): the ticket is re-read under WATCH, the
change is planned against that fresh copy, and the ticket write, index
updates and counter deltas commit in one MULTI/EXEC. A concurrent writer
aborts the EXEC and the plan is re-run, so at most one mutation per ticket
ever lands on a given version.

Counter rule: a ticket contributes one unit to its assigned agent's open
count exactly while it is Open or In Progress.
"""

import hashlib
import hmac
import logging
import re
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from dispatch import activity
from dispatch.errors import InvalidInput, InvalidTransition, NotFound, PermissionDenied, Unauthorized
from dispatch.models import (
    ACTIVE_STATUSES,
    AgentLevel,
    AssignmentDecision,
    ClientFeedback,
    EscalationTier,
    Priority,
    Requester,
    Ticket,
    TicketCreateEvent,
    TicketStatus,
)
from dispatch.permissions import permissions_for_requester, require
from dispatch.services import load_tracker
from dispatch.services.agent_registry import agent_exists, require_agent
from dispatch.services.assignment import route_ticket
from dispatch.services.load_tracker import CounterDelta, open_delta, resolved_delta
from dispatch.store import (
    ACTIVE_TICKETS_ZSET,
    OPEN_FIELD,
    TICKET_SEQ_KEY,
    get_redis,
    tenant_tickets_key,
    ticket_key,
    transact,
)

logger = logging.getLogger(__name__)

TRANSITIONS: dict[TicketStatus, frozenset[TicketStatus]] = {
    TicketStatus.OPEN: frozenset({TicketStatus.IN_PROGRESS, TicketStatus.RESOLVED}),
    TicketStatus.IN_PROGRESS: frozenset({TicketStatus.RESOLVED}),
    TicketStatus.RESOLVED: frozenset({TicketStatus.CLOSED, TicketStatus.IN_PROGRESS}),
    TicketStatus.CLOSED: frozenset({TicketStatus.IN_PROGRESS}),
}

TIER_LABELS = {
    EscalationTier.AGENT: "Agent",
    EscalationTier.SENIOR_AGENT: "Senior Agent",
    EscalationTier.SUPERVISOR: "Supervisor",
}

_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:-]{0,127}$")


@dataclass
class _Change:
    ticket: Ticket
    deltas: list[CounterDelta] = field(default_factory=list)
    events: list[dict[str, Any]] = field(default_factory=list)


def check_id(value: str, what: str = "ticket") -> str:
    if not isinstance(value, str) or not _ID_RE.match(value):
        raise InvalidInput(f"Malformed {what} id {value!r}")
    return value


def _hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _check_transition(ticket: Ticket, target: TicketStatus) -> None:
    if target not in TRANSITIONS[ticket.status]:
        raise InvalidTransition(
            f"Ticket {ticket.ticket_id} cannot move from {ticket.status.value} to {target.value}"
        )


def _stage_indexes(pipe, ticket: Ticket) -> None:
    pipe.zadd(tenant_tickets_key(ticket.tenant_id), {ticket.ticket_id: ticket.created_at})
    if ticket.status in ACTIVE_STATUSES:
        pipe.zadd(ACTIVE_TICKETS_ZSET, {ticket.ticket_id: ticket.created_at})
    else:
        pipe.zrem(ACTIVE_TICKETS_ZSET, ticket.ticket_id)


def _mutate(
    ticket_id: str,
    plan: Callable[[Ticket, float], Optional[_Change]],
    now: Optional[float] = None,
) -> tuple[Ticket, bool]:
    """
    Apply `plan` to the stored ticket atomically. `plan` returns None for a
    no-op. Returns (ticket, applied). Audit events are recorded only after
    the commit so retries never duplicate them.
    """
    check_id(ticket_id)
    key = ticket_key(ticket_id)
    ts = now if now is not None else time.time()

    def _tx(pipe):
        raw = pipe.get(key)
        if raw is None:
            raise NotFound(f"Ticket {ticket_id} not found")
        current = Ticket.model_validate_json(raw)
        change = plan(current.model_copy(deep=True), ts)
        if change is None:
            pipe.multi()
            return current, None
        values = load_tracker.watch_counters(pipe, change.deltas)
        for d in change.deltas:
            if d.amount > 0 and d.field == OPEN_FIELD and values.get((d.agent_id, d.field)) is None:
                raise NotFound(f"Agent {d.agent_id} not found")
        updated = change.ticket
        updated.version = current.version + 1
        updated.updated_at = ts
        pipe.multi()
        pipe.set(key, updated.model_dump_json())
        _stage_indexes(pipe, updated)
        load_tracker.stage_deltas(pipe, change.deltas, values)
        return updated, change

    ticket, change = transact(_tx, key)
    if change is None:
        return ticket, False
    for event in change.events:
        activity.record(ticket.ticket_id, ts=ts, **event)
    return ticket, True


def _next_ticket_id() -> str:
    seq = int(get_redis().incr(TICKET_SEQ_KEY))
    return f"TKT-{seq + 999:04d}"


# --- Reads ---


def get_ticket(ticket_id: str) -> Optional[Ticket]:
    check_id(ticket_id)
    raw = get_redis().get(ticket_key(ticket_id))
    if not raw:
        return None
    return Ticket.model_validate_json(raw)


def require_ticket(ticket_id: str) -> Ticket:
    ticket = get_ticket(ticket_id)
    if ticket is None:
        raise NotFound(f"Ticket {ticket_id} not found")
    return ticket


def list_tickets(
    tenant_id: str,
    status: Optional[TicketStatus] = None,
    priority: Optional[Priority] = None,
    agent_id: Optional[str] = None,
) -> list[Ticket]:
    """A tenant's tickets, oldest first, optionally filtered by status, priority or assigned agent."""
    r = get_redis()
    ids = r.zrange(tenant_tickets_key(tenant_id), 0, -1)
    if not ids:
        return []
    pipe = r.pipeline()
    for tid in ids:
        pipe.get(ticket_key(tid))
    tickets = [Ticket.model_validate_json(raw) for raw in pipe.execute() if raw]
    if status is not None:
        tickets = [t for t in tickets if t.status == TicketStatus(status)]
    if priority is not None:
        tickets = [t for t in tickets if t.priority == Priority(priority)]
    if agent_id is not None:
        tickets = [t for t in tickets if t.assigned_agent_id == agent_id]
    return tickets


# --- Creation ---


def create_ticket(event: TicketCreateEvent, now: Optional[float] = None) -> tuple[Ticket, AssignmentDecision]:
    """
    Intake: the ticket enters Open at tier agent, the selector runs once, and
    the chosen agent (if any) takes one open unit in the same commit.
    A generated id that a caller-supplied ticket already holds is skipped.
    """
    ts = now if now is not None else time.time()
    if event.ticket_id:
        check_id(event.ticket_id)
    chosen = route_ticket(event.tenant_id, event.priority)
    if event.ticket_id:
        ticket = _insert_ticket(event.ticket_id, event, chosen, ts)
        if ticket is None:
            raise InvalidInput(f"Ticket {event.ticket_id} already exists")
    else:
        ticket = None
        while ticket is None:
            ticket = _insert_ticket(_next_ticket_id(), event, chosen, ts)

    ticket_id = ticket.ticket_id
    activity.record(ticket_id, "created", "Ticket created", ts=ts,
                    data={"priority": ticket.priority.value, "channel": ticket.channel})
    if ticket.assigned_agent_id:
        activity.record(ticket_id, "assigned", "Auto-assigned to agent", ts=ts,
                        data={"agent_id": ticket.assigned_agent_id})
        logger.info("Ticket %s (%s) assigned to %s.", ticket_id, ticket.priority.value, ticket.assigned_agent_id)
        return ticket, AssignmentDecision(ticket_id=ticket_id, assigned_agent_id=ticket.assigned_agent_id)
    reason = f"No eligible agent for {ticket.priority.value} priority"
    return ticket, AssignmentDecision(ticket_id=ticket_id, unassigned_reason=reason)


def _insert_ticket(
    ticket_id: str,
    event: TicketCreateEvent,
    chosen: Optional[str],
    ts: float,
) -> Optional[Ticket]:
    """Write a new ticket and its counter unit in one commit. None if the id is taken."""
    key = ticket_key(ticket_id)

    def _tx(pipe):
        if pipe.exists(key):
            pipe.multi()
            return None
        agent_id = chosen
        deltas = [open_delta(agent_id, 1)] if agent_id else []
        values = load_tracker.watch_counters(pipe, deltas)
        if agent_id and values.get((agent_id, OPEN_FIELD)) is None:
            logger.warning("Selected agent %s vanished before commit; ticket %s left unassigned.", agent_id, ticket_id)
            agent_id, deltas = None, []
        ticket = Ticket(
            ticket_id=ticket_id,
            tenant_id=event.tenant_id,
            title=event.title,
            priority=event.priority,
            channel=event.channel,
            customer_ref=event.customer_ref,
            status=TicketStatus.OPEN,
            assigned_agent_id=agent_id,
            assigned_at=ts if agent_id else None,
            escalation_tier=EscalationTier.AGENT,
            escalation_timestamp=ts,
            created_at=ts,
            updated_at=ts,
        )
        pipe.multi()
        pipe.set(key, ticket.model_dump_json())
        _stage_indexes(pipe, ticket)
        load_tracker.stage_deltas(pipe, deltas, values)
        return ticket

    ticket = transact(_tx, key)
    if ticket is None:
        logger.info("Ticket id %s is already taken.", ticket_id)
    return ticket


# --- Status transitions ---


def start_progress(ticket_id: str, actor: str = activity.SYSTEM_ACTOR, now: Optional[float] = None) -> Ticket:
    """Open -> In Progress. Ownership does not change, so counters do not either."""

    def plan(ticket: Ticket, ts: float) -> _Change:
        _check_transition(ticket, TicketStatus.IN_PROGRESS)
        ticket.status = TicketStatus.IN_PROGRESS
        return _Change(ticket, events=[_status_event(TicketStatus.IN_PROGRESS, actor)])

    return _mutate(ticket_id, plan, now)[0]


def resolve(ticket_id: str, resolved_by: str, now: Optional[float] = None) -> tuple[Ticket, str]:
    """
    Mark resolved and issue a single-use feedback token. Returns the ticket and
    the clear token; only its hash is stored.
    """
    token = secrets.token_urlsafe(24)

    def plan(ticket: Ticket, ts: float) -> _Change:
        _check_transition(ticket, TicketStatus.RESOLVED)
        deltas = []
        if ticket.assigned_agent_id:
            deltas = [open_delta(ticket.assigned_agent_id, -1), resolved_delta(ticket.assigned_agent_id, 1)]
        ticket.status = TicketStatus.RESOLVED
        ticket.resolved_by = resolved_by
        ticket.resolved_at = ts
        ticket.resolved_agent_id = ticket.assigned_agent_id
        ticket.client_feedback = ClientFeedback.NONE
        ticket.feedback_note = None
        ticket.feedback_token_hash = _hash_token(token)
        event = {"action": "resolved", "description": "Ticket resolved", "actor": resolved_by}
        return _Change(ticket, deltas, [event])

    ticket, _ = _mutate(ticket_id, plan, now)
    logger.info("Ticket %s resolved by %s.", ticket_id, resolved_by)
    return ticket, token


def close(ticket_id: str, requester: Requester, now: Optional[float] = None) -> Ticket:
    """
    Resolved -> Closed. Allowed once client feedback is recorded, or for a
    requester with the force-close capability.
    """

    def plan(ticket: Ticket, ts: float) -> _Change:
        perms = permissions_for_requester(requester)
        if ticket.client_feedback == ClientFeedback.NONE and not perms.can_force_close:
            raise PermissionDenied(
                f"Ticket {ticket.ticket_id} needs client feedback before it can be closed"
            )
        _check_transition(ticket, TicketStatus.CLOSED)
        ticket.status = TicketStatus.CLOSED
        ticket.feedback_token_hash = None
        return _Change(ticket, events=[_status_event(TicketStatus.CLOSED, requester.user_id or requester.role.value)])

    return _mutate(ticket_id, plan, now)[0]


def reopen(ticket_id: str, actor: str = activity.SYSTEM_ACTOR, now: Optional[float] = None) -> Ticket:
    """Resolved / Closed -> In Progress, undoing the resolution bookkeeping."""

    def plan(ticket: Ticket, ts: float) -> _Change:
        _check_transition(ticket, TicketStatus.IN_PROGRESS)
        if ticket.status not in (TicketStatus.RESOLVED, TicketStatus.CLOSED):
            raise InvalidTransition(f"Ticket {ticket.ticket_id} is not resolved or closed")
        deltas = _reopen_in_place(ticket)
        event = {"action": "reopened", "description": "Ticket reopened", "actor": actor}
        return _Change(ticket, deltas, [event])

    ticket, _ = _mutate(ticket_id, plan, now)
    logger.info("Ticket %s reopened.", ticket_id)
    return ticket


def _reopen_in_place(ticket: Ticket) -> list[CounterDelta]:
    """
    Shared by reopen and dissatisfied feedback: back to In Progress, resolution
    undone. The resolved unit comes off the agent credited at resolution, which
    differs from the current owner after a transfer of the resolved ticket.
    """
    deltas: list[CounterDelta] = []
    credited = ticket.resolved_agent_id
    if credited and agent_exists(credited):
        deltas.append(resolved_delta(credited, -1))
    if ticket.assigned_agent_id and not agent_exists(ticket.assigned_agent_id):
        logger.warning("Assigned agent %s of ticket %s is gone; reopening unassigned.",
                       ticket.assigned_agent_id, ticket.ticket_id)
        ticket.assigned_agent_id = None
        ticket.assigned_at = None
    if ticket.assigned_agent_id:
        deltas.append(open_delta(ticket.assigned_agent_id, 1))
    ticket.status = TicketStatus.IN_PROGRESS
    ticket.resolved_by = None
    ticket.resolved_at = None
    ticket.resolved_agent_id = None
    ticket.client_feedback = ClientFeedback.NONE
    ticket.feedback_note = None
    ticket.feedback_token_hash = None
    return deltas


def _status_event(status: TicketStatus, actor: str) -> dict[str, Any]:
    return {
        "action": "status_changed",
        "description": f"Status changed to {status.value}",
        "actor": actor,
        "data": {"status": status.value},
    }


# --- Manual assignment / transfer ---


def assign(ticket_id: str, target_agent_id: str, requester: Requester, now: Optional[float] = None) -> Ticket:
    """
    Manual assignment. Giving an unassigned ticket an owner needs the assign
    capability (senior-agent and up); moving it away from another agent is a
    transfer and needs the transfer capability (supervisor and up). Bypasses
    the selector, so any tier, including supervisors and management, can
    receive the ticket this way.
    """
    check_id(target_agent_id, "agent")
    target = require_agent(target_agent_id)

    def plan(ticket: Ticket, ts: float) -> Optional[_Change]:
        if target.tenant_id != ticket.tenant_id:
            raise NotFound(f"Agent {target_agent_id} not found in tenant {ticket.tenant_id}")
        if ticket.status == TicketStatus.CLOSED:
            raise InvalidTransition(f"Ticket {ticket.ticket_id} is closed")
        previous = ticket.assigned_agent_id
        if previous is None:
            require(requester, "can_assign_tickets",
                    "Only Senior Agents and above can assign tickets")
        else:
            require(requester, "can_transfer_tickets",
                    "Only Supervisors and above can transfer tickets between agents")
        if previous == target_agent_id:
            return None
        deltas: list[CounterDelta] = []
        if ticket.status in ACTIVE_STATUSES:
            if previous:
                deltas.append(open_delta(previous, -1))
            deltas.append(open_delta(target_agent_id, 1))
        ticket.assigned_agent_id = target_agent_id
        ticket.assigned_at = ts
        action = "transferred" if previous else "assigned"
        event = {
            "action": action,
            "description": f"{action.capitalize()} to agent",
            "actor": requester.user_id or requester.role.value,
            "data": {"agent_id": target_agent_id, "previous_agent_id": previous},
        }
        return _Change(ticket, deltas, [event])

    ticket, applied = _mutate(ticket_id, plan, now)
    if applied:
        logger.info("Ticket %s manually assigned to %s.", ticket_id, target_agent_id)
    return ticket


# --- Client feedback ---


def parse_verdict(verdict: str) -> ClientFeedback:
    try:
        value = ClientFeedback(verdict)
    except ValueError:
        raise InvalidInput(f"Unknown feedback verdict {verdict!r}") from None
    if value == ClientFeedback.NONE:
        raise InvalidInput("Feedback verdict must be satisfied, dissatisfied or no_response")
    return value


def submit_feedback(
    ticket_id: str,
    token: str,
    verdict: str,
    note: Optional[str] = None,
    now: Optional[float] = None,
) -> Ticket:
    """
    Customer verdict on a resolution, authenticated by the single-use token.
    satisfied / no_response close the ticket; dissatisfied sends it back to
    In Progress with feedback cleared so the cycle can repeat.
    """
    value = parse_verdict(verdict)

    def plan(ticket: Ticket, ts: float) -> _Change:
        stored = ticket.feedback_token_hash
        if not token or stored is None or not hmac.compare_digest(_hash_token(token), stored):
            raise Unauthorized("Invalid or expired feedback token")
        if ticket.status != TicketStatus.RESOLVED:
            raise InvalidTransition(f"Ticket {ticket.ticket_id} is not awaiting feedback")
        feedback_event = {
            "action": "feedback",
            "description": f"Client feedback: {value.value}",
            "actor": "Customer",
            "data": {"verdict": value.value, "note": note},
        }
        if value == ClientFeedback.DISSATISFIED:
            deltas = _reopen_in_place(ticket)
            return _Change(ticket, deltas, [feedback_event, _status_event(TicketStatus.IN_PROGRESS, "Customer")])
        ticket.client_feedback = value
        ticket.feedback_note = note
        ticket.status = TicketStatus.CLOSED
        ticket.feedback_token_hash = None
        return _Change(ticket, events=[feedback_event, _status_event(TicketStatus.CLOSED, "Customer")])

    ticket, _ = _mutate(ticket_id, plan, now)
    logger.info("Ticket %s feedback %s -> %s.", ticket_id, value.value, ticket.status.value)
    return ticket


# --- Escalation ---

_PREVIOUS_TIER = {
    EscalationTier.SENIOR_AGENT: EscalationTier.AGENT,
    EscalationTier.SUPERVISOR: EscalationTier.SENIOR_AGENT,
}

TIER_LEVEL = {
    EscalationTier.SENIOR_AGENT: AgentLevel.SENIOR_AGENT,
    EscalationTier.SUPERVISOR: AgentLevel.SUPERVISOR,
}


def escalate(
    ticket_id: str,
    to_tier: EscalationTier,
    target_agent_id: str,
    threshold_hours: float,
    now: Optional[float] = None,
) -> Optional[Ticket]:
    """
    Move a stale ticket one tier up to `target_agent_id`. Every precondition is
    re-checked on the fresh copy inside the transaction; returns None when the
    ticket no longer qualifies (already escalated, resolved meanwhile, ...).
    """
    from_tier = _PREVIOUS_TIER[to_tier]

    def plan(ticket: Ticket, ts: float) -> Optional[_Change]:
        if ticket.status not in ACTIVE_STATUSES or not ticket.assigned_agent_id:
            return None
        if ticket.escalation_tier != from_tier:
            return None
        if (ts - ticket.escalation_timestamp) < threshold_hours * 3600:
            return None
        previous = ticket.assigned_agent_id
        deltas = []
        if previous != target_agent_id:
            deltas = [open_delta(previous, -1), open_delta(target_agent_id, 1)]
        ticket.assigned_agent_id = target_agent_id
        ticket.assigned_at = ts
        ticket.escalation_tier = to_tier
        ticket.escalation_timestamp = ts
        event = {
            "action": "escalated",
            "description": f"Escalated to {TIER_LABELS[to_tier]} (unresolved after {threshold_hours:g}h)",
            "data": {"agent_id": target_agent_id, "previous_agent_id": previous, "tier": to_tier.value},
        }
        return _Change(ticket, deltas, [event])

    ticket, applied = _mutate(ticket_id, plan, now)
    return ticket if applied else None
