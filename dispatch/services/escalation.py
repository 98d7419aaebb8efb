"""
Escalation scheduler: re-route tickets that sat too long in their tier.

Invoked on a timer (ARQ cron in dispatch.worker, or POST /escalation/run).
Each run scans every Open / In Progress ticket that has an owner:

  tier agent         and >= ESCALATION_TO_SENIOR_HOURS in tier     -> least-loaded senior-agent
  tier senior-agent  and >= ESCALATION_TO_SUPERVISOR_HOURS in tier -> least-loaded supervisor

A ticket whose target tier has nobody is left alone. Runs are single-flight
(Redis SET NX lock); a run that finds the lock held returns skipped=True.
A failure on one ticket is logged and counted, and the scan moves on.
"""

import logging
import secrets
import time
from typing import Optional

from dispatch.models import EscalationSummary, EscalationTier
from dispatch.services import lifecycle
from dispatch.services.agent_registry import list_agents
from dispatch.services.assignment import select_for_level
from dispatch.store import ACTIVE_TICKETS_ZSET, ESCALATION_LOCK_KEY, get_redis, transact
from dispatch.webhook import notify_escalation

logger = logging.getLogger(__name__)


def acquire_run_lock(ttl_seconds: Optional[int] = None) -> Optional[str]:
    """Take the single-flight lock. Returns the owner token, or None if another run holds it."""
    from dispatch.config import ESCALATION_LOCK_TTL_SECONDS

    token = secrets.token_hex(16)
    ttl = ttl_seconds or ESCALATION_LOCK_TTL_SECONDS
    if get_redis().set(ESCALATION_LOCK_KEY, token, nx=True, ex=ttl):
        return token
    return None


def release_run_lock(token: str) -> bool:
    """Release the lock only if `token` still owns it (it may have expired and been re-taken)."""

    def _tx(pipe):
        owned = pipe.get(ESCALATION_LOCK_KEY) == token
        pipe.multi()
        if owned:
            pipe.delete(ESCALATION_LOCK_KEY)
        return owned

    return transact(_tx, ESCALATION_LOCK_KEY)


def _thresholds(to_senior_hours: Optional[float], to_supervisor_hours: Optional[float]) -> tuple[float, float]:
    from dispatch.config import ESCALATION_TO_SENIOR_HOURS, ESCALATION_TO_SUPERVISOR_HOURS

    return (
        ESCALATION_TO_SENIOR_HOURS if to_senior_hours is None else to_senior_hours,
        ESCALATION_TO_SUPERVISOR_HOURS if to_supervisor_hours is None else to_supervisor_hours,
    )


def escalate_ticket(
    ticket_id: str,
    now: float,
    to_senior_hours: float,
    to_supervisor_hours: float,
) -> Optional[EscalationTier]:
    """Escalate one ticket if it is due. Returns the new tier, or None if untouched."""
    ticket = lifecycle.get_ticket(ticket_id)
    if ticket is None or not ticket.is_active or not ticket.assigned_agent_id:
        return None
    if ticket.escalation_tier == EscalationTier.AGENT:
        to_tier, threshold = EscalationTier.SENIOR_AGENT, to_senior_hours
    elif ticket.escalation_tier == EscalationTier.SENIOR_AGENT:
        to_tier, threshold = EscalationTier.SUPERVISOR, to_supervisor_hours
    else:
        return None
    if (now - ticket.escalation_timestamp) < threshold * 3600:
        return None

    level = lifecycle.TIER_LEVEL[to_tier]
    target = select_for_level(list_agents(ticket.tenant_id, levels=[level]), level)
    if target is None:
        logger.info("Ticket %s is due for %s but tenant %s has none; left as is.",
                    ticket_id, to_tier.value, ticket.tenant_id)
        return None

    previous = ticket.assigned_agent_id
    updated = lifecycle.escalate(ticket_id, to_tier, target, threshold, now=now)
    if updated is None:
        return None
    logger.info("Ticket %s escalated to %s: %s -> %s.", ticket_id, to_tier.value, previous, target)
    notify_escalation(updated, previous)
    return to_tier


def run_escalation(
    now: Optional[float] = None,
    to_senior_hours: Optional[float] = None,
    to_supervisor_hours: Optional[float] = None,
) -> EscalationSummary:
    """One scheduler pass over all active tickets, guarded by the single-flight lock."""
    token = acquire_run_lock()
    if token is None:
        logger.info("Escalation run already in progress; skipping.")
        return EscalationSummary(skipped=True)
    try:
        return _scan(
            now if now is not None else time.time(),
            *_thresholds(to_senior_hours, to_supervisor_hours),
        )
    finally:
        if not release_run_lock(token):
            logger.warning("Escalation lock expired before the run finished.")


def _scan(now: float, to_senior_hours: float, to_supervisor_hours: float) -> EscalationSummary:
    summary = EscalationSummary()
    for ticket_id in get_redis().zrange(ACTIVE_TICKETS_ZSET, 0, -1):
        try:
            tier = escalate_ticket(ticket_id, now, to_senior_hours, to_supervisor_hours)
        except Exception:
            logger.exception("Escalation failed for ticket %s.", ticket_id)
            summary.failed += 1
            continue
        if tier == EscalationTier.SENIOR_AGENT:
            summary.escalated_to_senior += 1
        elif tier == EscalationTier.SUPERVISOR:
            summary.escalated_to_supervisor += 1
    logger.info(
        "Escalation run done: %d to senior, %d to supervisor, %d failed.",
        summary.escalated_to_senior, summary.escalated_to_supervisor, summary.failed,
    )
    return summary
