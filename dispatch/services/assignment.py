"""
Assignment selector: who may take a ticket of a given priority, and who of
those has the most slack.

Eligibility by priority (supervisors and management never receive work
automatically; they only get tickets through a manual transfer):

  Critical -> senior-agent
  High     -> senior-agent
  Medium   -> agent, senior-agent
  Low      -> agent, senior-agent

Among eligible agents the one with the lowest open-ticket count wins; ties go
to the agent that comes first in the pool (registration order), so identical
inputs always give the same answer. An empty eligible pool means the ticket
stays Unassigned; there is no fallback to another tier.
"""

import logging
from typing import Optional

import numpy as np

from dispatch.models import Agent, AgentLevel, Priority

logger = logging.getLogger(__name__)

ELIGIBLE_LEVELS: dict[Priority, frozenset[AgentLevel]] = {
    Priority.CRITICAL: frozenset({AgentLevel.SENIOR_AGENT}),
    Priority.HIGH: frozenset({AgentLevel.SENIOR_AGENT}),
    Priority.MEDIUM: frozenset({AgentLevel.AGENT, AgentLevel.SENIOR_AGENT}),
    Priority.LOW: frozenset({AgentLevel.AGENT, AgentLevel.SENIOR_AGENT}),
}


def eligible_levels(priority: Priority) -> frozenset[AgentLevel]:
    return ELIGIBLE_LEVELS[Priority(priority)]


def least_loaded(agents: list[Agent]) -> Optional[str]:
    """
    Agent id with the lowest open_ticket_count, or None for an empty pool.
    np.argmin returns the first minimum, which is the stable tie-break.
    """
    if not agents:
        return None
    loads = np.fromiter((a.open_ticket_count for a in agents), dtype=np.int64, count=len(agents))
    return agents[int(np.argmin(loads))].agent_id


def select(agents: list[Agent], priority: Priority) -> Optional[str]:
    """Pick the agent for a new ticket, or None (Unassigned)."""
    allowed = eligible_levels(priority)
    pool = [a for a in agents if a.level in allowed]
    if not pool:
        return None
    return least_loaded(pool)


def select_for_level(agents: list[Agent], level: AgentLevel) -> Optional[str]:
    """Least-loaded agent of exactly one tier (escalation target pool)."""
    return least_loaded([a for a in agents if a.level == level])


def route_ticket(tenant_id: str, priority: Priority) -> Optional[str]:
    """Select from the tenant's current pool and loads (registry snapshot)."""
    from dispatch.services.agent_registry import list_agents

    agents = list_agents(tenant_id)
    agent_id = select(agents, priority)
    if agent_id is None:
        logger.warning(
            "No eligible agent for %s ticket in tenant %s (pool size %d); leaving unassigned.",
            Priority(priority).value, tenant_id, len(agents),
        )
    return agent_id
