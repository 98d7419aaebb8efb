"""
Agent registry: tenant-scoped store of agents and their seniority tiers.
Backed by Redis (agent:{id} profile, tenant_agents:{tenant} pool order).
Counters live in agent_counters:{id} and are written only by the load tracker.
"""

import logging
from typing import Iterable, Optional

from dispatch.errors import InvalidInput, NotFound
from dispatch.models import Agent, AgentLevel
from dispatch.store import (
    AGENT_SEQ_KEY,
    OPEN_FIELD,
    RESOLVED_FIELD,
    agent_counters_key,
    agent_key,
    get_redis,
    tenant_agents_key,
)

logger = logging.getLogger(__name__)

_COUNTER_FIELDS = ("open_ticket_count", "resolved_count")


def _profile_json(agent: Agent) -> str:
    return agent.model_dump_json(exclude=set(_COUNTER_FIELDS))


def _merge(raw_profile: str, counters: dict) -> Agent:
    agent = Agent.model_validate_json(raw_profile)
    agent.open_ticket_count = max(0, int(counters.get(OPEN_FIELD) or 0))
    agent.resolved_count = max(0, int(counters.get(RESOLVED_FIELD) or 0))
    return agent


def register_agent(agent: Agent) -> Agent:
    """
    Upsert an agent profile. A new agent is appended to its tenant's pool and
    starts with zero counters; re-registering keeps the existing counters and
    pool position.
    """
    r = get_redis()
    existing = get_agent(agent.agent_id)
    if existing is not None and existing.tenant_id != agent.tenant_id:
        raise InvalidInput(f"Agent {agent.agent_id} already belongs to tenant {existing.tenant_id}")
    if existing is not None:
        agent = agent.model_copy(update={"joined_at": existing.joined_at})
    pipe = r.pipeline()
    pipe.set(agent_key(agent.agent_id), _profile_json(agent))
    pipe.hsetnx(agent_counters_key(agent.agent_id), OPEN_FIELD, 0)
    pipe.hsetnx(agent_counters_key(agent.agent_id), RESOLVED_FIELD, 0)
    pipe.execute()
    if existing is None:
        seq = r.incr(AGENT_SEQ_KEY)
        r.zadd(tenant_agents_key(agent.tenant_id), {agent.agent_id: seq}, nx=True)
        logger.info("Agent %s registered in tenant %s as %s.", agent.agent_id, agent.tenant_id, agent.level.value)
    return get_agent(agent.agent_id) or agent


def get_agent(agent_id: str) -> Optional[Agent]:
    """Load agent profile plus current counters."""
    r = get_redis()
    pipe = r.pipeline()
    pipe.get(agent_key(agent_id))
    pipe.hgetall(agent_counters_key(agent_id))
    raw, counters = pipe.execute()
    if not raw:
        return None
    return _merge(raw, counters)


def require_agent(agent_id: str) -> Agent:
    agent = get_agent(agent_id)
    if agent is None:
        raise NotFound(f"Agent {agent_id} not found")
    return agent


def agent_exists(agent_id: str) -> bool:
    return bool(get_redis().exists(agent_key(agent_id)))


def list_agents(tenant_id: str, levels: Optional[Iterable[AgentLevel]] = None) -> list[Agent]:
    """
    Return a tenant's agents in registration order, optionally restricted to
    some tiers. The order is stable, which the selector relies on for ties.
    """
    r = get_redis()
    ids = r.zrange(tenant_agents_key(tenant_id), 0, -1)
    if not ids:
        return []
    pipe = r.pipeline()
    for aid in ids:
        pipe.get(agent_key(aid))
        pipe.hgetall(agent_counters_key(aid))
    results = pipe.execute()
    wanted = set(levels) if levels is not None else None
    agents = []
    for raw, counters in zip(results[0::2], results[1::2]):
        if not raw:
            continue
        agent = _merge(raw, counters)
        if wanted is not None and agent.level not in wanted:
            continue
        agents.append(agent)
    return agents


def set_agent_status(agent_id: str, status: str) -> Agent:
    """Record online / away / offline. Informational only: every agent stays assignable."""
    if status not in ("online", "away", "offline"):
        raise InvalidInput(f"Unknown agent status {status!r}")
    agent = require_agent(agent_id)
    agent.status = status
    get_redis().set(agent_key(agent_id), _profile_json(agent))
    return agent


def remove_agent(agent_id: str) -> bool:
    """Delete an agent; its counters go with it. Returns False if it did not exist."""
    agent = get_agent(agent_id)
    if agent is None:
        return False
    if agent.open_ticket_count:
        logger.warning(
            "Removing agent %s with %d open tickets; reassign them to restore counts.",
            agent_id, agent.open_ticket_count,
        )
    pipe = get_redis().pipeline()
    pipe.delete(agent_key(agent_id))
    pipe.delete(agent_counters_key(agent_id))
    pipe.zrem(tenant_agents_key(agent.tenant_id), agent_id)
    pipe.execute()
    logger.info("Agent %s removed from tenant %s.", agent_id, agent.tenant_id)
    return True
