"""
Load tracker: sole writer of agent workload counters.

Every counter write reads the agent and its counter under WATCH and commits
in MULTI/EXEC. Decrements are floored at zero. A concurrent change, including
removal of the agent, aborts the EXEC and the write is retried on fresh data.

Ticket transitions that move ownership stage their counter deltas into the
same transaction as the ticket write (see watch_counters / stage_deltas), so
"decrement old, increment new" commits together with the ticket.
"""

import logging
from typing import NamedTuple

from dispatch.errors import NotFound
from dispatch.models import ACTIVE_STATUSES, Ticket
from dispatch.store import (
    OPEN_FIELD,
    RESOLVED_FIELD,
    agent_counters_key,
    agent_key,
    get_redis,
    tenant_agents_key,
    tenant_tickets_key,
    ticket_key,
    transact,
)

logger = logging.getLogger(__name__)


class CounterDelta(NamedTuple):
    """One counter adjustment: +1 or -1 on an agent's open or resolved field."""

    agent_id: str
    field: str
    amount: int


def open_delta(agent_id: str, amount: int) -> CounterDelta:
    return CounterDelta(agent_id, OPEN_FIELD, amount)


def resolved_delta(agent_id: str, amount: int) -> CounterDelta:
    return CounterDelta(agent_id, RESOLVED_FIELD, amount)


def watch_counters(pipe, deltas: list[CounterDelta]) -> dict[tuple[str, str], int | None]:
    """
    WATCH the agents and counters touched by `deltas` and read the current values.
    Must run while the pipe is still in immediate mode. Missing agents read
    as None; their deltas are dropped when staged.
    """
    agent_ids = {d.agent_id for d in deltas}
    keys = sorted({agent_counters_key(a) for a in agent_ids} | {agent_key(a) for a in agent_ids})
    if not keys:
        return {}
    pipe.watch(*keys)
    current: dict[tuple[str, str], int | None] = {}
    for d in deltas:
        if (d.agent_id, d.field) in current:
            continue
        if not pipe.exists(agent_key(d.agent_id)):
            current[(d.agent_id, d.field)] = None
            continue
        current[(d.agent_id, d.field)] = int(pipe.hget(agent_counters_key(d.agent_id), d.field) or 0)
    return current


def stage_deltas(pipe, deltas: list[CounterDelta], current: dict[tuple[str, str], int | None]) -> None:
    """Queue HINCRBYs after pipe.multi(). Decrements never take a counter below zero."""
    running = dict(current)
    for d in deltas:
        value = running.get((d.agent_id, d.field))
        if value is None:
            logger.warning("Counter %s for missing agent %s skipped.", d.field, d.agent_id)
            continue
        amount = d.amount
        if value + amount < 0:
            amount = -value
        if amount == 0:
            continue
        pipe.hincrby(agent_counters_key(d.agent_id), d.field, amount)
        running[(d.agent_id, d.field)] = value + amount


def _apply(delta: CounterDelta) -> int:
    key = agent_counters_key(delta.agent_id)

    def _tx(pipe):
        current = watch_counters(pipe, [delta])
        if current.get((delta.agent_id, delta.field)) is None:
            raise NotFound(f"Agent {delta.agent_id} not found")
        value = current[(delta.agent_id, delta.field)]
        pipe.multi()
        stage_deltas(pipe, [delta], current)
        return max(0, value + delta.amount)

    return transact(_tx, agent_key(delta.agent_id), key)


def increment(agent_id: str) -> int:
    """Add one open ticket to an agent. Returns the new count."""
    return _apply(open_delta(agent_id, 1))


def decrement(agent_id: str) -> int:
    """Remove one open ticket from an agent; a no-op at zero. Returns the new count."""
    return _apply(open_delta(agent_id, -1))


def increment_resolved(agent_id: str) -> int:
    return _apply(resolved_delta(agent_id, 1))


def decrement_resolved(agent_id: str) -> int:
    return _apply(resolved_delta(agent_id, -1))


def count_open(tenant_id: str) -> dict[str, int]:
    """
    Count Open / In Progress tickets per assigned agent from the ticket records
    themselves. Every agent of the tenant appears, with 0 if idle.
    """
    from dispatch.services.agent_registry import list_agents

    counts = {agent.agent_id: 0 for agent in list_agents(tenant_id)}
    r = get_redis()
    ids = r.zrange(tenant_tickets_key(tenant_id), 0, -1)
    if not ids:
        return counts
    pipe = r.pipeline()
    for tid in ids:
        pipe.get(ticket_key(tid))
    for raw in pipe.execute():
        if not raw:
            continue
        ticket = Ticket.model_validate_json(raw)
        if ticket.status in ACTIVE_STATUSES and ticket.assigned_agent_id:
            counts[ticket.assigned_agent_id] = counts.get(ticket.assigned_agent_id, 0) + 1
    return counts


def reconcile(tenant_id: str) -> int:
    """
    Rewrite every open counter of a tenant from count_open (drift repair).
    The pool, the ticket index and every counter are WATCHed while counting,
    so a counter change that lands meanwhile aborts the rewrite and the count
    is taken again. Returns the number of counters that changed.
    """
    from dispatch.services.agent_registry import list_agents

    def _tx(pipe):
        agents = list_agents(tenant_id)
        counter_keys = [agent_counters_key(a.agent_id) for a in agents]
        if counter_keys:
            pipe.watch(*counter_keys)
        counts = count_open(tenant_id)
        changes = []
        for agent, key in zip(agents, counter_keys):
            stored = int(pipe.hget(key, OPEN_FIELD) or 0)
            actual = counts.get(agent.agent_id, 0)
            if stored != actual:
                changes.append((agent.agent_id, stored, actual))
        pipe.multi()
        for agent_id, _, actual in changes:
            pipe.hset(agent_counters_key(agent_id), OPEN_FIELD, actual)
        return changes

    changes = transact(_tx, tenant_agents_key(tenant_id), tenant_tickets_key(tenant_id))
    for agent_id, stored, actual in changes:
        logger.info("Reconciled agent %s open count %d -> %d.", agent_id, stored, actual)
    return len(changes)
