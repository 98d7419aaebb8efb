"""
Redis connection and key layout shared by the engine components.

  agent:{id}               JSON agent profile (no counters)
  agent_counters:{id}      hash {open, resolved}; only the load tracker writes it
  tenant_agents:{tenant}   sorted set, score = registration sequence (stable pool order)
  ticket:{id}              JSON ticket
  tenant_tickets:{tenant}  sorted set, score = created_at
  tickets:active           sorted set of Open / In Progress tickets, score = created_at
  ticket_activity:{id}     list of JSON audit events
"""

from dispatch.config import REDIS_URL

AGENT_PREFIX = "agent:"
AGENT_COUNTERS_PREFIX = "agent_counters:"
AGENT_SEQ_KEY = "agents:seq"
TENANT_AGENTS_PREFIX = "tenant_agents:"
TICKET_PREFIX = "ticket:"
TICKET_SEQ_KEY = "tickets:seq"
TENANT_TICKETS_PREFIX = "tenant_tickets:"
ACTIVE_TICKETS_ZSET = "tickets:active"
TICKET_ACTIVITY_PREFIX = "ticket_activity:"
ESCALATION_LOCK_KEY = "lock:escalation"

OPEN_FIELD = "open"
RESOLVED_FIELD = "resolved"

_redis_client = None


def get_redis():
    import redis
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(REDIS_URL, decode_responses=True)
    return _redis_client


def agent_key(agent_id: str) -> str:
    return f"{AGENT_PREFIX}{agent_id}"


def agent_counters_key(agent_id: str) -> str:
    return f"{AGENT_COUNTERS_PREFIX}{agent_id}"


def tenant_agents_key(tenant_id: str) -> str:
    return f"{TENANT_AGENTS_PREFIX}{tenant_id}"


def ticket_key(ticket_id: str) -> str:
    return f"{TICKET_PREFIX}{ticket_id}"


def tenant_tickets_key(tenant_id: str) -> str:
    return f"{TENANT_TICKETS_PREFIX}{tenant_id}"


def ticket_activity_key(ticket_id: str) -> str:
    return f"{TICKET_ACTIVITY_PREFIX}{ticket_id}"


def transact(func, *watches: str, retries: int | None = None):
    """
    Run `func(pipe)` as an optimistic transaction (WATCH / MULTI / EXEC).

    `func` reads through the pipe in immediate mode, may WATCH more keys, then
    calls `pipe.multi()` and queues its writes. A conflicting write to any
    watched key aborts EXEC and `func` runs again on fresh data, at most
    `retries` times. Returns whatever `func` returned on the attempt that
    committed.
    """
    from redis.exceptions import WatchError

    from dispatch.config import TICKET_LOCK_RETRIES
    from dispatch.errors import ConcurrentUpdate

    attempts = retries if retries is not None else TICKET_LOCK_RETRIES
    r = get_redis()
    with r.pipeline(transaction=True) as pipe:
        for _ in range(max(1, attempts)):
            try:
                if watches:
                    pipe.watch(*watches)
                value = func(pipe)
                pipe.execute()
                return value
            except WatchError:
                pipe.reset()
                continue
    raise ConcurrentUpdate(f"Gave up after {attempts} conflicting updates on {', '.join(watches)}")
