"""
ARQ background worker: ticket-creation events and the periodic escalation run.

  dispatch_ticket       job enqueued by POST /tickets/enqueue or any intake collaborator
  escalate_stale_tickets cron job every ESCALATION_INTERVAL_MINUTES
"""

import logging
from dataclasses import replace

from arq import cron, run_worker
from arq.connections import RedisSettings

from dispatch.config import ESCALATION_INTERVAL_MINUTES, REDIS_CONN_TIMEOUT, REDIS_URL
from dispatch.models import TicketCreateEvent
from dispatch.services.escalation import run_escalation
from dispatch.services.lifecycle import create_ticket

logger = logging.getLogger(__name__)


async def dispatch_ticket(ctx: dict, payload: dict) -> dict:
    """ARQ job: create the ticket and run automatic assignment. Returns the decision."""
    logger.info("Dispatching ticket event for tenant %s...", payload.get("tenant_id", "?"))
    try:
        event = TicketCreateEvent.model_validate(payload)
        _, decision = create_ticket(event)
    except Exception as e:
        logger.exception("Failed to dispatch ticket event: %s", e)
        raise
    return decision.model_dump()


async def escalate_stale_tickets(ctx: dict) -> dict:
    """ARQ cron job: one escalation pass."""
    summary = run_escalation()
    return summary.model_dump()


def _cron_minutes(interval: int) -> set[int]:
    interval = interval if 0 < interval <= 60 else 15
    return set(range(0, 60, interval))


class WorkerSettings:
    functions = [dispatch_ticket]
    cron_jobs = [
        cron(escalate_stale_tickets, minute=_cron_minutes(ESCALATION_INTERVAL_MINUTES), unique=True),
    ]
    redis_settings = replace(
        RedisSettings.from_dsn(REDIS_URL),
        conn_timeout=REDIS_CONN_TIMEOUT,
    )


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    logger.info("Worker starting (Redis: %s).", REDIS_URL.split("@")[-1] if "@" in REDIS_URL else REDIS_URL)
    run_worker(WorkerSettings)
