"""
Slack/Discord-style webhook: POST a notice for every escalation.
Uses WEBHOOK_URL from config; no-op if unset.
"""

import json
import logging
import ssl
import urllib.request
from typing import Any, Optional

from dispatch.models import Ticket

logger = logging.getLogger(__name__)


def _build_escalation_payload(ticket: Ticket, previous_agent_id: Optional[str]) -> dict[str, Any]:
    """Build a Slack-compatible webhook payload."""
    tier = ticket.escalation_tier.value
    return {
        "text": f"Ticket {ticket.ticket_id} escalated to {tier}",
        "blocks": [
            {
                "type": "section",
                "text": {
                    "type": "mrkdwn",
                    "text": (
                        f"*Ticket:* `{ticket.ticket_id}`\n*Priority:* {ticket.priority.value}\n"
                        f"*Tier:* {tier}\n*From:* {previous_agent_id or '-'}\n"
                        f"*To:* {ticket.assigned_agent_id}"
                    ),
                },
            },
        ],
    }


def _do_post(url: str, payload: dict[str, Any]) -> None:
    data = json.dumps(payload).encode("utf-8")
    req = urllib.request.Request(
        url,
        data=data,
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    ctx = ssl.create_default_context()
    with urllib.request.urlopen(req, timeout=5, context=ctx):
        pass


def notify_escalation(ticket: Ticket, previous_agent_id: Optional[str]) -> bool:
    """
    POST an escalation notice if WEBHOOK_URL is set. Never raises; returns
    True when a notice was delivered.
    """
    from dispatch.config import WEBHOOK_URL

    if not WEBHOOK_URL:
        return False
    try:
        _do_post(WEBHOOK_URL, _build_escalation_payload(ticket, previous_agent_id))
    except Exception as e:
        logger.warning("Escalation webhook for ticket %s failed: %s", ticket.ticket_id, e)
        return False
    return True
