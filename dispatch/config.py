"""Configuration for the dispatch engine (Redis, escalation thresholds, worker cadence)."""

import os


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


REDIS_URL: str = os.environ.get("REDIS_URL", "redis://localhost:6379/0")
REDIS_CONN_TIMEOUT: int = _env_int("REDIS_CONN_TIMEOUT", 5)
# Optional: Slack or Discord webhook URL; if set, every escalation triggers a POST.
WEBHOOK_URL: str = os.environ.get("WEBHOOK_URL", "")

# --- Escalation ---
ESCALATION_TO_SENIOR_HOURS: float = _env_float("ESCALATION_TO_SENIOR_HOURS", 24.0)
ESCALATION_TO_SUPERVISOR_HOURS: float = _env_float("ESCALATION_TO_SUPERVISOR_HOURS", 48.0)
ESCALATION_INTERVAL_MINUTES: int = _env_int("ESCALATION_INTERVAL_MINUTES", 15)
ESCALATION_LOCK_TTL_SECONDS: int = _env_int("ESCALATION_LOCK_TTL_SECONDS", 600)

# --- Ticket mutations ---
TICKET_LOCK_RETRIES: int = _env_int("TICKET_LOCK_RETRIES", 20)

# --- Activity feed ---
ACTIVITY_MAX_EVENTS: int = _env_int("ACTIVITY_MAX_EVENTS", 200)
