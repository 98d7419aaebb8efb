"""
HTTP surface tests (FastAPI TestClient over fakeredis).

The client is used without its context manager so the lifespan (ARQ pool,
activity subscriber) never starts.
Run: pytest tests/test_api.py -v
"""

import pytest
from fastapi.testclient import TestClient

from dispatch.main import app

client = TestClient(app)

AGENT = {"user_id": "a1", "role": "agent", "level": "agent"}
SENIOR = {"user_id": "s1", "role": "agent", "level": "senior-agent"}
SUPERVISOR = {"user_id": "sup1", "role": "agent", "level": "supervisor"}


def _register(agent_id, level="agent", tenant_id="acme"):
    r = client.post("/agents", json={"agent_id": agent_id, "tenant_id": tenant_id, "level": level})
    assert r.status_code == 200
    return r.json()


def _create(priority="Medium", tenant_id="acme"):
    r = client.post("/tickets", json={"tenant_id": tenant_id, "priority": priority, "title": "Printer on fire"})
    assert r.status_code == 201
    return r.json()


def _resolved_ticket():
    _register("a1")
    decision = _create("Low")
    r = client.post(f"/tickets/{decision['ticket_id']}/resolve", json={"resolved_by": "a1"})
    assert r.status_code == 200
    return decision["ticket_id"], r.json()["feedback_token"]


def test_health():
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


def test_create_ticket_returns_decision():
    _register("a1")
    decision = _create("Low")
    assert decision["ticket_id"] == "TKT-1000"
    assert decision["assigned_agent_id"] == "a1"
    assert decision["unassigned_reason"] is None
    ticket = client.get("/tickets/TKT-1000").json()
    assert ticket["status"] == "Open"
    assert ticket["escalation_tier"] == "agent"
    assert "feedback_token_hash" not in ticket


def test_urgent_ticket_without_seniors_is_unassigned():
    _register("a1")
    decision = _create("Critical")
    assert decision["assigned_agent_id"] is None
    assert "Critical" in decision["unassigned_reason"]
    assert client.get("/agents/a1").json()["open_ticket_count"] == 0


def test_unknown_priority_is_rejected():
    r = client.post("/tickets", json={"tenant_id": "acme", "priority": "Urgent"})
    assert r.status_code == 422


def test_unknown_ticket_is_404():
    r = client.get("/tickets/TKT-9999")
    assert r.status_code == 404
    assert "TKT-9999" in r.json()["detail"]


def test_malformed_ticket_id_is_400():
    assert client.get("/tickets/-nope").status_code == 400


def test_list_tickets_by_status():
    _register("a1")
    first = _create("Low")["ticket_id"]
    _create("Low")
    client.post(f"/tickets/{first}/start", json={"actor": "a1"})
    in_progress = client.get("/tickets", params={"tenant_id": "acme", "status": "In Progress"}).json()
    assert [t["ticket_id"] for t in in_progress] == [first]
    assert len(client.get("/tickets", params={"tenant_id": "acme"}).json()) == 2


def test_list_tickets_by_priority_and_agent():
    _register("a1")
    _register("s1", "senior-agent")
    low = _create("Low")["ticket_id"]
    high = _create("High")["ticket_id"]
    by_priority = client.get("/tickets", params={"tenant_id": "acme", "priority": "High"}).json()
    assert [t["ticket_id"] for t in by_priority] == [high]
    mine = client.get("/tickets", params={"tenant_id": "acme", "agent_id": "a1"}).json()
    assert [t["ticket_id"] for t in mine] == [low]
    assert client.get("/tickets", params={"tenant_id": "acme", "priority": "Urgent"}).status_code == 422


def test_close_without_feedback_is_403():
    ticket_id, _ = _resolved_ticket()
    r = client.post(f"/tickets/{ticket_id}/close", json={"requester": AGENT})
    assert r.status_code == 403
    assert client.get(f"/tickets/{ticket_id}").json()["status"] == "Resolved"


def test_supervisor_force_closes():
    ticket_id, _ = _resolved_ticket()
    r = client.post(f"/tickets/{ticket_id}/close", json={"requester": SUPERVISOR})
    assert r.status_code == 200
    assert r.json()["status"] == "Closed"


def test_close_open_ticket_is_400():
    _register("a1")
    ticket_id = _create("Low")["ticket_id"]
    r = client.post(f"/tickets/{ticket_id}/close", json={"requester": SUPERVISOR})
    assert r.status_code == 400


def test_feedback_flow():
    ticket_id, token = _resolved_ticket()
    assert client.get("/agents/a1").json()["resolved_count"] == 1
    r = client.post(f"/tickets/{ticket_id}/feedback", json={"feedback_token": token, "verdict": "satisfied"})
    assert r.status_code == 200
    assert r.json() == {"ticket_id": ticket_id, "status": "Closed"}
    replay = client.post(f"/tickets/{ticket_id}/feedback", json={"feedback_token": token, "verdict": "satisfied"})
    assert replay.status_code == 401


def test_feedback_bad_token_is_401():
    ticket_id, _ = _resolved_ticket()
    r = client.post(f"/tickets/{ticket_id}/feedback", json={"feedback_token": "guess", "verdict": "satisfied"})
    assert r.status_code == 401
    assert client.get(f"/tickets/{ticket_id}").json()["status"] == "Resolved"


@pytest.mark.parametrize("verdict", ["delighted", "none"])
def test_feedback_bad_verdict_is_400(verdict):
    ticket_id, token = _resolved_ticket()
    r = client.post(f"/tickets/{ticket_id}/feedback", json={"feedback_token": token, "verdict": verdict})
    assert r.status_code == 400


def test_dissatisfied_feedback_reopens():
    ticket_id, token = _resolved_ticket()
    r = client.post(f"/tickets/{ticket_id}/feedback", json={"feedback_token": token, "verdict": "dissatisfied"})
    assert r.json()["status"] == "In Progress"
    agent = client.get("/agents/a1").json()
    assert (agent["open_ticket_count"], agent["resolved_count"]) == (1, 0)


def test_reopen_closed_ticket():
    ticket_id, token = _resolved_ticket()
    client.post(f"/tickets/{ticket_id}/feedback", json={"feedback_token": token, "verdict": "no_response"})
    r = client.post(f"/tickets/{ticket_id}/reopen")
    assert r.status_code == 200
    assert r.json()["status"] == "In Progress"
    assert r.json()["client_feedback"] == "none"


def test_manual_assignment_permissions():
    _register("a1")
    _register("s1", "senior-agent")
    ticket_id = _create("Critical")["ticket_id"]
    assert client.get(f"/tickets/{ticket_id}").json()["assigned_agent_id"] == "s1"
    denied = client.post(f"/tickets/{ticket_id}/assign", json={"target_agent_id": "a1", "requester": SENIOR})
    assert denied.status_code == 403
    moved = client.post(f"/tickets/{ticket_id}/assign", json={"target_agent_id": "a1", "requester": SUPERVISOR})
    assert moved.status_code == 200
    assert moved.json()["assigned_agent_id"] == "a1"
    assert client.get("/agents/s1").json()["open_ticket_count"] == 0
    assert client.get("/agents/a1").json()["open_ticket_count"] == 1


def test_assign_to_unknown_agent_is_404():
    _register("s1", "senior-agent")
    ticket_id = _create("Low")["ticket_id"]
    r = client.post(f"/tickets/{ticket_id}/assign", json={"target_agent_id": "ghost", "requester": SUPERVISOR})
    assert r.status_code == 404


def test_ticket_activity():
    ticket_id, _ = _resolved_ticket()
    r = client.get(f"/tickets/{ticket_id}/activity")
    assert [e["type"] for e in r.json()["events"]] == ["created", "assigned", "resolved"]
    assert client.get("/tickets/TKT-4242/activity").status_code == 404


def test_agents_endpoints():
    _register("a1")
    _register("s1", "senior-agent")
    assert [a["agent_id"] for a in client.get("/agents", params={"tenant_id": "acme"}).json()] == ["a1", "s1"]
    r = client.put("/agents/a1/status", json={"status": "away"})
    assert r.json()["status"] == "away"
    assert client.put("/agents/a1/status", json={"status": "gone"}).status_code == 400
    assert client.delete("/agents/a1").json() == {"status": "ok", "agent_id": "a1"}
    assert client.delete("/agents/a1").status_code == 404
    assert client.get("/agents/a1").status_code == 404


def test_agent_permissions():
    _register("s1", "senior-agent")
    perms = client.get("/agents/s1/permissions").json()
    assert perms["can_assign_tickets"] is True
    assert perms["can_transfer_tickets"] is False
    admin = client.post("/permissions/check", json={"user_id": "root", "role": "super-admin"}).json()
    assert all(admin.values())


def test_reconcile_endpoint(fake_redis):
    _register("a1")
    _create("Low")
    fake_redis.hset("agent_counters:a1", "open", 9)
    r = client.post("/agents/loads/reconcile", params={"tenant_id": "acme"})
    assert r.json() == {"status": "ok", "agents_updated": 1}
    assert client.get("/agents/a1").json()["open_ticket_count"] == 1


def test_escalation_run_endpoint():
    _register("a1")
    _create("Low")
    r = client.post("/escalation/run")
    assert r.status_code == 200
    assert r.json() == {"escalated_to_senior": 0, "escalated_to_supervisor": 0, "failed": 0, "skipped": False}


def test_enqueue_without_worker_pool_is_503():
    r = client.post("/tickets/enqueue", json={"tenant_id": "acme"})
    assert r.status_code == 503
