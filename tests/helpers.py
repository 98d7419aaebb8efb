"""Shared builders and assertions for the test suites."""

from dispatch.models import Agent, AgentLevel, Requester, UserRole
from dispatch.services.agent_registry import list_agents, register_agent
from dispatch.services.load_tracker import count_open

T0 = 1_700_000_000.0
HOUR = 3600.0

AGENT = Requester(user_id="a-user", role=UserRole.AGENT, level=AgentLevel.AGENT)
SENIOR = Requester(user_id="s-user", role=UserRole.AGENT, level=AgentLevel.SENIOR_AGENT)
SUPERVISOR = Requester(user_id="sup-user", role=UserRole.AGENT, level=AgentLevel.SUPERVISOR)
TENANT_ADMIN = Requester(user_id="admin", role=UserRole.TENANT_ADMIN)


def add_agent(agent_id: str, level: AgentLevel = AgentLevel.AGENT, tenant_id: str = "acme") -> Agent:
    return register_agent(Agent(agent_id=agent_id, tenant_id=tenant_id, level=level))


def assert_counters_conserved(tenant_id: str = "acme") -> None:
    """Each agent's open counter equals its Open / In Progress tickets."""
    actual = count_open(tenant_id)
    for agent in list_agents(tenant_id):
        assert agent.open_ticket_count == actual[agent.agent_id], agent.agent_id
