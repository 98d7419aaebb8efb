"""
Tests for the agent registry and load tracker (fakeredis).
Run: pytest tests/test_load_tracker.py -v
"""

import pytest

from dispatch.errors import ConcurrentUpdate, InvalidInput, NotFound
from dispatch.models import Agent, AgentLevel, Priority, TicketCreateEvent
from dispatch.services import lifecycle, load_tracker
from dispatch.services.agent_registry import (
    get_agent,
    list_agents,
    register_agent,
    remove_agent,
    set_agent_status,
)
from dispatch.store import OPEN_FIELD, agent_counters_key, transact
from tests.helpers import T0, add_agent, assert_counters_conserved


class TestRegistry:
    def test_register_and_get(self):
        add_agent("a1", AgentLevel.SENIOR_AGENT)
        agent = get_agent("a1")
        assert agent.level == AgentLevel.SENIOR_AGENT
        assert agent.open_ticket_count == 0
        assert agent.resolved_count == 0

    def test_pool_order_is_registration_order(self):
        for aid in ("zed", "amy", "bob"):
            add_agent(aid)
        assert [a.agent_id for a in list_agents("acme")] == ["zed", "amy", "bob"]

    def test_reregister_keeps_counters_and_position(self):
        add_agent("a1")
        add_agent("a2")
        load_tracker.increment("a1")
        register_agent(Agent(agent_id="a1", tenant_id="acme", level=AgentLevel.SENIOR_AGENT, open_ticket_count=40))
        agent = get_agent("a1")
        assert agent.open_ticket_count == 1
        assert agent.level == AgentLevel.SENIOR_AGENT
        assert [a.agent_id for a in list_agents("acme")] == ["a1", "a2"]

    def test_agent_cannot_move_tenant(self):
        add_agent("a1", tenant_id="acme")
        with pytest.raises(InvalidInput):
            add_agent("a1", tenant_id="globex")

    def test_list_filters_by_level_and_tenant(self):
        add_agent("a1")
        add_agent("s1", AgentLevel.SENIOR_AGENT)
        add_agent("x1", tenant_id="globex")
        assert [a.agent_id for a in list_agents("acme", levels=[AgentLevel.SENIOR_AGENT])] == ["s1"]
        assert [a.agent_id for a in list_agents("globex")] == ["x1"]

    def test_status(self):
        add_agent("a1")
        assert set_agent_status("a1", "away").status == "away"
        with pytest.raises(InvalidInput):
            set_agent_status("a1", "sleeping")

    def test_remove(self):
        add_agent("a1")
        assert remove_agent("a1") is True
        assert get_agent("a1") is None
        assert list_agents("acme") == []
        assert remove_agent("a1") is False


class TestCounters:
    def test_increment_decrement(self):
        add_agent("a1")
        assert load_tracker.increment("a1") == 1
        assert load_tracker.increment("a1") == 2
        assert load_tracker.decrement("a1") == 1
        assert get_agent("a1").open_ticket_count == 1

    def test_decrement_floors_at_zero(self):
        add_agent("a1")
        assert load_tracker.decrement("a1") == 0
        assert load_tracker.decrement("a1") == 0
        assert get_agent("a1").open_ticket_count == 0

    def test_resolved_counter_floors_at_zero(self):
        add_agent("a1")
        assert load_tracker.increment_resolved("a1") == 1
        assert load_tracker.decrement_resolved("a1") == 0
        assert load_tracker.decrement_resolved("a1") == 0

    def test_unknown_agent(self):
        with pytest.raises(NotFound):
            load_tracker.increment("ghost")
        with pytest.raises(NotFound):
            load_tracker.decrement("ghost")

    def test_count_open_ignores_resolved_and_closed(self):
        add_agent("a1")
        add_agent("a2")
        t1, _ = lifecycle.create_ticket(TicketCreateEvent(tenant_id="acme", priority=Priority.LOW), now=T0)
        t2, _ = lifecycle.create_ticket(TicketCreateEvent(tenant_id="acme", priority=Priority.LOW), now=T0)
        t3, _ = lifecycle.create_ticket(TicketCreateEvent(tenant_id="acme", priority=Priority.LOW), now=T0)
        assert load_tracker.count_open("acme") == {"a1": 2, "a2": 1}
        lifecycle.resolve(t1.ticket_id, "a1", now=T0)
        assert load_tracker.count_open("acme") == {"a1": 1, "a2": 1}
        assert {t2.assigned_agent_id, t3.assigned_agent_id} == {"a1", "a2"}

    def test_count_open_lists_idle_agents(self):
        add_agent("a1")
        assert load_tracker.count_open("acme") == {"a1": 0}
        assert load_tracker.count_open("nobody") == {}

    def test_reconcile_repairs_drift(self, fake_redis):
        add_agent("a1")
        add_agent("a2")
        lifecycle.create_ticket(TicketCreateEvent(tenant_id="acme"), now=T0)
        fake_redis.hset(agent_counters_key("a1"), OPEN_FIELD, 7)
        fake_redis.hset(agent_counters_key("a2"), OPEN_FIELD, 3)
        assert load_tracker.reconcile("acme") == 2
        assert_counters_conserved()
        assert load_tracker.reconcile("acme") == 0

    def test_reconcile_retries_when_a_ticket_lands_mid_count(self, fake_redis, monkeypatch):
        add_agent("a1")
        lifecycle.create_ticket(TicketCreateEvent(tenant_id="acme"), now=T0)
        fake_redis.hset(agent_counters_key("a1"), OPEN_FIELD, 7)
        real_count_open = load_tracker.count_open
        passes = []

        def count_then_create(tenant_id):
            counts = real_count_open(tenant_id)
            passes.append(counts)
            if len(passes) == 1:
                lifecycle.create_ticket(TicketCreateEvent(tenant_id="acme"), now=T0)
            return counts

        monkeypatch.setattr(load_tracker, "count_open", count_then_create)
        assert load_tracker.reconcile("acme") == 1
        assert passes == [{"a1": 1}, {"a1": 2}]
        assert get_agent("a1").open_ticket_count == 2
        assert_counters_conserved()

    def test_increment_of_agent_removed_mid_write(self, fake_redis, monkeypatch):
        add_agent("a1")
        real_watch = load_tracker.watch_counters

        def watch_then_remove(pipe, deltas):
            current = real_watch(pipe, deltas)
            remove_agent("a1")
            return current

        monkeypatch.setattr(load_tracker, "watch_counters", watch_then_remove)
        with pytest.raises(NotFound):
            load_tracker.increment("a1")
        assert not fake_redis.exists(agent_counters_key("a1"))

    def test_increment_of_removed_agent_leaves_no_counters(self, fake_redis):
        add_agent("a1")
        remove_agent("a1")
        with pytest.raises(NotFound):
            load_tracker.increment_resolved("a1")
        assert not fake_redis.exists(agent_counters_key("a1"))


class TestTransactions:
    def test_conflicting_write_is_retried_not_lost(self, fake_redis):
        add_agent("a1")
        key = agent_counters_key("a1")
        calls = []

        def bump(pipe):
            calls.append(1)
            value = int(pipe.hget(key, OPEN_FIELD) or 0)
            if len(calls) == 1:
                fake_redis.hincrby(key, OPEN_FIELD, 5)
            pipe.multi()
            pipe.hset(key, OPEN_FIELD, value + 1)

        transact(bump, key)
        assert len(calls) == 2
        assert get_agent("a1").open_ticket_count == 6

    def test_gives_up_after_retry_budget(self, fake_redis):
        add_agent("a1")
        key = agent_counters_key("a1")
        calls = []

        def always_conflicts(pipe):
            calls.append(1)
            fake_redis.hincrby(key, OPEN_FIELD, 1)
            pipe.multi()
            pipe.hset(key, OPEN_FIELD, 0)

        with pytest.raises(ConcurrentUpdate):
            transact(always_conflicts, key, retries=3)
        assert len(calls) == 3
        assert get_agent("a1").open_ticket_count == 3
