"""
Subscription Manager Unit Tests
===============================

[UNIT] Tests for core/subscription.py: attach on connect, inbound
queue, re-attach after reconnect and the stale-subscription watchdog.
"""

import asyncio

import pytest

from conftest import make_request
from core.event import Event, EventKind
from core.pool import EndpointStatus, RelayPool
from core.subscription import SubscriptionManager

A = "wss://a.example"
B = "wss://b.example"


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def settle(pool: RelayPool) -> None:
    for _ in range(100):
        tasks = [
            pool.get_endpoint(url).reconnect_task
            for url in pool.urls
            if pool.get_endpoint(url).reconnect_task is not None
        ]
        if not tasks:
            return
        await asyncio.gather(*tasks)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def setup(relay_factory, no_sleep, clock):
    created = []

    async def _setup(fail=None, **kwargs):
        factory = relay_factory(fail)
        pool = RelayPool([A, B], client_factory=factory, sleep=no_sleep, health_interval=3600)
        await pool.start()
        await settle(pool)
        manager = SubscriptionManager(pool, clock=clock, check_interval=3600, **kwargs)
        await manager.start()
        created.append((pool, manager))
        return pool, manager, factory.clients

    yield _setup

    for pool, manager in created:
        await manager.stop()
        await pool.close()


class TestSubscribe:
    """Test opening the subscription."""

    async def test_attached_on_all_connected(self, setup, clock):
        pool, manager, clients = await setup(window=600)

        assert manager.attached == {A, B}
        filters = clients[A].sub_filters[manager.sub_id]
        assert filters[0].kinds == [EventKind.JOB_REQUEST]
        assert filters[0].since == int(clock.now - 600)

    async def test_delivered_events_queued(self, setup, requester):
        pool, manager, clients = await setup()
        event = make_request(requester, "hello")

        clients[B].deliver(event)
        url, received = await asyncio.wait_for(manager.get(), timeout=1.0)

        assert url == B
        assert received == event
        assert manager.events_received == 1
        assert pool.get_endpoint(B).last_event_at > 0

    async def test_other_kinds_ignored(self, setup, identity):
        pool, manager, clients = await setup()
        other = Event.create(identity, EventKind.JOB_RESULT, [], "x")

        manager._on_event(A, other)

        assert manager.inbound.empty()

    async def test_reattach_after_reconnect(self, setup, requester):
        """After a drop the subscription is reopened on the relay."""
        pool, manager, clients = await setup()

        clients[A].drop()
        await settle(pool)

        assert pool.status_of(A) == EndpointStatus.CONNECTED
        assert manager.sub_id in clients[A].subscriptions
        assert clients[A].req_count == 2

        clients[A].deliver(make_request(requester))
        url, _ = await asyncio.wait_for(manager.get(), timeout=1.0)
        assert url == A

    async def test_stop_closes_subscription(self, setup):
        pool, manager, clients = await setup()

        await manager.stop()

        assert manager.sub_id not in clients[A].subscriptions
        assert manager.attached == set()


class TestWatchdog:
    """Test stale subscription handling."""

    async def test_not_stale_while_events_flow(self, setup, clock, requester):
        pool, manager, clients = await setup(stale_after=300)

        clock.advance(200)
        clients[A].deliver(make_request(requester))
        clock.advance(200)

        assert await manager.check() is False
        assert manager.resubscriptions == 0

    async def test_resubscribe_when_stale(self, setup, clock):
        """A silent subscription is reopened with a fresh since."""
        pool, manager, clients = await setup(stale_after=300, window=600)

        clock.advance(301)
        assert await manager.check() is True

        assert manager.resubscriptions == 1
        assert clients[A].req_count == 2
        assert clients[A].sub_filters[manager.sub_id][0].since == int(clock.now - 600)
        assert manager.is_stale() is False

    async def test_resubscribe_resets_failed_relays(self, setup, clock):
        pool, manager, clients = await setup(fail={B: 5}, stale_after=300)
        assert pool.status_of(B) == EndpointStatus.FAILED
        assert manager.attached == {A}

        clock.advance(300)
        await manager.check()

        assert pool.status_of(B) == EndpointStatus.CONNECTED
        assert manager.attached == {A, B}

    async def test_stats(self, setup):
        pool, manager, clients = await setup()
        stats = manager.get_stats()

        assert stats["sub_id"] == manager.sub_id
        assert stats["attached"] == sorted([A, B])
