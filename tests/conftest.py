"""
DVM Test Configuration
======================

[QA] Central pytest configuration with fixtures for all test types:
- Unit tests: Isolated, no sockets, fast
- E2E tests: Full node stack over in-memory relays

[FIXTURES]
- identity / requester: secp256k1 identities
- request_factory: signed kind 5050 job requests
- FakeRelayClient / relay_factory: in-memory relay with scripted failures
- FakePool: publish/query double for retrier and dispatcher tests
- ScriptedProvider: inference provider with canned answers
- no_sleep: records waits instead of sleeping

Usage:
    pytest tests/unit/          # Fast unit tests
    pytest tests/e2e/           # End-to-end tests
"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from agents.base import InferenceError, InferenceProvider
from core.crypto import Identity
from core.event import Event, EventKind, Filter
from core.protocol import InferenceParams
from core.relay import PublishErrorKind, PublishResult, RelayError, RelayNotConnected


MODEL = "llama3-8b-8192"


# ============================================================================
# Pytest Configuration
# ============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "e2e: End-to-end tests (full stack)")
    config.addinivalue_line("markers", "slow: Slow tests (skip with -m 'not slow')")


def pytest_collection_modifyitems(config, items):
    """Auto-mark tests based on their path."""
    for item in items:
        path = str(item.fspath)
        if "/unit/" in path:
            item.add_marker(pytest.mark.unit)
        elif "/e2e/" in path:
            item.add_marker(pytest.mark.e2e)


# ============================================================================
# Logging Configuration
# ============================================================================

@pytest.fixture(scope="session", autouse=True)
def configure_logging():
    """Configure logging for tests."""
    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("aiohttp").setLevel(logging.WARNING)


# ============================================================================
# Identity Fixtures
# ============================================================================

@pytest.fixture(scope="function")
def identity() -> Identity:
    """DVM identity."""
    return Identity.generate()


@pytest.fixture(scope="function")
def requester() -> Identity:
    """Customer identity."""
    return Identity.generate()


# ============================================================================
# Job Request Fixtures
# ============================================================================

def make_request(
    author: Identity,
    prompt: str = "What is Nostr?",
    model: Optional[str] = MODEL,
    params: Optional[Dict[str, str]] = None,
    extra_tags: Optional[List[List[str]]] = None,
    created_at: Optional[int] = None,
) -> Event:
    """Signed kind 5050 job request."""
    tags: List[List[str]] = [["i", prompt, "text"]]
    if model is not None:
        tags.append(["param", "model", model])
    for name, value in (params or {}).items():
        tags.append(["param", name, value])
    tags.extend(extra_tags or [])
    return Event.create(author, EventKind.JOB_REQUEST, tags, "", created_at)


@pytest.fixture(scope="function")
def request_factory(requester: Identity) -> Callable[..., Event]:
    """
    Factory for job request events.

    [USAGE]
        event = request_factory("Hello", params={"temperature": "0.2"})
    """
    def _create(prompt: str = "What is Nostr?", author: Optional[Identity] = None, **kwargs) -> Event:
        return make_request(author or requester, prompt, **kwargs)
    return _create


# ============================================================================
# Relay Fixtures
# ============================================================================

class FakeRelayClient:
    """
    In-memory relay with the RelayClient interface.

    [SCRIPTING]
    - fail_connects: how many connect() calls fail before success (-1 = always)
    - publish_plan: PublishResult-producing callables consumed per publish
    - stored: events returned by query() when they match the filters
    """

    def __init__(self, url: str, fail_connects: int = 0):
        self.url = url
        self.fail_connects = fail_connects
        self.connect_calls = 0
        self.connected = False
        self.on_disconnect: Optional[Callable[[str], None]] = None

        self.subscriptions: Dict[str, Any] = {}
        self.sub_filters: Dict[str, List[Filter]] = {}
        self.req_count = 0
        self.published: List[Event] = []
        self.publish_plan: List[Callable[[str], PublishResult]] = []
        self.stored: List[Event] = []

    @property
    def is_connected(self) -> bool:
        return self.connected

    async def connect(self, timeout: float = 10.0) -> None:
        self.connect_calls += 1
        if self.fail_connects < 0 or self.connect_calls <= self.fail_connects:
            raise RelayError("connection refused")
        self.connected = True

    async def close(self) -> None:
        self.connected = False
        self.subscriptions.clear()

    async def publish(self, event: Event, timeout: float = 10.0) -> PublishResult:
        if not self.connected:
            return PublishResult.failure(self.url, PublishErrorKind.TRANSPORT, "not connected")
        self.published.append(event)
        if self.publish_plan:
            return self.publish_plan.pop(0)(self.url)
        return PublishResult.success(self.url)

    async def subscribe(self, sub_id: str, filters: List[Filter], on_event) -> None:
        if not self.connected:
            raise RelayNotConnected(self.url)
        self.req_count += 1
        self.subscriptions[sub_id] = on_event
        self.sub_filters[sub_id] = filters

    async def unsubscribe(self, sub_id: str) -> None:
        self.subscriptions.pop(sub_id, None)
        self.sub_filters.pop(sub_id, None)

    async def query(self, filters: List[Filter], timeout: float = 10.0) -> List[Event]:
        return [e for e in self.stored if any(f.matches(e) for f in filters)]

    # Test helpers

    def deliver(self, event: Event) -> int:
        """Push an event to every matching open subscription."""
        delivered = 0
        for sub_id, callback in list(self.subscriptions.items()):
            if any(f.kinds == [] or event.kind in f.kinds for f in self.sub_filters[sub_id]):
                callback(self.url, event)
                delivered += 1
        return delivered

    def drop(self) -> None:
        """Simulate the socket going away."""
        self.connected = False
        self.subscriptions.clear()
        if self.on_disconnect:
            self.on_disconnect(self.url)


def rate_limited(url: str) -> PublishResult:
    return PublishResult.failure(url, PublishErrorKind.RATE_LIMITED, "rate-limited: slow down")


def rejected(url: str) -> PublishResult:
    return PublishResult.failure(url, PublishErrorKind.REJECTED, "blocked: spam")


@pytest.fixture(scope="function")
def relay_factory():
    """
    Client factory for RelayPool(client_factory=...).

    [USAGE]
        factory = relay_factory(fail={"wss://a": -1})
        pool = RelayPool(["wss://a", "wss://b"], client_factory=factory)
        factory.clients["wss://b"].deliver(event)
    """
    def _make(fail: Optional[Dict[str, int]] = None):
        plan = fail or {}
        clients: Dict[str, FakeRelayClient] = {}

        def factory(url: str) -> FakeRelayClient:
            client = FakeRelayClient(url, fail_connects=plan.get(url, 0))
            clients[url] = client
            return client

        factory.clients = clients
        return factory
    return _make


class FakePool:
    """Publish/query double: scripted results, records every event."""

    def __init__(self, results: Optional[List[PublishResult]] = None, stored: Optional[List[Event]] = None):
        self.results = list(results or [])
        self.stored = list(stored or [])
        self.published: List[Event] = []
        self.queries: List[List[Filter]] = []

    async def publish(self, event: Event) -> PublishResult:
        self.published.append(event)
        if self.results:
            return self.results.pop(0)
        return PublishResult(ok=True, relay="wss://fake", accepted_by=("wss://fake",))

    async def query(self, filters: List[Filter]) -> List[Event]:
        self.queries.append(filters)
        return [e for e in self.stored if any(f.matches(e) for f in filters)]


@pytest.fixture(scope="function")
def fake_pool() -> FakePool:
    return FakePool()


# ============================================================================
# Provider Fixtures
# ============================================================================

class ScriptedProvider(InferenceProvider):
    """
    Provider returning canned answers.

    Each script item is a string (returned), an Exception (raised) or a
    float (seconds to hang before answering "late").
    """

    name = "scripted"

    def __init__(self, script: Optional[List[Any]] = None, default: str = "answer"):
        self.script = list(script or [])
        self.default = default
        self.calls: List[InferenceParams] = []
        self.prompts: List[str] = []
        self.active = 0
        self.max_active = 0
        self.closed = False

    async def chat(self, messages: List[Dict[str, str]], params: InferenceParams) -> str:
        self.calls.append(params)
        self.prompts.append(messages[-1]["content"])
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(0)
            item = self.script.pop(0) if self.script else self.default
            if isinstance(item, BaseException):
                raise item
            if isinstance(item, float):
                await asyncio.sleep(item)
                return "late"
            return item
        finally:
            self.active -= 1

    async def close(self) -> None:
        self.closed = True


@pytest.fixture(scope="function")
def provider() -> ScriptedProvider:
    return ScriptedProvider()


@pytest.fixture(scope="function")
def failing_provider() -> ScriptedProvider:
    return ScriptedProvider([InferenceError("upstream exploded")])


# ============================================================================
# Async Utilities
# ============================================================================

class SleepRecorder:
    """Drop-in for asyncio.sleep that records delays and yields once."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


@pytest.fixture(scope="function")
def no_sleep() -> SleepRecorder:
    return SleepRecorder()


async def wait_for_condition(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll predicate until true (yields to the loop between checks)."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)
