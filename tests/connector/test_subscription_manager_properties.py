"""Property-based tests for the webhook subscription manager.

This module uses Hypothesis to drive random register/unregister sequences
against an in-memory hook gateway and checks that:
- the managed webhook always carries exactly the registered event set,
- a WebhookRecord exists iff that set is non-empty,
- at most one webhook targets the callback URL,
- foreign webhooks are never modified,
- concurrent registrations multiplex onto one webhook.

Testing Configuration:
- Library: Hypothesis (Python)
- Minimum iterations: 100 per property test
"""

import asyncio
from typing import Any, Dict, List, Set

from hypothesis import given, settings, strategies as st

from src.connector.subscriptions import (
    InMemorySubscriptionStore,
    RepositoryKey,
    SubscriptionManager,
)


CALLBACK_URL = "https://connector.example.com/webhooks"
FOREIGN_URL = "https://ci.example.com/hook"
REPO = RepositoryKey(owner="octocat", name="Hello-World")

EVENTS = ["issues", "pull_request", "push", "release", "issue_comment"]


class RecordingGateway:
    """Minimal in-memory hooks API counting remote mutations."""

    def __init__(self) -> None:
        self.hooks: Dict[int, Dict[str, Any]] = {}
        self.mutations = 0
        self._next_id = 1

    def add_foreign(self, events: List[str]) -> int:
        hook_id = self._next_id
        self._next_id += 1
        self.hooks[hook_id] = {"id": hook_id, "events": list(events), "config": {"url": FOREIGN_URL}}
        return hook_id

    def managed(self) -> List[Dict[str, Any]]:
        return [h for h in self.hooks.values() if h["config"]["url"] == CALLBACK_URL]

    async def list_hooks(self, owner, repo):
        await asyncio.sleep(0)
        return [
            {**hook, "events": list(hook["events"]), "config": dict(hook["config"])}
            for hook in self.hooks.values()
        ]

    async def create_hook(self, owner, repo, events, url, secret=None):
        await asyncio.sleep(0)
        self.mutations += 1
        hook_id = self._next_id
        self._next_id += 1
        self.hooks[hook_id] = {"id": hook_id, "events": list(events), "config": {"url": url}}
        return hook_id

    async def update_hook(self, owner, repo, hook_id, events, url, secret=None):
        await asyncio.sleep(0)
        self.mutations += 1
        self.hooks[hook_id]["events"] = list(events)

    async def delete_hook(self, owner, repo, hook_id):
        await asyncio.sleep(0)
        self.mutations += 1
        del self.hooks[hook_id]


operations = st.lists(
    st.tuples(st.sampled_from(["register", "unregister"]), st.sampled_from(EVENTS)),
    min_size=1,
    max_size=25,
)


@settings(max_examples=100)
@given(ops=operations, foreign_events=st.lists(st.sampled_from(EVENTS), max_size=3))
def test_remote_and_store_track_registered_events(ops, foreign_events):
    """After every operation, remote hook and store mirror the model set."""

    async def scenario():
        gateway = RecordingGateway()
        foreign_id = gateway.add_foreign(foreign_events)
        store = InMemorySubscriptionStore()
        manager = SubscriptionManager(gateway=gateway, store=store, callback_url=CALLBACK_URL)
        expected: Set[str] = set()

        for operation, event in ops:
            if operation == "register":
                await manager.register(REPO, event)
                expected.add(event)
            else:
                await manager.unregister(REPO, event)
                expected.discard(event)

            managed = gateway.managed()
            record = await store.get(REPO)

            assert len(managed) <= 1
            if expected:
                assert len(managed) == 1
                assert set(managed[0]["events"]) == expected
                assert len(managed[0]["events"]) == len(expected)
                assert record is not None
                assert record.events == frozenset(expected)
                assert record.id == managed[0]["id"]
            else:
                assert managed == []
                assert record is None

            assert gateway.hooks[foreign_id]["events"] == list(foreign_events)

    asyncio.run(scenario())


@settings(max_examples=100)
@given(event=st.sampled_from(EVENTS), repeats=st.integers(min_value=2, max_value=5))
def test_repeated_register_mutates_once(event, repeats):
    """Only the first of repeated registrations changes the remote hook."""

    async def scenario():
        gateway = RecordingGateway()
        manager = SubscriptionManager(
            gateway=gateway,
            store=InMemorySubscriptionStore(),
            callback_url=CALLBACK_URL,
        )
        for _ in range(repeats):
            await manager.register(REPO, event)
        assert gateway.mutations == 1
        assert gateway.managed()[0]["events"] == [event]

    asyncio.run(scenario())


@settings(max_examples=100)
@given(events=st.lists(st.sampled_from(EVENTS), min_size=2, max_size=8))
def test_concurrent_registers_multiplex(events):
    """Concurrent registrations end in one webhook holding every event."""

    async def scenario():
        gateway = RecordingGateway()
        store = InMemorySubscriptionStore()
        manager = SubscriptionManager(gateway=gateway, store=store, callback_url=CALLBACK_URL)

        await asyncio.gather(*(manager.register(REPO, event) for event in events))

        managed = gateway.managed()
        assert len(managed) == 1
        assert set(managed[0]["events"]) == set(events)
        assert (await store.get(REPO)).events == frozenset(events)

    asyncio.run(scenario())
