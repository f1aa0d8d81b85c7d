"""Unit tests for the webhook subscription manager.

Tests register/unregister against an in-memory GitHub hook gateway:
idempotency, callback URL scoping, convergent deletion, failure handling,
duplicate hook tie-break, cache reconciliation and per-repository
serialization of concurrent calls.
"""

import asyncio
from typing import Any, Dict, List, Optional
from unittest.mock import MagicMock

import pytest

from src.connector.github.client import GitHubAPIError, NotConfiguredError
from src.connector.subscriptions import (
    InMemorySubscriptionStore,
    RepositoryKey,
    SubscriptionManager,
    TransportError,
    WebhookRecord,
)


CALLBACK_URL = "https://connector.example.com/webhooks"
FOREIGN_URL = "https://ci.example.com/hook"


def run_async(coro):
    return asyncio.run(coro)


class FakeHookGateway:
    """In-memory GitHub hooks API that records every call.

    Each call yields to the event loop once so concurrent operations
    interleave the way real network calls would.
    """

    def __init__(self) -> None:
        self.hooks: Dict[RepositoryKey, Dict[int, Dict[str, Any]]] = {}
        self.calls: List[tuple] = []
        self.fail_on: Optional[str] = None
        self._next_id = 100

    def add_hook(
        self,
        key: RepositoryKey,
        url: str,
        events: List[str],
        hook_id: Optional[int] = None,
    ) -> int:
        if hook_id is None:
            hook_id = self._next_id
            self._next_id += 1
        self.hooks.setdefault(key, {})[hook_id] = {
            "id": hook_id,
            "name": "web",
            "active": True,
            "events": list(events),
            "config": {"url": url, "content_type": "json"},
        }
        return hook_id

    def events_of(self, key: RepositoryKey, hook_id: int) -> List[str]:
        return self.hooks[key][hook_id]["events"]

    def managed_hooks(self, key: RepositoryKey) -> List[Dict[str, Any]]:
        return [
            hook for hook in self.hooks.get(key, {}).values()
            if hook["config"]["url"] == CALLBACK_URL
        ]

    def mutations(self) -> List[tuple]:
        return [call for call in self.calls if call[0] != "list"]

    async def _call(self, operation: str, *args: Any) -> None:
        self.calls.append((operation, *args))
        await asyncio.sleep(0)
        if self.fail_on == operation:
            raise GitHubAPIError(
                message=f"GitHub API error: 500 on {operation}",
                status_code=500,
                response_body='{"message": "Server Error"}',
            )

    async def list_hooks(self, owner: str, repo: str) -> List[Dict[str, Any]]:
        await self._call("list", owner, repo)
        key = RepositoryKey(owner=owner, name=repo)
        return [dict(hook) for hook in self.hooks.get(key, {}).values()]

    async def create_hook(self, owner, repo, events, url, secret=None) -> int:
        await self._call("create", owner, repo, tuple(events))
        return self.add_hook(RepositoryKey(owner=owner, name=repo), url, events)

    async def update_hook(self, owner, repo, hook_id, events, url, secret=None) -> None:
        await self._call("update", owner, repo, hook_id, tuple(events))
        hook = self.hooks[RepositoryKey(owner=owner, name=repo)][hook_id]
        hook["events"] = list(events)
        hook["config"]["url"] = url

    async def delete_hook(self, owner, repo, hook_id) -> None:
        await self._call("delete", owner, repo, hook_id)
        del self.hooks[RepositoryKey(owner=owner, name=repo)][hook_id]


@pytest.fixture
def repo() -> RepositoryKey:
    return RepositoryKey(owner="octocat", name="Hello-World")


@pytest.fixture
def gateway() -> FakeHookGateway:
    return FakeHookGateway()


@pytest.fixture
def store() -> InMemorySubscriptionStore:
    return InMemorySubscriptionStore()


@pytest.fixture
def manager(gateway, store) -> SubscriptionManager:
    return SubscriptionManager(gateway=gateway, store=store, callback_url=CALLBACK_URL)


class TestConstruction:

    def test_empty_callback_url_rejected(self, gateway, store):
        with pytest.raises(ValueError):
            SubscriptionManager(gateway=gateway, store=store, callback_url="")


class TestRegister:

    def test_creates_hook_on_unsubscribed_repository(self, manager, gateway, store, repo):
        record = run_async(manager.register(repo, "issues"))

        assert record.events == frozenset({"issues"})
        assert record.url == CALLBACK_URL
        assert [call[0] for call in gateway.calls] == ["list", "create"]
        assert len(gateway.managed_hooks(repo)) == 1
        assert run_async(store.get(repo)) == record

    def test_register_is_idempotent(self, manager, gateway, repo):
        run_async(manager.register(repo, "issues"))
        gateway.calls.clear()

        record = run_async(manager.register(repo, "issues"))

        assert gateway.calls == [("list", "octocat", "Hello-World")]
        assert record.events == frozenset({"issues"})
        hooks = gateway.managed_hooks(repo)
        assert len(hooks) == 1
        assert hooks[0]["events"] == ["issues"]

    def test_second_event_updates_existing_hook(self, manager, gateway, repo):
        first = run_async(manager.register(repo, "issues"))
        gateway.calls.clear()

        record = run_async(manager.register(repo, "pull_request"))

        assert [call[0] for call in gateway.calls] == ["list", "update"]
        assert record.id == first.id
        assert record.events == frozenset({"issues", "pull_request"})
        assert gateway.events_of(repo, first.id) == ["issues", "pull_request"]

    def test_foreign_hook_never_touched(self, manager, gateway, repo):
        foreign_id = gateway.add_hook(repo, FOREIGN_URL, ["push"])

        record = run_async(manager.register(repo, "push"))

        assert record.id != foreign_id
        assert gateway.events_of(repo, foreign_id) == ["push"]
        assert all(
            call[0] == "list" or foreign_id not in call
            for call in gateway.calls
        )
        assert gateway.mutations()[0][0] == "create"

    def test_remote_truth_beats_stale_cache(self, manager, gateway, store, repo):
        # Cache claims a hook that was deleted out-of-band
        run_async(store.set(repo, WebhookRecord.from_events(1, CALLBACK_URL, ["issues"])))

        record = run_async(manager.register(repo, "issues"))

        assert [call[0] for call in gateway.calls] == ["list", "create"]
        assert record.id != 1
        assert run_async(store.get(repo)).id == record.id

    def test_noop_refreshes_stale_cache(self, manager, gateway, store, repo):
        hook_id = gateway.add_hook(repo, CALLBACK_URL, ["issues", "push"])

        record = run_async(manager.register(repo, "push"))

        assert gateway.mutations() == []
        assert record.id == hook_id
        assert run_async(store.get(repo)).events == frozenset({"issues", "push"})

    def test_create_failure_leaves_store_untouched(self, manager, gateway, store, repo):
        gateway.fail_on = "create"

        with pytest.raises(TransportError) as exc_info:
            run_async(manager.register(repo, "issues"))

        assert exc_info.value.operation == "create"
        assert exc_info.value.event == "issues"
        assert exc_info.value.repository == repo
        assert exc_info.value.status_code == 500
        assert run_async(store.get(repo)) is None

    def test_update_failure_leaves_store_untouched(self, manager, gateway, store, repo):
        before = run_async(manager.register(repo, "issues"))
        gateway.fail_on = "update"

        with pytest.raises(TransportError):
            run_async(manager.register(repo, "release"))

        assert run_async(store.get(repo)) == before

    def test_list_failure_is_transport_error(self, manager, gateway, repo):
        gateway.fail_on = "list"

        with pytest.raises(TransportError) as exc_info:
            run_async(manager.register(repo, "issues"))

        assert exc_info.value.operation == "list"
        assert gateway.mutations() == []

    def test_not_configured_propagates(self, store, repo):
        gateway = MagicMock()
        gateway.list_hooks.side_effect = NotConfiguredError()
        manager = SubscriptionManager(gateway=gateway, store=store, callback_url=CALLBACK_URL)

        with pytest.raises(NotConfiguredError):
            run_async(manager.register(repo, "issues"))

        gateway.create_hook.assert_not_called()
        assert run_async(store.get(repo)) is None

    def test_secret_passed_to_gateway(self, gateway, store, repo):
        calls = []
        original = gateway.create_hook

        async def capture(owner, repo_name, events, url, secret=None):
            calls.append(secret)
            return await original(owner, repo_name, events, url, secret)

        gateway.create_hook = capture
        manager = SubscriptionManager(
            gateway=gateway,
            store=store,
            callback_url=CALLBACK_URL,
            webhook_secret="s3cret",
        )

        run_async(manager.register(repo, "issues"))

        assert calls == ["s3cret"]


class TestDuplicateHooks:

    def test_lowest_id_is_managed(self, manager, gateway, repo):
        gateway.add_hook(repo, CALLBACK_URL, ["issues"], hook_id=20)
        gateway.add_hook(repo, CALLBACK_URL, ["issues"], hook_id=7)

        record = run_async(manager.register(repo, "push"))

        assert record.id == 7
        assert gateway.events_of(repo, 7) == ["issues", "push"]
        assert gateway.events_of(repo, 20) == ["issues"]

    def test_duplicates_left_alone_on_unregister(self, manager, gateway, repo):
        gateway.add_hook(repo, CALLBACK_URL, ["issues"], hook_id=3)
        gateway.add_hook(repo, CALLBACK_URL, ["issues"], hook_id=9)

        run_async(manager.unregister(repo, "issues"))

        assert 3 not in gateway.hooks[repo]
        assert gateway.events_of(repo, 9) == ["issues"]


class TestUnregister:

    def test_last_event_deletes_hook_and_record(self, manager, gateway, store, repo):
        record = run_async(manager.register(repo, "issues"))
        gateway.calls.clear()

        result = run_async(manager.unregister(repo, "issues"))

        assert result is None
        assert [call[0] for call in gateway.calls] == ["list", "delete"]
        assert record.id not in gateway.hooks[repo]
        assert run_async(store.get(repo)) is None

    def test_removes_one_of_several_events(self, manager, gateway, store, repo):
        run_async(manager.register(repo, "issues"))
        run_async(manager.register(repo, "push"))
        gateway.calls.clear()

        record = run_async(manager.unregister(repo, "issues"))

        assert [call[0] for call in gateway.calls] == ["list", "update"]
        assert record.events == frozenset({"push"})
        assert run_async(store.get(repo)).events == frozenset({"push"})

    def test_no_hook_is_noop(self, manager, gateway, repo):
        result = run_async(manager.unregister(repo, "issues"))

        assert result is None
        assert gateway.calls == [("list", "octocat", "Hello-World")]

    def test_no_hook_drops_stale_record(self, manager, gateway, store, repo):
        run_async(store.set(repo, WebhookRecord.from_events(5, CALLBACK_URL, ["issues"])))

        run_async(manager.unregister(repo, "issues"))

        assert gateway.mutations() == []
        assert run_async(store.get(repo)) is None

    def test_absent_event_is_noop(self, manager, gateway, repo):
        run_async(manager.register(repo, "issues"))
        gateway.calls.clear()

        record = run_async(manager.unregister(repo, "push"))

        assert gateway.mutations() == []
        assert record.events == frozenset({"issues"})

    def test_only_foreign_hook_is_noop(self, manager, gateway, repo):
        foreign_id = gateway.add_hook(repo, FOREIGN_URL, ["issues"])

        run_async(manager.unregister(repo, "issues"))

        assert gateway.mutations() == []
        assert gateway.events_of(repo, foreign_id) == ["issues"]

    def test_delete_failure_leaves_store_untouched(self, manager, gateway, store, repo):
        before = run_async(manager.register(repo, "issues"))
        gateway.fail_on = "delete"

        with pytest.raises(TransportError) as exc_info:
            run_async(manager.unregister(repo, "issues"))

        assert exc_info.value.operation == "delete"
        assert run_async(store.get(repo)) == before


class TestReconcile:

    def test_reconcile_rewrites_cache(self, manager, gateway, store, repo):
        hook_id = gateway.add_hook(repo, CALLBACK_URL, ["release"])

        record = run_async(manager.reconcile(repo))

        assert record.id == hook_id
        assert run_async(manager.get_record(repo)) == record
        assert gateway.mutations() == []

    def test_reconcile_without_hook_clears_cache(self, manager, store, repo):
        run_async(store.set(repo, WebhookRecord.from_events(5, CALLBACK_URL, ["issues"])))

        assert run_async(manager.reconcile(repo)) is None
        assert run_async(store.get(repo)) is None

    def test_hook_without_events_has_no_record(self, manager, gateway, store, repo):
        gateway.add_hook(repo, CALLBACK_URL, [])

        assert run_async(manager.reconcile(repo)) is None
        assert run_async(store.get(repo)) is None


class TestConcurrency:

    def test_concurrent_registers_share_one_hook(self, manager, gateway, repo):
        async def scenario():
            return await asyncio.gather(
                manager.register(repo, "issues"),
                manager.register(repo, "pull_request"),
            )

        run_async(scenario())

        hooks = gateway.managed_hooks(repo)
        assert len(hooks) == 1
        assert set(hooks[0]["events"]) == {"issues", "pull_request"}
        assert [call[0] for call in gateway.mutations()] == ["create", "update"]

    def test_many_concurrent_events(self, manager, gateway, store, repo):
        events = ["issues", "pull_request", "push", "release", "issue_comment"]

        async def scenario():
            await asyncio.gather(*(manager.register(repo, e) for e in events))

        run_async(scenario())

        hooks = gateway.managed_hooks(repo)
        assert len(hooks) == 1
        assert set(hooks[0]["events"]) == set(events)
        assert run_async(store.get(repo)).events == frozenset(events)

    def test_concurrent_register_and_unregister_converge(self, manager, gateway, store, repo):
        run_async(manager.register(repo, "issues"))

        async def scenario():
            await asyncio.gather(
                manager.unregister(repo, "issues"),
                manager.register(repo, "push"),
            )

        run_async(scenario())

        hooks = gateway.managed_hooks(repo)
        assert len(hooks) == 1
        assert hooks[0]["events"] == ["push"]
        assert run_async(store.get(repo)).events == frozenset({"push"})

    def test_different_repositories_independent(self, manager, gateway):
        first = RepositoryKey(owner="octocat", name="one")
        second = RepositoryKey(owner="octocat", name="two")

        async def scenario():
            await asyncio.gather(
                manager.register(first, "issues"),
                manager.register(second, "issues"),
            )

        run_async(scenario())

        assert len(gateway.managed_hooks(first)) == 1
        assert len(gateway.managed_hooks(second)) == 1

    def test_locks_released_after_operations(self, manager, repo):
        async def scenario():
            await asyncio.gather(
                manager.register(repo, "issues"),
                manager.register(repo, "push"),
            )
            await manager.unregister(repo, "issues")

        run_async(scenario())

        assert len(manager._locks) == 0


class TestMetrics:

    def test_operations_recorded(self, gateway, store, repo):
        metrics = MagicMock()
        manager = SubscriptionManager(
            gateway=gateway,
            store=store,
            callback_url=CALLBACK_URL,
            metrics=metrics,
        )

        run_async(manager.register(repo, "issues"))
        run_async(manager.register(repo, "issues"))
        run_async(manager.unregister(repo, "issues"))

        recorded = [call.args for call in metrics.record_subscription_operation.call_args_list]
        assert recorded == [
            ("register", "created"),
            ("register", "noop"),
            ("unregister", "deleted"),
        ]
